"""Metadata persistence for file records, properties and tags."""
import logging
import uuid
from typing import Iterable, Mapping

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from gleaming.errors import bad_request
from gleaming.models import FileRecord, Property, TAG_PREFIX, TAG_VALUE
from gleaming.models.base import utcnow
from gleaming.services.identifiers import generate_compact_time_id

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 500


def _tag_key(tag: str) -> str:
    return f"{TAG_PREFIX}{tag}"


def _clean_tags(tags: Iterable[str] | None) -> list[str]:
    seen: dict[str, None] = {}
    for tag in tags or ():
        tag = tag.strip()
        if tag:
            seen.setdefault(tag, None)
    return list(seen)


def _check_property_key(key: str) -> str:
    key = key.strip()
    if not key:
        raise bad_request("Property key must not be empty")
    if key.startswith(TAG_PREFIX):
        raise bad_request(f"Property keys may not start with '{TAG_PREFIX}'")
    return key


class MetadataRepository:
    """Point lookups, bounded listing and property/tag CRUD over one session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ── File records ─────────────────────────────────────────────

    async def create_file(
        self,
        *,
        external_id: str,
        content_hash: str,
        content_type: str,
        size: int,
        filename: str,
        user_id: str,
        project_id: str,
        file_metadata: dict | None = None,
        source_url: str | None = None,
        ingest_context: dict | None = None,
        properties: Mapping[str, str] | None = None,
        tags: Iterable[str] | None = None,
    ) -> FileRecord:
        """Insert the record together with its properties and tags in one transaction."""
        record = FileRecord(
            id=uuid.uuid4(),
            external_id=external_id,
            content_hash=content_hash,
            content_type=content_type,
            size=size,
            filename=filename,
            file_metadata=file_metadata or {},
            source_url=source_url,
            ingest_context=ingest_context or {},
            user_id=user_id,
            project_id=project_id,
        )
        rows = self._property_rows(record, properties, tags)
        self.db.add(record)
        self.db.add_all(rows)
        try:
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        logger.info(
            "db:files:create external_id=%s hash=%s size=%d properties=%d",
            external_id, content_hash, size, len(rows),
        )
        return record

    def _property_rows(
        self,
        record: FileRecord,
        properties: Mapping[str, str] | None,
        tags: Iterable[str] | None,
    ) -> list[Property]:
        values: dict[str, str] = {}
        for key, value in (properties or {}).items():
            values[_check_property_key(key)] = str(value)
        for tag in _clean_tags(tags):
            values[_tag_key(tag)] = TAG_VALUE
        return [
            Property(
                id=generate_compact_time_id(),
                object_key=record.object_key,
                key=key,
                value=value,
                user_id=record.user_id,
                project_id=record.project_id,
            )
            for key, value in values.items()
        ]

    async def get_by_external_id(self, external_id: str, include_deleted: bool = False) -> FileRecord | None:
        query = select(FileRecord).where(FileRecord.external_id == external_id)
        if not include_deleted:
            query = query.where(FileRecord.deleted_at.is_(None))
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_by_internal_id(self, internal_id: uuid.UUID | str) -> FileRecord | None:
        if isinstance(internal_id, str):
            try:
                internal_id = uuid.UUID(internal_id)
            except ValueError:
                return None
        return await self.db.get(FileRecord, internal_id)

    async def get_by_content_hash(self, content_hash: str) -> list[FileRecord]:
        """All live records sharing one content hash, newest first."""
        result = await self.db.execute(
            select(FileRecord)
            .where(FileRecord.content_hash == content_hash, FileRecord.deleted_at.is_(None))
            .order_by(FileRecord.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_recent(self, limit: int = DEFAULT_LIST_LIMIT) -> list[FileRecord]:
        limit = max(1, min(limit, MAX_LIST_LIMIT))
        result = await self.db.execute(
            select(FileRecord)
            .where(FileRecord.deleted_at.is_(None))
            .order_by(FileRecord.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def find_by_property(
        self,
        key: str,
        value: str,
        *,
        project_id: str | None = None,
        user_id: str | None = None,
    ) -> list[FileRecord]:
        """Records having property key=value within a project and/or user scope."""
        query = select(Property.object_key).where(Property.key == key, Property.value == value)
        if project_id is not None:
            query = query.where(Property.project_id == project_id)
        if user_id is not None:
            query = query.where(Property.user_id == user_id)
        object_keys = (await self.db.execute(query)).scalars().all()
        ids = []
        for object_key in object_keys:
            try:
                ids.append(uuid.UUID(object_key))
            except ValueError:
                continue
        if not ids:
            return []
        result = await self.db.execute(
            select(FileRecord)
            .where(FileRecord.id.in_(ids), FileRecord.deleted_at.is_(None))
            .order_by(FileRecord.created_at.desc())
        )
        return list(result.scalars().all())

    async def soft_delete(self, record: FileRecord) -> FileRecord:
        """Mark deleted. The blob stays; other records may share it."""
        record.deleted_at = utcnow()
        await self.db.commit()
        logger.info("db:files:delete external_id=%s", record.external_id)
        return record

    # ── Properties ───────────────────────────────────────────────

    def _insert(self):
        if self.db.get_bind().dialect.name == "sqlite":
            return sqlite_insert
        return pg_insert

    async def _upsert(self, record: FileRecord, key: str, value: str) -> Property:
        now = utcnow()
        insert = self._insert()
        stmt = insert(Property).values(
            id=generate_compact_time_id(),
            object_key=record.object_key,
            key=key,
            value=value,
            user_id=record.user_id,
            project_id=record.project_id,
            created_at=now,
            updated_at=now,
        ).on_conflict_do_update(
            index_elements=["object_key", "key"],
            set_={"value": value, "updated_at": now},
        )
        await self.db.execute(stmt)
        await self.db.commit()
        prop = await self.get_property(record.object_key, key)
        return prop

    async def upsert_property(self, record: FileRecord, key: str, value: str) -> Property:
        """Insert or overwrite the value for (object_key, key)."""
        return await self._upsert(record, _check_property_key(key), str(value))

    async def get_property(self, object_key: str, key: str) -> Property | None:
        result = await self.db.execute(
            select(Property)
            .where(Property.object_key == object_key, Property.key == key)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_properties(self, object_key: str) -> dict[str, str]:
        """Plain properties of an object, tags excluded."""
        result = await self.db.execute(
            select(Property.key, Property.value)
            .where(Property.object_key == object_key)
            .order_by(Property.key)
        )
        return {key: value for key, value in result.all() if not key.startswith(TAG_PREFIX)}

    async def delete_property(self, object_key: str, key: str) -> bool:
        result = await self.db.execute(
            delete(Property).where(Property.object_key == object_key, Property.key == key)
        )
        await self.db.commit()
        return result.rowcount > 0

    async def delete_properties(self, object_key: str) -> int:
        result = await self.db.execute(delete(Property).where(Property.object_key == object_key))
        await self.db.commit()
        return result.rowcount

    # ── Tags ─────────────────────────────────────────────────────

    async def get_tags(self, object_key: str) -> list[str]:
        result = await self.db.execute(
            select(Property.key)
            .where(
                Property.object_key == object_key,
                Property.key.startswith(TAG_PREFIX, autoescape=True),
            )
            .order_by(Property.key)
        )
        return [key[len(TAG_PREFIX):] for key in result.scalars().all()]

    async def add_tag(self, record: FileRecord, tag: str) -> list[str]:
        tag = tag.strip()
        if not tag:
            raise bad_request("Tag must not be empty")
        await self._upsert(record, _tag_key(tag), TAG_VALUE)
        return await self.get_tags(record.object_key)

    async def remove_tag(self, object_key: str, tag: str) -> bool:
        return await self.delete_property(object_key, _tag_key(tag.strip()))
