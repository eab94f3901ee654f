"""Ingestion pipeline: direct uploads and remote-URL ingestion.

Both paths end the same way. The payload stream is teed three ways
(validation, hashing, staging) and the branches run concurrently. Only when
all three succeed is the staged blob promoted to its content key (or dropped
because that content already exists), and only then is the FileRecord
created. Any failure cancels the sibling branches and discards the staged
bytes, so no record ever points at a missing blob.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import AsyncIterable, Callable, Iterable, Mapping

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from gleaming.config import IngestConfig
from gleaming.errors import AppError, bad_request, gateway_timeout, internal_error
from gleaming.models import FileRecord
from gleaming.services.file_storage import ContentStore, PutResult, StagedBlob
from gleaming.services.filename import resolve_filename
from gleaming.services.hashing import ContentHasher, Digest
from gleaming.services.identifiers import external_id_strategy
from gleaming.services.metadata_repository import MetadataRepository
from gleaming.services.tee import StreamMultiplexer, aiter_bytes
from gleaming.services.url_fetcher import (
    FetchConnectionError,
    FetchError,
    FetchTimeoutError,
    RemoteResponseError,
    TooManyRedirectsError,
    UrlFetcher,
    UrlPolicyError,
)
from gleaming.services.validator import PayloadValidator, ValidationResult

logger = logging.getLogger(__name__)

METHOD_UPLOAD = "upload"
METHOD_INGEST = "ingest"
# Fresh external ids tried when an insert hits a unique constraint
MAX_ID_ATTEMPTS = 5


@dataclass(frozen=True)
class RequestContext:
    """Provenance of the request that triggered an ingestion."""

    client_ip: str | None = None
    user_agent: str | None = None

    def as_ingest_context(self, method: str) -> dict:
        return {"method": method, "client_ip": self.client_ip, "user_agent": self.user_agent}


@dataclass
class IngestResult:
    record: FileRecord
    properties: dict[str, str] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)
    stored: bool = False  # True when new bytes were written


@dataclass(frozen=True)
class _PipelineOutcome:
    validation: ValidationResult
    digest: Digest
    put: PutResult


def fetch_failure(exc: FetchError) -> AppError:
    """Map an outbound fetch failure onto the application error kinds."""
    match exc:
        case FetchTimeoutError():
            return gateway_timeout(f"Timed out fetching URL: {exc.message}")
        case UrlPolicyError():
            return bad_request(f"URL is not allowed: {exc.message}")
        case RemoteResponseError(status=status, reason=reason):
            return bad_request(f"Failed to fetch image from URL: HTTP {status} {reason or ''}".rstrip())
        case TooManyRedirectsError() | FetchConnectionError():
            return bad_request(f"Failed to fetch image from URL: {exc.message}")
        case _:
            return internal_error("Failed to fetch image from URL")


class IngestionOrchestrator:
    def __init__(
        self,
        config: IngestConfig,
        *,
        content_store: ContentStore,
        repository: MetadataRepository,
        validator: PayloadValidator,
        fetcher: UrlFetcher | None = None,
        hasher: ContentHasher | None = None,
        id_generator: Callable[[], str] | None = None,
    ):
        self.config = config
        self.content_store = content_store
        self.repository = repository
        self.validator = validator
        self.fetcher = fetcher
        self.hasher = hasher or ContentHasher()
        self.new_external_id = id_generator or external_id_strategy(config.external_id_strategy)

    async def ingest_upload(
        self,
        data: bytes | AsyncIterable[bytes],
        content_type: str | None,
        *,
        filename: str | None = None,
        declared_size: int | None = None,
        properties: Mapping[str, str] | None = None,
        tags: Iterable[str] | None = None,
        project_id: str | None = None,
        user_id: str | None = None,
        context: RequestContext | None = None,
    ) -> IngestResult:
        """Store bytes pushed by a client."""
        if isinstance(data, bytes):
            declared_size = len(data)
            data = aiter_bytes(data, self.config.chunk_size)
        media = self.validator.check_declared(content_type, declared_size)
        name = resolve_filename(filename, content_type=media)

        outcome = await self._run_pipeline(data, media, declared_size)
        return await self._record(
            outcome,
            filename=name,
            method=METHOD_UPLOAD,
            source_url=None,
            properties=properties,
            tags=tags,
            project_id=project_id,
            user_id=user_id,
            context=context,
        )

    async def ingest_url(
        self,
        url: str,
        *,
        filename: str | None = None,
        properties: Mapping[str, str] | None = None,
        tags: Iterable[str] | None = None,
        project_id: str | None = None,
        user_id: str | None = None,
        context: RequestContext | None = None,
    ) -> IngestResult:
        """Fetch a remote resource under the URL policy and store it."""
        if self.fetcher is None:
            raise internal_error("URL ingestion is not configured")
        if not url or not url.strip():
            raise bad_request("Missing URL")
        url = url.strip()

        try:
            if self.config.precheck_urls:
                await self._precheck(url)
            resource = await self.fetcher.fetch(url)
        except FetchError as exc:
            raise fetch_failure(exc) from exc

        try:
            media = self.validator.check_declared(resource.content_type, resource.content_length)
            name = resolve_filename(
                filename,
                content_disposition=resource.info.content_disposition,
                url=resource.url,
                content_type=media,
            )
            try:
                outcome = await self._run_pipeline(resource.iter_chunks(), media, resource.content_length)
            except FetchError as exc:
                raise fetch_failure(exc) from exc
        finally:
            await resource.aclose()

        return await self._record(
            outcome,
            filename=name,
            method=METHOD_INGEST,
            source_url=url,
            properties=properties,
            tags=tags,
            project_id=project_id,
            user_id=user_id,
            context=context,
        )

    async def _precheck(self, url: str) -> None:
        """HEAD probe: reject obviously unsupported or oversized resources early."""
        try:
            info = await self.fetcher.probe(url)
        except RemoteResponseError as exc:
            if exc.status in (405, 501):
                # Server does not do HEAD; the full fetch will decide
                return
            raise
        if info.content_type:
            self.validator.check_declared(info.content_type, info.content_length)

    async def _run_pipeline(
        self,
        source: AsyncIterable[bytes],
        media: str,
        declared_size: int | None,
    ) -> _PipelineOutcome:
        tee = StreamMultiplexer(source, branches=3, max_buffered_chunks=self.config.tee_max_buffered_chunks)
        validate_branch, hash_branch, store_branch = tee.branches
        tasks = [
            asyncio.create_task(self.validator.validate(media, validate_branch, declared_size)),
            asyncio.create_task(self.hasher.hash_stream(hash_branch)),
            asyncio.create_task(self.content_store.stage(store_branch, media)),
        ]
        try:
            validation, digest, staged = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            staged = _result_or_none(tasks[2])
            if staged is not None:
                await self.content_store.discard(staged)
            raise
        finally:
            await tee.aclose()

        if not (validation.size == digest.size == staged.size):
            await self.content_store.discard(staged)
            logger.error(
                "Branch sizes disagree: validated=%d hashed=%d stored=%d",
                validation.size, digest.size, staged.size,
            )
            raise internal_error("Failed to process file data")

        put = await self.content_store.commit_if_absent(staged, digest.hex)
        return _PipelineOutcome(validation=validation, digest=digest, put=put)

    async def _record(
        self,
        outcome: _PipelineOutcome,
        *,
        filename: str,
        method: str,
        source_url: str | None,
        properties: Mapping[str, str] | None,
        tags: Iterable[str] | None,
        project_id: str | None,
        user_id: str | None,
        context: RequestContext | None,
    ) -> IngestResult:
        context = context or RequestContext()
        try:
            record = await self._create_with_fresh_id(
                content_hash=outcome.digest.hex,
                content_type=outcome.validation.content_type,
                size=outcome.digest.size,
                filename=filename,
                file_metadata=outcome.validation.info.to_metadata(),
                source_url=source_url,
                ingest_context=context.as_ingest_context(method),
                user_id=user_id or self.config.default_user_id,
                project_id=project_id or self.config.default_project_id,
                properties=properties,
                tags=tags,
            )
            stored_properties = await self.repository.get_properties(record.object_key)
            stored_tags = await self.repository.get_tags(record.object_key)
        except SQLAlchemyError as exc:
            logger.exception("Failed to save file record for %s", outcome.digest.hex)
            raise internal_error("Failed to save file record") from exc

        logger.info(
            "ingest:%s external_id=%s hash=%s new_blob=%s",
            method, record.external_id, record.content_hash, outcome.put.stored,
        )
        return IngestResult(
            record=record,
            properties=stored_properties,
            tags=stored_tags,
            stored=outcome.put.stored,
        )

    async def _create_with_fresh_id(self, **fields) -> FileRecord:
        """Insert a record, drawing a new external id when the previous one is taken."""
        for attempt in range(1, MAX_ID_ATTEMPTS + 1):
            external_id = self.new_external_id()
            try:
                return await self.repository.create_file(external_id=external_id, **fields)
            except IntegrityError:
                if attempt == MAX_ID_ATTEMPTS:
                    raise
                logger.warning("external id %s already taken, retrying", external_id)


def _result_or_none(task: asyncio.Task) -> StagedBlob | None:
    if task.done() and not task.cancelled() and task.exception() is None:
        return task.result()
    return None
