"""FileRecord model - one row per ingestion event (bytes live in the content store)."""
import uuid
from datetime import datetime
from sqlalchemy import String, BigInteger, JSON, Text, DateTime, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from gleaming.models.base import Base, TimestampMixin, OwnerMixin


class FileRecord(Base, TimestampMixin, OwnerMixin):
    __tablename__ = "files"

    # Internal key, never exposed through the API
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    external_id: Mapped[str] = mapped_column(String(32), nullable=False, unique=True, index=True)

    # Many records may share one content hash
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    content_type: Mapped[str] = mapped_column(String(100), nullable=False)
    size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    file_metadata: Mapped[dict] = mapped_column(JSON, default=dict)

    source_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    ingest_context: Mapped[dict] = mapped_column(JSON, default=dict)  # method, client ip, user agent

    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def object_key(self) -> str:
        """Key that properties and tags are attached to."""
        return str(self.id)
