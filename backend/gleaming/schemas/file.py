"""File request/response schemas."""
from datetime import datetime
from typing import Any, Optional

from pydantic import Field, field_validator

from gleaming.schemas.base import CamelModel, CamelORMModel


def split_tags(value: Any) -> list[str]:
    """Accept a list or a comma separated string of tags."""
    if value is None:
        return []
    if isinstance(value, str):
        value = value.split(",")
    return [t.strip() for t in value if t and t.strip()]


class IngestRequest(CamelModel):
    url: str
    filename: Optional[str] = None
    project_id: Optional[str] = None
    properties: dict[str, str] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)

    @field_validator("tags", mode="before")
    @classmethod
    def _tags(cls, value):
        return split_tags(value)


class FileResponse(CamelORMModel):
    """Public view of a FileRecord. ``id`` is the external id."""
    id: str
    content_hash: str
    content_type: str
    size: int
    filename: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    source_url: Optional[str] = None
    project_id: str
    created_at: datetime
    properties: dict[str, str] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)
