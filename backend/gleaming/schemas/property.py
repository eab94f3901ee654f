"""Property and tag request/response schemas."""
from pydantic import BaseModel

from gleaming.schemas.base import CamelModel


class PropertyValue(BaseModel):
    value: str


class PropertyResponse(CamelModel):
    key: str
    value: str


class TagsResponse(CamelModel):
    tags: list[str]
