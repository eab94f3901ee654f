"""Import all models so SQLAlchemy metadata knows about them."""
from gleaming.models.base import Base
from gleaming.models.file_record import FileRecord
from gleaming.models.property import Property, TAG_PREFIX, TAG_VALUE

__all__ = ["Base", "FileRecord", "Property", "TAG_PREFIX", "TAG_VALUE"]
