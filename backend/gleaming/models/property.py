"""Property model - open key/value attributes attached to a stored file.

Tags are properties whose key starts with TAG_PREFIX and whose value is TAG_VALUE.
"""
from sqlalchemy import String, Text, Index, PrimaryKeyConstraint
from sqlalchemy.orm import Mapped, mapped_column
from gleaming.models.base import Base, TimestampMixin, OwnerMixin

TAG_PREFIX = "tag_"
TAG_VALUE = "1"


class Property(Base, TimestampMixin, OwnerMixin):
    __tablename__ = "properties"

    id: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    object_key: Mapped[str] = mapped_column(String(64), nullable=False)
    key: Mapped[str] = mapped_column(String(255), nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (
        PrimaryKeyConstraint("object_key", "key", name="pk_properties"),
        Index("idx_properties_object", "object_key"),
        Index("idx_properties_project_key_value", "project_id", "key", "value"),
        Index("idx_properties_user_key_value", "user_id", "key", "value"),
        Index("idx_properties_value", "value"),
        Index("idx_properties_tag", "key", "object_key"),
    )
