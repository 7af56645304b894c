"""Project model."""

from typing import Optional
import uuid

from sqlmodel import Field, SQLModel

from .base import TimestampMixin, UUIDMixin


class Project(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "projects"

    # NULL only for legacy personal projects created before organizations
    org_id: Optional[uuid.UUID] = Field(default=None, foreign_key="organizations.id", index=True)
    name: str = Field(nullable=False)
