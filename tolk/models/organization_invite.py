"""Pending organization invite, addressed by email."""

import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import TimestampMixin, UUIDMixin


class OrganizationInvite(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "organization_invites"
    __table_args__ = (sa.UniqueConstraint("org_id", "email", name="uq_organization_invites_org_email"),)

    org_id: uuid.UUID = Field(foreign_key="organizations.id", nullable=False, index=True)
    email: str = Field(nullable=False, index=True)
    role: str = Field(nullable=False, default="translator")
