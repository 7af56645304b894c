"""Membership value types returned by the engine."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .common import Role, RoleSource


class EffectiveRole(BaseModel):
    """Role a user holds on a project after combining direct and inherited grants."""
    model_config = ConfigDict(frozen=True)

    role: Optional[Role] = None
    source: RoleSource = RoleSource.NONE


class OrganizationMember(BaseModel):
    user_id: uuid.UUID
    username: str
    email: str
    role: Role


class ProjectMember(BaseModel):
    user_id: uuid.UUID
    username: str
    email: str
    role: Role
    role_source: RoleSource


class OrganizationProjectMember(BaseModel):
    """Direct project grant inside an organization."""
    project_id: uuid.UUID
    project_name: str
    user_id: uuid.UUID
    username: str
    email: str
    role: Role


class MembershipEventType(str, Enum):
    ORGANIZATION_MEMBER_ADDED = "organization_member.added"
    ORGANIZATION_MEMBER_ROLE_UPDATED = "organization_member.role_updated"
    ORGANIZATION_MEMBER_REMOVED = "organization_member.removed"
    PROJECT_MEMBER_ADDED = "project_member.added"
    PROJECT_MEMBER_ROLE_UPDATED = "project_member.role_updated"
    PROJECT_MEMBER_REMOVED = "project_member.removed"
    PROJECT_MEMBER_REVOKED = "project_member.revoked"
    INVITE_CREATED = "invite.created"
    INVITE_ACCEPTED = "invite.accepted"
    INVITE_CANCELLED = "invite.cancelled"


class MembershipEvent(BaseModel):
    """Emitted after a membership mutation has been committed.

    ``id`` is unique per event so consumers can deduplicate redeliveries.
    """
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    type: MembershipEventType
    org_id: Optional[uuid.UUID] = None
    project_id: Optional[uuid.UUID] = None
    user_id: Optional[uuid.UUID] = None
    role: Optional[Role] = None
    previous_role: Optional[Role] = None
    email: Optional[str] = None
    actor_id: Optional[uuid.UUID] = None
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
