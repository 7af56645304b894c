"""
Membership store: the only writer of organization and project grants.

Every mutation runs in one transaction that locks the scope rows, re-reads
the memberships it validates against, and commits only a state in which
each organization (and each project, directly or through its organization)
keeps an owner. Events collected during the transaction are published
after the commit.
"""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from typing import Optional, Union

import structlog
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from tolk.core.database import read_session, transaction
from tolk.core.errors import (
    AlreadyMember,
    FeatureNotAvailable,
    LastOwnerCannotBeRemoved,
    LastOwnerCannotChangeRole,
    LastUserCannotLeave,
    NoRoleGiven,
    NotFound,
    ProjectRoleBelowOrganizationRole,
    UserNotFound,
)
from tolk.core.events import MembershipEventBus, default_event_bus
from tolk.core.features import FeatureGate, StaticFeatureGate
from tolk.models.organization_invite import OrganizationInvite
from tolk.models.organization_user import OrganizationUser
from tolk.models.project_user import ProjectUser
from tolk.models.user import User
from tolk.schemas.common import DEFAULT_ROLE, Role
from tolk.schemas.memberships import (
    EffectiveRole,
    MembershipEvent,
    MembershipEventType,
    OrganizationMember,
    OrganizationProjectMember,
    ProjectMember,
)
from tolk.services import resolver
from tolk.services.roles import higher, max_role, parse_role

log = structlog.get_logger()

RoleInput = Union[str, Role, None]


async def find_user_by_email(email: str, session: AsyncSession) -> User:
    result = await session.execute(
        select(User).where(func.lower(User.email) == email.strip().lower())
    )
    user = result.scalar_one_or_none()
    if user is None:
        raise UserNotFound()
    return user


async def get_user(user_id: uuid.UUID, session: AsyncSession) -> User:
    user = await session.get(User, user_id)
    if user is None:
        raise UserNotFound("User not found.")
    return user


class MembershipStore:
    """Commands and queries on organization and project memberships."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        feature_gate: FeatureGate | None = None,
        events: MembershipEventBus | None = None,
    ):
        self._session_factory = session_factory
        self.feature_gate = feature_gate or StaticFeatureGate()
        self.events = events or default_event_bus()

    @asynccontextmanager
    async def unit_of_work(self):
        """Yield ``(session, pending_events)``; events are published after commit."""
        pending: list[MembershipEvent] = []
        async with transaction(self._session_factory) as session:
            yield session, pending
        await self.events.publish(pending)

    def read_session(self):
        return read_session(self._session_factory)

    async def _checked_role(
        self, org_id: Optional[uuid.UUID], role: RoleInput, default: Optional[Role] = None
    ) -> Role:
        """Consult the feature gate, then parse the requested role.

        Only ``owner`` passes a disabled gate; a missing or unknown role is
        rejected by the gate before it is validated.
        """
        if role != Role.OWNER and not await self.feature_gate.is_permission_system_enabled(org_id):
            raise FeatureNotAvailable()
        if role is None and default is None:
            raise NoRoleGiven()
        return parse_role(role, default=default)

    async def _project_org_id(self, project_id: uuid.UUID) -> Optional[uuid.UUID]:
        async with self.read_session() as session:
            project = await resolver.get_project(project_id, session)
            return project.org_id

    async def _user_id_by_email(self, email: str) -> uuid.UUID:
        async with self.read_session() as session:
            user = await find_user_by_email(email, session)
            return user.id

    # ------------------------------------------------------------------
    # Organization scope
    # ------------------------------------------------------------------

    async def grant_organization_role(
        self,
        org_id: uuid.UUID,
        user_id: uuid.UUID,
        role: Role,
        session: AsyncSession,
        pending: list[MembershipEvent],
        actor_id: Optional[uuid.UUID] = None,
    ) -> OrganizationUser:
        """Insert an organization membership inside an open unit of work.

        The organization row must already be locked. Pending invites for the
        user's email are discarded and lower project grants revoked.
        """
        user = await get_user(user_id, session)
        existing = await session.get(OrganizationUser, (org_id, user_id), with_for_update=True)
        if existing is not None:
            raise AlreadyMember()

        membership = OrganizationUser(org_id=org_id, user_id=user_id, role=role.value)
        session.add(membership)
        try:
            await session.flush()
        except IntegrityError as exc:
            raise AlreadyMember() from exc

        result = await session.execute(
            select(OrganizationInvite).where(
                OrganizationInvite.org_id == org_id,
                func.lower(OrganizationInvite.email) == user.email.lower(),
            )
        )
        for invite in result.scalars().all():
            await session.delete(invite)

        revoked = await resolver.cascade_revoke(user_id, org_id, role, session)

        pending.append(
            MembershipEvent(
                type=MembershipEventType.ORGANIZATION_MEMBER_ADDED,
                org_id=org_id,
                user_id=user_id,
                role=role,
                actor_id=actor_id,
            )
        )
        pending.extend(self._revocation_events(revoked, org_id, actor_id))
        log.info("organization_member.added", org_id=str(org_id), user_id=str(user_id), role=role.value)
        return membership

    async def add_organization_member(
        self,
        org_id: uuid.UUID,
        user_id: uuid.UUID,
        role: RoleInput = None,
        actor_id: Optional[uuid.UUID] = None,
    ) -> OrganizationUser:
        new_role = await self._checked_role(org_id, role, default=DEFAULT_ROLE)

        async with self.unit_of_work() as (session, pending):
            await resolver.get_organization(org_id, session, lock=True)
            return await self.grant_organization_role(
                org_id, user_id, new_role, session, pending, actor_id=actor_id
            )

    async def add_organization_member_by_email(
        self,
        org_id: uuid.UUID,
        email: str,
        role: RoleInput = None,
        actor_id: Optional[uuid.UUID] = None,
    ) -> OrganizationUser:
        user_id = await self._user_id_by_email(email)
        return await self.add_organization_member(org_id, user_id, role, actor_id=actor_id)

    async def update_organization_member_role(
        self,
        org_id: uuid.UUID,
        user_id: uuid.UUID,
        role: RoleInput,
        actor_id: Optional[uuid.UUID] = None,
    ) -> OrganizationUser:
        new_role = await self._checked_role(org_id, role)

        async with self.unit_of_work() as (session, pending):
            await resolver.get_organization(org_id, session, lock=True)
            membership = await session.get(OrganizationUser, (org_id, user_id), with_for_update=True)
            if membership is None:
                raise NotFound("User is not a member of this organization.")

            role_before_update = Role(membership.role)
            if (
                role_before_update == Role.OWNER
                and new_role != Role.OWNER
                and not await resolver.has_other_owner(org_id, user_id, session)
            ):
                raise LastOwnerCannotChangeRole()

            membership.role = new_role.value
            session.add(membership)
            await session.flush()

            revoked: list[ProjectUser] = []
            if higher(new_role, role_before_update):
                revoked = await resolver.cascade_revoke(user_id, org_id, new_role, session)

            pending.append(
                MembershipEvent(
                    type=MembershipEventType.ORGANIZATION_MEMBER_ROLE_UPDATED,
                    org_id=org_id,
                    user_id=user_id,
                    role=new_role,
                    previous_role=role_before_update,
                    actor_id=actor_id,
                )
            )
            pending.extend(self._revocation_events(revoked, org_id, actor_id))

        log.info(
            "organization_member.role_updated",
            org_id=str(org_id),
            user_id=str(user_id),
            role=new_role.value,
            previous_role=role_before_update.value,
        )
        return membership

    async def remove_organization_member(
        self,
        org_id: uuid.UUID,
        user_id: uuid.UUID,
        actor_id: Optional[uuid.UUID] = None,
    ) -> OrganizationUser:
        async with self.unit_of_work() as (session, pending):
            await resolver.get_organization(org_id, session, lock=True)
            membership = await session.get(OrganizationUser, (org_id, user_id), with_for_update=True)
            if membership is None:
                raise NotFound("User is not a member of this organization.")

            memberships = await resolver.locked_organization_memberships(org_id, session)
            if len(memberships) == 1:
                raise LastUserCannotLeave()
            if membership.role == Role.OWNER.value and not await resolver.has_other_owner(
                org_id, user_id, session
            ):
                raise LastOwnerCannotBeRemoved()

            await session.delete(membership)
            await session.flush()
            pending.append(
                MembershipEvent(
                    type=MembershipEventType.ORGANIZATION_MEMBER_REMOVED,
                    org_id=org_id,
                    user_id=user_id,
                    previous_role=Role(membership.role),
                    actor_id=actor_id,
                )
            )

        log.info("organization_member.removed", org_id=str(org_id), user_id=str(user_id))
        return membership

    # ------------------------------------------------------------------
    # Project scope
    # ------------------------------------------------------------------

    async def add_project_member(
        self,
        project_id: uuid.UUID,
        user_id: uuid.UUID,
        role: RoleInput = None,
        actor_id: Optional[uuid.UUID] = None,
    ) -> ProjectUser:
        requested = await self._checked_role(
            await self._project_org_id(project_id), role, default=DEFAULT_ROLE
        )

        async with self.unit_of_work() as (session, pending):
            project = await resolver.get_project(project_id, session, lock=True)
            await get_user(user_id, session)
            existing = await session.get(ProjectUser, (project_id, user_id), with_for_update=True)
            if existing is not None:
                raise AlreadyMember()

            # Default is the organization role; a higher requested role wins.
            default = await resolver.role_floor(user_id, project, session) or DEFAULT_ROLE
            stored = max_role(requested, default)

            membership = ProjectUser(project_id=project_id, user_id=user_id, role=stored.value)
            session.add(membership)
            try:
                await session.flush()
            except IntegrityError as exc:
                raise AlreadyMember() from exc

            pending.append(
                MembershipEvent(
                    type=MembershipEventType.PROJECT_MEMBER_ADDED,
                    org_id=project.org_id,
                    project_id=project_id,
                    user_id=user_id,
                    role=stored,
                    actor_id=actor_id,
                )
            )

        log.info(
            "project_member.added",
            project_id=str(project_id),
            user_id=str(user_id),
            role=stored.value,
        )
        return membership

    async def add_project_member_by_email(
        self,
        project_id: uuid.UUID,
        email: str,
        role: RoleInput = None,
        actor_id: Optional[uuid.UUID] = None,
    ) -> ProjectUser:
        user_id = await self._user_id_by_email(email)
        return await self.add_project_member(project_id, user_id, role, actor_id=actor_id)

    async def update_project_member_role(
        self,
        project_id: uuid.UUID,
        user_id: uuid.UUID,
        role: RoleInput,
        actor_id: Optional[uuid.UUID] = None,
    ) -> ProjectUser:
        """Set a user's project role, creating the project grant if there is none yet."""
        new_role = await self._checked_role(await self._project_org_id(project_id), role)

        async with self.unit_of_work() as (session, pending):
            project = await resolver.get_project(project_id, session, lock=True)
            await get_user(user_id, session)

            floor = await resolver.role_floor(user_id, project, session)
            if floor is not None and higher(floor, new_role):
                raise ProjectRoleBelowOrganizationRole()

            membership = await session.get(ProjectUser, (project_id, user_id), with_for_update=True)
            role_before_update = Role(membership.role) if membership is not None else None
            if (
                role_before_update == Role.OWNER
                and new_role != Role.OWNER
                and not await resolver.project_has_other_owner(project, user_id, session)
            ):
                raise LastOwnerCannotChangeRole()

            if membership is None:
                membership = ProjectUser(project_id=project_id, user_id=user_id, role=new_role.value)
            else:
                membership.role = new_role.value
            session.add(membership)
            await session.flush()

            pending.append(
                MembershipEvent(
                    type=(
                        MembershipEventType.PROJECT_MEMBER_ADDED
                        if role_before_update is None
                        else MembershipEventType.PROJECT_MEMBER_ROLE_UPDATED
                    ),
                    org_id=project.org_id,
                    project_id=project_id,
                    user_id=user_id,
                    role=new_role,
                    previous_role=role_before_update,
                    actor_id=actor_id,
                )
            )

        log.info(
            "project_member.role_updated",
            project_id=str(project_id),
            user_id=str(user_id),
            role=new_role.value,
            previous_role=role_before_update.value if role_before_update else None,
        )
        return membership

    async def remove_project_member(
        self,
        project_id: uuid.UUID,
        user_id: uuid.UUID,
        actor_id: Optional[uuid.UUID] = None,
    ) -> ProjectUser:
        """Delete a user's direct project grant.

        Whether the actor may remove someone else is decided by
        ``tolk.policies``; the invariants below apply to self-removal too.
        """
        async with self.unit_of_work() as (session, pending):
            project = await resolver.get_project(project_id, session, lock=True)
            membership = await session.get(ProjectUser, (project_id, user_id), with_for_update=True)
            if membership is None:
                raise NotFound("User is not a member of this project.")

            # The single-member check takes precedence over the owner check.
            if await resolver.project_collaborator_ids(project, session) == {user_id}:
                raise LastUserCannotLeave()
            if membership.role == Role.OWNER.value and not await resolver.project_has_other_owner(
                project, user_id, session
            ):
                raise LastOwnerCannotBeRemoved()

            await session.delete(membership)
            await session.flush()
            pending.append(
                MembershipEvent(
                    type=MembershipEventType.PROJECT_MEMBER_REMOVED,
                    org_id=project.org_id,
                    project_id=project_id,
                    user_id=user_id,
                    previous_role=Role(membership.role),
                    actor_id=actor_id,
                )
            )

        log.info("project_member.removed", project_id=str(project_id), user_id=str(user_id))
        return membership

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def effective_role(self, user_id: uuid.UUID, project_id: uuid.UUID) -> EffectiveRole:
        async with self.read_session() as session:
            return await resolver.effective_role(user_id, project_id, session)

    async def list_organization_members(
        self, org_id: uuid.UUID, search: Optional[str] = None
    ) -> list[OrganizationMember]:
        async with self.read_session() as session:
            await resolver.get_organization(org_id, session)
            return await resolver.list_organization_members(org_id, session, search)

    async def list_project_members(
        self, project_id: uuid.UUID, search: Optional[str] = None
    ) -> list[ProjectMember]:
        async with self.read_session() as session:
            return await resolver.list_project_members(project_id, session, search)

    async def list_organization_project_members(
        self, org_id: uuid.UUID, search: Optional[str] = None
    ) -> list[OrganizationProjectMember]:
        async with self.read_session() as session:
            await resolver.get_organization(org_id, session)
            return await resolver.list_organization_project_members(org_id, session, search)

    @staticmethod
    def _revocation_events(
        revoked: list[ProjectUser], org_id: uuid.UUID, actor_id: Optional[uuid.UUID]
    ) -> list[MembershipEvent]:
        return [
            MembershipEvent(
                type=MembershipEventType.PROJECT_MEMBER_REVOKED,
                org_id=org_id,
                project_id=m.project_id,
                user_id=m.user_id,
                previous_role=Role(m.role),
                actor_id=actor_id,
            )
            for m in revoked
        ]
