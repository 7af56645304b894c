"""
Role resolution across organization and project scope.

A user's effective role on a project is the higher of their direct project
grant and the role inherited from the project's organization. The project
grant wins ties because it is the more specific one. Nothing here is
cached: every answer is recomputed from the membership rows.

All functions take the caller's session. The lock-taking helpers are meant
to run inside ``tolk.core.database.transaction``; scopes are always locked
organization first, then project.
"""

from __future__ import annotations

import uuid
from typing import Optional

import structlog
from sqlalchemy import or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from tolk.core.errors import NotFound
from tolk.models.organization import Organization
from tolk.models.organization_user import OrganizationUser
from tolk.models.project import Project
from tolk.models.project_user import ProjectUser
from tolk.models.user import User
from tolk.schemas.common import Role, RoleSource
from tolk.schemas.memberships import (
    EffectiveRole,
    OrganizationMember,
    OrganizationProjectMember,
    ProjectMember,
)
from tolk.services.roles import higher, roles_below

log = structlog.get_logger()


# ---------------------------------------------------------------------------
# Scope lookup and locking
# ---------------------------------------------------------------------------

async def get_organization(
    org_id: uuid.UUID, session: AsyncSession, *, lock: bool = False
) -> Organization:
    org = await session.get(Organization, org_id, with_for_update=True if lock else None)
    if org is None:
        raise NotFound("Organization not found.")
    return org


async def get_project(
    project_id: uuid.UUID, session: AsyncSession, *, lock: bool = False
) -> Project:
    """Get a project; with ``lock`` its organization row is locked before the project row."""
    project = await session.get(Project, project_id)
    if project is None:
        raise NotFound("Project not found.")
    if lock:
        if project.org_id is not None:
            await get_organization(project.org_id, session, lock=True)
        project = await session.get(Project, project_id, with_for_update=True)
    return project


# ---------------------------------------------------------------------------
# Effective role
# ---------------------------------------------------------------------------

def combine_roles(
    project_role: Optional[Role], organization_role: Optional[Role]
) -> EffectiveRole:
    """Merge a direct project grant with an inherited organization grant."""
    if project_role is None and organization_role is None:
        return EffectiveRole()
    if organization_role is None or (
        project_role is not None and not higher(organization_role, project_role)
    ):
        return EffectiveRole(role=project_role, source=RoleSource.PROJECT)
    return EffectiveRole(role=organization_role, source=RoleSource.ORGANIZATION)


async def organization_role(
    user_id: uuid.UUID, org_id: uuid.UUID, session: AsyncSession
) -> Optional[Role]:
    result = await session.execute(
        select(OrganizationUser.role).where(
            OrganizationUser.org_id == org_id, OrganizationUser.user_id == user_id
        )
    )
    role = result.scalar_one_or_none()
    return Role(role) if role is not None else None


async def project_role(
    user_id: uuid.UUID, project_id: uuid.UUID, session: AsyncSession
) -> Optional[Role]:
    result = await session.execute(
        select(ProjectUser.role).where(
            ProjectUser.project_id == project_id, ProjectUser.user_id == user_id
        )
    )
    role = result.scalar_one_or_none()
    return Role(role) if role is not None else None


async def effective_role(
    user_id: uuid.UUID, project_id: uuid.UUID, session: AsyncSession
) -> EffectiveRole:
    project = await get_project(project_id, session)
    direct = await project_role(user_id, project.id, session)
    inherited = None
    if project.org_id is not None:
        inherited = await organization_role(user_id, project.org_id, session)
    return combine_roles(direct, inherited)


async def role_floor(
    user_id: uuid.UUID, project: Project, session: AsyncSession
) -> Optional[Role]:
    """Lowest role a project-level grant may have: the user's organization role."""
    if project.org_id is None:
        return None
    return await organization_role(user_id, project.org_id, session)


# ---------------------------------------------------------------------------
# Cascading revoke
# ---------------------------------------------------------------------------

async def cascade_revoke(
    user_id: uuid.UUID, org_id: uuid.UUID, new_role: Role, session: AsyncSession
) -> list[ProjectUser]:
    """Delete the user's project grants in ``org_id`` that are below ``new_role``.

    Runs in the transaction of the organization role change. Returns the
    deleted rows.
    """
    below = sorted(role.value for role in roles_below(new_role))
    if not below:
        return []

    result = await session.execute(
        select(ProjectUser)
        .join(Project, Project.id == ProjectUser.project_id)
        .where(
            Project.org_id == org_id,
            ProjectUser.user_id == user_id,
            ProjectUser.role.in_(below),
        )
        .with_for_update(of=ProjectUser)
    )
    revoked = list(result.scalars().all())
    for membership in revoked:
        await session.delete(membership)
    await session.flush()

    if revoked:
        log.info(
            "membership.cascade_revoked",
            user_id=str(user_id),
            org_id=str(org_id),
            new_role=new_role.value,
            project_ids=[str(m.project_id) for m in revoked],
        )
    return revoked


# ---------------------------------------------------------------------------
# Owner / member invariants (locking reads)
# ---------------------------------------------------------------------------

async def locked_organization_memberships(
    org_id: uuid.UUID, session: AsyncSession
) -> list[OrganizationUser]:
    result = await session.execute(
        select(OrganizationUser)
        .where(OrganizationUser.org_id == org_id)
        .with_for_update()
    )
    return list(result.scalars().all())


async def locked_project_memberships(
    project_id: uuid.UUID, session: AsyncSession
) -> list[ProjectUser]:
    result = await session.execute(
        select(ProjectUser)
        .where(ProjectUser.project_id == project_id)
        .with_for_update()
    )
    return list(result.scalars().all())


async def organization_has_owner(org_id: uuid.UUID, session: AsyncSession) -> bool:
    memberships = await locked_organization_memberships(org_id, session)
    return any(m.role == Role.OWNER.value for m in memberships)


async def has_other_owner(
    org_id: uuid.UUID, excluding_user_id: uuid.UUID, session: AsyncSession
) -> bool:
    memberships = await locked_organization_memberships(org_id, session)
    return any(
        m.role == Role.OWNER.value and m.user_id != excluding_user_id
        for m in memberships
    )


async def project_has_other_owner(
    project: Project, excluding_user_id: uuid.UUID, session: AsyncSession
) -> bool:
    """True if the project keeps an owner without ``excluding_user_id``'s project grant.

    Any owner of the project's organization covers the project, even
    without a project-level row.
    """
    if project.org_id is not None and await organization_has_owner(project.org_id, session):
        return True
    memberships = await locked_project_memberships(project.id, session)
    return any(
        m.role == Role.OWNER.value and m.user_id != excluding_user_id
        for m in memberships
    )


async def project_collaborator_ids(
    project: Project, session: AsyncSession
) -> set[uuid.UUID]:
    """Users with a direct project grant or an inherited organization grant."""
    ids = {m.user_id for m in await locked_project_memberships(project.id, session)}
    if project.org_id is not None:
        ids |= {m.user_id for m in await locked_organization_memberships(project.org_id, session)}
    return ids


# ---------------------------------------------------------------------------
# Listings
# ---------------------------------------------------------------------------

def _search_clause(search: Optional[str]):
    pattern = f"%{search}%"
    return or_(User.username.ilike(pattern), User.email.ilike(pattern))


async def list_organization_members(
    org_id: uuid.UUID, session: AsyncSession, search: Optional[str] = None
) -> list[OrganizationMember]:
    stmt = (
        select(User, OrganizationUser.role)
        .join(OrganizationUser, OrganizationUser.user_id == User.id)
        .where(OrganizationUser.org_id == org_id)
        .order_by(User.username)
    )
    if search:
        stmt = stmt.where(_search_clause(search))
    result = await session.execute(stmt)
    return [
        OrganizationMember(user_id=user.id, username=user.username, email=user.email, role=role)
        for user, role in result.all()
    ]


async def list_project_members(
    project_id: uuid.UUID, session: AsyncSession, search: Optional[str] = None
) -> list[ProjectMember]:
    """Every collaborator of the project with their effective role and its source."""
    project = await get_project(project_id, session)

    stmt = (
        select(User, ProjectUser.role)
        .join(ProjectUser, ProjectUser.user_id == User.id)
        .where(ProjectUser.project_id == project.id)
    )
    if search:
        stmt = stmt.where(_search_clause(search))
    result = await session.execute(stmt)
    users: dict[uuid.UUID, User] = {}
    direct: dict[uuid.UUID, Role] = {}
    for user, role in result.all():
        users[user.id] = user
        direct[user.id] = Role(role)

    inherited: dict[uuid.UUID, Role] = {}
    if project.org_id is not None:
        stmt = (
            select(User, OrganizationUser.role)
            .join(OrganizationUser, OrganizationUser.user_id == User.id)
            .where(OrganizationUser.org_id == project.org_id)
        )
        if search:
            stmt = stmt.where(_search_clause(search))
        result = await session.execute(stmt)
        for user, role in result.all():
            users[user.id] = user
            inherited[user.id] = Role(role)

    members = []
    for user_id, user in users.items():
        effective = combine_roles(direct.get(user_id), inherited.get(user_id))
        members.append(
            ProjectMember(
                user_id=user.id,
                username=user.username,
                email=user.email,
                role=effective.role,
                role_source=effective.source,
            )
        )
    members.sort(key=lambda m: m.username)
    return members


async def list_organization_project_members(
    org_id: uuid.UUID, session: AsyncSession, search: Optional[str] = None
) -> list[OrganizationProjectMember]:
    """Direct project grants across all projects of an organization."""
    stmt = (
        select(ProjectUser, Project.name, User)
        .join(Project, Project.id == ProjectUser.project_id)
        .join(User, User.id == ProjectUser.user_id)
        .where(Project.org_id == org_id)
        .order_by(Project.name, User.username)
    )
    if search:
        stmt = stmt.where(_search_clause(search))
    result = await session.execute(stmt)
    return [
        OrganizationProjectMember(
            project_id=membership.project_id,
            project_name=project_name,
            user_id=user.id,
            username=user.username,
            email=user.email,
            role=membership.role,
        )
        for membership, project_name, user in result.all()
    ]
