"""
Shared fixtures: in-memory SQLite database, store wiring and row factories.
"""

from __future__ import annotations

import itertools
from typing import Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, select

import tolk.models  # noqa: F401
from tolk.core.events import MembershipEventBus
from tolk.core.features import StaticFeatureGate
from tolk.models import (
    Organization,
    OrganizationInvite,
    OrganizationUser,
    Project,
    ProjectUser,
    User,
)
from tolk.schemas.common import Role
from tolk.services.invites import InviteService
from tolk.services.memberships import MembershipStore


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture
async def engine():
    eng = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with eng.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


# ---------------------------------------------------------------------------
# Engine wiring
# ---------------------------------------------------------------------------

@pytest.fixture
def published():
    """Events delivered to the post-commit hook, in order."""
    return []


@pytest.fixture
def event_bus(published):
    async def record(event):
        published.append(event)

    return MembershipEventBus([record], retry_delay=0)


@pytest.fixture
def store(session_factory, event_bus):
    return MembershipStore(session_factory, StaticFeatureGate(True), event_bus)


@pytest.fixture
def invites(store):
    return InviteService(store)


# ---------------------------------------------------------------------------
# Row factories (bypass the store to set up arbitrary states)
# ---------------------------------------------------------------------------

class Factory:
    _seq = itertools.count(1)

    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def _save(self, obj):
        async with self._session_factory() as session:
            session.add(obj)
            await session.commit()
        return obj

    async def user(self, username: Optional[str] = None, email: Optional[str] = None) -> User:
        n = next(self._seq)
        username = username or f"user{n}"
        return await self._save(User(username=username, email=email or f"{username}@example.com"))

    async def organization(self, name: str = "Acme", settings: Optional[dict] = None) -> Organization:
        return await self._save(Organization(name=name, settings=settings or {}))

    async def project(self, org: Optional[Organization] = None, name: str = "Website") -> Project:
        return await self._save(Project(org_id=org.id if org else None, name=name))

    async def org_member(self, org: Organization, user: User, role: Role) -> OrganizationUser:
        return await self._save(OrganizationUser(org_id=org.id, user_id=user.id, role=role.value))

    async def project_member(self, project: Project, user: User, role: Role) -> ProjectUser:
        return await self._save(ProjectUser(project_id=project.id, user_id=user.id, role=role.value))

    async def invite(self, org: Organization, email: str, role: Role = Role.TRANSLATOR) -> OrganizationInvite:
        return await self._save(OrganizationInvite(org_id=org.id, email=email, role=role.value))

    async def project_rows(self, user: User) -> list[ProjectUser]:
        async with self._session_factory() as session:
            result = await session.execute(select(ProjectUser).where(ProjectUser.user_id == user.id))
            return list(result.scalars().all())

    async def get(self, model, ident):
        async with self._session_factory() as session:
            return await session.get(model, ident)


@pytest.fixture
def factory(session_factory):
    return Factory(session_factory)
