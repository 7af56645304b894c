"""
Feature gate: whether an organization's plan includes the permission system.

Without it, only owner versus non-owner is distinguished and role
assignments other than ``owner`` are rejected.
"""

from __future__ import annotations

import uuid
from typing import Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tolk.core.config import get_settings
from tolk.core.database import read_session
from tolk.models.organization import Organization

PERMISSION_SYSTEM = "permission_system"


class FeatureGate(Protocol):
    async def is_permission_system_enabled(self, org_id: Optional[uuid.UUID]) -> bool:
        ...


class StaticFeatureGate:
    """Same answer for every organization."""

    def __init__(self, enabled: Optional[bool] = None):
        self.enabled = get_settings().permission_system_enabled if enabled is None else enabled

    async def is_permission_system_enabled(self, org_id: Optional[uuid.UUID]) -> bool:
        return self.enabled


class OrganizationSettingsFeatureGate:
    """Reads ``settings["features"]["permission_system"]`` of the organization."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        default: Optional[bool] = None,
    ):
        self._session_factory = session_factory
        self.default = get_settings().permission_system_enabled if default is None else default

    async def is_permission_system_enabled(self, org_id: Optional[uuid.UUID]) -> bool:
        if org_id is None:
            return self.default
        async with read_session(self._session_factory) as session:
            org = await session.get(Organization, org_id)
        if org is None:
            return self.default
        features = (org.settings or {}).get("features", {})
        return bool(features.get(PERMISSION_SYSTEM, self.default))
