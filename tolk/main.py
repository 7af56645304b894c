"""
Membership engine wiring.

Builds the store and invite service from settings and attaches them to a
host FastAPI application.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog
from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tolk.core.config import get_settings
from tolk.core.errors import install_error_handlers
from tolk.core.events import default_event_bus
from tolk.core.features import FeatureGate
from tolk.core.logging import configure_logging
from tolk.core.redis import close_redis
from tolk.services.invites import InviteService
from tolk.services.memberships import MembershipStore

log = structlog.get_logger()


@dataclass
class MembershipServices:
    store: MembershipStore
    invites: InviteService


def create_services(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    feature_gate: FeatureGate | None = None,
) -> MembershipServices:
    """Configure logging and build the engine's services."""
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)

    store = MembershipStore(session_factory, feature_gate, default_event_bus())
    log.info(
        "membership_engine.configured",
        publish_events_to_redis=settings.publish_events_to_redis,
        permission_system_enabled=settings.permission_system_enabled,
    )
    return MembershipServices(store=store, invites=InviteService(store))


def install(app: FastAPI, services: MembershipServices | None = None) -> MembershipServices:
    """Register error handlers and expose the services on ``app.state``."""
    services = services or create_services()
    install_error_handlers(app)
    app.state.memberships = services.store
    app.state.invites = services.invites
    return services


async def shutdown() -> None:
    log.info("membership_engine.shutting_down")
    await close_redis()
