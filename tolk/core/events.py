"""
Post-commit membership events.

The store collects ``MembershipEvent`` objects while a mutation runs and
hands them to the bus only after the transaction committed. A failing hook
is retried up to ``event_hook_attempts`` times, so hooks must be
idempotent: an event may be delivered more than once.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Sequence
from typing import Optional

import structlog

from tolk.core.config import get_settings
from tolk.core.redis import get_redis
from tolk.schemas.memberships import MembershipEvent

log = structlog.get_logger()

MembershipHook = Callable[[MembershipEvent], Awaitable[None]]


class MembershipEventBus:
    """Fan-out of committed membership events to registered hooks."""

    def __init__(
        self,
        hooks: Iterable[MembershipHook] = (),
        attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ):
        settings = get_settings()
        self._hooks: list[MembershipHook] = list(hooks)
        self.attempts = max(1, settings.event_hook_attempts if attempts is None else attempts)
        self.retry_delay = settings.event_hook_retry_delay if retry_delay is None else retry_delay

    def subscribe(self, hook: MembershipHook) -> MembershipHook:
        self._hooks.append(hook)
        return hook

    async def publish(self, events: Sequence[MembershipEvent]) -> None:
        for event in events:
            for hook in self._hooks:
                await self._deliver(hook, event)

    async def _deliver(self, hook: MembershipHook, event: MembershipEvent) -> None:
        name = getattr(hook, "__name__", repr(hook))
        for attempt in range(1, self.attempts + 1):
            try:
                await hook(event)
                return
            except Exception as exc:
                if attempt < self.attempts:
                    log.info(
                        "membership.hook_retry",
                        hook=name,
                        event_id=str(event.id),
                        attempt=attempt,
                        error=str(exc),
                    )
                    await asyncio.sleep(self.retry_delay * attempt)
                    continue
                # Already committed; remaining hooks still run.
                log.warning(
                    "membership.hook_failed",
                    hook=name,
                    event_id=str(event.id),
                    event_type=event.type.value,
                    attempts=self.attempts,
                    error=str(exc),
                )


def redis_publisher(channel: str) -> MembershipHook:
    """Hook that publishes each event as JSON on a Redis Pub/Sub channel."""

    async def publish_to_redis(event: MembershipEvent) -> None:
        redis = await get_redis()
        await redis.publish(channel, event.model_dump_json())

    return publish_to_redis


def default_event_bus() -> MembershipEventBus:
    """Bus wired from settings: Redis publishing when enabled, otherwise no hooks."""
    settings = get_settings()
    bus = MembershipEventBus()
    if settings.publish_events_to_redis:
        bus.subscribe(redis_publisher(settings.membership_events_channel))
    return bus
