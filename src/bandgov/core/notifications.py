"""Governance audit events and member-facing notifications.

``record_event`` appends to the governance event log and announces the
transition on the EventBus after the transaction commits.
``NotificationDispatcher`` drains the bus in the background and hands each
envelope to a delivery callable (email, push, or just the log in development).

Notification problems never fail a governance action: they are logged and
counted, nothing more.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from bandgov.core.event_bus import Envelope, EventBus
from bandgov.db.engine import after_commit

if TYPE_CHECKING:
    from bandgov.db.models import GovernanceEventRow, ProposalRow
    from bandgov.db.repository import Repository

logger = logging.getLogger(__name__)

Deliver = Callable[[Envelope], Awaitable[None]]


async def publish_safely(
    event_bus: EventBus | None, event_type: str, data: dict[str, Any]
) -> None:
    """Publish, logging instead of raising if anything goes wrong."""
    if event_bus is None:
        return
    try:
        await event_bus.publish(event_type, data)
    except Exception:  # notifications must never break the caller
        logger.exception("notification_publish_failed type=%s", event_type)


async def record_event(
    repo: Repository,
    event_type: str,
    proposal: ProposalRow,
    payload: dict[str, Any] | None = None,
    *,
    actor_id: str | None = None,
    event_bus: EventBus | None = None,
) -> GovernanceEventRow:
    """Append an audit event for ``proposal``.

    The event is published once the surrounding transaction commits and is
    dropped if it rolls back.
    """
    payload = payload or {}
    row = await repo.append_event(
        event_type=event_type,
        proposal_id=proposal.id,
        band_id=proposal.band_id,
        payload=payload,
        actor_id=actor_id,
    )
    if event_bus is not None:
        data = {
            "proposal_id": proposal.id,
            "band_id": proposal.band_id,
            "actor_id": actor_id,
            "sequence_number": row.sequence_number,
            **payload,
        }
        after_commit(repo.session, functools.partial(publish_safely, event_bus, event_type, data))
    return row


async def log_delivery(envelope: Envelope) -> None:
    data = envelope.get("data", {})
    logger.info(
        "notification type=%s proposal=%s band=%s",
        envelope.get("type"),
        data.get("proposal_id"),
        data.get("band_id"),
    )


class NotificationDispatcher:
    """Background consumer of every governance event on the bus."""

    def __init__(self, event_bus: EventBus, deliver: Deliver | None = None) -> None:
        self._bus = event_bus
        self._deliver = deliver or log_delivery
        self._task: asyncio.Task[None] | None = None
        self.delivered = 0
        self.failed = 0

    async def run(self) -> None:
        async with self._bus.subscribe() as subscription:
            async for envelope in subscription:
                await self.dispatch(envelope)

    async def dispatch(self, envelope: Envelope) -> None:
        try:
            await self._deliver(envelope)
        except Exception:
            self.failed += 1
            logger.exception("notification_delivery_failed type=%s", envelope.get("type"))
        else:
            self.delivered += 1

    def start(self) -> asyncio.Task[None]:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="notification-dispatcher")
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
