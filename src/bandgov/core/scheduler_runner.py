"""Scheduled closing of expired proposals.

Provides ``sweep_expired_proposals`` which APScheduler invokes on the cron
cadence defined by ``settings.bandgov_sweep_cron``. Each expired proposal is
closed in its own session so one bad proposal cannot hold back the rest.

Errors are logged but never propagated so the scheduler keeps running.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from bandgov.core.effects import EffectHandlerRegistry
from bandgov.core.errors import GovernanceError
from bandgov.core.event_bus import EventBus
from bandgov.core.executor import DEFAULT_HANDLER_TIMEOUT
from bandgov.core.governance import close_proposal
from bandgov.db.engine import get_session
from bandgov.db.repository import Repository

logger = logging.getLogger(__name__)


async def sweep_expired_proposals(
    engine: AsyncEngine,
    registry: EffectHandlerRegistry,
    event_bus: EventBus | None = None,
    handler_timeout: float = DEFAULT_HANDLER_TIMEOUT,
    now: datetime | None = None,
) -> list[str]:
    """Close every VOTING proposal whose deadline has passed.

    Returns the IDs this sweep actually closed (already-closed proposals and
    failures are skipped).
    """
    now = now or datetime.now(UTC)
    try:
        async with get_session(engine) as session:
            expired = await Repository(session).get_expired_voting_proposal_ids(now)
    except SQLAlchemyError:
        logger.exception("sweep_query_failed")
        return []

    if not expired:
        logger.debug("sweep_idle")
        return []

    closed: list[str] = []
    for proposal_id in expired:
        try:
            async with get_session(engine) as session:
                result = await close_proposal(
                    Repository(session),
                    registry,
                    proposal_id,
                    now=now,
                    handler_timeout=handler_timeout,
                    event_bus=event_bus,
                )
        except (GovernanceError, SQLAlchemyError):
            logger.exception("sweep_close_failed proposal=%s", proposal_id)
            continue
        if result.already_closed:
            continue
        closed.append(proposal_id)
        logger.info(
            "sweep_closed proposal=%s status=%s", proposal_id, result.proposal.status
        )

    logger.info("sweep_complete expired=%d closed=%d", len(expired), len(closed))
    return closed
