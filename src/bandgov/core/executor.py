"""Effect Executor: applies an approved proposal's effects and logs the attempt.

Contract:
- Idempotent: a proposal with a SUCCESS log is never executed again; the
  existing log is returned instead.
- Effects run sequentially in declared order, each in its own SAVEPOINT and
  under a timeout. The first failure halts the batch. Earlier successes are
  NOT rolled back (see DESIGN.md for the trade-off).
- Exactly one execution log row is written per invocation.
- No automatic retry. EXECUTION_FAILED proposals wait for an operator.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from bandgov.core.effects import (
    DEFAULT_HANDLER_TIMEOUT,
    EffectContext,
    EffectHandlerRegistry,
    parse_payload,
    validate_effects,
)
from bandgov.core.errors import HandlerExecutionError, NotFoundError, StateTransitionError
from bandgov.core.notifications import record_event
from bandgov.models.governance import EffectOutcome, ExecutionResult, ExecutionStatus

if TYPE_CHECKING:
    from bandgov.core.event_bus import EventBus
    from bandgov.db.repository import Repository

logger = logging.getLogger(__name__)


async def _apply_one(
    registry: EffectHandlerRegistry,
    repo: Repository,
    ctx: EffectContext,
    subtype: str | None,
    raw: dict[str, Any],
    handler_timeout: float,
) -> dict[str, Any]:
    """Apply a single effect inside a savepoint. Raises on any failure."""
    handler = registry.get(subtype, raw.get("type", ""))
    if handler is None:
        raise HandlerExecutionError(f'No handler registered for effect type "{raw.get("type")}"')
    payload = parse_payload(handler, raw.get("payload") or {})
    async with repo.session.begin_nested():
        return await asyncio.wait_for(handler.apply(payload, ctx), timeout=handler_timeout)


def _overall_status(outcomes: list[EffectOutcome]) -> ExecutionStatus:
    if all(o.succeeded for o in outcomes):
        return "SUCCESS"
    if any(o.succeeded for o in outcomes):
        return "PARTIAL"
    return "FAILED"


async def execute_and_log_effects(
    repo: Repository,
    registry: EffectHandlerRegistry,
    proposal_id: str,
    acting_user_id: str | None = None,
    *,
    handler_timeout: float = DEFAULT_HANDLER_TIMEOUT,
    event_bus: EventBus | None = None,
) -> ExecutionResult:
    """Execute an APPROVED proposal's effects and record exactly one log row.

    Raises:
        NotFoundError: the proposal does not exist.
        StateTransitionError: the proposal is not APPROVED (and has no
            successful execution to return), or another executor claimed it.
    """
    previous = await repo.get_successful_execution_log(proposal_id)
    if previous is not None:
        logger.info("execution_cached proposal=%s log=%s", proposal_id, previous.id)
        return ExecutionResult(
            success=True,
            status="SUCCESS",
            effects_executed=list(previous.effects_executed or []),
            log_id=previous.id,
            cached=True,
        )

    proposal = await repo.get_proposal(proposal_id)
    if proposal is None:
        raise NotFoundError(f"Proposal {proposal_id} not found")
    if proposal.status != "APPROVED":
        logger.error(
            "execution_refused proposal=%s status=%s", proposal_id, proposal.status
        )
        raise StateTransitionError(
            f"Proposal {proposal_id} is {proposal.status}; only APPROVED proposals execute"
        )

    # Claim the proposal before any savepoint is opened.
    claimed = await repo.transition_proposal(proposal_id, ["APPROVED"], "EXECUTING")
    if not claimed:
        raise StateTransitionError(f"Proposal {proposal_id} was claimed by another executor")
    await record_event(
        repo, "proposal.executing", proposal, actor_id=acting_user_id, event_bus=event_bus
    )

    effects: list[dict[str, Any]] = list(proposal.effects or [])
    subtype = proposal.execution_subtype
    ctx = EffectContext(
        repo=repo,
        band_id=proposal.band_id,
        proposal_id=proposal_id,
        acting_user_id=acting_user_id or "",
    )

    outcomes: list[EffectOutcome] = []
    error: str | None = None

    now = datetime.now(UTC)
    if effects and proposal.effects_validated_at is None:
        error = "Effects were never validated; refusing to execute"
        logger.error("execution_unvalidated proposal=%s", proposal_id)
    elif effects:
        # Band state may have moved since creation; never apply stale effects.
        validation = await validate_effects(
            registry,
            repo,
            proposal.band_id,
            proposal.execution_type,
            subtype,
            effects,
            proposal_id=proposal_id,
            handler_timeout=handler_timeout,
        )
        if not validation.valid:
            error = "Revalidation failed: " + "; ".join(e.message for e in validation.errors)
            logger.warning(
                "execution_revalidation_failed proposal=%s errors=%d",
                proposal_id,
                len(validation.errors),
            )
        else:
            await repo.mark_effects_validated(proposal_id, now)

    if error is None:
        for index, raw in enumerate(effects):
            outcome = EffectOutcome(type=raw.get("type", ""), payload=raw.get("payload") or {})
            try:
                outcome.result = await _apply_one(
                    registry, repo, ctx, subtype, raw, handler_timeout
                )
            except TimeoutError:
                outcome.error = f"{outcome.type}: timed out after {handler_timeout:g}s"
            except Exception as exc:  # any handler failure is recorded, not raised
                outcome.error = str(exc) or exc.__class__.__name__
            outcomes.append(outcome)

            if not outcome.succeeded:
                error = outcome.error
                remaining = len(effects) - index - 1
                logger.warning(
                    "effect_failed proposal=%s index=%d type=%s remaining=%d error=%s",
                    proposal_id,
                    index,
                    outcome.type,
                    remaining,
                    outcome.error,
                )
                break

    status: ExecutionStatus = "FAILED" if error and not outcomes else _overall_status(outcomes)
    log_entries = [o.to_log_entry() for o in outcomes]

    log_row = await repo.append_execution_log(
        proposal_id=proposal_id,
        band_id=proposal.band_id,
        status=status,
        effects_submitted=effects,
        effects_executed=log_entries,
        execution_subtype=subtype,
        error_message=error,
        executed_by_id=acting_user_id,
    )

    if status == "SUCCESS":
        await repo.transition_proposal(
            proposal_id, ["EXECUTING"], "EXECUTED", effects_executed_at=now, updated_at=now
        )
        await record_event(
            repo,
            "proposal.executed",
            proposal,
            {"log_id": log_row.id, "effects": len(log_entries)},
            actor_id=acting_user_id,
            event_bus=event_bus,
        )
        logger.info(
            "execution_succeeded proposal=%s effects=%d log=%s",
            proposal_id,
            len(log_entries),
            log_row.id,
        )
    else:
        await repo.transition_proposal(
            proposal_id, ["EXECUTING"], "EXECUTION_FAILED", execution_error=error, updated_at=now
        )
        await record_event(
            repo,
            "proposal.execution_failed",
            proposal,
            {"log_id": log_row.id, "status": status, "error": error},
            actor_id=acting_user_id,
            event_bus=event_bus,
        )
        logger.error(
            "execution_failed proposal=%s status=%s applied=%d unexecuted=%d "
            "needs_manual_reconciliation=true",
            proposal_id,
            status,
            sum(1 for o in outcomes if o.succeeded),
            len(effects) - sum(1 for o in outcomes if o.succeeded),
        )

    return ExecutionResult(
        success=status == "SUCCESS",
        status=status,
        effects_executed=log_entries,
        error=error,
        log_id=log_row.id,
    )
