"""Governance API endpoints: proposals, votes, closing, execution, logs."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from bandgov.api.deps import EventBusDep, RegistryDep, RepoDep, SettingsDep
from bandgov.core.errors import (
    ConcurrencyConflict,
    DuplicateExecutionError,
    EffectValidationError,
    GovernanceError,
    HandlerExecutionError,
    NotFoundError,
    PermissionDeniedError,
    StateTransitionError,
    VotingClosedError,
)
from bandgov.core.governance import (
    cast_vote,
    close_proposal,
    create_proposal,
    execute_proposal,
)
from bandgov.models.governance import (
    ExecutionLogEntry,
    GovernanceEvent,
    Proposal,
    ProposalDraft,
    ProposalStatus,
    VoteChoice,
)

router = APIRouter(prefix="/api/governance", tags=["governance"])

_STATUS_CODES: list[tuple[type[GovernanceError], int]] = [
    (EffectValidationError, 400),
    (PermissionDeniedError, 403),
    (NotFoundError, 404),
    (ConcurrencyConflict, 409),
    (HandlerExecutionError, 409),
    (StateTransitionError, 409),
    (VotingClosedError, 409),
    (DuplicateExecutionError, 409),
]


def _http_error(exc: GovernanceError) -> HTTPException:
    status_code = next((code for cls, code in _STATUS_CODES if isinstance(exc, cls)), 400)
    if isinstance(exc, EffectValidationError):
        detail: object = {
            "message": "Invalid effects",
            "errors": [issue.model_dump() for issue in exc.issues],
        }
    else:
        detail = str(exc)
    return HTTPException(status_code=status_code, detail=detail)


# --- Request Models ---


class CastVoteRequest(BaseModel):
    user_id: str
    vote: VoteChoice
    comment: str | None = Field(default=None, max_length=2000)


class CloseProposalRequest(BaseModel):
    user_id: str
    force: bool = False


class ExecuteProposalRequest(BaseModel):
    user_id: str


# --- Endpoints ---


@router.post("/proposals", status_code=201)
async def api_create_proposal(
    body: ProposalDraft,
    repo: RepoDep,
    registry: RegistryDep,
    event_bus: EventBusDep,
    settings: SettingsDep,
) -> dict:
    """Create a proposal. Effects are validated before anything is stored."""
    try:
        row = await create_proposal(
            repo,
            registry,
            body,
            default_voting_period_days=settings.bandgov_default_voting_period_days,
            handler_timeout=settings.bandgov_effect_timeout_seconds,
            event_bus=event_bus,
        )
    except GovernanceError as exc:
        raise _http_error(exc) from exc
    return {"data": Proposal.model_validate(row).model_dump(mode="json")}


@router.get("/proposals")
async def api_list_proposals(
    band_id: str,
    repo: RepoDep,
    status: ProposalStatus | None = None,
) -> dict:
    """List a band's proposals, newest first."""
    rows = await repo.get_proposals_for_band(band_id, status=status)
    return {"data": [Proposal.model_validate(r).model_dump(mode="json") for r in rows]}


@router.get("/proposals/{proposal_id}")
async def api_get_proposal(proposal_id: str, repo: RepoDep) -> dict:
    row = await repo.get_proposal(proposal_id)
    if row is None:
        raise HTTPException(status_code=404, detail="Proposal not found")
    return {"data": Proposal.model_validate(row).model_dump(mode="json")}


@router.post("/proposals/{proposal_id}/votes")
async def api_cast_vote(
    proposal_id: str,
    body: CastVoteRequest,
    repo: RepoDep,
    event_bus: EventBusDep,
) -> dict:
    """Cast or change a vote."""
    try:
        vote = await cast_vote(
            repo, proposal_id, body.user_id, body.vote, body.comment, event_bus=event_bus
        )
    except GovernanceError as exc:
        raise _http_error(exc) from exc
    return {"data": vote.model_dump(mode="json")}


@router.post("/proposals/{proposal_id}/close")
async def api_close_proposal(
    proposal_id: str,
    body: CloseProposalRequest,
    repo: RepoDep,
    registry: RegistryDep,
    event_bus: EventBusDep,
    settings: SettingsDep,
) -> dict:
    """Close voting, tally, and execute effects if approved."""
    try:
        result = await close_proposal(
            repo,
            registry,
            proposal_id,
            closed_by_id=body.user_id,
            force=body.force,
            handler_timeout=settings.bandgov_effect_timeout_seconds,
            event_bus=event_bus,
        )
    except GovernanceError as exc:
        raise _http_error(exc) from exc
    return {"data": result.model_dump(mode="json")}


@router.post("/proposals/{proposal_id}/execute")
async def api_execute_proposal(
    proposal_id: str,
    body: ExecuteProposalRequest,
    repo: RepoDep,
    registry: RegistryDep,
    event_bus: EventBusDep,
    settings: SettingsDep,
) -> dict:
    """Execute an APPROVED proposal's effects. Repeat calls return the first success."""
    try:
        result = await execute_proposal(
            repo,
            registry,
            proposal_id,
            body.user_id,
            handler_timeout=settings.bandgov_effect_timeout_seconds,
            event_bus=event_bus,
        )
    except GovernanceError as exc:
        raise _http_error(exc) from exc
    return {"data": result.model_dump(mode="json")}


@router.get("/proposals/{proposal_id}/execution-logs")
async def api_execution_logs(proposal_id: str, repo: RepoDep) -> dict:
    if await repo.get_proposal(proposal_id) is None:
        raise HTTPException(status_code=404, detail="Proposal not found")
    rows = await repo.get_execution_logs(proposal_id)
    return {
        "data": [ExecutionLogEntry.model_validate(r).model_dump(mode="json") for r in rows]
    }


@router.get("/proposals/{proposal_id}/events")
async def api_proposal_events(proposal_id: str, repo: RepoDep) -> dict:
    """Audit trail of a proposal's lifecycle, oldest first."""
    if await repo.get_proposal(proposal_id) is None:
        raise HTTPException(status_code=404, detail="Proposal not found")
    rows = await repo.get_events_for_proposal(proposal_id)
    return {"data": [GovernanceEvent.model_validate(r).model_dump(mode="json") for r in rows]}


@router.get("/effect-types")
async def api_effect_types(registry: RegistryDep) -> dict:
    """Registered execution subtypes and the effect types each accepts."""
    return {"data": registry.describe()}
