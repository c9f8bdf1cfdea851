"""Proposal lifecycle: creation, voting, tallying, closing.

Pure tally logic lives here alongside the async orchestration that drives a
proposal through VOTING -> CLOSED -> APPROVED | REJECTED and, for approved
proposals that carry effects, into the executor.

Every status change is a guarded check-and-set on the proposal row, so the
expiry sweep and a member closing by hand can race without double work.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, get_args

from bandgov.core.effects import EffectHandlerRegistry, validate_effects
from bandgov.core.errors import (
    EffectValidationError,
    GovernanceError,
    NotFoundError,
    PermissionDeniedError,
    StateTransitionError,
    VotingClosedError,
)
from bandgov.core.executor import DEFAULT_HANDLER_TIMEOUT, execute_and_log_effects
from bandgov.core.finance_effects import (
    FINANCE_BUCKET_GOVERNANCE_V1,
    can_create_finance_bucket_governance_proposal,
)
from bandgov.core.notifications import record_event
from bandgov.models.band import CLOSE_AUTHORITY_ROLES, PROPOSAL_CREATOR_ROLES
from bandgov.models.governance import (
    CloseResult,
    ExecutionResult,
    Proposal,
    ProposalDraft,
    Vote,
    VoteChoice,
    VoteTally,
    as_utc,
)

if TYPE_CHECKING:
    from bandgov.core.event_bus import EventBus
    from bandgov.db.models import ProposalRow
    from bandgov.db.repository import Repository

logger = logging.getLogger(__name__)

VOTE_CHOICES = frozenset(get_args(VoteChoice))


# --- Tally ---


def tally_votes(
    votes: list[Vote],
    eligible_roles: Iterable[str],
    threshold: float = 50.0,
    *,
    eligible_voters: int | None = None,
    quorum_percentage: float = 0.0,
) -> VoteTally:
    """Count votes and decide the outcome.

    Only votes whose ``voter_role`` is in ``eligible_roles`` count. Abstentions
    count toward participation but not toward the yes percentage. Strictly
    greater-than: an exact split at the threshold fails.
    """
    roles = set(eligible_roles)
    counted = [v for v in votes if v.voter_role in roles]
    yes = sum(1 for v in counted if v.vote == "YES")
    no = sum(1 for v in counted if v.vote == "NO")
    abstain = sum(1 for v in counted if v.vote == "ABSTAIN")
    decisive = yes + no
    yes_percentage = (yes / decisive) * 100 if decisive else 0.0

    participation: float | None = None
    if eligible_voters:
        participation = (yes + no + abstain) / eligible_voters * 100

    if quorum_percentage <= 0:
        quorum_met = True
    else:
        quorum_met = participation is not None and participation >= quorum_percentage

    approved = quorum_met and yes_percentage > threshold

    reason = None
    if not quorum_met:
        reason = (
            f"Quorum not met: {participation or 0:.1f}% participation, "
            f"{quorum_percentage:g}% required"
        )
    elif not approved:
        reason = (
            f"Approval threshold not met: {yes_percentage:.1f}% yes, "
            f"more than {threshold:g}% required"
        )

    return VoteTally(
        proposal_id=votes[0].proposal_id if votes else "",
        yes_count=yes,
        no_count=no,
        abstain_count=abstain,
        total_votes=yes + no + abstain,
        yes_percentage=round(yes_percentage, 2),
        threshold=threshold,
        eligible_voters=eligible_voters,
        participation_percentage=(
            round(participation, 2) if participation is not None else None
        ),
        quorum_percentage=quorum_percentage,
        quorum_met=quorum_met,
        approved=approved,
        rejection_reason=reason,
    )


# --- Creation ---


async def create_proposal(
    repo: Repository,
    registry: EffectHandlerRegistry,
    draft: ProposalDraft,
    *,
    now: datetime | None = None,
    default_voting_period_days: int = 7,
    handler_timeout: float = DEFAULT_HANDLER_TIMEOUT,
    event_bus: EventBus | None = None,
) -> ProposalRow:
    """Validate and persist a new proposal in VOTING.

    Raises NotFoundError, PermissionDeniedError or EffectValidationError.
    Nothing is written unless every check passes.
    """
    now = now or datetime.now(UTC)

    band = await repo.get_band(draft.band_id)
    if band is None:
        raise NotFoundError(f"Band {draft.band_id} not found")
    if band.status != "ACTIVE":
        raise PermissionDeniedError("Band must be active to create proposals")

    member = await repo.get_member(draft.band_id, draft.created_by_id)
    if member is None or member.status != "ACTIVE":
        raise PermissionDeniedError("Only active band members can create proposals")
    if member.role not in PROPOSAL_CREATOR_ROLES:
        raise PermissionDeniedError(f"Role {member.role} cannot create proposals")
    if (
        draft.execution_subtype == FINANCE_BUCKET_GOVERNANCE_V1
        and not can_create_finance_bucket_governance_proposal(member.role)
    ):
        raise PermissionDeniedError(
            f"Role {member.role} cannot create finance bucket governance proposals"
        )

    validation = await validate_effects(
        registry,
        repo,
        draft.band_id,
        draft.execution_type,
        draft.execution_subtype,
        draft.effects,
        handler_timeout=handler_timeout,
    )
    if not validation.valid:
        raise EffectValidationError(validation.errors)
    for warning in validation.warnings:
        logger.warning("proposal_effects_warning band=%s warning=%s", draft.band_id, warning)

    period = band.voting_period_days or default_voting_period_days
    voting_ends_at = draft.voting_ends_at or now + timedelta(days=period)
    if as_utc(voting_ends_at) <= now:
        raise GovernanceError("Voting deadline must be in the future")

    effects = list(draft.effects or [])
    proposal = await repo.create_proposal(
        band_id=draft.band_id,
        created_by_id=draft.created_by_id,
        title=draft.title,
        description=draft.description,
        voting_ends_at=voting_ends_at,
        type=draft.type,
        execution_type=draft.execution_type,
        execution_subtype=draft.execution_subtype,
        effects=effects,
        effects_validated_at=now if effects else None,
    )
    await record_event(
        repo,
        "proposal.created",
        proposal,
        {"title": proposal.title, "effects": len(effects)},
        actor_id=draft.created_by_id,
        event_bus=event_bus,
    )
    logger.info(
        "proposal_created id=%s band=%s subtype=%s effects=%d",
        proposal.id,
        proposal.band_id,
        proposal.execution_subtype,
        len(effects),
    )
    return proposal


# --- Voting ---


async def cast_vote(
    repo: Repository,
    proposal_id: str,
    user_id: str,
    vote: str,
    comment: str | None = None,
    *,
    now: datetime | None = None,
    event_bus: EventBus | None = None,
) -> Vote:
    """Record or replace a member's vote while the proposal is open."""
    if vote not in VOTE_CHOICES:
        raise GovernanceError(f"Invalid vote {vote!r}; expected one of {sorted(VOTE_CHOICES)}")
    now = now or datetime.now(UTC)

    proposal = await repo.get_proposal(proposal_id)
    if proposal is None:
        raise NotFoundError(f"Proposal {proposal_id} not found")
    if proposal.status != "VOTING":
        raise VotingClosedError(f"Proposal is {proposal.status}, not open for voting")
    if now >= as_utc(proposal.voting_ends_at):
        raise VotingClosedError("Voting period has ended")

    band = await repo.get_band(proposal.band_id)
    member = await repo.get_member(proposal.band_id, user_id)
    if member is None or member.status != "ACTIVE":
        raise PermissionDeniedError("Only active band members can vote")
    if band is None or member.role not in band.voting_roles:
        raise PermissionDeniedError(f"Role {member.role} cannot vote in this band")

    row, created = await repo.upsert_vote(proposal_id, user_id, vote, comment)
    await record_event(
        repo,
        "vote.cast",
        proposal,
        {"user_id": user_id, "vote": vote, "changed": not created},
        actor_id=user_id,
        event_bus=event_bus,
    )
    return Vote(
        proposal_id=proposal_id,
        user_id=user_id,
        vote=row.vote,
        comment=row.comment,
        voter_role=member.role,
        updated_at=as_utc(row.updated_at),
    )


# --- Closing ---


async def _authorize_close(
    repo: Repository,
    proposal: ProposalRow,
    closed_by_id: str | None,
    force: bool,
    deadline_passed: bool,
) -> None:
    if closed_by_id is None:
        # Scheduled sweep: only expired proposals, unless explicitly forced.
        if not deadline_passed and not force:
            raise StateTransitionError("Voting period has not ended yet")
        return

    member = await repo.get_member(proposal.band_id, closed_by_id)
    is_active = member is not None and member.status == "ACTIVE"
    has_authority = is_active and member.role in CLOSE_AUTHORITY_ROLES
    is_creator = closed_by_id == proposal.created_by_id

    if not deadline_passed:
        if not force:
            raise StateTransitionError(
                "Voting period has not ended yet; force-close to end it early"
            )
        if not has_authority:
            raise PermissionDeniedError("Only founders or governors can force-close voting")
        return

    if not (has_authority or (is_creator and is_active)):
        raise PermissionDeniedError(
            "Only the proposal creator, founders or governors can close voting"
        )


async def _snapshot(
    repo: Repository, proposal_id: str, **kwargs: object
) -> CloseResult:
    row = await repo.get_proposal(proposal_id)
    return CloseResult(proposal=Proposal.model_validate(row), **kwargs)


async def close_proposal(
    repo: Repository,
    registry: EffectHandlerRegistry,
    proposal_id: str,
    *,
    closed_by_id: str | None = None,
    force: bool = False,
    now: datetime | None = None,
    handler_timeout: float = DEFAULT_HANDLER_TIMEOUT,
    event_bus: EventBus | None = None,
) -> CloseResult:
    """End voting, tally, and execute effects if approved.

    Idempotent: closing a proposal that already left VOTING returns its
    current state with ``already_closed=True`` and changes nothing.
    """
    now = now or datetime.now(UTC)

    proposal = await repo.get_proposal(proposal_id)
    if proposal is None:
        raise NotFoundError(f"Proposal {proposal_id} not found")
    if proposal.status != "VOTING":
        tally = VoteTally.model_validate(proposal.tally) if proposal.tally else None
        return await _snapshot(repo, proposal_id, tally=tally, already_closed=True)

    deadline_passed = now >= as_utc(proposal.voting_ends_at)
    await _authorize_close(repo, proposal, closed_by_id, force, deadline_passed)

    won = await repo.transition_proposal(
        proposal_id, ["VOTING"], "CLOSED", closed_at=now, updated_at=now
    )
    if not won:
        logger.info("proposal_close_lost_race id=%s", proposal_id)
        return await _snapshot(repo, proposal_id, already_closed=True)
    await record_event(
        repo,
        "proposal.closed",
        proposal,
        {"forced": force and not deadline_passed},
        actor_id=closed_by_id,
        event_bus=event_bus,
    )

    band = await repo.get_band(proposal.band_id)
    if band is None:
        raise NotFoundError(f"Band {proposal.band_id} not found")
    votes = [
        Vote(
            proposal_id=row.proposal_id,
            user_id=row.user_id,
            vote=row.vote,
            comment=row.comment,
            voter_role=role,
            updated_at=as_utc(row.updated_at),
        )
        for row, role in await repo.get_votes_with_roles(proposal_id, proposal.band_id)
    ]
    eligible_voters = await repo.count_eligible_voters(proposal.band_id, band.voting_roles)
    tally = tally_votes(
        votes,
        band.voting_roles,
        band.vote_threshold,
        eligible_voters=eligible_voters,
        quorum_percentage=band.quorum_percentage,
    )
    tally.proposal_id = proposal_id

    outcome = "APPROVED" if tally.approved else "REJECTED"
    await repo.transition_proposal(
        proposal_id, ["CLOSED"], outcome, tally=tally.model_dump(), updated_at=now
    )
    await record_event(
        repo,
        "proposal.approved" if tally.approved else "proposal.rejected",
        proposal,
        {
            "yes": tally.yes_count,
            "no": tally.no_count,
            "abstain": tally.abstain_count,
            "yes_percentage": tally.yes_percentage,
            "reason": tally.rejection_reason,
        },
        actor_id=closed_by_id,
        event_bus=event_bus,
    )
    logger.info(
        "proposal_tallied id=%s outcome=%s yes=%d no=%d abstain=%d pct=%.1f",
        proposal_id,
        outcome,
        tally.yes_count,
        tally.no_count,
        tally.abstain_count,
        tally.yes_percentage,
    )

    execution = None
    if tally.approved and proposal.effects:
        execution = await execute_and_log_effects(
            repo,
            registry,
            proposal_id,
            closed_by_id,
            handler_timeout=handler_timeout,
            event_bus=event_bus,
        )

    return await _snapshot(repo, proposal_id, tally=tally, execution=execution)


async def execute_proposal(
    repo: Repository,
    registry: EffectHandlerRegistry,
    proposal_id: str,
    user_id: str,
    *,
    handler_timeout: float = DEFAULT_HANDLER_TIMEOUT,
    event_bus: EventBus | None = None,
) -> ExecutionResult:
    """Operator-triggered execution of an APPROVED proposal.

    Only founders or governors of the proposal's band may trigger it. Safe to
    repeat: a proposal that already executed returns its existing log.
    """
    proposal = await repo.get_proposal(proposal_id)
    if proposal is None:
        raise NotFoundError(f"Proposal {proposal_id} not found")
    member = await repo.get_member(proposal.band_id, user_id)
    if member is None or member.status != "ACTIVE" or member.role not in CLOSE_AUTHORITY_ROLES:
        raise PermissionDeniedError("Only founders or governors can execute proposals")
    return await execute_and_log_effects(
        repo,
        registry,
        proposal_id,
        user_id,
        handler_timeout=handler_timeout,
        event_bus=event_bus,
    )
