"""Governance models: Proposals, Votes, Tallies, Effects, and Execution Logs."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, Field


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


UTCDateTime = Annotated[datetime, AfterValidator(as_utc)]

ProposalStatus = Literal[
    "VOTING",
    "CLOSED",
    "APPROVED",
    "REJECTED",
    "EXECUTING",
    "EXECUTED",
    "EXECUTION_FAILED",
]

ProposalType = Literal["GOVERNANCE", "PROJECT", "RESOLUTION"]
ExecutionType = Literal["GOVERNANCE", "PROJECT", "ACTION", "RESOLUTION"]
VoteChoice = Literal["YES", "NO", "ABSTAIN"]
ExecutionStatus = Literal["SUCCESS", "PARTIAL", "FAILED"]

GovernanceEventType = Literal[
    "proposal.created",
    "vote.cast",
    "proposal.closed",
    "proposal.approved",
    "proposal.rejected",
    "proposal.executing",
    "proposal.executed",
    "proposal.execution_failed",
]


class Effect(BaseModel):
    """A structured command attached to a proposal, applied on approval."""

    model_config = ConfigDict(extra="forbid")

    type: str
    payload: dict[str, Any] = Field(default_factory=dict)


class ProposalDraft(BaseModel):
    """Everything a member submits when creating a proposal."""

    band_id: str
    created_by_id: str
    title: str = Field(min_length=5, max_length=200)
    description: str = Field(min_length=20)
    type: ProposalType = "GOVERNANCE"
    execution_type: ExecutionType = "RESOLUTION"
    execution_subtype: str | None = None
    # Kept loose on purpose: the effect validator reports malformed entries
    # as structured issues instead of a pydantic error.
    effects: list[Any] | None = None
    voting_ends_at: UTCDateTime | None = None


class Proposal(BaseModel):
    """A formal decision item members vote on."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    band_id: str
    created_by_id: str
    title: str
    description: str = ""
    type: ProposalType = "GOVERNANCE"
    execution_type: ExecutionType = "RESOLUTION"
    execution_subtype: str | None = None
    effects: list[Effect] = Field(default_factory=list)
    effects_validated_at: UTCDateTime | None = None
    status: ProposalStatus = "VOTING"
    voting_ends_at: UTCDateTime
    closed_at: UTCDateTime | None = None
    tally: dict[str, Any] | None = None
    effects_executed_at: UTCDateTime | None = None
    execution_error: str | None = None
    created_at: UTCDateTime = Field(default_factory=lambda: datetime.now(UTC))


class Vote(BaseModel):
    """A member's vote on a Proposal. One per (proposal, voter); last write wins."""

    model_config = ConfigDict(from_attributes=True)

    proposal_id: str
    user_id: str
    vote: VoteChoice
    comment: str | None = None
    # Filled from the member read-model at tally time.
    voter_role: str | None = None
    updated_at: UTCDateTime = Field(default_factory=lambda: datetime.now(UTC))


class VoteTally(BaseModel):
    """Result of tallying votes for a single proposal."""

    proposal_id: str = ""
    yes_count: int = 0
    no_count: int = 0
    abstain_count: int = 0
    total_votes: int = 0
    yes_percentage: float = 0.0
    threshold: float = 50.0
    eligible_voters: int | None = None
    participation_percentage: float | None = None
    quorum_percentage: float = 0.0
    quorum_met: bool = True
    approved: bool = False
    rejection_reason: str | None = None


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

ValidationCode = Literal[
    "UNKNOWN_EFFECT_TYPE",
    "MALFORMED_EFFECT",
    "MALFORMED_PAYLOAD",
    "PRECONDITION_FAILED",
    "EFFECTS_NOT_ALLOWED",
    "EFFECTS_REQUIRED",
]


class EffectValidationIssue(BaseModel):
    """One reason a batch of effects cannot be applied."""

    code: ValidationCode
    message: str
    index: int | None = None
    effect_type: str | None = None


class EffectsValidationResult(BaseModel):
    valid: bool
    errors: list[EffectValidationIssue] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class EffectOutcome(BaseModel):
    """What happened to one attempted effect. Exactly one of result/error is set."""

    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    result: dict[str, Any] | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def to_log_entry(self) -> dict[str, Any]:
        entry: dict[str, Any] = {"type": self.type, "payload": self.payload}
        if self.error is None:
            entry["result"] = self.result or {}
        else:
            entry["error"] = self.error
        return entry


class ExecutionLogEntry(BaseModel):
    """Immutable record of an attempt to apply a proposal's effects."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    proposal_id: str
    band_id: str
    execution_subtype: str = "UNKNOWN"
    status: ExecutionStatus
    effects_submitted: list[dict[str, Any]] = Field(default_factory=list)
    effects_executed: list[dict[str, Any]] = Field(default_factory=list)
    error_message: str | None = None
    executed_by_id: str | None = None
    created_at: UTCDateTime


class ExecutionResult(BaseModel):
    """What the effect executor reports back to its caller."""

    success: bool
    status: ExecutionStatus
    effects_executed: list[dict[str, Any]] = Field(default_factory=list)
    error: str | None = None
    log_id: str = ""
    # True when a prior successful execution was returned instead of re-running.
    cached: bool = False


class CloseResult(BaseModel):
    """Outcome of a close/tally request."""

    proposal: Proposal
    tally: VoteTally | None = None
    execution: ExecutionResult | None = None
    already_closed: bool = False


class GovernanceEvent(BaseModel):
    """Append-only audit record of a lifecycle transition."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    event_type: GovernanceEventType
    proposal_id: str
    band_id: str
    actor_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: UTCDateTime
    sequence_number: int
