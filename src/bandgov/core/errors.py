"""Governance error taxonomy.

Validation errors are reported to the caller. Handler failures are recorded
in the execution log and halt the batch. State transition errors are races
or programming errors and abort the operation without touching state.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from bandgov.models.governance import EffectValidationIssue


class GovernanceError(Exception):
    """Base class for all governance errors."""


class NotFoundError(GovernanceError):
    """A referenced band, member or proposal does not exist."""


class PermissionDeniedError(GovernanceError):
    """The acting member's role or standing does not allow this action."""


class VotingClosedError(GovernanceError):
    """A vote arrived after the proposal left its voting window."""


class EffectValidationError(GovernanceError):
    """One or more effects failed validation. Nothing was created or applied."""

    def __init__(self, issues: list[EffectValidationIssue]) -> None:
        self.issues = issues
        super().__init__("Invalid effects: " + "; ".join(i.message for i in issues))


class HandlerExecutionError(GovernanceError):
    """An effect handler failed while applying its effect."""


class ConcurrencyConflict(HandlerExecutionError):
    """Another writer changed the resource this effect targets."""

    def __init__(self, message: str, resource: str) -> None:
        self.resource = resource
        super().__init__(f"{message} (resource={resource})")


class StateTransitionError(GovernanceError):
    """A lifecycle transition was attempted from a status that does not allow it."""


class DuplicateExecutionError(GovernanceError):
    """A proposal already has a successful execution log."""
