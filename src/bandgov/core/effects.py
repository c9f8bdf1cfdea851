"""Effect Handler Registry and Effect Validator.

Handlers are keyed by ``(execution_subtype, effect_type)``. The registry is
an explicit object built once at startup by ``initialize_effect_handlers``
and handed to everything that needs it. There is no module-level handler
table.

Validation is a dry pass: every effect is checked independently against
band state as it stands before any effect of the batch is applied.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import BaseModel, ValidationError

from bandgov.models.governance import EffectsValidationResult, EffectValidationIssue

if TYPE_CHECKING:
    from bandgov.db.repository import Repository

logger = logging.getLogger(__name__)

# Execution types that may carry effects at all.
EFFECT_EXECUTION_TYPES = frozenset({"GOVERNANCE", "ACTION"})

# Seconds any single handler call (validate or apply) may take.
DEFAULT_HANDLER_TIMEOUT = 10.0


@dataclass
class EffectContext:
    """Everything a handler may touch: the data store and who/what it acts for."""

    repo: Repository
    band_id: str
    proposal_id: str = ""
    acting_user_id: str = ""


class EffectHandler(Protocol):
    """A pluggable command implementation for one effect type."""

    effect_type: str
    payload_model: type[BaseModel]

    async def validate(self, payload: Any, ctx: EffectContext) -> list[str]:
        """Return applicability problems against current state. Must not mutate."""
        ...

    async def apply(self, payload: Any, ctx: EffectContext) -> dict[str, Any]:
        """Apply the effect. Returns a small JSON-able result for the execution log."""
        ...


class EffectHandlerRegistry:
    """Maps ``(execution_subtype, effect_type)`` to a handler."""

    def __init__(self) -> None:
        self._handlers: dict[tuple[str, str], EffectHandler] = {}

    def register(self, subtype: str, handler: EffectHandler) -> None:
        """Register a handler under a subtype namespace. Duplicate keys are a bug."""
        key = (subtype, handler.effect_type)
        if key in self._handlers:
            msg = f"Effect handler already registered for {subtype}/{handler.effect_type}"
            raise ValueError(msg)
        self._handlers[key] = handler
        logger.debug("effect_handler_registered subtype=%s type=%s", subtype, handler.effect_type)

    def get(self, subtype: str | None, effect_type: str) -> EffectHandler | None:
        if subtype is None:
            return None
        return self._handlers.get((subtype, effect_type))

    def effect_types_for(self, subtype: str) -> list[str]:
        """Effect types registered under a subtype, in registration order."""
        return [t for (s, t) in self._handlers if s == subtype]

    @property
    def subtypes(self) -> list[str]:
        seen: dict[str, None] = {}
        for subtype, _ in self._handlers:
            seen.setdefault(subtype, None)
        return list(seen)

    def describe(self) -> dict[str, list[str]]:
        """``{subtype: [effect types]}`` for discovery endpoints."""
        return {s: self.effect_types_for(s) for s in self.subtypes}

    @property
    def count(self) -> int:
        return len(self._handlers)


def initialize_effect_handlers() -> EffectHandlerRegistry:
    """Build the process-wide registry. Call once at startup.

    New subtypes plug in here without touching the validator or executor.
    """
    from bandgov.core.finance_effects import register_finance_bucket_governance_effects

    registry = EffectHandlerRegistry()
    register_finance_bucket_governance_effects(registry)
    logger.info(
        "effect_handlers_initialized subtypes=%s handlers=%d",
        ",".join(registry.subtypes),
        registry.count,
    )
    return registry


def _format_validation_error(effect_type: str, exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return f"{effect_type}: " + "; ".join(parts)


def parse_payload(handler: EffectHandler, payload: dict[str, Any]) -> BaseModel:
    """Parse a raw payload into the handler's schema. Raises pydantic ValidationError."""
    return handler.payload_model.model_validate(payload)


async def validate_effects(
    registry: EffectHandlerRegistry,
    repo: Repository,
    band_id: str,
    execution_type: str,
    execution_subtype: str | None,
    effects: object,
    *,
    proposal_id: str = "",
    handler_timeout: float = DEFAULT_HANDLER_TIMEOUT,
) -> EffectsValidationResult:
    """Check that a proposal's effects are well-formed and applicable.

    Never mutates state. Returns every problem found, not just the first.
    """
    errors: list[EffectValidationIssue] = []
    warnings: list[str] = []

    if execution_type not in EFFECT_EXECUTION_TYPES:
        if effects:
            errors.append(
                EffectValidationIssue(
                    code="EFFECTS_NOT_ALLOWED",
                    message=(
                        "Effects are only allowed for GOVERNANCE and ACTION proposals, "
                        f"not {execution_type}"
                    ),
                )
            )
        return EffectsValidationResult(valid=not errors, errors=errors, warnings=warnings)

    if effects is None or effects == []:
        if execution_type == "GOVERNANCE":
            errors.append(
                EffectValidationIssue(
                    code="EFFECTS_REQUIRED",
                    message="At least one effect is required for GOVERNANCE proposals",
                )
            )
        return EffectsValidationResult(valid=not errors, errors=errors, warnings=warnings)

    if not isinstance(effects, list):
        errors.append(
            EffectValidationIssue(
                code="MALFORMED_EFFECT",
                message="Effects must be a list of {type, payload} objects",
            )
        )
        return EffectsValidationResult(valid=False, errors=errors, warnings=warnings)

    if execution_subtype and execution_subtype not in registry.subtypes:
        warnings.append(f'Unknown execution subtype "{execution_subtype}"')

    ctx = EffectContext(repo=repo, band_id=band_id, proposal_id=proposal_id)

    for index, raw in enumerate(effects):
        if (
            not isinstance(raw, dict)
            or not isinstance(raw.get("type"), str)
            or not isinstance(raw.get("payload"), dict)
            or set(raw) - {"type", "payload"}
        ):
            errors.append(
                EffectValidationIssue(
                    code="MALFORMED_EFFECT",
                    message=(
                        f"Effect #{index + 1} must be an object with exactly a string "
                        '"type" and an object "payload"'
                    ),
                    index=index,
                )
            )
            continue

        effect_type = raw["type"]
        handler = registry.get(execution_subtype, effect_type)
        if handler is None:
            errors.append(
                EffectValidationIssue(
                    code="UNKNOWN_EFFECT_TYPE",
                    message=(
                        f'Unknown effect type "{effect_type}" for subtype '
                        f'"{execution_subtype}". No handler registered.'
                    ),
                    index=index,
                    effect_type=effect_type,
                )
            )
            continue

        try:
            payload = parse_payload(handler, raw["payload"])
        except ValidationError as exc:
            errors.append(
                EffectValidationIssue(
                    code="MALFORMED_PAYLOAD",
                    message=_format_validation_error(effect_type, exc),
                    index=index,
                    effect_type=effect_type,
                )
            )
            continue

        try:
            messages = await asyncio.wait_for(
                handler.validate(payload, ctx), timeout=handler_timeout
            )
        except TimeoutError:
            messages = [f"{effect_type}: validation timed out after {handler_timeout:g}s"]
        for message in messages:
            errors.append(
                EffectValidationIssue(
                    code="PRECONDITION_FAILED",
                    message=message,
                    index=index,
                    effect_type=effect_type,
                )
            )

    if errors:
        logger.info(
            "effects_invalid band=%s subtype=%s errors=%d",
            band_id,
            execution_subtype,
            len(errors),
        )
    return EffectsValidationResult(valid=not errors, errors=errors, warnings=warnings)
