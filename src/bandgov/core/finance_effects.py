"""Finance bucket governance effects (FINANCE_BUCKET_GOVERNANCE_V1).

Lets a band manage its finance buckets, bucket-management policy and
treasurer assignments through approved proposals.

Each handler validates against current state without writing, then applies
with its own resource-level guard: bucket names are unique per band at the
database level, and treasurer flags flip only from the expected prior value.
A lost race surfaces as ConcurrencyConflict.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import IntegrityError

from bandgov.core.effects import EffectContext, EffectHandlerRegistry
from bandgov.core.errors import ConcurrencyConflict, HandlerExecutionError
from bandgov.models.band import BandFinanceState, Bucket
from bandgov.models.finance import (
    CreateBucketPayload,
    DeactivateBucketPayload,
    SetBucketManagementPolicyPayload,
    TreasurerPayload,
    UpdateBucketPayload,
)

if TYPE_CHECKING:
    from bandgov.db.repository import Repository

logger = logging.getLogger(__name__)

FINANCE_BUCKET_GOVERNANCE_V1 = "FINANCE_BUCKET_GOVERNANCE_V1"

SET_BUCKET_MANAGEMENT_POLICY = "SET_BUCKET_MANAGEMENT_POLICY"
ADD_TREASURER = "ADD_TREASURER"
REMOVE_TREASURER = "REMOVE_TREASURER"
CREATE_BUCKET = "CREATE_BUCKET"
UPDATE_BUCKET = "UPDATE_BUCKET"
DEACTIVATE_BUCKET = "DEACTIVATE_BUCKET"

# Roles that can create FINANCE_BUCKET_GOVERNANCE_V1 proposals.
FINANCE_BUCKET_GOVERNANCE_ALLOWED_ROLES = frozenset(
    {"CONDUCTOR", "MODERATOR", "GOVERNOR", "FOUNDER"}
)


def can_create_finance_bucket_governance_proposal(role: str) -> bool:
    return role in FINANCE_BUCKET_GOVERNANCE_ALLOWED_ROLES


async def load_finance_state(repo: Repository, band_id: str) -> BandFinanceState:
    """Snapshot a band's finance policy, treasurers and buckets."""
    settings = await repo.get_finance_settings(band_id)
    members = await repo.get_members_for_band(band_id)
    buckets = await repo.get_buckets_for_band(band_id)
    return BandFinanceState(
        band_id=band_id,
        bucket_management_policy=(
            settings.bucket_management_policy if settings else "OFFICER_TIER"
        ),
        treasurer_user_ids=[
            m.user_id for m in members if m.is_treasurer and m.status == "ACTIVE"
        ],
        buckets=[Bucket.model_validate(b) for b in buckets],
    )


class SetBucketManagementPolicyHandler:
    """Sets how bucket management is controlled (treasurers only vs officers)."""

    effect_type = SET_BUCKET_MANAGEMENT_POLICY
    payload_model = SetBucketManagementPolicyPayload

    async def validate(
        self, payload: SetBucketManagementPolicyPayload, ctx: EffectContext
    ) -> list[str]:
        # The payload schema already restricts the value; nothing else to check.
        return []

    async def apply(
        self, payload: SetBucketManagementPolicyPayload, ctx: EffectContext
    ) -> dict[str, Any]:
        row = await ctx.repo.set_bucket_management_policy(ctx.band_id, payload.value)
        return {"bucketManagementPolicy": row.bucket_management_policy}


class AddTreasurerHandler:
    """Grants the treasurer flag to an active band member."""

    effect_type = ADD_TREASURER
    payload_model = TreasurerPayload

    async def validate(self, payload: TreasurerPayload, ctx: EffectContext) -> list[str]:
        member = await ctx.repo.get_member(ctx.band_id, payload.user_id)
        if member is None:
            return [f"ADD_TREASURER: User {payload.user_id} is not a member of this band"]
        if member.status != "ACTIVE":
            return [f"ADD_TREASURER: User {payload.user_id} is not an active member"]
        if member.is_treasurer:
            return [f"ADD_TREASURER: User {payload.user_id} is already a treasurer"]
        return []

    async def apply(self, payload: TreasurerPayload, ctx: EffectContext) -> dict[str, Any]:
        flipped = await ctx.repo.set_treasurer_flag(ctx.band_id, payload.user_id, True)
        if not flipped:
            raise ConcurrencyConflict(
                f"ADD_TREASURER: User {payload.user_id} is no longer an active non-treasurer",
                resource=f"member:{ctx.band_id}:{payload.user_id}",
            )
        return {"userId": payload.user_id, "isTreasurer": True}


class RemoveTreasurerHandler:
    """Revokes the treasurer flag. The last treasurer under TREASURER_ONLY must stay."""

    effect_type = REMOVE_TREASURER
    payload_model = TreasurerPayload

    async def _last_treasurer_guard(self, ctx: EffectContext) -> str | None:
        settings = await ctx.repo.get_finance_settings(ctx.band_id)
        if settings is not None and settings.bucket_management_policy == "TREASURER_ONLY":
            if await ctx.repo.count_treasurers(ctx.band_id) <= 1:
                return (
                    "REMOVE_TREASURER: Cannot remove the last treasurer "
                    "when policy is TREASURER_ONLY"
                )
        return None

    async def validate(self, payload: TreasurerPayload, ctx: EffectContext) -> list[str]:
        member = await ctx.repo.get_member(ctx.band_id, payload.user_id)
        if member is None:
            return [f"REMOVE_TREASURER: User {payload.user_id} is not a member of this band"]
        if not member.is_treasurer:
            return [f"REMOVE_TREASURER: User {payload.user_id} is not a treasurer"]
        problem = await self._last_treasurer_guard(ctx)
        return [problem] if problem else []

    async def apply(self, payload: TreasurerPayload, ctx: EffectContext) -> dict[str, Any]:
        problem = await self._last_treasurer_guard(ctx)
        if problem:
            raise HandlerExecutionError(problem)
        flipped = await ctx.repo.set_treasurer_flag(ctx.band_id, payload.user_id, False)
        if not flipped:
            raise ConcurrencyConflict(
                f"REMOVE_TREASURER: User {payload.user_id} is no longer an active treasurer",
                resource=f"member:{ctx.band_id}:{payload.user_id}",
            )
        return {"userId": payload.user_id, "isTreasurer": False}


class CreateBucketHandler:
    """Creates a new finance bucket. At most one active OPERATING bucket per band."""

    effect_type = CREATE_BUCKET
    payload_model = CreateBucketPayload

    async def validate(self, payload: CreateBucketPayload, ctx: EffectContext) -> list[str]:
        errors: list[str] = []
        bucket = payload.bucket
        if await ctx.repo.get_bucket_by_name(ctx.band_id, bucket.name):
            errors.append(
                f'CREATE_BUCKET: A bucket named "{bucket.name}" already exists in this band'
            )
        if bucket.type == "OPERATING" and await ctx.repo.count_active_operating_buckets(
            ctx.band_id
        ):
            errors.append("CREATE_BUCKET: Only one OPERATING bucket is allowed per band")
        return errors

    async def apply(self, payload: CreateBucketPayload, ctx: EffectContext) -> dict[str, Any]:
        bucket = payload.bucket
        if bucket.type == "OPERATING" and await ctx.repo.count_active_operating_buckets(
            ctx.band_id
        ):
            raise ConcurrencyConflict(
                "CREATE_BUCKET: An OPERATING bucket already exists",
                resource=f"bucket:{ctx.band_id}:OPERATING",
            )
        try:
            row = await ctx.repo.create_bucket(
                band_id=ctx.band_id,
                name=bucket.name,
                type=bucket.type,
                visibility=bucket.visibility,
                created_by_proposal_id=ctx.proposal_id or None,
            )
        except IntegrityError as exc:
            raise ConcurrencyConflict(
                f'CREATE_BUCKET: A bucket named "{bucket.name}" already exists in this band',
                resource=f"bucket:{ctx.band_id}:{bucket.name}",
            ) from exc
        return {"bucketId": row.id, "name": row.name, "type": row.type}


class UpdateBucketHandler:
    """Updates a bucket's name, visibility or active flag. Type is immutable."""

    effect_type = UPDATE_BUCKET
    payload_model = UpdateBucketPayload

    async def validate(self, payload: UpdateBucketPayload, ctx: EffectContext) -> list[str]:
        bucket = await ctx.repo.get_bucket(payload.bucket_id)
        if bucket is None:
            return [f"UPDATE_BUCKET: Bucket {payload.bucket_id} not found"]
        if bucket.band_id != ctx.band_id:
            return [f"UPDATE_BUCKET: Bucket {payload.bucket_id} does not belong to this band"]
        new_name = payload.fields.name
        if new_name is not None and new_name != bucket.name:
            if await ctx.repo.get_bucket_by_name(ctx.band_id, new_name):
                return [
                    f'UPDATE_BUCKET: A bucket named "{new_name}" already exists in this band'
                ]
        return []

    async def apply(self, payload: UpdateBucketPayload, ctx: EffectContext) -> dict[str, Any]:
        bucket = await ctx.repo.get_bucket(payload.bucket_id)
        if bucket is None or bucket.band_id != ctx.band_id:
            raise HandlerExecutionError(f"UPDATE_BUCKET: Bucket {payload.bucket_id} not found")
        fields = payload.fields.model_dump(exclude_unset=True, exclude_none=True)
        try:
            await ctx.repo.update_bucket(payload.bucket_id, **fields)
        except IntegrityError as exc:
            raise ConcurrencyConflict(
                f'UPDATE_BUCKET: A bucket named "{fields.get("name")}" already exists',
                resource=f"bucket:{ctx.band_id}:{fields.get('name')}",
            ) from exc
        return {"bucketId": payload.bucket_id, "updated": sorted(fields)}


class DeactivateBucketHandler:
    """Deactivates a bucket. The only OPERATING bucket cannot be deactivated."""

    effect_type = DEACTIVATE_BUCKET
    payload_model = DeactivateBucketPayload

    async def validate(self, payload: DeactivateBucketPayload, ctx: EffectContext) -> list[str]:
        bucket = await ctx.repo.get_bucket(payload.bucket_id)
        if bucket is None:
            return [f"DEACTIVATE_BUCKET: Bucket {payload.bucket_id} not found"]
        if bucket.band_id != ctx.band_id:
            return [
                f"DEACTIVATE_BUCKET: Bucket {payload.bucket_id} does not belong to this band"
            ]
        if not bucket.is_active:
            return [f"DEACTIVATE_BUCKET: Bucket {payload.bucket_id} is already inactive"]
        if bucket.type == "OPERATING":
            if await ctx.repo.count_active_operating_buckets(ctx.band_id) <= 1:
                return ["DEACTIVATE_BUCKET: Cannot deactivate the only OPERATING bucket"]
        return []

    async def apply(self, payload: DeactivateBucketPayload, ctx: EffectContext) -> dict[str, Any]:
        deactivated = await ctx.repo.deactivate_bucket(payload.bucket_id)
        if not deactivated:
            raise ConcurrencyConflict(
                f"DEACTIVATE_BUCKET: Bucket {payload.bucket_id} is no longer active",
                resource=f"bucket:{payload.bucket_id}",
            )
        return {"bucketId": payload.bucket_id, "isActive": False}


def register_finance_bucket_governance_effects(registry: EffectHandlerRegistry) -> None:
    """Register all finance bucket governance handlers under their subtype."""
    for handler in (
        SetBucketManagementPolicyHandler(),
        AddTreasurerHandler(),
        RemoveTreasurerHandler(),
        CreateBucketHandler(),
        UpdateBucketHandler(),
        DeactivateBucketHandler(),
    ):
        registry.register(FINANCE_BUCKET_GOVERNANCE_V1, handler)
    logger.info("registered_effect_handlers subtype=%s", FINANCE_BUCKET_GOVERNANCE_V1)
