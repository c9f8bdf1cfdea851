"""Payload schemas for FINANCE_BUCKET_GOVERNANCE_V1 effects.

Payloads arrive as JSON objects keyed by camelCase names. Each effect type
gets its own strict model; unknown fields are rejected rather than ignored.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, model_validator

from bandgov.models.band import BucketManagementPolicy, BucketType, BucketVisibility

MAX_BUCKET_NAME_LENGTH = 64


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True, str_strip_whitespace=True)


class SetBucketManagementPolicyPayload(_Payload):
    value: BucketManagementPolicy


class TreasurerPayload(_Payload):
    user_id: str = Field(alias="userId", min_length=1)


class NewBucket(_Payload):
    name: str = Field(min_length=1, max_length=MAX_BUCKET_NAME_LENGTH)
    type: BucketType
    visibility: BucketVisibility


class CreateBucketPayload(_Payload):
    bucket: NewBucket


class BucketFields(_Payload):
    """Mutable bucket fields. ``type`` is immutable once a bucket exists."""

    name: str | None = Field(default=None, min_length=1, max_length=MAX_BUCKET_NAME_LENGTH)
    visibility: BucketVisibility | None = None
    is_active: bool | None = Field(default=None, alias="isActive", strict=True)

    @model_validator(mode="after")
    def _at_least_one(self) -> BucketFields:
        if not any(getattr(self, f) is not None for f in self.model_fields_set):
            msg = "fields object with at least one field is required"
            raise ValueError(msg)
        return self


class UpdateBucketPayload(_Payload):
    bucket_id: str = Field(alias="bucketId", min_length=1)
    fields: BucketFields


class DeactivateBucketPayload(_Payload):
    bucket_id: str = Field(alias="bucketId", min_length=1)
