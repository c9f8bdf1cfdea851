"""Band, membership and finance read models."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

MemberRole = Literal[
    "FOUNDER",
    "GOVERNOR",
    "MODERATOR",
    "CONDUCTOR",
    "VOTING_MEMBER",
    "OBSERVER",
]

# Roles allowed to create proposals at all.
PROPOSAL_CREATOR_ROLES = frozenset({"FOUNDER", "GOVERNOR", "MODERATOR", "CONDUCTOR"})

# Roles allowed to force-close voting before the deadline.
CLOSE_AUTHORITY_ROLES = frozenset({"FOUNDER", "GOVERNOR"})

BucketManagementPolicy = Literal["TREASURER_ONLY", "OFFICER_TIER"]
BucketType = Literal["OPERATING", "PROJECT", "RESTRICTED", "UNRESTRICTED", "COMMITMENT"]
BucketVisibility = Literal["OFFICERS_ONLY", "MEMBERS"]


class Band(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    slug: str
    status: str = "ACTIVE"
    voting_period_days: int = 7
    vote_threshold: float = 50.0
    quorum_percentage: float = 0.0
    voting_roles: list[str] = Field(default_factory=list)


class Member(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    band_id: str
    user_id: str
    display_name: str = ""
    role: MemberRole
    status: str = "ACTIVE"
    is_treasurer: bool = False


class Bucket(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    band_id: str
    name: str
    type: BucketType
    visibility: BucketVisibility
    is_active: bool = True
    created_by_proposal_id: str | None = None


class BandFinanceState(BaseModel):
    """Current finance-governance state of a band, as effects see it."""

    band_id: str
    bucket_management_policy: BucketManagementPolicy = "OFFICER_TIER"
    treasurer_user_ids: list[str] = Field(default_factory=list)
    buckets: list[Bucket] = Field(default_factory=list)
