"""Repository pattern for database access.

Wraps SQLAlchemy async sessions. Execution logs and governance events are
append-only. Status transitions are guarded check-and-set updates so that
the sweep job and manual actions can race safely.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from bandgov.core.errors import DuplicateExecutionError
from bandgov.db.engine import commit
from bandgov.db.models import (
    DEFAULT_VOTING_ROLES,
    BandFinanceSettingsRow,
    BandRow,
    BucketRow,
    ExecutionLogRow,
    GovernanceEventRow,
    MemberRow,
    ProposalRow,
    VoteRow,
)


class Repository:
    """Async repository for all database operations."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def commit(self) -> None:
        """Commit now and run any queued after-commit work (notifications)."""
        await commit(self.session)

    # --- Bands / Members ---

    async def create_band(
        self,
        name: str,
        slug: str,
        *,
        status: str = "ACTIVE",
        voting_period_days: int = 7,
        vote_threshold: float = 50.0,
        quorum_percentage: float = 0.0,
        voting_roles: list[str] | None = None,
    ) -> BandRow:
        row = BandRow(
            name=name,
            slug=slug,
            status=status,
            voting_period_days=voting_period_days,
            vote_threshold=vote_threshold,
            quorum_percentage=quorum_percentage,
            voting_roles=list(voting_roles or DEFAULT_VOTING_ROLES),
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_band(self, band_id: str) -> BandRow | None:
        return await self.session.get(BandRow, band_id)

    async def add_member(
        self,
        band_id: str,
        user_id: str,
        role: str = "VOTING_MEMBER",
        *,
        display_name: str = "",
        status: str = "ACTIVE",
        is_treasurer: bool = False,
    ) -> MemberRow:
        row = MemberRow(
            band_id=band_id,
            user_id=user_id,
            role=role,
            display_name=display_name,
            status=status,
            is_treasurer=is_treasurer,
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_member(self, band_id: str, user_id: str) -> MemberRow | None:
        stmt = select(MemberRow).where(
            MemberRow.band_id == band_id,
            MemberRow.user_id == user_id,
        )
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def get_members_for_band(self, band_id: str) -> list[MemberRow]:
        stmt = select(MemberRow).where(MemberRow.band_id == band_id).order_by(MemberRow.created_at)
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def count_eligible_voters(self, band_id: str, roles: Iterable[str]) -> int:
        """Count ACTIVE members whose role may vote."""
        stmt = select(func.count(MemberRow.id)).where(
            MemberRow.band_id == band_id,
            MemberRow.status == "ACTIVE",
            MemberRow.role.in_(list(roles)),
        )
        result = await self.session.execute(stmt)
        return result.scalar_one()

    async def count_treasurers(self, band_id: str) -> int:
        stmt = select(func.count(MemberRow.id)).where(
            MemberRow.band_id == band_id,
            MemberRow.status == "ACTIVE",
            MemberRow.is_treasurer.is_(True),
        )
        result = await self.session.execute(stmt)
        return result.scalar_one()

    async def set_treasurer_flag(self, band_id: str, user_id: str, value: bool) -> bool:
        """Flip a member's treasurer flag, only if it currently holds the opposite value.

        Returns False when the row was not in the expected state (someone else
        already flipped it, or the member is gone). That is an optimistic-concurrency
        miss the caller must surface.
        """
        stmt = (
            update(MemberRow)
            .where(
                MemberRow.band_id == band_id,
                MemberRow.user_id == user_id,
                MemberRow.status == "ACTIVE",
                MemberRow.is_treasurer.is_(not value),
            )
            .values(is_treasurer=value)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def mark_effects_validated(self, proposal_id: str, when: datetime) -> None:
        stmt = (
            update(ProposalRow)
            .where(ProposalRow.id == proposal_id)
            .values(effects_validated_at=when)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    # --- Finance ---

    async def get_finance_settings(self, band_id: str) -> BandFinanceSettingsRow | None:
        stmt = select(BandFinanceSettingsRow).where(BandFinanceSettingsRow.band_id == band_id)
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def set_bucket_management_policy(
        self, band_id: str, policy: str
    ) -> BandFinanceSettingsRow:
        """Upsert the band's finance settings row with a new policy."""
        row = await self.get_finance_settings(band_id)
        if row is None:
            row = BandFinanceSettingsRow(band_id=band_id, bucket_management_policy=policy)
            self.session.add(row)
        else:
            row.bucket_management_policy = policy
        await self.session.flush()
        return row

    async def get_bucket(self, bucket_id: str) -> BucketRow | None:
        return await self.session.get(BucketRow, bucket_id, populate_existing=True)

    async def get_bucket_by_name(self, band_id: str, name: str) -> BucketRow | None:
        stmt = select(BucketRow).where(BucketRow.band_id == band_id, BucketRow.name == name)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_buckets_for_band(self, band_id: str) -> list[BucketRow]:
        stmt = select(BucketRow).where(BucketRow.band_id == band_id).order_by(BucketRow.created_at)
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def count_active_operating_buckets(self, band_id: str) -> int:
        stmt = select(func.count(BucketRow.id)).where(
            BucketRow.band_id == band_id,
            BucketRow.type == "OPERATING",
            BucketRow.is_active.is_(True),
        )
        result = await self.session.execute(stmt)
        return result.scalar_one()

    async def create_bucket(
        self,
        band_id: str,
        name: str,
        type: str,
        visibility: str,
        created_by_proposal_id: str | None = None,
    ) -> BucketRow:
        """Insert a bucket. Raises IntegrityError if the name is taken in this band."""
        row = BucketRow(
            band_id=band_id,
            name=name,
            type=type,
            visibility=visibility,
            created_by_proposal_id=created_by_proposal_id,
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def update_bucket(self, bucket_id: str, **fields: object) -> BucketRow | None:
        row = await self.get_bucket(bucket_id)
        if row is None:
            return None
        for key, value in fields.items():
            setattr(row, key, value)
        await self.session.flush()
        return row

    async def deactivate_bucket(self, bucket_id: str) -> bool:
        """Mark a bucket inactive, only if it is currently active."""
        stmt = (
            update(BucketRow)
            .where(BucketRow.id == bucket_id, BucketRow.is_active.is_(True))
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    # --- Proposals ---

    async def create_proposal(
        self,
        band_id: str,
        created_by_id: str,
        title: str,
        description: str,
        voting_ends_at: datetime,
        *,
        type: str = "GOVERNANCE",
        execution_type: str = "RESOLUTION",
        execution_subtype: str | None = None,
        effects: list[dict] | None = None,
        effects_validated_at: datetime | None = None,
    ) -> ProposalRow:
        row = ProposalRow(
            band_id=band_id,
            created_by_id=created_by_id,
            title=title,
            description=description,
            type=type,
            execution_type=execution_type,
            execution_subtype=execution_subtype,
            effects=effects or [],
            effects_validated_at=effects_validated_at,
            status="VOTING",
            voting_ends_at=voting_ends_at,
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_proposal(self, proposal_id: str) -> ProposalRow | None:
        """Load a proposal, always refreshing from the database.

        Status is changed with guarded UPDATEs that bypass the identity map,
        so a cached instance may be stale.
        """
        return await self.session.get(ProposalRow, proposal_id, populate_existing=True)

    async def get_proposals_for_band(
        self, band_id: str, status: str | None = None
    ) -> list[ProposalRow]:
        stmt = select(ProposalRow).where(ProposalRow.band_id == band_id)
        if status is not None:
            stmt = stmt.where(ProposalRow.status == status)
        stmt = stmt.order_by(ProposalRow.created_at.desc())
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def get_proposals_by_status(self, status: str) -> list[ProposalRow]:
        stmt = (
            select(ProposalRow)
            .where(ProposalRow.status == status)
            .order_by(ProposalRow.updated_at)
        )
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def get_expired_voting_proposal_ids(self, now: datetime) -> list[str]:
        """IDs of proposals still in VOTING whose deadline has passed."""
        stmt = (
            select(ProposalRow.id)
            .where(ProposalRow.status == "VOTING", ProposalRow.voting_ends_at <= now)
            .order_by(ProposalRow.voting_ends_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def transition_proposal(
        self,
        proposal_id: str,
        from_statuses: Iterable[str],
        to_status: str,
        **values: object,
    ) -> bool:
        """Atomically move a proposal between statuses.

        Issues ``UPDATE ... WHERE status IN (:from_statuses)`` and reports
        whether this caller won. A False return means another writer got
        there first (or the proposal was never in an allowed status).
        """
        stmt = (
            update(ProposalRow)
            .where(
                ProposalRow.id == proposal_id,
                ProposalRow.status.in_(list(from_statuses)),
            )
            .values(status=to_status, **values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    # --- Votes ---

    async def get_vote(self, proposal_id: str, user_id: str) -> VoteRow | None:
        stmt = select(VoteRow).where(VoteRow.proposal_id == proposal_id, VoteRow.user_id == user_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert_vote(
        self,
        proposal_id: str,
        user_id: str,
        vote: str,
        comment: str | None = None,
    ) -> tuple[VoteRow, bool]:
        """Create or overwrite a member's vote. Returns (row, created)."""
        row = await self.get_vote(proposal_id, user_id)
        created = row is None
        if row is None:
            row = VoteRow(proposal_id=proposal_id, user_id=user_id, vote=vote, comment=comment)
            self.session.add(row)
        else:
            row.vote = vote
            row.comment = comment
        await self.session.flush()
        return row, created

    async def get_votes_with_roles(
        self, proposal_id: str, band_id: str
    ) -> list[tuple[VoteRow, str | None]]:
        """All votes on a proposal, paired with the voter's *current* ACTIVE role.

        Voters who have since left the band (or gone inactive) get ``None``.
        """
        stmt = (
            select(VoteRow, MemberRow.role)
            .outerjoin(
                MemberRow,
                (MemberRow.user_id == VoteRow.user_id)
                & (MemberRow.band_id == band_id)
                & (MemberRow.status == "ACTIVE"),
            )
            .where(VoteRow.proposal_id == proposal_id)
            .order_by(VoteRow.created_at)
        )
        result = await self.session.execute(stmt)
        return [(row, role) for row, role in result.all()]

    # --- Execution Logs (append-only) ---

    async def get_successful_execution_log(self, proposal_id: str) -> ExecutionLogRow | None:
        stmt = select(ExecutionLogRow).where(
            ExecutionLogRow.proposal_id == proposal_id,
            ExecutionLogRow.status == "SUCCESS",
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def append_execution_log(
        self,
        proposal_id: str,
        band_id: str,
        status: str,
        effects_submitted: list[dict],
        effects_executed: list[dict],
        *,
        execution_subtype: str | None = None,
        error_message: str | None = None,
        executed_by_id: str | None = None,
    ) -> ExecutionLogRow:
        """Append one execution attempt. Rows are never updated afterwards.

        Raises DuplicateExecutionError for a second SUCCESS on the same
        proposal; the partial unique index backs this up under races.
        """
        if status == "SUCCESS" and await self.get_successful_execution_log(proposal_id):
            raise DuplicateExecutionError(
                f"Proposal {proposal_id} already has a successful execution"
            )
        row = ExecutionLogRow(
            proposal_id=proposal_id,
            band_id=band_id,
            execution_subtype=execution_subtype or "UNKNOWN",
            status=status,
            effects_submitted=effects_submitted,
            effects_executed=effects_executed,
            error_message=error_message,
            executed_by_id=executed_by_id,
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_execution_logs(self, proposal_id: str) -> list[ExecutionLogRow]:
        stmt = (
            select(ExecutionLogRow)
            .where(ExecutionLogRow.proposal_id == proposal_id)
            .order_by(ExecutionLogRow.created_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_latest_execution_log(self, proposal_id: str) -> ExecutionLogRow | None:
        logs = await self.get_execution_logs(proposal_id)
        return logs[-1] if logs else None

    # --- Governance Events (append-only) ---

    async def append_event(
        self,
        event_type: str,
        proposal_id: str,
        band_id: str,
        payload: dict,
        actor_id: str | None = None,
    ) -> GovernanceEventRow:
        # SQLite is single-writer, so concurrent sequence assignment is safe.
        stmt = select(func.coalesce(func.max(GovernanceEventRow.sequence_number), 0))
        result = await self.session.execute(stmt)
        seq = result.scalar_one() + 1

        row = GovernanceEventRow(
            event_type=event_type,
            proposal_id=proposal_id,
            band_id=band_id,
            actor_id=actor_id,
            payload=payload,
            sequence_number=seq,
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_events_for_proposal(self, proposal_id: str) -> list[GovernanceEventRow]:
        stmt = (
            select(GovernanceEventRow)
            .where(GovernanceEventRow.proposal_id == proposal_id)
            .order_by(GovernanceEventRow.sequence_number)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
