"""Tests for the proposal lifecycle: tally, creation, voting, closing."""

from datetime import UTC, datetime, timedelta

import pytest

from bandgov.core.errors import (
    EffectValidationError,
    GovernanceError,
    NotFoundError,
    PermissionDeniedError,
    StateTransitionError,
    VotingClosedError,
)
from bandgov.core.finance_effects import load_finance_state
from bandgov.core.governance import (
    cast_vote,
    close_proposal,
    create_proposal,
    execute_proposal,
    tally_votes,
)
from bandgov.db.models import DEFAULT_VOTING_ROLES
from bandgov.models.governance import Vote

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
AFTER_DEADLINE = NOW + timedelta(days=8)


def _votes(*choices: str, role: str = "VOTING_MEMBER") -> list[Vote]:
    return [
        Vote(proposal_id="p-1", user_id=f"u-{i}", vote=choice, voter_role=role)
        for i, choice in enumerate(choices)
    ]


def _treasurer_effect(user_id: str) -> list[dict]:
    return [{"type": "ADD_TREASURER", "payload": {"userId": user_id}}]


# --- Tally ---


class TestTallyVotes:
    def test_simple_majority_passes(self):
        tally = tally_votes(_votes("YES", "YES", "YES", "NO", "NO"), DEFAULT_VOTING_ROLES)
        assert tally.approved
        assert tally.yes_percentage == 60.0
        assert tally.rejection_reason is None

    def test_exact_split_fails(self):
        tally = tally_votes(_votes("YES", "YES", "YES", "NO", "NO", "NO"), DEFAULT_VOTING_ROLES)
        assert tally.yes_percentage == 50.0
        assert not tally.approved
        assert "threshold" in tally.rejection_reason

    def test_abstain_only_fails(self):
        tally = tally_votes(_votes("ABSTAIN", "ABSTAIN"), DEFAULT_VOTING_ROLES)
        assert tally.yes_percentage == 0.0
        assert tally.abstain_count == 2
        assert not tally.approved

    def test_abstain_does_not_dilute_yes(self):
        tally = tally_votes(_votes("YES", "ABSTAIN", "ABSTAIN", "ABSTAIN"), DEFAULT_VOTING_ROLES)
        assert tally.yes_percentage == 100.0
        assert tally.approved

    def test_no_votes(self):
        tally = tally_votes([], DEFAULT_VOTING_ROLES)
        assert not tally.approved
        assert tally.total_votes == 0
        assert tally.proposal_id == ""

    def test_ineligible_roles_ignored(self):
        votes = _votes("YES", "YES", "YES", role="OBSERVER") + _votes("NO")
        votes.append(Vote(proposal_id="p-1", user_id="u-gone", vote="YES", voter_role=None))
        tally = tally_votes(votes, DEFAULT_VOTING_ROLES)
        assert tally.total_votes == 1
        assert tally.no_count == 1
        assert not tally.approved

    def test_custom_threshold(self):
        votes = _votes("YES", "YES", "NO")
        assert tally_votes(votes, DEFAULT_VOTING_ROLES, threshold=60.0).approved
        assert not tally_votes(votes, DEFAULT_VOTING_ROLES, threshold=70.0).approved

    def test_quorum_not_met(self):
        tally = tally_votes(
            _votes("YES", "YES"),
            DEFAULT_VOTING_ROLES,
            eligible_voters=10,
            quorum_percentage=50.0,
        )
        assert tally.participation_percentage == 20.0
        assert not tally.quorum_met
        assert not tally.approved
        assert tally.rejection_reason.startswith("Quorum not met")

    def test_quorum_met(self):
        tally = tally_votes(
            _votes("YES", "NO", "YES", "ABSTAIN", "YES"),
            DEFAULT_VOTING_ROLES,
            eligible_voters=10,
            quorum_percentage=50.0,
        )
        assert tally.quorum_met
        assert tally.approved

    def test_tally_is_idempotent(self):
        votes = _votes("YES", "NO", "ABSTAIN", "YES")
        assert tally_votes(votes, DEFAULT_VOTING_ROLES) == tally_votes(votes, DEFAULT_VOTING_ROLES)


# --- Creation ---


class TestCreateProposal:
    async def test_creates_voting_proposal(self, repo, registry, band, draft):
        row = await create_proposal(
            repo, registry, draft(_treasurer_effect(band.conductor)), now=NOW
        )
        proposal = await repo.get_proposal(row.id)
        assert proposal.status == "VOTING"
        assert proposal.effects == _treasurer_effect(band.conductor)
        assert proposal.effects_validated_at is not None
        assert proposal.voting_ends_at.replace(tzinfo=UTC) == NOW + timedelta(days=7)

    async def test_explicit_deadline(self, repo, registry, band, draft):
        ends = NOW + timedelta(days=2)
        row = await create_proposal(
            repo,
            registry,
            draft(_treasurer_effect(band.conductor), voting_ends_at=ends),
            now=NOW,
        )
        assert row.voting_ends_at == ends

    async def test_invalid_effects_store_nothing(self, repo, registry, band, draft):
        with pytest.raises(EffectValidationError) as exc_info:
            await create_proposal(
                repo, registry, draft([{"type": "GRANT_ROLE", "payload": {}}]), now=NOW
            )
        assert exc_info.value.issues[0].code == "UNKNOWN_EFFECT_TYPE"
        assert await repo.get_proposals_for_band(band.id) == []

    async def test_resolution_without_effects(self, repo, registry, band, draft):
        row = await create_proposal(
            repo,
            registry,
            draft(None, execution_type="RESOLUTION", execution_subtype=None),
            now=NOW,
        )
        assert row.effects == []
        assert row.effects_validated_at is None

    async def test_voting_member_cannot_create(self, repo, registry, band, draft):
        with pytest.raises(PermissionDeniedError):
            await create_proposal(
                repo,
                registry,
                draft(_treasurer_effect(band.conductor), created_by_id=band.member_a),
                now=NOW,
            )

    async def test_non_member_cannot_create(self, repo, registry, band, draft):
        with pytest.raises(PermissionDeniedError):
            await create_proposal(
                repo,
                registry,
                draft(_treasurer_effect(band.conductor), created_by_id="u-stranger"),
                now=NOW,
            )

    async def test_inactive_band(self, repo, registry, seed, draft):
        band = await seed(repo, slug="dissolved", status="DISSOLVED")
        with pytest.raises(PermissionDeniedError, match="active"):
            await create_proposal(
                repo,
                registry,
                draft(_treasurer_effect(band.conductor), band_id=band.id),
                now=NOW,
            )

    async def test_unknown_band(self, repo, registry, band, draft):
        with pytest.raises(NotFoundError):
            await create_proposal(
                repo, registry, draft(_treasurer_effect(band.conductor), band_id="b-none")
            )

    async def test_records_created_event(self, repo, registry, band, draft):
        row = await create_proposal(repo, registry, draft(_treasurer_effect(band.conductor)))
        events = await repo.get_events_for_proposal(row.id)
        assert [e.event_type for e in events] == ["proposal.created"]
        assert events[0].actor_id == band.founder


# --- Voting ---


class TestCastVote:
    async def _proposal(self, repo, registry, band, draft) -> str:
        row = await create_proposal(
            repo, registry, draft(_treasurer_effect(band.conductor)), now=NOW
        )
        return row.id

    async def test_vote_recorded(self, repo, registry, band, draft):
        proposal_id = await self._proposal(repo, registry, band, draft)
        vote = await cast_vote(repo, proposal_id, band.member_a, "YES", now=NOW)
        assert vote.vote == "YES"
        assert vote.voter_role == "VOTING_MEMBER"

    async def test_last_vote_wins(self, repo, registry, band, draft):
        proposal_id = await self._proposal(repo, registry, band, draft)
        await cast_vote(repo, proposal_id, band.member_a, "YES", now=NOW)
        await cast_vote(repo, proposal_id, band.member_a, "NO", "changed my mind", now=NOW)

        rows = await repo.get_votes_with_roles(proposal_id, band.id)
        assert len(rows) == 1
        assert rows[0][0].vote == "NO"
        assert rows[0][0].comment == "changed my mind"

    async def test_vote_after_deadline(self, repo, registry, band, draft):
        proposal_id = await self._proposal(repo, registry, band, draft)
        with pytest.raises(VotingClosedError):
            await cast_vote(repo, proposal_id, band.member_a, "YES", now=AFTER_DEADLINE)

    async def test_observer_cannot_vote(self, repo, registry, band, draft):
        proposal_id = await self._proposal(repo, registry, band, draft)
        with pytest.raises(PermissionDeniedError):
            await cast_vote(repo, proposal_id, band.observer, "YES", now=NOW)

    async def test_invalid_choice(self, repo, registry, band, draft):
        proposal_id = await self._proposal(repo, registry, band, draft)
        with pytest.raises(GovernanceError, match="Invalid vote"):
            await cast_vote(repo, proposal_id, band.member_a, "MAYBE", now=NOW)

    async def test_vote_on_closed_proposal(self, repo, registry, band, draft):
        proposal_id = await self._proposal(repo, registry, band, draft)
        await close_proposal(repo, registry, proposal_id, now=AFTER_DEADLINE)
        with pytest.raises(VotingClosedError):
            await cast_vote(repo, proposal_id, band.member_a, "YES", now=NOW)


# --- Closing ---


class TestCloseProposal:
    async def _voted(self, repo, registry, band, draft, yes: list[str], no=(), **kw) -> str:
        effects = kw.pop("effects", _treasurer_effect(band.conductor))
        row = await create_proposal(repo, registry, draft(effects, **kw), now=NOW)
        for user in yes:
            await cast_vote(repo, row.id, user, "YES", now=NOW)
        for user in no:
            await cast_vote(repo, row.id, user, "NO", now=NOW)
        return row.id

    async def test_approved_finance_proposal_executes(self, repo, registry, band, draft):
        proposal_id = await self._voted(
            repo,
            registry,
            band,
            draft,
            yes=band.voters,
            effects=[
                {"type": "SET_BUCKET_MANAGEMENT_POLICY", "payload": {"value": "TREASURER_ONLY"}},
                {"type": "ADD_TREASURER", "payload": {"userId": band.conductor}},
                {
                    "type": "CREATE_BUCKET",
                    "payload": {
                        "bucket": {"name": "Tour Fund", "type": "PROJECT", "visibility": "MEMBERS"}
                    },
                },
            ],
        )

        result = await close_proposal(repo, registry, proposal_id, now=AFTER_DEADLINE)

        assert result.tally.approved
        assert result.tally.yes_count == 5
        assert result.execution.status == "SUCCESS"
        assert result.proposal.status == "EXECUTED"

        state = await load_finance_state(repo, band.id)
        assert state.bucket_management_policy == "TREASURER_ONLY"
        assert sorted(state.treasurer_user_ids) == sorted([band.governor, band.conductor])
        assert {b.name for b in state.buckets} == {"Operating", "Tour Fund"}

        events = [e.event_type for e in await repo.get_events_for_proposal(proposal_id)]
        assert events[0] == "proposal.created"
        assert events[-4:] == [
            "proposal.closed",
            "proposal.approved",
            "proposal.executing",
            "proposal.executed",
        ]

    async def test_operating_fund_for_new_band(self, repo, registry, draft):
        winds = await repo.create_band(
            "The Wednesday Winds", "wednesday-winds", voting_period_days=7
        )
        voters = ["w-founder", "w-governor", "w-alto", "w-tenor", "w-bass"]
        roles = ["FOUNDER", "GOVERNOR", "VOTING_MEMBER", "VOTING_MEMBER", "VOTING_MEMBER"]
        for user_id, role in zip(voters, roles, strict=True):
            await repo.add_member(winds.id, user_id, role)
        assert await repo.get_buckets_for_band(winds.id) == []

        row = await create_proposal(
            repo,
            registry,
            draft(
                [
                    {
                        "type": "SET_BUCKET_MANAGEMENT_POLICY",
                        "payload": {"value": "TREASURER_ONLY"},
                    },
                    {"type": "ADD_TREASURER", "payload": {"userId": "w-alto"}},
                    {
                        "type": "CREATE_BUCKET",
                        "payload": {
                            "bucket": {
                                "name": "Operating Fund",
                                "type": "OPERATING",
                                "visibility": "MEMBERS",
                            }
                        },
                    },
                ],
                band_id=winds.id,
                created_by_id="w-founder",
            ),
            now=NOW,
        )
        assert row.voting_ends_at.replace(tzinfo=UTC) == NOW + timedelta(days=7)
        for user_id in voters:
            await cast_vote(repo, row.id, user_id, "YES", now=NOW)

        result = await close_proposal(repo, registry, row.id, now=AFTER_DEADLINE)

        assert result.tally.yes_percentage == 100.0
        assert result.tally.approved
        assert result.execution.status == "SUCCESS"
        assert len(result.execution.effects_executed) == 3
        assert all("result" in entry for entry in result.execution.effects_executed)

        state = await load_finance_state(repo, winds.id)
        assert state.bucket_management_policy == "TREASURER_ONLY"
        assert state.treasurer_user_ids == ["w-alto"]
        assert [(b.name, b.type) for b in state.buckets] == [("Operating Fund", "OPERATING")]

    async def test_missing_band_is_not_found(self, repo, registry, band, draft, monkeypatch):
        proposal_id = await self._voted(repo, registry, band, draft, yes=[band.founder])

        async def no_band(band_id):
            return None

        monkeypatch.setattr(repo, "get_band", no_band)
        with pytest.raises(NotFoundError):
            await close_proposal(repo, registry, proposal_id, now=AFTER_DEADLINE)

    async def test_rejected_proposal_not_executed(self, repo, registry, band, draft):
        proposal_id = await self._voted(
            repo, registry, band, draft, yes=[band.founder], no=[band.member_a, band.member_b]
        )
        result = await close_proposal(repo, registry, proposal_id, now=AFTER_DEADLINE)

        assert result.proposal.status == "REJECTED"
        assert result.execution is None
        assert result.proposal.tally["no_count"] == 2
        assert await repo.get_execution_logs(proposal_id) == []
        assert not (await repo.get_member(band.id, band.conductor)).is_treasurer

    async def test_approved_without_effects_stays_approved(self, repo, registry, band, draft):
        proposal_id = await self._voted(
            repo,
            registry,
            band,
            draft,
            yes=[band.founder],
            effects=None,
            execution_type="RESOLUTION",
            execution_subtype=None,
        )
        result = await close_proposal(repo, registry, proposal_id, now=AFTER_DEADLINE)
        assert result.proposal.status == "APPROVED"
        assert result.execution is None

    async def test_close_is_idempotent(self, repo, registry, band, draft):
        proposal_id = await self._voted(repo, registry, band, draft, yes=band.voters)
        first = await close_proposal(repo, registry, proposal_id, now=AFTER_DEADLINE)
        second = await close_proposal(repo, registry, proposal_id, now=AFTER_DEADLINE)

        assert not first.already_closed
        assert second.already_closed
        assert second.proposal.status == "EXECUTED"
        assert second.tally.approved
        assert len(await repo.get_execution_logs(proposal_id)) == 1

    async def test_early_close_requires_force(self, repo, registry, band, draft):
        proposal_id = await self._voted(repo, registry, band, draft, yes=[band.founder])
        with pytest.raises(StateTransitionError):
            await close_proposal(
                repo, registry, proposal_id, closed_by_id=band.governor, now=NOW
            )
        with pytest.raises(StateTransitionError):
            await close_proposal(repo, registry, proposal_id, now=NOW)
        assert (await repo.get_proposal(proposal_id)).status == "VOTING"

    async def test_force_close_by_governor(self, repo, registry, band, draft):
        proposal_id = await self._voted(repo, registry, band, draft, yes=[band.founder])
        result = await close_proposal(
            repo, registry, proposal_id, closed_by_id=band.governor, force=True, now=NOW
        )
        assert result.proposal.status == "EXECUTED"
        assert result.proposal.closed_at is not None

    async def test_force_close_needs_authority(self, repo, registry, band, draft):
        proposal_id = await self._voted(
            repo, registry, band, draft, yes=[band.founder], created_by_id=band.conductor
        )
        with pytest.raises(PermissionDeniedError):
            await close_proposal(
                repo, registry, proposal_id, closed_by_id=band.conductor, force=True, now=NOW
            )

    async def test_creator_may_close_after_deadline(self, repo, registry, band, draft):
        proposal_id = await self._voted(
            repo, registry, band, draft, yes=[band.founder], created_by_id=band.conductor
        )
        result = await close_proposal(
            repo, registry, proposal_id, closed_by_id=band.conductor, now=AFTER_DEADLINE
        )
        assert result.proposal.status == "EXECUTED"

    async def test_other_member_may_not_close(self, repo, registry, band, draft):
        proposal_id = await self._voted(repo, registry, band, draft, yes=[band.founder])
        with pytest.raises(PermissionDeniedError):
            await close_proposal(
                repo, registry, proposal_id, closed_by_id=band.member_a, now=AFTER_DEADLINE
            )

    async def test_quorum_from_band_settings(self, repo, registry, seed, draft):
        band = await seed(repo, slug="quorum-band", quorum_percentage=60.0)
        proposal_id = await self._voted(
            repo, registry, band, draft, yes=[band.founder, band.governor], band_id=band.id
        )
        result = await close_proposal(repo, registry, proposal_id, now=AFTER_DEADLINE)
        assert result.tally.eligible_voters == 5
        assert not result.tally.quorum_met
        assert result.proposal.status == "REJECTED"

    async def test_departed_voter_not_counted(self, repo, registry, band, draft):
        proposal_id = await self._voted(
            repo, registry, band, draft, yes=[band.member_a], no=[band.member_b]
        )
        member = await repo.get_member(band.id, band.member_b)
        member.status = "REMOVED"
        await repo.session.flush()

        result = await close_proposal(repo, registry, proposal_id, now=AFTER_DEADLINE)
        assert result.tally.total_votes == 1
        assert result.tally.approved


class TestExecuteProposal:
    async def test_requires_authority(self, repo, registry, band, approved):
        proposal_id = await approved(_treasurer_effect(band.conductor))
        with pytest.raises(PermissionDeniedError):
            await execute_proposal(repo, registry, proposal_id, band.member_a)

    async def test_governor_executes(self, repo, registry, band, approved):
        proposal_id = await approved(_treasurer_effect(band.conductor))
        result = await execute_proposal(repo, registry, proposal_id, band.governor)
        assert result.success
        again = await execute_proposal(repo, registry, proposal_id, band.governor)
        assert again.cached
