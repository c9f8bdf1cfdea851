"""API tests: proposal creation through execution over HTTP."""

import pytest
from httpx import ASGITransport, AsyncClient

from bandgov.config import Settings
from bandgov.core.effects import initialize_effect_handlers
from bandgov.core.event_bus import EventBus
from bandgov.db.engine import create_engine, create_schema, get_session
from bandgov.db.repository import Repository
from bandgov.main import create_app

FIN = "FINANCE_BUCKET_GOVERNANCE_V1"


@pytest.fixture
async def app_and_engine():
    """Create test app with in-memory database and no scheduler."""
    settings = Settings(database_url="sqlite+aiosqlite:///:memory:", bandgov_auto_sweep=False)
    application = create_app(settings)
    engine = create_engine("sqlite+aiosqlite:///:memory:")
    await create_schema(engine)
    application.state.engine = engine
    application.state.effect_registry = initialize_effect_handlers()
    application.state.event_bus = EventBus()
    yield application, engine
    await engine.dispose()


@pytest.fixture
async def band(app_and_engine, seed):
    _, engine = app_and_engine
    async with get_session(engine) as session:
        return await seed(Repository(session))


@pytest.fixture
async def client(app_and_engine):
    application, _ = app_and_engine
    transport = ASGITransport(app=application)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


def _proposal_body(band, effects, **overrides) -> dict:
    body = {
        "band_id": band.id,
        "created_by_id": band.founder,
        "title": "Add a second treasurer",
        "description": "The conductor should co-sign payments alongside the governor.",
        "execution_type": "GOVERNANCE",
        "execution_subtype": FIN,
        "effects": effects,
    }
    body.update(overrides)
    return body


TREASURER_EFFECTS = [{"type": "ADD_TREASURER", "payload": {"userId": "u-conductor"}}]


async def _create(client, band, effects=TREASURER_EFFECTS, **overrides):
    body = _proposal_body(band, effects, **overrides)
    return await client.post("/api/governance/proposals", json=body)


class TestHealth:
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"


class TestProposalEndpoints:
    async def test_create_and_fetch(self, client, band):
        resp = await _create(client, band)
        assert resp.status_code == 201
        proposal = resp.json()["data"]
        assert proposal["status"] == "VOTING"
        assert proposal["effects"] == TREASURER_EFFECTS

        resp = await client.get(f"/api/governance/proposals/{proposal['id']}")
        assert resp.status_code == 200
        assert resp.json()["data"]["title"] == "Add a second treasurer"

        resp = await client.get("/api/governance/proposals", params={"band_id": band.id})
        assert [p["id"] for p in resp.json()["data"]] == [proposal["id"]]

    async def test_invalid_effects_400(self, client, band):
        resp = await _create(
            client, band, [{"type": "ADD_TREASURER", "payload": {"userId": "u-nobody"}}]
        )
        assert resp.status_code == 400
        errors = resp.json()["detail"]["errors"]
        assert errors[0]["code"] == "PRECONDITION_FAILED"
        assert errors[0]["index"] == 0

    async def test_role_403(self, client, band):
        resp = await _create(client, band, created_by_id=band.member_a)
        assert resp.status_code == 403

    async def test_unknown_band_404(self, client, band):
        resp = await _create(client, band, band_id="nope")
        assert resp.status_code == 404

    async def test_short_title_422(self, client, band):
        resp = await _create(client, band, title="Hi")
        assert resp.status_code == 422

    async def test_unknown_proposal_404(self, client, band):
        assert (await client.get("/api/governance/proposals/missing")).status_code == 404

    async def test_effect_types(self, client):
        resp = await client.get("/api/governance/effect-types")
        assert "ADD_TREASURER" in resp.json()["data"][FIN]


class TestVoteCloseExecute:
    async def test_full_flow(self, client, band):
        resp = await _create(client, band)
        proposal_id = resp.json()["data"]["id"]
        base = f"/api/governance/proposals/{proposal_id}"

        for user in (band.founder, band.governor, band.member_a):
            resp = await client.post(f"{base}/votes", json={"user_id": user, "vote": "YES"})
            assert resp.status_code == 200
        resp = await client.post(f"{base}/votes", json={"user_id": band.member_b, "vote": "NO"})
        assert resp.json()["data"]["vote"] == "NO"

        # Early close without force is refused.
        resp = await client.post(f"{base}/close", json={"user_id": band.governor})
        assert resp.status_code == 409

        resp = await client.post(f"{base}/close", json={"user_id": band.governor, "force": True})
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["tally"]["yes_count"] == 3
        assert data["execution"]["status"] == "SUCCESS"
        assert data["proposal"]["status"] == "EXECUTED"

        resp = await client.get(f"{base}/execution-logs")
        logs = resp.json()["data"]
        assert len(logs) == 1
        assert logs[0]["status"] == "SUCCESS"

        resp = await client.post(f"{base}/execute", json={"user_id": band.founder})
        assert resp.status_code == 200
        assert resp.json()["data"]["cached"] is True

        resp = await client.get(f"/api/bands/{band.id}/finance")
        assert sorted(resp.json()["data"]["treasurer_user_ids"]) == ["u-conductor", "u-governor"]

        resp = await client.get(f"{base}/events")
        assert [e["event_type"] for e in resp.json()["data"]] == [
            "proposal.created",
            "vote.cast",
            "vote.cast",
            "vote.cast",
            "vote.cast",
            "proposal.closed",
            "proposal.approved",
            "proposal.executing",
            "proposal.executed",
        ]

    async def test_observer_vote_403(self, client, band):
        resp = await _create(client, band)
        proposal_id = resp.json()["data"]["id"]
        resp = await client.post(
            f"/api/governance/proposals/{proposal_id}/votes",
            json={"user_id": band.observer, "vote": "YES"},
        )
        assert resp.status_code == 403

    async def test_execute_voting_proposal_409(self, client, band):
        resp = await _create(client, band)
        proposal_id = resp.json()["data"]["id"]
        resp = await client.post(
            f"/api/governance/proposals/{proposal_id}/execute", json={"user_id": band.founder}
        )
        assert resp.status_code == 409


class TestBandEndpoints:
    async def test_band_with_members(self, client, band):
        resp = await client.get(f"/api/bands/{band.id}")
        data = resp.json()["data"]
        assert data["slug"] == "tuesday-players"
        assert len(data["members"]) == 6

    async def test_finance_unknown_band(self, client):
        assert (await client.get("/api/bands/nope/finance")).status_code == 404
