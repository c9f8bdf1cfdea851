"""Shared test fixtures."""

from __future__ import annotations

from dataclasses import dataclass

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine

from bandgov.config import Settings
from bandgov.core.effects import EffectHandlerRegistry, initialize_effect_handlers
from bandgov.core.finance_effects import FINANCE_BUCKET_GOVERNANCE_V1
from bandgov.core.governance import create_proposal
from bandgov.db.engine import create_engine, create_schema, get_session
from bandgov.db.repository import Repository
from bandgov.models.governance import ProposalDraft


@dataclass
class SeededBand:
    id: str
    founder: str = "u-founder"
    governor: str = "u-governor"
    conductor: str = "u-conductor"
    member_a: str = "u-member-a"
    member_b: str = "u-member-b"
    observer: str = "u-observer"
    operating_bucket_id: str = ""

    @property
    def voters(self) -> list[str]:
        return [self.founder, self.governor, self.conductor, self.member_a, self.member_b]


@pytest.fixture
def settings() -> Settings:
    """Test settings with defaults."""
    return Settings(
        bandgov_env="development",
        bandgov_auto_sweep=False,
        database_url="sqlite+aiosqlite:///:memory:",
    )


@pytest.fixture
async def engine() -> AsyncEngine:
    eng = create_engine("sqlite+aiosqlite:///:memory:")
    await create_schema(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
async def repo(engine: AsyncEngine) -> Repository:
    async with get_session(engine) as session:
        yield Repository(session)


@pytest.fixture
def registry() -> EffectHandlerRegistry:
    return initialize_effect_handlers()


async def seed_band(repo: Repository, slug: str = "tuesday-players", **band_kwargs) -> SeededBand:
    """A band with five voters (the governor is treasurer) and an OPERATING bucket."""
    row = await repo.create_band("The Tuesday Players", slug, **band_kwargs)
    band = SeededBand(id=row.id)
    await repo.add_member(band.id, band.founder, "FOUNDER")
    await repo.add_member(band.id, band.governor, "GOVERNOR", is_treasurer=True)
    await repo.add_member(band.id, band.conductor, "CONDUCTOR")
    await repo.add_member(band.id, band.member_a, "VOTING_MEMBER")
    await repo.add_member(band.id, band.member_b, "VOTING_MEMBER")
    await repo.add_member(band.id, band.observer, "OBSERVER")
    bucket = await repo.create_bucket(band.id, "Operating", "OPERATING", "MEMBERS")
    band.operating_bucket_id = bucket.id
    return band


@pytest.fixture
async def band(repo: Repository) -> SeededBand:
    return await seed_band(repo)


@pytest.fixture
def draft(band: SeededBand):
    """Build a finance-governance ProposalDraft for the seeded band."""

    def _draft(effects: list | None, **overrides) -> ProposalDraft:
        data = {
            "band_id": band.id,
            "created_by_id": band.founder,
            "title": "Restructure finance buckets",
            "description": "Reorganize the band's finance buckets for the new season.",
            "type": "GOVERNANCE",
            "execution_type": "GOVERNANCE",
            "execution_subtype": FINANCE_BUCKET_GOVERNANCE_V1,
            "effects": effects,
        }
        data.update(overrides)
        return ProposalDraft(**data)

    return _draft


@pytest.fixture
def approved(repo: Repository, registry: EffectHandlerRegistry, draft):
    """Create a proposal and move it straight to APPROVED. Returns its id."""

    async def _approved(effects: list | None, **overrides) -> str:
        row = await create_proposal(repo, registry, draft(effects, **overrides))
        assert await repo.transition_proposal(row.id, ["VOTING"], "APPROVED")
        return row.id

    return _approved


@pytest.fixture
def seed():
    """``seed_band`` for tests that manage their own sessions."""
    return seed_band
