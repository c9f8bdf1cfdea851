"""Band read endpoints: membership and finance state."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException

from bandgov.api.deps import RepoDep
from bandgov.core.finance_effects import load_finance_state
from bandgov.models.band import Band, Member

router = APIRouter(prefix="/api/bands", tags=["bands"])


@router.get("/{band_id}")
async def get_band(band_id: str, repo: RepoDep) -> dict:
    band = await repo.get_band(band_id)
    if band is None:
        raise HTTPException(status_code=404, detail="Band not found")
    members = await repo.get_members_for_band(band_id)
    return {
        "data": {
            **Band.model_validate(band).model_dump(mode="json"),
            "members": [Member.model_validate(m).model_dump(mode="json") for m in members],
        }
    }


@router.get("/{band_id}/finance")
async def get_band_finance(band_id: str, repo: RepoDep) -> dict:
    """Bucket-management policy, current treasurers and all buckets."""
    if await repo.get_band(band_id) is None:
        raise HTTPException(status_code=404, detail="Band not found")
    state = await load_finance_state(repo, band_id)
    return {"data": state.model_dump(mode="json")}
