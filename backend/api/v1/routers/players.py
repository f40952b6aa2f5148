"""
Players Router — loyalty tier and its transition history.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from api.deps import get_store
from db.store import StoreAdapter

router = APIRouter(prefix="/api/v1/players", tags=["players"])


class TierHistoryResponse(BaseModel):
    history_id: UUID
    player_id: UUID
    old_tier: str
    new_tier: str
    changed_at: datetime
    run_id: str | None

    model_config = {"from_attributes": True}


class PlayerTierResponse(BaseModel):
    player_id: UUID
    display_name: str
    tier: str
    last_evaluated_at: datetime | None
    history: list[TierHistoryResponse]


@router.get("/{player_id}/tier-history", response_model=PlayerTierResponse)
async def get_tier_history(player_id: UUID, store: StoreAdapter = Depends(get_store)):
    """Current tier plus every recorded transition, oldest first."""
    player = await store.get_player(player_id)
    if player is None:
        raise HTTPException(status_code=404, detail="Player not found")
    history = await store.list_tier_history(player_id)
    return PlayerTierResponse(
        player_id=player.player_id,
        display_name=player.display_name,
        tier=player.tier,
        last_evaluated_at=player.last_evaluated_at,
        history=[TierHistoryResponse.model_validate(h) for h in history],
    )
