"""Promo code administration (admin bearer token required)."""

from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ..auth import require_admin
from ..deps import get_promo_store
from .promo import PromoAllowanceStore

router = APIRouter(prefix="/api/promo", tags=["promo"], dependencies=[Depends(require_admin)])


class GeneratePromoRequest(BaseModel):
    max_uses: int = Field(ge=1)


class ResetPromoRequest(BaseModel):
    remaining_uses: int = Field(ge=0)


class PromoResponse(BaseModel):
    id: str
    code: str
    max_uses: int
    remaining_uses: int
    created_at: str
    updated_at: str


@router.post("/generate", response_model=PromoResponse)
async def generate_promo(request: GeneratePromoRequest, store: PromoAllowanceStore = Depends(get_promo_store)):
    record = await store.generate(request.max_uses)
    return PromoResponse(**record.to_dict())


@router.get("/list", response_model=List[PromoResponse])
async def list_promos(store: PromoAllowanceStore = Depends(get_promo_store)):
    return [PromoResponse(**record.to_dict()) for record in await store.list_active()]


@router.post("/free", response_model=PromoResponse)
async def create_free_promo(store: PromoAllowanceStore = Depends(get_promo_store)):
    record = await store.create_free()
    return PromoResponse(**record.to_dict())


@router.post("/{promo_id}/reset", response_model=PromoResponse)
async def reset_promo(
    promo_id: str,
    request: ResetPromoRequest,
    store: PromoAllowanceStore = Depends(get_promo_store),
):
    record = await store.reset(promo_id, request.remaining_uses)
    return PromoResponse(**record.to_dict())


@router.delete("/{promo_id}")
async def delete_promo(promo_id: str, store: PromoAllowanceStore = Depends(get_promo_store)):
    await store.delete(promo_id)
    return {"success": True}
