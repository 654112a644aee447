"""
API endpoints for restaurant flash deals.

POST   /flash-deals/                     - publish a deal (restaurant)
GET    /flash-deals/                     - live deals, ending soonest first
GET    /flash-deals/nearby               - live deals around a point
GET    /flash-deals/me                   - restaurant's own deals with stats
GET    /flash-deals/claims/me            - caller's reservations
GET    /flash-deals/{id}                 - deal detail
POST   /flash-deals/{id}/claim           - reserve items
POST   /flash-deals/{id}/cancel          - cancel the deal (restaurant)
POST   /flash-deals/{id}/view            - count a view
POST   /flash-deals/claims/{id}/confirm  - confirm a reservation (restaurant)
POST   /flash-deals/claims/{id}/pickup   - hand over against the pickup code
POST   /flash-deals/claims/{id}/cancel   - withdraw a reservation (claimant)
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from models.entities.couchbase.flash_deals import FlashDealItem
from models.identity import Identity
from models.operations.flash_deals import (
    flash_deal_cancel,
    flash_deal_cancel_claim,
    flash_deal_claim,
    flash_deal_claims_get_mine,
    flash_deal_confirm_claim,
    flash_deal_create,
    flash_deal_get_detail,
    flash_deal_increment_view_count,
    flash_deal_mark_picked_up,
    flash_deals_get_active,
    flash_deals_get_mine,
    flash_deals_get_nearby,
)
from utils import log

from .dependencies import current_identity_get, require_identity

logger = log.get_logger(__name__)

router = APIRouter(prefix="/flash-deals", tags=["flash-deals"])


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------

class CreateFlashDealRequest(BaseModel):
    title: str
    description: str
    items: List[FlashDealItem]
    discount_percentage: float = Field(ge=0, le=100)
    end_time: datetime
    start_time: Optional[datetime] = None
    notification_radius: Optional[float] = Field(None, gt=0)


class CreateFlashDealResponse(BaseModel):
    deal_id: str
    status: str


class ClaimItemRequest(BaseModel):
    name: str
    quantity: int


class ClaimRequest(BaseModel):
    items: List[ClaimItemRequest]


class ClaimResponse(BaseModel):
    claim_id: str
    pickup_code: str
    total_amount: float


class PickupRequest(BaseModel):
    pickup_code: str


class StatusResponse(BaseModel):
    id: str
    status: str


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/", response_model=CreateFlashDealResponse, status_code=201)
async def route_flash_deal_create(
    body: CreateFlashDealRequest,
    identity: Identity = Depends(require_identity),
):
    deal = await flash_deal_create(
        identity,
        title=body.title,
        description=body.description,
        items=body.items,
        discount_percentage=body.discount_percentage,
        end_time=body.end_time,
        notification_radius=body.notification_radius,
        start_time=body.start_time,
    )
    return CreateFlashDealResponse(deal_id=deal.id, status=deal.data.status)


@router.get("/", response_model=List[Dict[str, Any]])
async def route_flash_deals_active(limit: Optional[int] = Query(None, ge=1, le=200)):
    return await flash_deals_get_active(limit=limit)


@router.get("/nearby", response_model=List[Dict[str, Any]])
async def route_flash_deals_nearby(
    lat: float,
    lng: float,
    radius_km: float = Query(5, gt=0),
):
    return await flash_deals_get_nearby(lat, lng, radius_km)


@router.get("/me", response_model=List[Dict[str, Any]])
async def route_flash_deals_mine(identity: Optional[Identity] = Depends(current_identity_get)):
    return await flash_deals_get_mine(identity)


@router.get("/claims/me", response_model=List[Dict[str, Any]])
async def route_flash_deal_claims_mine(identity: Optional[Identity] = Depends(current_identity_get)):
    return await flash_deal_claims_get_mine(identity)


@router.get("/{deal_id}", response_model=Dict[str, Any])
async def route_flash_deal_detail(deal_id: str):
    detail = await flash_deal_get_detail(deal_id)
    if not detail:
        raise HTTPException(status_code=404, detail="Flash deal not found")
    return detail


@router.post("/{deal_id}/claim", response_model=ClaimResponse, status_code=201)
async def route_flash_deal_claim(
    deal_id: str,
    body: ClaimRequest,
    identity: Identity = Depends(require_identity),
):
    result = await flash_deal_claim(identity, deal_id, body.items)
    return ClaimResponse(**result)


@router.post("/{deal_id}/cancel", response_model=StatusResponse)
async def route_flash_deal_cancel(
    deal_id: str,
    identity: Identity = Depends(require_identity),
):
    deal = await flash_deal_cancel(identity, deal_id)
    return StatusResponse(id=deal.id, status=deal.data.status)


@router.post("/{deal_id}/view", status_code=204)
async def route_flash_deal_view(deal_id: str):
    await flash_deal_increment_view_count(deal_id)


@router.post("/claims/{claim_id}/confirm", response_model=StatusResponse)
async def route_flash_deal_claim_confirm(
    claim_id: str,
    identity: Identity = Depends(require_identity),
):
    claim = await flash_deal_confirm_claim(identity, claim_id)
    return StatusResponse(id=claim.id, status=claim.data.status)


@router.post("/claims/{claim_id}/pickup", response_model=StatusResponse)
async def route_flash_deal_claim_pickup(
    claim_id: str,
    body: PickupRequest,
    identity: Identity = Depends(require_identity),
):
    claim = await flash_deal_mark_picked_up(identity, claim_id, body.pickup_code)
    return StatusResponse(id=claim.id, status=claim.data.status)


@router.post("/claims/{claim_id}/cancel", response_model=StatusResponse)
async def route_flash_deal_claim_cancel(
    claim_id: str,
    identity: Identity = Depends(require_identity),
):
    claim = await flash_deal_cancel_claim(identity, claim_id)
    return StatusResponse(id=claim.id, status=claim.data.status)
