"""
API endpoints for auctions and bidding.

POST   /auctions/                   - open a job for bidding
GET    /auctions/                   - active auctions, ending soonest first
GET    /auctions/nearby             - active auctions around a point
GET    /auctions/me                 - caller's own auctions
GET    /auctions/bids/me            - caller's bids
GET    /auctions/{id}               - auction detail with ranked bids
POST   /auctions/{id}/bid           - place or revise a bid
POST   /auctions/{id}/select-winner - close the auction, create the job
POST   /auctions/{id}/cancel        - cancel an active auction
POST   /auctions/{id}/view          - count a view
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from models.entities.couchbase.common import Location, Money
from models.identity import Identity
from models.operations.auctions import (
    auction_cancel,
    auction_create,
    auction_get_detail,
    auction_increment_view_count,
    auction_place_bid,
    auction_select_winner,
    auctions_get_active,
    auctions_get_mine,
    auctions_get_nearby,
    bids_get_mine,
)
from utils import log

from .dependencies import current_identity_get, require_identity

logger = log.get_logger(__name__)

router = APIRouter(prefix="/auctions", tags=["auctions"])


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------

class CreateAuctionRequest(BaseModel):
    title: str
    description: str
    category: str
    initial_offer: Money
    location: Location
    duration_hours: Optional[float] = None
    auction_type: Optional[Literal["reverse", "standard"]] = None
    images: List[str] = []
    is_urgent: bool = False


class CreateAuctionResponse(BaseModel):
    auction_id: str
    end_time: datetime


class PlaceBidRequest(BaseModel):
    amount: float = Field(gt=0)
    message: Optional[str] = None
    estimated_time: Optional[str] = None


class PlaceBidResponse(BaseModel):
    bid_id: str
    is_best_bid: bool
    end_time: datetime


class SelectWinnerRequest(BaseModel):
    winner_id: str


class SelectWinnerResponse(BaseModel):
    job_id: str


class StatusResponse(BaseModel):
    id: str
    status: str


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/", response_model=CreateAuctionResponse, status_code=201)
async def route_auction_create(
    body: CreateAuctionRequest,
    identity: Identity = Depends(require_identity),
):
    auction = await auction_create(
        identity,
        title=body.title,
        description=body.description,
        category=body.category,
        initial_offer=body.initial_offer,
        location=body.location,
        duration_hours=body.duration_hours,
        auction_type=body.auction_type,
        images=body.images,
        is_urgent=body.is_urgent,
    )
    return CreateAuctionResponse(auction_id=auction.id, end_time=auction.data.auction_config.end_time)


@router.get("/", response_model=List[Dict[str, Any]])
async def route_auctions_active(
    category: Optional[str] = None,
    limit: Optional[int] = Query(None, ge=1, le=200),
):
    return await auctions_get_active(category=category, limit=limit)


@router.get("/nearby", response_model=List[Dict[str, Any]])
async def route_auctions_nearby(
    lat: float,
    lng: float,
    radius_km: float = Query(10, gt=0),
):
    return await auctions_get_nearby(lat, lng, radius_km)


@router.get("/me", response_model=List[Dict[str, Any]])
async def route_auctions_mine(identity: Optional[Identity] = Depends(current_identity_get)):
    return await auctions_get_mine(identity)


@router.get("/bids/me", response_model=List[Dict[str, Any]])
async def route_bids_mine(identity: Optional[Identity] = Depends(current_identity_get)):
    return await bids_get_mine(identity)


@router.get("/{auction_id}", response_model=Dict[str, Any])
async def route_auction_detail(auction_id: str):
    detail = await auction_get_detail(auction_id)
    if not detail:
        raise HTTPException(status_code=404, detail="Auction not found")
    return detail


@router.post("/{auction_id}/bid", response_model=PlaceBidResponse)
async def route_auction_place_bid(
    auction_id: str,
    body: PlaceBidRequest,
    identity: Identity = Depends(require_identity),
):
    result = await auction_place_bid(
        identity,
        auction_id,
        body.amount,
        message=body.message,
        estimated_time=body.estimated_time,
    )
    return PlaceBidResponse(**result)


@router.post("/{auction_id}/select-winner", response_model=SelectWinnerResponse)
async def route_auction_select_winner(
    auction_id: str,
    body: SelectWinnerRequest,
    identity: Identity = Depends(require_identity),
):
    result = await auction_select_winner(identity, auction_id, body.winner_id)
    return SelectWinnerResponse(**result)


@router.post("/{auction_id}/cancel", response_model=StatusResponse)
async def route_auction_cancel(
    auction_id: str,
    identity: Identity = Depends(require_identity),
):
    auction = await auction_cancel(identity, auction_id)
    return StatusResponse(id=auction.id, status=auction.data.status)


@router.post("/{auction_id}/view", status_code=204)
async def route_auction_view(auction_id: str):
    await auction_increment_view_count(auction_id)
