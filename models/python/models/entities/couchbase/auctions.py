from typing import List, Optional, Literal
from datetime import datetime
from pydantic import BaseModel
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData

from .common import Location, Money


class AuctionConfig(BaseModel):
    """Bidding parameters; only end_time moves after creation (anti-snipe)."""
    end_time: datetime
    type: Literal["reverse", "standard"] = "reverse"
    min_bid_step: Optional[float] = None
    auto_extend_minutes: Optional[int] = 5


class BestBid(BaseModel):
    amount: float
    bidder_id: str
    bid_time: datetime


class AuctionData(BaseCouchbaseEntityData):
    title: str
    description: str
    category: str
    initial_offer: Money
    client_id: str
    location: Location
    images: List[str] = []
    is_urgent: bool = False

    auction_config: AuctionConfig

    status: Literal["active", "closed", "expired", "cancelled", "completed"] = "active"

    # Denormalized bid state (updated atomically via CAS on each bid)
    current_best_bid: Optional[BestBid] = None
    bidder_ids: List[str] = []
    total_bids: int = 0
    extensions_count: int = 0
    view_count: int = 0

    # Settlement
    winner_id: Optional[str] = None
    job_id: Optional[str] = None


class Auction(BaseModelCouchbase[AuctionData]):
    _collection_name = "auctions"
