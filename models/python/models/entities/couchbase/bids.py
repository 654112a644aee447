from typing import Optional, Literal
from datetime import datetime
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData


class BidData(BaseCouchbaseEntityData):
    auction_id: str
    bidder_id: str
    amount: float
    currency: str
    message: Optional[str] = None
    estimated_time: Optional[str] = None
    status: Literal["active", "won", "lost", "withdrawn"] = "active"
    placed_at: datetime


class Bid(BaseModelCouchbase[BidData]):
    _collection_name = "bids"


def bid_key(auction_id: str, bidder_id: str) -> str:
    """One bid document per (auction, bidder): re-bids overwrite it in place."""
    return f"bid::{auction_id}::{bidder_id}"
