"""
Bid persistence and queries.

The bid-placement decision lives in operations/auctions.py; this module only
records its outcome and answers bid lookups.
"""

from datetime import datetime
from typing import List, Optional

from couchbase.exceptions import DocumentExistsException

from models.entities.couchbase.bids import Bid, BidData, bid_key
from models.errors import NotFound
from models.operations.cas import cas_retry


async def bid_get(bid_id: str) -> Optional[Bid]:
    return await Bid.get(bid_id)


async def bid_get_for_bidder(auction_id: str, bidder_id: str) -> Optional[Bid]:
    return await Bid.get(bid_key(auction_id, bidder_id))


async def bid_record(
    auction_id: str,
    bidder_id: str,
    amount: float,
    currency: str,
    placed_at: datetime,
    message: Optional[str] = None,
    estimated_time: Optional[str] = None,
) -> Bid:
    """Write an accepted bid into the bidder's single bid document.

    An existing active bid is overwritten in place. A bid that has already
    been settled (won/lost/withdrawn) is never reactivated.
    """
    key = bid_key(auction_id, bidder_id)

    def _mutate(bid: Bid) -> Optional[bool]:
        if bid.data.status != "active" or bid.data.placed_at > placed_at:
            return False
        bid.data.amount = amount
        bid.data.message = message
        bid.data.estimated_time = estimated_time
        bid.data.placed_at = placed_at
        bid.data.created_at = placed_at
        return None

    if await Bid.get(key) is None:
        data = BidData(
            auction_id=auction_id,
            bidder_id=bidder_id,
            amount=amount,
            currency=currency,
            message=message,
            estimated_time=estimated_time,
            placed_at=placed_at,
        )
        try:
            return await Bid.create(data, key=key, user_id=bidder_id)
        except DocumentExistsException:
            pass

    return await cas_retry(Bid, key, _mutate)


async def bid_set_status(bid_id: str, status: str) -> Optional[Bid]:
    """Move an active bid to a settled status.

    Returns the updated bid, or None when the bid is missing or was already
    settled, so each bid is settled (and its bidder told) exactly once.
    """
    changed: List[bool] = []

    def _mutate(bid: Bid) -> Optional[bool]:
        changed.clear()
        if bid.data.status != "active":
            return False
        bid.data.status = status
        changed.append(True)
        return None

    try:
        bid = await cas_retry(Bid, bid_id, _mutate)
    except NotFound:
        return None
    return bid if changed else None


async def bid_get_by_auction(auction_id: str) -> List[Bid]:
    return await Bid.find({"auction_id": auction_id})


async def bid_get_by_bidder(bidder_id: str) -> List[Bid]:
    """A bidder's bid history, most recent first."""
    bids = await Bid.find({"bidder_id": bidder_id})
    bids.sort(key=lambda b: b.data.placed_at, reverse=True)
    return bids
