"""
Auction business logic with CAS-guarded atomic operations.

Every decision that depends on the auction's hot state (status, end time,
best bid, bidder set) is taken inside a ``cas_retry`` mutator, so two bidders
racing on the same auction are serialized by the auction document itself:
the loser re-validates against the winner's write and is rejected if its
amount no longer improves the best bid.

Bid documents are written after the auction commit, keyed by
(auction, bidder). Notifications go out last and never fail the operation.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

from models.entities.couchbase.auctions import Auction, AuctionConfig, AuctionData, BestBid
from models.entities.couchbase.bids import Bid, bid_key
from models.entities.couchbase.common import Location, Money
from models.entities.couchbase.jobs import job_key_for_auction
from models.errors import Forbidden, InvalidArgument, InvalidBid, InvalidState, NotFound
from models.geo import distance_km
from models.identity import Identity
from models.operations.bid_ordering import ordering_for
from models.operations.bids import (
    bid_get_by_auction,
    bid_get_by_bidder,
    bid_record,
    bid_set_status,
)
from models.operations.cas import cas_retry
from models.operations.jobs import job_create_from_auction
from models.operations.notifications import notification_emit
from models.operations.users import (
    user_get,
    user_resolve,
    user_summary,
    users_handymen_for_category,
)

logger = logging.getLogger(__name__)

DEFAULT_DURATION_HOURS = 24
DEFAULT_AUTO_EXTEND_MINUTES = 5


def _time_remaining_seconds(auction: Auction, now: datetime) -> float:
    return (auction.data.auction_config.end_time - now).total_seconds()


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

async def auction_create(
    identity: Optional[Identity],
    title: str,
    description: str,
    category: str,
    initial_offer: Union[Money, Dict[str, Any]],
    location: Union[Location, Dict[str, Any]],
    duration_hours: Optional[float] = None,
    auction_type: Optional[str] = None,
    images: Optional[List[str]] = None,
    is_urgent: bool = False,
) -> Auction:
    """Open a job for bidding and alert the matching handymen."""
    user = await user_resolve(identity)

    offer = initial_offer if isinstance(initial_offer, Money) else Money(**initial_offer)
    if offer.amount <= 0:
        raise InvalidArgument("Initial offer must be positive")
    if duration_hours is not None and duration_hours <= 0:
        raise InvalidArgument("Duration must be positive")
    ordering = ordering_for(auction_type or "reverse")

    now = datetime.now(timezone.utc)
    data = AuctionData(
        title=title,
        description=description,
        category=category,
        initial_offer=offer,
        client_id=user.id,
        location=location if isinstance(location, Location) else Location(**location),
        images=images or [],
        is_urgent=is_urgent,
        auction_config=AuctionConfig(
            end_time=now + timedelta(hours=duration_hours or DEFAULT_DURATION_HOURS),
            type=ordering.name,
            min_bid_step=offer.amount * 0.01,
            auto_extend_minutes=DEFAULT_AUTO_EXTEND_MINUTES,
        ),
    )
    auction = await Auction.create(data, user_id=user.id)
    logger.info(f"Auction {auction.id} created by {user.id} ({ordering.name}, {category})")

    handymen = await users_handymen_for_category(category)
    for handyman in handymen:
        await notification_emit(
            handyman.id,
            "job_match",
            "New auction in your area!",
            f"{title} - starting offer {offer.amount:g} {offer.currency}",
            {"auction_id": auction.id},
            push_token=handyman.data.push_token,
        )
    return auction


# ---------------------------------------------------------------------------
# Bid placement (CAS-critical)
# ---------------------------------------------------------------------------

async def auction_place_bid(
    identity: Optional[Identity],
    auction_id: str,
    amount: float,
    message: Optional[str] = None,
    estimated_time: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Atomically place (or revise) a bid on an auction.

    CAS flow:
    1. Read auction with CAS
    2. Validate status, timing, ownership and amount against that snapshot
    3. Update bidder set, bid count and best bid; auto-extend the end time
    4. Replace with CAS, re-running 1-3 on conflict
    5. Write the bidder's bid document, settling it if the auction closed meanwhile
    6. Notify the outbid bidder and the owner

    Returns ``{bid_id, is_best_bid, end_time}``.
    """
    user = await user_resolve(identity)
    if user.data.role != "handyman":
        raise Forbidden("Only handymen can place bids")

    now = datetime.now(timezone.utc)
    outcome: Dict[str, Any] = {}

    def _mutate(auction: Auction) -> None:
        d = auction.data
        if d.status != "active":
            raise InvalidState(f"Auction is not active (status: {d.status})")
        if now > d.auction_config.end_time:
            raise InvalidState("Auction has ended")
        if d.client_id == user.id:
            raise Forbidden("You cannot bid on your own auction")

        ordering = ordering_for(d.auction_config.type)
        current = d.current_best_bid.amount if d.current_best_bid else d.initial_offer.amount
        if not ordering.improves(amount, current):
            raise InvalidBid(ordering.requirement(current), bound=current, auction_type=ordering.name)

        if user.id not in d.bidder_ids:
            d.bidder_ids.append(user.id)
            d.total_bids += 1

        previous = d.current_best_bid
        is_best = previous is None or ordering.improves(amount, previous.amount)
        if is_best:
            d.current_best_bid = BestBid(amount=amount, bidder_id=user.id, bid_time=now)

        extend_minutes = d.auction_config.auto_extend_minutes or DEFAULT_AUTO_EXTEND_MINUTES
        window = timedelta(minutes=extend_minutes)
        extended = d.auction_config.end_time - now < window
        if extended:
            d.auction_config.end_time += window
            d.extensions_count += 1

        # The mutator may run several times; keep only the committed attempt
        outcome.clear()
        outcome.update(
            is_best=is_best,
            outbid_id=previous.bidder_id if is_best and previous else None,
            extended=extended,
        )

    auction = await cas_retry(Auction, auction_id, _mutate, label="Auction")
    d = auction.data

    bid = await bid_record(
        auction_id,
        user.id,
        amount,
        d.initial_offer.currency,
        placed_at=now,
        message=message,
        estimated_time=estimated_time,
    )

    # Settlement may have listed the auction's bids before this one was written
    latest = await Auction.get(auction_id)
    if latest and latest.data.status != "active":
        logger.info(f"Auction {auction_id} was {latest.data.status} while bid {bid.id} was recorded")
        await _settle_bid(latest, user.id)
        bid = await Bid.get(bid.id) or bid

    if outcome["extended"]:
        logger.info(f"Auction {auction_id} extended to {d.auction_config.end_time.isoformat()}")

    outbid_id = outcome["outbid_id"]
    if outbid_id and outbid_id != user.id:
        await notification_emit(
            outbid_id,
            "auction_outbid",
            "You have been outbid!",
            f'A better offer of {amount:g} {d.initial_offer.currency} was placed on "{d.title}"',
            {"auction_id": auction_id, "amount": amount},
        )

    await notification_emit(
        d.client_id,
        "auction_new_bid",
        "New bid received!",
        f'{user.data.name or "A handyman"} offered {amount:g} {d.initial_offer.currency} for "{d.title}"',
        {"auction_id": auction_id, "bid_id": bid.id, "amount": amount},
    )

    return {
        "bid_id": bid.id,
        "is_best_bid": outcome["is_best"],
        "end_time": d.auction_config.end_time,
    }


# ---------------------------------------------------------------------------
# Settlement
# ---------------------------------------------------------------------------

async def _settle_bid(auction: Auction, bidder_id: str) -> None:
    """Settle one bidder's bid on a closed or cancelled auction and tell them.

    Safe to call from several paths for the same bid: only the call that moves
    the bid out of ``active`` sends the notification.
    """
    a = auction.data
    if a.status == "cancelled":
        status = "withdrawn"
    elif a.winner_id == bidder_id:
        status = "won"
    else:
        status = "lost"

    if await bid_set_status(bid_key(auction.id, bidder_id), status) is None:
        return

    if status == "won":
        await notification_emit(
            bidder_id,
            "auction_won",
            "Congratulations! You won the auction",
            f'Your offer for "{a.title}" was accepted',
            {"auction_id": auction.id, "job_id": a.job_id},
        )
    elif status == "lost":
        await notification_emit(
            bidder_id,
            "auction_lost",
            "Auction finished",
            f'Another offer was selected for "{a.title}"',
            {"auction_id": auction.id},
        )
    else:
        await notification_emit(
            bidder_id,
            "system",
            "Auction cancelled",
            f'The auction "{a.title}" was cancelled by its owner',
            {"auction_id": auction.id},
        )


async def auction_select_winner(
    identity: Optional[Identity],
    auction_id: str,
    winner_id: str,
) -> Dict[str, Any]:
    """Close an auction in favour of one bidder and create the resulting job."""
    user = await user_resolve(identity)

    auction = await Auction.get(auction_id)
    if not auction:
        raise NotFound(f"Auction {auction_id} not found")
    if auction.data.client_id != user.id:
        raise Forbidden("Only the auction owner can select a winner")

    winning_bid = await Bid.get(bid_key(auction_id, winner_id))
    if not winning_bid:
        raise NotFound("The selected user has no bid on this auction")

    job_id = job_key_for_auction(auction_id)

    def _mutate(a: Auction) -> None:
        if a.data.status != "active":
            raise InvalidState(f"Auction is not active (status: {a.data.status})")
        a.data.status = "closed"
        a.data.winner_id = winner_id
        a.data.job_id = job_id

    auction = await cas_retry(Auction, auction_id, _mutate, label="Auction")
    logger.info(f"Auction {auction_id} closed, winner {winner_id}")

    for bid in await bid_get_by_auction(auction_id):
        await _settle_bid(auction, bid.data.bidder_id)

    winning_bid = await Bid.get(winning_bid.id) or winning_bid
    job = await job_create_from_auction(auction, winning_bid)
    return {"job_id": job.id}


async def auction_cancel(identity: Optional[Identity], auction_id: str) -> Auction:
    """Cancel an active auction; every bid is withdrawn and its bidder told."""
    user = await user_resolve(identity)

    def _mutate(a: Auction) -> None:
        if a.data.client_id != user.id:
            raise Forbidden("Only the auction owner can cancel it")
        if a.data.status != "active":
            raise InvalidState(f"Auction is not active (status: {a.data.status})")
        a.data.status = "cancelled"

    auction = await cas_retry(Auction, auction_id, _mutate, label="Auction")
    logger.info(f"Auction {auction_id} cancelled by owner")

    for bid in await bid_get_by_auction(auction_id):
        await _settle_bid(auction, bid.data.bidder_id)
    return auction


async def auction_increment_view_count(auction_id: str) -> None:
    def _mutate(a: Auction) -> None:
        a.data.view_count += 1

    try:
        await cas_retry(Auction, auction_id, _mutate, label="Auction")
    except NotFound:
        pass


async def auctions_expire() -> int:
    """Expire active auctions that ran out of time without a single bid.

    Auctions holding bids stay active until their owner settles them.
    Returns the number of auctions expired.
    """
    now = datetime.now(timezone.utc)
    candidates = await Auction.find({"status": "active", "total_bids": 0})
    expired = 0

    for candidate in candidates:
        if candidate.data.auction_config.end_time > now:
            continue

        def _mutate(a: Auction) -> Optional[bool]:
            d = a.data
            if d.status != "active" or d.total_bids > 0 or d.auction_config.end_time > now:
                return False
            d.status = "expired"
            return None

        try:
            auction = await cas_retry(Auction, candidate.id, _mutate, label="Auction")
        except Exception as e:
            logger.error(f"Failed to expire auction {candidate.id}: {e}", exc_info=True)
            continue
        if auction.data.status == "expired":
            expired += 1

    if expired:
        logger.info(f"Expired {expired} auction(s) without bids")
    return expired


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def auction_get(auction_id: str) -> Optional[Auction]:
    return await Auction.get(auction_id)


async def _auction_listing(auction: Auction, now: datetime) -> Dict[str, Any]:
    client = await user_get(auction.data.client_id)
    bids = await bid_get_by_auction(auction.id)
    return {
        "id": auction.id,
        **auction.data.model_dump(),
        "client": user_summary(client),
        "bid_count": len(bids),
        "time_remaining_seconds": _time_remaining_seconds(auction, now),
    }


async def auctions_get_active(
    category: Optional[str] = None,
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """Active auctions ending soonest first."""
    where: Dict[str, Any] = {"status": "active"}
    if category:
        where["category"] = category
    auctions = await Auction.find(where)
    auctions.sort(key=lambda a: a.data.auction_config.end_time)
    if limit:
        auctions = auctions[:limit]

    now = datetime.now(timezone.utc)
    return [await _auction_listing(a, now) for a in auctions]


async def auction_get_detail(auction_id: str) -> Optional[Dict[str, Any]]:
    auction = await Auction.get(auction_id)
    if not auction:
        return None

    ordering = ordering_for(auction.data.auction_config.type)
    bids = await bid_get_by_auction(auction_id)
    bids.sort(key=lambda b: ordering.sort_key(b.data.amount))

    bid_views = []
    for bid in bids:
        bidder = await user_get(bid.data.bidder_id)
        bid_views.append({"id": bid.id, **bid.data.model_dump(), "bidder": user_summary(bidder)})

    client = await user_get(auction.data.client_id)
    return {
        "id": auction.id,
        **auction.data.model_dump(),
        "client": user_summary(client),
        "bids": bid_views,
        "time_remaining_seconds": _time_remaining_seconds(auction, datetime.now(timezone.utc)),
    }


async def auctions_get_nearby(lat: float, lng: float, radius_km: float = 10) -> List[Dict[str, Any]]:
    """Active auctions within *radius_km*, nearest first (linear scan)."""
    nearby = []
    for auction in await Auction.find({"status": "active"}):
        loc = auction.data.location
        distance = distance_km(lat, lng, loc.lat, loc.lng)
        if distance <= radius_km:
            nearby.append((distance, auction))
    nearby.sort(key=lambda pair: pair[0])

    now = datetime.now(timezone.utc)
    results = []
    for distance, auction in nearby:
        view = await _auction_listing(auction, now)
        view["distance_km"] = distance
        results.append(view)
    return results


async def auctions_get_mine(identity: Optional[Identity]) -> List[Dict[str, Any]]:
    if identity is None:
        return []
    auctions = await Auction.find({"client_id": identity.caller_id})
    auctions.sort(key=lambda a: a.data.created_at, reverse=True)
    now = datetime.now(timezone.utc)
    return [await _auction_listing(a, now) for a in auctions]


async def bids_get_mine(identity: Optional[Identity]) -> List[Dict[str, Any]]:
    if identity is None:
        return []
    results = []
    for bid in await bid_get_by_bidder(identity.caller_id):
        auction = await Auction.get(bid.data.auction_id)
        summary = None
        if auction:
            summary = {
                "id": auction.id,
                "title": auction.data.title,
                "status": auction.data.status,
                "end_time": auction.data.auction_config.end_time,
                "current_best_bid": (
                    auction.data.current_best_bid.model_dump() if auction.data.current_best_bid else None
                ),
            }
        results.append({"id": bid.id, **bid.data.model_dump(), "auction": summary})
    return results
