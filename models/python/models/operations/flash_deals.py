"""
Flash-deal business logic.

A deal's capacity lives on the deal document itself: ``claimed_quantities``
holds the units reserved by non-cancelled claims per item, and every claim,
release and status change is a CAS mutation of that document. Concurrent
claimants are therefore serialized per deal and can never oversell a bounded
item. Claim documents carry their own lifecycle, also moved under CAS so a
sweep racing a restaurant action resolves to a single winner.
"""

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Union

from models.entities.couchbase.flash_deal_claims import ClaimItem, FlashDealClaim, FlashDealClaimData
from models.entities.couchbase.flash_deals import FlashDeal, FlashDealData, FlashDealItem
from models.entities.couchbase.notifications import PushBroadcast, PushBroadcastData, TargetLocation
from models.errors import (
    CapacityExceeded,
    Expired,
    Forbidden,
    InvalidArgument,
    InvalidCredential,
    InvalidState,
    NotFound,
    PreconditionFailed,
)
from models.geo import distance_km
from models.identity import Identity
from models.operations.cas import cas_retry
from models.operations.notifications import notification_emit
from models.operations.users import (
    restaurant_summary,
    user_display_name,
    user_get,
    user_resolve,
    users_with_push_token,
)

logger = logging.getLogger(__name__)

PICKUP_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
PICKUP_CODE_LENGTH = 6
SCHEDULE_THRESHOLD = timedelta(hours=4)
DEFAULT_NOTIFICATION_RADIUS_KM = 5.0
OPEN_CLAIM_STATUSES = ("pending", "confirmed")
# Sold-out deals still run the capacity check and report 0 remaining units
CLAIMABLE_DEAL_STATUSES = ("active", "sold_out")


def generate_pickup_code() -> str:
    return "".join(secrets.choice(PICKUP_CODE_ALPHABET) for _ in range(PICKUP_CODE_LENGTH))


def _is_sold_out(d: FlashDealData) -> bool:
    """True when every item is bounded and fully reserved."""
    return all(
        item.quantity is not None and d.claimed_quantities.get(item.name, 0) >= item.quantity
        for item in d.items
    )


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Creation and fan-out
# ---------------------------------------------------------------------------

async def flash_deal_create(
    identity: Optional[Identity],
    title: str,
    description: str,
    items: Iterable[Union[FlashDealItem, Dict[str, Any]]],
    discount_percentage: float,
    end_time: datetime,
    notification_radius: Optional[float] = None,
    start_time: Optional[datetime] = None,
) -> FlashDeal:
    user = await user_resolve(identity)
    if user.data.role != "restaurant":
        raise Forbidden("Only restaurants can create flash deals")
    if not user.data.location:
        raise PreconditionFailed("Set your restaurant location before publishing deals")

    now = datetime.now(timezone.utc)
    end_time = _aware(end_time)
    start_time = _aware(start_time) if start_time else now
    if end_time <= now:
        raise InvalidArgument("End time must be in the future")
    if start_time >= end_time:
        raise InvalidArgument("Start time must be before end time")

    deal_items = [i if isinstance(i, FlashDealItem) else FlashDealItem(**i) for i in items]
    if not deal_items:
        raise InvalidArgument("A flash deal needs at least one item")
    names = set()
    for item in deal_items:
        if item.original_price < 0 or item.discounted_price < 0:
            raise InvalidArgument(f'Prices of "{item.name}" must not be negative')
        if item.quantity is not None and item.quantity <= 0:
            raise InvalidArgument(f'Quantity of "{item.name}" must be positive')
        if item.name in names:
            raise InvalidArgument(f'Item "{item.name}" is listed twice')
        names.add(item.name)

    scheduled = end_time - now > SCHEDULE_THRESHOLD or start_time > now
    data = FlashDealData(
        restaurant_id=user.id,
        title=title,
        description=description,
        items=deal_items,
        discount_percentage=discount_percentage,
        start_time=start_time,
        end_time=end_time,
        status="scheduled" if scheduled else "active",
        location=user.data.location,
        notification_radius=notification_radius or DEFAULT_NOTIFICATION_RADIUS_KM,
    )
    deal = await FlashDeal.create(data, user_id=user.id)
    logger.info(f"Flash deal {deal.id} created by {user.id} ({data.status})")

    if deal.data.status == "active":
        await flash_deal_send_notifications(deal.id)
    return deal


async def flash_deal_send_notifications(deal_id: str) -> int:
    """Alert nearby users about an active deal, at most once per deal.

    The ``push_notification_sent`` flag is flipped under CAS before anyone is
    notified, so concurrent callers (create, activation sweep) cannot both fan
    out. Returns the number of users notified.
    """
    now = datetime.now(timezone.utc)
    flipped: Dict[str, bool] = {}

    def _flip(deal: FlashDeal) -> Optional[bool]:
        flipped["sent"] = False
        if deal.data.push_notification_sent or deal.data.status != "active":
            return False
        deal.data.push_notification_sent = True
        deal.data.push_notification_sent_at = now
        flipped["sent"] = True
        return None

    deal = await cas_retry(FlashDeal, deal_id, _flip, label="Flash deal")
    if not flipped["sent"]:
        return 0

    d = deal.data
    restaurant = await user_get(d.restaurant_id)
    title = f"{d.discount_percentage:g}% OFF near you!"
    body = f"{user_display_name(restaurant) if restaurant else 'A restaurant'}: {d.title}"

    nearby = [
        u for u in await users_with_push_token()
        if u.id != d.restaurant_id
        and u.data.location
        and distance_km(d.location.lat, d.location.lng, u.data.location.lat, u.data.location.lng)
        <= d.notification_radius
    ]
    for u in nearby:
        await notification_emit(
            u.id,
            "flash_deal",
            title,
            body,
            {"deal_id": deal_id, "type": "flash_deal"},
            push_token=u.data.push_token,
        )

    await PushBroadcast.create(
        PushBroadcastData(
            target_location=TargetLocation(lat=d.location.lat, lng=d.location.lng, radius_km=d.notification_radius),
            title=title,
            body=body,
            data={"type": "flash_deal", "reference_id": deal_id},
            sent_count=len(nearby),
            sent_at=now,
        ),
        user_id=d.restaurant_id,
    )
    logger.info(f"Flash deal {deal_id} announced to {len(nearby)} user(s)")
    return len(nearby)


# ---------------------------------------------------------------------------
# Claiming (CAS-critical)
# ---------------------------------------------------------------------------

def _requested_quantities(items: Iterable[Any]) -> Dict[str, int]:
    requested: Dict[str, int] = {}
    for item in items:
        name = item["name"] if isinstance(item, dict) else item.name
        quantity = item["quantity"] if isinstance(item, dict) else item.quantity
        if quantity <= 0:
            raise InvalidArgument(f'Quantity of "{name}" must be positive')
        requested[name] = requested.get(name, 0) + quantity
    if not requested:
        raise InvalidArgument("Select at least one item")
    return requested


async def _release_units(deal_id: str, quantities: Dict[str, int], uncount_claim: bool = False) -> FlashDeal:
    """Give reserved units back; a sold-out deal still in its window reopens."""
    now = datetime.now(timezone.utc)

    def _mutate(deal: FlashDeal) -> None:
        d = deal.data
        for name, quantity in quantities.items():
            d.claimed_quantities[name] = max(0, d.claimed_quantities.get(name, 0) - quantity)
        if uncount_claim:
            d.claim_count = max(0, d.claim_count - 1)
        if d.status == "sold_out" and now < d.end_time and not _is_sold_out(d):
            d.status = "active"

    return await cas_retry(FlashDeal, deal_id, _mutate, label="Flash deal")


async def flash_deal_claim(
    identity: Optional[Identity],
    deal_id: str,
    items: Iterable[Any],
) -> Dict[str, Any]:
    """Reserve units of a deal's items for the caller.

    Returns ``{claim_id, pickup_code, total_amount}``.
    """
    user = await user_resolve(identity)
    requested = _requested_quantities(items)
    now = datetime.now(timezone.utc)
    priced: List[ClaimItem] = []

    def _mutate(deal: FlashDeal) -> None:
        d = deal.data
        if d.status not in CLAIMABLE_DEAL_STATUSES:
            raise InvalidState(f"Flash deal is not active (status: {d.status})")
        if now > d.end_time:
            raise Expired("This flash deal has ended")

        by_name = {item.name: item for item in d.items}
        lines = []
        for name, quantity in requested.items():
            item = by_name.get(name)
            if item is None:
                raise NotFound(f'Item "{name}" not found in this deal')
            claimed = d.claimed_quantities.get(name, 0)
            if item.quantity is not None and claimed + quantity > item.quantity:
                raise CapacityExceeded(name, remaining=item.quantity - claimed, requested=quantity)
            lines.append(ClaimItem(name=name, quantity=quantity, price=item.discounted_price * quantity))

        for name, quantity in requested.items():
            d.claimed_quantities[name] = d.claimed_quantities.get(name, 0) + quantity
        d.claim_count += 1
        if _is_sold_out(d):
            d.status = "sold_out"

        priced.clear()
        priced.extend(lines)

    deal = await cas_retry(FlashDeal, deal_id, _mutate, label="Flash deal")
    total_amount = round(sum(line.price for line in priced), 2)

    try:
        claim = await FlashDealClaim.create(
            FlashDealClaimData(
                deal_id=deal_id,
                user_id=user.id,
                items=priced,
                total_amount=total_amount,
                pickup_code=generate_pickup_code(),
            ),
            user_id=user.id,
        )
    except Exception:
        logger.error(f"Failed to record claim on deal {deal_id}, releasing reservation", exc_info=True)
        await _release_units(deal_id, requested, uncount_claim=True)
        raise

    if deal.data.status == "sold_out":
        logger.info(f"Flash deal {deal_id} sold out")

    await notification_emit(
        deal.data.restaurant_id,
        "flash_deal_claimed",
        "New flash deal reservation!",
        f"{user.data.name or 'A customer'} reserved {', '.join(line.name for line in priced)}",
        {"deal_id": deal_id, "claim_id": claim.id},
    )
    return {
        "claim_id": claim.id,
        "pickup_code": claim.data.pickup_code,
        "total_amount": total_amount,
    }


async def _claim_and_owned_deal(user_id: str, claim_id: str) -> tuple[FlashDealClaim, FlashDeal]:
    claim = await FlashDealClaim.get(claim_id)
    if not claim:
        raise NotFound(f"Claim {claim_id} not found")
    deal = await FlashDeal.get(claim.data.deal_id)
    if not deal:
        raise NotFound(f"Flash deal {claim.data.deal_id} not found")
    if deal.data.restaurant_id != user_id:
        raise Forbidden("Only the restaurant that owns this deal can do that")
    return claim, deal


async def flash_deal_confirm_claim(identity: Optional[Identity], claim_id: str) -> FlashDealClaim:
    user = await user_resolve(identity)
    _, deal = await _claim_and_owned_deal(user.id, claim_id)

    def _mutate(c: FlashDealClaim) -> None:
        if c.data.status != "pending":
            raise InvalidState(f"Claim is not pending (status: {c.data.status})")
        c.data.status = "confirmed"
        c.data.confirmed_at = datetime.now(timezone.utc)

    claim = await cas_retry(FlashDealClaim, claim_id, _mutate, label="Claim")
    await notification_emit(
        claim.data.user_id,
        "system",
        "Reservation confirmed!",
        f'Your reservation for "{deal.data.title}" is confirmed. Pickup code: {claim.data.pickup_code}',
        {"claim_id": claim_id, "pickup_code": claim.data.pickup_code},
    )
    return claim


async def flash_deal_mark_picked_up(
    identity: Optional[Identity],
    claim_id: str,
    pickup_code: str,
) -> FlashDealClaim:
    user = await user_resolve(identity)
    claim, _ = await _claim_and_owned_deal(user.id, claim_id)
    if not secrets.compare_digest(claim.data.pickup_code.encode(), pickup_code.encode()):
        raise InvalidCredential("Incorrect pickup code")

    def _mutate(c: FlashDealClaim) -> None:
        if c.data.status not in OPEN_CLAIM_STATUSES:
            raise InvalidState(f"Claim cannot be picked up (status: {c.data.status})")
        c.data.status = "picked_up"
        c.data.picked_up_at = datetime.now(timezone.utc)

    return await cas_retry(FlashDealClaim, claim_id, _mutate, label="Claim")


def _claimed_quantities(claim: FlashDealClaim) -> Dict[str, int]:
    quantities: Dict[str, int] = {}
    for line in claim.data.items:
        quantities[line.name] = quantities.get(line.name, 0) + line.quantity
    return quantities


async def _cancel_open_claim(claim_id: str, user_id: Optional[str] = None) -> Optional[FlashDealClaim]:
    """Move a pending/confirmed claim to cancelled; None if it was already settled."""
    outcome: Dict[str, bool] = {}

    def _mutate(c: FlashDealClaim) -> Optional[bool]:
        if user_id is not None and c.data.user_id != user_id:
            raise Forbidden("Not your reservation")
        outcome["cancelled"] = c.data.status in OPEN_CLAIM_STATUSES
        if not outcome["cancelled"]:
            return False
        c.data.status = "cancelled"
        c.data.cancelled_at = datetime.now(timezone.utc)
        return None

    claim = await cas_retry(FlashDealClaim, claim_id, _mutate, label="Claim")
    return claim if outcome["cancelled"] else None


async def flash_deal_cancel_claim(identity: Optional[Identity], claim_id: str) -> FlashDealClaim:
    """Claimant withdraws a reservation; its units go back on the deal."""
    user = await user_resolve(identity)
    claim = await _cancel_open_claim(claim_id, user_id=user.id)
    if claim is None:
        existing = await FlashDealClaim.get(claim_id)
        status = existing.data.status if existing else "missing"
        raise InvalidState(f"Claim cannot be cancelled (status: {status})")
    await _release_units(claim.data.deal_id, _claimed_quantities(claim))
    return claim


async def flash_deal_cancel(identity: Optional[Identity], deal_id: str) -> FlashDeal:
    user = await user_resolve(identity)

    def _mutate(deal: FlashDeal) -> None:
        if deal.data.restaurant_id != user.id:
            raise Forbidden("Only the restaurant that owns this deal can cancel it")
        if deal.data.status in ("cancelled", "expired"):
            raise InvalidState(f"Flash deal is already {deal.data.status}")
        deal.data.status = "cancelled"

    deal = await cas_retry(FlashDeal, deal_id, _mutate, label="Flash deal")
    logger.info(f"Flash deal {deal_id} cancelled by restaurant")

    open_claims = await FlashDealClaim.find({"deal_id": deal_id, "status": list(OPEN_CLAIM_STATUSES)})
    for open_claim in open_claims:
        claim = await _cancel_open_claim(open_claim.id)
        if claim is None:
            continue
        await _release_units(deal_id, _claimed_quantities(claim))
        await notification_emit(
            claim.data.user_id,
            "system",
            "Deal cancelled",
            f'The restaurant cancelled "{deal.data.title}". Your reservation was released.',
            {"deal_id": deal_id, "claim_id": claim.id},
        )
    return await FlashDeal.get(deal_id) or deal


async def flash_deal_increment_view_count(deal_id: str) -> None:
    def _mutate(deal: FlashDeal) -> None:
        deal.data.view_count += 1

    try:
        await cas_retry(FlashDeal, deal_id, _mutate, label="Flash deal")
    except NotFound:
        pass


# ---------------------------------------------------------------------------
# Sweeps
# ---------------------------------------------------------------------------

async def flash_deals_activate_scheduled() -> int:
    """Activate scheduled deals whose window has opened, then announce them."""
    now = datetime.now(timezone.utc)
    activated = 0

    for candidate in await FlashDeal.find({"status": "scheduled"}):
        if not (candidate.data.start_time <= now < candidate.data.end_time):
            continue

        def _mutate(deal: FlashDeal) -> Optional[bool]:
            d = deal.data
            if d.status != "scheduled" or not (d.start_time <= now < d.end_time):
                return False
            d.status = "active"
            return None

        try:
            deal = await cas_retry(FlashDeal, candidate.id, _mutate, label="Flash deal")
            if deal.data.status != "active":
                continue
            activated += 1
            await flash_deal_send_notifications(deal.id)
        except Exception as e:
            logger.error(f"Failed to activate flash deal {candidate.id}: {e}", exc_info=True)

    if activated:
        logger.info(f"Activated {activated} scheduled flash deal(s)")
    return activated


async def flash_deals_expire() -> int:
    """Expire deals past their end time and the pending claims they still hold.

    Scheduled deals whose window closed before activation expire as well.
    """
    now = datetime.now(timezone.utc)
    expired = 0

    for candidate in await FlashDeal.find({"status": ["active", "sold_out", "scheduled"]}):
        if candidate.data.end_time > now:
            continue

        def _mutate(deal: FlashDeal) -> Optional[bool]:
            d = deal.data
            if d.status not in ("active", "sold_out", "scheduled") or d.end_time > now:
                return False
            d.status = "expired"
            return None

        try:
            deal = await cas_retry(FlashDeal, candidate.id, _mutate, label="Flash deal")
            if deal.data.status != "expired":
                continue
            expired += 1
            await _expire_pending_claims(deal.id)
        except Exception as e:
            logger.error(f"Failed to expire flash deal {candidate.id}: {e}", exc_info=True)

    if expired:
        logger.info(f"Expired {expired} flash deal(s)")
    return expired


async def _expire_pending_claims(deal_id: str) -> None:
    def _mutate(c: FlashDealClaim) -> Optional[bool]:
        if c.data.status != "pending":
            return False
        c.data.status = "expired"
        return None

    for claim in await FlashDealClaim.find({"deal_id": deal_id, "status": "pending"}):
        await cas_retry(FlashDealClaim, claim.id, _mutate, label="Claim")


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def flash_deal_get(deal_id: str) -> Optional[FlashDeal]:
    return await FlashDeal.get(deal_id)


async def _deal_listing(deal: FlashDeal, now: datetime) -> Dict[str, Any]:
    restaurant = await user_get(deal.data.restaurant_id)
    return {
        "id": deal.id,
        **deal.data.model_dump(),
        "restaurant": restaurant_summary(restaurant),
        "time_remaining_seconds": (deal.data.end_time - now).total_seconds(),
    }


async def _live_deals(now: datetime) -> List[FlashDeal]:
    deals = [d for d in await FlashDeal.find({"status": "active"}) if d.data.end_time > now]
    deals.sort(key=lambda d: d.data.end_time)
    return deals


async def flash_deals_get_active(limit: Optional[int] = None) -> List[Dict[str, Any]]:
    now = datetime.now(timezone.utc)
    deals = await _live_deals(now)
    if limit:
        deals = deals[:limit]
    return [await _deal_listing(d, now) for d in deals]


async def flash_deals_get_nearby(lat: float, lng: float, radius_km: float = 5) -> List[Dict[str, Any]]:
    """Live deals within *radius_km*, nearest first (linear scan)."""
    now = datetime.now(timezone.utc)
    nearby = []
    for deal in await _live_deals(now):
        distance = distance_km(lat, lng, deal.data.location.lat, deal.data.location.lng)
        if distance <= radius_km:
            nearby.append((distance, deal))
    nearby.sort(key=lambda pair: pair[0])

    results = []
    for distance, deal in nearby:
        view = await _deal_listing(deal, now)
        view["distance_km"] = distance
        results.append(view)
    return results


async def flash_deal_get_detail(deal_id: str) -> Optional[Dict[str, Any]]:
    deal = await FlashDeal.get(deal_id)
    if not deal:
        return None
    restaurant = await user_get(deal.data.restaurant_id)
    claims = await FlashDealClaim.find({"deal_id": deal_id, "status": ["confirmed", "picked_up"]})
    return {
        "id": deal.id,
        **deal.data.model_dump(),
        "restaurant": restaurant_summary(restaurant, detailed=True),
        "claims_count": len(claims),
        "time_remaining_seconds": (deal.data.end_time - datetime.now(timezone.utc)).total_seconds(),
    }


async def flash_deals_get_mine(identity: Optional[Identity]) -> List[Dict[str, Any]]:
    """A restaurant's own deals, newest first, with claim statistics."""
    if identity is None:
        return []
    user = await user_get(identity.caller_id)
    if not user or user.data.role != "restaurant":
        return []

    deals = await FlashDeal.find({"restaurant_id": user.id})
    deals.sort(key=lambda d: d.data.created_at, reverse=True)

    results = []
    for deal in deals:
        claims = await FlashDealClaim.find({"deal_id": deal.id})
        picked_up = [c for c in claims if c.data.status == "picked_up"]
        results.append({
            "id": deal.id,
            **deal.data.model_dump(),
            "stats": {
                "total_claims": len(claims),
                "confirmed_claims": sum(1 for c in claims if c.data.status == "confirmed"),
                "picked_up_claims": len(picked_up),
                "revenue": round(sum(c.data.total_amount for c in picked_up), 2),
            },
        })
    return results


async def flash_deal_claims_get_mine(identity: Optional[Identity]) -> List[Dict[str, Any]]:
    if identity is None:
        return []
    claims = await FlashDealClaim.find({"user_id": identity.caller_id})
    claims.sort(key=lambda c: c.data.created_at, reverse=True)

    results = []
    for claim in claims:
        deal = await FlashDeal.get(claim.data.deal_id)
        deal_summary = None
        restaurant = None
        if deal:
            deal_summary = {
                "id": deal.id,
                "title": deal.data.title,
                "status": deal.data.status,
                "end_time": deal.data.end_time,
                "discount_percentage": deal.data.discount_percentage,
            }
            restaurant = restaurant_summary(await user_get(deal.data.restaurant_id))
        results.append({
            "id": claim.id,
            **claim.data.model_dump(),
            "deal": deal_summary,
            "restaurant": restaurant,
        })
    return results
