"""
Flash-deal engine: publishing, proximity fan-out, bounded claims, the claim
lifecycle and the time sweeps.
"""
import asyncio
from datetime import timedelta

import pytest

from models.entities.couchbase.flash_deal_claims import FlashDealClaim
from models.entities.couchbase.flash_deals import FlashDeal
from models.entities.couchbase.notifications import Notification, PushBroadcast
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
from models.operations.flash_deals import (
    PICKUP_CODE_ALPHABET,
    PICKUP_CODE_LENGTH,
    flash_deal_cancel,
    flash_deal_cancel_claim,
    flash_deal_claim,
    flash_deal_claims_get_mine,
    flash_deal_confirm_claim,
    flash_deal_create,
    flash_deal_get_detail,
    flash_deal_increment_view_count,
    flash_deal_mark_picked_up,
    flash_deal_send_notifications,
    flash_deals_activate_scheduled,
    flash_deals_expire,
    flash_deals_get_active,
    flash_deals_get_mine,
    flash_deals_get_nearby,
    generate_pickup_code,
)

from helpers import CENTER, in_hours, km_north, utcnow


def _items(quantity=5):
    return [
        {"name": "Paella", "original_price": 12.0, "discounted_price": 6.0, "quantity": quantity},
    ]


async def _publish(restaurant, items=None, end_time=None, **kwargs):
    return await flash_deal_create(
        restaurant,
        title="Lunch leftovers",
        description="Half price paella",
        items=items if items is not None else _items(),
        discount_percentage=50,
        end_time=end_time or in_hours(2),
        **kwargs,
    )


@pytest.fixture
async def restaurant(make_user):
    return await make_user("restaurant", location=CENTER, business_name="Casa Pepe")


def _end_in_past(d):
    d.end_time = utcnow() - timedelta(minutes=1)


class TestPickupCode:
    def test_shape(self):
        for _ in range(50):
            code = generate_pickup_code()
            assert len(code) == PICKUP_CODE_LENGTH
            assert set(code) <= set(PICKUP_CODE_ALPHABET)


class TestFlashDealCreate:
    async def test_short_deal_starts_active(self, restaurant):
        deal = await _publish(restaurant)
        assert deal.data.status == "active"
        assert deal.data.location.lat == CENTER[0]
        assert deal.data.notification_radius == 5.0

    async def test_long_deal_is_scheduled(self, restaurant):
        deal = await _publish(restaurant, end_time=in_hours(6))
        assert deal.data.status == "scheduled"
        assert deal.data.push_notification_sent is False

    async def test_future_start_is_scheduled(self, restaurant):
        deal = await _publish(restaurant, start_time=in_hours(1))
        assert deal.data.status == "scheduled"

    async def test_only_restaurants(self, make_user):
        client = await make_user("client", location=CENTER)
        with pytest.raises(Forbidden):
            await _publish(client)

    async def test_restaurant_needs_location(self, make_user):
        homeless = await make_user("restaurant")
        with pytest.raises(PreconditionFailed):
            await _publish(homeless)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"end_time": in_hours(-1)},
            {"start_time": in_hours(3), "end_time": in_hours(2)},
            {"items": []},
            {"items": [{"name": "Soup", "original_price": 5, "discounted_price": -1}]},
            {"items": [{"name": "Soup", "original_price": 5, "discounted_price": 2, "quantity": 0}]},
            {"items": [
                {"name": "Soup", "original_price": 5, "discounted_price": 2},
                {"name": "Soup", "original_price": 6, "discounted_price": 3},
            ]},
        ],
    )
    async def test_rejects_invalid_arguments(self, restaurant, kwargs):
        with pytest.raises(InvalidArgument):
            await _publish(restaurant, **kwargs)


class TestFanOut:
    async def test_notifies_nearby_users_with_tokens(self, restaurant, make_user, push_sink):
        near = await make_user("client", location=km_north(CENTER, 3), push_token="tok-near")
        far = await make_user("client", location=km_north(CENTER, 8), push_token="tok-far")
        tokenless = await make_user("client", location=CENTER)

        deal = await _publish(restaurant)

        assert len(await Notification.find({"user_id": near.caller_id, "type": "flash_deal"})) == 1
        assert await Notification.find({"user_id": far.caller_id}) == []
        assert await Notification.find({"user_id": tokenless.caller_id}) == []

        notification = (await Notification.find({"user_id": near.caller_id}))[0]
        assert notification.data.title == "50% OFF near you!"
        assert notification.data.data == {"deal_id": deal.id, "type": "flash_deal"}

        broadcasts = await PushBroadcast.find()
        assert len(broadcasts) == 1
        assert broadcasts[0].data.sent_count == 1

    async def test_wider_radius_reaches_further(self, restaurant, make_user):
        far = await make_user("client", location=km_north(CENTER, 8), push_token="tok-far")
        await _publish(restaurant, notification_radius=10)
        assert len(await Notification.find({"user_id": far.caller_id})) == 1

    async def test_fan_out_happens_once(self, restaurant, make_user):
        near = await make_user("client", location=CENTER, push_token="tok")
        deal = await _publish(restaurant)

        assert await flash_deal_send_notifications(deal.id) == 0
        assert len(await Notification.find({"user_id": near.caller_id})) == 1

    async def test_concurrent_fan_out_sends_once(self, restaurant, make_user, patch_doc):
        near = await make_user("client", location=CENTER, push_token="tok")
        deal = await _publish(restaurant, start_time=in_hours(1))

        def _open(d):
            d.status = "active"

        await patch_doc(FlashDeal, deal.id, _open)
        counts = await asyncio.gather(*(flash_deal_send_notifications(deal.id) for _ in range(4)))

        assert sorted(counts) == [0, 0, 0, 1]
        assert len(await Notification.find({"user_id": near.caller_id})) == 1
        assert len(await PushBroadcast.find()) == 1

    async def test_scheduled_deal_is_not_announced(self, restaurant, make_user):
        near = await make_user("client", location=CENTER, push_token="tok")
        deal = await _publish(restaurant, end_time=in_hours(6))
        assert await flash_deal_send_notifications(deal.id) == 0
        assert await Notification.find({"user_id": near.caller_id}) == []


class TestClaim:
    async def test_capacity_walkthrough(self, restaurant, make_user):
        deal = await _publish(restaurant, items=_items(quantity=5))
        u1, u2, u3 = [await make_user("client") for _ in range(3)]

        first = await flash_deal_claim(u1, deal.id, [{"name": "Paella", "quantity": 3}])
        assert first["total_amount"] == 18.0
        assert len(first["pickup_code"]) == PICKUP_CODE_LENGTH

        with pytest.raises(CapacityExceeded) as exc:
            await flash_deal_claim(u2, deal.id, [{"name": "Paella", "quantity": 3}])
        assert exc.value.remaining == 2
        assert exc.value.requested == 3

        await flash_deal_claim(u3, deal.id, [{"name": "Paella", "quantity": 2}])
        stored = await FlashDeal.get(deal.id)
        assert stored.data.status == "sold_out"
        assert stored.data.claimed_quantities == {"Paella": 5}
        assert stored.data.claim_count == 2

        with pytest.raises(CapacityExceeded) as exc:
            await flash_deal_claim(u2, deal.id, [{"name": "Paella", "quantity": 1}])
        assert exc.value.remaining == 0
        assert exc.value.requested == 1

        claimed = await Notification.find({"user_id": restaurant.caller_id, "type": "flash_deal_claimed"})
        assert len(claimed) == 2

    async def test_repeated_lines_are_summed(self, restaurant, make_user):
        deal = await _publish(restaurant, items=_items(quantity=3))
        user = await make_user("client")
        with pytest.raises(CapacityExceeded):
            await flash_deal_claim(
                user, deal.id, [{"name": "Paella", "quantity": 2}, {"name": "Paella", "quantity": 2}]
            )
        result = await flash_deal_claim(
            user, deal.id, [{"name": "Paella", "quantity": 1}, {"name": "Paella", "quantity": 2}]
        )
        claim = await FlashDealClaim.get(result["claim_id"])
        assert [(i.name, i.quantity) for i in claim.data.items] == [("Paella", 3)]

    async def test_unbounded_items_never_sell_out(self, restaurant, make_user):
        deal = await _publish(
            restaurant, items=[{"name": "Bread", "original_price": 2, "discounted_price": 1}]
        )
        user = await make_user("client")
        await flash_deal_claim(user, deal.id, [{"name": "Bread", "quantity": 40}])
        assert (await FlashDeal.get(deal.id)).data.status == "active"

    @pytest.mark.parametrize(
        "items", [[], [{"name": "Paella", "quantity": 0}], [{"name": "Paella", "quantity": -1}]]
    )
    async def test_rejects_invalid_requests(self, restaurant, make_user, items):
        deal = await _publish(restaurant)
        user = await make_user("client")
        with pytest.raises(InvalidArgument):
            await flash_deal_claim(user, deal.id, items)

    async def test_unknown_item(self, restaurant, make_user):
        deal = await _publish(restaurant)
        user = await make_user("client")
        with pytest.raises(NotFound):
            await flash_deal_claim(user, deal.id, [{"name": "Sushi", "quantity": 1}])

    async def test_past_end_time(self, restaurant, make_user, patch_doc):
        deal = await _publish(restaurant)
        await patch_doc(FlashDeal, deal.id, _end_in_past)
        user = await make_user("client")
        with pytest.raises(Expired):
            await flash_deal_claim(user, deal.id, [{"name": "Paella", "quantity": 1}])

    async def test_scheduled_deal_cannot_be_claimed(self, restaurant, make_user):
        deal = await _publish(restaurant, end_time=in_hours(6))
        user = await make_user("client")
        with pytest.raises(InvalidState):
            await flash_deal_claim(user, deal.id, [{"name": "Paella", "quantity": 1}])

    async def test_concurrent_claims_never_oversell(self, restaurant, make_user):
        deal = await _publish(restaurant, items=_items(quantity=5))
        users = [await make_user("client") for _ in range(8)]

        results = await asyncio.gather(
            *(flash_deal_claim(u, deal.id, [{"name": "Paella", "quantity": 1}]) for u in users),
            return_exceptions=True,
        )

        succeeded = [r for r in results if isinstance(r, dict)]
        failed = [r for r in results if not isinstance(r, dict)]
        assert len(succeeded) == 5
        assert all(isinstance(e, CapacityExceeded) for e in failed)
        assert [e.remaining for e in failed] == [0, 0, 0]

        stored = await FlashDeal.get(deal.id)
        assert stored.data.claimed_quantities["Paella"] == 5
        assert stored.data.status == "sold_out"
        assert len(await FlashDealClaim.find({"deal_id": deal.id})) == 5


class TestClaimLifecycle:
    @pytest.fixture
    async def claimed(self, restaurant, make_user):
        deal = await _publish(restaurant, items=_items(quantity=2))
        customer = await make_user("client")
        result = await flash_deal_claim(customer, deal.id, [{"name": "Paella", "quantity": 2}])
        return deal, customer, result

    async def test_confirm_then_pick_up(self, restaurant, claimed):
        deal, customer, result = claimed
        confirmed = await flash_deal_confirm_claim(restaurant, result["claim_id"])
        assert confirmed.data.status == "confirmed"
        assert confirmed.data.confirmed_at is not None

        messages = await Notification.find({"user_id": customer.caller_id, "type": "system"})
        assert len(messages) == 1
        assert result["pickup_code"] in messages[0].data.message

        with pytest.raises(InvalidState):
            await flash_deal_confirm_claim(restaurant, result["claim_id"])

        picked = await flash_deal_mark_picked_up(restaurant, result["claim_id"], result["pickup_code"])
        assert picked.data.status == "picked_up"
        assert picked.data.picked_up_at is not None

    @pytest.mark.parametrize("attempt", ["abcd23", " ABCD23 ", "ABCD23\n", "ÄBCD23"])
    async def test_pickup_code_must_match_exactly(self, restaurant, claimed, patch_doc, attempt):
        _, _, result = claimed
        await patch_doc(FlashDealClaim, result["claim_id"], lambda c: setattr(c, "pickup_code", "ABCD23"))
        with pytest.raises(InvalidCredential):
            await flash_deal_mark_picked_up(restaurant, result["claim_id"], attempt)
        claim = await FlashDealClaim.get(result["claim_id"])
        assert claim.data.status == "pending"

    async def test_non_ascii_code_is_rejected(self, restaurant, claimed):
        _, _, result = claimed
        with pytest.raises(InvalidCredential):
            await flash_deal_mark_picked_up(restaurant, result["claim_id"], "ÄBCDEF")
        assert (await FlashDealClaim.get(result["claim_id"])).data.status == "pending"

    async def test_wrong_pickup_code(self, restaurant, claimed):
        _, _, result = claimed
        wrong = "".join("A" if c != "A" else "B" for c in result["pickup_code"])
        with pytest.raises(InvalidCredential):
            await flash_deal_mark_picked_up(restaurant, result["claim_id"], wrong)
        claim = await FlashDealClaim.get(result["claim_id"])
        assert claim.data.status == "pending"

    async def test_pending_claim_can_be_picked_up(self, restaurant, claimed):
        _, _, result = claimed
        picked = await flash_deal_mark_picked_up(restaurant, result["claim_id"], result["pickup_code"])
        assert picked.data.status == "picked_up"
        with pytest.raises(InvalidState):
            await flash_deal_mark_picked_up(restaurant, result["claim_id"], result["pickup_code"])

    async def test_other_restaurants_are_forbidden(self, make_user, claimed):
        _, _, result = claimed
        rival = await make_user("restaurant", location=CENTER, business_name="Rival")
        with pytest.raises(Forbidden):
            await flash_deal_confirm_claim(rival, result["claim_id"])
        with pytest.raises(Forbidden):
            await flash_deal_mark_picked_up(rival, result["claim_id"], result["pickup_code"])

    async def test_cancel_claim_reopens_sold_out_deal(self, claimed, make_user):
        deal, customer, result = claimed
        assert (await FlashDeal.get(deal.id)).data.status == "sold_out"

        cancelled = await flash_deal_cancel_claim(customer, result["claim_id"])
        assert cancelled.data.status == "cancelled"
        stored = await FlashDeal.get(deal.id)
        assert stored.data.status == "active"
        assert stored.data.claimed_quantities["Paella"] == 0

        with pytest.raises(InvalidState):
            await flash_deal_cancel_claim(customer, result["claim_id"])

        other = await make_user("client")
        await flash_deal_claim(other, deal.id, [{"name": "Paella", "quantity": 2}])

    async def test_only_claimant_cancels(self, claimed, make_user):
        _, _, result = claimed
        stranger = await make_user("client")
        with pytest.raises(Forbidden):
            await flash_deal_cancel_claim(stranger, result["claim_id"])


class TestCancelDeal:
    async def test_cancel_releases_open_claims(self, restaurant, make_user):
        deal = await _publish(restaurant, items=_items(quantity=5))
        pending_user, confirmed_user, picked_user = [await make_user("client") for _ in range(3)]
        await flash_deal_claim(pending_user, deal.id, [{"name": "Paella", "quantity": 1}])
        confirmed = await flash_deal_claim(confirmed_user, deal.id, [{"name": "Paella", "quantity": 1}])
        picked = await flash_deal_claim(picked_user, deal.id, [{"name": "Paella", "quantity": 1}])
        await flash_deal_confirm_claim(restaurant, confirmed["claim_id"])
        await flash_deal_mark_picked_up(restaurant, picked["claim_id"], picked["pickup_code"])

        cancelled = await flash_deal_cancel(restaurant, deal.id)
        assert cancelled.data.status == "cancelled"
        assert cancelled.data.claimed_quantities["Paella"] == 1

        statuses = {c.data.user_id: c.data.status for c in await FlashDealClaim.find({"deal_id": deal.id})}
        assert statuses == {
            pending_user.caller_id: "cancelled",
            confirmed_user.caller_id: "cancelled",
            picked_user.caller_id: "picked_up",
        }
        cancelled_notes = await Notification.find({"user_id": pending_user.caller_id, "type": "system"})
        assert [n.data.title for n in cancelled_notes] == ["Deal cancelled"]

        with pytest.raises(InvalidState):
            await flash_deal_cancel(restaurant, deal.id)

    async def test_only_owner_cancels(self, restaurant, make_user):
        deal = await _publish(restaurant)
        rival = await make_user("restaurant", location=CENTER, business_name="Rival")
        with pytest.raises(Forbidden):
            await flash_deal_cancel(rival, deal.id)

    async def test_view_count(self, restaurant):
        deal = await _publish(restaurant)
        await asyncio.gather(*(flash_deal_increment_view_count(deal.id) for _ in range(4)))
        assert (await FlashDeal.get(deal.id)).data.view_count == 4
        await flash_deal_increment_view_count("missing")


class TestSweeps:
    async def test_activation_is_idempotent(self, restaurant, make_user, patch_doc):
        near = await make_user("client", location=CENTER, push_token="tok")
        deal = await _publish(restaurant, start_time=in_hours(1))

        assert await flash_deals_activate_scheduled() == 0

        def _open_window(d):
            d.start_time = utcnow() - timedelta(minutes=1)

        await patch_doc(FlashDeal, deal.id, _open_window)
        assert await flash_deals_activate_scheduled() == 1
        assert await flash_deals_activate_scheduled() == 0

        stored = await FlashDeal.get(deal.id)
        assert stored.data.status == "active"
        assert stored.data.push_notification_sent is True
        assert len(await Notification.find({"user_id": near.caller_id})) == 1

    async def test_expiry_covers_every_open_status(self, restaurant, make_user, patch_doc):
        active = await _publish(restaurant)
        sold_out = await _publish(restaurant, items=_items(quantity=1))
        scheduled = await _publish(restaurant, start_time=in_hours(1))
        running = await _publish(restaurant)

        customer = await make_user("client")
        pending = await flash_deal_claim(customer, sold_out.id, [{"name": "Paella", "quantity": 1}])
        confirmed = await flash_deal_claim(customer, active.id, [{"name": "Paella", "quantity": 1}])
        await flash_deal_confirm_claim(restaurant, confirmed["claim_id"])

        for deal in (active, sold_out, scheduled):
            await patch_doc(FlashDeal, deal.id, _end_in_past)

        assert await flash_deals_expire() == 3
        for deal in (active, sold_out, scheduled):
            assert (await FlashDeal.get(deal.id)).data.status == "expired"
        assert (await FlashDeal.get(running.id)).data.status == "active"

        assert (await FlashDealClaim.get(pending["claim_id"])).data.status == "expired"
        assert (await FlashDealClaim.get(confirmed["claim_id"])).data.status == "confirmed"
        assert await flash_deals_expire() == 0

    async def test_expired_deal_stays_expired(self, restaurant, patch_doc):
        deal = await _publish(restaurant)
        await patch_doc(FlashDeal, deal.id, _end_in_past)
        await flash_deals_expire()
        with pytest.raises(InvalidState):
            await flash_deal_cancel(restaurant, deal.id)
        assert await flash_deals_activate_scheduled() == 0


class TestFlashDealQueries:
    async def test_active_and_nearby(self, restaurant, make_user):
        soon = await _publish(restaurant, end_time=in_hours(1))
        later = await _publish(restaurant, end_time=in_hours(3))
        distant_owner = await make_user(
            "restaurant", location=km_north(CENTER, 20), business_name="Far Away"
        )
        distant = await _publish(distant_owner, end_time=in_hours(2))
        await _publish(restaurant, end_time=in_hours(6))

        active = await flash_deals_get_active()
        assert [d["id"] for d in active] == [soon.id, distant.id, later.id]
        assert active[0]["restaurant"]["name"] == "Casa Pepe"
        assert [d["id"] for d in await flash_deals_get_active(limit=1)] == [soon.id]

        nearby = await flash_deals_get_nearby(*CENTER)
        assert [d["id"] for d in nearby] == [soon.id, later.id]
        assert nearby[0]["distance_km"] == pytest.approx(0)

    async def test_detail_counts_confirmed_and_picked_up(self, restaurant, make_user):
        deal = await _publish(restaurant)
        customers = [await make_user("client") for _ in range(3)]
        claims = [await flash_deal_claim(c, deal.id, [{"name": "Paella", "quantity": 1}]) for c in customers]
        await flash_deal_confirm_claim(restaurant, claims[0]["claim_id"])
        await flash_deal_mark_picked_up(restaurant, claims[1]["claim_id"], claims[1]["pickup_code"])

        detail = await flash_deal_get_detail(deal.id)
        assert detail["claims_count"] == 2
        assert detail["restaurant"]["location"]["lat"] == CENTER[0]
        assert await flash_deal_get_detail("missing") is None

    async def test_restaurant_stats(self, restaurant, make_user):
        deal = await _publish(restaurant)
        customers = [await make_user("client") for _ in range(2)]
        first = await flash_deal_claim(customers[0], deal.id, [{"name": "Paella", "quantity": 2}])
        await flash_deal_claim(customers[1], deal.id, [{"name": "Paella", "quantity": 1}])
        await flash_deal_mark_picked_up(restaurant, first["claim_id"], first["pickup_code"])

        mine = await flash_deals_get_mine(restaurant)
        assert len(mine) == 1
        assert mine[0]["stats"] == {
            "total_claims": 2,
            "confirmed_claims": 0,
            "picked_up_claims": 1,
            "revenue": 12.0,
        }
        assert await flash_deals_get_mine(customers[0]) == []
        assert await flash_deals_get_mine(None) == []

    async def test_my_claims(self, restaurant, make_user):
        deal = await _publish(restaurant)
        customer = await make_user("client")
        await flash_deal_claim(customer, deal.id, [{"name": "Paella", "quantity": 1}])

        mine = await flash_deal_claims_get_mine(customer)
        assert len(mine) == 1
        assert mine[0]["deal"]["id"] == deal.id
        assert mine[0]["restaurant"]["name"] == "Casa Pepe"
        assert await flash_deal_claims_get_mine(None) == []
