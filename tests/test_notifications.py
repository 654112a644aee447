"""
Notification inbox and the push outbox dispatcher.
"""
import pytest

from models.entities.couchbase.notifications import Notification, PushDelivery
from models.errors import Forbidden
from models.operations import notifications as notifications_ops
from models.operations.notifications import (
    MAX_PUSH_ATTEMPTS,
    notification_create,
    notification_emit,
    notification_mark_all_read,
    notification_mark_read,
    notifications_get_mine,
    push_dispatch_pending,
)


class TestOutbox:
    async def test_create_enqueues_delivery_with_stored_token(self, make_user):
        user = await make_user("client", push_token="tok-1")
        notification = await notification_create(user.caller_id, "system", "Hello", "World", {"k": "v"})

        delivery = await PushDelivery.get(notification.id)
        assert delivery.data.status == "pending"
        assert delivery.data.push_token == "tok-1"
        assert delivery.data.title == "Hello"
        assert delivery.data.body == "World"
        assert delivery.data.data == {"k": "v"}

    async def test_explicit_token_wins(self, make_user):
        user = await make_user("client", push_token="stored")
        notification = await notification_create(user.caller_id, "system", "t", "m", push_token="given")
        assert (await PushDelivery.get(notification.id)).data.push_token == "given"

    async def test_emit_swallows_failures(self, make_user, monkeypatch):
        user = await make_user("client")

        async def _broken(*args, **kwargs):
            raise RuntimeError("store down")

        monkeypatch.setattr(notifications_ops, "notification_create", _broken)
        assert await notification_emit(user.caller_id, "system", "t", "m") is None


class TestDispatch:
    async def test_sends_and_skips(self, make_user, push_sink):
        with_token = await make_user("client", push_token="tok-1")
        without_token = await make_user("client")
        sent = await notification_create(with_token.caller_id, "system", "Hi", "there", {"n": 1})
        skipped = await notification_create(without_token.caller_id, "system", "Hi", "there")

        counts = await push_dispatch_pending()
        assert counts == {"sent": 1, "skipped": 1, "failed": 0, "retrying": 0}
        assert push_sink.sent == [{"token": "tok-1", "title": "Hi", "body": "there", "data": {"n": 1}}]

        assert (await PushDelivery.get(sent.id)).data.status == "sent"
        assert (await PushDelivery.get(sent.id)).data.sent_at is not None
        assert (await PushDelivery.get(skipped.id)).data.status == "skipped"

        # Nothing left to drain
        assert await push_dispatch_pending() == {"sent": 0, "skipped": 0, "failed": 0, "retrying": 0}
        assert len(push_sink.sent) == 1

    async def test_failures_retry_until_exhausted(self, make_user, push_sink):
        user = await make_user("client", push_token="tok-1")
        notification = await notification_create(user.caller_id, "system", "Hi", "there")
        push_sink.fail = True

        for attempt in range(1, MAX_PUSH_ATTEMPTS):
            counts = await push_dispatch_pending()
            assert counts["retrying"] == 1
            delivery = await PushDelivery.get(notification.id)
            assert delivery.data.attempts == attempt
            assert delivery.data.last_error == "push service unavailable"

        counts = await push_dispatch_pending()
        assert counts["failed"] == 1
        delivery = await PushDelivery.get(notification.id)
        assert delivery.data.status == "failed"
        assert delivery.data.attempts == MAX_PUSH_ATTEMPTS

    async def test_recovers_after_transient_failure(self, make_user, push_sink):
        user = await make_user("client", push_token="tok-1")
        notification = await notification_create(user.caller_id, "system", "Hi", "there")
        push_sink.fail = True
        await push_dispatch_pending()

        push_sink.fail = False
        assert (await push_dispatch_pending())["sent"] == 1
        delivery = await PushDelivery.get(notification.id)
        assert delivery.data.status == "sent"
        assert delivery.data.attempts == 2

    async def test_push_failure_keeps_the_inbox_entry(self, make_user, push_sink):
        user = await make_user("client", push_token="tok-1")
        push_sink.fail = True
        await notification_emit(user.caller_id, "system", "Hi", "there")
        await push_dispatch_pending()
        assert len(await Notification.find({"user_id": user.caller_id})) == 1


class TestInbox:
    async def test_mark_read(self, make_user):
        owner = await make_user("client")
        stranger = await make_user("client")
        notification = await notification_create(owner.caller_id, "system", "t", "m")

        with pytest.raises(Forbidden):
            await notification_mark_read(stranger, notification.id)

        updated = await notification_mark_read(owner, notification.id)
        assert updated.data.is_read is True
        # Marking twice is a no-op
        assert (await notification_mark_read(owner, notification.id)).data.is_read is True

    async def test_mark_all_read_and_listing(self, make_user):
        owner = await make_user("client")
        other = await make_user("client")
        for i in range(3):
            await notification_create(owner.caller_id, "system", f"t{i}", "m")
        await notification_create(other.caller_id, "system", "theirs", "m")

        assert len(await notifications_get_mine(owner, unread_only=True)) == 3
        assert await notification_mark_all_read(owner) == 3
        assert await notifications_get_mine(owner, unread_only=True) == []
        assert len(await notifications_get_mine(owner)) == 3
        assert len(await notifications_get_mine(owner, limit=2)) == 2
        assert len(await notifications_get_mine(other, unread_only=True)) == 1
        assert await notifications_get_mine(None) == []
