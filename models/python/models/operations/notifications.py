"""
Notification sink and push outbox.

Engines append a ``Notification`` (the user's inbox entry) and a
``PushDelivery`` outbox entry after their state change has committed. A
separate dispatcher drains the outbox to the configured push sink, so push
failures never roll back the transition that produced them.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from clients.push import get_push_sink
from models.entities.couchbase.notifications import (
    Notification,
    NotificationData,
    PushDelivery,
    PushDeliveryData,
)
from models.entities.couchbase.users import User
from models.errors import Forbidden
from models.identity import Identity
from models.operations.cas import cas_retry
from models.operations.users import user_resolve

logger = logging.getLogger(__name__)

MAX_PUSH_ATTEMPTS = 3


async def notification_create(
    user_id: str,
    type: str,
    title: str,
    message: str,
    data: Optional[Dict[str, Any]] = None,
    push_token: Optional[str] = None,
) -> Notification:
    """Append a notification and enqueue its push delivery."""
    notification = await Notification.create(
        NotificationData(user_id=user_id, type=type, title=title, message=message, data=data)
    )

    if push_token is None:
        user = await User.get(user_id)
        push_token = user.data.push_token if user else None

    await PushDelivery.create_or_update(
        key=notification.id,
        data=PushDeliveryData(
            notification_id=notification.id,
            user_id=user_id,
            push_token=push_token,
            title=title,
            body=message,
            data=data,
        ),
    )
    return notification


async def notification_emit(
    user_id: str,
    type: str,
    title: str,
    message: str,
    data: Optional[Dict[str, Any]] = None,
    push_token: Optional[str] = None,
) -> Optional[Notification]:
    """Fire-and-forget variant used after a committed state change."""
    try:
        return await notification_create(user_id, type, title, message, data, push_token)
    except Exception as e:
        logger.warning(f"Failed to emit {type} notification to {user_id}: {e}")
        return None


# ---------------------------------------------------------------------------
# Inbox
# ---------------------------------------------------------------------------

async def notifications_get_mine(
    identity: Optional[Identity],
    unread_only: bool = False,
    limit: Optional[int] = None,
) -> List[Notification]:
    if identity is None:
        return []
    where: Dict[str, Any] = {"user_id": identity.caller_id}
    if unread_only:
        where["is_read"] = False
    notifications = await Notification.find(where)
    notifications.sort(key=lambda n: n.data.created_at, reverse=True)
    return notifications[:limit] if limit else notifications


async def notification_mark_read(identity: Optional[Identity], notification_id: str) -> Notification:
    user = await user_resolve(identity)

    def _mutate(n: Notification) -> Optional[bool]:
        if n.data.user_id != user.id:
            raise Forbidden("Not your notification")
        if n.data.is_read:
            return False
        n.data.is_read = True
        return None

    return await cas_retry(Notification, notification_id, _mutate)


async def notification_mark_all_read(identity: Optional[Identity]) -> int:
    unread = await notifications_get_mine(identity, unread_only=True)
    for n in unread:
        await notification_mark_read(identity, n.id)
    return len(unread)


# ---------------------------------------------------------------------------
# Outbox dispatcher
# ---------------------------------------------------------------------------

async def push_dispatch_pending(limit: int = 200) -> Dict[str, int]:
    """Drain pending push deliveries to the push sink.

    Runs as a single scheduler job; entries without a token are skipped,
    failing entries are retried until MAX_PUSH_ATTEMPTS.
    """
    counts = {"sent": 0, "skipped": 0, "failed": 0, "retrying": 0}
    pending = await PushDelivery.find({"status": "pending"})
    pending.sort(key=lambda d: d.data.created_at)
    sink = get_push_sink()

    for delivery in pending[:limit]:
        outcome: Dict[str, Any] = {}
        if not delivery.data.push_token:
            outcome["status"] = "skipped"
        else:
            try:
                await sink.send(
                    delivery.data.push_token,
                    delivery.data.title,
                    delivery.data.body,
                    delivery.data.data,
                )
                outcome["status"] = "sent"
            except Exception as e:
                logger.warning(f"Push delivery {delivery.id} failed: {e}")
                outcome["error"] = str(e)

        def _mutate(d: PushDelivery) -> Optional[bool]:
            if d.data.status != "pending":
                return False
            if "status" in outcome:
                d.data.status = outcome["status"]
                if outcome["status"] == "sent":
                    d.data.attempts += 1
                    d.data.sent_at = datetime.now(timezone.utc)
                return None
            d.data.attempts += 1
            d.data.last_error = outcome["error"]
            if d.data.attempts >= MAX_PUSH_ATTEMPTS:
                d.data.status = "failed"
            return None

        try:
            updated = await cas_retry(PushDelivery, delivery.id, _mutate)
        except Exception as e:
            logger.error(f"Failed to record push delivery {delivery.id}: {e}", exc_info=True)
            continue

        if updated.data.status == "pending":
            counts["retrying"] += 1
        else:
            counts[updated.data.status] += 1

    if pending:
        logger.info(f"Push dispatch: {counts}")
    return counts
