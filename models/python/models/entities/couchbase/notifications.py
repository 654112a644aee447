from typing import Any, Dict, Optional, Literal
from datetime import datetime
from pydantic import BaseModel
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData

NotificationType = Literal[
    "job_match",
    "system",
    "auction_new_bid",
    "auction_outbid",
    "auction_won",
    "auction_lost",
    "flash_deal",
    "flash_deal_claimed",
]


class NotificationData(BaseCouchbaseEntityData):
    user_id: str
    type: NotificationType
    title: str
    message: str
    data: Optional[Dict[str, Any]] = None
    is_read: bool = False


class Notification(BaseModelCouchbase[NotificationData]):
    _collection_name = "notifications"


class PushDeliveryData(BaseCouchbaseEntityData):
    """Outbox entry drained by the push dispatcher."""
    notification_id: str
    user_id: str
    push_token: Optional[str] = None
    title: str
    body: str
    data: Optional[Dict[str, Any]] = None
    status: Literal["pending", "sent", "failed", "skipped"] = "pending"
    attempts: int = 0
    last_error: Optional[str] = None
    sent_at: Optional[datetime] = None


class PushDelivery(BaseModelCouchbase[PushDeliveryData]):
    _collection_name = "push_deliveries"


class TargetLocation(BaseModel):
    lat: float
    lng: float
    radius_km: float


class PushBroadcastData(BaseCouchbaseEntityData):
    target_type: Literal["radius"] = "radius"
    target_location: TargetLocation
    title: str
    body: str
    data: Dict[str, Any] = {}
    status: Literal["sent"] = "sent"
    sent_count: int = 0
    sent_at: datetime


class PushBroadcast(BaseModelCouchbase[PushBroadcastData]):
    _collection_name = "push_broadcasts"
