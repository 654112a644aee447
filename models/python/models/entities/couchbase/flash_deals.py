from typing import Dict, List, Optional, Literal
from datetime import datetime
from pydantic import BaseModel
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData

from .common import Location


class FlashDealItem(BaseModel):
    name: str
    original_price: float
    discounted_price: float
    quantity: Optional[int] = None  # None means unbounded
    image_url: Optional[str] = None


class FlashDealData(BaseCouchbaseEntityData):
    restaurant_id: str
    title: str
    description: str
    items: List[FlashDealItem]
    discount_percentage: float
    start_time: datetime
    end_time: datetime
    status: Literal["scheduled", "active", "expired", "sold_out", "cancelled"] = "active"
    location: Location
    notification_radius: float = 5.0
    view_count: int = 0
    claim_count: int = 0

    # Units held by non-cancelled claims, per item name (updated atomically via CAS)
    claimed_quantities: Dict[str, int] = {}

    push_notification_sent: bool = False
    push_notification_sent_at: Optional[datetime] = None


class FlashDeal(BaseModelCouchbase[FlashDealData]):
    _collection_name = "flash_deals"
