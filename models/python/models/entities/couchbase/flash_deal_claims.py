from typing import List, Optional, Literal
from datetime import datetime
from pydantic import BaseModel
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData


class ClaimItem(BaseModel):
    name: str
    quantity: int
    price: float  # discounted unit price * quantity


class FlashDealClaimData(BaseCouchbaseEntityData):
    deal_id: str
    user_id: str
    items: List[ClaimItem]
    total_amount: float
    status: Literal["pending", "confirmed", "picked_up", "cancelled", "expired"] = "pending"
    pickup_code: str
    confirmed_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class FlashDealClaim(BaseModelCouchbase[FlashDealClaimData]):
    _collection_name = "flash_deal_claims"
