from typing import Optional, Literal
from datetime import datetime
from pydantic import BaseModel
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData

from .common import Location


class Budget(BaseModel):
    min: float
    max: float
    currency: str


class JobData(BaseCouchbaseEntityData):
    title: str
    description: str
    category: str
    budget: Budget
    client_id: str
    handyman_id: Optional[str] = None
    status: Literal["draft", "open", "assigned", "in_progress", "completed", "cancelled"] = "open"
    location: Location
    is_urgent: bool = False
    auction_id: Optional[str] = None
    final_price: Optional[float] = None
    completed_at: Optional[datetime] = None


class Job(BaseModelCouchbase[JobData]):
    _collection_name = "jobs"


def job_key_for_auction(auction_id: str) -> str:
    return f"job::auction::{auction_id}"
