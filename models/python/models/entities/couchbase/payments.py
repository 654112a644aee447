from typing import Optional, Literal
from pydantic import Field
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData


class PaymentMethodData(BaseCouchbaseEntityData):
    user_id: str
    type: Literal["credit_card", "debit_card", "bank_account", "digital_wallet"]
    provider: str = "unknown"
    last_four_digits: str = "0000"
    holder_name: str = "Unknown"
    expiry_month: Optional[int] = None
    expiry_year: Optional[int] = None
    is_default: bool = False
    is_active: bool = True
    # Gateway-side reference (e.g. Stripe pm_...); stored but never serialized out
    gateway_token: Optional[str] = Field(default=None, exclude=True)


class PaymentMethod(BaseModelCouchbase[PaymentMethodData]):
    _collection_name = "payment_methods"


class PaymentMethodGuardData(BaseCouchbaseEntityData):
    """Per-user document whose CAS serializes default-flag changes."""
    user_id: str
    default_method_id: Optional[str] = None
    version: int = 0


class PaymentMethodGuard(BaseModelCouchbase[PaymentMethodGuardData]):
    _collection_name = "payment_method_guards"


def payment_method_guard_key(user_id: str) -> str:
    return f"pm_guard::{user_id}"


class PaymentData(BaseCouchbaseEntityData):
    kind: Literal["payment", "refund"] = "payment"
    payer_id: str
    receiver_id: str
    job_id: Optional[str] = None
    auction_id: Optional[str] = None
    flash_deal_claim_id: Optional[str] = None
    refund_of_id: Optional[str] = None
    payment_method_id: str
    amount: float
    currency: str
    description: Optional[str] = None
    status: Literal["pending", "processing", "completed", "failed", "refunded"] = "pending"
    gateway_reference: Optional[str] = None
    failure_reason: Optional[str] = None
    refund_id: Optional[str] = None
    refund_reason: Optional[str] = None


class Payment(BaseModelCouchbase[PaymentData]):
    _collection_name = "payments"
