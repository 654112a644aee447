"""
API endpoints for payment methods, payments and refunds.

GET    /payments/methods                 - caller's active methods, default first
POST   /payments/methods                 - add a method
POST   /payments/methods/{id}/default    - make a method the default
DELETE /payments/methods/{id}            - remove a method
POST   /payments/                        - charge a method
GET    /payments/transactions            - caller's payments, newest first
GET    /payments/stats                   - caller's payment totals
POST   /payments/{id}/refund             - request a refund
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from models.entities.couchbase.payments import Payment, PaymentMethod
from models.identity import Identity
from models.operations.payments import (
    payment_method_add,
    payment_method_delete,
    payment_method_set_default,
    payment_methods_get_mine,
    payment_process,
    payment_request_refund,
    payments_get_stats,
    payments_get_transactions,
)
from utils import log

from .dependencies import current_identity_get, require_identity

logger = log.get_logger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------

class AddPaymentMethodRequest(BaseModel):
    type: str
    last4: Optional[str] = Field(None, min_length=4, max_length=4)
    brand: Optional[str] = None
    expiry_month: Optional[int] = Field(None, ge=1, le=12)
    expiry_year: Optional[int] = None
    cardholder_name: Optional[str] = None
    gateway_token: Optional[str] = None
    is_default: bool = False


class ProcessPaymentRequest(BaseModel):
    receiver_id: str
    amount: float = Field(gt=0)
    currency: str = "EUR"
    payment_method_id: str
    job_id: Optional[str] = None
    auction_id: Optional[str] = None
    flash_deal_claim_id: Optional[str] = None
    description: Optional[str] = None


class RefundRequest(BaseModel):
    reason: str
    amount: Optional[float] = Field(None, gt=0)


def _method_response(method: PaymentMethod) -> Dict[str, Any]:
    # gateway_token is excluded by the entity's serializer
    return {"id": method.id, **method.data.model_dump()}


def _payment_response(payment: Payment) -> Dict[str, Any]:
    return {"id": payment.id, **payment.data.model_dump()}


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("/methods", response_model=List[Dict[str, Any]])
async def route_payment_methods_mine(identity: Optional[Identity] = Depends(current_identity_get)):
    return [_method_response(m) for m in await payment_methods_get_mine(identity)]


@router.post("/methods", response_model=Dict[str, Any], status_code=201)
async def route_payment_method_add(
    body: AddPaymentMethodRequest,
    identity: Identity = Depends(require_identity),
):
    method = await payment_method_add(identity, **body.model_dump())
    return _method_response(method)


@router.post("/methods/{method_id}/default", response_model=Dict[str, Any])
async def route_payment_method_set_default(
    method_id: str,
    identity: Identity = Depends(require_identity),
):
    return _method_response(await payment_method_set_default(identity, method_id))


@router.delete("/methods/{method_id}", status_code=204)
async def route_payment_method_delete(
    method_id: str,
    identity: Identity = Depends(require_identity),
):
    await payment_method_delete(identity, method_id)


@router.post("/", response_model=Dict[str, Any], status_code=201)
async def route_payment_process(
    body: ProcessPaymentRequest,
    identity: Identity = Depends(require_identity),
):
    payment = await payment_process(identity, **body.model_dump())
    return _payment_response(payment)


@router.get("/transactions", response_model=List[Dict[str, Any]])
async def route_payment_transactions(
    limit: Optional[int] = Query(None, ge=1, le=500),
    identity: Optional[Identity] = Depends(current_identity_get),
):
    return await payments_get_transactions(identity, limit=limit)


@router.get("/stats", response_model=Dict[str, Any])
async def route_payment_stats(identity: Optional[Identity] = Depends(current_identity_get)):
    return await payments_get_stats(identity)


@router.post("/{payment_id}/refund", response_model=Dict[str, Any], status_code=201)
async def route_payment_refund(
    payment_id: str,
    body: RefundRequest,
    identity: Identity = Depends(require_identity),
):
    refund = await payment_request_refund(identity, payment_id, body.reason, amount=body.amount)
    return _payment_response(refund)
