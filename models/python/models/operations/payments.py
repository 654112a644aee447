"""
Payment ledger: stored payment methods, payments and refunds.

The user's default payment method is decided by a per-user guard document
(``pm_guard::{user_id}``). Changing the default is a CAS write on the guard;
the ``is_default`` flags on the method documents are then reconciled from it,
so concurrent "make this my default" requests settle on exactly one default.

Payments move pending -> processing -> completed | failed around a synchronous
processor charge. A refund never rewrites the original payment: it is a new
``refund`` record, linked from the original through ``refund_id``.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional

from couchbase.exceptions import DocumentExistsException

from clients.payments import ChargeOutcome, get_payment_processor
from models.entities.couchbase.jobs import Job
from models.entities.couchbase.payments import (
    Payment,
    PaymentData,
    PaymentMethod,
    PaymentMethodData,
    PaymentMethodGuard,
    PaymentMethodGuardData,
    payment_method_guard_key,
)
from models.errors import Forbidden, InvalidArgument, InvalidState, NotFound
from models.identity import Identity
from models.operations.cas import cas_retry
from models.operations.jobs import job_mark_completed
from models.operations.notifications import notification_emit
from models.operations.users import user_resolve

logger = logging.getLogger(__name__)

METHOD_TYPES = ("credit_card", "debit_card", "bank_account", "digital_wallet")
MAX_DEFAULT_SYNC_PASSES = 5


# ---------------------------------------------------------------------------
# Default-method guard
# ---------------------------------------------------------------------------

async def _guard_ensure(user_id: str) -> str:
    key = payment_method_guard_key(user_id)
    if await PaymentMethodGuard.get(key) is None:
        try:
            await PaymentMethodGuard.create(PaymentMethodGuardData(user_id=user_id), key=key, user_id=user_id)
        except DocumentExistsException:
            pass
    return key


async def _guard_set_default(user_id: str, method_id: Optional[str]) -> None:
    key = await _guard_ensure(user_id)

    def _mutate(guard: PaymentMethodGuard) -> None:
        guard.data.default_method_id = method_id
        guard.data.version += 1

    await cas_retry(PaymentMethodGuard, key, _mutate, label="Payment method guard")
    await _sync_default_flags(user_id)


async def _sync_default_flags(user_id: str) -> None:
    """Make ``is_default`` on the user's methods match the guard.

    Repeats while the guard keeps moving underneath, so the last writer to
    finish always leaves the flags consistent with the final guard value.
    """
    key = payment_method_guard_key(user_id)
    for _ in range(MAX_DEFAULT_SYNC_PASSES):
        guard = await PaymentMethodGuard.get(key)
        if guard is None:
            return
        default_id = guard.data.default_method_id

        for method in await PaymentMethod.find({"user_id": user_id}):
            wanted = method.id == default_id

            def _mutate(m: PaymentMethod, wanted: bool = wanted) -> Optional[bool]:
                if m.data.is_default == wanted:
                    return False
                m.data.is_default = wanted
                return None

            try:
                await cas_retry(PaymentMethod, method.id, _mutate, label="Payment method")
            except NotFound:
                continue

        latest = await PaymentMethodGuard.get(key)
        if latest is None or latest.data.version == guard.data.version:
            return
    logger.warning(f"Default payment method for {user_id} still moving after {MAX_DEFAULT_SYNC_PASSES} passes")


async def _method_owned(user_id: str, method_id: str) -> PaymentMethod:
    method = await PaymentMethod.get(method_id)
    if not method:
        raise NotFound(f"Payment method {method_id} not found")
    if method.data.user_id != user_id:
        raise Forbidden("This payment method belongs to another user")
    return method


# ---------------------------------------------------------------------------
# Payment methods
# ---------------------------------------------------------------------------

async def payment_method_add(
    identity: Optional[Identity],
    type: str,
    last4: Optional[str] = None,
    brand: Optional[str] = None,
    expiry_month: Optional[int] = None,
    expiry_year: Optional[int] = None,
    cardholder_name: Optional[str] = None,
    gateway_token: Optional[str] = None,
    is_default: bool = False,
) -> PaymentMethod:
    user = await user_resolve(identity)
    method_type = "credit_card" if type == "card" else type
    if method_type not in METHOD_TYPES:
        raise InvalidArgument(f"Unsupported payment method type: {type}")

    method = await PaymentMethod.create(
        PaymentMethodData(
            user_id=user.id,
            type=method_type,
            provider=brand or "unknown",
            last_four_digits=last4 or "0000",
            holder_name=cardholder_name or "Unknown",
            expiry_month=expiry_month,
            expiry_year=expiry_year,
            gateway_token=gateway_token,
        ),
        user_id=user.id,
    )
    if is_default:
        await _guard_set_default(user.id, method.id)
        method = await PaymentMethod.get(method.id) or method
    return method


async def payment_methods_get_mine(identity: Optional[Identity]) -> List[PaymentMethod]:
    """Active methods, default first, then newest."""
    if identity is None:
        return []
    methods = await PaymentMethod.find({"user_id": identity.caller_id, "is_active": True})
    methods.sort(key=lambda m: m.data.created_at, reverse=True)
    methods.sort(key=lambda m: not m.data.is_default)
    return methods


async def payment_method_set_default(identity: Optional[Identity], method_id: str) -> PaymentMethod:
    user = await user_resolve(identity)
    method = await _method_owned(user.id, method_id)
    if not method.data.is_active:
        raise InvalidState("Payment method is no longer active")
    await _guard_set_default(user.id, method_id)
    return await PaymentMethod.get(method_id) or method


async def payment_method_delete(identity: Optional[Identity], method_id: str) -> None:
    """Remove a method; if it was the default another one is promoted."""
    user = await user_resolve(identity)
    await _method_owned(user.id, method_id)
    await PaymentMethod.delete(method_id)

    guard = await PaymentMethodGuard.get(payment_method_guard_key(user.id))
    if guard and guard.data.default_method_id == method_id:
        remaining = await payment_methods_get_mine(identity)
        await _guard_set_default(user.id, remaining[0].id if remaining else None)


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

def _transition(status: str, outcome: Optional[ChargeOutcome] = None):
    def _mutate(p: Payment) -> None:
        p.data.status = status
        if outcome is not None:
            p.data.gateway_reference = outcome.reference
            p.data.failure_reason = outcome.failure_reason

    return _mutate


async def payment_process(
    identity: Optional[Identity],
    receiver_id: str,
    amount: float,
    currency: str,
    payment_method_id: str,
    job_id: Optional[str] = None,
    auction_id: Optional[str] = None,
    flash_deal_claim_id: Optional[str] = None,
    description: Optional[str] = None,
) -> Payment:
    """Charge the caller's payment method and record the outcome."""
    user = await user_resolve(identity)
    if amount <= 0:
        raise InvalidArgument("Amount must be positive")
    method = await _method_owned(user.id, payment_method_id)
    if not method.data.is_active:
        raise InvalidState("Payment method is no longer active")
    if job_id and not await Job.get(job_id):
        raise NotFound(f"Job {job_id} not found")

    payment = await Payment.create(
        PaymentData(
            payer_id=user.id,
            receiver_id=receiver_id,
            job_id=job_id,
            auction_id=auction_id,
            flash_deal_claim_id=flash_deal_claim_id,
            payment_method_id=method.id,
            amount=amount,
            currency=currency,
            description=description,
        ),
        user_id=user.id,
    )
    await cas_retry(Payment, payment.id, _transition("processing"), label="Payment")

    processor = get_payment_processor()
    try:
        outcome = await processor.charge(user.id, amount, currency, method.id, method.data.gateway_token)
    except Exception as e:
        logger.error(f"Payment processor error on payment {payment.id}: {e}", exc_info=True)
        outcome = ChargeOutcome(succeeded=False, failure_reason=f"Processor error: {e}")

    status = "completed" if outcome.succeeded else "failed"
    payment = await cas_retry(Payment, payment.id, _transition(status, outcome), label="Payment")
    logger.info(f"Payment {payment.id} {status}: {amount} {currency} from {user.id} to {receiver_id}")

    if outcome.succeeded and job_id:
        await job_mark_completed(job_id, final_price=amount)
    return payment


async def payment_request_refund(
    identity: Optional[Identity],
    payment_id: str,
    reason: str,
    amount: Optional[float] = None,
) -> Payment:
    """Open a refund against one of the caller's completed payments.

    At most one refund exists per payment: the back-link on the original is
    taken under CAS before the refund record is written.
    """
    user = await user_resolve(identity)
    original = await Payment.get(payment_id)
    if not original:
        raise NotFound(f"Payment {payment_id} not found")
    if original.data.payer_id != user.id:
        raise Forbidden("Only the payer can request a refund")

    refund_amount = original.data.amount if amount is None else amount
    if refund_amount <= 0 or refund_amount > original.data.amount:
        raise InvalidArgument(f"Refund amount must be between 0 and {original.data.amount:g}")

    refund_id = str(uuid.uuid4())

    def _link(p: Payment) -> None:
        if p.data.kind != "payment":
            raise InvalidState("Refunds cannot be refunded")
        if p.data.status != "completed":
            raise InvalidState(f"Only completed payments can be refunded (status: {p.data.status})")
        if p.data.refund_id:
            raise InvalidState("A refund was already requested for this payment")
        p.data.refund_id = refund_id

    original = await cas_retry(Payment, payment_id, _link, label="Payment")

    try:
        refund = await Payment.create(
            PaymentData(
                kind="refund",
                payer_id=original.data.receiver_id,
                receiver_id=original.data.payer_id,
                job_id=original.data.job_id,
                auction_id=original.data.auction_id,
                flash_deal_claim_id=original.data.flash_deal_claim_id,
                refund_of_id=original.id,
                payment_method_id=original.data.payment_method_id,
                amount=refund_amount,
                currency=original.data.currency,
                refund_reason=reason,
            ),
            key=refund_id,
            user_id=user.id,
        )
    except Exception:
        def _unlink(p: Payment) -> Optional[bool]:
            if p.data.refund_id != refund_id:
                return False
            p.data.refund_id = None
            return None

        await cas_retry(Payment, payment_id, _unlink, label="Payment")
        raise

    logger.info(f"Refund {refund.id} requested on payment {payment_id}: {refund_amount} {original.data.currency}")
    await notification_emit(
        user.id,
        "system",
        "Refund requested",
        f"Your refund request of {refund_amount:g} {original.data.currency} is being processed.",
        {"payment_id": payment_id, "refund_id": refund.id},
    )
    return refund


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def payment_get(payment_id: str) -> Optional[Payment]:
    return await Payment.get(payment_id)


async def payments_get_transactions(
    identity: Optional[Identity],
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """Payments made by the caller, newest first, with job title and method."""
    if identity is None:
        return []
    payments = await Payment.find({"payer_id": identity.caller_id})
    payments.sort(key=lambda p: p.data.created_at, reverse=True)
    if limit:
        payments = payments[:limit]

    results = []
    for payment in payments:
        job = await Job.get(payment.data.job_id) if payment.data.job_id else None
        method = await PaymentMethod.get(payment.data.payment_method_id)
        results.append({
            "id": payment.id,
            **payment.data.model_dump(),
            "job_title": job.data.title if job else None,
            "payment_method_info": {
                "type": method.data.type,
                "last4": method.data.last_four_digits,
                "brand": method.data.provider,
            } if method else None,
        })
    return results


async def payments_get_stats(identity: Optional[Identity]) -> Dict[str, Any]:
    stats: Dict[str, Any] = {
        "total_transactions": 0,
        "total_spent": 0.0,
        "pending_payments": 0,
        "completed_payments": 0,
        "failed_payments": 0,
        "refunded": 0.0,
    }
    if identity is None:
        return stats

    paid = await Payment.find({"payer_id": identity.caller_id, "kind": "payment"})
    stats["total_transactions"] = len(paid)
    for payment in paid:
        status = payment.data.status
        if status == "completed":
            stats["total_spent"] += payment.data.amount
            stats["completed_payments"] += 1
        elif status in ("pending", "processing"):
            stats["pending_payments"] += 1
        elif status == "failed":
            stats["failed_payments"] += 1

    # Refunds flow back to the caller as receiver
    refunds = await Payment.find({"receiver_id": identity.caller_id, "kind": "refund"})
    stats["refunded"] = sum(r.data.amount for r in refunds if r.data.status != "failed")
    stats["total_spent"] = round(stats["total_spent"], 2)
    stats["refunded"] = round(stats["refunded"], 2)
    return stats
