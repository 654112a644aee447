import asyncio
import hashlib
import logging
import os
from dataclasses import dataclass
from typing import Optional

import stripe

logger = logging.getLogger(__name__)

# Configuration
PAYMENT_PROCESSOR = os.environ.get("PAYMENT_PROCESSOR", "mock").lower()
STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY", "")


@dataclass
class ChargeOutcome:
    succeeded: bool
    reference: Optional[str] = None
    failure_reason: Optional[str] = None


class PaymentProcessor:
    """Synchronous charge against a payment gateway, as seen by the ledger."""

    async def charge(
        self,
        payer_id: str,
        amount: float,
        currency: str,
        method_id: str,
        method_token: Optional[str] = None,
    ) -> ChargeOutcome:
        raise NotImplementedError


class MockPaymentProcessor(PaymentProcessor):
    """Approves every positive charge with a deterministic reference."""

    async def charge(self, payer_id, amount, currency, method_id, method_token=None) -> ChargeOutcome:
        if amount <= 0:
            return ChargeOutcome(succeeded=False, failure_reason="Amount must be positive")
        seed = f"{payer_id}:{method_id}:{amount}:{currency}"
        reference = f"pi_mock_{hashlib.sha256(seed.encode()).hexdigest()[:16]}"
        logger.info(f"Mock charge {reference}: {amount} {currency} from {payer_id}")
        return ChargeOutcome(succeeded=True, reference=reference)


class StripePaymentProcessor(PaymentProcessor):
    """Confirms an off-session PaymentIntent against the stored gateway token."""

    def __init__(self, secret_key: str):
        stripe.api_key = secret_key

    async def charge(self, payer_id, amount, currency, method_id, method_token=None) -> ChargeOutcome:
        if not method_token:
            return ChargeOutcome(succeeded=False, failure_reason="Payment method has no gateway token")

        def _create_intent():
            return stripe.PaymentIntent.create(
                amount=int(round(amount * 100)),  # Stripe uses cents
                currency=currency.lower(),
                payment_method=method_token,
                confirm=True,
                off_session=True,
                metadata={"payer_id": payer_id, "payment_method_id": method_id},
            )

        loop = asyncio.get_running_loop()
        try:
            intent = await loop.run_in_executor(None, _create_intent)
        except stripe.StripeError as e:
            logger.warning(f"Stripe charge failed for payer {payer_id}: {e}")
            return ChargeOutcome(succeeded=False, failure_reason=str(e))

        if intent.status != "succeeded":
            return ChargeOutcome(
                succeeded=False,
                reference=intent.id,
                failure_reason=f"PaymentIntent status: {intent.status}",
            )
        return ChargeOutcome(succeeded=True, reference=intent.id)


_processor_instance: Optional[PaymentProcessor] = None


def get_payment_processor() -> PaymentProcessor:
    """Returns the process-wide payment processor, chosen by PAYMENT_PROCESSOR."""
    global _processor_instance
    if _processor_instance is None:
        if PAYMENT_PROCESSOR == "stripe":
            if not STRIPE_SECRET_KEY:
                raise ValueError("PAYMENT_PROCESSOR=stripe requires STRIPE_SECRET_KEY")
            _processor_instance = StripePaymentProcessor(STRIPE_SECRET_KEY)
        else:
            _processor_instance = MockPaymentProcessor()
    return _processor_instance


def set_payment_processor(processor: Optional[PaymentProcessor]) -> None:
    global _processor_instance
    _processor_instance = processor
