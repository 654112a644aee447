from .client import (
    ChargeOutcome,
    PaymentProcessor,
    MockPaymentProcessor,
    StripePaymentProcessor,
    get_payment_processor,
    set_payment_processor,
)

__all__ = [
    "ChargeOutcome",
    "PaymentProcessor",
    "MockPaymentProcessor",
    "StripePaymentProcessor",
    "get_payment_processor",
    "set_payment_processor",
]
