"""
Pytest configuration and fixtures.

Every test runs against the in-process memory store with recording doubles
for the push sink and the payment processor.
"""
import itertools
import os
from typing import Any, Callable, Dict, List, Optional

os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("USE_AUTH", "false")
os.environ.setdefault("SWEEPS_ENABLED", "false")

import pytest

import clients.couchbase.memory as memory_store
from clients.couchbase import set_backend
from clients.payments import ChargeOutcome, PaymentProcessor, set_payment_processor
from clients.push import PushDeliveryError, PushSink, set_push_sink
from models.identity import Identity
from models.operations.users import user_resolve, user_update_profile


class RecordingPushSink(PushSink):
    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.fail = False

    async def send(self, token, title, body, data=None) -> None:
        if self.fail:
            raise PushDeliveryError("push service unavailable")
        self.sent.append({"token": token, "title": title, "body": body, "data": data})


class RecordingPaymentProcessor(PaymentProcessor):
    def __init__(self):
        self.charges: List[Dict[str, Any]] = []
        self.decline_reason: Optional[str] = None

    async def charge(self, payer_id, amount, currency, method_id, method_token=None) -> ChargeOutcome:
        self.charges.append({"payer_id": payer_id, "amount": amount, "currency": currency, "method_id": method_id})
        if self.decline_reason:
            return ChargeOutcome(succeeded=False, failure_reason=self.decline_reason)
        return ChargeOutcome(succeeded=True, reference=f"ch_test_{len(self.charges)}")


@pytest.fixture(autouse=True)
def store():
    """Fresh memory store for each test."""
    set_backend("memory")
    memory_store.reset()
    yield
    memory_store.reset()


@pytest.fixture(autouse=True)
def push_sink() -> RecordingPushSink:
    sink = RecordingPushSink()
    set_push_sink(sink)
    yield sink
    set_push_sink(None)


@pytest.fixture(autouse=True)
def processor() -> RecordingPaymentProcessor:
    recording = RecordingPaymentProcessor()
    set_payment_processor(recording)
    yield recording
    set_payment_processor(None)


@pytest.fixture
def make_user() -> Callable:
    """Factory creating a stored user with the given profile; returns its Identity."""
    counter = itertools.count(1)

    async def _make(
        role: str = "client",
        location: Optional[tuple] = None,
        push_token: Optional[str] = None,
        categories: Optional[List[str]] = None,
        business_name: Optional[str] = None,
    ) -> Identity:
        n = next(counter)
        identity = Identity(
            caller_id=f"{role}-{n}",
            display_name=f"{role.title()} {n}",
            email=f"{role}{n}@example.com",
        )
        await user_resolve(identity)
        profile: Dict[str, Any] = {"role": role, "push_token": push_token, "categories": categories}
        if location:
            profile["location"] = {"lat": location[0], "lng": location[1]}
        if business_name:
            profile["restaurant_info"] = {"business_name": business_name, "cuisine": ["tapas"]}
        await user_update_profile(identity, profile)
        return identity

    return _make


@pytest.fixture
def patch_doc() -> Callable:
    """Mutate a stored entity outside the operations layer (e.g. to move its clock)."""

    async def _patch(model, entity_id: str, mutate: Callable[[Any], None]):
        entity = await model.get(entity_id)
        mutate(entity.data)
        return await model.update(entity)

    return _patch

