"""
CAS-guarded read-modify-write shared by every serialization domain
(auctions, flash deals, claims, payments, payment-method guards).
"""

import asyncio
import logging
import random
from typing import Callable, Optional, Type, TypeVar

from couchbase.exceptions import CASMismatchException

from clients.couchbase import BaseModelCouchbase
from models.errors import ConcurrencyConflict, NotFound

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModelCouchbase)


async def cas_retry(
    model: Type[M],
    entity_id: str,
    mutator: Callable[[M], Optional[bool]],
    max_retries: int = 8,
    label: Optional[str] = None,
) -> M:
    """Read-modify-write one document with CAS-guarded retry.

    *mutator* receives the freshly read entity and mutates ``entity.data`` in
    place. It raises a ``MarketplaceError`` to abort, or returns ``False`` to
    finish without writing. On ``CASMismatchException`` the helper re-reads
    and re-runs the mutator with jittered exponential backoff (10 ms, 20 ms, ...),
    so every decision the mutator takes is made against the snapshot it writes.
    """
    label = label or model.__name__
    backoff_ms = 10
    for attempt in range(max_retries + 1):
        entity = await model.get(entity_id)
        if not entity:
            raise NotFound(f"{label} {entity_id} not found")

        if mutator(entity) is False:
            return entity

        try:
            return await model.update(entity)
        except CASMismatchException:
            if attempt == max_retries:
                break
            logger.debug(f"CAS conflict on {label} {entity_id}, retry {attempt + 1}")
            await asyncio.sleep(random.uniform(backoff_ms / 2, backoff_ms) / 1000)
            backoff_ms *= 2

    raise ConcurrencyConflict(f"Concurrent update conflict on {label} {entity_id}, please retry")
