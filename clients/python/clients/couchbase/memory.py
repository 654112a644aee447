"""In-process document store with the same surface and CAS semantics as ``Keyspace``.

Used by the test-suite and for local development (``STORE_BACKEND=memory``).
Every operation yields to the event loop once so that concurrent coroutines
interleave between a read and the following CAS write, the same way they do
against a real cluster.
"""

import asyncio
import copy
import itertools
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from couchbase.exceptions import (
    CASMismatchException,
    DocumentExistsException,
    DocumentNotFoundException,
)

# collection -> key -> (document, cas)
_documents: Dict[str, Dict[str, Tuple[dict, int]]] = {}
_cas_counter = itertools.count(1)


@dataclass
class MemoryMutationResult:
    cas: int
    key: str


def reset() -> None:
    """Drop every document in every collection."""
    _documents.clear()


def _resolve(doc: dict, dotted: str) -> Any:
    value: Any = doc
    for part in dotted.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


@dataclass
class MemoryKeyspace:
    bucket_name: str
    scope_name: str
    collection_name: str

    def __str__(self) -> str:
        return f"{self.bucket_name}.{self.scope_name}.{self.collection_name}"

    @property
    def _docs(self) -> Dict[str, Tuple[dict, int]]:
        return _documents.setdefault(str(self), {})

    async def get(self, key: str) -> Tuple[dict, int]:
        await asyncio.sleep(0)
        if key not in self._docs:
            raise DocumentNotFoundException(message=f"{self}: document '{key}' not found")
        doc, cas = self._docs[key]
        return copy.deepcopy(doc), cas

    async def insert(self, value: dict, key: Optional[str] = None, **kwargs) -> MemoryMutationResult:
        await asyncio.sleep(0)
        if key is None:
            key = str(uuid.uuid4())
        if key in self._docs:
            raise DocumentExistsException(message=f"{self}: document '{key}' already exists")
        cas = next(_cas_counter)
        self._docs[key] = (copy.deepcopy(value), cas)
        return MemoryMutationResult(cas=cas, key=key)

    async def upsert(self, key: str, value: dict, **kwargs) -> MemoryMutationResult:
        await asyncio.sleep(0)
        cas = next(_cas_counter)
        self._docs[key] = (copy.deepcopy(value), cas)
        return MemoryMutationResult(cas=cas, key=key)

    async def replace(self, key: str, value: dict, cas: Optional[int] = None) -> MemoryMutationResult:
        await asyncio.sleep(0)
        if key not in self._docs:
            raise DocumentNotFoundException(message=f"{self}: document '{key}' not found")
        _, current_cas = self._docs[key]
        if cas and cas != current_cas:
            raise CASMismatchException(message=f"{self}: CAS mismatch on '{key}'")
        new_cas = next(_cas_counter)
        self._docs[key] = (copy.deepcopy(value), new_cas)
        return MemoryMutationResult(cas=new_cas, key=key)

    async def remove(self, key: str, **kwargs) -> int:
        await asyncio.sleep(0)
        if key not in self._docs:
            raise DocumentNotFoundException(message=f"{self}: document '{key}' not found")
        _, cas = self._docs.pop(key)
        return cas

    async def find(self, where: Optional[Dict[str, Any]] = None) -> List[Tuple[str, dict]]:
        await asyncio.sleep(0)
        matches = []
        for key, (doc, _) in list(self._docs.items()):
            ok = True
            for field, expected in (where or {}).items():
                actual = _resolve(doc, field)
                if isinstance(expected, (list, tuple)):
                    ok = actual in expected
                else:
                    ok = actual == expected
                if not ok:
                    break
            if ok:
                matches.append((key, copy.deepcopy(doc)))
        return matches
