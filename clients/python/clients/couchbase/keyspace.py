import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from couchbase.n1ql import QueryScanConsistency
from couchbase.result import MutationResult
from couchbase.options import QueryOptions, ReplaceOptions
from .config import get_cluster, get_backend, DEFAULT_BUCKET_NAME


@dataclass
class Keyspace:
    bucket_name: str
    scope_name: str
    collection_name: str

    @classmethod
    def from_string(cls, keyspace: str) -> 'Keyspace':
        parts = keyspace.split('.')
        if len(parts) != 3:
            raise ValueError(
                "Invalid keyspace format. Expected 'bucket_name.scope_name.collection_name', "
                f"got '{keyspace}'"
            )
        return cls(*parts)

    def __str__(self) -> str:
        return f"{self.bucket_name}.{self.scope_name}.{self.collection_name}"

    async def query(self, query: str, scan_consistency: Optional[QueryScanConsistency] = None, **params) -> list:
        cluster = await get_cluster()
        query = query.replace("${keyspace}", str(self))
        options = QueryOptions(named_parameters=params)
        if scan_consistency is not None:
            options = QueryOptions(named_parameters=params, scan_consistency=scan_consistency)
        result = cluster.query(query, options)
        return [row async for row in result]

    async def get_scope(self):
        cluster = await get_cluster()
        bucket = cluster.bucket(self.bucket_name)
        return bucket.scope(self.scope_name)

    async def get_collection(self):
        scope = await self.get_scope()
        return scope.collection(self.collection_name)

    async def get(self, key: str) -> Tuple[dict, int]:
        collection = await self.get_collection()
        result = await collection.get(key)
        return result.content_as[dict], result.cas

    async def insert(self, value: dict, key: Optional[str] = None, **kwargs) -> MutationResult:
        if key is None:
            key = str(uuid.uuid4())
        collection = await self.get_collection()
        return await collection.insert(key, value, **kwargs)

    async def upsert(self, key: str, value: dict, **kwargs) -> MutationResult:
        """Insert or update a document (idempotent write)."""
        collection = await self.get_collection()
        return await collection.upsert(key, value, **kwargs)

    async def replace(self, key: str, value: dict, cas: Optional[int] = None) -> MutationResult:
        """Replace a document; with *cas* set the write fails on a concurrent change."""
        collection = await self.get_collection()
        if cas:
            return await collection.replace(key, value, ReplaceOptions(cas=cas))
        return await collection.replace(key, value)

    async def remove(self, key: str, **kwargs) -> int:
        collection = await self.get_collection()
        result = await collection.remove(key, **kwargs)
        return result.cas

    async def find(self, where: Optional[Dict[str, Any]] = None) -> List[Tuple[str, dict]]:
        """Equality lookup on (possibly dotted) fields.

        A list value matches any of its members. The index is brought up to
        date with every mutation made before the query (REQUEST_PLUS), so a
        document written a moment ago is always found.
        """
        conditions = []
        params: Dict[str, Any] = {}
        for i, (field, value) in enumerate((where or {}).items()):
            name = f"p{i}"
            if isinstance(value, (list, tuple)):
                conditions.append(f"{field} IN ${name}")
                params[name] = list(value)
            else:
                conditions.append(f"{field} = ${name}")
                params[name] = value

        where_clause = " AND ".join(conditions) if conditions else "1=1"
        rows = await self.query(
            f"SELECT META().id, * FROM {self} WHERE {where_clause}",
            scan_consistency=QueryScanConsistency.REQUEST_PLUS,
            **params,
        )
        return [
            (row["id"], row[self.collection_name])
            for row in rows if row.get(self.collection_name)
        ]


def get_keyspace(collection_name: str, scope_name: Optional[str] = "_default", bucket_name: Optional[str] = DEFAULT_BUCKET_NAME):
    """
    Create a keyspace for the configured backend.

    Args:
        collection_name: Name of the collection
        scope_name: Name of the scope (defaults to "_default")
        bucket_name: Name of the bucket (defaults to DEFAULT_BUCKET_NAME)

    Returns:
        Keyspace, or MemoryKeyspace when the memory backend is active
    """
    if get_backend() == "memory":
        from .memory import MemoryKeyspace

        return MemoryKeyspace(bucket_name, scope_name, collection_name)
    return Keyspace(bucket_name, scope_name, collection_name)
