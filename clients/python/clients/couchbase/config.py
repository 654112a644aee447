import os
import asyncio
from datetime import timedelta
from couchbase.auth import PasswordAuthenticator
from acouchbase.cluster import Cluster as AsyncCluster
from couchbase.options import ClusterOptions

# Environment variables
USERNAME = os.environ.get('COUCHBASE_USERNAME', '')
PASSWORD = os.environ.get('COUCHBASE_PASSWORD', '')
DEFAULT_BUCKET_NAME = os.environ.get('COUCHBASE_BUCKET', 'marketplace')
HOST = os.environ.get('COUCHBASE_HOST', '')
PROTOCOL = os.environ.get('COUCHBASE_PROTOCOL', '')

# "couchbase" talks to a cluster, "memory" keeps documents in-process
STORE_BACKEND = os.environ.get('STORE_BACKEND', 'couchbase').lower()

VALID_BACKENDS = ('couchbase', 'memory')

_backend = STORE_BACKEND


def get_backend() -> str:
    return _backend


def set_backend(backend: str) -> None:
    """Switch the document store backend for the whole process."""
    global _backend
    if backend not in VALID_BACKENDS:
        raise ValueError(f"Unknown store backend '{backend}'. Must be one of {VALID_BACKENDS}")
    _backend = backend


def validate_config() -> list:
    errors = []
    if not USERNAME:
        errors.append("COUCHBASE_USERNAME is missing or empty")
    if not PASSWORD:
        errors.append("COUCHBASE_PASSWORD is missing or empty")
    if not HOST:
        errors.append("COUCHBASE_HOST is missing or empty")
    if not DEFAULT_BUCKET_NAME:
        errors.append("COUCHBASE_BUCKET is missing or empty")

    valid_protocols = ('couchbase', 'couchbases')
    if PROTOCOL not in valid_protocols:
        errors.append(f"COUCHBASE_PROTOCOL '{PROTOCOL}' is invalid. Must be one of {valid_protocols}")
    return errors


# Module-level cluster cache
_cluster = None

async def get_cluster(max_retries: int = 10, initial_delay: float = 1.0, max_delay: float = 30.0):
    """
    Returns a cached Couchbase cluster connection.
    Creates a new connection if one doesn't exist.
    Implements retry with exponential backoff for startup race conditions.
    """
    global _cluster
    if _cluster is None:
        errors = validate_config()
        if errors:
            raise ValueError("Invalid Couchbase Configuration:\n" + "\n".join(errors))

        auth = PasswordAuthenticator(USERNAME, PASSWORD)
        url = PROTOCOL + "://" + HOST
        delay = initial_delay

        for attempt in range(1, max_retries + 1):
            try:
                _cluster = await AsyncCluster.connect(url, ClusterOptions(auth))
                break
            except Exception:
                if attempt == max_retries:
                    raise
                await asyncio.sleep(delay)
                delay = min(delay * 2, max_delay)

        await _cluster.wait_until_ready(timedelta(seconds=50))
    return _cluster


async def check_connection():
    """
    Explicitly checks the connection to the document store.
    Useful for startup checks.
    """
    if get_backend() == 'memory':
        return
    cluster = await get_cluster()
    await cluster.ping()
