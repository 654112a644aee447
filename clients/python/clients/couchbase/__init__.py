from .config import (
    USERNAME,
    PASSWORD,
    DEFAULT_BUCKET_NAME,
    HOST,
    PROTOCOL,
    get_backend,
    set_backend,
    get_cluster,
    check_connection
)
from .keyspace import (
    Keyspace,
    get_keyspace,
)
from .base_model import (
    BaseModelCouchbase,
    BaseCouchbaseEntityData,
    DataT,
    T
)

from couchbase.exceptions import DocumentNotFoundException, DocumentExistsException, CASMismatchException
