from .client import (
    PushSink,
    LogPushSink,
    ExpoPushSink,
    get_push_sink,
    set_push_sink,
)
from .exceptions import PushClientError, PushDeliveryError

__all__ = [
    "PushSink",
    "LogPushSink",
    "ExpoPushSink",
    "get_push_sink",
    "set_push_sink",
    "PushClientError",
    "PushDeliveryError",
]
