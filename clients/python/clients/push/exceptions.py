class PushClientError(Exception):
    """Base exception for push delivery."""
    pass


class PushDeliveryError(PushClientError):
    """Raised when the push service rejects a message."""
    pass
