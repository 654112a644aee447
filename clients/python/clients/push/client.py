import logging
import os
from typing import Any, Dict, Optional

import httpx

from .exceptions import PushDeliveryError

logger = logging.getLogger(__name__)

# Configuration
PUSH_BACKEND = os.environ.get("PUSH_BACKEND", "log").lower()
EXPO_PUSH_URL = os.environ.get("EXPO_PUSH_URL", "https://exp.host/--/api/v2/push/send")
EXPO_ACCESS_TOKEN = os.environ.get("EXPO_ACCESS_TOKEN", "")


class PushSink:
    """One-way push delivery; no delivery receipt is consumed."""

    async def send(self, token: str, title: str, body: str, data: Optional[Dict[str, Any]] = None) -> None:
        raise NotImplementedError


class LogPushSink(PushSink):
    async def send(self, token, title, body, data=None) -> None:
        logger.info(f"Push to {token[:12]}...: {title} | {body}")


class ExpoPushSink(PushSink):
    def __init__(self, url: str = EXPO_PUSH_URL, access_token: str = EXPO_ACCESS_TOKEN, timeout: float = 10.0):
        self.url = url
        self.access_token = access_token
        self.timeout = timeout

    async def send(self, token, title, body, data=None) -> None:
        headers = {"Accept": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        message = {"to": token, "title": title, "body": body, "data": data or {}, "sound": "default"}

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.url, json=message, headers=headers)
            response.raise_for_status()
            ticket = response.json().get("data") or {}

        if isinstance(ticket, list):
            ticket = ticket[0] if ticket else {}
        if ticket.get("status") == "error":
            raise PushDeliveryError(ticket.get("message") or "Expo rejected the push message")


_sink_instance: Optional[PushSink] = None


def get_push_sink() -> PushSink:
    """Returns the process-wide push sink, chosen by PUSH_BACKEND."""
    global _sink_instance
    if _sink_instance is None:
        _sink_instance = ExpoPushSink() if PUSH_BACKEND == "expo" else LogPushSink()
    return _sink_instance


def set_push_sink(sink: Optional[PushSink]) -> None:
    global _sink_instance
    _sink_instance = sink
