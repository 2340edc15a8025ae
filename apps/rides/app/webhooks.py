from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
from collections.abc import Callable
from typing import Any, Dict, Optional

_log = logging.getLogger("medride.webhooks")


def sign_payload(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """HMAC-SHA256 over the raw body; the header may carry a ``sha256=`` prefix."""
    if not signature:
        return False
    sig = signature.strip()
    if sig.startswith("sha256="):
        sig = sig[len("sha256="):]
    return hmac.compare_digest(sig, sign_payload(body, secret))


class WebhookInbox:
    """
    In-process channel between the webhook endpoint and the code that
    applies gateway events. The endpoint only verifies and enqueues; a
    single drain task applies events one at a time.
    """

    def __init__(self, maxsize: int = 1000) -> None:
        self.queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=maxsize)

    def put(self, event: Dict[str, Any]) -> bool:
        try:
            self.queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            _log.warning("webhook inbox full, asking gateway to redeliver", extra={"event_id": event.get("id")})
            return False

    async def drain_forever(self, handle: Callable[[Dict[str, Any]], Any]) -> None:
        while True:
            event = await self.queue.get()
            try:
                # Handlers do blocking DB and HTTP work.
                await asyncio.to_thread(handle, event)
            except Exception:
                _log.exception("gateway event %s failed", event.get("id"))
            finally:
                self.queue.task_done()
