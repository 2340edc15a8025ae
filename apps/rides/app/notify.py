from __future__ import annotations

import json
import logging
import os
import time
from typing import Any, Dict, Optional

import redis

_log = logging.getLogger("medride.events")

NEW_BID = "NEW_BID"
BID_ACCEPTED = "BID_ACCEPTED"
BID_REJECTED = "BID_REJECTED"
BID_WITHDRAWN = "BID_WITHDRAWN"
COUNTER_OFFER_RECEIVED = "COUNTER_OFFER_RECEIVED"
MAX_COUNTER_OFFERS = "MAX_COUNTER_OFFERS"
PAYMENT_RECEIVED = "PAYMENT_RECEIVED"
PAYMENT_FAILED = "PAYMENT_FAILED"
PAYMENT_ACTION_REQUIRED = "PAYMENT_ACTION_REQUIRED"
PAYMENT_REFUNDED = "PAYMENT_REFUNDED"
PAYOUT_COMPLETED = "PAYOUT_COMPLETED"
PAYOUT_FAILED = "PAYOUT_FAILED"
RIDE_CANCELLED = "RIDE_CANCELLED"
RIDE_EXPIRED = "RIDE_EXPIRED"
RIDE_STATUS_CHANGED = "RIDE_STATUS_CHANGED"
RIDE_EDIT_REQUESTED = "RIDE_EDIT_REQUESTED"
RIDE_EDIT_ACCEPTED = "RIDE_EDIT_ACCEPTED"
RIDE_EDIT_REJECTED = "RIDE_EDIT_REJECTED"
URGENT_RIDE_POSTED = "URGENT_RIDE_POSTED"


class Notifier:
    """
    Best-effort user notifications.

    In prod this pushes JSON payloads to Redis Pub/Sub (one channel per
    user); when Redis is disabled or unreachable it degrades to structured
    logging. ``notify`` never raises: a lost notification must not abort a
    bid or payment transition.
    """

    def __init__(self, url: Optional[str] = None, enabled: Optional[bool] = None) -> None:
        self._url = url or os.getenv("EVENTS_REDIS_URL", "redis://localhost:6379/0")
        if enabled is None:
            enabled = os.getenv("EVENTS_ENABLED", "false").lower() == "true"
        self._enabled = enabled
        self._client = None
        if self._enabled:
            try:
                self._client = redis.Redis.from_url(self._url)
            except Exception as e:
                _log.warning("events: failed to connect to redis '%s': %s", self._url, e)
                self._enabled = False

    def notify(
        self,
        user_id: Optional[str],
        type: str,
        title: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not user_id:
            return
        data = {
            "user_id": user_id,
            "type": type,
            "title": title,
            "message": message,
            "metadata": metadata or {},
            "ts_ms": int(time.time() * 1000),
        }
        try:
            self._publish(f"notifications:{user_id}", data)
        except Exception:
            _log.exception("events: notification %s for %s dropped", type, user_id)

    def _publish(self, channel: str, data: Dict[str, Any]) -> None:
        if self._enabled and self._client is not None:
            try:
                self._client.publish(channel, json.dumps(data, default=str))
                return
            except redis.RedisError as e:
                _log.warning("events: redis publish failed: %s", e)
        # Fallback: structured log
        _log.info("notification", extra={"channel": channel, "event": data})


_notifier: Optional[Notifier] = None


def get_notifier() -> Notifier:
    global _notifier
    if _notifier is None:
        _notifier = Notifier()
    return _notifier
