from __future__ import annotations

import asyncio
import contextlib

from apps.rides.app.webhooks import WebhookInbox, sign_payload, verify_signature


def test_signature_roundtrip_and_prefix():
    body = b'{"id":"evt_1","type":"charge.succeeded"}'
    sig = sign_payload(body, "whsec_test")

    assert verify_signature(body, sig, "whsec_test")
    assert verify_signature(body, f"sha256={sig}", "whsec_test")
    assert not verify_signature(body, sig, "other-secret")
    assert not verify_signature(body + b" ", sig, "whsec_test")
    assert not verify_signature(body, None, "whsec_test")


def test_full_inbox_refuses_new_events():
    inbox = WebhookInbox(maxsize=1)
    assert inbox.put({"id": "evt_1"}) is True
    assert inbox.put({"id": "evt_2"}) is False


def test_drain_applies_events_in_order_and_survives_handler_errors():
    handled: list[str] = []

    def _handle(event: dict) -> None:
        if event["id"] == "evt_bad":
            raise RuntimeError("boom")
        handled.append(event["id"])

    async def _run() -> None:
        inbox = WebhookInbox(maxsize=10)
        for event_id in ("evt_1", "evt_bad", "evt_2"):
            inbox.put({"id": event_id})
        task = asyncio.create_task(inbox.drain_forever(_handle))
        await asyncio.wait_for(inbox.queue.join(), timeout=5)
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    asyncio.run(_run())
    assert handled == ["evt_1", "evt_2"]
