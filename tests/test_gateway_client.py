from __future__ import annotations

import json

import httpx
import pytest

from apps.rides.app.errors import GatewayRejected, GatewayTimeout, GatewayUnavailable, PaymentDeclined
from apps.rides.app.gateway import PaymentGateway


def _gateway(handler) -> PaymentGateway:
    return PaymentGateway(base_url="https://gateway.test", api_key="sk_test", transport=httpx.MockTransport(handler))


def test_charge_sends_idempotency_key_and_auth():
    seen: dict[str, httpx.Request] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["req"] = request
        return httpx.Response(200, json={"id": "ch_1", "status": "succeeded"})

    charge = _gateway(handler).create_charge(7938, "cus_1", "pm_1", "ride-r1-charge-abc", metadata={"ride_id": "r1"})

    req = seen["req"]
    assert req.url.path == "/charges"
    assert req.headers["Idempotency-Key"] == "ride-r1-charge-abc"
    assert req.headers["Authorization"] == "Bearer sk_test"
    assert charge == {"id": "ch_1", "status": "succeeded", "client_secret": None, "failure_code": None, "failure_message": None}


def test_timeout_maps_to_gateway_timeout():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(GatewayTimeout):
        _gateway(handler).create_charge(100, None, "pm_1", "k1")


def test_connection_error_and_5xx_map_to_unavailable():
    def refused(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(GatewayUnavailable):
        _gateway(refused).retrieve_charge("ch_1")

    with pytest.raises(GatewayUnavailable):
        _gateway(lambda r: httpx.Response(503, text="upstream down")).create_transfer(100, "acct_1", "k2")


def test_decline_and_rejection_are_distinguished():
    declined = _gateway(lambda r: httpx.Response(402, json={"error": {"code": "insufficient_funds"}}))
    with pytest.raises(PaymentDeclined) as exc:
        declined.create_charge(100, None, "pm_1", "k3")
    assert exc.value.code == "insufficient_funds"

    rejected = _gateway(lambda r: httpx.Response(400, json={"error": {"code": "invalid_destination"}}))
    with pytest.raises(GatewayRejected) as exc2:
        rejected.create_transfer(100, "acct_1", "k4")
    assert not isinstance(exc2.value, PaymentDeclined)
    assert exc2.value.code == "invalid_destination"


def test_unconfigured_gateway_is_unavailable():
    with pytest.raises(GatewayUnavailable):
        PaymentGateway(base_url="").retrieve_charge("ch_1")


def test_transfer_status_defaults_to_pending():
    gw = _gateway(lambda r: httpx.Response(200, json={"id": "tr_1"}))
    assert gw.create_transfer(9500, "acct_1", "payout-k") == {"id": "tr_1", "status": "pending"}


def test_non_object_body_is_treated_as_unavailable():
    odd = _gateway(lambda r: httpx.Response(200, json=["odd"]))
    with pytest.raises(GatewayUnavailable):
        odd.create_transfer(100, "acct_1", "k5")
    with pytest.raises(GatewayUnavailable):
        odd.retrieve_charge("ch_1")


def test_refund_posts_charge_and_key():
    seen: dict[str, httpx.Request] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["req"] = request
        return httpx.Response(200, json={"id": "re_1", "status": "succeeded"})

    refund = _gateway(handler).create_refund("ch_1", 2500, "refund-k", reason="ride_cancelled")

    req = seen["req"]
    assert req.url.path == "/refunds"
    assert req.headers["Idempotency-Key"] == "refund-k"
    assert json.loads(req.content)["charge"] == "ch_1"
    assert refund == {"id": "re_1", "status": "succeeded"}
