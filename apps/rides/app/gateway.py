from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from .errors import GatewayRejected, GatewayTimeout, GatewayUnavailable, PaymentDeclined
from .settings import GATEWAY_TIMEOUT_SECS, PAYMENTS_API_KEY, PAYMENTS_BASE, PAYMENT_CURRENCY

_log = logging.getLogger("medride.gateway")

# Charge statuses reported by the gateway
CHARGE_SUCCEEDED = "succeeded"
CHARGE_REQUIRES_ACTION = "requires_action"
CHARGE_PROCESSING = "processing"
CHARGE_FAILED = "failed"


class PaymentGateway:
    """
    Thin REST client for the payments gateway.

    Every mutating call carries an Idempotency-Key so a resend after a
    timeout is answered with the original result instead of a second charge
    or transfer. Errors are mapped to GatewayTimeout / GatewayUnavailable
    (outcome unknown, safe to reconcile) and GatewayRejected /
    PaymentDeclined (definitive). Raw gateway error text is only logged.
    """

    def __init__(
        self,
        base_url: str = PAYMENTS_BASE,
        api_key: str = PAYMENTS_API_KEY,
        timeout: float = GATEWAY_TIMEOUT_SECS,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = (base_url or "").rstrip("/")
        headers = {"Content-Type": "application/json", "X-Merchant": "medride"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.Client(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, *, json: dict | None = None, ikey: str | None = None, declines: bool = False) -> dict:
        if not self.base_url:
            raise GatewayUnavailable("payments gateway not configured")
        headers = {"Idempotency-Key": ikey} if ikey else None
        try:
            r = self._client.request(method, path, json=json, headers=headers)
        except httpx.TimeoutException as e:
            _log.warning("gateway %s %s timed out: %s", method, path, e)
            raise GatewayTimeout()
        except httpx.TransportError as e:
            _log.warning("gateway %s %s transport error: %s", method, path, e)
            raise GatewayUnavailable()
        if r.status_code >= 500:
            _log.warning("gateway %s %s returned %s: %s", method, path, r.status_code, r.text[:500])
            raise GatewayUnavailable()
        if r.status_code >= 400:
            code = _error_code(r)
            _log.info("gateway %s %s rejected (%s): %s", method, path, r.status_code, r.text[:500])
            if declines and (r.status_code == 402 or code in ("card_declined", "insufficient_funds", "expired_card")):
                raise PaymentDeclined(code=code)
            raise GatewayRejected(code=code)
        try:
            j = r.json()
        except ValueError:
            _log.warning("gateway %s %s returned non-JSON body", method, path)
            raise GatewayUnavailable()
        if not isinstance(j, dict):
            _log.warning("gateway %s %s returned unexpected body: %s", method, path, r.text[:500])
            raise GatewayUnavailable()
        return j

    def create_charge(
        self,
        amount_cents: int,
        customer_ref: Optional[str],
        payment_method_ref: str,
        idempotency_key: str,
        currency: str = PAYMENT_CURRENCY,
        metadata: Optional[dict[str, Any]] = None,
    ) -> dict:
        payload = {
            "amount_cents": int(amount_cents),
            "currency": currency,
            "customer": customer_ref,
            "payment_method": payment_method_ref,
            "confirm": True,
            "metadata": metadata or {},
        }
        return _charge_view(self._request("POST", "/charges", json=payload, ikey=idempotency_key, declines=True))

    def confirm_charge(self, charge_id: str, idempotency_key: Optional[str] = None) -> dict:
        return _charge_view(self._request("POST", f"/charges/{charge_id}/confirm", ikey=idempotency_key, declines=True))

    def retrieve_charge(self, charge_id: str) -> dict:
        return _charge_view(self._request("GET", f"/charges/{charge_id}"))

    def create_transfer(
        self,
        amount_cents: int,
        destination_ref: str,
        idempotency_key: str,
        currency: str = PAYMENT_CURRENCY,
        metadata: Optional[dict[str, Any]] = None,
    ) -> dict:
        payload = {
            "amount_cents": int(amount_cents),
            "currency": currency,
            "destination": destination_ref,
            "metadata": metadata or {},
        }
        j = self._request("POST", "/transfers", json=payload, ikey=idempotency_key)
        return {"id": j.get("id"), "status": j.get("status") or "pending"}

    def create_refund(
        self,
        charge_id: str,
        amount_cents: int,
        idempotency_key: str,
        reason: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> dict:
        payload = {
            "charge": charge_id,
            "amount_cents": int(amount_cents),
            "reason": reason,
            "metadata": metadata or {},
        }
        j = self._request("POST", "/refunds", json=payload, ikey=idempotency_key)
        return {"id": j.get("id"), "status": j.get("status") or "pending"}


def _error_code(r: httpx.Response) -> Optional[str]:
    try:
        j = r.json()
    except ValueError:
        return None
    err = j.get("error") if isinstance(j, dict) else None
    if isinstance(err, dict):
        return err.get("code") or err.get("decline_code")
    if isinstance(j, dict):
        return j.get("code")
    return None


def _charge_view(j: dict) -> dict:
    return {
        "id": j.get("id"),
        "status": j.get("status") or CHARGE_PROCESSING,
        "client_secret": j.get("client_secret"),
        "failure_code": j.get("failure_code"),
        "failure_message": j.get("failure_message"),
    }


_gateway: Optional[PaymentGateway] = None


def get_gateway() -> PaymentGateway:
    global _gateway
    if _gateway is None:
        _gateway = PaymentGateway()
    return _gateway
