from __future__ import annotations

import json
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("ENV", "test")
os.environ.setdefault("MEDRIDE_DB_URL", "sqlite+pysqlite:///:memory:")

from apps.rides.app import models as m  # noqa: E402
from apps.rides.app.auth import Actor  # noqa: E402
from apps.rides.app.cache import TTLCache  # noqa: E402
from apps.rides.app.gateway import PaymentGateway  # noqa: E402


@pytest.fixture()
def engine():
    """
    Isolated in-memory SQLite engine per test. StaticPool keeps a single
    connection so TestClient worker threads see the same database.
    """
    eng = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    m.Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def make_session(engine):
    return sessionmaker(bind=engine)


@pytest.fixture()
def session(engine):
    with Session(engine) as s:
        yield s


@pytest.fixture()
def cache() -> TTLCache:
    return TTLCache(max_items=100, ttl_secs=60)


class FakeNotifier:
    """Collects notifications instead of publishing them."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []

    def notify(self, user_id, type, title, message, metadata=None) -> None:  # type: ignore[no-untyped-def]
        if not user_id:
            return
        self.sent.append({"user_id": user_id, "type": type, "title": title, "message": message, "metadata": metadata or {}})

    def types_for(self, user_id: str) -> List[str]:
        return [e["type"] for e in self.sent if e["user_id"] == user_id]


@pytest.fixture()
def notifier() -> FakeNotifier:
    return FakeNotifier()


class GatewayStub:
    """
    In-memory payments gateway behind httpx.MockTransport.

    Replays by Idempotency-Key like the real gateway, so a resend after a
    timeout returns the original charge/transfer instead of a new one.
    """

    def __init__(self) -> None:
        self.charge_status = "succeeded"
        self.confirm_status = "succeeded"
        self.transfer_status = "pending"
        self.charge_error: Optional[tuple[int, dict]] = None
        self.transfer_error: Optional[tuple[int, dict]] = None
        self.refund_status = "succeeded"
        self.refund_error: Optional[tuple[int, dict]] = None
        # "before": no charge is created; "after": created, then the response is lost
        self.timeout_mode: Optional[str] = None
        self.charges: Dict[str, Dict[str, Any]] = {}
        self.transfers: Dict[str, Dict[str, Any]] = {}
        self.refunds: Dict[str, Dict[str, Any]] = {}
        self._by_key: Dict[str, str] = {}
        self.requests: List[Dict[str, Any]] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        key = request.headers.get("Idempotency-Key")
        path = request.url.path
        self.requests.append({"method": request.method, "path": path, "key": key, "json": body})

        if request.method == "POST" and path == "/charges":
            return self._create_charge(request, key, body or {})
        if request.method == "POST" and path.startswith("/charges/") and path.endswith("/confirm"):
            charge = self.charges[path.split("/")[2]]
            charge["status"] = self.confirm_status
            if charge["status"] == "succeeded":
                charge["client_secret"] = None
            return httpx.Response(200, json=charge)
        if request.method == "GET" and path.startswith("/charges/"):
            charge = self.charges.get(path.split("/")[2])
            if charge is None:
                return httpx.Response(404, json={"error": {"code": "resource_missing"}})
            return httpx.Response(200, json=charge)
        if request.method == "POST" and path == "/transfers":
            if self.transfer_error is not None:
                status, payload = self.transfer_error
                return httpx.Response(status, json=payload)
            if key in self._by_key:
                return httpx.Response(200, json=self.transfers[self._by_key[key]])
            transfer = {"id": f"tr_{uuid.uuid4().hex[:10]}", "status": self.transfer_status, **body}
            self.transfers[transfer["id"]] = transfer
            self._by_key[key] = transfer["id"]
            return httpx.Response(200, json=transfer)
        if request.method == "POST" and path == "/refunds":
            if self.refund_error is not None:
                status, payload = self.refund_error
                return httpx.Response(status, json=payload)
            if key in self._by_key:
                return httpx.Response(200, json=self.refunds[self._by_key[key]])
            refund = {"id": f"re_{uuid.uuid4().hex[:10]}", "status": self.refund_status, **body}
            self.refunds[refund["id"]] = refund
            self._by_key[key] = refund["id"]
            return httpx.Response(200, json=refund)
        return httpx.Response(404, json={"error": {"code": "not_found"}})

    def _create_charge(self, request: httpx.Request, key: Optional[str], body: dict) -> httpx.Response:
        if key and key in self._by_key:
            return httpx.Response(200, json=self.charges[self._by_key[key]])
        if self.timeout_mode == "before":
            self.timeout_mode = None
            raise httpx.ReadTimeout("gateway timed out", request=request)
        if self.charge_error is not None:
            status, payload = self.charge_error
            return httpx.Response(status, json=payload)
        charge = {
            "id": f"ch_{uuid.uuid4().hex[:10]}",
            "status": self.charge_status,
            "amount_cents": body.get("amount_cents"),
            "metadata": body.get("metadata") or {},
            "client_secret": "cs_test_secret" if self.charge_status == "requires_action" else None,
        }
        self.charges[charge["id"]] = charge
        if key:
            self._by_key[key] = charge["id"]
        if self.timeout_mode == "after":
            self.timeout_mode = None
            raise httpx.ReadTimeout("gateway timed out", request=request)
        return httpx.Response(200, json=charge)

    def calls(self, method: str, path_prefix: str) -> List[Dict[str, Any]]:
        return [r for r in self.requests if r["method"] == method and r["path"].startswith(path_prefix)]


@pytest.fixture()
def gateway_stub() -> GatewayStub:
    return GatewayStub()


@pytest.fixture()
def gateway(gateway_stub) -> PaymentGateway:
    return PaymentGateway(
        base_url="https://gateway.test",
        api_key="sk_test",
        timeout=2,
        transport=httpx.MockTransport(gateway_stub.handler),
    )


# Domain helpers shared by the test modules


RIDER = Actor(user_id="rider-1", role="rider")
DRIVER_A = Actor(user_id="driver-a", role="driver")
DRIVER_B = Actor(user_id="driver-b", role="driver")
ADMIN = Actor(user_id="admin-1", role="admin")


def future(hours: float = 72) -> datetime:
    return datetime.now(timezone.utc) + timedelta(hours=hours)


def add_rider(s: Session, rider_id: str = RIDER.user_id, with_card: bool = True) -> m.Rider:
    rider = m.Rider(id=rider_id, name="Rita Rider", gateway_customer_id=f"cus_{rider_id}")
    s.add(rider)
    if with_card:
        s.add(
            m.PaymentMethod(
                id=str(uuid.uuid4()),
                user_id=rider_id,
                gateway_payment_method_id=f"pm_{rider_id}",
                brand="visa",
                last4="4242",
                is_default=True,
                is_active=True,
            )
        )
    s.commit()
    return rider


def add_driver(s: Session, driver_id: str, connected: bool = True, vehicle_type: str = "standard") -> m.Driver:
    driver = m.Driver(
        id=driver_id,
        name=driver_id,
        vehicle_type=vehicle_type,
        is_active=True,
        connected_account_id=f"acct_{driver_id}" if connected else None,
    )
    s.add(driver)
    s.commit()
    return driver


def add_ride(s: Session, rider_id: str = RIDER.user_id, status: str = m.RIDE_REQUESTED, **kw: Any) -> m.Ride:
    values: Dict[str, Any] = {
        "id": str(uuid.uuid4()),
        "rider_id": rider_id,
        "status": status,
        "pickup_address": "12 Elm St",
        "pickup_lat": 40.71,
        "pickup_lon": -74.0,
        "dropoff_address": "General Hospital",
        "dropoff_lat": 40.75,
        "dropoff_lon": -73.98,
        "scheduled_time": future(),
        "estimated_distance": 10.0,
        "vehicle_type": "standard",
        "rider_bid_cents": 7938,
    }
    values.update(kw)
    ride = m.Ride(**values)
    s.add(ride)
    s.commit()
    s.refresh(ride)
    return ride
