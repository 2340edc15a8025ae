from __future__ import annotations

import httpx
import pytest

from apps.rides.app import fare
from apps.rides.app import models as m
from apps.rides.app import payouts
from apps.rides.app.errors import InvalidAmount, InvalidRetryState
from apps.rides.app.gateway import PaymentGateway

from conftest import DRIVER_A, add_driver, add_ride, add_rider


@pytest.fixture()
def paid_ride(session):
    add_rider(session)
    add_driver(session, DRIVER_A.user_id)
    return add_ride(session, status=m.RIDE_PAID, driver_id=DRIVER_A.user_id, final_price_cents=10_000)


def test_payout_splits_fee_and_transfers_once(session, paid_ride, gateway, gateway_stub, notifier):
    payout = payouts.process_driver_payout(session, paid_ride.id, DRIVER_A.user_id, 10_000, gateway=gateway, notifier=notifier)

    assert payout.status == m.PAYOUT_COMPLETED
    assert payout.driver_amount_cents == 9_500
    assert payout.platform_fee_cents == 500
    assert payout.driver_amount_cents + payout.platform_fee_cents == payout.total_cents
    assert payout.processed_at is not None
    assert payout.attempts == 1
    (call,) = gateway_stub.calls("POST", "/transfers")
    assert call["key"] == payout.idempotency_key
    assert call["json"]["destination"] == f"acct_{DRIVER_A.user_id}"
    assert call["json"]["amount_cents"] == 9_500
    assert "PAYOUT_COMPLETED" in notifier.types_for(DRIVER_A.user_id)

    again = payouts.process_driver_payout(session, paid_ride.id, DRIVER_A.user_id, 10_000, gateway=gateway)
    assert again.id == payout.id
    assert len(gateway_stub.calls("POST", "/transfers")) == 1


def test_configured_platform_fee_is_applied(session, paid_ride, gateway, cache):
    session.add(m.PlatformSetting(key=fare.PLATFORM_FEE_KEY, value="12.5"))
    session.commit()

    payout = payouts.process_driver_payout(session, paid_ride.id, DRIVER_A.user_id, 10_000, gateway=gateway, cache=cache)

    assert (payout.driver_amount_cents, payout.platform_fee_cents) == (8_750, 1_250)


def test_missing_connected_account_fails_then_retry_succeeds(session, gateway, gateway_stub, notifier):
    add_rider(session)
    driver = add_driver(session, DRIVER_A.user_id, connected=False)
    ride = add_ride(session, status=m.RIDE_COMPLETED, driver_id=driver.id, final_price_cents=8_000)

    payout = payouts.process_driver_payout(session, ride.id, driver.id, 8_000, gateway=gateway, notifier=notifier)

    assert payout.status == m.PAYOUT_FAILED
    assert "connected" in payout.failure_reason
    assert gateway_stub.requests == []
    assert "PAYOUT_FAILED" in notifier.types_for(driver.id)

    driver.connected_account_id = "acct_new"
    session.commit()
    retried = payouts.retry_failed_payout(session, payout.id, gateway=gateway, notifier=notifier)

    assert retried.status == m.PAYOUT_COMPLETED
    assert retried.attempts == 2
    assert retried.failure_reason is None


def test_unavailable_gateway_keeps_key_for_replay(session, paid_ride, gateway, gateway_stub):
    gateway_stub.transfer_error = (503, {"error": {"code": "unavailable"}})
    payout = payouts.process_driver_payout(session, paid_ride.id, DRIVER_A.user_id, 10_000, gateway=gateway)
    assert payout.status == m.PAYOUT_FAILED
    first_key = payout.idempotency_key

    gateway_stub.transfer_error = None
    retried = payouts.retry_failed_payout(session, payout.id, gateway=gateway)

    assert retried.status == m.PAYOUT_COMPLETED
    assert retried.idempotency_key == first_key
    assert {c["key"] for c in gateway_stub.calls("POST", "/transfers")} == {first_key}


def test_unexpected_transfer_response_does_not_strand_payout(session, paid_ride, gateway):
    odd = PaymentGateway(base_url="https://gateway.test", transport=httpx.MockTransport(lambda r: httpx.Response(200, json=["odd"])))

    payout = payouts.process_driver_payout(session, paid_ride.id, DRIVER_A.user_id, 10_000, gateway=odd)

    assert payout.status == m.PAYOUT_FAILED
    assert "unknown" in payout.failure_reason
    first_key = payout.idempotency_key

    retried = payouts.retry_failed_payout(session, payout.id, gateway=gateway)
    assert retried.status == m.PAYOUT_COMPLETED
    assert retried.idempotency_key == first_key


def test_error_inside_transfer_marks_payout_failed(session, paid_ride, gateway, gateway_stub, notifier, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("serializer blew up")

    monkeypatch.setattr(gateway, "create_transfer", boom)

    payout = payouts.process_driver_payout(session, paid_ride.id, DRIVER_A.user_id, 10_000, gateway=gateway, notifier=notifier)

    assert payout.status == m.PAYOUT_FAILED
    assert payout.failure_reason == "transfer outcome unknown: unexpected error"
    assert "PAYOUT_FAILED" in notifier.types_for(DRIVER_A.user_id)

    monkeypatch.undo()
    retried = payouts.retry_failed_payout(session, payout.id, gateway=gateway)
    assert retried.status == m.PAYOUT_COMPLETED
    assert retried.attempts == 2
    assert len(gateway_stub.calls("POST", "/transfers")) == 1


def test_rejected_transfer_rotates_key(session, paid_ride, gateway, gateway_stub):
    gateway_stub.transfer_error = (400, {"error": {"code": "account_closed"}})
    payout = payouts.process_driver_payout(session, paid_ride.id, DRIVER_A.user_id, 10_000, gateway=gateway)
    first_key = gateway_stub.calls("POST", "/transfers")[0]["key"]

    assert payout.status == m.PAYOUT_FAILED
    assert "account_closed" in payout.failure_reason
    assert payout.idempotency_key != first_key


def test_only_failed_payouts_can_be_retried(session, paid_ride, gateway):
    payout = payouts.process_driver_payout(session, paid_ride.id, DRIVER_A.user_id, 10_000, gateway=gateway)
    with pytest.raises(InvalidRetryState):
        payouts.retry_failed_payout(session, payout.id, gateway=gateway)


def test_non_positive_total_is_rejected(session, paid_ride, gateway):
    with pytest.raises(InvalidAmount):
        payouts.process_driver_payout(session, paid_ride.id, DRIVER_A.user_id, 0, gateway=gateway)


def test_transfer_webhook_reverses_completed_payout(session, paid_ride, gateway, notifier):
    payout = payouts.process_driver_payout(session, paid_ride.id, DRIVER_A.user_id, 10_000, gateway=gateway)
    old_key = payout.idempotency_key

    updated = payouts.handle_transfer_update(
        session, {"id": payout.gateway_transfer_id, "status": "reversed"}, notifier=notifier
    )

    assert updated.status == m.PAYOUT_FAILED
    assert updated.idempotency_key != old_key
    assert "PAYOUT_FAILED" in notifier.types_for(DRIVER_A.user_id)
    assert payouts.handle_transfer_update(session, {"id": "tr_unknown", "status": "paid"}) is None


def test_settle_ride_pays_assigned_driver(make_session, session, paid_ride, gateway, gateway_stub, notifier):
    payout = payouts.settle_ride(make_session, paid_ride.id, gateway=gateway, notifier=notifier)

    assert payout is not None
    assert payout.status == m.PAYOUT_COMPLETED
    assert payouts.get_driver_payout_by_ride(session, paid_ride.id) is not None
    assert [p.ride_id for p in payouts.list_driver_payouts(session, DRIVER_A.user_id)] == [paid_ride.id]


def test_settle_ride_without_driver_is_skipped(make_session, session, gateway):
    add_rider(session)
    ride = add_ride(session)
    assert payouts.settle_ride(make_session, ride.id, gateway=gateway) is None
    assert payouts.settle_ride(make_session, "missing-ride", gateway=gateway) is None
