from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import notify as n
from .cache import TTLCache
from .errors import GatewayRejected, GatewayUnavailable, InvalidAmount, InvalidRetryState, PayoutNotFound
from .fare import get_platform_fee_percent, split_platform_fee
from .gateway import PaymentGateway, get_gateway
from .models import (
    PAYOUT_COMPLETED,
    PAYOUT_FAILED,
    PAYOUT_PENDING,
    PAYOUT_PROCESSING,
    DriverPayout,
    Driver,
    Ride,
    utcnow,
)
from .settings import PROCESSING_FEE_FIXED_CENTS

_log = logging.getLogger("medride.payouts")

# Transfer statuses the gateway reports for money that is on its way or arrived.
_TRANSFER_OK = ("pending", "in_transit", "paid", "succeeded", "completed")
_TRANSFER_FAILED = ("failed", "reversed", "canceled", "cancelled")


def _notifier(notifier: Optional[n.Notifier]) -> n.Notifier:
    return notifier if notifier is not None else n.get_notifier()


def _transfer_key(ride_id: str) -> str:
    return f"payout-{ride_id}-{uuid.uuid4().hex[:12]}"


def get_driver_payout_by_ride(s: Session, ride_id: str) -> Optional[DriverPayout]:
    return s.execute(select(DriverPayout).where(DriverPayout.ride_id == ride_id)).scalars().first()


def list_driver_payouts(s: Session, driver_id: str, limit: int = 10) -> list[DriverPayout]:
    return list(
        s.execute(
            select(DriverPayout)
            .where(DriverPayout.driver_id == driver_id)
            .order_by(DriverPayout.created_at.desc())
            .limit(max(1, min(limit, 100)))
        ).scalars().all()
    )


def process_driver_payout(
    s: Session,
    ride_id: str,
    driver_id: str,
    total_cents: int,
    gateway: Optional[PaymentGateway] = None,
    notifier: Optional[n.Notifier] = None,
    cache: Optional[TTLCache] = None,
) -> DriverPayout:
    """
    Pay the driver their share of a ride, at most once per ride.

    An existing payout for the ride is returned unchanged. Otherwise the
    platform fee is split off, a ``pending`` row is inserted (ride_id is
    unique, a concurrent insert returns the winner's row) and a transfer to
    the driver's connected account is attempted.
    """
    existing = get_driver_payout_by_ride(s, ride_id)
    if existing is not None:
        _log.info("payout already exists", extra={"ride_id": ride_id, "payout_id": existing.id})
        return existing
    if total_cents is None or int(total_cents) <= 0:
        raise InvalidAmount("payout total must be positive")

    fee_pct = get_platform_fee_percent(s, cache)
    driver_cents, fee_cents = split_platform_fee(int(total_cents), fee_pct)
    payout = DriverPayout(
        id=str(uuid.uuid4()),
        ride_id=ride_id,
        driver_id=driver_id,
        total_cents=int(total_cents),
        driver_amount_cents=driver_cents,
        platform_fee_cents=fee_cents,
        processing_fee_cents=PROCESSING_FEE_FIXED_CENTS,
        idempotency_key=_transfer_key(ride_id),
        attempts=0,
        status=PAYOUT_PENDING,
    )
    s.add(payout)
    try:
        s.commit()
    except IntegrityError:
        s.rollback()
        winner = get_driver_payout_by_ride(s, ride_id)
        if winner is None:
            raise
        _log.info("payout created concurrently", extra={"ride_id": ride_id, "payout_id": winner.id})
        return winner
    s.refresh(payout)
    _log.info(
        "payout created",
        extra={"ride_id": ride_id, "payout_id": payout.id, "driver_cents": driver_cents, "fee_cents": fee_cents},
    )
    return _attempt_transfer(s, payout, gateway or get_gateway(), _notifier(notifier))


def _attempt_transfer(s: Session, payout: DriverPayout, gateway: PaymentGateway, notifier: n.Notifier) -> DriverPayout:
    driver = s.get(Driver, payout.driver_id)
    payout.attempts = (payout.attempts or 0) + 1
    now = utcnow()
    if driver is None or not driver.connected_account_id:
        payout.status = PAYOUT_FAILED
        payout.failure_reason = "driver has no connected payout account"
    else:
        try:
            transfer = gateway.create_transfer(
                payout.driver_amount_cents,
                driver.connected_account_id,
                payout.idempotency_key,
                metadata={"ride_id": payout.ride_id, "payout_id": payout.id, "type": "driver_payout"},
            )
        except GatewayUnavailable as e:
            # Outcome unknown: keep the key so a retry replays the same transfer.
            payout.status = PAYOUT_FAILED
            payout.failure_reason = f"transfer outcome unknown: {e.kind}"
        except GatewayRejected as e:
            payout.status = PAYOUT_FAILED
            payout.failure_reason = f"transfer rejected: {e.code}"
            payout.idempotency_key = _transfer_key(payout.ride_id)
        except Exception:
            # Row is already committed as processing; it must not stay there.
            _log.exception("transfer for payout %s raised", payout.id)
            payout.status = PAYOUT_FAILED
            payout.failure_reason = "transfer outcome unknown: unexpected error"
        else:
            if transfer.get("status") in _TRANSFER_FAILED:
                payout.status = PAYOUT_FAILED
                payout.failure_reason = f"transfer {transfer.get('status')}"
                payout.gateway_transfer_id = transfer.get("id")
                payout.idempotency_key = _transfer_key(payout.ride_id)
            else:
                payout.status = PAYOUT_COMPLETED
                payout.gateway_transfer_id = transfer.get("id")
                payout.failure_reason = None
                payout.processed_at = now
    payout.updated_at = now
    s.add(payout)
    s.commit()
    s.refresh(payout)
    _announce(payout, notifier)
    return payout


def _announce(payout: DriverPayout, notifier: n.Notifier) -> None:
    if payout.status == PAYOUT_COMPLETED:
        _log.info("payout completed", extra={"payout_id": payout.id, "transfer_id": payout.gateway_transfer_id})
        notifier.notify(
            payout.driver_id,
            n.PAYOUT_COMPLETED,
            "Payout sent",
            f"${payout.driver_amount_cents / 100:.2f} is on its way to your account",
            {"ride_id": payout.ride_id, "payout_id": payout.id},
        )
    elif payout.status == PAYOUT_FAILED:
        _log.warning("payout failed", extra={"payout_id": payout.id, "reason": payout.failure_reason, "attempts": payout.attempts})
        notifier.notify(
            payout.driver_id,
            n.PAYOUT_FAILED,
            "Payout delayed",
            "We could not send your payout yet; it will be retried",
            {"ride_id": payout.ride_id, "payout_id": payout.id},
        )


def retry_failed_payout(
    s: Session,
    payout_id: str,
    gateway: Optional[PaymentGateway] = None,
    notifier: Optional[n.Notifier] = None,
) -> DriverPayout:
    payout = s.get(DriverPayout, payout_id)
    if payout is None:
        raise PayoutNotFound()
    res = s.execute(
        update(DriverPayout)
        .where(DriverPayout.id == payout_id, DriverPayout.status == PAYOUT_FAILED)
        .values(status=PAYOUT_PROCESSING, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        s.rollback()
        current = s.get(DriverPayout, payout_id)
        raise InvalidRetryState(f"payout is {current.status if current else 'gone'}; only failed payouts can be retried")
    s.commit()
    s.refresh(payout)
    _log.info("retrying payout", extra={"payout_id": payout.id, "attempts": payout.attempts})
    return _attempt_transfer(s, payout, gateway or get_gateway(), _notifier(notifier))


def handle_transfer_update(s: Session, transfer: dict, notifier: Optional[n.Notifier] = None) -> Optional[DriverPayout]:
    """Apply a transfer.updated webhook; correlates on transfer id, then on payout id metadata."""
    transfer_id = transfer.get("id")
    payout = None
    if transfer_id:
        payout = s.execute(select(DriverPayout).where(DriverPayout.gateway_transfer_id == transfer_id)).scalars().first()
    if payout is None:
        payout_id = (transfer.get("metadata") or {}).get("payout_id")
        if payout_id:
            payout = s.get(DriverPayout, payout_id)
    if payout is None:
        _log.warning("transfer update for unknown payout", extra={"transfer_id": transfer_id})
        return None

    status = (transfer.get("status") or "").lower()
    before = payout.status
    now = utcnow()
    if status in _TRANSFER_FAILED:
        payout.status = PAYOUT_FAILED
        payout.failure_reason = f"transfer {status}"
        payout.idempotency_key = _transfer_key(payout.ride_id)
    elif status in _TRANSFER_OK and payout.status != PAYOUT_COMPLETED:
        payout.status = PAYOUT_COMPLETED
        payout.failure_reason = None
        payout.processed_at = payout.processed_at or now
    else:
        return payout
    if transfer_id:
        payout.gateway_transfer_id = transfer_id
    payout.updated_at = now
    s.add(payout)
    s.commit()
    s.refresh(payout)
    if payout.status != before:
        _announce(payout, _notifier(notifier))
    return payout


def settle_ride(
    make_session: Callable[[], Session],
    ride_id: str,
    gateway: Optional[PaymentGateway] = None,
    notifier: Optional[n.Notifier] = None,
    cache: Optional[TTLCache] = None,
) -> Optional[DriverPayout]:
    """Background payout after a successful ride payment. Never raises."""
    try:
        with make_session() as s:
            ride = s.get(Ride, ride_id)
            if ride is None or not ride.driver_id:
                _log.warning("payout skipped, ride has no driver", extra={"ride_id": ride_id})
                return None
            total = ride.final_price_cents or ride.rider_bid_cents or 0
            return process_driver_payout(s, ride.id, ride.driver_id, total, gateway=gateway, notifier=notifier, cache=cache)
    except Exception:
        _log.exception("payout for ride %s failed", ride_id)
        return None
