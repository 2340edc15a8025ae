from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from . import notify as n
from .auth import ROLE_DRIVER, Actor
from .cache import TTLCache
from .errors import (
    Forbidden,
    InvalidTransition,
    MedRideError,
    RideEditNotFound,
    RideNotFound,
    RiderNotFound,
)
from .fare import calculate_fare, fare_params_for_ride, get_platform_fee_percent
from .models import (
    BID_EXPIRED,
    BID_PENDING,
    BID_REJECTED,
    BID_SELECTED,
    RIDE_ARRIVED,
    RIDE_BIDDING,
    RIDE_CANCELLED,
    RIDE_COMPLETED,
    RIDE_EDIT_PENDING,
    RIDE_EN_ROUTE,
    RIDE_IN_PROGRESS,
    RIDE_PAID,
    RIDE_PAYMENT_PENDING,
    RIDE_REQUESTED,
    RIDE_SCHEDULED,
    Bid,
    Driver,
    Ride,
    RideEdit,
    Rider,
    as_utc,
    utcnow,
)
from .payments import inflight_charge
from .schemas import RideCreate, RideEditIn
from .settings import (
    LATE_CANCEL_FEE_CENTS,
    LATE_CANCEL_WINDOW_HOURS,
    RIDE_EXPIRY_SWEEP_SECS,
    URGENT_CANCEL_FEE_CENTS,
    URGENT_EXPIRY_HOURS,
)

_log = logging.getLogger("medride.rides")

CANCELLABLE_STATUSES = (
    RIDE_REQUESTED,
    RIDE_BIDDING,
    RIDE_SCHEDULED,
    RIDE_PAYMENT_PENDING,
    RIDE_EDIT_PENDING,
)
# Cancellations of these carry a late fee inside the window; no driver is committed before.
_DRIVER_COMMITTED = (RIDE_SCHEDULED, RIDE_PAYMENT_PENDING, RIDE_EDIT_PENDING)

# Driver progress: previous status -> next status
PROGRESS = {
    RIDE_EN_ROUTE: RIDE_PAID,
    RIDE_ARRIVED: RIDE_EN_ROUTE,
    RIDE_IN_PROGRESS: RIDE_ARRIVED,
    RIDE_COMPLETED: RIDE_IN_PROGRESS,
}

EXPIRY_REASON = "Ride request expired - no driver bids received within time limit"
EDIT_REJECTED_REASON = "Driver declined the requested changes"

_NO_SYNC = {"synchronize_session": False}


class InvalidRideRequest(MedRideError):
    kind = "InvalidRideRequest"
    default_message = "invalid ride request"


@dataclass
class CancelResult:
    ride: Ride
    is_late_cancellation: bool
    cancellation_fee_cents: int


def _notifier(notifier: Optional[n.Notifier]) -> n.Notifier:
    return notifier if notifier is not None else n.get_notifier()


def _get_ride(s: Session, ride_id: str) -> Ride:
    ride = s.get(Ride, ride_id)
    if not ride:
        raise RideNotFound()
    return ride


def create_ride(
    s: Session,
    rider_id: str,
    req: RideCreate,
    now: Optional[datetime] = None,
    notifier: Optional[n.Notifier] = None,
    cache: Optional[TTLCache] = None,
) -> Ride:
    if not s.get(Rider, rider_id):
        raise RiderNotFound()
    now = now or utcnow()
    scheduled = as_utc(req.scheduled_time)
    if scheduled <= now:
        raise InvalidRideRequest("scheduled time must be in the future")
    urgency = req.urgency
    if req.is_urgent and urgency == "standard":
        urgency = "urgent"
    is_urgent = req.is_urgent or urgency != "standard"

    if req.expires_at is not None:
        expires_at = as_utc(req.expires_at)
        if expires_at <= now:
            raise InvalidRideRequest("expiry must be in the future")
    elif is_urgent:
        expires_at = min(now + timedelta(hours=URGENT_EXPIRY_HOURS), scheduled)
    else:
        expires_at = scheduled

    ride = Ride(
        id=str(uuid.uuid4()),
        rider_id=rider_id,
        status=RIDE_REQUESTED,
        pickup_address=req.pickup_address,
        pickup_lat=req.pickup_lat,
        pickup_lon=req.pickup_lon,
        dropoff_address=req.dropoff_address,
        dropoff_lat=req.dropoff_lat,
        dropoff_lon=req.dropoff_lon,
        pickup_stairs=req.pickup_stairs,
        dropoff_stairs=req.dropoff_stairs,
        scheduled_time=scheduled,
        estimated_distance=req.estimated_distance,
        vehicle_type=req.vehicle_type,
        needs_ramp=req.needs_ramp,
        needs_companion=req.needs_companion,
        needs_stair_chair=req.needs_stair_chair,
        needs_wait_time=req.needs_wait_time,
        is_round_trip=req.is_round_trip,
        is_recurring=req.is_recurring,
        urgency=urgency,
        is_urgent=is_urgent,
        expires_at=expires_at,
        promo_code=req.promo_code,
    )
    # Also validates the distance.
    fare = calculate_fare(fare_params_for_ride(ride, req.scheduled_time), get_platform_fee_percent(s, cache))
    ride.rider_bid_cents = req.rider_bid_cents or fare.total_cents
    s.add(ride)
    s.commit()
    s.refresh(ride)
    _log.info("ride requested", extra={"ride_id": ride.id, "rider_id": rider_id, "is_urgent": is_urgent})

    if is_urgent:
        drivers = s.execute(select(Driver.id).where(Driver.is_active.is_(True))).scalars().all()
        notifier = _notifier(notifier)
        for driver_id in drivers:
            notifier.notify(
                driver_id,
                n.URGENT_RIDE_POSTED,
                "Urgent ride request",
                f"Urgent {ride.vehicle_type} ride needs a driver",
                {"ride_id": ride.id},
            )
    return ride


def get_ride(s: Session, ride_id: str, actor: Actor) -> Ride:
    ride = _get_ride(s, ride_id)
    if actor.is_admin or actor.is_user(ride.rider_id) or actor.is_user(ride.driver_id):
        return ride
    # Open requests are visible to drivers so they can bid.
    if actor.role == ROLE_DRIVER and ride.status == RIDE_REQUESTED:
        return ride
    raise Forbidden()


def _reject_open_bids(s: Session, ride_id: str, status: str, now: datetime) -> list[str]:
    driver_ids = s.execute(
        select(Bid.driver_id).where(Bid.ride_id == ride_id, Bid.status.in_((BID_PENDING, BID_SELECTED)))
    ).scalars().all()
    s.execute(
        update(Bid)
        .where(Bid.ride_id == ride_id, Bid.status.in_((BID_PENDING, BID_SELECTED)))
        .values(status=status, updated_at=now)
        .execution_options(**_NO_SYNC)
    )
    return list(set(driver_ids))


def cancel_ride(
    s: Session,
    ride_id: str,
    actor: Actor,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
    notifier: Optional[n.Notifier] = None,
) -> CancelResult:
    """
    Cancel a ride on behalf of its rider or an admin.

    Rides that are already paid, in progress or finished raise
    InvalidTransition with the current status, as does a ride whose charge
    is still in flight. A cancellation within the late window of the
    scheduled time, after a driver committed, is flagged late and carries
    the cancellation fee; the cancellation itself still goes through.
    """
    ride = _get_ride(s, ride_id)
    if not (actor.is_admin or actor.is_user(ride.rider_id)):
        raise Forbidden("only the rider or an admin can cancel this ride")
    prior_status = ride.status
    if prior_status not in CANCELLABLE_STATUSES:
        raise InvalidTransition(f"ride cannot be cancelled while {prior_status}")
    if inflight_charge(s, ride.id) is not None:
        # The charge may still capture; it has to settle (or be retried) first.
        raise InvalidTransition(f"ride cannot be cancelled while its payment is being processed ({prior_status})")

    now = now or utcnow()
    edit = None
    prior_driver = ride.driver_id
    if prior_status == RIDE_EDIT_PENDING:
        edit = _pending_edit(s, ride.id)
        prior_driver = edit.prior_driver_id if edit else None
    is_late = False
    fee = 0
    if prior_status in _DRIVER_COMMITTED and as_utc(ride.scheduled_time) - now < timedelta(hours=LATE_CANCEL_WINDOW_HOURS):
        is_late = True
        fee = URGENT_CANCEL_FEE_CENTS if ride.is_urgent else LATE_CANCEL_FEE_CENTS

    res = s.execute(
        update(Ride)
        .where(Ride.id == ride.id, Ride.status == prior_status)
        .values(
            status=RIDE_CANCELLED,
            driver_id=None,
            cancellation_reason=reason or ("Cancelled by admin" if actor.is_admin else "Cancelled by rider"),
            is_late_cancellation=is_late,
            cancellation_fee_cents=fee,
            cancelled_at=now,
            updated_at=now,
        )
        .execution_options(**_NO_SYNC)
    )
    if res.rowcount != 1:
        s.rollback()
        current = s.get(Ride, ride_id)
        raise InvalidTransition(f"ride changed concurrently and is now {current.status if current else 'gone'}")
    bidders = _reject_open_bids(s, ride.id, BID_REJECTED, now)
    if edit is not None:
        edit.status = "rejected"
        edit.resolved_at = now
        s.add(edit)
    s.commit()
    s.refresh(ride)
    _log.info(
        "ride cancelled",
        extra={"ride_id": ride.id, "prior_status": prior_status, "late": is_late, "fee_cents": fee},
    )

    notifier = _notifier(notifier)
    for user_id in {prior_driver, *bidders} - {None}:
        notifier.notify(
            user_id,
            n.RIDE_CANCELLED,
            "Ride cancelled",
            "A ride you were assigned to or bid on was cancelled",
            {"ride_id": ride.id},
        )
    if actor.is_admin:
        notifier.notify(
            ride.rider_id,
            n.RIDE_CANCELLED,
            "Ride cancelled",
            "Your ride was cancelled by support",
            {"ride_id": ride.id},
        )
    return CancelResult(ride=ride, is_late_cancellation=is_late, cancellation_fee_cents=fee)


def update_ride_status(
    s: Session,
    ride_id: str,
    actor: Actor,
    new_status: str,
    notifier: Optional[n.Notifier] = None,
) -> Ride:
    """Driver progress after payment: paid -> en_route -> arrived -> in_progress -> completed."""
    ride = _get_ride(s, ride_id)
    if not (actor.is_admin or actor.is_user(ride.driver_id)):
        raise Forbidden("only the assigned driver can update ride progress")
    expected = PROGRESS.get(new_status)
    if expected is None or ride.status != expected:
        raise InvalidTransition(f"cannot move ride from {ride.status} to {new_status}")
    now = utcnow()
    values = {"status": new_status, "updated_at": now}
    if new_status == RIDE_COMPLETED:
        values["completed_at"] = now
    res = s.execute(
        update(Ride).where(Ride.id == ride.id, Ride.status == expected).values(**values).execution_options(**_NO_SYNC)
    )
    if res.rowcount != 1:
        s.rollback()
        raise InvalidTransition(f"cannot move ride to {new_status}, status changed concurrently")
    s.commit()
    s.refresh(ride)
    _log.info("ride status updated", extra={"ride_id": ride.id, "status": new_status})
    _notifier(notifier).notify(
        ride.rider_id,
        n.RIDE_STATUS_CHANGED,
        "Ride update",
        f"Your ride is now {new_status.replace('_', ' ')}",
        {"ride_id": ride.id, "status": new_status},
    )
    return ride


def _pending_edit(s: Session, ride_id: str) -> Optional[RideEdit]:
    return s.execute(
        select(RideEdit).where(RideEdit.ride_id == ride_id, RideEdit.status == "pending").order_by(RideEdit.created_at.desc())
    ).scalars().first()


def propose_ride_edit(
    s: Session,
    ride_id: str,
    actor: Actor,
    changes: RideEditIn,
    notifier: Optional[n.Notifier] = None,
) -> RideEdit:
    """
    Ask the assigned driver to accept changes (including a new price) to a
    scheduled ride. Rides with a charge in flight or captured are not edited.

    The ride parks in ``edit_pending`` (without a driver) until the driver
    answers; the prior status and driver are kept on the edit row.
    """
    ride = _get_ride(s, ride_id)
    if not (actor.is_admin or actor.is_user(ride.rider_id)):
        raise Forbidden("only the rider can edit this ride")
    if ride.status != RIDE_SCHEDULED:
        raise InvalidTransition(f"only scheduled rides can be edited, ride is {ride.status}")
    if changes.scheduled_time is not None and as_utc(changes.scheduled_time) <= utcnow():
        raise InvalidRideRequest("scheduled time must be in the future")
    if not changes.model_dump(exclude_none=True, exclude={"note"}):
        raise InvalidRideRequest("no changes requested")

    prior_driver = ride.driver_id
    now = utcnow()
    res = s.execute(
        update(Ride)
        .where(Ride.id == ride.id, Ride.status == RIDE_SCHEDULED)
        .values(status=RIDE_EDIT_PENDING, driver_id=None, updated_at=now)
        .execution_options(**_NO_SYNC)
    )
    if res.rowcount != 1:
        s.rollback()
        raise InvalidTransition("ride changed concurrently")
    edit = RideEdit(
        id=str(uuid.uuid4()),
        ride_id=ride.id,
        rider_id=ride.rider_id,
        prior_status=RIDE_SCHEDULED,
        prior_driver_id=prior_driver,
        scheduled_time=as_utc(changes.scheduled_time) if changes.scheduled_time else None,
        pickup_address=changes.pickup_address,
        dropoff_address=changes.dropoff_address,
        needs_ramp=changes.needs_ramp,
        needs_companion=changes.needs_companion,
        needs_stair_chair=changes.needs_stair_chair,
        needs_wait_time=changes.needs_wait_time,
        rider_bid_cents=changes.rider_bid_cents,
        note=changes.note,
        status="pending",
    )
    s.add(edit)
    s.commit()
    s.refresh(edit)
    _log.info("ride edit requested", extra={"ride_id": ride.id, "edit_id": edit.id})
    _notifier(notifier).notify(
        prior_driver,
        n.RIDE_EDIT_REQUESTED,
        "Ride change requested",
        "The rider asked to change a scheduled ride",
        {"ride_id": ride.id, "edit_id": edit.id},
    )
    return edit


def resolve_ride_edit(
    s: Session,
    edit_id: str,
    actor: Actor,
    accept: bool,
    notifier: Optional[n.Notifier] = None,
) -> tuple[RideEdit, Ride]:
    edit = s.get(RideEdit, edit_id)
    if not edit:
        raise RideEditNotFound()
    if not (actor.is_admin or actor.is_user(edit.prior_driver_id)):
        raise Forbidden("only the assigned driver can answer this edit")
    if edit.status != "pending":
        raise InvalidTransition(f"edit already {edit.status}")
    ride = _get_ride(s, edit.ride_id)
    now = utcnow()
    if accept:
        values = {"status": edit.prior_status, "driver_id": edit.prior_driver_id, "updated_at": now}
        for field in ("scheduled_time", "pickup_address", "dropoff_address", "needs_ramp", "needs_companion", "needs_stair_chair", "needs_wait_time"):
            value = getattr(edit, field)
            if value is not None:
                values[field] = value
        if edit.rider_bid_cents:
            # The driver agreed to the new price.
            values["rider_bid_cents"] = edit.rider_bid_cents
            values["final_price_cents"] = edit.rider_bid_cents
    else:
        values = {
            "status": RIDE_CANCELLED,
            "driver_id": None,
            "cancellation_reason": EDIT_REJECTED_REASON,
            "cancelled_at": now,
            "updated_at": now,
        }
    res = s.execute(
        update(Ride)
        .where(Ride.id == ride.id, Ride.status == RIDE_EDIT_PENDING)
        .values(**values)
        .execution_options(**_NO_SYNC)
    )
    if res.rowcount != 1:
        s.rollback()
        raise InvalidTransition(f"ride is {ride.status}, not awaiting an edit decision")
    edit.status = "accepted" if accept else "rejected"
    edit.resolved_at = now
    s.add(edit)
    s.commit()
    s.refresh(edit)
    s.refresh(ride)
    _log.info("ride edit resolved", extra={"ride_id": ride.id, "edit_id": edit.id, "accepted": accept})
    _notifier(notifier).notify(
        ride.rider_id,
        n.RIDE_EDIT_ACCEPTED if accept else n.RIDE_EDIT_REJECTED,
        "Ride change accepted" if accept else "Ride change declined",
        "Your driver accepted the changes" if accept else "Your driver declined the changes and the ride was cancelled",
        {"ride_id": ride.id, "edit_id": edit.id},
    )
    return edit, ride


def expire_stale_rides(
    s: Session,
    now: Optional[datetime] = None,
    notifier: Optional[n.Notifier] = None,
) -> list[str]:
    """
    Cancel rides still ``requested`` past their expiry.

    Each ride is flipped with a status-guarded UPDATE, so a ride whose bid
    was accepted in the meantime is left alone.
    """
    now = now or utcnow()
    candidates = s.execute(
        select(Ride.id, Ride.rider_id).where(
            Ride.status == RIDE_REQUESTED,
            Ride.expires_at.is_not(None),
            Ride.expires_at < now,
        )
    ).all()
    expired: list[str] = []
    for row in candidates:
        res = s.execute(
            update(Ride)
            .where(Ride.id == row.id, Ride.status == RIDE_REQUESTED)
            .values(status=RIDE_CANCELLED, cancellation_reason=EXPIRY_REASON, cancelled_at=now, updated_at=now)
            .execution_options(**_NO_SYNC)
        )
        if res.rowcount != 1:
            s.rollback()
            continue
        _reject_open_bids(s, row.id, BID_EXPIRED, now)
        s.commit()
        expired.append(row.id)
        _notifier(notifier).notify(
            row.rider_id,
            n.RIDE_EXPIRED,
            "Ride request expired",
            "No driver bids were received in time; please request again",
            {"ride_id": row.id},
        )
    if expired:
        _log.info("expired %d stale ride requests", len(expired), extra={"ride_ids": expired})
    return expired


async def expiry_sweep_forever(
    make_session: Callable[[], Session],
    interval_secs: float = RIDE_EXPIRY_SWEEP_SECS,
    notifier: Optional[n.Notifier] = None,
) -> None:
    def _sweep_once() -> list[str]:
        with make_session() as s:
            return expire_stale_rides(s, notifier=notifier)

    while True:
        try:
            await asyncio.to_thread(_sweep_once)
        except asyncio.CancelledError:
            raise
        except Exception:
            _log.exception("ride expiry sweep failed")
        await asyncio.sleep(interval_secs)
