from __future__ import annotations

import logging
import uuid
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import notify as n
from .auth import ROLE_DRIVER, Actor
from .errors import (
    BidNotFound,
    BidNotPending,
    ChainLimitReached,
    DriverNotFound,
    DuplicateBid,
    Forbidden,
    InvalidAmount,
    InvalidWithdraw,
    RideNotBiddable,
    RideNotFound,
)
from .models import (
    BID_ACCEPTED,
    BID_COUNTERED,
    BID_EXPIRED,
    BID_MAX_REACHED,
    BID_PENDING,
    BID_REJECTED,
    BID_SELECTED,
    BID_WITHDRAWN,
    RIDE_BIDDING,
    RIDE_REQUESTED,
    RIDE_SCHEDULED,
    Bid,
    Driver,
    Ride,
    utcnow,
)
from .schemas import BidOut
from .settings import MAX_CHAIN_LENGTH

_log = logging.getLogger("medride.bids")

INACTIVE_STATUSES = (BID_WITHDRAWN, BID_REJECTED)
OPEN_STATUSES = (BID_PENDING, BID_SELECTED)
# Statuses that can no longer be flagged maxReached
_FINAL_STATUSES = (BID_ACCEPTED, BID_REJECTED, BID_WITHDRAWN, BID_EXPIRED, BID_MAX_REACHED)
_BIDDABLE_RIDE_STATUSES = (RIDE_REQUESTED, RIDE_BIDDING)

_NO_SYNC = {"synchronize_session": False}


def author_of(bid: Bid) -> str:
    """Which side proposed this amount: root bids come from drivers."""
    return bid.counter_party or ROLE_DRIVER


def awaiting_party(bid: Bid) -> Optional[str]:
    """The side that has to answer an open bid, or None once it is settled."""
    if bid.status not in OPEN_STATUSES:
        return None
    return "rider" if author_of(bid) == "driver" else "driver"


def bid_out(bid: Bid) -> BidOut:
    return BidOut(
        id=bid.id,
        ride_id=bid.ride_id,
        driver_id=bid.driver_id,
        amount_cents=bid.amount_cents,
        message=bid.message,
        status=bid.status,
        parent_bid_id=bid.parent_bid_id,
        root_bid_id=bid.root_bid_id,
        counter_party=bid.counter_party,
        bid_count=bid.bid_count,
        awaiting=awaiting_party(bid),
        created_at=bid.created_at,
    )


def _get_ride(s: Session, ride_id: str) -> Ride:
    ride = s.get(Ride, ride_id)
    if not ride:
        raise RideNotFound()
    return ride


def _get_bid(s: Session, bid_id: str) -> Bid:
    bid = s.get(Bid, bid_id)
    if not bid:
        raise BidNotFound()
    return bid


def _notifier(notifier: Optional[n.Notifier]) -> n.Notifier:
    return notifier if notifier is not None else n.get_notifier()


def _dollars(cents: int) -> str:
    return f"${cents / 100:.2f}"


def create_bid(
    s: Session,
    driver_id: str,
    ride_id: str,
    amount_cents: int,
    message: Optional[str] = None,
    notifier: Optional[n.Notifier] = None,
) -> Bid:
    if amount_cents is None or int(amount_cents) <= 0:
        raise InvalidAmount()
    ride = _get_ride(s, ride_id)
    if not s.get(Driver, driver_id):
        raise DriverNotFound()
    if ride.status != RIDE_REQUESTED:
        raise RideNotBiddable(f"ride is {ride.status}, bids are only accepted while requested")
    existing = s.execute(
        select(Bid.id).where(
            Bid.ride_id == ride_id,
            Bid.driver_id == driver_id,
            Bid.status.not_in(INACTIVE_STATUSES),
        )
    ).first()
    if existing:
        raise DuplicateBid()

    bid_id = str(uuid.uuid4())
    bid = Bid(
        id=bid_id,
        ride_id=ride_id,
        driver_id=driver_id,
        amount_cents=int(amount_cents),
        message=message,
        status=BID_PENDING,
        parent_bid_id=None,
        root_bid_id=bid_id,
        counter_party=None,
        bid_count=1,
    )
    s.add(bid)
    try:
        s.commit()
    except IntegrityError:
        # A concurrent submission from the same driver won the race.
        s.rollback()
        raise DuplicateBid()
    s.refresh(bid)
    _log.info("bid created", extra={"bid_id": bid.id, "ride_id": ride_id, "driver_id": driver_id, "amount_cents": bid.amount_cents})
    _notifier(notifier).notify(
        ride.rider_id,
        n.NEW_BID,
        "New bid received",
        f"A driver bid {_dollars(bid.amount_cents)} on your ride",
        {"ride_id": ride_id, "bid_id": bid.id},
    )
    return bid


def _chain_length(s: Session, root_bid_id: str) -> int:
    return int(s.execute(select(func.count()).select_from(Bid).where(Bid.root_bid_id == root_bid_id)).scalar_one())


def _check_counter_actor(actor: Actor, counter_party: str, ride: Ride, original: Bid) -> None:
    if counter_party == "rider":
        if not (actor.is_admin or actor.is_user(ride.rider_id)):
            raise Forbidden("only the ride's rider can counter as rider")
    elif counter_party == "driver":
        if not (actor.is_admin or actor.is_user(original.driver_id)):
            raise Forbidden("only the bidding driver can counter as driver")
    else:
        raise Forbidden(f"unknown counter party '{counter_party}'")


def counter_offer(
    s: Session,
    original_bid_id: str,
    counter_party: str,
    amount_cents: int,
    actor: Actor,
    message: Optional[str] = None,
    notifier: Optional[n.Notifier] = None,
) -> Bid:
    """
    Answer an open bid with a new amount.

    A chain holds at most MAX_CHAIN_LENGTH bids. Once it is full the root is
    flagged maxReached and ChainLimitReached is raised without inserting a
    row. Otherwise the original becomes ``countered`` and the new bid is
    inserted as ``selected``, awaiting the other side.
    """
    original = _get_bid(s, original_bid_id)
    ride = _get_ride(s, original.ride_id)
    _check_counter_actor(actor, counter_party, ride, original)

    if original.status not in OPEN_STATUSES:
        raise BidNotPending(f"bid is {original.status}")
    if author_of(original) == counter_party:
        raise BidNotPending(f"waiting for the {awaiting_party(original)} to respond")
    if ride.status not in _BIDDABLE_RIDE_STATUSES:
        raise RideNotBiddable(f"ride is {ride.status}")

    if _chain_length(s, original.root_bid_id) >= MAX_CHAIN_LENGTH:
        s.execute(
            update(Bid)
            .where(Bid.id == original.root_bid_id, Bid.status.not_in(_FINAL_STATUSES))
            .values(status=BID_MAX_REACHED, updated_at=utcnow())
            .execution_options(**_NO_SYNC)
        )
        s.commit()
        _log.info("counter rejected, chain full", extra={"bid_id": original_bid_id, "root_bid_id": original.root_bid_id})
        _notifier(notifier).notify(
            original.driver_id if counter_party == "rider" else ride.rider_id,
            n.MAX_COUNTER_OFFERS,
            "Negotiation limit reached",
            "No further counter offers are possible; accept or decline the last offer",
            {"ride_id": ride.id, "bid_id": original.root_bid_id},
        )
        raise ChainLimitReached()

    if amount_cents is None or int(amount_cents) <= 0:
        raise InvalidAmount()

    now = utcnow()
    res = s.execute(
        update(Bid)
        .where(Bid.id == original.id, Bid.status.in_(OPEN_STATUSES))
        .values(status=BID_COUNTERED, updated_at=now)
        .execution_options(**_NO_SYNC)
    )
    if res.rowcount != 1:
        s.rollback()
        raise BidNotPending("bid was answered concurrently")

    counter = Bid(
        id=str(uuid.uuid4()),
        ride_id=original.ride_id,
        driver_id=original.driver_id,
        amount_cents=int(amount_cents),
        message=message,
        status=BID_SELECTED,
        parent_bid_id=original.id,
        root_bid_id=original.root_bid_id,
        counter_party=counter_party,
        bid_count=original.bid_count + 1,
    )
    s.add(counter)
    try:
        s.commit()
    except IntegrityError:
        # Chain position already taken by a concurrent counter.
        s.rollback()
        raise BidNotPending("bid was answered concurrently")
    s.refresh(counter)
    _log.info(
        "counter offer created",
        extra={"bid_id": counter.id, "parent_bid_id": original.id, "counter_party": counter_party, "bid_count": counter.bid_count},
    )
    _notifier(notifier).notify(
        original.driver_id if counter_party == "rider" else ride.rider_id,
        n.COUNTER_OFFER_RECEIVED,
        "Counter offer received",
        f"New counter offer of {_dollars(counter.amount_cents)}",
        {"ride_id": ride.id, "bid_id": counter.id},
    )
    return counter


def _check_accept_actor(actor: Actor, ride: Ride, bid: Bid) -> None:
    if actor.is_admin:
        return
    if actor.is_user(ride.rider_id):
        if bid.status == BID_SELECTED and author_of(bid) == "rider":
            raise BidNotPending("waiting for the driver to respond to your counter offer")
        return
    if actor.is_user(bid.driver_id):
        # Drivers accept the rider's counter to their bid, nothing else.
        if bid.status == BID_SELECTED and author_of(bid) == "rider":
            return
        raise BidNotPending("only a rider's counter offer can be accepted by the driver")
    raise Forbidden("not a party to this bid")


def accept_bid(
    s: Session,
    bid_id: str,
    actor: Actor,
    notifier: Optional[n.Notifier] = None,
) -> tuple[Bid, Ride]:
    """
    Accept one bid and schedule the ride, in a single transaction.

    The bid moves to ``accepted`` only from pending/selected and the ride to
    ``scheduled`` only from requested/bidding; either guard failing rolls the
    whole acceptance back, so a ride never has two accepted bids. Every other
    open or expired bid on the ride is rejected.
    """
    bid = _get_bid(s, bid_id)
    ride = _get_ride(s, bid.ride_id)
    if bid.status not in OPEN_STATUSES:
        raise BidNotPending(f"bid is {bid.status}")
    _check_accept_actor(actor, ride, bid)
    if ride.status not in _BIDDABLE_RIDE_STATUSES:
        raise RideNotBiddable(f"ride is {ride.status}")

    now = utcnow()
    ride_id = ride.id
    driver_id = bid.driver_id
    res = s.execute(
        update(Bid)
        .where(Bid.id == bid.id, Bid.status.in_(OPEN_STATUSES))
        .values(status=BID_ACCEPTED, updated_at=now)
        .execution_options(**_NO_SYNC)
    )
    if res.rowcount != 1:
        s.rollback()
        raise BidNotPending("bid was answered concurrently")
    res = s.execute(
        update(Ride)
        .where(Ride.id == ride_id, Ride.status.in_(_BIDDABLE_RIDE_STATUSES))
        .values(status=RIDE_SCHEDULED, driver_id=driver_id, final_price_cents=bid.amount_cents, updated_at=now)
        .execution_options(**_NO_SYNC)
    )
    if res.rowcount != 1:
        s.rollback()
        raise RideNotBiddable("ride was scheduled or cancelled concurrently")
    losers = s.execute(
        select(Bid.id, Bid.driver_id).where(
            Bid.ride_id == ride_id,
            Bid.id != bid.id,
            Bid.status.in_((BID_PENDING, BID_SELECTED, BID_EXPIRED)),
        )
    ).all()
    if losers:
        s.execute(
            update(Bid)
            .where(Bid.id.in_([row.id for row in losers]))
            .values(status=BID_REJECTED, updated_at=now)
            .execution_options(**_NO_SYNC)
        )
    s.commit()
    s.refresh(bid)
    s.refresh(ride)
    _log.info(
        "bid accepted",
        extra={"bid_id": bid.id, "ride_id": ride_id, "driver_id": driver_id, "rejected": len(losers)},
    )

    notifier = _notifier(notifier)
    notifier.notify(
        driver_id,
        n.BID_ACCEPTED,
        "Bid accepted",
        f"Your bid of {_dollars(bid.amount_cents)} was accepted",
        {"ride_id": ride_id, "bid_id": bid.id},
    )
    if actor.is_user(driver_id):
        notifier.notify(
            ride.rider_id,
            n.BID_ACCEPTED,
            "Counter offer accepted",
            f"The driver accepted {_dollars(bid.amount_cents)}",
            {"ride_id": ride_id, "bid_id": bid.id},
        )
    for row in {r.driver_id for r in losers} - {driver_id}:
        notifier.notify(
            row,
            n.BID_REJECTED,
            "Bid not selected",
            "The rider selected another driver for this ride",
            {"ride_id": ride_id},
        )
    return bid, ride


def withdraw_bid(
    s: Session,
    bid_id: str,
    actor: Actor,
    notifier: Optional[n.Notifier] = None,
) -> Bid:
    bid = _get_bid(s, bid_id)
    if not (actor.is_admin or actor.is_user(bid.driver_id)):
        raise Forbidden("only the bidding driver can withdraw")
    now = utcnow()
    res = s.execute(
        update(Bid)
        .where(Bid.id == bid.id, Bid.status.in_((BID_PENDING, BID_COUNTERED)))
        .values(status=BID_WITHDRAWN, updated_at=now)
        .execution_options(**_NO_SYNC)
    )
    if res.rowcount != 1:
        s.rollback()
        current = s.get(Bid, bid_id)
        raise InvalidWithdraw(f"bid is {current.status if current else 'gone'}; only pending or countered bids can be withdrawn")
    # Open offers further down the same chain die with it.
    s.execute(
        update(Bid)
        .where(
            Bid.root_bid_id == bid.root_bid_id,
            Bid.id != bid.id,
            Bid.status.in_((BID_PENDING, BID_SELECTED, BID_COUNTERED, BID_MAX_REACHED)),
        )
        .values(status=BID_WITHDRAWN, updated_at=now)
        .execution_options(**_NO_SYNC)
    )
    s.commit()
    s.refresh(bid)
    ride = s.get(Ride, bid.ride_id)
    _log.info("bid withdrawn", extra={"bid_id": bid.id, "ride_id": bid.ride_id})
    if ride:
        _notifier(notifier).notify(
            ride.rider_id,
            n.BID_WITHDRAWN,
            "Bid withdrawn",
            "A driver withdrew their bid",
            {"ride_id": ride.id, "bid_id": bid.id},
        )
    return bid


def chain_root(s: Session, bid: Bid) -> Bid:
    root = bid
    # Chains are at most MAX_CHAIN_LENGTH deep; the bound guards against bad data.
    for _ in range(MAX_CHAIN_LENGTH + 1):
        if not root.parent_bid_id:
            return root
        parent = s.get(Bid, root.parent_bid_id)
        if parent is None:
            break
        root = parent
    _log.warning("bid chain for %s is broken or too deep", bid.id)
    return root


def get_bid_history(s: Session, bid_id: str) -> list[Bid]:
    """The full negotiation transcript: chain root first, ordered by bid_count."""
    root = chain_root(s, _get_bid(s, bid_id))
    return list(
        s.execute(select(Bid).where(Bid.root_bid_id == root.id).order_by(Bid.bid_count.asc())).scalars().all()
    )


def list_ride_bids(s: Session, ride_id: str, actor: Actor) -> list[Bid]:
    ride = _get_ride(s, ride_id)
    stmt = select(Bid).where(Bid.ride_id == ride_id)
    if actor.is_admin or actor.is_user(ride.rider_id):
        pass
    elif actor.role == ROLE_DRIVER:
        stmt = stmt.where(Bid.driver_id == actor.user_id)
    else:
        raise Forbidden()
    return list(s.execute(stmt.order_by(Bid.amount_cents.asc(), Bid.created_at.asc())).scalars().all())
