from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import notify as n
from .cache import TTLCache
from .errors import (
    GatewayRejected,
    GatewayUnavailable,
    InvalidAmount,
    InvalidRefund,
    InvalidTransition,
    MedRideError,
    NoPaymentMethod,
    RideNotFound,
    TransactionNotFound,
)
from .fare import get_platform_fee_percent
from .gateway import CHARGE_FAILED, CHARGE_REQUIRES_ACTION, CHARGE_SUCCEEDED, PaymentGateway, get_gateway
from .payouts import handle_transfer_update
from .models import (
    BID_EXPIRED,
    BID_PENDING,
    BID_REJECTED,
    BID_SELECTED,
    RIDE_ARRIVED,
    RIDE_COMPLETED,
    RIDE_EN_ROUTE,
    RIDE_IN_PROGRESS,
    RIDE_PAID,
    RIDE_PAYMENT_PENDING,
    RIDE_SCHEDULED,
    TXN_FAILED,
    TXN_IN_FLIGHT,
    TXN_PARTIAL_REFUND,
    TXN_PAYMENT,
    TXN_PENDING,
    TXN_REFUND,
    TXN_REFUND_TYPES,
    TXN_REQUIRES_ACTION,
    TXN_SUCCEEDED,
    TXN_UNKNOWN,
    Bid,
    GatewayEvent,
    PaymentMethod,
    PaymentTransaction,
    Ride,
    Rider,
    utcnow,
)
from .schemas import PaymentResult
from .settings import PAYMENT_CURRENCY, PROCESSING_FEE_FIXED_CENTS, PROCESSING_FEE_RATE

_log = logging.getLogger("medride.payments")

PAID_OR_LATER = (RIDE_PAID, RIDE_EN_ROUTE, RIDE_ARRIVED, RIDE_IN_PROGRESS, RIDE_COMPLETED)
CHARGEABLE = (RIDE_SCHEDULED, RIDE_PAYMENT_PENDING)

DECLINED_MESSAGE = "Your payment was declined. Please update your payment method and try again."
UNAVAILABLE_MESSAGE = "The payment provider is not responding. Your card was not charged twice; please try again shortly."
NO_METHOD_MESSAGE = "No saved payment method. Please add a card to pay for this ride."

# Called with the ride id once a ride is paid; schedules the driver payout.
OnPaid = Callable[[str], None]

_NO_SYNC = {"synchronize_session": False}


def _notifier(notifier: Optional[n.Notifier]) -> n.Notifier:
    return notifier if notifier is not None else n.get_notifier()


def transaction_fees(amount_cents: int, platform_fee_percent: float) -> dict:
    """Platform fee, card processing fee (2.9% + 30c) and what is left."""
    amount = Decimal(int(amount_cents))
    platform = int((amount * Decimal(str(platform_fee_percent)) / 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    processing = int((amount * Decimal(str(PROCESSING_FEE_RATE))).quantize(Decimal("1"), rounding=ROUND_HALF_UP)) + PROCESSING_FEE_FIXED_CENTS
    return {
        "platform_fee_cents": platform,
        "processing_fee_cents": processing,
        "net_amount_cents": int(amount_cents) - platform - processing,
    }


def default_payment_method(s: Session, user_id: str, cache: Optional[TTLCache] = None) -> Optional[PaymentMethod]:
    def _load() -> Optional[str]:
        return s.execute(
            select(PaymentMethod.id)
            .where(PaymentMethod.user_id == user_id, PaymentMethod.is_active.is_(True))
            .order_by(PaymentMethod.is_default.desc(), PaymentMethod.created_at.desc())
        ).scalars().first()

    pm_id = _load() if cache is None else cache.get_or_load(("default_pm", user_id), _load)
    if pm_id is None:
        return None
    pm = s.get(PaymentMethod, pm_id)
    if pm is None or not pm.is_active:
        if cache is not None:
            cache.invalidate(("default_pm", user_id))
        return None
    return pm


def inflight_charge(s: Session, ride_id: str) -> Optional[PaymentTransaction]:
    """Newest charge for the ride whose outcome is not settled yet."""
    return s.execute(
        select(PaymentTransaction)
        .where(
            PaymentTransaction.ride_id == ride_id,
            PaymentTransaction.type == TXN_PAYMENT,
            PaymentTransaction.status.in_(TXN_IN_FLIGHT),
        )
        .order_by(PaymentTransaction.created_at.desc())
    ).scalars().first()


def _result(txn: Optional[PaymentTransaction], ride: Ride, **kw) -> PaymentResult:
    return PaymentResult(
        transaction_id=txn.transaction_id if txn is not None else None,
        status=txn.status if txn is not None else None,
        ride_status=ride.status,
        **kw,
    )


def process_ride_payment(
    s: Session,
    ride_id: str,
    gateway: Optional[PaymentGateway] = None,
    notifier: Optional[n.Notifier] = None,
    cache: Optional[TTLCache] = None,
    on_paid: Optional[OnPaid] = None,
) -> PaymentResult:
    """
    Charge the rider for a ride with an accepted bid.

    A ride that is already paid returns its succeeded transaction. A charge
    still in flight (pending, requires_action or unknown after a timeout) is
    reconciled through the gateway instead of charging again. Otherwise a
    pending transaction is recorded, the ride moves to payment_pending and a
    charge is created for the final price (falling back to the rider's bid).
    """
    gateway = gateway or get_gateway()
    notifier = _notifier(notifier)
    ride = s.get(Ride, ride_id)
    if ride is None:
        raise RideNotFound()

    if ride.status in PAID_OR_LATER:
        txn = s.execute(
            select(PaymentTransaction)
            .where(
                PaymentTransaction.ride_id == ride.id,
                PaymentTransaction.type == TXN_PAYMENT,
                PaymentTransaction.status == TXN_SUCCEEDED,
            )
            .order_by(PaymentTransaction.created_at.desc())
        ).scalars().first()
        return _result(txn, ride, success=True, message="Ride already paid")

    inflight = inflight_charge(s, ride.id)
    if inflight is not None:
        return _reconcile(s, ride, inflight, gateway, notifier, on_paid)

    if ride.status not in CHARGEABLE:
        raise InvalidTransition(f"ride is {ride.status}; payment needs an accepted bid")
    amount = ride.final_price_cents or ride.rider_bid_cents
    if not amount or amount <= 0:
        raise InvalidAmount("ride has no price to charge")

    pm = default_payment_method(s, ride.rider_id, cache)
    if pm is None:
        _log.info("no payment method for ride payment", extra={"ride_id": ride.id, "rider_id": ride.rider_id})
        return _result(None, ride, success=False, error=NoPaymentMethod.kind, message=NO_METHOD_MESSAGE)

    fees = transaction_fees(amount, get_platform_fee_percent(s, cache))
    txn = PaymentTransaction(
        id=str(uuid.uuid4()),
        transaction_id=f"txn_{uuid.uuid4().hex}",
        ride_id=ride.id,
        user_id=ride.rider_id,
        payment_method_id=pm.id,
        idempotency_key=f"ride-{ride.id}-charge-{uuid.uuid4().hex[:12]}",
        amount_cents=int(amount),
        currency=PAYMENT_CURRENCY,
        type=TXN_PAYMENT,
        status=TXN_PENDING,
        **fees,
    )
    s.add(txn)
    res = s.execute(
        update(Ride)
        .where(Ride.id == ride.id, Ride.status.in_(CHARGEABLE))
        .values(status=RIDE_PAYMENT_PENDING, updated_at=utcnow())
        .execution_options(**_NO_SYNC)
    )
    if res.rowcount != 1:
        s.rollback()
        raise InvalidTransition("ride changed while starting payment")
    s.commit()
    s.refresh(txn)
    _log.info("charging ride", extra={"ride_id": ride.id, "transaction_id": txn.transaction_id, "amount_cents": txn.amount_cents})
    return _charge(s, ride, txn, pm, gateway, notifier, on_paid)


def retry_payment(
    s: Session,
    ride_id: str,
    gateway: Optional[PaymentGateway] = None,
    notifier: Optional[n.Notifier] = None,
    cache: Optional[TTLCache] = None,
    on_paid: Optional[OnPaid] = None,
) -> PaymentResult:
    """Explicit user retry after a failed or unknown payment; same flow, same safeguards."""
    _log.info("payment retry requested", extra={"ride_id": ride_id})
    return process_ride_payment(s, ride_id, gateway=gateway, notifier=notifier, cache=cache, on_paid=on_paid)


def _charge(
    s: Session,
    ride: Ride,
    txn: PaymentTransaction,
    pm: PaymentMethod,
    gateway: PaymentGateway,
    notifier: n.Notifier,
    on_paid: Optional[OnPaid],
) -> PaymentResult:
    rider = s.get(Rider, ride.rider_id)
    try:
        charge = gateway.create_charge(
            txn.amount_cents,
            rider.gateway_customer_id if rider else None,
            pm.gateway_payment_method_id,
            txn.idempotency_key,
            currency=txn.currency,
            metadata={"ride_id": ride.id, "transaction_id": txn.transaction_id},
        )
    except GatewayUnavailable as e:
        return _mark_unknown(s, ride, txn, e)
    except GatewayRejected as e:
        charge = {"id": None, "status": CHARGE_FAILED, "failure_code": e.code, "failure_message": e.message}
    return apply_charge_outcome(s, txn, charge, notifier=notifier, on_paid=on_paid, gateway=gateway)


def _reconcile(
    s: Session,
    ride: Ride,
    txn: PaymentTransaction,
    gateway: PaymentGateway,
    notifier: n.Notifier,
    on_paid: Optional[OnPaid],
) -> PaymentResult:
    _log.info("reconciling in-flight charge", extra={"ride_id": ride.id, "transaction_id": txn.transaction_id, "status": txn.status})
    if not txn.gateway_charge_id:
        # The charge may or may not exist; resending with the same key is safe.
        pm = s.get(PaymentMethod, txn.payment_method_id) if txn.payment_method_id else None
        if pm is None:
            charge = {"id": None, "status": CHARGE_FAILED, "failure_code": "payment_method_removed", "failure_message": None}
            return apply_charge_outcome(s, txn, charge, notifier=notifier, on_paid=on_paid, gateway=gateway)
        return _charge(s, ride, txn, pm, gateway, notifier, on_paid)
    try:
        if txn.status == TXN_REQUIRES_ACTION:
            # The rider completed (or abandoned) authentication; ask the gateway to finish the charge.
            charge = gateway.confirm_charge(txn.gateway_charge_id)
        else:
            charge = gateway.retrieve_charge(txn.gateway_charge_id)
    except GatewayUnavailable as e:
        return _mark_unknown(s, ride, txn, e)
    except GatewayRejected as e:
        charge = {"id": txn.gateway_charge_id, "status": CHARGE_FAILED, "failure_code": e.code, "failure_message": e.message}
    return apply_charge_outcome(s, txn, charge, notifier=notifier, on_paid=on_paid, gateway=gateway)


def _mark_unknown(s: Session, ride: Ride, txn: PaymentTransaction, exc: GatewayUnavailable) -> PaymentResult:
    # Never treated as a failure: the charge may have gone through.
    s.execute(
        update(PaymentTransaction)
        .where(PaymentTransaction.id == txn.id, PaymentTransaction.status.in_((TXN_PENDING, TXN_UNKNOWN)))
        .values(status=TXN_UNKNOWN, failure_code=exc.kind, updated_at=utcnow())
        .execution_options(**_NO_SYNC)
    )
    s.commit()
    s.refresh(txn)
    s.refresh(ride)
    _log.warning("charge outcome unknown", extra={"ride_id": ride.id, "transaction_id": txn.transaction_id, "error": exc.kind})
    return _result(txn, ride, success=False, error="GatewayUnavailable", message=UNAVAILABLE_MESSAGE, retryable=True)


def apply_charge_outcome(
    s: Session,
    txn: PaymentTransaction,
    charge: dict,
    notifier: Optional[n.Notifier] = None,
    on_paid: Optional[OnPaid] = None,
    gateway: Optional[PaymentGateway] = None,
) -> PaymentResult:
    """
    Record a charge result from either the synchronous call or a webhook.

    A charge id already recorded on another transaction wins, so the same
    charge is never booked twice. Succeeded transactions are final. A charge
    that succeeds after its ride stopped being payable (cancelled meanwhile)
    is refunded in full.
    """
    notifier = _notifier(notifier)
    charge_id = charge.get("id")
    if charge_id:
        known = s.execute(
            select(PaymentTransaction).where(PaymentTransaction.gateway_charge_id == charge_id)
        ).scalars().first()
        if known is not None:
            txn = known
        elif not txn.gateway_charge_id:
            txn.gateway_charge_id = charge_id
    ride = s.get(Ride, txn.ride_id)
    status = charge.get("status")

    if txn.status == TXN_SUCCEEDED:
        s.commit()
        return _result(txn, ride, success=True, message="Payment already recorded")
    if txn.status == TXN_FAILED and status != CHARGE_SUCCEEDED:
        # Late or repeated news about a charge already written off; a newer attempt may be running.
        s.commit()
        return _result(txn, ride, success=False, error="PaymentDeclined", message=DECLINED_MESSAGE)

    now = utcnow()
    if status == CHARGE_SUCCEEDED:
        txn.status = TXN_SUCCEEDED
        txn.client_secret = None
        txn.failure_code = None
        txn.failure_message = None
        txn.updated_at = now
        s.add(txn)
        res = s.execute(
            update(Ride)
            .where(Ride.id == ride.id, Ride.status.in_(CHARGEABLE))
            .values(status=RIDE_PAID, paid_at=now, updated_at=now)
            .execution_options(**_NO_SYNC)
        )
        paid_now = res.rowcount == 1
        if paid_now:
            s.execute(
                update(Bid)
                .where(Bid.ride_id == ride.id, Bid.status.in_((BID_PENDING, BID_SELECTED, BID_EXPIRED)))
                .values(status=BID_REJECTED, updated_at=now)
                .execution_options(**_NO_SYNC)
            )
        try:
            s.commit()
        except IntegrityError:
            # Charge id recorded concurrently by the other path.
            s.rollback()
            return _result(txn, s.get(Ride, txn.ride_id), success=True, message="Payment already recorded")
        s.refresh(ride)
        s.refresh(txn)
        if not paid_now and ride.status not in PAID_OR_LATER:
            _log.error(
                "charge succeeded for ride that is no longer payable",
                extra={"ride_id": ride.id, "ride_status": ride.status, "transaction_id": txn.transaction_id},
            )
            try:
                refund = refund_payment(s, txn.transaction_id, reason="ride_cancelled", gateway=gateway, notifier=notifier)
            except MedRideError as e:
                _log.error(
                    "refund of orphaned charge failed",
                    extra={"ride_id": ride.id, "transaction_id": txn.transaction_id, "error": e.kind},
                )
                return _result(txn, ride, success=False, error=e.kind, message="Ride is no longer payable")
            return _result(
                txn,
                ride,
                success=False,
                error=InvalidTransition.kind,
                message=f"Ride is {ride.status}; the payment is being refunded ({refund.status})",
            )
        _log.info("payment succeeded", extra={"ride_id": ride.id, "transaction_id": txn.transaction_id})
        notifier.notify(
            ride.rider_id,
            n.PAYMENT_RECEIVED,
            "Payment successful",
            f"Your payment of ${txn.amount_cents / 100:.2f} was processed",
            {"ride_id": ride.id, "transaction_id": txn.transaction_id},
        )
        if paid_now and on_paid is not None:
            try:
                on_paid(ride.id)
            except Exception:
                _log.exception("scheduling payout for ride %s failed", ride.id)
        return _result(txn, ride, success=True)

    if status == CHARGE_REQUIRES_ACTION:
        txn.status = TXN_REQUIRES_ACTION
        txn.client_secret = charge.get("client_secret")
        txn.updated_at = now
        s.add(txn)
        s.commit()
        s.refresh(txn)
        s.refresh(ride)
        notifier.notify(
            ride.rider_id,
            n.PAYMENT_ACTION_REQUIRED,
            "Confirm your payment",
            "Your bank needs you to confirm this payment",
            {"ride_id": ride.id, "transaction_id": txn.transaction_id},
        )
        return _result(
            txn,
            ride,
            success=False,
            requires_action=True,
            client_secret=txn.client_secret,
            message="Additional authentication required",
        )

    if status == CHARGE_FAILED:
        txn.status = TXN_FAILED
        txn.client_secret = None
        txn.failure_code = charge.get("failure_code") or "card_declined"
        txn.failure_message = (charge.get("failure_message") or "")[:256] or None
        txn.updated_at = now
        s.add(txn)
        # Back to a retryable state; the accepted bid stays accepted.
        s.execute(
            update(Ride)
            .where(Ride.id == ride.id, Ride.status == RIDE_PAYMENT_PENDING)
            .values(status=RIDE_SCHEDULED, updated_at=now)
            .execution_options(**_NO_SYNC)
        )
        s.commit()
        s.refresh(txn)
        s.refresh(ride)
        _log.info(
            "payment failed",
            extra={"ride_id": ride.id, "transaction_id": txn.transaction_id, "failure_code": txn.failure_code},
        )
        notifier.notify(
            ride.rider_id,
            n.PAYMENT_FAILED,
            "Payment failed",
            DECLINED_MESSAGE,
            {"ride_id": ride.id, "transaction_id": txn.transaction_id},
        )
        return _result(txn, ride, success=False, error="PaymentDeclined", message=DECLINED_MESSAGE)

    # Still processing at the gateway: wait for the webhook or a later reconcile.
    txn.status = TXN_PENDING
    txn.updated_at = now
    s.add(txn)
    s.commit()
    s.refresh(txn)
    s.refresh(ride)
    return _result(txn, ride, success=False, error="PaymentProcessing", message="Payment is processing", retryable=True)


# Refunds and admin charges


def refund_payment(
    s: Session,
    transaction_id: str,
    amount_cents: Optional[int] = None,
    reason: Optional[str] = None,
    gateway: Optional[PaymentGateway] = None,
    notifier: Optional[n.Notifier] = None,
    admin_id: Optional[str] = None,
) -> PaymentTransaction:
    """
    Return money from a succeeded payment through the gateway.

    Without an amount whatever is still refundable is returned. Refunds
    that are pending, unknown or succeeded count against the payment, so
    the total handed back never exceeds what was charged. The refund is
    recorded as its own transaction linked to the payment: type refund when
    it returns the full charge in one go, partial_refund otherwise. A
    gateway outage leaves it unknown, a rejection marks it failed.
    """
    txn = s.execute(
        select(PaymentTransaction).where(PaymentTransaction.transaction_id == transaction_id)
    ).scalars().first()
    if txn is None:
        raise TransactionNotFound()
    if txn.type != TXN_PAYMENT or txn.status != TXN_SUCCEEDED:
        raise InvalidRefund()
    if not txn.gateway_charge_id:
        raise InvalidRefund("payment was recorded without a gateway charge and cannot be refunded here")

    already = s.execute(
        select(func.coalesce(func.sum(PaymentTransaction.amount_cents), 0)).where(
            PaymentTransaction.original_transaction_id == txn.id,
            PaymentTransaction.type.in_(TXN_REFUND_TYPES),
            PaymentTransaction.status.in_((TXN_PENDING, TXN_UNKNOWN, TXN_SUCCEEDED)),
        )
    ).scalar_one()
    refundable = txn.amount_cents - int(already)
    amount = refundable if amount_cents is None else int(amount_cents)
    if amount <= 0 or amount > refundable:
        raise InvalidAmount(f"refund must be between 1 and {max(refundable, 0)} cents")

    gateway = gateway or get_gateway()
    notifier = _notifier(notifier)
    full = already == 0 and amount == txn.amount_cents
    refund = PaymentTransaction(
        id=str(uuid.uuid4()),
        transaction_id=f"txn_{uuid.uuid4().hex}",
        ride_id=txn.ride_id,
        user_id=txn.user_id,
        payment_method_id=txn.payment_method_id,
        idempotency_key=f"refund-{txn.transaction_id}-{uuid.uuid4().hex[:12]}",
        amount_cents=amount,
        currency=txn.currency,
        type=TXN_REFUND if full else TXN_PARTIAL_REFUND,
        status=TXN_PENDING,
        net_amount_cents=amount,
        original_transaction_id=txn.id,
        reason=(reason or "")[:256] or None,
        admin_user_id=admin_id,
    )
    s.add(refund)
    s.commit()
    s.refresh(refund)
    _log.info(
        "refunding payment",
        extra={"transaction_id": txn.transaction_id, "refund_id": refund.transaction_id, "amount_cents": amount},
    )

    try:
        res = gateway.create_refund(
            txn.gateway_charge_id,
            amount,
            refund.idempotency_key,
            reason=reason,
            metadata={"ride_id": txn.ride_id, "transaction_id": refund.transaction_id},
        )
    except GatewayUnavailable as e:
        # Resending with the same key is safe; keep it counted against the payment.
        refund.status = TXN_UNKNOWN
        refund.failure_code = e.kind
    except GatewayRejected as e:
        refund.status = TXN_FAILED
        refund.failure_code = e.code or e.kind
        refund.failure_message = e.message[:256]
    else:
        refund.gateway_refund_id = res.get("id")
        if res.get("status") == CHARGE_SUCCEEDED:
            refund.status = TXN_SUCCEEDED
        elif res.get("status") == CHARGE_FAILED:
            refund.status = TXN_FAILED
        else:
            refund.status = TXN_PENDING
    refund.updated_at = utcnow()
    s.add(refund)
    s.commit()
    s.refresh(refund)

    if refund.status == TXN_FAILED:
        _log.warning("refund failed", extra={"refund_id": refund.transaction_id, "failure_code": refund.failure_code})
    else:
        notifier.notify(
            refund.user_id,
            n.PAYMENT_REFUNDED,
            "Payment refunded",
            f"${amount / 100:.2f} is on its way back to your card",
            {"ride_id": refund.ride_id, "transaction_id": refund.transaction_id},
        )
    return refund


def admin_override_charge(
    s: Session,
    ride_id: str,
    admin_id: str,
    amount_cents: Optional[int] = None,
    notes: Optional[str] = None,
    notifier: Optional[n.Notifier] = None,
    cache: Optional[TTLCache] = None,
    on_paid: Optional[OnPaid] = None,
) -> PaymentResult:
    """
    Mark a ride paid without charging the card, e.g. settled by phone or
    invoice. The transaction is flagged admin_override with the admin's
    notes and then goes through the normal success path.
    """
    ride = s.get(Ride, ride_id)
    if ride is None:
        raise RideNotFound()
    if ride.status not in CHARGEABLE:
        raise InvalidTransition(f"ride is {ride.status}; only scheduled or payment_pending rides can be charged")
    if inflight_charge(s, ride.id) is not None:
        raise InvalidTransition("ride has a card payment being processed")
    amount = amount_cents or ride.final_price_cents or ride.rider_bid_cents
    if not amount or amount <= 0:
        raise InvalidAmount("ride has no price to charge")

    txn = PaymentTransaction(
        id=str(uuid.uuid4()),
        transaction_id=f"txn_{uuid.uuid4().hex}",
        ride_id=ride.id,
        user_id=ride.rider_id,
        idempotency_key=f"ride-{ride.id}-admin-{uuid.uuid4().hex[:12]}",
        amount_cents=int(amount),
        currency=PAYMENT_CURRENCY,
        type=TXN_PAYMENT,
        status=TXN_PENDING,
        admin_override=True,
        admin_notes=(notes or "")[:512] or None,
        admin_user_id=admin_id,
        **transaction_fees(amount, get_platform_fee_percent(s, cache)),
    )
    s.add(txn)
    res = s.execute(
        update(Ride)
        .where(Ride.id == ride.id, Ride.status.in_(CHARGEABLE))
        .values(status=RIDE_PAYMENT_PENDING, updated_at=utcnow())
        .execution_options(**_NO_SYNC)
    )
    if res.rowcount != 1:
        s.rollback()
        raise InvalidTransition("ride changed while recording the payment")
    s.commit()
    s.refresh(txn)
    _log.warning(
        "admin override charge",
        extra={"ride_id": ride.id, "transaction_id": txn.transaction_id, "admin_id": admin_id, "amount_cents": txn.amount_cents},
    )
    return apply_charge_outcome(s, txn, {"id": None, "status": CHARGE_SUCCEEDED}, notifier=notifier, on_paid=on_paid)


# Webhook events


CHARGE_EVENTS = {
    "charge.succeeded": CHARGE_SUCCEEDED,
    "charge.failed": CHARGE_FAILED,
    "charge.requires_action": CHARGE_REQUIRES_ACTION,
}


def handle_gateway_event(
    s: Session,
    event: dict,
    notifier: Optional[n.Notifier] = None,
    on_paid: Optional[OnPaid] = None,
    gateway: Optional[PaymentGateway] = None,
) -> str:
    """
    Apply one webhook event through the same code path as the synchronous
    confirmation. Events are recorded by id so a redelivery is a no-op.
    Returns what happened: applied, duplicate or ignored.
    """
    event_id = event.get("id")
    event_type = event.get("type") or ""
    obj = (event.get("data") or {}).get("object") or {}
    if not event_id:
        _log.warning("gateway event without id ignored", extra={"event_type": event_type})
        return "ignored"
    if s.get(GatewayEvent, event_id) is not None:
        return "duplicate"
    s.add(GatewayEvent(id=event_id, type=event_type, object_id=obj.get("id")))

    if event_type in CHARGE_EVENTS:
        txn = None
        if obj.get("id"):
            txn = s.execute(
                select(PaymentTransaction).where(PaymentTransaction.gateway_charge_id == obj["id"])
            ).scalars().first()
        if txn is None:
            # The synchronous call may have timed out before the charge id was stored.
            ref = (obj.get("metadata") or {}).get("transaction_id")
            if ref:
                txn = s.execute(
                    select(PaymentTransaction).where(PaymentTransaction.transaction_id == ref)
                ).scalars().first()
        if txn is None:
            s.commit()
            _log.warning("charge event for unknown transaction", extra={"event_id": event_id, "charge_id": obj.get("id")})
            return "ignored"
        charge = {
            "id": obj.get("id"),
            "status": CHARGE_EVENTS[event_type],
            "client_secret": obj.get("client_secret"),
            "failure_code": obj.get("failure_code"),
            "failure_message": obj.get("failure_message"),
        }
        apply_charge_outcome(s, txn, charge, notifier=notifier, on_paid=on_paid, gateway=gateway)
        return "applied"

    if event_type == "transfer.updated":
        payout = handle_transfer_update(s, obj, notifier=notifier)
        s.commit()
        return "applied" if payout is not None else "ignored"

    s.commit()
    _log.info("gateway event type not handled", extra={"event_id": event_id, "event_type": event_type})
    return "ignored"
