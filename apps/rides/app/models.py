from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .settings import DB_SCHEMA


def _table_args(*items):
    return (*items, {"schema": DB_SCHEMA}) if DB_SCHEMA else items


def _fk(target: str) -> str:
    return f"{DB_SCHEMA}.{target}" if DB_SCHEMA else target


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; every stored value is UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# Ride statuses
RIDE_REQUESTED = "requested"
RIDE_BIDDING = "bidding"
RIDE_SCHEDULED = "scheduled"
RIDE_PAYMENT_PENDING = "payment_pending"
RIDE_PAID = "paid"
RIDE_EN_ROUTE = "en_route"
RIDE_ARRIVED = "arrived"
RIDE_IN_PROGRESS = "in_progress"
RIDE_COMPLETED = "completed"
RIDE_CANCELLED = "cancelled"
RIDE_EDIT_PENDING = "edit_pending"

RIDE_STATUSES_WITH_DRIVER = frozenset({
    RIDE_SCHEDULED,
    RIDE_PAYMENT_PENDING,
    RIDE_PAID,
    RIDE_EN_ROUTE,
    RIDE_ARRIVED,
    RIDE_IN_PROGRESS,
    RIDE_COMPLETED,
})

# Bid statuses
BID_PENDING = "pending"
BID_SELECTED = "selected"
BID_ACCEPTED = "accepted"
BID_REJECTED = "rejected"
BID_EXPIRED = "expired"
BID_COUNTERED = "countered"
BID_MAX_REACHED = "maxReached"
BID_WITHDRAWN = "withdrawn"

_ACTIVE_ROOT = text("bid_count = 1 AND status NOT IN ('withdrawn', 'rejected')")

# Payment transaction statuses
TXN_PENDING = "pending"
TXN_REQUIRES_ACTION = "requires_action"
TXN_UNKNOWN = "unknown"
TXN_SUCCEEDED = "succeeded"
TXN_FAILED = "failed"
TXN_IN_FLIGHT = (TXN_PENDING, TXN_REQUIRES_ACTION, TXN_UNKNOWN)

TXN_PAYMENT = "payment"
TXN_REFUND = "refund"
TXN_PARTIAL_REFUND = "partial_refund"
TXN_REFUND_TYPES = (TXN_REFUND, TXN_PARTIAL_REFUND)

# Payout statuses
PAYOUT_PENDING = "pending"
PAYOUT_PROCESSING = "processing"
PAYOUT_COMPLETED = "completed"
PAYOUT_FAILED = "failed"


class Base(DeclarativeBase):
    pass


class PlatformSetting(Base):
    __tablename__ = "platform_settings"
    __table_args__ = _table_args()
    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Rider(Base):
    __tablename__ = "riders"
    __table_args__ = _table_args()
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[Optional[str]] = mapped_column(String(120), default=None)
    phone: Mapped[Optional[str]] = mapped_column(String(32), default=None)
    gateway_customer_id: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Driver(Base):
    __tablename__ = "drivers"
    __table_args__ = _table_args()
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[Optional[str]] = mapped_column(String(120), default=None)
    phone: Mapped[Optional[str]] = mapped_column(String(32), default=None)
    vehicle_type: Mapped[str] = mapped_column(String(16), default="standard")  # standard|wheelchair|stretcher
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    connected_account_id: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())


class PaymentMethod(Base):
    __tablename__ = "payment_methods"
    __table_args__ = _table_args(Index("ix_payment_methods_user", "user_id"))
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(36))
    gateway_payment_method_id: Mapped[str] = mapped_column(String(64))
    brand: Mapped[Optional[str]] = mapped_column(String(32), default=None)
    last4: Mapped[Optional[str]] = mapped_column(String(4), default=None)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Ride(Base):
    __tablename__ = "rides"
    __table_args__ = _table_args(
        Index("ix_rides_status_expires", "status", "expires_at"),
        Index("ix_rides_rider", "rider_id"),
    )
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    rider_id: Mapped[str] = mapped_column(String(36))
    driver_id: Mapped[Optional[str]] = mapped_column(String(36), default=None)
    # requested|bidding|scheduled|payment_pending|paid|en_route|arrived|in_progress|completed|cancelled|edit_pending
    status: Mapped[str] = mapped_column(String(16), default=RIDE_REQUESTED)
    pickup_address: Mapped[Optional[str]] = mapped_column(String(256), default=None)
    pickup_lat: Mapped[float] = mapped_column(Float)
    pickup_lon: Mapped[float] = mapped_column(Float)
    dropoff_address: Mapped[Optional[str]] = mapped_column(String(256), default=None)
    dropoff_lat: Mapped[float] = mapped_column(Float)
    dropoff_lon: Mapped[float] = mapped_column(Float)
    pickup_stairs: Mapped[str] = mapped_column(String(16), default="none")
    dropoff_stairs: Mapped[str] = mapped_column(String(16), default="none")
    scheduled_time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    estimated_distance: Mapped[Optional[float]] = mapped_column(Float, default=None)  # miles
    vehicle_type: Mapped[str] = mapped_column(String(16), default="standard")
    needs_ramp: Mapped[bool] = mapped_column(Boolean, default=False)
    needs_companion: Mapped[bool] = mapped_column(Boolean, default=False)
    needs_stair_chair: Mapped[bool] = mapped_column(Boolean, default=False)
    needs_wait_time: Mapped[bool] = mapped_column(Boolean, default=False)
    is_round_trip: Mapped[bool] = mapped_column(Boolean, default=False)
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False)
    urgency: Mapped[str] = mapped_column(String(16), default="standard")  # standard|urgent|emergency
    is_urgent: Mapped[bool] = mapped_column(Boolean, default=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rider_bid_cents: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    final_price_cents: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    promo_code: Mapped[Optional[str]] = mapped_column(String(32), default=None)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(String(256), default=None)
    is_late_cancellation: Mapped[bool] = mapped_column(Boolean, default=False)
    cancellation_fee_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Bid(Base):
    __tablename__ = "bids"
    __table_args__ = _table_args(
        # Chain position is unique: two concurrent counters cannot both become entry N.
        UniqueConstraint("root_bid_id", "bid_count", name="uq_bids_chain_position"),
        Index("ix_bids_ride", "ride_id"),
        Index("ix_bids_ride_driver", "ride_id", "driver_id"),
        # One live root bid per driver and ride.
        Index(
            "uq_bids_active_root",
            "ride_id",
            "driver_id",
            unique=True,
            sqlite_where=_ACTIVE_ROOT,
            postgresql_where=_ACTIVE_ROOT,
        ),
    )
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    ride_id: Mapped[str] = mapped_column(String(36), ForeignKey(_fk("rides.id")))
    driver_id: Mapped[str] = mapped_column(String(36))
    amount_cents: Mapped[int] = mapped_column(BigInteger)
    message: Mapped[Optional[str]] = mapped_column(String(512), default=None)
    # pending|selected|accepted|rejected|expired|countered|maxReached|withdrawn
    status: Mapped[str] = mapped_column(String(16), default=BID_PENDING)
    parent_bid_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey(_fk("bids.id")), nullable=True)
    root_bid_id: Mapped[str] = mapped_column(String(36))
    counter_party: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)  # rider|driver
    bid_count: Mapped[int] = mapped_column(Integer, default=1)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class RideEdit(Base):
    __tablename__ = "ride_edits"
    __table_args__ = _table_args(Index("ix_ride_edits_ride", "ride_id"))
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    ride_id: Mapped[str] = mapped_column(String(36), ForeignKey(_fk("rides.id")))
    rider_id: Mapped[str] = mapped_column(String(36))
    prior_status: Mapped[str] = mapped_column(String(16))
    prior_driver_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    scheduled_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    pickup_address: Mapped[Optional[str]] = mapped_column(String(256), default=None)
    dropoff_address: Mapped[Optional[str]] = mapped_column(String(256), default=None)
    needs_ramp: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    needs_companion: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    needs_stair_chair: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    needs_wait_time: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    rider_bid_cents: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    note: Mapped[Optional[str]] = mapped_column(String(512), default=None)
    status: Mapped[str] = mapped_column(String(16), default="pending")  # pending|accepted|rejected
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"
    __table_args__ = _table_args(Index("ix_payment_transactions_ride", "ride_id", "status"))
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    transaction_id: Mapped[str] = mapped_column(String(64), unique=True)
    ride_id: Mapped[str] = mapped_column(String(36), ForeignKey(_fk("rides.id")))
    user_id: Mapped[str] = mapped_column(String(36))
    payment_method_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    gateway_charge_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(120), unique=True)
    amount_cents: Mapped[int] = mapped_column(BigInteger)
    currency: Mapped[str] = mapped_column(String(3), default="usd")
    type: Mapped[str] = mapped_column(String(16), default="payment")  # payment|refund|partial_refund
    # pending|requires_action|unknown|succeeded|failed
    status: Mapped[str] = mapped_column(String(16), default=TXN_PENDING)
    client_secret: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    platform_fee_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    processing_fee_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    net_amount_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    admin_override: Mapped[bool] = mapped_column(Boolean, default=False)
    admin_notes: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    admin_user_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    # Refund rows point at the payment they return money from.
    original_transaction_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey(_fk("payment_transactions.id")), nullable=True)
    gateway_refund_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    failure_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    failure_message: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class DriverPayout(Base):
    __tablename__ = "driver_payouts"
    __table_args__ = _table_args()
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    ride_id: Mapped[str] = mapped_column(String(36), ForeignKey(_fk("rides.id")), unique=True)
    driver_id: Mapped[str] = mapped_column(String(36))
    total_cents: Mapped[int] = mapped_column(BigInteger)
    driver_amount_cents: Mapped[int] = mapped_column(BigInteger)
    platform_fee_cents: Mapped[int] = mapped_column(BigInteger)
    processing_fee_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    gateway_transfer_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    idempotency_key: Mapped[str] = mapped_column(String(120))
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(16), default=PAYOUT_PENDING)  # pending|processing|completed|failed
    failure_reason: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class GatewayEvent(Base):
    """Webhook events already applied, keyed by the gateway's event id."""

    __tablename__ = "gateway_events"
    __table_args__ = _table_args()
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    type: Mapped[str] = mapped_column(String(64))
    object_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    received_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())
