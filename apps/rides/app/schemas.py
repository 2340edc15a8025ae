from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .fare import StairsCode, Urgency, VehicleType


class RiderIn(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    gateway_customer_id: Optional[str] = None


class RiderOut(BaseModel):
    id: str
    name: Optional[str] = None
    phone: Optional[str] = None
    gateway_customer_id: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)


class DriverIn(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    vehicle_type: VehicleType = "standard"
    connected_account_id: Optional[str] = None


class DriverOut(BaseModel):
    id: str
    name: Optional[str] = None
    phone: Optional[str] = None
    vehicle_type: str
    is_active: bool
    connected_account_id: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)


class PaymentMethodIn(BaseModel):
    gateway_payment_method_id: str = Field(min_length=1, max_length=64)
    brand: Optional[str] = None
    last4: Optional[str] = Field(default=None, max_length=4)
    is_default: bool = True


class PaymentMethodOut(BaseModel):
    id: str
    user_id: str
    gateway_payment_method_id: str
    brand: Optional[str] = None
    last4: Optional[str] = None
    is_default: bool
    is_active: bool
    model_config = ConfigDict(from_attributes=True)


class RideCreate(BaseModel):
    pickup_address: Optional[str] = None
    pickup_lat: float
    pickup_lon: float
    dropoff_address: Optional[str] = None
    dropoff_lat: float
    dropoff_lon: float
    scheduled_time: datetime
    estimated_distance: Optional[float] = None
    vehicle_type: VehicleType = "standard"
    pickup_stairs: StairsCode = "none"
    dropoff_stairs: StairsCode = "none"
    needs_ramp: bool = False
    needs_companion: bool = False
    needs_stair_chair: bool = False
    needs_wait_time: bool = False
    is_round_trip: bool = False
    is_recurring: bool = False
    urgency: Urgency = "standard"
    is_urgent: bool = False
    rider_bid_cents: Optional[int] = Field(default=None, gt=0)
    promo_code: Optional[str] = Field(default=None, max_length=32)
    expires_at: Optional[datetime] = None


class RideOut(BaseModel):
    id: str
    rider_id: str
    driver_id: Optional[str] = None
    status: str
    pickup_address: Optional[str] = None
    pickup_lat: float
    pickup_lon: float
    dropoff_address: Optional[str] = None
    dropoff_lat: float
    dropoff_lon: float
    scheduled_time: datetime
    estimated_distance: Optional[float] = None
    vehicle_type: str
    pickup_stairs: str
    dropoff_stairs: str
    needs_ramp: bool
    needs_companion: bool
    needs_stair_chair: bool
    needs_wait_time: bool
    is_round_trip: bool
    is_recurring: bool
    urgency: str
    is_urgent: bool
    expires_at: Optional[datetime] = None
    rider_bid_cents: Optional[int] = None
    final_price_cents: Optional[int] = None
    promo_code: Optional[str] = None
    cancellation_reason: Optional[str] = None
    is_late_cancellation: bool = False
    cancellation_fee_cents: int = 0
    model_config = ConfigDict(from_attributes=True)


class BidCreate(BaseModel):
    ride_id: str
    amount_cents: int
    message: Optional[str] = Field(default=None, max_length=512)


class CounterIn(BaseModel):
    amount_cents: int
    counter_party: Literal["rider", "driver"]
    message: Optional[str] = Field(default=None, max_length=512)


class BidOut(BaseModel):
    id: str
    ride_id: str
    driver_id: str
    amount_cents: int
    message: Optional[str] = None
    status: str
    parent_bid_id: Optional[str] = None
    root_bid_id: str
    counter_party: Optional[str] = None
    bid_count: int
    awaiting: Optional[str] = None
    created_at: Optional[datetime] = None


class CancelIn(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=256)


class CancelOut(BaseModel):
    ride: RideOut
    is_late_cancellation: bool
    cancellation_fee_cents: int


class StatusIn(BaseModel):
    status: Literal["en_route", "arrived", "in_progress", "completed"]


class RideEditIn(BaseModel):
    scheduled_time: Optional[datetime] = None
    pickup_address: Optional[str] = None
    dropoff_address: Optional[str] = None
    needs_ramp: Optional[bool] = None
    needs_companion: Optional[bool] = None
    needs_stair_chair: Optional[bool] = None
    needs_wait_time: Optional[bool] = None
    rider_bid_cents: Optional[int] = Field(default=None, gt=0)
    note: Optional[str] = Field(default=None, max_length=512)


class RideEditOut(BaseModel):
    id: str
    ride_id: str
    rider_id: str
    prior_status: str
    prior_driver_id: Optional[str] = None
    scheduled_time: Optional[datetime] = None
    pickup_address: Optional[str] = None
    dropoff_address: Optional[str] = None
    needs_ramp: Optional[bool] = None
    needs_companion: Optional[bool] = None
    needs_stair_chair: Optional[bool] = None
    needs_wait_time: Optional[bool] = None
    rider_bid_cents: Optional[int] = None
    note: Optional[str] = None
    status: str
    model_config = ConfigDict(from_attributes=True)


class ResolveEditIn(BaseModel):
    accept: bool


class PaymentResult(BaseModel):
    success: bool
    status: Optional[str] = None
    transaction_id: Optional[str] = None
    ride_status: Optional[str] = None
    client_secret: Optional[str] = None
    requires_action: bool = False
    error: Optional[str] = None
    message: Optional[str] = None
    retryable: bool = False


class TransactionOut(BaseModel):
    transaction_id: str
    ride_id: str
    user_id: str
    type: str
    status: str
    amount_cents: int
    currency: str
    reason: Optional[str] = None
    failure_code: Optional[str] = None
    admin_override: bool = False
    created_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class RefundIn(BaseModel):
    # Omitted: refund whatever is still refundable.
    amount_cents: Optional[int] = Field(default=None, gt=0)
    reason: Optional[str] = Field(default=None, max_length=256)


class AdminChargeIn(BaseModel):
    amount_cents: Optional[int] = Field(default=None, gt=0)
    notes: Optional[str] = Field(default=None, max_length=512)


class AcceptOut(BaseModel):
    bid: BidOut
    ride: RideOut
    payment: Optional[PaymentResult] = None


class PayoutOut(BaseModel):
    id: str
    ride_id: str
    driver_id: str
    total_cents: int
    driver_amount_cents: int
    platform_fee_cents: int
    processing_fee_cents: int
    gateway_transfer_id: Optional[str] = None
    attempts: int
    status: str
    failure_reason: Optional[str] = None
    processed_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class SettingsIn(BaseModel):
    platform_fee_percentage: float = Field(ge=0, le=50)


class SettingsOut(BaseModel):
    platform_fee_percentage: float
