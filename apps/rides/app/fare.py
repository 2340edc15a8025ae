from __future__ import annotations

import math
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from .cache import TTLCache
from .errors import InvalidDistance
from .models import PlatformSetting, as_utc
from .settings import DEFAULT_PLATFORM_FEE_PERCENT, MAX_PLATFORM_FEE_PERCENT

PLATFORM_FEE_KEY = "platform_fee_percentage"

BASE_FARE = Decimal("45.00")
DISTANCE_RATE = Decimal("2.50")  # per mile
TAX_RATE = Decimal("0.08")
MIN_DISTANCE = 0.1
MAX_DISTANCE = 1000.0
BID_RANGE_LOW = Decimal("0.70")
BID_RANGE_HIGH = Decimal("1.30")
MULTI_RIDE_DISCOUNT = Decimal("0.95")
MIN_BID_DOLLARS = 10

VEHICLE_PREMIUMS = {
    "standard": Decimal("0"),
    "wheelchair": Decimal("25"),
    "stretcher": Decimal("50"),
}
STAIRS_FEES = {
    "none": Decimal("0"),
    "1-3": Decimal("8"),
    "4-10": Decimal("15"),
    "11+": Decimal("25"),
    "full_flight": Decimal("35"),
}
SERVICE_FEES = {
    "ramp": Decimal("15"),
    "companion": Decimal("20"),
    "stair_chair": Decimal("30"),
    "wait_time": Decimal("35"),
}
TIME_MULTIPLIERS = {
    "morning": Decimal("1.0"),
    "afternoon": Decimal("1.0"),
    "evening": Decimal("1.1"),
    "night": Decimal("1.25"),
}
DAY_MULTIPLIERS = {
    "weekday": Decimal("1.0"),
    "weekend": Decimal("1.15"),
}
URGENCY_MULTIPLIERS = {
    "standard": Decimal("1.0"),
    "urgent": Decimal("1.25"),
    "emergency": Decimal("1.5"),
}

_CENT = Decimal("0.01")

VehicleType = Literal["standard", "wheelchair", "stretcher"]
StairsCode = Literal["none", "1-3", "4-10", "11+", "full_flight"]
TimeOfDay = Literal["morning", "afternoon", "evening", "night"]
DayOfWeek = Literal["weekday", "weekend"]
Urgency = Literal["standard", "urgent", "emergency"]


class FareParams(BaseModel):
    distance: Optional[float] = Field(default=None, description="estimated distance in miles")
    vehicle_type: VehicleType = "standard"
    pickup_stairs: StairsCode = "none"
    dropoff_stairs: StairsCode = "none"
    needs_ramp: bool = False
    needs_companion: bool = False
    needs_stair_chair: bool = False
    needs_wait_time: bool = False
    is_round_trip: bool = False
    is_recurring: bool = False
    time_of_day: TimeOfDay = "afternoon"
    day_of_week: DayOfWeek = "weekday"
    urgency: Urgency = "standard"


class BidRange(BaseModel):
    min: int
    max: int


class FareBreakdown(BaseModel):
    base_fare: float
    distance_fare: float
    vehicle_premium: float
    stairs_fee: float
    service_fees: float
    premium_multiplier: float
    premium_amount: float
    round_trip_discount: float
    recurring_discount: float
    subtotal: float
    platform_fee_percent: float
    platform_fee: float
    tax: float
    total: float
    total_cents: int
    suggested_bid_range: BidRange


def _money(value: Decimal) -> Decimal:
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def _check_distance(distance: Optional[float]) -> Decimal:
    if distance is None:
        return Decimal("0")
    try:
        d = float(distance)
    except (TypeError, ValueError):
        raise InvalidDistance()
    if math.isnan(d) or d < MIN_DISTANCE or d > MAX_DISTANCE:
        raise InvalidDistance(f"distance must be between {MIN_DISTANCE} and {MAX_DISTANCE:g} miles, got {distance}")
    return Decimal(str(d))


def calculate_fare(params: FareParams, platform_fee_percent: float | None = None) -> FareBreakdown:
    """
    Price a ride from its attributes.

    Order of operations: the pre-premium subtotal gets the round-trip and
    recurring discounts, the time/day/urgency premium (computed on the
    undiscounted subtotal) is added back, the platform fee is charged on that
    and tax on subtotal + platform fee. Arithmetic is decimal and carried at
    full precision; only the reported fields and the total are rounded to
    cents, so equal inputs always give equal output.
    """
    distance = _check_distance(params.distance)
    fee_pct = Decimal(str(DEFAULT_PLATFORM_FEE_PERCENT if platform_fee_percent is None else platform_fee_percent))

    distance_fare = distance * DISTANCE_RATE
    vehicle_premium = VEHICLE_PREMIUMS[params.vehicle_type]
    stairs_fee = STAIRS_FEES[params.pickup_stairs] + STAIRS_FEES[params.dropoff_stairs]
    service_fees = Decimal("0")
    if params.needs_ramp:
        service_fees += SERVICE_FEES["ramp"]
    if params.needs_companion:
        service_fees += SERVICE_FEES["companion"]
    if params.needs_stair_chair:
        service_fees += SERVICE_FEES["stair_chair"]
    if params.needs_wait_time:
        service_fees += SERVICE_FEES["wait_time"]

    base_subtotal = BASE_FARE + distance_fare + vehicle_premium + stairs_fee + service_fees

    multiplier = (
        TIME_MULTIPLIERS[params.time_of_day]
        * DAY_MULTIPLIERS[params.day_of_week]
        * URGENCY_MULTIPLIERS[params.urgency]
    )
    premium_amount = base_subtotal * (multiplier - 1)

    discounted = base_subtotal
    round_trip_discount = Decimal("0")
    recurring_discount = Decimal("0")
    if params.is_round_trip:
        after = discounted * MULTI_RIDE_DISCOUNT
        round_trip_discount = discounted - after
        discounted = after
    if params.is_recurring:
        after = discounted * MULTI_RIDE_DISCOUNT
        recurring_discount = discounted - after
        discounted = after

    subtotal = discounted + premium_amount
    platform_fee = subtotal * fee_pct / 100
    tax = (subtotal + platform_fee) * TAX_RATE
    total = _money(subtotal + platform_fee + tax)

    return FareBreakdown(
        base_fare=float(BASE_FARE),
        distance_fare=float(_money(distance_fare)),
        vehicle_premium=float(vehicle_premium),
        stairs_fee=float(stairs_fee),
        service_fees=float(service_fees),
        premium_multiplier=float(multiplier),
        premium_amount=float(_money(premium_amount)),
        round_trip_discount=float(_money(round_trip_discount)),
        recurring_discount=float(_money(recurring_discount)),
        subtotal=float(_money(subtotal)),
        platform_fee_percent=float(fee_pct),
        platform_fee=float(_money(platform_fee)),
        tax=float(_money(tax)),
        total=float(total),
        total_cents=int(total * 100),
        suggested_bid_range=BidRange(
            min=math.floor(total * BID_RANGE_LOW),
            max=math.ceil(total * BID_RANGE_HIGH),
        ),
    )


def time_of_day_for(when: Optional[datetime]) -> str:
    if when is None:
        return "afternoon"
    hour = when.hour
    if 6 <= hour < 12:
        return "morning"
    if 12 <= hour < 18:
        return "afternoon"
    if 18 <= hour < 22:
        return "evening"
    return "night"


def day_of_week_for(when: Optional[datetime]) -> str:
    if when is None:
        return "weekday"
    return "weekend" if when.weekday() >= 5 else "weekday"


def fare_params_for_ride(ride, local_time: Optional[datetime] = None) -> FareParams:
    """Fare inputs for a stored ride; ``local_time`` is the pickup time in the rider's own offset when known."""
    when = local_time or as_utc(ride.scheduled_time)
    return FareParams(
        distance=ride.estimated_distance or None,
        vehicle_type=ride.vehicle_type or "standard",
        pickup_stairs=ride.pickup_stairs or "none",
        dropoff_stairs=ride.dropoff_stairs or "none",
        needs_ramp=bool(ride.needs_ramp),
        needs_companion=bool(ride.needs_companion),
        needs_stair_chair=bool(ride.needs_stair_chair),
        needs_wait_time=bool(ride.needs_wait_time),
        is_round_trip=bool(ride.is_round_trip),
        is_recurring=bool(ride.is_recurring),
        time_of_day=time_of_day_for(when),
        day_of_week=day_of_week_for(when),
        urgency=ride.urgency or "standard",
    )


def calculate_bid_range(base_price: float, flexibility: float = 0.30) -> BidRange:
    base = Decimal(str(base_price))
    flex = Decimal(str(flexibility))
    return BidRange(
        min=max(MIN_BID_DOLLARS, math.floor(base * (1 - flex))),
        max=math.ceil(base * (1 + flex)),
    )


def validate_bid_amount(amount: float, base_price: float, flexibility: float = 0.30) -> bool:
    rng = calculate_bid_range(base_price, flexibility)
    return rng.min <= amount <= rng.max


def split_platform_fee(total_cents: int, fee_percent: float) -> tuple[int, int]:
    """Return (driver_cents, platform_fee_cents); the two always add up to total_cents."""
    fee = int((Decimal(int(total_cents)) * Decimal(str(fee_percent)) / 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    fee = min(max(fee, 0), int(total_cents))
    return int(total_cents) - fee, fee


def driver_earnings_breakdown(total_cents: int, fee_percent: float) -> dict:
    driver_cents, fee_cents = split_platform_fee(total_cents, fee_percent)
    return {
        "total_cents": int(total_cents),
        "platform_fee_cents": fee_cents,
        "driver_earnings_cents": driver_cents,
        "platform_fee_percent": float(fee_percent),
    }


def _parse_fee_percent(raw: Optional[str]) -> float:
    try:
        pct = float(raw) if raw is not None else DEFAULT_PLATFORM_FEE_PERCENT
    except ValueError:
        return DEFAULT_PLATFORM_FEE_PERCENT
    if math.isnan(pct) or pct < 0 or pct > MAX_PLATFORM_FEE_PERCENT:
        return DEFAULT_PLATFORM_FEE_PERCENT
    return pct


def get_platform_fee_percent(s: Session, cache: TTLCache | None = None) -> float:
    """Platform fee percentage from platform_settings, falling back to the configured default."""

    def _load() -> float:
        row = s.get(PlatformSetting, PLATFORM_FEE_KEY)
        return _parse_fee_percent(row.value if row else None)

    if cache is None:
        return _load()
    return cache.get_or_load(("setting", PLATFORM_FEE_KEY), _load)
