import json
import logging
import uuid
from typing import Any, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from medride_shared import (
    RequestIDMiddleware,
    add_standard_health,
    background_lifespan,
    configure_cors,
    get_request_id,
    set_request_id,
    setup_json_logging,
)

from . import bids as bid_ledger
from . import payments, payouts, rides
from .auth import ROLE_DRIVER, ROLE_RIDER, Actor, current_actor, require_admin, require_internal
from .cache import TTLCache
from .db import SessionLocal, get_session, get_session_factory, init_db, ping_db
from .errors import (
    DriverNotFound,
    Forbidden,
    MedRideError,
    PayoutNotFound,
    RiderNotFound,
)
from .fare import PLATFORM_FEE_KEY, FareBreakdown, FareParams, calculate_fare, get_platform_fee_percent
from .gateway import PaymentGateway, get_gateway
from .models import Driver, DriverPayout, PaymentMethod, PlatformSetting, Ride, Rider
from .notify import Notifier, get_notifier
from .schemas import (
    AcceptOut,
    AdminChargeIn,
    BidCreate,
    BidOut,
    CancelIn,
    CancelOut,
    CounterIn,
    DriverIn,
    DriverOut,
    PaymentMethodIn,
    PaymentMethodOut,
    PaymentResult,
    PayoutOut,
    RefundIn,
    ResolveEditIn,
    RideCreate,
    RideEditIn,
    RideEditOut,
    RideOut,
    RiderIn,
    RiderOut,
    SettingsIn,
    SettingsOut,
    StatusIn,
    TransactionOut,
)
from .settings import (
    ALLOWED_ORIGINS,
    GATEWAY_WEBHOOK_SECRET,
    SETTINGS_CACHE_MAX_ITEMS,
    SETTINGS_CACHE_TTL_SECS,
    is_prod_env,
)
from .webhooks import WebhookInbox, verify_signature

_errors_log = logging.getLogger("medride.errors")
_log = logging.getLogger("medride.api")

inbox = WebhookInbox()


def _process_gateway_event(event: dict) -> None:
    set_request_id(f"evt-{event.get('id')}")
    cache = app.state.cache
    with SessionLocal() as s:
        try:
            payments.handle_gateway_event(
                s,
                event,
                on_paid=lambda ride_id: payouts.settle_ride(SessionLocal, ride_id, cache=cache),
                gateway=get_gateway(),
            )
        except IntegrityError:
            # Same event applied concurrently.
            s.rollback()
            _log.info("gateway event %s already applied", event.get("id"))


async def _drain_webhooks() -> None:
    await inbox.drain_forever(_process_gateway_event)


async def _sweep_expired_rides() -> None:
    await rides.expiry_sweep_forever(SessionLocal)


app = FastAPI(
    title="MedRide Marketplace API",
    version="0.1.0",
    lifespan=background_lifespan(init_db, [_drain_webhooks, _sweep_expired_rides]),
)
setup_json_logging(service="medride")
app.add_middleware(RequestIDMiddleware)
configure_cors(app, ALLOWED_ORIGINS)
add_standard_health(app, checks={"db": ping_db})
app.state.cache = TTLCache(max_items=SETTINGS_CACHE_MAX_ITEMS, ttl_secs=SETTINGS_CACHE_TTL_SECS)

router = APIRouter()


def get_cache(request: Request) -> TTLCache:
    return request.app.state.cache


# Error mapping


@app.exception_handler(MedRideError)
async def _domain_error_handler(request: Request, exc: MedRideError):
    payload: dict[str, Any] = exc.to_dict()
    if exc.status_code >= 500:
        _errors_log.warning("request failed: %s", exc.kind, extra={"path": request.url.path})
        payload["request_id"] = get_request_id()
    return JSONResponse(status_code=exc.status_code, content=payload)


@app.exception_handler(RequestValidationError)
async def _validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in exc.errors()]
    return JSONResponse(status_code=400, content={"error": "ValidationError", "detail": errors})


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    rid = get_request_id()
    _errors_log.exception("unhandled exception", extra={"path": request.url.path})
    if is_prod_env():
        return JSONResponse(status_code=500, content={"error": "InternalError", "detail": "internal error", "request_id": rid})
    # dev/test: keep a useful error message for debugging.
    return JSONResponse(status_code=500, content={"error": "InternalError", "detail": str(exc), "request_id": rid})


def _payout_scheduler(background: BackgroundTasks, make_session: sessionmaker, gateway: PaymentGateway, notifier: Notifier, cache: TTLCache):
    def _schedule(ride_id: str) -> None:
        background.add_task(payouts.settle_ride, make_session, ride_id, gateway, notifier, cache)

    return _schedule


# Riders, drivers, payment methods


def _self_or_admin_id(actor: Actor, role: str, requested: Optional[str]) -> str:
    if actor.is_admin:
        return requested or str(uuid.uuid4())
    if actor.role != role:
        raise Forbidden(f"only {role}s can register as {role}")
    if requested and requested != actor.user_id:
        raise Forbidden("cannot register another user")
    return actor.user_id


@router.post("/riders", response_model=RiderOut)
def upsert_rider(body: RiderIn, actor: Actor = Depends(current_actor), s: Session = Depends(get_session)):
    rid = _self_or_admin_id(actor, ROLE_RIDER, body.id)
    rider = s.get(Rider, rid) or Rider(id=rid)
    rider.name = body.name if body.name is not None else rider.name
    rider.phone = body.phone if body.phone is not None else rider.phone
    if body.gateway_customer_id is not None:
        rider.gateway_customer_id = body.gateway_customer_id
    s.add(rider)
    s.commit()
    s.refresh(rider)
    return rider


@router.post("/drivers", response_model=DriverOut)
def upsert_driver(body: DriverIn, actor: Actor = Depends(current_actor), s: Session = Depends(get_session)):
    did = _self_or_admin_id(actor, ROLE_DRIVER, body.id)
    driver = s.get(Driver, did) or Driver(id=did, is_active=True)
    driver.name = body.name if body.name is not None else driver.name
    driver.phone = body.phone if body.phone is not None else driver.phone
    driver.vehicle_type = body.vehicle_type
    if body.connected_account_id is not None:
        driver.connected_account_id = body.connected_account_id
    s.add(driver)
    s.commit()
    s.refresh(driver)
    return driver


@router.post("/riders/{rider_id}/payment_methods", response_model=PaymentMethodOut)
def add_payment_method(
    rider_id: str,
    body: PaymentMethodIn,
    actor: Actor = Depends(current_actor),
    s: Session = Depends(get_session),
    cache: TTLCache = Depends(get_cache),
):
    if not (actor.is_admin or actor.is_user(rider_id)):
        raise Forbidden()
    if not s.get(Rider, rider_id):
        raise RiderNotFound()
    if body.is_default:
        s.execute(
            update(PaymentMethod)
            .where(PaymentMethod.user_id == rider_id, PaymentMethod.is_default.is_(True))
            .values(is_default=False)
            .execution_options(synchronize_session=False)
        )
    pm = PaymentMethod(
        id=str(uuid.uuid4()),
        user_id=rider_id,
        gateway_payment_method_id=body.gateway_payment_method_id,
        brand=body.brand,
        last4=body.last4,
        is_default=body.is_default,
        is_active=True,
    )
    s.add(pm)
    s.commit()
    s.refresh(pm)
    cache.invalidate(("default_pm", rider_id))
    return pm


# Fare + settings


@router.post("/fare/quote", response_model=FareBreakdown)
def fare_quote(
    params: FareParams,
    request: Request,
    s: Session = Depends(get_session),
    cache: TTLCache = Depends(get_cache),
):
    require_internal(request)
    return calculate_fare(params, get_platform_fee_percent(s, cache))


@router.get("/settings", response_model=SettingsOut)
def get_settings(actor: Actor = Depends(current_actor), s: Session = Depends(get_session), cache: TTLCache = Depends(get_cache)):
    require_admin(actor)
    return SettingsOut(platform_fee_percentage=get_platform_fee_percent(s, cache))


@router.post("/settings", response_model=SettingsOut)
def update_settings(
    body: SettingsIn,
    actor: Actor = Depends(current_actor),
    s: Session = Depends(get_session),
    cache: TTLCache = Depends(get_cache),
):
    require_admin(actor)
    pct = float(body.platform_fee_percentage)
    row = s.get(PlatformSetting, PLATFORM_FEE_KEY) or PlatformSetting(key=PLATFORM_FEE_KEY)
    row.value = f"{pct:g}"
    s.add(row)
    s.commit()
    cache.invalidate(("setting", PLATFORM_FEE_KEY))
    _log.info("platform fee updated", extra={"platform_fee_percentage": pct, "by": actor.user_id})
    return SettingsOut(platform_fee_percentage=pct)


# Rides


@router.post("/rides", response_model=RideOut)
def request_ride(
    body: RideCreate,
    actor: Actor = Depends(current_actor),
    s: Session = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
    cache: TTLCache = Depends(get_cache),
):
    if actor.role != ROLE_RIDER:
        raise Forbidden("only riders can request rides")
    return rides.create_ride(s, actor.user_id, body, notifier=notifier, cache=cache)


@router.get("/rides/{ride_id}", response_model=RideOut)
def get_ride(ride_id: str, actor: Actor = Depends(current_actor), s: Session = Depends(get_session)):
    return rides.get_ride(s, ride_id, actor)


@router.post("/rides/{ride_id}/cancel", response_model=CancelOut)
def cancel_ride(
    ride_id: str,
    body: CancelIn,
    actor: Actor = Depends(current_actor),
    s: Session = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
):
    res = rides.cancel_ride(s, ride_id, actor, reason=body.reason, notifier=notifier)
    return CancelOut(
        ride=RideOut.model_validate(res.ride),
        is_late_cancellation=res.is_late_cancellation,
        cancellation_fee_cents=res.cancellation_fee_cents,
    )


@router.post("/rides/{ride_id}/status", response_model=RideOut)
def update_ride_status(
    ride_id: str,
    body: StatusIn,
    actor: Actor = Depends(current_actor),
    s: Session = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
):
    return rides.update_ride_status(s, ride_id, actor, body.status, notifier=notifier)


@router.post("/rides/{ride_id}/edit", response_model=RideEditOut)
def propose_ride_edit(
    ride_id: str,
    body: RideEditIn,
    actor: Actor = Depends(current_actor),
    s: Session = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
):
    return rides.propose_ride_edit(s, ride_id, actor, body, notifier=notifier)


@router.post("/ride_edits/{edit_id}/resolve", response_model=RideOut)
def resolve_ride_edit(
    edit_id: str,
    body: ResolveEditIn,
    actor: Actor = Depends(current_actor),
    s: Session = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
):
    _edit, ride = rides.resolve_ride_edit(s, edit_id, actor, body.accept, notifier=notifier)
    return ride


@router.get("/rides/{ride_id}/bids", response_model=List[BidOut])
def list_ride_bids(ride_id: str, actor: Actor = Depends(current_actor), s: Session = Depends(get_session)):
    return [bid_ledger.bid_out(b) for b in bid_ledger.list_ride_bids(s, ride_id, actor)]


# Bids


@router.post("/bids", response_model=BidOut)
def create_bid(
    body: BidCreate,
    actor: Actor = Depends(current_actor),
    s: Session = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
):
    if actor.role != ROLE_DRIVER:
        raise Forbidden("only drivers can bid")
    bid = bid_ledger.create_bid(s, actor.user_id, body.ride_id, body.amount_cents, message=body.message, notifier=notifier)
    return bid_ledger.bid_out(bid)


@router.post("/bids/{bid_id}/accept", response_model=AcceptOut)
def accept_bid(
    bid_id: str,
    background: BackgroundTasks,
    actor: Actor = Depends(current_actor),
    s: Session = Depends(get_session),
    make_session: sessionmaker = Depends(get_session_factory),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
    cache: TTLCache = Depends(get_cache),
):
    bid, ride = bid_ledger.accept_bid(s, bid_id, actor, notifier=notifier)
    # Acceptance is committed; a payment problem leaves the ride scheduled and retryable.
    try:
        payment = payments.process_ride_payment(
            s,
            ride.id,
            gateway=gateway,
            notifier=notifier,
            cache=cache,
            on_paid=_payout_scheduler(background, make_session, gateway, notifier, cache),
        )
    except MedRideError as e:
        _log.warning("automatic payment after acceptance failed: %s", e.kind, extra={"ride_id": ride.id})
        payment = PaymentResult(success=False, error=e.kind, message=e.message)
    s.refresh(ride)
    return AcceptOut(bid=bid_ledger.bid_out(bid), ride=RideOut.model_validate(ride), payment=payment)


@router.post("/bids/{bid_id}/counter", response_model=BidOut)
def counter_bid(
    bid_id: str,
    body: CounterIn,
    actor: Actor = Depends(current_actor),
    s: Session = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
):
    bid = bid_ledger.counter_offer(s, bid_id, body.counter_party, body.amount_cents, actor, message=body.message, notifier=notifier)
    return bid_ledger.bid_out(bid)


@router.delete("/bids/{bid_id}", response_model=BidOut)
def withdraw_bid(
    bid_id: str,
    actor: Actor = Depends(current_actor),
    s: Session = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
):
    return bid_ledger.bid_out(bid_ledger.withdraw_bid(s, bid_id, actor, notifier=notifier))


@router.get("/bids/{bid_id}/history", response_model=List[BidOut])
def bid_history(bid_id: str, actor: Actor = Depends(current_actor), s: Session = Depends(get_session)):
    chain = bid_ledger.get_bid_history(s, bid_id)
    ride = s.get(Ride, chain[0].ride_id)
    if not (actor.is_admin or actor.is_user(chain[0].driver_id) or (ride is not None and actor.is_user(ride.rider_id))):
        raise Forbidden()
    return [bid_ledger.bid_out(b) for b in chain]


# Payments


def _check_payer(s: Session, ride_id: str, actor: Actor) -> None:
    ride = rides.get_ride(s, ride_id, actor)
    if not (actor.is_admin or actor.is_user(ride.rider_id)):
        raise Forbidden("only the rider can pay for this ride")


@router.post("/rides/{ride_id}/process-payment", response_model=PaymentResult)
def process_payment(
    ride_id: str,
    background: BackgroundTasks,
    actor: Actor = Depends(current_actor),
    s: Session = Depends(get_session),
    make_session: sessionmaker = Depends(get_session_factory),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
    cache: TTLCache = Depends(get_cache),
):
    _check_payer(s, ride_id, actor)
    return payments.process_ride_payment(
        s,
        ride_id,
        gateway=gateway,
        notifier=notifier,
        cache=cache,
        on_paid=_payout_scheduler(background, make_session, gateway, notifier, cache),
    )


@router.post("/rides/{ride_id}/retry-payment", response_model=PaymentResult)
def retry_payment(
    ride_id: str,
    background: BackgroundTasks,
    actor: Actor = Depends(current_actor),
    s: Session = Depends(get_session),
    make_session: sessionmaker = Depends(get_session_factory),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
    cache: TTLCache = Depends(get_cache),
):
    _check_payer(s, ride_id, actor)
    return payments.retry_payment(
        s,
        ride_id,
        gateway=gateway,
        notifier=notifier,
        cache=cache,
        on_paid=_payout_scheduler(background, make_session, gateway, notifier, cache),
    )


@router.post("/payments/{transaction_id}/refund", response_model=TransactionOut)
def refund_payment(
    transaction_id: str,
    body: RefundIn,
    actor: Actor = Depends(current_actor),
    s: Session = Depends(get_session),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
):
    require_admin(actor)
    return payments.refund_payment(
        s,
        transaction_id,
        amount_cents=body.amount_cents,
        reason=body.reason,
        gateway=gateway,
        notifier=notifier,
        admin_id=actor.user_id,
    )


@router.post("/rides/{ride_id}/admin-charge", response_model=PaymentResult)
def admin_charge(
    ride_id: str,
    body: AdminChargeIn,
    background: BackgroundTasks,
    actor: Actor = Depends(current_actor),
    s: Session = Depends(get_session),
    make_session: sessionmaker = Depends(get_session_factory),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
    cache: TTLCache = Depends(get_cache),
):
    require_admin(actor)
    return payments.admin_override_charge(
        s,
        ride_id,
        actor.user_id,
        amount_cents=body.amount_cents,
        notes=body.notes,
        notifier=notifier,
        cache=cache,
        on_paid=_payout_scheduler(background, make_session, gateway, notifier, cache),
    )


@router.post("/webhooks/gateway", status_code=202)
async def gateway_webhook(request: Request, x_gateway_signature: Optional[str] = Header(default=None, alias="X-Gateway-Signature")):
    body = await request.body()
    if GATEWAY_WEBHOOK_SECRET:
        if not verify_signature(body, x_gateway_signature, GATEWAY_WEBHOOK_SECRET):
            raise Forbidden("invalid signature")
    elif is_prod_env():
        raise Forbidden("webhook secret not configured")
    try:
        event = json.loads(body or b"{}")
    except ValueError:
        return JSONResponse(status_code=400, content={"error": "ValidationError", "detail": "invalid JSON"})
    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        return JSONResponse(status_code=400, content={"error": "ValidationError", "detail": "event id and type required"})
    if not inbox.put(event):
        return JSONResponse(status_code=503, content={"error": "Busy", "detail": "retry later"})
    return {"received": True, "id": event["id"]}


# Payouts


@router.get("/rides/{ride_id}/payout", response_model=PayoutOut)
def ride_payout(ride_id: str, actor: Actor = Depends(current_actor), s: Session = Depends(get_session)):
    payout = payouts.get_driver_payout_by_ride(s, ride_id)
    if payout is None:
        raise PayoutNotFound()
    if not (actor.is_admin or actor.is_user(payout.driver_id)):
        raise Forbidden()
    return payout


@router.post("/payouts/{payout_id}/retry", response_model=PayoutOut)
def retry_payout(
    payout_id: str,
    actor: Actor = Depends(current_actor),
    s: Session = Depends(get_session),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
):
    payout = s.get(DriverPayout, payout_id)
    if payout is None:
        raise PayoutNotFound()
    if not (actor.is_admin or actor.is_user(payout.driver_id)):
        raise Forbidden()
    return payouts.retry_failed_payout(s, payout_id, gateway=gateway, notifier=notifier)


@router.get("/drivers/{driver_id}/payouts", response_model=List[PayoutOut])
def driver_payouts(driver_id: str, limit: int = 10, actor: Actor = Depends(current_actor), s: Session = Depends(get_session)):
    if not (actor.is_admin or actor.is_user(driver_id)):
        raise Forbidden()
    if not s.get(Driver, driver_id):
        raise DriverNotFound()
    return payouts.list_driver_payouts(s, driver_id, limit=limit)


app.include_router(router)
