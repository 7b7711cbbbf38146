from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, NoReturn

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request, status
from jsonschema import ValidationError

from .admin import config as admin_config
from .admin import health as admin_health
from .auction.errors import (
    AuctionError,
    BidNotFound,
    BookingNotFound,
    InvalidBid,
    InvalidBooking,
    StorageContention,
)
from .auction.manager import AuctionManager, AuctionStatus, DriverOffer
from .auction.models import Bid, Booking, Location
from .auction.notify import BidNotifier
from .auction.scheduler import ExpiryScheduler
from .config import ServerConfig, get_server_config
from .ledger.apply import AuctionLedger
from .storage import build_storage
from .transport.timestamps import format_optional, format_timestamp
from .validation.validator import SchemaRegistry, get_schema_registry


@asynccontextmanager
async def lifespan(app: FastAPI):
    server_config = get_server_config()
    schema_registry = get_schema_registry()
    storage = build_storage(server_config.storage)
    ledger = AuctionLedger(storage, max_attempts=server_config.storage.max_attempts)
    notifier = BidNotifier(
        backend=server_config.notifications.backend,
        options=dict(server_config.notifications.options),
    )
    scheduler = ExpiryScheduler()
    manager = AuctionManager(
        ledger,
        notifier,
        server_config.auction,
        scheduler=scheduler,
    )
    await manager.recover()

    app.state.server_config = server_config
    app.state.schema_registry = schema_registry
    app.state.storage = storage
    app.state.ledger = ledger
    app.state.notifier = notifier
    app.state.scheduler = scheduler
    app.state.auction_manager = manager
    app.state.start_time = datetime.now(timezone.utc)

    yield

    await scheduler.shutdown()
    await notifier.close()
    close_storage = getattr(storage, "close", None)
    if close_storage is not None:
        await close_storage()


app = FastAPI(
    title="Ride Bid Auction Service",
    version="1.0.0",
    docs_url="/docs",
    lifespan=lifespan,
)

app.include_router(admin_health.router)
app.include_router(admin_config.router)


# Dependency helpers ---------------------------------------------------------


def get_server_settings(request: Request) -> ServerConfig:
    return request.app.state.server_config


def get_schema_service(request: Request) -> SchemaRegistry:
    return request.app.state.schema_registry


def get_auction_manager(request: Request) -> AuctionManager:
    return request.app.state.auction_manager


# Routes ---------------------------------------------------------------------


@app.get("/", tags=["meta"])
async def root(settings: ServerConfig = Depends(get_server_settings)) -> dict[str, Any]:
    return {
        "service": "ride-auction",
        "version": app.version,
        "auction": {
            "window_seconds": settings.auction.window_seconds,
            "bid_ttl_seconds": settings.auction.bid_ttl_seconds,
            "auto_resolve_on_expiry": settings.auction.auto_resolve_on_expiry,
        },
        "storage_backend": settings.storage.backend,
    }


@app.get("/ping", tags=["meta"])
async def ping() -> dict[str, Any]:
    return {"status": "ok", "version": app.version}


@app.post("/bookings", tags=["bookings"], status_code=status.HTTP_201_CREATED)
async def create_booking(
    payload: dict[str, Any] = Body(...),
    schemas: SchemaRegistry = Depends(get_schema_service),
    manager: AuctionManager = Depends(get_auction_manager),
) -> dict[str, Any]:
    _validate(schemas, "booking_request", payload)
    drop_payload = payload.get("drop")
    try:
        booking = await manager.create_booking(
            rider_id=payload["rider_id"],
            pickup=Location(**payload["pickup"]),
            drop=Location(**drop_payload) if drop_payload else None,
            vehicle_type=payload["vehicle_type"],
            estimated_price=payload.get("estimated_price", 0),
            bidding_duration_seconds=payload.get("bidding_duration_seconds"),
        )
    except AuctionError as exc:
        _raise_http(exc)
    return format_booking(booking)


@app.get("/bookings/{booking_id}", tags=["bookings"])
async def get_booking(
    booking_id: str,
    manager: AuctionManager = Depends(get_auction_manager),
) -> dict[str, Any]:
    try:
        booking = await manager.get_booking(booking_id)
    except AuctionError as exc:
        _raise_http(exc)
    return format_booking(booking, include_bids=True)


@app.get("/bookings/{booking_id}/status", tags=["bookings"])
async def get_auction_status(
    booking_id: str,
    manager: AuctionManager = Depends(get_auction_manager),
) -> dict[str, Any]:
    try:
        auction_status = await manager.get_auction_status(booking_id)
    except AuctionError as exc:
        _raise_http(exc)
    return format_status(auction_status)


@app.post("/bookings/{booking_id}/cancel", tags=["bookings"])
async def cancel_booking(
    booking_id: str,
    payload: dict[str, Any] | None = Body(default=None),
    schemas: SchemaRegistry = Depends(get_schema_service),
    manager: AuctionManager = Depends(get_auction_manager),
) -> dict[str, Any]:
    payload = payload or {}
    _validate(schemas, "cancel_request", payload)
    try:
        booking = await manager.cancel_booking(booking_id, reason=payload.get("reason"))
    except AuctionError as exc:
        _raise_http(exc)
    return format_booking(booking, include_bids=True)


@app.post("/bookings/{booking_id}/bids", tags=["bids"], status_code=status.HTTP_201_CREATED)
async def submit_bid(
    booking_id: str,
    payload: dict[str, Any] = Body(...),
    schemas: SchemaRegistry = Depends(get_schema_service),
    manager: AuctionManager = Depends(get_auction_manager),
) -> dict[str, Any]:
    _validate(schemas, "bid_submission", payload)
    try:
        bid = await manager.submit_bid(
            booking_id,
            payload["driver_id"],
            payload["amount"],
            payload["eta_minutes"],
            replace=bool(payload.get("replace", False)),
        )
    except AuctionError as exc:
        _raise_http(exc)
    return format_bid(bid)


@app.get("/bookings/{booking_id}/bids", tags=["bids"])
async def list_bids(
    booking_id: str,
    manager: AuctionManager = Depends(get_auction_manager),
) -> dict[str, Any]:
    try:
        bids = await manager.list_bids(booking_id)
    except AuctionError as exc:
        _raise_http(exc)
    return {"booking_id": booking_id, "bids": [format_bid(bid) for bid in bids]}


@app.put("/bookings/{booking_id}/accept-bid/{bid_id}", tags=["bids"])
async def accept_bid(
    booking_id: str,
    bid_id: str,
    manager: AuctionManager = Depends(get_auction_manager),
) -> dict[str, Any]:
    try:
        booking = await manager.accept_bid(booking_id, bid_id)
    except AuctionError as exc:
        _raise_http(exc)
    return format_booking(booking, include_bids=True)


@app.get("/drivers/{driver_id}/available-bookings", tags=["drivers"])
async def available_bookings(
    driver_id: str,
    lat: float | None = Query(default=None, ge=-90, le=90),
    lng: float | None = Query(default=None, ge=-180, le=180),
    manager: AuctionManager = Depends(get_auction_manager),
) -> dict[str, Any]:
    offers = await manager.available_bookings(driver_id, lat=lat, lng=lng)
    return {
        "driver_id": driver_id,
        "available_bookings": [format_offer(offer) for offer in offers],
    }


# Error mapping --------------------------------------------------------------


_NOT_FOUND = (BookingNotFound, BidNotFound)
_UNPROCESSABLE = (InvalidBid, InvalidBooking)


def _validate(schemas: SchemaRegistry, schema_name: str, payload: Any) -> None:
    try:
        schemas.validate(schema_name, payload)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc.message)) from exc


def _raise_http(exc: AuctionError) -> NoReturn:
    if isinstance(exc, _NOT_FOUND):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, _UNPROCESSABLE):
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(exc, StorageContention):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        status_code = status.HTTP_409_CONFLICT
    raise HTTPException(status_code=status_code, detail=exc.to_detail()) from exc


# Response formatting --------------------------------------------------------


def format_bid(bid: Bid, now: datetime | None = None) -> dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    return {
        "bid_id": bid.bid_id,
        "booking_id": bid.booking_id,
        "driver_id": bid.driver_id,
        "amount": str(bid.amount),
        "eta_minutes": bid.eta_minutes,
        "submitted_at": format_timestamp(bid.submitted_at),
        "expires_at": format_timestamp(bid.expires_at),
        "status": bid.effective_status(now).value,
        "revision": bid.revision,
    }


def format_location(location: Location | None) -> dict[str, Any] | None:
    if location is None:
        return None
    return location.to_record()


def format_booking(booking: Booking, *, include_bids: bool = False) -> dict[str, Any]:
    now = datetime.now(timezone.utc)
    response: dict[str, Any] = {
        "booking_id": booking.booking_id,
        "rider_id": booking.rider_id,
        "pickup": format_location(booking.pickup),
        "drop": format_location(booking.drop),
        "vehicle_type": booking.vehicle_type.value,
        "estimated_price": str(booking.estimated_price),
        "bidding_state": booking.effective_state(now).value,
        "bidding_end_time": format_timestamp(booking.bidding_end_time),
        "created_at": format_timestamp(booking.created_at),
        "winning_bid_id": booking.winning_bid_id,
        "closed_at": format_optional(booking.closed_at),
    }
    if booking.cancel_reason:
        response["cancel_reason"] = booking.cancel_reason
    if include_bids:
        response["bids"] = [format_bid(bid, now) for bid in booking.bids]
    return response


def format_status(auction_status: AuctionStatus) -> dict[str, Any]:
    lowest = auction_status.lowest_bid_amount
    return {
        "booking_id": auction_status.booking_id,
        "bidding_state": auction_status.bidding_state.value,
        "bidding_end_time": format_timestamp(auction_status.bidding_end_time),
        "bid_count": auction_status.bid_count,
        "lowest_bid_amount": str(lowest) if lowest is not None else None,
        "winning_bid_id": auction_status.winning_bid_id,
        "seconds_remaining": auction_status.seconds_remaining,
    }


def format_offer(offer: DriverOffer) -> dict[str, Any]:
    booking = offer.booking
    lowest = offer.live_bids[0].amount if offer.live_bids else None
    return {
        "booking_id": booking.booking_id,
        "pickup": format_location(booking.pickup),
        "drop": format_location(booking.drop),
        "vehicle_type": booking.vehicle_type.value,
        "estimated_price": str(booking.estimated_price),
        "distance_km": offer.distance_km,
        "bidding_end_time": format_timestamp(booking.bidding_end_time),
        "lowest_bid_amount": str(lowest) if lowest is not None else None,
        "bid_count": len(offer.live_bids),
    }
