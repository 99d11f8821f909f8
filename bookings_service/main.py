import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from datetime import date as date_type, time
from typing import Dict, List, Optional

from fastapi import (
    APIRouter,
    Depends,
    FastAPI,
    HTTPException,
    Query,
    Request,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.responses import JSONResponse, Response
from jose import JWTError

from common.cache import build_cache

from . import schemas
from .auth import decode_token, get_current_user_claims, require_roles
from .bulk import RecurrenceRule
from .config import (
    CACHE_BACKEND,
    REDIS_URL,
    ROOM_STATUS_TTL_SECONDS,
    SWEEP_INTERVAL_SECONDS,
    SWEEPER_ENABLED,
    configure_logging,
)
from .database import SessionLocal, init_db
from .engine import BookingEngine, BookingMeta
from .errors import BookingEngineError
from .intervals import local_window
from .notifications import DatabaseNotificationSink
from .realtime import WebSocketHub, building_channel, user_channel

logger = logging.getLogger(__name__)

SERVICE_NAME = "bookings"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Wire the engine on startup and stop the sweeper on shutdown.

    The sweeper runs once immediately, so transitions missed while the
    service was down are applied before the first request is served.
    """
    configure_logging()
    await init_db()
    cache = await build_cache(CACHE_BACKEND, REDIS_URL, ROOM_STATUS_TTL_SECONDS)
    hub = WebSocketHub()
    app.state.hub = hub
    app.state.engine = BookingEngine(
        SessionLocal,
        cache=cache,
        notifier=DatabaseNotificationSink(SessionLocal),
        broadcaster=hub,
    )

    sweeper_task = None
    if SWEEPER_ENABLED:
        sweeper_task = asyncio.create_task(app.state.engine.sweeper.run(SWEEP_INTERVAL_SECONDS))

    try:
        yield
    finally:
        if sweeper_task is not None:
            sweeper_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper_task
        await cache.close()


app = FastAPI(title="Bookings Service", version="2.0.0", lifespan=lifespan)
router_v1 = APIRouter(prefix="/api/v1")


def error_envelope(request: Request, status_code: int, detail) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "service": SERVICE_NAME,
            "path": request.url.path,
            "method": request.method,
            "status_code": status_code,
            "detail": detail,
        },
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return error_envelope(request, exc.status_code, exc.detail)


@app.exception_handler(BookingEngineError)
async def booking_engine_exception_handler(request: Request, exc: BookingEngineError):
    return error_envelope(request, exc.status_code, exc.detail)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return error_envelope(request, 500, "Internal server error")


@app.get("/")
def root():
    """
    Health-check endpoint for the Bookings service.

    Returns
    -------
    dict
        A small JSON payload indicating that the service is running.
    """
    return {"service": "bookings", "status": "running"}


def get_engine(request: Request) -> BookingEngine:
    return request.app.state.engine


admin_only = require_roles("admin")
room_operators = require_roles("admin", "facility_manager")

# Roles that may read but never hold a room.
NON_BOOKING_ROLES = ("auditor", "moderator", "service_account")


def ensure_can_book(claims: Dict) -> None:
    if claims["role"] in NON_BOOKING_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="This role cannot create bookings",
        )


# ---------- Create booking ----------


@router_v1.post(
    "/bookings",
    response_model=schemas.BookingRead,
    status_code=status.HTTP_201_CREATED,
)
async def create_booking(
    booking_in: schemas.BookingCreate,
    engine: BookingEngine = Depends(get_engine),
    claims: Dict = Depends(get_current_user_claims),
):
    """
    Create a new booking for the authenticated user.

    Behavior
    --------
    - The date plus HH:MM times are read in the service's booking timezone.
    - Rejects windows that overlap a confirmed or ongoing booking in the
      same room with 409, naming the owner who holds it.
    - Uses the JWT's user_id as owner and its username as display name.

    Raises
    ------
    HTTPException
        403 for roles that cannot book.
    """
    ensure_can_book(claims)
    window = local_window(booking_in.date, booking_in.start_time, booking_in.end_time, engine.timezone)
    return await engine.create_booking(
        booking_in.room_number,
        booking_in.building_number,
        booking_in.date,
        window.start,
        window.end,
        claims["user_id"],
        BookingMeta(
            owner_name=claims["username"],
            subject=booking_in.subject,
            number_of_students=booking_in.number_of_students,
            notes=booking_in.notes,
        ),
    )


# ---------- My bookings ----------


@router_v1.get("/bookings/me", response_model=List[schemas.BookingRead])
async def list_my_bookings(
    engine: BookingEngine = Depends(get_engine),
    claims: Dict = Depends(get_current_user_claims),
):
    """List the caller's bookings in every status, newest window first."""
    return await engine.list_bookings(claims["user_id"])


# ---------- Availability and live view ----------


@router_v1.get("/bookings/available", response_model=List[schemas.RoomRead])
async def available_rooms(
    date: date_type = Query(...),
    start_time: time = Query(...),
    end_time: time = Query(...),
    building_number: Optional[int] = Query(default=None, ge=1),
    engine: BookingEngine = Depends(get_engine),
    claims: Dict = Depends(get_current_user_claims),
):
    """
    Rooms that are free for the whole window and not under Maintenance.
    """
    window = local_window(date, start_time, end_time, engine.timezone)
    return await engine.available_rooms(date, window.start, window.end, building_number)


@router_v1.get("/bookings/active", response_model=List[schemas.BookingRead])
async def active_bookings(
    building_number: int = Query(..., ge=1),
    engine: BookingEngine = Depends(get_engine),
    claims: Dict = Depends(get_current_user_claims),
):
    return await engine.active_bookings(building_number)


# ---------- Cancel / delete ----------


@router_v1.put("/bookings/{booking_id}/cancel", response_model=schemas.BookingRead)
async def cancel_booking(
    booking_id: int,
    engine: BookingEngine = Depends(get_engine),
    claims: Dict = Depends(get_current_user_claims),
):
    """
    Cancel one of the caller's bookings.

    A booking that belongs to someone else answers 404, the same as one
    that does not exist.
    """
    return await engine.cancel_booking(booking_id, claims["user_id"])


@router_v1.delete("/bookings/{booking_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_booking(
    booking_id: int,
    engine: BookingEngine = Depends(get_engine),
    claims: Dict = Depends(get_current_user_claims),
):
    """
    Permanently delete one of the caller's bookings.

    Ongoing bookings are rejected with 400; cancel them instead.
    """
    await engine.delete_booking(booking_id, claims["user_id"])
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------- Swap ----------


@router_v1.post("/bookings/{booking_id}/swap", response_model=schemas.BookingRead)
async def swap_booking(
    booking_id: int,
    swap_in: schemas.SwapRequest,
    engine: BookingEngine = Depends(get_engine),
    claims: Dict = Depends(get_current_user_claims),
):
    """
    Move a booking to another room for the same window.

    Returns the replacement booking; the original is marked swapped.
    """
    ensure_can_book(claims)
    return await engine.swap_booking(
        booking_id,
        swap_in.room_number,
        swap_in.building_number,
        claims["user_id"],
        BookingMeta(
            owner_name=claims["username"],
            subject=swap_in.subject,
            number_of_students=swap_in.number_of_students,
            notes=swap_in.notes,
        ),
    )


# ---------- Bulk schedule (admin) ----------


@router_v1.post(
    "/bookings/bulk",
    response_model=schemas.BulkScheduleResult,
    status_code=status.HTTP_201_CREATED,
)
async def bulk_schedule(
    schedule_in: schemas.BulkScheduleCreate,
    engine: BookingEngine = Depends(get_engine),
    claims: Dict = Depends(admin_only),
):
    """
    Expand a weekly schedule into bookings, skipping conflicting dates.

    Access
    ------
    - Allowed for: admin.
    """
    rule = RecurrenceRule(
        room_number=schedule_in.room_number,
        building_number=schedule_in.building_number,
        start_date=schedule_in.start_date,
        duration_months=schedule_in.duration_months,
        weekdays=frozenset(schedule_in.weekdays),
        start_time=schedule_in.start_time,
        end_time=schedule_in.end_time,
        subject=schedule_in.subject,
        owner_id=claims["user_id"],
        owner_name=claims["username"],
        notes=schedule_in.notes,
    )
    result = await engine.expand_bulk_schedule(rule)
    return schemas.BulkScheduleResult(
        count=result.created_count,
        created=[schemas.BookingRead.model_validate(b) for b in result.created],
        skipped=[schemas.SkippedOccurrence(date=day, reason=reason) for day, reason in result.skipped],
    )


# ---------- Rooms ----------


@router_v1.get(
    "/rooms/{building_number}/{room_number}/status",
    response_model=schemas.RoomStatusRead,
)
async def room_status(
    building_number: int,
    room_number: str,
    engine: BookingEngine = Depends(get_engine),
    claims: Dict = Depends(get_current_user_claims),
):
    current = await engine.project_status(room_number, building_number)
    return schemas.RoomStatusRead(
        room_number=room_number,
        building_number=building_number,
        status=current,
    )


@router_v1.put(
    "/rooms/{building_number}/{room_number}/maintenance",
    response_model=schemas.RoomStatusRead,
)
async def room_maintenance(
    building_number: int,
    room_number: str,
    update_in: schemas.MaintenanceUpdate,
    engine: BookingEngine = Depends(get_engine),
    claims: Dict = Depends(room_operators),
):
    """
    Put a room under Maintenance, or take it back out.

    Access
    ------
    - Allowed for: admin, facility_manager.
    """
    current = await engine.set_room_maintenance(room_number, building_number, update_in.maintenance)
    return schemas.RoomStatusRead(
        room_number=room_number,
        building_number=building_number,
        status=current,
    )


# ---------- Sweeper ----------


@router_v1.post("/sweeper/tick", response_model=schemas.SweepReportRead)
async def run_sweep(
    engine: BookingEngine = Depends(get_engine),
    claims: Dict = Depends(admin_only),
):
    """Run one sweep cycle now. Safe to call while the background loop runs."""
    report = await engine.tick()
    return schemas.SweepReportRead(
        started=report.started,
        finished=report.finished,
        expired=report.expired,
        rooms_corrected=[str(key) for key in report.rooms_corrected],
        failures=report.failures,
    )


# ---------- Real-time ----------


@router_v1.websocket("/ws")
async def realtime_updates(
    websocket: WebSocket,
    token: Optional[str] = None,
    building: Optional[int] = None,
):
    """
    Subscribe to ``building_<n>`` room status and the caller's own
    ``user_<id>`` booking events.

    The JWT comes in the ``token`` query parameter; the user channel is
    taken from its ``user_id`` claim. Connections without a valid token are
    closed with 1008 before the handshake completes.
    """
    try:
        claims = decode_token(token) if token else None
    except JWTError:
        claims = None
    if claims is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    hub: WebSocketHub = websocket.app.state.hub
    await websocket.accept()
    if building is not None:
        hub.subscribe(building_channel(building), websocket)
    hub.subscribe(user_channel(claims["user_id"]), websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("WebSocket client left (building=%s, user=%s)", building, claims["user_id"])
    finally:
        hub.disconnect(websocket)


app.include_router(router_v1)
