# main.py
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Literal, Optional

import fastapi
from fastapi import Depends, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from pydantic import BaseModel, EmailStr

from lab_scheduler import config
from lab_scheduler.auth import (
    Token,
    User,
    UserCreate,
    create_access_token,
    create_user,
    get_current_active_user,
    get_user_from_token,
    pwd_context,
    require_admin,
    verify_password,
)
from lab_scheduler.clock import Clock, get_clock, utcnow
from lab_scheduler.data_models import ADMIN_ROLE, AVAILABLE, Computer
from lab_scheduler.database import database, engine, metadata
from lab_scheduler.errors import SchedulerError
from lab_scheduler.locks import KeyedLocks
from lab_scheduler.logging_config import setup_logging
from lab_scheduler.models import computers, users
from lab_scheduler.notifications import NotificationService
from lab_scheduler.ratelimit import SignInRateLimiter, client_ip, rate_limit_key
from lab_scheduler.reservations import ReservationService
from lab_scheduler.waitlist import WaitlistService
from lab_scheduler.ws_manager import ConnectionManager

logger = logging.getLogger(__name__)

#FastAPI Setup
app = fastapi.FastAPI(title="Lab Scheduler")
manager = ConnectionManager()


# Request models
class RegisterRequest(UserCreate):
    email: EmailStr

class ComputerCreate(BaseModel):
    name: str
    description: Optional[str] = None
    status: Literal["available", "occupied", "maintenance"] = AVAILABLE

class ComputerUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    status: Optional[Literal["available", "occupied", "maintenance"]] = None

class ReservationCreate(BaseModel):
    computer_id: int
    start_time: datetime
    end_time: datetime
    notes: Optional[str] = None

class QueueJoin(BaseModel):
    computer_id: Optional[int] = None


# Error rendering
@app.exception_handler(SchedulerError)
async def scheduler_error_handler(request: Request, exc: SchedulerError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    fields = [".".join(str(part) for part in error["loc"] if part != "body") for error in exc.errors()]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "MissingFields", "message": "Invalid or missing fields", "fields": fields},
    )

@app.exception_handler(Exception)
async def internal_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "InternalError", "message": "Internal server error"})


# Service wiring
def get_waitlist_service(request: Request, clock: Clock = Depends(get_clock)) -> WaitlistService:
    return WaitlistService(database, write_lock=request.app.state.write_lock, clock=clock)

def get_notification_service(request: Request, clock: Clock = Depends(get_clock)) -> NotificationService:
    return NotificationService(database, clock=clock, write_lock=request.app.state.write_lock)

def get_reservation_service(
    request: Request,
    clock: Clock = Depends(get_clock),
    waitlist: WaitlistService = Depends(get_waitlist_service),
    notifier: NotificationService = Depends(get_notification_service),
) -> ReservationService:
    return ReservationService(
        database,
        locks=request.app.state.locks,
        clock=clock,
        waitlist=waitlist,
        notifier=notifier,
        notify_limit=config.RELEASE_NOTIFY_LIMIT,
        write_lock=request.app.state.write_lock,
    )


# Identity endpoints
@app.post("/register", status_code=status.HTTP_201_CREATED)
async def register_user(user: RegisterRequest):
    domain = user.email.split("@")[-1].lower()
    if domain not in config.ALLOWED_EMAIL_DOMAINS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid email domain. Allowed: {', '.join(config.ALLOWED_EMAIL_DOMAINS)}"
        )
    query = users.select().where(users.c.username == user.username)
    if await database.fetch_one(query):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Username already registered.")
    query = users.select().where(users.c.email == user.email.lower())
    if await database.fetch_one(query):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Email already registered.")

    await create_user(user)
    return {"message": "User created successfully."}

@app.post("/token", response_model=Token)
async def login_for_access_token(request: Request, form_data: OAuth2PasswordRequestForm = Depends()):
    peer = request.client.host if request.client else None
    key = rate_limit_key(client_ip(request.headers, peer), form_data.username)
    allowed, retry_after = request.app.state.rate_limiter.check(key)
    if not allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"Too many sign-in attempts. Try again in {retry_after} seconds.",
            headers={"Retry-After": str(retry_after)},
        )

    query = users.select().where(users.c.username == form_data.username)
    user_record = await database.fetch_one(query)
    if not user_record or not verify_password(form_data.password, user_record["hashed_password"]):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    access_token = create_access_token(
        data={"sub": user_record["username"]},
        expires_delta=timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES),
    )
    return {"access_token": access_token, "token_type": "bearer"}

@app.get("/api/users/me", response_model=User)
async def read_users_me(current_user: User = Depends(get_current_active_user)):
    return current_user


# Computers
@app.get("/api/computers")
async def list_computers(
    current_user: User = Depends(get_current_active_user),
    service: ReservationService = Depends(get_reservation_service),
):
    statuses = await service.computer_statuses()
    return {"computers": [computer_status.to_dict() for computer_status in statuses]}

@app.get("/api/computers/{computer_id}")
async def get_computer_status(
    computer_id: int,
    current_user: User = Depends(get_current_active_user),
    service: ReservationService = Depends(get_reservation_service),
):
    computer_status = await service.computer_status(computer_id)
    return {"computer": computer_status.to_dict()}

@app.post("/api/computers", status_code=status.HTTP_201_CREATED)
async def create_computer(
    request: Request,
    computer: ComputerCreate,
    current_user: User = Depends(require_admin),
    clock: Clock = Depends(get_clock),
):
    async with request.app.state.write_lock:
        async with database.transaction():
            if await database.fetch_one(computers.select().where(computers.c.name == computer.name)):
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Computer name already in use.")
            now = clock()
            computer_id = await database.execute(
                computers.insert().values(**computer.dict(), created_at=now, updated_at=now)
            )
            record = await database.fetch_one(computers.select().where(computers.c.id == computer_id))
    await manager.broadcast("computer_status", computer_id=computer_id)
    return {"computer": Computer.from_record(record).to_dict()}

@app.put("/api/computers/{computer_id}")
async def update_computer(
    request: Request,
    computer_id: int,
    computer: ComputerUpdate,
    current_user: User = Depends(require_admin),
    clock: Clock = Depends(get_clock),
):
    async with request.app.state.write_lock:
        async with database.transaction():
            if not await database.fetch_one(computers.select().where(computers.c.id == computer_id)):
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Computer not found")
            update_data = computer.dict(exclude_unset=True)
            if update_data:
                query = computers.update().where(computers.c.id == computer_id).values(
                    **update_data, updated_at=clock()
                )
                await database.execute(query)
                logger.info("Computer %s updated by %s: %s", computer_id, current_user.username, update_data)
            record = await database.fetch_one(computers.select().where(computers.c.id == computer_id))
    await manager.broadcast("computer_status", computer_id=computer_id)
    return {"computer": Computer.from_record(record).to_dict()}


# Reservations
@app.post("/api/reservations", status_code=status.HTTP_201_CREATED)
async def create_reservation(
    body: ReservationCreate,
    current_user: User = Depends(get_current_active_user),
    service: ReservationService = Depends(get_reservation_service),
):
    reservation = await service.create(
        current_user.id, body.computer_id, body.start_time, body.end_time, notes=body.notes
    )
    await manager.broadcast("computer_status", computer_id=reservation.computer_id)
    return {"reservation": reservation.to_dict()}

@app.get("/api/reservations")
async def list_reservations(
    computer_id: Optional[int] = None,
    status: Optional[str] = None,
    all: bool = False,
    upcoming: bool = False,
    current_user: User = Depends(get_current_active_user),
    service: ReservationService = Depends(get_reservation_service),
):
    items = await service.list(
        current_user, computer_id=computer_id, status=status, include_all=all, upcoming=upcoming
    )
    return {"reservations": [reservation.to_dict() for reservation in items]}

@app.get("/api/reservations/{reservation_id}")
async def get_reservation(
    reservation_id: int,
    current_user: User = Depends(get_current_active_user),
    service: ReservationService = Depends(get_reservation_service),
):
    reservation = await service.get(reservation_id, current_user)
    return {"reservation": reservation.to_dict()}

@app.patch("/api/reservations/{reservation_id}/release")
async def release_reservation(
    reservation_id: int,
    current_user: User = Depends(get_current_active_user),
    service: ReservationService = Depends(get_reservation_service),
):
    reservation, notified = await service.release(reservation_id, current_user)

    computer = await service.get_computer(reservation.computer_id)
    await manager.broadcast("computer_status", computer_id=reservation.computer_id)
    await manager.broadcast(
        "slot_available",
        computer_id=reservation.computer_id,
        computer_name=computer.name if computer else None,
    )
    for notification in notified:
        await manager.send_to_users([notification.user_id], "notification", notification_id=notification.id)

    return {
        "reservation": reservation.to_dict(),
        "message": "Reservation released successfully",
        "notified_users": len(notified),
    }

@app.delete("/api/reservations/{reservation_id}/release")
async def cancel_reservation(
    reservation_id: int,
    current_user: User = Depends(get_current_active_user),
    service: ReservationService = Depends(get_reservation_service),
):
    reservation = await service.cancel(reservation_id, current_user)
    await manager.broadcast("computer_status", computer_id=reservation.computer_id)
    return {"reservation": reservation.to_dict(), "message": "Reservation cancelled successfully"}


# Queue
@app.get("/api/queue")
async def get_queue(
    current_user: User = Depends(get_current_active_user),
    waitlist: WaitlistService = Depends(get_waitlist_service),
):
    entries = await waitlist.list_waiting()
    own = next((entry for entry in entries if entry.user_id == current_user.id), None)
    caller_position = None
    if own is not None:
        caller_position = {
            "position": own.position,
            "total_in_queue": len(entries),
            "status": own.status,
            "joined_at": own.joined_at.isoformat(),
        }
    return {"entries": [entry.to_dict() for entry in entries], "caller_position": caller_position}

@app.post("/api/queue", status_code=status.HTTP_201_CREATED)
async def join_queue(
    body: Optional[QueueJoin] = None,
    current_user: User = Depends(get_current_active_user),
    waitlist: WaitlistService = Depends(get_waitlist_service),
):
    computer_id = body.computer_id if body else None
    entry = await waitlist.join(current_user.id, computer_id)
    await manager.broadcast("queue_update", total_in_queue=len(await waitlist.list_waiting()))
    return {
        "entry": entry.to_dict(),
        "position": entry.position,
        "message": f"You are now #{entry.position} in the queue",
    }

@app.delete("/api/queue")
async def leave_queue(
    current_user: User = Depends(get_current_active_user),
    waitlist: WaitlistService = Depends(get_waitlist_service),
):
    await waitlist.leave(current_user.id)
    await manager.broadcast("queue_update", total_in_queue=len(await waitlist.list_waiting()))
    return {"message": "Left the queue successfully"}


# Notifications
@app.get("/api/notifications")
async def list_notifications(
    unread: bool = False,
    current_user: User = Depends(get_current_active_user),
    notifier: NotificationService = Depends(get_notification_service),
):
    items = await notifier.list_for_user(current_user.id, unread_only=unread)
    return {"notifications": [notification.to_dict() for notification in items]}

@app.patch("/api/notifications/{notification_id}/read")
async def mark_notification_read(
    notification_id: int,
    current_user: User = Depends(get_current_active_user),
    notifier: NotificationService = Depends(get_notification_service),
):
    notification = await notifier.mark_read(notification_id, current_user.id)
    return {"notification": notification.to_dict()}


@app.websocket("/ws")
async def websocket_endpoint(websocket: fastapi.WebSocket, token: str = Query(None)):
    """
    Pushes change events; clients re-query the REST endpoints on each one.
    """
    try:
        current_user = await get_user_from_token(token)
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await manager.connect(websocket, current_user.id)
    await websocket.send_json({"type": "auth_success", "data": {"username": current_user.username, "role": current_user.role}})
    try:
        while True:
            # Inbound messages are ignored; the socket is push-only
            await websocket.receive_text()
    except fastapi.WebSocketDisconnect:
        manager.disconnect(websocket)


async def _sweep_periodically(interval: int):
    while True:
        await asyncio.sleep(interval)
        try:
            await ReservationService(database, locks=app.state.locks, write_lock=app.state.write_lock).sweep()
        except Exception:
            logger.exception("Background status sweep failed")


@app.on_event("startup")
async def startup():
    setup_logging()
    await database.connect()
    # Create tables if they don't exist
    metadata.create_all(bind=engine)

    app.state.locks = KeyedLocks()
    app.state.write_lock = asyncio.Lock()
    app.state.rate_limiter = SignInRateLimiter()
    app.state.sweeper = None

    async with database.transaction():
        query = users.select().where(users.c.username == config.ADMIN_USERNAME)
        if not await database.fetch_one(query):
            admin_user = {
                "username": config.ADMIN_USERNAME,
                "full_name": "Lab Admin",
                "email": config.ADMIN_EMAIL,
                "hashed_password": pwd_context.hash(config.ADMIN_PASSWORD),
                "role": ADMIN_ROLE,
            }
            await database.execute(query=users.insert(), values=admin_user)
            logger.info("Created default admin account %s", config.ADMIN_USERNAME)

        if config.SEED_COMPUTER_COUNT and not await database.fetch_one(computers.select().limit(1)):
            now = utcnow()
            for number in range(1, config.SEED_COMPUTER_COUNT + 1):
                await database.execute(
                    computers.insert().values(
                        name=f"PC-{number:02d}", status=AVAILABLE, created_at=now, updated_at=now
                    )
                )
            logger.info("Seeded %d computers", config.SEED_COMPUTER_COUNT)

    await ReservationService(database, locks=app.state.locks, write_lock=app.state.write_lock).sweep()
    if config.RECONCILE_INTERVAL_SECONDS > 0:
        app.state.sweeper = asyncio.create_task(_sweep_periodically(config.RECONCILE_INTERVAL_SECONDS))


@app.on_event("shutdown")
async def shutdown():
    sweeper = getattr(app.state, "sweeper", None)
    if sweeper is not None:
        sweeper.cancel()
    await database.disconnect()
