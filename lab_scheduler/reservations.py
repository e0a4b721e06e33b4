# reservations.py
"""
Reservation timeline engine.

Every write that reads a timeline, validates against it and then inserts or
updates is serialized per computer and per user (in that order) and runs in
a single transaction. Reads never return a stale status: whatever they load
is reconciled against the clock first and corrections are written back.

All write transactions, reservation and queue alike, also share one writer
lock taken after the keyed locks. SQLite allows a single writer; two
deferred transactions that both read and then try to write would fail with
``database is locked`` instead of waiting for each other.
"""
import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from databases import Database

from lab_scheduler.clock import Clock, as_utc, utcnow
from lab_scheduler.config import RELEASE_NOTIFY_LIMIT
from lab_scheduler.data_models import (
    CANCELLED,
    COMPLETED,
    FINAL_STATUSES,
    OPEN_STATUSES,
    Computer,
    ComputerStatus,
    Notification,
    Reservation,
    is_privileged,
)
from lab_scheduler.errors import (
    AlreadyFinalized,
    ConflictingReservation,
    InvalidState,
    NotOwner,
    ReservationNotFound,
    ResourceNotFound,
    ResourceUnavailable,
    UserAlreadyBooked,
)
from lab_scheduler.locks import KeyedLocks
from lab_scheduler.models import computers, reservations
from lab_scheduler.notifications import NotificationService
from lab_scheduler.timeline import (
    compute_status,
    find_conflict,
    initial_status,
    reconcile,
    validate_window,
)
from lab_scheduler.waitlist import WaitlistService

logger = logging.getLogger(__name__)


class ReservationService:

    def __init__(
        self,
        database: Database,
        locks: Optional[KeyedLocks] = None,
        clock: Clock = utcnow,
        waitlist: Optional[WaitlistService] = None,
        notifier: Optional[NotificationService] = None,
        notify_limit: int = RELEASE_NOTIFY_LIMIT,
        write_lock: Optional[asyncio.Lock] = None,
    ):
        self.database = database
        self.locks = locks or KeyedLocks()
        self.clock = clock
        if write_lock is None:
            write_lock = waitlist.write_lock if waitlist is not None else asyncio.Lock()
        self.write_lock = write_lock
        self.waitlist = waitlist or WaitlistService(database, write_lock=write_lock, clock=clock)
        self.notifier = notifier or NotificationService(database, clock=clock, write_lock=write_lock)
        self.notify_limit = notify_limit

    @asynccontextmanager
    async def _writing(self):
        # Not reentrant: nothing called inside may take the writer lock again
        async with self.write_lock:
            async with self.database.transaction():
                yield

    # Loading and reconciliation

    async def _fetch(self, query) -> List[Reservation]:
        records = await self.database.fetch_all(query)
        return [Reservation.from_record(record) for record in records]

    async def _write_back(self, items: Iterable[Reservation], now: datetime) -> List[Reservation]:
        """Reconcile ``items`` at ``now`` and persist every status that moved.

        The update only applies while the stored status is still the one we
        read, so a concurrent release or cancel is never overwritten.
        """
        fresh = []
        for reservation in items:
            current = reconcile(reservation, now)
            if current is not reservation:
                await self.database.execute(
                    reservations.update()
                    .where(
                        reservations.c.id == reservation.id,
                        reservations.c.status == reservation.status,
                    )
                    .values(status=current.status, updated_at=now)
                )
                logger.debug(
                    "Reservation %s reconciled %s -> %s", reservation.id, reservation.status, current.status
                )
            fresh.append(current)
        return fresh

    async def _open_for_computer(self, computer_id: int, now: datetime) -> List[Reservation]:
        query = reservations.select().where(
            reservations.c.computer_id == computer_id,
            reservations.c.status.in_(OPEN_STATUSES),
        )
        return await self._write_back(await self._fetch(query), now)

    async def _open_for_user(self, user_id: int, now: datetime) -> List[Reservation]:
        query = reservations.select().where(
            reservations.c.user_id == user_id,
            reservations.c.status.in_(OPEN_STATUSES),
        )
        return await self._write_back(await self._fetch(query), now)

    async def _load(self, reservation_id: int) -> Reservation:
        record = await self.database.fetch_one(reservations.select().where(reservations.c.id == reservation_id))
        if record is None:
            raise ReservationNotFound(reservation_id=reservation_id)
        return Reservation.from_record(record)

    async def get_computer(self, computer_id: int) -> Optional[Computer]:
        record = await self.database.fetch_one(computers.select().where(computers.c.id == computer_id))
        return Computer.from_record(record) if record else None

    # Operations

    async def create(
        self,
        user_id: int,
        computer_id: int,
        start_time: datetime,
        end_time: datetime,
        notes: Optional[str] = None,
    ) -> Reservation:
        """Admit ``[start_time, end_time)`` on the computer for the user.

        Checks run in a fixed order and each failure has its own error:
        range, past start, unknown computer, maintenance, overlap with an
        open reservation, then the user's own open reservation.
        """
        start_time = as_utc(start_time)
        end_time = as_utc(end_time)

        async with self.locks.hold(("computer", computer_id), ("user", user_id)):
            async with self._writing():
                now = self.clock()
                validate_window(start_time, end_time, now)

                computer = await self.get_computer(computer_id)
                if computer is None:
                    raise ResourceNotFound(computer_id=computer_id)
                if computer.under_maintenance:
                    raise ResourceUnavailable(computer_id=computer_id)

                conflict = find_conflict(await self._open_for_computer(computer_id, now), start_time, end_time)
                if conflict is not None:
                    raise ConflictingReservation(conflict)

                held = [r for r in await self._open_for_user(user_id, now) if r.is_open]
                if held:
                    raise UserAlreadyBooked(user_id=user_id, reservation_id=held[0].id)

                reservation_id = await self.database.execute(
                    reservations.insert().values(
                        user_id=user_id,
                        computer_id=computer_id,
                        start_time=start_time,
                        end_time=end_time,
                        status=initial_status(start_time, now),
                        notes=notes or None,
                        created_at=now,
                        updated_at=now,
                    )
                )
                reservation = await self._load(reservation_id)

        logger.info(
            "Reservation %s created for user %s on computer %s (%s)",
            reservation.id, user_id, computer_id, reservation.status,
        )
        return reservation

    def _authorize(self, reservation: Reservation, actor) -> None:
        if reservation.user_id != actor.id and not is_privileged(actor):
            raise NotOwner(reservation_id=reservation.id, user_id=actor.id)

    async def release(self, reservation_id: int, actor) -> Tuple[Reservation, List[Notification]]:
        """Finish a reservation early and tell the front of the queue."""
        stored = await self._load(reservation_id)
        self._authorize(stored, actor)

        async with self.locks.hold(("computer", stored.computer_id), ("user", stored.user_id)):
            async with self._writing():
                now = self.clock()
                [reservation] = await self._write_back([await self._load(reservation_id)], now)
                if reservation.status not in OPEN_STATUSES:
                    raise InvalidState(reservation_id=reservation_id, status=reservation.status)

                await self.database.execute(
                    reservations.update()
                    .where(reservations.c.id == reservation_id)
                    .values(status=COMPLETED, updated_at=now)
                )
                released = await self._load(reservation_id)

                front = await self.waitlist.list_waiting(limit=self.notify_limit)
                notified = await self.notifier.notify_release(front)

        logger.info("Reservation %s released early by user %s", reservation_id, actor.id)
        return released, notified

    async def cancel(self, reservation_id: int, actor) -> Reservation:
        """Withdraw a reservation. Nobody is notified; a cancelled slot was
        never handed over."""
        stored = await self._load(reservation_id)
        self._authorize(stored, actor)

        async with self.locks.hold(("computer", stored.computer_id), ("user", stored.user_id)):
            async with self._writing():
                now = self.clock()
                [reservation] = await self._write_back([await self._load(reservation_id)], now)
                if reservation.status in FINAL_STATUSES:
                    raise AlreadyFinalized(reservation_id=reservation_id, status=reservation.status)

                await self.database.execute(
                    reservations.update()
                    .where(reservations.c.id == reservation_id)
                    .values(status=CANCELLED, updated_at=now)
                )
                cancelled = await self._load(reservation_id)

        logger.info("Reservation %s cancelled by user %s", reservation_id, actor.id)
        return cancelled

    # Reads

    async def get(self, reservation_id: int, actor) -> Reservation:
        reservation = await self._load(reservation_id)
        self._authorize(reservation, actor)
        async with self._writing():
            [reservation] = await self._write_back([await self._load(reservation_id)], self.clock())
        return reservation

    async def list(
        self,
        actor,
        computer_id: Optional[int] = None,
        status: Optional[str] = None,
        include_all: bool = False,
        upcoming: bool = False,
    ) -> List[Reservation]:
        """Reservations visible to ``actor``, newest start first.

        Only admins asking for ``include_all`` see other users' bookings.
        ``status`` filters on the reconciled status; ``upcoming`` keeps the
        open ones and orders them soonest first.
        """
        query = reservations.select()
        if not (include_all and is_privileged(actor)):
            query = query.where(reservations.c.user_id == actor.id)
        if computer_id is not None:
            query = query.where(reservations.c.computer_id == computer_id)
        query = query.order_by(reservations.c.start_time.desc(), reservations.c.id.desc())

        async with self._writing():
            items = await self._write_back(await self._fetch(query), self.clock())

        if status:
            items = [r for r in items if r.status == status]
        if upcoming:
            items = sorted((r for r in items if r.is_open), key=lambda r: r.start_time)
        return items

    async def computer_statuses(self) -> List[ComputerStatus]:
        now = self.clock()
        computer_records = await self.database.fetch_all(computers.select().order_by(computers.c.name))
        async with self._writing():
            open_items = await self._write_back(
                await self._fetch(reservations.select().where(reservations.c.status.in_(OPEN_STATUSES))), now
            )

        by_computer = defaultdict(list)
        for reservation in open_items:
            by_computer[reservation.computer_id].append(reservation)

        statuses = []
        for record in computer_records:
            computer = Computer.from_record(record)
            statuses.append(compute_status(computer, by_computer[computer.id], now))
        return statuses

    async def computer_status(self, computer_id: int) -> ComputerStatus:
        computer = await self.get_computer(computer_id)
        if computer is None:
            raise ResourceNotFound(computer_id=computer_id)
        now = self.clock()
        async with self._writing():
            items = await self._open_for_computer(computer_id, now)
        return compute_status(computer, items, now)

    async def sweep(self) -> int:
        """Reconcile every open reservation; returns how many moved."""
        now = self.clock()
        async with self._writing():
            stale = await self._fetch(reservations.select().where(reservations.c.status.in_(OPEN_STATUSES)))
            fresh = await self._write_back(stale, now)
        moved = sum(1 for before, after in zip(stale, fresh) if before is not after)
        if moved:
            logger.info("Status sweep corrected %d reservation(s)", moved)
        return moved
