"""Shared fixtures: a controllable clock and throwaway SQLite databases."""

import asyncio
import os
import tempfile
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

# Settings are read at import time, so point them at a scratch database first
_SCRATCH_DIR = tempfile.mkdtemp(prefix="lab_scheduler_tests_")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_SCRATCH_DIR, 'api.db')}"
os.environ["SECRET_KEY"] = "test-secret"
os.environ["ADMIN_USERNAME"] = "admin"
os.environ["ADMIN_PASSWORD"] = "admin-pass"
os.environ["ALLOWED_EMAIL_DOMAINS"] = "campus.edu"
os.environ["SEED_COMPUTER_COUNT"] = "0"
os.environ["RECONCILE_INTERVAL_SECONDS"] = "0"

import pytest
import sqlalchemy
from databases import Database

from lab_scheduler.data_models import ADMIN_ROLE, AVAILABLE, USER_ROLE
from lab_scheduler.database import metadata
from lab_scheduler.models import computers, users
from lab_scheduler.notifications import NotificationService
from lab_scheduler.reservations import ReservationService
from lab_scheduler.waitlist import WaitlistService

START = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable returning a fixed, manually advanced UTC time."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def db(tmp_path):
    url = f"sqlite:///{tmp_path / 'engine.db'}"
    sync_engine = sqlalchemy.create_engine(url)
    metadata.create_all(sync_engine)
    sync_engine.dispose()

    database = Database(url)
    await database.connect()
    yield database
    await database.disconnect()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    async def _make_user(username=None, role=USER_ROLE):
        counter["n"] += 1
        username = username or f"user{counter['n']}"
        user_id = await db.execute(
            users.insert().values(
                username=username,
                full_name=username.title(),
                email=f"{username}@campus.edu",
                hashed_password="x",
                role=role,
            )
        )
        return SimpleNamespace(id=user_id, username=username, role=role)

    return _make_user


@pytest.fixture
def make_admin(make_user):
    async def _make_admin(username="root"):
        return await make_user(username, role=ADMIN_ROLE)

    return _make_admin


@pytest.fixture
def make_computer(db, clock):
    counter = {"n": 0}

    async def _make_computer(name=None, status=AVAILABLE):
        counter["n"] += 1
        return await db.execute(
            computers.insert().values(
                name=name or f"PC-{counter['n']:02d}",
                status=status,
                created_at=clock(),
                updated_at=clock(),
            )
        )

    return _make_computer


@pytest.fixture
def write_lock():
    return asyncio.Lock()


@pytest.fixture
def waitlist(db, clock, write_lock):
    return WaitlistService(db, write_lock=write_lock, clock=clock)


@pytest.fixture
def notifier(db, clock, write_lock):
    return NotificationService(db, clock=clock, write_lock=write_lock)


@pytest.fixture
def service(db, clock, waitlist, notifier, write_lock):
    return ReservationService(db, clock=clock, waitlist=waitlist, notifier=notifier, write_lock=write_lock)
