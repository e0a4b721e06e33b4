# notifications.py
import asyncio
import logging
from typing import Iterable, List, Optional

from databases import Database

from lab_scheduler.clock import Clock, utcnow
from lab_scheduler.data_models import NOTIFICATION_TYPES, Notification, WaitlistEntry
from lab_scheduler.errors import NotificationNotFound
from lab_scheduler.models import notifications

logger = logging.getLogger(__name__)

RELEASE_TITLE = "Computer Available!"
RELEASE_MESSAGE = "A computer slot has been released. Book now before it's taken!"


class NotificationService:
    """Writes notification records; delivery is left to whoever reads them.

    ``create`` also runs inside the release transaction, which already holds
    the writer lock, so only ``mark_read`` takes it.
    """

    def __init__(self, database: Database, clock: Clock = utcnow, write_lock: Optional[asyncio.Lock] = None):
        self.database = database
        self.clock = clock
        self.write_lock = write_lock or asyncio.Lock()

    async def create(self, user_id: int, title: str, message: str, type: str = "info") -> Notification:
        if type not in NOTIFICATION_TYPES:
            raise ValueError(f"Unknown notification type: {type}")
        query = notifications.insert().values(
            user_id=user_id,
            title=title,
            message=message,
            type=type,
            read=False,
            created_at=self.clock(),
        )
        notification_id = await self.database.execute(query)
        record = await self.database.fetch_one(notifications.select().where(notifications.c.id == notification_id))
        return Notification.from_record(record)

    async def notify_release(self, entries: Iterable[WaitlistEntry]) -> List[Notification]:
        """One success notification per queue entry. Entries are not touched:
        being told about a free slot is not the same as being called."""
        created = []
        for entry in entries:
            created.append(await self.create(entry.user_id, RELEASE_TITLE, RELEASE_MESSAGE, type="success"))
        if created:
            logger.info("Notified %d waiting user(s) of a released slot", len(created))
        return created

    async def list_for_user(self, user_id: int, unread_only: bool = False) -> List[Notification]:
        query = notifications.select().where(notifications.c.user_id == user_id)
        if unread_only:
            query = query.where(notifications.c.read == False)  # noqa: E712
        query = query.order_by(notifications.c.created_at.desc(), notifications.c.id.desc())
        records = await self.database.fetch_all(query)
        return [Notification.from_record(record) for record in records]

    async def mark_read(self, notification_id: int, user_id: int) -> Notification:
        # Other users' notifications are reported as missing, not forbidden
        query = notifications.select().where(
            notifications.c.id == notification_id,
            notifications.c.user_id == user_id,
        )
        async with self.write_lock:
            async with self.database.transaction():
                record = await self.database.fetch_one(query)
                if record is None:
                    raise NotificationNotFound(notification_id=notification_id)

                await self.database.execute(
                    notifications.update().where(notifications.c.id == notification_id).values(read=True)
                )
                record = await self.database.fetch_one(
                    notifications.select().where(notifications.c.id == notification_id)
                )
        return Notification.from_record(record)
