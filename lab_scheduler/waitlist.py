# waitlist.py
"""
The lab's single FIFO queue.

Positions of ``waiting`` entries are always exactly 1..N in join order.
Join and leave run under the process-wide writer lock (the same one the
reservation engine takes) and inside a transaction, so two joins never see
the same tail and a leave re-sequences the remaining entries in one pass
before anyone else can read a half-updated queue.
"""
import asyncio
import logging
from typing import List, Optional

import sqlalchemy
from databases import Database

from lab_scheduler.clock import Clock, utcnow
from lab_scheduler.data_models import WAITING, WaitlistEntry
from lab_scheduler.errors import AlreadyQueued, NotQueued, PreferredResourceNotFound
from lab_scheduler.models import computers, queue_entries

logger = logging.getLogger(__name__)


class WaitlistService:

    def __init__(self, database: Database, write_lock: Optional[asyncio.Lock] = None, clock: Clock = utcnow):
        self.database = database
        self.write_lock = write_lock or asyncio.Lock()
        self.clock = clock

    async def _waiting_entry_for(self, user_id: int) -> Optional[WaitlistEntry]:
        query = queue_entries.select().where(
            queue_entries.c.user_id == user_id,
            queue_entries.c.status == WAITING,
        ).limit(1)
        record = await self.database.fetch_one(query)
        return WaitlistEntry.from_record(record) if record else None

    async def join(self, user_id: int, computer_id: Optional[int] = None) -> WaitlistEntry:
        """Append the user to the tail of the queue.

        ``computer_id`` is recorded as a preference only; it never changes who
        is at the front.
        """
        async with self.write_lock:
            async with self.database.transaction():
                if await self._waiting_entry_for(user_id) is not None:
                    raise AlreadyQueued(user_id=user_id)

                if computer_id is not None:
                    computer = await self.database.fetch_one(computers.select().where(computers.c.id == computer_id))
                    if computer is None:
                        raise PreferredResourceNotFound(computer_id=computer_id)

                max_position = await self.database.fetch_val(
                    sqlalchemy.select(sqlalchemy.func.max(queue_entries.c.position)).where(
                        queue_entries.c.status == WAITING
                    )
                )
                position = (max_position or 0) + 1

                entry_id = await self.database.execute(
                    queue_entries.insert().values(
                        user_id=user_id,
                        computer_id=computer_id,
                        position=position,
                        status=WAITING,
                        joined_at=self.clock(),
                    )
                )
                record = await self.database.fetch_one(queue_entries.select().where(queue_entries.c.id == entry_id))

        logger.info("User %s joined the queue at position %d", user_id, position)
        return WaitlistEntry.from_record(record)

    async def leave(self, user_id: int) -> WaitlistEntry:
        """Remove the user's waiting entry and close the gap it leaves."""
        async with self.write_lock:
            async with self.database.transaction():
                entry = await self._waiting_entry_for(user_id)
                if entry is None:
                    raise NotQueued(user_id=user_id)

                await self.database.execute(queue_entries.delete().where(queue_entries.c.id == entry.id))
                await self._resequence()

        logger.info("User %s left the queue from position %d", user_id, entry.position)
        return entry

    async def _resequence(self) -> None:
        query = queue_entries.select().where(queue_entries.c.status == WAITING).order_by(
            queue_entries.c.position, queue_entries.c.id
        )
        records = await self.database.fetch_all(query)
        for new_position, record in enumerate(records, start=1):
            if record["position"] != new_position:
                await self.database.execute(
                    queue_entries.update().where(queue_entries.c.id == record["id"]).values(position=new_position)
                )

    async def list_waiting(self, limit: Optional[int] = None) -> List[WaitlistEntry]:
        query = queue_entries.select().where(queue_entries.c.status == WAITING).order_by(queue_entries.c.position)
        if limit is not None:
            query = query.limit(limit)
        records = await self.database.fetch_all(query)
        return [WaitlistEntry.from_record(record) for record in records]
