"""
TTL reaper: physically removes expired messages and idle empty rooms.

Reads already hide expired messages, so the reaper only reclaims space.
A sweep is a single transaction: concurrent readers see the store either
before or after it, never in between.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from chatsync import utils
from chatsync.config import settings
from chatsync.models import Message, Reaction, Room
from chatsync.storage import SessionLocal
from chatsync.store import expiry_cutoff_ns

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PruneResult:
    messages: int
    rooms: int


def prune_expired_messages(db: Session, now: Optional[int] = None) -> PruneResult:
    """
    Delete expired messages (with their reactions) and reap rooms that are
    empty and have been idle for longer than the room idle window.
    """
    if now is None:
        now = utils.now_ns()
    message_cutoff = expiry_cutoff_ns(now)
    room_cutoff = now - utils.seconds_to_ns(settings.room_idle_seconds)

    try:
        expired_ids = select(Message.id).where(Message.created_at < message_cutoff)
        db.query(Reaction).filter(Reaction.message_id.in_(expired_ids)).delete(
            synchronize_session=False
        )
        messages_pruned = (
            db.query(Message)
            .filter(Message.created_at < message_cutoff)
            .delete(synchronize_session=False)
        )

        rooms_pruned = (
            db.query(Room)
            .filter(~Room.code.in_(select(Message.room_code)))
            .filter(Room.last_activity_at < room_cutoff)
            .delete(synchronize_session=False)
        )
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Prune failed, rolled back: {e}")
        raise

    logger.info(f"Pruned {messages_pruned} messages and {rooms_pruned} rooms")
    return PruneResult(messages=messages_pruned, rooms=rooms_pruned)


class Reaper:
    """Runs prune_expired_messages on a fixed interval inside the event loop."""

    def __init__(
        self,
        interval_seconds: float,
        session_factory: Callable[[], Session] = SessionLocal,
        on_pruned: Optional[Callable[[PruneResult], None]] = None,
    ) -> None:
        self.interval_seconds = interval_seconds
        self._session_factory = session_factory
        self._on_pruned = on_pruned
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.interval_seconds <= 0:
            logger.info("Background reaper disabled")
            return
        if self._task is None:
            logger.info(f"Starting background reaper every {self.interval_seconds}s")
            self._task = asyncio.create_task(self._sweep())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Background reaper stopped")

    def sweep_once(self) -> PruneResult:
        with self._session_factory() as db:
            result = prune_expired_messages(db)
        if self._on_pruned is not None:
            self._on_pruned(result)
        return result

    async def _sweep(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.interval_seconds)
                try:
                    # Off the event loop so a long prune does not stall requests
                    await asyncio.to_thread(self.sweep_once)
                except Exception:
                    logger.exception("Reaper sweep failed")
        except asyncio.CancelledError:
            return
