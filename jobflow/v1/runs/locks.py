"""
Soft, single-row, timestamp-based locking for execution records.

There is no external lock service. A worker owns a run while ``locked_at``
is set and ``locked_by`` carries its token; a lock older than
``lock_stale_after_s`` is treated as abandoned and may be stolen.
"""

import os
import socket
import uuid
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobflow.config.logging import get_logger
from jobflow.config.settings import Settings
from jobflow.v1.core.exceptions import LockedIdempotencyKey, LockLost
from jobflow.v1.runs.models import ExecutionRecord, utcnow

logger = get_logger(__name__)


class LockManager:
    """Acquire, verify and release the soft lock on an ``ExecutionRecord``."""

    def __init__(self, settings: Settings):
        self.settings = settings

    @staticmethod
    def new_token() -> str:
        return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:12]}"

    def stale_cutoff(self, now: datetime | None = None) -> datetime:
        now = now or utcnow()
        return now - timedelta(seconds=self.settings.lock_stale_after_s)

    async def acquire(
        self,
        session: AsyncSession,
        record: ExecutionRecord,
        token: str,
        **values: Any,
    ) -> datetime:
        """
        Take the lock with a single compare-and-swap update and commit it.

        Extra ``values`` are written in the same statement (used to initialise
        a staged record). Returns the lock timestamp.

        Raises:
            LockedIdempotencyKey: another worker holds a fresh lock.
        """
        now = utcnow()
        result = await session.execute(
            update(ExecutionRecord)
            .where(
                ExecutionRecord.id == record.id,
                or_(
                    ExecutionRecord.locked_at.is_(None),
                    ExecutionRecord.locked_at < self.stale_cutoff(now),
                ),
            )
            .values(
                locked_at=now,
                locked_by=token,
                last_run_at=now,
                updated_at=now,
                **values,
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount != 1:
            await session.rollback()
            logger.info(
                "Run is locked by another worker",
                run_id=str(record.id),
                idempotency_key=record.idempotency_key,
                locked_by=record.locked_by,
            )
            raise LockedIdempotencyKey(record.idempotency_key, record.locked_at)

        await session.commit()

        if record.locked_at is not None:
            logger.warning(
                "Stole stale lock",
                run_id=str(record.id),
                previous_owner=record.locked_by,
                locked_at=record.locked_at.isoformat(),
            )

        logger.debug("Lock acquired", run_id=str(record.id), token=token)
        return now

    async def write(
        self, session: AsyncSession, run_id: UUID, token: str, **values: Any
    ) -> None:
        """
        Update the record only while this worker still owns the lock.

        Does not commit: the caller decides the transaction boundary.

        Raises:
            LockLost: the lock went stale and was taken by someone else.
        """
        result = await session.execute(
            update(ExecutionRecord)
            .where(ExecutionRecord.id == run_id, ExecutionRecord.locked_by == token)
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise LockLost(run_id)

    async def release(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        run_id: UUID,
        token: str,
        **values: Any,
    ) -> bool:
        """
        Clear the lock and persist ``values`` in the same write.

        Never raises. When the write fails it is logged and an unlock-only
        write is attempted; when that fails too the lock is left to go stale.
        Returns True when this worker's lock was cleared.
        """
        try:
            return await self._write_release(session_factory, run_id, token, values)
        except Exception:
            logger.error(
                "Failed to persist run state on lock release",
                run_id=str(run_id),
                fields=sorted(values),
                exc_info=True,
            )

        if not values:
            return False

        try:
            return await self._write_release(session_factory, run_id, token, {})
        except Exception:
            logger.error(
                "Failed to release lock, it will be reclaimed once stale",
                run_id=str(run_id),
                stale_after_s=self.settings.lock_stale_after_s,
                exc_info=True,
            )
            return False

    async def _write_release(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        run_id: UUID,
        token: str,
        values: dict[str, Any],
    ) -> bool:
        async with session_factory() as session:
            result = await session.execute(
                update(ExecutionRecord)
                .where(
                    ExecutionRecord.id == run_id,
                    ExecutionRecord.locked_by == token,
                )
                .values(locked_at=None, locked_by=None, updated_at=utcnow(), **values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        released = result.rowcount == 1
        if not released:
            logger.warning(
                "Lock was no longer held on release", run_id=str(run_id), token=token
            )
        return released

    async def force_unlock(self, session: AsyncSession, run_id: UUID) -> bool:
        """Operator recovery: clear a lock regardless of its owner."""
        result = await session.execute(
            update(ExecutionRecord)
            .where(ExecutionRecord.id == run_id, ExecutionRecord.locked_at.is_not(None))
            .values(locked_at=None, locked_by=None, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        unlocked = result.rowcount > 0
        if unlocked:
            logger.warning("Lock force-cleared", run_id=str(run_id))
        return unlocked
