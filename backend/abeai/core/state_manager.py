"""State manager for per-user/session records."""

import logging
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from abeai.config import get_settings
from abeai.core.kv_store import KeyValueStore, StaleWriteError
from abeai.schemas.session import SessionRecord

logger = logging.getLogger(__name__)

RecordMutation = Callable[[SessionRecord], None]


class RecordChanges:
    """Mutations made to a record during one request.

    Each mutation is applied immediately to the working record and remembered,
    so it can be replayed onto a fresher copy if another request committed
    first. Mutations must be relative (append, increment, set-if-unset) for the
    replay to merge rather than clobber.
    """

    def __init__(self):
        self._mutations: List[RecordMutation] = []

    def apply(self, record: SessionRecord, mutation: RecordMutation) -> None:
        mutation(record)
        self._mutations.append(mutation)

    def replay(self, record: SessionRecord) -> SessionRecord:
        for mutation in self._mutations:
            mutation(record)
        return record

    def __len__(self) -> int:
        return len(self._mutations)

    def __bool__(self) -> bool:
        return bool(self._mutations)


class StateManager:
    """Loads and commits session records through the key-value store."""

    def __init__(self, db: AsyncSession, store: Optional[KeyValueStore] = None):
        self.db = db
        self.store = store or KeyValueStore(db)
        self.settings = get_settings()

    async def load(self, key: str) -> SessionRecord:
        """Get the stored record, or a fresh default one for a new identifier."""
        entry = await self.store.get_versioned(key)
        if entry is None:
            logger.info(f"No record for {key}, starting a new one")
            return SessionRecord.from_store(None)
        return SessionRecord.from_store(entry.value, entry.version)

    async def commit(
        self,
        key: str,
        record: SessionRecord,
        changes: RecordChanges,
    ) -> SessionRecord:
        """
        Persist a record with compare-and-swap.

        If another request wrote the key since it was loaded, reload the latest
        copy, replay this request's changes on it and try again. When every
        attempt conflicts, fall back to an unconditional write.

        Returns:
            The record as persisted (may differ from ``record`` after a replay)
        """
        attempts = max(1, self.settings.state_commit_attempts)
        current = record

        for attempt in range(attempts):
            current.updated_at = datetime.utcnow()
            try:
                current.version = await self.store.put(
                    key, current.to_store(), expected_version=current.version
                )
                await self.db.commit()
                return current
            except StaleWriteError:
                # Start a fresh transaction so the reload sees the winning write
                await self.db.rollback()
                logger.warning(
                    f"Concurrent update on {key} (attempt {attempt + 1}/{attempts}), "
                    f"replaying {len(changes)} change(s) on latest record"
                )
                current = changes.replay(await self.load(key))

        logger.warning(f"Giving up on conditional write for {key}, last write wins")
        current.updated_at = datetime.utcnow()
        current.version = await self.store.put(key, current.to_store())
        await self.db.commit()
        return current
