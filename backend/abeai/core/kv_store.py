"""Durable key-value store for JSON blobs with optional compare-and-swap."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select, insert, update, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from abeai.models.kv_entry import KeyValueEntry

logger = logging.getLogger(__name__)


class StaleWriteError(Exception):
    """Raised when a conditional put finds a different version than expected."""

    def __init__(self, key: str, expected_version: int):
        super().__init__(f"Stale write for {key}: expected version {expected_version}")
        self.key = key
        self.expected_version = expected_version


@dataclass
class VersionedValue:
    """A stored value together with the version it was read at."""

    value: dict
    version: int


class KeyValueStore:
    """get/put of JSON blobs keyed by string.

    Reads select plain columns rather than ORM entities so repeated reads in
    one session always see the latest committed row.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, key: str) -> Optional[dict]:
        """Return the stored value, or None if the key was never written."""
        entry = await self.get_versioned(key)
        return entry.value if entry else None

    async def get_versioned(self, key: str) -> Optional[VersionedValue]:
        """Return the stored value and its version."""
        result = await self.db.execute(
            select(KeyValueEntry.value, KeyValueEntry.version).where(
                KeyValueEntry.key == key
            )
        )
        row = result.first()
        if row is None:
            return None
        return VersionedValue(value=dict(row.value or {}), version=row.version)

    async def put(
        self,
        key: str,
        value: dict,
        expected_version: Optional[int] = None,
    ) -> int:
        """
        Store a value and return its new version.

        Args:
            key: Storage key
            value: JSON-serialisable dict
            expected_version: None writes unconditionally (last write wins),
                0 requires the key to be absent, n requires the stored version
                to still be n.

        Raises:
            StaleWriteError: if the version condition does not hold
        """
        now = datetime.utcnow()

        if expected_version is None:
            return await self._upsert(key, value, now)

        if expected_version == 0:
            return await self._insert(key, value, now)

        result = await self.db.execute(
            update(KeyValueEntry)
            .where(KeyValueEntry.key == key)
            .where(KeyValueEntry.version == expected_version)
            .values(value=value, version=expected_version + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StaleWriteError(key, expected_version)

        logger.debug(f"Stored {key} at version {expected_version + 1}")
        return expected_version + 1

    async def delete(self, key: str) -> bool:
        """Remove a key. Returns True if something was deleted."""
        result = await self.db.execute(
            delete(KeyValueEntry)
            .where(KeyValueEntry.key == key)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def _insert(self, key: str, value: dict, now: datetime) -> int:
        try:
            await self.db.execute(
                insert(KeyValueEntry).values(
                    key=key,
                    value=value,
                    version=1,
                    created_at=now,
                    updated_at=now,
                )
            )
        except IntegrityError:
            # Another request created the key first
            await self.db.rollback()
            raise StaleWriteError(key, 0)

        logger.debug(f"Created {key}")
        return 1

    async def _upsert(self, key: str, value: dict, now: datetime) -> int:
        """Overwrite whatever version is stored, or create the key."""
        for _ in range(2):
            result = await self.db.execute(
                update(KeyValueEntry)
                .where(KeyValueEntry.key == key)
                .values(value=value, version=KeyValueEntry.version + 1, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                entry = await self.get_versioned(key)
                logger.debug(f"Overwrote {key} at version {entry.version}")
                return entry.version
            try:
                return await self._insert(key, value, now)
            except StaleWriteError:
                # Created between the update and the insert; overwrite it
                continue
        raise StaleWriteError(key, 0)
