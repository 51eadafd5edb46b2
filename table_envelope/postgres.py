"""
PostgreSQL-backed key store.

This module provides:
- PostgresKeyStore: Persists key-encryption keys and resolves them by key id
- KeyStatus: Key lifecycle status enum
- StoredKey: Key row as stored in the database

Lifecycle:
- ACTIVE: Used to wrap new content keys (exactly one at a time)
- RETIRED: Replaced by rotation; still resolvable so old entities decrypt
- DISABLED: No longer resolvable

Key material is stored as plaintext BYTEA and relies on the database's
encryption at rest.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Tuple
from uuid import uuid4

import asyncpg

from .errors import KeyNotFoundError, StorageError
from .keys import SymmetricKey

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS table_encryption_keys (
    kid TEXT PRIMARY KEY,
    key_material BYTEA NOT NULL,
    status TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    retired_at TIMESTAMPTZ
)
"""


# =============================================================================
# Key Status Enum
# =============================================================================


class KeyStatus(Enum):
    """Key lifecycle status."""

    ACTIVE = "ACTIVE"  # Wraps new content keys
    RETIRED = "RETIRED"  # Unwrap only
    DISABLED = "DISABLED"  # Not resolvable

    def __str__(self) -> str:
        return self.value

    @classmethod
    def from_str(cls, s: str) -> KeyStatus:
        """Parse from string."""
        try:
            return cls(s.upper())
        except ValueError:
            raise StorageError(f"Invalid key status: {s}")


@dataclass
class StoredKey:
    """Key row (material is encrypted at rest by the database)."""

    kid: str
    key_material: bytes
    status: KeyStatus
    created_at: datetime
    retired_at: Optional[datetime] = None

    def to_key(self) -> SymmetricKey:
        return SymmetricKey(self.kid, self.key_material)


# =============================================================================
# PostgreSQL Key Store
# =============================================================================


class PostgresKeyStore:
    """
    Key-encryption key store on PostgreSQL.

    Implements the key resolver interface, so it can be passed directly as
    `TableEncryptionPolicy(key_resolver=store)`.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        """
        Initialize the key store.

        Args:
            pool: asyncpg connection pool
        """
        self._pool = pool

    @property
    def pool(self) -> asyncpg.Pool:
        return self._pool

    async def ensure_schema(self) -> None:
        """Create the key table if it does not exist."""
        try:
            await self._pool.execute(SCHEMA)
        except Exception as e:
            raise StorageError(f"Failed to create key schema: {e}") from e

    async def create_key(self, kid: Optional[str] = None) -> SymmetricKey:
        """
        Generate and store a new ACTIVE key.

        Any current ACTIVE key is left as is; use rotate_active_key() to
        replace it.
        """
        key = SymmetricKey.generate(kid or f"pg:{uuid4()}")
        await self._insert(key, KeyStatus.ACTIVE)
        logger.info("Created key %s", key.kid)
        return key

    async def get_active_key(self) -> SymmetricKey:
        """
        Newest ACTIVE key.

        Raises:
            KeyNotFoundError: If no key is active
        """
        query = """
            SELECT kid, key_material, status, created_at, retired_at
            FROM table_encryption_keys
            WHERE status = 'ACTIVE'
            ORDER BY created_at DESC
            LIMIT 1
        """
        try:
            row = await self._pool.fetchrow(query)
        except Exception as e:
            raise StorageError(f"Failed to get active key: {e}") from e
        if row is None:
            raise KeyNotFoundError("No active key-encryption key")
        return self._row_to_stored_key(row).to_key()

    async def get_key(self, kid: str) -> Optional[StoredKey]:
        """Key row by id, whatever its status."""
        query = """
            SELECT kid, key_material, status, created_at, retired_at
            FROM table_encryption_keys
            WHERE kid = $1
        """
        try:
            row = await self._pool.fetchrow(query, kid)
        except Exception as e:
            raise StorageError(f"Failed to get key {kid}: {e}") from e
        return self._row_to_stored_key(row) if row is not None else None

    async def resolve_key(self, kid: str) -> Optional[SymmetricKey]:
        """Resolve an ACTIVE or RETIRED key; None for unknown or DISABLED keys."""
        stored = await self.get_key(kid)
        if stored is None or stored.status is KeyStatus.DISABLED:
            return None
        return stored.to_key()

    async def rotate_active_key(self) -> Tuple[SymmetricKey, SymmetricKey]:
        """
        Retire the active key and create a new ACTIVE one, atomically.

        Returns:
            (old key, new key)

        Raises:
            KeyNotFoundError: If no key is active
        """
        new_key = SymmetricKey.generate(f"pg:{uuid4()}")
        now = datetime.now(timezone.utc)

        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        """
                        SELECT kid, key_material, status, created_at, retired_at
                        FROM table_encryption_keys
                        WHERE status = 'ACTIVE'
                        ORDER BY created_at DESC
                        LIMIT 1
                        FOR UPDATE
                        """
                    )
                    if row is None:
                        raise KeyNotFoundError("No active key-encryption key to rotate")

                    await conn.execute(
                        """
                        UPDATE table_encryption_keys
                        SET status = 'RETIRED', retired_at = $1
                        WHERE status = 'ACTIVE'
                        """,
                        now,
                    )
                    await conn.execute(
                        """
                        INSERT INTO table_encryption_keys (kid, key_material, status, created_at)
                        VALUES ($1, $2, $3, $4)
                        """,
                        new_key.kid,
                        new_key.export_key(),
                        KeyStatus.ACTIVE.value,
                        now,
                    )
        except KeyNotFoundError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to rotate key: {e}") from e

        old_key = self._row_to_stored_key(row).to_key()
        logger.info("Rotated active key %s -> %s", old_key.kid, new_key.kid)
        return old_key, new_key

    async def disable_key(self, kid: str) -> bool:
        """
        Disable a RETIRED key.

        Returns:
            True if the key was disabled, False if it is not RETIRED
        """
        query = """
            UPDATE table_encryption_keys
            SET status = 'DISABLED'
            WHERE kid = $1 AND status = 'RETIRED'
        """
        try:
            result = await self._pool.execute(query, kid)
        except Exception as e:
            raise StorageError(f"Failed to disable key {kid}: {e}") from e
        # asyncpg returns the command tag, e.g. "UPDATE 1"
        return result.split()[-1] != "0"

    async def get_key_stats(self) -> List[Tuple[str, int]]:
        """
        Key counts by status.

        Returns:
            List of (status, count) tuples
        """
        query = """
            SELECT status, COUNT(*) AS count
            FROM table_encryption_keys
            GROUP BY status
            ORDER BY status
        """
        try:
            rows = await self._pool.fetch(query)
        except Exception as e:
            raise StorageError(f"Failed to get key stats: {e}") from e
        return [(row["status"], row["count"]) for row in rows]

    async def _insert(self, key: SymmetricKey, status: KeyStatus) -> None:
        query = """
            INSERT INTO table_encryption_keys (kid, key_material, status, created_at)
            VALUES ($1, $2, $3, $4)
        """
        try:
            await self._pool.execute(
                query,
                key.kid,
                key.export_key(),
                status.value,
                datetime.now(timezone.utc),
            )
        except Exception as e:
            raise StorageError(f"Failed to store key {key.kid}: {e}") from e

    @staticmethod
    def _row_to_stored_key(row: asyncpg.Record) -> StoredKey:
        return StoredKey(
            kid=row["kid"],
            key_material=bytes(row["key_material"]),
            status=KeyStatus.from_str(row["status"]),
            created_at=row["created_at"],
            retired_at=row["retired_at"],
        )
