"""
Key-value store with TTL, hashes, sets and sorted sets.

Every write is committed on its own; there are no cross-key transactions.
Expired keys are purged at the start of each operation, so reads never see
them.
"""

from __future__ import annotations

import sqlite3
import time
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from .connection import Database

_TABLES = ("kv_strings", "kv_hashes", "kv_sets", "kv_zsets")


class StoreError(Exception):
    """Raised when a store operation fails."""

    pass


class KeyValueStore:
    """Redis-style key-value operations backed by SQLite."""

    def __init__(self, db: Database, clock: Callable[[], float] = time.time):
        """
        Initialize store.

        Args:
            db: Initialized Database instance
            clock: Returns current UNIX time in seconds, used for TTLs
        """
        self.db = db
        self.clock = clock

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        # BEGIN IMMEDIATE takes the write lock up front, so a check-then-write
        # such as set(nx=True) is atomic across connections and processes.
        with self.db.lock:
            try:
                connection = self.db.connection
                cursor = connection.cursor()
                cursor.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StoreError(str(e)) from e

            try:
                self._purge_expired(cursor)
                yield cursor
                cursor.execute("COMMIT")
            except sqlite3.Error as e:
                self._rollback(connection)
                raise StoreError(str(e)) from e
            except BaseException:
                self._rollback(connection)
                raise

    @staticmethod
    def _rollback(connection: sqlite3.Connection) -> None:
        if connection.in_transaction:
            connection.rollback()

    def _purge_expired(self, cursor: sqlite3.Cursor) -> None:
        cursor.execute(
            "SELECT name FROM kv_expiry WHERE expires_at <= ?", (self.clock(),)
        )
        expired = [row["name"] for row in cursor.fetchall()]
        for name in expired:
            self._delete_key(cursor, name)

    def _delete_key(self, cursor: sqlite3.Cursor, name: str) -> bool:
        removed = 0
        for table in _TABLES:
            cursor.execute(f"DELETE FROM {table} WHERE name = ?", (name,))
            removed += cursor.rowcount
        cursor.execute("DELETE FROM kv_expiry WHERE name = ?", (name,))
        return removed > 0

    def _key_exists(self, cursor: sqlite3.Cursor, name: str) -> bool:
        for table in _TABLES:
            cursor.execute(f"SELECT 1 FROM {table} WHERE name = ? LIMIT 1", (name,))
            if cursor.fetchone() is not None:
                return True
        return False

    def _set_expiry(self, cursor: sqlite3.Cursor, name: str, ttl: float) -> None:
        cursor.execute(
            """
            INSERT INTO kv_expiry (name, expires_at) VALUES (?, ?)
            ON CONFLICT(name) DO UPDATE SET expires_at = excluded.expires_at
            """,
            (name, self.clock() + ttl),
        )

    # ----- keys -----

    def exists(self, name: str) -> bool:
        """Check whether a key of any type exists."""
        with self._transaction() as cursor:
            return self._key_exists(cursor, name)

    def delete(self, name: str) -> bool:
        """Delete a key of any type. Returns True if something was removed."""
        with self._transaction() as cursor:
            return self._delete_key(cursor, name)

    def expire(self, name: str, ttl: float) -> bool:
        """Set a TTL in seconds on an existing key."""
        with self._transaction() as cursor:
            if not self._key_exists(cursor, name):
                return False
            self._set_expiry(cursor, name, ttl)
            return True

    def ttl(self, name: str) -> Optional[float]:
        """Seconds until the key expires, or None if it has no expiry."""
        with self._transaction() as cursor:
            cursor.execute("SELECT expires_at FROM kv_expiry WHERE name = ?", (name,))
            row = cursor.fetchone()
            if row is None:
                return None
            return max(0.0, row["expires_at"] - self.clock())

    def keys(self, pattern: str = "*") -> list[str]:
        """List keys matching a glob pattern."""
        with self._transaction() as cursor:
            names: set[str] = set()
            for table in _TABLES:
                cursor.execute(
                    f"SELECT DISTINCT name FROM {table} WHERE name GLOB ?", (pattern,)
                )
                names.update(row["name"] for row in cursor.fetchall())
            return sorted(names)

    # ----- strings -----

    def get(self, name: str) -> Optional[str]:
        """Get a string value."""
        with self._transaction() as cursor:
            cursor.execute("SELECT value FROM kv_strings WHERE name = ?", (name,))
            row = cursor.fetchone()
            return row["value"] if row else None

    def set(
        self,
        name: str,
        value: object,
        ttl: Optional[float] = None,
        nx: bool = False,
    ) -> bool:
        """
        Set a string value.

        Args:
            name: Key name
            value: Value, stored as its string form
            ttl: Optional expiry in seconds
            nx: Only set if the key does not already exist

        Returns:
            True if the value was written
        """
        with self._transaction() as cursor:
            if nx and self._key_exists(cursor, name):
                return False
            cursor.execute(
                """
                INSERT INTO kv_strings (name, value) VALUES (?, ?)
                ON CONFLICT(name) DO UPDATE SET value = excluded.value
                """,
                (name, str(value)),
            )
            if ttl is not None:
                self._set_expiry(cursor, name, ttl)
            else:
                cursor.execute("DELETE FROM kv_expiry WHERE name = ?", (name,))
            return True

    def incr(self, name: str, amount: int = 1) -> int:
        """Increment an integer value, creating it at zero."""
        with self._transaction() as cursor:
            cursor.execute("SELECT value FROM kv_strings WHERE name = ?", (name,))
            row = cursor.fetchone()
            value = int(row["value"]) + amount if row else amount
            cursor.execute(
                """
                INSERT INTO kv_strings (name, value) VALUES (?, ?)
                ON CONFLICT(name) DO UPDATE SET value = excluded.value
                """,
                (name, str(value)),
            )
            return value

    # ----- hashes -----

    def hset(self, name: str, mapping: dict[str, object]) -> int:
        """
        Set hash fields. None values are skipped.

        Returns:
            Number of newly created fields
        """
        with self._transaction() as cursor:
            created = 0
            for field_name, value in mapping.items():
                if value is None:
                    continue
                cursor.execute(
                    "SELECT 1 FROM kv_hashes WHERE name = ? AND field = ?",
                    (name, field_name),
                )
                if cursor.fetchone() is None:
                    created += 1
                cursor.execute(
                    """
                    INSERT INTO kv_hashes (name, field, value) VALUES (?, ?, ?)
                    ON CONFLICT(name, field) DO UPDATE SET value = excluded.value
                    """,
                    (name, field_name, str(value)),
                )
            return created

    def hget(self, name: str, field_name: str) -> Optional[str]:
        """Get a single hash field."""
        with self._transaction() as cursor:
            cursor.execute(
                "SELECT value FROM kv_hashes WHERE name = ? AND field = ?",
                (name, field_name),
            )
            row = cursor.fetchone()
            return row["value"] if row else None

    def hgetall(self, name: str) -> dict[str, str]:
        """Get all fields of a hash (empty dict if missing)."""
        with self._transaction() as cursor:
            cursor.execute(
                "SELECT field, value FROM kv_hashes WHERE name = ?", (name,)
            )
            return {row["field"]: row["value"] for row in cursor.fetchall()}

    def hdel(self, name: str, *fields: str) -> int:
        """Delete hash fields."""
        with self._transaction() as cursor:
            removed = 0
            for field_name in fields:
                cursor.execute(
                    "DELETE FROM kv_hashes WHERE name = ? AND field = ?",
                    (name, field_name),
                )
                removed += cursor.rowcount
            return removed

    # ----- sets -----

    def sadd(self, name: str, *members: str) -> int:
        """Add set members. Returns number of members that were new."""
        with self._transaction() as cursor:
            added = 0
            for member in members:
                cursor.execute(
                    "INSERT OR IGNORE INTO kv_sets (name, member) VALUES (?, ?)",
                    (name, str(member)),
                )
                added += cursor.rowcount
            return added

    def srem(self, name: str, *members: str) -> int:
        """Remove set members."""
        with self._transaction() as cursor:
            removed = 0
            for member in members:
                cursor.execute(
                    "DELETE FROM kv_sets WHERE name = ? AND member = ?",
                    (name, str(member)),
                )
                removed += cursor.rowcount
            return removed

    def smembers(self, name: str) -> set[str]:
        """Get all set members."""
        with self._transaction() as cursor:
            cursor.execute("SELECT member FROM kv_sets WHERE name = ?", (name,))
            return {row["member"] for row in cursor.fetchall()}

    def sismember(self, name: str, member: str) -> bool:
        """Check set membership."""
        with self._transaction() as cursor:
            cursor.execute(
                "SELECT 1 FROM kv_sets WHERE name = ? AND member = ?",
                (name, str(member)),
            )
            return cursor.fetchone() is not None

    def scard(self, name: str) -> int:
        """Count set members."""
        with self._transaction() as cursor:
            cursor.execute("SELECT COUNT(*) AS n FROM kv_sets WHERE name = ?", (name,))
            return cursor.fetchone()["n"]

    # ----- sorted sets -----

    def zadd(self, name: str, mapping: dict[str, float]) -> int:
        """Add or update sorted set members. Returns number of new members."""
        with self._transaction() as cursor:
            added = 0
            for member, score in mapping.items():
                cursor.execute(
                    "SELECT 1 FROM kv_zsets WHERE name = ? AND member = ?",
                    (name, member),
                )
                if cursor.fetchone() is None:
                    added += 1
                cursor.execute(
                    """
                    INSERT INTO kv_zsets (name, member, score) VALUES (?, ?, ?)
                    ON CONFLICT(name, member) DO UPDATE SET score = excluded.score
                    """,
                    (name, member, float(score)),
                )
            return added

    def zrem(self, name: str, *members: str) -> int:
        """Remove sorted set members."""
        with self._transaction() as cursor:
            removed = 0
            for member in members:
                cursor.execute(
                    "DELETE FROM kv_zsets WHERE name = ? AND member = ?",
                    (name, member),
                )
                removed += cursor.rowcount
            return removed

    def zscore(self, name: str, member: str) -> Optional[float]:
        """Get the score of a sorted set member."""
        with self._transaction() as cursor:
            cursor.execute(
                "SELECT score FROM kv_zsets WHERE name = ? AND member = ?",
                (name, member),
            )
            row = cursor.fetchone()
            return row["score"] if row else None

    def zcard(self, name: str) -> int:
        """Count sorted set members."""
        with self._transaction() as cursor:
            cursor.execute("SELECT COUNT(*) AS n FROM kv_zsets WHERE name = ?", (name,))
            return cursor.fetchone()["n"]

    def zrange(
        self, name: str, start: int = 0, stop: int = -1, desc: bool = False
    ) -> list[str]:
        """
        Get members by rank. start/stop are inclusive and may be negative.
        """
        order = "DESC" if desc else "ASC"
        with self._transaction() as cursor:
            cursor.execute(
                f"""
                SELECT member FROM kv_zsets WHERE name = ?
                ORDER BY score {order}, member {order}
                """,
                (name,),
            )
            members = [row["member"] for row in cursor.fetchall()]

        size = len(members)
        if start < 0:
            start = max(0, size + start)
        if stop < 0:
            stop = size + stop
        return members[start:stop + 1]

    def zrangebyscore(
        self,
        name: str,
        min_score: float = float("-inf"),
        max_score: float = float("inf"),
        offset: int = 0,
        count: Optional[int] = None,
        desc: bool = False,
    ) -> list[str]:
        """Get members with min_score <= score <= max_score."""
        order = "DESC" if desc else "ASC"
        with self._transaction() as cursor:
            cursor.execute(
                f"""
                SELECT member FROM kv_zsets
                WHERE name = ? AND score >= ? AND score <= ?
                ORDER BY score {order}, member {order}
                LIMIT ? OFFSET ?
                """,
                (name, min_score, max_score, -1 if count is None else count, offset),
            )
            return [row["member"] for row in cursor.fetchall()]

    def zremrangebyscore(self, name: str, min_score: float, max_score: float) -> int:
        """Remove members with min_score <= score <= max_score."""
        with self._transaction() as cursor:
            cursor.execute(
                "DELETE FROM kv_zsets WHERE name = ? AND score >= ? AND score <= ?",
                (name, min_score, max_score),
            )
            return cursor.rowcount
