"""
SQLite database connection and schema management.
"""

import sqlite3
import threading
from pathlib import Path
from typing import Optional


class Database:
    """SQLite database connection manager."""

    def __init__(self, db_path: str, timeout: float = 5.0):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file, or ":memory:" for in-memory DB.
            timeout: Seconds to wait for a locked database before failing
        """
        self.db_path = db_path
        self.timeout = timeout
        self.lock = threading.RLock()
        self._connection: Optional[sqlite3.Connection] = None
        self._connect()

    def _connect(self) -> None:
        """Establish database connection."""
        if self.db_path != ":memory:":
            # Ensure parent directory exists
            path = Path(self.db_path)
            path.parent.mkdir(parents=True, exist_ok=True)

        # The trigger server may call in from worker threads; access is
        # serialized through self.lock.
        self._connection = sqlite3.connect(
            self.db_path,
            timeout=self.timeout,
            check_same_thread=False,
            isolation_level=None,  # transactions are opened explicitly by the store
        )
        self._connection.row_factory = sqlite3.Row

    @property
    def connection(self) -> sqlite3.Connection:
        """Get the database connection."""
        if self._connection is None:
            raise sqlite3.ProgrammingError("Database connection is closed")
        return self._connection

    def initialize(self) -> None:
        """Create key-value schema if it doesn't exist."""
        cursor = self.connection.cursor()

        # Plain string values
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS kv_strings (
                name TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)

        # Hash fields
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS kv_hashes (
                name TEXT NOT NULL,
                field TEXT NOT NULL,
                value TEXT NOT NULL,
                PRIMARY KEY (name, field)
            )
        """)

        # Set members
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS kv_sets (
                name TEXT NOT NULL,
                member TEXT NOT NULL,
                PRIMARY KEY (name, member)
            )
        """)

        # Sorted set members
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS kv_zsets (
                name TEXT NOT NULL,
                member TEXT NOT NULL,
                score REAL NOT NULL,
                PRIMARY KEY (name, member)
            )
        """)

        # Expiry applies to a key of any type
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS kv_expiry (
                name TEXT PRIMARY KEY,
                expires_at REAL NOT NULL
            )
        """)

        # Create indexes for common queries
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_zsets_score ON kv_zsets(name, score)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_expiry_expires_at ON kv_expiry(expires_at)
        """)

        self.connection.commit()

    def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            self._connection.close()
            self._connection = None
