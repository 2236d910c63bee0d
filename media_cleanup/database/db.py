"""
Database connection management.
"""
import sqlite3
import logging
import threading
from pathlib import Path
from typing import Optional, Union

from ..exceptions import DatabaseError
from .schema import init_schema


class DBManager:
    def __init__(self, db_path: Union[Path, str]):
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        # The scan worker is the single writer; status readers open their own connections
        self._write_lock = threading.Lock()

    def connect(self) -> sqlite3.Connection:
        """
        Connects to the SQLite database and configures pragmas.
        """
        if self._conn:
            return self._conn

        logging.info(f"Connecting to database: {self.db_path}")
        try:
            self._conn = open_connection(self.db_path)
            # Ensure schema exists
            init_schema(self._conn)
        except sqlite3.Error as e:
            self.close()
            raise DatabaseError(f"Cannot open database {self.db_path}: {e}") from e

        return self._conn

    def reader(self) -> sqlite3.Connection:
        """
        Opens a separate connection for status and stats reads.
        WAL mode lets it see committed batches while a worker writes.
        """
        return open_connection(self.db_path)

    def close(self):
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self.connect()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def write_lock(self) -> threading.Lock:
        """Returns the write lock for thread-safe database operations."""
        return self._write_lock


def open_connection(db_path: Union[Path, str]) -> sqlite3.Connection:
    conn = sqlite3.connect(str(db_path), timeout=10, check_same_thread=False)
    if str(db_path) != ':memory:':
        # Safe for single-writer, multi-reader
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA temp_store=MEMORY;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn
