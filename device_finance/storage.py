"""
Storage Backend Module

Provides the abstract storage interface and implementations for in-memory
(testing) and SQLite (persistence). All monetary values are stored as Decimal
strings. Both backends support nested atomic transactions with full rollback
and per-key advisory locks for single-writer sections.
"""

from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Any, Union, Iterator
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import logging
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager


logger = logging.getLogger("device_finance.storage")


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])

        return cls(**data)


class _KeyedLocks:
    """Registry of re-entrant locks addressed by name"""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def get(self, key: str) -> threading.RLock:
        with self._guard:
            if key not in self._locks:
                self._locks[key] = threading.RLock()
            return self._locks[key]


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table in insertion order"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters, in insertion order"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    @abstractmethod
    def begin_transaction(self) -> None:
        """Start (or join) a transaction"""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit the current transaction level"""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Roll back the whole transaction"""
        pass

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """
        Context manager for atomic operations.

        Nested blocks join the outermost transaction; any exception escaping
        any level rolls back everything written since the outermost begin.
        The transaction holds the backend's lock until it ends, so other
        threads never see its uncommitted rows and never write into it.
        """
        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        else:
            self.commit()

    def on_commit(self, callback: Callable[[], None]) -> None:
        """
        Run callback once the outermost transaction commits.

        Outside a transaction the callback runs immediately. Callbacks queued in
        a transaction that rolls back are discarded. Callback failures are
        logged and never propagate.
        """
        if not self.in_transaction:
            self._run_callbacks([callback])
        else:
            self._commit_callbacks.append(callback)

    def _take_callbacks(self) -> List[Callable[[], None]]:
        callbacks = self._commit_callbacks
        self._commit_callbacks = []
        return callbacks

    @staticmethod
    def _run_callbacks(callbacks: List[Callable[[], None]]) -> None:
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.error(f"Post-commit callback {getattr(callback, '__name__', repr(callback))} failed: {e}")

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        """
        Advisory lock held for the duration of the block.

        Scoped to this storage instance; used for single-writer sections such
        as guard-check-and-append on a device's lock history.
        """
        with self._key_locks.get(key):
            yield

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        """
        Hold the backend for a read-then-write sequence without opening a transaction.

        Shares the lock an open transaction holds, so it waits for other
        threads' transactions and re-enters the caller's own.
        """
        with self._lock:
            yield

    def _enter_transaction(self) -> None:
        self._lock.acquire()
        if self._tx_depth == 0:
            self._tx_owner = threading.get_ident()
        self._tx_depth += 1

    def _leave_transaction(self) -> None:
        self._tx_depth -= 1
        if self._tx_depth == 0:
            self._tx_owner = None
        self._lock.release()

    @property
    def in_transaction(self) -> bool:
        """True while the calling thread has a transaction open on this backend"""
        return self._tx_depth > 0 and self._tx_owner == threading.get_ident()


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._tx_depth = 0
        self._tx_owner: Optional[int] = None
        self._snapshot: Optional[str] = None
        self._key_locks = _KeyedLocks()
        self._commit_callbacks: List[Callable[[], None]] = []

    def _ensure_table(self, table: str) -> None:
        if table not in self._data:
            self._data[table] = {}

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            # Deep copy to prevent external mutation
            self._data[table][record_id] = json.loads(json.dumps(data, default=str))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return json.loads(json.dumps(record))
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [json.loads(json.dumps(record)) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            self._ensure_table(table)
            results = []
            for record in self._data[table].values():
                match = True
                for key, value in filters.items():
                    if key not in record or record[key] != value:
                        match = False
                        break
                if match:
                    results.append(json.loads(json.dumps(record)))
            return results

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def begin_transaction(self) -> None:
        """Open a transaction, snapshotting all tables at the outermost level"""
        self._enter_transaction()
        if self._tx_depth == 1:
            self._snapshot = json.dumps(self._data, default=str)

    def commit(self) -> None:
        """Commit current transaction level"""
        if not self.in_transaction:
            return
        callbacks = []
        if self._tx_depth == 1:
            self._snapshot = None
            callbacks = self._take_callbacks()
        self._leave_transaction()
        self._run_callbacks(callbacks)

    def rollback(self) -> None:
        """
        Restore the snapshot taken when the outermost transaction began.

        No other thread wrote since then: their writes wait on the lock
        this transaction holds.
        """
        if not self.in_transaction:
            return
        if self._snapshot is not None:
            self._data = json.loads(self._snapshot)
        self._commit_callbacks = []
        if self._tx_depth == 1:
            self._snapshot = None
        self._leave_transaction()

    def get_all_data(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """Get all data for debugging/inspection"""
        with self._lock:
            return json.loads(json.dumps(self._data, default=str))


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        # One connection shared by all threads; an open transaction keeps the lock
        self._lock = threading.RLock()
        self._tx_depth = 0
        self._tx_owner: Optional[int] = None
        self._tables: set = set()
        self._key_locks = _KeyedLocks()
        self._commit_callbacks: List[Callable[[], None]] = []

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._connection.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)
        if self._tx_depth == 0:
            self._connection.commit()
        self._tables.add(table)

    def _autocommit(self) -> None:
        if self._tx_depth == 0:
            self._connection.commit()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite, keeping its original insertion position"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            self._connection.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, (record_id, data_json, now, now))
            self._autocommit()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY rowid
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            self._autocommit()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY rowid
            """)

            results = []
            for row in cursor.fetchall():
                record = json.loads(row['data'])
                match = True
                for key, value in filters.items():
                    if key not in record or record[key] != value:
                        match = False
                        break
                if match:
                    results.append(record)

            return results

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")
            self._autocommit()

    def begin_transaction(self) -> None:
        """Start or join a database transaction"""
        # isolation_level='DEFERRED' opens the real transaction on first write
        self._enter_transaction()

    def commit(self) -> None:
        """Commit when the outermost level completes"""
        if not self.in_transaction:
            return
        callbacks = []
        if self._tx_depth == 1:
            try:
                self._connection.commit()
            except sqlite3.Error:
                self.rollback()
                raise
            callbacks = self._take_callbacks()
        self._leave_transaction()
        self._run_callbacks(callbacks)

    def rollback(self) -> None:
        """Roll back the whole transaction"""
        if not self.in_transaction:
            return
        self._connection.rollback()
        # Tables created inside the rolled back transaction are gone again
        self._tables.clear()
        self._commit_callbacks = []
        self._leave_transaction()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL.

    Supported: ``memory://``, ``sqlite:///:memory:`` and ``sqlite:///<path>``.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        path = database_url[len("sqlite:///"):] or ":memory:"
        logger.info(f"Opening SQLite storage at {path}")
        return SQLiteStorage(path)
    raise ValueError(f"Unsupported database URL: {database_url}")
