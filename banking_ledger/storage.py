"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). All monetary values stored as Decimal strings.

Every backend supports a re-entrant ``atomic()`` scope that either commits
all writes made inside it or none of them, per-record locks for
read-modify-write sequences, and version-checked writes.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Set, Union, get_args, get_origin, get_type_hints
from decimal import Decimal
from datetime import datetime, timezone
from enum import Enum
import copy
import json
import re
import sqlite3
import threading
from dataclasses import dataclass, fields
from pathlib import Path
from contextlib import contextmanager

from .currency import Currency
from .errors import ConcurrentModificationError, PersistenceError


_TABLE_NAME = re.compile(r"^[a-z_][a-z0-9_]*$")


def serialize_value(value: Any) -> Any:
    """Convert a field value to its JSON-compatible stored form"""
    if isinstance(value, Currency):
        return value.code
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {k: serialize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [serialize_value(v) for v in value]
    return value


def deserialize_value(value: Any, hint: Any) -> Any:
    """Convert a stored value back according to a dataclass type hint"""
    if value is None:
        return None
    if get_origin(hint) is Union:
        args = [a for a in get_args(hint) if a is not type(None)]
        return deserialize_value(value, args[0]) if len(args) == 1 else value
    if hint is datetime and isinstance(value, str):
        return datetime.fromisoformat(value)
    if hint is Decimal and not isinstance(value, Decimal):
        return Decimal(str(value))
    if hint is Currency and not isinstance(value, Currency):
        return Currency.from_code(value)
    if isinstance(hint, type) and issubclass(hint, Enum) and not isinstance(value, hint):
        return hint(value)
    return value


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {f.name: serialize_value(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary, ignoring unknown keys"""
        hints = get_type_hints(cls)
        kwargs = {}
        for f in fields(cls):
            if f.name in data:
                kwargs[f.name] = deserialize_value(data[f.name], hints.get(f.name))
        return cls(**kwargs)

    def touch(self) -> None:
        self.updated_at = datetime.now(timezone.utc)


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    def __init__(self):
        self._lock = threading.RLock()
        self._depth = 0
        self._record_locks: Dict[str, List[Any]] = {}
        self._record_locks_guard = threading.Lock()
        self._after_commit: List[Callable[[], None]] = []

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
        """Find records matching filters"""
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

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    @contextmanager
    def atomic(self):
        """
        Context manager for atomic operations.

        Re-entrant: nested scopes join the outermost one, which alone commits
        or rolls back. The backend lock is held for the whole scope so no
        other thread can interleave writes with it. Callbacks registered
        with ``after_commit`` run once the outermost scope has committed,
        after the backend lock is released; a rollback discards them.
        """
        callbacks: List[Callable[[], None]] = []
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                self._after_commit = []
                self.begin_transaction()
            self._depth += 1
            try:
                yield
            except BaseException:
                self._depth -= 1
                if outermost:
                    self._after_commit = []
                    self.rollback()
                raise
            else:
                self._depth -= 1
                if outermost:
                    self.commit()
                    callbacks, self._after_commit = self._after_commit, []
        for callback in callbacks:
            callback()

    def after_commit(self, callback: Callable[[], None]) -> None:
        """
        Run ``callback`` when the current atomic scope commits, or straight
        away when no scope is open.
        """
        with self._lock:
            if self._depth > 0:
                self._after_commit.append(callback)
                return
        callback()

    @contextmanager
    def record_lock(self, table: str, record_id: str):
        """
        Hold a re-entrant lock on one record.

        Acquire inside ``atomic()``, never the other way round, so the lock
        order is always backend lock first. A lock is dropped once no
        thread holds or waits for it.
        """
        key = f"{table}:{record_id}"
        with self._record_locks_guard:
            entry = self._record_locks.setdefault(key, [threading.RLock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._record_locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._record_locks[key]

    def save_versioned(self, table: str, record_id: str, data: Dict[str, Any],
                       expected_version: int) -> None:
        """
        Save a record only if its stored ``version`` still equals
        ``expected_version`` (compare-and-swap).
        """
        with self._lock:
            current = self.load(table, record_id)
            current_version = current.get('version', 0) if current else None
            if current_version != expected_version:
                raise ConcurrentModificationError(
                    f"{table} record {record_id} was modified concurrently "
                    f"(expected version {expected_version}, found {current_version})"
                )
            self.save(table, record_id, data)

    @staticmethod
    def _check_table(table: str) -> None:
        if not _TABLE_NAME.match(table):
            raise ValueError(f"Invalid table name: {table!r}")


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None

    def _ensure_table(self, table: str) -> None:
        if table not in self._data:
            self._check_table(table)
            self._data[table] = {}

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            # Deep copy to prevent external mutation
            self._data[table][record_id] = json.loads(json.dumps(data, default=str))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record is not None:
                return copy.deepcopy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return [copy.deepcopy(record) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            return self._data[table].pop(record_id, None) is not None

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return [
                copy.deepcopy(record) for record in self._data[table].values()
                if _matches(record, filters)
            ]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._check_table(table)
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def begin_transaction(self) -> None:
        with self._lock:
            self._snapshot = copy.deepcopy(self._data)

    def commit(self) -> None:
        with self._lock:
            self._snapshot = None

    def rollback(self) -> None:
        with self._lock:
            if self._snapshot is not None:
                self._data = self._snapshot
                self._snapshot = None


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        super().__init__()
        self.db_path = str(db_path)
        self._tables: Set[str] = set()
        try:
            # Autocommit mode; transactions are opened explicitly with BEGIN IMMEDIATE
            self._connection = sqlite3.connect(
                self.db_path, check_same_thread=False, isolation_level=None
            )
            self._connection.row_factory = sqlite3.Row
            self._connection.execute("PRAGMA busy_timeout = 5000")
            if self.db_path != ":memory:":
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open SQLite database {self.db_path}: {e}") from e

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        if self._connection is None:
            raise PersistenceError("Storage is closed")
        try:
            return self._connection.execute(sql, params)
        except sqlite3.Error as e:
            raise PersistenceError(f"SQLite error: {e}") from e

    def _ensure_table(self, table: str) -> None:
        if table in self._tables:
            return
        self._check_table(table)
        self._execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)
        self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            created_at = data.get('created_at') or now
            self._execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, (record_id, json.dumps(data, default=str), str(created_at), now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            row = self._execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            return json.loads(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            rows = self._execute(
                f"SELECT data FROM {table} ORDER BY created_at, rowid"
            ).fetchall()
            return [json.loads(row['data']) for row in rows]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            row = self._execute(
                f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)
            ).fetchone()
            return row is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return self._execute(f"SELECT COUNT(*) AS count FROM {table}").fetchone()['count']

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._execute(f"DELETE FROM {table}")

    def begin_transaction(self) -> None:
        with self._lock:
            self._execute("BEGIN IMMEDIATE")

    def commit(self) -> None:
        with self._lock:
            if self._connection is not None and self._connection.in_transaction:
                self._execute("COMMIT")

    def rollback(self) -> None:
        with self._lock:
            if self._connection is not None and self._connection.in_transaction:
                self._execute("ROLLBACK")
                # Tables created inside the rolled-back transaction are gone
                self._tables.clear()

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    return all(key in record and record[key] == value for key, value in filters.items())


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL.

    ``memory`` selects the in-memory backend, ``sqlite:///path.db`` (or
    ``sqlite://:memory:``) selects SQLite.
    """
    if database_url in ("memory", "memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
