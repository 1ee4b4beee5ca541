"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). All monetary values stored as Decimal strings.

Both backends implement real atomic units: ``atomic()`` serializes writers,
hides uncommitted writes from other threads and undoes every write in the
unit when it raises.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .exceptions import TransactionTimeout, TransactionConflict, InvalidInput
from .logging_config import get_logger


logger = get_logger("loan_engine.storage")


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


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    def __init__(self, lock_timeout: float = 5.0):
        self.lock_timeout = lock_timeout
        # Held for the whole of an atomic unit; re-entrant so units can nest
        self._tx_lock = threading.RLock()
        self._tx_depth = 0
        self._tx_owner: Optional[int] = None

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
        """Load all records from a table, in insertion order"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
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
    def _begin(self) -> None:
        """Backend hook: start the outermost unit"""
        pass

    @abstractmethod
    def _commit(self) -> None:
        """Backend hook: make the outermost unit durable"""
        pass

    @abstractmethod
    def _rollback(self) -> None:
        """Backend hook: discard the outermost unit"""
        pass

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        return self.load(table, record_id) is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records whose top-level keys equal every filter value"""
        results = []
        for record in self.load_all(table):
            if all(key in record and record[key] == value for key, value in filters.items()):
                results.append(record)
        return results

    @property
    def in_transaction(self) -> bool:
        """True when the calling thread is inside an atomic unit"""
        return self._tx_owner == threading.get_ident()

    def begin_transaction(self) -> None:
        """Enter an atomic unit, waiting at most ``lock_timeout`` seconds"""
        if not self._tx_lock.acquire(timeout=self.lock_timeout):
            raise TransactionTimeout(
                f"Could not start transaction within {self.lock_timeout}s"
            )
        self._tx_depth += 1
        if self._tx_depth == 1:
            self._tx_owner = threading.get_ident()
            try:
                self._begin()
            except Exception:
                self._release()
                raise

    def commit(self) -> None:
        """Leave an atomic unit; the outermost exit commits"""
        try:
            if self._tx_depth == 1:
                self._commit()
        finally:
            self._release()

    def rollback(self) -> None:
        """Leave an atomic unit; the outermost exit discards every write"""
        try:
            if self._tx_depth == 1:
                self._rollback()
        finally:
            self._release()

    def _release(self) -> None:
        self._tx_depth -= 1
        if self._tx_depth == 0:
            self._tx_owner = None
        self._tx_lock.release()

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield self
        except BaseException:
            self.rollback()
            raise
        else:
            self.commit()


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self, lock_timeout: float = 5.0):
        super().__init__(lock_timeout)
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._working: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None
        self._lock = threading.RLock()

    @staticmethod
    def _copy(data: Any) -> Any:
        # Deep copy to prevent external mutation
        return json.loads(json.dumps(data, default=str))

    def _view(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """Working copy for the unit's owner, committed data for everyone else"""
        if self._working is not None and self.in_transaction:
            return self._working
        return self._data

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._view().setdefault(table, {})

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self.atomic():
            with self._lock:
                self._table(table)[record_id] = self._copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            record = self._view().get(table, {}).get(record_id)
            if record:
                return self._copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            return [self._copy(record) for record in self._view().get(table, {}).values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self.atomic():
            with self._lock:
                return self._table(table).pop(record_id, None) is not None

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            return len(self._view().get(table, {}))

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self.atomic():
            with self._lock:
                self._view()[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def _begin(self) -> None:
        with self._lock:
            self._working = self._copy(self._data)

    def _commit(self) -> None:
        with self._lock:
            self._data = self._working
            self._working = None

    def _rollback(self) -> None:
        with self._lock:
            self._working = None


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:", lock_timeout: float = 5.0):
        super().__init__(lock_timeout)
        self.db_path = str(db_path)
        # Autocommit mode; units issue explicit BEGIN IMMEDIATE / COMMIT
        self._connection = sqlite3.connect(
            self.db_path,
            check_same_thread=False,
            isolation_level=None,
            timeout=lock_timeout
        )
        self._connection.row_factory = sqlite3.Row
        self._known_tables = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            self._connection.execute("PRAGMA journal_mode = WAL")
            self._connection.execute("PRAGMA synchronous = NORMAL")

    @contextmanager
    def _statement(self):
        """Serialize connection use and translate lock errors"""
        if not self._tx_lock.acquire(timeout=self.lock_timeout):
            raise TransactionTimeout(f"SQLite connection busy for more than {self.lock_timeout}s")
        try:
            yield self._connection
        except sqlite3.OperationalError as e:
            message = str(e).lower()
            if "locked" in message or "busy" in message:
                raise TransactionConflict(f"SQLite write conflict: {e}") from e
            raise
        finally:
            self._tx_lock.release()

    def _ensure_table(self, conn: sqlite3.Connection, table: str) -> None:
        """Ensure table exists with proper schema"""
        if not table.replace("_", "").isalnum():
            raise InvalidInput(f"Invalid table name: {table}")
        if table in self._known_tables:
            return
        conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._known_tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        now = datetime.now(timezone.utc).isoformat()
        data_json = json.dumps(data, default=str)
        with self._statement() as conn:
            self._ensure_table(conn, table)
            # Upsert keeps the original rowid so load_all order is insertion order
            conn.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, (record_id, data_json, now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._statement() as conn:
            self._ensure_table(conn, table)
            row = conn.execute(f"SELECT data FROM {table} WHERE id = ?", (record_id,)).fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._statement() as conn:
            self._ensure_table(conn, table)
            cursor = conn.execute(f"SELECT data FROM {table} ORDER BY rowid")
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._statement() as conn:
            self._ensure_table(conn, table)
            cursor = conn.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._statement() as conn:
            self._ensure_table(conn, table)
            cursor = conn.execute(f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,))
            return cursor.fetchone() is not None

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._statement() as conn:
            self._ensure_table(conn, table)
            return conn.execute(f"SELECT COUNT(*) AS count FROM {table}").fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._statement() as conn:
            self._ensure_table(conn, table)
            conn.execute(f"DELETE FROM {table}")

    def _begin(self) -> None:
        try:
            # Take the write lock up front so check-then-write is isolated
            self._connection.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as e:
            raise TransactionTimeout(f"Could not start SQLite transaction: {e}") from e

    def _commit(self) -> None:
        try:
            self._connection.execute("COMMIT")
        except sqlite3.OperationalError as e:
            self._rollback()
            raise TransactionConflict(f"SQLite commit failed: {e}") from e

    def _rollback(self) -> None:
        if self._connection.in_transaction:
            self._connection.execute("ROLLBACK")
        # Tables created inside the unit are gone again
        self._known_tables.clear()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._tx_lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(config) -> StorageInterface:
    """
    Build the storage backend named by ``config.database_url``.

    Supported forms: ``memory://`` and ``sqlite:///path/to/file.db``
    (``sqlite://`` alone is an in-memory SQLite database).
    """
    url = config.database_url
    timeout = config.transaction_timeout_seconds
    if url.startswith("memory://"):
        return InMemoryStorage(lock_timeout=timeout)
    if url.startswith("sqlite://"):
        path = url[len("sqlite:///"):] if url.startswith("sqlite:///") else ":memory:"
        return SQLiteStorage(path or ":memory:", lock_timeout=timeout)
    raise InvalidInput(f"Unsupported database_url: {url}")
