"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing),
SQLite (persistence) and PostgreSQL (production). All monetary values are
stored as Decimal strings inside JSON documents.

Every backend supports a unit of work through ``atomic()``: writes made inside
the unit become visible to other callers only when it commits, and are
discarded entirely on rollback.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Tuple, Union
from datetime import datetime, timezone
import sqlite3
import json
import threading
from pathlib import Path
from contextlib import contextmanager

from .errors import ConflictError, StorageFailureError
from .logging_config import get_logger


logger = get_logger("retail_ledger.storage")

_DELETED = object()


def _acquire_connection(lock, timeout: float, backend: str) -> None:
    """Take a shared-connection lock or give up with ConflictError"""
    if not lock.acquire(timeout=timeout):
        raise ConflictError(f"{backend} connection still busy after {timeout}s")


@contextmanager
def _bounded(lock, timeout: float, backend: str):
    _acquire_connection(lock, timeout, backend)
    try:
        yield
    finally:
        lock.release()


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
        """Find records whose top-level fields equal the filter values"""
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
    def next_sequence(self, name: str) -> int:
        """Return the next value of a named, monotonically increasing sequence"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def in_transaction(self) -> bool:
        """Whether the calling thread is inside a unit of work"""
        return False

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @contextmanager
    def atomic(self):
        """
        Context manager for atomic operations

        A nested ``atomic()`` joins the enclosing unit; only the outermost
        block commits or rolls back.
        """
        if self.in_transaction():
            yield
            return

        self.begin_transaction()
        try:
            yield
            self.commit()
        except BaseException:
            self.rollback()
            raise


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation

    Writes made inside a unit of work are buffered per thread and applied to
    the shared tables in one step on commit, so other threads never observe
    uncommitted data.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._sequences: Dict[str, int] = {}
        self._lock = threading.RLock()
        self._local = threading.local()

    def _buffer(self) -> Optional[Dict[Tuple[str, str], Any]]:
        return getattr(self._local, "buffer", None)

    @staticmethod
    def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
        # Deep copy to prevent external mutation
        return json.loads(json.dumps(data, default=str))

    def _visible_rows(self, table: str) -> Dict[str, Dict[str, Any]]:
        """Committed rows overlaid with the calling thread's pending writes"""
        with self._lock:
            rows = dict(self._data.get(table, {}))

        buffer = self._buffer()
        if buffer:
            for (buffered_table, record_id), data in buffer.items():
                if buffered_table != table:
                    continue
                if data is _DELETED:
                    rows.pop(record_id, None)
                else:
                    rows[record_id] = data
        return rows

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        copied = self._copy(data)
        buffer = self._buffer()
        if buffer is not None:
            buffer.pop((table, record_id), None)
            buffer[(table, record_id)] = copied
            return

        with self._lock:
            self._data.setdefault(table, {})[record_id] = copied

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        buffer = self._buffer()
        if buffer is not None and (table, record_id) in buffer:
            record = buffer[(table, record_id)]
            return None if record is _DELETED else self._copy(record)

        with self._lock:
            record = self._data.get(table, {}).get(record_id)
            if record is not None:
                return self._copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        return [self._copy(record) for record in self._visible_rows(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        existed = self.exists(table, record_id)
        buffer = self._buffer()
        if buffer is not None:
            if existed:
                buffer[(table, record_id)] = _DELETED
            return existed

        with self._lock:
            return self._data.get(table, {}).pop(record_id, None) is not None

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        return self.load(table, record_id) is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        results = []
        for record in self._visible_rows(table).values():
            if all(key in record and record[key] == value for key, value in filters.items()):
                results.append(self._copy(record))
        return results

    def count(self, table: str) -> int:
        """Count records in table"""
        return len(self._visible_rows(table))

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        buffer = self._buffer()
        if buffer is not None:
            for record_id in self._visible_rows(table):
                buffer[(table, record_id)] = _DELETED
            return

        with self._lock:
            self._data[table] = {}

    def next_sequence(self, name: str) -> int:
        """Sequences are shared and never rolled back, so values are never reused"""
        with self._lock:
            value = self._sequences.get(name, 0) + 1
            self._sequences[name] = value
            return value

    def in_transaction(self) -> bool:
        return self._buffer() is not None

    def begin_transaction(self) -> None:
        """Start buffering writes for the calling thread"""
        if self._buffer() is None:
            self._local.buffer = {}

    def commit(self) -> None:
        """Apply the calling thread's buffered writes in one step"""
        buffer = self._buffer()
        if buffer is None:
            return
        self._local.buffer = None

        with self._lock:
            for (table, record_id), data in buffer.items():
                rows = self._data.setdefault(table, {})
                if data is _DELETED:
                    rows.pop(record_id, None)
                else:
                    rows[record_id] = data

    def rollback(self) -> None:
        """Discard the calling thread's buffered writes"""
        self._local.buffer = None

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def get_all_data(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """Get all committed data for debugging/inspection"""
        with self._lock:
            return json.loads(json.dumps(self._data, default=str))


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence

    One connection is shared by all threads. A unit of work holds the
    connection lock from ``begin_transaction`` until it commits or rolls
    back, so units from different threads are serialized and readers never
    see another unit's uncommitted writes.

    Waiting for the connection is bounded by ``busy_timeout``; on expiry
    the caller gets a ConflictError and may retry.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:", busy_timeout: float = 5.0):
        self.db_path = str(db_path)
        self.busy_timeout = busy_timeout
        # Autocommit mode; transactions are started explicitly with BEGIN IMMEDIATE
        self._connection = sqlite3.connect(
            self.db_path,
            check_same_thread=False,
            isolation_level=None,
            timeout=busy_timeout,
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False
        self._owner: Optional[int] = None
        self._known_tables = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._connection_lock(), self._translate_errors():
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = FULL")

        with self._connection_lock(), self._translate_errors():
            self._connection.execute("""
                CREATE TABLE IF NOT EXISTS ledger_sequences (
                    name TEXT PRIMARY KEY,
                    value INTEGER NOT NULL
                )
            """)

    @contextmanager
    def _translate_errors(self):
        """Map sqlite3 exceptions onto the ledger error taxonomy"""
        try:
            yield
        except sqlite3.OperationalError as e:
            message = str(e).lower()
            if "locked" in message or "busy" in message:
                raise ConflictError(f"SQLite database is busy: {e}") from e
            raise StorageFailureError(f"SQLite operation failed: {e}", cause=e) from e
        except sqlite3.Error as e:
            raise StorageFailureError(f"SQLite operation failed: {e}", cause=e) from e

    def _connection_lock(self):
        return _bounded(self._lock, self.busy_timeout, "SQLite")

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._known_tables:
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
        # DDL inside an open unit is rolled back with it
        if not self._in_transaction:
            self._known_tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._connection_lock(), self._translate_errors():
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            # Upsert keeps rowid and created_at of existing rows
            self._connection.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, (record_id, data_json, now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._connection_lock(), self._translate_errors():
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
        with self._connection_lock(), self._translate_errors():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY rowid
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._connection_lock(), self._translate_errors():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._connection_lock(), self._translate_errors():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSON1 field extraction"""
        with self._connection_lock(), self._translate_errors():
            self._ensure_table(table)

            conditions = []
            params = []
            for key, value in filters.items():
                conditions.append("json_extract(data, ?) = ?")
                params.extend([f"$.{key}", value])

            where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} {where_clause} ORDER BY rowid
            """, params)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._connection_lock(), self._translate_errors():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._connection_lock(), self._translate_errors():
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")

    def next_sequence(self, name: str) -> int:
        """Advance a sequence row; inside a unit the step commits with it"""
        with self._connection_lock(), self._translate_errors():
            self._connection.execute("""
                INSERT INTO ledger_sequences (name, value) VALUES (?, 1)
                ON CONFLICT(name) DO UPDATE SET value = value + 1
            """, (name,))
            cursor = self._connection.execute(
                "SELECT value FROM ledger_sequences WHERE name = ?", (name,)
            )
            return cursor.fetchone()['value']

    def in_transaction(self) -> bool:
        return self._in_transaction and self._owner == threading.get_ident()

    def begin_transaction(self) -> None:
        """Start a database transaction, holding the connection for this thread"""
        _acquire_connection(self._lock, self.busy_timeout, "SQLite")
        if self._in_transaction:
            # Re-entrant begin from the owning thread
            self._lock.release()
            return
        try:
            with self._translate_errors():
                self._connection.execute("BEGIN IMMEDIATE")
        except BaseException:
            self._lock.release()
            raise
        self._in_transaction = True
        self._owner = threading.get_ident()

    def _end_transaction(self) -> None:
        self._in_transaction = False
        self._owner = None
        self._lock.release()

    def commit(self) -> None:
        """Commit current transaction"""
        if not self.in_transaction():
            return
        # On failure the unit stays open so the caller's rollback can discard it
        with self._translate_errors():
            self._connection.execute("COMMIT")
        self._end_transaction()

    def rollback(self) -> None:
        """Rollback current transaction"""
        if not self.in_transaction():
            return
        try:
            if self._connection.in_transaction:
                self._connection.execute("ROLLBACK")
        except sqlite3.Error as e:
            logger.error(f"SQLite rollback failed: {e}")
            raise StorageFailureError(f"SQLite rollback failed: {e}", cause=e) from e
        finally:
            self._end_transaction()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """PostgreSQL storage backend with ACID transaction support"""

    # SQLSTATE codes that signal a transient concurrency failure
    CONFLICT_CODES = {
        "40001",  # serialization_failure
        "40P01",  # deadlock_detected
        "55P03",  # lock_not_available
    }

    def __init__(self, connection_string: str, lock_timeout: float = 5.0):
        try:
            import psycopg2
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        self.lock_timeout = lock_timeout
        self._connection = None
        self._lock = threading.RLock()
        self._in_transaction = False
        self._owner: Optional[int] = None
        self._known_tables = set()
        self._connect()

    def _connect(self) -> None:
        """Establish database connection"""
        with self._connection_lock(), self._translate_errors():
            self._connection = self.psycopg2.connect(
                self.connection_string,
                cursor_factory=self.extras.RealDictCursor
            )
            self._connection.autocommit = False  # We handle transactions manually
            cursor = self._connection.cursor()
            try:
                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS ledger_sequences (
                        name TEXT PRIMARY KEY,
                        value BIGINT NOT NULL
                    )
                """)
            finally:
                cursor.close()
            self._connection.commit()

    @contextmanager
    def _translate_errors(self):
        """Map psycopg2 exceptions onto the ledger error taxonomy"""
        try:
            yield
        except self.psycopg2.Error as e:
            if getattr(e, "pgcode", None) in self.CONFLICT_CODES:
                raise ConflictError(f"PostgreSQL concurrency conflict: {e}") from e
            raise StorageFailureError(f"PostgreSQL operation failed: {e}", cause=e) from e

    def _connection_lock(self):
        return _bounded(self._lock, self.lock_timeout, "PostgreSQL")

    @contextmanager
    def _cursor(self):
        """Cursor that autocommits outside of a unit of work"""
        with self._connection_lock(), self._translate_errors():
            cursor = self._connection.cursor()
            try:
                yield cursor
                if not self._in_transaction:
                    self._connection.commit()
            except BaseException:
                if not self._in_transaction:
                    self._connection.rollback()
                raise
            finally:
                cursor.close()

    def _ensure_table(self, cursor, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._known_tables:
            return
        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                seq BIGSERIAL,
                id TEXT PRIMARY KEY,
                data JSONB NOT NULL,
                created_at TIMESTAMP DEFAULT NOW(),
                updated_at TIMESTAMP DEFAULT NOW()
            )
        """)
        cursor.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_data
            ON {table} USING gin(data)
        """)
        if not self._in_transaction:
            self._known_tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to PostgreSQL using UPSERT"""
        now = datetime.now(timezone.utc)
        data_json = json.dumps(data, default=str)
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    data = EXCLUDED.data,
                    updated_at = EXCLUDED.updated_at
            """, (record_id, data_json, now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from PostgreSQL"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"""
                SELECT data FROM {table} WHERE id = %s
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return dict(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"""
                SELECT data FROM {table} ORDER BY seq
            """)
            return [dict(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from PostgreSQL"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"""
                DELETE FROM {table} WHERE id = %s
            """, (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"""
                SELECT 1 FROM {table} WHERE id = %s LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB operators"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            if not filters:
                cursor.execute(f"""
                    SELECT data FROM {table} ORDER BY seq
                """)
            else:
                conditions = []
                params = []
                for key, value in filters.items():
                    conditions.append("data ->> %s = %s")
                    params.extend([key, str(value)])

                where_clause = " AND ".join(conditions)
                cursor.execute(f"""
                    SELECT data FROM {table}
                    WHERE {where_clause}
                    ORDER BY seq
                """, params)

            return [dict(row['data']) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"DELETE FROM {table}")

    def next_sequence(self, name: str) -> int:
        """Advance a sequence row with an atomic upsert"""
        with self._cursor() as cursor:
            cursor.execute("""
                INSERT INTO ledger_sequences (name, value) VALUES (%s, 1)
                ON CONFLICT (name) DO UPDATE SET value = ledger_sequences.value + 1
                RETURNING value
            """, (name,))
            return cursor.fetchone()['value']

    def in_transaction(self) -> bool:
        return self._in_transaction and self._owner == threading.get_ident()

    def begin_transaction(self) -> None:
        """Start a database transaction, holding the connection for this thread"""
        _acquire_connection(self._lock, self.lock_timeout, "PostgreSQL")
        if self._in_transaction:
            self._lock.release()
            return
        # psycopg2 opens the transaction implicitly on the first statement
        self._in_transaction = True
        self._owner = threading.get_ident()

    def _end_transaction(self) -> None:
        self._in_transaction = False
        self._owner = None
        self._lock.release()

    def commit(self) -> None:
        """Commit current transaction"""
        if not self.in_transaction():
            return
        with self._translate_errors():
            self._connection.commit()
        self._end_transaction()

    def rollback(self) -> None:
        """Rollback current transaction"""
        if not self.in_transaction():
            return
        try:
            with self._translate_errors():
                self._connection.rollback()
        finally:
            # Tables created inside the discarded unit no longer exist
            self._known_tables.clear()
            self._end_transaction()

    def close(self) -> None:
        """Close PostgreSQL connection"""
        with self._lock:
            if self._connection:
                try:
                    self._connection.close()
                except self.psycopg2.Error as e:
                    logger.warning(f"Error closing PostgreSQL connection: {e}")
                self._connection = None


def create_storage(database_url: str, busy_timeout: float = 5.0) -> StorageInterface:
    """
    Create a storage backend from a database URL

    Args:
        database_url: ``memory://``, ``sqlite:///path/to.db`` or a
            ``postgresql://`` connection string
        busy_timeout: Seconds to wait for a busy connection or locked database

    Returns:
        Storage backend instance
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        path = database_url[len("sqlite:///"):] or ":memory:"
        return SQLiteStorage(path, busy_timeout=busy_timeout)
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url, lock_timeout=busy_timeout)
    raise ValueError(f"Unsupported database URL: {database_url}")
