"""
Storage Backend Module

Provides the abstract storage interface and implementations for in-memory
(testing) and SQLite (persistence). Records are stored as JSON documents keyed
by id. All monetary values are integer minor units.

Balance mutations never read-modify-write in Python: they go through
``update_where``, a single conditional update (compare-and-set) that only
applies when the record still satisfies the given predicate.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Tuple, Union
from decimal import Decimal
from datetime import datetime, timezone
from enum import Enum
import copy
import sqlite3
import json
import re
import threading
from dataclasses import dataclass, fields, is_dataclass
from pathlib import Path
from contextlib import contextmanager


_FIELD_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_OPERATORS = ("gte", "lte", "gt", "lt", "ne")


def to_storable(value: Any) -> Any:
    """Convert a value into its JSON-storable form"""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, StorageRecord):
        return value.to_dict()
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_storable(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, dict):
        return {k: to_storable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_storable(v) for v in value]
    return value


def parse_datetime(value: Optional[Union[str, datetime]]) -> Optional[datetime]:
    """Parse an ISO timestamp as stored by ``to_storable``"""
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class StorageRecord:
    """Base class for all stored records (immutable value objects)"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {f.name: to_storable(getattr(self, f.name)) for f in fields(self)}


def _split_condition(key: str) -> Tuple[str, str]:
    field_name, _, op = key.partition("__")
    if op and op not in _OPERATORS:
        raise ValueError(f"Unsupported condition operator: {op}")
    if not _FIELD_NAME.match(field_name):
        raise ValueError(f"Invalid field name: {field_name}")
    return field_name, op or "eq"


def _compare(actual: Any, op: str, expected: Any) -> bool:
    if op == "eq":
        return actual == expected
    if op == "ne":
        return actual != expected
    if actual is None:
        return False
    if op == "gte":
        return actual >= expected
    if op == "lte":
        return actual <= expected
    if op == "gt":
        return actual > expected
    return actual < expected


def record_matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    """Evaluate ``{field: value}`` / ``{field__op: value}`` filters against a record"""
    for key, value in filters.items():
        field_name, op = _split_condition(key)
        if op == "eq" and field_name not in record:
            return False
        if not _compare(record.get(field_name), op, to_storable(value)):
            return False
    return True


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
        """Load all records from a table"""
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
        """Find records matching filters (``field`` or ``field__gte`` style keys)"""
        pass

    @abstractmethod
    def update_where(
        self,
        table: str,
        record_id: str,
        conditions: Dict[str, Any],
        sets: Optional[Dict[str, Any]] = None,
        increments: Optional[Dict[str, int]] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Conditionally update a single record.

        Args:
            table: Table name
            record_id: Record to update
            conditions: Predicate the stored record must satisfy at write time
            sets: Fields to overwrite
            increments: Numeric fields to add to (negative to subtract)

        Returns:
            The updated record, or None if the record is missing or the
            predicate did not hold
        """
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
        """Roll back the current transaction level"""
        pass

    @contextmanager
    def atomic(self):
        """
        Context manager for atomic operations.

        Blocks nest; only the outermost block commits. An exception anywhere
        inside rolls back everything written since the outermost begin.
        """
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

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._depth = 0
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    @staticmethod
    def _copy(record: Dict[str, Any]) -> Dict[str, Any]:
        # Deep copy to prevent external mutation
        return json.loads(json.dumps(record, default=str))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            self._data[table][record_id] = self._copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return self._copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [self._copy(record) for record in self._data[table].values()]

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
            return [
                self._copy(record) for record in self._data[table].values()
                if record_matches(record, filters)
            ]

    def update_where(
        self,
        table: str,
        record_id: str,
        conditions: Dict[str, Any],
        sets: Optional[Dict[str, Any]] = None,
        increments: Optional[Dict[str, int]] = None
    ) -> Optional[Dict[str, Any]]:
        """Conditionally update a record while holding the storage lock"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record is None or not record_matches(record, conditions):
                return None

            for field_name, delta in (increments or {}).items():
                _split_condition(field_name)
                record[field_name] = (record.get(field_name) or 0) + delta
            for field_name, value in (sets or {}).items():
                _split_condition(field_name)
                record[field_name] = self._copy({"v": to_storable(value)})["v"]
            record["updated_at"] = datetime.now(timezone.utc).isoformat()
            return self._copy(record)

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}

    def begin_transaction(self) -> None:
        """Acquire the storage lock and snapshot state at the outermost level"""
        self._lock.acquire()
        if self._depth == 0:
            self._snapshot = copy.deepcopy(self._data)
        self._depth += 1

    def commit(self) -> None:
        """Release one transaction level"""
        if self._depth == 0:
            raise RuntimeError("commit() called outside a transaction")
        self._depth -= 1
        if self._depth == 0:
            self._snapshot = None
        self._lock.release()

    def rollback(self) -> None:
        """Restore the snapshot once the outermost level unwinds"""
        if self._depth == 0:
            raise RuntimeError("rollback() called outside a transaction")
        self._depth -= 1
        if self._depth == 0:
            self._data = self._snapshot
            self._snapshot = None
        self._lock.release()

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def get_all_data(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """Get all data for debugging/inspection"""
        with self._lock:
            return json.loads(json.dumps(self._data, default=str))


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    _SQL_OPERATORS = {"gte": ">=", "lte": "<=", "gt": ">", "lt": "<"}

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # Autocommit mode; transactions are issued explicitly
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._tables: set = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if not _FIELD_NAME.match(table):
            raise ValueError(f"Invalid table name: {table}")
        if table in self._tables:
            return
        with self._lock:
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
            self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, record_id, now, now))

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
                SELECT data FROM {table} ORDER BY created_at
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
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
                SELECT data FROM {table} ORDER BY created_at
            """)

            results = []
            for row in cursor.fetchall():
                record = json.loads(row['data'])
                if record_matches(record, filters):
                    results.append(record)
            return results

    def _where_clause(self, conditions: Dict[str, Any]) -> Tuple[str, List[Any]]:
        clauses = []
        params: List[Any] = []
        for key, value in conditions.items():
            field_name, op = _split_condition(key)
            column = f"json_extract(data, '$.{field_name}')"
            value = to_storable(value)
            if op == "eq":
                if value is None:
                    clauses.append(f"{column} IS NULL")
                else:
                    clauses.append(f"{column} = ?")
                    params.append(value)
            elif op == "ne":
                if value is None:
                    clauses.append(f"{column} IS NOT NULL")
                else:
                    clauses.append(f"({column} IS NULL OR {column} != ?)")
                    params.append(value)
            else:
                clauses.append(f"{column} {self._SQL_OPERATORS[op]} ?")
                params.append(value)
        return "".join(f" AND {clause}" for clause in clauses), params

    def update_where(
        self,
        table: str,
        record_id: str,
        conditions: Dict[str, Any],
        sets: Optional[Dict[str, Any]] = None,
        increments: Optional[Dict[str, int]] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Conditionally update a record with a single UPDATE statement.

        Equivalent to ``UPDATE t SET balance = balance - :amt WHERE id = :id
        AND balance >= :amt`` on the JSON document.
        """
        now = datetime.now(timezone.utc).isoformat()
        assignments = []
        params: List[Any] = []
        for field_name, delta in (increments or {}).items():
            _split_condition(field_name)
            assignments.append(
                f"'$.{field_name}', COALESCE(json_extract(data, '$.{field_name}'), 0) + ?"
            )
            params.append(delta)
        for field_name, value in (sets or {}).items():
            _split_condition(field_name)
            assignments.append(f"'$.{field_name}', json(?)")
            params.append(json.dumps(to_storable(value), default=str))
        assignments.append("'$.updated_at', ?")
        params.append(now)

        where_sql, where_params = self._where_clause(conditions)
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"UPDATE {table} SET data = json_set(data, {', '.join(assignments)}), "
                f"updated_at = ? WHERE id = ?{where_sql}",
                params + [now, record_id] + where_params
            )
            if cursor.rowcount == 0:
                return None
            return self.load(table, record_id)

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

    def begin_transaction(self) -> None:
        """Start a database transaction (joins an open one on this connection)"""
        self._lock.acquire()
        if self._depth == 0:
            try:
                self._connection.execute("BEGIN IMMEDIATE")
            except Exception:
                self._lock.release()
                raise
        self._depth += 1

    def commit(self) -> None:
        """Commit current transaction"""
        if self._depth == 0:
            raise RuntimeError("commit() called outside a transaction")
        try:
            if self._depth == 1:
                self._connection.execute("COMMIT")
        finally:
            self._depth -= 1
            self._lock.release()

    def rollback(self) -> None:
        """Rollback current transaction"""
        if self._depth == 0:
            raise RuntimeError("rollback() called outside a transaction")
        try:
            if self._depth == 1:
                self._connection.execute("ROLLBACK")
                # Tables created inside the transaction are gone too
                self._tables.clear()
        finally:
            self._depth -= 1
            self._lock.release()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a database URL.

    ``memory://`` gives an InMemoryStorage, ``sqlite:///path.db`` (or
    ``sqlite://`` for an in-memory database) gives a SQLiteStorage.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
