"""
Storage Backend Module

Provides the abstract store contract and implementations for in-memory
(testing), SQLite (persistence) and PostgreSQL. Records are JSON documents
keyed by id; timestamps are stored as fixed-width UTC ISO strings so string
order equals time order.

The contract the core relies on:
    - point lookup by unique key (load, find on a unique index)
    - predicate-based bulk delete (delete_where)
    - atomic store-side increment (increment) and partial field update (update)
    - multi-statement atomic units with all-or-nothing visibility (atomic)
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union, Sequence, Tuple
from decimal import Decimal
from datetime import datetime, timezone
from enum import Enum
import sqlite3
import json
import operator
import re
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .errors import StorageError, DuplicateRecordError


_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Numeric fields hold 64-bit integers on every backend
INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1

_OPERATORS = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


def utc_now() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Aware UTC datetime; naive values are taken to be UTC"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Serialize a datetime as a sortable UTC ISO string (always microseconds)"""
    return as_utc(value).isoformat(timespec="microseconds")


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Inverse of format_timestamp; passes datetimes and None through"""
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _check_identifier(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid identifier: {name!r}")
    return name


def _storable(value: Any) -> Any:
    """Convert a predicate/filter value to its stored JSON representation"""
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    return value


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        for key, value in result.items():
            result[key] = _storable(value)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        data = dict(data)
        data['created_at'] = parse_timestamp(data['created_at'])
        data['updated_at'] = parse_timestamp(data['updated_at'])
        return cls(**data)


@dataclass(frozen=True)
class Predicate:
    """
    A single field comparison against a stored record.

    Operators: ==, !=, <, <=, >, >= and "in" (value is a sequence).
    Datetime and Enum values are compared in their stored form.
    """
    field: str
    op: str
    value: Any

    def __post_init__(self):
        _check_identifier(self.field)
        if self.op == "in":
            object.__setattr__(self, 'value', tuple(_storable(v) for v in self.value))
        elif self.op in _OPERATORS:
            object.__setattr__(self, 'value', _storable(self.value))
        else:
            raise ValueError(f"Unsupported operator: {self.op!r}")

    def matches(self, record: Dict[str, Any]) -> bool:
        current = record.get(self.field)
        if self.op == "in":
            return current in self.value
        if self.op in ("==", "!="):
            return _OPERATORS[self.op](current, self.value)
        if current is None or self.value is None:
            return False
        return _OPERATORS[self.op](current, self.value)


def _predicates(filters: Optional[Dict[str, Any]],
                predicates: Sequence[Predicate]) -> List[Predicate]:
    """Merge equality filters and explicit predicates into one list"""
    result = [Predicate(key, "==", value) for key, value in (filters or {}).items()]
    result.extend(predicates)
    return result


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record; raises DuplicateRecordError on id or unique index clash"""
        pass

    @abstractmethod
    def update(self, table: str, record_id: str, changes: Dict[str, Any]) -> bool:
        """
        Set the given fields of an existing record in one store-side write.

        Fields not named in changes are left as stored, so a concurrent
        increment is never overwritten. There is no whole-record replace.
        Returns False if the record is absent.
        """
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
        """Delete a record; False if it was already absent"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Optional[Dict[str, Any]] = None,
             predicates: Sequence[Predicate] = (),
             order_by: Optional[str] = None, descending: bool = False,
             limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Find records matching filters.

        Filtering happens before ordering. Ties on order_by are broken by
        insertion order (later rows first when descending).
        """
        pass

    @abstractmethod
    def count(self, table: str, filters: Optional[Dict[str, Any]] = None,
              predicates: Sequence[Predicate] = ()) -> int:
        """Count records matching filters (all records when none given)"""
        pass

    @abstractmethod
    def delete_where(self, table: str, filters: Optional[Dict[str, Any]] = None,
                     predicates: Sequence[Predicate] = ()) -> int:
        """Delete every matching record in one operation; returns rows removed"""
        pass

    @abstractmethod
    def increment(self, table: str, record_id: str, field: str, amount: int) -> bool:
        """
        Atomically add an integer to a numeric field; False if record absent.

        Raises:
            StorageError: If the amount or the resulting value leaves the
                64-bit integer range. The stored value is left unchanged.
        """
        pass

    @abstractmethod
    def create_index(self, table: str, fields: Sequence[str], unique: bool = False) -> None:
        """Declare an index on record fields"""
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

    @contextmanager
    def atomic(self):
        """
        Context manager for atomic operations.

        Everything inside commits together or not at all. Units nest; an
        inner failure rolls back only the inner unit.
        """
        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        else:
            self.commit()


def _check_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValueError(f"Increment amount must be an integer, got {amount!r}")
    if not INT64_MIN <= amount <= INT64_MAX:
        raise StorageError(f"Increment amount {amount} is outside the 64-bit integer range")


def _overflow(table: str, record_id: str, field: str) -> StorageError:
    return StorageError(
        f"Increment of {table}.{field} would leave the 64-bit integer range",
        entity_id=record_id
    )


def _changes(changes: Dict[str, Any]) -> Dict[str, Any]:
    """Validate field names and convert values to their stored form"""
    if not changes:
        raise ValueError("update requires at least one field")
    for key in changes:
        _check_identifier(key)
        if key == "id":
            raise ValueError("The id of a record cannot be updated")
    return {key: _storable(value) for key, value in changes.items()}


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._indexes: Dict[str, List[Tuple[Tuple[str, ...], bool]]] = {}
        self._snapshots: List[Dict[str, Dict[str, Dict[str, Any]]]] = []
        self._lock = threading.RLock()

    def _ensure_table(self, table: str) -> Dict[str, Dict[str, Any]]:
        """Ensure table exists"""
        _check_identifier(table)
        if table not in self._data:
            self._data[table] = {}
        return self._data[table]

    @staticmethod
    def _copy(record: Dict[str, Any]) -> Dict[str, Any]:
        # Deep copy to prevent external mutation
        return json.loads(json.dumps(record, default=str))

    def _check_unique(self, table: str, record_id: str, record: Dict[str, Any]) -> None:
        for fields, unique in self._indexes.get(table, []):
            if not unique:
                continue
            key = tuple(record.get(f) for f in fields)
            if any(v is None for v in key):
                continue
            for other_id, other in self._data[table].items():
                if other_id != record_id and tuple(other.get(f) for f in fields) == key:
                    raise DuplicateRecordError(
                        table, f"Unique index on {table}({', '.join(fields)}) violated"
                    )

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record into memory"""
        with self._lock:
            rows = self._ensure_table(table)
            if record_id in rows:
                raise DuplicateRecordError(table, f"Record {record_id} already exists in {table}")
            record = self._copy(data)
            self._check_unique(table, record_id, record)
            rows[record_id] = record

    def update(self, table: str, record_id: str, changes: Dict[str, Any]) -> bool:
        """Merge changes into a stored record"""
        changes = _changes(changes)
        with self._lock:
            rows = self._ensure_table(table)
            record = rows.get(record_id)
            if record is None:
                return False
            # Rows are replaced, never mutated, so snapshots stay valid
            updated = dict(record)
            updated.update(self._copy(changes))
            updated['updated_at'] = format_timestamp(utc_now())
            self._check_unique(table, record_id, updated)
            rows[record_id] = updated
            return True

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            record = self._ensure_table(table).get(record_id)
            if record:
                return self._copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            return [self._copy(record) for record in self._ensure_table(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            return self._ensure_table(table).pop(record_id, None) is not None

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            return record_id in self._ensure_table(table)

    def _matching(self, table: str, conditions: List[Predicate]) -> List[Tuple[int, str, Dict[str, Any]]]:
        rows = self._ensure_table(table)
        return [
            (position, record_id, record)
            for position, (record_id, record) in enumerate(rows.items())
            if all(condition.matches(record) for condition in conditions)
        ]

    def find(self, table: str, filters: Optional[Dict[str, Any]] = None,
             predicates: Sequence[Predicate] = (),
             order_by: Optional[str] = None, descending: bool = False,
             limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            matched = self._matching(table, _predicates(filters, predicates))

            if order_by:
                def sort_key(item):
                    value = item[2].get(order_by)
                    return ((1, 0) if value is None else (0, value), item[0])
                matched.sort(key=sort_key, reverse=descending)
            elif descending:
                matched.reverse()

            if limit is not None:
                matched = matched[:limit]
            return [self._copy(record) for _, _, record in matched]

    def count(self, table: str, filters: Optional[Dict[str, Any]] = None,
              predicates: Sequence[Predicate] = ()) -> int:
        """Count records in table"""
        with self._lock:
            return len(self._matching(table, _predicates(filters, predicates)))

    def delete_where(self, table: str, filters: Optional[Dict[str, Any]] = None,
                     predicates: Sequence[Predicate] = ()) -> int:
        """Delete all matching records"""
        conditions = _predicates(filters, predicates)
        if not conditions:
            raise ValueError("delete_where requires at least one condition")
        with self._lock:
            rows = self._ensure_table(table)
            doomed = [record_id for _, record_id, _ in self._matching(table, conditions)]
            for record_id in doomed:
                del rows[record_id]
            return len(doomed)

    def increment(self, table: str, record_id: str, field: str, amount: int) -> bool:
        """Add amount to a numeric field under the storage lock"""
        _check_identifier(field)
        _check_amount(amount)
        with self._lock:
            rows = self._ensure_table(table)
            record = rows.get(record_id)
            if record is None:
                return False
            total = (record.get(field) or 0) + amount
            if not INT64_MIN <= total <= INT64_MAX:
                raise _overflow(table, record_id, field)
            updated = dict(record)
            updated[field] = total
            updated['updated_at'] = format_timestamp(utc_now())
            rows[record_id] = updated
            return True

    def create_index(self, table: str, fields: Sequence[str], unique: bool = False) -> None:
        """Register an index; only unique indexes change behaviour in memory"""
        fields = tuple(_check_identifier(f) for f in fields)
        with self._lock:
            self._ensure_table(table)
            indexes = self._indexes.setdefault(table, [])
            if (fields, unique) not in indexes:
                indexes.append((fields, unique))

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[_check_identifier(table)] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def begin_transaction(self) -> None:
        """Hold the lock for the whole unit and snapshot every table"""
        self._lock.acquire()
        self._snapshots.append({table: dict(rows) for table, rows in self._data.items()})

    def commit(self) -> None:
        """Drop the snapshot and release the unit"""
        try:
            self._snapshots.pop()
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Restore the snapshot taken when the unit began"""
        try:
            self._data = self._snapshots.pop()
        finally:
            self._lock.release()


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:", timeout: float = 5.0):
        self.db_path = str(db_path)
        # Autocommit mode; units issue BEGIN IMMEDIATE / SAVEPOINT themselves
        self._connection = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None, timeout=timeout
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    @property
    def _conn(self) -> sqlite3.Connection:
        if self._connection is None:
            raise StorageError("SQLite storage is closed")
        return self._connection

    @contextmanager
    def _guard(self, table: str):
        """Translate sqlite3 errors into the storage taxonomy"""
        try:
            yield
        except sqlite3.IntegrityError as e:
            raise DuplicateRecordError(table, f"Constraint violated on {table}: {e}") from e
        except sqlite3.Error as e:
            raise StorageError(f"SQLite operation on {table} failed: {e}") from e
        except OverflowError as e:
            # Python int that does not fit a 64-bit SQLite parameter
            raise StorageError(f"SQLite operation on {table} failed: {e}") from e

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        _check_identifier(table)
        self._conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

    @staticmethod
    def _where(conditions: List[Predicate]) -> Tuple[str, List[Any]]:
        """Build a WHERE clause over json_extract expressions"""
        clauses = []
        params: List[Any] = []
        for condition in conditions:
            column = f"json_extract(data, '$.{condition.field}')"
            if condition.op == "in":
                if not condition.value:
                    clauses.append("0")
                    continue
                placeholders = ", ".join("?" for _ in condition.value)
                clauses.append(f"{column} IN ({placeholders})")
                params.extend(condition.value)
            elif condition.op == "==":
                clauses.append(f"{column} IS ?")
                params.append(condition.value)
            elif condition.op == "!=":
                clauses.append(f"{column} IS NOT ?")
                params.append(condition.value)
            else:
                clauses.append(f"{column} {condition.op} ?")
                params.append(condition.value)
        if not clauses:
            return "", params
        return "WHERE " + " AND ".join(clauses), params

    def update(self, table: str, record_id: str, changes: Dict[str, Any]) -> bool:
        """Set fields with json_set so the rest of the document is untouched"""
        changes = _changes(changes)
        now = format_timestamp(utc_now())
        assignments = ", ".join(f"'$.{key}', json(?)" for key in changes)
        params: List[Any] = [json.dumps(value, default=str) for value in changes.values()]
        with self._lock, self._guard(table):
            self._ensure_table(table)
            cursor = self._conn.execute(f"""
                UPDATE {table} SET
                    data = json_set(data, {assignments}, '$.updated_at', ?),
                    updated_at = ?
                WHERE id = ?
            """, params + [now, now, record_id])
            return cursor.rowcount > 0

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record into SQLite"""
        with self._lock, self._guard(table):
            self._ensure_table(table)
            now = format_timestamp(utc_now())
            self._conn.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
            """, (record_id, json.dumps(data, default=str), now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock, self._guard(table):
            self._ensure_table(table)
            row = self._conn.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,)).fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock, self._guard(table):
            self._ensure_table(table)
            cursor = self._conn.execute(f"SELECT data FROM {table} ORDER BY rowid")
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock, self._guard(table):
            self._ensure_table(table)
            cursor = self._conn.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock, self._guard(table):
            self._ensure_table(table)
            cursor = self._conn.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Optional[Dict[str, Any]] = None,
             predicates: Sequence[Predicate] = (),
             order_by: Optional[str] = None, descending: bool = False,
             limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Find records matching filters; the WHERE clause runs before ORDER BY"""
        direction = "DESC" if descending else "ASC"
        where, params = self._where(_predicates(filters, predicates))
        if order_by:
            order = f"ORDER BY json_extract(data, '$.{_check_identifier(order_by)}') {direction}, rowid {direction}"
        else:
            order = f"ORDER BY rowid {direction}"
        sql = f"SELECT data FROM {table} {where} {order}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))

        with self._lock, self._guard(table):
            self._ensure_table(table)
            cursor = self._conn.execute(sql, params)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def count(self, table: str, filters: Optional[Dict[str, Any]] = None,
              predicates: Sequence[Predicate] = ()) -> int:
        """Count records in table"""
        where, params = self._where(_predicates(filters, predicates))
        with self._lock, self._guard(table):
            self._ensure_table(table)
            cursor = self._conn.execute(f"SELECT COUNT(*) AS count FROM {table} {where}", params)
            return cursor.fetchone()['count']

    def delete_where(self, table: str, filters: Optional[Dict[str, Any]] = None,
                     predicates: Sequence[Predicate] = ()) -> int:
        """Delete all matching records with a single DELETE statement"""
        conditions = _predicates(filters, predicates)
        if not conditions:
            raise ValueError("delete_where requires at least one condition")
        where, params = self._where(conditions)
        with self._lock, self._guard(table):
            self._ensure_table(table)
            cursor = self._conn.execute(f"DELETE FROM {table} {where}", params)
            return cursor.rowcount

    def increment(self, table: str, record_id: str, field: str, amount: int) -> bool:
        """
        Add amount to a JSON field with a single UPDATE evaluated by SQLite.

        SQLite turns an overflowing integer sum into a REAL, so the UPDATE
        only matches while the sum is still an integer.
        """
        _check_identifier(field)
        _check_amount(amount)
        now = format_timestamp(utc_now())
        total = f"COALESCE(json_extract(data, '$.{field}'), 0) + ?"
        with self._lock, self._guard(table):
            self._ensure_table(table)
            cursor = self._conn.execute(f"""
                UPDATE {table} SET
                    data = json_set(
                        data,
                        '$.{field}', {total},
                        '$.updated_at', ?
                    ),
                    updated_at = ?
                WHERE id = ? AND typeof({total}) = 'integer'
            """, (amount, now, now, record_id, amount))
            if cursor.rowcount > 0:
                return True
            exists = self._conn.execute(
                f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)
            ).fetchone()
        if exists:
            raise _overflow(table, record_id, field)
        return False

    def create_index(self, table: str, fields: Sequence[str], unique: bool = False) -> None:
        """Create an expression index over JSON fields"""
        fields = [_check_identifier(f) for f in fields]
        name = f"idx_{table}_{'_'.join(fields)}{'_uniq' if unique else ''}"
        columns = ", ".join(f"json_extract(data, '$.{f}')" for f in fields)
        with self._lock, self._guard(table):
            self._ensure_table(table)
            self._conn.execute(f"""
                CREATE {'UNIQUE ' if unique else ''}INDEX IF NOT EXISTS {name}
                ON {table}({columns})
            """)

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock, self._guard(table):
            self._ensure_table(table)
            self._conn.execute(f"DELETE FROM {table}")

    def begin_transaction(self) -> None:
        """Start a unit; the storage lock is held until commit or rollback"""
        self._lock.acquire()
        try:
            with self._guard("transaction"):
                if self._depth == 0:
                    self._conn.execute("BEGIN IMMEDIATE")
                else:
                    self._conn.execute(f"SAVEPOINT unit_{self._depth}")
        except BaseException:
            self._lock.release()
            raise
        self._depth += 1

    def commit(self) -> None:
        """Commit current unit"""
        self._depth -= 1
        try:
            with self._guard("transaction"):
                if self._depth == 0:
                    try:
                        self._conn.execute("COMMIT")
                    except sqlite3.Error:
                        if self._conn.in_transaction:
                            self._conn.execute("ROLLBACK")
                        raise
                else:
                    self._conn.execute(f"RELEASE SAVEPOINT unit_{self._depth}")
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Rollback current unit"""
        self._depth -= 1
        try:
            with self._guard("transaction"):
                if self._depth == 0:
                    if self._conn.in_transaction:
                        self._conn.execute("ROLLBACK")
                else:
                    self._conn.execute(f"ROLLBACK TO SAVEPOINT unit_{self._depth}")
                    self._conn.execute(f"RELEASE SAVEPOINT unit_{self._depth}")
        finally:
            self._lock.release()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """PostgreSQL storage backend with ACID transaction support"""

    def __init__(self, connection_string: str):
        try:
            import psycopg2
            import psycopg2.errors
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        self._connection = None
        self._lock = threading.RLock()
        self._depth = 0
        self._connect()

    def _connect(self) -> None:
        """Establish database connection"""
        with self._lock:
            self._connection = self.psycopg2.connect(
                self.connection_string,
                cursor_factory=self.extras.RealDictCursor
            )
            self._connection.autocommit = True  # Units open transactions explicitly

    @contextmanager
    def _cursor(self, table: str):
        """Cursor with psycopg2 errors translated into the storage taxonomy"""
        if self._connection is None:
            raise StorageError("PostgreSQL storage is closed")
        cursor = self._connection.cursor()
        try:
            yield cursor
        except self.psycopg2.errors.UniqueViolation as e:
            raise DuplicateRecordError(table, f"Constraint violated on {table}: {e}") from e
        except self.psycopg2.Error as e:
            raise StorageError(f"PostgreSQL operation on {table} failed: {e}") from e
        finally:
            cursor.close()

    def _ensure_table(self, cursor, table: str) -> None:
        """Ensure table exists with proper schema"""
        _check_identifier(table)
        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                seq BIGSERIAL UNIQUE,
                id TEXT PRIMARY KEY,
                data JSONB NOT NULL,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW()
            )
        """)

    @staticmethod
    def _where(conditions: List[Predicate]) -> Tuple[str, List[Any]]:
        """Build a WHERE clause using JSONB operators"""
        clauses = []
        params: List[Any] = []
        for condition in conditions:
            values = condition.value if condition.op == "in" else (condition.value,)
            numeric = any(isinstance(v, (int, float)) and not isinstance(v, bool) for v in values)
            column = f"(data->>'{condition.field}')::numeric" if numeric else f"data->>'{condition.field}'"

            def as_param(v):
                if isinstance(v, bool):
                    return "true" if v else "false"
                return v if numeric or v is None else str(v)

            if condition.op == "in":
                if not values:
                    clauses.append("FALSE")
                    continue
                clauses.append(f"{column} IN ({', '.join('%s' for _ in values)})")
                params.extend(as_param(v) for v in values)
            elif condition.value is None and condition.op in ("==", "!="):
                clauses.append(f"{column} IS {'NOT ' if condition.op == '!=' else ''}NULL")
            elif condition.op == "==":
                clauses.append(f"{column} = %s")
                params.append(as_param(condition.value))
            elif condition.op == "!=":
                clauses.append(f"{column} IS DISTINCT FROM %s")
                params.append(as_param(condition.value))
            else:
                clauses.append(f"{column} {condition.op} %s")
                params.append(as_param(condition.value))
        if not clauses:
            return "", params
        return "WHERE " + " AND ".join(clauses), params

    def update(self, table: str, record_id: str, changes: Dict[str, Any]) -> bool:
        """Merge changes into the JSONB document with the || operator"""
        changes = _changes(changes)
        now = utc_now()
        changes['updated_at'] = format_timestamp(now)
        with self._lock, self._cursor(table) as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"""
                UPDATE {table} SET
                    data = data || %s::jsonb,
                    updated_at = %s
                WHERE id = %s
            """, (json.dumps(changes, default=str), now, record_id))
            return cursor.rowcount > 0

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record into PostgreSQL"""
        now = utc_now()
        with self._lock, self._cursor(table) as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (%s, %s, %s, %s)
            """, (record_id, json.dumps(data, default=str), now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from PostgreSQL"""
        with self._lock, self._cursor(table) as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"SELECT data FROM {table} WHERE id = %s", (record_id,))
            row = cursor.fetchone()
            if row:
                return dict(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock, self._cursor(table) as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"SELECT data FROM {table} ORDER BY seq")
            return [dict(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from PostgreSQL"""
        with self._lock, self._cursor(table) as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"DELETE FROM {table} WHERE id = %s", (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock, self._cursor(table) as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"SELECT 1 FROM {table} WHERE id = %s LIMIT 1", (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Optional[Dict[str, Any]] = None,
             predicates: Sequence[Predicate] = (),
             order_by: Optional[str] = None, descending: bool = False,
             limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB operators"""
        direction = "DESC" if descending else "ASC"
        where, params = self._where(_predicates(filters, predicates))
        if order_by:
            order = f"ORDER BY data->>'{_check_identifier(order_by)}' {direction}, seq {direction}"
        else:
            order = f"ORDER BY seq {direction}"
        sql = f"SELECT data FROM {table} {where} {order}"
        if limit is not None:
            sql += " LIMIT %s"
            params.append(int(limit))

        with self._lock, self._cursor(table) as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(sql, params)
            return [dict(row['data']) for row in cursor.fetchall()]

    def count(self, table: str, filters: Optional[Dict[str, Any]] = None,
              predicates: Sequence[Predicate] = ()) -> int:
        """Count records in table"""
        where, params = self._where(_predicates(filters, predicates))
        with self._lock, self._cursor(table) as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"SELECT COUNT(*) AS count FROM {table} {where}", params)
            return cursor.fetchone()['count']

    def delete_where(self, table: str, filters: Optional[Dict[str, Any]] = None,
                     predicates: Sequence[Predicate] = ()) -> int:
        """Delete all matching records with a single DELETE statement"""
        conditions = _predicates(filters, predicates)
        if not conditions:
            raise ValueError("delete_where requires at least one condition")
        where, params = self._where(conditions)
        with self._lock, self._cursor(table) as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"DELETE FROM {table} {where}", params)
            return cursor.rowcount

    def increment(self, table: str, record_id: str, field: str, amount: int) -> bool:
        """
        Add amount to a JSONB field; the row lock serializes concurrent updates.
        A sum outside bigint fails with NumericValueOutOfRange (StorageError).
        """
        _check_identifier(field)
        _check_amount(amount)
        now = utc_now()
        with self._lock, self._cursor(table) as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"""
                UPDATE {table} SET
                    data = jsonb_set(
                        jsonb_set(data, '{{{field}}}',
                                  to_jsonb(COALESCE((data->>'{field}')::bigint, 0) + %s)),
                        '{{updated_at}}', to_jsonb(%s::text)
                    ),
                    updated_at = %s
                WHERE id = %s
            """, (amount, format_timestamp(now), now, record_id))
            return cursor.rowcount > 0

    def create_index(self, table: str, fields: Sequence[str], unique: bool = False) -> None:
        """Create an expression index over JSONB fields"""
        fields = [_check_identifier(f) for f in fields]
        name = f"idx_{table}_{'_'.join(fields)}{'_uniq' if unique else ''}"
        columns = ", ".join(f"(data->>'{f}')" for f in fields)
        with self._lock, self._cursor(table) as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"""
                CREATE {'UNIQUE ' if unique else ''}INDEX IF NOT EXISTS {name}
                ON {table} ({columns})
            """)

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock, self._cursor(table) as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"DELETE FROM {table}")

    def begin_transaction(self) -> None:
        """Start a unit; the storage lock is held until commit or rollback"""
        self._lock.acquire()
        try:
            with self._cursor("transaction") as cursor:
                if self._depth == 0:
                    cursor.execute("BEGIN")
                else:
                    cursor.execute(f"SAVEPOINT unit_{self._depth}")
        except BaseException:
            self._lock.release()
            raise
        self._depth += 1

    def commit(self) -> None:
        """Commit current unit"""
        self._depth -= 1
        try:
            with self._cursor("transaction") as cursor:
                if self._depth == 0:
                    cursor.execute("COMMIT")
                else:
                    cursor.execute(f"RELEASE SAVEPOINT unit_{self._depth}")
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Rollback current unit"""
        self._depth -= 1
        try:
            with self._cursor("transaction") as cursor:
                if self._depth == 0:
                    cursor.execute("ROLLBACK")
                else:
                    cursor.execute(f"ROLLBACK TO SAVEPOINT unit_{self._depth}")
                    cursor.execute(f"RELEASE SAVEPOINT unit_{self._depth}")
        finally:
            self._lock.release()

    def close(self) -> None:
        """Close PostgreSQL connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str, timeout: float = 5.0) -> StorageInterface:
    """
    Build a storage backend from a URL.

    memory://                 InMemoryStorage
    sqlite:///relative.db     SQLiteStorage on a relative path
    sqlite:////abs/path.db    SQLiteStorage on an absolute path
    sqlite:///:memory:        SQLiteStorage in memory
    postgresql://...          PostgreSQLStorage
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):], timeout=timeout)
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url)
    raise ValueError(f"Unsupported database URL: {database_url}")
