import asyncio
import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
from uuid import uuid4

from petmarket.services.errors import TransportError
from petmarket.services.gateway import (
    LISTINGS_TABLE,
    REQUESTS_TABLE,
    SERVICE_TYPES_TABLE,
    BackendGateway,
    Row,
    is_membership,
)

logger = logging.getLogger(__name__)


TABLE_COLUMNS: Dict[str, Tuple[str, ...]] = {
    SERVICE_TYPES_TABLE: ("id", "name", "icon", "credit_value", "description", "created_at"),
    LISTINGS_TABLE: (
        "id",
        "title",
        "description",
        "provider_id",
        "service_type_id",
        "price",
        "location",
        "availability_schedule",
        "is_active",
        "created_at",
        "updated_at",
    ),
    REQUESTS_TABLE: (
        "id",
        "requester_id",
        "provider_id",
        "service_type_id",
        "service_listing_id",
        "title",
        "notes",
        "status",
        "scheduled_date",
        "created_at",
        "updated_at",
    ),
}

ID_PREFIXES = {
    SERVICE_TYPES_TABLE: "type",
    LISTINGS_TABLE: "lst",
    REQUESTS_TABLE: "req",
}

# Decoded value used when the stored JSON is missing or unreadable.
JSON_COLUMN_DEFAULTS: Dict[str, Any] = {
    "location": None,
    "availability_schedule": {},
}

BOOL_COLUMNS = {"is_active"}

DEFAULT_SERVICE_TYPES = [
    ("type_dog_walking", "Dog Walking", "dog", 30, "Professional dog walking services"),
    ("type_pet_sitting", "Pet Sitting", "home", 50, "In-home pet sitting services"),
    ("type_grooming", "Grooming", "scissors-cutting", 40, "Full pet grooming services"),
]


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class SqliteGateway(BackendGateway):
    db_path: str
    seed_service_types: bool = True

    def __post_init__(self) -> None:
        self._lock = Lock()
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self._init_db()
        if self.seed_service_types:
            self._seed_if_needed()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS service_types (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        icon TEXT NOT NULL DEFAULT '',
                        credit_value INTEGER NOT NULL DEFAULT 0,
                        description TEXT,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS service_listings (
                        id TEXT PRIMARY KEY,
                        title TEXT NOT NULL,
                        description TEXT NOT NULL DEFAULT '',
                        provider_id TEXT NOT NULL,
                        service_type_id TEXT NOT NULL,
                        price REAL,
                        location TEXT,
                        availability_schedule TEXT NOT NULL DEFAULT '{}',
                        is_active INTEGER NOT NULL DEFAULT 1,
                        created_at TEXT NOT NULL,
                        updated_at TEXT
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS service_requests (
                        id TEXT PRIMARY KEY,
                        requester_id TEXT NOT NULL,
                        provider_id TEXT NOT NULL,
                        service_type_id TEXT NOT NULL,
                        service_listing_id TEXT,
                        title TEXT,
                        notes TEXT,
                        status TEXT NOT NULL DEFAULT 'pending',
                        scheduled_date TEXT,
                        created_at TEXT NOT NULL,
                        updated_at TEXT
                    )
                    """
                )
                conn.execute("CREATE INDEX IF NOT EXISTS idx_listings_provider ON service_listings(provider_id)")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_requests_provider ON service_requests(provider_id)")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_requests_requester ON service_requests(requester_id)")
                conn.commit()

    def _seed_if_needed(self) -> None:
        with self._lock:
            with self._connect() as conn:
                count = conn.execute("SELECT COUNT(*) AS n FROM service_types").fetchone()["n"]
                if count:
                    return
                now = _utcnow_iso()
                conn.executemany(
                    """
                    INSERT INTO service_types (id, name, icon, credit_value, description, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    [(*row, now) for row in DEFAULT_SERVICE_TYPES],
                )
                conn.commit()
        logger.info("Seeded %d service types into %s", len(DEFAULT_SERVICE_TYPES), self.db_path)

    def _columns(self, table: str) -> Tuple[str, ...]:
        columns = TABLE_COLUMNS.get(table)
        if columns is None:
            raise TransportError(f"Unknown table: {table}")
        return columns

    def _check_columns(self, table: str, names: Sequence[str]) -> None:
        allowed = self._columns(table)
        unknown = sorted(name for name in names if name not in allowed)
        if unknown:
            raise TransportError(f"Unknown column(s) for {table}: {', '.join(unknown)}")

    def _encode(self, column: str, value: Any) -> Any:
        if column in JSON_COLUMN_DEFAULTS:
            return None if value is None else json.dumps(value)
        if column in BOOL_COLUMNS:
            return 1 if value else 0
        return value

    def _decode_json(self, column: str, raw_value: Any) -> Any:
        default = JSON_COLUMN_DEFAULTS[column]
        if raw_value in (None, ""):
            return default
        try:
            parsed = json.loads(raw_value)
        except (TypeError, json.JSONDecodeError):
            return default
        return parsed if isinstance(parsed, dict) else default

    def _row_to_dict(self, table: str, row: sqlite3.Row) -> Row:
        result: Row = {}
        for column in self._columns(table):
            value = row[column]
            if column in JSON_COLUMN_DEFAULTS:
                value = self._decode_json(column, value)
            elif column in BOOL_COLUMNS:
                value = bool(value)
            result[column] = value
        return result

    def _where_clause(self, table: str, filters: Optional[Mapping[str, Any]]) -> Tuple[str, List[Any]]:
        if not filters:
            return "", []
        self._check_columns(table, list(filters))
        clauses: List[str] = []
        params: List[Any] = []
        for column, value in filters.items():
            if is_membership(value):
                values = list(value)
                if not values:
                    clauses.append("0")
                    continue
                clauses.append(f"{column} IN ({', '.join('?' for _ in values)})")
                params.extend(self._encode(column, item) for item in values)
            elif value is None:
                clauses.append(f"{column} IS NULL")
            else:
                clauses.append(f"{column} = ?")
                params.append(self._encode(column, value))
        return " WHERE " + " AND ".join(clauses), params

    def _query_sync(
        self,
        table: str,
        filters: Optional[Mapping[str, Any]],
        order_by: str,
        descending: bool,
    ) -> List[Row]:
        self._check_columns(table, [order_by])
        where, params = self._where_clause(table, filters)
        direction = "DESC" if descending else "ASC"
        sql = f"SELECT * FROM {table}{where} ORDER BY {order_by} {direction}, rowid {direction}"
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(sql, tuple(params)).fetchall()
        return [self._row_to_dict(table, row) for row in rows]

    def _insert_sync(self, table: str, rows: Sequence[Mapping[str, Any]]) -> List[Row]:
        columns = self._columns(table)
        prepared: List[Dict[str, Any]] = []
        for row in rows:
            self._check_columns(table, list(row))
            record = dict(row)
            record.setdefault("id", f"{ID_PREFIXES[table]}_{uuid4().hex[:10]}")
            record.setdefault("created_at", _utcnow_iso())
            prepared.append(record)

        with self._lock:
            with self._connect() as conn:
                for record in prepared:
                    names = [column for column in columns if column in record]
                    conn.execute(
                        f"INSERT INTO {table} ({', '.join(names)}) VALUES ({', '.join('?' for _ in names)})",
                        tuple(self._encode(column, record[column]) for column in names),
                    )
                conn.commit()
                ids = [record["id"] for record in prepared]
                stored = conn.execute(
                    f"SELECT * FROM {table} WHERE id IN ({', '.join('?' for _ in ids)})",
                    tuple(ids),
                ).fetchall()
        by_id = {row["id"]: self._row_to_dict(table, row) for row in stored}
        return [by_id[row_id] for row_id in ids if row_id in by_id]

    def _update_sync(
        self,
        table: str,
        row_id: str,
        patch: Mapping[str, Any],
        match: Optional[Mapping[str, Any]],
    ) -> List[Row]:
        changes = {column: value for column, value in patch.items() if column != "id"}
        self._check_columns(table, list(changes))
        where, where_params = self._where_clause(table, {**(match or {}), "id": row_id})
        with self._lock:
            with self._connect() as conn:
                if changes:
                    assignments = ", ".join(f"{column} = ?" for column in changes)
                    cursor = conn.execute(
                        f"UPDATE {table} SET {assignments}{where}",
                        (*[self._encode(column, value) for column, value in changes.items()], *where_params),
                    )
                    conn.commit()
                    if match and cursor.rowcount == 0:
                        return []
                row = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (row_id,)).fetchone()
        return [self._row_to_dict(table, row)] if row else []

    def _delete_sync(self, table: str, row_id: str) -> None:
        self._columns(table)
        with self._lock:
            with self._connect() as conn:
                conn.execute(f"DELETE FROM {table} WHERE id = ?", (row_id,))
                conn.commit()

    async def _run(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except sqlite3.Error as exc:
            raise TransportError(f"Database error: {exc}") from exc

    async def query(
        self,
        table: str,
        filters: Optional[Mapping[str, Any]] = None,
        *,
        order_by: str = "created_at",
        descending: bool = True,
    ) -> List[Row]:
        return await self._run(self._query_sync, table, filters, order_by, descending)

    async def insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> List[Row]:
        return await self._run(self._insert_sync, table, rows)

    async def update(
        self,
        table: str,
        row_id: str,
        patch: Mapping[str, Any],
        *,
        match: Optional[Mapping[str, Any]] = None,
    ) -> List[Row]:
        return await self._run(self._update_sync, table, row_id, patch, match)

    async def delete(self, table: str, row_id: str) -> None:
        await self._run(self._delete_sync, table, row_id)
