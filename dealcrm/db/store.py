"""
Row Store
The four CRUD operations the deal service needs from persistence, plus an
optional transaction scope. PostgresStore implements them with psycopg2.

Filters are {column: value} dicts, ANDed together:
    value is None      -> column IS NULL
    value is list/tuple -> column = ANY(value)
    anything else      -> column = value
"""

import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Protocol, Sequence

import psycopg2

from dealcrm.db.connection import get_db_connection, get_db_cursor
from dealcrm.exceptions import StoreError

logger = logging.getLogger(__name__)

# Allowlists: table and column names never come from callers unchecked
TABLE_COLUMNS = {
    'deals': {
        'id', 'job_number', 'title', 'description', 'status', 'priority',
        'customer_needs_loaner', 'loaner_number', 'loaner_eta_return_date', 'loaner_notes',
        'sales_consultant_id', 'finance_manager_id', 'delivery_coordinator_id',
        'vendor_id', 'vehicle_id', 'title_is_custom', 'last_draft_id', 'created_at', 'updated_at',
    },
    'line_items': {
        'id', 'deal_id', 'position', 'product_id', 'unit_price', 'cost', 'quantity',
        'is_off_site', 'vendor_id', 'requires_scheduling', 'promised_date',
        'no_schedule_reason', 'scheduled_start_time', 'scheduled_end_time', 'created_at',
    },
    'transactions': {
        'id', 'deal_id', 'customer_name', 'customer_phone', 'customer_email', 'spouse_name',
        'subtotal', 'tax_amount', 'total_amount', 'notes', 'transaction_status',
        'created_at', 'updated_at',
    },
    'vehicles': {'id', 'year', 'make', 'model', 'vin', 'stock_number'},
    'vendors': {'id', 'name'},
    'products': {'id', 'name', 'unit_price', 'cost'},
}


class Store(Protocol):
    """What the deal service expects from persistence. Failures raise StoreError."""

    supports_transactions: bool

    def insert_row(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]: ...

    def update_row(self, table: str, row_id: Any, patch: Dict[str, Any]) -> Optional[Dict[str, Any]]: ...

    def delete_rows(self, table: str, filters: Dict[str, Any]) -> int: ...

    def select_rows(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Sequence[str] = (),
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]: ...

    def transaction(self) -> Iterator[None]: ...


def _validate_columns(table: str, columns) -> None:
    """Raise ValueError for an unknown table or any column outside its allowlist."""
    if table not in TABLE_COLUMNS:
        raise ValueError(f"Unknown table: {table}")
    invalid = set(columns) - TABLE_COLUMNS[table]
    if invalid:
        raise ValueError(f"Invalid {table} fields: {invalid}")


def _where(filters: Dict[str, Any], params: Dict[str, Any]) -> str:
    clauses = []
    for column, value in filters.items():
        key = f"w_{column}"
        if value is None:
            clauses.append(f"{column} IS NULL")
        elif isinstance(value, (list, tuple, set)):
            clauses.append(f"{column} = ANY(%({key})s)")
            params[key] = list(value)
        else:
            clauses.append(f"{column} = %({key})s")
            params[key] = value
    return " AND ".join(clauses) if clauses else "TRUE"


def _order(order_by: Sequence[str]) -> List[str]:
    parts = []
    for column in order_by:
        if column.startswith('-'):
            parts.append((column[1:], f"{column[1:]} DESC"))
        else:
            parts.append((column, f"{column} ASC"))
    return parts


def _has_empty_list(filters: Dict[str, Any]) -> bool:
    return any(isinstance(v, (list, tuple, set)) and not v for v in filters.values())


class PostgresStore:
    """
    Store backed by PostgreSQL.

    Outside transaction() every operation commits on its own connection.
    Inside it, operations on the same thread share one connection that
    commits (or rolls back) when the block exits.
    """

    supports_transactions = True

    def __init__(self):
        self._local = threading.local()

    @contextmanager
    def transaction(self):
        if getattr(self._local, 'conn', None) is not None:
            # Nested scope joins the outer transaction
            yield
            return
        with get_db_connection() as conn:
            self._local.conn = conn
            try:
                yield
            finally:
                self._local.conn = None

    @contextmanager
    def _cursor(self, operation: str, table: str):
        try:
            with get_db_cursor(conn=getattr(self._local, 'conn', None)) as cur:
                yield cur
        except psycopg2.Error as e:
            logger.error(f"{operation} on {table} failed: {e}")
            raise StoreError(operation, table, str(e).strip()) from e

    def insert_row(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        _validate_columns(table, row.keys())
        columns = ', '.join(row.keys())
        values = ', '.join(f"%({key})s" for key in row.keys())
        with self._cursor('insert', table) as cur:
            cur.execute(f"""
                INSERT INTO {table} ({columns})
                VALUES ({values})
                RETURNING *
            """, row)
            inserted = dict(cur.fetchone())
        logger.debug(f"insert_row: {table} id={inserted.get('id')}")
        return inserted

    def update_row(self, table: str, row_id: Any, patch: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Update one row by id. Returns the updated row, or None when no row matched."""
        if not patch:
            raise ValueError(f"Empty update for {table} id={row_id}")
        _validate_columns(table, patch.keys())
        set_clause = ', '.join(f"{key} = %({key})s" for key in patch.keys())
        params = dict(patch, row_id=row_id)
        with self._cursor('update', table) as cur:
            cur.execute(f"""
                UPDATE {table}
                SET {set_clause}
                WHERE id = %(row_id)s
                RETURNING *
            """, params)
            row = cur.fetchone()
        if row is None:
            logger.debug(f"update_row: {table} id={row_id} not found")
            return None
        return dict(row)

    def delete_rows(self, table: str, filters: Dict[str, Any]) -> int:
        """Delete matching rows; returns how many were deleted. Refuses an empty filter."""
        if not filters:
            raise ValueError(f"Refusing to delete every row of {table}")
        _validate_columns(table, filters.keys())
        if _has_empty_list(filters):
            return 0
        params: Dict[str, Any] = {}
        where_clause = _where(filters, params)
        with self._cursor('delete', table) as cur:
            cur.execute(f"DELETE FROM {table} WHERE {where_clause}", params)
            count = cur.rowcount
        logger.debug(f"delete_rows: {table} {list(filters)} -> {count} rows")
        return count

    def select_rows(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Sequence[str] = (),
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        filters = filters or {}
        order = _order(order_by)
        _validate_columns(table, list(filters.keys()) + [column for column, _ in order])
        if _has_empty_list(filters):
            return []
        params: Dict[str, Any] = {}
        sql = f"SELECT * FROM {table} WHERE {_where(filters, params)}"
        if order:
            sql += " ORDER BY " + ", ".join(clause for _, clause in order)
        if limit is not None:
            sql += " LIMIT %(limit)s"
            params['limit'] = limit
        with self._cursor('select', table) as cur:
            cur.execute(sql, params)
            rows = cur.fetchall()
        logger.debug(f"select_rows: {table} {list(filters)} -> {len(rows)} rows")
        return [dict(row) for row in rows]
