"""
Unit tests for the PostgreSQL row store (dealcrm/db/store.py).

Strategy: patch dealcrm.db.store.get_db_cursor with a contextmanager that yields
a MagicMock cursor, then assert on the SQL and params it received.
"""

from contextlib import contextmanager
from unittest.mock import MagicMock, patch

import psycopg2
import pytest

from dealcrm.db.store import PostgresStore, _order, _validate_columns, _where
from dealcrm.exceptions import StoreError


def make_cursor(fetchone=None, fetchall=None, rowcount=1):
    """Build a MagicMock cursor with preset return values."""
    cur = MagicMock()
    cur.fetchone.return_value = fetchone
    cur.fetchall.return_value = fetchall if fetchall is not None else []
    cur.rowcount = rowcount
    return cur


def cursor_patch(cur, seen_conns=None):
    """Replace get_db_cursor with one yielding cur; records the conn it was given."""
    @contextmanager
    def _mock_ctx(dict_cursor=True, conn=None):
        if seen_conns is not None:
            seen_conns.append(conn)
        yield cur

    return patch('dealcrm.db.store.get_db_cursor', _mock_ctx)


# ---------------------------------------------------------------------------
# Helpers (pure)
# ---------------------------------------------------------------------------

def test_validate_columns_rejects_unknown_table():
    with pytest.raises(ValueError, match='Unknown table'):
        _validate_columns('users', ['id'])


def test_validate_columns_rejects_injected_column():
    with pytest.raises(ValueError, match='line_items'):
        _validate_columns('line_items', ['deal_id', 'DROP TABLE'])


def test_where_builds_clauses():
    params = {}
    clause = _where({'deal_id': 4, 'id': [1, 2], 'vendor_id': None}, params)
    assert clause == 'deal_id = %(w_deal_id)s AND id = ANY(%(w_id)s) AND vendor_id IS NULL'
    assert params == {'w_deal_id': 4, 'w_id': [1, 2]}


def test_where_without_filters_is_true():
    assert _where({}, {}) == 'TRUE'


def test_order_descending_prefix():
    assert _order(['position', '-created_at']) == [
        ('position', 'position ASC'), ('created_at', 'created_at DESC'),
    ]


# ---------------------------------------------------------------------------
# insert / update / delete / select
# ---------------------------------------------------------------------------

def test_insert_row_returns_inserted_row():
    cur = make_cursor(fetchone={'id': 11, 'deal_id': 3})
    with cursor_patch(cur):
        row = PostgresStore().insert_row('line_items', {'deal_id': 3, 'product_id': 'p1'})
    assert row == {'id': 11, 'deal_id': 3}
    sql, params = cur.execute.call_args[0]
    assert 'INSERT INTO line_items (deal_id, product_id)' in sql
    assert 'RETURNING *' in sql
    assert params == {'deal_id': 3, 'product_id': 'p1'}


def test_insert_row_invalid_column_never_executes():
    cur = make_cursor()
    with cursor_patch(cur), pytest.raises(ValueError):
        PostgresStore().insert_row('deals', {'title': 'x', 'evil': 1})
    cur.execute.assert_not_called()


def test_update_row_returns_none_when_missing():
    cur = make_cursor(fetchone=None)
    with cursor_patch(cur):
        assert PostgresStore().update_row('deals', 99, {'title': 'x'}) is None
    sql, params = cur.execute.call_args[0]
    assert 'UPDATE deals' in sql
    assert params['row_id'] == 99


def test_update_row_empty_patch_raises():
    with pytest.raises(ValueError, match='Empty update'):
        PostgresStore().update_row('deals', 1, {})


def test_delete_rows_returns_rowcount():
    cur = make_cursor(rowcount=3)
    with cursor_patch(cur):
        assert PostgresStore().delete_rows('line_items', {'deal_id': 5}) == 3
    assert 'DELETE FROM line_items WHERE deal_id = %(w_deal_id)s' in cur.execute.call_args[0][0]


def test_delete_rows_refuses_empty_filter():
    with pytest.raises(ValueError, match='Refusing'):
        PostgresStore().delete_rows('line_items', {})


def test_delete_rows_empty_id_list_is_noop():
    cur = make_cursor()
    with cursor_patch(cur):
        assert PostgresStore().delete_rows('line_items', {'deal_id': 5, 'id': []}) == 0
    cur.execute.assert_not_called()


def test_select_rows_with_order_and_limit():
    cur = make_cursor(fetchall=[{'id': 1}, {'id': 2}])
    with cursor_patch(cur):
        rows = PostgresStore().select_rows(
            'deals', {'status': 'pending'}, order_by=('-created_at',), limit=10
        )
    assert rows == [{'id': 1}, {'id': 2}]
    sql, params = cur.execute.call_args[0]
    assert 'WHERE status = %(w_status)s' in sql
    assert 'ORDER BY created_at DESC' in sql
    assert 'LIMIT %(limit)s' in sql
    assert params == {'w_status': 'pending', 'limit': 10}


def test_select_rows_rejects_unknown_order_column():
    with pytest.raises(ValueError):
        PostgresStore().select_rows('deals', order_by=('1; DROP TABLE deals',))


def test_select_rows_empty_list_filter_skips_query():
    cur = make_cursor()
    with cursor_patch(cur):
        assert PostgresStore().select_rows('vendors', {'id': []}) == []
    cur.execute.assert_not_called()


def test_driver_error_becomes_store_error():
    cur = make_cursor()
    cur.execute.side_effect = psycopg2.OperationalError('server closed the connection')
    with cursor_patch(cur), pytest.raises(StoreError) as exc_info:
        PostgresStore().select_rows('deals', {'id': 1})
    assert exc_info.value.operation == 'select'
    assert exc_info.value.table == 'deals'
    assert 'server closed the connection' in str(exc_info.value)


# ---------------------------------------------------------------------------
# transaction()
# ---------------------------------------------------------------------------

def test_transaction_shares_one_connection():
    conn = MagicMock(name='conn')

    @contextmanager
    def fake_connection():
        yield conn

    seen = []
    cur = make_cursor(fetchone={'id': 1}, rowcount=0)
    store = PostgresStore()
    with patch('dealcrm.db.store.get_db_connection', fake_connection), cursor_patch(cur, seen):
        with store.transaction():
            store.delete_rows('line_items', {'deal_id': 1})
            store.insert_row('line_items', {'deal_id': 1, 'product_id': 'p'})
        store.select_rows('deals')

    assert seen == [conn, conn, None]


def test_nested_transaction_opens_one_connection():
    opened = []

    @contextmanager
    def fake_connection():
        opened.append(1)
        yield MagicMock()

    store = PostgresStore()
    with patch('dealcrm.db.store.get_db_connection', fake_connection):
        with store.transaction():
            with store.transaction():
                pass
    assert opened == [1]


def test_transaction_releases_connection_after_error():
    @contextmanager
    def fake_connection():
        yield MagicMock()

    store = PostgresStore()
    with patch('dealcrm.db.store.get_db_connection', fake_connection):
        with pytest.raises(RuntimeError):
            with store.transaction():
                raise RuntimeError('boom')
    assert store._local.conn is None
