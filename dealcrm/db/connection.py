"""
Database Connection Management
PostgreSQL connections and cursors as context managers.
"""

import psycopg2
from psycopg2.extras import RealDictCursor
from contextlib import contextmanager
import logging

from dealcrm.config import config

logger = logging.getLogger(__name__)


@contextmanager
def get_db_connection():
    """
    Context manager for one database transaction.
    Commits on success, rolls back on any error, always closes.

    Usage:
        with get_db_connection() as conn:
            with get_db_cursor(conn=conn) as cur:
                cur.execute("DELETE FROM line_items WHERE deal_id = %s", (deal_id,))
            with get_db_cursor(conn=conn) as cur:
                cur.execute("INSERT INTO line_items ...")
    """
    conn = None
    try:
        conn = psycopg2.connect(
            config.DATABASE_URL,
            connect_timeout=config.DB_CONNECT_TIMEOUT,
            application_name='dealcrm',
        )
        logger.debug("Database connection established")
        yield conn
        conn.commit()
        logger.debug("Transaction committed")
    except Exception as e:
        if conn:
            conn.rollback()
            logger.error(f"Transaction rolled back due to error: {e}")
        raise
    finally:
        if conn:
            conn.close()
            logger.debug("Database connection closed")


@contextmanager
def get_db_cursor(dict_cursor=True, conn=None):
    """
    Context manager for a database cursor (RealDictCursor by default).

    With `conn`, the cursor runs inside that caller-owned transaction and
    nothing is committed here. Without it, the cursor gets its own
    connection and commits when the block exits cleanly.
    """
    cursor_factory = RealDictCursor if dict_cursor else None
    if conn is not None:
        cur = conn.cursor(cursor_factory=cursor_factory)
        try:
            yield cur
        finally:
            cur.close()
        return

    with get_db_connection() as own_conn:
        cur = own_conn.cursor(cursor_factory=cursor_factory)
        try:
            yield cur
        finally:
            cur.close()
