import logging
from contextlib import contextmanager

import psycopg2.extras
from psycopg2.pool import ThreadedConnectionPool

from settings import settings

logger = logging.getLogger("gigpay.db")

_pool: ThreadedConnectionPool | None = None


def init_pool() -> ThreadedConnectionPool:
    """
    Create the shared connection pool on first use.

    Threaded because request handlers, the account poller and the per-session
    pollers all borrow connections concurrently.
    """
    global _pool
    if _pool is None:
        if not settings.DATABASE_URL:
            raise RuntimeError("DATABASE_URL is not set.")
        psycopg2.extras.register_uuid()
        _pool = ThreadedConnectionPool(
            minconn=settings.DB_POOL_MIN,
            maxconn=settings.DB_POOL_MAX,
            dsn=settings.DATABASE_URL,
            connect_timeout=5,
            application_name="gigpay_api",
        )
        logger.info("db_pool_opened min=%s max=%s", settings.DB_POOL_MIN, settings.DB_POOL_MAX)
    return _pool


def close_pool() -> None:
    global _pool
    if _pool is not None:
        _pool.closeall()
        _pool = None
        logger.info("db_pool_closed")


@contextmanager
def get_conn():
    """
    Pooled connection wrapped in one transaction: commit on success, rollback on error.
    """
    pool = init_pool()
    conn = pool.getconn()
    try:
        with conn.cursor() as cur:
            cur.execute("SET statement_timeout = %s;", (f"{int(settings.DB_STATEMENT_TIMEOUT_MS)}ms",))
            # advisory-lock holders sit idle while waiting on the processor
            cur.execute(
                "SET idle_in_transaction_session_timeout = %s;",
                (f"{int(settings.DB_IDLE_TX_TIMEOUT_MS)}ms",),
            )
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.putconn(conn)
