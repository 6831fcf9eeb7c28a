import psycopg2
import psycopg2.extensions
import psycopg2.extras
from psycopg2.pool import SimpleConnectionPool
from contextlib import contextmanager
from settings import settings

_pool: SimpleConnectionPool | None = None


def init_pool():
    """
    Initialize the PostgreSQL connection pool.
    Called once at app startup.
    """
    psycopg2.extras.register_uuid()
    global _pool
    if _pool is None:
        _pool = SimpleConnectionPool(
            minconn=1,
            maxconn=10,
            dsn=settings.DATABASE_URL,
            connect_timeout=5,
        )


def close_pool():
    """
    Gracefully close all pooled connections.
    """
    global _pool
    if _pool:
        _pool.closeall()
        _pool = None


@contextmanager
def get_conn():
    """
    Provides a transactional DB connection.
    Auto-commits on success, rolls back on error.

    Runs at REPEATABLE READ so a settlement unit sees one snapshot; concurrent
    writers surface as SQLSTATE 40001 and are retried by the caller.
    """
    if _pool is None:
        init_pool()

    conn = _pool.getconn()

    try:
        conn.set_session(
            isolation_level=psycopg2.extensions.ISOLATION_LEVEL_REPEATABLE_READ,
            autocommit=False,
        )
        # Safety: never allow long-running queries or stuck locks
        with conn.cursor() as cur:
            cur.execute("SET LOCAL statement_timeout = %s;", (f"{settings.SETTLEMENT_STATEMENT_TIMEOUT_MS}ms",))
            cur.execute("SET LOCAL lock_timeout = %s;", (f"{settings.SETTLEMENT_LOCK_TIMEOUT_MS}ms",))
            cur.execute("SET LOCAL idle_in_transaction_session_timeout = '10000ms';")
            cur.execute("SET LOCAL application_name = 'marketsettle_api';")

        yield conn
        conn.commit()

    except Exception:
        conn.rollback()
        raise

    finally:
        _pool.putconn(conn)
