from contextlib import contextmanager

import psycopg
from psycopg.rows import dict_row

# psycopg3 connection pooling lives in a separate package.
from psycopg_pool import ConnectionPool

from .config import settings
from .errors import StorageError

# Pool sizing defaults are conservative for local/dev. Override in prod via env:
# - DB_POOL_MIN_SIZE / DB_POOL_MAX_SIZE
# open=False: the pool connects lazily so importing the app never needs a live DB.
_pool = ConnectionPool(
    conninfo=settings.db_url,
    min_size=settings.db_pool_min,
    max_size=settings.db_pool_max,
    kwargs={"row_factory": dict_row},
    open=False,
)


def _ensure_open(pool: ConnectionPool) -> ConnectionPool:
    if pool.closed:
        pool.open()
    return pool


@contextmanager
def _pooled_conn(pool: ConnectionPool):
    # `with get_conn() as conn:`
    # - commit on success
    # - rollback on exception
    # - return connection to pool
    with _ensure_open(pool).connection() as conn:
        with conn:
            yield conn


def get_conn():
    return _pooled_conn(_pool)


def close_pools() -> None:
    # Best-effort shutdown hook (e.g. uvicorn shutdown).
    if not _pool.closed:
        _pool.close()


def set_company_context(conn, company_id: str):
    with conn.cursor() as cur:
        # `SET ... = %s` is not valid when using the extended query protocol (psycopg sends $1).
        # Use set_config() to safely parameterize the value.
        # set_config(name text, value text, is_local boolean)
        cur.execute(
            "SELECT set_config('app.current_company_id', %s::text, true)",
            (company_id,),
        )


@contextmanager
def tenant_transaction(company_id: str):
    """
    One transaction scoped to a company, yielding a cursor.

    Commits when the block exits normally and rolls back everything otherwise.
    Deadlocks, serialization failures and pool/connection problems surface as
    StorageError; nothing partial survives them so the caller may retry.
    """
    try:
        with get_conn() as conn:
            set_company_context(conn, company_id)
            with conn.transaction():
                with conn.cursor() as cur:
                    yield cur
    except psycopg.OperationalError as ex:
        raise StorageError(f"transaction aborted: {ex}") from ex
