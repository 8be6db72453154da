import os
import sys
import uuid
from pathlib import Path

import pytest


# Allow running pytest from either the repo root or from within `backend/`.
# Tests import `backend.*`, which requires the repo root on sys.path.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

MIGRATION = Path(REPO_ROOT) / "backend" / "db" / "migrations" / "001_init.sql"


@pytest.fixture
def pg_connect():
    """
    Factory for connections to a throwaway schema loaded with the migration.

    Needs a reachable PostgreSQL in TEST_DATABASE_URL; the test is skipped
    otherwise. The schema is dropped afterwards.
    """
    url = (os.getenv("TEST_DATABASE_URL") or "").strip()
    if not url:
        pytest.skip("TEST_DATABASE_URL not set")

    import psycopg
    from psycopg.rows import dict_row

    schema = f"t_{uuid.uuid4().hex[:12]}"
    opened = []

    def connect():
        conn = psycopg.connect(url, row_factory=dict_row, options=f"-c search_path={schema},public")
        opened.append(conn)
        return conn

    with psycopg.connect(url, autocommit=True) as admin:
        admin.execute(f"CREATE SCHEMA {schema}")
    setup = connect()
    with setup.transaction():
        setup.execute(MIGRATION.read_text())

    yield connect

    for conn in opened:
        if not conn.closed:
            conn.close()
    with psycopg.connect(url, autocommit=True) as admin:
        admin.execute(f"DROP SCHEMA {schema} CASCADE")
