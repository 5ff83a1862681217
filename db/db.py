import psycopg
from contextlib import contextmanager
from psycopg.rows import dict_row

from config import get_settings


@contextmanager
def get_conn(dsn: str = None):
    """
    simple context manager to get a Postgres connection.
    autocommit is disabled so we can manage transactions explicitly.
    rows come back as dicts, the same shape the in-memory store uses.
    """
    with psycopg.connect(dsn or get_settings().DATABASE_URL, row_factory=dict_row) as conn:
        conn.autocommit = False
        yield conn
