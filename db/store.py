import functools
from contextlib import contextmanager

import psycopg
from psycopg import Connection

from db import repositories
from errors import StoreFailure

OPERATIONS = frozenset(
    {
        "get_profile",
        "set_profile_upline",
        "get_plot",
        "list_plots",
        "update_plot",
        "insert_payment",
        "list_payments",
        "list_commissions",
        "insert_commission",
        "update_commission",
        "delete_commission",
        "list_transactions",
        "insert_transaction",
        "delete_transactions",
        "mark_transactions_reversed",
        "get_wallet",
        "create_wallet",
        "update_wallet",
    }
)


def _store_call(fn):
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except psycopg.Error as e:
            raise StoreFailure(str(e)) from e

    return wrapper


class PostgresStore:
    """
    store interface over one psycopg connection, backed by db.repositories.
    same surface as memory_store.MemoryStore.

    transaction() maps to conn.transaction(): the outermost block is a
    real transaction (or a savepoint if one is already open), nested
    blocks are savepoints. driver errors surface as StoreFailure.
    """

    def __init__(self, conn: Connection):
        self.conn = conn

    @contextmanager
    def transaction(self):
        try:
            with self.conn.transaction():
                yield self
        except psycopg.Error as e:
            raise StoreFailure(str(e)) from e

    def __getattr__(self, name):
        if name not in OPERATIONS:
            raise AttributeError(name)
        return functools.partial(_store_call(getattr(repositories, name)), self.conn)
