"""
PostgreSQL client with connection pooling and unit-of-work transactions.

Uses psycopg2 with ThreadedConnectionPool. Every connection is tagged with the
acting user (app.current_actor_id) read from utils.actor_context, so audit
triggers and ad-hoc queries can see who performed a change.

Plain execute*() calls run in their own short transaction and commit
immediately. Anything that must commit together (an invoice status change and
its ledger entry, a payment and its credit) goes through transaction():

    with db.transaction() as tx:
        tx.execute_single("SELECT ... FOR UPDATE", (invoice_id,))
        tx.execute_returning("UPDATE invoices ...", params)
        transactions.create_invoice_debit(data, db=tx)

Both PostgresClient and PostgresTransaction expose the same execute* methods,
so service code takes either as its `db` argument.
"""

import json
import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Tuple
from uuid import UUID

import psycopg2
import psycopg2.extras
import psycopg2.pool

from utils.actor_context import peek_current_actor_id

logger = logging.getLogger(__name__)

# Global JSONB registration flag
_jsonb_registered = False

Params = Tuple | Dict | None


def to_json(value: Any) -> psycopg2.extras.Json:
    """Wrap a dict for a JSONB column. UUIDs, Decimals and datetimes become strings."""
    return psycopg2.extras.Json(value, dumps=lambda obj: json.dumps(obj, default=str))


def _convert_params(params: Params) -> Params:
    """Convert UUID objects to strings, recursing into containers."""
    if params is None:
        return None

    def convert(value: Any) -> Any:
        if isinstance(value, UUID):
            return str(value)
        if isinstance(value, list):
            return [convert(v) for v in value]
        if isinstance(value, tuple):
            return tuple(convert(v) for v in value)
        if isinstance(value, dict):
            return {k: convert(v) for k, v in value.items()}
        return value

    return convert(params)


class PostgresTransaction:
    """
    Executor bound to one connection inside an open transaction.

    Nothing is committed until the owning PostgresClient.transaction() block
    exits cleanly. Any exception rolls back every statement issued here.
    """

    def __init__(self, conn):
        self._conn = conn

    def execute(self, query: str, params: Params = None) -> List[Dict[str, Any]]:
        """Execute query, return list of row dicts. Empty list if no results."""
        with self._conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
            cur.execute(query, _convert_params(params))
            if cur.description:
                return [dict(row) for row in cur.fetchall()]
            return []

    def execute_single(self, query: str, params: Params = None) -> Dict[str, Any] | None:
        """Execute query, return first row or None."""
        results = self.execute(query, params)
        return results[0] if results else None

    def execute_scalar(self, query: str, params: Params = None) -> Any:
        """Execute query, return first value of first row or None."""
        with self._conn.cursor() as cur:
            cur.execute(query, _convert_params(params))
            result = cur.fetchone()
            return result[0] if result else None

    def execute_returning(self, query: str, params: Params = None) -> List[Dict[str, Any]]:
        """Execute INSERT/UPDATE with RETURNING, return results."""
        return self.execute(query, params)


class PostgresClient:
    """
    PostgreSQL client with pooled connections and actor tagging.

    Usage:
        db = PostgresClient(database_url)

        rows = db.execute("SELECT * FROM transactions WHERE user_id = %s", (member_id,))

        with db.transaction() as tx:
            ...  # all-or-nothing
    """

    # Class-level connection pools shared across instances
    _connection_pools: Dict[str, psycopg2.pool.ThreadedConnectionPool] = {}
    _pools_lock = threading.RLock()

    def __init__(self, database_url: str):
        self._database_url = database_url
        self._ensure_connection_pool()

    def _ensure_connection_pool(self) -> None:
        """Create connection pool if it doesn't exist."""
        with self._pools_lock:
            if self._database_url not in self._connection_pools:
                pool = psycopg2.pool.ThreadedConnectionPool(
                    minconn=2,
                    maxconn=20,
                    dsn=self._database_url,
                    connect_timeout=30,
                )

                global _jsonb_registered
                if not _jsonb_registered:
                    psycopg2.extras.register_default_jsonb(globally=True)
                    _jsonb_registered = True

                self._connection_pools[self._database_url] = pool
                logger.info("Connection pool created")

    @contextmanager
    def get_connection(self):
        """Get a pooled connection tagged with the current actor."""
        if self._database_url not in self._connection_pools:
            self._ensure_connection_pool()

        pool = self._connection_pools[self._database_url]
        conn = None

        try:
            conn = pool.getconn()
            if conn is None:
                raise RuntimeError("Could not get connection from pool")

            actor_id = peek_current_actor_id()

            with conn.cursor() as cur:
                if actor_id is not None:
                    cur.execute("SET app.current_actor_id = %s", (str(actor_id),))
                else:
                    cur.execute("SET app.current_actor_id = ''")

            yield conn

        finally:
            if conn:
                pool.putconn(conn)

    @contextmanager
    def transaction(self) -> Iterator[PostgresTransaction]:
        """
        Unit of work: every statement issued through the yielded executor
        commits together on clean exit, or rolls back on any exception.
        """
        with self.get_connection() as conn:
            try:
                yield PostgresTransaction(conn)
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def execute(self, query: str, params: Params = None) -> List[Dict[str, Any]]:
        """Execute query, return list of row dicts. Empty list if no results."""
        with self.transaction() as tx:
            return tx.execute(query, params)

    def execute_single(self, query: str, params: Params = None) -> Dict[str, Any] | None:
        """Execute query, return first row or None."""
        results = self.execute(query, params)
        return results[0] if results else None

    def execute_scalar(self, query: str, params: Params = None) -> Any:
        """Execute query, return first value of first row or None."""
        with self.transaction() as tx:
            return tx.execute_scalar(query, params)

    def execute_returning(self, query: str, params: Params = None) -> List[Dict[str, Any]]:
        """Execute INSERT/UPDATE with RETURNING, return results."""
        with self.transaction() as tx:
            return tx.execute_returning(query, params)

    def close(self) -> None:
        """Close connection pool."""
        with self._pools_lock:
            if self._database_url in self._connection_pools:
                self._connection_pools[self._database_url].closeall()
                del self._connection_pools[self._database_url]

    @classmethod
    def close_all_pools(cls) -> None:
        """Close all connection pools."""
        with cls._pools_lock:
            for pool in cls._connection_pools.values():
                pool.closeall()
            cls._connection_pools.clear()


@contextmanager
def unit_of_work(postgres: PostgresClient, db: PostgresTransaction | None = None) -> Iterator[PostgresTransaction]:
    """
    Join the caller's transaction when one is passed, else open a new one.

    Lets a service method run standalone or as one step of a larger unit of
    work without committing early.
    """
    if db is not None:
        yield db
        return

    with postgres.transaction() as tx:
        yield tx
