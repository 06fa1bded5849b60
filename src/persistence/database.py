"""
Database Connection Layer

Supports SQLite (dev, tests) and PostgreSQL (production). Writers work through
scoped transactions and prepared statements: leaving a Transaction without a
commit rolls it back, and both the transaction and its statement are released
exactly once on every exit path.
"""

import os
import re
import sqlite3
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple

import psycopg2
from psycopg2 import extensions as pg_extensions
from psycopg2 import pool as pg_pool
from psycopg2.extras import RealDictCursor
import structlog

from .config import StoreConfig

logger = structlog.get_logger()

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS meter_data (
    created_at TEXT PRIMARY KEY NOT NULL,
    meter_id INTEGER NOT NULL,
    total_kwh_neg TEXT NOT NULL,  -- decimals kept as text for exact round-trips
    total_kwh_pos TEXT NOT NULL,
    total_kwh_t1_pos TEXT NOT NULL,
    total_kwh_t2_pos TEXT NOT NULL,
    total_p TEXT NOT NULL,
    p1 TEXT NOT NULL,
    p2 TEXT NOT NULL,
    p3 TEXT NOT NULL,
    v1 TEXT NOT NULL,
    v2 TEXT NOT NULL,
    v3 TEXT NOT NULL
);
"""

POSTGRES_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS meter_data (
    created_at timestamp PRIMARY KEY NOT NULL,
    meter_id integer NOT NULL,
    total_kwh_neg decimal NOT NULL,
    total_kwh_pos decimal NOT NULL,
    total_kwh_t1_pos decimal NOT NULL,
    total_kwh_t2_pos decimal NOT NULL,
    total_p decimal NOT NULL,
    p1 decimal NOT NULL,
    p2 decimal NOT NULL,
    p3 decimal NOT NULL,
    v1 decimal NOT NULL,
    v2 decimal NOT NULL,
    v3 decimal NOT NULL
);
"""

# `:name` placeholders, skipping `::type` casts
_NAMED_PARAM = re.compile(r"(?<![:\w]):([A-Za-z_][A-Za-z0-9_]*)")


def to_positional(sql: str) -> Tuple[str, List[str]]:
    """
    Rewrite `:name` placeholders as PostgreSQL `$n` parameters.

    Returns the rewritten SQL and the parameter names in `$n` order. A name
    used twice maps to the same `$n`.
    """
    names: List[str] = []

    def replace(match: "re.Match[str]") -> str:
        name = match.group(1)
        if name not in names:
            names.append(name)
        return f"${names.index(name) + 1}"

    return _NAMED_PARAM.sub(replace, sql), names


def to_pyformat(sql: str) -> str:
    """Rewrite `:name` placeholders as psycopg2 `%(name)s` parameters."""
    return _NAMED_PARAM.sub(r"%(\1)s", sql)


def _sqlite_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


def _sqlite_params(params: Mapping[str, Any]) -> Dict[str, Any]:
    return {key: _sqlite_value(value) for key, value in params.items()}


class PreparedStatement(ABC):
    """
    A statement prepared once per transaction and executed per row.

    Use as a context manager; close() is idempotent.
    """

    def __init__(self, sql: str):
        self.sql = sql
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @abstractmethod
    def execute(self, params: Mapping[str, Any]) -> None:
        pass

    @abstractmethod
    def _release(self) -> None:
        pass

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._release()

    def __enter__(self) -> "PreparedStatement":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if exc_val is None:
            self.close()
            return
        # Do not mask the error that is already unwinding
        try:
            self.close()
        except Exception as e:
            logger.error("statement_close_failed", error=str(e), cause=str(exc_val))


class Transaction(ABC):
    """
    One all-or-nothing unit of work on a single connection.

    Leaving the context without commit() rolls back. The connection goes back
    to its owner exactly once, whatever happened inside.
    """

    def __init__(self):
        self._committed = False
        self._finished = False

    @property
    def committed(self) -> bool:
        return self._committed

    @abstractmethod
    def prepare(self, sql: str) -> PreparedStatement:
        pass

    @abstractmethod
    def query(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def _commit(self) -> None:
        pass

    @abstractmethod
    def _rollback(self) -> None:
        pass

    @abstractmethod
    def _release(self, failed: bool) -> None:
        pass

    def commit(self) -> None:
        if self._committed:
            return
        self._commit()
        self._committed = True

    def rollback(self) -> None:
        """Roll back; a no-op after commit."""
        if self._committed:
            return
        self._rollback()

    def __enter__(self) -> "Transaction":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._finished:
            return
        self._finished = True

        failed = exc_val is not None or not self._committed
        try:
            self.rollback()
        except Exception as e:
            failed = True
            if exc_val is None:
                raise
            logger.error("transaction_rollback_failed", error=str(e), cause=str(exc_val))
        finally:
            self._release(failed)


# ============================================================================
# SQLite
# ============================================================================

class SqliteStatement(PreparedStatement):
    """SQLite caches compiled statements per connection; the cursor is the handle."""

    def __init__(self, conn: sqlite3.Connection, sql: str):
        super().__init__(sql)
        self._cursor = conn.cursor()

    def execute(self, params: Mapping[str, Any]) -> None:
        if self._closed:
            raise RuntimeError("Statement is closed")
        self._cursor.execute(self.sql, _sqlite_params(params))

    def _release(self) -> None:
        self._cursor.close()


class SqliteTransaction(Transaction):
    """
    Writers take BEGIN IMMEDIATE so they queue on the busy timeout; readers
    take a deferred BEGIN and read the last committed snapshot (WAL) without
    waiting for an open writer.
    """

    def __init__(self, conn: sqlite3.Connection, read_only: bool = False):
        super().__init__()
        self._conn = conn
        self._conn.execute("BEGIN" if read_only else "BEGIN IMMEDIATE")

    def prepare(self, sql: str) -> PreparedStatement:
        return SqliteStatement(self._conn, sql)

    def query(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> List[Dict[str, Any]]:
        cursor = self._conn.execute(sql, _sqlite_params(params or {}))
        try:
            if cursor.description:
                return [dict(row) for row in cursor.fetchall()]
            return []
        finally:
            cursor.close()

    def _commit(self) -> None:
        self._conn.execute("COMMIT")

    def _rollback(self) -> None:
        # SQLite may already have rolled back on its own (e.g. failed COMMIT)
        if self._conn.in_transaction:
            self._conn.execute("ROLLBACK")

    def _release(self, failed: bool) -> None:
        # Thread-local connection stays open for the next transaction
        pass


# ============================================================================
# PostgreSQL
# ============================================================================

class PostgresStatement(PreparedStatement):
    """Server-side prepared statement (PREPARE / EXECUTE / DEALLOCATE)."""

    def __init__(self, conn: Any, sql: str):
        super().__init__(sql)
        self._conn = conn
        self.name = f"meter_stmt_{uuid.uuid4().hex[:12]}"
        positional, self.param_names = to_positional(sql)
        self._cursor = conn.cursor()
        try:
            self._cursor.execute(f"PREPARE {self.name} AS {positional}")
        except Exception:
            self._closed = True
            self._cursor.close()
            raise
        self._execute_sql = f"EXECUTE {self.name}"
        if self.param_names:
            self._execute_sql += " (" + ", ".join(["%s"] * len(self.param_names)) + ")"

    def execute(self, params: Mapping[str, Any]) -> None:
        if self._closed:
            raise RuntimeError("Statement is closed")
        self._cursor.execute(self._execute_sql, [params[name] for name in self.param_names])

    def _release(self) -> None:
        try:
            # An aborted transaction refuses DEALLOCATE; that connection is
            # discarded on release, which drops the statement with it.
            status = self._conn.info.transaction_status
            if not self._conn.closed and status != pg_extensions.TRANSACTION_STATUS_INERROR:
                self._cursor.execute(f"DEALLOCATE {self.name}")
        finally:
            self._cursor.close()


class PostgresTransaction(Transaction):
    """Transaction on a pooled connection."""

    def __init__(self, pool: pg_pool.ThreadedConnectionPool, read_only: bool = False):
        super().__init__()
        self._pool = pool
        self._conn = pool.getconn()
        try:
            if self._conn.closed:
                raise psycopg2.InterfaceError("Pooled connection is closed")
            # psycopg2 opens the transaction on this first statement
            with self._conn.cursor() as cursor:
                cursor.execute("SET TRANSACTION READ ONLY" if read_only else "SELECT 1")
        except Exception:
            self._pool.putconn(self._conn, close=True)
            raise

    def prepare(self, sql: str) -> PreparedStatement:
        return PostgresStatement(self._conn, sql)

    def query(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> List[Dict[str, Any]]:
        with self._conn.cursor(cursor_factory=RealDictCursor) as cursor:
            cursor.execute(to_pyformat(sql), dict(params) if params else None)
            if cursor.description:
                return [dict(row) for row in cursor.fetchall()]
            return []

    def _commit(self) -> None:
        self._conn.commit()

    def _rollback(self) -> None:
        if not self._conn.closed:
            self._conn.rollback()

    def _release(self, failed: bool) -> None:
        # A connection that saw a failed transaction is not reused
        self._pool.putconn(self._conn, close=failed or bool(self._conn.closed))


class Database:
    """
    Store handle with SQLite and PostgreSQL support.

    Safe to share between threads: PostgreSQL transactions each check out
    their own pooled connection, SQLite gives every thread its own
    connection. An in-memory SQLite database is therefore private to the
    thread that opened it; use a file for anything concurrent.

    Usage:
        db = Database()  # Uses DATABASE_URL env or defaults to SQLite
        with db.begin() as tx:
            with tx.prepare(sql) as statement:
                statement.execute(params)
            tx.commit()
    """

    def __init__(
        self,
        database_url: Optional[str] = None,
        store: Optional[StoreConfig] = None,
        sqlite_timeout: float = 30.0,
    ):
        self.store = store
        if store is not None:
            self.database_url = store.dsn
            self.is_postgres = True
        else:
            self.database_url = database_url or os.environ.get(
                "DATABASE_URL",
                "sqlite:///meter_data.db"
            )
            self.is_postgres = self.database_url.startswith("postgres")

        self.sqlite_timeout = sqlite_timeout
        self._local = threading.local()
        self._sqlite_conns: List[sqlite3.Connection] = []
        self._pool: Optional[pg_pool.ThreadedConnectionPool] = None
        self._lock = threading.Lock()
        self._initialized = False

    @property
    def backend(self) -> str:
        return "postgres" if self.is_postgres else "sqlite"

    def _get_sqlite_path(self) -> str:
        """Extract SQLite file path from URL."""
        if self.database_url.startswith("sqlite:///"):
            return self.database_url[10:]
        return "meter_data.db"

    def _sqlite_connection(self) -> sqlite3.Connection:
        """Per-thread SQLite connection in WAL mode, autocommit so BEGIN is explicit."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(
                self._get_sqlite_path(),
                check_same_thread=False,
                timeout=self.sqlite_timeout,
                isolation_level=None,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            self._local.conn = conn
            with self._lock:
                self._sqlite_conns.append(conn)
        return conn

    def _postgres_pool(self) -> pg_pool.ThreadedConnectionPool:
        """Connection pool, created on first use so a down store does not fail startup."""
        if self._pool is None:
            with self._lock:
                if self._pool is None:
                    store = self.store
                    connect_timeout = store.connect_timeout if store else 10
                    statement_timeout = store.statement_timeout_ms if store else 30000
                    self._pool = pg_pool.ThreadedConnectionPool(
                        store.pool_min if store else 1,
                        store.pool_max if store else 10,
                        dsn=self.database_url,
                        connect_timeout=connect_timeout,
                        options=f"-c statement_timeout={statement_timeout}",
                    )
                    logger.info(
                        "database_pool_created",
                        host=store.host if store else None,
                        maxconn=store.pool_max if store else 10,
                    )
        return self._pool

    def begin(self, read_only: bool = False) -> Transaction:
        """
        Begin a transaction. A read-only one only sees committed rows and
        does not queue behind open writers.

        Raises the driver's error when the store is unreachable, the pool is
        exhausted (psycopg2 PoolError, no waiting) or SQLite stays locked past
        its busy timeout.
        """
        if self.is_postgres:
            return PostgresTransaction(self._postgres_pool(), read_only=read_only)
        return SqliteTransaction(self._sqlite_connection(), read_only=read_only)

    def initialize(self) -> None:
        """Create the meter_data table if it does not exist."""
        if self._initialized:
            return

        if self.is_postgres:
            with self.begin() as tx:
                tx.query(POSTGRES_SCHEMA_SQL)
                tx.commit()
        else:
            self._sqlite_connection().executescript(SCHEMA_SQL)

        self._initialized = True
        logger.info("database_initialized", backend=self.backend)

    def execute(
        self,
        query: str,
        params: Optional[Mapping[str, Any]] = None,
        read_only: bool = False,
    ) -> List[Dict[str, Any]]:
        """Run one statement (`:name` placeholders) in its own transaction; rows as dicts."""
        with self.begin(read_only=read_only) as tx:
            rows = tx.query(query, params)
            tx.commit()
        return rows

    def close(self) -> None:
        """Close the pool and every SQLite connection."""
        with self._lock:
            if self._pool is not None:
                self._pool.closeall()
                self._pool = None
            for conn in self._sqlite_conns:
                conn.close()
            self._sqlite_conns.clear()
        self._local = threading.local()
