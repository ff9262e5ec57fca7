"""
Persistence layer for the generation ledger and generated calaveras.
Supports both SQLite (development) and PostgreSQL (production).
"""

import os
import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

from db_config import (
    DATABASE_URL,
    SQLITE_PATH,
    DB_POOL_MIN,
    DB_POOL_MAX,
    DB_POOL_TIMEOUT_SECONDS,
    TRANSACTION_TIMEOUT_SECONDS,
)
from errors import StorageUnavailable

logger = logging.getLogger(__name__)


def utc_now() -> str:
    """Timestamp stored in TEXT columns; fixed width so it sorts lexically."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


@dataclass(frozen=True)
class GeneratedArtifact:
    """A persisted calavera. Immutable once written."""
    id: int
    identity: str
    content: str
    background_ref: str
    created_at: str
    company: Optional[str] = None
    request_details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row) -> "GeneratedArtifact":
        data = dict(row)
        details = data.get("request_details") or "{}"
        if isinstance(details, str):
            details = json.loads(details)
        return cls(
            id=int(data["id"]),
            identity=data["identity"],
            content=data["content"],
            background_ref=data["background_ref"],
            created_at=data["created_at"],
            company=data.get("company"),
            request_details=details,
        )


class Database:
    """
    Bounded connection pool over PostgreSQL or SQLite.

    At most `pool_max` connections are checked out at once; callers wait up to
    `pool_timeout` seconds for a free slot and get StorageUnavailable after that.
    """

    def __init__(
        self,
        database_url: str = DATABASE_URL,
        sqlite_path: str = SQLITE_PATH,
        pool_min: int = DB_POOL_MIN,
        pool_max: int = DB_POOL_MAX,
        pool_timeout: float = DB_POOL_TIMEOUT_SECONDS,
        transaction_timeout: float = TRANSACTION_TIMEOUT_SECONDS,
    ):
        self.database_url = database_url or ""
        self.use_postgres = self.database_url.startswith("postgres")
        self.sqlite_path = sqlite_path
        self.pool_min = pool_min
        self.pool_max = pool_max
        self.pool_timeout = pool_timeout
        self.transaction_timeout = transaction_timeout

        self._slots = threading.BoundedSemaphore(pool_max)
        self._counter_lock = threading.Lock()
        self._in_use = 0
        self._pg_pool = None
        self._pool_lock = threading.Lock()

        if self.use_postgres:
            import psycopg2
            self.errors = (psycopg2.Error,)
        else:
            self.errors = (sqlite3.Error,)
            os.makedirs(os.path.dirname(os.path.abspath(sqlite_path)), exist_ok=True)

    @property
    def backend(self) -> str:
        return "postgres" if self.use_postgres else "sqlite"

    @property
    def in_use(self) -> int:
        """Number of connections currently checked out."""
        with self._counter_lock:
            return self._in_use

    # ============= CONNECTIONS =============

    def _connect(self):
        if self.use_postgres:
            if self._pg_pool is None:
                with self._pool_lock:
                    if self._pg_pool is None:
                        from psycopg2.extras import RealDictCursor
                        from psycopg2.pool import ThreadedConnectionPool

                        self._pg_pool = ThreadedConnectionPool(
                            self.pool_min, self.pool_max,
                            self.database_url,
                            cursor_factory=RealDictCursor
                        )
            return self._pg_pool.getconn()

        # Autocommit mode; transactions are opened explicitly with BEGIN IMMEDIATE.
        # The busy timeout doubles as the lock wait bound.
        conn = sqlite3.connect(
            self.sqlite_path,
            timeout=self.transaction_timeout,
            check_same_thread=False,
            isolation_level=None,
        )
        try:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
        except sqlite3.Error:
            conn.close()
            raise
        conn.row_factory = sqlite3.Row
        return conn

    def _disconnect(self, conn, broken: bool = False):
        if self.use_postgres:
            if self._pg_pool:
                self._pg_pool.putconn(conn, close=broken)
        else:
            conn.close()

    def acquire(self):
        """Check a connection out of the pool."""
        if not self._slots.acquire(timeout=self.pool_timeout):
            logger.error(f"Connection pool exhausted ({self.pool_max} in use)")
            raise StorageUnavailable("Connection pool exhausted")
        try:
            conn = self._connect()
        except self.errors as e:
            self._slots.release()
            logger.error(f"Database connection failed: {e}")
            raise StorageUnavailable(f"Database connection failed: {e}") from e
        with self._counter_lock:
            self._in_use += 1
        return conn

    def release(self, conn, broken: bool = False):
        """Return a connection to the pool. Always frees the slot."""
        try:
            self._disconnect(conn, broken=broken)
        except self.errors as e:
            logger.warning(f"Error while releasing connection: {e}")
        finally:
            with self._counter_lock:
                self._in_use -= 1
            self._slots.release()

    def close(self):
        """Close the PostgreSQL pool (no-op for SQLite)."""
        if self._pg_pool is not None:
            self._pg_pool.closeall()
            self._pg_pool = None

    def format_query(self, query: str) -> str:
        """Convert ? placeholders to %s for PostgreSQL if needed."""
        if self.use_postgres:
            return query.replace("?", "%s")
        return query

    def execute(self, conn, query: str, params=()):
        cursor = conn.cursor()
        cursor.execute(self.format_query(query), params)
        return cursor

    @contextmanager
    def get_db(self):
        """Scoped connection: commit on success, rollback on error, always released."""
        conn = self.acquire()
        broken = False
        try:
            yield conn
            conn.commit()
        except self.errors as e:
            broken = not self._safe_rollback(conn)
            logger.error(f"Database error: {e}")
            raise StorageUnavailable(str(e)) from e
        except BaseException:
            broken = not self._safe_rollback(conn)
            raise
        finally:
            self.release(conn, broken=broken)

    def _safe_rollback(self, conn) -> bool:
        try:
            conn.rollback()
            return True
        except self.errors as e:
            logger.error(f"Rollback failed: {e}")
            return False

    def transaction(self) -> "Transaction":
        return Transaction(self)

    # ============= SCHEMA =============

    def init_db(self):
        """Initialize the database schema."""
        if self.use_postgres:
            artifact_id = "id SERIAL PRIMARY KEY"
        else:
            artifact_id = "id INTEGER PRIMARY KEY AUTOINCREMENT"

        with self.get_db() as conn:
            cursor = conn.cursor()

            # One row per email; created by its first successful generation
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS generation_ledger (
                    identity TEXT PRIMARY KEY,
                    generation_count INTEGER NOT NULL DEFAULT 0 CHECK (generation_count >= 0),
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            # Generated calaveras (append-only)
            cursor.execute(f"""
                CREATE TABLE IF NOT EXISTS calaveras (
                    {artifact_id},
                    identity TEXT NOT NULL,
                    request_details TEXT NOT NULL,
                    company TEXT,
                    content TEXT NOT NULL,
                    background_ref TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_calaveras_identity
                ON calaveras(identity, created_at)
            """)

        logger.info(f"Database initialized: {'PostgreSQL' if self.use_postgres else 'SQLite'}")

    def ping(self) -> bool:
        """Readiness probe."""
        try:
            with self.get_db() as conn:
                self.execute(conn, "SELECT 1")
            return True
        except StorageUnavailable:
            return False

    # ============= LEDGER =============

    def lock_ledger_entry(self, tx: "Transaction", identity: str) -> int:
        """
        Lock the ledger row for `identity` until `tx` ends and return its count.

        A zero-count row is inserted first so a brand-new identity also has a row
        to lock. It only survives if the transaction commits, which happens
        together with an increment.
        """
        now = utc_now()
        tx.execute("""
            INSERT INTO generation_ledger (identity, generation_count, created_at, updated_at)
            VALUES (?, 0, ?, ?)
            ON CONFLICT (identity) DO NOTHING
        """, (identity, now, now))

        query = "SELECT generation_count FROM generation_ledger WHERE identity = ?"
        if self.use_postgres:
            query += " FOR UPDATE"
        row = tx.execute(query, (identity,)).fetchone()
        return int(row["generation_count"]) if row else 0

    def increment_ledger_entry(self, tx: "Transaction", identity: str) -> int:
        """Insert the row with count 1 or add 1 to it. Returns the new count."""
        now = utc_now()
        tx.execute("""
            INSERT INTO generation_ledger (identity, generation_count, created_at, updated_at)
            VALUES (?, 1, ?, ?)
            ON CONFLICT (identity) DO UPDATE SET
                generation_count = generation_ledger.generation_count + 1,
                updated_at = excluded.updated_at
        """, (identity, now, now))
        row = tx.execute(
            "SELECT generation_count FROM generation_ledger WHERE identity = ?",
            (identity,)
        ).fetchone()
        return int(row["generation_count"])

    def get_ledger_count(self, identity: str) -> int:
        """Committed count for `identity` (no lock)."""
        with self.get_db() as conn:
            row = self.execute(
                conn,
                "SELECT generation_count FROM generation_ledger WHERE identity = ?",
                (identity,)
            ).fetchone()
            return int(row["generation_count"]) if row else 0

    # ============= CALAVERAS =============

    def insert_artifact(
        self,
        tx: "Transaction",
        identity: str,
        request_details: Dict[str, Any],
        company: Optional[str],
        content: str,
        background_ref: str,
    ) -> GeneratedArtifact:
        """Insert a generated calavera inside `tx`."""
        created_at = utc_now()
        params = (
            identity,
            json.dumps(request_details, ensure_ascii=False),
            company,
            content,
            background_ref,
            created_at,
        )
        query = """
            INSERT INTO calaveras
            (identity, request_details, company, content, background_ref, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """
        if self.use_postgres:
            cursor = tx.execute(query + " RETURNING id", params)
            artifact_id = cursor.fetchone()["id"]
        else:
            cursor = tx.execute(query, params)
            artifact_id = cursor.lastrowid

        return GeneratedArtifact(
            id=int(artifact_id),
            identity=identity,
            content=content,
            background_ref=background_ref,
            created_at=created_at,
            company=company,
            request_details=dict(request_details),
        )

    def list_artifacts(self, identity: str) -> List[GeneratedArtifact]:
        """All calaveras for `identity`, newest first."""
        with self.get_db() as conn:
            cursor = self.execute(conn, """
                SELECT id, identity, request_details, company, content, background_ref, created_at
                FROM calaveras
                WHERE identity = ?
                ORDER BY created_at DESC, id DESC
            """, (identity,))
            return [GeneratedArtifact.from_row(row) for row in cursor.fetchall()]


class Transaction:
    """
    One explicit transaction on a pooled connection.

    begin() checks a connection out; close() always gives it back, rolling back
    first if the transaction is still open. Use from a single task at a time.
    """

    def __init__(self, db: Database):
        self.db = db
        self.conn = None
        self._open = False
        self._broken = False

    @property
    def is_open(self) -> bool:
        return self._open

    def begin(self) -> "Transaction":
        self.conn = self.db.acquire()
        try:
            if self.db.use_postgres:
                timeout = f"{int(self.db.transaction_timeout * 1000)}ms"
                cursor = self.conn.cursor()
                # Scoped to this transaction only
                for setting in ("lock_timeout", "statement_timeout", "idle_in_transaction_session_timeout"):
                    cursor.execute("SELECT set_config(%s, %s, true)", (setting, timeout))
            else:
                self.conn.execute("BEGIN IMMEDIATE")
        except self.db.errors as e:
            logger.error(f"Could not open transaction: {e}")
            self.db.release(self.conn, broken=True)
            self.conn = None
            raise StorageUnavailable(f"Could not open transaction: {e}") from e
        self._open = True
        return self

    def execute(self, query: str, params=()):
        try:
            return self.db.execute(self.conn, query, params)
        except self.db.errors as e:
            raise StorageUnavailable(str(e)) from e

    def commit(self):
        try:
            self.conn.commit()
        except self.db.errors as e:
            raise StorageUnavailable(f"Commit failed: {e}") from e
        self._open = False

    def rollback(self):
        if self.conn is None or not self._open:
            return
        self._open = False
        try:
            self.conn.rollback()
        except self.db.errors as e:
            logger.error(f"Rollback failed: {e}")
            self._broken = True

    def close(self):
        """Release the connection. Safe to call more than once."""
        if self.conn is None:
            return
        if self._open:
            self.rollback()
        conn, self.conn = self.conn, None
        self.db.release(conn, broken=self._broken)

    def __enter__(self) -> "Transaction":
        return self.begin()

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type:
            self.rollback()
        self.close()
        return False
