"""
PostgreSQL code paths of the storage layer.

A recording pool stands in for psycopg2's ThreadedConnectionPool so the SQL the
PostgreSQL branch sends can be checked without a server. Set TEST_DATABASE_URL
to also run the concurrency check against a real database.
"""

import asyncio
import os
import uuid

import psycopg2
import pytest

from conftest import FakeGenerator
from db_store import Database
from errors import QuotaExceeded, StorageUnavailable
from generation_service import GenerationCoordinator

TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL", "")


class RecordingCursor:

    def __init__(self, conn):
        self.conn = conn

    def execute(self, query, params=()):
        statement = " ".join(query.split())
        if self.conn.fail_on and self.conn.fail_on in statement:
            raise psycopg2.OperationalError("canceling statement due to lock timeout")
        self.conn.statements.append((statement, tuple(params)))

    def fetchone(self):
        return self.conn.rows.pop(0) if self.conn.rows else None

    def fetchall(self):
        rows, self.conn.rows = self.conn.rows, []
        return rows


class RecordingConnection:
    """Connection double: logs statements, returns scripted rows in order."""

    def __init__(self):
        self.statements = []
        self.rows = []
        self.commits = 0
        self.rollbacks = 0
        self.fail_on = None
        self.fail_rollback = False

    def cursor(self):
        return RecordingCursor(self)

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1
        if self.fail_rollback:
            raise psycopg2.OperationalError("server closed the connection unexpectedly")

    def sql(self):
        return [statement for statement, _ in self.statements]


class RecordingPool:

    def __init__(self, conn):
        self.conn = conn
        self.returned = []
        self.closed = False

    def getconn(self):
        return self.conn

    def putconn(self, conn, close=False):
        self.returned.append(close)

    def closeall(self):
        self.closed = True


@pytest.fixture
def conn():
    return RecordingConnection()


@pytest.fixture
def pool(conn):
    return RecordingPool(conn)


@pytest.fixture
def pg(pool):
    database = Database(
        database_url="postgresql://calaveritas@localhost/calaveritas",
        pool_max=2,
        pool_timeout=0.5,
        transaction_timeout=45,
    )
    database._pg_pool = pool
    return database


class TestQueries:

    def test_backend_and_placeholders(self, pg):
        assert pg.backend == "postgres"
        assert pg.format_query("SELECT * FROM t WHERE a = ? AND b = ?") == (
            "SELECT * FROM t WHERE a = %s AND b = %s"
        )

    def test_begin_scopes_timeouts_to_transaction(self, pg, conn):
        tx = pg.transaction().begin()

        assert conn.statements == [
            ("SELECT set_config(%s, %s, true)", ("lock_timeout", "45000ms")),
            ("SELECT set_config(%s, %s, true)", ("statement_timeout", "45000ms")),
            ("SELECT set_config(%s, %s, true)", ("idle_in_transaction_session_timeout", "45000ms")),
        ]
        tx.close()

    def test_lock_selects_for_update(self, pg, conn):
        conn.rows = [{"generation_count": 1}]

        with pg.transaction() as tx:
            count = pg.lock_ledger_entry(tx, "a@x.com")

        assert count == 1
        placeholder, locking = conn.statements[3:5]
        assert "ON CONFLICT (identity) DO NOTHING" in placeholder[0]
        assert placeholder[1][0] == "a@x.com"
        assert locking == (
            "SELECT generation_count FROM generation_ledger WHERE identity = %s FOR UPDATE",
            ("a@x.com",),
        )
        assert not any("?" in statement for statement in conn.sql())

    def test_lock_without_row_counts_zero(self, pg, conn):
        with pg.transaction() as tx:
            assert pg.lock_ledger_entry(tx, "new@x.com") == 0

    def test_increment_upserts(self, pg, conn):
        conn.rows = [{"generation_count": 2}]

        with pg.transaction() as tx:
            assert pg.increment_ledger_entry(tx, "a@x.com") == 2

        upsert = conn.sql()[3]
        assert "DO UPDATE SET generation_count = generation_ledger.generation_count + 1" in upsert
        assert "VALUES (%s, 1, %s, %s)" in upsert

    def test_insert_artifact_reads_returning_id(self, pg, conn):
        conn.rows = [{"id": 41}]

        with pg.transaction() as tx:
            artifact = pg.insert_artifact(
                tx, "a@x.com", {"nombre": "José"}, "x.com", "¡Ay!", "default_2"
            )

        assert artifact.id == 41
        statement, params = conn.statements[3]
        assert statement.endswith("RETURNING id")
        assert params[:4] == ("a@x.com", '{"nombre": "José"}', "x.com", "¡Ay!")

    def test_ping_commits_and_returns_connection(self, pg, conn, pool):
        assert pg.ping() is True
        assert conn.sql() == ["SELECT 1"]
        assert conn.commits == 1
        assert pool.returned == [False]


class TestConnectionLifecycle:

    def test_commit_then_release(self, pg, conn, pool):
        tx = pg.transaction().begin()
        tx.commit()
        tx.close()

        assert conn.commits == 1
        assert conn.rollbacks == 0
        assert pool.returned == [False]
        assert pg.in_use == 0

    def test_open_transaction_rolled_back_on_close(self, pg, conn, pool):
        pg.transaction().begin().close()

        assert conn.rollbacks == 1
        assert pool.returned == [False]

    def test_failed_rollback_discards_connection(self, pg, conn, pool):
        conn.fail_rollback = True

        pg.transaction().begin().close()

        assert pool.returned == [True]
        assert pg.in_use == 0

    def test_lock_timeout_becomes_storage_unavailable(self, pg, conn, pool):
        conn.fail_on = "FOR UPDATE"

        with pytest.raises(StorageUnavailable):
            with pg.transaction() as tx:
                pg.lock_ledger_entry(tx, "a@x.com")

        assert conn.rollbacks == 1
        assert pool.returned == [False]
        assert pg.in_use == 0

    def test_close_closes_pool(self, pg, pool):
        pg.close()
        assert pool.closed


class TestCoordinatorOnPostgres:

    def test_generation_statement_order(self, pg, conn, pool, policy, details):
        conn.rows = [{"generation_count": 0}, {"id": 7}, {"generation_count": 1}]
        coordinator = GenerationCoordinator(pg, FakeGenerator(), policy=policy)

        artifact = asyncio.run(coordinator.generate("a@x.com", details))

        assert artifact.id == 7
        assert artifact.company == "x.com"
        sql = conn.sql()
        assert [s.startswith("SELECT set_config") for s in sql[:3]] == [True] * 3
        assert sql[3].endswith("ON CONFLICT (identity) DO NOTHING")
        assert sql[4].endswith("FOR UPDATE")
        assert sql[5].startswith("INSERT INTO calaveras") and sql[5].endswith("RETURNING id")
        assert "DO UPDATE SET" in sql[6]
        assert conn.commits == 1
        assert conn.rollbacks == 0
        assert pool.returned == [False]
        coordinator.close()

    def test_quota_reached_rolls_back(self, pg, conn, pool, policy, details):
        conn.rows = [{"generation_count": 2}]
        generator = FakeGenerator()
        coordinator = GenerationCoordinator(pg, generator, policy=policy, max_generations=2)

        with pytest.raises(QuotaExceeded):
            asyncio.run(coordinator.generate("a@x.com", details))

        assert generator.prompts == []
        assert conn.commits == 0
        assert conn.rollbacks == 1
        assert not any("calaveras" in s for s in conn.sql())
        assert pool.returned == [False]
        coordinator.close()


@pytest.mark.skipif(not TEST_DATABASE_URL.startswith("postgres"), reason="TEST_DATABASE_URL not set")
class TestLivePostgres:

    def test_concurrent_requests_respect_limit(self, policy, details):
        database = Database(
            database_url=TEST_DATABASE_URL,
            pool_max=4,
            pool_timeout=5,
            transaction_timeout=10,
        )
        database.init_db()
        identity = f"race-{uuid.uuid4().hex[:10]}@x.com"
        coordinator = GenerationCoordinator(
            database, FakeGenerator(delay=0.1), policy=policy, max_generations=2
        )

        async def race():
            return await asyncio.gather(
                *[coordinator.generate(identity, details) for _ in range(5)],
                return_exceptions=True,
            )

        try:
            results = asyncio.run(race())

            successes = [r for r in results if not isinstance(r, BaseException)]
            rejections = [r for r in results if isinstance(r, QuotaExceeded)]
            assert len(successes) == 2
            assert len(rejections) == 3
            assert database.get_ledger_count(identity) == 2
            assert len(database.list_artifacts(identity)) == 2
            assert database.in_use == 0
        finally:
            coordinator.close()
            database.close()
