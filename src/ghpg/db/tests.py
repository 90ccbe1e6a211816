import os
import random
import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock, patch

import psycopg2

from ghpg.db.db import HISTORY_TABLE, REPOSITORY_COLUMNS, RepositoryDatabase
from ghpg.db.naming import generate_table_name, is_valid_table_name
from ghpg.errors import DatabaseError, TableCreationError, ValidationError
from ghpg.models import RunMetadata
from ghpg.tests import make_repository

"""
Naming tests:

✅ Fixed-width UTC timestamp names, lexical order == chronological order
✅ Pattern check used by create/drop
Persistence tests (mocked pool):

✅ Audit table bootstrapped on startup
✅ Upsert batches collapse duplicate ids, repeated batches send identical rows
✅ Chunked inserts sum rowcount
✅ Drop refuses names outside the naming pattern without touching the database
✅ Pool exhaustion surfaces as DatabaseError after the acquire timeout
Live tests (GHPG_TEST_DATABASE_URL):

✅ Idempotent upserts, collision on re-create, append-only audit rows"""

TEST_DATABASE_URL = os.getenv("GHPG_TEST_DATABASE_URL")


class TestTableNaming(unittest.TestCase):
    """Test cases for generated table names."""

    def test_format(self):
        """Test the prefix_YYYYMMDDHHMMSS format."""
        name = generate_table_name(datetime(2024, 1, 5, 9, 3, 7, tzinfo=timezone.utc))
        self.assertEqual(name, "repos_20240105090307")

    def test_converts_to_utc(self):
        """Test aware datetimes are converted to UTC first."""
        cet = timezone(timedelta(hours=1))
        name = generate_table_name(datetime(2024, 1, 1, 0, 30, 0, tzinfo=cet))
        self.assertEqual(name, "repos_20231231233000")

    def test_custom_prefix(self):
        """Test a custom table prefix."""
        name = generate_table_name(datetime(2024, 1, 1, tzinfo=timezone.utc), prefix="gh_runs")
        self.assertEqual(name, "gh_runs_20240101000000")

    def test_invalid_prefix(self):
        """Test prefixes that are not safe identifiers are rejected."""
        for prefix in ("Repos", "1repos", "repos-x", "repos; drop"):
            with self.assertRaises(ValueError):
                generate_table_name(prefix=prefix)

    def test_lexical_order_is_chronological(self):
        """Test later timestamps sort after earlier ones."""
        start = datetime(2023, 12, 31, 23, 59, 58, tzinfo=timezone.utc)
        names = [generate_table_name(start + timedelta(seconds=s)) for s in range(0, 200, 7)]
        self.assertEqual(names, sorted(names))
        self.assertEqual(len(set(names)), len(names))

    def test_is_valid_table_name(self):
        """Test the table name pattern check."""
        self.assertTrue(is_valid_table_name("repos_20240101120000"))
        for name in ("", "users", "repos_2024", "repos_20240101120000x",
                     "repos_20240101120000; DROP TABLE users", HISTORY_TABLE):
            self.assertFalse(is_valid_table_name(name), name)


class TestRepositoryDatabase(unittest.TestCase):
    """Test cases for RepositoryDatabase with a mocked connection pool."""

    def setUp(self):
        """Set up test fixtures."""
        pool_patcher = patch('ghpg.db.db.ThreadedConnectionPool')
        mock_pool_cls = pool_patcher.start()
        self.addCleanup(pool_patcher.stop)

        self.cursor = MagicMock()
        self.cursor.rowcount = 0
        self.conn = MagicMock()
        self.conn.closed = 0
        self.conn.cursor.return_value.__enter__.return_value = self.cursor
        self.pool = mock_pool_cls.return_value
        self.pool.getconn.return_value = self.conn

        self.db = RepositoryDatabase(
            "postgresql://test@localhost/test",
            min_connections=1,
            max_connections=2,
            acquire_timeout=0.05,
            page_size=100,
        )
        self.bootstrap_statements = [c[0][0] for c in self.cursor.execute.call_args_list]

        self.cursor.reset_mock()
        self.conn.reset_mock()
        self.pool.reset_mock()
        self.conn.closed = 0
        self.pool.getconn.return_value = self.conn
        self.conn.cursor.return_value.__enter__.return_value = self.cursor

    def test_history_table_bootstrapped(self):
        """Test the query_history table is created on startup."""
        self.assertTrue(any(
            f"CREATE TABLE IF NOT EXISTS {HISTORY_TABLE}" in s for s in self.bootstrap_statements
        ))
        self.assertTrue(any("error_kind" in s for s in self.bootstrap_statements))

    @patch('ghpg.db.db.ThreadedConnectionPool')
    def test_connect_failure(self, mock_pool_cls):
        """Test pool connection failures raise DatabaseError."""
        mock_pool_cls.side_effect = psycopg2.OperationalError("connection refused")
        with self.assertRaises(DatabaseError):
            RepositoryDatabase("postgresql://nobody@nowhere/none")

    def test_create_table(self):
        """Test table creation runs the DDL and index statements in one transaction."""
        self.db.create_table("repos_20240101120000")

        # table plus six indexes
        self.assertEqual(self.cursor.execute.call_count, 7)
        self.conn.commit.assert_called_once()
        self.pool.putconn.assert_called_once_with(self.conn, close=False)

    def test_create_table_invalid_name(self):
        """Test invalid table names are refused before any connection."""
        with self.assertRaises(TableCreationError):
            self.db.create_table("users")
        self.pool.getconn.assert_not_called()

    def test_create_table_collision(self):
        """Test an existing table surfaces as TableCreationError."""
        self.cursor.execute.side_effect = psycopg2.ProgrammingError(
            'relation "repos_20240101120000" already exists'
        )

        with self.assertRaises(TableCreationError) as context:
            self.db.create_table("repos_20240101120000")

        self.assertEqual(context.exception.table_name, "repos_20240101120000")
        self.conn.rollback.assert_called_once()
        self.conn.commit.assert_not_called()

    @patch('ghpg.db.db.execute_values')
    def test_insert_collapses_duplicates(self, mock_execute_values):
        """Test duplicate ids in one batch collapse to the last occurrence."""
        def fake_execute_values(cur, query, rows, page_size):
            cur.rowcount = len(rows)
        mock_execute_values.side_effect = fake_execute_values

        records = [
            make_repository(1, stargazers_count=10),
            make_repository(2),
            make_repository(1, stargazers_count=99),
        ]

        affected = self.db.insert_records("repos_20240101120000", records)

        self.assertEqual(affected, 2)
        mock_execute_values.assert_called_once()
        rows = mock_execute_values.call_args[0][2]
        self.assertEqual(len(rows), 2)

        stars = REPOSITORY_COLUMNS.index("stargazers_count")
        topics = REPOSITORY_COLUMNS.index("topics")
        by_id = {row[0]: row for row in rows}
        self.assertEqual(by_id[1][stars], 99)
        self.assertEqual(by_id[1][topics], ["cli", "rust"])
        self.assertEqual(len(by_id[2]), len(REPOSITORY_COLUMNS))
        self.conn.commit.assert_called_once()

    @patch('ghpg.db.db.execute_values')
    def test_repeated_batch_sends_identical_rows(self, mock_execute_values):
        """Test a repeated batch sends the same ids and counters both times."""
        def fake_execute_values(cur, query, rows, page_size):
            cur.rowcount = len(rows)
        mock_execute_values.side_effect = fake_execute_values

        records = [
            make_repository(1, stargazers_count=10, forks_count=1),
            make_repository(2, stargazers_count=20, forks_count=2),
            make_repository(1, stargazers_count=15, forks_count=4),
        ]

        first = self.db.insert_records("repos_20240101120000", records)
        second = self.db.insert_records("repos_20240101120000", records)

        self.assertEqual(first, 2)
        self.assertEqual(second, 2)
        self.assertEqual(mock_execute_values.call_count, 2)

        counters = [REPOSITORY_COLUMNS.index(c) for c in (
            "github_id", "stargazers_count", "watchers_count", "forks_count", "open_issues_count",
        )]
        sent = [
            sorted(tuple(row[i] for i in counters) for row in c[0][2])
            for c in mock_execute_values.call_args_list
        ]
        self.assertEqual(sent[0], sent[1])
        self.assertEqual([row[0] for row in sent[0]], [1, 2])
        self.assertEqual(sent[0][0][1], 15)
        self.assertEqual(sent[0][0][3], 4)

    @patch('ghpg.db.db.execute_values')
    def test_insert_in_chunks(self, mock_execute_values):
        """Test large batches are inserted in chunks within one transaction."""
        def fake_execute_values(cur, query, rows, page_size):
            cur.rowcount = len(rows)
        mock_execute_values.side_effect = fake_execute_values
        self.db.page_size = 2

        affected = self.db.insert_records(
            "repos_20240101120000", [make_repository(i) for i in range(1, 6)]
        )

        self.assertEqual(affected, 5)
        self.assertEqual(mock_execute_values.call_count, 3)
        # one transaction for all chunks
        self.conn.commit.assert_called_once()

    def test_insert_empty_batch(self):
        """Test an empty batch returns 0 without a connection."""
        self.assertEqual(self.db.insert_records("repos_20240101120000", []), 0)
        self.pool.getconn.assert_not_called()

    @patch('ghpg.db.db.execute_values')
    def test_insert_invalid_record(self, mock_execute_values):
        """Test an invalid record fails the batch before any SQL."""
        with self.assertRaises(ValidationError):
            self.db.insert_records(
                "repos_20240101120000", [make_repository(1), make_repository(2, forks_count=-3)]
            )
        mock_execute_values.assert_not_called()
        self.pool.getconn.assert_not_called()

    @patch('ghpg.db.db.execute_values')
    def test_insert_failure_rolls_back(self, mock_execute_values):
        """Test insert failures roll back and raise DatabaseError."""
        mock_execute_values.side_effect = psycopg2.DataError("value too long")

        with self.assertRaises(DatabaseError):
            self.db.insert_records("repos_20240101120000", [make_repository(1)])
        self.conn.rollback.assert_called_once()

    def test_save_run_metadata_appends(self):
        """Test run metadata is saved with a plain INSERT."""
        metadata = RunMetadata(
            search_query="language:rust",
            table_name="repos_20240101120000",
            result_count=5,
            duration_ms=250,
            success=True,
        )

        self.db.save_run_metadata(metadata)

        statement, params = self.cursor.execute.call_args[0]
        self.assertIn(f"INSERT INTO {HISTORY_TABLE}", statement)
        self.assertNotIn("ON CONFLICT", statement)
        self.assertNotIn("UPDATE", statement)
        self.assertEqual(params[0], metadata.id)
        self.assertEqual(params[1], "language:rust")
        self.assertEqual(params[3], 5)
        self.conn.commit.assert_called_once()

    def test_save_run_metadata_failure(self):
        """Test audit write failures raise DatabaseError."""
        self.cursor.execute.side_effect = psycopg2.OperationalError("server closed the connection")

        with self.assertRaises(DatabaseError):
            self.db.save_run_metadata(RunMetadata(search_query="q", table_name="repos_20240101120000"))

    def test_drop_table_rejects_names(self):
        """Test drop_table refuses names outside the naming pattern."""
        for name in ("users", HISTORY_TABLE, "repos_2024", "repos_20240101120000; DROP TABLE users"):
            with self.assertRaises(ValidationError):
                self.db.drop_table(name)
        self.pool.getconn.assert_not_called()
        self.cursor.execute.assert_not_called()

    def test_drop_table(self):
        """Test dropping a generated table."""
        self.db.drop_table("repos_20240101120000")
        self.cursor.execute.assert_called_once()
        self.conn.commit.assert_called_once()

    def test_pool_exhaustion_times_out(self):
        """Test an exhausted pool raises DatabaseError after the acquire timeout."""
        # hold every slot
        self.db._slots.acquire()
        self.db._slots.acquire()
        try:
            with self.assertRaises(DatabaseError) as context:
                self.db.ping()
        finally:
            self.db._slots.release()
            self.db._slots.release()

        self.assertIn("Timed out", str(context.exception))
        self.pool.getconn.assert_not_called()

    def test_broken_connection_is_discarded(self):
        """Test closed connections are discarded from the pool."""
        self.conn.closed = 2
        self.db.ping()
        self.pool.putconn.assert_called_once_with(self.conn, close=True)

    def test_table_stats_missing_table(self):
        """Test statistics for a missing table raise DatabaseError."""
        self.cursor.fetchone.return_value = (False,)
        with self.assertRaises(DatabaseError):
            self.db.get_table_stats("repos_20240101120000")

    def test_table_stats(self):
        """Test statistics are mapped onto TableStats."""
        created = datetime(2020, 1, 1, tzinfo=timezone.utc)
        self.cursor.fetchone.side_effect = [
            (True,),
            {
                "total_repositories": 3,
                "unique_languages": 2,
                "unique_owners": 1,
                "avg_stars": Decimal("1500.5"),
                "max_stars": 3000,
                "avg_forks": None,
                "max_forks": None,
                "oldest_repo": created,
                "newest_repo": created,
            },
        ]

        stats = self.db.get_table_stats("repos_20240101120000")

        self.assertEqual(stats.total_repositories, 3)
        self.assertEqual(stats.avg_stars, 1500.5)
        self.assertEqual(stats.avg_forks, 0.0)
        self.assertEqual(stats.max_forks, 0)

    def test_list_tables_filters_pattern(self):
        """Test list_tables keeps only generated table names."""
        self.cursor.fetchall.return_value = [
            ("repos_20240102000000",),
            ("repos_backup",),
            ("repos_20240101000000",),
        ]

        self.assertEqual(
            self.db.list_tables(), ["repos_20240102000000", "repos_20240101000000"]
        )

    def test_run_history(self):
        """Test run history filters and limits."""
        self.cursor.fetchall.return_value = [{
            "id": "6f1c1c1e-1d1b-4bb0-9a6e-2f0c9f4f7a10",
            "search_query": "language:go",
            "table_name": "repos_20240101120000",
            "result_count": 0,
            "executed_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
            "duration_ms": 10,
            "success": False,
            "error_message": "GitHub API authentication failed: bad token",
            "error_kind": "authentication",
        }]

        runs = self.db.get_run_history(limit=5, success_only=True)

        statement, params = self.cursor.execute.call_args[0]
        self.assertIn("WHERE success = TRUE", statement)
        self.assertIn("LIMIT %s", statement)
        self.assertEqual(params, [5])
        self.assertEqual(runs[0].error_kind, "authentication")


@unittest.skipUnless(TEST_DATABASE_URL, "GHPG_TEST_DATABASE_URL not set")
class TestRepositoryDatabaseLive(unittest.TestCase):
    """Round trips against a real PostgreSQL instance."""

    PREFIX = "ghpgtest"

    @classmethod
    def setUpClass(cls):
        """Open the test database."""
        cls.db = RepositoryDatabase(TEST_DATABASE_URL, table_prefix=cls.PREFIX)

    @classmethod
    def tearDownClass(cls):
        """Close the test database."""
        cls.db.close()

    def setUp(self):
        """Set up test fixtures."""
        offset = timedelta(seconds=random.randint(0, 10 ** 8))
        self.table_name = generate_table_name(
            datetime(2000, 1, 1, tzinfo=timezone.utc) + offset, prefix=self.PREFIX
        )
        self.db.create_table(self.table_name)
        self.addCleanup(self.db.drop_table, self.table_name)

    def test_upsert_is_idempotent(self):
        """Test re-inserting a batch leaves rows and counters unchanged."""
        records = [
            make_repository(1, stargazers_count=10, forks_count=1),
            make_repository(2, stargazers_count=20, forks_count=2),
            make_repository(3, stargazers_count=30, forks_count=3),
            make_repository(2, stargazers_count=25, forks_count=5),
        ]

        first_affected = self.db.insert_records(self.table_name, records)
        first = self.db.get_table_stats(self.table_name)
        second_affected = self.db.insert_records(self.table_name, records)
        second = self.db.get_table_stats(self.table_name)

        self.assertEqual(first_affected, 3)
        self.assertEqual(second_affected, 3)
        self.assertEqual(first.total_repositories, 3)
        self.assertEqual(second.total_repositories, 3)
        for counter in ("max_stars", "avg_stars", "max_forks", "avg_forks", "unique_owners"):
            self.assertEqual(getattr(second, counter), getattr(first, counter), counter)
        # last occurrence of id 2 wins
        self.assertAlmostEqual(first.avg_stars, (10 + 25 + 30) / 3)
        self.assertEqual(first.max_forks, 5)

    def test_upsert_updates_mutable_fields(self):
        """Test upserts overwrite mutable fields."""
        self.db.insert_records(self.table_name, [make_repository(1, stargazers_count=10)])
        self.db.insert_records(self.table_name, [make_repository(1, stargazers_count=20)])

        stats = self.db.get_table_stats(self.table_name)
        self.assertEqual(stats.total_repositories, 1)
        self.assertEqual(stats.max_stars, 20)

    def test_create_existing_table_fails(self):
        """Test creating an existing table fails."""
        with self.assertRaises(TableCreationError):
            self.db.create_table(self.table_name)

    def test_listed(self):
        """Test a created table is listed."""
        self.assertIn(self.table_name, self.db.list_tables())

    def test_audit_rows_append(self):
        """Test audit rows are appended and never overwritten."""
        first = RunMetadata(search_query="language:rust", table_name=self.table_name, success=True)
        second = RunMetadata(search_query="language:rust", table_name=self.table_name)
        self.db.save_run_metadata(first)
        self.db.save_run_metadata(second)

        ids = {run.id for run in self.db.get_run_history(limit=50)}
        self.assertIn(first.id, ids)
        self.assertIn(second.id, ids)

        with self.assertRaises(DatabaseError):
            self.db.save_run_metadata(first)


if __name__ == '__main__':
    unittest.main()
