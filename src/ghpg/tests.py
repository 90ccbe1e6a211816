import io
import unittest
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

from ghpg import config
from ghpg.errors import (
    AuthenticationError,
    DatabaseError,
    ParseError,
    RateLimitError,
    ServerError,
    TableCreationError,
    ValidationError,
)
from ghpg.main import main
from ghpg.models import Repository, RunMetadata, SearchPage, parse_timestamp
from ghpg.pipeline import RunResult, SearchPipeline
from ghpg.recorder import RunRecorder, RunState

"""
Model tests:

✅ Mapping API items (unknown fields ignored, defaults applied)
✅ Missing required fields -> ParseError
✅ Validation of names, counters and URLs
✅ Search page parsing
Recorder tests:

✅ Forward state machine and single terminal transition
✅ Failure kind and duration recorded
✅ Saved exactly once
Pipeline tests:

✅ Successful run persists page and records one audit row
✅ Every failure class still records one audit row
✅ Same-second runs never reuse a table name
✅ Multi-page runs stop on short pages and on errors
CLI tests:

✅ Exit codes and error rendering
✅ Credential flags override the environment, token and query checks"""


def make_repository_item(repo_id=1, **overrides):
    """A GitHub search item as returned by /search/repositories."""
    item = {
        "id": repo_id,
        "node_id": "MDEwOlJlcG9zaXRvcnkx",
        "full_name": f"octocat/repo-{repo_id}",
        "name": f"repo-{repo_id}",
        "description": "A test repository",
        "html_url": f"https://github.com/octocat/repo-{repo_id}",
        "clone_url": f"https://github.com/octocat/repo-{repo_id}.git",
        "ssh_url": f"git@github.com:octocat/repo-{repo_id}.git",
        "size": 1024,
        "stargazers_count": 1500,
        "watchers_count": 1500,
        "forks_count": 42,
        "open_issues_count": 3,
        "language": "Rust",
        "default_branch": "main",
        "visibility": "public",
        "private": False,
        "fork": False,
        "archived": False,
        "disabled": False,
        "created_at": "2020-01-01T00:00:00Z",
        "updated_at": "2024-01-01T12:00:00Z",
        "pushed_at": "2024-01-02T08:30:00Z",
        "owner": {
            "id": 583231,
            "login": "octocat",
            "type": "User",
            "avatar_url": "https://avatars.githubusercontent.com/u/583231?v=4",
            "html_url": "https://github.com/octocat",
            "site_admin": False,
        },
        "license": {
            "key": "mit",
            "name": "MIT License",
            "spdx_id": "MIT",
            "url": "https://api.github.com/licenses/mit",
        },
        "topics": ["cli", "rust"],
        "has_issues": True,
        "has_projects": False,
        "has_wiki": True,
        "has_pages": False,
        "has_downloads": True,
        "score": 1.0,
    }
    item.update(overrides)
    return item


def make_repository(repo_id=1, **overrides) -> Repository:
    return Repository.from_api(make_repository_item(repo_id, **overrides))


def make_page(count=3) -> SearchPage:
    return SearchPage.from_api({
        "total_count": 1000,
        "incomplete_results": False,
        "items": [make_repository_item(i) for i in range(1, count + 1)],
    })


class TestModels(unittest.TestCase):
    """Test cases for API item mapping and validation."""

    def test_from_api_maps_fields(self):
        """Test mapping of a full search item."""
        repo = make_repository(7)

        self.assertEqual(repo.id, 7)
        self.assertEqual(repo.full_name, "octocat/repo-7")
        self.assertEqual(repo.owner.login, "octocat")
        self.assertEqual(repo.owner.owner_type, "User")
        self.assertEqual(repo.license.spdx_id, "MIT")
        self.assertEqual(repo.topics, ("cli", "rust"))
        self.assertEqual(repo.created_at, datetime(2020, 1, 1, tzinfo=timezone.utc))
        self.assertTrue(repo.has_wiki)

    def test_from_api_optional_fields_default(self):
        """Test optional fields fall back to defaults."""
        item = make_repository_item(1, license=None, language=None, pushed_at=None)
        del item["topics"]
        del item["visibility"]

        repo = Repository.from_api(item)

        self.assertIsNone(repo.license)
        self.assertIsNone(repo.language)
        self.assertIsNone(repo.pushed_at)
        self.assertEqual(repo.topics, ())
        self.assertEqual(repo.visibility, "public")

    def test_from_api_missing_required_field(self):
        """Test a missing required field raises ParseError."""
        item = make_repository_item(1)
        del item["full_name"]

        with self.assertRaises(ParseError) as context:
            Repository.from_api(item)
        self.assertIn("full_name", str(context.exception))

    def test_from_api_missing_owner_field(self):
        """Test a missing owner field raises ParseError."""
        item = make_repository_item(1)
        del item["owner"]["login"]

        with self.assertRaises(ParseError):
            Repository.from_api(item)

    def test_validate_negative_counter(self):
        """Test negative counters fail validation."""
        repo = make_repository(1, stargazers_count=-1)

        with self.assertRaises(ValidationError) as context:
            repo.validate()
        self.assertEqual(context.exception.field, "stargazers_count")

    def test_validate_empty_name(self):
        """Test an empty name fails validation."""
        with self.assertRaises(ValidationError):
            make_repository(1, name="").validate()

    def test_validate_bad_url(self):
        """Test non-http URLs fail validation."""
        with self.assertRaises(ValidationError) as context:
            make_repository(1, html_url="not a url").validate()
        self.assertEqual(context.exception.field, "html_url")

    def test_validate_owner_type(self):
        """Test unknown owner types fail validation."""
        item = make_repository_item(1)
        item["owner"]["type"] = "Robot"

        with self.assertRaises(ValidationError):
            Repository.from_api(item).validate()

    def test_search_page_from_api(self):
        """Test search page parsing."""
        page = make_page(2)

        self.assertEqual(page.total_count, 1000)
        self.assertFalse(page.incomplete_results)
        self.assertEqual(len(page), 2)

    def test_search_page_missing_items(self):
        """Test a page without items raises ParseError."""
        with self.assertRaises(ParseError):
            SearchPage.from_api({"total_count": 0, "incomplete_results": False})

    def test_parse_timestamp(self):
        """Test timestamp parsing."""
        self.assertEqual(
            parse_timestamp("2024-03-05T10:20:30Z"),
            datetime(2024, 3, 5, 10, 20, 30, tzinfo=timezone.utc),
        )
        self.assertIsNone(parse_timestamp(None))
        with self.assertRaises(ParseError):
            parse_timestamp("yesterday")

    def test_run_metadata_from_row(self):
        """Test RunMetadata is rebuilt from an audit row."""
        run_id = uuid.uuid4()
        metadata = RunMetadata.from_row({
            "id": str(run_id),
            "search_query": "language:go",
            "table_name": "repos_20240101120000",
            "result_count": 5,
            "executed_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
            "duration_ms": 120,
            "success": True,
            "error_message": None,
        })

        self.assertEqual(metadata.id, run_id)
        self.assertIsNone(metadata.error_kind)


class TestRunRecorder(unittest.TestCase):
    """Test cases for RunRecorder."""

    def test_success_path(self):
        """Test the successful state sequence."""
        recorder = RunRecorder("language:rust", "repos_20240101120000")
        self.assertEqual(recorder.state, RunState.PENDING)

        recorder.advance(RunState.SEARCHING)
        recorder.advance(RunState.PERSISTING)
        metadata = recorder.mark_success(5)

        self.assertEqual(recorder.state, RunState.SUCCEEDED)
        self.assertTrue(metadata.success)
        self.assertEqual(metadata.result_count, 5)
        self.assertGreaterEqual(metadata.duration_ms, 0)
        self.assertIsNone(metadata.error_message)

    def test_cannot_skip_states(self):
        """Test states cannot be skipped."""
        recorder = RunRecorder("q", "repos_20240101120000")
        with self.assertRaises(RuntimeError):
            recorder.advance(RunState.PERSISTING)
        with self.assertRaises(RuntimeError):
            recorder.mark_success(1)

    def test_failure_records_kind(self):
        """Test failures record the error kind and message."""
        recorder = RunRecorder("q", "repos_20240101120000")
        recorder.advance(RunState.SEARCHING)

        metadata = recorder.mark_failure(ServerError(502, "bad gateway"))

        self.assertEqual(recorder.state, RunState.FAILED)
        self.assertFalse(metadata.success)
        self.assertEqual(metadata.error_kind, "server")
        self.assertIn("502", metadata.error_message)

    def test_single_terminal_transition(self):
        """Test only one terminal transition is allowed."""
        recorder = RunRecorder("q", "repos_20240101120000")
        recorder.mark_failure(AuthenticationError("bad token"))

        with self.assertRaises(RuntimeError):
            recorder.mark_failure(AuthenticationError("again"))
        with self.assertRaises(RuntimeError):
            recorder.advance(RunState.SEARCHING)

    def test_save_once(self):
        """Test metadata is saved exactly once."""
        db = Mock()
        recorder = RunRecorder("q", "repos_20240101120000")

        with self.assertRaises(RuntimeError):
            recorder.save(db)

        recorder.mark_failure(AuthenticationError("bad token"))
        recorder.save(db)

        db.save_run_metadata.assert_called_once_with(recorder.metadata)
        self.assertEqual(recorder.state, RunState.SAVED)
        with self.assertRaises(RuntimeError):
            recorder.save(db)


class TestSearchPipeline(unittest.TestCase):
    """Test cases for SearchPipeline orchestration."""

    def setUp(self):
        """Set up test fixtures."""
        self.client = Mock()
        self.db = Mock()
        self.db.table_prefix = "repos"
        self.db.insert_records.side_effect = lambda table, items: len(items)
        self.saved = []
        self.db.save_run_metadata.side_effect = lambda metadata: self.saved.append(metadata)

        self.now = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        self.sleep = Mock()
        self.pipeline = SearchPipeline(
            self.client, self.db, clock=lambda: self.now, sleep=self.sleep
        )

    def test_successful_run(self):
        """Test a successful run persists the page and records it."""
        self.client.search_repositories.return_value = make_page(3)

        result = self.pipeline.run("language:rust", per_page=5, page=1)

        self.assertTrue(result.success)
        self.assertEqual(result.table_name, "repos_20240101120000")
        self.assertEqual(result.record_count, 3)
        self.assertEqual(result.rows_affected, 3)
        self.assertTrue(result.recorded)
        self.client.validate_credential.assert_called_once()
        self.client.search_repositories.assert_called_once_with("language:rust", per_page=5, page=1)
        self.db.create_table.assert_called_once_with("repos_20240101120000")

        self.assertEqual(len(self.saved), 1)
        self.assertTrue(self.saved[0].success)
        self.assertEqual(self.saved[0].result_count, 3)
        self.assertEqual(self.saved[0].id, result.run_id)

    def test_credential_checked_once(self):
        """Test the token is validated once per pipeline."""
        self.client.search_repositories.return_value = make_page(1)

        self.pipeline.run("q")
        self.now += timedelta(seconds=1)
        self.pipeline.run("q")

        self.client.validate_credential.assert_called_once()

    def test_authentication_failure_is_recorded(self):
        """Test authentication failures are recorded."""
        self.client.validate_credential.side_effect = AuthenticationError("bad token")

        result = self.pipeline.run("q")

        self.assertFalse(result.success)
        self.assertEqual(result.error_kind, "authentication")
        self.client.search_repositories.assert_not_called()
        self.db.create_table.assert_not_called()
        self.assertEqual(len(self.saved), 1)
        self.assertFalse(self.saved[0].success)
        self.assertEqual(self.saved[0].error_kind, "authentication")

    def test_rate_limit_failure_is_recorded(self):
        """Test rate limit failures are recorded with the reset time."""
        reset = datetime(2024, 1, 1, 13, 0, tzinfo=timezone.utc)
        self.client.search_repositories.side_effect = RateLimitError(reset)

        result = self.pipeline.run("q")

        self.assertFalse(result.success)
        self.assertIn("2024-01-01 13:00:00 UTC", str(result.error))
        self.assertEqual(self.saved[0].error_kind, "rate_limit")

    def test_table_creation_failure_is_recorded(self):
        """Test table creation failures are recorded."""
        self.client.search_repositories.return_value = make_page(2)
        self.db.create_table.side_effect = TableCreationError("repos_20240101120000", "exists")

        result = self.pipeline.run("q")

        self.assertFalse(result.success)
        self.assertEqual(result.error_kind, "table_creation")
        self.db.insert_records.assert_not_called()
        self.assertEqual(len(self.saved), 1)

    def test_audit_failure_on_successful_run(self):
        """Test an audit write failure fails an otherwise successful run."""
        self.client.search_repositories.return_value = make_page(2)
        self.db.save_run_metadata.side_effect = DatabaseError("connection lost")

        result = self.pipeline.run("q")

        self.assertFalse(result.success)
        self.assertFalse(result.recorded)
        self.assertEqual(result.error_kind, "database")

    def test_audit_failure_keeps_original_error(self):
        """Test an audit write failure keeps the run's own error."""
        self.client.search_repositories.side_effect = ServerError(503)
        self.db.save_run_metadata.side_effect = DatabaseError("connection lost")

        result = self.pipeline.run("q")

        self.assertEqual(result.error_kind, "server")
        self.assertFalse(result.recorded)

    def test_unexpected_error_recorded_then_raised(self):
        """Test unexpected errors are recorded, then raised."""
        self.client.search_repositories.side_effect = KeyError("boom")

        with self.assertRaises(KeyError):
            self.pipeline.run("q")

        self.assertEqual(len(self.saved), 1)
        self.assertEqual(self.saved[0].error_kind, "KeyError")

    def test_same_second_runs_get_distinct_tables(self):
        """Test runs in the same second get distinct table names."""
        times = iter([
            datetime(2024, 1, 1, 12, 0, 0, 100000, tzinfo=timezone.utc),
            datetime(2024, 1, 1, 12, 0, 0, 400000, tzinfo=timezone.utc),
            datetime(2024, 1, 1, 12, 0, 0, 400000, tzinfo=timezone.utc),
            datetime(2024, 1, 1, 12, 0, 1, 0, tzinfo=timezone.utc),
        ])
        pipeline = SearchPipeline(self.client, self.db, clock=lambda: next(times), sleep=self.sleep)

        first = pipeline.next_table_name()
        second = pipeline.next_table_name()

        self.assertEqual(first, "repos_20240101120000")
        self.assertEqual(second, "repos_20240101120001")
        self.sleep.assert_called_once()
        self.assertAlmostEqual(self.sleep.call_args[0][0], 0.6, places=3)

    def test_two_runs_two_seconds_apart(self):
        """Test two runs produce two ordered tables and two audit rows."""
        self.client.search_repositories.return_value = make_page(4)

        first = self.pipeline.run("language:rust stars:>1000", per_page=5)
        self.now += timedelta(seconds=2)
        second = self.pipeline.run("language:rust stars:>1000", per_page=5)

        self.assertNotEqual(first.table_name, second.table_name)
        self.assertLess(first.table_name, second.table_name)
        self.assertEqual(len(self.saved), 2)
        for metadata in self.saved:
            self.assertEqual(metadata.search_query, "language:rust stars:>1000")
            self.assertTrue(metadata.success)
            self.assertEqual(metadata.result_count, 4)
        self.assertNotEqual(self.saved[0].id, self.saved[1].id)
        self.sleep.assert_not_called()

    def test_run_pages_stops_on_short_page(self):
        """Test multi-page runs stop after a short page."""
        pages = [make_page(2), make_page(1)]
        self.client.search_repositories.side_effect = pages
        self.pipeline._clock = Mock(side_effect=[
            datetime(2024, 1, 1, 12, 0, s, tzinfo=timezone.utc) for s in range(10)
        ])

        results = self.pipeline.run_pages("q", per_page=2, first_page=1, pages=5, show_progress=False)

        self.assertEqual(len(results), 2)
        self.assertEqual([r.record_count for r in results], [2, 1])
        self.assertEqual(
            [c.kwargs["page"] for c in self.client.search_repositories.call_args_list], [1, 2]
        )

    def test_run_pages_stops_on_error(self):
        """Test multi-page runs stop after a failure."""
        self.client.search_repositories.side_effect = [make_page(2), ServerError(500)]
        self.pipeline._clock = Mock(side_effect=[
            datetime(2024, 1, 1, 12, 0, s, tzinfo=timezone.utc) for s in range(10)
        ])

        results = self.pipeline.run_pages("q", per_page=2, pages=3, show_progress=False)

        self.assertEqual(len(results), 2)
        self.assertTrue(results[0].success)
        self.assertFalse(results[1].success)
        self.assertEqual(len(self.saved), 2)

    def test_dry_run(self):
        """Test dry run validates without writing."""
        self.pipeline.dry_run("language:rust")

        self.client.validate_query.assert_called_once_with("language:rust")
        self.client.validate_credential.assert_called_once()
        self.db.ping.assert_called_once()
        self.db.create_table.assert_not_called()
        self.db.save_run_metadata.assert_not_called()


class TestCli(unittest.TestCase):
    """Test cases for the ghpg command line."""

    def _result(self, **overrides):
        values = dict(
            run_id=uuid.uuid4(),
            search_query="language:rust",
            table_name="repos_20240101120000",
            record_count=5,
            duration_ms=42,
            success=True,
            recorded=True,
        )
        values.update(overrides)
        return RunResult(**values)

    @patch('ghpg.main._open_database')
    @patch('ghpg.main._open_client')
    @patch('ghpg.main.SearchPipeline')
    def test_search_success(self, mock_pipeline, mock_client, mock_db):
        """Test a successful search exits 0."""
        mock_pipeline.return_value.run.return_value = self._result()

        with patch('sys.stdout', new_callable=io.StringIO) as out:
            code = main(["language:rust", "--per-page", "5"])

        self.assertEqual(code, 0)
        self.assertIn("repos_20240101120000", out.getvalue())
        mock_pipeline.return_value.run.assert_called_once_with("language:rust", per_page=5, page=1)
        mock_db.return_value.close.assert_called_once()
        mock_client.return_value.close.assert_called_once()

    @patch('ghpg.main._open_database')
    @patch('ghpg.main._open_client')
    @patch('ghpg.main.SearchPipeline')
    def test_rate_limit_failure_shows_reset_time(self, mock_pipeline, mock_client, mock_db):
        """Test rate limit failures print the reset time."""
        reset = datetime(2024, 1, 1, 13, 0, tzinfo=timezone.utc)
        mock_pipeline.return_value.run.return_value = self._result(
            success=False, error=RateLimitError(reset), record_count=0
        )

        with patch('sys.stdout', new_callable=io.StringIO), \
                patch('sys.stderr', new_callable=io.StringIO) as err:
            code = main(["language:rust"])

        self.assertEqual(code, 1)
        self.assertIn("rate_limit", err.getvalue())
        self.assertIn("2024-01-01 13:00:00 UTC", err.getvalue())

    def test_query_required(self):
        """Test a query is required for searches."""
        with patch('sys.stderr', new_callable=io.StringIO):
            with self.assertRaises(SystemExit):
                main([])

    @patch('ghpg.main._open_database')
    def test_drop_table_requires_confirmation(self, mock_db):
        """Test --drop-table requires --yes."""
        with patch('sys.stdout', new_callable=io.StringIO):
            code = main(["--drop-table", "repos_20240101120000"])

        self.assertEqual(code, 1)
        mock_db.return_value.drop_table.assert_not_called()

    @patch('ghpg.main._open_database')
    def test_drop_table_rejected_name(self, mock_db):
        """Test rejected table names exit 1."""
        mock_db.return_value.drop_table.side_effect = ValidationError("table_name", "bad name")

        with patch('sys.stdout', new_callable=io.StringIO), \
                patch('sys.stderr', new_callable=io.StringIO) as err:
            code = main(["--drop-table", "users", "--yes"])

        self.assertEqual(code, 1)
        self.assertIn("validation", err.getvalue())
        mock_db.return_value.close.assert_called_once()

    @patch.object(config, 'DATABASE_URL', "postgresql://env@localhost/ghpg")
    @patch.object(config, 'GITHUB_TOKEN', "ghp_env_token_0123456789")
    @patch('ghpg.main.SearchPipeline')
    @patch('ghpg.main.RepositoryDatabase')
    @patch('ghpg.main.GitHubClient')
    def test_credential_flags_override_environment(self, mock_client, mock_db, mock_pipeline):
        """Test --github-token and --database-url override the environment."""
        mock_pipeline.return_value.run.return_value = self._result()

        with patch('sys.stdout', new_callable=io.StringIO):
            code = main([
                "language:rust",
                "--github-token", "ghp_flag_token_0123456789",
                "--database-url", "postgresql://flag@db.internal/ghpg",
            ])

        self.assertEqual(code, 0)
        mock_client.assert_called_once_with(token="ghp_flag_token_0123456789")
        mock_db.assert_called_once_with(connection_string="postgresql://flag@db.internal/ghpg")

    @patch.object(config, 'DATABASE_URL', "postgresql://env@localhost/ghpg")
    @patch.object(config, 'GITHUB_TOKEN', "ghp_env_token_0123456789")
    @patch('ghpg.main.SearchPipeline')
    @patch('ghpg.main.RepositoryDatabase')
    @patch('ghpg.main.GitHubClient')
    def test_credentials_fall_back_to_environment(self, mock_client, mock_db, mock_pipeline):
        """Test credentials come from the environment without flags."""
        mock_pipeline.return_value.run.return_value = self._result()

        with patch('sys.stdout', new_callable=io.StringIO):
            code = main(["language:rust"])

        self.assertEqual(code, 0)
        mock_client.assert_called_once_with(token="ghp_env_token_0123456789")
        mock_db.assert_called_once_with(connection_string="postgresql://env@localhost/ghpg")

    @patch.object(config, 'GITHUB_TOKEN', "")
    @patch('ghpg.main.RepositoryDatabase')
    def test_missing_token(self, mock_db):
        """Test a missing token is a configuration error."""
        with patch('sys.stderr', new_callable=io.StringIO) as err:
            code = main(["language:rust"])

        self.assertEqual(code, 1)
        self.assertIn("configuration", err.getvalue())
        mock_db.assert_not_called()

    @patch('ghpg.main.RepositoryDatabase')
    def test_short_token_rejected(self, mock_db):
        """Test too-short tokens are rejected."""
        with patch('sys.stderr', new_callable=io.StringIO) as err:
            code = main(["language:rust", "--github-token", "ghp_short"])

        self.assertEqual(code, 1)
        self.assertIn("authentication", err.getvalue())
        self.assertIn("too short", err.getvalue())
        mock_db.assert_not_called()

    @patch('ghpg.main.RepositoryDatabase')
    def test_long_token_rejected(self, mock_db):
        """Test too-long tokens are rejected."""
        with patch('sys.stderr', new_callable=io.StringIO) as err:
            code = main(["language:rust", "--github-token", "g" * 256])

        self.assertEqual(code, 1)
        self.assertIn("too long", err.getvalue())
        mock_db.assert_not_called()

    @patch('ghpg.main.RepositoryDatabase')
    def test_whitespace_token_rejected(self, mock_db):
        """Test tokens with whitespace are rejected."""
        with patch('sys.stderr', new_callable=io.StringIO) as err:
            code = main(["language:rust", "--github-token", "ghp_token with space"])

        self.assertEqual(code, 1)
        self.assertIn("whitespace", err.getvalue())
        mock_db.assert_not_called()

    @patch('ghpg.main.RepositoryDatabase')
    def test_null_character_query_rejected(self, mock_db):
        """Test queries with NUL characters are rejected."""
        with patch('sys.stdout', new_callable=io.StringIO), \
                patch('sys.stderr', new_callable=io.StringIO) as err:
            code = main([
                "language:go\0stars:>10",
                "--github-token", "ghp_flag_token_0123456789",
                "--database-url", "postgresql://flag@db.internal/ghpg",
                "--dry-run",
            ])

        self.assertEqual(code, 1)
        self.assertIn("invalid_query", err.getvalue())
        self.assertIn("null characters", err.getvalue())
        mock_db.return_value.ping.assert_not_called()
        mock_db.return_value.close.assert_called_once()


if __name__ == '__main__':
    unittest.main()
