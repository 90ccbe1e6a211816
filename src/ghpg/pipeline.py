"""
GHPG Pipeline - run orchestration
=================================
One run:
    1. Validate - confirm the GitHub token (once per pipeline)
    2. Search - fetch one page of repositories
    3. Persist - create the run's table and upsert the page
    4. Record - append the outcome to query_history, success or failure
"""
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

from tqdm import tqdm

from ghpg.db.db import RepositoryDatabase
from ghpg.db.naming import generate_table_name
from ghpg.errors import GhpgError
from ghpg.fetcher.client import GitHubClient, clamp_per_page
from ghpg.recorder import RunRecorder, RunState

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    """What a run hands back to its caller for rendering."""

    run_id: uuid.UUID
    search_query: str
    table_name: str
    record_count: int
    duration_ms: int
    success: bool
    error: Optional[BaseException] = None
    rows_affected: int = 0
    total_count: Optional[int] = None
    incomplete_results: bool = False
    recorded: bool = False

    @property
    def error_kind(self) -> Optional[str]:
        if self.error is None:
            return None
        return getattr(self.error, "kind", type(self.error).__name__)


class SearchPipeline:
    """Runs search-and-store operations against a shared client and database."""

    def __init__(
        self,
        client: GitHubClient,
        db: RepositoryDatabase,
        clock: Callable[[], datetime] = None,
        sleep: Callable[[float], None] = time.sleep,
        validate_credential: bool = True,
    ):
        self.client = client
        self.db     = db
        self.validate_credential = validate_credential

        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep
        self._credential_ok   = False
        self._last_table_name = None

    # ------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------

    def next_table_name(self) -> str:
        """
        Generate a table name strictly greater than the last one issued here.

        Names have one-second resolution; a second run inside the same second
        waits for the next second instead of colliding.
        """
        prefix = self.db.table_prefix
        name   = generate_table_name(self._clock(), prefix=prefix)
        while self._last_table_name is not None and name <= self._last_table_name:
            now = self._clock()
            self._sleep(1.0 - now.microsecond / 1_000_000)
            name = generate_table_name(self._clock(), prefix=prefix)
        self._last_table_name = name
        return name

    def run(self, query: str, per_page: int = 30, page: int = 1) -> RunResult:
        """
        Execute one run. Failures are returned in the result, not raised,
        and are always recorded in query_history.
        """
        table_name = self.next_table_name()
        recorder   = RunRecorder(query, table_name)
        error      = None
        rows       = 0
        result     = None

        try:
            self._ensure_credential()

            recorder.advance(RunState.SEARCHING)
            result = self.client.search_repositories(query, per_page=per_page, page=page)

            recorder.advance(RunState.PERSISTING)
            self.db.create_table(table_name)
            rows = self.db.insert_records(table_name, result.items)

            recorder.mark_success(len(result.items))
        except Exception as e:
            logger.error("Run %s failed in %s: %s", recorder.run_id, recorder.state.value, e)
            recorder.mark_failure(e)
            error = e

        recorded = True
        try:
            recorder.save(self.db)
        except GhpgError as save_error:
            recorded = False
            logger.error("Could not record run %s: %s", recorder.run_id, save_error)
            if error is None:
                error = save_error

        if error is not None and not isinstance(error, GhpgError):
            raise error

        metadata = recorder.metadata
        return RunResult(
            run_id             = metadata.id,
            search_query       = query,
            table_name         = table_name,
            record_count       = metadata.result_count,
            duration_ms        = metadata.duration_ms,
            success            = error is None,
            error              = error,
            rows_affected      = rows,
            total_count        = result.total_count if result else None,
            incomplete_results = result.incomplete_results if result else False,
            recorded           = recorded,
        )

    def run_pages(
        self,
        query: str,
        per_page: int = 30,
        first_page: int = 1,
        pages: int = 1,
        stop_on_error: bool = True,
        show_progress: bool = True,
    ) -> List[RunResult]:
        """Independent sequential runs, one table and one audit row per page."""
        results = []
        with tqdm(total=pages, desc="Fetching pages", unit="page", disable=not show_progress) as pbar:
            for page in range(first_page, first_page + pages):
                outcome = self.run(query, per_page=per_page, page=page)
                results.append(outcome)
                pbar.update(1)

                if not outcome.success and stop_on_error:
                    pbar.write(f"  ⚠ Page {page} failed ({outcome.error_kind}) - stopping.")
                    break
                if outcome.success and outcome.record_count < clamp_per_page(per_page):
                    # short page: nothing further to fetch
                    break
        return results

    def dry_run(self, query: str):
        """Validate the query, the token and database connectivity without writing."""
        self.client.validate_query(query)
        self.client.validate_credential()
        self._credential_ok = True
        self.db.ping()

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    def _ensure_credential(self):
        if self.validate_credential and not self._credential_ok:
            self.client.validate_credential()
            self._credential_ok = True
