"""
Run metadata lifecycle.

    PENDING -> SEARCHING -> PERSISTING -> SUCCEEDED -> SAVED
        any non-terminal state -> FAILED -> SAVED

A recorder reaches exactly one terminal state and is saved exactly once.
"""
import logging
import time
from enum import Enum
from typing import Optional

from ghpg.errors import GhpgError
from ghpg.models import RunMetadata

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    PENDING    = "pending"
    SEARCHING  = "searching"
    PERSISTING = "persisting"
    SUCCEEDED  = "succeeded"
    FAILED     = "failed"
    SAVED      = "saved"


TERMINAL_STATES = (RunState.SUCCEEDED, RunState.FAILED)

_FORWARD = {
    RunState.PENDING:    (RunState.SEARCHING,),
    RunState.SEARCHING:  (RunState.PERSISTING,),
    RunState.PERSISTING: (RunState.SUCCEEDED,),
}


class RunRecorder:
    """Tracks one run and produces its query_history row."""

    def __init__(self, search_query: str, table_name: str):
        self.metadata = RunMetadata(search_query=search_query, table_name=table_name)
        self.state    = RunState.PENDING
        self._started = time.monotonic()

    @property
    def run_id(self):
        return self.metadata.id

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES or self.state == RunState.SAVED

    def advance(self, state: RunState):
        if state not in _FORWARD.get(self.state, ()):
            raise RuntimeError(f"Run {self.run_id}: cannot move from {self.state.value} to {state.value}")
        logger.debug("Run %s: %s -> %s", self.run_id, self.state.value, state.value)
        self.state = state

    def mark_success(self, result_count: int) -> RunMetadata:
        if self.state != RunState.PERSISTING:
            raise RuntimeError(f"Run {self.run_id}: cannot succeed from {self.state.value}")
        self.metadata.result_count = result_count
        self.metadata.success      = True
        self._finish(RunState.SUCCEEDED)
        return self.metadata

    def mark_failure(self, error: BaseException) -> RunMetadata:
        if self.finished:
            raise RuntimeError(f"Run {self.run_id}: already {self.state.value}")
        self.metadata.success       = False
        self.metadata.error_message = str(error)
        self.metadata.error_kind    = error.kind if isinstance(error, GhpgError) else type(error).__name__
        self._finish(RunState.FAILED)
        return self.metadata

    def save(self, db) -> RunMetadata:
        """Flush the terminal metadata through the persistence manager, once."""
        if self.state not in TERMINAL_STATES:
            raise RuntimeError(f"Run {self.run_id}: cannot save while {self.state.value}")
        db.save_run_metadata(self.metadata)
        self.state = RunState.SAVED
        return self.metadata

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self._started) * 1000)

    def _finish(self, state: RunState):
        self.metadata.duration_ms = self.elapsed_ms
        self.state = state
        logger.info(
            "Run %s %s in %dms", self.run_id, state.value, self.metadata.duration_ms
        )

    def __repr__(self) -> str:
        error: Optional[str] = self.metadata.error_kind
        return f"<RunRecorder {self.run_id} {self.state.value}{' ' + error if error else ''}>"
