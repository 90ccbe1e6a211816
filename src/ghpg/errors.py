"""
Error hierarchy for the GHPG pipeline.

Every error carries a short ``kind`` used in CLI output and in the
``query_history.error_kind`` column, and a ``retryable`` flag consumed by the
search client's retry loop.
"""
from datetime import datetime
from typing import Optional


class GhpgError(Exception):
    """Base class for all pipeline errors."""

    kind = "error"
    retryable = False


class ConfigurationError(GhpgError):
    kind = "configuration"


class AuthenticationError(GhpgError):
    kind = "authentication"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"GitHub API authentication failed: {reason}")


class InvalidQueryError(GhpgError):
    kind = "invalid_query"

    def __init__(self, query: str, reason: str):
        self.query  = query
        self.reason = reason
        super().__init__(f"Invalid GitHub search query: {query!r} - {reason}")


class ValidationError(GhpgError):
    kind = "validation"

    def __init__(self, field: str, reason: str):
        self.field  = field
        self.reason = reason
        super().__init__(f"Validation failed: {field} - {reason}")


class RateLimitError(GhpgError):
    """Quota exhausted; ``reset_at`` is when the server will accept requests again."""

    kind = "rate_limit"
    retryable = True

    def __init__(self, reset_at: Optional[datetime] = None, snapshot=None):
        self.reset_at = reset_at
        self.snapshot = snapshot
        super().__init__(f"GitHub API rate limit exceeded, resets at {self.reset_time}")

    @property
    def reset_time(self) -> str:
        if self.reset_at is None:
            return "unknown"
        return self.reset_at.strftime("%Y-%m-%d %H:%M:%S UTC")


class TransientError(GhpgError):
    """Failures worth retrying with backoff."""

    retryable = True


class NetworkError(TransientError):
    kind = "network"


class ServerError(TransientError):
    kind = "server"

    def __init__(self, status_code: int, body: str = ""):
        self.status_code = status_code
        super().__init__(f"Server error {status_code}: {body[:200]}")


class ApiError(GhpgError):
    kind = "api"

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(f"GitHub API error: {message}")


class ParseError(GhpgError):
    kind = "parse"


class TableCreationError(GhpgError):
    kind = "table_creation"

    def __init__(self, table_name: str, cause):
        self.table_name = table_name
        self.cause      = cause
        super().__init__(f"Table creation failed: {table_name} - {cause}")


class DatabaseError(GhpgError):
    kind = "database"
