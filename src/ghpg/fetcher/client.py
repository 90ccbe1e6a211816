import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import requests

from ghpg import config
from ghpg.errors import (
    ApiError,
    AuthenticationError,
    GhpgError,
    InvalidQueryError,
    NetworkError,
    ParseError,
    RateLimitError,
    ServerError,
    ValidationError,
)
from ghpg.fetcher.backoff import BackoffPolicy, BackoffState
from ghpg.models import RateLimitSnapshot, SearchPage

logger = logging.getLogger(__name__)

MIN_PER_PAGE = 1
MAX_PER_PAGE = 100

MIN_TOKEN_LENGTH = 10
MAX_TOKEN_LENGTH = 255


def clamp_per_page(per_page: int) -> int:
    """GitHub serves 1..100 results per page."""
    return max(MIN_PER_PAGE, min(MAX_PER_PAGE, int(per_page)))


def validate_token(token: str) -> str:
    """Reject tokens that cannot be a GitHub credential before any request is made."""
    if not token or not token.strip():
        raise AuthenticationError("GitHub token cannot be empty")
    if len(token) < MIN_TOKEN_LENGTH:
        raise AuthenticationError(
            f"GitHub token is too short (minimum {MIN_TOKEN_LENGTH} characters)"
        )
    if len(token) > MAX_TOKEN_LENGTH:
        raise AuthenticationError(
            f"GitHub token is too long (maximum {MAX_TOKEN_LENGTH} characters)"
        )
    if any(c.isspace() for c in token):
        raise AuthenticationError("GitHub token contains whitespace characters")
    return token


class GitHubClient:
    """Client for the GitHub repository search API."""

    def __init__(
        self,
        token: str = None,
        base_url: str = None,
        policy: BackoffPolicy = None,
        timeout: float = None,
        rate_limit_max_wait: float = None,
        max_query_length: int = None,
    ):
        self.token = validate_token(token if token is not None else config.GITHUB_TOKEN)

        self.base_url            = (base_url or config.GITHUB_API_URL).rstrip("/")
        self.policy              = policy or BackoffPolicy.from_config()
        self.timeout             = timeout if timeout is not None else config.REQUEST_TIMEOUT
        self.rate_limit_max_wait = (
            rate_limit_max_wait if rate_limit_max_wait is not None
            else config.RATE_LIMIT_MAX_WAIT
        )
        self.max_query_length    = max_query_length or config.MAX_QUERY_LENGTH
        self._rate_limit: Optional[RateLimitSnapshot] = None

        self.session = requests.Session()
        self.session.headers.update({
            "Authorization":        f"Bearer {self.token}",
            "Accept":               "application/vnd.github.v3+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent":           config.USER_AGENT,
        })

    # ------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------

    def search_repositories(self, query: str, per_page: int = 30, page: int = 1) -> SearchPage:
        """
        Search GitHub repositories.

        Args:
            query:    GitHub search expression, e.g. "language:rust stars:>1000".
            per_page: Results per page; clamped into [1, 100].
            page:     1-based page index.

        Returns:
            A SearchPage of validated repositories.

        Raises:
            InvalidQueryError / ValidationError before any request is sent,
            otherwise the last error once retries are exhausted.
        """
        query    = self.validate_query(query)
        per_page = clamp_per_page(per_page)
        if page is None or int(page) <= 0:
            raise ValidationError("page", "must be a positive integer")

        params = {
            "q":        query,
            "per_page": per_page,
            "page":     int(page),
            "sort":     "updated",
            "order":    "desc",
        }
        logger.info("Searching repositories q=%r per_page=%d page=%d", query, per_page, page)

        payload = self._with_retries(
            lambda: self._get("/search/repositories", params=params, query=query),
            "search",
        )
        result = SearchPage.from_api(payload)
        logger.info(
            "Search returned %d items (total_count=%d, incomplete=%s)",
            len(result.items), result.total_count, result.incomplete_results,
        )
        return result

    def validate_credential(self) -> None:
        """Confirm the token is accepted; raises AuthenticationError otherwise."""
        self._with_retries(lambda: self._get("/user"), "validate_credential")
        logger.info("GitHub token accepted")

    def fetch_rate_limit(self) -> RateLimitSnapshot:
        """Ask the API for the current search quota."""
        payload = self._with_retries(lambda: self._get("/rate_limit"), "rate_limit")
        try:
            search = payload["resources"]["search"]
            snapshot = RateLimitSnapshot(
                limit     = int(search["limit"]),
                remaining = int(search["remaining"]),
                reset_at  = datetime.fromtimestamp(int(search["reset"]), tz=timezone.utc),
                resource  = "search",
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ParseError(f"Malformed rate limit response: {e}") from e
        self._rate_limit = snapshot
        return snapshot

    def current_rate_limit(self) -> Optional[RateLimitSnapshot]:
        """Last quota seen in response headers (None before the first call)."""
        return self._rate_limit

    def validate_query(self, query: str) -> str:
        if query is None or not query.strip():
            raise InvalidQueryError(query or "", "Query cannot be empty")
        query = query.strip()
        if len(query) > self.max_query_length:
            raise InvalidQueryError(
                query, f"Query exceeds {self.max_query_length} characters"
            )
        if "\0" in query:
            raise InvalidQueryError(query, "Query contains null characters")
        return query

    def close(self):
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    def _with_retries(self, call: Callable[[], Any], description: str) -> Any:
        """Run ``call`` under the backoff policy; only retryable errors are retried."""
        state = BackoffState(self.policy)

        while True:
            try:
                return call()
            except GhpgError as e:
                if not e.retryable or not state.can_retry():
                    raise

                if isinstance(e, RateLimitError) and e.reset_at is not None:
                    wait = (e.reset_at - datetime.now(timezone.utc)).total_seconds()
                    if wait > self.rate_limit_max_wait:
                        # too far out to retry here
                        raise

                # plain backoff, never a sleep until the reset
                delay = state.next_delay()
                logger.warning(
                    "%s failed (%s: %s), retrying in %.2fs (attempt %d/%d)",
                    description, e.kind, e, delay, state.attempt, self.policy.max_retries,
                )
                time.sleep(delay)

    def _get(self, path: str, params: Dict[str, Any] = None, query: str = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise NetworkError(f"Timeout after {self.timeout}s: {url}") from e
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"Network error: {e}") from e

        # headers are tracked on every response, not only on failures
        self._update_rate_limit(response)
        status = response.status_code

        if status == 200:
            try:
                return response.json()
            except ValueError as e:
                raise ParseError(f"JSON parse error: {e}") from e

        if status == 401:
            raise AuthenticationError("Invalid or expired GitHub token")

        rate_limit = self._rate_limit_error(response)
        if rate_limit is not None:
            raise rate_limit

        if status == 422:
            raise InvalidQueryError(query or "", self._extract_validation_error(response))

        if status >= 500:
            raise ServerError(status, response.text)

        raise ApiError(f"HTTP {status}: {response.text[:200]}", status_code=status)

    def _update_rate_limit(self, response: requests.Response):
        headers = response.headers
        try:
            limit     = int(headers["x-ratelimit-limit"])
            remaining = int(headers["x-ratelimit-remaining"])
            reset     = int(headers["x-ratelimit-reset"])
        except (KeyError, TypeError, ValueError):
            return
        self._rate_limit = RateLimitSnapshot(
            limit     = limit,
            remaining = remaining,
            reset_at  = datetime.fromtimestamp(reset, tz=timezone.utc),
            resource  = headers.get("x-ratelimit-resource"),
        )

    def _rate_limit_error(self, response: requests.Response) -> Optional[RateLimitError]:
        """Return a RateLimitError when the response is a quota signal, else None."""
        status = response.status_code
        if status not in (403, 429):
            return None

        headers     = response.headers
        retry_after = headers.get("retry-after")
        exhausted   = headers.get("x-ratelimit-remaining") == "0"

        if retry_after is not None:
            try:
                reset_at = datetime.now(timezone.utc) + timedelta(seconds=int(retry_after))
            except ValueError:
                reset_at = None
            return RateLimitError(reset_at, self._rate_limit)

        if exhausted or status == 429:
            reset_at = self._rate_limit.reset_at if self._rate_limit else None
            return RateLimitError(reset_at, self._rate_limit)

        return None

    @staticmethod
    def _extract_validation_error(response: requests.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return "Invalid query format"

        errors = [e.get("message") for e in body.get("errors", []) if isinstance(e, dict)]
        errors = [m for m in errors if m]
        if errors:
            return ", ".join(errors)
        return body.get("message") or "Invalid query format"
