import time
import unittest
from datetime import datetime, timezone
from unittest.mock import Mock, patch

import requests
from requests.structures import CaseInsensitiveDict

from ghpg.errors import (
    ApiError,
    AuthenticationError,
    InvalidQueryError,
    NetworkError,
    ParseError,
    RateLimitError,
    ServerError,
    ValidationError,
)
from ghpg.fetcher.backoff import BackoffPolicy, BackoffState
from ghpg.fetcher.client import GitHubClient, clamp_per_page, validate_token
from ghpg.tests import make_repository_item

"""
Backoff tests:

✅ Delays grow monotonically and are capped
✅ Jitter stays within [base, 2 * base]
✅ Retry budget counts retries after the first attempt
Client tests:

✅ Token format checks (length, whitespace)
✅ Request shaping (per_page clamp, page and query checks without network)
✅ Status mapping (401, 403, 422, 429, 5xx)
✅ Rate limited requests retried after the backoff delay, not the reset time
✅ Immediate failure on far-off rate limit resets
✅ Rate limit headers tracked on every response"""

TOKEN = "ghp_test_token_0123456789"


def make_response(status_code=200, payload=None, headers=None, text=""):
    response = Mock()
    response.status_code = status_code
    response.headers = CaseInsensitiveDict(headers or {})
    response.text = text
    if isinstance(payload, Exception):
        response.json.side_effect = payload
    else:
        response.json.return_value = payload
    return response


def search_payload(count=3, total_count=1000):
    return {
        "total_count": total_count,
        "incomplete_results": False,
        "items": [make_repository_item(i) for i in range(1, count + 1)],
    }


def rate_limit_headers(remaining, reset_in, limit=30):
    return {
        "X-RateLimit-Limit": str(limit),
        "X-RateLimit-Remaining": str(remaining),
        "X-RateLimit-Reset": str(int(time.time() + reset_in)),
        "X-RateLimit-Resource": "search",
    }


class TestBackoffPolicy(unittest.TestCase):
    """Test cases for BackoffPolicy and BackoffState."""

    def test_delays_grow_and_cap(self):
        """Test delays double per attempt and never exceed max_delay."""
        policy = BackoffPolicy(initial_delay=1.0, max_delay=10.0, multiplier=2.0, jitter=False)
        delays = [policy.delay(n) for n in range(20)]

        self.assertEqual(delays[:4], [1.0, 2.0, 4.0, 8.0])
        self.assertEqual(delays, sorted(delays))
        self.assertTrue(all(d <= 10.0 for d in delays))
        self.assertEqual(delays[-1], 10.0)

    def test_huge_attempt_is_capped(self):
        """Test float overflow on huge attempts falls back to max_delay."""
        policy = BackoffPolicy(max_delay=60.0, jitter=False)
        self.assertEqual(policy.delay(10000), 60.0)

    def test_negative_attempt(self):
        """Test negative attempt numbers are rejected."""
        with self.assertRaises(ValueError):
            BackoffPolicy().delay(-1)

    def test_jitter_bounds(self):
        """Test jittered delays stay within [base, 2 * base]."""
        policy = BackoffPolicy(initial_delay=0.5, max_delay=60.0, jitter=True)
        for attempt in range(6):
            base = policy.base_delay(attempt)
            for _ in range(20):
                delay = policy.delay(attempt)
                self.assertGreaterEqual(delay, base)
                self.assertLessEqual(delay, 2 * base)

    @patch('ghpg.fetcher.backoff.random.uniform', return_value=0.25)
    def test_jitter_uses_uniform(self, mock_uniform):
        """Test jitter draws uniformly between zero and the base delay."""
        policy = BackoffPolicy(initial_delay=1.0, jitter=True)

        self.assertEqual(policy.delay(0), 1.25)
        mock_uniform.assert_called_once_with(0, 1.0)

    def test_state_retry_budget(self):
        """Test BackoffState allows exactly max_retries retries."""
        state = BackoffState(BackoffPolicy(max_retries=2, jitter=False))

        self.assertTrue(state.can_retry())
        self.assertEqual(state.next_delay(), 1.0)
        self.assertTrue(state.can_retry())
        self.assertEqual(state.next_delay(), 2.0)
        self.assertFalse(state.can_retry())


class TestTokenValidation(unittest.TestCase):
    """Test cases for validate_token."""

    def test_valid_token(self):
        """Test a well-formed token is returned unchanged."""
        self.assertEqual(validate_token(TOKEN), TOKEN)

    def test_empty_token(self):
        """Test empty and blank tokens are rejected."""
        for token in (None, "", "   "):
            with self.assertRaises(AuthenticationError):
                validate_token(token)

    def test_short_token(self):
        """Test tokens under 10 characters are rejected."""
        with self.assertRaises(AuthenticationError) as context:
            validate_token("ghp_short")
        self.assertIn("too short", str(context.exception))

    def test_long_token(self):
        """Test tokens over 255 characters are rejected."""
        with self.assertRaises(AuthenticationError) as context:
            validate_token("g" * 256)
        self.assertIn("too long", str(context.exception))
        self.assertEqual(validate_token("g" * 255), "g" * 255)

    def test_whitespace_token(self):
        """Test tokens containing whitespace are rejected."""
        for token in ("ghp_abc def123", "ghp_abcdef123\n", "\tghp_abcdef123"):
            with self.assertRaises(AuthenticationError):
                validate_token(token)

    def test_client_rejects_bad_token(self):
        """Test the client constructor applies the token checks."""
        with self.assertRaises(AuthenticationError):
            GitHubClient(token="  ")
        with self.assertRaises(AuthenticationError):
            GitHubClient(token="tiny")


class TestGitHubClient(unittest.TestCase):
    """Test cases for GitHubClient."""

    def setUp(self):
        """Set up test fixtures."""
        self.policy = BackoffPolicy(max_retries=3, initial_delay=1.0, max_delay=60.0, jitter=False)
        self.client = GitHubClient(
            token=TOKEN,
            base_url="https://api.github.com",
            policy=self.policy,
            timeout=5,
            rate_limit_max_wait=60,
            max_query_length=256,
        )
        self.client.session = Mock()

        sleep_patcher = patch('ghpg.fetcher.client.time.sleep')
        self.mock_sleep = sleep_patcher.start()
        self.addCleanup(sleep_patcher.stop)

    def _respond(self, *responses):
        self.client.session.get.side_effect = list(responses)

    def test_session_headers(self):
        """Test the session carries bearer auth and the v3 Accept header."""
        client = GitHubClient(token=TOKEN)
        self.assertEqual(client.session.headers["Authorization"], f"Bearer {TOKEN}")
        self.assertEqual(client.session.headers["Accept"], "application/vnd.github.v3+json")
        client.close()

    def test_search_success(self):
        """Test a successful search returns validated repositories."""
        self._respond(make_response(200, search_payload(5)))

        page = self.client.search_repositories("language:rust stars:>1000", per_page=5)

        self.assertLessEqual(len(page.items), 5)
        self.assertEqual(page.total_count, 1000)
        for repo in page.items:
            self.assertTrue(repo.full_name)
            self.assertGreaterEqual(repo.stargazers_count, 0)
            self.assertGreaterEqual(repo.forks_count, 0)

        args, kwargs = self.client.session.get.call_args
        self.assertEqual(args[0], "https://api.github.com/search/repositories")
        self.assertEqual(kwargs["params"]["q"], "language:rust stars:>1000")
        self.assertEqual(kwargs["params"]["per_page"], 5)
        self.assertEqual(kwargs["params"]["page"], 1)
        self.assertEqual(kwargs["timeout"], 5)
        self.mock_sleep.assert_not_called()

    def test_per_page_clamped(self):
        """Test per_page is clamped into [1, 100]."""
        self.assertEqual(clamp_per_page(500), 100)
        self.assertEqual(clamp_per_page(0), 1)
        self.assertEqual(clamp_per_page(-5), 1)

        self._respond(make_response(200, search_payload(1)))
        self.client.search_repositories("language:go", per_page=500)
        self.assertEqual(self.client.session.get.call_args.kwargs["params"]["per_page"], 100)

    def test_invalid_page_without_network(self):
        """Test a non-positive page fails before any request."""
        with self.assertRaises(ValidationError):
            self.client.search_repositories("language:go", page=0)
        self.client.session.get.assert_not_called()

    def test_invalid_query_without_network(self):
        """Test empty and over-length queries fail before any request."""
        with self.assertRaises(InvalidQueryError):
            self.client.search_repositories("   ")
        with self.assertRaises(InvalidQueryError):
            self.client.search_repositories("a" * 257)
        self.client.session.get.assert_not_called()

    def test_null_character_query(self):
        """Test queries containing NUL characters fail before any request."""
        with self.assertRaises(InvalidQueryError) as context:
            self.client.search_repositories("language:go\0stars:>10")
        self.assertIn("null characters", str(context.exception))
        self.client.session.get.assert_not_called()

    def test_query_is_trimmed(self):
        """Test surrounding whitespace is stripped from the query."""
        self._respond(make_response(200, search_payload(1)))
        self.client.search_repositories("  language:go  ")
        self.assertEqual(self.client.session.get.call_args.kwargs["params"]["q"], "language:go")

    def test_unauthorized_not_retried(self):
        """Test 401 raises AuthenticationError without retrying."""
        self._respond(make_response(401, {"message": "Bad credentials"}))

        with self.assertRaises(AuthenticationError):
            self.client.search_repositories("language:go")
        self.assertEqual(self.client.session.get.call_count, 1)
        self.mock_sleep.assert_not_called()

    def test_unprocessable_query(self):
        """Test 422 raises InvalidQueryError with the server's message."""
        body = {"message": "Validation Failed", "errors": [{"message": "The search is longer than allowed"}]}
        self._respond(make_response(422, body))

        with self.assertRaises(InvalidQueryError) as context:
            self.client.search_repositories("language:go")
        self.assertIn("longer than allowed", str(context.exception))
        self.assertEqual(self.client.session.get.call_count, 1)

    def test_forbidden_without_rate_limit_signal(self):
        """Test a plain 403 is a non-retryable ApiError."""
        self._respond(make_response(403, {"message": "Forbidden"}, text="Forbidden"))

        with self.assertRaises(ApiError) as context:
            self.client.search_repositories("language:go")
        self.assertEqual(context.exception.status_code, 403)
        self.assertEqual(self.client.session.get.call_count, 1)

    def test_too_many_requests_then_success(self):
        """Test a bare 429 is retried after the initial delay."""
        self._respond(
            make_response(429),
            make_response(200, search_payload(2)),
        )

        page = self.client.search_repositories("language:go")

        self.assertEqual(len(page), 2)
        self.mock_sleep.assert_called_once_with(1.0)

    def test_rate_limit_retry_uses_backoff_not_reset(self):
        """Test an exhausted quota with a near reset is retried after the jittered initial delay."""
        self.client.policy = BackoffPolicy(max_retries=3, initial_delay=1.0, jitter=True)
        self._respond(
            make_response(403, headers=rate_limit_headers(0, reset_in=30)),
            make_response(200, search_payload(5)),
        )

        page = self.client.search_repositories("language:rust stars:>1000", per_page=5)

        self.assertLessEqual(len(page), 5)
        self.mock_sleep.assert_called_once()
        delay = self.mock_sleep.call_args[0][0]
        self.assertGreaterEqual(delay, 1.0)
        self.assertLessEqual(delay, 2.0)

    def test_rate_limit_429_with_reset_header(self):
        """Test a 429 carrying x-ratelimit-reset sleeps the backoff delay only."""
        self._respond(
            make_response(429, headers=rate_limit_headers(0, reset_in=45)),
            make_response(200, search_payload(1)),
        )

        self.client.search_repositories("language:go")

        self.mock_sleep.assert_called_once_with(1.0)

    def test_rate_limit_far_reset_fails_fast(self):
        """Test a reset beyond rate_limit_max_wait surfaces immediately with its reset time."""
        self._respond(make_response(403, headers=rate_limit_headers(0, reset_in=3600)))

        with self.assertRaises(RateLimitError) as context:
            self.client.search_repositories("language:go")

        self.assertIsNotNone(context.exception.reset_at)
        self.assertGreater(context.exception.reset_at, datetime.now(timezone.utc))
        self.assertIn("UTC", str(context.exception))
        self.mock_sleep.assert_not_called()
        self.assertEqual(self.client.session.get.call_count, 1)

    def test_retry_after_header(self):
        """Test Retry-After is treated as a rate limit retried after the backoff delay."""
        self.client.policy = BackoffPolicy(max_retries=3, initial_delay=1.0, jitter=True)
        self._respond(
            make_response(403, headers={"Retry-After": "30"}),
            make_response(200, search_payload(1)),
        )

        self.client.search_repositories("language:go")

        delay = self.mock_sleep.call_args[0][0]
        self.assertGreaterEqual(delay, 1.0)
        self.assertLessEqual(delay, 2.0)

    def test_server_error_then_success(self):
        """Test 5xx responses are retried with growing delays."""
        self._respond(
            make_response(502, text="bad gateway"),
            make_response(500, text="oops"),
            make_response(200, search_payload(1)),
        )

        self.client.search_repositories("language:go")

        self.assertEqual(self.client.session.get.call_count, 3)
        self.assertEqual([c[0][0] for c in self.mock_sleep.call_args_list], [1.0, 2.0])

    def test_server_error_exhausts_retries(self):
        """Test the last ServerError is raised once retries are spent."""
        self._respond(*[make_response(503, text="unavailable") for _ in range(4)])

        with self.assertRaises(ServerError) as context:
            self.client.search_repositories("language:go")

        self.assertEqual(context.exception.status_code, 503)
        self.assertEqual(self.client.session.get.call_count, 4)
        self.assertEqual(self.mock_sleep.call_count, 3)

    def test_timeout_is_retried(self):
        """Test request timeouts are retried as NetworkError."""
        self._respond(
            requests.exceptions.Timeout("read timed out"),
            make_response(200, search_payload(1)),
        )

        self.client.search_repositories("language:go")
        self.assertEqual(self.client.session.get.call_count, 2)

    def test_connection_error_exhausts(self):
        """Test persistent connection failures end in NetworkError."""
        self._respond(*[requests.exceptions.ConnectionError("refused") for _ in range(4)])

        with self.assertRaises(NetworkError):
            self.client.search_repositories("language:go")

    def test_malformed_json(self):
        """Test an undecodable body raises ParseError without retrying."""
        self._respond(make_response(200, ValueError("Expecting value")))

        with self.assertRaises(ParseError):
            self.client.search_repositories("language:go")
        self.assertEqual(self.client.session.get.call_count, 1)

    def test_missing_items(self):
        """Test a payload without items raises ParseError."""
        self._respond(make_response(200, {"total_count": 0, "incomplete_results": False}))

        with self.assertRaises(ParseError):
            self.client.search_repositories("language:go")

    def test_rate_limit_headers_tracked(self):
        """Test x-ratelimit headers update current_rate_limit."""
        self.assertIsNone(self.client.current_rate_limit())
        self._respond(make_response(200, search_payload(1), headers=rate_limit_headers(27, reset_in=45)))

        self.client.search_repositories("language:go")

        snapshot = self.client.current_rate_limit()
        self.assertEqual(snapshot.limit, 30)
        self.assertEqual(snapshot.remaining, 27)
        self.assertEqual(snapshot.resource, "search")
        self.assertFalse(snapshot.exhausted)

    def test_validate_credential(self):
        """Test credential validation against /user."""
        self._respond(make_response(200, {"login": "octocat"}))
        self.client.validate_credential()
        self.assertEqual(self.client.session.get.call_args[0][0], "https://api.github.com/user")

        self._respond(make_response(401, {"message": "Bad credentials"}))
        with self.assertRaises(AuthenticationError):
            self.client.validate_credential()

    def test_fetch_rate_limit(self):
        """Test the search quota is read from /rate_limit."""
        reset = int(time.time()) + 30
        payload = {"resources": {"search": {"limit": 30, "remaining": 12, "reset": reset}}}
        self._respond(make_response(200, payload))

        snapshot = self.client.fetch_rate_limit()

        self.assertEqual(snapshot.remaining, 12)
        self.assertEqual(snapshot.reset_at, datetime.fromtimestamp(reset, tz=timezone.utc))

    def test_fetch_rate_limit_malformed(self):
        """Test a malformed /rate_limit payload raises ParseError."""
        self._respond(make_response(200, {"resources": {}}))
        with self.assertRaises(ParseError):
            self.client.fetch_rate_limit()


if __name__ == '__main__':
    unittest.main()
