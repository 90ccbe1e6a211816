"""
Fetching Stage - GitHub Search API Integration

Main Responsibilities:
- Authenticate against the GitHub API
- Search repositories with clamped pagination parameters
- Track rate-limit headers and retry transient failures with backoff
"""
from ghpg.fetcher.backoff import BackoffPolicy, BackoffState
from ghpg.fetcher.client import GitHubClient

__all__ = ["BackoffPolicy", "BackoffState", "GitHubClient"]
