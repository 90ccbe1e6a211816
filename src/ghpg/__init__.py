"""
GHPG-Pipeline: GitHub repository search results into PostgreSQL.

This package contains:
1. fetcher: GitHub search client with rate-limit tracking and backoff
2. db:      per-run timestamped tables and the query_history audit log
3. pipeline: run orchestration, one table and one audit row per run

Version: 0.1.0
"""

__version__ = "0.1.0"
__author__ = "GHPG-Pipeline Team"

__all__ = [
    "config",
    "db",
    "errors",
    "fetcher",
    "models",
    "pipeline",
    "recorder",
]
