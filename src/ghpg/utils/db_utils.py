"""
Shared database/reporting helpers.
Centralises the status printouts used by the CLI.
"""
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Iterable, Optional

if TYPE_CHECKING:
    from ghpg.db.db import RepositoryDatabase
    from ghpg.models import RateLimitSnapshot, RunMetadata


def _fmt_time(value: Optional[datetime]) -> str:
    if value is None:
        return "-"
    return value.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def print_table_stats(db: "RepositoryDatabase", table_name: str):
    """Print aggregate statistics for one repository table."""
    stats = db.get_table_stats(table_name)

    print(f"\nTable Statistics: {stats.table_name}")
    print("-" * 60)
    print(f"  Repositories        : {stats.total_repositories}")
    print(f"  Unique languages    : {stats.unique_languages}")
    print(f"  Unique owners       : {stats.unique_owners}")
    print(f"  Stars (avg / max)   : {stats.avg_stars:.1f} / {stats.max_stars}")
    print(f"  Forks (avg / max)   : {stats.avg_forks:.1f} / {stats.max_forks}")
    print(f"  Oldest repository   : {_fmt_time(stats.oldest_repo)}")
    print(f"  Newest repository   : {_fmt_time(stats.newest_repo)}")
    print("-" * 60)


def print_run_history(runs: Iterable["RunMetadata"]):
    """Print audit rows, one line per run."""
    runs = list(runs)
    print("\nQuery History:")
    print("-" * 100)
    if not runs:
        print("  No runs recorded.")
    for run in runs:
        status = "✓" if run.success else f"✗ {run.error_kind or 'error'}"
        print(
            f"  {_fmt_time(run.executed_at)}  {run.table_name:<22} "
            f"{run.result_count:>5} rows {run.duration_ms:>7}ms  {status}  {run.search_query}"
        )
    print("-" * 100)


def print_rate_limit(snapshot: Optional["RateLimitSnapshot"]):
    """Print a rate-limit snapshot (or note that none is known yet)."""
    print("\nGitHub Search Rate Limit:")
    print("-" * 60)
    if snapshot is None:
        print("  No rate limit information yet.")
    else:
        print(f"  Limit               : {snapshot.limit}")
        print(f"  Remaining           : {snapshot.remaining}")
        print(f"  Resets at           : {_fmt_time(snapshot.reset_at)}")
        print(f"  Resets in           : {snapshot.seconds_until_reset():.0f}s")
    print("-" * 60)


def print_table_list(db: "RepositoryDatabase"):
    tables = db.list_tables()
    print(f"\nRepository Tables ({len(tables)}):")
    print("-" * 60)
    for name in tables:
        print(f"  {name}")
    print("-" * 60)
