"""
GHPG Pipeline - Command Line
============================
Run a GitHub repository search and store the page in a new
``repos_YYYYMMDDHHMMSS`` PostgreSQL table, recording every run in
``query_history``.
"""
import argparse
import logging
import sys
from typing import List, Optional

from ghpg import config
from ghpg.db.db import RepositoryDatabase
from ghpg.errors import ConfigurationError, GhpgError, RateLimitError
from ghpg.fetcher.client import GitHubClient, validate_token
from ghpg.pipeline import RunResult, SearchPipeline
from ghpg.utils.db_utils import (
    print_rate_limit,
    print_run_history,
    print_table_list,
    print_table_stats,
)


def display_error(error: BaseException):
    kind = getattr(error, "kind", type(error).__name__)
    print("\n" + "=" * 70, file=sys.stderr)
    print(f"ERROR ({kind})", file=sys.stderr)
    print("=" * 70, file=sys.stderr)
    print(f"  {error}", file=sys.stderr)
    if isinstance(error, RateLimitError):
        print(f"  Rate limit resets at : {error.reset_time}", file=sys.stderr)
    if isinstance(error, ConfigurationError):
        print("  Set GITHUB_TOKEN and DATABASE_URL in the environment or .env", file=sys.stderr)
    print("=" * 70, file=sys.stderr)


def display_result(result: RunResult, verbose: bool = False):
    if not result.success:
        display_error(result.error)
        if not result.recorded:
            print("  ⚠ The run could not be recorded in query_history", file=sys.stderr)
        return

    print("\n" + "-" * 70)
    print("RUN COMPLETE")
    print("-" * 70)
    print(f"  Query            : '{result.search_query}'")
    print(f"  Table            : {result.table_name}")
    print(f"  Repositories     : {result.record_count}")
    if verbose:
        print(f"  Rows affected    : {result.rows_affected}")
        print(f"  Total matches    : {result.total_count}")
        if result.incomplete_results:
            print("  Note             : GitHub reported incomplete results")
        print(f"  Run id           : {result.run_id}")
    print(f"  Duration         : {result.duration_ms}ms")
    print("-" * 70)


# ──────────────────────────────────────────────────────────────────────
# CLI
# ──────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ghpg",
        description="GHPG Pipeline - GitHub search results into PostgreSQL",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
MODES
─────
  Search:         ghpg "language:rust stars:>1000" --per-page 50 --page 2
  Several pages:  ghpg "topic:machine-learning" --pages 3
  Dry run:        ghpg "created:>2023-01-01" --dry-run
  History:        ghpg --history --limit 20 --success-only
  Statistics:     ghpg --stats repos_20240101120000
  List tables:    ghpg --list-tables
  Drop table:     ghpg --drop-table repos_20240101120000 --yes
  Rate limit:     ghpg --rate-limit
  Credentials:    ghpg "language:go" --github-token ghp_xxx --database-url postgresql://user@host/db
        """,
    )

    parser.add_argument("query", nargs="?", help="GitHub repository search expression")

    search = parser.add_argument_group("Search options")
    search.add_argument("--per-page", type=int, default=30, help="Results per page (1-100)")
    search.add_argument("--page",     type=int, default=1)
    search.add_argument("--pages",    type=int, default=1,
                        help="Sequential pages to fetch, one table per page")
    search.add_argument("--dry-run",  action="store_true",
                        help="Validate query, token and database without writing")

    admin = parser.add_argument_group("Administrative modes")
    admin.add_argument("--history",      action="store_true")
    admin.add_argument("--limit",        type=int, default=20)
    admin.add_argument("--success-only", action="store_true")
    admin.add_argument("--stats",        metavar="TABLE")
    admin.add_argument("--list-tables",  action="store_true")
    admin.add_argument("--drop-table",   metavar="TABLE")
    admin.add_argument("--yes",          action="store_true", help="Confirm --drop-table")
    admin.add_argument("--rate-limit",   action="store_true")

    creds = parser.add_argument_group("Credentials")
    creds.add_argument("--github-token", metavar="TOKEN",
                       help="GitHub API token (overrides GITHUB_TOKEN)")
    creds.add_argument("--database-url", metavar="URL",
                       help="PostgreSQL connection string (overrides DATABASE_URL)")

    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def configure_logging(verbose: bool):
    logging.basicConfig(
        level=logging.INFO if verbose else getattr(logging, config.LOG_LEVEL, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _open_database(url: str = None) -> RepositoryDatabase:
    url = config.require("DATABASE_URL", url or config.DATABASE_URL)
    return RepositoryDatabase(connection_string=url)


def _open_client(token: str = None) -> GitHubClient:
    token = config.require("GITHUB_TOKEN", token or config.GITHUB_TOKEN)
    return GitHubClient(token=validate_token(token))


def _run_admin(args) -> Optional[int]:
    """Handle administrative modes; returns an exit code, or None when none was requested."""
    if args.rate_limit:
        with _open_client(args.github_token) as client:
            print_rate_limit(client.fetch_rate_limit())
        return 0

    if not (args.history or args.stats or args.list_tables or args.drop_table):
        return None

    db = _open_database(args.database_url)
    try:
        if args.history:
            print_run_history(db.get_run_history(limit=args.limit, success_only=args.success_only))
        elif args.stats:
            print_table_stats(db, args.stats)
        elif args.list_tables:
            print_table_list(db)
        elif args.drop_table:
            if not args.yes:
                print(f"WARNING: this drops {args.drop_table} and its data. Re-run with --yes to proceed.")
                return 1
            db.drop_table(args.drop_table)
            print(f"✓ Dropped {args.drop_table}")
    finally:
        db.close()
    return 0


def _run_search(args, parser) -> int:
    if not args.query:
        parser.error("a search query is required")
    if args.pages < 1:
        parser.error("--pages must be at least 1")

    client = _open_client(args.github_token)
    try:
        db = _open_database(args.database_url)
    except GhpgError:
        client.close()
        raise
    try:
        pipeline = SearchPipeline(client, db)

        if args.dry_run:
            pipeline.dry_run(args.query)
            print("✓ Dry run completed successfully - configuration is valid")
            return 0

        print("\n" + "=" * 70)
        print("GHPG RUN")
        print("=" * 70)
        print(f"  Query            : '{args.query}'")
        print(f"  Per page         : {args.per_page}")
        print(f"  Pages            : {args.page}..{args.page + args.pages - 1}")
        print("=" * 70)

        if args.pages == 1:
            results = [pipeline.run(args.query, per_page=args.per_page, page=args.page)]
        else:
            results = pipeline.run_pages(
                args.query,
                per_page=args.per_page,
                first_page=args.page,
                pages=args.pages,
            )

        for result in results:
            display_result(result, verbose=args.verbose)

        if args.verbose:
            print_rate_limit(client.current_rate_limit())

        return 0 if all(r.success for r in results) else 1
    finally:
        db.close()
        client.close()


def main(argv: List[str] = None) -> int:
    parser = build_parser()
    args   = parser.parse_args(argv)
    configure_logging(args.verbose)

    try:
        code = _run_admin(args)
        if code is None:
            code = _run_search(args, parser)
    except GhpgError as e:
        display_error(e)
        code = 1
    return code


if __name__ == "__main__":
    sys.exit(main())
