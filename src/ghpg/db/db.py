import logging
import threading
from contextlib import contextmanager
from typing import Iterable, List, Optional

import psycopg2
import psycopg2.extras
from psycopg2 import sql
from psycopg2.extras import RealDictCursor, execute_values
from psycopg2.pool import ThreadedConnectionPool

from ghpg import config
from ghpg.db.naming import is_valid_table_name
from ghpg.errors import DatabaseError, TableCreationError, ValidationError
from ghpg.models import Repository, RunMetadata, TableStats

logger = logging.getLogger(__name__)

# UUID columns come back as uuid.UUID and accept uuid.UUID parameters
psycopg2.extras.register_uuid()

HISTORY_TABLE = config.HISTORY_TABLE

# Column order matches _record_row()
REPOSITORY_COLUMNS = (
    "github_id", "full_name", "name", "description", "html_url", "clone_url", "ssh_url",
    "size_kb", "stargazers_count", "watchers_count", "forks_count", "open_issues_count",
    "language", "default_branch", "visibility", "private", "fork", "archived", "disabled",
    "created_at", "updated_at", "pushed_at",
    "owner_id", "owner_login", "owner_type", "owner_avatar_url", "owner_html_url",
    "owner_site_admin",
    "license_key", "license_name", "license_spdx_id", "license_url",
    "topics", "has_issues", "has_projects", "has_wiki", "has_pages", "has_downloads",
)

# Never overwritten on conflict
IMMUTABLE_COLUMNS = ("github_id", "created_at", "owner_id")

UPDATE_COLUMNS = tuple(c for c in REPOSITORY_COLUMNS if c not in IMMUTABLE_COLUMNS)

CREATE_REPOSITORY_TABLE = '''
    CREATE TABLE {table} (
        id                 SERIAL PRIMARY KEY,
        github_id          BIGINT UNIQUE NOT NULL,
        full_name          VARCHAR(255) NOT NULL,
        name               VARCHAR(255) NOT NULL,
        description        TEXT,
        html_url           VARCHAR(500) NOT NULL,
        clone_url          VARCHAR(500) NOT NULL,
        ssh_url            VARCHAR(500) NOT NULL,
        size_kb            BIGINT NOT NULL DEFAULT 0,
        stargazers_count   BIGINT NOT NULL DEFAULT 0,
        watchers_count     BIGINT NOT NULL DEFAULT 0,
        forks_count        BIGINT NOT NULL DEFAULT 0,
        open_issues_count  BIGINT NOT NULL DEFAULT 0,
        language           VARCHAR(100),
        default_branch     VARCHAR(100) NOT NULL,
        visibility         VARCHAR(20) NOT NULL,
        private            BOOLEAN NOT NULL DEFAULT FALSE,
        fork               BOOLEAN NOT NULL DEFAULT FALSE,
        archived           BOOLEAN NOT NULL DEFAULT FALSE,
        disabled           BOOLEAN NOT NULL DEFAULT FALSE,
        created_at         TIMESTAMPTZ NOT NULL,
        updated_at         TIMESTAMPTZ NOT NULL,
        pushed_at          TIMESTAMPTZ,
        owner_id           BIGINT NOT NULL,
        owner_login        VARCHAR(255) NOT NULL,
        owner_type         VARCHAR(50) NOT NULL,
        owner_avatar_url   VARCHAR(500) NOT NULL,
        owner_html_url     VARCHAR(500) NOT NULL,
        owner_site_admin   BOOLEAN NOT NULL DEFAULT FALSE,
        license_key        VARCHAR(100),
        license_name       VARCHAR(255),
        license_spdx_id    VARCHAR(100),
        license_url        VARCHAR(500),
        topics             TEXT[] DEFAULT '{{}}',
        has_issues         BOOLEAN NOT NULL DEFAULT FALSE,
        has_projects       BOOLEAN NOT NULL DEFAULT FALSE,
        has_wiki           BOOLEAN NOT NULL DEFAULT FALSE,
        has_pages          BOOLEAN NOT NULL DEFAULT FALSE,
        has_downloads      BOOLEAN NOT NULL DEFAULT FALSE,
        fetched_at         TIMESTAMPTZ DEFAULT NOW()
    )
'''

# (index suffix, indexed expression)
REPOSITORY_INDEXES = (
    ("github_id",   "github_id"),
    ("full_name",   "full_name"),
    ("language",    "language"),
    ("stargazers",  "stargazers_count DESC"),
    ("created_at",  "created_at"),
    ("owner_login", "owner_login"),
)

UPSERT_REPOSITORIES = '''
    INSERT INTO {table} ({columns}) VALUES %s
    ON CONFLICT (github_id) DO UPDATE SET
        {updates},
        fetched_at = NOW()
'''


def _record_row(repo: Repository) -> tuple:
    license = repo.license
    return (
        repo.id, repo.full_name, repo.name, repo.description,
        repo.html_url, repo.clone_url, repo.ssh_url,
        repo.size, repo.stargazers_count, repo.watchers_count,
        repo.forks_count, repo.open_issues_count,
        repo.language, repo.default_branch, repo.visibility,
        repo.private, repo.fork, repo.archived, repo.disabled,
        repo.created_at, repo.updated_at, repo.pushed_at,
        repo.owner.id, repo.owner.login, repo.owner.owner_type,
        repo.owner.avatar_url, repo.owner.html_url, repo.owner.site_admin,
        license.key if license else None,
        license.name if license else None,
        license.spdx_id if license else None,
        license.url if license else None,
        # lists adapt to ARRAY, tuples would not
        list(repo.topics),
        repo.has_issues, repo.has_projects, repo.has_wiki,
        repo.has_pages, repo.has_downloads,
    )


class RepositoryDatabase:
    """PostgreSQL persistence for per-run repository tables and the query_history audit log."""

    def __init__(
        self,
        connection_string: str = None,
        min_connections: int = None,
        max_connections: int = None,
        acquire_timeout: float = None,
        table_prefix: str = None,
        page_size: int = None,
    ):
        """
        Open the connection pool and make sure the audit table exists.

        Args:
            connection_string: PostgreSQL DSN or URL. Falls back to config.DATABASE_URL.
            min_connections:   Connections opened up front.
            max_connections:   Upper bound on simultaneous database operations.
            acquire_timeout:   Seconds a caller blocks on an exhausted pool
                               before failing with DatabaseError.
            table_prefix:      Prefix of generated table names.
            page_size:         Rows per multi-row INSERT statement.
        """
        self.connection_string = connection_string or config.DATABASE_URL
        self.min_connections   = min_connections or config.DB_POOL_MIN
        self.max_connections   = max_connections or config.DB_POOL_MAX
        self.acquire_timeout   = acquire_timeout if acquire_timeout is not None else config.DB_ACQUIRE_TIMEOUT
        self.table_prefix      = table_prefix or config.TABLE_PREFIX
        self.page_size         = page_size or config.INSERT_PAGE_SIZE

        if self.min_connections > self.max_connections:
            raise ValueError("min_connections cannot exceed max_connections")

        try:
            self._pool = ThreadedConnectionPool(
                self.min_connections, self.max_connections, self.connection_string
            )
        except psycopg2.Error as e:
            raise DatabaseError(f"Could not connect to PostgreSQL: {e}") from e

        # psycopg2 pools fail immediately when empty; the semaphore makes callers wait instead
        self._slots = threading.BoundedSemaphore(self.max_connections)

        self._initialize_history_table()
        logger.info("PostgreSQL pool ready (max %d connections)", self.max_connections)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    @contextmanager
    def _connection(self):
        """Borrow a pooled connection; commit on success, roll back on error."""
        if not self._slots.acquire(timeout=self.acquire_timeout):
            raise DatabaseError(
                f"Timed out after {self.acquire_timeout}s waiting for a database connection"
            )
        try:
            try:
                conn = self._pool.getconn()
            except psycopg2.Error as e:
                raise DatabaseError(f"Could not get a database connection: {e}") from e

            try:
                yield conn
                conn.commit()
            except BaseException:
                try:
                    conn.rollback()
                except psycopg2.Error as rollback_error:
                    logger.warning("Rollback failed: %s", rollback_error)
                raise
            finally:
                self._pool.putconn(conn, close=bool(conn.closed))
        finally:
            self._slots.release()

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _initialize_history_table(self):
        """Create the query_history table if it doesn't exist."""
        statements = [
            f'''
            CREATE TABLE IF NOT EXISTS {HISTORY_TABLE} (
                id             UUID PRIMARY KEY,
                search_query   TEXT NOT NULL,
                table_name     VARCHAR(63) NOT NULL,
                result_count   BIGINT NOT NULL DEFAULT 0,
                executed_at    TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                duration_ms    BIGINT NOT NULL DEFAULT 0,
                success        BOOLEAN NOT NULL DEFAULT FALSE,
                error_message  TEXT,
                error_kind     VARCHAR(50)
            )
            ''',
            # tables created before error_kind existed
            f'ALTER TABLE {HISTORY_TABLE} ADD COLUMN IF NOT EXISTS error_kind VARCHAR(50)',
            f'CREATE INDEX IF NOT EXISTS idx_{HISTORY_TABLE}_executed_at ON {HISTORY_TABLE}(executed_at)',
            f'CREATE INDEX IF NOT EXISTS idx_{HISTORY_TABLE}_table_name  ON {HISTORY_TABLE}(table_name)',
            f'CREATE INDEX IF NOT EXISTS idx_{HISTORY_TABLE}_success     ON {HISTORY_TABLE}(success)',
        ]
        try:
            with self._connection() as conn, conn.cursor() as cur:
                for statement in statements:
                    cur.execute(statement)
        except psycopg2.Error as e:
            raise TableCreationError(HISTORY_TABLE, e) from e

    def create_table(self, table_name: str):
        """
        Create a repository table and its indexes in one transaction.

        Uses plain CREATE TABLE: an existing table with the same name is a
        naming collision and fails with TableCreationError.
        """
        if not is_valid_table_name(table_name, self.table_prefix):
            raise TableCreationError(
                table_name, f"name must match {self.table_prefix}_YYYYMMDDHHMMSS"
            )

        table = sql.Identifier(table_name)
        statements = [sql.SQL(CREATE_REPOSITORY_TABLE).format(table=table)]
        for suffix, expression in REPOSITORY_INDEXES:
            statements.append(
                sql.SQL("CREATE INDEX {index} ON {table} ({expression})").format(
                    index      = sql.Identifier(f"idx_{table_name}_{suffix}"),
                    table      = table,
                    expression = sql.SQL(expression),
                )
            )

        try:
            with self._connection() as conn, conn.cursor() as cur:
                for statement in statements:
                    cur.execute(statement)
        except psycopg2.Error as e:
            raise TableCreationError(table_name, e) from e

        logger.info("Created table %s", table_name)

    # ------------------------------------------------------------------
    # Inserts
    # ------------------------------------------------------------------

    def insert_records(self, table_name: str, records: Iterable[Repository]) -> int:
        """
        Upsert repositories keyed on github_id in a single transaction.

        Duplicate ids within the batch collapse to their last occurrence
        (PostgreSQL rejects one statement touching the same row twice).

        Returns:
            Rows affected, inserted plus updated.
        """
        records = list(records)
        if not records:
            return 0

        unique = {}
        for repo in records:
            repo.validate()
            unique[repo.id] = repo

        if len(unique) < len(records):
            logger.info(
                "Collapsed %d duplicate records for %s", len(records) - len(unique), table_name
            )

        rows  = [_record_row(repo) for repo in unique.values()]
        query = sql.SQL(UPSERT_REPOSITORIES).format(
            table   = sql.Identifier(table_name),
            columns = sql.SQL(", ").join(sql.Identifier(c) for c in REPOSITORY_COLUMNS),
            updates = sql.SQL(", ").join(
                sql.SQL("{col} = EXCLUDED.{col}").format(col=sql.Identifier(c))
                for c in UPDATE_COLUMNS
            ),
        )

        affected = 0
        try:
            with self._connection() as conn, conn.cursor() as cur:
                for start in range(0, len(rows), self.page_size):
                    chunk = rows[start:start + self.page_size]
                    execute_values(cur, query, chunk, page_size=len(chunk))
                    affected += cur.rowcount
        except psycopg2.Error as e:
            raise DatabaseError(f"Insert into {table_name} failed: {e}") from e

        logger.info("Upserted %d rows into %s", affected, table_name)
        return affected

    def save_run_metadata(self, metadata: RunMetadata):
        """Append one audit row. Rows are never updated."""
        try:
            with self._connection() as conn, conn.cursor() as cur:
                cur.execute(f'''
                    INSERT INTO {HISTORY_TABLE} (
                        id, search_query, table_name, result_count, executed_at,
                        duration_ms, success, error_message, error_kind
                    ) VALUES (%s,%s,%s,%s,%s,%s,%s,%s,%s)
                ''', (
                    metadata.id,
                    metadata.search_query,
                    metadata.table_name,
                    metadata.result_count,
                    metadata.executed_at,
                    metadata.duration_ms,
                    metadata.success,
                    metadata.error_message,
                    metadata.error_kind,
                ))
        except psycopg2.Error as e:
            raise DatabaseError(f"Saving run metadata {metadata.id} failed: {e}") from e

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def table_exists(self, table_name: str) -> bool:
        try:
            with self._connection() as conn, conn.cursor() as cur:
                cur.execute('''
                    SELECT EXISTS (
                        SELECT FROM information_schema.tables
                        WHERE table_schema = 'public' AND table_name = %s
                    )
                ''', (table_name,))
                return bool(cur.fetchone()[0])
        except psycopg2.Error as e:
            raise DatabaseError(f"Table lookup failed: {e}") from e

    def get_table_stats(self, table_name: str) -> TableStats:
        """Aggregate statistics for one repository table (read-only)."""
        if not self.table_exists(table_name):
            raise DatabaseError(f"Table {table_name} does not exist")

        query = sql.SQL('''
            SELECT
                COUNT(*)                    AS total_repositories,
                COUNT(DISTINCT language)    AS unique_languages,
                COUNT(DISTINCT owner_login) AS unique_owners,
                AVG(stargazers_count)       AS avg_stars,
                MAX(stargazers_count)       AS max_stars,
                AVG(forks_count)            AS avg_forks,
                MAX(forks_count)            AS max_forks,
                MIN(created_at)             AS oldest_repo,
                MAX(created_at)             AS newest_repo
            FROM {table}
        ''').format(table=sql.Identifier(table_name))

        try:
            with self._connection() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query)
                row = cur.fetchone()
        except psycopg2.Error as e:
            raise DatabaseError(f"Statistics for {table_name} failed: {e}") from e

        return TableStats(
            table_name         = table_name,
            total_repositories = row["total_repositories"],
            unique_languages   = row["unique_languages"],
            unique_owners      = row["unique_owners"],
            avg_stars          = float(row["avg_stars"] or 0),
            max_stars          = row["max_stars"] or 0,
            avg_forks          = float(row["avg_forks"] or 0),
            max_forks          = row["max_forks"] or 0,
            oldest_repo        = row["oldest_repo"],
            newest_repo        = row["newest_repo"],
        )

    def list_tables(self) -> List[str]:
        """Repository tables, newest first."""
        like = self.table_prefix.replace("_", r"\_") + r"\_%"
        try:
            with self._connection() as conn, conn.cursor() as cur:
                cur.execute('''
                    SELECT table_name
                    FROM information_schema.tables
                    WHERE table_schema = 'public' AND table_name LIKE %s
                    ORDER BY table_name DESC
                ''', (like,))
                names = [row[0] for row in cur.fetchall()]
        except psycopg2.Error as e:
            raise DatabaseError(f"Listing tables failed: {e}") from e
        return [n for n in names if is_valid_table_name(n, self.table_prefix)]

    def get_run_history(self, limit: Optional[int] = None, success_only: bool = False) -> List[RunMetadata]:
        """Audit rows, newest first."""
        query  = f'SELECT * FROM {HISTORY_TABLE}'
        params = []
        if success_only:
            query += ' WHERE success = TRUE'
        query += ' ORDER BY executed_at DESC'
        if limit is not None:
            query += ' LIMIT %s'
            params.append(int(limit))

        try:
            with self._connection() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, params)
                rows = cur.fetchall()
        except psycopg2.Error as e:
            raise DatabaseError(f"Reading run history failed: {e}") from e
        return [RunMetadata.from_row(dict(r)) for r in rows]

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def drop_table(self, table_name: str):
        """Drop a repository table; names outside the naming pattern are refused."""
        if not is_valid_table_name(table_name, self.table_prefix):
            raise ValidationError(
                "table_name", f"{table_name!r} does not match {self.table_prefix}_YYYYMMDDHHMMSS"
            )
        try:
            with self._connection() as conn, conn.cursor() as cur:
                cur.execute(sql.SQL("DROP TABLE IF EXISTS {table}").format(
                    table=sql.Identifier(table_name)
                ))
        except psycopg2.Error as e:
            raise DatabaseError(f"Dropping {table_name} failed: {e}") from e
        logger.info("Dropped table %s", table_name)

    def ping(self):
        """Round-trip a trivial query; raises DatabaseError when unreachable."""
        try:
            with self._connection() as conn, conn.cursor() as cur:
                cur.execute('SELECT 1')
                cur.fetchone()
        except psycopg2.Error as e:
            raise DatabaseError(f"Database ping failed: {e}") from e

    # ------------------------------------------------------------------
    # Connection helpers
    # ------------------------------------------------------------------

    def close(self):
        self._pool.closeall()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
