"""
Global configuration for the GHPG pipeline.
Single source of truth for all settings.
"""
from pathlib import Path
from dotenv import load_dotenv
import os

from ghpg.errors import ConfigurationError

# Load .env from project root
PROJECT_ROOT = Path(__file__).parent.parent.parent
env_path = PROJECT_ROOT / '.env'
load_dotenv(dotenv_path=env_path)


def _bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


# ── GitHub ─────────────────────────────────────────────────────────────────────
GITHUB_API_URL   = os.getenv("GITHUB_API_URL", "https://api.github.com")
GITHUB_TOKEN     = os.getenv("GITHUB_TOKEN", "")
REQUEST_TIMEOUT  = float(os.getenv("REQUEST_TIMEOUT", "30"))
MAX_QUERY_LENGTH = int(os.getenv("MAX_QUERY_LENGTH", "256"))
USER_AGENT       = os.getenv("GHPG_USER_AGENT", "ghpg-pipeline/0.1.0")

# ── Retry / backoff ────────────────────────────────────────────────────────────
MAX_RETRIES         = int(os.getenv("MAX_RETRIES", "3"))
INITIAL_BACKOFF_MS  = int(os.getenv("INITIAL_BACKOFF_MS", "1000"))
MAX_BACKOFF_MS      = int(os.getenv("MAX_BACKOFF_MS", "60000"))
BACKOFF_MULTIPLIER  = float(os.getenv("BACKOFF_MULTIPLIER", "2.0"))
BACKOFF_JITTER      = _bool(os.getenv("BACKOFF_JITTER", "true"))
# Rate limits resetting further away than this (seconds) are not waited out
RATE_LIMIT_MAX_WAIT = float(os.getenv("RATE_LIMIT_MAX_WAIT", "60"))

# ── PostgreSQL ─────────────────────────────────────────────────────────────────
POSTGRES_HOST     = os.getenv("POSTGRES_HOST", "localhost")
POSTGRES_PORT     = os.getenv("POSTGRES_PORT", "5432")
POSTGRES_DB       = os.getenv("POSTGRES_DB",   "ghpg")
POSTGRES_USER     = os.getenv("POSTGRES_USER", "postgres")
POSTGRES_PASSWORD = os.getenv("POSTGRES_PASSWORD", "")

POSTGRES_DSN = (
    f"host={POSTGRES_HOST} "
    f"port={POSTGRES_PORT} "
    f"dbname={POSTGRES_DB} "
    f"user={POSTGRES_USER} "
    f"password={POSTGRES_PASSWORD}"
)

DATABASE_URL = os.getenv("DATABASE_URL") or POSTGRES_DSN

DB_POOL_MIN        = int(os.getenv("DB_POOL_MIN", "1"))
DB_POOL_MAX        = int(os.getenv("DB_POOL_MAX", "5"))
DB_ACQUIRE_TIMEOUT = float(os.getenv("DB_ACQUIRE_TIMEOUT", "30"))
INSERT_PAGE_SIZE   = int(os.getenv("INSERT_PAGE_SIZE", "100"))

# ── Tables ─────────────────────────────────────────────────────────────────────
TABLE_PREFIX  = os.getenv("TABLE_PREFIX", "repos")
HISTORY_TABLE = "query_history"

# ── Logging ────────────────────────────────────────────────────────────────────
LOG_LEVEL = os.getenv("LOG_LEVEL", "WARNING").upper()


def require(name: str, value):
    """Return value, or raise ConfigurationError when it is unset/empty."""
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ConfigurationError(f"{name} is required (set it in the environment or .env)")
    return value
