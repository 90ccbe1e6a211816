"""Timestamped names for per-run repository tables."""
import re
from datetime import datetime, timezone

from ghpg import config

TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"
PREFIX_PATTERN   = re.compile(r"^[a-z][a-z0-9_]*$")


def generate_table_name(now: datetime = None, prefix: str = None) -> str:
    """
    Build ``<prefix>_YYYYMMDDHHMMSS`` from the current UTC time.

    Fixed width and zero padded, so lexical order is chronological order.
    Two calls within the same second return the same name.
    """
    prefix = prefix or config.TABLE_PREFIX
    if not PREFIX_PATTERN.match(prefix):
        raise ValueError(f"Invalid table prefix: {prefix!r}")

    now = now or datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return f"{prefix}_{now.strftime(TIMESTAMP_FORMAT)}"


def table_name_pattern(prefix: str = None) -> re.Pattern:
    prefix = prefix or config.TABLE_PREFIX
    return re.compile(rf"^{re.escape(prefix)}_\d{{14}}$")


def is_valid_table_name(name: str, prefix: str = None) -> bool:
    return bool(name) and bool(table_name_pattern(prefix).match(name))
