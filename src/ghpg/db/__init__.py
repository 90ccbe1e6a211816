"""
Storage Stage - PostgreSQL persistence

Per-run repository tables named ``<prefix>_YYYYMMDDHHMMSS`` plus the
append-only ``query_history`` audit table.
"""
from ghpg.db.db import RepositoryDatabase
from ghpg.db.naming import generate_table_name, is_valid_table_name

__all__ = ["RepositoryDatabase", "generate_table_name", "is_valid_table_name"]
