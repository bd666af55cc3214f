"""Storage layer for trustcast."""

from trustcast.storage.schema import ALLOWED_TABLES, SCHEMA_VERSION, validate_table_name
from trustcast.storage.sqlite import SQLiteStorage

__all__ = [
    "ALLOWED_TABLES",
    "SCHEMA_VERSION",
    "SQLiteStorage",
    "validate_table_name",
]
