"""DuckDB-backed persistence for imported games."""

from fairplay.db.duckdb_store import DuckDbGameStore, get_connection, init_schema

__all__ = ["DuckDbGameStore", "get_connection", "init_schema"]
