"""FairPlay Scout game ingestion entrypoints."""

from fairplay.config import Settings, get_settings
from fairplay.import_orchestrator import ImportOrchestrator, ImportSummary
from fairplay.jobs import ImportJobManager, parse_tracked_players


def main() -> None:
    """Sync every player listed in FAIRPLAY_TRACKED_PLAYERS once."""
    from fairplay.db import DuckDbGameStore

    settings = get_settings()
    store = DuckDbGameStore.open(settings.duckdb_path)
    try:
        manager = ImportJobManager(settings, store)
        report = manager.sync_tracked_players(
            parse_tracked_players(settings.imports.tracked_players)
        )
        print(
            {
                "imported": report.imported_count,
                "skipped": report.skipped_count,
                "errors": report.error_count,
                "failures": report.failures,
            }
        )
    finally:
        store.close()


__all__ = [
    "ImportJobManager",
    "ImportOrchestrator",
    "ImportSummary",
    "Settings",
    "get_settings",
    "main",
    "parse_tracked_players",
]
