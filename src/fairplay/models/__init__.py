"""Domain models shared across the ingestion pipeline."""

from fairplay.models.game_score import GameScore
from fairplay.models.raw_game import GameResult, GameSource, RawGame
from fairplay.models.sync_cursor import SyncCursor

__all__ = [
    "GameResult",
    "GameScore",
    "GameSource",
    "RawGame",
    "SyncCursor",
]
