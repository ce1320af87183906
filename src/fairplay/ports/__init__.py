"""Port interfaces for the collaborators the import pipeline writes to."""

from fairplay.ports.game_source_client import GameSourceClient
from fairplay.ports.repositories import GameStore, ScoreFunction

__all__ = ["GameSourceClient", "GameStore", "ScoreFunction"]
