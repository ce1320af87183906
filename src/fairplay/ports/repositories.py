"""Repository port interfaces for the persistence boundary."""

from __future__ import annotations

from collections.abc import Callable
from datetime import date
from typing import Protocol

from fairplay.models import GameResult, GameScore, GameSource, RawGame, SyncCursor


class PlayerRepository(Protocol):
    """Repository interface for players keyed by a derived hash."""

    def player_exists(self, player_hash: str) -> int | None:
        """Return the player id for the hash, or None."""

    def create_player(self, player_hash: str, rating: int) -> int:
        """Insert a player and return its id."""

    def update_player_rating(self, player_id: int, rating: int) -> None:
        """Store the latest known rating for a player."""


class GameRepository(Protocol):
    """Repository interface for games and their 1:1 scores."""

    def game_exists(self, source: GameSource, external_id: str) -> bool:
        """Return True when the (source, external id) pair is stored."""

    def create_game(
        self,
        player_id: int,
        source: GameSource,
        external_id: str,
        played_on: date,
        result: GameResult,
    ) -> int:
        """Insert a game and return its id.

        Raises DuplicateGameError when the pair already exists.
        """

    def create_score(self, game_id: int, metrics: GameScore) -> int:
        """Insert the score for a game and return its id."""


class CursorRepository(Protocol):
    """Repository interface for sync cursors."""

    def get_cursor(self, source: GameSource, identity: str) -> SyncCursor | None:
        """Return the stored cursor, or None."""

    def advance_cursor(
        self,
        source: GameSource,
        identity: str,
        ts: int,
        external_id: str | None,
        increment_by: int,
    ) -> SyncCursor:
        """Atomically move the cursor forward and return the stored state.

        The timestamp never moves backwards; `increment_by` is always added.
        """

    def reset_cursor(self, source: GameSource, identity: str) -> bool:
        """Delete the cursor; return True when one existed."""


class GameStore(PlayerRepository, GameRepository, CursorRepository, Protocol):
    """Everything the import pipeline needs from the store."""


ScoreFunction = Callable[[RawGame], GameScore]
