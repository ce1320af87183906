"""Normalized representation of one fetched or parsed game."""

from __future__ import annotations

from datetime import date
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class GameSource(StrEnum):
    """External platforms games are imported from."""

    CHESSCOM = "chesscom"
    LICHESS = "lichess"

    @classmethod
    def parse(cls, value: str | GameSource) -> GameSource:
        """Resolve loose spellings ("chess.com", "Lichess") to a source.

        Raises:
            ValueError: When the value names no known source.
        """

        if isinstance(value, GameSource):
            return value
        normalized = value.strip().lower().replace(".", "").replace("-", "").replace("_", "")
        for member in cls:
            if member.value == normalized:
                return member
        raise ValueError(f"Unknown game source: {value!r}")


class GameResult(StrEnum):
    """Game outcome from the subject player's perspective."""

    WIN = "Win"
    LOSS = "Loss"
    DRAW = "Draw"
    UNKNOWN = "Unknown"


class RawGame(BaseModel):
    """A game as produced by a source adapter or the PGN parser.

    Attributes:
        external_id: Identifier unique within `source`; never reused.
        source: Platform the game came from.
        pgn_text: Full game notation.
        played_on: Calendar date the game was played (UTC).
        result: Outcome for the subject player.
        rating: Subject player's rating in this game.
        time_control: Time control string (e.g. "300+2").
        opening: Opening name or ECO code when known.
        occurred_at_unix: Unix seconds used for ordering and cursor checks.
    """

    model_config = ConfigDict(frozen=True)

    external_id: str = Field(min_length=1)
    source: GameSource
    pgn_text: str = ""
    played_on: date
    result: GameResult = GameResult.UNKNOWN
    rating: int = 0
    time_control: str = "unknown"
    opening: str | None = None
    occurred_at_unix: int = Field(ge=0)

    @property
    def key(self) -> tuple[str, str]:
        """Dedup key for this game."""
        return (self.source.value, self.external_id)
