"""Typed views of Chess.com archive payloads."""

from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict, Field, model_validator

from fairplay.models import GameResult

CHESSCOM_DRAW_RESULTS = frozenset(
    {
        "agreed",
        "repetition",
        "stalemate",
        "insufficient",
        "50move",
        "timevsinsufficient",
    }
)
_OPENING_HEADER = re.compile(r'\[Opening "([^"]+)"\]')
_ECO_URL_HEADER = re.compile(r'\[ECOUrl "[^"]*/openings/([^"]+)"\]')
_ECO_HEADER = re.compile(r'\[ECO "([^"]+)"\]')


class ChesscomPlayerRecord(BaseModel):
    """One side of a Chess.com game."""

    model_config = ConfigDict(extra="ignore")

    username: str = Field(min_length=1)
    rating: int = 0
    result: str = ""

    def outcome(self) -> GameResult:
        """Map the Chess.com result code to a result for this side."""
        code = self.result.strip().lower()
        if not code:
            return GameResult.UNKNOWN
        if code == "win":
            return GameResult.WIN
        if code in CHESSCOM_DRAW_RESULTS:
            return GameResult.DRAW
        return GameResult.LOSS


class ChesscomGameRecord(BaseModel):
    """A single game entry from a monthly archive page."""

    model_config = ConfigDict(extra="ignore")

    url: str = ""
    uuid: str | None = None
    pgn: str = ""
    time_control: str = "unknown"
    time_class: str = ""
    end_time: int = Field(ge=0)
    rules: str = "chess"
    white: ChesscomPlayerRecord
    black: ChesscomPlayerRecord

    @model_validator(mode="after")
    def _require_identifier(self) -> ChesscomGameRecord:
        if not self.external_id:
            raise ValueError("game has neither uuid nor url")
        return self

    @property
    def external_id(self) -> str:
        """The game uuid, or the numeric tail of its URL for older payloads."""
        if self.uuid:
            return self.uuid
        return self.url.rstrip("/").rsplit("/", 1)[-1] if self.url else ""

    def side_for(self, username: str) -> ChesscomPlayerRecord | None:
        """Return the side played by `username`, matched case-insensitively."""
        wanted = username.strip().lower()
        if self.white.username.lower() == wanted:
            return self.white
        if self.black.username.lower() == wanted:
            return self.black
        return None

    def opening(self) -> str | None:
        """Extract an opening name from the PGN headers when present."""
        for pattern in (_OPENING_HEADER, _ECO_URL_HEADER, _ECO_HEADER):
            match = pattern.search(self.pgn)
            if match:
                return match.group(1).replace("-", " ") if pattern is _ECO_URL_HEADER else match.group(1)
        return None


class ChesscomArchiveIndex(BaseModel):
    """Response of the monthly archive listing endpoint."""

    model_config = ConfigDict(extra="ignore")

    archives: list[str] = Field(default_factory=list)

    def newest_first(self) -> list[str]:
        """Archive URLs end in /YYYY/MM, so a reverse sort is newest first."""
        return sorted(self.archives, reverse=True)
