"""Typed views of Lichess NDJSON game export records."""

from __future__ import annotations

import chess
import chess.pgn
from pydantic import BaseModel, ConfigDict, Field

from fairplay.models import GameResult
from fairplay.utils import Now

SPEED_TIME_CONTROLS: dict[str, str] = {
    "bullet": "1+0",
    "blitz": "5+0",
    "rapid": "10+0",
    "classical": "30+0",
    "correspondence": "Daily",
}
DRAW_STATUSES = frozenset({"draw", "stalemate"})
UNFINISHED_STATUSES = frozenset({"created", "started", "aborted", "noStart", "unknownFinish"})


class LichessUser(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = ""
    id: str = ""


class LichessPlayerRecord(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    user: LichessUser | None = None
    rating: int = 0
    rating_diff: int | None = Field(default=None, alias="ratingDiff")

    @property
    def name(self) -> str:
        return self.user.name if self.user else ""

    def matches(self, username: str) -> bool:
        if self.user is None:
            return False
        wanted = username.strip().lower()
        return wanted in {self.user.name.lower(), self.user.id.lower()}


class LichessPlayers(BaseModel):
    model_config = ConfigDict(extra="ignore")

    white: LichessPlayerRecord
    black: LichessPlayerRecord


class LichessOpening(BaseModel):
    model_config = ConfigDict(extra="ignore")

    eco: str = ""
    name: str = ""
    ply: int = 0


class LichessClock(BaseModel):
    model_config = ConfigDict(extra="ignore")

    initial: int = Field(ge=0)
    increment: int = Field(default=0, ge=0)


class LichessGameRecord(BaseModel):
    """One line of the `application/x-ndjson` game export."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str = Field(min_length=1)
    rated: bool = False
    variant: str = "standard"
    speed: str = ""
    perf: str = ""
    created_at: int = Field(alias="createdAt", ge=0)
    last_move_at: int | None = Field(default=None, alias="lastMoveAt")
    status: str = ""
    winner: str | None = None
    players: LichessPlayers
    opening: LichessOpening | None = None
    moves: str = ""
    pgn: str = ""
    clock: LichessClock | None = None

    @property
    def occurred_at_unix(self) -> int:
        return self.created_at // 1000

    def side_for(self, username: str) -> str | None:
        """Return "white" or "black" for `username`, or None if they did not play."""
        if self.players.white.matches(username):
            return "white"
        if self.players.black.matches(username):
            return "black"
        return None

    def outcome_for(self, color: str) -> GameResult:
        if self.winner in {"white", "black"}:
            return GameResult.WIN if self.winner == color else GameResult.LOSS
        if self.status in UNFINISHED_STATUSES:
            return GameResult.UNKNOWN
        return GameResult.DRAW

    def time_control(self) -> str:
        """Format the clock as `initial+increment`, else map the speed name."""
        if self.clock is not None:
            return f"{self.clock.initial}+{self.clock.increment}"
        return SPEED_TIME_CONTROLS.get(self.speed) or self.perf or self.speed or "unknown"

    def opening_name(self) -> str | None:
        if self.opening is None:
            return None
        return self.opening.name or self.opening.eco or None

    def pgn_result(self) -> str:
        if self.winner == "white":
            return "1-0"
        if self.winner == "black":
            return "0-1"
        if self.status in UNFINISHED_STATUSES:
            return "*"
        return "1/2-1/2"


def build_pgn(record: LichessGameRecord) -> str:
    """Synthesize PGN text for a record exported without its `pgn` field.

    Moves are replayed with python-chess so only legal SAN is written; the
    move list is cut at the first move that cannot be parsed.
    """

    game = chess.pgn.Game()
    game.headers["Event"] = f"{'Rated' if record.rated else 'Casual'} {record.perf or record.speed} game".strip()
    game.headers["Site"] = f"https://lichess.org/{record.id}"
    game.headers["Date"] = Now.unix_to_date(record.occurred_at_unix).strftime("%Y.%m.%d")
    game.headers["White"] = record.players.white.name or "Unknown"
    game.headers["Black"] = record.players.black.name or "Unknown"
    game.headers["Result"] = record.pgn_result()
    game.headers["WhiteElo"] = str(record.players.white.rating or "?")
    game.headers["BlackElo"] = str(record.players.black.rating or "?")
    game.headers["TimeControl"] = record.time_control()
    if record.opening is not None:
        if record.opening.eco:
            game.headers["ECO"] = record.opening.eco
        if record.opening.name:
            game.headers["Opening"] = record.opening.name
    node: chess.pgn.GameNode = game
    board = game.board()
    for san in record.moves.split():
        try:
            move = board.parse_san(san)
        except ValueError:
            break
        node = node.add_variation(move)
        board.push(move)
    exporter = chess.pgn.StringExporter(headers=True, variations=False, comments=False, columns=80)
    return game.accept(exporter).strip()
