"""Turn user-supplied PGN text into games for one subject player."""

from __future__ import annotations

import re
from collections.abc import Iterator
from dataclasses import dataclass

from fairplay.chess_clients.base_chess_client import (
    BaseChessClient,
    BaseChessClientContext,
    FetchReport,
    FetchRequest,
)
from fairplay.models import GameResult, GameSource, RawGame
from fairplay.pgn_parser import ParsedPgnGame, PgnMultiGameParser, PgnParseResult
from fairplay.utils import Now, stable_game_hash

DEFAULT_RATING = 1500

_SITE_GAME_ID_PATTERNS: dict[GameSource, re.Pattern[str]] = {
    GameSource.LICHESS: re.compile(r"lichess\.org/([A-Za-z0-9]{8})(?:[A-Za-z0-9]{4})?\b"),
}
_WINNING_TOKENS = {"1-0": "white", "0-1": "black"}


@dataclass(slots=True)
class PgnTextSourceContext(BaseChessClientContext):
    """Context for PGN text imports; no HTTP access is needed."""


class PgnTextSource(BaseChessClient):
    """Adapter that yields games parsed from a PGN upload.

    Uploaded files are not incremental, so this source neither reads nor
    advances the sync cursor (`resumable` is False). Re-uploading the same
    file is still idempotent because external ids are derived from the game
    content, or taken from the Site tag when it names a Lichess game.
    """

    resumable = False

    def __init__(
        self,
        context: PgnTextSourceContext,
        text: str,
        *,
        source: GameSource,
        parser: PgnMultiGameParser | None = None,
    ) -> None:
        super().__init__(context)
        self.source = GameSource(source)
        self._text = text
        self._parser = parser or PgnMultiGameParser()
        self._parse_result: PgnParseResult | None = None

    @property
    def parse_result(self) -> PgnParseResult:
        if self._parse_result is None:
            self._parse_result = self._parser.parse(self._text)
        return self._parse_result

    def fetch_games(
        self, request: FetchRequest, report: FetchReport | None = None
    ) -> Iterator[RawGame]:
        report = report if report is not None else FetchReport()
        parsed = self.parse_result
        for rejection in parsed.rejections:
            report.candidates += 1
            report.malformed += 1
            report.add_issue("malformed", f"Game {rejection.block_number}: {rejection.reason}")
        return self._iter_games(parsed.games, request, report)

    def _iter_games(
        self, games: list[ParsedPgnGame], request: FetchRequest, report: FetchReport
    ) -> Iterator[RawGame]:
        yielded = 0
        for number, parsed in enumerate(games, start=1):
            if yielded >= request.limit:
                break
            report.candidates += 1
            game = self.to_raw_game(parsed, request.identity)
            if game is None:
                report.add_issue(
                    "malformed",
                    f"Game {number}: player {request.identity} not found "
                    f"({parsed.white} vs {parsed.black})",
                )
                continue
            if not self._admit(game, request, report):
                continue
            yield game
            yielded += 1
        self.logger.info(
            "Parsed %s games from PGN text for %s (%s rejected)",
            len(games),
            request.identity,
            len(self.parse_result.rejections),
        )

    def to_raw_game(self, parsed: ParsedPgnGame, identity: str) -> RawGame | None:
        """Build a game from the subject player's perspective, or None if they did not play."""

        color = parsed.involves(identity)
        if color is None:
            return None
        rating = parsed.white_elo if color == "white" else parsed.black_elo
        played_on = parsed.played_on() or Now.today()
        occurred_at = parsed.occurred_at_unix()
        return RawGame(
            external_id=self._external_id(parsed),
            source=self.source,
            pgn_text=parsed.raw_text,
            played_on=played_on,
            result=_result_for(parsed.result, color),
            rating=rating or DEFAULT_RATING,
            time_control=parsed.headers.get("timecontrol") or "unknown",
            opening=parsed.headers.get("opening") or parsed.headers.get("eco"),
            occurred_at_unix=occurred_at if occurred_at is not None else Now.as_seconds(),
        )

    def _external_id(self, parsed: ParsedPgnGame) -> str:
        site = parsed.headers.get("link") or parsed.site or ""
        pattern = _SITE_GAME_ID_PATTERNS.get(self.source)
        match = pattern.search(site) if pattern else None
        if match:
            return match.group(1)
        digest = stable_game_hash(
            self.source.value,
            parsed.white.lower(),
            parsed.black.lower(),
            parsed.date or "",
            parsed.moves,
        )
        return f"pgn_{digest}"


def _result_for(token: str, color: str) -> GameResult:
    if token == "1/2-1/2":
        return GameResult.DRAW
    winner = _WINNING_TOKENS.get(token)
    if winner is None:
        return GameResult.UNKNOWN
    return GameResult.WIN if winner == color else GameResult.LOSS
