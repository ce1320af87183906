from __future__ import annotations

from collections.abc import Iterator

from fairplay.chess_clients.base_chess_client import (
    BaseChessClient,
    BaseChessClientContext,
    FetchReport,
    FetchRequest,
)
from fairplay.errors import FairplayError, ImportCancelledError
from fairplay.models import GameSource, RawGame


class MockChessClient(BaseChessClient):
    """Mock chess client that yields in-memory games."""

    def __init__(
        self,
        context: BaseChessClientContext,
        games: list[RawGame] | None = None,
        *,
        source: GameSource = GameSource.LICHESS,
        error: FairplayError | None = None,
    ) -> None:
        super().__init__(context)
        self.source = source
        self._games = list(games or [])
        self._error = error
        self.requests: list[FetchRequest] = []

    def fetch_games(
        self, request: FetchRequest, report: FetchReport | None = None
    ) -> Iterator[RawGame]:
        self.requests.append(request)
        if self._error is not None:
            raise self._error
        report = report if report is not None else FetchReport()
        return self._iter_games(request, report)

    def _iter_games(self, request: FetchRequest, report: FetchReport) -> Iterator[RawGame]:
        ordered = sorted(self._games, key=lambda game: game.occurred_at_unix, reverse=True)
        yielded = 0
        for game in ordered:
            if yielded >= request.limit:
                break
            if self._cancelled():
                raise ImportCancelledError("Cancelled while reading mock games")
            report.candidates += 1
            if not self._admit(game, request, report):
                continue
            yield game
            yielded += 1
