"""Lichess streaming adapter (NDJSON game export)."""

from __future__ import annotations

import json
from collections.abc import Iterator
from dataclasses import dataclass
from typing import cast
from urllib.parse import quote

import berserk
import requests
from berserk.types.common import PerfType
from pydantic import ValidationError

from fairplay.chess_clients.base_chess_client import (
    BaseChessClient,
    BaseChessClientContext,
    FetchReport,
    FetchRequest,
)
from fairplay.chess_clients.lichess_records import LichessGameRecord, build_pgn
from fairplay.config import Settings
from fairplay.errors import SourceUnavailableError, TransientNetworkError
from fairplay.models import GameSource, RawGame
from fairplay.utils import Now

NDJSON_CONTENT_TYPE = "application/x-ndjson"

_PERF_TYPES: set[str] = {
    "ultraBullet",
    "bullet",
    "blitz",
    "rapid",
    "classical",
    "correspondence",
    "chess960",
}


def _coerce_perf_type(value: str | None) -> PerfType | None:
    """Coerce a string to a Lichess perf type.

    Args:
        value: Perf type string.

    Returns:
        Perf type if valid, otherwise None.
    """

    if not value:
        return None
    if value in _PERF_TYPES:
        return cast(PerfType, value)
    return None


def build_session(settings: Settings) -> requests.Session:
    """Build the HTTP session for Lichess, authenticated when a token is configured."""

    token = settings.lichess.token
    if token:
        return berserk.TokenSession(token)
    return requests.Session()


@dataclass(slots=True)
class LichessClientContext(BaseChessClientContext):
    """Context for Lichess API interactions."""


class LichessClient(BaseChessClient):
    """Streaming adapter for the Lichess game export endpoint.

    One request is issued per job. The `since` parameter lets Lichess drop
    games older than the cursor, but every record is still re-checked
    against the cursor before it is yielded.
    """

    source = GameSource.LICHESS

    def __init__(self, context: LichessClientContext) -> None:
        super().__init__(context)

    def fetch_games(
        self, request: FetchRequest, report: FetchReport | None = None
    ) -> Iterator[RawGame]:
        """Stream Lichess games for a player.

        Args:
            request: Identity, limit and optional cursor.
            report: Receives counters and stream issues.

        Returns:
            Iterator of games, newest first.

        Raises:
            SourceUnavailableError: When the stream cannot be opened.
        """

        report = report if report is not None else FetchReport()
        lines = self._open_stream(request)
        return self._iter_records(lines, request, report)

    def _request_params(self, request: FetchRequest) -> dict[str, object]:
        params: dict[str, object] = {
            "max": max(min(request.limit, self.settings.lichess.max_games_per_request), 1),
            "pgnInJson": "true",
            "moves": "true",
            "opening": "true",
            "sort": "dateDesc",
        }
        perf_type = _coerce_perf_type(self.settings.lichess.perf_type)
        if perf_type:
            params["perfType"] = perf_type
        if request.since_unix:
            params["since"] = request.since_unix * 1000
        return params

    def _open_stream(self, request: FetchRequest) -> Iterator[bytes]:
        url = self.settings.lichess.games_url.format(username=quote(request.identity.strip()))
        lines = self.http.stream_lines(
            url,
            params=self._request_params(request),
            headers={"Accept": NDJSON_CONTENT_TYPE},
        )
        self.logger.info(
            "Fetching Lichess games for user=%s since=%s", request.identity, request.since_unix
        )
        try:
            first = next(lines)
        except StopIteration:
            return iter(())
        except (TransientNetworkError, requests.HTTPError) as exc:
            raise SourceUnavailableError(
                f"Lichess export failed for {request.identity}: {exc}"
            ) from exc
        return _chain_first(first, lines)

    def _iter_records(
        self, lines: Iterator[bytes], request: FetchRequest, report: FetchReport
    ) -> Iterator[RawGame]:
        yielded = 0
        previous_ts: int | None = None
        try:
            for line in lines:
                if yielded >= request.limit:
                    break
                record = self._decode_line(line, report)
                if record is None:
                    continue
                game = self._to_raw_game(record, request.identity, report)
                if game is None:
                    continue
                if previous_ts is not None and game.occurred_at_unix > previous_ts:
                    report.out_of_order += 1
                    self.logger.warning(
                        "Lichess returned %s out of date order (%s after %s)",
                        game.external_id,
                        game.occurred_at_unix,
                        previous_ts,
                    )
                previous_ts = game.occurred_at_unix
                if not self._admit(game, request, report):
                    continue
                yield game
                yielded += 1
        except TransientNetworkError as exc:
            self.logger.warning("Lichess stream ended early: %s", exc)
            report.add_issue("stream", str(exc))
        finally:
            close = getattr(lines, "close", None)
            if close is not None:
                close()
        self.logger.info("Enumerated %s new Lichess games for %s", yielded, request.identity)

    def _decode_line(self, line: bytes, report: FetchReport) -> LichessGameRecord | None:
        report.candidates += 1
        try:
            payload = json.loads(line)
            return LichessGameRecord.model_validate(payload)
        except (json.JSONDecodeError, UnicodeDecodeError, ValidationError) as exc:
            report.malformed += 1
            report.add_issue("malformed", f"Unparseable Lichess record: {type(exc).__name__}")
            self.logger.debug("Skipping malformed Lichess line: %s", exc)
            return None

    def _to_raw_game(
        self, record: LichessGameRecord, identity: str, report: FetchReport
    ) -> RawGame | None:
        color = record.side_for(identity)
        if color is None:
            report.malformed += 1
            report.add_issue("malformed", f"{identity} is neither side of the game", record.id)
            return None
        player = record.players.white if color == "white" else record.players.black
        return RawGame(
            external_id=record.id,
            source=self.source,
            pgn_text=record.pgn or build_pgn(record),
            played_on=Now.unix_to_date(record.occurred_at_unix),
            result=record.outcome_for(color),
            rating=player.rating,
            time_control=record.time_control(),
            opening=record.opening_name(),
            occurred_at_unix=record.occurred_at_unix,
        )


def _chain_first(first: bytes, rest: Iterator[bytes]) -> Iterator[bytes]:
    yield first
    yield from rest
