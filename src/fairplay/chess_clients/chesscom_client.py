from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from typing import cast
from urllib.parse import parse_qs, quote, urlencode, urlparse, urlunparse

import requests
from pydantic import ValidationError

from fairplay.chess_clients.base_chess_client import (
    BaseChessClient,
    BaseChessClientContext,
    FetchReport,
    FetchRequest,
)
from fairplay.chess_clients.chesscom_records import ChesscomArchiveIndex, ChesscomGameRecord
from fairplay.errors import (
    ImportCancelledError,
    MalformedRecordError,
    SourceUnavailableError,
    TransientNetworkError,
)
from fairplay.models import GameSource, RawGame
from fairplay.utils import Now, to_int

__all__ = [
    "ChesscomClient",
    "ChesscomClientContext",
    "auth_headers",
]


@dataclass(slots=True)
class ChesscomClientContext(BaseChessClientContext):
    """Context for Chess.com API interactions."""


class ChesscomClient(BaseChessClient):
    """Archive-paginated adapter for the Chess.com published-data API.

    Monthly archives are walked newest first, and games inside a month are
    walked by `end_time` descending, so enumeration can stop as soon as the
    cursor boundary or the requested limit is reached.
    """

    source = GameSource.CHESSCOM

    def __init__(self, context: ChesscomClientContext) -> None:
        super().__init__(context)

    def fetch_games(
        self, request: FetchRequest, report: FetchReport | None = None
    ) -> Iterator[RawGame]:
        """Enumerate Chess.com games for a player.

        The archive listing is fetched eagerly; failing to reach it is the one
        job-level failure. Individual month pages are fetched lazily.

        Args:
            request: Identity, limit and optional cursor.
            report: Receives counters and per-page issues.

        Returns:
            Iterator of games, newest first.

        Raises:
            SourceUnavailableError: When the archive listing cannot be fetched.
        """

        report = report if report is not None else FetchReport()
        archives = self._fetch_archive_index(request.identity)
        return self._iter_archives(archives, request, report)

    def _fetch_archive_index(self, identity: str) -> list[str]:
        url = self.settings.chesscom.archives_url.format(
            username=quote(identity.strip().lower())
        )
        try:
            payload = self.http.get_json(url)
            index = ChesscomArchiveIndex.model_validate(payload)
        except (TransientNetworkError, requests.HTTPError, ValidationError) as exc:
            raise SourceUnavailableError(
                f"Chess.com archive listing failed for {identity}: {exc}"
            ) from exc
        if not index.archives:
            self.logger.info("No archives returned for %s", identity)
        return index.newest_first()

    def _iter_archives(
        self, archives: list[str], request: FetchRequest, report: FetchReport
    ) -> Iterator[RawGame]:
        yielded = 0
        for archive_url in archives:
            if yielded >= request.limit:
                break
            if self._cancelled():
                raise ImportCancelledError("Cancelled before fetching an archive page")
            records = self._safe_fetch_archive(archive_url, report)
            if records is None:
                continue
            crossed_cursor = False
            for game in self._ordered_games(records, request.identity, report):
                if request.cursor is not None and not request.cursor.allows(game.occurred_at_unix):
                    report.skipped_by_cursor += 1
                    crossed_cursor = True
                    break
                if not self._admit(game, request, report):
                    continue
                yield game
                yielded += 1
                if yielded >= request.limit:
                    break
            if crossed_cursor:
                self.logger.debug("Reached cursor boundary in %s", archive_url)
                break
        self.logger.info("Enumerated %s new Chess.com games for %s", yielded, request.identity)

    def _safe_fetch_archive(self, archive_url: str, report: FetchReport) -> list[dict] | None:
        """Fetch one archive month, recording a failure instead of raising.

        Returns:
            Raw game payloads, or None when the page could not be fetched.
        """

        try:
            return self._fetch_archive_pages(archive_url)
        except (TransientNetworkError, requests.HTTPError, MalformedRecordError) as exc:
            self.logger.warning("Failed to fetch archive %s: %s", archive_url, exc)
            report.add_issue("page", f"{archive_url}: {exc}")
            return None

    def _fetch_archive_pages(self, archive_url: str) -> list[dict]:
        """Fetch all pages for a given archive URL.

        Args:
            archive_url: Archive endpoint URL.

        Returns:
            List of raw game dictionaries.
        """

        games: list[dict] = []
        next_url: str | None = archive_url
        seen_urls: set[str] = set()
        while next_url:
            if next_url in seen_urls:
                self.logger.warning("Pagination loop detected for %s", archive_url)
                break
            seen_urls.add(next_url)
            payload = self.http.get_json(next_url)
            if not isinstance(payload, dict):
                raise MalformedRecordError(f"Unexpected archive payload from {next_url}")
            page_games = payload.get("games", [])
            if isinstance(page_games, list):
                games.extend(game for game in page_games if isinstance(game, dict))
            next_url = _next_page_url(payload, next_url)
        return games

    def _ordered_games(
        self, records: Iterable[dict], identity: str, report: FetchReport
    ) -> list[RawGame]:
        games: list[RawGame] = []
        time_class = self.settings.chesscom.time_class
        for raw in records:
            report.candidates += 1
            try:
                record = ChesscomGameRecord.model_validate(raw)
            except ValidationError as exc:
                report.malformed += 1
                report.add_issue("malformed", _describe(exc), external_id=_raw_id(raw))
                self.logger.debug("Dropping malformed Chess.com record: %s", exc)
                continue
            if time_class and record.time_class != time_class:
                continue
            game = self._to_raw_game(record, identity)
            if game is None:
                report.malformed += 1
                report.add_issue(
                    "malformed",
                    f"{identity} is neither side of the game",
                    external_id=record.external_id,
                )
                continue
            games.append(game)
        games.sort(key=lambda game: game.occurred_at_unix, reverse=True)
        return games

    def _to_raw_game(self, record: ChesscomGameRecord, identity: str) -> RawGame | None:
        side = record.side_for(identity)
        if side is None:
            return None
        return RawGame(
            external_id=record.external_id,
            source=self.source,
            pgn_text=record.pgn,
            played_on=Now.unix_to_date(record.end_time),
            result=side.outcome(),
            rating=side.rating,
            time_control=record.time_control or "unknown",
            opening=record.opening(),
            occurred_at_unix=record.end_time,
        )


def auth_headers(token: str | None) -> dict[str, str]:
    """Build authorization headers.

    Args:
        token: API token if available.

    Returns:
        Headers dict for the request.
    """

    if not token:
        return {}
    return {"Authorization": f"Bearer {token}"}


def _next_page_url(data: dict, current_url: str) -> str | None:
    """Resolve the next page URL from a response payload.

    Args:
        data: Response payload.
        current_url: Current URL used for pagination.

    Returns:
        Next page URL if available.
    """

    candidate = _next_page_candidate(data)
    return candidate or _page_from_numbers(data, current_url)


def _next_page_candidate(data: dict) -> str | None:
    for key in ("next_page", "next", "next_url", "nextPage"):
        value = data.get(key)
        if isinstance(value, str) and value:
            return value
        if isinstance(value, Mapping):
            href = cast(Mapping[str, object], value).get("href")
            if isinstance(href, str) and href:
                return href
    return None


def _page_from_numbers(data: dict, current_url: str) -> str | None:
    page = to_int(data.get("page") or data.get("current_page"))
    total_pages = to_int(data.get("total_pages") or data.get("totalPages"))
    if page is None or total_pages is None or page >= total_pages:
        return None
    parsed = urlparse(current_url)
    query = parse_qs(parsed.query)
    query["page"] = [str(page + 1)]
    return urlunparse(parsed._replace(query=urlencode(query, doseq=True)))


def _describe(exc: ValidationError) -> str:
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"Invalid Chess.com record ({location}: {first.get('msg', exc)})"


def _raw_id(raw: dict) -> str | None:
    value = raw.get("uuid") or raw.get("url")
    return str(value) if value else None
