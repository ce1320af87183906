from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, ClassVar

from fairplay.chess_clients.http import RateLimitedHttp
from fairplay.config import Settings
from fairplay.models import GameSource, RawGame, SyncCursor

if TYPE_CHECKING:
    from fairplay.dedup_gate import DedupGate


@dataclass(slots=True)
class FetchRequest:
    """Parameters for one adapter enumeration.

    Attributes:
        identity: Player username on the source.
        limit: Maximum number of games to yield.
        cursor: Resume point; games at or before it are skipped.
    """

    identity: str
    limit: int
    cursor: SyncCursor | None = None

    @property
    def since_unix(self) -> int:
        return self.cursor.last_imported_at_unix if self.cursor else 0


@dataclass(slots=True)
class FetchIssue:
    """A non-fatal problem met while enumerating a source."""

    kind: str
    message: str
    external_id: str | None = None


@dataclass(slots=True)
class FetchReport:
    """Counters an adapter fills in while it yields games.

    Attributes:
        candidates: Records decoded from the source before filtering.
        malformed: Records that failed validation and were dropped.
        skipped_by_cursor: Records at or before the cursor.
        skipped_existing: Records the dedup gate reported as already imported.
        out_of_order: Records that broke the newest-first ordering guarantee.
        issues: Per-page or per-record failures.
    """

    candidates: int = 0
    malformed: int = 0
    skipped_by_cursor: int = 0
    skipped_existing: int = 0
    out_of_order: int = 0
    issues: list[FetchIssue] = field(default_factory=list)

    def add_issue(self, kind: str, message: str, external_id: str | None = None) -> None:
        self.issues.append(FetchIssue(kind=kind, message=message, external_id=external_id))


@dataclass(slots=True)
class BaseChessClientContext:
    """Shared context for chess source adapters.

    Attributes:
        settings: Application settings used for API calls.
        logger: Logger for client-specific messages.
        http: Rate-limited HTTP access; None for offline sources.
        dedup_gate: Existence check consulted before a game is yielded.
        cancel_event: Set to request cooperative cancellation.
    """

    settings: Settings
    logger: logging.Logger
    http: RateLimitedHttp | None = None
    dedup_gate: DedupGate | None = None
    cancel_event: threading.Event | None = None


class BaseChessClient:
    """Base class for chess source adapters.

    Subclasses implement `fetch_games`, yielding `RawGame` instances newest
    first and recording anything they drop on the supplied `FetchReport`.
    """

    source: GameSource
    resumable: ClassVar[bool] = True

    def __init__(self, context: BaseChessClientContext) -> None:
        """Initialize the client with shared context.

        Args:
            context: Base context containing settings and logger.
        """

        self._context = context

    @property
    def settings(self) -> Settings:
        return self._context.settings

    @property
    def logger(self) -> logging.Logger:
        return self._context.logger

    @property
    def http(self) -> RateLimitedHttp:
        if self._context.http is None:
            raise RuntimeError(f"{type(self).__name__} has no HTTP client configured")
        return self._context.http

    def fetch_games(
        self, request: FetchRequest, report: FetchReport | None = None
    ) -> Iterator[RawGame]:
        """Lazily enumerate games for a player.

        Args:
            request: Identity, limit and optional cursor.
            report: Receives counters and non-fatal issues.

        Returns:
            An iterator of games, newest first, at most `request.limit` long.

        Raises:
            NotImplementedError: When the subclass does not implement this method.
        """

        raise NotImplementedError("Subclasses must implement fetch_games")

    def _cancelled(self) -> bool:
        event = self._context.cancel_event
        return event is not None and event.is_set()

    def _admit(self, game: RawGame, request: FetchRequest, report: FetchReport) -> bool:
        """Apply the cursor and dedup checks to a candidate game.

        Returns:
            True when the game should be yielded.
        """

        if request.cursor is not None and not request.cursor.allows(game.occurred_at_unix):
            report.skipped_by_cursor += 1
            return False
        gate = self._context.dedup_gate
        if gate is not None and gate.exists(game.source, game.external_id):
            self.logger.debug("Skipping %s %s; already imported", game.source, game.external_id)
            report.skipped_existing += 1
            return False
        return True
