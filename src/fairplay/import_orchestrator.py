"""Drive one import job: fetch, deduplicate, write in batches, advance the cursor.

A job moves through the phases

    idle -> fetching -> deduplicating -> writing -> advancing -> done | partial_failure

Every game is written in isolation: a failure on one game is recorded in the
summary and the job moves on. Only an unreachable source (the adapter raising
`SourceUnavailableError` before any game is produced) fails the whole job.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from enum import StrEnum

from pydantic import BaseModel, Field

from fairplay.chess_clients.base_chess_client import FetchReport, FetchRequest
from fairplay.config import Settings
from fairplay.dedup_gate import DedupGate
from fairplay.errors import (
    DuplicateGameError,
    ImportCancelledError,
    PersistenceError,
)
from fairplay.events import HighRiskScoreEvent, ScoreEventBus
from fairplay.models import GameScore, GameSource, RawGame, SyncCursor
from fairplay.ports import GameSourceClient, GameStore, ScoreFunction
from fairplay.scoring import score_game
from fairplay.sync_cursor_store import SyncCursorStore, normalize_identity
from fairplay.utils import player_hash
from fairplay.utils.logger import get_logger

logger = get_logger(__name__)

ProgressCallback = Callable[[dict[str, object]], None]


class ImportPhase(StrEnum):
    IDLE = "idle"
    FETCHING = "fetching"
    DEDUPLICATING = "deduplicating"
    WRITING = "writing"
    ADVANCING = "advancing"
    DONE = "done"
    PARTIAL_FAILURE = "partial_failure"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in {ImportPhase.DONE, ImportPhase.PARTIAL_FAILURE, ImportPhase.FAILED}


class ImportProgress(BaseModel):
    """Point-in-time view of a running job."""

    phase: ImportPhase = ImportPhase.IDLE
    current: int = 0
    total: int = 0


class ImportFailure(BaseModel):
    """One per-game or per-page problem recorded during a job.

    Attributes:
        kind: "malformed", "page", "stream", "persistence", "score" or "cursor".
        message: Human readable description.
        external_id: The affected game, when known.
    """

    kind: str
    message: str
    external_id: str | None = None


class ImportSummary(BaseModel):
    """Final outcome of an import job.

    Attributes:
        source: Platform that was imported from.
        identity: Subject player.
        imported_count: Games whose game and score writes both succeeded.
        skipped_count: Games already imported (stored, or repeated in this fetch).
        total_fetched: Games the source produced, including those skipped as existing.
        malformed_count: Records dropped because they failed validation.
        errors: Per-game and per-page failures.
        cancelled: True when the job stopped on a cancellation request.
        phase: Terminal phase (done, partial_failure or failed).
        cursor: The sync cursor after the job, for resumable sources.
    """

    source: GameSource
    identity: str
    imported_count: int = 0
    skipped_count: int = 0
    total_fetched: int = 0
    malformed_count: int = 0
    errors: list[ImportFailure] = Field(default_factory=list)
    cancelled: bool = False
    phase: ImportPhase = ImportPhase.IDLE
    cursor: SyncCursor | None = None


def _emit_progress(progress: ProgressCallback | None, step: str, **fields: object) -> None:
    """Invoke the progress callback with a timestamped payload.

    Args:
        progress: Callback accepting a payload dict, or None.
        step: Current phase name.
        **fields: Additional payload entries.
    """

    if progress is None:
        return
    payload: dict[str, object] = {"step": step, "timestamp": time.time()}
    payload.update(fields)
    progress(payload)


class ImportOrchestrator:
    """Run import jobs against one game store.

    The orchestrator itself is stateless between runs; each call to `run`
    gets its own dedup claims, counters and cancellation flag.
    """

    def __init__(
        self,
        settings: Settings,
        store: GameStore,
        *,
        score_fn: ScoreFunction = score_game,
        event_bus: ScoreEventBus | None = None,
        sleeper: Callable[[float], None] | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._cursor_store = SyncCursorStore(store)
        self._score_fn = score_fn
        self._event_bus = event_bus
        self._sleep = sleeper or time.sleep

    @property
    def cursor_store(self) -> SyncCursorStore:
        return self._cursor_store

    def clamp_limit(self, limit: int | None) -> int:
        """Apply the default and clamp to 1..max_limit."""
        imports = self._settings.imports
        requested = imports.default_limit if limit is None else limit
        return max(1, min(requested, imports.max_limit))

    def run(
        self,
        client: GameSourceClient,
        identity: str,
        limit: int | None = None,
        *,
        dedup_gate: DedupGate | None = None,
        cancel_event: threading.Event | None = None,
        progress: ProgressCallback | None = None,
    ) -> ImportSummary:
        """Import up to `limit` new games for `identity` from `client`.

        Args:
            client: Source adapter to enumerate.
            identity: Player username on the source.
            limit: Requested number of games; clamped to the configured maximum.
            dedup_gate: Gate shared with the adapter; a fresh one is used when omitted.
            cancel_event: Set to stop the job at the next batch boundary.
            progress: Receives phase and counter payloads.

        Returns:
            Summary of the job.

        Raises:
            SourceUnavailableError: When the source cannot be reached at all.
        """

        identity = normalize_identity(identity)
        gate = dedup_gate or DedupGate(self._store)
        summary = ImportSummary(source=client.source, identity=identity)
        run = _JobRun(
            summary=summary,
            cancel_event=cancel_event,
            progress=progress,
            player_key=player_hash(client.source.value, identity),
        )

        cursor = self._cursor_store.get(client.source, identity) if client.resumable else None
        request = FetchRequest(identity=identity, limit=self.clamp_limit(limit), cursor=cursor)
        logger.info(
            "Starting %s import for %s (limit=%s, since=%s)",
            client.source,
            identity,
            request.limit,
            request.since_unix,
        )

        fetched = self._fetch(client, request, run)
        survivors = self._deduplicate(fetched, gate, run)
        try:
            if not run.cancelled:
                self._write_all(survivors, identity, run)
        finally:
            if client.resumable:
                self._advance(client.source, identity, run)

        summary.cancelled = run.cancelled
        summary.phase = ImportPhase.PARTIAL_FAILURE if summary.errors else ImportPhase.DONE
        run.emit(summary.phase, current=summary.imported_count, total=len(survivors))
        logger.info(
            "Finished %s import for %s: imported=%s skipped=%s errors=%s cancelled=%s",
            client.source,
            identity,
            summary.imported_count,
            summary.skipped_count,
            len(summary.errors),
            summary.cancelled,
        )
        return summary

    def _fetch(
        self, client: GameSourceClient, request: FetchRequest, run: _JobRun
    ) -> list[RawGame]:
        run.emit(ImportPhase.FETCHING, current=0, total=request.limit)
        report = FetchReport()
        fetched: list[RawGame] = []
        try:
            for game in client.fetch_games(request, report):
                fetched.append(game)
                run.emit(ImportPhase.FETCHING, current=len(fetched), total=request.limit)
                if run.cancel_requested():
                    raise ImportCancelledError("Cancelled while fetching")
        except ImportCancelledError:
            logger.info("Import cancelled during fetch after %s games", len(fetched))
            run.cancelled = True
        summary = run.summary
        summary.total_fetched = len(fetched) + report.skipped_existing
        summary.skipped_count += report.skipped_existing
        summary.malformed_count = report.malformed
        summary.errors.extend(
            ImportFailure(kind=issue.kind, message=issue.message, external_id=issue.external_id)
            for issue in report.issues
        )
        if report.out_of_order:
            logger.warning(
                "%s games from %s arrived out of order", report.out_of_order, client.source
            )
        return fetched

    def _deduplicate(self, games: list[RawGame], gate: DedupGate, run: _JobRun) -> list[RawGame]:
        run.emit(ImportPhase.DEDUPLICATING, current=0, total=len(games))
        survivors: list[RawGame] = []
        for game in games:
            if gate.claim(game.source, game.external_id):
                survivors.append(game)
            else:
                logger.debug("Skipping duplicate %s %s", game.source, game.external_id)
                run.summary.skipped_count += 1
        return survivors

    def _write_all(self, games: list[RawGame], identity: str, run: _JobRun) -> None:
        imports = self._settings.imports
        batch_size = self._settings.batch_size
        total = len(games)
        run.emit(ImportPhase.WRITING, current=0, total=total)
        for start in range(0, total, batch_size):
            if run.cancel_requested():
                logger.info("Import cancelled before batch starting at %s", start)
                run.cancelled = True
                return
            batch = games[start : start + batch_size]
            for offset, game in enumerate(batch):
                if offset:
                    self._pause(imports.inter_game_delay_ms, run)
                self._write_one(game, identity, run)
                run.emit(ImportPhase.WRITING, current=start + offset + 1, total=total)
            if start + batch_size < total:
                self._pause(imports.inter_batch_delay_ms, run)

    def _write_one(self, game: RawGame, identity: str, run: _JobRun) -> None:
        summary = run.summary
        try:
            player_id = self._resolve_player(game, run)
            game_id = self._store.create_game(
                player_id, game.source, game.external_id, game.played_on, game.result
            )
        except DuplicateGameError:
            logger.debug("Game %s %s already stored", game.source, game.external_id)
            summary.skipped_count += 1
            return
        except PersistenceError as exc:
            logger.warning("Failed to store game %s: %s", game.external_id, exc)
            summary.errors.append(
                ImportFailure(kind="persistence", message=str(exc), external_id=game.external_id)
            )
            return

        try:
            score = self._score_fn(game)
            self._store.create_score(game_id, score)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            logger.warning("Failed to score game %s: %s", game.external_id, exc)
            summary.errors.append(
                ImportFailure(kind="score", message=str(exc), external_id=game.external_id)
            )
            return

        summary.imported_count += 1
        run.succeeded.append(game)
        if score.suspicion_level >= self._settings.imports.high_risk_threshold:
            self._publish_high_risk(game_id, game, identity, score)

    def _resolve_player(self, game: RawGame, run: _JobRun) -> int:
        # Games arrive newest first, so only the first write refreshes the rating.
        if run.player_id is not None:
            return run.player_id
        player_id = self._store.player_exists(run.player_key)
        if player_id is None:
            player_id = self._store.create_player(run.player_key, game.rating)
        else:
            self._store.update_player_rating(player_id, game.rating)
        run.player_id = player_id
        return player_id

    def _publish_high_risk(
        self, game_id: int, game: RawGame, identity: str, score: GameScore
    ) -> None:
        if self._event_bus is None:
            return
        self._event_bus.publish(
            HighRiskScoreEvent.from_score(
                game_id=game_id,
                source=game.source,
                external_id=game.external_id,
                identity=identity,
                score=score,
            )
        )

    def _advance(self, source: GameSource, identity: str, run: _JobRun) -> None:
        summary = run.summary
        run.emit(ImportPhase.ADVANCING, current=len(run.succeeded), total=len(run.succeeded))
        if not run.succeeded:
            summary.cursor = self._cursor_store.get(source, identity)
            return
        newest = max(run.succeeded, key=lambda game: game.occurred_at_unix)
        try:
            advanced = self._cursor_store.advance(
                source,
                identity,
                newest.occurred_at_unix,
                newest.external_id,
                len(run.succeeded),
            )
        except PersistenceError as exc:
            logger.error("Failed to advance cursor for %s/%s: %s", source, identity, exc)
            summary.errors.append(ImportFailure(kind="cursor", message=str(exc)))
            return
        summary.cursor = advanced.cursor

    def _pause(self, delay_ms: int, run: _JobRun) -> None:
        if delay_ms <= 0:
            return
        if run.cancel_event is not None:
            run.cancel_event.wait(delay_ms / 1000.0)
        else:
            self._sleep(delay_ms / 1000.0)


class _JobRun:
    """Mutable state for one call to `ImportOrchestrator.run`."""

    def __init__(
        self,
        *,
        summary: ImportSummary,
        cancel_event: threading.Event | None,
        progress: ProgressCallback | None,
        player_key: str,
    ) -> None:
        self.summary = summary
        self.cancel_event = cancel_event
        self.progress = progress
        self.player_key = player_key
        self.player_id: int | None = None
        self.succeeded: list[RawGame] = []
        self.cancelled = False

    def cancel_requested(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def emit(self, phase: ImportPhase, *, current: int, total: int) -> None:
        self.summary.phase = phase
        _emit_progress(
            self.progress,
            phase.value,
            phase=phase.value,
            current=current,
            total=total,
            imported=self.summary.imported_count,
            skipped=self.summary.skipped_count,
        )
