"""Run import jobs on worker threads and expose their progress and results."""

from __future__ import annotations

import threading
import time
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import StrEnum

import requests

from fairplay.chess_clients.base_chess_client import BaseChessClient
from fairplay.chess_clients.chesscom_client import (
    ChesscomClient,
    ChesscomClientContext,
    auth_headers,
)
from fairplay.chess_clients.http import RateLimitedHttp, RetryPolicy
from fairplay.chess_clients.lichess_client import (
    LichessClient,
    LichessClientContext,
    build_session,
)
from fairplay.config import Settings
from fairplay.dedup_gate import DedupGate
from fairplay.errors import SourceUnavailableError
from fairplay.events import ScoreEventBus
from fairplay.import_orchestrator import (
    ImportOrchestrator,
    ImportPhase,
    ImportProgress,
    ImportSummary,
)
from fairplay.models import GameSource
from fairplay.pgn_import import PgnTextSource, PgnTextSourceContext
from fairplay.ports import GameStore
from fairplay.rate_limiter import (
    ApiHealth,
    RateLimiter,
    build_rate_limiters,
    check_api_health,
    limiter_identifier,
)
from fairplay.utils import Now
from fairplay.utils.logger import get_logger

logger = get_logger(__name__)

SessionFactory = Callable[[GameSource], requests.Session]
BOTH_SOURCES = "both"


class JobStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class JobHandle:
    """A started import job.

    Attributes:
        job_id: Opaque identifier returned to callers.
        source: Platform being imported from.
        identity: Subject player.
        kind: "api" for source imports, "pgn" for uploaded text.
        cancel_event: Set by `ImportJobManager.cancel`.
        status: running, completed or failed.
        progress: Latest progress snapshot.
        summary: Final summary once the job completed.
        error: Job-level failure message.
        created_at_ms: Start time in unix milliseconds.
    """

    job_id: str
    source: GameSource
    identity: str
    kind: str = "api"
    cancel_event: threading.Event = field(default_factory=threading.Event)
    status: JobStatus = JobStatus.RUNNING
    progress: ImportProgress = field(default_factory=ImportProgress)
    summary: ImportSummary | None = None
    error: str | None = None
    created_at_ms: int = field(default_factory=Now.as_milliseconds)
    thread: threading.Thread | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "job_id": self.job_id,
            "source": self.source.value,
            "identity": self.identity,
            "kind": self.kind,
            "status": self.status.value,
            "cancel_requested": self.cancel_event.is_set(),
            "progress": self.progress.model_dump(mode="json"),
            "summary": self.summary.model_dump(mode="json") if self.summary else None,
            "error": self.error,
            "created_at_ms": self.created_at_ms,
        }


@dataclass(slots=True)
class TrackedPlayer:
    """A player synced on a schedule; `source` may be "both"."""

    username: str
    source: str = BOTH_SOURCES

    def sources(self) -> list[GameSource]:
        if self.source == BOTH_SOURCES:
            return [GameSource.CHESSCOM, GameSource.LICHESS]
        return [GameSource.parse(self.source)]


@dataclass(slots=True)
class TrackedSyncReport:
    """Aggregate of a tracked-player sync run."""

    summaries: list[ImportSummary] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)

    @property
    def imported_count(self) -> int:
        return sum(summary.imported_count for summary in self.summaries)

    @property
    def skipped_count(self) -> int:
        return sum(summary.skipped_count for summary in self.summaries)

    @property
    def error_count(self) -> int:
        return sum(len(summary.errors) for summary in self.summaries) + len(self.failures)


def default_session_factory(settings: Settings) -> SessionFactory:
    def factory(source: GameSource) -> requests.Session:
        if source == GameSource.LICHESS:
            return build_session(settings)
        return requests.Session()

    return factory


def build_chess_client(
    settings: Settings,
    source: GameSource,
    identity: str,
    *,
    limiter: RateLimiter,
    session: requests.Session,
    dedup_gate: DedupGate | None = None,
    cancel_event: threading.Event | None = None,
    sleeper: Callable[[float], None] | None = None,
) -> BaseChessClient:
    """Build a rate-limited adapter for `source`.

    Args:
        settings: Application settings.
        source: Platform to build an adapter for.
        identity: Player the job imports; decides the limiter identifier when
            the limiter scope is "player".
        limiter: Process-wide limiter for the source.
        session: HTTP session to issue requests with.
        dedup_gate: Existence check applied before a game is yielded.
        cancel_event: Cancellation flag checked before each call.
        sleeper: Backoff sleep override (tests).

    Returns:
        A Chess.com or Lichess adapter.
    """

    source = GameSource(source)
    source_settings = settings.chesscom if source == GameSource.CHESSCOM else settings.lichess
    headers = {"User-Agent": settings.user_agent}
    if source == GameSource.CHESSCOM:
        headers.update(auth_headers(settings.chesscom.token))
    http = RateLimitedHttp(
        session=session,
        limiter=limiter,
        identifier=limiter_identifier(settings, source, identity),
        timeout_s=settings.imports.request_timeout_s,
        retry_policy=RetryPolicy(
            max_retries=source_settings.max_retries,
            backoff_ms=source_settings.retry_backoff_ms,
        ),
        headers=headers,
        cancel_event=cancel_event,
        sleeper=sleeper,
    )
    client_logger = get_logger(f"fairplay.chess_clients.{source.value}")
    if source == GameSource.CHESSCOM:
        return ChesscomClient(
            ChesscomClientContext(
                settings=settings,
                logger=client_logger,
                http=http,
                dedup_gate=dedup_gate,
                cancel_event=cancel_event,
            )
        )
    return LichessClient(
        LichessClientContext(
            settings=settings,
            logger=client_logger,
            http=http,
            dedup_gate=dedup_gate,
            cancel_event=cancel_event,
        )
    )


class ImportJobManager:
    """Start, observe and cancel import jobs.

    Rate limiters are shared by every job the manager starts, so concurrent
    jobs against one source contend for the same quota. Only the newest
    `imports.retained_jobs` handles are kept once their jobs have finished.
    """

    def __init__(
        self,
        settings: Settings,
        store: GameStore,
        *,
        limiters: dict[GameSource, RateLimiter] | None = None,
        event_bus: ScoreEventBus | None = None,
        session_factory: SessionFactory | None = None,
        orchestrator: ImportOrchestrator | None = None,
        sleeper: Callable[[float], None] | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._limiters = limiters or build_rate_limiters(settings)
        self._event_bus = event_bus
        self._session_factory = session_factory or default_session_factory(settings)
        self._sleep = sleeper or time.sleep
        self._orchestrator = orchestrator or ImportOrchestrator(
            settings, store, event_bus=event_bus, sleeper=sleeper
        )
        self._jobs: dict[str, JobHandle] = {}
        self._lock = threading.Lock()

    @property
    def limiters(self) -> dict[GameSource, RateLimiter]:
        return self._limiters

    @property
    def orchestrator(self) -> ImportOrchestrator:
        return self._orchestrator

    def start_import(
        self, source: GameSource | str, identity: str, limit: int | None = None
    ) -> JobHandle:
        """Start a source import on a worker thread and return its handle."""
        source = GameSource.parse(source)
        handle = self._register(source, identity, kind="api")
        self._spawn(
            handle,
            lambda: self._run_source_import(handle, limit),
        )
        return handle

    def start_pgn_import(
        self,
        text: str,
        identity: str,
        source: GameSource | str = GameSource.LICHESS,
        limit: int | None = None,
    ) -> JobHandle:
        """Start an import of user-supplied PGN text on a worker thread."""
        source = GameSource.parse(source)
        handle = self._register(source, identity, kind="pgn")
        self._spawn(
            handle,
            lambda: self._run_pgn_import(handle, text, limit),
        )
        return handle

    def run_import(
        self,
        source: GameSource | str,
        identity: str,
        limit: int | None = None,
        *,
        cancel_event: threading.Event | None = None,
        progress: Callable[[dict[str, object]], None] | None = None,
    ) -> ImportSummary:
        """Run a source import on the calling thread.

        Raises:
            SourceUnavailableError: When the source cannot be reached.
        """

        source = GameSource.parse(source)
        gate = DedupGate(self._store)
        client = build_chess_client(
            self._settings,
            source,
            identity,
            limiter=self._limiters[source],
            session=self._session_factory(source),
            dedup_gate=gate,
            cancel_event=cancel_event,
            sleeper=self._sleep,
        )
        return self._orchestrator.run(
            client,
            identity,
            limit,
            dedup_gate=gate,
            cancel_event=cancel_event,
            progress=progress,
        )

    def run_pgn_import(
        self,
        text: str,
        identity: str,
        source: GameSource | str = GameSource.LICHESS,
        limit: int | None = None,
        *,
        cancel_event: threading.Event | None = None,
        progress: Callable[[dict[str, object]], None] | None = None,
    ) -> ImportSummary:
        """Import PGN text for `identity` on the calling thread."""
        gate = DedupGate(self._store)
        client = PgnTextSource(
            PgnTextSourceContext(
                settings=self._settings,
                logger=get_logger("fairplay.pgn_import"),
                dedup_gate=gate,
                cancel_event=cancel_event,
            ),
            text,
            source=GameSource.parse(source),
        )
        if limit is None:
            limit = self._settings.imports.max_limit
        return self._orchestrator.run(
            client,
            identity,
            limit,
            dedup_gate=gate,
            cancel_event=cancel_event,
            progress=progress,
        )

    def get(self, job_id: str) -> JobHandle:
        """Return the handle for `job_id`.

        Raises:
            KeyError: When the job is unknown.
        """

        with self._lock:
            return self._jobs[job_id]

    def get_progress(self, job_id: str) -> ImportProgress:
        return self.get(job_id).progress

    def get_result(self, job_id: str) -> ImportSummary | None:
        return self.get(job_id).summary

    def cancel(self, job_id: str) -> bool:
        """Request cancellation; returns False when the job already finished."""
        handle = self.get(job_id)
        if handle.status != JobStatus.RUNNING:
            return False
        handle.cancel_event.set()
        logger.info("Cancellation requested for job %s", job_id)
        return True

    def wait(self, job_id: str, timeout: float | None = None) -> JobHandle:
        handle = self.get(job_id)
        if handle.thread is not None:
            handle.thread.join(timeout)
        return handle

    def list_jobs(self) -> list[JobHandle]:
        with self._lock:
            return list(self._jobs.values())

    def rate_limit_health(self, identity: str | None = None) -> dict[GameSource, ApiHealth]:
        """Health of every source limiter under the identifier jobs would use."""
        return {
            source: check_api_health(
                limiter, limiter_identifier(self._settings, source, identity or "")
            )
            for source, limiter in self._limiters.items()
        }

    def sync_tracked_players(
        self, players: Iterable[TrackedPlayer], limit: int | None = None
    ) -> TrackedSyncReport:
        """Import recent games for each tracked player, one job at a time.

        A source whose limiter reports unhealthy gets an extra pause before
        its next job. A source that cannot be reached is recorded and the run
        continues with the next player.
        """

        report = TrackedSyncReport()
        for player in players:
            for source in player.sources():
                health = check_api_health(
                    self._limiters[source],
                    limiter_identifier(self._settings, source, player.username),
                )
                if not health.healthy:
                    delay_ms = self._settings.imports.unhealthy_source_delay_ms
                    logger.warning(
                        "%s is unhealthy (%s); pausing %sms before syncing %s",
                        source,
                        "; ".join(health.recommendations),
                        delay_ms,
                        player.username,
                    )
                    self._sleep(delay_ms / 1000.0)
                try:
                    report.summaries.append(self.run_import(source, player.username, limit))
                except SourceUnavailableError as exc:
                    logger.error("Sync failed for %s on %s: %s", player.username, source, exc)
                    report.failures.append(f"{source.value}:{player.username}: {exc}")
        logger.info(
            "Tracked sync finished: imported=%s skipped=%s errors=%s",
            report.imported_count,
            report.skipped_count,
            report.error_count,
        )
        return report

    def _register(self, source: GameSource, identity: str, *, kind: str) -> JobHandle:
        handle = JobHandle(
            job_id=uuid.uuid4().hex,
            source=source,
            identity=identity.strip().lower(),
            kind=kind,
        )
        with self._lock:
            self._jobs[handle.job_id] = handle
            self._evict_finished_locked()
        return handle

    def _evict_finished_locked(self) -> None:
        # Dicts keep insertion order, so the oldest finished jobs go first.
        excess = len(self._jobs) - max(self._settings.imports.retained_jobs, 1)
        if excess <= 0:
            return
        finished = [
            job_id for job_id, job in self._jobs.items() if job.status != JobStatus.RUNNING
        ]
        for job_id in finished[:excess]:
            del self._jobs[job_id]
        logger.debug("Evicted %s finished jobs", min(excess, len(finished)))

    def _spawn(self, handle: JobHandle, target: Callable[[], ImportSummary]) -> None:
        def worker() -> None:
            try:
                handle.summary = target()
                handle.progress = ImportProgress(
                    phase=handle.summary.phase,
                    current=handle.progress.current,
                    total=handle.progress.total,
                )
                handle.status = JobStatus.COMPLETED
            except Exception as exc:  # pylint: disable=broad-exception-caught
                logger.exception("Import job %s failed: %s", handle.job_id, exc)
                handle.error = str(exc)
                handle.progress = ImportProgress(
                    phase=ImportPhase.FAILED,
                    current=handle.progress.current,
                    total=handle.progress.total,
                )
                handle.status = JobStatus.FAILED

        thread = threading.Thread(
            target=worker, name=f"fairplay-import-{handle.job_id[:8]}", daemon=True
        )
        handle.thread = thread
        thread.start()

    def _progress_for(self, handle: JobHandle) -> Callable[[dict[str, object]], None]:
        def progress(payload: dict[str, object]) -> None:
            handle.progress = ImportProgress(
                phase=ImportPhase(str(payload["phase"])),
                current=int(payload.get("current", 0)),
                total=int(payload.get("total", 0)),
            )

        return progress

    def _run_source_import(self, handle: JobHandle, limit: int | None) -> ImportSummary:
        return self.run_import(
            handle.source,
            handle.identity,
            limit,
            cancel_event=handle.cancel_event,
            progress=self._progress_for(handle),
        )

    def _run_pgn_import(self, handle: JobHandle, text: str, limit: int | None) -> ImportSummary:
        return self.run_pgn_import(
            text,
            handle.identity,
            handle.source,
            limit,
            cancel_event=handle.cancel_event,
            progress=self._progress_for(handle),
        )


def parse_tracked_players(value: str) -> list[TrackedPlayer]:
    """Parse "name[:source]" entries separated by commas.

    Example:
        >>> parse_tracked_players("hikaru:chesscom, drnykterstein")
        [TrackedPlayer(username='hikaru', source='chesscom'), TrackedPlayer(username='drnykterstein', source='both')]
    """

    players: list[TrackedPlayer] = []
    for entry in value.split(","):
        name, _, source = entry.strip().partition(":")
        if not name:
            continue
        players.append(TrackedPlayer(username=name.strip(), source=source.strip() or BOTH_SOURCES))
    return players
