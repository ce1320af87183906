"""High-risk score notifications, decoupled from the import job."""

from __future__ import annotations

import queue
import threading
from collections import deque
from dataclasses import dataclass

from fairplay.models import GameScore, GameSource
from fairplay.utils.logger import get_logger

logger = get_logger(__name__)

RECENT_EVENTS_KEPT = 100


@dataclass(frozen=True, slots=True)
class HighRiskScoreEvent:
    """Emitted after a Score write whose suspicion level reached the threshold."""

    game_id: int
    source: GameSource
    external_id: str
    identity: str
    suspicion_level: int
    ml_prob: float

    @classmethod
    def from_score(
        cls,
        *,
        game_id: int,
        source: GameSource,
        external_id: str,
        identity: str,
        score: GameScore,
    ) -> HighRiskScoreEvent:
        return cls(
            game_id=game_id,
            source=source,
            external_id=external_id,
            identity=identity,
            suspicion_level=score.suspicion_level,
            ml_prob=score.ml_prob,
        )


class ScoreEventBus:
    """Unbounded queue between import jobs and notifiers."""

    def __init__(self) -> None:
        self._queue: queue.Queue[HighRiskScoreEvent] = queue.Queue()

    def publish(self, event: HighRiskScoreEvent) -> None:
        self._queue.put(event)

    def get(self, timeout: float | None = None) -> HighRiskScoreEvent | None:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[HighRiskScoreEvent]:
        events: list[HighRiskScoreEvent] = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events


class LoggingScoreNotifier:
    """Consume events from a bus on a daemon thread and log each one.

    The most recent `max_recent` events stay available on `delivered`.
    """

    def __init__(
        self,
        bus: ScoreEventBus,
        poll_interval_s: float = 0.5,
        max_recent: int = RECENT_EVENTS_KEPT,
    ) -> None:
        self._bus = bus
        self._poll_interval_s = poll_interval_s
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.delivered: deque[HighRiskScoreEvent] = deque(maxlen=max(max_recent, 1))

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._run, name="fairplay-score-notifier", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def notify(self, event: HighRiskScoreEvent) -> None:
        logger.warning(
            "High-risk game %s/%s for %s: suspicion=%s ml_prob=%.3f",
            event.source,
            event.external_id,
            event.identity,
            event.suspicion_level,
            event.ml_prob,
        )
        self.delivered.append(event)

    def _run(self) -> None:
        while not self._stop.is_set():
            event = self._bus.get(timeout=self._poll_interval_s)
            if event is not None:
                self.notify(event)
