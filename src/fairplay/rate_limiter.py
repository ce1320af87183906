"""Multi-window request limiter with a data-volume quota for external sources.

One `RateLimiter` instance holds the ceilings of one platform. Request
ceilings ("15/sec AND 900/min AND 54000/h") are pyrate-limiter `Rate`s
sharing one in-memory bucket per identifier; the per-window response volume
quota and the retry-after computation sit on top. Usage is tracked per
identifier (usually the source name, so every job against the same platform
contends for the same budget). All state is guarded by a single lock so job
threads can share an instance.
"""

from __future__ import annotations

import bisect
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from pyrate_limiter import InMemoryBucket, Rate, RateItem

from fairplay.config import ChesscomSettings, LichessSettings, Settings
from fairplay.models import GameSource
from fairplay.utils import Now
from fairplay.utils.logger import get_logger

logger = get_logger(__name__)

SECOND_MS = 1_000
MINUTE_MS = 60_000
HOUR_MS = 3_600_000
BYTES_PER_MB = 1024 * 1024

WINDOW_REASONS = {
    SECOND_MS: "Per-second rate limit exceeded",
    MINUTE_MS: "Per-minute rate limit exceeded",
    HOUR_MS: "Per-hour rate limit exceeded",
}

Clock = Callable[[], int]
Sleeper = Callable[[float], None]


@dataclass(frozen=True, slots=True)
class RateLimitConfig:
    """Ceilings for one external source.

    Attributes:
        requests_per_second: Hard per-second request ceiling.
        requests_per_minute: Optional per-minute request ceiling.
        requests_per_hour: Optional per-hour request ceiling.
        max_body_mb: Optional response volume allowed per quota window.
        quota_window_ms: Length of the fixed data quota interval.
    """

    requests_per_second: int
    requests_per_minute: int | None = None
    requests_per_hour: int | None = None
    max_body_mb: float | None = None
    quota_window_ms: int = MINUTE_MS

    @property
    def max_body_bytes(self) -> int | None:
        if not self.max_body_mb:
            return None
        return int(self.max_body_mb * BYTES_PER_MB)

    def rates(self) -> list[Rate]:
        """Return the configured request ceilings, shortest window first."""
        configured = [
            (self.requests_per_second, SECOND_MS),
            (self.requests_per_minute, MINUTE_MS),
            (self.requests_per_hour, HOUR_MS),
        ]
        return [Rate(ceiling, window_ms) for ceiling, window_ms in configured if ceiling]


@dataclass(frozen=True, slots=True)
class RateLimitStatus:
    """Outcome of a limit check.

    `retry_after_ms` is zero when `allowed` is True.
    """

    allowed: bool
    retry_after_ms: int
    remaining: int
    reset_time_ms: int
    quota_exceeded: bool = False
    reason: str | None = None


@dataclass(slots=True)
class RequestMetrics:
    """One request as recorded against an identifier."""

    timestamp_ms: int
    response_size_bytes: int = 0
    duration_ms: int = 0
    success: bool = True


@dataclass(slots=True)
class _QuotaBucket:
    size_bytes: int = 0
    requests: int = 0
    reset_time_ms: int = 0


@dataclass(slots=True)
class _IdentifierWindow:
    bucket: InMemoryBucket
    history: list[RequestMetrics] = field(default_factory=list)
    quota: _QuotaBucket | None = None

    def idle(self, now: int) -> bool:
        return not self.history and (self.quota is None or now >= self.quota.reset_time_ms)


@dataclass(frozen=True, slots=True)
class QuotaStatus:
    used_bytes: int
    limit_bytes: int
    reset_time_ms: int
    requests_in_hour: int


@dataclass(frozen=True, slots=True)
class ApiHealth:
    healthy: bool
    status: RateLimitStatus
    quota: QuotaStatus
    recommendations: list[str]


class RateLimiter:
    """Decide whether a request to a source may be made now.

    An entry counts against a window until it is strictly older than the
    window, so a slot reported free is always accepted by the bucket.
    Identifiers with no recent requests are forgotten.
    """

    def __init__(
        self,
        config: RateLimitConfig,
        *,
        name: str = "",
        clock: Clock | None = None,
        sleeper: Sleeper | None = None,
    ) -> None:
        self._config = config
        self._rates = config.rates()
        self._name = name
        self._clock = clock or Now.as_milliseconds
        self._sleep = sleeper or time.sleep
        self._windows: dict[str, _IdentifierWindow] = {}
        self._lock = threading.Lock()

    @property
    def config(self) -> RateLimitConfig:
        return self._config

    @property
    def name(self) -> str:
        return self._name

    @property
    def tracked_identifiers(self) -> list[str]:
        with self._lock:
            return list(self._windows)

    def check_limit(self, identifier: str) -> RateLimitStatus:
        """Return whether a request for `identifier` is allowed right now."""
        with self._lock:
            now = self._clock()
            return self._check_locked(self._window_locked(identifier, now), now)

    def record_request(
        self,
        identifier: str,
        metrics: RequestMetrics,
        *,
        reservation: RequestMetrics | None = None,
    ) -> None:
        """Record a completed request.

        When `reservation` is the slot handed out by `wait_for_slot`, that
        entry is completed in place instead of counting a second request.
        """
        with self._lock:
            now = self._clock()
            window = self._windows.get(identifier)
            if window is None:
                window = self._windows[identifier] = self._new_window()
            if reservation is not None and any(item is reservation for item in window.history):
                reservation.response_size_bytes = metrics.response_size_bytes
                reservation.duration_ms = metrics.duration_ms
                reservation.success = metrics.success
            else:
                self._count_request(window, identifier, metrics)
            self._add_quota_usage(window, metrics.response_size_bytes, now)

    def wait_for_slot(
        self,
        identifier: str,
        cancel_event: threading.Event | None = None,
    ) -> RequestMetrics | None:
        """Block until a request is allowed, then reserve the slot.

        The reservation is put into the bucket atomically with the successful
        check so two threads cannot both take the last slot of a window.

        Returns:
            The reserved entry to pass to `record_request`, or None when
            `cancel_event` was set while waiting.
        """
        while True:
            with self._lock:
                now = self._clock()
                window = self._window_locked(identifier, now)
                status = self._check_locked(window, now)
                if status.allowed:
                    if window is None:
                        window = self._windows[identifier] = self._new_window()
                    item = RateItem(identifier, now)
                    if window.bucket.put(item):
                        reservation = RequestMetrics(timestamp_ms=now)
                        window.history.append(reservation)
                        return reservation
                    status = RateLimitStatus(
                        allowed=False,
                        retry_after_ms=max(window.bucket.waiting(item), 1),
                        remaining=0,
                        reset_time_ms=now,
                        reason="Request bucket full",
                    )
            if cancel_event is not None and cancel_event.is_set():
                return None
            wait_seconds = max(status.retry_after_ms, 1) / 1000.0
            logger.info(
                "Rate limited for %s (%s), waiting %sms",
                identifier,
                status.reason,
                status.retry_after_ms,
            )
            if cancel_event is not None:
                if cancel_event.wait(wait_seconds):
                    return None
            else:
                self._sleep(wait_seconds)

    def get_quota_status(self, identifier: str) -> QuotaStatus:
        with self._lock:
            now = self._clock()
            window = self._window_locked(identifier, now)
            quota = window.quota if window else None
            used = quota.size_bytes if quota and now < quota.reset_time_ms else 0
            return QuotaStatus(
                used_bytes=used,
                limit_bytes=self._config.max_body_bytes or 0,
                reset_time_ms=quota.reset_time_ms if quota else now,
                requests_in_hour=len(window.history) if window else 0,
            )

    def reset(self, identifier: str | None = None) -> None:
        with self._lock:
            if identifier is None:
                self._windows.clear()
            else:
                self._windows.pop(identifier, None)

    def _new_window(self) -> _IdentifierWindow:
        return _IdentifierWindow(bucket=InMemoryBucket(self._rates))

    def _window_locked(self, identifier: str, now: int) -> _IdentifierWindow | None:
        """Return the pruned window for `identifier` without creating one."""
        window = self._windows.get(identifier)
        if window is None:
            return None
        window.history = [item for item in window.history if now - item.timestamp_ms < HOUR_MS]
        if self._rates:
            window.bucket.leak(now)
        if window.idle(now):
            del self._windows[identifier]
            return None
        return window

    def _count_request(
        self, window: _IdentifierWindow, identifier: str, metrics: RequestMetrics
    ) -> None:
        item = RateItem(identifier, metrics.timestamp_ms)
        if not window.bucket.put(item):
            # The request already happened; count it even past the ceiling.
            bisect.insort(window.bucket.items, item, key=lambda entry: entry.timestamp)
        bisect.insort(window.history, metrics, key=lambda entry: entry.timestamp_ms)

    def _check_locked(self, window: _IdentifierWindow | None, now: int) -> RateLimitStatus:
        items = window.bucket.items if window else []
        violations: list[tuple[int, str]] = []
        remaining: list[int] = []
        for rate in self._rates:
            in_window = [item for item in items if now - item.timestamp <= rate.interval]
            remaining.append(rate.limit - len(in_window))
            if len(in_window) < rate.limit:
                continue
            # Enough of the oldest entries must age out to free one slot.
            freeing_entry = in_window[len(in_window) - rate.limit]
            reset_at = freeing_entry.timestamp + rate.interval + 1
            violations.append((reset_at, WINDOW_REASONS.get(rate.interval, "Rate limit exceeded")))
        quota_violation = self._quota_violation(window, now)
        if quota_violation is not None:
            violations.append((quota_violation, "Data quota exceeded"))
        if not violations:
            return RateLimitStatus(
                allowed=True,
                retry_after_ms=0,
                remaining=max(min(remaining, default=0), 0),
                reset_time_ms=now + SECOND_MS,
            )
        reset_at, reason = max(violations, key=lambda item: item[0])
        return RateLimitStatus(
            allowed=False,
            retry_after_ms=max(reset_at - now, 1),
            remaining=0,
            reset_time_ms=reset_at,
            quota_exceeded=quota_violation is not None and reset_at == quota_violation,
            reason=reason,
        )

    def _quota_violation(self, window: _IdentifierWindow | None, now: int) -> int | None:
        limit = self._config.max_body_bytes
        quota = window.quota if window else None
        if limit is None or quota is None:
            return None
        if now < quota.reset_time_ms and quota.size_bytes >= limit:
            return quota.reset_time_ms
        return None

    def _add_quota_usage(self, window: _IdentifierWindow, size_bytes: int, now: int) -> None:
        quota = window.quota
        if quota is None or now >= quota.reset_time_ms:
            quota = _QuotaBucket(reset_time_ms=now + self._config.quota_window_ms)
            window.quota = quota
        quota.size_bytes += max(size_bytes, 0)
        quota.requests += 1

def check_api_health(limiter: RateLimiter, identifier: str) -> ApiHealth:
    """Summarize whether a source is currently usable and how close to its limits."""
    status = limiter.check_limit(identifier)
    quota = limiter.get_quota_status(identifier)
    recommendations: list[str] = []
    if not status.allowed:
        recommendations.append(f"Rate limited: {status.reason}")
    if quota.limit_bytes and quota.used_bytes > quota.limit_bytes * 0.9:
        recommendations.append("Reduce request size or frequency")
    elif quota.limit_bytes and quota.used_bytes > quota.limit_bytes * 0.8:
        recommendations.append("Approaching data quota limit")
    if status.allowed and limiter.config.requests_per_hour:
        if limiter.config.requests_per_hour - quota.requests_in_hour < 5:
            recommendations.append("Consider reducing request frequency")
    return ApiHealth(
        healthy=status.allowed and not status.quota_exceeded,
        status=status,
        quota=quota,
        recommendations=recommendations,
    )


def rate_limit_config_for(source_settings: ChesscomSettings | LichessSettings) -> RateLimitConfig:
    """Build limiter ceilings from one source's settings block."""
    return RateLimitConfig(
        requests_per_second=source_settings.requests_per_second,
        requests_per_minute=source_settings.requests_per_minute,
        requests_per_hour=source_settings.requests_per_hour,
        max_body_mb=source_settings.max_body_mb,
        quota_window_ms=source_settings.quota_window_ms,
    )


def build_rate_limiters(settings: Settings) -> dict[GameSource, RateLimiter]:
    """Create one limiter per source; share the mapping across jobs in a process."""
    return {
        GameSource.CHESSCOM: RateLimiter(
            rate_limit_config_for(settings.chesscom), name=GameSource.CHESSCOM.value
        ),
        GameSource.LICHESS: RateLimiter(
            rate_limit_config_for(settings.lichess), name=GameSource.LICHESS.value
        ),
    }


def limiter_identifier(settings: Settings, source: GameSource, identity: str) -> str:
    """Resolve the identifier a job's requests are counted under."""
    if settings.imports.rate_limit_scope == "player":
        return f"{source.value}:{identity.strip().lower()}"
    return source.value
