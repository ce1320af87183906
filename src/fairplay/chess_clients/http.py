"""Rate-limited HTTP access with one timeout and one retry policy per call."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime

import requests
from tenacity import (
    RetryCallState,
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from fairplay.errors import ImportCancelledError, RateLimitError, TransientNetworkError
from fairplay.rate_limiter import RateLimiter, RequestMetrics
from fairplay.utils.logger import get_logger

logger = get_logger(__name__)

HTTP_STATUS_TOO_MANY_REQUESTS = 429
HTTP_STATUS_SERVER_ERROR = 500
MAX_BACKOFF_S = 30.0
BODY_CHUNK_BYTES = 64 * 1024


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """How often and how patiently a failed call is retried.

    Attributes:
        max_retries: Retries after the first attempt.
        backoff_ms: Base of the exponential backoff.
    """

    max_retries: int = 3
    backoff_ms: int = 500

    @property
    def max_attempts(self) -> int:
        return max(self.max_retries, 0) + 1


@dataclass(slots=True)
class _OpenedResponse:
    response: requests.Response
    reservation: RequestMetrics
    started: float


class RateLimitedHttp:
    """GET requests guarded by a `RateLimiter`, a timeout, and a retry policy.

    Every attempt (including retries) waits for a limiter slot first and is
    recorded against the limiter afterwards with its response size. JSON
    bodies must arrive in full within `timeout_s` of the request starting.
    """

    def __init__(
        self,
        *,
        session: requests.Session,
        limiter: RateLimiter,
        identifier: str,
        timeout_s: float,
        retry_policy: RetryPolicy,
        headers: Mapping[str, str] | None = None,
        cancel_event: threading.Event | None = None,
        sleeper: Callable[[float], None] | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._session = session
        self._limiter = limiter
        self._identifier = identifier
        self._timeout_s = timeout_s
        self._retry_policy = retry_policy
        self._headers = dict(headers or {})
        self._cancel_event = cancel_event
        self._sleeper = sleeper
        self._clock = clock or time.monotonic
        self._backoff = wait_exponential(
            multiplier=max(retry_policy.backoff_ms, 0) / 1000.0,
            max=MAX_BACKOFF_S,
        )
        self.request_count = 0

    @property
    def limiter(self) -> RateLimiter:
        return self._limiter

    def get_json(self, url: str, params: Mapping[str, object] | None = None) -> object:
        """Fetch a URL and decode its JSON body.

        The body is streamed; an attempt whose body has not fully arrived
        `timeout_s` after the request started is abandoned and retried.

        Raises:
            TransientNetworkError: When retries are exhausted.
            RateLimitError: When the source keeps answering 429.
            requests.HTTPError: For non-retryable client errors (4xx).
            ImportCancelledError: When the job was cancelled while waiting.
        """

        return self._retrying()(self._read_json, url, params)

    def _read_json(self, url: str, params: Mapping[str, object] | None) -> object:
        opened = self._open(url, params, None, True)
        response = opened.response
        chunks: list[bytes] = []
        size_bytes = 0
        success = False
        try:
            for chunk in response.iter_content(chunk_size=BODY_CHUNK_BYTES):
                chunks.append(chunk)
                size_bytes += len(chunk)
                if self._clock() - opened.started > self._timeout_s:
                    raise TransientNetworkError(
                        f"Body of {url} not received within {self._timeout_s}s", url=url
                    )
            success = True
        except requests.RequestException as exc:
            raise TransientNetworkError(f"Body read failed for {url}: {exc}", url=url) from exc
        finally:
            response.close()
            self._record(opened, size_bytes, success=success)
        try:
            return json.loads(b"".join(chunks))
        except ValueError as exc:
            raise TransientNetworkError(f"Invalid JSON from {url}", url=url) from exc

    def stream_lines(
        self,
        url: str,
        params: Mapping[str, object] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> Iterator[bytes]:
        """Open a streaming request and yield non-empty lines as they arrive.

        Only opening the stream is retried. A failure part way through ends the
        iteration with `TransientNetworkError`; lines already yielded stay valid.
        """

        opened = self._retrying()(self._open, url, params, headers, True)
        response = opened.response
        size_bytes = 0
        success = False
        try:
            for line in response.iter_lines():
                size_bytes += len(line) + 1
                if line:
                    yield line
            success = True
        except requests.RequestException as exc:
            raise TransientNetworkError(f"Stream interrupted for {url}: {exc}", url=url) from exc
        finally:
            response.close()
            self._record(opened, size_bytes, success=success)

    def _retrying(self) -> Retrying:
        kwargs: dict[str, object] = {}
        if self._cancel_event is not None:
            kwargs["sleep"] = self._cancellable_sleep
        elif self._sleeper is not None:
            kwargs["sleep"] = self._sleeper
        return Retrying(
            retry=retry_if_exception_type(TransientNetworkError),
            stop=stop_after_attempt(self._retry_policy.max_attempts),
            wait=self._wait_for_retry,
            reraise=True,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            **kwargs,
        )

    def _cancellable_sleep(self, seconds: float) -> None:
        assert self._cancel_event is not None
        if self._cancel_event.wait(seconds):
            raise ImportCancelledError("Cancelled while backing off")

    def _wait_for_retry(self, retry_state: RetryCallState) -> float:
        backoff = self._backoff(retry_state)
        outcome = retry_state.outcome
        exc = outcome.exception() if outcome is not None else None
        if isinstance(exc, RateLimitError) and exc.retry_after:
            return max(backoff, exc.retry_after)
        return backoff

    def _open(
        self,
        url: str,
        params: Mapping[str, object] | None,
        headers: Mapping[str, str] | None,
        stream: bool,
    ) -> _OpenedResponse:
        if self._cancel_event is not None and self._cancel_event.is_set():
            raise ImportCancelledError("Cancelled before request")
        reservation = self._limiter.wait_for_slot(self._identifier, self._cancel_event)
        if reservation is None:
            raise ImportCancelledError("Cancelled while waiting for a rate limit slot")
        started = self._clock()
        opened_headers = {**self._headers, **dict(headers or {})}
        self.request_count += 1
        try:
            response = self._session.get(
                url,
                params=params,
                headers=opened_headers,
                timeout=self._timeout_s,
                stream=stream,
            )
        except requests.Timeout as exc:
            self._record_failure(reservation, started)
            raise TransientNetworkError(f"Timed out after {self._timeout_s}s: {url}", url=url) from exc
        except requests.ConnectionError as exc:
            self._record_failure(reservation, started)
            raise TransientNetworkError(f"Connection failed for {url}: {exc}", url=url) from exc
        except requests.HTTPError:
            self._record_failure(reservation, started)
            raise
        except requests.RequestException as exc:
            self._record_failure(reservation, started)
            raise TransientNetworkError(f"Request failed for {url}: {exc}", url=url) from exc
        opened = _OpenedResponse(response, reservation, started)
        self._raise_for_status(opened, url)
        return opened

    def _raise_for_status(self, opened: _OpenedResponse, url: str) -> None:
        response = opened.response
        status_code = response.status_code
        if status_code == HTTP_STATUS_TOO_MANY_REQUESTS:
            self._record(opened, 0, success=False)
            response.close()
            raise RateLimitError(
                f"Rate limited (429) by {url}",
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
                response=response,
                url=url,
            )
        if status_code >= HTTP_STATUS_SERVER_ERROR:
            self._record(opened, 0, success=False)
            response.close()
            raise TransientNetworkError(f"Server error {status_code} for {url}", url=url)
        if status_code >= 400:
            self._record(opened, 0, success=False)
            response.close()
            response.raise_for_status()

    def _record_failure(self, reservation: RequestMetrics, started: float) -> None:
        self._limiter.record_request(
            self._identifier,
            RequestMetrics(
                timestamp_ms=reservation.timestamp_ms,
                duration_ms=int((self._clock() - started) * 1000),
                success=False,
            ),
            reservation=reservation,
        )

    def _record(self, opened: _OpenedResponse, size_bytes: int, *, success: bool) -> None:
        duration_ms = int((self._clock() - opened.started) * 1000)
        self._limiter.record_request(
            self._identifier,
            RequestMetrics(
                timestamp_ms=opened.reservation.timestamp_ms,
                response_size_bytes=size_bytes,
                duration_ms=duration_ms,
                success=success,
            ),
            reservation=opened.reservation,
        )


def parse_retry_after(value: str | None) -> float | None:
    """Parse Retry-After header values.

    Args:
        value: Retry-After header value.

    Returns:
        Number of seconds to wait, or None.
    """

    if not value:
        return None
    seconds = _parse_retry_after_seconds(value)
    if seconds is not None:
        return seconds
    return _parse_retry_after_date(value)


def _parse_retry_after_seconds(value: str) -> float | None:
    try:
        seconds = float(value)
    except ValueError:
        return None
    return max(seconds, 0.0)


def _parse_retry_after_date(value: str) -> float | None:
    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    delta = (dt - datetime.now(UTC)).total_seconds()
    return max(delta, 0.0)
