"""Custom error types used in fairplay."""

import requests


class FairplayError(Exception):
    """Base class for ingestion errors."""


class TransientNetworkError(FairplayError):
    """A single external call failed or timed out after retries."""

    def __init__(self, message: str, *, url: str | None = None) -> None:
        super().__init__(message)
        self.url = url


class RateLimitError(requests.HTTPError, TransientNetworkError):
    """HTTP rate limit error.

    Carries the server supplied ``Retry-After`` value (seconds) when present.
    """

    def __init__(
        self,
        message: str,
        *,
        retry_after: float | None = None,
        response: requests.Response | None = None,
        url: str | None = None,
    ) -> None:
        requests.HTTPError.__init__(self, message, response=response)
        self.retry_after = retry_after
        self.url = url


class SourceUnavailableError(FairplayError):
    """The source could not be reached at all; the whole job fails."""


class MalformedRecordError(FairplayError):
    """A raw record is missing required fields."""


class DuplicateGameError(FairplayError):
    """The game already exists for its (source, external id)."""


class PersistenceError(FairplayError):
    """A write to the game store failed."""


class CursorRegressionError(FairplayError):
    """A cursor advance would move the stored timestamp backwards."""


class ImportCancelledError(FairplayError):
    """Raised inside a job when cooperative cancellation was requested."""


__all__ = [
    "CursorRegressionError",
    "DuplicateGameError",
    "FairplayError",
    "ImportCancelledError",
    "MalformedRecordError",
    "PersistenceError",
    "RateLimitError",
    "SourceUnavailableError",
    "TransientNetworkError",
]
