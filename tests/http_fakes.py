from __future__ import annotations

import json
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

import requests


@dataclass(slots=True)
class FakeResponse:
    status_code: int = 200
    json_data: object | None = None
    body: bytes | None = None
    lines: list[bytes] | None = None
    headers: dict = field(default_factory=dict)
    fail_after: int | None = None
    on_chunk: Callable[[], None] | None = None
    body_error: Exception | None = None
    closed: bool = False

    @property
    def content(self) -> bytes:
        if self.body is not None:
            return self.body
        if self.lines is not None:
            return b"\n".join(self.lines)
        return json.dumps(self.json_data if self.json_data is not None else {}).encode()

    def iter_content(self, chunk_size: int = 1) -> Iterable[bytes]:
        if self.body_error is not None:
            raise self.body_error
        content = self.content
        for start in range(0, len(content), chunk_size):
            if self.on_chunk is not None:
                self.on_chunk()
            yield content[start : start + chunk_size]

    def iter_lines(self) -> Iterable[bytes]:
        for index, line in enumerate(self.lines or []):
            if self.fail_after is not None and index >= self.fail_after:
                raise requests.ConnectionError("connection reset")
            yield line

    def close(self) -> None:
        self.closed = True

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error")


def ndjson_response(records: Iterable[dict], **kwargs: object) -> FakeResponse:
    return FakeResponse(lines=[json.dumps(record).encode() for record in records], **kwargs)


class FakeSession:
    """Stand-in for `requests.Session` that replays queued responses or errors."""

    def __init__(self, responses: Iterable[FakeResponse | Exception] = ()) -> None:
        self.queue: list[FakeResponse | Exception] = list(responses)
        self.calls: list[dict[str, object]] = []
        self.routes: dict[str, list[FakeResponse | Exception]] = {}

    def route(self, url: str, *responses: FakeResponse | Exception) -> FakeSession:
        self.routes.setdefault(url, []).extend(responses)
        return self

    def get(self, url: str, **kwargs: object) -> FakeResponse:
        self.calls.append({"url": url, **kwargs})
        if url in self.routes and self.routes[url]:
            item = self.routes[url].pop(0)
        elif self.queue:
            item = self.queue.pop(0)
        else:
            raise AssertionError(f"Unexpected request to {url}")
        if isinstance(item, Exception):
            raise item
        return item

    @property
    def urls(self) -> list[str]:
        return [str(call["url"]) for call in self.calls]
