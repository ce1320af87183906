"""Port interface for game source adapters."""

# pylint: disable=too-few-public-methods

from __future__ import annotations

from collections.abc import Iterator
from typing import TYPE_CHECKING, Protocol

from fairplay.models import GameSource, RawGame

if TYPE_CHECKING:
    from fairplay.chess_clients.base_chess_client import FetchReport, FetchRequest


class GameSourceClient(Protocol):
    """Stable interface for anything that yields games for a player.

    `resumable` sources are read from and advance the sync cursor.
    """

    source: GameSource
    resumable: bool

    def fetch_games(
        self, request: FetchRequest, report: FetchReport | None = None
    ) -> Iterator[RawGame]:
        """Lazily yield games newest first, at most `request.limit` of them."""
