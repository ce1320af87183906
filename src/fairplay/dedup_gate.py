"""Existence checks that keep a game from being imported twice."""

from __future__ import annotations

import threading

from fairplay.models import GameSource
from fairplay.ports.repositories import GameRepository


class DedupGate:
    """Answer "was this game already imported?" before any write.

    The store's unique (source, external_id) constraint remains the final
    guard; `claim` additionally catches repeats inside one fetch result.
    """

    def __init__(self, repository: GameRepository) -> None:
        self._repository = repository
        self._claimed: set[tuple[str, str]] = set()
        self._lock = threading.Lock()

    def exists(self, source: GameSource, external_id: str) -> bool:
        return self._repository.game_exists(GameSource(source), external_id)

    def claim(self, source: GameSource, external_id: str) -> bool:
        """Reserve a key for this job.

        Returns:
            False when the key was already claimed or is already stored.
        """

        key = (GameSource(source).value, external_id)
        with self._lock:
            if key in self._claimed:
                return False
            self._claimed.add(key)
        return not self.exists(source, external_id)
