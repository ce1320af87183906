"""Persisted resume point for incremental imports."""

from __future__ import annotations

from pydantic import BaseModel, Field

from fairplay.models.raw_game import GameSource


class SyncCursor(BaseModel):
    """Resume point for one (source, player identity) pair.

    Attributes:
        source: Platform the cursor belongs to.
        identity: Player username on that platform.
        last_imported_at_unix: Newest successfully imported game time; never decreases.
        last_external_id: External id of that game.
        total_imported: Running count of imported games.
    """

    source: GameSource
    identity: str
    last_imported_at_unix: int = Field(default=0, ge=0)
    last_external_id: str | None = None
    total_imported: int = Field(default=0, ge=0)

    def allows(self, occurred_at_unix: int) -> bool:
        """Return True when a game at `occurred_at_unix` is newer than the cursor."""
        return occurred_at_unix > self.last_imported_at_unix
