"""Per (source, player) resume points for incremental imports."""

from __future__ import annotations

from dataclasses import dataclass

from fairplay.errors import CursorRegressionError
from fairplay.models import GameSource, SyncCursor
from fairplay.ports.repositories import CursorRepository
from fairplay.utils.logger import get_logger

logger = get_logger(__name__)


def normalize_identity(identity: str) -> str:
    """Usernames are case-insensitive on both platforms."""
    return identity.strip().lower()


@dataclass(frozen=True, slots=True)
class CursorAdvance:
    """Outcome of an advance request.

    Attributes:
        cursor: The cursor as stored afterwards.
        regressed: True when the request was older than the stored value and
            was ignored.
    """

    cursor: SyncCursor
    regressed: bool = False


class SyncCursorStore:
    """Read and advance sync cursors through the store's atomic upsert."""

    def __init__(self, repository: CursorRepository) -> None:
        self._repository = repository

    def get(self, source: GameSource, identity: str) -> SyncCursor | None:
        return self._repository.get_cursor(GameSource(source), normalize_identity(identity))

    def advance(
        self,
        source: GameSource,
        identity: str,
        new_timestamp: int,
        new_external_id: str | None,
        increment_by: int,
        *,
        strict: bool = False,
    ) -> CursorAdvance:
        """Move the cursor forward and add `increment_by` to its total.

        An advance older than the stored timestamp keeps the stored position,
        but its games still count towards the total. It is logged and reported
        on the returned `CursorAdvance`.

        Raises:
            CursorRegressionError: On a rejected advance when `strict` is set.
        """

        if new_timestamp < 0:
            raise ValueError("new_timestamp must be non-negative")
        cursor = self._repository.advance_cursor(
            GameSource(source),
            normalize_identity(identity),
            new_timestamp,
            new_external_id,
            max(increment_by, 0),
        )
        if cursor.last_imported_at_unix > new_timestamp:
            message = (
                f"Ignored cursor regression for {source}/{identity}: "
                f"{new_timestamp} < {cursor.last_imported_at_unix}"
            )
            logger.warning("%s", message)
            if strict:
                raise CursorRegressionError(message)
            return CursorAdvance(cursor=cursor, regressed=True)
        logger.info(
            "Cursor %s/%s now at %s (total %s)",
            source,
            identity,
            cursor.last_imported_at_unix,
            cursor.total_imported,
        )
        return CursorAdvance(cursor=cursor)

    def reset(self, source: GameSource, identity: str) -> bool:
        """Administrative reset; the next import starts from the newest game."""
        removed = self._repository.reset_cursor(GameSource(source), normalize_identity(identity))
        if removed:
            logger.info("Reset cursor for %s/%s", source, identity)
        return removed
