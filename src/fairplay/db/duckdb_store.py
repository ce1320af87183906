from __future__ import annotations

import threading
from datetime import date
from pathlib import Path

import duckdb

from fairplay.errors import DuplicateGameError, PersistenceError
from fairplay.models import GameResult, GameScore, GameSource, SyncCursor
from fairplay.utils.logger import get_logger

logger = get_logger(__name__)

SCHEMA_STATEMENTS = (
    "CREATE SEQUENCE IF NOT EXISTS players_id_seq START 1",
    "CREATE SEQUENCE IF NOT EXISTS games_id_seq START 1",
    "CREATE SEQUENCE IF NOT EXISTS scores_id_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS players (
        player_id BIGINT PRIMARY KEY DEFAULT nextval('players_id_seq'),
        player_hash TEXT NOT NULL UNIQUE,
        rating INTEGER,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS games (
        game_id BIGINT PRIMARY KEY DEFAULT nextval('games_id_seq'),
        player_id BIGINT NOT NULL,
        source TEXT NOT NULL,
        external_id TEXT NOT NULL,
        played_on DATE,
        result TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (source, external_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS scores (
        score_id BIGINT PRIMARY KEY DEFAULT nextval('scores_id_seq'),
        game_id BIGINT NOT NULL UNIQUE,
        engine_match_pct DOUBLE,
        delta_cp DOUBLE,
        run_perfect INTEGER,
        ml_prob DOUBLE,
        suspicion_level INTEGER,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_cursors (
        source TEXT NOT NULL,
        identity TEXT NOT NULL,
        last_imported_at_unix BIGINT NOT NULL,
        last_external_id TEXT,
        total_imported BIGINT NOT NULL DEFAULT 0,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (source, identity)
    );
    """,
)

# An older timestamp keeps the stored position; its games are still counted.
ADVANCE_CURSOR_SQL = """
INSERT INTO sync_cursors (
    source, identity, last_imported_at_unix, last_external_id, total_imported, updated_at
)
VALUES (?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
ON CONFLICT (source, identity) DO UPDATE SET
    last_external_id = CASE
        WHEN excluded.last_imported_at_unix >= last_imported_at_unix
        THEN COALESCE(excluded.last_external_id, last_external_id)
        ELSE last_external_id
    END,
    total_imported = total_imported + excluded.total_imported,
    updated_at = CASE
        WHEN excluded.last_imported_at_unix >= last_imported_at_unix
        THEN excluded.updated_at
        ELSE updated_at
    END,
    last_imported_at_unix = GREATEST(
        last_imported_at_unix, excluded.last_imported_at_unix
    )
"""


def get_connection(db_path: Path) -> duckdb.DuckDBPyConnection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    logger.debug("Opening DuckDB at %s", db_path)
    return duckdb.connect(str(db_path))


def init_schema(conn: duckdb.DuckDBPyConnection) -> None:
    conn.execute("BEGIN TRANSACTION")
    try:
        for statement in SCHEMA_STATEMENTS:
            conn.execute(statement)
        conn.execute("COMMIT")
    except duckdb.Error:
        conn.execute("ROLLBACK")
        raise


class DuckDbGameStore:
    """`GameStore` backed by a single DuckDB database file.

    One connection is shared by every job thread; a store-level lock
    serializes statements on it.
    """

    def __init__(self, conn: duckdb.DuckDBPyConnection) -> None:
        self._conn = conn
        self._lock = threading.Lock()
        init_schema(conn)

    @classmethod
    def open(cls, db_path: Path) -> DuckDbGameStore:
        return cls(get_connection(db_path))

    @property
    def connection(self) -> duckdb.DuckDBPyConnection:
        return self._conn

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def player_exists(self, player_hash: str) -> int | None:
        row = self._fetchone("SELECT player_id FROM players WHERE player_hash = ?", [player_hash])
        return int(row[0]) if row else None

    def create_player(self, player_hash: str, rating: int) -> int:
        row = self._fetchone(
            "INSERT INTO players (player_hash, rating) VALUES (?, ?) RETURNING player_id",
            [player_hash, rating],
        )
        if row is None:
            raise PersistenceError(f"Player insert returned no id for {player_hash}")
        return int(row[0])

    def update_player_rating(self, player_id: int, rating: int) -> None:
        self._execute(
            "UPDATE players SET rating = ?, updated_at = CURRENT_TIMESTAMP WHERE player_id = ?",
            [rating, player_id],
        )

    def game_exists(self, source: GameSource, external_id: str) -> bool:
        row = self._fetchone(
            "SELECT 1 FROM games WHERE source = ? AND external_id = ? LIMIT 1",
            [GameSource(source).value, external_id],
        )
        return row is not None

    def create_game(
        self,
        player_id: int,
        source: GameSource,
        external_id: str,
        played_on: date,
        result: GameResult,
    ) -> int:
        """Insert a game row.

        Raises:
            DuplicateGameError: When (source, external_id) is already stored.
            PersistenceError: For any other database failure.
        """

        source_value = GameSource(source).value
        try:
            with self._lock:
                row = self._conn.execute(
                    """
                    INSERT INTO games (player_id, source, external_id, played_on, result)
                    VALUES (?, ?, ?, ?, ?)
                    RETURNING game_id
                    """,
                    [player_id, source_value, external_id, played_on, GameResult(result).value],
                ).fetchone()
        except duckdb.ConstraintException as exc:
            raise DuplicateGameError(f"{source_value} game {external_id} already exists") from exc
        except duckdb.Error as exc:
            raise PersistenceError(f"Failed to insert {source_value} game {external_id}: {exc}") from exc
        if row is None:
            raise PersistenceError(f"Game insert returned no id for {external_id}")
        return int(row[0])

    def create_score(self, game_id: int, metrics: GameScore) -> int:
        row = self._fetchone(
            """
            INSERT INTO scores (
                game_id, engine_match_pct, delta_cp, run_perfect, ml_prob, suspicion_level
            )
            VALUES (?, ?, ?, ?, ?, ?)
            RETURNING score_id
            """,
            [
                game_id,
                metrics.engine_match_pct,
                metrics.delta_cp,
                metrics.run_perfect,
                metrics.ml_prob,
                metrics.suspicion_level,
            ],
        )
        if row is None:
            raise PersistenceError(f"Score insert returned no id for game {game_id}")
        return int(row[0])

    def get_cursor(self, source: GameSource, identity: str) -> SyncCursor | None:
        with self._lock:
            return self._get_cursor_locked(GameSource(source), identity)

    def advance_cursor(
        self,
        source: GameSource,
        identity: str,
        ts: int,
        external_id: str | None,
        increment_by: int,
    ) -> SyncCursor:
        """Upsert the cursor, moving it forward only.

        Returns:
            The cursor as stored after the statement. Its timestamp is greater
            than `ts` when the advance was rejected as a regression.
        """

        source = GameSource(source)
        try:
            with self._lock:
                self._conn.execute(
                    ADVANCE_CURSOR_SQL,
                    [source.value, identity, ts, external_id, max(increment_by, 0)],
                )
                cursor = self._get_cursor_locked(source, identity)
        except duckdb.Error as exc:
            raise PersistenceError(f"Failed to advance cursor for {source}/{identity}: {exc}") from exc
        if cursor is None:
            raise PersistenceError(f"Cursor for {source}/{identity} missing after upsert")
        return cursor

    def reset_cursor(self, source: GameSource, identity: str) -> bool:
        row = self._fetchone(
            "DELETE FROM sync_cursors WHERE source = ? AND identity = ? RETURNING identity",
            [GameSource(source).value, identity],
        )
        return row is not None

    def count_games(self, source: GameSource | None = None) -> int:
        if source is None:
            row = self._fetchone("SELECT COUNT(*) FROM games", [])
        else:
            row = self._fetchone(
                "SELECT COUNT(*) FROM games WHERE source = ?", [GameSource(source).value]
            )
        return int(row[0]) if row else 0

    def count_scores(self) -> int:
        row = self._fetchone("SELECT COUNT(*) FROM scores", [])
        return int(row[0]) if row else 0

    def _get_cursor_locked(self, source: GameSource, identity: str) -> SyncCursor | None:
        row = self._conn.execute(
            """
            SELECT last_imported_at_unix, last_external_id, total_imported
            FROM sync_cursors
            WHERE source = ? AND identity = ?
            """,
            [source.value, identity],
        ).fetchone()
        if row is None:
            return None
        return SyncCursor(
            source=source,
            identity=identity,
            last_imported_at_unix=int(row[0]),
            last_external_id=row[1],
            total_imported=int(row[2]),
        )

    def _fetchone(self, sql: str, params: list[object]) -> tuple | None:
        try:
            with self._lock:
                return self._conn.execute(sql, params).fetchone()
        except duckdb.Error as exc:
            raise PersistenceError(str(exc)) from exc

    def _execute(self, sql: str, params: list[object]) -> None:
        try:
            with self._lock:
                self._conn.execute(sql, params)
        except duckdb.Error as exc:
            raise PersistenceError(str(exc)) from exc
