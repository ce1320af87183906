import tempfile
import threading
import unittest
from datetime import date
from pathlib import Path

from fairplay.db.duckdb_store import DuckDbGameStore
from fairplay.errors import DuplicateGameError
from fairplay.models import GameResult, GameScore, GameSource


class DuckDbGameStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp_dir = tempfile.TemporaryDirectory()
        self.store = DuckDbGameStore.open(Path(self.tmp_dir.name) / "nested" / "fairplay.duckdb")

    def tearDown(self) -> None:
        self.store.close()
        self.tmp_dir.cleanup()

    def _game(self, external_id: str, source: GameSource = GameSource.LICHESS) -> int:
        player_id = self.store.player_exists("hash") or self.store.create_player("hash", 1500)
        return self.store.create_game(player_id, source, external_id, date(2024, 3, 1), GameResult.WIN)

    def test_players_are_found_by_hash(self) -> None:
        self.assertIsNone(self.store.player_exists("abc"))

        player_id = self.store.create_player("abc", 1700)
        self.store.update_player_rating(player_id, 1750)

        self.assertEqual(self.store.player_exists("abc"), player_id)
        row = self.store.connection.execute(
            "SELECT rating FROM players WHERE player_id = ?", [player_id]
        ).fetchone()
        self.assertEqual(row[0], 1750)

    def test_games_are_unique_per_source(self) -> None:
        self._game("g1")

        with self.assertRaises(DuplicateGameError):
            self._game("g1")

        self._game("g1", GameSource.CHESSCOM)
        self.assertTrue(self.store.game_exists(GameSource.LICHESS, "g1"))
        self.assertTrue(self.store.game_exists(GameSource.CHESSCOM, "g1"))
        self.assertFalse(self.store.game_exists(GameSource.LICHESS, "g2"))
        self.assertEqual(self.store.count_games(), 2)
        self.assertEqual(self.store.count_games(GameSource.LICHESS), 1)

    def test_scores_are_linked_to_games(self) -> None:
        game_id = self._game("g1")
        score = GameScore(
            engine_match_pct=55.0, delta_cp=20.0, run_perfect=3, ml_prob=0.2, suspicion_level=1
        )

        self.store.create_score(game_id, score)

        self.assertEqual(self.store.count_scores(), 1)

    def test_cursor_advances_and_accumulates(self) -> None:
        self.assertIsNone(self.store.get_cursor(GameSource.LICHESS, "alice"))

        self.store.advance_cursor(GameSource.LICHESS, "alice", 100, "g1", 2)
        cursor = self.store.advance_cursor(GameSource.LICHESS, "alice", 200, "g2", 3)

        self.assertEqual(cursor.last_imported_at_unix, 200)
        self.assertEqual(cursor.last_external_id, "g2")
        self.assertEqual(cursor.total_imported, 5)
        self.assertEqual(self.store.get_cursor(GameSource.LICHESS, "alice"), cursor)

    def test_older_advance_keeps_position_but_counts_games(self) -> None:
        self.store.advance_cursor(GameSource.LICHESS, "alice", 200, "g2", 3)

        cursor = self.store.advance_cursor(GameSource.LICHESS, "alice", 100, "g1", 4)

        self.assertEqual(cursor.last_imported_at_unix, 200)
        self.assertEqual(cursor.last_external_id, "g2")
        self.assertEqual(cursor.total_imported, 7)

    def test_concurrent_advances_keep_the_maximum(self) -> None:
        timestamps = [50, 300, 120, 280, 10, 299, 150, 75]
        threads = [
            threading.Thread(
                target=self.store.advance_cursor,
                args=(GameSource.CHESSCOM, "bob", ts, f"g{ts}", 1),
            )
            for ts in timestamps
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        cursor = self.store.get_cursor(GameSource.CHESSCOM, "bob")
        assert cursor is not None
        self.assertEqual(cursor.last_imported_at_unix, 300)
        self.assertEqual(cursor.last_external_id, "g300")
        self.assertEqual(cursor.total_imported, len(timestamps))

    def test_reset_cursor(self) -> None:
        self.store.advance_cursor(GameSource.LICHESS, "alice", 100, "g1", 1)

        self.assertTrue(self.store.reset_cursor(GameSource.LICHESS, "alice"))
        self.assertFalse(self.store.reset_cursor(GameSource.LICHESS, "alice"))
        self.assertIsNone(self.store.get_cursor(GameSource.LICHESS, "alice"))

    def test_schema_is_idempotent(self) -> None:
        self._game("g1")

        reopened = DuckDbGameStore(self.store.connection)

        self.assertTrue(reopened.game_exists(GameSource.LICHESS, "g1"))


if __name__ == "__main__":
    unittest.main()
