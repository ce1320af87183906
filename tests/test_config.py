import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from fairplay.config import MAX_BATCH_SIZE, MIN_BATCH_SIZE, Settings, get_settings


class SettingsTests(unittest.TestCase):
    def test_flattened_aliases_reach_nested_settings(self) -> None:
        settings = Settings(
            chesscom_max_retries=7,
            lichess_requests_per_second=3,
            import_inter_game_delay_ms=10,
            import_max_limit=40,
        )

        self.assertEqual(settings.chesscom.max_retries, 7)
        self.assertEqual(settings.lichess.requests_per_second, 3)
        self.assertEqual(settings.imports.inter_game_delay_ms, 10)
        self.assertEqual(settings.imports.max_limit, 40)

    def test_batch_size_is_clamped(self) -> None:
        self.assertEqual(Settings(import_batch_size=1).batch_size, MIN_BATCH_SIZE)
        self.assertEqual(Settings(import_batch_size=50).batch_size, MAX_BATCH_SIZE)
        self.assertEqual(Settings(import_batch_size=4).batch_size, 4)

    def test_unknown_keyword_is_rejected(self) -> None:
        with self.assertRaises(TypeError):
            Settings(unknown_option=True)

    def test_environment_overrides(self) -> None:
        with patch.dict(
            os.environ,
            {"FAIRPLAY_BATCH_SIZE": "8", "LICHESS_PERF_TYPE": "blitz", "CHESSCOM_TOKEN": "tok"},
        ):
            settings = Settings()

        self.assertEqual(settings.imports.batch_size, 8)
        self.assertEqual(settings.lichess.perf_type, "blitz")
        self.assertEqual(settings.chesscom.token, "tok")

    def test_get_settings_creates_data_dir(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            db_path = Path(tmp_dir) / "nested" / "fairplay.duckdb"

            settings = get_settings(duckdb_path=db_path)

            self.assertTrue(db_path.parent.exists())
            self.assertEqual(settings.duckdb_path, db_path)


if __name__ == "__main__":
    unittest.main()
