import threading
import unittest
from pathlib import Path

from fairplay.chess_clients.chesscom_client import ChesscomClient
from fairplay.chess_clients.lichess_client import LichessClient
from fairplay.import_orchestrator import ImportPhase
from fairplay.jobs import (
    ImportJobManager,
    JobStatus,
    TrackedPlayer,
    build_chess_client,
    parse_tracked_players,
)
from fairplay.models import GameSource
from fairplay.rate_limiter import RateLimitConfig, RateLimiter, RequestMetrics
from tests.http_fakes import FakeResponse, FakeSession, ndjson_response
from tests.store_fakes import InMemoryGameStore, make_settings
from tests.test_lichess_client import lichess_game

FIXTURES = Path(__file__).parent / "fixtures"
LICHESS_ALICE = "https://lichess.org/api/games/user/alice"
CHESSCOM_BOB = "https://api.chess.com/pub/player/bob/games/archives"


class BlockingSession(FakeSession):
    """Holds every request until `release` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def get(self, url: str, **kwargs: object) -> FakeResponse:
        self.entered.set()
        self.release.wait(5)
        return super().get(url, **kwargs)


class FakeClock:
    def __init__(self, now_ms: int = 1_000_000) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def sleep(self, seconds: float) -> None:
        self.now_ms += int(seconds * 1000)


class ImportJobManagerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.settings = make_settings(lichess_max_retries=0, chesscom_max_retries=0)
        self.store = InMemoryGameStore()
        self.session = FakeSession()
        self.slept: list[float] = []
        self.manager = self._manager()

    def _manager(
        self,
        *,
        limiters: dict[GameSource, RateLimiter] | None = None,
        sleeper=None,
    ) -> ImportJobManager:
        return ImportJobManager(
            self.settings,
            self.store,
            limiters=limiters,
            session_factory=lambda source: self.session,
            sleeper=sleeper or self.slept.append,
        )

    def test_source_import_job_completes(self) -> None:
        self.session.route(
            LICHESS_ALICE,
            ndjson_response([lichess_game("g2", 2000), lichess_game("g1", 1000)]),
        )

        handle = self.manager.start_import("Lichess", "Alice", limit=10)
        self.manager.wait(handle.job_id, timeout=5)

        self.assertEqual(handle.status, JobStatus.COMPLETED)
        self.assertEqual(handle.identity, "alice")
        self.assertEqual(handle.progress.phase, ImportPhase.DONE)
        summary = self.manager.get_result(handle.job_id)
        assert summary is not None
        self.assertEqual(summary.imported_count, 2)
        payload = handle.to_dict()
        self.assertEqual(payload["status"], "completed")
        self.assertEqual(payload["source"], "lichess")
        self.assertEqual(payload["summary"]["imported_count"], 2)
        self.assertEqual(payload["progress"]["phase"], "done")

    def test_pgn_import_job_completes(self) -> None:
        text = (FIXTURES / "three_games.pgn").read_text()

        handle = self.manager.start_pgn_import(text, "alice")
        self.manager.wait(handle.job_id, timeout=5)

        self.assertEqual(handle.kind, "pgn")
        self.assertEqual(handle.status, JobStatus.COMPLETED)
        summary = self.manager.get_result(handle.job_id)
        assert summary is not None
        self.assertEqual(summary.imported_count, 3)
        self.assertEqual(self.store.cursors, {})

    def test_unreachable_source_fails_the_job(self) -> None:
        self.session.route(LICHESS_ALICE, FakeResponse(status_code=503))

        handle = self.manager.start_import(GameSource.LICHESS, "alice")
        self.manager.wait(handle.job_id, timeout=5)

        self.assertEqual(handle.status, JobStatus.FAILED)
        self.assertEqual(handle.progress.phase, ImportPhase.FAILED)
        self.assertIn("Lichess export failed", handle.error or "")
        self.assertIsNone(handle.summary)

    def test_cancel_running_job(self) -> None:
        self.session = BlockingSession()
        self.session.route(
            LICHESS_ALICE,
            ndjson_response([lichess_game("g2", 2000), lichess_game("g1", 1000)]),
        )
        manager = self._manager()

        handle = manager.start_import(GameSource.LICHESS, "alice")
        self.assertTrue(self.session.entered.wait(5))
        self.assertTrue(manager.cancel(handle.job_id))
        self.session.release.set()
        manager.wait(handle.job_id, timeout=5)

        self.assertEqual(handle.status, JobStatus.COMPLETED)
        assert handle.summary is not None
        self.assertTrue(handle.summary.cancelled)
        self.assertEqual(handle.summary.imported_count, 0)
        self.assertTrue(handle.to_dict()["cancel_requested"])

    def test_cancel_finished_job_returns_false(self) -> None:
        handle = self.manager.start_pgn_import("1. e4 e5 *", "alice")
        self.manager.wait(handle.job_id, timeout=5)

        self.assertFalse(self.manager.cancel(handle.job_id))

    def test_unknown_job_raises_key_error(self) -> None:
        with self.assertRaises(KeyError):
            self.manager.get("missing")
        with self.assertRaises(KeyError):
            self.manager.cancel("missing")

    def test_list_jobs(self) -> None:
        first = self.manager.start_pgn_import("1. e4 e5 *", "alice")
        second = self.manager.start_pgn_import("1. d4 d5 *", "bob")
        for handle in (first, second):
            self.manager.wait(handle.job_id, timeout=5)

        self.assertEqual(
            {handle.job_id for handle in self.manager.list_jobs()},
            {first.job_id, second.job_id},
        )

    def test_oldest_finished_jobs_are_evicted(self) -> None:
        self.settings.imports.retained_jobs = 2
        self.session = BlockingSession()
        self.session.route(LICHESS_ALICE, ndjson_response([lichess_game("g1", 1000)]))
        manager = self._manager()

        running = manager.start_import(GameSource.LICHESS, "alice")
        self.assertTrue(self.session.entered.wait(5))
        finished = []
        for text in ("1. e4 e5 *", "1. d4 d5 *"):
            handle = manager.start_pgn_import(text, "bob")
            manager.wait(handle.job_id, timeout=5)
            finished.append(handle)
        latest = manager.start_pgn_import("1. c4 c5 *", "carol")
        manager.wait(latest.job_id, timeout=5)
        self.session.release.set()
        manager.wait(running.job_id, timeout=5)

        kept = {handle.job_id for handle in manager.list_jobs()}
        self.assertEqual(kept, {running.job_id, latest.job_id})
        with self.assertRaises(KeyError):
            manager.get(finished[0].job_id)

    def test_rate_limit_health_reports_each_source(self) -> None:
        health = self.manager.rate_limit_health()

        self.assertEqual(set(health), {GameSource.CHESSCOM, GameSource.LICHESS})
        self.assertTrue(all(item.healthy for item in health.values()))

    def test_sync_tracked_players_continues_past_failures(self) -> None:
        self.session.route(LICHESS_ALICE, ndjson_response([lichess_game("g1", 1000)]))
        self.session.route(CHESSCOM_BOB, FakeResponse(status_code=503))

        report = self.manager.sync_tracked_players(
            [TrackedPlayer("alice", "lichess"), TrackedPlayer("bob", "chesscom")], limit=5
        )

        self.assertEqual(report.imported_count, 1)
        self.assertEqual(len(report.summaries), 1)
        self.assertEqual(len(report.failures), 1)
        self.assertTrue(report.failures[0].startswith("chesscom:bob"))
        self.assertEqual(report.error_count, 1)
        self.assertEqual(self.slept, [])

    def test_sync_pauses_before_unhealthy_source(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter(RateLimitConfig(requests_per_second=1), clock=clock, sleeper=clock.sleep)
        limiter.record_request("lichess", RequestMetrics(timestamp_ms=clock()))
        limiters = {
            GameSource.LICHESS: limiter,
            GameSource.CHESSCOM: RateLimiter(RateLimitConfig(requests_per_second=5)),
        }
        self.session.route(LICHESS_ALICE, ndjson_response([]))
        slept: list[float] = []

        def sleeper(seconds: float) -> None:
            slept.append(seconds)
            clock.sleep(seconds)

        manager = self._manager(limiters=limiters, sleeper=sleeper)

        report = manager.sync_tracked_players([TrackedPlayer("alice", "lichess")])

        self.assertEqual(slept, [self.settings.imports.unhealthy_source_delay_ms / 1000.0])
        self.assertEqual(len(report.summaries), 1)


class BuildChessClientTests(unittest.TestCase):
    def test_builds_adapter_per_source(self) -> None:
        settings = make_settings()
        limiter = RateLimiter(RateLimitConfig(requests_per_second=5))

        chesscom = build_chess_client(
            settings, GameSource.CHESSCOM, "bob", limiter=limiter, session=FakeSession()
        )
        lichess = build_chess_client(
            settings, GameSource.LICHESS, "bob", limiter=limiter, session=FakeSession()
        )

        self.assertIsInstance(chesscom, ChesscomClient)
        self.assertIsInstance(lichess, LichessClient)
        self.assertTrue(chesscom.resumable)


class ParseTrackedPlayersTests(unittest.TestCase):
    def test_parses_names_and_sources(self) -> None:
        players = parse_tracked_players("hikaru:chesscom, drnykterstein ,, magnus:lichess")

        self.assertEqual(
            players,
            [
                TrackedPlayer("hikaru", "chesscom"),
                TrackedPlayer("drnykterstein", "both"),
                TrackedPlayer("magnus", "lichess"),
            ],
        )
        self.assertEqual(players[1].sources(), [GameSource.CHESSCOM, GameSource.LICHESS])
        self.assertEqual(players[0].sources(), [GameSource.CHESSCOM])

    def test_empty_value(self) -> None:
        self.assertEqual(parse_tracked_players(""), [])


if __name__ == "__main__":
    unittest.main()
