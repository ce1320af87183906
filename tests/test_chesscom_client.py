import threading
import unittest

import requests

from fairplay.chess_clients.base_chess_client import FetchReport, FetchRequest
from fairplay.chess_clients.chesscom_client import (
    ChesscomClient,
    ChesscomClientContext,
    auth_headers,
)
from fairplay.chess_clients.http import RateLimitedHttp, RetryPolicy
from fairplay.dedup_gate import DedupGate
from fairplay.errors import ImportCancelledError, SourceUnavailableError
from fairplay.models import GameResult, GameSource, SyncCursor
from fairplay.rate_limiter import RateLimitConfig, RateLimiter
from fairplay.utils.logger import get_logger
from tests.http_fakes import FakeResponse, FakeSession
from tests.store_fakes import InMemoryGameStore, make_settings

INDEX_URL = "https://api.chess.com/pub/player/alice/games/archives"
FEB_URL = "https://api.chess.com/pub/player/alice/games/2024/02"
MAR_URL = "https://api.chess.com/pub/player/alice/games/2024/03"


def chesscom_game(
    game_id: int,
    end_time: int,
    *,
    white: str = "Alice",
    black: str = "bob",
    white_result: str = "win",
    black_result: str = "checkmated",
    time_class: str = "rapid",
) -> dict:
    return {
        "url": f"https://www.chess.com/game/live/{game_id}",
        "uuid": f"uuid-{game_id}",
        "pgn": '[Event "Live Chess"]\n[ECO "B20"]\n[Opening "Sicilian Defense"]\n\n1. e4 c5 *',
        "time_control": "600",
        "time_class": time_class,
        "end_time": end_time,
        "rules": "chess",
        "white": {"username": white, "rating": 1500, "result": white_result},
        "black": {"username": black, "rating": 1480, "result": black_result},
    }


class ChesscomClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.settings = make_settings(chesscom_max_retries=0)
        self.session = FakeSession()
        self.store = InMemoryGameStore()
        self.cancel = threading.Event()

    def _client(self) -> ChesscomClient:
        http = RateLimitedHttp(
            session=self.session,
            limiter=RateLimiter(RateLimitConfig(requests_per_second=1000)),
            identifier="chesscom",
            timeout_s=1.0,
            retry_policy=RetryPolicy(max_retries=0, backoff_ms=0),
            sleeper=lambda _: None,
        )
        return ChesscomClient(
            ChesscomClientContext(
                settings=self.settings,
                logger=get_logger("test"),
                http=http,
                dedup_gate=DedupGate(self.store),
                cancel_event=self.cancel,
            )
        )

    def _route_two_months(self) -> None:
        self.session.route(INDEX_URL, FakeResponse(json_data={"archives": [FEB_URL, MAR_URL]}))
        self.session.route(
            MAR_URL,
            FakeResponse(json_data={"games": [chesscom_game(3, 3000), chesscom_game(4, 4000)]}),
        )
        self.session.route(
            FEB_URL,
            FakeResponse(json_data={"games": [chesscom_game(1, 1000), chesscom_game(2, 2000)]}),
        )

    def test_walks_archives_newest_first_until_limit(self) -> None:
        self._route_two_months()

        games = list(self._client().fetch_games(FetchRequest(identity="Alice", limit=3)))

        self.assertEqual([game.external_id for game in games], ["uuid-4", "uuid-3", "uuid-2"])
        self.assertEqual(self.session.urls, [INDEX_URL, MAR_URL, FEB_URL])

    def test_maps_game_fields(self) -> None:
        self._route_two_months()

        game = next(self._client().fetch_games(FetchRequest(identity="alice", limit=1)))

        self.assertEqual(game.source, GameSource.CHESSCOM)
        self.assertEqual(game.result, GameResult.WIN)
        self.assertEqual(game.rating, 1500)
        self.assertEqual(game.time_control, "600")
        self.assertEqual(game.opening, "Sicilian Defense")
        self.assertEqual(game.occurred_at_unix, 4000)
        self.assertIn("1. e4 c5", game.pgn_text)

    def test_stops_at_cursor_boundary(self) -> None:
        self._route_two_months()
        cursor = SyncCursor(source=GameSource.CHESSCOM, identity="alice", last_imported_at_unix=3000)
        report = FetchReport()

        games = list(
            self._client().fetch_games(FetchRequest("alice", 10, cursor=cursor), report)
        )

        self.assertEqual([game.external_id for game in games], ["uuid-4"])
        self.assertEqual(report.skipped_by_cursor, 1)
        self.assertNotIn(FEB_URL, self.session.urls)

    def test_failed_month_is_recorded_and_skipped(self) -> None:
        self.session.route(INDEX_URL, FakeResponse(json_data={"archives": [FEB_URL, MAR_URL]}))
        self.session.route(MAR_URL, FakeResponse(status_code=404))
        self.session.route(FEB_URL, FakeResponse(json_data={"games": [chesscom_game(1, 1000)]}))
        report = FetchReport()

        games = list(self._client().fetch_games(FetchRequest("alice", 10), report))

        self.assertEqual([game.external_id for game in games], ["uuid-1"])
        self.assertEqual([issue.kind for issue in report.issues], ["page"])
        self.assertIn(MAR_URL, report.issues[0].message)

    def test_truncated_month_page_is_recorded_and_skipped(self) -> None:
        self.session.route(INDEX_URL, FakeResponse(json_data={"archives": [FEB_URL, MAR_URL]}))
        self.session.route(
            MAR_URL,
            *(
                FakeResponse(body_error=requests.exceptions.ChunkedEncodingError("truncated body"))
                for _ in range(4)
            ),
        )
        self.session.route(FEB_URL, FakeResponse(json_data={"games": [chesscom_game(1, 1000)]}))
        report = FetchReport()

        games = list(self._client().fetch_games(FetchRequest("alice", 10), report))

        self.assertEqual([game.external_id for game in games], ["uuid-1"])
        self.assertEqual([issue.kind for issue in report.issues], ["page"])
        self.assertIn(MAR_URL, report.issues[0].message)

    def test_unreachable_archive_listing_fails_the_job(self) -> None:
        self.session.route(INDEX_URL, FakeResponse(status_code=503))

        with self.assertRaises(SourceUnavailableError):
            self._client().fetch_games(FetchRequest("alice", 10))

    def test_empty_archive_listing_is_not_an_error(self) -> None:
        self.session.route(INDEX_URL, FakeResponse(json_data={"archives": []}))

        self.assertEqual(list(self._client().fetch_games(FetchRequest("alice", 10))), [])

    def test_malformed_records_are_counted(self) -> None:
        broken = chesscom_game(5, 5000)
        del broken["end_time"]
        stranger = chesscom_game(6, 6000, white="carol", black="dave")
        self.session.route(INDEX_URL, FakeResponse(json_data={"archives": [MAR_URL]}))
        self.session.route(
            MAR_URL,
            FakeResponse(json_data={"games": [broken, stranger, chesscom_game(3, 3000)]}),
        )
        report = FetchReport()

        games = list(self._client().fetch_games(FetchRequest("alice", 10), report))

        self.assertEqual([game.external_id for game in games], ["uuid-3"])
        self.assertEqual(report.malformed, 2)
        self.assertEqual(report.candidates, 3)
        self.assertEqual({issue.external_id for issue in report.issues}, {"uuid-5", "uuid-6"})

    def test_result_codes_map_to_outcomes(self) -> None:
        self.session.route(INDEX_URL, FakeResponse(json_data={"archives": [MAR_URL]}))
        self.session.route(
            MAR_URL,
            FakeResponse(
                json_data={
                    "games": [
                        chesscom_game(1, 1000, white_result="agreed", black_result="agreed"),
                        chesscom_game(2, 2000, white_result="timeout", black_result="win"),
                    ]
                }
            ),
        )

        games = list(self._client().fetch_games(FetchRequest("alice", 10)))

        self.assertEqual([game.result for game in games], [GameResult.LOSS, GameResult.DRAW])

    def test_time_class_filter(self) -> None:
        self.settings.chesscom.time_class = "blitz"
        self.session.route(INDEX_URL, FakeResponse(json_data={"archives": [MAR_URL]}))
        self.session.route(
            MAR_URL,
            FakeResponse(
                json_data={
                    "games": [
                        chesscom_game(1, 1000, time_class="blitz"),
                        chesscom_game(2, 2000, time_class="rapid"),
                    ]
                }
            ),
        )

        games = list(self._client().fetch_games(FetchRequest("alice", 10)))

        self.assertEqual([game.external_id for game in games], ["uuid-1"])

    def test_follows_next_page_links(self) -> None:
        page_two = f"{MAR_URL}?page=2"
        self.session.route(INDEX_URL, FakeResponse(json_data={"archives": [MAR_URL]}))
        self.session.route(
            MAR_URL,
            FakeResponse(json_data={"games": [chesscom_game(1, 1000)], "next_page": page_two}),
        )
        self.session.route(page_two, FakeResponse(json_data={"games": [chesscom_game(2, 2000)]}))

        games = list(self._client().fetch_games(FetchRequest("alice", 10)))

        self.assertEqual([game.external_id for game in games], ["uuid-2", "uuid-1"])

    def test_already_stored_games_are_skipped(self) -> None:
        self._route_two_months()
        self.store.games[("chesscom", "uuid-4")] = 1
        report = FetchReport()

        games = list(self._client().fetch_games(FetchRequest("alice", 2), report))

        self.assertEqual([game.external_id for game in games], ["uuid-3", "uuid-2"])
        self.assertEqual(report.skipped_existing, 1)

    def test_cancellation_before_next_page(self) -> None:
        self._route_two_months()
        games = self._client().fetch_games(FetchRequest("alice", 10))
        self.assertEqual(next(games).external_id, "uuid-4")
        self.assertEqual(next(games).external_id, "uuid-3")

        self.cancel.set()

        with self.assertRaises(ImportCancelledError):
            next(games)


class AuthHeaderTests(unittest.TestCase):
    def test_auth_headers(self) -> None:
        self.assertEqual(auth_headers(None), {})
        self.assertEqual(auth_headers("tok"), {"Authorization": "Bearer tok"})


if __name__ == "__main__":
    unittest.main()
