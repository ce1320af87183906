import time
import unittest

from fairplay.events import HighRiskScoreEvent, LoggingScoreNotifier, ScoreEventBus
from fairplay.models import GameScore, GameSource
from fairplay.scoring import score_game
from tests.store_fakes import make_game


class ScoreGameTests(unittest.TestCase):
    def test_scores_are_deterministic_per_game(self) -> None:
        game = make_game("g1", 1000, rating=2100)

        self.assertEqual(score_game(game), score_game(game))

    def test_scores_stay_in_range(self) -> None:
        for index in range(50):
            score = score_game(make_game(f"g{index}", 1000, rating=1000 + index * 40))

            self.assertLessEqual(score.engine_match_pct, 98.0)
            self.assertGreaterEqual(score.engine_match_pct, 0.0)
            self.assertGreaterEqual(score.suspicion_level, 0)
            self.assertLessEqual(score.suspicion_level, 100)
            self.assertAlmostEqual(score.ml_prob, score.suspicion_level / 100, delta=0.01)
            self.assertGreaterEqual(score.run_perfect, 0)
            self.assertLess(score.run_perfect, 15)

    def test_low_rating_keeps_match_low(self) -> None:
        score = score_game(make_game("g1", 1000, rating=1000))

        self.assertLessEqual(score.engine_match_pct, 47.5)
        self.assertLessEqual(score.suspicion_level, 10)


class ScoreEventBusTests(unittest.TestCase):
    def _event(self, external_id: str = "g1") -> HighRiskScoreEvent:
        return HighRiskScoreEvent.from_score(
            game_id=1,
            source=GameSource.LICHESS,
            external_id=external_id,
            identity="alice",
            score=GameScore(
                engine_match_pct=97.0,
                delta_cp=2.0,
                run_perfect=12,
                ml_prob=0.81,
                suspicion_level=81,
            ),
        )

    def test_drain_returns_events_in_order(self) -> None:
        bus = ScoreEventBus()
        bus.publish(self._event("g1"))
        bus.publish(self._event("g2"))

        self.assertEqual([event.external_id for event in bus.drain()], ["g1", "g2"])
        self.assertEqual(bus.drain(), [])

    def test_get_times_out_when_empty(self) -> None:
        self.assertIsNone(ScoreEventBus().get(timeout=0.01))

    def test_notifier_consumes_published_events(self) -> None:
        bus = ScoreEventBus()
        notifier = LoggingScoreNotifier(bus, poll_interval_s=0.01)
        notifier.start()
        try:
            bus.publish(self._event())
            for _ in range(200):
                if notifier.delivered:
                    break
                time.sleep(0.01)
        finally:
            notifier.stop(timeout=1)

        self.assertEqual([event.suspicion_level for event in notifier.delivered], [81])

    def test_notifier_keeps_only_recent_events(self) -> None:
        notifier = LoggingScoreNotifier(ScoreEventBus(), max_recent=2)

        for index in (1, 2, 3):
            notifier.notify(self._event(f"g{index}"))

        self.assertEqual([event.external_id for event in notifier.delivered], ["g2", "g3"])


if __name__ == "__main__":
    unittest.main()
