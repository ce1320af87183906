"""Placeholder suspicion scoring, called once per newly created game."""

from __future__ import annotations

import random

from fairplay.models import GameScore, RawGame
from fairplay.utils import Hasher


def _rng_for(game: RawGame) -> random.Random:
    seed = int(Hasher.hash_string(f"{game.source.value}:{game.external_id}")[:16], 16)
    return random.Random(seed)


def score_game(game: RawGame) -> GameScore:
    """Produce stand-in engine metrics for a game.

    Engine match is drawn from 75-95% and scaled by rating (rating / 2000,
    capped at 1.2), then capped at 98%. Suspicion adds 40 above 95% match,
    20 above 90%, and 15 for a rating above 2200 with more than 92% match,
    plus +/-10 of noise, clamped to 0-100. The random stream is seeded from
    the game key so a game always scores the same.
    """

    rng = _rng_for(game)
    base_accuracy = 75 + rng.random() * 20
    elo_factor = min(game.rating / 2000, 1.2)
    engine_match = min(base_accuracy * elo_factor, 98.0)

    suspicion = 0.0
    if engine_match > 95:
        suspicion += 40
    if engine_match > 90:
        suspicion += 20
    if game.rating > 2200 and engine_match > 92:
        suspicion += 15
    suspicion += rng.random() * 20 - 10
    suspicion = max(0.0, min(100.0, suspicion))

    return GameScore(
        engine_match_pct=round(engine_match, 1),
        delta_cp=round(rng.random() * 50 - 25, 1),
        run_perfect=int(rng.random() * 15),
        ml_prob=round(suspicion / 100, 3),
        suspicion_level=round(suspicion),
    )
