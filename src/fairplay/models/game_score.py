from pydantic import BaseModel


class GameScore(BaseModel):
    """Metrics produced by the scoring collaborator for one game."""

    engine_match_pct: float
    delta_cp: float
    run_perfect: int
    ml_prob: float
    suspicion_level: int
