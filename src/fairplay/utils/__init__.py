"""Utility exports for the fairplay package."""

from .hasher import Hasher, player_hash, stable_game_hash
from .logger import get_logger
from .now import Now
from .to_int import to_int

__all__ = [
    "Hasher",
    "Now",
    "get_logger",
    "player_hash",
    "stable_game_hash",
    "to_int",
]
