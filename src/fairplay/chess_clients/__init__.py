"""Public exports for chess source adapters."""

from __future__ import annotations

from fairplay.chess_clients.base_chess_client import (
    BaseChessClient,
    BaseChessClientContext,
    FetchIssue,
    FetchReport,
    FetchRequest,
)
from fairplay.chess_clients.chesscom_client import ChesscomClient, ChesscomClientContext
from fairplay.chess_clients.http import RateLimitedHttp, RetryPolicy
from fairplay.chess_clients.lichess_client import LichessClient, LichessClientContext
from fairplay.chess_clients.mock_chess_client import MockChessClient

__all__ = [
    "BaseChessClient",
    "BaseChessClientContext",
    "ChesscomClient",
    "ChesscomClientContext",
    "FetchIssue",
    "FetchReport",
    "FetchRequest",
    "LichessClient",
    "LichessClientContext",
    "MockChessClient",
    "RateLimitedHttp",
    "RetryPolicy",
]
