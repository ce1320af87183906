from __future__ import annotations

import os
from dataclasses import MISSING, dataclass, field
from pathlib import Path

from dotenv import load_dotenv

_MISSING = object()
_SETTINGS_ALIAS_FIELDS = (
    "chesscom_token",
    "chesscom_time_class",
    "chesscom_max_retries",
    "chesscom_retry_backoff_ms",
    "chesscom_requests_per_second",
    "chesscom_requests_per_minute",
    "chesscom_requests_per_hour",
    "lichess_token",
    "lichess_perf_type",
    "lichess_max_retries",
    "lichess_retry_backoff_ms",
    "lichess_requests_per_second",
    "lichess_max_body_mb",
    "import_batch_size",
    "import_inter_game_delay_ms",
    "import_inter_batch_delay_ms",
    "import_request_timeout_s",
    "import_max_limit",
    "import_retained_jobs",
)

load_dotenv()

DEFAULT_DATA_DIR = Path(os.getenv("FAIRPLAY_DATA_DIR", "data"))
DEFAULT_USER_AGENT = "FairPlay-Scout/1.0 (Chess Analysis Tool)"
CHESSCOM_ARCHIVES_URL = "https://api.chess.com/pub/player/{username}/games/archives"
LICHESS_GAMES_URL = "https://lichess.org/api/games/user/{username}"
MIN_BATCH_SIZE = 2
MAX_BATCH_SIZE = 10


def _env_str(name: str, default: str) -> str:
    return os.getenv(name, default)


def _env_optional_str(name: str) -> str | None:
    value = os.getenv(name)
    return value or None


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_optional_int(name: str, default: int | None) -> int | None:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = int(raw)
    return value or None


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_optional_float(name: str, default: float | None) -> float | None:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = float(raw)
    return value or None


def _field_value(name: str, field_info: object, kwargs: dict[str, object]) -> object:
    value = kwargs.pop(name, _MISSING)
    if value is not _MISSING:
        return value
    default_factory = getattr(field_info, "default_factory", MISSING)
    if default_factory is not MISSING:
        return default_factory()
    default = getattr(field_info, "default", MISSING)
    if default is not MISSING:
        return default
    raise TypeError(f"Missing required argument: {name}")


def _apply_settings_aliases(settings: Settings, kwargs: dict[str, object]) -> None:
    for alias in _SETTINGS_ALIAS_FIELDS:
        value = kwargs.pop(alias, _MISSING)
        if value is not _MISSING:
            group, _, attr = alias.partition("_")
            setattr(getattr(settings, _ALIAS_GROUPS[group]), attr, value)


def _raise_on_unexpected_kwargs(kwargs: dict[str, object]) -> None:
    if kwargs:
        unexpected = next(iter(kwargs))
        raise TypeError(f"Settings.__init__() got an unexpected keyword argument '{unexpected}'")


@dataclass(slots=True)
class ChesscomSettings:
    """Chess.com archive API configuration."""

    archives_url: str = field(
        default_factory=lambda: _env_str("CHESSCOM_ARCHIVES_URL", CHESSCOM_ARCHIVES_URL)
    )
    token: str | None = field(default_factory=lambda: _env_optional_str("CHESSCOM_TOKEN"))
    time_class: str = field(default_factory=lambda: _env_str("CHESSCOM_TIME_CLASS", ""))
    max_retries: int = field(default_factory=lambda: _env_int("CHESSCOM_MAX_RETRIES", 3))
    retry_backoff_ms: int = field(
        default_factory=lambda: _env_int("CHESSCOM_RETRY_BACKOFF_MS", 500)
    )
    requests_per_second: int = field(
        default_factory=lambda: _env_int("CHESSCOM_REQUESTS_PER_SECOND", 1)
    )
    requests_per_minute: int | None = field(
        default_factory=lambda: _env_optional_int("CHESSCOM_REQUESTS_PER_MINUTE", 60)
    )
    requests_per_hour: int | None = field(
        default_factory=lambda: _env_optional_int("CHESSCOM_REQUESTS_PER_HOUR", 3600)
    )
    max_body_mb: float | None = field(
        default_factory=lambda: _env_optional_float("CHESSCOM_MAX_BODY_MB", None)
    )
    quota_window_ms: int = field(default_factory=lambda: _env_int("CHESSCOM_QUOTA_WINDOW_MS", 60_000))


@dataclass(slots=True)
class LichessSettings:
    """Lichess streaming API configuration."""

    games_url: str = field(default_factory=lambda: _env_str("LICHESS_GAMES_URL", LICHESS_GAMES_URL))
    token: str | None = field(default_factory=lambda: _env_optional_str("LICHESS_TOKEN"))
    perf_type: str = field(default_factory=lambda: _env_str("LICHESS_PERF_TYPE", ""))
    max_games_per_request: int = field(
        default_factory=lambda: _env_int("LICHESS_MAX_GAMES_PER_REQUEST", 300)
    )
    max_retries: int = field(default_factory=lambda: _env_int("LICHESS_MAX_RETRIES", 3))
    retry_backoff_ms: int = field(default_factory=lambda: _env_int("LICHESS_RETRY_BACKOFF_MS", 1000))
    requests_per_second: int = field(
        default_factory=lambda: _env_int("LICHESS_REQUESTS_PER_SECOND", 15)
    )
    requests_per_minute: int | None = field(
        default_factory=lambda: _env_optional_int("LICHESS_REQUESTS_PER_MINUTE", 900)
    )
    requests_per_hour: int | None = field(
        default_factory=lambda: _env_optional_int("LICHESS_REQUESTS_PER_HOUR", 54_000)
    )
    max_body_mb: float | None = field(
        default_factory=lambda: _env_optional_float("LICHESS_MAX_BODY_MB", 5.0)
    )
    quota_window_ms: int = field(default_factory=lambda: _env_int("LICHESS_QUOTA_WINDOW_MS", 60_000))


@dataclass(slots=True)
class ImportSettings:
    """Batching, pacing, and timeout configuration for import jobs."""

    batch_size: int = field(default_factory=lambda: _env_int("FAIRPLAY_BATCH_SIZE", 5))
    inter_game_delay_ms: int = field(
        default_factory=lambda: _env_int("FAIRPLAY_INTER_GAME_DELAY_MS", 200)
    )
    inter_batch_delay_ms: int = field(
        default_factory=lambda: _env_int("FAIRPLAY_INTER_BATCH_DELAY_MS", 500)
    )
    request_timeout_s: float = field(
        default_factory=lambda: _env_float("FAIRPLAY_REQUEST_TIMEOUT_S", 15.0)
    )
    max_limit: int = field(default_factory=lambda: _env_int("FAIRPLAY_MAX_LIMIT", 100))
    default_limit: int = field(default_factory=lambda: _env_int("FAIRPLAY_DEFAULT_LIMIT", 50))
    high_risk_threshold: int = field(
        default_factory=lambda: _env_int("FAIRPLAY_HIGH_RISK_THRESHOLD", 70)
    )
    rate_limit_scope: str = field(
        default_factory=lambda: _env_str("FAIRPLAY_RATE_LIMIT_SCOPE", "source")
    )
    unhealthy_source_delay_ms: int = field(
        default_factory=lambda: _env_int("FAIRPLAY_UNHEALTHY_SOURCE_DELAY_MS", 2000)
    )
    tracked_players: str = field(
        default_factory=lambda: _env_str("FAIRPLAY_TRACKED_PLAYERS", "")
    )
    retained_jobs: int = field(default_factory=lambda: _env_int("FAIRPLAY_RETAINED_JOBS", 100))


_ALIAS_GROUPS = {
    "chesscom": "chesscom",
    "lichess": "lichess",
    "import": "imports",
}


@dataclass(slots=True, init=False)
class Settings:
    """Central configuration for game ingestion."""

    user_agent: str = field(
        default_factory=lambda: _env_str("FAIRPLAY_USER_AGENT", DEFAULT_USER_AGENT)
    )
    data_dir: Path = field(default_factory=lambda: DEFAULT_DATA_DIR)
    duckdb_path: Path = field(
        default_factory=lambda: Path(
            os.getenv("FAIRPLAY_DUCKDB_PATH", str(DEFAULT_DATA_DIR / "fairplay.duckdb"))
        )
    )
    chesscom: ChesscomSettings = field(default_factory=ChesscomSettings)
    lichess: LichessSettings = field(default_factory=LichessSettings)
    imports: ImportSettings = field(default_factory=ImportSettings)

    def __init__(self, **kwargs: object) -> None:
        for name, field_info in self.__dataclass_fields__.items():
            setattr(self, name, _field_value(name, field_info, kwargs))
        _apply_settings_aliases(self, kwargs)
        _raise_on_unexpected_kwargs(kwargs)

    @property
    def batch_size(self) -> int:
        """Configured batch size clamped to the supported range."""
        return max(MIN_BATCH_SIZE, min(MAX_BATCH_SIZE, self.imports.batch_size))

    def ensure_dirs(self) -> None:
        self.duckdb_path.parent.mkdir(parents=True, exist_ok=True)


def get_settings(**overrides: object) -> Settings:
    """Return a Settings instance with environment and keyword overrides."""
    load_dotenv()
    settings = Settings(**overrides)
    settings.ensure_dirs()
    return settings
