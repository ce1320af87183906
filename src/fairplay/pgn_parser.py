"""Split pasted or uploaded PGN text into individual games.

Three splitting strategies are tried in order:

1. Lookahead split before every ``[Event`` tag (games are self-delimiting).
2. Split on blank lines, re-attaching a header-only block to the movetext
   block that follows it.
3. Treat the whole text as one game.

Each block is then reduced to its tag pairs and a cleaned movetext string.
Tag pairs are read with python-chess; a line regex picks up tags that do not
open the block.
Blocks without any numbered move are rejected with a reason; missing player
names fall back to an ``"A vs. B"`` first line and finally to ``"Unknown"``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from io import StringIO

import chess.pgn

UNKNOWN = "Unknown"

EVENT_SPLIT_RE: re.Pattern[str] = re.compile(r"(?=\[Event)")
BLANK_LINE_SPLIT_RE: re.Pattern[str] = re.compile(r"\n\s*\n")
HEADER_RE: re.Pattern[str] = re.compile(r'\[(\w+)\s+"([^"]+)"\]')
VS_RE: re.Pattern[str] = re.compile(r"([A-Za-z0-9_]+)\s+vs\.\s+([A-Za-z0-9_]+)")
MOVE_NUMBER_RE: re.Pattern[str] = re.compile(r"\d+\.")
_COMMENT_RE = re.compile(r"\{[^}]*\}")
_VARIATION_RE = re.compile(r"\([^)]*\)")
_NAG_RE = re.compile(r"\$\d+")
_ANNOTATION_RE = re.compile(r"[?!]+")
_WHITESPACE_RE = re.compile(r"\s+")
_FULL_MOVE_RE = re.compile(r"(\d+)\.(?!\.)")
_DATE_FORMATS = ("%Y.%m.%d", "%Y-%m-%d", "%Y/%m/%d")
_RESULTS = frozenset({"1-0", "0-1", "1/2-1/2", "*"})


@dataclass(slots=True)
class ParsedPgnGame:
    """One game extracted from a PGN block.

    Attributes:
        white: White player's name, or "Unknown".
        black: Black player's name, or "Unknown".
        result: PGN result token ("1-0", "0-1", "1/2-1/2" or "*").
        date: Raw Date tag value, if any.
        site: Site tag value, if any.
        event: Event tag value, or "Unknown Event".
        moves: Movetext without comments, variations or annotations.
        white_elo: WhiteElo tag as an integer, if parseable.
        black_elo: BlackElo tag as an integer, if parseable.
        headers: All tag pairs with lower-cased keys.
        raw_text: The block the game was parsed from.
    """

    white: str
    black: str
    result: str
    moves: str
    raw_text: str
    date: str | None = None
    site: str | None = None
    event: str = "Unknown Event"
    white_elo: int | None = None
    black_elo: int | None = None
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def move_count(self) -> int:
        """Number of distinct full-move numbers in the movetext."""
        return len({int(number) for number in _FULL_MOVE_RE.findall(self.moves)})

    def played_on(self) -> date | None:
        """Parse the Date tag; partial dates such as "2024.??.??" give None."""
        return _parse_date(self.headers.get("utcdate") or self.date)

    def occurred_at_unix(self) -> int | None:
        """Unix seconds from UTCDate/UTCTime (or Date) tags, when present."""
        played_on = self.played_on()
        if played_on is None:
            return None
        moment = datetime(played_on.year, played_on.month, played_on.day, tzinfo=UTC)
        clock = self.headers.get("utctime") or self.headers.get("endtime")
        if clock:
            try:
                parsed = datetime.strptime(clock.split()[0], "%H:%M:%S")
            except ValueError:
                parsed = None
            if parsed is not None:
                moment = moment.replace(
                    hour=parsed.hour, minute=parsed.minute, second=parsed.second
                )
        return int(moment.timestamp())

    def involves(self, username: str) -> str | None:
        """Return "white" or "black" when `username` played this game."""
        wanted = username.strip().lower()
        if not wanted:
            return None
        if self.white.lower() == wanted:
            return "white"
        if self.black.lower() == wanted:
            return "black"
        return None


@dataclass(frozen=True, slots=True)
class PgnRejection:
    """Why a block did not yield a game. `block_number` is 1-based."""

    block_number: int
    reason: str


@dataclass(slots=True)
class PgnParseResult:
    games: list[ParsedPgnGame] = field(default_factory=list)
    rejections: list[PgnRejection] = field(default_factory=list)


class PgnMultiGameParser:
    """Parse one or many concatenated PGN games."""

    def parse(self, text: str) -> PgnParseResult:
        result = PgnParseResult()
        for number, block in enumerate(self.split(text), start=1):
            game = self.parse_block(block)
            if isinstance(game, ParsedPgnGame):
                result.games.append(game)
            else:
                result.rejections.append(PgnRejection(block_number=number, reason=game))
        return result

    def split(self, text: str) -> list[str]:
        """Split text into candidate game blocks."""
        content = text.replace("\r\n", "\n").replace("\r", "\n").strip()
        if not content:
            return []
        if "[Event" in content:
            return _non_empty(EVENT_SPLIT_RE.split(content))
        if BLANK_LINE_SPLIT_RE.search(content):
            return _join_header_blocks(_non_empty(BLANK_LINE_SPLIT_RE.split(content)))
        return [content]

    def parse_block(self, block: str) -> ParsedPgnGame | str:
        """Parse a single block.

        Returns:
            The parsed game, or a rejection reason.
        """

        lines = [line.strip() for line in block.split("\n") if line.strip()]
        headers = extract_headers(block)
        move_lines = [
            line for line in lines if not line.startswith("[") and not line.startswith("%")
        ]

        moves = clean_movetext(" ".join(move_lines))
        white = headers.get("white")
        black = headers.get("black")
        if not white and not black and lines:
            vs_match = VS_RE.search(lines[0])
            if vs_match:
                white, black = vs_match.group(1), vs_match.group(2)

        if not moves:
            if not white and not black:
                return "Missing white player, black player, moves"
            return "Missing moves"
        if not MOVE_NUMBER_RE.search(moves):
            return "Invalid moves format"

        return ParsedPgnGame(
            white=white or UNKNOWN,
            black=black or UNKNOWN,
            result=_result_token(headers.get("result"), moves),
            moves=moves,
            raw_text=block.strip(),
            date=headers.get("date"),
            site=headers.get("site"),
            event=headers.get("event") or "Unknown Event",
            white_elo=_parse_elo(headers.get("whiteelo")),
            black_elo=_parse_elo(headers.get("blackelo")),
            headers=headers,
        )


def extract_headers(block: str) -> dict[str, str]:
    """Return the non-empty tag pairs of a block with lower-cased keys."""
    if block.lstrip().startswith("["):
        parsed = chess.pgn.read_headers(StringIO(block))
        if parsed:
            return {key.lower(): value for key, value in parsed.items() if value}
    headers: dict[str, str] = {}
    for line in block.split("\n"):
        match = HEADER_RE.match(line.strip())
        if match:
            headers[match.group(1).lower()] = match.group(2)
    return headers


def clean_movetext(movetext: str) -> str:
    """Strip comments, variations, NAGs and !/? markers from movetext."""
    cleaned = _WHITESPACE_RE.sub(" ", movetext)
    cleaned = _COMMENT_RE.sub("", cleaned)
    cleaned = _VARIATION_RE.sub("", cleaned)
    cleaned = _NAG_RE.sub("", cleaned)
    cleaned = _ANNOTATION_RE.sub("", cleaned)
    return _WHITESPACE_RE.sub(" ", cleaned).strip()


def _non_empty(blocks: list[str]) -> list[str]:
    return [block.strip() for block in blocks if block.strip()]


def _is_header_only(block: str) -> bool:
    return all(line.strip().startswith("[") for line in block.split("\n") if line.strip())


def _join_header_blocks(blocks: list[str]) -> list[str]:
    # Standard PGN puts a blank line between the tag pairs and the movetext.
    joined: list[str] = []
    for block in blocks:
        if joined and _is_header_only(joined[-1]) and not _is_header_only(block):
            joined[-1] = f"{joined[-1]}\n\n{block}"
        else:
            joined.append(block)
    return joined


def _result_token(header_value: str | None, moves: str) -> str:
    if header_value in _RESULTS:
        return header_value
    tail = moves.rsplit(" ", 1)[-1]
    return tail if tail in _RESULTS else "*"


def _parse_elo(value: str | None) -> int | None:
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _parse_date(value: str | None) -> date | None:
    if not value or "?" in value:
        return None
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    return None
