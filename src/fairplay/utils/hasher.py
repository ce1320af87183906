import hashlib


class Hasher:
    """Hasher provides static methods for generating SHA256 hashes."""

    @staticmethod
    def hash_string(input_string: str) -> str:
        """Returns a SHA256 hash of the input string."""

        return hashlib.sha256(input_string.encode("utf-8")).hexdigest()


def player_hash(source: str, username: str) -> str:
    """Derive the stable player key for a (source, username) pair.

    Usernames are case-insensitive on both platforms, so the name is
    lower-cased before hashing.

    Args:
        source: Source name (e.g. "chesscom").
        username: Platform username.

    Returns:
        A 16 character hexadecimal key.

    Example:
        >>> player_hash("lichess", "DrNykterstein") == player_hash("lichess", "drnykterstein")
        True
    """

    combined = f"{source.strip().lower()}_{username.strip().lower()}"
    return Hasher.hash_string(combined)[:16]


def stable_game_hash(*parts: str) -> str:
    """Hash the given parts into a short identifier that survives re-uploads."""

    return Hasher.hash_string("\x1f".join(parts))[:20]
