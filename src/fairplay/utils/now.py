from datetime import UTC, date, datetime


class Now:
    @staticmethod
    def as_seconds() -> int:
        """Return the current UTC time as whole unix seconds."""

        return int(datetime.now(UTC).timestamp())

    @staticmethod
    def as_milliseconds() -> int:
        """Return the current UTC time as an integer timestamp in milliseconds."""

        return int(datetime.now(UTC).timestamp() * 1000)

    @staticmethod
    def today() -> date:
        """Return the current UTC calendar date."""

        return datetime.now(UTC).date()

    @staticmethod
    def unix_to_date(seconds: int) -> date:
        """Convert unix seconds to a UTC calendar date."""

        return datetime.fromtimestamp(seconds, UTC).date()
