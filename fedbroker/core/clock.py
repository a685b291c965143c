"""Injectable time source for expiry and refresh decisions."""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

Clock = Callable[[], datetime]


def system_clock() -> datetime:
    """Current UTC time."""
    return datetime.now(UTC)


def to_epoch_ms(moment: datetime) -> int:
    """Convert an aware datetime to Unix epoch milliseconds."""
    return round(moment.timestamp() * 1000)


def from_epoch_ms(value: int) -> datetime:
    """Convert Unix epoch milliseconds to an aware UTC datetime."""
    return datetime.fromtimestamp(value // 1000, tz=UTC) + timedelta(
        milliseconds=value % 1000
    )
