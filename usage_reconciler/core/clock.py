"""
Time handling helpers.

Epoch-millisecond conversions, calendar dates and an injectable clock.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Tuple


class Clock:
    """Source of the current wall-clock time."""

    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    """Clock backed by the host's local time."""

    def now(self) -> datetime:
        return datetime.now().astimezone()


class FixedClock(Clock):
    """Clock frozen at a given instant, advanced manually."""

    def __init__(self, instant: datetime):
        self._instant = instant

    def now(self) -> datetime:
        return self._instant

    def advance(self, delta: timedelta) -> None:
        self._instant = self._instant + delta


def to_epoch_ms(moment: datetime) -> int:
    """Convert a datetime to milliseconds since the epoch.

    Naive datetimes are treated as UTC.
    """
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(round(moment.timestamp() * 1000))


def from_epoch_ms(value: int) -> datetime:
    """Convert epoch milliseconds to an aware UTC datetime."""
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def now_ms(clock: Optional[Clock] = None) -> int:
    return to_epoch_ms((clock or SystemClock()).now())


def parse_timestamp(value: str) -> Optional[int]:
    """Parse an ISO-8601 timestamp into epoch milliseconds.

    Accepts a trailing ``Z`` for UTC. Returns None when the value
    cannot be parsed.
    """
    if not isinstance(value, str) or not value:
        return None
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    # fromisoformat only accepts 3 or 6 fractional digits on older interpreters
    if "." in text:
        head, _, rest = text.partition(".")
        digits = ""
        while rest and rest[0].isdigit():
            digits += rest[0]
            rest = rest[1:]
        text = f"{head}.{(digits + '000000')[:6]}{rest}"
    try:
        moment = datetime.fromisoformat(text)
    except ValueError:
        return None
    return to_epoch_ms(moment)


def utc_date(epoch_ms: int) -> str:
    """Calendar date (YYYY-MM-DD, UTC) of an epoch-millisecond instant."""
    return from_epoch_ms(epoch_ms).strftime("%Y-%m-%d")


def parse_date(value: str) -> date:
    """Parse a YYYY-MM-DD string.

    Raises:
        ValueError: If the value is not a valid calendar date
    """
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except (TypeError, ValueError):
        raise ValueError(f"Invalid date (expected YYYY-MM-DD): {value!r}")


@dataclass(frozen=True)
class DateRange:
    """Inclusive range of UTC calendar dates."""
    start: str
    end: str

    def __post_init__(self):
        if parse_date(self.start) > parse_date(self.end):
            raise ValueError(f"start date {self.start} is after end date {self.end}")

    def contains(self, day: str) -> bool:
        return self.start <= day <= self.end

    def to_epoch_bounds(self) -> Tuple[int, int]:
        """Inclusive millisecond bounds covering both end dates."""
        start = datetime.combine(parse_date(self.start), datetime.min.time(), tzinfo=timezone.utc)
        end = datetime.combine(parse_date(self.end), datetime.min.time(), tzinfo=timezone.utc)
        return to_epoch_ms(start), to_epoch_ms(end + timedelta(days=1)) - 1
