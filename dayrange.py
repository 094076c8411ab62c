"""Fixed-width day keys and the date ranges used while scanning local logs.

Day keys are ``YYYY-MM-DD`` strings, so plain string comparison orders them
chronologically and range checks never need to parse a date.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta

_KEY_LEN = 10


def day_key(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}-{value.day:02d}"


def in_range(key: str, since: str, until: str) -> bool:
    """Inclusive on both ends."""
    return since <= key <= until


def parse_day_key(key: str) -> date | None:
    if not isinstance(key, str) or len(key) != _KEY_LEN:
        return None
    try:
        return datetime.strptime(key, "%Y-%m-%d").date()
    except ValueError:
        return None


def day_key_from_timestamp(timestamp: str | None) -> str | None:
    """Local-calendar day key for an ISO-8601 timestamp.

    Aware timestamps are converted to local time first, which is why a log
    event can land one day outside its nominal UTC range.
    """
    if not timestamp or not isinstance(timestamp, str):
        return None
    try:
        parsed = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
    except ValueError:
        parsed_day = parse_day_key(timestamp[:_KEY_LEN])
        return day_key(parsed_day) if parsed_day else None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone()
    return day_key(parsed)


@dataclass(frozen=True)
class DayRange:
    since_key: str
    until_key: str
    scan_since_key: str
    scan_until_key: str

    @classmethod
    def from_dates(cls, since: date, until: date) -> "DayRange":
        return cls(
            since_key=day_key(since),
            until_key=day_key(until),
            scan_since_key=day_key(since - timedelta(days=1)),
            scan_until_key=day_key(until + timedelta(days=1)),
        )

    @classmethod
    def last_days(cls, days: int, today: date | None = None) -> "DayRange":
        """Rolling window of ``days`` days ending today (inclusive)."""
        today = today or datetime.now().date()
        return cls.from_dates(today - timedelta(days=max(days, 1) - 1), today)

    def contains(self, key: str) -> bool:
        return in_range(key, self.since_key, self.until_key)

    def scan_contains(self, key: str) -> bool:
        return in_range(key, self.scan_since_key, self.scan_until_key)

    def scan_dates(self) -> list[date]:
        start = parse_day_key(self.scan_since_key)
        end = parse_day_key(self.scan_until_key)
        if start is None or end is None:
            return []
        return [start + timedelta(days=i) for i in range((end - start).days + 1)]
