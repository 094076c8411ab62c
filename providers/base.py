"""Strategy interface and provider descriptors.

A provider is a named, ordered list of fetch strategies. Each strategy knows
how to tell cheaply whether it could run (``can_execute``) and how to
actually retrieve a ``UsageSnapshot`` (``fetch``). Both are plain blocking
calls; the orchestrator in ``providers.fetcher`` runs them off the event loop.
"""

import re
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from enum import Enum

from config import AuthPreference
from models import ErrorKind, RateWindow, UsageSnapshot

SESSION_MINUTES = 300
WEEK_MINUTES = 10080


class StrategyKind(str, Enum):
    CACHED = "cached"  # local data, no network
    CLI = "cli"
    OAUTH = "oauth"
    MANUAL = "manual"  # user-pasted cookie or token
    AUTO_DETECT = "auto_detect"


_ALLOWED_KINDS = {
    AuthPreference.CLI: {StrategyKind.CACHED, StrategyKind.CLI},
    AuthPreference.OAUTH: {StrategyKind.CACHED, StrategyKind.OAUTH},
    AuthPreference.MANUAL: {StrategyKind.CACHED, StrategyKind.MANUAL},
}


class FetchError(Exception):
    """A strategy ran but could not produce usage data."""

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.UNKNOWN):
        super().__init__(message)
        self.message = message
        self.kind = kind


class AuthExpiredError(FetchError):
    def __init__(self, message: str):
        super().__init__(message, ErrorKind.AUTH_EXPIRED)


class ResponseParseError(FetchError):
    def __init__(self, message: str):
        super().__init__(message, ErrorKind.PARSE)


class FetchStrategy(ABC):
    name: str = ""
    priority: int = 0
    kind: StrategyKind = StrategyKind.AUTO_DETECT

    @abstractmethod
    def can_execute(self) -> bool:
        """Cheap readiness check; must not hit the network."""

    @abstractmethod
    def fetch(self) -> UsageSnapshot:
        """Retrieve usage. May raise ``FetchError`` or return a failed snapshot."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name!r} priority={self.priority}>"


class ProviderDescriptor:
    """Static metadata plus the strategies of one provider, sorted by priority."""

    def __init__(
        self,
        id: str,
        display_name: str,
        strategies: list[FetchStrategy],
        primary_label: str = "Session",
        secondary_label: str = "Weekly",
        tertiary_label: str | None = None,
        dashboard_url: str | None = None,
        not_configured: dict[AuthPreference, str] | None = None,
        default_not_configured: str = "Not configured. Set up this provider in Settings.",
    ):
        self.id = id
        self.display_name = display_name
        self.strategies = sorted(strategies, key=lambda s: s.priority)
        self.primary_label = primary_label
        self.secondary_label = secondary_label
        self.tertiary_label = tertiary_label
        self.dashboard_url = dashboard_url
        self._not_configured = not_configured or {}
        self._default_not_configured = default_not_configured

    @property
    def available_preferences(self) -> list[AuthPreference]:
        kinds = {s.kind for s in self.strategies}
        available = [AuthPreference.AUTO]
        for pref, kind in (
            (AuthPreference.CLI, StrategyKind.CLI),
            (AuthPreference.OAUTH, StrategyKind.OAUTH),
            (AuthPreference.MANUAL, StrategyKind.MANUAL),
        ):
            if kind in kinds:
                available.append(pref)
        return available

    def strategies_for(self, preference: AuthPreference = AuthPreference.AUTO) -> list[FetchStrategy]:
        if preference == AuthPreference.AUTO:
            return list(self.strategies)
        allowed = _ALLOWED_KINDS.get(preference, set())
        filtered = [s for s in self.strategies if s.kind in allowed]
        return filtered or list(self.strategies)

    def not_configured_message(self, preference: AuthPreference = AuthPreference.AUTO) -> str:
        message = self._not_configured.get(preference, self._default_not_configured)
        if preference == AuthPreference.AUTO:
            return message
        return f"{message} ({_MODE_NAMES[preference]} mode selected)"

    def __repr__(self) -> str:
        return f"<ProviderDescriptor {self.id!r} strategies={len(self.strategies)}>"


_MODE_NAMES = {
    AuthPreference.CLI: "CLI",
    AuthPreference.OAUTH: "OAuth",
    AuthPreference.MANUAL: "Manual",
}


# -- reset times ------------------------------------------------------------

_RESET_PARTS = {
    "d": re.compile(r"(\d+)\s*d"),
    "h": re.compile(r"(\d+)\s*h"),
    "m": re.compile(r"(\d+)\s*m(?!o)"),
}
_PERCENT_RE = re.compile(r"(\d+(?:\.\d+)?)\s*%")
_RESETS_IN_RE = re.compile(r"[Rr]esets?\s+in\s+(.+?)(?:\)|$)")
_PLAN_RE = re.compile(r"[Pp]lan:\s*(.+)")
_ANSI_RE = re.compile(r"\x1B\[[0-9;]*[a-zA-Z]|\x1B\].*?\x07|\x1B[PX^_].*?\x1B\\")


def parse_timestamp(value) -> datetime | None:
    """ISO-8601 string or epoch seconds/milliseconds to an aware UTC datetime."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e11 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_resets_in(text: str, now: datetime | None = None) -> datetime | None:
    """Turn relative text such as ``3h 53m`` or ``3d 20h`` into an absolute time."""
    minutes = 0
    for unit, pattern in _RESET_PARTS.items():
        match = pattern.search(text)
        if match:
            minutes += int(match.group(1)) * {"d": 1440, "h": 60, "m": 1}[unit]
    if minutes <= 0:
        return None
    return (now or datetime.now(timezone.utc)) + timedelta(minutes=minutes)


def describe_reset(resets_at: datetime | None, now: datetime | None = None) -> str | None:
    if resets_at is None:
        return None
    diff = resets_at - (now or datetime.now(timezone.utc))
    total_minutes = int(diff.total_seconds() // 60)
    if total_minutes <= 0:
        return "now"
    days, rem = divmod(total_minutes, 1440)
    hours, minutes = divmod(rem, 60)
    if days >= 1:
        return f"in {days}d {hours}h" if hours else f"in {days}d"
    if hours >= 1:
        return f"in {hours}h {minutes}m" if minutes else f"in {hours}h"
    return f"in {minutes}m"


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text or "")


def normalize_percent(value) -> float:
    """Some sources report 0.57 for 57%; anything up to 1 is taken as a fraction."""
    if value is None or isinstance(value, bool):
        return 0.0
    value = float(value)
    return value * 100 if value <= 1 else value


def window_from_text(line: str, window_minutes: int | None, label: str | None = None) -> RateWindow:
    """Parse ``Session: 2% used (Resets in 3h 53m)`` style lines."""
    percent = 0.0
    match = _PERCENT_RE.search(line)
    if match:
        percent = float(match.group(1))
    resets_at = None
    description = None
    reset = _RESETS_IN_RE.search(line)
    if reset:
        text = reset.group(1).strip()
        resets_at = parse_resets_in(text)
        description = f"in {text}"
    return RateWindow(
        used_percent=percent,
        window_minutes=window_minutes,
        resets_at=resets_at,
        reset_description=description,
        label=label,
    )


def plan_from_text(line: str) -> str | None:
    match = _PLAN_RE.search(line)
    return match.group(1).strip() if match else None


def window_from_json(
    element: dict,
    window_minutes: int | None,
    label: str | None = None,
    fractions: bool = True,
) -> RateWindow:
    """Accepts the handful of key spellings the CLIs have used for one window.

    With ``fractions`` set, a percentage of 1 or less is read as a fraction.
    """
    percent = None
    for key in ("usedPercent", "used_percent", "percent", "utilization"):
        if isinstance(element.get(key), (int, float)):
            percent = element[key]
            break
    used = element.get("used") if isinstance(element.get("used"), (int, float)) else None
    limit = element.get("limit") if isinstance(element.get("limit"), (int, float)) else None

    resets_at = None
    description = None
    for key in ("resetsAt", "resets_at"):
        if element.get(key) is not None:
            resets_at = parse_timestamp(element[key])
            break
    for key in ("resetsIn", "resets_in"):
        if isinstance(element.get(key), str) and element[key]:
            resets_at = resets_at or parse_resets_in(element[key])
            description = element[key] if element[key].startswith("in ") else f"in {element[key]}"
            break
    if description is None:
        description = describe_reset(resets_at)

    if percent is None and used is not None and limit:
        percent_value = used / limit * 100
    elif percent is None:
        percent_value = 0.0
    else:
        percent_value = normalize_percent(percent) if fractions else float(percent)
    return RateWindow(
        used_percent=percent_value,
        used=used,
        limit=limit,
        window_minutes=window_minutes,
        resets_at=resets_at,
        reset_description=description,
        label=label,
    )


def first_dict(data: dict, *keys: str) -> dict | None:
    for key in keys:
        value = data.get(key)
        if isinstance(value, dict):
            return value
    return None


def error_snapshot(provider_id: str, exc: FetchError) -> UsageSnapshot:
    return UsageSnapshot.failure(
        provider_id,
        exc.message,
        exc.kind,
        requires_reauth=isinstance(exc, AuthExpiredError),
    )
