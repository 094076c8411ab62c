import json
import logging
from datetime import timedelta
from pathlib import Path

from collectors.codex import CodexRateLimits, latest_rate_limits
from models import ProviderIdentity, RateWindow, UsageSnapshot, utcnow
from providers.base import (
    SESSION_MINUTES,
    WEEK_MINUTES,
    FetchError,
    FetchStrategy,
    ProviderDescriptor,
    ResponseParseError,
    StrategyKind,
    describe_reset,
    first_dict,
    parse_timestamp,
    plan_from_text,
    strip_ansi,
    window_from_json,
    window_from_text,
)
from transport import CommandRunner

log = logging.getLogger(__name__)

PROVIDER_ID = "codex"


def snapshot_from_cli(output: str) -> UsageSnapshot:
    text = output.strip()
    if text.startswith("{"):
        try:
            data = json.loads(text)
        except ValueError:
            data = None
        if isinstance(data, dict):
            data = data.get("result") if isinstance(data.get("result"), dict) else data
            session = first_dict(data, "session", "5hour", "primary")
            weekly = first_dict(data, "weekly", "secondary")
            extra = first_dict(data, "sonnet", "tertiary")
            plan = data.get("plan") or data.get("planType")
            return UsageSnapshot(
                provider_id=PROVIDER_ID,
                primary=window_from_json(session, SESSION_MINUTES, "Session", fractions=False) if session
                else RateWindow(window_minutes=SESSION_MINUTES, label="Session"),
                secondary=window_from_json(weekly, WEEK_MINUTES, "Weekly", fractions=False) if weekly else None,
                tertiary=window_from_json(extra, None, fractions=False) if extra else None,
                identity=ProviderIdentity(plan_type=plan if isinstance(plan, str) and plan else None),
            )

    # "Session: 2% used (Resets in 3h 53m)" / "Weekly: 3% used (Resets in 3d 20h)"
    primary = secondary = tertiary = None
    plan = None
    for line in text.splitlines():
        line = line.strip()
        lowered = line.lower()
        if "plan:" in lowered:
            plan = plan_from_text(line)
        elif lowered.startswith(("session", "5-hour", "5 hour")):
            primary = window_from_text(line, SESSION_MINUTES, "Session")
        elif lowered.startswith("weekly"):
            secondary = window_from_text(line, WEEK_MINUTES, "Weekly")
        elif lowered.startswith(("sonnet", "extra")):
            tertiary = window_from_text(line, None)

    if primary is None and secondary is None:
        raise ResponseParseError("Could not find usage in codex CLI output")
    return UsageSnapshot(
        provider_id=PROVIDER_ID,
        primary=primary or RateWindow(window_minutes=SESSION_MINUTES, label="Session", reset_description="in 5 hours"),
        secondary=secondary,
        tertiary=tertiary,
        identity=ProviderIdentity(plan_type=plan),
    )


def _log_window(raw: dict | None, recorded_at: str | None, label: str) -> RateWindow | None:
    if not raw:
        return None
    minutes = raw.get("window_minutes")
    resets_at = parse_timestamp(raw.get("resets_at"))
    if resets_at is None and isinstance(raw.get("resets_in_seconds"), (int, float)):
        # Relative to when the record was written, not to now
        base = parse_timestamp(recorded_at)
        if base is not None:
            resets_at = base + timedelta(seconds=raw["resets_in_seconds"])
    return RateWindow(
        used_percent=float(raw.get("used_percent") or 0.0),
        window_minutes=int(minutes) if isinstance(minutes, (int, float)) else None,
        resets_at=resets_at,
        reset_description=describe_reset(resets_at),
        label=label,
    )


def snapshot_from_rate_limits(limits: CodexRateLimits) -> UsageSnapshot:
    return UsageSnapshot(
        provider_id=PROVIDER_ID,
        primary=_log_window(limits.primary, limits.timestamp, "Session")
        or RateWindow(window_minutes=SESSION_MINUTES, label="Session"),
        secondary=_log_window(limits.secondary, limits.timestamp, "Weekly"),
        identity=ProviderIdentity(plan_type=limits.plan_type),
        fetched_at=parse_timestamp(limits.timestamp) or utcnow(),
    )


class CodexCliStrategy(FetchStrategy):
    name = "CLI"
    priority = 1
    kind = StrategyKind.CLI

    def __init__(self, runner: CommandRunner, timeout: float = 30.0):
        self.runner = runner
        self.timeout = timeout

    def can_execute(self) -> bool:
        return self.runner.which("codex") is not None

    def _run(self, command: str) -> str:
        result = self.runner.run("codex", [command], timeout=self.timeout)
        if result.exit_code != 0:
            log.debug("codex %s exited %d: %s", command, result.exit_code, result.stderr.strip())
            return ""
        return strip_ansi(result.stdout)

    def fetch(self) -> UsageSnapshot:
        output = self._run("usage") or self._run("status")
        if not output.strip():
            raise FetchError("Failed to get usage from codex CLI")
        return snapshot_from_cli(output)


class CodexSessionLogStrategy(FetchStrategy):
    """Rate limits as last reported inside the CLI's own session logs."""

    name = "Session logs"
    priority = 2
    kind = StrategyKind.CACHED

    def __init__(self, sessions_root: Path):
        self.sessions_root = Path(sessions_root)

    def can_execute(self) -> bool:
        return self.sessions_root.is_dir()

    def fetch(self) -> UsageSnapshot:
        limits = latest_rate_limits(self.sessions_root)
        if limits is None:
            raise FetchError("No rate limit data in Codex session logs")
        return snapshot_from_rate_limits(limits)


def build_descriptor(runner: CommandRunner, sessions_root: Path) -> ProviderDescriptor:
    return ProviderDescriptor(
        id=PROVIDER_ID,
        display_name="Codex",
        strategies=[CodexCliStrategy(runner), CodexSessionLogStrategy(sessions_root)],
        primary_label="Session",
        secondary_label="Weekly",
        dashboard_url="https://chatgpt.com/codex/settings/usage",
        default_not_configured="Not authenticated. Run 'codex auth login' to login.",
    )
