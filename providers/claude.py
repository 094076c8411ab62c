import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from config import AuthPreference
from credentials import SecretStore
from models import ErrorKind, ProviderCost, ProviderIdentity, RateWindow, UsageSnapshot
from providers.base import (
    SESSION_MINUTES,
    WEEK_MINUTES,
    AuthExpiredError,
    FetchError,
    FetchStrategy,
    ProviderDescriptor,
    ResponseParseError,
    StrategyKind,
    describe_reset,
    first_dict,
    normalize_percent,
    parse_timestamp,
    plan_from_text,
    strip_ansi,
    window_from_json,
    window_from_text,
)
from transport import CommandRunner, HttpClient

log = logging.getLogger(__name__)

PROVIDER_ID = "claude"
USAGE_API_URL = "https://api.anthropic.com/api/oauth/usage"
OAUTH_BETA = "oauth-2025-04-20"
CREDENTIALS_KEY = "claude.credentials"
CREDENTIALS_PATH = Path.home() / ".claude" / ".credentials.json"

# API field -> (label, window minutes)
_API_WINDOWS = {
    "five_hour": ("Session", SESSION_MINUTES),
    "seven_day": ("Weekly", WEEK_MINUTES),
    "seven_day_sonnet": ("Sonnet", WEEK_MINUTES),
}


@dataclass
class ClaudeCredentials:
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    scopes: list[str] = field(default_factory=list)
    rate_limit_tier: str | None = None
    subscription_type: str | None = None

    @property
    def is_expired(self) -> bool:
        return self.expires_at is not None and datetime.now(timezone.utc) >= self.expires_at

    @classmethod
    def parse(cls, raw: str) -> "ClaudeCredentials | None":
        """Accepts the CLI's credentials JSON or a bare access token."""
        raw = raw.strip()
        if not raw:
            return None
        if not raw.startswith("{"):
            return cls(access_token=raw)
        try:
            data = json.loads(raw)
        except ValueError:
            return None
        oauth = data.get("claudeAiOauth") if isinstance(data, dict) else None
        if not isinstance(oauth, dict):
            return None
        token = (oauth.get("accessToken") or "").strip()
        if not token:
            return None
        expires = oauth.get("expiresAt")
        return cls(
            access_token=token,
            refresh_token=oauth.get("refreshToken"),
            # milliseconds since epoch
            expires_at=parse_timestamp(expires) if isinstance(expires, (int, float)) else None,
            scopes=list(oauth.get("scopes") or []),
            rate_limit_tier=oauth.get("rateLimitTier"),
            subscription_type=oauth.get("subscriptionType"),
        )


def plan_label(credentials: ClaudeCredentials | None) -> str:
    plan = (credentials and (credentials.subscription_type or credentials.rate_limit_tier)) or "Max"
    lowered = plan.lower()
    if lowered == "max" or lowered.startswith("default_claude_max"):
        tier = (credentials.rate_limit_tier if credentials else None) or ""
        if "20" in tier:
            return "Max (20x)"
        if "5" in tier:
            return "Max (5x)"
        return "Max"
    if lowered == "pro":
        return "Pro"
    if lowered == "free":
        return "Free"
    return plan


def snapshot_from_api(body: dict, credentials: ClaudeCredentials | None = None) -> UsageSnapshot:
    windows: dict[str, RateWindow] = {}
    for key, (label, minutes) in _API_WINDOWS.items():
        entry = body.get(key)
        if not isinstance(entry, dict):
            continue
        resets_at = parse_timestamp(entry.get("resets_at"))
        windows[key] = RateWindow(
            used_percent=normalize_percent(entry.get("utilization")),
            window_minutes=minutes,
            resets_at=resets_at,
            reset_description=describe_reset(resets_at),
            label=label,
        )

    cost = None
    extra = body.get("extra_usage")
    if isinstance(extra, dict) and extra.get("is_enabled") and isinstance(extra.get("used_credits"), (int, float)):
        now = datetime.now(timezone.utc)
        cost = ProviderCost(
            total_cost_usd=extra["used_credits"] / 100.0,  # cents
            start_date=now.replace(day=1, hour=0, minute=0, second=0, microsecond=0),
            end_date=now,
        )

    return UsageSnapshot(
        provider_id=PROVIDER_ID,
        primary=windows.get("five_hour") or RateWindow(window_minutes=SESSION_MINUTES, label="Session"),
        secondary=windows.get("seven_day"),
        tertiary=windows.get("seven_day_sonnet"),
        cost=cost,
        identity=ProviderIdentity(plan_type=plan_label(credentials)),
    )


def snapshot_from_cli(output: str) -> UsageSnapshot:
    text = output.strip()
    if text.startswith("{"):
        try:
            data = json.loads(text)
        except ValueError:
            data = None
        if isinstance(data, dict):
            session = first_dict(data, "session", "5hour", "primary", "five_hour")
            weekly = first_dict(data, "weekly", "secondary", "seven_day")
            sonnet = first_dict(data, "sonnet", "tertiary", "seven_day_sonnet")
            plan = data.get("plan")
            return UsageSnapshot(
                provider_id=PROVIDER_ID,
                primary=window_from_json(session, SESSION_MINUTES, "Session") if session
                else RateWindow(window_minutes=SESSION_MINUTES, label="Session"),
                secondary=window_from_json(weekly, WEEK_MINUTES, "Weekly") if weekly else None,
                tertiary=window_from_json(sonnet, None, "Sonnet") if sonnet else None,
                identity=ProviderIdentity(plan_type=plan if isinstance(plan, str) and plan else "Max"),
            )

    primary = secondary = tertiary = None
    plan = None
    for line in text.splitlines():
        line = line.strip()
        lowered = line.lower()
        if not line:
            continue
        if "plan:" in lowered:
            plan = plan_from_text(line)
            continue
        if lowered.startswith("session") or lowered.startswith("5-hour") or "5 hour" in lowered:
            primary = window_from_text(line, SESSION_MINUTES, "Session")
        elif lowered.startswith("weekly") or "7-day" in lowered or "7 day" in lowered:
            if "sonnet" in lowered:
                tertiary = window_from_text(line, WEEK_MINUTES, "Sonnet")
            else:
                secondary = window_from_text(line, WEEK_MINUTES, "Weekly")
        elif lowered.startswith("sonnet"):
            tertiary = window_from_text(line, None, "Sonnet")

    if primary is None and secondary is None and tertiary is None:
        raise ResponseParseError("Could not find usage in claude CLI output")
    return UsageSnapshot(
        provider_id=PROVIDER_ID,
        primary=primary or RateWindow(window_minutes=SESSION_MINUTES, label="Session"),
        secondary=secondary,
        tertiary=tertiary,
        identity=ProviderIdentity(plan_type=plan or "Max"),
    )


class ClaudeOAuthStrategy(FetchStrategy):
    name = "OAuth"
    priority = 1
    kind = StrategyKind.OAUTH

    def __init__(self, http: HttpClient, secrets: SecretStore, credentials_path: Path = CREDENTIALS_PATH):
        self.http = http
        self.secrets = secrets
        self.credentials_path = Path(credentials_path)
        # A token the API rejected; the CLI owns the file so it is not deleted
        self._rejected_token: str | None = None

    def load_credentials(self) -> ClaudeCredentials | None:
        stored = self.secrets.get(CREDENTIALS_KEY)
        if stored:
            return ClaudeCredentials.parse(stored)
        try:
            return ClaudeCredentials.parse(self.credentials_path.read_text())
        except FileNotFoundError:
            return None
        except OSError as exc:
            log.warning("Cannot read %s: %s", self.credentials_path, exc)
            return None

    def can_execute(self) -> bool:
        credentials = self.load_credentials()
        if credentials is None:
            return False
        if credentials.is_expired:
            log.debug("Claude OAuth credentials expired at %s", credentials.expires_at)
            return False
        if credentials.access_token == self._rejected_token:
            return False
        return True

    def fetch(self) -> UsageSnapshot:
        credentials = self.load_credentials()
        if credentials is None:
            raise AuthExpiredError("No OAuth credentials available. Run `claude` to authenticate.")
        if credentials.is_expired:
            raise AuthExpiredError("OAuth token expired. Run `claude` to re-authenticate.")

        resp = self.http.get(USAGE_API_URL, headers={
            "Authorization": f"Bearer {credentials.access_token}",
            "Accept": "application/json",
            "anthropic-beta": OAUTH_BETA,
        })
        if resp.status in (401, 403):
            self.secrets.delete(CREDENTIALS_KEY)
            self._rejected_token = credentials.access_token
            raise AuthExpiredError("Unauthorized. Run `claude` to re-authenticate.")
        if not resp.ok:
            raise FetchError(f"Server error: HTTP {resp.status}", ErrorKind.NETWORK)
        try:
            body = resp.json()
        except ValueError as exc:
            raise ResponseParseError(f"Failed to parse response: {exc}") from exc
        if not isinstance(body, dict):
            raise ResponseParseError("Invalid response format")
        return snapshot_from_api(body, credentials)


class ClaudeCliStrategy(FetchStrategy):
    name = "CLI"
    priority = 2
    kind = StrategyKind.CLI

    def __init__(self, runner: CommandRunner, timeout: float = 30.0):
        self.runner = runner
        self.timeout = timeout

    def can_execute(self) -> bool:
        return self.runner.which("claude") is not None

    def _run(self, *args: str) -> str:
        env = {**os.environ, "NO_COLOR": "1", "TERM": "dumb"}
        result = self.runner.run("claude", list(args), timeout=self.timeout, env=env)
        if result.exit_code != 0:
            log.debug("claude %s exited %d: %s", " ".join(args), result.exit_code, result.stderr.strip())
        return strip_ansi(result.stdout)

    def fetch(self) -> UsageSnapshot:
        output = self._run("--print", "/usage")
        if "%" not in output:
            output = self._run("usage")
        if not output.strip():
            raise FetchError("Failed to get usage from claude CLI")
        return snapshot_from_cli(output)


def build_descriptor(
    http: HttpClient,
    runner: CommandRunner,
    secrets: SecretStore,
    credentials_path: Path = CREDENTIALS_PATH,
) -> ProviderDescriptor:
    return ProviderDescriptor(
        id=PROVIDER_ID,
        display_name="Claude",
        strategies=[ClaudeOAuthStrategy(http, secrets, credentials_path), ClaudeCliStrategy(runner)],
        primary_label="Session",
        secondary_label="Weekly",
        tertiary_label="Sonnet",
        dashboard_url="https://claude.ai/settings/usage",
        not_configured={
            AuthPreference.CLI: "CLI not available. Run 'claude' to login.",
            AuthPreference.OAUTH: "Not authenticated. Run 'claude' to get OAuth credentials.",
        },
        default_not_configured="Not authenticated. Run 'claude' CLI to login.",
    )
