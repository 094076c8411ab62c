import logging
from collections.abc import Callable
from datetime import date, datetime, timezone

from config import AuthPreference
from credentials import SecretStore
from models import ErrorKind, ProviderIdentity, RateWindow, UsageSnapshot
from providers.base import (
    AuthExpiredError,
    FetchError,
    FetchStrategy,
    ProviderDescriptor,
    ResponseParseError,
    StrategyKind,
    describe_reset,
    parse_timestamp,
)
from transport import HttpClient, TransportError

log = logging.getLogger(__name__)

PROVIDER_ID = "copilot"
GITHUB_API = "https://api.github.com"
USER_API_URL = f"{GITHUB_API}/copilot_internal/user"
LOGIN_API_URL = f"{GITHUB_API}/user"
PREMIUM_USAGE_URL = GITHUB_API + "/users/{login}/settings/billing/premium_request/usage"
TOKEN_KEY = "copilot.token"

ModelUsageSink = Callable[[date, dict[str, float]], None]

# Same headers the editor extension sends
_HEADERS = {
    "Accept": "application/json",
    "Editor-Version": "vscode/1.96.2",
    "Editor-Plugin-Version": "copilot-chat/0.26.7",
    "X-Github-Api-Version": "2025-04-01",
}

_PLAN_NAMES = {
    "individual_plus": "Copilot Pro+",
    "pro_plus": "Copilot Pro+",
    "individual_pro_plus": "Copilot Pro+",
    "pro+": "Copilot Pro+",
    "individual": "Copilot Pro",
    "pro": "Copilot Pro",
    "individual_pro": "Copilot Pro",
    "free": "Copilot Free",
    "individual_free": "Copilot Free",
    "business": "Copilot Business",
    "enterprise": "Copilot Enterprise",
}


def plan_label(entitlement: float, copilot_plan: str | None) -> str:
    """Entitlement is the most reliable signal: Pro+ 1500, Pro 300, Free 50."""
    if entitlement >= 1000:
        return "Copilot Pro+"
    if entitlement >= 200:
        return "Copilot Pro"
    if entitlement >= 30:
        return "Copilot Free"
    return _PLAN_NAMES.get((copilot_plan or "").lower(), "Copilot")


def snapshot_from_user(data: dict) -> UsageSnapshot:
    snapshots = data.get("quota_snapshots")
    premium = snapshots.get("premium_interactions") if isinstance(snapshots, dict) else None
    resets_at = parse_timestamp(data.get("quota_reset_date"))

    primary = RateWindow(used_percent=0, used=0, limit=0, unit="premium", label="Premium")
    entitlement = 0.0
    if isinstance(premium, dict):
        entitlement = float(premium.get("entitlement") or 0)
        remaining = float(premium.get("remaining") or 0)
        percent_remaining = float(premium.get("percent_remaining") or 0)
        primary = RateWindow(
            used_percent=max(0.0, 100 - percent_remaining),
            used=entitlement - remaining,
            limit=entitlement,
            resets_at=resets_at,
            reset_description=describe_reset(resets_at),
            unit="premium",
            label="Premium",
        )

    return UsageSnapshot(
        provider_id=PROVIDER_ID,
        primary=primary,
        identity=ProviderIdentity(plan_type=plan_label(entitlement, data.get("copilot_plan"))),
    )


def model_usage_from_billing(data: dict) -> dict[str, float]:
    """Sum month-to-date premium requests per model from a billing usage response."""
    usage: dict[str, float] = {}
    for item in data.get("usageItems") or []:
        if not isinstance(item, dict) or str(item.get("product") or "").lower() != "copilot":
            continue
        model = item.get("model")
        try:
            quantity = float(item.get("grossQuantity") or 0)
        except (TypeError, ValueError):
            continue
        if model and quantity > 0:
            usage[model] = usage.get(model, 0.0) + quantity
    return usage


class CopilotOAuthStrategy(FetchStrategy):
    name = "GitHub OAuth"
    priority = 1
    kind = StrategyKind.OAUTH

    def __init__(self, http: HttpClient, secrets: SecretStore, on_model_usage: ModelUsageSink | None = None):
        self.http = http
        self.secrets = secrets
        self.on_model_usage = on_model_usage

    def can_execute(self) -> bool:
        return bool(self.secrets.get(TOKEN_KEY))

    def fetch(self) -> UsageSnapshot:
        token = self.secrets.get(TOKEN_KEY)
        if not token:
            raise AuthExpiredError("Not authenticated. Click 'Connect' to sign in with GitHub.")

        headers = {**_HEADERS, "Authorization": f"token {token}"}
        resp = self.http.get(USER_API_URL, headers=headers)
        if resp.status in (401, 403):
            log.info("Copilot token rejected (HTTP %d), clearing it", resp.status)
            self.secrets.delete(TOKEN_KEY)
            raise AuthExpiredError("GitHub session expired. Sign in again.")
        if not resp.ok:
            raise FetchError(f"GitHub API error: HTTP {resp.status}", ErrorKind.NETWORK)
        try:
            data = resp.json()
        except ValueError as exc:
            raise ResponseParseError(f"Failed to parse Copilot response: {exc}") from exc
        if not isinstance(data, dict):
            raise ResponseParseError("Unexpected Copilot response")
        snapshot = snapshot_from_user(data)

        if self.on_model_usage is not None:
            try:
                usage = self._fetch_model_usage(headers)
            except TransportError as exc:
                log.info("Copilot billing usage unavailable: %s", exc)
                usage = {}
            if usage:
                self.on_model_usage(datetime.now(timezone.utc).date(), usage)
        return snapshot

    def _fetch_model_usage(self, headers: dict[str, str]) -> dict[str, float]:
        # Billing data is extra; any failure here leaves the quota snapshot alone
        resp = self.http.get(LOGIN_API_URL, headers=headers)
        login = None
        if resp.ok:
            try:
                login = resp.json().get("login")
            except (ValueError, AttributeError):
                login = None
        if not login:
            log.debug("No GitHub login (HTTP %d), skipping billing usage", resp.status)
            return {}

        resp = self.http.get(PREMIUM_USAGE_URL.format(login=login), headers=headers)
        if not resp.ok:
            # 403 means the token lacks the "Plan" read permission
            log.info("Copilot billing usage: HTTP %d", resp.status)
            return {}
        try:
            data = resp.json()
        except ValueError as exc:
            log.warning("Failed to parse Copilot billing usage: %s", exc)
            return {}
        return model_usage_from_billing(data) if isinstance(data, dict) else {}


def build_descriptor(
    http: HttpClient,
    secrets: SecretStore,
    on_model_usage: ModelUsageSink | None = None,
) -> ProviderDescriptor:
    return ProviderDescriptor(
        id=PROVIDER_ID,
        display_name="Copilot",
        strategies=[CopilotOAuthStrategy(http, secrets, on_model_usage)],
        primary_label="Premium",
        secondary_label="Chat",
        dashboard_url="https://github.com/settings/copilot",
        not_configured={AuthPreference.OAUTH: "Not authenticated. Click 'Connect' to sign in with GitHub."},
        default_not_configured="Not authenticated. Click 'Connect' to sign in with GitHub.",
    )
