import logging
from datetime import datetime, timezone
from urllib.parse import quote, unquote

from config import AuthPreference
from credentials import SecretStore
from models import ErrorKind, ProviderCost, ProviderIdentity, RateWindow, UsageSnapshot
from providers.base import (
    AuthExpiredError,
    FetchError,
    FetchStrategy,
    ProviderDescriptor,
    ResponseParseError,
    StrategyKind,
    normalize_percent,
    parse_timestamp,
)
from transport import HttpClient, TransportError

log = logging.getLogger(__name__)

PROVIDER_ID = "cursor"
BASE_URL = "https://cursor.com"
COOKIE_KEY = "cursor.cookie"
SESSION_COOKIE = "WorkosCursorSessionToken"

_MEMBERSHIP = {
    "enterprise": "Cursor Enterprise",
    "pro": "Cursor Pro",
    "hobby": "Cursor Hobby",
    "team": "Cursor Team",
}


def cookie_header(raw: str) -> str:
    """A bare token value is wrapped into a ``Cookie`` header."""
    raw = raw.strip()
    if "=" not in raw:
        return f"{SESSION_COOKIE}={raw}"
    return raw


def user_id_from_cookie(header: str) -> str | None:
    """The session cookie is ``<user id>::<jwt>``, URL-encoded."""
    for part in header.split(";"):
        name, _, value = part.strip().partition("=")
        if name != SESSION_COOKIE or not value:
            continue
        user_id, sep, _ = unquote(value).partition("::")
        return user_id if sep and user_id else None
    return None


def format_membership(kind: str | None) -> str | None:
    if not kind:
        return None
    return _MEMBERSHIP.get(kind.lower(), f"Cursor {kind.capitalize()}")


def snapshot_from_summary(
    summary: dict,
    user: dict | None = None,
    request_usage: dict | None = None,
) -> UsageSnapshot:
    individual = summary.get("individualUsage") if isinstance(summary.get("individualUsage"), dict) else {}
    plan = individual.get("plan") if isinstance(individual.get("plan"), dict) else {}
    on_demand = individual.get("onDemand") if isinstance(individual.get("onDemand"), dict) else {}
    resets_at = parse_timestamp(summary.get("billingCycleEnd"))
    reset_text = f"Resets {resets_at:%b %d at %H:%M} UTC" if resets_at else None

    # plan amounts are in cents
    used_raw = float(plan.get("used") or 0)
    breakdown = plan.get("breakdown") if isinstance(plan.get("breakdown"), dict) else {}
    limit_raw = float(breakdown.get("total") or plan.get("limit") or 0)
    if isinstance(plan.get("totalPercentUsed"), (int, float)):
        percent = normalize_percent(plan["totalPercentUsed"])
    elif limit_raw > 0:
        percent = used_raw / limit_raw * 100
    else:
        percent = 0.0

    # Legacy request-based plans report a request count against a cap
    gpt4 = (request_usage or {}).get("gpt-4")
    if isinstance(gpt4, dict) and gpt4.get("maxRequestUsage"):
        requests = gpt4.get("numRequestsTotal") or gpt4.get("numRequests") or 0
        primary = RateWindow.from_counts(
            requests, gpt4["maxRequestUsage"],
            resets_at=resets_at, reset_description=reset_text, unit="requests", label="Total",
        )
    else:
        primary = RateWindow(
            used_percent=percent,
            used=used_raw / 100 if limit_raw else None,
            limit=limit_raw / 100 if limit_raw else None,
            resets_at=resets_at,
            reset_description=reset_text,
            unit="usd" if limit_raw else None,
            label="Total",
        )

    def sub_window(key: str, label: str) -> RateWindow | None:
        value = plan.get(key)
        if not isinstance(value, (int, float)):
            return None
        return RateWindow(used_percent=value, resets_at=resets_at, reset_description=reset_text, label=label)

    cost = None
    on_demand_used = float(on_demand.get("used") or 0) / 100
    if on_demand_used > 0:
        now = datetime.now(timezone.utc)
        cost = ProviderCost(
            total_cost_usd=on_demand_used,
            start_date=now.replace(day=1, hour=0, minute=0, second=0, microsecond=0),
            end_date=now,
        )

    return UsageSnapshot(
        provider_id=PROVIDER_ID,
        primary=primary,
        secondary=sub_window("autoPercentUsed", "Auto"),
        tertiary=sub_window("apiPercentUsed", "API"),
        cost=cost,
        identity=ProviderIdentity(
            email=(user or {}).get("email"),
            plan_type=format_membership(summary.get("membershipType")),
            account_id=(user or {}).get("sub"),
        ),
    )


class CursorCookieStrategy(FetchStrategy):
    name = "Manual cookie"
    priority = 1
    kind = StrategyKind.MANUAL

    def __init__(self, http: HttpClient, secrets: SecretStore):
        self.http = http
        self.secrets = secrets

    def can_execute(self) -> bool:
        return bool(self.secrets.get(COOKIE_KEY))

    def _get(self, path: str, header: str):
        return self.http.get(f"{BASE_URL}{path}", headers={"Accept": "application/json", "Cookie": header})

    def _optional_json(self, path: str, header: str) -> dict | None:
        try:
            resp = self._get(path, header)
            data = resp.json() if resp.ok else None
        except (TransportError, ValueError) as exc:
            log.debug("Cursor %s failed (ignored): %s", path, exc)
            return None
        return data if isinstance(data, dict) else None

    def fetch(self) -> UsageSnapshot:
        raw = self.secrets.get(COOKIE_KEY)
        if not raw:
            raise AuthExpiredError("No cookie configured. Paste your cookie header in Settings.")
        header = cookie_header(raw)

        resp = self._get("/api/usage-summary", header)
        if resp.status in (401, 403):
            log.info("Cursor cookie rejected (HTTP %d), clearing it", resp.status)
            self.secrets.delete(COOKIE_KEY)
            raise AuthExpiredError("Cursor session expired. Paste a fresh cookie in Settings.")
        if not resp.ok:
            raise FetchError(f"HTTP {resp.status}", ErrorKind.NETWORK)
        try:
            summary = resp.json()
        except ValueError as exc:
            raise ResponseParseError(f"JSON parse failed: {exc}") from exc
        if not isinstance(summary, dict):
            raise ResponseParseError("Empty response")

        user = self._optional_json("/api/auth/me", header)
        user_id = user_id_from_cookie(header) or (user or {}).get("sub")
        request_usage = None
        if user_id:
            request_usage = self._optional_json(f"/api/usage?user={quote(user_id)}", header)
        return snapshot_from_summary(summary, user, request_usage)


def build_descriptor(http: HttpClient, secrets: SecretStore) -> ProviderDescriptor:
    return ProviderDescriptor(
        id=PROVIDER_ID,
        display_name="Cursor",
        strategies=[CursorCookieStrategy(http, secrets)],
        primary_label="Plan usage",
        secondary_label="Auto",
        tertiary_label="API",
        dashboard_url="https://cursor.com/dashboard?tab=usage",
        not_configured={
            AuthPreference.OAUTH: "Not authenticated. Click 'Connect' to sign in.",
            AuthPreference.MANUAL: "No cookie configured. Paste your cookie header in Settings.",
        },
        default_not_configured="Not authenticated. Click 'Connect' to sign in.",
    )
