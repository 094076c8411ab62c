import logging
import os
from collections.abc import Mapping

from credentials import SecretStore, clean_secret
from models import ErrorKind, ProviderIdentity, RateWindow, UsageSnapshot
from providers.base import (
    AuthExpiredError,
    FetchError,
    FetchStrategy,
    ProviderDescriptor,
    ResponseParseError,
    StrategyKind,
    parse_timestamp,
)
from transport import HttpClient

log = logging.getLogger(__name__)

PROVIDER_ID = "zai"
QUOTA_API_URL = "https://api.z.ai/api/monitor/usage/quota/limit"
TOKEN_KEY = "zai.api_token"
ENV_VAR = "Z_AI_API_KEY"

# unit code -> (minutes per unit, label)
_UNITS = {1: (1440, "day"), 3: (60, "hour"), 5: (1, "minute")}


def _int(value) -> int:
    return int(value) if isinstance(value, (int, float)) and not isinstance(value, bool) else 0


def limit_window(entry: dict, is_tokens: bool) -> RateWindow:
    """One ``limits[]`` entry; ``usage`` is the cap and ``currentValue`` what was used."""
    cap = _int(entry.get("usage"))
    current = _int(entry.get("currentValue"))
    remaining = _int(entry.get("remaining"))
    if cap > 0:
        used = max(0, min(cap, max(cap - remaining, current)))
        percent = used / cap * 100
    else:
        percent = float(_int(entry.get("percentage")))

    number = _int(entry.get("number"))
    minutes = label = None
    unit = _UNITS.get(_int(entry.get("unit")))
    if unit and number > 0:
        minutes = number * unit[0]
        label = f"{number} {unit[1]}{'' if number == 1 else 's'} window"

    return RateWindow(
        used_percent=percent,
        used=current,
        limit=cap,
        window_minutes=minutes if is_tokens else None,
        resets_at=parse_timestamp(entry.get("nextResetTime")),
        reset_description=label or (None if is_tokens else "Monthly"),
        unit="tokens" if is_tokens else "time",
    )


def snapshot_from_quota(body: dict) -> UsageSnapshot:
    code = body.get("code")
    if body.get("success") is not True or (code is not None and code != 200):
        raise FetchError(f"z.ai API failed: {body.get('msg') or 'Unknown error'}")
    data = body.get("data")
    if not isinstance(data, dict):
        raise ResponseParseError("z.ai API response missing 'data' field")

    plan = next(
        (data[k] for k in ("planName", "plan", "plan_type", "packageName") if isinstance(data.get(k), str)),
        None,
    )
    tokens = time = None
    details: dict[str, int] = {}
    for entry in data.get("limits") or []:
        if not isinstance(entry, dict):
            continue
        if entry.get("type") == "TOKENS_LIMIT":
            tokens = limit_window(entry, True)
        elif entry.get("type") == "TIME_LIMIT":
            time = limit_window(entry, False)
        for item in entry.get("usageDetails") or []:
            model = item.get("modelCode") if isinstance(item, dict) else None
            usage = _int(item.get("usage")) if isinstance(item, dict) else 0
            if model and usage > 0:
                details[model] = details.get(model, 0) + usage

    primary = tokens or time
    secondary = time if tokens is not None else None
    tertiary = None
    # Per-model usage fills whichever slots the limits left empty
    ranked = sorted(details.items(), key=lambda kv: kv[1], reverse=True)
    if ranked:
        base = (primary.used if primary and primary.used else None) or sum(details.values())
        if secondary is None:
            model, usage = ranked[0]
            secondary = RateWindow(used_percent=usage / base * 100, used=usage, unit=model)
        if len(ranked) > 1:
            model, usage = ranked[1]
            tertiary = RateWindow(used_percent=usage / base * 100, used=usage, unit=model)

    return UsageSnapshot(
        provider_id=PROVIDER_ID,
        primary=primary or RateWindow(reset_description="No data"),
        secondary=secondary,
        tertiary=tertiary,
        identity=ProviderIdentity(plan_type=plan.strip() if plan and plan.strip() else "z.ai"),
    )


class ZaiApiStrategy(FetchStrategy):
    name = "API"
    priority = 1
    kind = StrategyKind.MANUAL

    def __init__(self, http: HttpClient, secrets: SecretStore, environ: Mapping[str, str] = os.environ):
        self.http = http
        self.secrets = secrets
        self.environ = environ

    def api_token(self) -> str | None:
        return clean_secret(self.secrets.get(TOKEN_KEY)) or clean_secret(self.environ.get(ENV_VAR))

    def can_execute(self) -> bool:
        return self.api_token() is not None

    def fetch(self) -> UsageSnapshot:
        token = self.api_token()
        if token is None:
            raise AuthExpiredError("z.ai API token not configured.")
        resp = self.http.get(QUOTA_API_URL, headers={
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        })
        if resp.status == 401:
            self.secrets.delete(TOKEN_KEY)
            raise AuthExpiredError("z.ai rejected the API token.")
        if not resp.ok:
            log.debug("z.ai error body: %s", resp.body[:500])
            raise FetchError(f"z.ai API error: HTTP {resp.status}", ErrorKind.NETWORK)
        try:
            body = resp.json()
        except ValueError as exc:
            raise ResponseParseError(f"Failed to parse z.ai response: {exc}") from exc
        if not isinstance(body, dict):
            raise ResponseParseError("Unexpected z.ai response")
        return snapshot_from_quota(body)


def build_descriptor(http: HttpClient, secrets: SecretStore) -> ProviderDescriptor:
    return ProviderDescriptor(
        id=PROVIDER_ID,
        display_name="z.ai",
        strategies=[ZaiApiStrategy(http, secrets)],
        primary_label="Tokens",
        secondary_label="MCP",
        dashboard_url="https://z.ai/account",
        default_not_configured="No API token. Enter your z.ai API token in Settings.",
    )
