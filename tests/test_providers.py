import json
from datetime import datetime, timezone

import pytest

from collectors.codex import CodexRateLimits
from collectors.cost import CostUsageFetcher
from config import AuthPreference
from conftest import FakeHttp, FakeRunner, json_response, token_count, write_jsonl
from credentials import MemorySecretStore
from models import ErrorKind
from providers import claude, codex, copilot, cursor, zai
from providers.base import AuthExpiredError, FetchError, ResponseParseError
from providers.registry import build_default_registry
from transport import CommandResult, HttpResponse

FAR_FUTURE_MS = 4102444800000  # 2100-01-01


def claude_credentials(token="tok", expires_at=FAR_FUTURE_MS, **extra):
    return json.dumps({"claudeAiOauth": {"accessToken": token, "expiresAt": expires_at, **extra}})


# -- claude -----------------------------------------------------------------

def test_claude_credentials_parse():
    creds = claude.ClaudeCredentials.parse(claude_credentials(
        subscriptionType="max", rateLimitTier="default_claude_max_20x", refreshToken="r",
    ))
    assert creds.access_token == "tok"
    assert not creds.is_expired
    assert claude.plan_label(creds) == "Max (20x)"

    assert claude.ClaudeCredentials.parse("  sk-bare  ").access_token == "sk-bare"
    assert claude.ClaudeCredentials.parse("{oops") is None
    assert claude.ClaudeCredentials.parse('{"other": {}}') is None
    assert claude.ClaudeCredentials.parse(claude_credentials(expires_at=1_000_000_000_000)).is_expired


def test_claude_api_response():
    snapshot = claude.snapshot_from_api({
        "five_hour": {"utilization": 34.0, "resets_at": "2030-01-01T00:00:00Z"},
        "seven_day": {"utilization": 12},
        "seven_day_sonnet": None,
        "extra_usage": {"is_enabled": True, "used_credits": 1234},
    })
    assert snapshot.primary.used_percent == 34.0
    assert snapshot.primary.window_minutes == 300
    assert snapshot.primary.resets_at == datetime(2030, 1, 1, tzinfo=timezone.utc)
    assert snapshot.secondary.label == "Weekly"
    assert snapshot.tertiary is None
    assert snapshot.cost.total_cost_usd == pytest.approx(12.34)
    assert snapshot.identity.plan_type == "Max"


def test_claude_cli_text():
    snapshot = claude.snapshot_from_cli(
        "Plan: Pro\n"
        "Session: 2% used (Resets in 3h 53m)\n"
        "Weekly: 10% used (Resets in 3d 20h)\n"
        "Sonnet: 5% used\n"
    )
    assert snapshot.primary.used_percent == 2
    assert snapshot.primary.reset_description == "in 3h 53m"
    assert snapshot.primary.resets_at is not None
    assert snapshot.secondary.used_percent == 10
    assert snapshot.tertiary.used_percent == 5
    assert snapshot.identity.plan_type == "Pro"


def test_claude_cli_json_and_garbage():
    snapshot = claude.snapshot_from_cli('{"session": {"used_percent": 40}, "weekly": {"used": 3, "limit": 12}}')
    assert snapshot.primary.used_percent == 40
    assert snapshot.secondary.used_percent == 25
    with pytest.raises(ResponseParseError):
        claude.snapshot_from_cli("Welcome to Claude!")


def test_claude_oauth_fetch(tmp_path):
    secrets = MemorySecretStore({claude.CREDENTIALS_KEY: claude_credentials()})
    http = FakeHttp({claude.USAGE_API_URL: json_response({"five_hour": {"utilization": 50}})})
    strategy = claude.ClaudeOAuthStrategy(http, secrets, tmp_path / "missing.json")

    assert strategy.can_execute()
    snapshot = strategy.fetch()
    assert snapshot.primary.used_percent == 50
    _, headers = http.calls[0]
    assert headers["Authorization"] == "Bearer tok"
    assert headers["anthropic-beta"] == claude.OAUTH_BETA


def test_claude_oauth_reads_cli_credentials_file(tmp_path):
    path = tmp_path / ".credentials.json"
    path.write_text(claude_credentials("file-token"))
    http = FakeHttp({claude.USAGE_API_URL: HttpResponse(401, "")})
    strategy = claude.ClaudeOAuthStrategy(http, MemorySecretStore(), path)

    assert strategy.can_execute()
    with pytest.raises(AuthExpiredError):
        strategy.fetch()
    # The file belongs to the CLI; the rejected token just stops being used
    assert path.exists()
    assert not strategy.can_execute()


def test_claude_oauth_unauthorized_clears_secret(tmp_path):
    secrets = MemorySecretStore({claude.CREDENTIALS_KEY: claude_credentials()})
    http = FakeHttp({claude.USAGE_API_URL: HttpResponse(403, "")})
    strategy = claude.ClaudeOAuthStrategy(http, secrets, tmp_path / "missing.json")
    with pytest.raises(AuthExpiredError):
        strategy.fetch()
    assert secrets.get(claude.CREDENTIALS_KEY) is None
    assert not strategy.can_execute()


def test_claude_oauth_server_error(tmp_path):
    secrets = MemorySecretStore({claude.CREDENTIALS_KEY: claude_credentials()})
    strategy = claude.ClaudeOAuthStrategy(
        FakeHttp({claude.USAGE_API_URL: HttpResponse(503, "")}), secrets, tmp_path / "x",
    )
    with pytest.raises(FetchError) as exc_info:
        strategy.fetch()
    assert exc_info.value.kind == ErrorKind.NETWORK
    assert exc_info.value.message == "Server error: HTTP 503"


def test_claude_oauth_skips_expired_credentials(tmp_path):
    secrets = MemorySecretStore({claude.CREDENTIALS_KEY: claude_credentials(expires_at=1_000_000_000_000)})
    assert not claude.ClaudeOAuthStrategy(FakeHttp(), secrets, tmp_path / "x").can_execute()


def test_claude_cli_falls_back_to_usage_command():
    runner = FakeRunner({"claude": "/usr/bin/claude"}, {
        ("claude", ("--print", "/usage")): CommandResult(0, "Unknown command", ""),
        ("claude", ("usage",)): CommandResult(0, "Session: 7% used", ""),
    })
    strategy = claude.ClaudeCliStrategy(runner)
    assert strategy.can_execute()
    assert strategy.fetch().primary.used_percent == 7
    assert [args for _, args in runner.calls] == [["--print", "/usage"], ["usage"]]
    assert not claude.ClaudeCliStrategy(FakeRunner()).can_execute()


def test_claude_not_configured_messages():
    d = claude.build_descriptor(FakeHttp(), FakeRunner(), MemorySecretStore())
    assert d.not_configured_message() == "Not authenticated. Run 'claude' CLI to login."
    assert d.not_configured_message(AuthPreference.CLI) == (
        "CLI not available. Run 'claude' to login. (CLI mode selected)"
    )
    assert [s.name for s in d.strategies] == ["OAuth", "CLI"]


# -- codex ------------------------------------------------------------------

def test_codex_cli_text():
    snapshot = codex.snapshot_from_cli(
        "Session: 2% used (Resets in 3h 53m)\nWeekly: 3% used (Resets in 3d 20h)\n"
    )
    assert snapshot.primary.used_percent == 2
    assert snapshot.secondary.used_percent == 3
    assert snapshot.secondary.window_minutes == 10080
    with pytest.raises(ResponseParseError):
        codex.snapshot_from_cli("nothing here")


def test_codex_cli_json_keeps_small_percentages():
    snapshot = codex.snapshot_from_cli(
        '{"result": {"primary": {"used_percent": 0.5, "resets_in": "2h"}, "planType": "plus"}}'
    )
    assert snapshot.primary.used_percent == 0.5
    assert snapshot.primary.reset_description == "in 2h"
    assert snapshot.identity.plan_type == "plus"


def test_codex_cli_strategy_tries_status():
    runner = FakeRunner({"codex": "/usr/local/bin/codex"}, {
        ("codex", ("status",)): CommandResult(0, "Session: 9% used", ""),
    })
    assert codex.CodexCliStrategy(runner).fetch().primary.used_percent == 9

    with pytest.raises(FetchError):
        codex.CodexCliStrategy(FakeRunner({"codex": "/bin/codex"})).fetch()


def test_codex_rate_limits_reset_relative_to_record():
    snapshot = codex.snapshot_from_rate_limits(CodexRateLimits(
        primary={"used_percent": 12.5, "window_minutes": 300, "resets_in_seconds": 3600},
        secondary={"used_percent": 40, "window_minutes": 10080, "resets_at": 1893456000},
        plan_type="pro",
        timestamp="2025-01-15T12:00:00Z",
    ))
    assert snapshot.primary.used_percent == 12.5
    assert snapshot.primary.resets_at == datetime(2025, 1, 15, 13, tzinfo=timezone.utc)
    assert snapshot.secondary.resets_at == datetime(2030, 1, 1, tzinfo=timezone.utc)
    assert snapshot.fetched_at == datetime(2025, 1, 15, 12, tzinfo=timezone.utc)
    assert snapshot.identity.plan_type == "pro"


def test_codex_session_log_strategy(tmp_path):
    root = tmp_path / "sessions"
    strategy = codex.CodexSessionLogStrategy(root)
    assert not strategy.can_execute()

    record = token_count(10)
    record["payload"]["rate_limits"] = {"primary": {"used_percent": 33.0, "window_minutes": 300}}
    write_jsonl(root / "2025" / "01" / "15" / "s.jsonl", [record])
    assert strategy.can_execute()
    assert strategy.fetch().primary.used_percent == 33.0


def test_codex_session_logs_without_limits(tmp_path):
    write_jsonl(tmp_path / "s.jsonl", [token_count(10)])
    with pytest.raises(FetchError):
        codex.CodexSessionLogStrategy(tmp_path).fetch()


# -- copilot ----------------------------------------------------------------

COPILOT_USER = {
    "copilot_plan": "individual",
    "quota_reset_date": "2030-02-01",
    "quota_snapshots": {
        "premium_interactions": {"entitlement": 300, "remaining": 240, "percent_remaining": 80.0},
    },
}


def test_copilot_user_response():
    snapshot = copilot.snapshot_from_user(COPILOT_USER)
    assert snapshot.primary.used_percent == pytest.approx(20.0)
    assert (snapshot.primary.used, snapshot.primary.limit) == (60, 300)
    assert snapshot.identity.plan_type == "Copilot Pro"


@pytest.mark.parametrize("entitlement, plan, expected", [
    (1500, None, "Copilot Pro+"),
    (300, "free", "Copilot Pro"),
    (50, None, "Copilot Free"),
    (0, "business", "Copilot Business"),
    (0, None, "Copilot"),
])
def test_copilot_plan_label(entitlement, plan, expected):
    assert copilot.plan_label(entitlement, plan) == expected


def test_copilot_strategy():
    secrets = MemorySecretStore({copilot.TOKEN_KEY: "gho_abc"})
    http = FakeHttp({copilot.USER_API_URL: json_response(COPILOT_USER)})
    strategy = copilot.CopilotOAuthStrategy(http, secrets)
    assert strategy.can_execute()
    assert strategy.fetch().ok
    assert http.calls[0][1]["Authorization"] == "token gho_abc"


def test_copilot_rejected_token_is_cleared():
    secrets = MemorySecretStore({copilot.TOKEN_KEY: "gho_abc"})
    strategy = copilot.CopilotOAuthStrategy(FakeHttp({copilot.USER_API_URL: HttpResponse(401, "")}), secrets)
    with pytest.raises(AuthExpiredError):
        strategy.fetch()
    assert secrets.get(copilot.TOKEN_KEY) is None
    assert not strategy.can_execute()


COPILOT_BILLING = {
    "timePeriod": {"year": 2025, "month": 1},
    "usageItems": [
        {"product": "Copilot", "model": "Claude Sonnet 4.5", "grossQuantity": 10},
        {"product": "copilot", "model": "Claude Sonnet 4.5", "grossQuantity": 2},
        {"product": "Copilot", "model": "gpt-4o", "grossQuantity": 3.5},
        {"product": "Copilot", "model": "", "grossQuantity": 4},
        {"product": "Copilot", "model": "o1", "grossQuantity": 0},
        {"product": "Copilot", "model": "o3", "grossQuantity": "n/a"},
        {"product": "Actions", "model": "gpt-4o", "grossQuantity": 99},
    ],
}


def copilot_billing_http(billing=None, login="octo"):
    # The premium usage route goes first: FakeHttp matches by prefix and
    # ".../user" is a prefix of ".../users/..."
    return FakeHttp({
        copilot.USER_API_URL: json_response(COPILOT_USER),
        copilot.PREMIUM_USAGE_URL.format(login=login): billing or json_response(COPILOT_BILLING),
        copilot.LOGIN_API_URL: json_response({"login": login}),
    })


def test_copilot_model_usage_from_billing():
    assert copilot.model_usage_from_billing(COPILOT_BILLING) == {"Claude Sonnet 4.5": 12.0, "gpt-4o": 3.5}
    assert copilot.model_usage_from_billing({}) == {}


def test_copilot_strategy_records_model_usage():
    recorded = []
    http = copilot_billing_http()
    strategy = copilot.CopilotOAuthStrategy(
        http, MemorySecretStore({copilot.TOKEN_KEY: "gho_abc"}), lambda day, usage: recorded.append((day, usage)),
    )
    assert strategy.fetch().primary.limit == 300
    ((day, usage),) = recorded
    assert day == datetime.now(timezone.utc).date()
    assert usage == {"Claude Sonnet 4.5": 12.0, "gpt-4o": 3.5}
    assert [url for url, _ in http.calls][-1] == "https://api.github.com/users/octo/settings/billing/premium_request/usage"


def test_copilot_billing_failure_keeps_quota_snapshot():
    recorded = []
    strategy = copilot.CopilotOAuthStrategy(
        copilot_billing_http(HttpResponse(403, "")),
        MemorySecretStore({copilot.TOKEN_KEY: "gho_abc"}),
        lambda day, usage: recorded.append(usage),
    )
    assert strategy.fetch().ok
    assert recorded == []


# -- cursor -----------------------------------------------------------------

def test_cursor_cookie_helpers():
    assert cursor.cookie_header(" abc ") == "WorkosCursorSessionToken=abc"
    assert cursor.cookie_header("a=1; b=2") == "a=1; b=2"
    header = "foo=bar; WorkosCursorSessionToken=user_123%3A%3Ajwt"
    assert cursor.user_id_from_cookie(header) == "user_123"
    assert cursor.user_id_from_cookie("WorkosCursorSessionToken=plain") is None
    assert cursor.format_membership("pro") == "Cursor Pro"
    assert cursor.format_membership("ultra") == "Cursor Ultra"
    assert cursor.format_membership(None) is None


CURSOR_SUMMARY = {
    "membershipType": "pro",
    "billingCycleEnd": "2030-01-31T00:00:00Z",
    "individualUsage": {
        "plan": {"used": 1500, "limit": 2000, "autoPercentUsed": 10, "apiPercentUsed": 5},
        "onDemand": {"used": 250},
    },
}


def test_cursor_summary():
    snapshot = cursor.snapshot_from_summary(CURSOR_SUMMARY, {"email": "dev@example.com", "sub": "user_123"})
    assert snapshot.primary.used_percent == pytest.approx(75.0)
    assert (snapshot.primary.used, snapshot.primary.limit) == (15.0, 20.0)
    assert snapshot.primary.reset_description == "Resets Jan 31 at 00:00 UTC"
    assert snapshot.secondary.used_percent == 10
    assert snapshot.tertiary.used_percent == 5
    assert snapshot.cost.total_cost_usd == pytest.approx(2.5)
    assert snapshot.identity.email == "dev@example.com"
    assert snapshot.identity.plan_type == "Cursor Pro"


def test_cursor_legacy_request_plan():
    snapshot = cursor.snapshot_from_summary(
        {"membershipType": "hobby"}, None, {"gpt-4": {"numRequests": 250, "maxRequestUsage": 500}},
    )
    assert snapshot.primary.used_percent == 50
    assert snapshot.primary.unit == "requests"
    assert snapshot.cost is None


def test_cursor_strategy_uses_user_id_from_cookie():
    secrets = MemorySecretStore({cursor.COOKIE_KEY: "WorkosCursorSessionToken=user_123%3A%3Ajwt"})
    http = FakeHttp({
        "https://cursor.com/api/usage-summary": json_response(CURSOR_SUMMARY),
        "https://cursor.com/api/usage?user=": json_response({"gpt-4": {"numRequests": 1, "maxRequestUsage": 4}}),
    })
    snapshot = cursor.CursorCookieStrategy(http, secrets).fetch()
    assert snapshot.primary.used_percent == 25
    urls = [url for url, _ in http.calls]
    assert "https://cursor.com/api/usage?user=user_123" in urls
    assert all(h["Cookie"].startswith("WorkosCursorSessionToken=") for _, h in http.calls)


def test_cursor_expired_cookie_is_cleared():
    secrets = MemorySecretStore({cursor.COOKIE_KEY: "token"})
    http = FakeHttp({"https://cursor.com/api/usage-summary": HttpResponse(401, "")})
    with pytest.raises(AuthExpiredError):
        cursor.CursorCookieStrategy(http, secrets).fetch()
    assert secrets.get(cursor.COOKIE_KEY) is None


def test_cursor_manual_hint():
    d = cursor.build_descriptor(FakeHttp(), MemorySecretStore())
    assert d.not_configured_message(AuthPreference.MANUAL) == (
        "No cookie configured. Paste your cookie header in Settings. (Manual mode selected)"
    )


# -- z.ai -------------------------------------------------------------------

ZAI_QUOTA = {
    "code": 200,
    "success": True,
    "data": {
        "planName": "GLM Coding Pro",
        "limits": [
            {
                "type": "TOKENS_LIMIT", "usage": 1000, "currentValue": 250, "remaining": 750,
                "number": 5, "unit": 3, "nextResetTime": 1893456000000,
            },
            {
                "type": "TIME_LIMIT", "usage": 100, "currentValue": 10, "remaining": 90,
                "usageDetails": [{"modelCode": "search-prime", "usage": 6}, {"modelCode": "web-reader", "usage": 4}],
            },
        ],
    },
}


def test_zai_quota():
    snapshot = zai.snapshot_from_quota(ZAI_QUOTA)
    assert snapshot.primary.used_percent == 25
    assert snapshot.primary.window_minutes == 300
    assert snapshot.primary.reset_description == "5 hours window"
    assert snapshot.primary.resets_at == datetime(2030, 1, 1, tzinfo=timezone.utc)
    assert snapshot.secondary.used_percent == 10
    assert snapshot.secondary.reset_description == "Monthly"
    assert snapshot.tertiary.unit == "web-reader"
    assert snapshot.identity.plan_type == "GLM Coding Pro"


def test_zai_api_failure():
    with pytest.raises(FetchError, match="bad token"):
        zai.snapshot_from_quota({"success": False, "code": 1001, "msg": "bad token"})
    with pytest.raises(ResponseParseError):
        zai.snapshot_from_quota({"success": True, "code": 200})


def test_zai_token_from_environment():
    http = FakeHttp({zai.QUOTA_API_URL: json_response(ZAI_QUOTA)})
    strategy = zai.ZaiApiStrategy(http, MemorySecretStore(), environ={zai.ENV_VAR: ' "env-token" '})
    assert strategy.can_execute()
    assert strategy.fetch().ok
    assert http.calls[0][1]["Authorization"] == "Bearer env-token"

    assert not zai.ZaiApiStrategy(http, MemorySecretStore(), environ={}).can_execute()


def test_zai_rejected_token_is_cleared():
    secrets = MemorySecretStore({zai.TOKEN_KEY: "stored"})
    strategy = zai.ZaiApiStrategy(FakeHttp({zai.QUOTA_API_URL: HttpResponse(401, "")}), secrets, environ={})
    with pytest.raises(AuthExpiredError):
        strategy.fetch()
    assert secrets.get(zai.TOKEN_KEY) is None


# -- registry ---------------------------------------------------------------

def test_default_registry_order(settings):
    registry = build_default_registry(settings, MemorySecretStore(), FakeHttp(), FakeRunner())
    assert [d.id for d in registry.all()] == ["codex", "claude", "cursor", "copilot", "zai"]
    assert "cursor" in registry and "gemini" not in registry
    assert len(registry) == 5
    assert registry.get("codex").strategies[1].sessions_root == settings.codex_sessions_root()
    assert registry.get("copilot").strategies[0].on_model_usage is None


def test_default_registry_feeds_copilot_history(settings):
    costs = CostUsageFetcher(settings)
    http = copilot_billing_http()
    secrets = MemorySecretStore({copilot.TOKEN_KEY: "gho_abc"})
    registry = build_default_registry(settings, secrets, http, FakeRunner(), costs=costs)

    assert registry.get("copilot").strategies[0].fetch().ok
    (day,) = costs.store.load("copilot").days.values()
    assert {model: packed[0] for model, packed in day.items()} == {"Claude Sonnet 4.5": 12, "gpt-4o": 4}
