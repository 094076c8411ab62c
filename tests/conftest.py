import json
from pathlib import Path

import pytest

from config import Settings
from models import UsageSnapshot
from providers.base import FetchStrategy, StrategyKind
from transport import CommandResult, HttpResponse


class FakeHttp:
    """Answers by URL prefix; unknown URLs get a 404."""

    def __init__(self, routes: dict | None = None):
        self.routes = dict(routes or {})
        self.calls: list[tuple[str, dict]] = []

    def request(self, method, url, headers=None, body=None, timeout=None):
        self.calls.append((url, dict(headers or {})))
        for prefix, answer in self.routes.items():
            if url.startswith(prefix):
                if isinstance(answer, Exception):
                    raise answer
                return answer
        return HttpResponse(404, "not found")

    def get(self, url, headers=None, timeout=None):
        return self.request("GET", url, headers=headers, timeout=timeout)


class FakeRunner:
    def __init__(self, programs: dict[str, str] | None = None, results: dict | None = None):
        self.programs = programs or {}
        self.results = results or {}
        self.calls: list[tuple[str, list[str]]] = []

    def which(self, program):
        return self.programs.get(program)

    def run(self, program, args, timeout=30.0, env=None):
        self.calls.append((program, list(args)))
        return self.results.get((program, tuple(args)), CommandResult(1, "", "unknown command"))


class StubStrategy(FetchStrategy):
    def __init__(self, name, priority, ready=True, result=None, error=None, kind=StrategyKind.AUTO_DETECT):
        self.name = name
        self.priority = priority
        self.kind = kind
        self.ready = ready
        self.result = result
        self.error = error
        self.fetch_calls = 0
        self.check_calls = 0

    def can_execute(self):
        self.check_calls += 1
        return self.ready

    def fetch(self):
        self.fetch_calls += 1
        if self.error is not None:
            raise self.error
        return self.result


def ok_snapshot(provider_id="test", percent=10.0):
    from models import RateWindow

    return UsageSnapshot(provider_id=provider_id, primary=RateWindow(used_percent=percent))


def json_response(payload, status=200):
    return HttpResponse(status, json.dumps(payload))


def token_count(total_input, output=0, cached=0, ts="2025-01-15T12:00:00Z"):
    """Codex ``token_count`` event carrying cumulative totals."""
    return {
        "timestamp": ts,
        "type": "event_msg",
        "payload": {
            "type": "token_count",
            "info": {
                "total_token_usage": {
                    "input_tokens": total_input,
                    "cached_input_tokens": cached,
                    "output_tokens": output,
                },
            },
        },
    }


def assistant(message_id="msg_1", request_id="req_1", model="claude-sonnet-4-5-20250929", ts="2025-01-15T12:00:00Z", **usage):
    """Claude project log line for one assistant response."""
    usage = usage or {"input_tokens": 1000, "output_tokens": 200}
    return {
        "type": "assistant",
        "timestamp": ts,
        "requestId": request_id,
        "message": {"id": message_id, "model": model, "usage": usage},
    }


def write_jsonl(path: Path, records: list[dict], trailing_newline: bool = True) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    text = "\n".join(json.dumps(r) for r in records)
    if trailing_newline and records:
        text += "\n"
    path.write_text(text)
    return path


def append_jsonl(path: Path, records: list[dict]) -> None:
    with path.open("a") as fh:
        for record in records:
            fh.write(json.dumps(record) + "\n")


@pytest.fixture
def settings(tmp_path):
    return Settings(
        data_dir=tmp_path / "data",
        codex_home=tmp_path / "codex",
        claude_config_dir=str(tmp_path / "claude"),
        refresh_min_interval_seconds=0,
    )
