"""Thin HTTP and subprocess wrappers used by the fetch strategies.

Both return plain results (status/body, exit code/output) and leave
interpretation to the caller. Only failures to reach the other side at all
raise ``TransportError``.

Every call is also bounded by the deadline of the surrounding ``deadline()``
block, if any. The orchestrator opens one per strategy attempt, so a worker
thread it has stopped waiting for gives up on its own instead of running
into the next strategy's turn.
"""

import json
import logging
import shutil
import subprocess
import time
import urllib.error
import urllib.request
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field

log = logging.getLogger(__name__)

USER_AGENT = "usagebar/0.1"

_deadline: ContextVar[float | None] = ContextVar("transport_deadline", default=None)


class TransportError(Exception):
    pass


@contextmanager
def deadline(seconds: float):
    """Bound every transport call made in this context (and in threads
    started from it with ``asyncio.to_thread``) to ``seconds`` from now."""
    token = _deadline.set(time.monotonic() + seconds)
    try:
        yield
    finally:
        _deadline.reset(token)


def remaining_timeout(timeout: float) -> float:
    end = _deadline.get()
    if end is None:
        return timeout
    left = end - time.monotonic()
    if left <= 0:
        raise TransportError("Deadline exceeded")
    return min(timeout, left)


@dataclass
class HttpResponse:
    status: int
    body: str
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self):
        return json.loads(self.body)


class HttpClient:
    def __init__(self, default_timeout: float = 30.0):
        self.default_timeout = default_timeout

    def request(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None = None,
        body: bytes | None = None,
        timeout: float | None = None,
    ) -> HttpResponse:
        req = urllib.request.Request(
            url,
            data=body,
            method=method,
            headers={"User-Agent": USER_AGENT, **(headers or {})},
        )
        timeout = remaining_timeout(timeout or self.default_timeout)
        try:
            with urllib.request.urlopen(req, timeout=timeout) as resp:
                return HttpResponse(
                    status=resp.status,
                    body=resp.read().decode("utf-8", errors="replace"),
                    headers=dict(resp.headers.items()),
                )
        except urllib.error.HTTPError as exc:
            # Non-2xx is still an answer from the server
            payload = exc.read().decode("utf-8", errors="replace") if exc.fp else ""
            return HttpResponse(status=exc.code, body=payload, headers=dict(exc.headers.items()))
        except (urllib.error.URLError, TimeoutError, OSError) as exc:
            log.debug("%s %s failed: %s", method, url, exc)
            raise TransportError(f"Network error: {exc}") from exc

    def get(self, url: str, headers: dict[str, str] | None = None, timeout: float | None = None) -> HttpResponse:
        return self.request("GET", url, headers=headers, timeout=timeout)


@dataclass
class CommandResult:
    exit_code: int
    stdout: str
    stderr: str


class CommandRunner:
    def which(self, program: str) -> str | None:
        return shutil.which(program)

    def run(
        self,
        program: str,
        args: list[str],
        timeout: float = 30.0,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        timeout = remaining_timeout(timeout)
        try:
            raw = subprocess.run(
                [program, *args],
                capture_output=True, text=True, timeout=timeout, env=env,
                encoding="utf-8", errors="replace",
            )
        except (OSError, subprocess.SubprocessError) as exc:
            log.debug("%s %s failed: %s", program, " ".join(args), exc)
            raise TransportError(f"Failed to run {program}: {exc}") from exc
        return CommandResult(exit_code=raw.returncode, stdout=raw.stdout or "", stderr=raw.stderr or "")
