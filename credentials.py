import logging
import subprocess
import threading
from typing import Protocol

log = logging.getLogger(__name__)

KEYCHAIN_SERVICE_PREFIX = "usagebar:"


class SecretStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, secret: str) -> bool: ...

    def delete(self, key: str) -> bool: ...


def clean_secret(raw: str | None) -> str | None:
    """Trim whitespace and one pair of surrounding quotes from a pasted secret."""
    if raw is None:
        return None
    value = raw.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        value = value[1:-1].strip()
    return value or None


class MemorySecretStore:
    def __init__(self, initial: dict[str, str] | None = None):
        self._secrets = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._secrets.get(key)

    def set(self, key: str, secret: str) -> bool:
        cleaned = clean_secret(secret)
        if cleaned is None:
            return self.delete(key)
        with self._lock:
            self._secrets[key] = cleaned
        return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._secrets.pop(key, None) is not None


class KeychainSecretStore:
    """macOS login keychain via the ``security`` tool."""

    def __init__(self, prefix: str = KEYCHAIN_SERVICE_PREFIX, timeout: float = 5):
        self.prefix = prefix
        self.timeout = timeout

    def _security(self, *args: str) -> subprocess.CompletedProcess | None:
        try:
            return subprocess.run(
                ["security", *args],
                capture_output=True, text=True, timeout=self.timeout,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            log.debug("Keychain call failed: %s", exc)
            return None

    def get(self, key: str) -> str | None:
        raw = self._security("find-generic-password", "-s", self.prefix + key, "-w")
        if raw is None or raw.returncode != 0:
            return None
        return clean_secret(raw.stdout)

    def set(self, key: str, secret: str) -> bool:
        cleaned = clean_secret(secret)
        if cleaned is None:
            return self.delete(key)
        raw = self._security(
            "add-generic-password", "-U", "-a", "usagebar", "-s", self.prefix + key, "-w", cleaned,
        )
        return raw is not None and raw.returncode == 0

    def delete(self, key: str) -> bool:
        raw = self._security("delete-generic-password", "-s", self.prefix + key)
        return raw is not None and raw.returncode == 0
