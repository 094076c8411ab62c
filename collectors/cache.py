"""Day-keyed token aggregates and the per-file state needed to resume scans.

Aggregates are ``{day_key: {model: vector}}`` where the vector is a tuple of
ints: ``(input, cached, output)`` for Codex logs,
``(input, cache_read, cache_create, output, cost_nanos)`` for Claude logs and
``(requests, cost_nanos)`` for Copilot. Vectors are never mutated in place;
every merge builds a new tuple so a cache entry and a delta batch can share
one without aliasing.
"""

import logging
import threading
from collections import defaultdict
from pathlib import Path

from pydantic import BaseModel, ValidationError

from dayrange import DayRange

log = logging.getLogger(__name__)

DayModels = dict[str, dict[str, tuple[int, ...]]]

COST_SCALE = 1_000_000_000  # cost is stored as integer nano-USD


class CodexTotals(BaseModel):
    input: int = 0
    cached: int = 0
    output: int = 0


class FileUsage(BaseModel):
    mtime_ms: int = 0
    size: int = 0
    parsed_bytes: int | None = None
    days: DayModels = {}
    # Codex only: carry-state for cumulative totals
    last_model: str | None = None
    last_totals: CodexTotals | None = None


class CostUsageCache(BaseModel):
    last_scan_ms: int = 0
    files: dict[str, FileUsage] = {}
    days: DayModels = {}


def add_vectors(a: tuple[int, ...], b: tuple[int, ...], sign: int = 1) -> tuple[int, ...]:
    size = max(len(a), len(b))
    a = a + (0,) * (size - len(a))
    b = b + (0,) * (size - len(b))
    return tuple(max(0, x + sign * y) for x, y in zip(a, b))


def add_to_day(
    days: DayModels,
    day: str,
    model: str,
    vector: tuple[int, ...],
    day_range: DayRange,
) -> None:
    """Fold one parsed sample into a delta batch, dropping days outside the scan range."""
    if not day_range.scan_contains(day):
        return
    models = days.setdefault(day, {})
    existing = models.get(model)
    models[model] = vector if existing is None else add_vectors(existing, vector)


def apply_file_days(cache: CostUsageCache, file_days: DayModels, sign: int) -> None:
    """Add (sign=+1) or subtract (sign=-1) one file's contribution, clamping at zero."""
    for day, models in file_days.items():
        day_models = cache.days.get(day)
        if day_models is None:
            if sign < 0:
                continue
            day_models = cache.days[day] = {}
        for model, vector in models.items():
            existing = day_models.get(model)
            if existing is None:
                if sign > 0:
                    day_models[model] = tuple(vector)
                continue
            updated = add_vectors(existing, tuple(vector), sign)
            if any(updated):
                day_models[model] = updated
            else:
                del day_models[model]
        if not day_models:
            del cache.days[day]


def merge_file_days(existing: DayModels, delta: DayModels) -> None:
    for day, models in delta.items():
        day_models = existing.setdefault(day, {})
        for model, vector in models.items():
            current = day_models.get(model)
            day_models[model] = tuple(vector) if current is None else add_vectors(current, tuple(vector))


def prune_days(cache: CostUsageCache, day_range: DayRange) -> None:
    for day in [d for d in cache.days if not day_range.scan_contains(d)]:
        del cache.days[day]


class CacheStore:
    """JSON-file persistence for one ``CostUsageCache`` per provider.

    Also hands out one lock per provider: a scan-and-commit is a
    read-modify-write of that provider's cache and must not interleave with
    another one for the same provider.
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self._locks: dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    def lock(self, provider_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks[provider_id.lower()]

    def path_for(self, provider_id: str) -> Path:
        return self.directory / f"{provider_id.lower()}-cache.json"

    def load(self, provider_id: str) -> CostUsageCache:
        path = self.path_for(provider_id)
        if not path.exists():
            return CostUsageCache()
        try:
            return CostUsageCache.model_validate_json(path.read_text())
        except (OSError, ValidationError, ValueError) as exc:
            log.warning("Failed to load cost cache for %s: %s", provider_id, exc)
            return CostUsageCache()

    def save(self, provider_id: str, cache: CostUsageCache) -> None:
        path = self.path_for(provider_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".tmp")
            tmp.write_text(cache.model_dump_json(exclude_none=True))
            tmp.replace(path)
        except OSError as exc:
            log.warning("Failed to save cost cache for %s: %s", provider_id, exc)

    def clear(self, provider_id: str) -> None:
        try:
            self.path_for(provider_id).unlink(missing_ok=True)
        except OSError as exc:
            log.warning("Failed to clear cost cache for %s: %s", provider_id, exc)
