import asyncio
import logging
import time
from collections.abc import Callable
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

from collectors import claude, codex
from collectors.cache import (
    COST_SCALE,
    CacheStore,
    CostUsageCache,
    DayModels,
    FileUsage,
    apply_file_days,
    merge_file_days,
    prune_days,
)
from config import Settings
from dayrange import DayRange, day_key
from models import (
    CostUsageDailyEntry,
    CostUsageDailyReport,
    CostUsageSummary,
    CostUsageTokenSnapshot,
    ModelBreakdown,
)
from pricing import CostProvider, claude_cost_usd, codex_cost_usd, copilot_cost_usd

log = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class CostUsageFetcher:
    """Scans local session logs into per-provider day caches and reports on them.

    One instance owns one ``CacheStore``; construct it once and share it.
    """

    def __init__(self, settings: Settings, store: CacheStore | None = None):
        self.settings = settings
        self.store = store or CacheStore(settings.cost_cache_dir)

    # -- public API ---------------------------------------------------------

    def load_token_snapshot(
        self,
        provider: CostProvider | str,
        force_refresh: bool = False,
        today: date | None = None,
    ) -> CostUsageTokenSnapshot:
        provider = CostProvider(provider)
        day_range = DayRange.last_days(self.settings.cost_history_days, today)
        if provider is CostProvider.COPILOT:
            return self._load_copilot_snapshot(day_range)
        report = self.load_daily_report(provider, force_refresh, day_range)
        return to_token_snapshot(report)

    async def load_token_snapshot_async(
        self,
        provider: CostProvider | str,
        force_refresh: bool = False,
    ) -> CostUsageTokenSnapshot:
        return await asyncio.to_thread(self.load_token_snapshot, provider, force_refresh)

    def load_daily_report(
        self,
        provider: CostProvider | str,
        force_refresh: bool = False,
        day_range: DayRange | None = None,
    ) -> CostUsageDailyReport:
        provider = CostProvider(provider)
        day_range = day_range or DayRange.last_days(self.settings.cost_history_days)
        if provider is CostProvider.COPILOT:
            raise ValueError("copilot usage is not scanned from local logs")

        with self.store.lock(provider.value):
            if force_refresh:
                self.store.clear(provider.value)
            cache = self.store.load(provider.value)
            now_ms = _now_ms()
            interval_ms = self.settings.refresh_min_interval_seconds * 1000
            stale = cache.last_scan_ms == 0 or now_ms - cache.last_scan_ms >= interval_ms
            if stale:
                self._scan(provider, cache, day_range)
                cache.last_scan_ms = now_ms
                self.store.save(provider.value, cache)

        if provider is CostProvider.CODEX:
            return build_codex_report(cache, day_range)
        return build_claude_report(cache, day_range)

    def save_copilot_usage(
        self,
        day: date,
        model_usage: dict[str, float],
        model_costs: dict[str, float] | None = None,
    ) -> None:
        """Record one day of premium-request counts as ``(requests, cost_nanos)``."""
        provider_id = CostProvider.COPILOT.value
        with self.store.lock(provider_id):
            cache = self.store.load(provider_id)
            self._put_copilot_day(cache, day, model_usage, model_costs)

    def save_copilot_month_usage(self, today: date, month_usage: dict[str, float]) -> None:
        """Record month-to-date premium-request counts as today's share.

        The billing API only reports running totals for the current month.
        Requests already booked on earlier days of the month are subtracted,
        so the stored days add up to the month total.
        """
        provider_id = CostProvider.COPILOT.value
        month = today.strftime("%Y-%m")
        today_key = day_key(today)
        with self.store.lock(provider_id):
            cache = self.store.load(provider_id)
            earlier: dict[str, int] = {}
            for key, models in cache.days.items():
                if key.startswith(month) and key < today_key:
                    for model, packed in models.items():
                        earlier[model] = earlier.get(model, 0) + (packed[0] if packed else 0)
            share = {model: total - earlier.get(model, 0) for model, total in month_usage.items()}
            self._put_copilot_day(cache, today, share)

    def _put_copilot_day(
        self,
        cache: CostUsageCache,
        day: date,
        model_usage: dict[str, float],
        model_costs: dict[str, float] | None = None,
    ) -> None:
        models: dict[str, tuple[int, ...]] = {}
        for model, requests in model_usage.items():
            if requests <= 0:
                continue
            cost = (model_costs or {}).get(model)
            if cost is None:
                cost = copilot_cost_usd(model, requests) or 0.0
            models[model] = (round(requests), round(cost * COST_SCALE))
        if not models:
            return

        cache.days[day_key(day)] = models
        cutoff = day_key(day - timedelta(days=self.settings.cost_history_days))
        for key in [k for k in cache.days if k < cutoff]:
            del cache.days[key]
        cache.last_scan_ms = _now_ms()
        self.store.save(CostProvider.COPILOT.value, cache)
        log.info("Saved Copilot usage: %d models, %s requests", len(models), sum(model_usage.values()))

    # -- scanning -----------------------------------------------------------

    def _scan(self, provider: CostProvider, cache: CostUsageCache, day_range: DayRange) -> None:
        if provider is CostProvider.CODEX:
            root = self.settings.codex_sessions_root()
            if not root.is_dir():
                log.info("Codex sessions root not found: %s", root)
                files: list[Path] = []
            else:
                files = codex.list_session_files(root, day_range)
            parse = self._parse_codex
        else:
            files = []
            for root in self.settings.claude_projects_roots():
                files.extend(claude.list_jsonl_files(root))
            parse = self._parse_claude

        # Claude dedupe keys only live for one pass, so a changed file is
        # always replayed whole; resuming could count a repeated response twice.
        resume = provider is CostProvider.CODEX

        log.info("Scanning %d %s log files", len(files), provider.value)
        seen = set()
        for path in files:
            key = str(path)
            seen.add(key)
            try:
                scan_file(cache, path, day_range, parse, resume)
            except OSError as exc:
                log.warning("Error processing %s file %s: %s", provider.value, path, exc)

        for key in [k for k in cache.files if k not in seen]:
            apply_file_days(cache, cache.files[key].days, -1)
            del cache.files[key]

        prune_days(cache, day_range)

    @staticmethod
    def _parse_codex(path: Path, day_range: DayRange, previous: FileUsage | None) -> FileUsage:
        if previous is None:
            result = codex.parse_session_file(path, day_range)
        else:
            result = codex.parse_session_file(
                path, day_range, previous.parsed_bytes or 0, previous.last_model, previous.last_totals,
            )
        return FileUsage(
            parsed_bytes=result.parsed_bytes,
            days=result.days,
            last_model=result.last_model,
            last_totals=result.last_totals,
        )

    @staticmethod
    def _parse_claude(path: Path, day_range: DayRange, previous: FileUsage | None) -> FileUsage:
        result = claude.parse_session_file(path, day_range)
        if result.duplicates:
            log.debug("Skipped %d repeated responses in %s", result.duplicates, path)
        return FileUsage(parsed_bytes=result.parsed_bytes, days=result.days)

    # -- copilot ------------------------------------------------------------

    def _load_copilot_snapshot(self, day_range: DayRange) -> CostUsageTokenSnapshot:
        cache = self.store.load(CostProvider.COPILOT.value)
        if not cache.days:
            log.debug("No cached Copilot data found")
            return CostUsageTokenSnapshot()

        entries: list[CostUsageDailyEntry] = []
        for day in sorted(cache.days):
            if not day_range.contains(day):
                continue
            breakdowns = []
            day_requests = 0
            day_cost = 0.0
            for model, packed in cache.days[day].items():
                requests = packed[0] if len(packed) > 0 else 0
                cost = (packed[1] if len(packed) > 1 else 0) / COST_SCALE
                if cost == 0 and requests > 0:
                    cost = copilot_cost_usd(model, requests) or 0.0
                day_requests += requests
                day_cost += cost
                breakdowns.append(ModelBreakdown(model_name=model, cost_usd=cost, input_tokens=requests, output_tokens=0))
            if day_requests <= 0 and day_cost <= 0:
                continue
            entries.append(CostUsageDailyEntry(
                date=day,
                total_tokens=day_requests,  # premium requests
                cost_usd=day_cost,
                models_used=[b.model_name for b in breakdowns],
                model_breakdowns=sorted(breakdowns, key=lambda b: b.cost_usd or 0, reverse=True)[:5],
            ))

        total_cost = sum(e.cost_usd or 0 for e in entries)
        latest = entries[-1] if entries else None
        return CostUsageTokenSnapshot(
            session_tokens=latest.total_tokens if latest else None,
            session_cost_usd=latest.cost_usd if latest else None,
            last_30_days_tokens=sum(e.total_tokens or 0 for e in entries),
            last_30_days_cost_usd=total_cost if total_cost > 0 else None,
            daily=entries,
        )


FileParser = Callable[[Path, DayRange, FileUsage | None], FileUsage]


def scan_file(
    cache: CostUsageCache,
    path: Path,
    day_range: DayRange,
    parse: FileParser,
    resume: bool = True,
) -> None:
    """Bring one file's contribution in ``cache`` up to date.

    Unchanged files are skipped, grown files resume from the stored offset,
    and anything else (same size with a new mtime, shrunk, or rewritten) is
    replayed from scratch: the old contribution is subtracted before the full
    rescan is added. With ``resume=False`` every change is a full replay.
    """
    stat = path.stat()
    mtime_ms = int(stat.st_mtime * 1000)
    size = stat.st_size
    key = str(path)
    cached = cache.files.get(key)

    if cached is not None and cached.mtime_ms == mtime_ms and cached.size == size:
        return

    resumable = (
        resume
        and cached is not None
        and cached.parsed_bytes is not None
        and 0 < cached.parsed_bytes <= size
        and size > cached.size
    )
    if resumable:
        delta = parse(path, day_range, cached)
        if delta.days:
            apply_file_days(cache, delta.days, 1)
        days: DayModels = {d: dict(m) for d, m in cached.days.items()}
        merge_file_days(days, delta.days)
        delta.days = days
    else:
        if cached is not None:
            apply_file_days(cache, cached.days, -1)
        delta = parse(path, day_range, None)
        apply_file_days(cache, delta.days, 1)

    delta.mtime_ms = mtime_ms
    delta.size = size
    cache.files[key] = delta


def build_codex_report(cache: CostUsageCache, day_range: DayRange) -> CostUsageDailyReport:
    entries: list[CostUsageDailyEntry] = []
    total_input = total_output = total_cached = total_tokens = 0
    total_cost = 0.0
    cost_seen = False

    for day in sorted(k for k in cache.days if day_range.contains(k)):
        models = cache.days[day]
        names = sorted(models)
        day_input = day_output = day_cached = 0
        day_cost = 0.0
        day_cost_seen = False
        breakdown = []
        for model in names:
            packed = models[model]
            inp, cached, out = (tuple(packed) + (0, 0, 0))[:3]
            day_input += inp
            day_cached += cached
            day_output += out
            cost = codex_cost_usd(model, inp, cached, out)
            breakdown.append(ModelBreakdown(
                model_name=model, cost_usd=cost, input_tokens=inp, output_tokens=out, cache_read_tokens=cached,
            ))
            if cost is not None:
                day_cost += cost
                day_cost_seen = True

        day_total = day_input + day_output
        entries.append(CostUsageDailyEntry(
            date=day,
            input_tokens=day_input,
            output_tokens=day_output,
            cache_read_tokens=day_cached,
            total_tokens=day_total,
            cost_usd=day_cost if day_cost_seen else None,
            models_used=names,
            model_breakdowns=_top(breakdown, 3),
        ))
        total_input += day_input
        total_output += day_output
        total_cached += day_cached
        total_tokens += day_total
        if day_cost_seen:
            total_cost += day_cost
            cost_seen = True

    summary = None
    if entries:
        summary = CostUsageSummary(
            total_input_tokens=total_input,
            total_output_tokens=total_output,
            total_cache_read_tokens=total_cached,
            total_tokens=total_tokens,
            total_cost_usd=total_cost if cost_seen else None,
        )
    return CostUsageDailyReport(data=entries, summary=summary)


def build_claude_report(cache: CostUsageCache, day_range: DayRange) -> CostUsageDailyReport:
    entries: list[CostUsageDailyEntry] = []
    totals = {"input": 0, "output": 0, "cache_read": 0, "cache_create": 0, "tokens": 0}
    total_cost = 0.0
    cost_seen = False

    for day in sorted(k for k in cache.days if day_range.contains(k)):
        models = cache.days[day]
        names = sorted(models)
        day_input = day_output = day_read = day_create = 0
        day_cost = 0.0
        day_cost_seen = False
        breakdown = []
        for model in names:
            inp, read, create, out, cost_nanos = (tuple(models[model]) + (0,) * 5)[:5]
            day_input += inp
            day_read += read
            day_create += create
            day_output += out
            if cost_nanos > 0:
                cost = cost_nanos / COST_SCALE
            else:
                cost = claude_cost_usd(model, inp, read, create, out)
            breakdown.append(ModelBreakdown(
                model_name=model,
                cost_usd=cost,
                input_tokens=inp,
                output_tokens=out,
                cache_read_tokens=read,
                cache_creation_tokens=create,
            ))
            if cost is not None:
                day_cost += cost
                day_cost_seen = True

        day_total = day_input + day_read + day_create + day_output
        entries.append(CostUsageDailyEntry(
            date=day,
            input_tokens=day_input,
            output_tokens=day_output,
            cache_read_tokens=day_read,
            cache_creation_tokens=day_create,
            total_tokens=day_total,
            cost_usd=day_cost if day_cost_seen else None,
            models_used=names,
            model_breakdowns=_top(breakdown, 3),
        ))
        totals["input"] += day_input
        totals["output"] += day_output
        totals["cache_read"] += day_read
        totals["cache_create"] += day_create
        totals["tokens"] += day_total
        if day_cost_seen:
            total_cost += day_cost
            cost_seen = True

    summary = None
    if entries:
        summary = CostUsageSummary(
            total_input_tokens=totals["input"],
            total_output_tokens=totals["output"],
            total_cache_read_tokens=totals["cache_read"],
            total_cache_creation_tokens=totals["cache_create"],
            total_tokens=totals["tokens"],
            total_cost_usd=total_cost if cost_seen else None,
        )
    return CostUsageDailyReport(data=entries, summary=summary)


def _top(breakdown: list[ModelBreakdown], n: int) -> list[ModelBreakdown]:
    return sorted(breakdown, key=lambda b: b.cost_usd or 0, reverse=True)[:n]


def to_token_snapshot(report: CostUsageDailyReport) -> CostUsageTokenSnapshot:
    if not report.data:
        return CostUsageTokenSnapshot()

    current = max(report.data, key=lambda e: (e.date, e.cost_usd or 0, e.total_tokens or 0))
    summary = report.summary
    if summary is not None and summary.total_cost_usd is not None:
        total_cost = summary.total_cost_usd
    else:
        total_cost = sum(e.cost_usd for e in report.data if e.cost_usd is not None)
    if summary is not None and summary.total_tokens is not None:
        total_tokens = summary.total_tokens
    else:
        total_tokens = sum(e.total_tokens for e in report.data if e.total_tokens is not None)

    return CostUsageTokenSnapshot(
        session_tokens=current.total_tokens,
        session_cost_usd=current.cost_usd,
        last_30_days_tokens=total_tokens if total_tokens > 0 else None,
        last_30_days_cost_usd=total_cost if total_cost > 0 else None,
        daily=report.data,
        updated_at=datetime.now(timezone.utc),
    )
