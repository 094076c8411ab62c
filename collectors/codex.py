import logging
from dataclasses import dataclass, field
from pathlib import Path

from collectors.cache import CodexTotals, DayModels, add_to_day
from collectors.jsonl import JsonlReader, get_int, get_str
from dayrange import DayRange, day_key_from_timestamp
from pricing import normalize_codex_model

log = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-5"


@dataclass
class CodexParseResult:
    days: DayModels
    parsed_bytes: int
    last_model: str | None
    last_totals: CodexTotals | None
    skipped_lines: int = 0


@dataclass
class CodexRateLimits:
    primary: dict | None = None
    secondary: dict | None = None
    plan_type: str | None = None
    timestamp: str | None = None
    source: Path | None = field(default=None, repr=False)


def list_session_files(root: Path, day_range: DayRange) -> list[Path]:
    """Session logs live under ``root/YYYY/MM/DD/*.jsonl``."""
    files: list[Path] = []
    for day in day_range.scan_dates():
        day_dir = root / f"{day.year:04d}" / f"{day.month:02d}" / f"{day.day:02d}"
        if not day_dir.is_dir():
            continue
        try:
            files.extend(sorted(day_dir.glob("*.jsonl")))
        except OSError as exc:
            log.warning("Error listing files in %s: %s", day_dir, exc)
    return files


def _is_candidate(line: bytes) -> bool:
    return b"token_count" in line or b"turn_context" in line


def _went_backwards(current: CodexTotals, previous: CodexTotals) -> bool:
    return (
        current.input < previous.input
        or current.cached < previous.cached
        or current.output < previous.output
    )


def parse_session_file(
    path: Path,
    day_range: DayRange,
    start_offset: int = 0,
    initial_model: str | None = None,
    initial_totals: CodexTotals | None = None,
) -> CodexParseResult:
    """Turn cumulative ``total_token_usage`` counters into per-day deltas.

    ``turn_context`` records set the model for the records that follow.
    Returns the deltas together with the offset and carry-state needed to
    resume from where this pass stopped.
    """
    days: DayModels = {}
    model = initial_model or DEFAULT_MODEL
    previous = initial_totals
    reader = JsonlReader(path, start_offset)

    try:
        for entry in reader.records(_is_candidate):
            kind = entry.get("type")
            payload = entry.get("payload")
            if not isinstance(payload, dict):
                continue

            if kind == "turn_context":
                model = get_str(payload, "model") or get_str(payload.get("info"), "model") or model
                continue

            if kind != "event_msg" or payload.get("type") != "token_count":
                continue

            day = day_key_from_timestamp(entry.get("timestamp"))
            if day is None:
                continue

            info = payload.get("info") if "info" in payload else payload
            if not isinstance(info, dict):
                continue

            sample_model = (
                get_str(info, "model", "model_name")
                or get_str(payload, "model")
                or get_str(entry, "model")
                or model
            )

            totals = info.get("total_token_usage")
            last = info.get("last_token_usage")
            if isinstance(totals, dict):
                current = CodexTotals(
                    input=get_int(totals, "input_tokens") or 0,
                    cached=get_int(totals, "cached_input_tokens", "cache_read_input_tokens") or 0,
                    output=get_int(totals, "output_tokens") or 0,
                )
                if previous is not None and _went_backwards(current, previous):
                    # Counters restarted, count from zero again
                    log.debug("Cumulative totals reset in %s", path)
                    previous = None
                base = previous or CodexTotals()
                delta_input = max(0, current.input - base.input)
                delta_cached = max(0, current.cached - base.cached)
                delta_output = max(0, current.output - base.output)
                previous = current
            elif isinstance(last, dict):
                delta_input = max(0, get_int(last, "input_tokens") or 0)
                delta_cached = max(0, get_int(last, "cached_input_tokens", "cache_read_input_tokens") or 0)
                delta_output = max(0, get_int(last, "output_tokens") or 0)
            else:
                continue

            if delta_input == 0 and delta_cached == 0 and delta_output == 0:
                continue

            # A cache read is always part of the input
            delta_cached = min(delta_cached, delta_input)
            add_to_day(
                days, day, normalize_codex_model(sample_model),
                (delta_input, delta_cached, delta_output), day_range,
            )
    except OSError as exc:
        log.warning("Error parsing Codex file %s: %s", path, exc)

    return CodexParseResult(
        days=days,
        parsed_bytes=reader.offset,
        last_model=model,
        last_totals=previous,
        skipped_lines=reader.skipped,
    )


def latest_rate_limits(root: Path, max_files: int = 20) -> CodexRateLimits | None:
    """Most recent ``rate_limits`` block reported in the session logs."""
    if not root.is_dir():
        return None
    try:
        candidates = sorted(root.rglob("*.jsonl"), key=lambda p: p.stat().st_mtime, reverse=True)
    except OSError as exc:
        log.warning("Error listing Codex sessions under %s: %s", root, exc)
        return None

    for session_file in candidates[:max_files]:
        latest: CodexRateLimits | None = None
        try:
            reader = JsonlReader(session_file)
            for entry in reader.records(lambda line: b"rate_limits" in line):
                payload = entry.get("payload")
                if not isinstance(payload, dict) or payload.get("type") != "token_count":
                    continue
                limits = payload.get("rate_limits")
                if not isinstance(limits, dict):
                    continue
                ts = entry.get("timestamp") or ""
                if latest is None or ts >= (latest.timestamp or ""):
                    latest = CodexRateLimits(
                        primary=limits.get("primary") if isinstance(limits.get("primary"), dict) else None,
                        secondary=limits.get("secondary") if isinstance(limits.get("secondary"), dict) else None,
                        plan_type=get_str(limits, "plan_type"),
                        timestamp=ts,
                        source=session_file,
                    )
        except OSError as exc:
            log.warning("Error reading %s: %s", session_file, exc)
            continue
        if latest is not None:
            return latest
    return None
