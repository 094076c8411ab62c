import logging
from dataclasses import dataclass
from pathlib import Path

from collectors.cache import COST_SCALE, DayModels, add_to_day
from collectors.jsonl import JsonlReader, get_int, get_str
from dayrange import DayRange, day_key_from_timestamp
from pricing import claude_cost_usd, normalize_claude_model

log = logging.getLogger(__name__)


@dataclass
class ClaudeParseResult:
    days: DayModels
    parsed_bytes: int
    duplicates: int = 0
    skipped_lines: int = 0


def list_jsonl_files(root: Path) -> list[Path]:
    if not root.is_dir():
        return []
    try:
        return sorted(
            fp for fp in root.rglob("*.jsonl")
            if "tool-results" not in fp.parts
        )
    except OSError as exc:
        log.warning("Error listing Claude files in %s: %s", root, exc)
        return []


def _is_candidate(line: bytes) -> bool:
    return b'"assistant"' in line and b'"usage"' in line


def parse_session_file(path: Path, day_range: DayRange, start_offset: int = 0) -> ClaudeParseResult:
    """Collect per-message token usage from one Claude Code project log.

    The same response can be written more than once (retries, resumed
    streams); records sharing a message id and request id are counted once
    per pass. The priced cost goes into the fifth vector slot as nano-USD.
    """
    days: DayModels = {}
    seen: set[str] = set()
    duplicates = 0
    reader = JsonlReader(path, start_offset)

    try:
        for entry in reader.records(_is_candidate):
            if entry.get("type") != "assistant":
                continue
            day = day_key_from_timestamp(entry.get("timestamp"))
            if day is None:
                continue
            message = entry.get("message")
            if not isinstance(message, dict):
                continue
            model = get_str(message, "model")
            usage = message.get("usage")
            if not model or not isinstance(usage, dict):
                continue

            message_id = get_str(message, "id")
            request_id = get_str(entry, "requestId")
            if message_id and request_id:
                dedupe_key = f"{message_id}:{request_id}"
                if dedupe_key in seen:
                    duplicates += 1
                    continue
                seen.add(dedupe_key)

            input_tokens = max(0, get_int(usage, "input_tokens") or 0)
            cache_read = max(0, get_int(usage, "cache_read_input_tokens") or 0)
            cache_create = max(0, get_int(usage, "cache_creation_input_tokens") or 0)
            output_tokens = max(0, get_int(usage, "output_tokens") or 0)
            if not (input_tokens or cache_read or cache_create or output_tokens):
                continue

            cost = claude_cost_usd(model, input_tokens, cache_read, cache_create, output_tokens)
            cost_nanos = round(cost * COST_SCALE) if cost is not None else 0
            add_to_day(
                days, day, normalize_claude_model(model),
                (input_tokens, cache_read, cache_create, output_tokens, cost_nanos), day_range,
            )
    except OSError as exc:
        log.warning("Error parsing Claude file %s: %s", path, exc)

    return ClaudeParseResult(
        days=days,
        parsed_bytes=reader.offset,
        duplicates=duplicates,
        skipped_lines=reader.skipped,
    )
