import json
import logging
from collections.abc import Callable, Iterator
from pathlib import Path

log = logging.getLogger(__name__)


class JsonlReader:
    """Reads JSON records from ``path`` starting at a byte offset.

    ``offset`` always points just past the last line that was fully consumed,
    so it can be stored and used to resume on the next scan. A final line
    without a newline is consumed only when it parses; a half-written line
    is left for the next scan.
    """

    def __init__(self, path: Path, start_offset: int = 0):
        self.path = Path(path)
        self.offset = max(0, start_offset)
        self.skipped = 0

    def records(self, wanted: Callable[[bytes], bool]) -> Iterator[dict]:
        with self.path.open("rb") as fh:
            fh.seek(self.offset)
            for raw in fh:
                complete = raw.endswith(b"\n")
                # Cheap substring check before paying for a full parse
                if not raw.strip() or not wanted(raw):
                    if complete:
                        self.offset += len(raw)
                    continue
                try:
                    record = json.loads(raw)
                except ValueError:
                    if complete:
                        self.offset += len(raw)
                        self.skipped += 1
                        log.debug("Skipping malformed line in %s", self.path)
                    continue
                self.offset += len(raw)
                if isinstance(record, dict):
                    yield record


def get_str(obj, *keys: str) -> str | None:
    if not isinstance(obj, dict):
        return None
    for key in keys:
        value = obj.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def get_int(obj, *keys: str) -> int | None:
    if not isinstance(obj, dict):
        return None
    for key in keys:
        value = obj.get(key)
        # bool is an int subclass, never a token count
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
    return None
