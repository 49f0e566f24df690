"""Parse raw LM Studio server log lines into structured LogLine records."""
from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Iterable, Iterator, Optional

from lms_explorer import config

# [2026-02-13 10:00:00][INFO][qwen2.5-7b] message
_MODEL_LINE_PATTERN = re.compile(r"^\[(\d{4}-\d{2}-\d{2}[^\]]*)\]\[([^\]]+)\]\[([^\]]+)\](.*)$")
# [2026-02-13 10:00:00][INFO] message
_LINE_PATTERN = re.compile(r"^\[(\d{4}-\d{2}-\d{2}[^\]]*)\]\[([^\]]+)\](.*)$")


@dataclass(frozen=True)
class LogLine:
    ts: str
    level: str
    message: str
    raw_line: str
    model_name: Optional[str] = None
    is_continuation: bool = False


def parse_line(raw: str) -> LogLine | None:
    """Parse one physical line.

    Tagged lines keep their timestamp, level and optional model tag.
    Any other non-blank line is a continuation of a preceding multi-line
    JSON payload. Blank lines return ``None``.
    """
    line = raw.rstrip("\r\n")
    if not line.strip():
        return None

    match = _MODEL_LINE_PATTERN.match(line)
    if match:
        ts, level, model_name, message = match.groups()
        return LogLine(
            ts=ts.strip(),
            level=level.strip(),
            message=message.strip(),
            raw_line=line,
            model_name=model_name.strip() or None,
        )

    match = _LINE_PATTERN.match(line)
    if match:
        ts, level, message = match.groups()
        return LogLine(ts=ts.strip(), level=level.strip(), message=message.strip(), raw_line=line)

    return LogLine(ts="", level="", message=line, raw_line=line, is_continuation=True)


def parse_lines(raw_lines: Iterable[str]) -> Iterator[LogLine]:
    for raw in raw_lines:
        parsed = parse_line(raw)
        if parsed is not None:
            yield parsed


def _decode(raw_bytes: bytes) -> str:
    return raw_bytes.decode("utf-8", errors="replace").rstrip("\r\n")


def iter_log_lines(path: str | Path) -> Iterator[str]:
    """Stream raw text lines from a log file without loading it whole."""
    with open(path, "rb") as handle:
        for raw_bytes in handle:
            yield _decode(raw_bytes)


async def aiter_log_lines(
    path: str | Path,
    *,
    on_bytes: Callable[[int], None] | None = None,
    hasher: Any | None = None,
    yield_every: int | None = None,
) -> AsyncIterator[str]:
    """Async variant of ``iter_log_lines`` for use inside a rebuild.

    Hands control back to the event loop every ``yield_every`` lines so
    status polling stays responsive. ``hasher`` (a ``hashlib`` object) is
    fed the exact bytes read, and ``on_bytes`` receives the running byte
    count for sub-file progress.
    """
    batch = max(1, yield_every or config.YIELD_EVERY_LINES)
    consumed = 0
    with open(path, "rb") as handle:
        for line_no, raw_bytes in enumerate(handle, start=1):
            consumed += len(raw_bytes)
            if hasher is not None:
                hasher.update(raw_bytes)
            yield _decode(raw_bytes)
            if line_no % batch == 0:
                if on_bytes is not None:
                    on_bytes(consumed)
                await asyncio.sleep(0)
    if on_bytes is not None:
        on_bytes(consumed)
