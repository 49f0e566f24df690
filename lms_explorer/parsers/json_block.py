"""Brace-balanced JSON extraction and multi-line JSON reassembly."""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, replace
from typing import Any, Iterable, Iterator

from lms_explorer.parsers.lines import LogLine

_STRUCTURAL_PATTERN = re.compile(r'[{}"\\]')


@dataclass(frozen=True)
class JsonBlock:
    """Result of scanning a message for its first JSON object.

    ``json`` is set only when the block balanced and parsed. A balanced block
    that fails to parse is malformed (``error=True``). A block that never
    balanced is incomplete: ``raw`` holds the partial text and ``error`` stays
    False so callers can wait for more lines.
    """

    json: Any
    raw: str
    error: bool = False
    balanced: bool = False

    @property
    def incomplete(self) -> bool:
        return bool(self.raw) and not self.balanced


class JsonBalance:
    """Incremental brace counter that understands JSON strings and escapes."""

    __slots__ = ("depth", "started", "closed", "in_string", "_escape_pending")

    def __init__(self) -> None:
        self.depth = 0
        self.started = False
        self.closed = False
        self.in_string = False
        self._escape_pending = False

    def feed(self, text: str) -> int:
        """Consume ``text``; return the index of the closing brace or -1."""
        if self.closed:
            return -1
        skip = 0 if self._escape_pending else -1
        self._escape_pending = False

        for match in _STRUCTURAL_PATTERN.finditer(text):
            pos = match.start()
            if pos == skip:
                continue
            char = match.group()
            if not self.started:
                if char == "{":
                    self.started = True
                    self.depth = 1
                continue
            if self.in_string:
                if char == "\\":
                    skip = pos + 1
                elif char == '"':
                    self.in_string = False
                continue
            if char == '"':
                self.in_string = True
            elif char == "{":
                self.depth += 1
            elif char == "}":
                self.depth -= 1
                if self.depth == 0:
                    self.closed = True
                    return pos

        if skip == len(text):
            self._escape_pending = True
        return -1


def extract_json_block(message: str) -> JsonBlock:
    start = message.find("{")
    if start == -1:
        return JsonBlock(json=None, raw="")

    tail = message[start:]
    end = JsonBalance().feed(tail)
    if end < 0:
        return JsonBlock(json=None, raw=tail)

    raw = tail[: end + 1]
    try:
        return JsonBlock(json=json.loads(raw), raw=raw, balanced=True)
    except (ValueError, RecursionError):
        return JsonBlock(json=None, raw=raw, error=True, balanced=True)


class MultilineJsonCombiner:
    """Glue continuation lines onto the tagged line whose JSON they extend.

    Feed physical lines with ``push`` and call ``flush`` at end of input.
    Each call returns the logical lines that became complete. Continuation
    lines that do not follow an open JSON object are dropped.
    """

    def __init__(self) -> None:
        self._head: LogLine | None = None
        self._parts: list[str] = []
        self._balance = JsonBalance()
        self.dropped_continuations = 0

    def push(self, line: LogLine) -> list[LogLine]:
        if self._head is not None:
            if line.is_continuation:
                self._parts.append(line.raw_line)
                self._balance.feed("\n" + line.raw_line)
                if self._balance.closed:
                    return [self._take()]
                return []
            emitted = [self._take()]
            emitted.extend(self._start(line))
            return emitted
        return self._start(line)

    def flush(self) -> list[LogLine]:
        if self._head is None:
            return []
        return [self._take()]

    def _start(self, line: LogLine) -> list[LogLine]:
        if line.is_continuation:
            self.dropped_continuations += 1
            return []
        if "{" not in line.message:
            return [line]
        balance = JsonBalance()
        balance.feed(line.message)
        if not balance.started or balance.closed:
            return [line]
        self._head = line
        self._parts = []
        self._balance = balance
        return []

    def _take(self) -> LogLine:  # only called while a head is pending
        head = self._head
        parts = self._parts
        self._head = None
        self._parts = []
        self._balance = JsonBalance()
        if not parts:
            return head
        joined = "\n".join(parts)
        return replace(
            head,
            message=f"{head.message}\n{joined}",
            raw_line=f"{head.raw_line}\n{joined}",
        )


def combine_multiline_json(lines: Iterable[LogLine]) -> Iterator[LogLine]:
    """Yield one logical line per JSON-bearing message; see ``MultilineJsonCombiner``."""
    combiner = MultilineJsonCombiner()
    for line in lines:
        yield from combiner.push(line)
    yield from combiner.flush()
