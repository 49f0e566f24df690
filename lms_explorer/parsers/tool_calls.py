"""Merge streamed tool-call deltas into complete tool calls."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from lms_explorer.models import ToolCall

logger = logging.getLogger("lms_explorer.parser")


def parse_tool_call_arguments(text: str | None) -> dict[str, Any] | None:
    """Best-effort JSON decode of accumulated argument text; never raises."""
    if not text or not text.strip():
        return None
    try:
        parsed = json.loads(text)
    except (ValueError, RecursionError):
        return None
    return parsed if isinstance(parsed, dict) else None


@dataclass
class _MergedCall:
    id: str
    name: str
    arguments_text: str
    first_seen_at: str
    last_seen_at: str


class ToolCallMerger:
    """Accumulate ``choices[].delta.tool_calls`` fragments per call.

    Servers send the call id only on the first fragment; later fragments
    carry just the positional ``index``. A fragment with neither is
    attributed to the sole open call when exactly one exists, which is a
    heuristic and may misattribute under concurrent id-less streams.
    """

    def __init__(self) -> None:
        self._calls: dict[str, _MergedCall] = {}
        self._index_to_id: dict[int, str] = {}
        self.dropped_deltas = 0

    def _resolve_id(self, delta: dict[str, Any]) -> str | None:
        index = delta.get("index")
        if not isinstance(index, int) or isinstance(index, bool):
            index = None

        explicit = delta.get("id")
        if isinstance(explicit, str) and explicit:
            if index is not None:
                self._index_to_id[index] = explicit
            return explicit
        if index is not None and index in self._index_to_id:
            return self._index_to_id[index]
        if len(self._calls) == 1:
            return next(iter(self._calls))
        return None

    def add_delta(self, delta: dict[str, Any], ts: str) -> str | None:
        """Fold one delta in; returns the call id it was attributed to."""
        call_id = self._resolve_id(delta)
        if call_id is None:
            self.dropped_deltas += 1
            logger.debug("Dropping unattributable tool call delta at %s", ts)
            return None

        function = delta.get("function")
        if not isinstance(function, dict):
            function = {}
        name = function.get("name")
        arguments = function.get("arguments")
        fragment = arguments if isinstance(arguments, str) else ""

        call = self._calls.get(call_id)
        if call is None:
            self._calls[call_id] = _MergedCall(
                id=call_id,
                name=name if isinstance(name, str) else "",
                arguments_text=fragment,
                first_seen_at=ts,
                last_seen_at=ts,
            )
            return call_id

        call.arguments_text += fragment
        if isinstance(name, str) and name:
            call.name = name
        call.last_seen_at = ts
        return call_id

    def get_tool_calls(self) -> list[ToolCall]:
        return [
            ToolCall(
                id=call.id,
                name=call.name,
                argumentsText=call.arguments_text,
                argumentsJson=parse_tool_call_arguments(call.arguments_text),
                requestedAt=call.first_seen_at,
            )
            for call in self._calls.values()
        ]

    def __len__(self) -> int:
        return len(self._calls)
