"""Classify logical log lines into typed parser events."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, ClassVar, Optional, Union

from lms_explorer.models import ParseStats
from lms_explorer.parsers.json_block import JsonBlock, extract_json_block
from lms_explorer.parsers.lines import LogLine

logger = logging.getLogger("lms_explorer.parser")

REQUEST_MARKER = "Received request: POST to /v1/chat/completions with body {"
PROMPT_PROGRESS_MARKER = "Prompt processing progress:"
PACKET_MARKER = "Generated packet:"
STREAM_FINISHED_MARKER = "Finished streaming response"

_REQUEST_ROUTE_PATTERN = re.compile(r"Received request:\s*([A-Z]+)\s+to\s+(\S+)\s+with body")
_PROMPT_PERCENT_PATTERN = re.compile(r"Prompt processing progress:\s*(\d+(?:\.\d+)?)\s*%?")


@dataclass(frozen=True)
class RequestReceived:
    kind: ClassVar[str] = "request_received"
    ts: str
    method: str
    endpoint: str
    body: dict[str, Any] = field(repr=False)


@dataclass(frozen=True)
class PromptProcessing:
    kind: ClassVar[str] = "prompt_processing"
    ts: str
    percent: float


@dataclass(frozen=True)
class StreamPacket:
    kind: ClassVar[str] = "stream_packet"
    ts: str
    packet_id: str
    raw_json: str = field(repr=False)
    model: Optional[str] = None
    packet: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class StreamFinished:
    kind: ClassVar[str] = "stream_finished"
    ts: str


ParserEvent = Union[RequestReceived, PromptProcessing, StreamPacket, StreamFinished]


def _note_unusable_block(block: JsonBlock, what: str, line: LogLine, stats: ParseStats | None) -> None:
    if block.error:
        if stats is not None:
            stats.malformedJson += 1
        logger.debug("Malformed %s JSON at %s: %.200s", what, line.ts, block.raw)
    elif block.incomplete:
        if stats is not None:
            stats.incompleteJson += 1
        logger.debug("Incomplete %s JSON at %s: %.200s", what, line.ts, block.raw)


def classify_line(line: LogLine, stats: ParseStats | None = None) -> ParserEvent | None:
    """Match one logical line against the known server messages.

    Request and packet lines whose JSON is incomplete or malformed yield
    ``None``; the partial text is only logged at DEBUG and counted in
    ``stats``.
    """
    message = line.message

    if REQUEST_MARKER in message:
        body_start = message.index(REQUEST_MARKER) + len(REQUEST_MARKER) - 1
        block = extract_json_block(message[body_start:])
        if isinstance(block.json, dict):
            route = _REQUEST_ROUTE_PATTERN.search(message)
            method, endpoint = route.groups() if route else ("POST", "/v1/chat/completions")
            return RequestReceived(ts=line.ts, method=method, endpoint=endpoint, body=block.json)
        _note_unusable_block(block, "request", line, stats)
        return None

    if PROMPT_PROGRESS_MARKER in message:
        match = _PROMPT_PERCENT_PATTERN.search(message)
        if not match:
            return None
        return PromptProcessing(ts=line.ts, percent=float(match.group(1)))

    if PACKET_MARKER in message:
        block = extract_json_block(message[message.index(PACKET_MARKER):])
        packet = block.json
        if isinstance(packet, dict) and isinstance(packet.get("id"), str):
            model = packet.get("model")
            return StreamPacket(
                ts=line.ts,
                packet_id=packet["id"],
                raw_json=block.raw,
                model=model if isinstance(model, str) and model else None,
                packet=packet,
            )
        _note_unusable_block(block, "packet", line, stats)
        return None

    if STREAM_FINISHED_MARKER in message:
        return StreamFinished(ts=line.ts)

    return None


# ── Packet helpers ─────────────────────────────────────────────────

def _choice_deltas(packet: dict[str, Any]) -> list[dict[str, Any]]:
    choices = packet.get("choices")
    if not isinstance(choices, list):
        return []
    deltas: list[dict[str, Any]] = []
    for choice in choices:
        if not isinstance(choice, dict):
            continue
        delta = choice.get("delta")
        if isinstance(delta, dict):
            deltas.append(delta)
    return deltas


def extract_stream_content(packet: dict[str, Any]) -> str:
    """Concatenate ``delta.content`` across all choices of a packet."""
    parts: list[str] = []
    for delta in _choice_deltas(packet):
        content = delta.get("content")
        if isinstance(content, str) and content:
            parts.append(content)
    return "".join(parts)


def extract_tool_call_deltas(packet: dict[str, Any]) -> list[dict[str, Any]]:
    result: list[dict[str, Any]] = []
    for delta in _choice_deltas(packet):
        tool_calls = delta.get("tool_calls")
        if not isinstance(tool_calls, list):
            continue
        result.extend(item for item in tool_calls if isinstance(item, dict))
    return result


def extract_usage(packet: dict[str, Any]) -> dict[str, Any] | None:
    usage = packet.get("usage")
    return usage if isinstance(usage, dict) else None
