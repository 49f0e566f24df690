"""Rebuild chat sessions from classified LM Studio server log events.

One ``SessionBuilder`` consumes the ordered events of a single log file.
Every ``request_received`` event opens a new session and closes the previous
one; progress, packet and finish events attach to the open session. Events
seen before the first request are buffered and only replayed into the next
session when they are not older than its request.
"""
from __future__ import annotations

import hashlib
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from lms_explorer.date_utils import compare_log_timestamps, parse_log_timestamp_ms
from lms_explorer.models import (
    ParseStats,
    RequestEvent,
    Session,
    TimelineEvent,
)
from lms_explorer.parsers.events import (
    ParserEvent,
    PromptProcessing,
    RequestReceived,
    StreamFinished,
    StreamPacket,
    classify_line,
    extract_stream_content,
    extract_tool_call_deltas,
    extract_usage,
)
from lms_explorer.parsers.json_block import MultilineJsonCombiner
from lms_explorer.parsers.lines import LogLine, aiter_log_lines, parse_line
from lms_explorer.parsers.metrics import compute_session_metrics
from lms_explorer.parsers.tool_calls import ToolCallMerger

logger = logging.getLogger("lms_explorer.parser")

# Ordered: the first matching signature wins.
CLIENT_SIGNATURES: tuple[tuple[str, str], ...] = (
    ("You are opencode, an interactive CLI tool", "Opencode"),
    ("You are Codex", "Codex"),
    ("The assistant is Claude, created by Anthropic.", "Claude"),
)
UNKNOWN_CLIENT = "Unknown"


# ── Identity helpers ───────────────────────────────────────────────

def build_session_id(source_path: str, ordinal: int) -> str:
    """Deterministic id from the source file and the session's position in it."""
    digest = hashlib.sha1(source_path.encode("utf-8")).hexdigest()[:12]
    return f"session-{digest}-{ordinal + 1:04d}"


def build_session_group_key(
    session_id: str,
    system_checksum: Optional[str],
    user_checksum: Optional[str],
) -> str:
    if system_checksum and user_checksum:
        return f"{system_checksum}:{user_checksum}"
    return f"request:{session_id}"


def build_session_group_id(group_key: str) -> str:
    return f"session-group-{hashlib.sha1(group_key.encode('utf-8')).hexdigest()[:12]}"


def stable_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def message_checksum(message: Any) -> str | None:
    if not isinstance(message, dict):
        return None
    return hashlib.sha1(stable_json(message).encode("utf-8")).hexdigest()


def _text_fragments(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        fragments: list[str] = []
        for item in value:
            fragments.extend(_text_fragments(item))
        return fragments
    if not isinstance(value, dict):
        return []
    fragments = []
    for key, nested in value.items():
        if key in ("text", "content") and isinstance(nested, str) and nested:
            fragments.append(nested)
            continue
        fragments.extend(_text_fragments(nested))
    return fragments


def detect_client(system_message: Any) -> str:
    if not isinstance(system_message, dict):
        return UNKNOWN_CLIENT
    joined = "\n".join(_text_fragments(system_message.get("content")))
    for signature, client in CLIENT_SIGNATURES:
        if signature in joined:
            return client
    return UNKNOWN_CLIENT


@dataclass(frozen=True)
class RequestIdentity:
    model: Optional[str] = None
    system_checksum: Optional[str] = None
    user_checksum: Optional[str] = None
    client: str = UNKNOWN_CLIENT


def session_identity_from_request(body: dict[str, Any] | None) -> RequestIdentity:
    """Model, first system/user message checksums and client of a request body."""
    if not isinstance(body, dict):
        return RequestIdentity()
    model = body.get("model")
    model = model if isinstance(model, str) and model else None

    messages = body.get("messages")
    if not isinstance(messages, list):
        return RequestIdentity(model=model)

    system_checksum = None
    user_checksum = None
    client = UNKNOWN_CLIENT
    first = messages[0] if len(messages) > 0 else None
    second = messages[1] if len(messages) > 1 else None
    if isinstance(first, dict) and first.get("role") == "system":
        system_checksum = message_checksum(first)
        client = detect_client(first)
    if isinstance(second, dict) and second.get("role") == "user":
        user_checksum = message_checksum(second)
    return RequestIdentity(
        model=model,
        system_checksum=system_checksum,
        user_checksum=user_checksum,
        client=client,
    )


def normalize_session(session: Session) -> Session:
    """Re-derive client, checksums and group fields from the stored request."""
    identity = session_identity_from_request(session.request.body if session.request else None)
    system_checksum = identity.system_checksum or session.systemMessageChecksum
    user_checksum = identity.user_checksum or session.userMessageChecksum
    client = identity.client if identity.client != UNKNOWN_CLIENT else (session.client or UNKNOWN_CLIENT)
    group_key = build_session_group_key(session.sessionId, system_checksum, user_checksum)
    return session.model_copy(
        update={
            "model": session.model or identity.model,
            "client": client,
            "systemMessageChecksum": system_checksum,
            "userMessageChecksum": user_checksum,
            "sessionGroupKey": group_key,
            "sessionGroupId": build_session_group_id(group_key),
        }
    )


def event_sort_key(event: TimelineEvent) -> tuple[int, int, str]:
    ts_ms = parse_log_timestamp_ms(event.ts)
    if ts_ms is None:
        return (1, 0, event.id)
    return (0, ts_ms, event.id)


# ── Builder state ──────────────────────────────────────────────────

@dataclass
class _PromptAccumulator:
    count: int = 0
    first_ts: str = ""
    last_ts: str = ""
    last_percent: float = 0.0


@dataclass
class _StreamAccumulator:
    count: int = 0
    first_ts: str = ""
    last_ts: str = ""
    parts: list[str] = field(default_factory=list)


@dataclass
class _SessionState:
    request: RequestEvent
    identity: RequestIdentity
    chat_id: Optional[str] = None
    model: Optional[str] = None
    events: list[TimelineEvent] = field(default_factory=list)
    merger: ToolCallMerger = field(default_factory=ToolCallMerger)
    prompt: _PromptAccumulator = field(default_factory=_PromptAccumulator)
    stream: _StreamAccumulator = field(default_factory=_StreamAccumulator)
    finished_at: Optional[str] = None
    seq: int = 0

    def emit(self, kind: str, ts: str, data: dict[str, Any] | None = None) -> TimelineEvent:
        event = TimelineEvent(id=f"e{self.seq:05d}-{kind}", type=kind, ts=ts, data=data)
        self.seq += 1
        self.events.append(event)
        return event


def _elapsed_ms(first_ts: str, last_ts: str) -> int:
    first = parse_log_timestamp_ms(first_ts)
    last = parse_log_timestamp_ms(last_ts)
    if first is None or last is None:
        return 0
    return max(0, last - first)


class SessionBuilder:
    """Stateful reducer turning one file's parser events into sessions.

    ``process`` and ``finish`` return the sessions that were finalized by
    the call, in file order.
    """

    def __init__(self, source_path: str, stats: ParseStats | None = None):
        self.source_path = source_path
        self.stats = stats if stats is not None else ParseStats()
        self._state: _SessionState | None = None
        self._pending: list[ParserEvent] = []
        self._ordinal = 0

    def process(self, event: ParserEvent) -> list[Session]:
        self.stats.eventsClassified += 1
        if isinstance(event, RequestReceived):
            return self._start_session(event)

        state = self._state
        if state is None:
            self._pending.append(event)
            return []
        self._apply(state, event)
        return []

    def finish(self) -> list[Session]:
        finished: list[Session] = []
        if self._state is not None:
            finished.append(self._finalize(self._state))
            self._state = None
        if self._pending:
            self.stats.bufferedEventsDropped += len(self._pending)
            logger.debug(
                "Discarding %d events with no preceding request in %s",
                len(self._pending),
                self.source_path,
            )
            self._pending = []
        return finished

    # ── transitions ──

    def _start_session(self, event: RequestReceived) -> list[Session]:
        finished: list[Session] = []
        if self._state is not None:
            finished.append(self._finalize(self._state))

        identity = session_identity_from_request(event.body)
        request = RequestEvent(
            id="e00000-request",
            ts=event.ts,
            endpoint=event.endpoint,
            method=event.method,
            body=event.body,
        )
        state = _SessionState(request=request, identity=identity, model=identity.model)
        state.emit(
            "request",
            event.ts,
            {"method": event.method, "endpoint": event.endpoint, "model": identity.model},
        )
        self._state = state

        pending = self._pending
        self._pending = []
        for buffered in pending:
            self._apply(state, buffered)
        return finished

    def _apply(self, state: _SessionState, event: ParserEvent) -> None:
        if compare_log_timestamps(event.ts, state.request.ts) < 0:
            self.stats.bufferedEventsDropped += 1
            return

        if isinstance(event, StreamPacket):
            self._apply_packet(state, event)
        elif isinstance(event, PromptProcessing):
            prompt = state.prompt
            if prompt.count == 0:
                prompt.first_ts = event.ts
            prompt.count += 1
            prompt.last_ts = event.ts
            prompt.last_percent = event.percent
        elif isinstance(event, StreamFinished):
            self._flush_prompt(state)
            self._flush_stream(state)
            state.emit("stream_finished", event.ts)
            state.finished_at = event.ts

    def _apply_packet(self, state: _SessionState, event: StreamPacket) -> None:
        if state.chat_id is None:
            state.chat_id = event.packet_id
        if state.model is None and event.model:
            state.model = event.model
        self._flush_prompt(state)

        stream = state.stream
        if stream.count == 0:
            stream.first_ts = event.ts
        stream.count += 1
        stream.last_ts = event.ts
        content = extract_stream_content(event.packet)
        if content:
            stream.parts.append(content)

        for delta in extract_tool_call_deltas(event.packet):
            call_id = state.merger.add_delta(delta, event.ts)
            if call_id is None:
                self.stats.toolDeltasDropped += 1
            function = delta.get("function") if isinstance(delta.get("function"), dict) else {}
            state.emit(
                "tool_call",
                event.ts,
                {
                    "toolCallId": call_id,
                    "index": delta.get("index"),
                    "name": function.get("name"),
                    "argumentsDelta": function.get("arguments") or "",
                },
            )

        usage = extract_usage(event.packet)
        if usage is not None:
            state.emit("usage", event.ts, dict(usage))

    def _flush_prompt(self, state: _SessionState) -> None:
        prompt = state.prompt
        if prompt.count == 0:
            return
        state.emit(
            "prompt_processing",
            prompt.last_ts,
            {
                "eventCount": prompt.count,
                "elapsedMs": _elapsed_ms(prompt.first_ts, prompt.last_ts),
                "firstPromptTs": prompt.first_ts,
                "lastPromptTs": prompt.last_ts,
                "lastPercent": prompt.last_percent,
            },
        )
        state.prompt = _PromptAccumulator()

    def _flush_stream(self, state: _SessionState) -> None:
        stream = state.stream
        if stream.count == 0:
            return
        state.emit(
            "stream_chunk",
            stream.last_ts,
            {
                "chunkCount": stream.count,
                "elapsedMs": _elapsed_ms(stream.first_ts, stream.last_ts),
                "firstChunkTs": stream.first_ts,
                "lastChunkTs": stream.last_ts,
                "responseText": "".join(stream.parts),
            },
        )
        state.stream = _StreamAccumulator()

    def _finalize(self, state: _SessionState) -> Session:
        self._flush_prompt(state)
        self._flush_stream(state)

        events = sorted(state.events, key=event_sort_key)
        session_id = build_session_id(self.source_path, self._ordinal)
        self._ordinal += 1
        identity = state.identity
        group_key = build_session_group_key(session_id, identity.system_checksum, identity.user_checksum)
        session = Session(
            sessionId=session_id,
            chatId=state.chat_id,
            model=state.model,
            client=identity.client,
            firstSeenAt=state.request.ts,
            systemMessageChecksum=identity.system_checksum,
            userMessageChecksum=identity.user_checksum,
            request=state.request,
            events=events,
            toolCalls=state.merger.get_tool_calls(),
            metrics=compute_session_metrics(events),
            sessionGroupId=build_session_group_id(group_key),
            sessionGroupKey=group_key,
        )
        self.stats.sessionsBuilt += 1
        return session


# ── Pipelines ──────────────────────────────────────────────────────

def build_sessions(
    lines: Iterable[LogLine],
    source_path: str,
    stats: ParseStats | None = None,
) -> list[Session]:
    """Run already-parsed physical lines through combine, classify and build."""
    builder = SessionBuilder(source_path, stats)
    combiner = MultilineJsonCombiner()
    sessions: list[Session] = []

    def _consume(logical: list[LogLine]) -> None:
        for line in logical:
            builder.stats.logicalLines += 1
            event = classify_line(line, builder.stats)
            if event is not None:
                sessions.extend(builder.process(event))

    for line in lines:
        builder.stats.linesRead += 1
        _consume(combiner.push(line))
    _consume(combiner.flush())
    sessions.extend(builder.finish())
    return sessions


def parse_log_lines(raw_lines: Iterable[str], source_path: str, stats: ParseStats | None = None) -> list[Session]:
    parsed = (line for line in (parse_line(raw) for raw in raw_lines) if line is not None)
    return build_sessions(parsed, source_path, stats)


@dataclass
class ParsedLogFile:
    path: str
    sessions: list[Session]
    checksum: str
    stats: ParseStats


async def parse_log_file(
    path: str | Path,
    on_progress: Callable[[float], None] | None = None,
    *,
    yield_every: int | None = None,
) -> ParsedLogFile:
    """Stream a log file through the full pipeline.

    The sha256 content checksum is computed in the same pass.
    ``on_progress`` receives the fraction of bytes consumed, in [0, 1].
    """
    source_path = str(path)
    total_bytes = os.path.getsize(source_path)
    hasher = hashlib.sha256()
    stats = ParseStats()
    builder = SessionBuilder(source_path, stats)
    combiner = MultilineJsonCombiner()
    sessions: list[Session] = []

    def _report(consumed: int) -> None:
        if on_progress is None:
            return
        fraction = 1.0 if total_bytes <= 0 else min(1.0, consumed / total_bytes)
        on_progress(fraction)

    def _consume(logical: list[LogLine]) -> None:
        for line in logical:
            stats.logicalLines += 1
            event = classify_line(line, stats)
            if event is not None:
                sessions.extend(builder.process(event))

    async for raw in aiter_log_lines(source_path, on_bytes=_report, hasher=hasher, yield_every=yield_every):
        stats.linesRead += 1
        line = parse_line(raw)
        if line is not None:
            _consume(combiner.push(line))
    _consume(combiner.flush())
    sessions.extend(builder.finish())

    return ParsedLogFile(path=source_path, sessions=sessions, checksum=hasher.hexdigest(), stats=stats)
