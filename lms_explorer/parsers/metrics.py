"""Derive token usage and timing metrics from a session timeline."""
from __future__ import annotations

from typing import Any, Iterable

from lms_explorer.date_utils import parse_log_timestamp_ms
from lms_explorer.models import Session, SessionMetrics, TimelineEvent


def _ms(*values: Any) -> int | None:
    for value in values:
        if isinstance(value, str):
            parsed = parse_log_timestamp_ms(value)
            if parsed is not None:
                return parsed
    return None


def _int_or_none(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def compute_session_metrics(events: Iterable[TimelineEvent]) -> SessionMetrics:
    """Compute metrics from summary, usage and finish events.

    Prompt processing spans the earliest to the latest prompt progress line.
    Stream latency runs from the first packet to the last ``stream_finished``
    (or the last packet when the stream never finished) and is never
    negative. Usage is taken from the latest ``usage`` event; later reports
    replace earlier ones.
    """
    prompt_first: int | None = None
    prompt_last: int | None = None
    packet_first: int | None = None
    packet_last: int | None = None
    finished_at: int | None = None
    usage: dict[str, Any] | None = None
    usage_at: int | None = None

    for event in events:
        data = event.data or {}
        if event.type == "prompt_processing":
            first = _ms(data.get("firstPromptTs"), event.ts)
            last = _ms(data.get("lastPromptTs"), event.ts)
            if first is not None and (prompt_first is None or first < prompt_first):
                prompt_first = first
            if last is not None and (prompt_last is None or last > prompt_last):
                prompt_last = last
        elif event.type == "stream_chunk":
            first = _ms(data.get("firstChunkTs"), event.ts)
            last = _ms(data.get("lastChunkTs"), event.ts)
            if first is not None and (packet_first is None or first < packet_first):
                packet_first = first
            if last is not None and (packet_last is None or last > packet_last):
                packet_last = last
        elif event.type == "stream_finished":
            ts = _ms(event.ts)
            if ts is not None and (finished_at is None or ts >= finished_at):
                finished_at = ts
        elif event.type == "usage":
            ts = _ms(event.ts)
            if usage_at is None or (ts is not None and ts >= usage_at):
                usage = data
                usage_at = ts if ts is not None else usage_at

    metrics = SessionMetrics()
    if prompt_first is not None and prompt_last is not None:
        metrics.promptProcessingMs = max(0, prompt_last - prompt_first)

    if packet_first is not None:
        stream_end = finished_at if finished_at is not None else packet_last
        if stream_end is not None:
            metrics.streamLatencyMs = max(0, stream_end - packet_first)

    if usage:
        metrics.promptTokens = _int_or_none(usage.get("prompt_tokens"))
        metrics.completionTokens = _int_or_none(usage.get("completion_tokens"))
        metrics.totalTokens = _int_or_none(usage.get("total_tokens"))

    if metrics.completionTokens and metrics.streamLatencyMs and metrics.completionTokens > 0:
        metrics.tokensPerSecond = metrics.completionTokens / (metrics.streamLatencyMs / 1000)

    return metrics


def recompute_session_metrics(session: Session) -> Session:
    """Return a copy of ``session`` with metrics re-derived from its events."""
    return session.model_copy(update={"metrics": compute_session_metrics(session.events)})
