"""In-memory session index, list projection and session group aggregates."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from lms_explorer.date_utils import ms_to_iso, parse_log_timestamp_ms, utc_now_iso
from lms_explorer.models import (
    Session,
    SessionGroupSummary,
    SessionListItem,
    StoredSessionRecord,
)
from lms_explorer.parsers.metrics import recompute_session_metrics
from lms_explorer.parsers.sessions import UNKNOWN_CLIENT, event_sort_key

logger = logging.getLogger("lms_explorer.indexing")


@dataclass(frozen=True)
class RequestTiming:
    started_ms: Optional[int]
    ended_ms: Optional[int]
    prompt_processing_ms: Optional[int]
    tool_call_count: int

    @property
    def elapsed_ms(self) -> Optional[int]:
        if self.started_ms is None or self.ended_ms is None:
            return None
        return max(0, self.ended_ms - self.started_ms)


def request_timing(session: Session) -> RequestTiming:
    """Start/end of one request from its request line and timeline extent."""
    earliest: Optional[int] = None
    latest: Optional[int] = None
    prompt_total = 0
    has_prompt_metric = False

    for event in session.events:
        ts_ms = parse_log_timestamp_ms(event.ts)
        if ts_ms is not None:
            earliest = ts_ms if earliest is None else min(earliest, ts_ms)
            latest = ts_ms if latest is None else max(latest, ts_ms)
        if event.type == "prompt_processing" and event.data:
            value = event.data.get("elapsedMs")
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                prompt_total += max(0, int(value))
                has_prompt_metric = True

    started = None
    if session.request is not None:
        started = parse_log_timestamp_ms(session.request.ts)
    if started is None:
        started = earliest
    if started is None:
        started = parse_log_timestamp_ms(session.firstSeenAt)
    ended = latest if latest is not None else started

    return RequestTiming(
        started_ms=started,
        ended_ms=ended,
        prompt_processing_ms=prompt_total if has_prompt_metric else session.metrics.promptProcessingMs,
        tool_call_count=len(session.toolCalls),
    )


def _first_seen_ms(session: Session) -> Optional[int]:
    return parse_log_timestamp_ms(session.firstSeenAt)


def _chronological_key(session: Session) -> tuple[int, int, str]:
    ts_ms = _first_seen_ms(session)
    if ts_ms is None:
        return (1, 0, session.sessionId)
    return (0, ts_ms, session.sessionId)


# ── Orphan reattachment ────────────────────────────────────────────

def _merge_orphan(target: Session, orphan: Session) -> Session:
    seen_ids = {event.id for event in target.events}
    merged_events = list(target.events)
    for event in orphan.events:
        namespaced = event.model_copy(update={"id": f"{orphan.sessionId}:{event.id}"})
        if namespaced.id in seen_ids:
            continue
        seen_ids.add(namespaced.id)
        merged_events.append(namespaced)
    merged_events.sort(key=event_sort_key)

    call_ids = {call.id for call in target.toolCalls}
    merged_calls = list(target.toolCalls)
    merged_calls.extend(call for call in orphan.toolCalls if call.id not in call_ids)

    first_seen = target.firstSeenAt
    target_ms = _first_seen_ms(target)
    orphan_ms = _first_seen_ms(orphan)
    if orphan_ms is not None and (target_ms is None or orphan_ms < target_ms):
        first_seen = orphan.firstSeenAt

    merged = target.model_copy(
        update={
            "events": merged_events,
            "toolCalls": merged_calls,
            "chatId": target.chatId or orphan.chatId,
            "model": target.model or orphan.model,
            "firstSeenAt": first_seen,
        }
    )
    return recompute_session_metrics(merged)


def attach_orphan_sessions(
    records: Iterable[StoredSessionRecord],
) -> tuple[list[StoredSessionRecord], list[StoredSessionRecord]]:
    """Fold request-less sessions into the nearest preceding request.

    The target is the session whose request timestamp is the latest one not
    after the orphan's ``firstSeenAt``, searched across every file. Returns
    ``(kept, excluded)``; orphans with no eligible target are excluded.
    """
    kept: list[StoredSessionRecord] = []
    orphans: list[StoredSessionRecord] = []
    for record in records:
        session = record.session
        if session.request is None:
            if session.events:
                orphans.append(record)
            continue
        kept.append(record)

    if not orphans:
        return kept, []

    anchors: list[tuple[int, int]] = []
    for position, record in enumerate(kept):
        request_ms = parse_log_timestamp_ms(record.session.request.ts)
        if request_ms is not None:
            anchors.append((request_ms, position))
    anchors.sort()

    excluded: list[StoredSessionRecord] = []
    for orphan in sorted(orphans, key=lambda item: _chronological_key(item.session)):
        orphan_ms = _first_seen_ms(orphan.session)
        target_position = None
        if orphan_ms is not None:
            for request_ms, position in anchors:
                if request_ms > orphan_ms:
                    break
                target_position = position
        if target_position is None:
            excluded.append(orphan)
            logger.warning(
                "Excluding orphan session %s from %s: no preceding request",
                orphan.session.sessionId,
                orphan.sourcePath,
            )
            continue
        target = kept[target_position]
        kept[target_position] = target.model_copy(
            update={"session": _merge_orphan(target.session, orphan.session)}
        )
    return kept, excluded


# ── Index ──────────────────────────────────────────────────────────

@dataclass
class SessionIndex:
    sessions: dict[str, Session] = field(default_factory=dict)
    source_ids: dict[str, list[str]] = field(default_factory=dict)
    group_names: dict[str, str] = field(default_factory=dict)
    indexed_at: str = field(default_factory=utc_now_iso)

    def __len__(self) -> int:
        return len(self.sessions)

    def add_session(self, session: Session, source_path: Optional[str] = None) -> None:
        self.sessions[session.sessionId] = session
        if source_path is not None:
            ids = self.source_ids.setdefault(source_path, [])
            if session.sessionId not in ids:
                ids.append(session.sessionId)

    def remove_sessions(self, session_ids: Iterable[str]) -> int:
        removed = 0
        for session_id in list(session_ids):
            if self.sessions.pop(session_id, None) is not None:
                removed += 1
            for ids in self.source_ids.values():
                if session_id in ids:
                    ids.remove(session_id)
        return removed

    def replace_file(self, source_path: str, sessions: Iterable[Session]) -> tuple[int, int]:
        """Swap one file's sessions; returns ``(added, removed)`` counts."""
        fresh = list(sessions)
        previous = set(self.source_ids.get(source_path, []))
        fresh_ids = {session.sessionId for session in fresh}
        stale = previous - fresh_ids
        self.remove_sessions(stale)
        for session in fresh:
            self.sessions[session.sessionId] = session
        self.source_ids[source_path] = [session.sessionId for session in fresh]
        return len(fresh_ids - previous), len(stale)

    def remove_file(self, source_path: str) -> int:
        ids = self.source_ids.pop(source_path, [])
        return self.remove_sessions(ids)

    def attach_orphan(self, orphan: Session) -> Session | None:
        """Fold ``orphan`` into the latest session whose request is not after it.

        Returns the merged session, or ``None`` when nothing qualifies.
        """
        orphan_ms = _first_seen_ms(orphan)
        if orphan_ms is None:
            return None
        target: Session | None = None
        target_key: tuple[int, str] | None = None
        for session in self.sessions.values():
            if session.request is None:
                continue
            request_ms = parse_log_timestamp_ms(session.request.ts)
            if request_ms is None or request_ms > orphan_ms:
                continue
            key = (request_ms, session.sessionId)
            if target_key is None or key > target_key:
                target, target_key = session, key
        if target is None:
            return None
        merged = _merge_orphan(target, orphan)
        self.sessions[target.sessionId] = merged
        return merged

    def get_session(self, session_id_or_chat_id: str) -> Session | None:
        session = self.sessions.get(session_id_or_chat_id)
        if session is not None:
            return session
        for candidate in self.sessions.values():
            if candidate.chatId == session_id_or_chat_id:
                return candidate
        return None

    # ── Aggregates ──────────────────────────────────────────────────

    def get_group_summaries(self) -> dict[str, SessionGroupSummary]:
        """Aggregate sessions sharing a system/user message identity.

        Sessions are visited chronologically, so the resolved model and
        client are the first non-empty values of the conversation. Idle
        time is the sum of gaps between the running end of earlier requests
        and the start of the next one.
        """
        summaries: dict[str, SessionGroupSummary] = {}
        tps: dict[str, list[float]] = {}
        intervals: dict[str, list[tuple[int, int]]] = {}

        for session in sorted(self.sessions.values(), key=_chronological_key):
            group_id = session.sessionGroupId
            metrics = session.metrics
            summary = summaries.get(group_id)
            if summary is None:
                summary = SessionGroupSummary(
                    sessionGroupId=group_id,
                    sessionGroupKey=session.sessionGroupKey,
                    sessionName=self.group_names.get(group_id),
                    sessionStartedAt=session.firstSeenAt,
                    sessionClient=UNKNOWN_CLIENT,
                )
                summaries[group_id] = summary

            summary.sessionRequestCount += 1
            if not summary.sessionModel and session.model:
                summary.sessionModel = session.model
            if summary.sessionClient == UNKNOWN_CLIENT and session.client and session.client != UNKNOWN_CLIENT:
                summary.sessionClient = session.client
            if metrics.promptTokens is not None:
                summary.sessionTotalInputTokens = (summary.sessionTotalInputTokens or 0) + metrics.promptTokens
            if metrics.completionTokens is not None:
                summary.sessionTotalOutputTokens = (summary.sessionTotalOutputTokens or 0) + metrics.completionTokens
            if metrics.promptProcessingMs is not None:
                summary.sessionTotalPromptProcessingMs = (
                    (summary.sessionTotalPromptProcessingMs or 0) + metrics.promptProcessingMs
                )
            if metrics.tokensPerSecond is not None:
                tps.setdefault(group_id, []).append(metrics.tokensPerSecond)

            timing = request_timing(session)
            if timing.started_ms is not None and timing.ended_ms is not None:
                intervals.setdefault(group_id, []).append((timing.started_ms, timing.ended_ms))

        for group_id, summary in summaries.items():
            values = tps.get(group_id)
            if values:
                summary.sessionAverageTokensPerSecond = sum(values) / len(values)
            spans = sorted(intervals.get(group_id, []))
            if not spans:
                continue
            elapsed_start = spans[0][0]
            running_end = spans[0][1]
            idle = 0
            for start, end in spans[1:]:
                if start > running_end:
                    idle += start - running_end
                running_end = max(running_end, end)
            elapsed = max(0, running_end - elapsed_start)
            summary.sessionElapsedMs = elapsed
            summary.sessionIdleMs = idle
            summary.sessionActiveMs = max(0, elapsed - idle)
        return summaries

    def get_group_summary(self, session_group_id: str) -> SessionGroupSummary | None:
        return self.get_group_summaries().get(session_group_id)

    def get_session_list(self) -> list[SessionListItem]:
        """Denormalized list items, newest ``firstSeenAt`` first."""
        summaries = self.get_group_summaries()
        items: list[tuple[tuple[int, int, str], SessionListItem]] = []
        for session in self.sessions.values():
            summary = summaries[session.sessionGroupId]
            timing = request_timing(session)
            metrics = session.metrics
            item = SessionListItem(
                chatId=session.chatId or session.sessionId,
                sessionId=session.sessionId,
                firstSeenAt=session.firstSeenAt,
                requestStartedAt=ms_to_iso(timing.started_ms),
                requestEndedAt=ms_to_iso(timing.ended_ms),
                requestElapsedMs=timing.elapsed_ms,
                requestPromptProcessingMs=timing.prompt_processing_ms,
                requestToolCallCount=timing.tool_call_count,
                requestTokensPerSecond=metrics.tokensPerSecond,
                model=session.model,
                promptTokens=metrics.promptTokens,
                completionTokens=metrics.completionTokens,
                streamLatencyMs=metrics.streamLatencyMs,
                client=session.client,
                systemMessageChecksum=session.systemMessageChecksum,
                userMessageChecksum=session.userMessageChecksum,
                sessionGroupId=session.sessionGroupId,
                sessionGroupKey=session.sessionGroupKey,
                sessionName=summary.sessionName,
                sessionStartedAt=summary.sessionStartedAt,
                sessionModel=summary.sessionModel,
                sessionClient=summary.sessionClient,
                sessionRequestCount=summary.sessionRequestCount,
                sessionTotalInputTokens=summary.sessionTotalInputTokens,
                sessionTotalOutputTokens=summary.sessionTotalOutputTokens,
                sessionAverageTokensPerSecond=summary.sessionAverageTokensPerSecond,
                sessionTotalPromptProcessingMs=summary.sessionTotalPromptProcessingMs,
                sessionElapsedMs=summary.sessionElapsedMs,
                sessionIdleMs=summary.sessionIdleMs,
                sessionActiveMs=summary.sessionActiveMs,
            )
            first_ms = _first_seen_ms(session)
            sort_key = (0, 0, session.sessionId) if first_ms is None else (1, first_ms, session.sessionId)
            items.append((sort_key, item))
        items.sort(key=lambda pair: pair[0], reverse=True)
        return [item for _, item in items]
