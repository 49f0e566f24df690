"""Pydantic models for reconstructed sessions and index state."""
from __future__ import annotations
from pydantic import BaseModel, Field
from typing import Any, Literal, Optional

TimelineEventType = Literal[
    "request",
    "prompt_processing",
    "stream_chunk",
    "tool_call",
    "usage",
    "stream_finished",
]
IndexingState = Literal["idle", "indexing", "ready", "error"]

# ── Discovery / file tracking ───────────────────────────────────────

class LogFile(BaseModel):
    path: str
    mtimeMs: int = 0
    sizeBytes: int = 0


class IndexedFileRecord(BaseModel):
    path: str
    checksum: str = ""
    mtimeMs: int = 0
    sizeBytes: int = 0
    lastIndexedAt: str = ""

# ── Session-related models ──────────────────────────────────────────

class TimelineEvent(BaseModel):
    id: str
    type: TimelineEventType
    ts: str
    data: Optional[dict[str, Any]] = None


class RequestEvent(BaseModel):
    id: str
    type: Literal["request"] = "request"
    ts: str
    endpoint: str = ""
    method: str = "POST"
    body: dict[str, Any] = Field(default_factory=dict)


class ToolCall(BaseModel):
    id: str
    name: str = ""
    argumentsText: str = ""
    argumentsJson: Optional[dict[str, Any]] = None
    requestedAt: str = ""


class SessionMetrics(BaseModel):
    promptTokens: Optional[int] = None
    completionTokens: Optional[int] = None
    totalTokens: Optional[int] = None
    promptProcessingMs: Optional[int] = None
    streamLatencyMs: Optional[int] = None
    tokensPerSecond: Optional[float] = None


class Session(BaseModel):
    sessionId: str
    chatId: Optional[str] = None
    model: Optional[str] = None
    client: str = "Unknown"
    firstSeenAt: str = ""
    systemMessageChecksum: Optional[str] = None
    userMessageChecksum: Optional[str] = None
    request: Optional[RequestEvent] = None
    events: list[TimelineEvent] = Field(default_factory=list)
    toolCalls: list[ToolCall] = Field(default_factory=list)
    metrics: SessionMetrics = Field(default_factory=SessionMetrics)
    sessionGroupId: str = ""
    sessionGroupKey: str = ""


class StoredSessionRecord(BaseModel):
    session: Session
    sourcePath: str
    sourceOrdinal: int = 0


class SessionGroupSummary(BaseModel):
    sessionGroupId: str
    sessionGroupKey: str
    sessionName: Optional[str] = None
    sessionStartedAt: str = ""
    sessionModel: Optional[str] = None
    sessionClient: str = "Unknown"
    sessionRequestCount: int = 0
    sessionTotalInputTokens: Optional[int] = None
    sessionTotalOutputTokens: Optional[int] = None
    sessionAverageTokensPerSecond: Optional[float] = None
    sessionTotalPromptProcessingMs: Optional[int] = None
    sessionElapsedMs: Optional[int] = None
    sessionIdleMs: Optional[int] = None
    sessionActiveMs: Optional[int] = None


class SessionListItem(BaseModel):
    chatId: str
    sessionId: str
    firstSeenAt: str = ""
    requestStartedAt: Optional[str] = None
    requestEndedAt: Optional[str] = None
    requestElapsedMs: Optional[int] = None
    requestPromptProcessingMs: Optional[int] = None
    requestToolCallCount: int = 0
    requestTokensPerSecond: Optional[float] = None
    model: Optional[str] = None
    promptTokens: Optional[int] = None
    completionTokens: Optional[int] = None
    streamLatencyMs: Optional[int] = None
    client: str = "Unknown"
    systemMessageChecksum: Optional[str] = None
    userMessageChecksum: Optional[str] = None
    sessionGroupId: str = ""
    sessionGroupKey: str = ""
    sessionName: Optional[str] = None
    sessionStartedAt: str = ""
    sessionModel: Optional[str] = None
    sessionClient: str = "Unknown"
    sessionRequestCount: int = 0
    sessionTotalInputTokens: Optional[int] = None
    sessionTotalOutputTokens: Optional[int] = None
    sessionAverageTokensPerSecond: Optional[float] = None
    sessionTotalPromptProcessingMs: Optional[int] = None
    sessionElapsedMs: Optional[int] = None
    sessionIdleMs: Optional[int] = None
    sessionActiveMs: Optional[int] = None

# ── Parsing / indexing state ────────────────────────────────────────

class ParseStats(BaseModel):
    linesRead: int = 0
    logicalLines: int = 0
    eventsClassified: int = 0
    malformedJson: int = 0
    incompleteJson: int = 0
    bufferedEventsDropped: int = 0
    toolDeltasDropped: int = 0
    sessionsBuilt: int = 0


class BuildProgress(BaseModel):
    totalFiles: int = 0
    processedFiles: float = 0.0
    currentFile: Optional[str] = None
    sessionsIndexed: int = 0


class IndexingStatus(BaseModel):
    state: IndexingState = "idle"
    totalFiles: int = 0
    processedFiles: float = 0.0
    sessionsIndexed: int = 0
    currentFile: Optional[str] = None
    startedAt: Optional[str] = None
    finishedAt: Optional[str] = None
    durationMs: int = 0
    error: Optional[str] = None
