import unittest

from lms_explorer.models import Session, TimelineEvent
from lms_explorer.parsers.metrics import compute_session_metrics, recompute_session_metrics


def _event(event_id: str, kind: str, ts: str, data: dict | None = None) -> TimelineEvent:
    return TimelineEvent(id=event_id, type=kind, ts=ts, data=data)


class SessionMetricsTests(unittest.TestCase):
    def test_prompt_latency_usage_and_throughput(self) -> None:
        events = [
            _event("e00000-request", "request", "2024-01-15 10:00:00"),
            _event(
                "e00001-prompt_processing",
                "prompt_processing",
                "2024-01-15 10:00:03",
                {"firstPromptTs": "2024-01-15 10:00:01", "lastPromptTs": "2024-01-15 10:00:03"},
            ),
            _event(
                "e00002-usage",
                "usage",
                "2024-01-15 10:00:06",
                {"prompt_tokens": 24, "completion_tokens": 10, "total_tokens": 34},
            ),
            _event(
                "e00003-stream_chunk",
                "stream_chunk",
                "2024-01-15 10:00:06",
                {"firstChunkTs": "2024-01-15 10:00:04", "lastChunkTs": "2024-01-15 10:00:06"},
            ),
            _event("e00004-stream_finished", "stream_finished", "2024-01-15 10:00:07"),
        ]

        metrics = compute_session_metrics(events)

        self.assertEqual(metrics.promptProcessingMs, 2000)
        self.assertEqual(metrics.streamLatencyMs, 3000)
        self.assertEqual(metrics.promptTokens, 24)
        self.assertEqual(metrics.completionTokens, 10)
        self.assertEqual(metrics.totalTokens, 34)
        self.assertAlmostEqual(metrics.tokensPerSecond, 10 / 3)

    def test_unfinished_stream_uses_last_chunk(self) -> None:
        events = [
            _event(
                "e00001-stream_chunk",
                "stream_chunk",
                "2024-01-15 10:00:05",
                {"firstChunkTs": "2024-01-15 10:00:04,500", "lastChunkTs": "2024-01-15 10:00:05"},
            ),
        ]

        metrics = compute_session_metrics(events)

        self.assertEqual(metrics.streamLatencyMs, 500)
        self.assertIsNone(metrics.tokensPerSecond)
        self.assertIsNone(metrics.promptProcessingMs)

    def test_latency_never_negative(self) -> None:
        events = [
            _event("e00001-stream_finished", "stream_finished", "2024-01-15 10:00:01"),
            _event(
                "e00002-stream_chunk",
                "stream_chunk",
                "2024-01-15 10:00:05",
                {"firstChunkTs": "2024-01-15 10:00:05", "lastChunkTs": "2024-01-15 10:00:05"},
            ),
        ]

        self.assertEqual(compute_session_metrics(events).streamLatencyMs, 0)

    def test_several_summaries_span_min_to_max(self) -> None:
        events = [
            _event(
                "e00001-prompt_processing",
                "prompt_processing",
                "2024-01-15 10:00:02",
                {"firstPromptTs": "2024-01-15 10:00:01", "lastPromptTs": "2024-01-15 10:00:02"},
            ),
            _event(
                "e00003-prompt_processing",
                "prompt_processing",
                "2024-01-15 10:00:09",
                {"firstPromptTs": "2024-01-15 10:00:08", "lastPromptTs": "2024-01-15 10:00:09"},
            ),
        ]

        self.assertEqual(compute_session_metrics(events).promptProcessingMs, 8000)

    def test_latest_usage_wins_and_zero_tokens_skip_throughput(self) -> None:
        events = [
            _event("e00001-usage", "usage", "2024-01-15 10:00:05", {"completion_tokens": 0}),
            _event("e00000-usage", "usage", "2024-01-15 10:00:01", {"completion_tokens": 99}),
            _event(
                "e00002-stream_chunk",
                "stream_chunk",
                "2024-01-15 10:00:05",
                {"firstChunkTs": "2024-01-15 10:00:01", "lastChunkTs": "2024-01-15 10:00:05"},
            ),
        ]

        metrics = compute_session_metrics(events)

        self.assertEqual(metrics.completionTokens, 0)
        self.assertIsNone(metrics.tokensPerSecond)

    def test_recompute_returns_copy(self) -> None:
        session = Session(
            sessionId="s1",
            events=[_event("e00000-usage", "usage", "2024-01-15 10:00:00", {"prompt_tokens": 7})],
        )

        updated = recompute_session_metrics(session)

        self.assertEqual(updated.metrics.promptTokens, 7)
        self.assertIsNone(session.metrics.promptTokens)


if __name__ == "__main__":
    unittest.main()
