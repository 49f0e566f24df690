import unittest

from lms_explorer.parsers.tool_calls import ToolCallMerger, parse_tool_call_arguments


class ToolCallMergerTests(unittest.TestCase):
    def test_index_only_fragments_follow_the_id_they_started_with(self) -> None:
        merger = ToolCallMerger()

        first = merger.add_delta(
            {"index": 0, "id": "tool-123", "function": {"name": "glob", "arguments": '{"pattern":"'}},
            "2024-01-18 14:30:02",
        )
        second = merger.add_delta(
            {"index": 0, "function": {"arguments": '**/*.ts"}'}},
            "2024-01-18 14:30:03",
        )

        self.assertEqual(first, "tool-123")
        self.assertEqual(second, "tool-123")
        calls = merger.get_tool_calls()
        self.assertEqual(len(calls), 1)
        self.assertEqual(calls[0].name, "glob")
        self.assertEqual(calls[0].argumentsText, '{"pattern":"**/*.ts"}')
        self.assertEqual(calls[0].argumentsJson, {"pattern": "**/*.ts"})
        self.assertEqual(calls[0].requestedAt, "2024-01-18 14:30:02")

    def test_parallel_calls_stay_separate(self) -> None:
        merger = ToolCallMerger()
        merger.add_delta({"index": 0, "id": "a", "function": {"name": "read", "arguments": "{"}}, "t1")
        merger.add_delta({"index": 1, "id": "b", "function": {"name": "write", "arguments": "{"}}, "t1")
        merger.add_delta({"index": 1, "function": {"arguments": "}"}}, "t2")
        merger.add_delta({"index": 0, "function": {"arguments": "}"}}, "t2")

        calls = {call.id: call for call in merger.get_tool_calls()}

        self.assertEqual(calls["a"].argumentsJson, {})
        self.assertEqual(calls["b"].name, "write")
        self.assertEqual(len(merger), 2)

    def test_anonymous_fragment_goes_to_the_only_open_call(self) -> None:
        merger = ToolCallMerger()
        merger.add_delta({"id": "solo", "function": {"name": "bash", "arguments": '{"cmd":'}}, "t1")

        attributed = merger.add_delta({"function": {"arguments": '"ls"}'}}, "t2")

        self.assertEqual(attributed, "solo")
        self.assertEqual(merger.get_tool_calls()[0].argumentsJson, {"cmd": "ls"})

    def test_anonymous_fragment_is_dropped_when_ambiguous(self) -> None:
        merger = ToolCallMerger()
        self.assertIsNone(merger.add_delta({"function": {"arguments": "{}"}}, "t0"))

        merger.add_delta({"id": "a", "function": {"name": "x"}}, "t1")
        merger.add_delta({"id": "b", "function": {"name": "y"}}, "t1")

        self.assertIsNone(merger.add_delta({"function": {"arguments": "{}"}}, "t2"))
        self.assertEqual(merger.dropped_deltas, 2)

    def test_later_name_replaces_empty_one(self) -> None:
        merger = ToolCallMerger()
        merger.add_delta({"index": 0, "id": "a"}, "t1")
        merger.add_delta({"index": 0, "function": {"name": "grep"}}, "t2")

        self.assertEqual(merger.get_tool_calls()[0].name, "grep")

    def test_bool_index_is_not_positional(self) -> None:
        merger = ToolCallMerger()
        merger.add_delta({"index": 0, "id": "a"}, "t1")
        merger.add_delta({"index": 1, "id": "b"}, "t1")

        self.assertIsNone(merger.add_delta({"index": True, "function": {"arguments": "x"}}, "t2"))


class ToolCallArgumentsTests(unittest.TestCase):
    def test_best_effort_decoding(self) -> None:
        self.assertEqual(parse_tool_call_arguments('{"a": 1}'), {"a": 1})
        self.assertIsNone(parse_tool_call_arguments('{"a": '))
        self.assertIsNone(parse_tool_call_arguments("[1, 2]"))
        self.assertIsNone(parse_tool_call_arguments("   "))
        self.assertIsNone(parse_tool_call_arguments(None))


if __name__ == "__main__":
    unittest.main()
