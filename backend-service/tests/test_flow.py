from __future__ import annotations

import json
import unittest

from toolflow_backend.flow import (
    apply_transition,
    complete_entry_if_done,
    find_tools_entry,
    new_tools_entry,
    parse_flow,
    parse_tool_call,
    select_tool_for_transition,
    serialize_flow,
    summarize_arguments,
)
from toolflow_backend.types import OpaqueEntry, TextEntry, ToolCall, ToolsEntry


def _entry(*names: str) -> ToolsEntry:
    return new_tools_entry(
        "exec_1",
        [ToolCall(name=name, arguments={"path": f"file_{i}.py"}) for i, name in enumerate(names)],
        started_at="2026-01-01T00:00:00+00:00",
    )


class FlowParsingTests(unittest.TestCase):
    def test_unknown_entry_kinds_survive_round_trip(self) -> None:
        raw = [
            {"type": "text", "text": "Working on it"},
            {"type": "thinking", "text": "hmm", "budget": 3},
            "legacy string entry",
            _entry("write_file").to_dict(),
        ]
        entries = parse_flow(raw)

        self.assertIsInstance(entries[0], TextEntry)
        self.assertIsInstance(entries[1], OpaqueEntry)
        self.assertIsInstance(entries[2], OpaqueEntry)
        self.assertIsInstance(entries[3], ToolsEntry)
        self.assertEqual(serialize_flow(entries), raw)

    def test_non_list_flow_parses_as_empty(self) -> None:
        self.assertEqual(parse_flow(None), [])
        self.assertEqual(parse_flow({"type": "text"}), [])

    def test_find_tools_entry_returns_most_recent_for_execution(self) -> None:
        older = _entry("write_file")
        newer = _entry("delete_file")
        other = new_tools_entry("exec_2", [ToolCall(name="read_file", arguments={})], started_at="t")
        found = find_tools_entry([older, TextEntry(text="x"), newer, other], "exec_1")
        self.assertIs(found, newer)
        self.assertIsNone(find_tools_entry([older], "exec_missing"))

    def test_tool_state_keeps_unknown_fields(self) -> None:
        raw = _entry("write_file").to_dict()
        raw["tools"][0]["ui_hint"] = "collapsed"
        raw["collapsed"] = True
        restored = ToolsEntry.from_dict(raw).to_dict()
        self.assertEqual(restored["tools"][0]["ui_hint"], "collapsed")
        self.assertTrue(restored["collapsed"])


class ArgumentSummaryTests(unittest.TestCase):
    def test_large_content_is_replaced_by_size_and_preview(self) -> None:
        content = "x" * 5000
        summary = summarize_arguments({"path": "src/app.py", "content": content})

        self.assertEqual(summary["path"], "src/app.py")
        self.assertNotIn("content", summary)
        self.assertEqual(summary["content_size"], 5000)
        self.assertEqual(len(summary["content_preview"]), 100)
        self.assertNotIn(content, json.dumps(summary))

    def test_small_values_pass_through(self) -> None:
        summary = summarize_arguments({"query": "TODO", "first_line": 3, "case_sensitive": False})
        self.assertEqual(summary, {"query": "TODO", "first_line": 3, "case_sensitive": False})

    def test_nested_structures_are_bounded(self) -> None:
        summary = summarize_arguments({"edits": [{"line": i, "text": "y" * 20} for i in range(20)]})
        self.assertIn("edits_size", summary)
        self.assertLessEqual(len(summary["edits_preview"]), 100)


class ToolCallParsingTests(unittest.TestCase):
    def test_accepts_function_style_payload_with_json_arguments(self) -> None:
        call = parse_tool_call(
            {
                "id": "call_9",
                "type": "function",
                "function": {"name": "write_file", "arguments": json.dumps({"path": "a.py", "content": "print(1)"})},
            }
        )
        self.assertEqual(call.name, "write_file")
        self.assertEqual(call.arguments, {"path": "a.py", "content": "print(1)"})
        self.assertEqual(call.call_id, "call_9")

    def test_unparseable_arguments_become_empty(self) -> None:
        call = parse_tool_call({"name": "search_code", "arguments": "{not json"})
        self.assertEqual(call.arguments, {})

    def test_missing_name_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            parse_tool_call({"arguments": {}})


class TransitionSelectionTests(unittest.TestCase):
    def test_running_binds_pending_in_dispatch_order(self) -> None:
        entry = _entry("write_file", "write_file", "search_code")

        first = select_tool_for_transition(entry, "write_file", "running")
        self.assertEqual(first.index, 0)
        apply_transition(first, "running", now="t1")

        second = select_tool_for_transition(entry, "write_file", "running")
        self.assertEqual(second.index, 1)
        apply_transition(second, "running", now="t2")

        self.assertIsNone(select_tool_for_transition(entry, "write_file", "running"))

    def test_terminal_binds_first_running(self) -> None:
        entry = _entry("write_file", "write_file")
        self.assertIsNone(select_tool_for_transition(entry, "write_file", "complete"))

        apply_transition(entry.tools[1], "running", now="t1")
        picked = select_tool_for_transition(entry, "write_file", "complete")
        self.assertEqual(picked.index, 1)

    def test_index_hint_requires_matching_name(self) -> None:
        entry = _entry("write_file", "delete_file")
        self.assertIsNone(select_tool_for_transition(entry, "write_file", "running", index=1))
        self.assertEqual(select_tool_for_transition(entry, "delete_file", "running", index=1).index, 1)

    def test_index_hint_lets_terminal_claim_pending(self) -> None:
        entry = _entry("write_file")
        picked = select_tool_for_transition(entry, "write_file", "error", index=0)
        self.assertIsNotNone(picked)
        apply_transition(picked, "error", now="t1", error="boom")
        self.assertEqual(picked.started_at, "t1")
        self.assertEqual(picked.completed_at, "t1")

    def test_terminal_state_is_never_overwritten(self) -> None:
        entry = _entry("write_file")
        tool = entry.tools[0]
        apply_transition(tool, "running", now="t1")
        apply_transition(tool, "complete", now="t2", result_summary="ok")

        for status in ("running", "complete", "error"):
            self.assertIsNone(select_tool_for_transition(entry, "write_file", status))
            self.assertIsNone(select_tool_for_transition(entry, "write_file", status, index=0))
        with self.assertRaises(ValueError):
            apply_transition(tool, "error", now="t3")
        self.assertEqual(tool.status, "complete")

    def test_error_message_is_truncated(self) -> None:
        entry = _entry("write_file")
        tool = entry.tools[0]
        apply_transition(tool, "error", now="t1", error="e" * 2000, error_chars=500)
        self.assertTrue(tool.error.endswith("... (truncated)"))
        self.assertEqual(len(tool.error), 500 + len("... (truncated)"))

    def test_entry_completes_only_when_all_tools_terminal(self) -> None:
        entry = _entry("write_file", "search_code")
        apply_transition(entry.tools[0], "complete", now="t1")
        self.assertFalse(complete_entry_if_done(entry, now="t1"))
        self.assertEqual(entry.status, "executing")

        apply_transition(entry.tools[1], "error", now="t2", error="no match")
        self.assertTrue(complete_entry_if_done(entry, now="t2"))
        self.assertEqual(entry.status, "completed")
        self.assertEqual(entry.completed_at, "t2")
        self.assertFalse(complete_entry_if_done(entry, now="t3"))


if __name__ == "__main__":
    unittest.main()
