from __future__ import annotations

import json
import logging
from typing import Any

from .types import (
    BATCH_COMPLETED,
    ERROR,
    PENDING,
    RUNNING,
    TERMINAL_STATUSES,
    FlowEntry,
    OpaqueEntry,
    TextEntry,
    ToolCall,
    ToolsEntry,
    ToolState,
)
from .utils import truncate_text

logger = logging.getLogger(__name__)

ARGS_PREVIEW_CHARS = 100

# Argument keys that are always small identifiers and never need a preview.
_PASSTHROUGH_KEYS = {"path", "file_path", "old_path", "new_path", "first_line", "last_line", "start_line", "end_line"}


def parse_flow(raw: Any) -> list[FlowEntry]:
    if not isinstance(raw, list):
        return []
    entries: list[FlowEntry] = []
    for item in raw:
        kind = item.get("type") if isinstance(item, dict) else None
        if kind == "tools":
            entries.append(ToolsEntry.from_dict(item))
        elif kind == "text":
            entries.append(TextEntry.from_dict(item))
        else:
            entries.append(OpaqueEntry(raw=item))
    return entries


def serialize_flow(entries: list[FlowEntry]) -> list[Any]:
    return [entry.to_dict() for entry in entries]


def find_tools_entry(entries: list[FlowEntry], execution_id: str) -> ToolsEntry | None:
    """Most recent ToolsEntry for ``execution_id``."""
    for entry in reversed(entries):
        if isinstance(entry, ToolsEntry) and entry.execution_id == execution_id:
            return entry
    return None


def summarize_arguments(arguments: dict[str, Any], limit: int = ARGS_PREVIEW_CHARS) -> dict[str, Any]:
    summary: dict[str, Any] = {}
    for key, value in arguments.items():
        if key in _PASSTHROUGH_KEYS and not isinstance(value, (dict, list)):
            summary[key] = value if not isinstance(value, str) else value[:limit]
            continue
        if isinstance(value, str):
            text = value
        elif isinstance(value, (dict, list)):
            text = json.dumps(value, ensure_ascii=True, sort_keys=True)
        else:
            summary[key] = value
            continue
        if len(text) > limit:
            summary[f"{key}_size"] = len(text)
            summary[f"{key}_preview"] = text[:limit]
        else:
            summary[key] = value
    return summary


def parse_tool_call(raw: Any) -> ToolCall:
    if isinstance(raw, ToolCall):
        return raw
    if not isinstance(raw, dict):
        raise ValueError("tool call must be an object with name and arguments")

    function = raw.get("function")
    source = function if isinstance(function, dict) else raw
    name = str(source.get("name") or "").strip()
    if not name:
        raise ValueError("tool call is missing a name")

    arguments = source.get("arguments")
    if isinstance(arguments, str):
        try:
            arguments = json.loads(arguments) if arguments.strip() else {}
        except json.JSONDecodeError:
            logger.warning("Unparseable arguments for tool %s; using empty arguments", name)
            arguments = {}
    if not isinstance(arguments, dict):
        arguments = {}

    call_id = raw.get("id") or raw.get("call_id")
    return ToolCall(name=name, arguments=arguments, call_id=str(call_id) if call_id else None)


def new_tools_entry(
    execution_id: str,
    calls: list[ToolCall],
    *,
    started_at: str,
    preview_chars: int = ARGS_PREVIEW_CHARS,
) -> ToolsEntry:
    return ToolsEntry(
        execution_id=execution_id,
        started_at=started_at,
        tools=[
            ToolState(
                index=index,
                name=call.name,
                call_id=call.call_id,
                args_summary=summarize_arguments(call.arguments, preview_chars),
            )
            for index, call in enumerate(calls)
        ],
    )


def _accepts(tool: ToolState, status: str | None, *, hinted: bool) -> bool:
    if status is None:
        return not tool.is_terminal
    if status == RUNNING:
        return tool.status == PENDING
    if status in TERMINAL_STATUSES:
        if hinted:
            return tool.status in (PENDING, RUNNING)
        return tool.status == RUNNING
    return False


def select_tool_for_transition(
    entry: ToolsEntry,
    name: str,
    status: str | None,
    index: int | None = None,
) -> ToolState | None:
    """Pick the ToolState an update for ``name`` should bind to.

    ``running`` binds the first pending tool with that name, a terminal status
    the first running one. ``status=None`` selects for a progress note. An
    ``index`` narrows the choice to that position; the name must still match.
    """
    if index is not None:
        for tool in entry.tools:
            if tool.index == index:
                if tool.name == name and _accepts(tool, status, hinted=True):
                    return tool
                return None
        return None

    if status is None:
        for tool in entry.tools:
            if tool.name == name and tool.status == RUNNING:
                return tool
    for tool in entry.tools:
        if tool.name == name and _accepts(tool, status, hinted=False):
            return tool
    return None


def apply_transition(
    tool: ToolState,
    status: str,
    *,
    now: str,
    error: str | None = None,
    result_summary: str | None = None,
    error_chars: int = 500,
    summary_chars: int = 500,
) -> None:
    if tool.is_terminal:
        raise ValueError(f"tool {tool.index} is already {tool.status}")
    if status == RUNNING:
        tool.status = RUNNING
        tool.started_at = now
        return
    if status not in TERMINAL_STATUSES:
        raise ValueError(f"unsupported tool status: {status}")
    tool.status = status
    tool.started_at = tool.started_at or now
    tool.completed_at = now
    if status == ERROR:
        tool.error = truncate_text(error or "Tool execution failed", error_chars)
    elif result_summary:
        tool.result_summary = truncate_text(result_summary, summary_chars)


def complete_entry_if_done(entry: ToolsEntry, *, now: str) -> bool:
    if entry.status == BATCH_COMPLETED or not entry.all_terminal:
        return False
    entry.status = BATCH_COMPLETED
    entry.completed_at = now
    return True
