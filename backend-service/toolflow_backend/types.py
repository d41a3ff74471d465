from __future__ import annotations

import sqlite3
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Union

PENDING = "pending"
RUNNING = "running"
COMPLETE = "complete"
ERROR = "error"
TERMINAL_STATUSES = frozenset({COMPLETE, ERROR})

BATCH_EXECUTING = "executing"
BATCH_COMPLETED = "completed"

_TOOL_STATE_KEYS = (
    "index",
    "name",
    "call_id",
    "args_summary",
    "status",
    "started_at",
    "completed_at",
    "error",
    "progress_message",
    "progress_updated_at",
    "result_summary",
)
_TOOLS_ENTRY_KEYS = ("type", "execution_id", "status", "started_at", "completed_at", "tools")


@dataclass(slots=True)
class StoreContext:
    db_path: Path
    conn: sqlite3.Connection
    lock: threading.RLock = field(default_factory=threading.RLock)


@dataclass(slots=True)
class ToolCall:
    name: str
    arguments: dict[str, Any]
    call_id: str | None = None


@dataclass(slots=True)
class ToolState:
    index: int
    name: str
    args_summary: dict[str, Any] = field(default_factory=dict)
    status: str = PENDING
    call_id: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    error: str | None = None
    progress_message: str | None = None
    progress_updated_at: str | None = None
    result_summary: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_dict(cls, raw: dict[str, Any], *, position: int) -> ToolState:
        index = raw.get("index")
        args_summary = raw.get("args_summary")
        return cls(
            index=index if isinstance(index, int) else position,
            name=str(raw.get("name") or ""),
            args_summary=args_summary if isinstance(args_summary, dict) else {},
            status=str(raw.get("status") or PENDING),
            call_id=raw.get("call_id"),
            started_at=raw.get("started_at"),
            completed_at=raw.get("completed_at"),
            error=raw.get("error"),
            progress_message=raw.get("progress_message"),
            progress_updated_at=raw.get("progress_updated_at"),
            result_summary=raw.get("result_summary"),
            extra={k: v for k, v in raw.items() if k not in _TOOL_STATE_KEYS},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.extra,
            "index": self.index,
            "name": self.name,
            "call_id": self.call_id,
            "args_summary": self.args_summary,
            "status": self.status,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "error": self.error,
            "progress_message": self.progress_message,
            "progress_updated_at": self.progress_updated_at,
            "result_summary": self.result_summary,
        }


@dataclass(slots=True)
class ToolsEntry:
    execution_id: str
    started_at: str
    tools: list[ToolState] = field(default_factory=list)
    status: str = BATCH_EXECUTING
    completed_at: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def all_terminal(self) -> bool:
        return bool(self.tools) and all(tool.is_terminal for tool in self.tools)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ToolsEntry:
        tools_raw = raw.get("tools")
        tools: list[ToolState] = []
        if isinstance(tools_raw, list):
            for position, item in enumerate(tools_raw):
                if isinstance(item, dict):
                    tools.append(ToolState.from_dict(item, position=position))
        return cls(
            execution_id=str(raw.get("execution_id") or ""),
            started_at=str(raw.get("started_at") or ""),
            tools=tools,
            status=str(raw.get("status") or BATCH_EXECUTING),
            completed_at=raw.get("completed_at"),
            extra={k: v for k, v in raw.items() if k not in _TOOLS_ENTRY_KEYS},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.extra,
            "type": "tools",
            "execution_id": self.execution_id,
            "status": self.status,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "tools": [tool.to_dict() for tool in self.tools],
        }


@dataclass(slots=True)
class TextEntry:
    text: str
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> TextEntry:
        return cls(
            text=str(raw.get("text") or ""),
            extra={k: v for k, v in raw.items() if k not in ("type", "text")},
        )

    def to_dict(self) -> dict[str, Any]:
        return {**self.extra, "type": "text", "text": self.text}


@dataclass(slots=True)
class OpaqueEntry:
    """Flow entry of a kind this service does not understand; written back untouched."""

    raw: Any

    def to_dict(self) -> Any:
        return self.raw


FlowEntry = Union[TextEntry, ToolsEntry, OpaqueEntry]


@dataclass(slots=True)
class ExecutionRecord:
    name: str
    status: str
    timestamp: str
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "status": self.status, "error": self.error, "timestamp": self.timestamp}


@dataclass(slots=True)
class FlowSnapshot:
    message_id: str
    app_id: str
    flow: list[Any]
    records: list[dict[str, Any]]
    version: int


@dataclass(slots=True)
class MutationResult:
    success: bool
    summary: str | None = None
    error: str | None = None
    path: str | None = None


@dataclass(slots=True)
class StatusTransition:
    message_id: str
    execution_id: str
    index: int
    name: str
    previous_status: str
    status: str
    attempts: int
    batch_completed: bool = False


@dataclass(slots=True)
class DispatchResult:
    message_id: str
    execution_id: str
    tool_count: int
    iteration_count: int = 0


@dataclass(slots=True)
class MutationEvent:
    app_id: str
    operation: str
    path: str
    content: str | None = None
    old_path: str | None = None
