from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Protocol

from .errors import UnknownToolError
from .store import ServiceStore
from .types import MutationEvent, MutationResult, ToolCall
from .utils import ensure_inside

logger = logging.getLogger(__name__)

TOOL_OPERATIONS = {
    "write_file": "write",
    "os-write": "write",
    "line_replace": "replace",
    "os-line-replace": "replace",
    "delete_file": "delete",
    "os-delete": "delete",
    "rename_file": "rename",
    "os-rename": "rename",
    "search_code": "search",
    "os-search": "search",
    "read_file": "read",
    "os-view": "read",
}

SEARCH_SKIP_DIRS = {".git", "node_modules", "__pycache__", ".venv", "dist", "build"}
MAX_SEARCH_HITS = 50


class FileMutations(Protocol):
    def write_file(self, app_id: str, path: str, content: str) -> MutationResult: ...

    def replace_lines(self, app_id: str, path: str, first_line: int, last_line: int, content: str) -> MutationResult: ...

    def delete_file(self, app_id: str, path: str) -> MutationResult: ...

    def rename_file(self, app_id: str, old_path: str, new_path: str) -> MutationResult: ...

    def read_file(self, app_id: str, path: str) -> MutationResult: ...

    def search(self, app_id: str, query: str) -> MutationResult: ...

    def read_content(self, app_id: str, path: str) -> str | None: ...


class MutationHook(Protocol):
    def after_mutation(self, event: MutationEvent) -> None: ...


def _arg(arguments: dict[str, Any], *names: str, default: Any = None) -> Any:
    for name in names:
        value = arguments.get(name)
        if value is not None:
            return value
    return default


def describe_progress(call: ToolCall) -> str:
    operation = TOOL_OPERATIONS.get(call.name)
    path = _arg(call.arguments, "path", "file_path", "new_path", default="")
    if operation == "write":
        return f"Writing {path}"
    if operation == "replace":
        return f"Editing {path}"
    if operation == "delete":
        return f"Deleting {path}"
    if operation == "rename":
        old_path = _arg(call.arguments, "old_path", "original_path", default="")
        return f"Renaming {old_path} to {path}"
    if operation == "search":
        return f"Searching for {_arg(call.arguments, 'query', 'pattern', default='')!r}"
    if operation == "read":
        return f"Reading {path}"
    return f"Running {call.name}"


class WorkspaceFileMutations:
    """File mutations against an app's directory under the workspace root."""

    def __init__(self, store: ServiceStore):
        self.store = store

    def _resolve(self, app_id: str, path: str) -> tuple[Path, Path]:
        if not path or not str(path).strip():
            raise ValueError("path is required")
        root = self.store.app_root(app_id)
        target = (root / str(path).lstrip("/")).resolve()
        if not ensure_inside(root, target) or target == root:
            raise ValueError(f"Path escapes app root: {path}")
        return root, target

    def read_content(self, app_id: str, path: str) -> str | None:
        _, target = self._resolve(app_id, path)
        if not target.is_file():
            return None
        return target.read_text(encoding="utf-8", errors="replace")

    def write_file(self, app_id: str, path: str, content: str) -> MutationResult:
        _, target = self._resolve(app_id, path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        return MutationResult(success=True, summary=f"Wrote {len(content)} chars to {path}", path=path)

    def replace_lines(self, app_id: str, path: str, first_line: int, last_line: int, content: str) -> MutationResult:
        _, target = self._resolve(app_id, path)
        if not target.is_file():
            return MutationResult(success=False, error=f"File not found: {path}", path=path)
        lines = target.read_text(encoding="utf-8").splitlines(keepends=True)
        if first_line < 1 or last_line < first_line or last_line > len(lines):
            return MutationResult(
                success=False,
                error=f"Line range {first_line}-{last_line} is outside {path} ({len(lines)} lines)",
                path=path,
            )
        replacement = content.splitlines(keepends=True)
        if replacement and not replacement[-1].endswith("\n") and last_line < len(lines):
            replacement[-1] += "\n"
        lines[first_line - 1 : last_line] = replacement
        target.write_text("".join(lines), encoding="utf-8")
        return MutationResult(
            success=True,
            summary=f"Replaced lines {first_line}-{last_line} of {path} with {len(replacement)} line(s)",
            path=path,
        )

    def delete_file(self, app_id: str, path: str) -> MutationResult:
        _, target = self._resolve(app_id, path)
        if not target.is_file():
            return MutationResult(success=False, error=f"File not found: {path}", path=path)
        target.unlink()
        return MutationResult(success=True, summary=f"Deleted {path}", path=path)

    def rename_file(self, app_id: str, old_path: str, new_path: str) -> MutationResult:
        _, source = self._resolve(app_id, old_path)
        _, destination = self._resolve(app_id, new_path)
        if not source.is_file():
            return MutationResult(success=False, error=f"File not found: {old_path}", path=old_path)
        if destination.exists():
            return MutationResult(success=False, error=f"Destination exists: {new_path}", path=new_path)
        destination.parent.mkdir(parents=True, exist_ok=True)
        os.replace(source, destination)
        return MutationResult(success=True, summary=f"Renamed {old_path} to {new_path}", path=new_path)

    def read_file(self, app_id: str, path: str) -> MutationResult:
        content = self.read_content(app_id, path)
        if content is None:
            return MutationResult(success=False, error=f"File not found: {path}", path=path)
        return MutationResult(success=True, summary=content, path=path)

    def search(self, app_id: str, query: str) -> MutationResult:
        if not query:
            return MutationResult(success=False, error="query is required")
        root = self.store.app_root(app_id)
        needle = query.lower()
        hits: list[str] = []
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(d for d in dirnames if d not in SEARCH_SKIP_DIRS)
            for filename in sorted(filenames):
                file_path = Path(dirpath) / filename
                try:
                    text = file_path.read_text(encoding="utf-8")
                except (UnicodeDecodeError, OSError):
                    continue
                rel = file_path.relative_to(root).as_posix()
                for line_no, line in enumerate(text.splitlines(), start=1):
                    if needle in line.lower():
                        hits.append(f"{rel}:{line_no}: {line.strip()}")
                        if len(hits) >= MAX_SEARCH_HITS:
                            return MutationResult(success=True, summary="\n".join(hits))
        if not hits:
            return MutationResult(success=True, summary=f"No matches for {query!r}")
        return MutationResult(success=True, summary="\n".join(hits))


class MutationPipeline:
    """Runs a tool call against the file layer, then hands the change to each hook."""

    def __init__(self, mutations: FileMutations, hooks: list[MutationHook] | None = None):
        self.mutations = mutations
        self.hooks: list[MutationHook] = list(hooks or [])

    def execute(self, app_id: str, call: ToolCall) -> MutationResult:
        operation = TOOL_OPERATIONS.get(call.name)
        if operation is None:
            raise UnknownToolError(call.name)

        args = call.arguments
        path = str(_arg(args, "path", "file_path", default=""))
        event: MutationEvent | None = None

        if operation == "write":
            content = str(_arg(args, "content", "contents", default=""))
            result = self.mutations.write_file(app_id, path, content)
            event = MutationEvent(app_id=app_id, operation="write", path=path, content=content)
        elif operation == "replace":
            first_line = int(_arg(args, "first_line", "start_line", "first_replaced_line", default=0))
            last_line = int(_arg(args, "last_line", "end_line", "last_replaced_line", default=first_line))
            content = str(_arg(args, "content", "replace", default=""))
            result = self.mutations.replace_lines(app_id, path, first_line, last_line, content)
            event = MutationEvent(app_id=app_id, operation="replace", path=path)
        elif operation == "delete":
            result = self.mutations.delete_file(app_id, path)
            event = MutationEvent(app_id=app_id, operation="delete", path=path)
        elif operation == "rename":
            old_path = str(_arg(args, "old_path", "original_path", "source", default=""))
            new_path = str(_arg(args, "new_path", "destination", default=""))
            result = self.mutations.rename_file(app_id, old_path, new_path)
            event = MutationEvent(app_id=app_id, operation="rename", path=new_path, old_path=old_path)
        elif operation == "search":
            result = self.mutations.search(app_id, str(_arg(args, "query", "pattern", default="")))
        else:
            result = self.mutations.read_file(app_id, path)

        if result.success and event is not None:
            if event.operation in ("replace", "rename"):
                event.content = self.mutations.read_content(app_id, event.path)
            self._run_hooks(event)
        return result

    def _run_hooks(self, event: MutationEvent) -> None:
        for hook in self.hooks:
            try:
                hook.after_mutation(event)
            except Exception:
                logger.exception(
                    "Post-mutation hook %s failed app_id=%s path=%s",
                    type(hook).__name__,
                    event.app_id,
                    event.path,
                )
