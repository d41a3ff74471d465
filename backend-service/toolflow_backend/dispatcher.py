from __future__ import annotations

import asyncio
import logging
from typing import Any

from .approval import CONTROL_PAUSED, CONTROL_REJECTED, ExecutionControlPolicy
from .config import Settings
from .coordinator import StatusCoordinator
from .errors import GenerationHaltedError, ToolflowError
from .flow import find_tools_entry, parse_flow, parse_tool_call
from .store import ServiceStore
from .types import ERROR, DispatchResult
from .utils import make_id
from .worker import ToolWorker

logger = logging.getLogger(__name__)


class ExecutionDispatcher:
    def __init__(
        self,
        store: ServiceStore,
        coordinator: StatusCoordinator,
        worker: ToolWorker,
        *,
        settings: Settings,
        policy: ExecutionControlPolicy | None = None,
    ):
        self.store = store
        self.coordinator = coordinator
        self.worker = worker
        self.settings = settings
        self.policy = policy
        self._tasks: dict[str, list[asyncio.Task[str]]] = {}

    def active_executions(self) -> list[str]:
        return list(self._tasks.keys())

    async def _ensure_dispatch_allowed(self, message_id: str) -> None:
        """Refuse a new batch while the message's latest execution is paused or rejected."""
        if self.policy is None:
            return
        latest = await asyncio.to_thread(self.store.repository().latest_execution, message_id)
        if latest is None:
            return
        control = await asyncio.to_thread(self.policy.state, latest["id"])
        if control["state"] in (CONTROL_PAUSED, CONTROL_REJECTED):
            raise GenerationHaltedError(message_id, latest["id"], control["state"])

    async def dispatch(self, message_id: str, tool_calls: list[Any], *, iteration_count: int = 0) -> DispatchResult:
        calls = [parse_tool_call(raw) for raw in tool_calls]
        if not calls:
            raise ValueError("Tool call batch is empty")
        await self._ensure_dispatch_allowed(message_id)

        execution_id = make_id("exec")
        repo = self.store.repository()
        await asyncio.to_thread(
            repo.create_execution,
            execution_id,
            message_id,
            iteration_count=iteration_count,
            tool_count=len(calls),
        )
        try:
            snapshot = await self.coordinator.append_tools_entry(message_id, execution_id, calls)
        except Exception:
            await asyncio.to_thread(repo.delete_execution, execution_id)
            raise
        if snapshot is None:
            await asyncio.to_thread(repo.delete_execution, execution_id)
            raise ToolflowError(f"Could not record tool batch for message {message_id}")

        tasks = [
            asyncio.create_task(
                self.worker.run(
                    app_id=snapshot.app_id,
                    message_id=message_id,
                    execution_id=execution_id,
                    index=index,
                    call=call,
                    iteration_count=iteration_count,
                )
            )
            for index, call in enumerate(calls)
        ]
        self._tasks[execution_id] = tasks
        for task in tasks:
            task.add_done_callback(lambda _task, eid=execution_id: self._on_task_done(eid))

        logger.info(
            "Batch dispatched execution_id=%s message_id=%s tools=%s iteration=%s",
            execution_id,
            message_id,
            len(calls),
            iteration_count,
        )
        return DispatchResult(
            message_id=message_id,
            execution_id=execution_id,
            tool_count=len(calls),
            iteration_count=iteration_count,
        )

    def _on_task_done(self, execution_id: str) -> None:
        tasks = self._tasks.get(execution_id)
        if tasks is not None and all(task.done() for task in tasks):
            self._tasks.pop(execution_id, None)

    async def wait_for_completion(self, execution_id: str, timeout: float | None = None) -> bool:
        tasks = self._tasks.get(execution_id)
        if not tasks:
            return True
        limit = timeout if timeout is not None else self.settings.completion_timeout_seconds
        _, pending = await asyncio.wait(list(tasks), timeout=limit)
        if pending:
            logger.warning("Batch still running after %.1fs execution_id=%s pending=%s", limit, execution_id, len(pending))
        return not pending

    async def collect_results(self, message_id: str, execution_id: str) -> list[dict[str, Any]]:
        """Terminal tool states of a batch as tool_result blocks for the next model turn."""
        snapshot = await self.coordinator.current_snapshot(message_id)
        if snapshot is None:
            return []
        entry = find_tools_entry(parse_flow(snapshot.flow), execution_id)
        if entry is None:
            return []

        results: list[dict[str, Any]] = []
        for tool in entry.tools:
            if tool.status == ERROR:
                content = f"Error: {tool.error or 'Tool execution failed'}"
            else:
                content = tool.result_summary or f"{tool.name} {tool.status}"
            results.append(
                {
                    "type": "tool_result",
                    "tool_use_id": tool.call_id or f"{execution_id}:{tool.index}",
                    "name": tool.name,
                    "index": tool.index,
                    "status": tool.status,
                    "content": content,
                    "is_error": tool.status == ERROR,
                }
            )
        return results
