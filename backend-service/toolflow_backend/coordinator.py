from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from .broadcast import Broadcaster
from .config import Settings
from .errors import FlowConflictError, MessageNotFoundError
from .flow import (
    apply_transition,
    complete_entry_if_done,
    find_tools_entry,
    new_tools_entry,
    parse_flow,
    select_tool_for_transition,
    serialize_flow,
)
from .runtime_config import RuntimeConfigStore
from .store import ServiceStore
from .types import (
    ERROR,
    PENDING,
    RUNNING,
    TERMINAL_STATUSES,
    ExecutionRecord,
    FlowEntry,
    FlowSnapshot,
    StatusTransition,
    ToolCall,
)
from .utils import truncate_text, utc_now_iso

logger = logging.getLogger(__name__)

Mutation = Callable[[list[FlowEntry], list[dict[str, Any]]], Any]


@dataclass(slots=True)
class _Committed:
    outcome: Any
    snapshot: FlowSnapshot
    attempts: int


class StatusCoordinator:
    """Serializes every change to a message's conversation flow through compare-and-swap.

    Each attempt re-reads the flow, applies the change to a fresh copy and
    writes it back only if ``lock_version`` is unchanged. Conflicts are retried
    with exponential backoff; exhausting the attempts drops the update.
    """

    def __init__(
        self,
        store: ServiceStore,
        broadcaster: Broadcaster,
        *,
        settings: Settings,
        runtime_config_store: RuntimeConfigStore,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.store = store
        self.broadcaster = broadcaster
        self.settings = settings
        self.runtime_config_store = runtime_config_store
        self._sleep = sleep

    async def _commit(self, message_id: str, mutate: Mutation, *, label: str) -> _Committed | None:
        config = self.runtime_config_store.get()
        repo = self.store.repository()
        for attempt in range(1, config.status_max_attempts + 1):
            snapshot = await asyncio.to_thread(repo.load_flow, message_id)
            if snapshot is None:
                raise MessageNotFoundError(message_id)

            entries = parse_flow(snapshot.flow)
            records = list(snapshot.records)
            outcome = mutate(entries, records)
            if outcome is None:
                return None

            flow = serialize_flow(entries)
            try:
                version = await asyncio.to_thread(
                    repo.compare_and_swap_flow,
                    message_id,
                    flow=flow,
                    records=records,
                    expected_version=snapshot.version,
                )
            except FlowConflictError:
                if attempt >= config.status_max_attempts:
                    break
                delay = config.backoff_seconds(attempt)
                logger.debug(
                    "Flow conflict op=%s message_id=%s attempt=%s retry_in=%.3fs",
                    label,
                    message_id,
                    attempt,
                    delay,
                )
                await self._sleep(delay)
                continue

            committed = FlowSnapshot(
                message_id=snapshot.message_id,
                app_id=snapshot.app_id,
                flow=flow,
                records=records,
                version=version,
            )
            return _Committed(outcome=outcome, snapshot=committed, attempts=attempt)

        logger.warning(
            "Abandoned flow update op=%s message_id=%s after %s attempts",
            label,
            message_id,
            config.status_max_attempts,
        )
        return None

    async def append_tools_entry(
        self,
        message_id: str,
        execution_id: str,
        calls: list[ToolCall],
    ) -> FlowSnapshot | None:
        started_at = utc_now_iso()

        def mutate(entries: list[FlowEntry], records: list[dict[str, Any]]) -> bool:
            entries.append(
                new_tools_entry(
                    execution_id,
                    calls,
                    started_at=started_at,
                    preview_chars=self.settings.args_preview_chars,
                )
            )
            return True

        committed = await self._commit(message_id, mutate, label="append")
        if committed is None:
            return None
        await self.broadcaster.tool_status_update(
            committed.snapshot,
            execution_id=execution_id,
            tool_index=None,
            status=PENDING,
        )
        return committed.snapshot

    async def update_status(
        self,
        message_id: str,
        execution_id: str,
        tool_name: str,
        status: str,
        *,
        error: str | None = None,
        result_summary: str | None = None,
        index: int | None = None,
    ) -> StatusTransition | None:
        if status != RUNNING and status not in TERMINAL_STATUSES:
            raise ValueError(f"Unsupported tool status: {status}")

        def mutate(entries: list[FlowEntry], records: list[dict[str, Any]]) -> StatusTransition | None:
            entry = find_tools_entry(entries, execution_id)
            if entry is None:
                logger.warning("No tools entry execution_id=%s message_id=%s", execution_id, message_id)
                return None
            tool = select_tool_for_transition(entry, tool_name, status, index)
            if tool is None:
                logger.info(
                    "Dropped status update execution_id=%s tool=%s index=%s status=%s: no matching tool",
                    execution_id,
                    tool_name,
                    index,
                    status,
                )
                return None

            now = utc_now_iso()
            previous = tool.status
            apply_transition(
                tool,
                status,
                now=now,
                error=error,
                result_summary=result_summary,
                error_chars=self.settings.error_message_chars,
                summary_chars=self.settings.result_summary_chars,
            )
            if tool.is_terminal:
                records.append(
                    ExecutionRecord(name=tool.name, status=tool.status, timestamp=now, error=tool.error).to_dict()
                )
            return StatusTransition(
                message_id=message_id,
                execution_id=execution_id,
                index=tool.index,
                name=tool.name,
                previous_status=previous,
                status=tool.status,
                attempts=0,
                batch_completed=complete_entry_if_done(entry, now=now),
            )

        try:
            committed = await self._commit(message_id, mutate, label=f"status:{status}")
        except MessageNotFoundError:
            logger.warning("Dropped status update for missing message_id=%s", message_id)
            return None
        if committed is None:
            return None

        transition = committed.outcome
        transition.attempts = committed.attempts
        await self.broadcaster.tool_status_update(
            committed.snapshot,
            execution_id=execution_id,
            tool_index=transition.index,
            status=transition.status,
        )
        if transition.batch_completed:
            self.broadcaster.forget(execution_id)
            logger.info("Batch completed execution_id=%s message_id=%s", execution_id, message_id)
        return transition

    async def add_progress(
        self,
        message_id: str,
        execution_id: str,
        tool_name: str,
        message: str,
        *,
        index: int | None = None,
        throttle: bool = True,
    ) -> bool:
        text = truncate_text(message, self.settings.result_summary_chars)

        def mutate(entries: list[FlowEntry], records: list[dict[str, Any]]) -> int | None:
            entry = find_tools_entry(entries, execution_id)
            if entry is None:
                return None
            tool = select_tool_for_transition(entry, tool_name, None, index)
            if tool is None:
                logger.debug("Dropped progress execution_id=%s tool=%s index=%s", execution_id, tool_name, index)
                return None
            tool.progress_message = text
            tool.progress_updated_at = utc_now_iso()
            return tool.index

        try:
            committed = await self._commit(message_id, mutate, label="progress")
        except MessageNotFoundError:
            logger.warning("Dropped progress for missing message_id=%s", message_id)
            return False
        if committed is None:
            return False

        tool_index = committed.outcome
        entry = find_tools_entry(parse_flow(committed.snapshot.flow), execution_id)
        status = entry.tools[tool_index].status if entry and tool_index < len(entry.tools) else RUNNING
        await self.broadcaster.tool_status_update(
            committed.snapshot,
            execution_id=execution_id,
            tool_index=tool_index,
            status=status,
            throttle=throttle,
        )
        return True

    async def reconcile_stuck(self, message_id: str, execution_id: str, *, reason: str = "Tool execution timed out") -> int:
        """Mark every non-terminal tool of the batch as errored. Returns how many were closed."""

        def mutate(entries: list[FlowEntry], records: list[dict[str, Any]]) -> int | None:
            entry = find_tools_entry(entries, execution_id)
            if entry is None:
                return None
            now = utc_now_iso()
            closed = 0
            for tool in entry.tools:
                if tool.is_terminal:
                    continue
                apply_transition(tool, ERROR, now=now, error=reason, error_chars=self.settings.error_message_chars)
                records.append(ExecutionRecord(name=tool.name, status=ERROR, timestamp=now, error=tool.error).to_dict())
                closed += 1
            if not closed:
                return None
            complete_entry_if_done(entry, now=now)
            return closed

        committed = await self._commit(message_id, mutate, label="reconcile")
        if committed is None:
            return 0
        logger.warning(
            "Reconciled %s stuck tool(s) execution_id=%s message_id=%s",
            committed.outcome,
            execution_id,
            message_id,
        )
        self.broadcaster.forget(execution_id)
        await self.broadcaster.tool_status_update(
            committed.snapshot,
            execution_id=execution_id,
            tool_index=None,
            status=ERROR,
        )
        return committed.outcome

    async def current_snapshot(self, message_id: str) -> FlowSnapshot | None:
        return await asyncio.to_thread(self.store.repository().load_flow, message_id)
