from __future__ import annotations

import asyncio
import logging

from .broadcast import Broadcaster
from .config import Settings
from .coordinator import StatusCoordinator
from .mutations import MutationPipeline, describe_progress
from .types import COMPLETE, ERROR, RUNNING, MutationResult, ToolCall

logger = logging.getLogger(__name__)


class ToolWorker:
    def __init__(
        self,
        coordinator: StatusCoordinator,
        pipeline: MutationPipeline,
        broadcaster: Broadcaster,
        *,
        settings: Settings,
    ):
        self.coordinator = coordinator
        self.pipeline = pipeline
        self.broadcaster = broadcaster
        self.settings = settings

    async def run(
        self,
        *,
        app_id: str,
        message_id: str,
        execution_id: str,
        index: int,
        call: ToolCall,
        iteration_count: int = 0,
    ) -> str:
        """Execute one tool call and drive its ToolState to a terminal status.

        Never raises; the returned value is the terminal status this worker
        attempted to record.
        """
        status = ERROR
        try:
            try:
                await self.coordinator.update_status(message_id, execution_id, call.name, RUNNING, index=index)
                await self.coordinator.add_progress(
                    message_id,
                    execution_id,
                    call.name,
                    describe_progress(call),
                    index=index,
                    throttle=False,
                )
            except Exception:
                logger.exception(
                    "Could not mark tool running execution_id=%s index=%s tool=%s",
                    execution_id,
                    index,
                    call.name,
                )

            error: str | None = None
            summary: str | None = None
            try:
                result = await self._execute(app_id, message_id, execution_id, index, call)
                if result.success:
                    status = COMPLETE
                    summary = result.summary
                else:
                    error = result.error or "Tool reported failure"
            except Exception as exc:
                error = str(exc) or type(exc).__name__
                logger.warning(
                    "Tool failed execution_id=%s index=%s tool=%s iteration=%s: %s",
                    execution_id,
                    index,
                    call.name,
                    iteration_count,
                    error,
                )

            try:
                await self.coordinator.update_status(
                    message_id,
                    execution_id,
                    call.name,
                    status,
                    error=error,
                    result_summary=summary,
                    index=index,
                )
            except Exception:
                logger.exception(
                    "Could not record %s status execution_id=%s index=%s",
                    status,
                    execution_id,
                    index,
                )
            return status
        finally:
            await self._final_broadcast(message_id, execution_id)

    async def _execute(
        self,
        app_id: str,
        message_id: str,
        execution_id: str,
        index: int,
        call: ToolCall,
    ) -> MutationResult:
        """Run the mutation to its real outcome.

        A mutation thread cannot be interrupted, so once ``worker_timeout_seconds``
        passes the worker only leaves a progress note on the still running tool;
        the terminal status always reflects what the mutation did.
        """
        task = asyncio.ensure_future(asyncio.to_thread(self.pipeline.execute, app_id, call))
        limit = self.settings.worker_timeout_seconds
        done, _ = await asyncio.wait({task}, timeout=limit)
        if not done:
            logger.warning(
                "Tool still running after %ss execution_id=%s index=%s tool=%s",
                limit,
                execution_id,
                index,
                call.name,
            )
            try:
                await self.coordinator.add_progress(
                    message_id,
                    execution_id,
                    call.name,
                    f"Still running after {limit}s",
                    index=index,
                    throttle=False,
                )
            except Exception:
                logger.exception("Could not record slow-tool note execution_id=%s index=%s", execution_id, index)
        return await task

    async def _final_broadcast(self, message_id: str, execution_id: str) -> None:
        try:
            snapshot = await self.coordinator.current_snapshot(message_id)
            if snapshot is not None:
                await self.broadcaster.full_state(snapshot)
        except Exception:
            logger.exception("Final broadcast failed execution_id=%s message_id=%s", execution_id, message_id)
