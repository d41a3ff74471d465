from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Protocol

from .approval import ExecutionControlPolicy
from .dispatcher import ExecutionDispatcher
from .errors import GenerationHaltedError
from .types import DispatchResult

logger = logging.getLogger(__name__)


class BatchPlanner(Protocol):
    async def next_batch(
        self,
        message_id: str,
        *,
        iteration: int,
        previous_results: list[dict[str, Any]],
    ) -> list[dict[str, Any]] | None: ...


class GenerationLoop:
    """Asks the planner for tool batches until it stops, honouring pause and reject.

    Control decisions only gate the next dispatch; a batch already handed to
    the dispatcher always runs to completion.
    """

    def __init__(
        self,
        dispatcher: ExecutionDispatcher,
        policy: ExecutionControlPolicy,
        planner: BatchPlanner,
        *,
        max_iterations: int = 10,
        poll_interval_seconds: float = 0.5,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.dispatcher = dispatcher
        self.policy = policy
        self.planner = planner
        self.max_iterations = max_iterations
        self.poll_interval_seconds = poll_interval_seconds
        self._sleep = sleep
        self._runs: dict[str, asyncio.Task[list[str]]] = {}

    async def _wait_while_paused(self, execution_id: str) -> bool:
        """False when the execution was rejected and generation must stop."""
        while True:
            if await asyncio.to_thread(self.policy.is_rejected, execution_id):
                return False
            if not await asyncio.to_thread(self.policy.is_paused, execution_id):
                return True
            await self._sleep(self.poll_interval_seconds)

    async def _dispatch_when_allowed(
        self,
        message_id: str,
        batch: list[dict[str, Any]],
        iteration: int,
    ) -> DispatchResult | None:
        """None when the message's latest execution was rejected before the batch could start."""
        while True:
            try:
                return await self.dispatcher.dispatch(message_id, batch, iteration_count=iteration)
            except GenerationHaltedError as exc:
                if not await self._wait_while_paused(exc.execution_id):
                    return None

    async def run(self, message_id: str) -> list[str]:
        execution_ids: list[str] = []
        results: list[dict[str, Any]] = []
        for iteration in range(self.max_iterations):
            if execution_ids and not await self._wait_while_paused(execution_ids[-1]):
                logger.info("Generation stopped by rejection message_id=%s execution_id=%s", message_id, execution_ids[-1])
                break

            batch = await self.planner.next_batch(message_id, iteration=iteration, previous_results=results)
            if not batch:
                break

            dispatched = await self._dispatch_when_allowed(message_id, batch, iteration)
            if dispatched is None:
                logger.info("Generation refused by rejection message_id=%s", message_id)
                break
            execution_ids.append(dispatched.execution_id)
            await self.dispatcher.wait_for_completion(dispatched.execution_id)
            results = await self.dispatcher.collect_results(message_id, dispatched.execution_id)
        else:
            logger.warning("Generation hit max_iterations=%s message_id=%s", self.max_iterations, message_id)
        return execution_ids

    def start(self, message_id: str) -> bool:
        """Run generation for a message in the background; False if one is already running."""
        current = self._runs.get(message_id)
        if current is not None and not current.done():
            return False
        task = asyncio.create_task(self.run(message_id))
        self._runs[message_id] = task
        task.add_done_callback(lambda done, mid=message_id: self._on_run_done(mid, done))
        return True

    def _on_run_done(self, message_id: str, task: asyncio.Task[list[str]]) -> None:
        if self._runs.get(message_id) is task:
            self._runs.pop(message_id, None)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Generation failed message_id=%s", message_id, exc_info=task.exception())

    def active_runs(self) -> list[str]:
        return list(self._runs.keys())
