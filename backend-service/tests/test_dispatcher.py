from __future__ import annotations

import sqlite3
import tempfile
import threading
import time
import unittest
from pathlib import Path
from typing import Any

from toolflow_backend.broadcast import Broadcaster, app_chat_channel, progress_channel
from toolflow_backend.config import Settings
from toolflow_backend.coordinator import StatusCoordinator
from toolflow_backend.db import Repository
from toolflow_backend.dispatcher import ExecutionDispatcher
from toolflow_backend.errors import ToolflowError
from toolflow_backend.file_tracker import CacheInvalidationHook, ContextCache, FileChangeTracker
from toolflow_backend.mutations import MutationPipeline, WorkspaceFileMutations
from toolflow_backend.runtime_config import RuntimeConfigStore
from toolflow_backend.store import ServiceStore
from toolflow_backend.types import MutationResult, ToolCall
from toolflow_backend.worker import ToolWorker


class _FakeTransport:
    def __init__(self, *, fail: bool = False):
        self.fail = fail
        self.published: list[tuple[str, dict[str, Any]]] = []
        self._lock = threading.Lock()

    def publish(self, channel: str, payload: dict[str, Any]) -> None:
        if self.fail:
            raise ConnectionError("socket closed")
        with self._lock:
            self.published.append((channel, payload))


class _FakePipeline:
    """Stands in for the mutation pipeline with per-path delays and failures."""

    def __init__(
        self,
        *,
        delays: dict[str, float] | None = None,
        failures: dict[str, str] | None = None,
        crashes: dict[str, Exception] | None = None,
    ):
        self.delays = delays or {}
        self.failures = failures or {}
        self.crashes = crashes or {}
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def execute(self, app_id: str, call: ToolCall) -> MutationResult:
        path = str(call.arguments.get("path") or call.arguments.get("query") or "")
        with self._lock:
            self.calls.append(path)
        delay = self.delays.get(path, 0.0)
        if delay:
            time.sleep(delay)
        if path in self.crashes:
            raise self.crashes[path]
        if path in self.failures:
            return MutationResult(success=False, error=self.failures[path], path=path)
        return MutationResult(success=True, summary=f"{call.name} {path} ok", path=path)


class _SlowWorkspaceMutations(WorkspaceFileMutations):
    def __init__(self, store: ServiceStore, *, delay: float):
        super().__init__(store)
        self.delay = delay

    def write_file(self, app_id: str, path: str, content: str) -> MutationResult:
        time.sleep(self.delay)
        return super().write_file(app_id, path, content)


class _BrokenExecutionRepository(Repository):
    def create_execution(self, *args: Any, **kwargs: Any) -> None:
        raise sqlite3.OperationalError("database is locked")


class DispatcherTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        root = Path(self._tmp.name)
        self.settings = Settings(
            data_dir=str(root / "data"),
            workspace_root=str(root / "apps"),
            runtime_config_path=str(root / "runtime-config.json"),
            worker_timeout_seconds=2,
        )
        self.store = ServiceStore(data_dir=root / "data", workspace_root=root / "apps")
        self.repo = Repository(self.store.context)
        self.runtime_config = RuntimeConfigStore(self.settings)
        self.transport = _FakeTransport()
        self.broadcaster = Broadcaster(self.transport, runtime_config_store=self.runtime_config)
        self.coordinator = StatusCoordinator(
            self.store,
            self.broadcaster,
            settings=self.settings,
            runtime_config_store=self.runtime_config,
        )
        app = self.repo.create_app(name="Demo", team_id="team_1", owner_id="user_1")
        self.message = self.repo.create_message(app["id"])

    def tearDown(self) -> None:
        self.store.close()
        self._tmp.cleanup()

    def _dispatcher(self, pipeline: Any, *, settings: Settings | None = None) -> ExecutionDispatcher:
        settings = settings or self.settings
        worker = ToolWorker(self.coordinator, pipeline, self.broadcaster, settings=settings)
        return ExecutionDispatcher(self.store, self.coordinator, worker, settings=settings)

    def _tools(self, execution_id: str) -> list[dict[str, Any]]:
        flow = self.repo.get_message(self.message["id"])["conversation_flow"]
        entry = [item for item in flow if item.get("type") == "tools" and item["execution_id"] == execution_id][-1]
        return entry["tools"]

    async def test_dispatch_returns_before_workers_finish(self) -> None:
        dispatcher = self._dispatcher(_FakePipeline(delays={"slow.py": 0.3}))

        result = await dispatcher.dispatch(
            self.message["id"],
            [{"name": "write_file", "arguments": {"path": "slow.py", "content": "x"}}],
        )

        self.assertIn(result.execution_id, dispatcher.active_executions())
        self.assertNotIn(self._tools(result.execution_id)[0]["status"], ("complete", "error"))
        self.assertTrue(await dispatcher.wait_for_completion(result.execution_id, timeout=5))
        self.assertEqual(self._tools(result.execution_id)[0]["status"], "complete")

    async def test_every_tool_reaches_terminal_status_despite_failures(self) -> None:
        pipeline = _FakePipeline(
            delays={"a.py": 0.05, "c.py": 0.01},
            failures={"b.py": "disk full"},
            crashes={"c.py": RuntimeError("kaboom")},
        )
        dispatcher = self._dispatcher(pipeline)

        result = await dispatcher.dispatch(
            self.message["id"],
            [
                {"name": "write_file", "arguments": {"path": "a.py", "content": "1"}},
                {"name": "write_file", "arguments": {"path": "b.py", "content": "2"}},
                {"name": "write_file", "arguments": {"path": "c.py", "content": "3"}},
                {"name": "search_code", "arguments": {"query": "needle"}},
            ],
            iteration_count=2,
        )
        self.assertTrue(await dispatcher.wait_for_completion(result.execution_id, timeout=5))

        tools = self._tools(result.execution_id)
        self.assertEqual([tool["status"] for tool in tools], ["complete", "error", "error", "complete"])
        self.assertEqual(tools[1]["error"], "disk full")
        self.assertEqual(tools[2]["error"], "kaboom")
        self.assertEqual(tools[0]["result_summary"], "write_file a.py ok")

        flow = self.repo.get_message(self.message["id"])["conversation_flow"]
        self.assertEqual(flow[-1]["status"], "completed")
        execution = self.repo.get_execution(result.execution_id)
        self.assertEqual((execution["tool_count"], execution["iteration_count"]), (4, 2))
        self.assertEqual(len(self.repo.get_message(self.message["id"])["tool_calls"]), 4)

    async def test_collect_results_builds_tool_result_blocks(self) -> None:
        dispatcher = self._dispatcher(_FakePipeline(failures={"b.py": "denied"}))
        result = await dispatcher.dispatch(
            self.message["id"],
            [
                {"id": "call_a", "name": "write_file", "arguments": {"path": "a.py"}},
                {"name": "delete_file", "arguments": {"path": "b.py"}},
            ],
        )
        await dispatcher.wait_for_completion(result.execution_id, timeout=5)

        blocks = await dispatcher.collect_results(self.message["id"], result.execution_id)

        self.assertEqual(blocks[0]["tool_use_id"], "call_a")
        self.assertEqual(blocks[0]["content"], "write_file a.py ok")
        self.assertFalse(blocks[0]["is_error"])
        self.assertEqual(blocks[1]["tool_use_id"], f"{result.execution_id}:1")
        self.assertEqual(blocks[1]["content"], "Error: denied")
        self.assertTrue(blocks[1]["is_error"])

    async def test_broadcast_failures_never_reach_workers(self) -> None:
        self.transport.fail = True
        dispatcher = self._dispatcher(_FakePipeline())

        result = await dispatcher.dispatch(
            self.message["id"],
            [{"name": "write_file", "arguments": {"path": "a.py"}}, {"name": "read_file", "arguments": {"path": "b.py"}}],
        )
        self.assertTrue(await dispatcher.wait_for_completion(result.execution_id, timeout=5))

        self.assertEqual([tool["status"] for tool in self._tools(result.execution_id)], ["complete", "complete"])

    async def test_each_worker_ends_with_full_state_broadcast(self) -> None:
        dispatcher = self._dispatcher(_FakePipeline())
        result = await dispatcher.dispatch(self.message["id"], [{"name": "write_file", "arguments": {"path": "a.py"}}])
        await dispatcher.wait_for_completion(result.execution_id, timeout=5)

        full_pushes = [p for c, p in self.transport.published if c == app_chat_channel(self.message["app_id"])]
        self.assertGreaterEqual(len(full_pushes), 3)
        last = full_pushes[-1]
        self.assertEqual(last["type"], "replace")
        self.assertEqual(last["target"], f"app_chat_message_{self.message['id']}")
        self.assertEqual(last["conversation_flow"][-1]["status"], "completed")

    async def test_slow_mutation_that_succeeds_ends_complete(self) -> None:
        settings = Settings(
            data_dir=self.settings.data_dir,
            workspace_root=self.settings.workspace_root,
            runtime_config_path=self.settings.runtime_config_path,
            worker_timeout_seconds=0.05,
        )
        tracker = FileChangeTracker(self.store)
        pipeline = MutationPipeline(
            _SlowWorkspaceMutations(self.store, delay=0.3),
            hooks=[CacheInvalidationHook(tracker, ContextCache(self.store), runtime_config_store=self.runtime_config)],
        )
        dispatcher = self._dispatcher(pipeline, settings=settings)

        result = await dispatcher.dispatch(
            self.message["id"],
            [{"name": "write_file", "arguments": {"path": "slow.py", "content": "x = 1\n"}}],
        )
        self.assertTrue(await dispatcher.wait_for_completion(result.execution_id, timeout=5))

        tool = self._tools(result.execution_id)[0]
        self.assertEqual(tool["status"], "complete")
        self.assertIsNone(tool.get("error"))
        self.assertEqual(tool["progress_message"], "Still running after 0.05s")
        self.assertTrue((self.store.app_root(self.message["app_id"]) / "slow.py").exists())
        self.assertIsNotNone(tracker.tracked_hash(self.message["app_id"], "slow.py"))

        blocks = await dispatcher.collect_results(self.message["id"], result.execution_id)
        self.assertFalse(blocks[0]["is_error"])

    async def test_first_progress_note_is_not_throttled(self) -> None:
        dispatcher = self._dispatcher(_FakePipeline())

        result = await dispatcher.dispatch(self.message["id"], [{"name": "write_file", "arguments": {"path": "b.py"}}])
        await dispatcher.wait_for_completion(result.execution_id, timeout=5)

        deltas = [p for c, p in self.transport.published if c == progress_channel(self.message["id"])]
        self.assertEqual([d["status"] for d in deltas], ["pending", "running", "running", "complete"])
        progress_tools = deltas[2]["conversation_flow"][-1]["tools"]
        self.assertEqual(progress_tools[0]["progress_message"], "Writing b.py")

    async def test_real_pipeline_writes_into_app_root(self) -> None:
        tracker = FileChangeTracker(self.store)
        pipeline = MutationPipeline(
            WorkspaceFileMutations(self.store),
            hooks=[CacheInvalidationHook(tracker, ContextCache(self.store), runtime_config_store=self.runtime_config)],
        )
        dispatcher = self._dispatcher(pipeline)
        content = "print('hello')\n" * 50

        result = await dispatcher.dispatch(
            self.message["id"],
            [{"type": "function", "function": {"name": "write_file", "arguments": {"path": "hello.py", "content": content}}}],
        )
        await dispatcher.wait_for_completion(result.execution_id, timeout=5)

        app_root = self.store.app_root(self.message["app_id"])
        self.assertEqual((app_root / "hello.py").read_text(encoding="utf-8"), content)
        tool = self._tools(result.execution_id)[0]
        self.assertEqual(tool["status"], "complete")
        self.assertEqual(tool["args_summary"]["content_size"], len(content))
        self.assertNotIn("content", tool["args_summary"])
        self.assertIsNotNone(tracker.tracked_hash(self.message["app_id"], "hello.py"))

    async def test_unrecorded_batch_leaves_no_execution_behind(self) -> None:
        dispatcher = self._dispatcher(_FakePipeline())

        async def lost_append(*args: Any, **kwargs: Any) -> None:
            return None

        self.coordinator.append_tools_entry = lost_append
        with self.assertRaises(ToolflowError):
            await dispatcher.dispatch(self.message["id"], [{"name": "write_file", "arguments": {"path": "a.py"}}])

        self.assertIsNone(self.repo.latest_execution(self.message["id"]))
        self.assertEqual(dispatcher.active_executions(), [])

    async def test_failed_execution_record_leaves_flow_untouched(self) -> None:
        dispatcher = self._dispatcher(_FakePipeline())
        self.store.repository = lambda: _BrokenExecutionRepository(self.store.context)

        with self.assertRaises(sqlite3.OperationalError):
            await dispatcher.dispatch(self.message["id"], [{"name": "write_file", "arguments": {"path": "a.py"}}])

        flow = self.repo.get_message(self.message["id"])["conversation_flow"]
        self.assertEqual([e for e in flow if e.get("type") == "tools"], [])
        self.assertEqual(dispatcher.active_executions(), [])

    async def test_empty_batch_is_rejected(self) -> None:
        dispatcher = self._dispatcher(_FakePipeline())
        with self.assertRaises(ValueError):
            await dispatcher.dispatch(self.message["id"], [])


if __name__ == "__main__":
    unittest.main()
