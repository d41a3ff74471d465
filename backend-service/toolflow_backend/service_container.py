from __future__ import annotations

from dataclasses import dataclass

from .approval import ExecutionControlPolicy
from .broadcast import Broadcaster, EventLogTransport, FanoutTransport, Transport
from .config import Settings
from .continuation import BatchPlanner, GenerationLoop
from .control_gate import ControlGate
from .coordinator import StatusCoordinator
from .dispatcher import ExecutionDispatcher
from .file_tracker import CacheInvalidationHook, ContextCache, FileChangeTracker
from .mutations import MutationPipeline, WorkspaceFileMutations
from .runtime_config import RuntimeConfigStore
from .store import ServiceStore
from .worker import ToolWorker


@dataclass
class Services:
    settings: Settings
    runtime_config: RuntimeConfigStore
    store: ServiceStore
    broadcaster: Broadcaster
    coordinator: StatusCoordinator
    tracker: FileChangeTracker
    context_cache: ContextCache
    pipeline: MutationPipeline
    dispatcher: ExecutionDispatcher
    policy: ExecutionControlPolicy
    control_gate: ControlGate
    generation: GenerationLoop | None = None


def build_services(
    settings: Settings,
    *,
    planner: BatchPlanner | None = None,
    transports: list[Transport] | None = None,
) -> Services:
    """Wire the service graph.

    ``transports`` receive every broadcast alongside the persisted event log;
    without a ``planner`` there is no server-driven generation loop.
    """
    runtime_config = RuntimeConfigStore(settings)
    store = ServiceStore(
        data_dir=settings.resolved_data_dir(),
        workspace_root=settings.resolved_workspace_root(),
    )
    transport = FanoutTransport([EventLogTransport(store), *(transports or [])])
    broadcaster = Broadcaster(transport, runtime_config_store=runtime_config)
    coordinator = StatusCoordinator(
        store,
        broadcaster,
        settings=settings,
        runtime_config_store=runtime_config,
    )
    tracker = FileChangeTracker(store, change_log_max_size=settings.change_log_max_size)
    context_cache = ContextCache(store)
    pipeline = MutationPipeline(
        WorkspaceFileMutations(store),
        hooks=[CacheInvalidationHook(tracker, context_cache, runtime_config_store=runtime_config)],
    )
    policy = ExecutionControlPolicy(store)
    worker = ToolWorker(coordinator, pipeline, broadcaster, settings=settings)
    dispatcher = ExecutionDispatcher(store, coordinator, worker, settings=settings, policy=policy)
    control_gate = ControlGate(store, policy)
    generation = None
    if planner is not None:
        generation = GenerationLoop(
            dispatcher,
            policy,
            planner,
            max_iterations=settings.max_generation_iterations,
            poll_interval_seconds=settings.control_poll_interval_seconds,
        )

    return Services(
        settings=settings,
        runtime_config=runtime_config,
        store=store,
        broadcaster=broadcaster,
        coordinator=coordinator,
        tracker=tracker,
        context_cache=context_cache,
        pipeline=pipeline,
        dispatcher=dispatcher,
        policy=policy,
        control_gate=control_gate,
        generation=generation,
    )
