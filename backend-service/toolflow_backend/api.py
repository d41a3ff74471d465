from __future__ import annotations

import asyncio
import json
from typing import Any

from fastapi import FastAPI, Header, HTTPException, Query
from fastapi.responses import JSONResponse, StreamingResponse

from .db import Repository
from .errors import GenerationHaltedError, MessageNotFoundError, ToolflowError
from .schemas import (
    AppCreateRequest,
    AppResponse,
    ApproveRequest,
    ControlResponse,
    DispatchRequest,
    DispatchResponse,
    GenerationResponse,
    MessageCreateRequest,
    MessageResponse,
    RuntimeConfigResponse,
    RuntimeConfigUpdateRequest,
    ToolResultsResponse,
)
from .service_container import Services
from .utils import make_id


def _caller_or_400(caller_id: str | None) -> str:
    caller = (caller_id or "").strip()
    if not caller:
        raise HTTPException(status_code=400, detail="X-Caller-Id header is required")
    return caller


def _caller(caller_id: str | None) -> str:
    return (caller_id or "").strip()


def _message_or_404(repo: Repository, message_id: str) -> dict[str, Any]:
    msg = repo.get_message(message_id)
    if msg is None:
        raise HTTPException(status_code=404, detail="Message not found")
    return msg


def _execution_or_404(repo: Repository, message_id: str, execution_id: str) -> dict[str, Any]:
    execution = repo.get_execution(execution_id)
    if execution is None or execution["message_id"] != message_id:
        raise HTTPException(status_code=404, detail="Execution not found")
    return execution


def _control_response(execution_id: str, result: Any) -> ControlResponse:
    return ControlResponse(accepted=result is not None, execution_id=execution_id, result=result)


def create_app(services: Services) -> FastAPI:
    app = FastAPI(title="Toolflow Backend", version="0.1.0")

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        services.store.close()

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "ok": True,
            "active_executions": len(services.dispatcher.active_executions()),
            "active_generations": len(services.generation.active_runs()) if services.generation else 0,
        }

    @app.get("/v1/runtime/config", response_model=RuntimeConfigResponse)
    async def get_runtime_config() -> RuntimeConfigResponse:
        return RuntimeConfigResponse(**services.runtime_config.public_view())

    @app.patch("/v1/runtime/config", response_model=RuntimeConfigResponse)
    async def patch_runtime_config(request: RuntimeConfigUpdateRequest) -> RuntimeConfigResponse:
        services.runtime_config.update(
            status_max_attempts=request.status_max_attempts,
            status_backoff_base_seconds=request.status_backoff_base_seconds,
            status_backoff_max_seconds=request.status_backoff_max_seconds,
            progress_broadcast_interval_seconds=request.progress_broadcast_interval_seconds,
            full_cache_clear_probability=request.full_cache_clear_probability,
        )
        return RuntimeConfigResponse(**services.runtime_config.public_view())

    @app.post("/v1/apps", response_model=AppResponse)
    async def create_app_record(request: AppCreateRequest, x_caller_id: str | None = Header(default=None)) -> AppResponse:
        caller = _caller_or_400(x_caller_id)
        repo = services.store.repository()
        created = repo.create_app(name=request.name, team_id=request.team_id or make_id("team"), owner_id=caller)
        services.store.app_root(created["id"])
        return AppResponse(**created)

    @app.get("/v1/apps/{app_id}", response_model=AppResponse)
    async def get_app_record(app_id: str) -> AppResponse:
        found = services.store.repository().get_app(app_id)
        if found is None:
            raise HTTPException(status_code=404, detail="App not found")
        return AppResponse(**found)

    @app.post("/v1/apps/{app_id}/messages", response_model=MessageResponse)
    async def create_message(app_id: str, request: MessageCreateRequest) -> MessageResponse:
        repo = services.store.repository()
        if repo.get_app(app_id) is None:
            raise HTTPException(status_code=404, detail="App not found")
        msg = repo.create_message(
            app_id,
            role=request.role,
            content=request.content,
            conversation_flow=request.conversation_flow,
        )
        return MessageResponse(**msg)

    @app.get("/v1/messages/{message_id}", response_model=MessageResponse)
    async def get_message(message_id: str) -> MessageResponse:
        return MessageResponse(**_message_or_404(services.store.repository(), message_id))

    @app.post("/v1/messages/{message_id}/executions", response_model=DispatchResponse)
    async def dispatch_batch(message_id: str, request: DispatchRequest) -> DispatchResponse:
        _message_or_404(services.store.repository(), message_id)
        try:
            result = await services.dispatcher.dispatch(
                message_id,
                request.tool_calls,
                iteration_count=request.iteration_count,
            )
        except MessageNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return DispatchResponse(
            message_id=result.message_id,
            execution_id=result.execution_id,
            tool_count=result.tool_count,
            iteration_count=result.iteration_count,
        )

    @app.post("/v1/messages/{message_id}/generations", response_model=GenerationResponse)
    async def start_generation(message_id: str) -> GenerationResponse:
        _message_or_404(services.store.repository(), message_id)
        if services.generation is None:
            raise HTTPException(status_code=501, detail="No batch planner configured")
        return GenerationResponse(message_id=message_id, started=services.generation.start(message_id))

    @app.get("/v1/messages/{message_id}/executions/{execution_id}/results", response_model=ToolResultsResponse)
    async def execution_results(
        message_id: str,
        execution_id: str,
        wait: bool = False,
        timeout: float = Query(default=30.0, gt=0, le=600),
    ) -> ToolResultsResponse:
        _execution_or_404(services.store.repository(), message_id, execution_id)
        if wait:
            await services.dispatcher.wait_for_completion(execution_id, timeout=timeout)
        results = await services.dispatcher.collect_results(message_id, execution_id)
        return ToolResultsResponse(message_id=message_id, execution_id=execution_id, results=results)

    @app.post("/v1/messages/{message_id}/executions/{execution_id}/approve", response_model=ControlResponse)
    async def approve_changes(
        message_id: str,
        execution_id: str,
        request: ApproveRequest,
        x_caller_id: str | None = Header(default=None),
    ) -> ControlResponse:
        result = await services.control_gate.approve(
            execution_id,
            request.approved_files,
            _caller(x_caller_id),
            message_id=message_id,
        )
        return _control_response(execution_id, result)

    @app.post("/v1/messages/{message_id}/executions/{execution_id}/reject", response_model=ControlResponse)
    async def reject_changes(
        message_id: str,
        execution_id: str,
        x_caller_id: str | None = Header(default=None),
    ) -> ControlResponse:
        result = await services.control_gate.reject(execution_id, _caller(x_caller_id), message_id=message_id)
        return _control_response(execution_id, result)

    @app.post("/v1/executions/{execution_id}/pause", response_model=ControlResponse)
    async def pause_generation(execution_id: str, x_caller_id: str | None = Header(default=None)) -> ControlResponse:
        result = await services.control_gate.pause(execution_id, _caller(x_caller_id))
        return _control_response(execution_id, result)

    @app.post("/v1/executions/{execution_id}/resume", response_model=ControlResponse)
    async def resume_generation(execution_id: str, x_caller_id: str | None = Header(default=None)) -> ControlResponse:
        result = await services.control_gate.resume(execution_id, _caller(x_caller_id))
        return _control_response(execution_id, result)

    @app.get("/v1/channels/{channel}/stream")
    async def stream_channel(channel: str, since_id: int = Query(default=0, ge=0)) -> StreamingResponse:
        repo = services.store.repository()
        interval = services.settings.event_poll_interval_seconds

        async def generator() -> Any:
            last_id = since_id
            while True:
                events = await asyncio.to_thread(repo.list_events, channel=channel, after_id=last_id, limit=200)
                if events:
                    for event in events:
                        last_id = int(event["id"])
                        payload = json.dumps(event["payload"])
                        yield f"id: {last_id}\n"
                        yield f"event: {event['payload'].get('action') or event['payload'].get('type') or 'message'}\n"
                        yield f"data: {payload}\n\n"
                else:
                    yield ": ping\n\n"
                await asyncio.sleep(interval)

        return StreamingResponse(generator(), media_type="text/event-stream")

    @app.exception_handler(GenerationHaltedError)
    async def generation_halted_handler(_request: Any, exc: GenerationHaltedError) -> JSONResponse:
        return JSONResponse(
            status_code=409,
            content={"detail": str(exc), "execution_id": exc.execution_id, "state": exc.state},
        )

    @app.exception_handler(ToolflowError)
    async def toolflow_error_handler(_request: Any, exc: ToolflowError) -> JSONResponse:
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    async def value_error_handler(_request: Any, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    return app
