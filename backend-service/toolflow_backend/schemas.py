from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class AppCreateRequest(BaseModel):
    name: str = Field(min_length=1)
    team_id: str | None = None


class AppResponse(BaseModel):
    id: str
    team_id: str
    name: str
    created_at: str


class MessageCreateRequest(BaseModel):
    role: Literal["user", "assistant"] = "assistant"
    content: str = ""
    conversation_flow: list[Any] = Field(default_factory=list)


class MessageResponse(BaseModel):
    id: str
    app_id: str
    role: str
    content: str
    conversation_flow: list[Any]
    tool_calls: list[dict[str, Any]]
    lock_version: int
    created_at: str
    updated_at: str


class DispatchRequest(BaseModel):
    tool_calls: list[dict[str, Any]] = Field(min_length=1)
    iteration_count: int = Field(default=0, ge=0)


class DispatchResponse(BaseModel):
    message_id: str
    execution_id: str
    tool_count: int
    iteration_count: int


class ToolResultsResponse(BaseModel):
    message_id: str
    execution_id: str
    results: list[dict[str, Any]]


class ApproveRequest(BaseModel):
    approved_files: list[str] = Field(default_factory=list)


class ControlResponse(BaseModel):
    accepted: bool
    execution_id: str
    result: dict[str, Any] | None = None


class RuntimeConfigResponse(BaseModel):
    status_max_attempts: int
    status_backoff_base_seconds: float
    status_backoff_max_seconds: float
    progress_broadcast_interval_seconds: float
    full_cache_clear_probability: float
    config_path: str


class RuntimeConfigUpdateRequest(BaseModel):
    status_max_attempts: int | None = Field(default=None, ge=1, le=20)
    status_backoff_base_seconds: float | None = Field(default=None, ge=0, le=5)
    status_backoff_max_seconds: float | None = Field(default=None, ge=0, le=30)
    progress_broadcast_interval_seconds: float | None = Field(default=None, ge=0, le=10)
    full_cache_clear_probability: float | None = Field(default=None, ge=0, le=1)


class GenerationResponse(BaseModel):
    message_id: str
    started: bool
