from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_DATA_DIR = Path.home() / ".toolflow"


@dataclass(frozen=True)
class Settings:
    host: str = "127.0.0.1"
    port: int = 8765
    data_dir: str | None = None
    workspace_root: str | None = None
    status_max_attempts: int = 5
    status_backoff_base_seconds: float = 0.1
    status_backoff_max_seconds: float = 2.0
    progress_broadcast_interval_seconds: float = 0.5
    full_cache_clear_probability: float = 0.1
    args_preview_chars: int = 100
    error_message_chars: int = 500
    result_summary_chars: int = 500
    change_log_max_size: int = 1000
    worker_timeout_seconds: float = 120.0
    completion_timeout_seconds: int = 180
    control_poll_interval_seconds: float = 0.5
    max_generation_iterations: int = 10
    event_poll_interval_seconds: float = 1.0
    runtime_config_path: str | None = None
    log_level: str = "INFO"

    def resolved_data_dir(self) -> Path:
        return Path(self.data_dir).expanduser() if self.data_dir else DEFAULT_DATA_DIR

    def resolved_workspace_root(self) -> Path:
        if self.workspace_root:
            return Path(self.workspace_root).expanduser()
        return self.resolved_data_dir() / "apps"


def load_settings() -> Settings:
    return Settings(
        host=os.getenv("TOOLFLOW_HOST", "127.0.0.1"),
        port=int(os.getenv("TOOLFLOW_PORT", "8765")),
        data_dir=(os.getenv("TOOLFLOW_DATA_DIR") or "").strip() or None,
        workspace_root=(os.getenv("TOOLFLOW_WORKSPACE_ROOT") or "").strip() or None,
        status_max_attempts=int(os.getenv("TOOLFLOW_STATUS_MAX_ATTEMPTS", "5")),
        status_backoff_base_seconds=float(os.getenv("TOOLFLOW_STATUS_BACKOFF_BASE_SECONDS", "0.1")),
        status_backoff_max_seconds=float(os.getenv("TOOLFLOW_STATUS_BACKOFF_MAX_SECONDS", "2.0")),
        progress_broadcast_interval_seconds=float(os.getenv("TOOLFLOW_PROGRESS_BROADCAST_INTERVAL_SECONDS", "0.5")),
        full_cache_clear_probability=float(os.getenv("TOOLFLOW_FULL_CACHE_CLEAR_PROBABILITY", "0.1")),
        args_preview_chars=int(os.getenv("TOOLFLOW_ARGS_PREVIEW_CHARS", "100")),
        error_message_chars=int(os.getenv("TOOLFLOW_ERROR_MESSAGE_CHARS", "500")),
        result_summary_chars=int(os.getenv("TOOLFLOW_RESULT_SUMMARY_CHARS", "500")),
        change_log_max_size=int(os.getenv("TOOLFLOW_CHANGE_LOG_MAX_SIZE", "1000")),
        worker_timeout_seconds=float(os.getenv("TOOLFLOW_WORKER_TIMEOUT_SECONDS", "120")),
        completion_timeout_seconds=int(os.getenv("TOOLFLOW_COMPLETION_TIMEOUT_SECONDS", "180")),
        control_poll_interval_seconds=float(os.getenv("TOOLFLOW_CONTROL_POLL_INTERVAL_SECONDS", "0.5")),
        max_generation_iterations=int(os.getenv("TOOLFLOW_MAX_GENERATION_ITERATIONS", "10")),
        event_poll_interval_seconds=float(os.getenv("TOOLFLOW_EVENT_POLL_INTERVAL_SECONDS", "1.0")),
        runtime_config_path=(os.getenv("TOOLFLOW_RUNTIME_CONFIG_PATH") or "").strip() or None,
        log_level=os.getenv("TOOLFLOW_LOG_LEVEL", "INFO").strip().upper(),
    )
