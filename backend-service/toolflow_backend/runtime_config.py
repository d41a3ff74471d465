from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from .config import Settings

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RuntimeConfig:
    status_max_attempts: int = 5
    status_backoff_base_seconds: float = 0.1
    status_backoff_max_seconds: float = 2.0
    progress_broadcast_interval_seconds: float = 0.5
    full_cache_clear_probability: float = 0.1

    @classmethod
    def from_settings(cls, settings: Settings) -> RuntimeConfig:
        return cls(
            status_max_attempts=max(1, min(settings.status_max_attempts, 20)),
            status_backoff_base_seconds=max(0.0, settings.status_backoff_base_seconds),
            status_backoff_max_seconds=max(0.0, settings.status_backoff_max_seconds),
            progress_broadcast_interval_seconds=max(0.0, settings.progress_broadcast_interval_seconds),
            full_cache_clear_probability=max(0.0, min(settings.full_cache_clear_probability, 1.0)),
        )

    def backoff_seconds(self, attempt: int) -> float:
        return min(self.status_backoff_base_seconds * (2 ** max(0, attempt - 1)), self.status_backoff_max_seconds)


def _default_runtime_config_path(settings: Settings) -> Path:
    return settings.resolved_data_dir() / "runtime-config.json"


class RuntimeConfigStore:
    def __init__(self, settings: Settings):
        self._lock = threading.RLock()
        self._path = (
            Path(settings.runtime_config_path).expanduser()
            if settings.runtime_config_path
            else _default_runtime_config_path(settings)
        )
        self._config = RuntimeConfig.from_settings(settings)
        self._load_from_disk()

    @property
    def path(self) -> Path:
        return self._path

    def get(self) -> RuntimeConfig:
        with self._lock:
            return RuntimeConfig(**asdict(self._config))

    def public_view(self) -> dict[str, Any]:
        cfg = self.get()
        return {**asdict(cfg), "config_path": str(self._path)}

    def update(
        self,
        *,
        status_max_attempts: int | None = None,
        status_backoff_base_seconds: float | None = None,
        status_backoff_max_seconds: float | None = None,
        progress_broadcast_interval_seconds: float | None = None,
        full_cache_clear_probability: float | None = None,
        persist: bool = True,
    ) -> RuntimeConfig:
        with self._lock:
            next_cfg = RuntimeConfig(**asdict(self._config))

            if status_max_attempts is not None:
                if status_max_attempts < 1 or status_max_attempts > 20:
                    raise ValueError("status_max_attempts must be between 1 and 20")
                next_cfg.status_max_attempts = status_max_attempts

            if status_backoff_base_seconds is not None:
                if status_backoff_base_seconds < 0 or status_backoff_base_seconds > 5:
                    raise ValueError("status_backoff_base_seconds must be between 0 and 5")
                next_cfg.status_backoff_base_seconds = float(status_backoff_base_seconds)

            if status_backoff_max_seconds is not None:
                if status_backoff_max_seconds < 0 or status_backoff_max_seconds > 30:
                    raise ValueError("status_backoff_max_seconds must be between 0 and 30")
                next_cfg.status_backoff_max_seconds = float(status_backoff_max_seconds)

            if progress_broadcast_interval_seconds is not None:
                if progress_broadcast_interval_seconds < 0 or progress_broadcast_interval_seconds > 10:
                    raise ValueError("progress_broadcast_interval_seconds must be between 0 and 10")
                next_cfg.progress_broadcast_interval_seconds = float(progress_broadcast_interval_seconds)

            if full_cache_clear_probability is not None:
                if full_cache_clear_probability < 0 or full_cache_clear_probability > 1:
                    raise ValueError("full_cache_clear_probability must be between 0 and 1")
                next_cfg.full_cache_clear_probability = float(full_cache_clear_probability)

            self._config = next_cfg
            if persist:
                self._persist_locked()
            return RuntimeConfig(**asdict(self._config))

    def _load_from_disk(self) -> None:
        if not self._path.exists():
            return
        try:
            raw = self._path.read_text(encoding="utf-8")
            parsed = json.loads(raw)
            if not isinstance(parsed, dict):
                return
        except Exception:
            logger.exception("Failed loading runtime config from %s", self._path)
            return

        try:
            self.update(
                status_max_attempts=parsed.get("status_max_attempts"),
                status_backoff_base_seconds=parsed.get("status_backoff_base_seconds"),
                status_backoff_max_seconds=parsed.get("status_backoff_max_seconds"),
                progress_broadcast_interval_seconds=parsed.get("progress_broadcast_interval_seconds"),
                full_cache_clear_probability=parsed.get("full_cache_clear_probability"),
                persist=False,
            )
        except Exception:
            logger.exception("Runtime config file is invalid; keeping defaults")

    def _persist_locked(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(asdict(self._config), indent=2, ensure_ascii=True)
        temp_path = self._path.with_suffix(".tmp")
        temp_path.write_text(payload + "\n", encoding="utf-8")
        os.replace(temp_path, self._path)
        try:
            os.chmod(self._path, 0o600)
        except OSError:
            pass
