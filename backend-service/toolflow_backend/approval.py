from __future__ import annotations

import logging
from typing import Any

from .store import ServiceStore

logger = logging.getLogger(__name__)

CONTROL_RUNNING = "running"
CONTROL_PAUSED = "paused"
CONTROL_APPROVED = "approved"
CONTROL_REJECTED = "rejected"


class ExecutionControlPolicy:
    """Default approval-policy collaborator: records each decision per execution."""

    def __init__(self, store: ServiceStore):
        self.store = store

    def state(self, execution_id: str) -> dict[str, Any]:
        record = self.store.repository().get_execution_control(execution_id)
        if record is None:
            return {"execution_id": execution_id, "state": CONTROL_RUNNING, "approved_files": [], "decided_by": None}
        return record

    def is_paused(self, execution_id: str) -> bool:
        return self.state(execution_id)["state"] == CONTROL_PAUSED

    def is_rejected(self, execution_id: str) -> bool:
        return self.state(execution_id)["state"] == CONTROL_REJECTED

    def approve(self, execution_id: str, approved_files: list[str], caller_id: str) -> dict[str, Any]:
        files = sorted({str(path) for path in approved_files if str(path).strip()})
        logger.info("Changes approved execution_id=%s files=%s by=%s", execution_id, len(files), caller_id)
        return self.store.repository().set_execution_control(
            execution_id,
            state=CONTROL_APPROVED,
            decided_by=caller_id,
            approved_files=files,
        )

    def reject(self, execution_id: str, caller_id: str) -> dict[str, Any]:
        logger.info("Changes rejected execution_id=%s by=%s", execution_id, caller_id)
        return self.store.repository().set_execution_control(
            execution_id,
            state=CONTROL_REJECTED,
            decided_by=caller_id,
        )

    def pause(self, execution_id: str, caller_id: str) -> dict[str, Any]:
        if self.is_rejected(execution_id):
            raise ValueError("Execution was rejected and cannot be paused")
        return self.store.repository().set_execution_control(execution_id, state=CONTROL_PAUSED, decided_by=caller_id)

    def resume(self, execution_id: str, caller_id: str) -> dict[str, Any]:
        if self.is_rejected(execution_id):
            raise ValueError("Execution was rejected and cannot be resumed")
        return self.store.repository().set_execution_control(execution_id, state=CONTROL_RUNNING, decided_by=caller_id)
