from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

from .store import ServiceStore

logger = logging.getLogger(__name__)


class ApprovalPolicy(Protocol):
    def approve(self, execution_id: str, approved_files: list[str], caller_id: str) -> Any: ...

    def reject(self, execution_id: str, caller_id: str) -> Any: ...

    def pause(self, execution_id: str, caller_id: str) -> Any: ...

    def resume(self, execution_id: str, caller_id: str) -> Any: ...


class ControlGate:
    """Membership check in front of the approval policy.

    Unauthorized calls are dropped: nothing is delegated and None is returned.
    Authorized calls return the policy's result unchanged.
    """

    def __init__(self, store: ServiceStore, policy: ApprovalPolicy):
        self.store = store
        self.policy = policy

    def _is_authorized(self, execution_id: str, caller_id: str, message_id: str | None) -> bool:
        if not caller_id:
            return False
        repo = self.store.repository()
        owner = repo.execution_owner(execution_id)
        if owner is None:
            return False
        if message_id is not None and owner["message_id"] != message_id:
            return False
        return repo.is_team_member(owner["team_id"], caller_id)

    async def _authorize(self, action: str, execution_id: str, caller_id: str, message_id: str | None) -> bool:
        allowed = await asyncio.to_thread(self._is_authorized, execution_id, caller_id, message_id)
        if not allowed:
            logger.warning("Dropped unauthorized %s execution_id=%s caller=%s", action, execution_id, caller_id)
        return allowed

    async def approve(
        self,
        execution_id: str,
        approved_files: list[str],
        caller_id: str,
        *,
        message_id: str | None = None,
    ) -> Any:
        if not await self._authorize("approve", execution_id, caller_id, message_id):
            return None
        return await asyncio.to_thread(self.policy.approve, execution_id, list(approved_files), caller_id)

    async def reject(self, execution_id: str, caller_id: str, *, message_id: str | None = None) -> Any:
        if not await self._authorize("reject", execution_id, caller_id, message_id):
            return None
        return await asyncio.to_thread(self.policy.reject, execution_id, caller_id)

    async def pause(self, execution_id: str, caller_id: str) -> Any:
        if not await self._authorize("pause", execution_id, caller_id, None):
            return None
        return await asyncio.to_thread(self.policy.pause, execution_id, caller_id)

    async def resume(self, execution_id: str, caller_id: str) -> Any:
        if not await self._authorize("resume", execution_id, caller_id, None):
            return None
        return await asyncio.to_thread(self.policy.resume, execution_id, caller_id)
