from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Any, Callable, Protocol

from .runtime_config import RuntimeConfigStore
from .store import ServiceStore
from .types import FlowSnapshot
from .utils import utc_now_iso

logger = logging.getLogger(__name__)


def app_chat_channel(app_id: str) -> str:
    return f"app_{app_id}_chat"


def progress_channel(message_id: str) -> str:
    return f"chat_progress_{message_id}"


class Transport(Protocol):
    def publish(self, channel: str, payload: dict[str, Any]) -> None: ...


class EventLogTransport:
    """Persists every publish as a row in the events table; SSE readers tail it."""

    def __init__(self, store: ServiceStore):
        self.store = store

    def publish(self, channel: str, payload: dict[str, Any]) -> None:
        self.store.repository().add_event(channel, payload)


class FanoutTransport:
    def __init__(self, transports: list[Transport]):
        self.transports = list(transports)

    def publish(self, channel: str, payload: dict[str, Any]) -> None:
        """Deliver to every transport, then re-raise the first failure."""
        failures: list[Exception] = []
        for transport in self.transports:
            try:
                transport.publish(channel, payload)
            except Exception as exc:
                logger.warning("Transport %s failed channel=%s: %s", type(transport).__name__, channel, exc)
                failures.append(exc)
        if failures:
            raise failures[0]


class Broadcaster:
    def __init__(
        self,
        transport: Transport,
        *,
        runtime_config_store: RuntimeConfigStore | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.transport = transport
        self.runtime_config_store = runtime_config_store
        self._clock = clock
        self._last_sent: dict[str, float] = {}
        self._lock = threading.Lock()

    def _throttle_interval(self) -> float:
        if self.runtime_config_store is None:
            return 0.5
        return self.runtime_config_store.get().progress_broadcast_interval_seconds

    def _claim_slot(self, execution_id: str, *, throttle: bool) -> bool:
        now = self._clock()
        with self._lock:
            last = self._last_sent.get(execution_id)
            if throttle and last is not None and now - last < self._throttle_interval():
                return False
            self._last_sent[execution_id] = now
            return True

    def forget(self, execution_id: str) -> None:
        with self._lock:
            self._last_sent.pop(execution_id, None)

    async def publish(self, channel: str, payload: dict[str, Any]) -> bool:
        try:
            await asyncio.to_thread(self.transport.publish, channel, payload)
        except Exception:
            logger.exception("Broadcast failed channel=%s", channel)
            return False
        return True

    async def full_state(self, snapshot: FlowSnapshot) -> bool:
        return await self.publish(
            app_chat_channel(snapshot.app_id),
            {
                "type": "replace",
                "target": f"app_chat_message_{snapshot.message_id}",
                "message_id": snapshot.message_id,
                "conversation_flow": snapshot.flow,
            },
        )

    async def tool_status_update(
        self,
        snapshot: FlowSnapshot,
        *,
        execution_id: str,
        tool_index: int | None,
        status: str,
        throttle: bool = False,
    ) -> bool:
        """Send the full-state push and the delta for one committed change.

        Returns False when the event was throttled or any delivery failed.
        """
        if not self._claim_slot(execution_id, throttle=throttle):
            logger.debug("Throttled progress broadcast execution_id=%s", execution_id)
            return False
        full_ok = await self.full_state(snapshot)
        delta_ok = await self.publish(
            progress_channel(snapshot.message_id),
            {
                "action": "tool_status_update",
                "message_id": snapshot.message_id,
                "execution_id": execution_id,
                "tool_index": tool_index,
                "status": status,
                "conversation_flow": snapshot.flow,
                "timestamp": utc_now_iso(),
            },
        )
        return full_ok and delta_ok
