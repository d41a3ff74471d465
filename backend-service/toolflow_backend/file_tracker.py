from __future__ import annotations

import logging
import random

from .runtime_config import RuntimeConfigStore
from .store import ServiceStore
from .types import MutationEvent
from .utils import sha256_text

logger = logging.getLogger(__name__)


class ContextCache:
    """Cached context blocks keyed by (app, path), fed to later model turns."""

    def __init__(self, store: ServiceStore):
        self.store = store

    def put(self, app_id: str, path: str, block: str) -> None:
        self.store.repository().put_context_block(app_id, path, block)

    def get(self, app_id: str, path: str) -> str | None:
        return self.store.repository().get_context_block(app_id, path)

    def invalidate_path(self, app_id: str, path: str) -> int:
        return self.store.repository().delete_context_block(app_id, path)

    def clear_app(self, app_id: str) -> int:
        return self.store.repository().clear_context_blocks(app_id)


class FileChangeTracker:
    def __init__(self, store: ServiceStore, *, change_log_max_size: int = 1000):
        self.store = store
        self.change_log_max_size = change_log_max_size

    def tracked_hash(self, app_id: str, path: str) -> str | None:
        return self.store.repository().get_file_hash(app_id, path)

    def tracked_paths(self, app_id: str) -> list[str]:
        return self.store.repository().list_tracked_paths(app_id)

    def record(self, app_id: str, path: str, content: str) -> bool:
        """Track the new content hash; False when the content did not change."""
        repo = self.store.repository()
        new_hash = sha256_text(content)
        changed, old_hash = repo.swap_file_hash(app_id, path, new_hash)
        if changed:
            repo.log_file_change(app_id, path, old_hash=old_hash, new_hash=new_hash, max_entries=self.change_log_max_size)
        return changed

    def forget(self, app_id: str, path: str) -> bool:
        return self.store.repository().delete_file_hash(app_id, path)

    def changed_files_since(self, app_id: str, since: float) -> list[str]:
        return self.store.repository().changed_paths_since(app_id, since)


class CacheInvalidationHook:
    def __init__(
        self,
        tracker: FileChangeTracker,
        cache: ContextCache,
        *,
        runtime_config_store: RuntimeConfigStore | None = None,
        rng: random.Random | None = None,
    ):
        self.tracker = tracker
        self.cache = cache
        self.runtime_config_store = runtime_config_store
        self._rng = rng or random.Random()

    def _full_clear_probability(self) -> float:
        if self.runtime_config_store is None:
            return 0.1
        return self.runtime_config_store.get().full_cache_clear_probability

    def after_mutation(self, event: MutationEvent) -> None:
        if event.operation in ("write", "replace"):
            if event.content is None:
                return
            if not self.tracker.record(event.app_id, event.path, event.content):
                logger.debug("No-op write app_id=%s path=%s", event.app_id, event.path)
                return
            self.cache.invalidate_path(event.app_id, event.path)
            self._maybe_clear_app(event.app_id)
            return

        if event.operation == "delete":
            self.tracker.forget(event.app_id, event.path)
            self.cache.invalidate_path(event.app_id, event.path)
            return

        if event.operation == "rename" and event.old_path:
            self.cache.invalidate_path(event.app_id, event.old_path)
            self.cache.invalidate_path(event.app_id, event.path)
            self.tracker.forget(event.app_id, event.old_path)
            if event.content is not None:
                self.tracker.record(event.app_id, event.path, event.content)

    def _maybe_clear_app(self, app_id: str) -> None:
        if self._rng.random() < self._full_clear_probability():
            cleared = self.cache.clear_app(app_id)
            logger.info("Cleared context cache app_id=%s blocks=%s", app_id, cleared)
