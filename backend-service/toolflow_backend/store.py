from __future__ import annotations

import sqlite3
from pathlib import Path

from .db import Repository, init_schema
from .types import StoreContext


class ServiceStore:
    def __init__(self, *, data_dir: Path, workspace_root: Path) -> None:
        self.data_dir = data_dir.expanduser().resolve()
        self.workspace_root = workspace_root.expanduser().resolve()
        self._context: StoreContext | None = None

    @property
    def context(self) -> StoreContext:
        if self._context is None:
            self._context = self._open()
        return self._context

    def repository(self) -> Repository:
        return Repository(self.context)

    def app_root(self, app_id: str) -> Path:
        root = (self.workspace_root / app_id).resolve()
        if root.parent != self.workspace_root:
            raise ValueError(f"Invalid app id: {app_id}")
        root.mkdir(parents=True, exist_ok=True)
        return root

    def _open(self) -> StoreContext:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.workspace_root.mkdir(parents=True, exist_ok=True)

        db_path = self.data_dir / "toolflow.db"
        conn = sqlite3.connect(db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        init_schema(conn)
        return StoreContext(db_path=db_path, conn=conn)

    def close(self) -> None:
        if self._context is None:
            return
        try:
            self._context.conn.close()
        finally:
            self._context = None
