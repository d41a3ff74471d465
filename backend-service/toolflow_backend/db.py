from __future__ import annotations

import sqlite3
import time
from typing import Any

from .errors import FlowConflictError
from .types import FlowSnapshot, StoreContext
from .utils import dumps_json, loads_json, make_id, utc_now_iso


SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA foreign_keys=ON;

CREATE TABLE IF NOT EXISTS apps (
  id TEXT PRIMARY KEY,
  team_id TEXT NOT NULL,
  name TEXT NOT NULL,
  created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS team_members (
  team_id TEXT NOT NULL,
  user_id TEXT NOT NULL,
  role TEXT NOT NULL,
  created_at TEXT NOT NULL,
  PRIMARY KEY(team_id, user_id)
);

CREATE TABLE IF NOT EXISTS messages (
  id TEXT PRIMARY KEY,
  app_id TEXT NOT NULL,
  role TEXT NOT NULL,
  content TEXT NOT NULL,
  conversation_flow_json TEXT NOT NULL,
  tool_calls_json TEXT NOT NULL,
  lock_version INTEGER NOT NULL DEFAULT 0,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  FOREIGN KEY(app_id) REFERENCES apps(id)
);

CREATE INDEX IF NOT EXISTS idx_messages_app ON messages(app_id, created_at);

CREATE TABLE IF NOT EXISTS executions (
  id TEXT PRIMARY KEY,
  message_id TEXT NOT NULL,
  iteration_count INTEGER NOT NULL,
  tool_count INTEGER NOT NULL,
  created_at TEXT NOT NULL,
  FOREIGN KEY(message_id) REFERENCES messages(id)
);

CREATE TABLE IF NOT EXISTS execution_controls (
  execution_id TEXT PRIMARY KEY,
  state TEXT NOT NULL,
  approved_files_json TEXT,
  decided_by TEXT,
  updated_at TEXT NOT NULL,
  FOREIGN KEY(execution_id) REFERENCES executions(id)
);

CREATE TABLE IF NOT EXISTS events (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  channel TEXT NOT NULL,
  ts TEXT NOT NULL,
  payload_json TEXT
);

CREATE INDEX IF NOT EXISTS idx_events_channel ON events(channel, id);

CREATE TABLE IF NOT EXISTS file_hashes (
  app_id TEXT NOT NULL,
  path TEXT NOT NULL,
  hash TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  PRIMARY KEY(app_id, path)
);

CREATE TABLE IF NOT EXISTS file_changes (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  app_id TEXT NOT NULL,
  path TEXT NOT NULL,
  old_hash TEXT,
  new_hash TEXT NOT NULL,
  changed_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_file_changes_app ON file_changes(app_id, changed_at);

CREATE TABLE IF NOT EXISTS context_cache (
  app_id TEXT NOT NULL,
  path TEXT NOT NULL,
  block TEXT NOT NULL,
  created_at TEXT NOT NULL,
  PRIMARY KEY(app_id, path)
);
"""


def init_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(SCHEMA_SQL)
    conn.commit()


def _row_to_dict(row: sqlite3.Row | None) -> dict[str, Any] | None:
    if row is None:
        return None
    return {k: row[k] for k in row.keys()}


class Repository:
    def __init__(self, context: StoreContext):
        self.ctx = context

    def _execute(self, sql: str, params: tuple[Any, ...] = ()) -> sqlite3.Cursor:
        with self.ctx.lock:
            cur = self.ctx.conn.execute(sql, params)
            self.ctx.conn.commit()
            return cur

    def _fetchone(self, sql: str, params: tuple[Any, ...] = ()) -> dict[str, Any] | None:
        with self.ctx.lock:
            row = self.ctx.conn.execute(sql, params).fetchone()
        return _row_to_dict(row)

    def _fetchall(self, sql: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
        with self.ctx.lock:
            rows = self.ctx.conn.execute(sql, params).fetchall()
        return [_row_to_dict(r) for r in rows if r is not None]

    # Apps and team membership

    def create_app(self, *, name: str, team_id: str, owner_id: str) -> dict[str, Any]:
        app_id = make_id("app")
        now = utc_now_iso()
        self._execute(
            "INSERT INTO apps(id, team_id, name, created_at) VALUES(?, ?, ?, ?)",
            (app_id, team_id, name, now),
        )
        self.add_team_member(team_id, owner_id, role="owner")
        return self.get_app(app_id)  # type: ignore[return-value]

    def get_app(self, app_id: str) -> dict[str, Any] | None:
        return self._fetchone("SELECT id, team_id, name, created_at FROM apps WHERE id=?", (app_id,))

    def add_team_member(self, team_id: str, user_id: str, *, role: str = "member") -> None:
        self._execute(
            """
            INSERT INTO team_members(team_id, user_id, role, created_at) VALUES(?, ?, ?, ?)
            ON CONFLICT(team_id, user_id) DO UPDATE SET role=excluded.role
            """,
            (team_id, user_id, role, utc_now_iso()),
        )

    def is_team_member(self, team_id: str, user_id: str) -> bool:
        row = self._fetchone(
            "SELECT 1 AS ok FROM team_members WHERE team_id=? AND user_id=?",
            (team_id, user_id),
        )
        return row is not None

    # Messages and the conversation flow document

    def create_message(
        self,
        app_id: str,
        *,
        role: str = "assistant",
        content: str = "",
        conversation_flow: list[Any] | None = None,
    ) -> dict[str, Any]:
        msg_id = make_id("msg")
        now = utc_now_iso()
        self._execute(
            """
            INSERT INTO messages(id, app_id, role, content, conversation_flow_json, tool_calls_json, lock_version, created_at, updated_at)
            VALUES(?, ?, ?, ?, ?, '[]', 0, ?, ?)
            """,
            (msg_id, app_id, role, content, dumps_json(conversation_flow or []), now, now),
        )
        return self.get_message(msg_id)  # type: ignore[return-value]

    def get_message(self, message_id: str) -> dict[str, Any] | None:
        row = self._fetchone(
            """
            SELECT id, app_id, role, content, conversation_flow_json, tool_calls_json,
                   lock_version, created_at, updated_at
            FROM messages WHERE id=?
            """,
            (message_id,),
        )
        if not row:
            return None
        return {
            "id": row["id"],
            "app_id": row["app_id"],
            "role": row["role"],
            "content": row["content"],
            "conversation_flow": loads_json(row.get("conversation_flow_json"), []),
            "tool_calls": loads_json(row.get("tool_calls_json"), []),
            "lock_version": int(row["lock_version"]),
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    def load_flow(self, message_id: str) -> FlowSnapshot | None:
        row = self._fetchone(
            "SELECT id, app_id, conversation_flow_json, tool_calls_json, lock_version FROM messages WHERE id=?",
            (message_id,),
        )
        if not row:
            return None
        flow = loads_json(row.get("conversation_flow_json"), [])
        records = loads_json(row.get("tool_calls_json"), [])
        return FlowSnapshot(
            message_id=row["id"],
            app_id=row["app_id"],
            flow=flow if isinstance(flow, list) else [],
            records=records if isinstance(records, list) else [],
            version=int(row["lock_version"]),
        )

    def compare_and_swap_flow(
        self,
        message_id: str,
        *,
        flow: list[Any],
        records: list[dict[str, Any]],
        expected_version: int,
    ) -> int:
        """Write the flow only if nobody committed since ``expected_version`` was read.

        Returns the new version; raises FlowConflictError when the row moved on.
        """
        cur = self._execute(
            """
            UPDATE messages
            SET conversation_flow_json=?, tool_calls_json=?, lock_version=lock_version + 1, updated_at=?
            WHERE id=? AND lock_version=?
            """,
            (dumps_json(flow), dumps_json(records), utc_now_iso(), message_id, expected_version),
        )
        if cur.rowcount != 1:
            raise FlowConflictError(message_id, expected_version)
        return expected_version + 1

    # Executions

    def create_execution(self, execution_id: str, message_id: str, *, iteration_count: int, tool_count: int) -> None:
        self._execute(
            "INSERT INTO executions(id, message_id, iteration_count, tool_count, created_at) VALUES(?, ?, ?, ?, ?)",
            (execution_id, message_id, iteration_count, tool_count, utc_now_iso()),
        )

    def get_execution(self, execution_id: str) -> dict[str, Any] | None:
        return self._fetchone(
            "SELECT id, message_id, iteration_count, tool_count, created_at FROM executions WHERE id=?",
            (execution_id,),
        )

    def latest_execution(self, message_id: str) -> dict[str, Any] | None:
        return self._fetchone(
            """
            SELECT id, message_id, iteration_count, tool_count, created_at FROM executions
            WHERE message_id=? ORDER BY created_at DESC, rowid DESC LIMIT 1
            """,
            (message_id,),
        )

    def delete_execution(self, execution_id: str) -> None:
        self._execute("DELETE FROM execution_controls WHERE execution_id=?", (execution_id,))
        self._execute("DELETE FROM executions WHERE id=?", (execution_id,))

    def execution_owner(self, execution_id: str) -> dict[str, Any] | None:
        return self._fetchone(
            """
            SELECT e.id AS execution_id, m.id AS message_id, a.id AS app_id, a.team_id AS team_id
            FROM executions e
            JOIN messages m ON m.id = e.message_id
            JOIN apps a ON a.id = m.app_id
            WHERE e.id=?
            """,
            (execution_id,),
        )

    def get_execution_control(self, execution_id: str) -> dict[str, Any] | None:
        row = self._fetchone(
            "SELECT execution_id, state, approved_files_json, decided_by, updated_at FROM execution_controls WHERE execution_id=?",
            (execution_id,),
        )
        if not row:
            return None
        return {
            "execution_id": row["execution_id"],
            "state": row["state"],
            "approved_files": loads_json(row.get("approved_files_json"), []),
            "decided_by": row.get("decided_by"),
            "updated_at": row["updated_at"],
        }

    def set_execution_control(
        self,
        execution_id: str,
        *,
        state: str,
        decided_by: str | None,
        approved_files: list[str] | None = None,
    ) -> dict[str, Any]:
        self._execute(
            """
            INSERT INTO execution_controls(execution_id, state, approved_files_json, decided_by, updated_at)
            VALUES(?, ?, ?, ?, ?)
            ON CONFLICT(execution_id) DO UPDATE SET
              state=excluded.state,
              approved_files_json=COALESCE(excluded.approved_files_json, execution_controls.approved_files_json),
              decided_by=excluded.decided_by,
              updated_at=excluded.updated_at
            """,
            (
                execution_id,
                state,
                dumps_json(approved_files) if approved_files is not None else None,
                decided_by,
                utc_now_iso(),
            ),
        )
        return self.get_execution_control(execution_id)  # type: ignore[return-value]

    # Broadcast event log

    def add_event(self, channel: str, payload: dict[str, Any]) -> dict[str, Any]:
        now = utc_now_iso()
        cur = self._execute(
            "INSERT INTO events(channel, ts, payload_json) VALUES(?, ?, ?)",
            (channel, now, dumps_json(payload)),
        )
        return {"id": int(cur.lastrowid), "channel": channel, "ts": now, "payload": payload}

    def list_events(self, *, channel: str, after_id: int = 0, limit: int = 200) -> list[dict[str, Any]]:
        rows = self._fetchall(
            """
            SELECT id, channel, ts, payload_json
            FROM events
            WHERE channel = ? AND id > ?
            ORDER BY id ASC
            LIMIT ?
            """,
            (channel, after_id, limit),
        )
        return [
            {
                "id": int(row["id"]),
                "channel": row["channel"],
                "ts": row["ts"],
                "payload": loads_json(row.get("payload_json"), {}),
            }
            for row in rows
        ]

    # File tracking

    def get_file_hash(self, app_id: str, path: str) -> str | None:
        row = self._fetchone("SELECT hash FROM file_hashes WHERE app_id=? AND path=?", (app_id, path))
        return row["hash"] if row else None

    def swap_file_hash(self, app_id: str, path: str, new_hash: str) -> tuple[bool, str | None]:
        """Store ``new_hash`` unless it is already tracked; returns (changed, old_hash)."""
        with self.ctx.lock:
            row = self.ctx.conn.execute(
                "SELECT hash FROM file_hashes WHERE app_id=? AND path=?",
                (app_id, path),
            ).fetchone()
            old_hash = row["hash"] if row else None
            if old_hash == new_hash:
                return False, old_hash
            self.ctx.conn.execute(
                """
                INSERT INTO file_hashes(app_id, path, hash, updated_at) VALUES(?, ?, ?, ?)
                ON CONFLICT(app_id, path) DO UPDATE SET hash=excluded.hash, updated_at=excluded.updated_at
                """,
                (app_id, path, new_hash, utc_now_iso()),
            )
            self.ctx.conn.commit()
        return True, old_hash

    def delete_file_hash(self, app_id: str, path: str) -> bool:
        cur = self._execute("DELETE FROM file_hashes WHERE app_id=? AND path=?", (app_id, path))
        return cur.rowcount > 0

    def list_tracked_paths(self, app_id: str) -> list[str]:
        rows = self._fetchall("SELECT path FROM file_hashes WHERE app_id=? ORDER BY path ASC", (app_id,))
        return [row["path"] for row in rows]

    def log_file_change(self, app_id: str, path: str, *, old_hash: str | None, new_hash: str, max_entries: int) -> None:
        with self.ctx.lock:
            self.ctx.conn.execute(
                "INSERT INTO file_changes(app_id, path, old_hash, new_hash, changed_at) VALUES(?, ?, ?, ?, ?)",
                (app_id, path, old_hash, new_hash, time.time()),
            )
            self.ctx.conn.execute(
                """
                DELETE FROM file_changes
                WHERE app_id=? AND id NOT IN (
                  SELECT id FROM file_changes WHERE app_id=? ORDER BY id DESC LIMIT ?
                )
                """,
                (app_id, app_id, max_entries),
            )
            self.ctx.conn.commit()

    def changed_paths_since(self, app_id: str, since: float) -> list[str]:
        rows = self._fetchall(
            "SELECT path, MAX(id) AS last_id FROM file_changes WHERE app_id=? AND changed_at>=? GROUP BY path ORDER BY last_id ASC",
            (app_id, since),
        )
        return [row["path"] for row in rows]

    # Context cache blocks

    def put_context_block(self, app_id: str, path: str, block: str) -> None:
        self._execute(
            """
            INSERT INTO context_cache(app_id, path, block, created_at) VALUES(?, ?, ?, ?)
            ON CONFLICT(app_id, path) DO UPDATE SET block=excluded.block, created_at=excluded.created_at
            """,
            (app_id, path, block, utc_now_iso()),
        )

    def get_context_block(self, app_id: str, path: str) -> str | None:
        row = self._fetchone("SELECT block FROM context_cache WHERE app_id=? AND path=?", (app_id, path))
        return row["block"] if row else None

    def delete_context_block(self, app_id: str, path: str) -> int:
        return self._execute("DELETE FROM context_cache WHERE app_id=? AND path=?", (app_id, path)).rowcount

    def clear_context_blocks(self, app_id: str) -> int:
        return self._execute("DELETE FROM context_cache WHERE app_id=?", (app_id,)).rowcount
