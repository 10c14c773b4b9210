"""SQLite implementation of the checkpoint repository."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from pathlib import Path
from typing import Any

from .models import FlowCheckpoint
from .repository import CheckpointRepository

_SCHEMA = """
CREATE TABLE IF NOT EXISTS flow_checkpoints (
    flow_id TEXT PRIMARY KEY,
    workflow_id TEXT NOT NULL,
    status TEXT NOT NULL,
    saved_at TEXT NOT NULL,
    body TEXT NOT NULL
)
"""

_UPSERT = """
INSERT INTO flow_checkpoints (flow_id, workflow_id, status, saved_at, body)
VALUES (?, ?, ?, ?, ?)
ON CONFLICT(flow_id) DO UPDATE SET
    workflow_id = excluded.workflow_id,
    status = excluded.status,
    saved_at = excluded.saved_at,
    body = excluded.body
"""


class SQLiteCheckpointRepository(CheckpointRepository):
    """Keep the latest checkpoint per flow in a single SQLite table.

    The checkpoint itself is stored as its JSON dump; the other columns only
    exist for listing and ordering.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        # Calls arrive from worker threads via asyncio.to_thread.
        self._lock = threading.Lock()
        with self._conn:
            self._conn.execute(_SCHEMA)

    def _query(self, sql: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock, self._conn:
            return self._conn.execute(sql, params).fetchall()

    def close(self) -> None:
        self._conn.close()

    async def save_checkpoint(self, checkpoint: FlowCheckpoint) -> None:
        await asyncio.to_thread(
            self._query,
            _UPSERT,
            checkpoint.flow_id,
            checkpoint.workflow_id,
            checkpoint.status.value,
            checkpoint.saved_at.isoformat(),
            checkpoint.model_dump_json(by_alias=True),
        )

    async def get_checkpoint(self, flow_id: str) -> FlowCheckpoint | None:
        rows = await asyncio.to_thread(
            self._query, "SELECT body FROM flow_checkpoints WHERE flow_id = ?", flow_id
        )
        if not rows:
            return None
        return FlowCheckpoint.model_validate_json(rows[0]["body"])

    async def list_checkpoints(self) -> list[FlowCheckpoint]:
        rows = await asyncio.to_thread(
            self._query, "SELECT body FROM flow_checkpoints ORDER BY saved_at"
        )
        return [FlowCheckpoint.model_validate_json(row["body"]) for row in rows]

    async def delete_checkpoint(self, flow_id: str) -> None:
        await asyncio.to_thread(
            self._query, "DELETE FROM flow_checkpoints WHERE flow_id = ?", flow_id
        )
