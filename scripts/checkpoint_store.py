#!/usr/bin/env python3
"""
Checkpoint Store for workflow runs

Persists ``WorkflowState`` snapshots keyed by run id so a caller can
inspect a long run or resume it after a restart.  State lives in memory;
when ``db_path`` is given every save is also written to SQLite.

There is one writer per run id (the executor's control flow after each
barrier group), so the store has no conflict resolution: last writer wins.

Usage:
    store = CheckpointStore(db_path=".dxgraph/checkpoints.db")
    store.save(state.run_id, state)
    state = store.load(run_id)
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from workflow.protocol import WorkflowState

logger = logging.getLogger(__name__)

__all__ = ["CheckpointStore"]

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS checkpoints (
        run_id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        status TEXT NOT NULL,
        state TEXT NOT NULL,
        updated_at REAL NOT NULL
    )
"""

# SQLite reports a locked database as OperationalError; retried briefly.
_db_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.05, max=1),
    retry=retry_if_exception_type(sqlite3.OperationalError),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


class CheckpointStore:
    """In-memory checkpoint store with optional SQLite backing.

    Args:
        db_path: SQLite file to mirror checkpoints into.  ``None`` or an
            empty string keeps everything in memory.
    """

    def __init__(self, db_path: Optional[Union[str, Path]] = None) -> None:
        self._states: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()
        self._db_path = Path(db_path) if db_path else None
        if self._db_path is not None:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._init_db()

    @property
    def durable(self) -> bool:
        return self._db_path is not None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def save(self, run_id: str, state: Union[WorkflowState, Dict[str, Any]]) -> None:
        """Store *state* under *run_id*, replacing any earlier checkpoint.

        Raises ``sqlite3.Error`` when the durable write still fails after
        retries; the in-memory copy is kept either way.
        """
        payload = state.to_dict() if isinstance(state, WorkflowState) else dict(state)
        with self._lock:
            self._states[run_id] = payload
        if self._db_path is not None:
            self._write(run_id, payload)
        logger.debug("Checkpoint saved for run %s (%s)", run_id, payload.get("status"))

    def load(self, run_id: str) -> Optional[WorkflowState]:
        """Return the latest checkpoint for *run_id*, or ``None``."""
        with self._lock:
            payload = self._states.get(run_id)
        if payload is None and self._db_path is not None:
            payload = self._read(run_id)
            if payload is not None:
                with self._lock:
                    self._states[run_id] = payload
        if payload is None:
            return None
        return WorkflowState.from_dict(payload)

    def delete(self, run_id: str) -> bool:
        with self._lock:
            removed = self._states.pop(run_id, None) is not None
        if self._db_path is not None:
            removed = self._delete(run_id) or removed
        return removed

    def list_runs(self, workflow_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Summaries of stored runs, oldest first."""
        summaries: Dict[str, Dict[str, Any]] = {}
        if self._db_path is not None:
            for row in self._rows():
                summaries[row["run_id"]] = row
        with self._lock:
            for run_id, payload in self._states.items():
                summaries[run_id] = {
                    "run_id": run_id,
                    "workflow_id": payload.get("workflow_id", ""),
                    "status": payload.get("status", ""),
                    "updated_at": payload.get("finished_at") or payload.get("started_at"),
                }
        runs = [
            s for s in summaries.values()
            if workflow_id is None or s["workflow_id"] == workflow_id
        ]
        return sorted(runs, key=lambda s: (s["updated_at"] or 0, s["run_id"]))

    # ------------------------------------------------------------------
    # SQLite backing
    # ------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=5.0)
        conn.row_factory = sqlite3.Row
        return conn

    @_db_retry
    def _init_db(self) -> None:
        conn = self._connect()
        try:
            conn.execute(_SCHEMA)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_checkpoints_workflow "
                "ON checkpoints(workflow_id)"
            )
            conn.commit()
        finally:
            conn.close()

    @_db_retry
    def _write(self, run_id: str, payload: Dict[str, Any]) -> None:
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT OR REPLACE INTO checkpoints
                    (run_id, workflow_id, status, state, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    run_id,
                    payload.get("workflow_id", ""),
                    payload.get("status", ""),
                    json.dumps(payload, default=str),
                    time.time(),
                ),
            )
            conn.commit()
        finally:
            conn.close()

    @_db_retry
    def _read(self, run_id: str) -> Optional[Dict[str, Any]]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT state FROM checkpoints WHERE run_id = ?", (run_id,)
            ).fetchone()
        finally:
            conn.close()
        return json.loads(row["state"]) if row else None

    @_db_retry
    def _delete(self, run_id: str) -> bool:
        conn = self._connect()
        try:
            cursor = conn.execute("DELETE FROM checkpoints WHERE run_id = ?", (run_id,))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    @_db_retry
    def _rows(self) -> List[Dict[str, Any]]:
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT run_id, workflow_id, status, updated_at FROM checkpoints"
            ).fetchall()
        finally:
            conn.close()
        return [dict(row) for row in rows]
