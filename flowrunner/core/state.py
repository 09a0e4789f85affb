"""SQLite run storage.

A run row holds the lifecycle of one workflow execution; node results live
in their own table so progress can be recorded as each node finishes.
"""

import json
import sqlite3
import uuid
from collections.abc import Generator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, Field

from flowrunner.core.graph_schema import NodeResult


class RunStatus(str, Enum):
    """Lifecycle of a run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED})


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class _SafeJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime and Pydantic models."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json", by_alias=True)
        if isinstance(obj, Path):
            return str(obj)
        return super().default(obj)


def _safe_json_dumps(obj: Any) -> str:
    """Serialize object to JSON string, handling datetime and Pydantic models."""
    return json.dumps(obj, cls=_SafeJSONEncoder, ensure_ascii=False)


class Run(BaseModel):
    """One execution of a workflow against a specific input."""

    id: str
    workflow_id: str | None = None
    status: RunStatus
    input_data: str = ""
    node_results: dict[str, NodeResult] = Field(default_factory=dict)
    error_message: str | None = None
    error_node_id: str | None = None
    started_at: datetime
    completed_at: datetime | None = None

    def to_json(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workflowId": self.workflow_id,
            "status": self.status.value,
            "inputData": self.input_data,
            "nodeResults": {k: v.to_json() for k, v in self.node_results.items()},
            "errorMessage": self.error_message,
            "errorNodeId": self.error_node_id,
            "startedAt": self.started_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }


class RunRecorder(Protocol):
    """Persistence collaborator the runner reports run progress to."""

    def create_run(self, workflow_id: str | None, input_data: str) -> str: ...

    def record_node_result(self, run_id: str, node_id: str, result: NodeResult) -> None: ...

    def update_run(
        self,
        run_id: str,
        status: RunStatus,
        node_results: Mapping[str, NodeResult] | None = None,
        error_message: str | None = None,
        error_node_id: str | None = None,
        completed_at: datetime | None = None,
    ) -> None: ...


class RunNotFoundError(KeyError):
    """No run with the given id."""

    pass


class Database:
    """SQLite-backed RunRecorder."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS runs (
        id TEXT PRIMARY KEY,
        workflow_id TEXT,
        status TEXT NOT NULL,
        input_data TEXT,
        error_message TEXT,
        error_node_id TEXT,
        started_at TIMESTAMP NOT NULL,
        completed_at TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS node_results (
        run_id TEXT NOT NULL REFERENCES runs(id) ON DELETE CASCADE,
        node_id TEXT NOT NULL,
        status TEXT NOT NULL,
        result JSON NOT NULL,
        recorded_at TIMESTAMP NOT NULL,
        PRIMARY KEY (run_id, node_id)
    );

    CREATE INDEX IF NOT EXISTS idx_runs_started ON runs(started_at);
    CREATE INDEX IF NOT EXISTS idx_runs_workflow ON runs(workflow_id);
    """

    def __init__(self, db_path: str | Path = ".flowrunner/state.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema and enable WAL mode for better concurrency."""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections.

        Uses a 30-second busy timeout to handle concurrent access gracefully
        instead of immediately failing with "database is locked".
        """
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 30000")
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # --- RunRecorder ---

    def create_run(self, workflow_id: str | None, input_data: str) -> str:
        """Insert a running run and return its id."""
        run_id = str(uuid.uuid4())
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO runs (id, workflow_id, status, input_data, started_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (run_id, workflow_id, RunStatus.RUNNING.value, input_data, _utc_now().isoformat()),
            )
        return run_id

    def _upsert_result(
        self, conn: sqlite3.Connection, run_id: str, node_id: str, result: NodeResult
    ) -> None:
        conn.execute(
            """
            INSERT INTO node_results (run_id, node_id, status, result, recorded_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(run_id, node_id) DO UPDATE SET
                status = excluded.status,
                result = excluded.result,
                recorded_at = excluded.recorded_at
            """,
            (
                run_id,
                node_id,
                result.status.value,
                _safe_json_dumps(result.to_json()),
                _utc_now().isoformat(),
            ),
        )

    def record_node_result(self, run_id: str, node_id: str, result: NodeResult) -> None:
        """Persist one node's result while the run is in progress."""
        with self._connect() as conn:
            self._upsert_result(conn, run_id, node_id, result)

    def update_run(
        self,
        run_id: str,
        status: RunStatus,
        node_results: Mapping[str, NodeResult] | None = None,
        error_message: str | None = None,
        error_node_id: str | None = None,
        completed_at: datetime | None = None,
    ) -> None:
        """Update run status and, optionally, replace its node results.

        Terminal statuses get a completion time even when none is passed.

        Raises:
            RunNotFoundError: If the run does not exist
        """
        if completed_at is None and status in TERMINAL_STATUSES:
            completed_at = _utc_now()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE runs SET status = ?, error_message = ?, error_node_id = ?,
                    completed_at = COALESCE(?, completed_at)
                WHERE id = ?
                """,
                (
                    status.value,
                    error_message,
                    error_node_id,
                    completed_at.isoformat() if completed_at else None,
                    run_id,
                ),
            )
            if cursor.rowcount == 0:
                raise RunNotFoundError(run_id)
            for node_id, result in (node_results or {}).items():
                self._upsert_result(conn, run_id, node_id, result)

    # --- Queries ---

    def get_run(self, run_id: str) -> Run | None:
        """Get a run with its node results."""
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()
            if not row:
                return None
            result_rows = conn.execute(
                "SELECT node_id, result FROM node_results WHERE run_id = ? ORDER BY recorded_at",
                (run_id,),
            ).fetchall()
        run = self._row_to_run(row)
        run.node_results = {
            r["node_id"]: NodeResult.model_validate(json.loads(r["result"])) for r in result_rows
        }
        return run

    def list_runs(self, limit: int = 20, workflow_id: str | None = None) -> list[Run]:
        """Most recent runs first, without node results."""
        query = "SELECT * FROM runs"
        params: list[Any] = []
        if workflow_id is not None:
            query += " WHERE workflow_id = ?"
            params.append(workflow_id)
        query += " ORDER BY started_at DESC LIMIT ?"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_run(row) for row in rows]

    def _row_to_run(self, row: sqlite3.Row) -> Run:
        return Run(
            id=row["id"],
            workflow_id=row["workflow_id"],
            status=RunStatus(row["status"]),
            input_data=row["input_data"] or "",
            error_message=row["error_message"],
            error_node_id=row["error_node_id"],
            started_at=datetime.fromisoformat(row["started_at"]),
            completed_at=(
                datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None
            ),
        )
