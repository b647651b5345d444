"""Run registry: persistent run state backed by sqlite."""

import logging
import sqlite3
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from ci_orchestrator.errors import InvalidTransition, RunNotFound, StorageError
from ci_orchestrator.models.definition import PipelineDefinition
from ci_orchestrator.models.run import (
    RUN_TRANSITIONS,
    STAGE_TRANSITIONS,
    TERMINAL_RUN_STATUSES,
    Run,
    RunStatus,
    StageResult,
    TriggerEvent,
)

log = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS counters (
  name TEXT PRIMARY KEY,
  value INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS runs (
  number INTEGER PRIMARY KEY,
  pipeline TEXT NOT NULL,
  status TEXT NOT NULL,
  created_at TEXT NOT NULL,
  run_json TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS runs_pipeline ON runs(pipeline);
CREATE TABLE IF NOT EXISTS cancel_requests (
  run_number INTEGER PRIMARY KEY,
  requested_at TEXT NOT NULL
);
"""

RUN_COUNTER = "run_number"


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, kw_only=True)
class RunFilter:
    """Query filter for run history."""

    pipeline: str | None = None
    status: RunStatus | None = None
    limit: int | None = None


class RunRegistry:
    """Persists runs and assigns run numbers.

    Run numbers come from a counter row incremented inside an immediate
    transaction, so they are unique and strictly increasing across threads,
    processes and restarts. Status and stage updates only move forward and
    re-applying the current state is a no-op.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = path
        self._lock = threading.Lock()
        try:
            if isinstance(path, Path):
                path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(
                path, timeout=30, isolation_level=None, check_same_thread=False
            )
            self._conn.execute("PRAGMA journal_mode=WAL;")
            self._conn.execute("PRAGMA synchronous=NORMAL;")
            self._conn.executescript(SCHEMA)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open run registry at {path}: {e}") from e

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def create_run(self, definition: PipelineDefinition, trigger: TriggerEvent) -> Run:
        """Create a queued run with the next run number."""
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO counters(name, value) VALUES(?, 1) "
                "ON CONFLICT(name) DO UPDATE SET value = value + 1",
                (RUN_COUNTER,),
            )
            (number,) = conn.execute(
                "SELECT value FROM counters WHERE name = ?", (RUN_COUNTER,)
            ).fetchone()
            run = Run(
                number=number,
                pipeline=definition.name,
                trigger=trigger,
                stages=[StageResult(name=stage.name) for stage in definition.stages],
                created_at=utc_now(),
            )
            conn.execute(
                "INSERT INTO runs(number, pipeline, status, created_at, run_json) "
                "VALUES(?, ?, ?, ?, ?)",
                (
                    run.number,
                    run.pipeline,
                    run.status,
                    run.created_at.isoformat(),
                    run.model_dump_json(),
                ),
            )

        log.info("Created run #%d for pipeline %s", run.number, run.pipeline)
        return run

    def update_status(
        self, number: int, status: RunStatus, *, image_ref: str | None = None
    ) -> Run:
        """Move a run to ``status``.

        Raises:
            RunNotFound: If the run does not exist
            InvalidTransition: If the status would move backwards

        """
        with self._transaction() as conn:
            run = self._load(conn, number)
            if run.status == status:
                return run
            if status not in RUN_TRANSITIONS[run.status]:
                raise InvalidTransition(
                    f"Run #{number} cannot move from {run.status} to {status}"
                )

            update: dict[str, object] = {"status": status}
            if status == "running":
                update["started_at"] = utc_now()
            if status in TERMINAL_RUN_STATUSES:
                update["finished_at"] = utc_now()
            if image_ref is not None:
                update["image_ref"] = image_ref
            run = run.model_copy(update=update)
            self._save(conn, run)

        log.info("Run #%d is now %s", number, status)
        return run

    def record_stage_result(
        self, number: int, result: StageResult, *, warning: bool = False
    ) -> Run:
        """Store a stage result, replacing the stage's previous entry.

        ``warning`` marks a failure that does not fail the run.

        Raises:
            RunNotFound: If the run does not exist
            InvalidTransition: If the stage is unknown or would move backwards

        """
        with self._transaction() as conn:
            run = self._load(conn, number)
            try:
                current = run.stage_result(result.name)
            except KeyError:
                raise InvalidTransition(
                    f"Run #{number} has no stage '{result.name}'"
                ) from None

            if current.status == result.status and current.is_terminal:
                return run
            if current.status != result.status:
                if result.status not in STAGE_TRANSITIONS[current.status]:
                    raise InvalidTransition(
                        f"Stage '{result.name}' of run #{number} cannot move from "
                        f"{current.status} to {result.status}"
                    )
                if (
                    current.status == "pending"
                    and result.status == "failed"
                    and result.reason != "aborted"
                ):
                    raise InvalidTransition(
                        f"Stage '{result.name}' of run #{number} failed without running"
                    )

            stages = [result if s.name == result.name else s for s in run.stages]
            update: dict[str, object] = {"stages": stages}
            if warning and result.name not in run.warnings:
                update["warnings"] = [*run.warnings, result.name]
            run = run.model_copy(update=update)
            self._save(conn, run)

        return run

    def get(self, number: int) -> Run:
        """Return a run.

        Raises:
            RunNotFound: If the run does not exist

        """
        with self._transaction() as conn:
            return self._load(conn, number)

    def request_cancel(self, number: int) -> Run:
        """Record a cancellation request for the process driving the run.

        Raises:
            RunNotFound: If the run does not exist

        """
        with self._transaction() as conn:
            run = self._load(conn, number)
            conn.execute(
                "INSERT OR IGNORE INTO cancel_requests(run_number, requested_at) "
                "VALUES(?, ?)",
                (number, utc_now().isoformat()),
            )

        log.info("Recorded cancellation request for run #%d", number)
        return run

    def cancel_requested(self, number: int) -> bool:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT 1 FROM cancel_requests WHERE run_number = ?", (number,)
            ).fetchone()
        return row is not None

    def list(self, run_filter: RunFilter | None = None) -> Sequence[Run]:
        """Return runs matching the filter, newest first."""
        run_filter = run_filter or RunFilter()
        query = "SELECT run_json FROM runs"
        clauses: list[str] = []
        params: list[object] = []
        if run_filter.pipeline is not None:
            clauses.append("pipeline = ?")
            params.append(run_filter.pipeline)
        if run_filter.status is not None:
            clauses.append("status = ?")
            params.append(run_filter.status)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY number DESC"
        if run_filter.limit is not None:
            query += " LIMIT ?"
            params.append(run_filter.limit)

        with self._transaction() as conn:
            rows = conn.execute(query, params).fetchall()
        return [Run.model_validate_json(row[0]) for row in rows]

    def prune(self, max_runs: int) -> int:
        """Evict the oldest terminal runs beyond ``max_runs``.

        The run counter is never reset. Returns the number of evicted runs.
        """
        terminal = tuple(sorted(TERMINAL_RUN_STATUSES))
        placeholders = ", ".join("?" for _ in terminal)
        with self._transaction() as conn:
            (total,) = conn.execute("SELECT COUNT(*) FROM runs").fetchone()
            excess = total - max_runs
            if excess <= 0:
                return 0
            cursor = conn.execute(
                f"DELETE FROM runs WHERE number IN ("  # noqa: S608
                f"SELECT number FROM runs WHERE status IN ({placeholders}) "
                f"ORDER BY number ASC LIMIT ?)",
                (*terminal, excess),
            )
            evicted = cursor.rowcount
            conn.execute(
                "DELETE FROM cancel_requests "
                "WHERE run_number NOT IN (SELECT number FROM runs)"
            )

        log.info("Evicted %d run(s) beyond retention limit %d", evicted, max_runs)
        return evicted

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StorageError(f"Run registry unavailable: {e}") from e
            try:
                yield self._conn
            except sqlite3.Error as e:
                self._conn.execute("ROLLBACK")
                raise StorageError(f"Run registry update failed: {e}") from e
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            try:
                self._conn.execute("COMMIT")
            except sqlite3.Error as e:
                raise StorageError(f"Failed to commit run registry update: {e}") from e

    def _load(self, conn: sqlite3.Connection, number: int) -> Run:
        try:
            row = conn.execute(
                "SELECT run_json FROM runs WHERE number = ?", (number,)
            ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read run #{number}: {e}") from e
        if row is None:
            raise RunNotFound(f"Run #{number} not found")
        return Run.model_validate_json(row[0])

    def _save(self, conn: sqlite3.Connection, run: Run) -> None:
        try:
            conn.execute(
                "UPDATE runs SET status = ?, run_json = ? WHERE number = ?",
                (run.status, run.model_dump_json(), run.number),
            )
        except sqlite3.Error as e:
            raise StorageError(f"Failed to write run #{run.number}: {e}") from e
