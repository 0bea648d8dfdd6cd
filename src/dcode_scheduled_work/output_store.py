"""SQLite-backed store of every record a run produces.

Each output kind gets its own table. Rows are keyed by ``(run_id, node_id,
iteration)`` and are never updated in place: writing the same key again adds a
newer row and readers take the newest one. Run state is always re-derived from
these rows, which is what makes a run resumable after a crash.
"""

from __future__ import annotations

import logging
import secrets
import sqlite3
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from .errors import PlanChangedError
from .stages import OUTPUT_SCHEMAS

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_RUNS_TABLE = "_runs"


def new_run_id() -> str:
    return f"run-{secrets.token_hex(4)}"


@dataclass(frozen=True)
class StoredRecord:
    kind: str
    node_id: str
    iteration: int
    seq: int
    record: BaseModel
    created_at: str


class OutputStore:
    """Append-only, per-run view over the output database.

    One connection is shared by every thread of the run; writes and reads are
    serialized through a lock.
    """

    def __init__(self, db_path: Path, *, run_id: str) -> None:
        if not run_id.strip():
            raise ValueError("run_id must be non-empty")
        self.db_path = db_path
        self.run_id = run_id
        self._lock = threading.Lock()
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._ensure_schema()

    # -- lifecycle --------------------------------------------------------

    def _ensure_schema(self) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                f'CREATE TABLE IF NOT EXISTS "{_RUNS_TABLE}" ('
                "run_id TEXT PRIMARY KEY, plan_fingerprint TEXT NOT NULL, created_at TEXT NOT NULL)"
            )
            for kind in OUTPUT_SCHEMAS:
                self._conn.execute(
                    f'CREATE TABLE IF NOT EXISTS "{kind}" ('
                    "seq INTEGER PRIMARY KEY AUTOINCREMENT, "
                    "run_id TEXT NOT NULL, node_id TEXT NOT NULL, iteration INTEGER NOT NULL, "
                    "payload TEXT NOT NULL, created_at TEXT NOT NULL)"
                )
                self._conn.execute(
                    f'CREATE INDEX IF NOT EXISTS "ix_{kind}_node" ON "{kind}" (run_id, node_id, seq)'
                )

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "OutputStore":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def begin_run(self, plan_fingerprint: str) -> bool:
        """Register this run, or confirm a resumed run still matches its plan.

        Returns:
            True when the run was newly created, False when it already existed.

        Raises:
            PlanChangedError: If the run exists with a different plan fingerprint.
        """
        with self._lock, self._conn:
            row = self._conn.execute(
                f'SELECT plan_fingerprint FROM "{_RUNS_TABLE}" WHERE run_id = ?', (self.run_id,)
            ).fetchone()
            if row is not None:
                if row[0] != plan_fingerprint:
                    raise PlanChangedError(
                        f"run {self.run_id} was started with a different work plan; "
                        "start a new run instead of resuming"
                    )
                return False
            self._conn.execute(
                f'INSERT INTO "{_RUNS_TABLE}" (run_id, plan_fingerprint, created_at) VALUES (?, ?, ?)',
                (self.run_id, plan_fingerprint, _now()),
            )
        logger.info("Registered run %s in %s", self.run_id, self.db_path)
        return True

    @staticmethod
    def latest_run_id(db_path: Path) -> str | None:
        """Most recently registered run in ``db_path``, or None if there is none."""
        if not db_path.is_file():
            return None
        conn = sqlite3.connect(str(db_path))
        try:
            row = conn.execute(
                f'SELECT run_id FROM "{_RUNS_TABLE}" ORDER BY created_at DESC, rowid DESC LIMIT 1'
            ).fetchone()
        except sqlite3.OperationalError:
            return None
        finally:
            conn.close()
        return row[0] if row else None

    # -- writes -----------------------------------------------------------

    def append(self, kind: str, node_id: str, iteration: int, record: BaseModel) -> StoredRecord:
        schema = _schema_for(kind)
        if not isinstance(record, schema):
            raise TypeError(f"{kind} expects {schema.__name__}, got {type(record).__name__}")
        if iteration < 0:
            raise ValueError(f"iteration must be non-negative (got {iteration})")
        payload = record.model_dump_json()
        created_at = _now()
        with self._lock, self._conn:
            cursor = self._conn.execute(
                f'INSERT INTO "{kind}" (run_id, node_id, iteration, payload, created_at) VALUES (?, ?, ?, ?, ?)',
                (self.run_id, node_id, iteration, payload, created_at),
            )
            seq = int(cursor.lastrowid)
        logger.debug("Stored %s record for %s (iteration %d)", kind, node_id, iteration)
        return StoredRecord(kind=kind, node_id=node_id, iteration=iteration, seq=seq, record=record, created_at=created_at)

    # -- reads ------------------------------------------------------------

    def latest_entry(self, kind: str, node_id: str) -> StoredRecord | None:
        rows = self._select(kind, "node_id = ?", (node_id,), order="DESC", limit=1)
        return rows[0] if rows else None

    def latest(self, kind: str, node_id: str) -> Any:
        """Newest record for a node across all iterations, or None."""
        entry = self.latest_entry(kind, node_id)
        return entry.record if entry is not None else None

    def get(self, kind: str, node_id: str, iteration: int) -> Any:
        """Newest record for a node within one iteration, or None."""
        rows = self._select(kind, "node_id = ? AND iteration = ?", (node_id, iteration), order="DESC", limit=1)
        return rows[0].record if rows else None

    def history(self, kind: str, node_id: str) -> list[StoredRecord]:
        """Every record for a node, oldest first."""
        return self._select(kind, "node_id = ?", (node_id,), order="ASC")

    def count(self, kind: str) -> int:
        _schema_for(kind)
        with self._lock:
            row = self._conn.execute(
                f'SELECT COUNT(*) FROM "{kind}" WHERE run_id = ?', (self.run_id,)
            ).fetchone()
        return int(row[0])

    def _select(
        self,
        kind: str,
        where: str,
        params: tuple[Any, ...],
        *,
        order: str,
        limit: int | None = None,
    ) -> list[StoredRecord]:
        schema = _schema_for(kind)
        query = (
            f'SELECT node_id, iteration, seq, payload, created_at FROM "{kind}" '
            f"WHERE run_id = ? AND {where} ORDER BY seq {order}"
        )
        if limit is not None:
            query += f" LIMIT {int(limit)}"
        with self._lock:
            rows = self._conn.execute(query, (self.run_id, *params)).fetchall()
        return [
            StoredRecord(
                kind=kind,
                node_id=node_id,
                iteration=iteration,
                seq=seq,
                record=_decode(schema, payload, kind=kind, node_id=node_id),
                created_at=created_at,
            )
            for node_id, iteration, seq, payload, created_at in rows
        ]


def _schema_for(kind: str) -> type[BaseModel]:
    try:
        return OUTPUT_SCHEMAS[kind]
    except KeyError as exc:
        raise KeyError(f"Unknown output kind: {kind}") from exc


def _decode(schema: type[ModelT], payload: str, *, kind: str, node_id: str) -> ModelT:
    try:
        return schema.model_validate_json(payload)
    except ValidationError as exc:
        raise ValueError(f"stored {kind} record for {node_id} failed validation: {exc}") from exc


def _now() -> str:
    return datetime.now(UTC).isoformat()
