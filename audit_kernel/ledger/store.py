"""
Snapshot Store — append-only audit ledger of normalized records.

Behavioral Contract:
- Append-only. History rows are never edited or deleted; corrections are
  new snapshots.
- Snapshots for one identity are totally ordered by captured_at. An append
  whose captured_at does not move past the latest one is nudged forward
  by a microsecond.
- latest() reads a materialized latest-per-identity index that is written
  in the same transaction as the snapshot row, and can be rebuilt from
  history at any time.
- Only the latest snapshot of an identity accepts extension marks and a
  last-verified time.
- Lookups accept either the identity or the upstream source id.

Prototype: SQLite. Production: PostgreSQL.
"""

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterable, Iterator, List, Optional

from audit_kernel.errors import PersistenceError
from audit_kernel.models.record import Record
from audit_kernel.models.run import RunLog, RunMode, RunStatus
from audit_kernel.models.snapshot import (
    ChangeType,
    ExtensionMark,
    LedgerStats,
    Snapshot,
    StatusChange,
)
from audit_kernel.observability.logging import get_logger

logger = get_logger("audit_kernel.ledger.store")

_SNAPSHOT_COLUMNS = (
    "id, identity, source_id, account, change_type, previous_status, "
    "captured_at, last_verified_at, payload_json, extension_marks_json"
)


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat(timespec="microseconds") if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SnapshotStore:
    """
    Append-only snapshot ledger plus the run log.
    Safe to share between threads; every statement runs under one lock.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._lock = threading.RLock()
        try:
            self._conn = sqlite3.connect(db_path, check_same_thread=False)
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open ledger at {db_path}: {e}")
        self._conn.row_factory = sqlite3.Row
        self._init_schema()

    @contextmanager
    def _guard(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Serialize access and turn driver errors into PersistenceError.
        Writes inside the block commit or roll back together."""
        with self._lock:
            try:
                with self._conn:
                    yield self._conn
            except sqlite3.Error as e:
                logger.error("Ledger operation failed", operation=operation, error=str(e))
                raise PersistenceError(f"{operation} failed: {e}", {"operation": operation})

    def _init_schema(self) -> None:
        with self._guard("init_schema") as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS snapshots (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    identity TEXT NOT NULL,
                    source_id TEXT,
                    account TEXT,
                    status TEXT,
                    change_type TEXT NOT NULL,
                    previous_status TEXT,
                    captured_at TEXT NOT NULL,
                    last_verified_at TEXT,
                    payload_json TEXT NOT NULL,
                    extension_marks_json TEXT NOT NULL DEFAULT '[]',
                    UNIQUE (identity, captured_at)
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_snapshots_identity ON snapshots(identity, captured_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_snapshots_source_id ON snapshots(source_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_snapshots_change_type ON snapshots(change_type)")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS latest_snapshots (
                    identity TEXT PRIMARY KEY,
                    snapshot_id INTEGER NOT NULL,
                    account TEXT
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_latest_account ON latest_snapshots(account)")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS run_log (
                    id TEXT PRIMARY KEY,
                    mode TEXT NOT NULL,
                    status TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    ended_at TEXT,
                    records_processed INTEGER NOT NULL DEFAULT 0,
                    new_snapshots INTEGER NOT NULL DEFAULT 0,
                    changes_detected INTEGER NOT NULL DEFAULT 0,
                    failed_records INTEGER NOT NULL DEFAULT 0,
                    error TEXT,
                    record_json TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_run_log_started ON run_log(started_at)")

    # --- Snapshots ---

    def _row_to_snapshot(self, row: sqlite3.Row) -> Snapshot:
        return Snapshot(
            id=row["id"],
            identity=row["identity"],
            source_id=row["source_id"],
            account=row["account"],
            captured_at=_parse_ts(row["captured_at"]),
            change_type=ChangeType(row["change_type"]),
            previous_status=row["previous_status"],
            payload=Record.model_validate_json(row["payload_json"]),
            last_verified_at=_parse_ts(row["last_verified_at"]),
            extension_marks=[
                ExtensionMark.model_validate(m)
                for m in json.loads(row["extension_marks_json"])
            ],
        )

    def append_snapshot(self, snapshot: Snapshot) -> Snapshot:
        """Append one snapshot and advance the latest index atomically."""
        if snapshot.change_type == ChangeType.UNCHANGED:
            raise ValueError("Unchanged observations are not appended")

        with self._guard("append_snapshot") as conn:
            current = conn.execute(
                "SELECT s.captured_at FROM latest_snapshots l "
                "JOIN snapshots s ON s.id = l.snapshot_id WHERE l.identity = ?",
                (snapshot.identity,),
            ).fetchone()
            captured_at = snapshot.captured_at
            if current is not None:
                floor = _parse_ts(current["captured_at"])
                if captured_at <= floor:
                    captured_at = floor + timedelta(microseconds=1)

            cursor = conn.execute(
                """
                INSERT INTO snapshots (
                    identity, source_id, account, status, change_type,
                    previous_status, captured_at, last_verified_at,
                    payload_json, extension_marks_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    snapshot.identity,
                    snapshot.source_id,
                    snapshot.account,
                    snapshot.payload.status,
                    snapshot.change_type.value,
                    snapshot.previous_status,
                    _ts(captured_at),
                    _ts(snapshot.last_verified_at or captured_at),
                    snapshot.payload.model_dump_json(),
                    json.dumps([m.model_dump(mode="json") for m in snapshot.extension_marks]),
                ),
            )
            snapshot_id = cursor.lastrowid
            conn.execute(
                """
                INSERT INTO latest_snapshots (identity, snapshot_id, account)
                VALUES (?, ?, ?)
                ON CONFLICT(identity) DO UPDATE SET
                    snapshot_id = excluded.snapshot_id,
                    account = excluded.account
                """,
                (snapshot.identity, snapshot_id, snapshot.account),
            )

        return snapshot.model_copy(
            update={
                "id": snapshot_id,
                "captured_at": captured_at,
                "last_verified_at": snapshot.last_verified_at or captured_at,
            }
        )

    def resolve_identity(self, identifier: str) -> Optional[str]:
        """Map an identity or upstream source id onto the ledger identity."""
        with self._guard("resolve_identity") as conn:
            row = conn.execute(
                "SELECT identity FROM latest_snapshots WHERE identity = ?",
                (identifier,),
            ).fetchone()
            if row is None:
                row = conn.execute(
                    "SELECT identity FROM snapshots WHERE source_id = ? "
                    "ORDER BY id DESC LIMIT 1",
                    (identifier,),
                ).fetchone()
        return row["identity"] if row else None

    def latest(self, identifier: str, exact: bool = False) -> Optional[Snapshot]:
        """Most recent snapshot for an identity (or source id, unless exact)."""
        identity = identifier if exact else self.resolve_identity(identifier)
        if identity is None:
            return None
        with self._guard("latest") as conn:
            row = conn.execute(
                f"SELECT {_SNAPSHOT_COLUMNS} FROM snapshots "
                "WHERE id = (SELECT snapshot_id FROM latest_snapshots WHERE identity = ?)",
                (identity,),
            ).fetchone()
        return self._row_to_snapshot(row) if row else None

    def timeline(self, identifier: str) -> List[Snapshot]:
        """Every snapshot for an identity, oldest first."""
        identity = self.resolve_identity(identifier)
        if identity is None:
            return []
        with self._guard("timeline") as conn:
            rows = conn.execute(
                f"SELECT {_SNAPSHOT_COLUMNS} FROM snapshots WHERE identity = ? "
                "ORDER BY captured_at, id",
                (identity,),
            ).fetchall()
        return [self._row_to_snapshot(r) for r in rows]

    def status_changes(self, identifier: str) -> List[StatusChange]:
        """The initial status followed by every status transition."""
        identity = self.resolve_identity(identifier)
        if identity is None:
            return []
        with self._guard("status_changes") as conn:
            rows = conn.execute(
                "SELECT status, previous_status, change_type, captured_at FROM snapshots "
                "WHERE identity = ? AND change_type IN (?, ?) ORDER BY captured_at, id",
                (identity, ChangeType.INITIAL.value, ChangeType.STATUS_CHANGE.value),
            ).fetchall()
        return [
            StatusChange(
                from_status=(
                    r["previous_status"]
                    if r["change_type"] == ChangeType.STATUS_CHANGE.value
                    else None
                ),
                to_status=r["status"],
                at=_parse_ts(r["captured_at"]),
            )
            for r in rows
        ]

    def touch_verified(self, identity: str, verified_at: datetime) -> bool:
        """Record that the latest snapshot was re-observed unchanged."""
        with self._guard("touch_verified") as conn:
            cursor = conn.execute(
                "UPDATE snapshots SET last_verified_at = ? "
                "WHERE id = (SELECT snapshot_id FROM latest_snapshots WHERE identity = ?)",
                (_ts(verified_at), identity),
            )
        return cursor.rowcount > 0

    def latest_for_accounts(self, accounts: Optional[Iterable[str]] = None) -> List[Snapshot]:
        """Latest snapshot of every identity, optionally limited to accounts."""
        where = ""
        params: tuple = ()
        if accounts is not None:
            wanted = sorted(set(accounts))
            if not wanted:
                return []
            placeholders = ", ".join("?" for _ in wanted)
            where = f" WHERE account IN ({placeholders})"
            params = tuple(wanted)
        query = (
            f"SELECT {_SNAPSHOT_COLUMNS} FROM snapshots "
            f"WHERE id IN (SELECT snapshot_id FROM latest_snapshots{where}) "
            "ORDER BY account, identity"
        )

        with self._guard("latest_for_accounts") as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_snapshot(r) for r in rows]

    def accounts(self) -> List[str]:
        with self._guard("accounts") as conn:
            rows = conn.execute(
                "SELECT DISTINCT account FROM latest_snapshots "
                "WHERE account IS NOT NULL ORDER BY account"
            ).fetchall()
        return [r["account"] for r in rows]

    def update_extension_marks(self, snapshot_id: int, marks: List[ExtensionMark]) -> bool:
        """Replace the extension marks of a latest snapshot. Returns False
        when the snapshot is no longer the latest for its identity."""
        with self._guard("update_extension_marks") as conn:
            cursor = conn.execute(
                "UPDATE snapshots SET extension_marks_json = ? "
                "WHERE id = ? AND id IN (SELECT snapshot_id FROM latest_snapshots)",
                (json.dumps([m.model_dump(mode="json") for m in marks]), snapshot_id),
            )
        return cursor.rowcount > 0

    def rebuild_latest_index(self) -> int:
        """Recompute the latest-per-identity index from history."""
        with self._guard("rebuild_latest_index") as conn:
            conn.execute("DELETE FROM latest_snapshots")
            conn.execute("""
                INSERT INTO latest_snapshots (identity, snapshot_id, account)
                SELECT s.identity, s.id, s.account FROM snapshots s
                WHERE s.id = (
                    SELECT s2.id FROM snapshots s2 WHERE s2.identity = s.identity
                    ORDER BY s2.captured_at DESC, s2.id DESC LIMIT 1
                )
            """)
            row = conn.execute("SELECT COUNT(*) AS cnt FROM latest_snapshots").fetchone()
        return row["cnt"]

    def stats(self) -> LedgerStats:
        with self._guard("stats") as conn:
            row = conn.execute(
                "SELECT COUNT(DISTINCT identity) AS identities, COUNT(*) AS snapshots, "
                "SUM(CASE WHEN change_type = ? THEN 1 ELSE 0 END) AS status_changes, "
                "MIN(captured_at) AS earliest, MAX(captured_at) AS latest FROM snapshots",
                (ChangeType.STATUS_CHANGE.value,),
            ).fetchone()
        return LedgerStats(
            total_identities=row["identities"] or 0,
            total_snapshots=row["snapshots"] or 0,
            total_status_changes=row["status_changes"] or 0,
            earliest_snapshot=_parse_ts(row["earliest"]),
            latest_snapshot=_parse_ts(row["latest"]),
        )

    def count(self) -> int:
        """Total number of snapshot rows."""
        with self._guard("count") as conn:
            row = conn.execute("SELECT COUNT(*) AS cnt FROM snapshots").fetchone()
        return row["cnt"]

    # --- Run log ---

    def log_run(self, run: RunLog) -> None:
        """Insert or replace the run log row for a run."""
        with self._guard("log_run") as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO run_log (
                    id, mode, status, started_at, ended_at, records_processed,
                    new_snapshots, changes_detected, failed_records, error, record_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run.id,
                    run.mode.value,
                    run.status.value,
                    _ts(run.started_at),
                    _ts(run.ended_at),
                    run.records_processed,
                    run.new_snapshots,
                    run.changes_detected,
                    run.failed_records,
                    run.error,
                    run.model_dump_json(),
                ),
            )

    def get_run(self, run_id: str) -> Optional[RunLog]:
        with self._guard("get_run") as conn:
            row = conn.execute(
                "SELECT record_json FROM run_log WHERE id = ?", (run_id,)
            ).fetchone()
        return RunLog.model_validate_json(row["record_json"]) if row else None

    def recent_runs(self, limit: int = 20) -> List[RunLog]:
        """Most recent runs, newest first."""
        with self._guard("recent_runs") as conn:
            rows = conn.execute(
                "SELECT record_json FROM run_log ORDER BY started_at DESC, rowid DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [RunLog.model_validate_json(r["record_json"]) for r in rows]

    def last_completed_run(self, mode: Optional[RunMode] = None) -> Optional[RunLog]:
        query = "SELECT record_json FROM run_log WHERE status = ?"
        params: list = [RunStatus.COMPLETED.value]
        if mode is not None:
            query += " AND mode = ?"
            params.append(mode.value)
        query += " ORDER BY started_at DESC, rowid DESC LIMIT 1"
        with self._guard("last_completed_run") as conn:
            row = conn.execute(query, params).fetchone()
        return RunLog.model_validate_json(row["record_json"]) if row else None

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()
