"""SQLite persistence for monitor records."""

import sqlite3
import threading
from datetime import datetime
from pathlib import Path

from clanker_spanker.models import (
    ACTIVE_STATUSES,
    CiStatus,
    ExitReason,
    Monitor,
    MonitorStatus,
    PrRef,
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS monitors (
    id TEXT PRIMARY KEY,
    pr_id TEXT NOT NULL,
    pr_number INTEGER NOT NULL,
    repo TEXT NOT NULL,
    pid INTEGER,
    status TEXT NOT NULL DEFAULT 'running',
    iteration INTEGER NOT NULL DEFAULT 0,
    max_iterations INTEGER NOT NULL DEFAULT 10,
    interval_minutes INTEGER NOT NULL DEFAULT 15,
    started_at TEXT NOT NULL,
    last_check_at TEXT,
    next_check_at TEXT,
    ended_at TEXT,
    exit_reason TEXT,
    log_file TEXT,
    ci_status TEXT,
    comments_found INTEGER NOT NULL DEFAULT 0,
    activity TEXT
);

CREATE INDEX IF NOT EXISTS idx_monitors_status ON monitors(status);
CREATE INDEX IF NOT EXISTS idx_monitors_pr_id ON monitors(pr_id);
CREATE INDEX IF NOT EXISTS idx_monitors_repo ON monitors(repo);

CREATE UNIQUE INDEX IF NOT EXISTS idx_monitors_one_active_per_pr
    ON monitors(pr_id) WHERE status IN ('running', 'sleeping');
"""

_COLUMNS = (
    "id",
    "pr_id",
    "pr_number",
    "repo",
    "pid",
    "status",
    "iteration",
    "max_iterations",
    "interval_minutes",
    "started_at",
    "last_check_at",
    "next_check_at",
    "ended_at",
    "exit_reason",
    "log_file",
    "ci_status",
    "comments_found",
    "activity",
)

_SELECT = f"SELECT {', '.join(_COLUMNS)} FROM monitors"  # noqa: S608
# A collision on idx_monitors_one_active_per_pr must raise, so no INSERT OR REPLACE.
_UPSERT = (
    f"INSERT INTO monitors ({', '.join(_COLUMNS)}) "  # noqa: S608
    f"VALUES ({', '.join('?' for _ in _COLUMNS)}) "
    "ON CONFLICT(id) DO UPDATE SET "
    + ", ".join(f"{column} = excluded.{column}" for column in _COLUMNS[1:])
)
_UPDATE_ACTIVE = (
    "UPDATE monitors SET "  # noqa: S608
    + ", ".join(f"{column} = ?" for column in _COLUMNS[1:])
    + " WHERE id = ? AND status IN ('running', 'sleeping')"
)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _monitor_row(monitor: Monitor) -> tuple[object, ...]:
    return (
        monitor.id,
        monitor.pr.key,
        monitor.pr.number,
        monitor.pr.repo,
        monitor.pid,
        str(monitor.status),
        monitor.iteration,
        monitor.max_iterations,
        monitor.interval_minutes,
        _iso(monitor.started_at),
        _iso(monitor.last_check_at),
        _iso(monitor.next_check_at),
        _iso(monitor.ended_at),
        str(monitor.exit_reason) if monitor.exit_reason else None,
        str(monitor.log_file) if monitor.log_file else None,
        str(monitor.ci_status) if monitor.ci_status else None,
        monitor.comments_found,
        monitor.activity,
    )


class MonitorStore:
    """Durable table of Monitor rows.

    One connection is shared across threads and guarded by a lock; callers are
    still expected to serialize read-modify-write sequences themselves.
    """

    def __init__(self, db_path: Path | str) -> None:
        """Open (and create if needed) the monitor database.

        Args:
            db_path: SQLite file path, or ``":memory:"`` for an ephemeral store

        """
        self.db_path = db_path
        if isinstance(db_path, Path):
            db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        with self._lock, self._conn:
            self._conn.executescript(SCHEMA)

    def close(self) -> None:
        """Close the underlying connection."""
        with self._lock:
            self._conn.close()

    def save(self, monitor: Monitor) -> None:
        """Insert or update one monitor row and commit.

        Raises:
            sqlite3.IntegrityError: If the row would make a second active monitor for its PR

        """
        with self._lock, self._conn:
            self._conn.execute(_UPSERT, _monitor_row(monitor))

    def update_if_active(self, monitor: Monitor) -> bool:
        """Overwrite a row only while it is still persisted as running or sleeping.

        Another process may have stopped the monitor since it was read; that
        terminal row is left untouched.

        Returns:
            True if the row was updated

        """
        row = _monitor_row(monitor)
        with self._lock, self._conn:
            cursor = self._conn.execute(_UPDATE_ACTIVE, (*row[1:], row[0]))
        return cursor.rowcount == 1

    def get(self, monitor_id: str) -> Monitor | None:
        """Return one monitor by id, or None."""
        with self._lock:
            row = self._conn.execute(f"{_SELECT} WHERE id = ?", (monitor_id,)).fetchone()
        return _row_to_monitor(row) if row else None

    def find_active_for_pr(self, pr: PrRef) -> Monitor | None:
        """Return the running or sleeping monitor of a PR, if any."""
        placeholders = ", ".join("?" for _ in ACTIVE_STATUSES)
        query = f"{_SELECT} WHERE pr_id = ? AND status IN ({placeholders})"
        with self._lock:
            row = self._conn.execute(
                query,
                [pr.key, *(str(s) for s in ACTIVE_STATUSES)],
            ).fetchone()
        return _row_to_monitor(row) if row else None

    def find(
        self,
        status: MonitorStatus | None = None,
        repo: str | None = None,
    ) -> list[Monitor]:
        """Return monitors, newest first, optionally filtered by status and repo."""
        query = f"{_SELECT} WHERE 1=1"
        params: list[str] = []
        if status is not None:
            query += " AND status = ?"
            params.append(str(status))
        if repo is not None:
            query += " AND repo = ?"
            params.append(repo)
        query += " ORDER BY started_at DESC"

        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [_row_to_monitor(row) for row in rows]

    def find_active(self) -> list[Monitor]:
        """Return every monitor persisted as running or sleeping."""
        placeholders = ", ".join("?" for _ in ACTIVE_STATUSES)
        query = f"{_SELECT} WHERE status IN ({placeholders}) ORDER BY started_at DESC"
        with self._lock:
            rows = self._conn.execute(query, [str(s) for s in ACTIVE_STATUSES]).fetchall()
        return [_row_to_monitor(row) for row in rows]


def _row_to_monitor(row: sqlite3.Row) -> Monitor:
    return Monitor(
        id=row["id"],
        pr=PrRef(repo=row["repo"], number=row["pr_number"]),
        max_iterations=row["max_iterations"],
        interval_minutes=row["interval_minutes"],
        started_at=datetime.fromisoformat(row["started_at"]),
        status=MonitorStatus(row["status"]),
        iteration=row["iteration"],
        pid=row["pid"],
        last_check_at=_from_iso(row["last_check_at"]),
        next_check_at=_from_iso(row["next_check_at"]),
        ended_at=_from_iso(row["ended_at"]),
        exit_reason=ExitReason(row["exit_reason"]) if row["exit_reason"] else None,
        log_file=Path(row["log_file"]) if row["log_file"] else None,
        ci_status=CiStatus(row["ci_status"]) if row["ci_status"] else None,
        comments_found=row["comments_found"],
        activity=row["activity"],
    )
