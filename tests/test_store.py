"""Tests for store module."""

import sqlite3
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from clanker_spanker.config import Paths
from clanker_spanker.models import (
    CiStatus,
    ExitReason,
    Monitor,
    MonitorStatus,
    PrRef,
)
from clanker_spanker.store import MonitorStore

PID = 4321
ITERATION = 4
COMMENTS = 2
BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


def _monitor(
    monitor_id: str,
    repo: str = "acme/widgets",
    status: MonitorStatus = MonitorStatus.RUNNING,
    offset_minutes: int = 0,
    number: int = 7,
) -> Monitor:
    return Monitor(
        id=monitor_id,
        pr=PrRef(repo=repo, number=number),
        max_iterations=10,
        interval_minutes=15,
        started_at=BASE_TIME + timedelta(minutes=offset_minutes),
        status=status,
    )


class TestMonitorStore:
    """Tests for MonitorStore."""

    def test_save_and_get_round_trips_every_field(self, store: MonitorStore) -> None:
        """A saved monitor is read back with all of its fields."""
        monitor = _monitor("m1")
        monitor.pid = PID
        monitor.iteration = ITERATION
        monitor.status = MonitorStatus.COMPLETED
        monitor.exit_reason = ExitReason.PR_CLEAN
        monitor.ended_at = BASE_TIME + timedelta(hours=1)
        monitor.log_file = Path("/tmp/monitor.log")  # noqa: S108
        monitor.ci_status = CiStatus.SUCCESS
        monitor.comments_found = COMMENTS
        monitor.activity = "idle"

        store.save(monitor)

        assert store.get("m1") == monitor

    def test_get_unknown(self, store: MonitorStore) -> None:
        """Unknown ids return None."""
        assert store.get("missing") is None

    def test_save_replaces_existing_row(self, store: MonitorStore) -> None:
        """Saving the same id twice keeps one row with the latest values."""
        monitor = _monitor("m1")
        store.save(monitor)
        monitor.iteration = ITERATION
        store.save(monitor)

        stored = store.get("m1")
        assert stored is not None
        assert stored.iteration == ITERATION
        assert len(store.find()) == 1

    def test_find_filters_and_orders_newest_first(self, store: MonitorStore) -> None:
        """find filters by status and repo and sorts by start time descending."""
        store.save(_monitor("old", offset_minutes=0))
        store.save(_monitor("new", offset_minutes=10, number=8))
        store.save(_monitor("done", status=MonitorStatus.FAILED, offset_minutes=5))
        store.save(_monitor("other", repo="acme/gadgets", offset_minutes=20))

        assert [m.id for m in store.find()] == ["other", "new", "done", "old"]
        assert [m.id for m in store.find(status=MonitorStatus.RUNNING)] == [
            "other",
            "new",
            "old",
        ]
        assert [m.id for m in store.find(repo="acme/widgets")] == ["new", "done", "old"]
        assert [
            m.id for m in store.find(status=MonitorStatus.FAILED, repo="acme/widgets")
        ] == ["done"]

    def test_find_active(self, store: MonitorStore) -> None:
        """Only running and sleeping monitors are active."""
        store.save(_monitor("run"))
        store.save(_monitor("sleep", status=MonitorStatus.SLEEPING, offset_minutes=1, number=8))
        store.save(_monitor("stop", status=MonitorStatus.STOPPED, offset_minutes=2))

        assert {m.id for m in store.find_active()} == {"run", "sleep"}

    def test_one_active_row_per_pr(self, store: MonitorStore) -> None:
        """A second running or sleeping row for the same PR is refused by the database."""
        store.save(_monitor("first"))

        with pytest.raises(sqlite3.IntegrityError):
            store.save(_monitor("second", status=MonitorStatus.SLEEPING, offset_minutes=1))

        store.save(_monitor("earlier", status=MonitorStatus.COMPLETED, offset_minutes=2))
        assert {m.id for m in store.find()} == {"first", "earlier"}

    def test_active_row_is_visible_to_other_connections(self, paths: Paths) -> None:
        """The per-PR rule holds across stores opened on the same file."""
        first = MonitorStore(paths.db_file)
        second = MonitorStore(paths.db_file)
        try:
            first.save(_monitor("mine"))

            with pytest.raises(sqlite3.IntegrityError):
                second.save(_monitor("theirs", offset_minutes=1))

            found = second.find_active_for_pr(PrRef(repo="acme/widgets", number=7))
            assert found is not None
            assert found.id == "mine"
        finally:
            first.close()
            second.close()

    def test_find_active_for_pr(self, store: MonitorStore) -> None:
        """Only the running or sleeping row of that exact PR is returned."""
        store.save(_monitor("done", status=MonitorStatus.FAILED))
        store.save(_monitor("elsewhere", number=8))
        pr = PrRef(repo="acme/widgets", number=7)

        assert store.find_active_for_pr(pr) is None

        store.save(_monitor("live", status=MonitorStatus.SLEEPING, offset_minutes=1))
        found = store.find_active_for_pr(pr)
        assert found is not None
        assert found.id == "live"

    def test_update_if_active(self, store: MonitorStore) -> None:
        """Conditional updates apply to active rows and leave finished rows alone."""
        monitor = _monitor("m1")
        store.save(monitor)

        monitor.iteration = ITERATION
        assert store.update_if_active(monitor)
        stopped = store.get("m1")
        assert stopped is not None
        assert stopped.iteration == ITERATION

        stopped.status = MonitorStatus.STOPPED
        stopped.exit_reason = ExitReason.USER_STOPPED
        assert store.update_if_active(stopped)

        stopped.status = MonitorStatus.FAILED
        stopped.exit_reason = ExitReason.PROCESS_ERROR
        assert not store.update_if_active(stopped)
        final = store.get("m1")
        assert final is not None
        assert final.status is MonitorStatus.STOPPED
        assert final.exit_reason is ExitReason.USER_STOPPED

    def test_update_if_active_unknown(self, store: MonitorStore) -> None:
        """Updating a row that was never saved does nothing."""
        assert not store.update_if_active(_monitor("missing"))
        assert store.get("missing") is None

    def test_rows_survive_reopen(self, tmp_path: Path) -> None:
        """Rows are durable across store instances."""
        db_file = tmp_path / "nested" / "monitors.db"
        first = MonitorStore(db_file)
        first.save(_monitor("m1"))
        first.close()

        second = MonitorStore(db_file)
        try:
            assert second.get("m1") is not None
        finally:
            second.close()

    def test_in_memory_store(self) -> None:
        """The store also works on an in-memory database."""
        store = MonitorStore(":memory:")
        try:
            store.save(_monitor("m1"))
            assert [m.id for m in store.find_active()] == ["m1"]
        finally:
            store.close()
