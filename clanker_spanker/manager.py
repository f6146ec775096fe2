"""Lifecycle management of PR monitors.

``MonitorManager`` owns the registry of supervised monitors and drives the
monitor state machine from supervisor events and from ``start``/``stop``
calls. Every transition is written to the store before the registry is updated
and before subscribers hear about it.
"""

import logging
import sqlite3
import sys
import threading
import uuid
from collections import deque
from collections.abc import Callable
from datetime import datetime, timedelta

from clanker_spanker.config import Paths, Settings
from clanker_spanker.errors import (
    AlreadyMonitoringError,
    MonitorNotFoundError,
    NotActiveError,
    SpawnFailureError,
)
from clanker_spanker.markers import (
    CiStatusReported,
    CiWaiting,
    CommentsFound,
    FixFinished,
    FixStarted,
    IterationStarted,
    MarkerEvent,
    SleepingStarted,
    TerminalStatus,
)
from clanker_spanker.models import (
    ExitReason,
    LoopOutcome,
    Monitor,
    MonitorStatus,
    PrRef,
    utc_now,
)
from clanker_spanker.output import CompletionCallback, MonitorEvents, OutputCallback, OutputSink
from clanker_spanker.store import MonitorStore
from clanker_spanker.supervisor import ProcessExit, ProcessSupervisor, pid_alive
from clanker_spanker.utils import get_logger

type CommandFactory = Callable[[PrRef, int, int], list[str]]

FINISHED_SINK_RETENTION = 50


def control_loop_command(pr: PrRef, max_iterations: int, interval_minutes: int) -> list[str]:
    """Build the command line of the control-loop program for one PR."""
    return [
        sys.executable,
        "-m",
        "clanker_spanker.cli",
        "loop",
        str(pr.number),
        pr.repo,
        str(max_iterations),
        str(interval_minutes),
    ]


def resolve_exit(
    terminal: TerminalStatus | None,
    returncode: int | None,
) -> tuple[MonitorStatus, ExitReason]:
    """Decide the final status of a monitor whose process has exited.

    The last terminal marker decides; without one the exit is abnormal whatever
    the exit code.

    Args:
        terminal: Last terminal marker seen on the output, if any
        returncode: Exit code of the process

    Returns:
        Tuple of (status, exit_reason)

    """
    del returncode
    if terminal is None:
        return MonitorStatus.FAILED, ExitReason.PROCESS_ERROR
    if terminal.outcome is LoopOutcome.CLEAN:
        return MonitorStatus.COMPLETED, ExitReason.PR_CLEAN
    return MonitorStatus.COMPLETED, ExitReason.MAX_ITERATIONS


def _finish(monitor: Monitor, status: MonitorStatus, reason: ExitReason, now: datetime) -> Monitor:
    finished = monitor.copy()
    finished.status = status
    finished.exit_reason = reason
    finished.ended_at = now
    finished.next_check_at = None
    finished.activity = None
    return finished


class MonitorManager:
    """Authoritative owner of monitors: start, stop, queries and subscriptions.

    All registry mutations happen under one lock, so concurrent ``start`` calls
    for the same PR yield exactly one monitor. Across processes sharing one
    database the store's one-active-per-PR index has the same effect, and
    updates of active monitors never overwrite a row another process finished.
    """

    def __init__(
        self,
        settings: Settings,
        store: MonitorStore,
        *,
        paths: Paths | None = None,
        logger: logging.Logger | None = None,
        command_factory: CommandFactory = control_loop_command,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the manager and reconcile monitors left over from a previous run.

        Args:
            settings: Configuration settings
            store: Persistent monitor store
            paths: Path management (defaults to ``settings.data_dir``)
            logger: Logger instance for output
            command_factory: Builds the control-loop command for a PR
            clock: Source of the current time

        """
        self.settings = settings
        self.store = store
        self.paths = paths or Paths(settings.data_dir)
        self.logger = logger or get_logger()
        self.command_factory = command_factory
        self.clock = clock

        self.supervisor = ProcessSupervisor(self, self.logger)
        self.events = MonitorEvents(self.logger)
        self._monitors: dict[str, Monitor] = {}
        self._sinks: dict[str, OutputSink] = {}
        self._finished_sinks: deque[str] = deque()
        self._lock = threading.Lock()

        self.paths.ensure_dirs()
        self.reconcile()

    def reconcile(self) -> list[Monitor]:
        """Fail persisted active monitors whose process is gone.

        Returns:
            Monitors that were reconciled to ``failed``

        """
        reconciled = []
        with self._lock:
            for monitor in self.store.find_active():
                if monitor.id in self._monitors or pid_alive(monitor.pid):
                    continue
                failed = _finish(
                    monitor,
                    MonitorStatus.FAILED,
                    ExitReason.PROCESS_ERROR,
                    self.clock(),
                )
                if not self.store.update_if_active(failed):
                    continue
                reconciled.append(failed)
                self.logger.warning(
                    "Monitor %s for %s has no live process (pid %s); marked failed",
                    monitor.id,
                    monitor.pr,
                    monitor.pid,
                )
        return reconciled

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def start(
        self,
        pr: PrRef,
        max_iterations: int | None = None,
        interval_minutes: int | None = None,
    ) -> Monitor:
        """Create a monitor for a PR and spawn its control loop.

        Args:
            pr: Pull request to monitor
            max_iterations: Iteration budget (defaults to settings)
            interval_minutes: Sleep between iterations (defaults to settings)

        Returns:
            Copy of the new running monitor

        Raises:
            AlreadyMonitoringError: If the PR already has an active monitor
            SpawnFailureError: If the control loop could not be launched
            ValueError: If a limit is not positive

        """
        if max_iterations is None:
            max_iterations = self.settings.max_iterations
        if interval_minutes is None:
            interval_minutes = self.settings.interval_minutes
        if max_iterations <= 0 or interval_minutes <= 0:
            message = "max_iterations and interval_minutes must be positive"
            raise ValueError(message)

        spawn_error: SpawnFailureError | None = None
        with self._lock:
            existing = self._active_for_pr_locked(pr)
            if existing is not None:
                raise AlreadyMonitoringError(existing.copy())

            monitor_id = uuid.uuid4().hex
            monitor = Monitor(
                id=monitor_id,
                pr=pr,
                max_iterations=max_iterations,
                interval_minutes=interval_minutes,
                started_at=self.clock(),
                log_file=self.paths.monitor_log_file(pr.number, monitor_id),
                activity="starting",
            )
            try:
                self.store.save(monitor)
            except sqlite3.IntegrityError:
                existing = self.store.find_active_for_pr(pr)
                if existing is None:
                    raise
                raise AlreadyMonitoringError(existing) from None
            self._sinks[monitor_id] = OutputSink(self.settings.output_buffer_lines)

            try:
                pid = self.supervisor.spawn(
                    monitor_id,
                    self.command_factory(pr, max_iterations, interval_minutes),
                    log_file=monitor.log_file,
                    env={"CS_DATA_DIR": str(self.paths.data_dir)},
                )
            except SpawnFailureError as exc:
                spawn_error = exc
                monitor = _finish(
                    monitor,
                    MonitorStatus.FAILED,
                    ExitReason.PROCESS_ERROR,
                    self.clock(),
                )
                self.store.save(monitor)
                self._retire_sink_locked(monitor_id)
            else:
                monitor = monitor.copy()
                monitor.pid = pid
                self.store.save(monitor)
                self._monitors[monitor_id] = monitor

        if spawn_error is not None:
            self.logger.error("Could not start monitor for %s: %s", pr, spawn_error.reason)
            self.events.publish_completion(monitor)
            raise spawn_error

        self.logger.info(
            "Started monitor %s for %s (pid %s, %s iterations every %s min)",
            monitor.id,
            pr,
            monitor.pid,
            max_iterations,
            interval_minutes,
        )
        return monitor.copy()

    def stop(self, monitor_id: str) -> Monitor:
        """Stop an active monitor.

        The monitor is marked ``stopped`` right away; its process tree is
        signalled without waiting for it to exit.

        Args:
            monitor_id: Monitor to stop

        Returns:
            Copy of the stopped monitor

        Raises:
            NotActiveError: If the monitor is unknown or already terminal

        """
        with self._lock:
            current = self._monitors.get(monitor_id) or self.store.get(monitor_id)
            if current is None or not current.is_active:
                raise NotActiveError(monitor_id)
            stopped = _finish(
                current,
                MonitorStatus.STOPPED,
                ExitReason.USER_STOPPED,
                self.clock(),
            )
            self._monitors.pop(monitor_id, None)
            if not self.store.update_if_active(stopped):
                raise NotActiveError(monitor_id)
            self._retire_sink_locked(monitor_id)

        signalled = self.supervisor.terminate(
            monitor_id,
            pid=stopped.pid,
            grace_seconds=self.settings.stop_grace_seconds,
        )
        if not signalled:
            self.logger.debug("Monitor %s had no live process to signal", monitor_id)

        self.logger.info("Stopped monitor %s for %s", monitor_id, stopped.pr)
        self.events.publish_completion(stopped)
        return stopped.copy()

    def shutdown(self) -> None:
        """Stop every monitor supervised by this manager and wait for their processes."""
        with self._lock:
            monitor_ids = list(self._monitors)
        for monitor_id in monitor_ids:
            try:
                self.stop(monitor_id)
            except NotActiveError:
                continue
        self.supervisor.terminate_all(self.settings.stop_grace_seconds)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_monitors(
        self,
        status: MonitorStatus | str | None = None,
        repo: str | None = None,
    ) -> list[Monitor]:
        """Return monitors, newest first, optionally filtered by status and repo."""
        status = MonitorStatus(status) if status is not None else None
        return self.store.find(status=status, repo=repo)

    def get(self, monitor_id: str) -> Monitor:
        """Return one monitor by id.

        Raises:
            MonitorNotFoundError: If no monitor has this id

        """
        monitor = self.store.get(monitor_id)
        if monitor is None:
            raise MonitorNotFoundError(monitor_id)
        return monitor

    def get_active_for_pr(self, pr: PrRef) -> Monitor | None:
        """Return the running or sleeping monitor of a PR, if any."""
        with self._lock:
            monitor = self._active_for_pr_locked(pr)
        return monitor.copy() if monitor else None

    def get_recent_for_pr(self, pr: PrRef) -> Monitor | None:
        """Return the most recently started monitor of a PR, whatever its status."""
        for monitor in self.store.find(repo=pr.repo):
            if monitor.pr == pr:
                return monitor
        return None

    def active_count(self) -> int:
        """Return the number of running or sleeping monitors."""
        return len(self.store.find_active())

    def read_output(self, monitor_id: str) -> list[str]:
        """Return the buffered recent output of a monitor started by this manager."""
        sink = self._sinks.get(monitor_id)
        return sink.lines() if sink else []

    def read_log(self, monitor_id: str, tail: int | None = None) -> list[str]:
        """Read back a monitor's full log file.

        Args:
            monitor_id: Monitor whose log to read
            tail: Only return this many trailing lines

        Returns:
            Log lines, oldest first (empty if no log was written)

        Raises:
            MonitorNotFoundError: If no monitor has this id

        """
        monitor = self.get(monitor_id)
        if monitor.log_file is None or not monitor.log_file.exists():
            return []
        lines = monitor.log_file.read_text(encoding="utf-8", errors="replace").splitlines()
        if tail is not None:
            return lines[-tail:] if tail > 0 else []
        return lines

    def subscribe(
        self,
        monitor_id: str | None,
        on_output: OutputCallback | None = None,
        on_complete: CompletionCallback | None = None,
    ) -> Callable[[], None]:
        """Follow output lines and completion of one monitor (or all with None)."""
        return self.events.subscribe(monitor_id, on_output, on_complete)

    def wait(self, monitor_id: str, timeout: float | None = None) -> bool:
        """Block until the process of a supervised monitor has been fully handled."""
        return self.supervisor.wait(monitor_id, timeout)

    def _active_for_pr_locked(self, pr: PrRef) -> Monitor | None:
        for monitor in self._monitors.values():
            if monitor.pr == pr and monitor.is_active:
                return monitor
        return self.store.find_active_for_pr(pr)

    def _retire_sink_locked(self, monitor_id: str) -> None:
        """Keep the sink of a finished monitor, dropping the oldest beyond the retention."""
        if monitor_id not in self._sinks:
            return
        self._finished_sinks.append(monitor_id)
        while len(self._finished_sinks) > FINISHED_SINK_RETENTION:
            self._sinks.pop(self._finished_sinks.popleft(), None)

    # ------------------------------------------------------------------
    # Supervisor listener
    # ------------------------------------------------------------------

    def on_line(self, monitor_id: str, line: str) -> None:
        """Record one output line and forward it to subscribers."""
        sink = self._sinks.get(monitor_id)
        if sink is not None:
            sink.append(line)
        self.events.publish_output(monitor_id, line)

    def on_event(self, monitor_id: str, event: MarkerEvent) -> None:
        """Apply a decoded marker to the monitor it belongs to."""
        if isinstance(event, TerminalStatus):
            return
        with self._lock:
            current = self._monitors.get(monitor_id)
            if current is None or not current.is_active:
                return
            updated = current.copy()
            self._apply_event(updated, event)
            if not self.store.update_if_active(updated):
                self.logger.info("Monitor %s was finished by another process", monitor_id)
                self._monitors[monitor_id] = self.store.get(monitor_id) or current
                return
            self._monitors[monitor_id] = updated

    def _apply_event(self, monitor: Monitor, event: MarkerEvent) -> None:
        now = self.clock()
        match event:
            case IterationStarted(iteration=iteration, max_iterations=max_iterations):
                monitor.iteration = iteration
                monitor.status = MonitorStatus.RUNNING
                monitor.last_check_at = now
                monitor.next_check_at = None
                monitor.activity = f"iteration {iteration}/{max_iterations}"
            case SleepingStarted(minutes=minutes):
                monitor.status = MonitorStatus.SLEEPING
                monitor.next_check_at = now + timedelta(minutes=minutes)
                monitor.activity = f"sleeping {minutes} min"
            case CiStatusReported(status=status):
                monitor.ci_status = status
            case CiWaiting(wait=wait, max_waits=max_waits):
                monitor.activity = f"waiting for CI {wait}/{max_waits}"
            case CommentsFound(count=count):
                monitor.comments_found = count
            case FixStarted(kind=kind):
                monitor.activity = f"fixing {kind}"
            case FixFinished(kind=kind):
                monitor.activity = f"finished fixing {kind}"

    def on_exit(self, exit_info: ProcessExit) -> None:
        """Move a monitor to its terminal status once its process has exited."""
        status, reason = resolve_exit(exit_info.terminal, exit_info.returncode)
        if exit_info.terminal is not None and (
            exit_info.returncode != exit_info.terminal.outcome.exit_code
        ):
            self.logger.warning(
                "Monitor %s reported %s but exited with code %s",
                exit_info.monitor_id,
                exit_info.terminal.outcome,
                exit_info.returncode,
            )

        with self._lock:
            current = self._monitors.pop(exit_info.monitor_id, None)
            if current is None:
                return
            finished = current
            recorded = False
            if current.is_active:
                finished = _finish(current, status, reason, self.clock())
                recorded = self.store.update_if_active(finished)
            if not recorded:
                finished = self.store.get(current.id) or finished
            self._retire_sink_locked(finished.id)

        if not recorded:
            self.logger.info(
                "Monitor %s for %s was finished by another process: %s (%s)",
                finished.id,
                finished.pr,
                finished.status,
                finished.exit_reason,
            )
            self.events.publish_completion(finished)
            return

        log = self.logger.info if status is MonitorStatus.COMPLETED else self.logger.error
        log(
            "Monitor %s for %s finished: %s (%s)",
            finished.id,
            finished.pr,
            finished.status,
            finished.exit_reason,
        )
        self.events.publish_completion(finished)
