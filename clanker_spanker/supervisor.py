"""Child-process supervision for control-loop programs.

Each supervised child gets its own reader thread that pumps the merged
stdout/stderr stream line by line, classifies markers, appends every line to
the monitor log file and reports to a listener. Faults in one child's pump are
logged and never reach another child.
"""

import logging
import os
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Protocol

import psutil

from clanker_spanker.errors import MarkerParseAnomaly, SpawnFailureError
from clanker_spanker.markers import MarkerEvent, TerminalStatus, decode_marker, match_marker
from clanker_spanker.utils import get_logger


@dataclass(frozen=True)
class ProcessExit:
    """Exit notification for one supervised child."""

    monitor_id: str
    returncode: int | None
    terminal: TerminalStatus | None


class SupervisorListener(Protocol):
    """Receiver of supervised output, decoded markers and exit notifications."""

    def on_line(self, monitor_id: str, line: str) -> None:
        """Handle one output line (marker or free text), verbatim."""

    def on_event(self, monitor_id: str, event: MarkerEvent) -> None:
        """Handle one decoded marker event."""

    def on_exit(self, exit_info: ProcessExit) -> None:
        """Handle the end of a child process."""


@dataclass
class _Child:
    monitor_id: str
    process: subprocess.Popen[str]
    log_file: Path | None
    reader: threading.Thread | None = None


def pid_alive(pid: int | None) -> bool:
    """Return whether a process with this pid exists and is not a zombie."""
    if pid is None or not psutil.pid_exists(pid):
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


def signal_process_tree(pid: int, logger: logging.Logger | None = None) -> list[psutil.Process]:
    """Send SIGTERM to a process and all of its descendants.

    Descendants are collected before the parent is signalled so that none of
    them are orphaned out of reach.

    Args:
        pid: Root of the process tree
        logger: Logger for debug output

    Returns:
        Processes that were signalled

    """
    try:
        root = psutil.Process(pid)
        procs = [*root.children(recursive=True), root]
    except psutil.NoSuchProcess:
        return []

    signalled = []
    for proc in procs:
        try:
            proc.terminate()
            signalled.append(proc)
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied:
            if logger:
                logger.warning("Not permitted to terminate process %s", proc.pid)
    return signalled


def reap_processes(
    procs: list[psutil.Process],
    grace_seconds: float,
    logger: logging.Logger | None = None,
) -> None:
    """Wait for signalled processes and SIGKILL whatever outlives the grace period."""
    if not procs:
        return
    _, alive = psutil.wait_procs(procs, timeout=grace_seconds)
    if alive and logger:
        logger.warning(
            "%s process(es) did not terminate gracefully. Forcing shutdown...",
            len(alive),
        )
    for proc in alive:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            continue


class ProcessSupervisor:
    """Spawns control-loop programs and turns their output into listener calls."""

    def __init__(
        self,
        listener: SupervisorListener,
        logger: logging.Logger | None = None,
    ) -> None:
        """Initialize the supervisor.

        Args:
            listener: Receiver of lines, events and exits
            logger: Logger instance for output

        """
        self.listener = listener
        self.logger = logger or get_logger()
        self._children: dict[str, _Child] = {}
        self._lock = threading.Lock()

    def spawn(
        self,
        monitor_id: str,
        args: list[str],
        cwd: Path | None = None,
        log_file: Path | None = None,
        env: dict[str, str] | None = None,
    ) -> int:
        """Launch a control-loop program and start pumping its output.

        Args:
            monitor_id: Monitor the child belongs to
            args: Command line of the child
            cwd: Working directory of the child
            log_file: File that receives a copy of every output line
            env: Extra environment variables for the child

        Returns:
            Pid of the child

        Raises:
            SpawnFailureError: If the process could not be launched

        """
        child_env = {**os.environ, **(env or {}), "PYTHONUNBUFFERED": "1"}
        try:
            if log_file:
                log_file.parent.mkdir(parents=True, exist_ok=True)
            process = subprocess.Popen(  # noqa: S603  # argv list with shell disabled.
                args,
                cwd=cwd,
                env=child_env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                start_new_session=True,
            )
        except (OSError, ValueError) as exc:
            raise SpawnFailureError(monitor_id, str(exc)) from exc

        child = _Child(monitor_id=monitor_id, process=process, log_file=log_file)
        child.reader = threading.Thread(
            target=self._pump,
            args=(child,),
            name=f"monitor-{monitor_id}",
            daemon=True,
        )
        with self._lock:
            self._children[monitor_id] = child
        child.reader.start()

        self.logger.debug("Spawned monitor %s as pid %s: %s", monitor_id, process.pid, args)
        return process.pid

    def _pump(self, child: _Child) -> None:
        """Read the child's output until EOF, then report its exit."""
        terminal: TerminalStatus | None = None
        stream = child.process.stdout
        log_handle: IO[str] | None = None
        try:
            if child.log_file:
                log_handle = child.log_file.open("a", encoding="utf-8")
            if stream is not None:
                for raw_line in stream:
                    line = raw_line.rstrip("\r\n")
                    event = self._classify(child.monitor_id, line)
                    if isinstance(event, TerminalStatus):
                        terminal = event
                    if log_handle:
                        log_handle.write(line + "\n")
                        log_handle.flush()
                    self._notify_line(child.monitor_id, line)
                    if event is not None:
                        self._notify_event(child.monitor_id, event)
        except Exception:
            self.logger.exception("Output pump failed for monitor %s", child.monitor_id)
        finally:
            if log_handle:
                log_handle.close()

        returncode = child.process.wait()
        self.logger.debug(
            "Monitor %s exited with code %s (terminal marker: %s)",
            child.monitor_id,
            returncode,
            terminal.outcome if terminal else None,
        )
        try:
            self.listener.on_exit(ProcessExit(child.monitor_id, returncode, terminal))
        except Exception:
            self.logger.exception("Exit handler failed for monitor %s", child.monitor_id)
        finally:
            with self._lock:
                if self._children.get(child.monitor_id) is child:
                    del self._children[child.monitor_id]

    def _classify(self, monitor_id: str, line: str) -> MarkerEvent | None:
        marker = match_marker(line)
        if marker is None:
            return None
        try:
            return decode_marker(marker)
        except MarkerParseAnomaly as exc:
            self.logger.warning("Monitor %s: ignoring marker (%s)", monitor_id, exc)
            return None

    def _notify_line(self, monitor_id: str, line: str) -> None:
        try:
            self.listener.on_line(monitor_id, line)
        except Exception:
            self.logger.exception("Line handler failed for monitor %s", monitor_id)

    def _notify_event(self, monitor_id: str, event: MarkerEvent) -> None:
        try:
            self.listener.on_event(monitor_id, event)
        except Exception:
            self.logger.exception("Event handler failed for monitor %s", monitor_id)

    def is_supervised(self, monitor_id: str) -> bool:
        """Return whether a child of this supervisor is still running for the monitor."""
        with self._lock:
            return monitor_id in self._children

    def pid_of(self, monitor_id: str) -> int | None:
        """Return the pid of a supervised child, or None."""
        with self._lock:
            child = self._children.get(monitor_id)
        return child.process.pid if child else None

    def terminate(
        self,
        monitor_id: str,
        pid: int | None = None,
        grace_seconds: float = 5.0,
    ) -> bool:
        """Signal a monitor's process tree without waiting for it to exit.

        SIGTERM is sent immediately; a background thread escalates to SIGKILL
        after ``grace_seconds``. A child started by another supervisor can be
        targeted through ``pid``.

        Args:
            monitor_id: Monitor whose process should end
            pid: Fallback pid when the monitor is not supervised here
            grace_seconds: Delay before SIGKILL escalation

        Returns:
            True if any process was signalled

        """
        target = self.pid_of(monitor_id) or pid
        if target is None or not pid_alive(target):
            return False

        procs = signal_process_tree(target, self.logger)
        if not procs:
            return False

        threading.Thread(
            target=reap_processes,
            args=(procs, grace_seconds, self.logger),
            name=f"reap-{monitor_id}",
            daemon=True,
        ).start()
        self.logger.debug("Sent SIGTERM to %s process(es) of monitor %s", len(procs), monitor_id)
        return True

    def terminate_all(self, grace_seconds: float = 5.0) -> None:
        """Terminate every supervised child and wait for them to go away."""
        with self._lock:
            pids = [child.process.pid for child in self._children.values()]
        procs = []
        for pid in pids:
            procs.extend(signal_process_tree(pid, self.logger))
        reap_processes(procs, grace_seconds, self.logger)

    def wait(self, monitor_id: str, timeout: float | None = None) -> bool:
        """Block until the reader of a supervised child has finished.

        Returns:
            True if the child is no longer supervised

        """
        with self._lock:
            child = self._children.get(monitor_id)
        if child is None or child.reader is None:
            return True
        child.reader.join(timeout)
        return not child.reader.is_alive()
