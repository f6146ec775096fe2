"""Bounded output buffers and subscriptions for monitor output and completion."""

import logging
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

from clanker_spanker.models import Monitor

type OutputCallback = Callable[[str, str], None]
type CompletionCallback = Callable[[Monitor], None]


class OutputSink:
    """Ring buffer keeping only the most recent lines of one monitor's output."""

    def __init__(self, max_lines: int) -> None:
        """Initialize the sink.

        Args:
            max_lines: Number of lines retained; older lines are evicted FIFO

        """
        if max_lines <= 0:
            message = f"max_lines must be positive (got {max_lines})"
            raise ValueError(message)
        self.max_lines = max_lines
        self._lines: deque[str] = deque(maxlen=max_lines)
        self._total = 0
        self._lock = threading.Lock()

    def append(self, line: str) -> None:
        """Record one line, evicting the oldest line when full."""
        with self._lock:
            self._lines.append(line)
            self._total += 1

    def lines(self) -> list[str]:
        """Return a snapshot of the retained lines, oldest first."""
        with self._lock:
            return list(self._lines)

    @property
    def total_lines(self) -> int:
        """Number of lines ever appended, including evicted ones."""
        with self._lock:
            return self._total

    def __len__(self) -> int:
        """Return the number of retained lines."""
        with self._lock:
            return len(self._lines)


@dataclass
class _Subscriber:
    monitor_id: str | None
    on_output: OutputCallback | None
    on_complete: CompletionCallback | None


class MonitorEvents:
    """Registry of output and completion subscribers keyed by monitor id.

    A subscriber registered with ``monitor_id=None`` receives events for every
    monitor. Callback failures are logged and never reach the publisher.
    """

    def __init__(self, logger: logging.Logger) -> None:
        """Initialize an empty registry."""
        self.logger = logger
        self._subscribers: dict[int, _Subscriber] = {}
        self._next_token = 0
        self._lock = threading.Lock()

    def subscribe(
        self,
        monitor_id: str | None,
        on_output: OutputCallback | None = None,
        on_complete: CompletionCallback | None = None,
    ) -> Callable[[], None]:
        """Register callbacks and return a function that unregisters them.

        Args:
            monitor_id: Monitor to follow, or None for all monitors
            on_output: Called with ``(monitor_id, line)`` for each output line
            on_complete: Called with a monitor copy once it becomes terminal

        Returns:
            Zero-argument unsubscribe function

        """
        with self._lock:
            self._next_token += 1
            token = self._next_token
            self._subscribers[token] = _Subscriber(monitor_id, on_output, on_complete)

        def unsubscribe() -> None:
            with self._lock:
                self._subscribers.pop(token, None)

        return unsubscribe

    def _matching(self, monitor_id: str) -> list[_Subscriber]:
        with self._lock:
            return [
                sub
                for sub in self._subscribers.values()
                if sub.monitor_id is None or sub.monitor_id == monitor_id
            ]

    def publish_output(self, monitor_id: str, line: str) -> None:
        """Deliver one output line to interested subscribers."""
        for sub in self._matching(monitor_id):
            if sub.on_output is None:
                continue
            try:
                sub.on_output(monitor_id, line)
            except Exception:
                self.logger.exception("Output subscriber failed for monitor %s", monitor_id)

    def publish_completion(self, monitor: Monitor) -> None:
        """Deliver a terminal monitor snapshot to interested subscribers."""
        for sub in self._matching(monitor.id):
            if sub.on_complete is None:
                continue
            try:
                sub.on_complete(monitor.copy())
            except Exception:
                self.logger.exception("Completion subscriber failed for monitor %s", monitor.id)
