"""Exceptions raised by the monitor orchestration core."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from clanker_spanker.models import Monitor


class ClankerSpankerError(Exception):
    """Base class for all recoverable clanker-spanker errors."""


class AlreadyMonitoringError(ClankerSpankerError):
    """Raised when starting a monitor for a PR that already has an active one."""

    def __init__(self, monitor: "Monitor") -> None:
        """Initialize with the monitor that is already active.

        Args:
            monitor: The existing non-terminal monitor

        """
        self.monitor = monitor
        super().__init__(f"Monitor already running for PR: {monitor.pr.key} (id {monitor.id})")


class NotActiveError(ClankerSpankerError):
    """Raised when stopping a monitor that is terminal or unknown."""

    def __init__(self, monitor_id: str) -> None:
        """Initialize with the monitor id that could not be stopped."""
        self.monitor_id = monitor_id
        super().__init__(f"Monitor {monitor_id} is not active")


class MonitorNotFoundError(ClankerSpankerError):
    """Raised when a monitor id is unknown."""

    def __init__(self, monitor_id: str) -> None:
        """Initialize with the unknown monitor id."""
        self.monitor_id = monitor_id
        super().__init__(f"Monitor not found: {monitor_id}")


class SpawnFailureError(ClankerSpankerError):
    """Raised when the control-loop process could not be launched."""

    def __init__(self, monitor_id: str, reason: str) -> None:
        """Initialize with the monitor id and the launch failure reason."""
        self.monitor_id = monitor_id
        self.reason = reason
        super().__init__(f"Failed to spawn monitor process for {monitor_id}: {reason}")


class MarkerParseAnomaly(ClankerSpankerError):  # noqa: N818
    """Raised when a marker-shaped line has an unknown tag or malformed payload."""

    def __init__(self, line: str, reason: str) -> None:
        """Initialize with the offending line and why it was rejected."""
        self.line = line
        self.reason = reason
        super().__init__(f"{reason}: {line!r}")


class CollaboratorError(ClankerSpankerError):
    """Raised when an external provider (gh, claude) fails."""

    def __init__(self, operation: str, detail: str) -> None:
        """Initialize with the failed operation name and failure detail."""
        self.operation = operation
        self.detail = detail
        super().__init__(f"{operation} failed: {detail}")
