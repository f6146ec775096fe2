"""Domain types shared by the monitor manager, supervisor and control loop."""

import re
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path

PR_REF_PATTERN = re.compile(r"^(?P<repo>[\w.-]+/[\w.-]+)#(?P<number>\d+)$")


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


class MonitorStatus(StrEnum):
    """Lifecycle status of a monitor."""

    RUNNING = "running"
    SLEEPING = "sleeping"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        """Whether no further transitions can happen from this status."""
        return self not in ACTIVE_STATUSES


ACTIVE_STATUSES = frozenset({MonitorStatus.RUNNING, MonitorStatus.SLEEPING})


class ExitReason(StrEnum):
    """Why a monitor reached its terminal status."""

    PR_CLEAN = "pr_clean"
    MAX_ITERATIONS = "max_iterations"
    PROCESS_ERROR = "process_error"
    USER_STOPPED = "user_stopped"


class CiStatus(StrEnum):
    """Aggregated CI state of a pull request."""

    SUCCESS = "success"
    FAILURE = "failure"
    PENDING = "pending"


class LoopOutcome(StrEnum):
    """Terminal outcome reported by the control loop."""

    CLEAN = "clean"
    MAX_ITERATIONS = "max_iterations"

    @property
    def exit_code(self) -> int:
        """Process exit code that accompanies this outcome."""
        return 0 if self is LoopOutcome.CLEAN else 1


class FixKind(StrEnum):
    """Kind of remediation requested from the fix invoker."""

    CI = "ci"
    COMMENTS = "comments"


@dataclass(frozen=True, order=True)
class PrRef:
    """Repository plus pull request number, the affinity key of a monitor."""

    repo: str
    number: int

    def __post_init__(self) -> None:
        """Validate the repository identifier and PR number."""
        if self.repo.count("/") != 1 or not all(self.repo.split("/")):
            message = f"Repository must look like 'owner/name' (got '{self.repo}')"
            raise ValueError(message)
        if self.number <= 0:
            message = f"PR number must be positive (got {self.number})"
            raise ValueError(message)

    @property
    def owner(self) -> str:
        """Repository owner login."""
        return self.repo.split("/", 1)[0]

    @property
    def name(self) -> str:
        """Repository name without the owner."""
        return self.repo.split("/", 1)[1]

    @property
    def key(self) -> str:
        """Stable string form used for persistence, e.g. ``owner/repo#12``."""
        return f"{self.repo}#{self.number}"

    @classmethod
    def parse(cls, text: str) -> "PrRef":
        """Parse ``owner/repo#number`` into a PrRef.

        Args:
            text: PR reference string

        Returns:
            Parsed PrRef

        Raises:
            ValueError: If the text is not a valid reference

        """
        match = PR_REF_PATTERN.match(text.strip())
        if match is None:
            message = f"Invalid PR reference '{text}' (expected owner/repo#number)"
            raise ValueError(message)
        return cls(repo=match["repo"], number=int(match["number"]))

    def __str__(self) -> str:
        """Return the ``owner/repo#number`` form."""
        return self.key


@dataclass(frozen=True)
class ReviewThread:
    """An unresolved or resolved code review thread."""

    id: str
    resolved: bool
    author: str
    body: str
    path: str | None = None
    line: int | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly dictionary."""
        return {
            "id": self.id,
            "resolved": self.resolved,
            "author": self.author,
            "body": self.body,
            "path": self.path,
            "line": self.line,
        }


@dataclass(frozen=True)
class ThreadPage:
    """One page of review threads plus the cursor of the next page."""

    threads: list[ReviewThread]
    next_cursor: str | None = None


@dataclass
class Monitor:
    """One remediation session bound to one pull request."""

    id: str
    pr: PrRef
    max_iterations: int
    interval_minutes: int
    started_at: datetime = field(default_factory=utc_now)
    status: MonitorStatus = MonitorStatus.RUNNING
    iteration: int = 0
    pid: int | None = None
    last_check_at: datetime | None = None
    next_check_at: datetime | None = None
    ended_at: datetime | None = None
    exit_reason: ExitReason | None = None
    log_file: Path | None = None
    ci_status: CiStatus | None = None
    comments_found: int = 0
    activity: str | None = None

    @property
    def is_active(self) -> bool:
        """Whether the monitor is running or sleeping."""
        return self.status in ACTIVE_STATUSES

    def copy(self) -> "Monitor":
        """Return a detached copy safe to hand to consumers."""
        return replace(self)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly dictionary."""

        def _iso(value: datetime | None) -> str | None:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "repo": self.pr.repo,
            "prNumber": self.pr.number,
            "prId": self.pr.key,
            "pid": self.pid,
            "status": str(self.status),
            "iteration": self.iteration,
            "maxIterations": self.max_iterations,
            "intervalMinutes": self.interval_minutes,
            "startedAt": _iso(self.started_at),
            "lastCheckAt": _iso(self.last_check_at),
            "nextCheckAt": _iso(self.next_check_at),
            "endedAt": _iso(self.ended_at),
            "exitReason": str(self.exit_reason) if self.exit_reason else None,
            "logFile": str(self.log_file) if self.log_file else None,
            "ciStatus": str(self.ci_status) if self.ci_status else None,
            "commentsFound": self.comments_found,
            "activity": self.activity,
        }
