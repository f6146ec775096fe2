"""Constants and message generators for user-facing messages."""

from clanker_spanker.models import ExitReason, FixKind, Monitor
from clanker_spanker.utils import format_duration

THREADS_PER_PAGE = 100

_EXIT_REASON_TEXT = {
    ExitReason.PR_CLEAN: "PR is clean (CI passing, no unresolved comments)",
    ExitReason.MAX_ITERATIONS: "reached the iteration limit",
    ExitReason.PROCESS_ERROR: "the monitor process failed",
    ExitReason.USER_STOPPED: "stopped by user",
}


def clone_not_found_warning(repo: str, fallback: str) -> str:
    """Return warning for a repository without a local clone.

    Args:
        repo: Repository identifier
        fallback: Directory used instead

    Returns:
        Warning message

    """
    return (
        f"⚠️  Warning: Could not find local clone of {repo}. "
        f"Fix commands will run in {fallback}"
    )


def fix_cli_missing_warning(command: str, kind: FixKind) -> str:
    """Return warning when the fix CLI is not installed.

    Args:
        command: Executable that was not found
        kind: Fix that is being skipped

    Returns:
        Warning message

    """
    what = "CI fix" if kind is FixKind.CI else "comment handling"
    return f"⚠️ {command} CLI not found, skipping {what}"


def ci_still_pending_warning(max_waits: int, wait_seconds: int) -> str:
    """Return warning when CI is still pending after every wait."""
    return (
        f"CI still pending after {max_waits} wait(s) of {wait_seconds}s. "
        "Continuing without a CI verdict; the PR cannot be declared clean this iteration."
    )


def pagination_limit_warning(max_pages: int) -> str:
    """Return warning when review thread pagination hits its page cap."""
    return (
        f"⚠️ Pagination limit reached ({max_pages * THREADS_PER_PAGE} threads). "
        "Some review threads were not fetched."
    )


def new_threads_message(new_count: int, unresolved_count: int) -> str:
    """Return message describing unresolved threads found in one iteration.

    Args:
        new_count: Threads not seen in earlier iterations
        unresolved_count: All unresolved threads

    Returns:
        Informational message

    """
    if new_count == 0:
        return f"💬 {unresolved_count} unresolved thread(s), none new"
    return f"💬 {unresolved_count} unresolved thread(s), {new_count} new"


def exit_reason_text(reason: ExitReason | None) -> str:
    """Return a human-readable explanation of an exit reason."""
    if reason is None:
        return "still running"
    return _EXIT_REASON_TEXT[reason]


def monitor_summary(monitor: Monitor) -> str:
    """Return a one-line summary of a finished monitor, used for notifications.

    Args:
        monitor: Monitor to describe; its run time is appended once it has ended

    Returns:
        Summary line

    """
    summary = (
        f"{monitor.pr}: {exit_reason_text(monitor.exit_reason)} "
        f"after {monitor.iteration}/{monitor.max_iterations} iteration(s)"
    )
    if monitor.ended_at is None:
        return summary
    elapsed = int((monitor.ended_at - monitor.started_at).total_seconds())
    return f"{summary} in {format_duration(max(elapsed, 0))}"
