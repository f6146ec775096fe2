"""The iterative check/fix/sleep control loop for one PR.

The loop reports progress as marker lines on stdout and free-text logs through
the logger. Collaborators (CI status, review threads, fixes) are injected so the
algorithm can run against test doubles.
"""

import logging
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, TextIO

import yaml

from clanker_spanker.config import Settings
from clanker_spanker.errors import CollaboratorError
from clanker_spanker.fixer import FixInvoker
from clanker_spanker.markers import MarkerTag, format_marker
from clanker_spanker.messages import (
    ci_still_pending_warning,
    new_threads_message,
    pagination_limit_warning,
)
from clanker_spanker.models import CiStatus, FixKind, LoopOutcome, PrRef, ReviewThread, ThreadPage
from clanker_spanker.prompts import render_prompt
from clanker_spanker.utils import get_logger


class CiStatusProvider(Protocol):
    """Aggregated CI status of a PR."""

    def get_status(self, pr: PrRef) -> CiStatus:
        """Return the current CI status.

        Raises:
            CollaboratorError: If the status could not be determined

        """


class ThreadProvider(Protocol):
    """Cursor-paginated review threads of a PR."""

    def fetch_page(self, pr: PrRef, cursor: str | None = None) -> ThreadPage:
        """Return one page of threads.

        Raises:
            CollaboratorError: If the page could not be fetched

        """


@dataclass
class LoopState:
    """Iteration counter and the unresolved thread ids already seen."""

    iteration: int = 0
    known_thread_ids: set[str] = field(default_factory=set)

    def save(self, path: Path) -> None:
        """Write the state to a YAML file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "iteration": self.iteration,
            "known_thread_ids": sorted(self.known_thread_ids),
        }
        path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")

    @classmethod
    def load(cls, path: Path) -> "LoopState":
        """Read a state file, returning a fresh state if it does not exist.

        Raises:
            ValueError: If the file is not a valid loop state

        """
        if not path.exists():
            return cls()
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            message = f"Invalid loop state file {path}: {exc}"
            raise ValueError(message) from exc

        if not isinstance(data, dict):
            message = f"Invalid loop state file {path}: expected a mapping"
            raise ValueError(message)

        iteration = data.get("iteration", 0)
        thread_ids = data.get("known_thread_ids") or []
        if not isinstance(iteration, int) or iteration < 0 or not isinstance(thread_ids, list):
            message = f"Invalid loop state file {path}: bad iteration or thread ids"
            raise ValueError(message)
        return cls(iteration=iteration, known_thread_ids={str(tid) for tid in thread_ids})


@dataclass(frozen=True)
class LoopOptions:
    """Limits of one control-loop run."""

    max_iterations: int = 10
    interval_minutes: int = 15
    ci_max_waits: int = 3
    ci_wait_seconds: int = 300
    max_thread_pages: int = 10

    def __post_init__(self) -> None:
        """Reject limits that would end the loop without a real check.

        Raises:
            ValueError: If a count that must be positive is not, or a CI wait
                setting is negative

        """
        if min(self.max_iterations, self.interval_minutes, self.max_thread_pages) <= 0:
            message = "max_iterations, interval_minutes and max_thread_pages must be positive"
            raise ValueError(message)
        if self.ci_max_waits < 0 or self.ci_wait_seconds < 0:
            message = "ci_max_waits and ci_wait_seconds must not be negative"
            raise ValueError(message)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        max_iterations: int | None = None,
        interval_minutes: int | None = None,
    ) -> "LoopOptions":
        """Build options from settings, with optional per-run overrides."""
        return cls(
            max_iterations=max_iterations or settings.max_iterations,
            interval_minutes=interval_minutes or settings.interval_minutes,
            ci_max_waits=settings.ci_max_waits,
            ci_wait_seconds=settings.ci_wait_seconds,
            max_thread_pages=settings.max_thread_pages,
        )


class MarkerEmitter:
    """Writes marker lines to a stream, flushing after each one."""

    def __init__(self, stream: TextIO | None = None) -> None:
        """Initialize the emitter (defaults to stdout)."""
        self.stream = stream

    def emit(self, tag: MarkerTag, payload: object) -> None:
        """Write one marker line."""
        stream = self.stream or sys.stdout
        stream.write(format_marker(tag, payload) + "\n")
        stream.flush()


class ControlLoop:
    """Check CI, fix, handle review comments and sleep until the PR is clean."""

    def __init__(
        self,
        pr: PrRef,
        options: LoopOptions,
        ci_provider: CiStatusProvider,
        thread_provider: ThreadProvider,
        fixer: FixInvoker,
        *,
        emitter: MarkerEmitter | None = None,
        logger: logging.Logger | None = None,
        state: LoopState | None = None,
        state_file: Path | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the loop.

        Args:
            pr: Pull request to remediate
            options: Iteration, interval, CI wait and pagination limits
            ci_provider: CI status source
            thread_provider: Review thread source
            fixer: Fix invoker for CI failures and comments
            emitter: Marker output (defaults to stdout)
            logger: Logger instance for output
            state: Initial state (defaults to ``state_file`` contents or empty)
            state_file: YAML file the state is persisted to after each change
            sleep: Sleep function, injectable for tests

        """
        self.pr = pr
        self.options = options
        self.ci_provider = ci_provider
        self.thread_provider = thread_provider
        self.fixer = fixer
        self.emitter = emitter or MarkerEmitter()
        self.logger = logger or get_logger()
        self.state_file = state_file
        if state is None:
            state = LoopState.load(state_file) if state_file else LoopState()
        self.state = state
        self.sleep = sleep
        self._last_ci_status: CiStatus | None = None
        self._last_threads: list[ReviewThread] = []

    def run(self) -> LoopOutcome:
        """Run iterations until the PR is clean or the budget is exhausted.

        Returns:
            The terminal outcome, also emitted as a STATUS marker

        """
        max_iterations = self.options.max_iterations
        # A resumed loop repeats the iteration it was interrupted in and always
        # runs at least one check.
        first = min(max(self.state.iteration, 1), max_iterations)
        for iteration in range(first, max_iterations + 1):
            self.state.iteration = iteration
            self._save_state()
            self.emitter.emit(MarkerTag.ITERATION, f"{iteration}/{max_iterations}")
            self.logger.info(
                render_prompt(
                    "iteration_header.j2",
                    iteration=iteration,
                    max_iterations=max_iterations,
                ),
            )

            if self.run_iteration():
                return self._finish(LoopOutcome.CLEAN)

            if iteration >= max_iterations:
                break

            self.emitter.emit(MarkerTag.SLEEPING, self.options.interval_minutes)
            self.logger.info("😴 Sleeping %s minutes...", self.options.interval_minutes)
            self.sleep(self.options.interval_minutes * 60)

        self.logger.warning(
            "Maximum iterations (%s) reached without a clean PR.",
            max_iterations,
        )
        return self._finish(LoopOutcome.MAX_ITERATIONS)

    def run_iteration(self) -> bool:
        """Run one check/fix pass.

        Returns:
            True if the PR is clean (CI success and no unresolved threads)

        """
        ci_status = self.wait_for_ci()
        if ci_status is CiStatus.FAILURE:
            self._fix(FixKind.CI)

        threads_known = True
        try:
            unresolved = [t for t in self.fetch_all_threads() if not t.resolved]
            self._last_threads = unresolved
        except CollaboratorError as exc:
            self.logger.warning("Could not fetch review threads (%s); reusing last result", exc)
            unresolved = self._last_threads
            threads_known = False

        self.emitter.emit(MarkerTag.COMMENTS_FOUND, len(unresolved))

        if threads_known and not unresolved and ci_status is CiStatus.SUCCESS:
            self.logger.info("✅ PR is clean: CI passing and no unresolved comments.")
            return True

        if unresolved:
            current_ids = {thread.id for thread in unresolved}
            new_ids = current_ids - self.state.known_thread_ids
            self.logger.info(new_threads_message(len(new_ids), len(unresolved)))
            self._fix(FixKind.COMMENTS, unresolved)
            self.state.known_thread_ids = current_ids
            self._save_state()
        else:
            self.logger.info("No unresolved review threads.")
        return False

    def wait_for_ci(self) -> CiStatus:
        """Query CI, re-querying while pending up to the wait budget.

        Returns:
            The last CI status seen; may still be pending

        """
        status = self._query_ci()
        waits = 0
        while status is CiStatus.PENDING and waits < self.options.ci_max_waits:
            waits += 1
            self.emitter.emit(MarkerTag.CI_WAIT, f"{waits}/{self.options.ci_max_waits}")
            self.logger.info(
                "⏳ CI pending, waiting %ss (%s/%s)...",
                self.options.ci_wait_seconds,
                waits,
                self.options.ci_max_waits,
            )
            self.sleep(self.options.ci_wait_seconds)
            status = self._query_ci()

        if status is CiStatus.PENDING:
            self.logger.warning(
                ci_still_pending_warning(self.options.ci_max_waits, self.options.ci_wait_seconds),
            )
        return status

    def _query_ci(self) -> CiStatus:
        try:
            status = self.ci_provider.get_status(self.pr)
        except CollaboratorError as exc:
            status = self._last_ci_status or CiStatus.PENDING
            self.logger.warning("Could not query CI status (%s); assuming %s", exc, status)
        self._last_ci_status = status
        self.emitter.emit(MarkerTag.CI_STATUS, status)
        return status

    def fetch_all_threads(self) -> list[ReviewThread]:
        """Fetch every review thread page, up to the page cap.

        Raises:
            CollaboratorError: If any page could not be fetched

        """
        threads: list[ReviewThread] = []
        cursor: str | None = None
        for _ in range(self.options.max_thread_pages):
            page = self.thread_provider.fetch_page(self.pr, cursor)
            threads.extend(page.threads)
            if not page.next_cursor:
                return threads
            cursor = page.next_cursor

        self.logger.warning(pagination_limit_warning(self.options.max_thread_pages))
        return threads

    def _fix(self, kind: FixKind, threads: list[ReviewThread] | None = None) -> None:
        self.emitter.emit(MarkerTag.FIX_STARTED, kind)
        try:
            self.fixer.invoke(self.pr, kind, threads)
        except CollaboratorError as exc:
            self.logger.warning("Fix for %s failed: %s", kind, exc)
        finally:
            self.emitter.emit(MarkerTag.FIX_DONE, kind)

    def _save_state(self) -> None:
        if self.state_file:
            self.state.save(self.state_file)

    def _finish(self, outcome: LoopOutcome) -> LoopOutcome:
        if self.state_file:
            self.state_file.unlink(missing_ok=True)
        self.emitter.emit(MarkerTag.STATUS, outcome)
        return outcome
