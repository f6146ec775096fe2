"""Tests for loop module."""

import io
from pathlib import Path
from unittest.mock import MagicMock, call

import pytest

from clanker_spanker.config import Settings
from clanker_spanker.errors import CollaboratorError
from clanker_spanker.loop import ControlLoop, LoopOptions, LoopState, MarkerEmitter
from clanker_spanker.models import CiStatus, FixKind, LoopOutcome, PrRef, ReviewThread, ThreadPage

MAX_ITERATIONS = 3
INTERVAL_MINUTES = 15
CI_MAX_WAITS = 2
CI_WAIT_SECONDS = 30
MAX_PAGES = 2
RESUMED_ITERATION = 2
EXHAUSTED_ITERATION = 5
TWO_ITERATIONS = 2


def _thread(thread_id: str, *, resolved: bool = False) -> ReviewThread:
    return ReviewThread(id=thread_id, resolved=resolved, author="reviewer", body="please fix")


class FakeCiProvider:
    """Returns queued CI results; the last one repeats forever."""

    def __init__(self, *results: CiStatus | Exception) -> None:
        """Initialize with the results to return in order."""
        self.results = list(results)
        self.calls = 0

    def get_status(self, pr: PrRef) -> CiStatus:
        """Return (or raise) the next queued result."""
        self.calls += 1
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


class FakeThreadProvider:
    """Returns queued single-page thread lists; the last one repeats forever."""

    def __init__(self, *results: list[ReviewThread] | Exception) -> None:
        """Initialize with the results to return in order."""
        self.results = list(results)

    def fetch_page(self, pr: PrRef, cursor: str | None = None) -> ThreadPage:
        """Return (or raise) the next queued result as one page."""
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return ThreadPage(threads=result)


class EndlessThreadProvider:
    """Always reports another page, to exercise the page cap."""

    def __init__(self) -> None:
        """Initialize the page counter."""
        self.cursors: list[str | None] = []

    def fetch_page(self, pr: PrRef, cursor: str | None = None) -> ThreadPage:
        """Return one thread per page and a cursor pointing further."""
        self.cursors.append(cursor)
        page = len(self.cursors)
        return ThreadPage(threads=[_thread(f"t{page}")], next_cursor=f"cursor-{page}")


def _options(**overrides: int) -> LoopOptions:
    values = {
        "max_iterations": MAX_ITERATIONS,
        "interval_minutes": INTERVAL_MINUTES,
        "ci_max_waits": CI_MAX_WAITS,
        "ci_wait_seconds": CI_WAIT_SECONDS,
        "max_thread_pages": MAX_PAGES,
    }
    values.update(overrides)
    return LoopOptions(**values)


def _make_loop(
    pr: PrRef,
    ci: FakeCiProvider,
    threads: FakeThreadProvider | EndlessThreadProvider,
    **kwargs: object,
) -> tuple[ControlLoop, io.StringIO]:
    stream = io.StringIO()
    loop = ControlLoop(
        pr,
        kwargs.pop("options", _options()),  # type: ignore[arg-type]
        ci,
        threads,
        kwargs.pop("fixer", MagicMock()),  # type: ignore[arg-type]
        emitter=MarkerEmitter(stream),
        logger=MagicMock(),
        sleep=MagicMock(),
        **kwargs,  # type: ignore[arg-type]
    )
    return loop, stream


def _markers(stream: io.StringIO) -> list[str]:
    return stream.getvalue().splitlines()


class TestControlLoop:
    """Tests for the control loop algorithm."""

    def test_clean_on_first_iteration(self, pr: PrRef) -> None:
        """CI success and no threads ends the loop right away."""
        loop, stream = _make_loop(pr, FakeCiProvider(CiStatus.SUCCESS), FakeThreadProvider([]))

        outcome = loop.run()

        assert outcome is LoopOutcome.CLEAN
        assert _markers(stream) == [
            "@@ITERATION:1/3@@",
            "@@CI_STATUS:success@@",
            "@@COMMENTS_FOUND:0@@",
            "@@STATUS:clean@@",
        ]
        loop.fixer.invoke.assert_not_called()
        loop.sleep.assert_not_called()

    def test_max_iterations(self, pr: PrRef) -> None:
        """A PR that never gets clean exhausts the iteration budget."""
        unresolved = [_thread("t1"), _thread("t2", resolved=True)]
        loop, stream = _make_loop(
            pr,
            FakeCiProvider(CiStatus.FAILURE),
            FakeThreadProvider(unresolved),
        )

        outcome = loop.run()

        assert outcome is LoopOutcome.MAX_ITERATIONS
        assert outcome.exit_code == 1
        markers = _markers(stream)
        assert markers[:7] == [
            "@@ITERATION:1/3@@",
            "@@CI_STATUS:failure@@",
            "@@FIX_STARTED:ci@@",
            "@@FIX_DONE:ci@@",
            "@@COMMENTS_FOUND:1@@",
            "@@FIX_STARTED:comments@@",
            "@@FIX_DONE:comments@@",
        ]
        assert markers.count("@@SLEEPING:15@@") == MAX_ITERATIONS - 1
        assert markers[-1] == "@@STATUS:max_iterations@@"
        assert "@@SLEEPING:15@@" not in markers[-3:]
        assert loop.sleep.call_args_list == [call(INTERVAL_MINUTES * 60)] * (MAX_ITERATIONS - 1)
        loop.fixer.invoke.assert_any_call(pr, FixKind.CI, None)
        loop.fixer.invoke.assert_any_call(pr, FixKind.COMMENTS, [_thread("t1")])

    def test_pending_ci_is_waited_for(self, pr: PrRef) -> None:
        """Pending CI is re-queried with CI_WAIT markers until it settles."""
        ci = FakeCiProvider(CiStatus.PENDING, CiStatus.PENDING, CiStatus.SUCCESS)
        loop, stream = _make_loop(pr, ci, FakeThreadProvider([]))

        outcome = loop.run()

        assert outcome is LoopOutcome.CLEAN
        assert _markers(stream)[:6] == [
            "@@ITERATION:1/3@@",
            "@@CI_STATUS:pending@@",
            "@@CI_WAIT:1/2@@",
            "@@CI_STATUS:pending@@",
            "@@CI_WAIT:2/2@@",
            "@@CI_STATUS:success@@",
        ]
        assert loop.sleep.call_args_list == [call(CI_WAIT_SECONDS)] * CI_MAX_WAITS

    def test_ci_still_pending_is_never_clean(self, pr: PrRef) -> None:
        """CI that stays pending prevents a clean verdict and is not fixed."""
        loop, _ = _make_loop(
            pr,
            FakeCiProvider(CiStatus.PENDING),
            FakeThreadProvider([]),
            options=_options(max_iterations=1),
        )

        outcome = loop.run()

        assert outcome is LoopOutcome.MAX_ITERATIONS
        loop.fixer.invoke.assert_not_called()
        loop.logger.warning.assert_any_call(
            f"CI still pending after {CI_MAX_WAITS} wait(s) of {CI_WAIT_SECONDS}s. "
            "Continuing without a CI verdict; the PR cannot be declared clean this iteration.",
        )

    def test_ci_error_reuses_last_status(self, pr: PrRef) -> None:
        """A failed CI query falls back to the previous result."""
        ci = FakeCiProvider(CiStatus.SUCCESS, CollaboratorError("gh pr view", "boom"))
        threads = FakeThreadProvider([_thread("t1")], [])
        loop, stream = _make_loop(pr, ci, threads)

        outcome = loop.run()

        assert outcome is LoopOutcome.CLEAN
        assert _markers(stream).count("@@CI_STATUS:success@@") == TWO_ITERATIONS

    def test_first_ci_error_is_treated_as_pending(self, pr: PrRef) -> None:
        """Without a previous result a failed CI query counts as pending."""
        ci = FakeCiProvider(CollaboratorError("gh pr view", "boom"), CiStatus.SUCCESS)
        loop, stream = _make_loop(pr, ci, FakeThreadProvider([]))

        outcome = loop.run()

        assert outcome is LoopOutcome.CLEAN
        assert _markers(stream)[1:3] == ["@@CI_STATUS:pending@@", "@@CI_WAIT:1/2@@"]

    def test_thread_error_blocks_clean_verdict(self, pr: PrRef) -> None:
        """Unknown thread state is never treated as clean."""
        threads = FakeThreadProvider(CollaboratorError("gh api graphql", "down"), [])
        loop, stream = _make_loop(pr, FakeCiProvider(CiStatus.SUCCESS), threads)

        outcome = loop.run()

        assert outcome is LoopOutcome.CLEAN
        markers = _markers(stream)
        assert markers.count("@@COMMENTS_FOUND:0@@") == TWO_ITERATIONS
        assert "@@ITERATION:2/3@@" in markers

    def test_fix_failure_is_not_fatal(self, pr: PrRef) -> None:
        """A failing fixer still emits FIX_DONE and the loop carries on."""
        fixer = MagicMock()
        fixer.invoke.side_effect = CollaboratorError("claude ci fix", "exited with code 1")
        loop, stream = _make_loop(
            pr,
            FakeCiProvider(CiStatus.FAILURE, CiStatus.SUCCESS),
            FakeThreadProvider([]),
            fixer=fixer,
        )

        outcome = loop.run()

        assert outcome is LoopOutcome.CLEAN
        assert "@@FIX_DONE:ci@@" in _markers(stream)
        loop.logger.warning.assert_any_call(
            "Fix for %s failed: %s",
            FixKind.CI,
            fixer.invoke.side_effect,
        )

    def test_new_threads_are_counted(self, pr: PrRef) -> None:
        """Threads seen in earlier iterations are not reported as new."""
        threads = FakeThreadProvider([_thread("t1")], [_thread("t1"), _thread("t2")], [])
        loop, _ = _make_loop(pr, FakeCiProvider(CiStatus.SUCCESS), threads)

        loop.run()

        loop.logger.info.assert_any_call("💬 1 unresolved thread(s), 1 new")
        loop.logger.info.assert_any_call("💬 2 unresolved thread(s), 1 new")


class TestFetchAllThreads:
    """Tests for review thread pagination."""

    def test_page_cap(self, pr: PrRef) -> None:
        """Pagination stops at the page cap with a warning."""
        provider = EndlessThreadProvider()
        loop, _ = _make_loop(pr, FakeCiProvider(CiStatus.SUCCESS), provider)

        threads = loop.fetch_all_threads()

        assert [t.id for t in threads] == ["t1", "t2"]
        assert provider.cursors == [None, "cursor-1"]
        loop.logger.warning.assert_called_once_with(
            "⚠️ Pagination limit reached (200 threads). Some review threads were not fetched.",
        )


class TestLoopState:
    """Tests for loop state persistence and resume."""

    def test_state_is_saved_during_run_and_removed_on_finish(
        self,
        pr: PrRef,
        tmp_path: Path,
    ) -> None:
        """The state file tracks progress and is deleted at the end."""
        state_file = tmp_path / "state" / "loop.yaml"
        snapshots: list[LoopState] = []
        fixer = MagicMock()
        fixer.invoke.side_effect = lambda *_args: snapshots.append(LoopState.load(state_file))
        loop, _ = _make_loop(
            pr,
            FakeCiProvider(CiStatus.SUCCESS),
            FakeThreadProvider([_thread("t1")], []),
            fixer=fixer,
            state_file=state_file,
        )

        outcome = loop.run()

        assert outcome is LoopOutcome.CLEAN
        assert snapshots == [LoopState(iteration=1)]
        assert not state_file.exists()

    def test_resume_from_state_file(self, pr: PrRef, tmp_path: Path) -> None:
        """The interrupted iteration is run again, then the loop carries on."""
        state_file = tmp_path / "loop.yaml"
        LoopState(iteration=RESUMED_ITERATION, known_thread_ids={"t1"}).save(state_file)
        loop, stream = _make_loop(
            pr,
            FakeCiProvider(CiStatus.SUCCESS),
            FakeThreadProvider([_thread("t1")]),
            state_file=state_file,
        )

        outcome = loop.run()

        assert outcome is LoopOutcome.MAX_ITERATIONS
        iterations = [m for m in _markers(stream) if m.startswith("@@ITERATION")]
        assert iterations == ["@@ITERATION:2/3@@", "@@ITERATION:3/3@@"]
        loop.logger.info.assert_any_call("💬 1 unresolved thread(s), none new")

    def test_resume_past_budget_still_checks_once(self, pr: PrRef, tmp_path: Path) -> None:
        """A saved counter at or beyond the budget runs the last iteration for real."""
        state_file = tmp_path / "loop.yaml"
        LoopState(iteration=EXHAUSTED_ITERATION).save(state_file)
        ci = FakeCiProvider(CiStatus.SUCCESS)
        loop, stream = _make_loop(pr, ci, FakeThreadProvider([]), state_file=state_file)

        outcome = loop.run()

        assert outcome is LoopOutcome.CLEAN
        assert _markers(stream)[0] == "@@ITERATION:3/3@@"
        assert ci.calls == 1

    def test_round_trip(self, tmp_path: Path) -> None:
        """Saved state loads back unchanged."""
        state_file = tmp_path / "loop.yaml"
        state = LoopState(iteration=RESUMED_ITERATION, known_thread_ids={"b", "a"})

        state.save(state_file)

        assert LoopState.load(state_file) == state

    def test_missing_file_is_fresh_state(self, tmp_path: Path) -> None:
        """No file means iteration 0 and nothing known."""
        assert LoopState.load(tmp_path / "missing.yaml") == LoopState()

    @pytest.mark.parametrize(
        "content",
        ["- just\n- a list\n", "iteration: -1\n", "iteration: [unclosed\n", "iteration: two\n"],
    )
    def test_invalid_file(self, tmp_path: Path, content: str) -> None:
        """Malformed files raise ValueError."""
        state_file = tmp_path / "loop.yaml"
        state_file.write_text(content, encoding="utf-8")

        with pytest.raises(ValueError, match="Invalid loop state file"):
            LoopState.load(state_file)


class TestLoopOptions:
    """Tests for LoopOptions."""

    def test_from_settings(self) -> None:
        """Settings provide every limit, overrides win for iterations and interval."""
        settings = Settings(ci_max_waits=CI_MAX_WAITS, max_thread_pages=MAX_PAGES)

        options = LoopOptions.from_settings(settings, max_iterations=MAX_ITERATIONS)

        assert options.max_iterations == MAX_ITERATIONS
        assert options.interval_minutes == settings.interval_minutes
        assert options.ci_max_waits == CI_MAX_WAITS
        assert options.max_thread_pages == MAX_PAGES

    @pytest.mark.parametrize(
        "overrides",
        [
            {"max_iterations": 0},
            {"interval_minutes": 0},
            {"max_thread_pages": 0},
            {"ci_max_waits": -1},
            {"ci_wait_seconds": -1},
        ],
    )
    def test_invalid_limits_rejected(self, overrides: dict[str, int]) -> None:
        """Limits that would skip checks are rejected up front."""
        with pytest.raises(ValueError, match="must"):
            _options(**overrides)

    def test_zero_ci_waits_allowed(self) -> None:
        """Not waiting for pending CI at all is a valid choice."""
        assert _options(ci_max_waits=0, ci_wait_seconds=0).ci_max_waits == 0
