"""Command-line interface for clanker-spanker."""

import sys
import threading
import traceback
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from clanker_spanker.clones import find_local_clone
from clanker_spanker.config import CliOptions, Paths, Settings, get_settings
from clanker_spanker.errors import ClankerSpankerError
from clanker_spanker.fixer import ClaudeFixInvoker
from clanker_spanker.github import GhCiStatusProvider, GhReviewThreadProvider
from clanker_spanker.loop import ControlLoop, LoopOptions
from clanker_spanker.manager import MonitorManager
from clanker_spanker.messages import clone_not_found_warning, exit_reason_text, monitor_summary
from clanker_spanker.models import ExitReason, Monitor, MonitorStatus, PrRef
from clanker_spanker.prompts import render_prompt
from clanker_spanker.store import MonitorStore
from clanker_spanker.utils import configure_logger, send_ntfy_notification

console = Console()

LOOP_ERROR_EXIT_CODE = 2
INTERRUPTED_EXIT_CODE = 130
SHORT_ID_LENGTH = 8
WATCH_POLL_SECONDS = 0.5

type CliValue = str | int | bool | Path | None


@contextmanager
def _handle_errors(*, debug: bool, error_code: int = 1) -> Iterator[None]:
    """Map expected failures to a console message and an exit code."""
    try:
        yield
    except (ValueError, ClankerSpankerError) as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(error_code)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(INTERRUPTED_EXIT_CODE)
    except Exception as e:
        console.print(f"[red]Unexpected error:[/red] {escape(str(e))}")
        if debug:
            console.print(escape(traceback.format_exc()))
        sys.exit(error_code)


def _open_manager(settings: Settings) -> tuple[MonitorManager, MonitorStore]:
    """Open the monitor store and a manager on top of it."""
    paths = Paths(settings.data_dir)
    paths.ensure_dirs()
    store = MonitorStore(paths.db_file)
    return MonitorManager(settings, store, paths=paths), store


def _build_cli_options(ctx: click.Context, kwargs: dict[str, CliValue]) -> CliOptions:
    """Build CliOptions from the group context and Click's keyword arguments.

    Click guarantees value types via each parameter's ``type=``, so the
    conversions below are safe.

    Args:
        ctx: Click context carrying group-level options
        kwargs: Keyword arguments injected by Click decorators

    Returns:
        CliOptions with CLI-provided overrides

    """
    data_dir = ctx.obj.get("data_dir") if ctx.obj else None
    max_iterations = kwargs.get("max_iterations")
    interval_minutes = kwargs.get("interval_minutes")

    return CliOptions(
        max_iterations=int(str(max_iterations)) if max_iterations is not None else None,
        interval_minutes=int(str(interval_minutes)) if interval_minutes is not None else None,
        data_dir=data_dir,
        debug=bool(kwargs.get("debug", False)),
    )


@click.group()
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory for the monitor database, logs and loop state",
)
@click.version_option(package_name="clanker-spanker")
@click.pass_context
def main(ctx: click.Context, data_dir: Path | None) -> None:
    r"""Automated PR remediation: watch CI and review comments, fix, repeat.

    \f
    Environment variables:
      CS_MAX_ITERATIONS (default: 10), CS_INTERVAL_MINUTES (default: 15),
      CS_CI_MAX_WAITS, CS_CI_WAIT_SECONDS, CS_MAX_THREAD_PAGES,
      CS_OUTPUT_BUFFER_LINES, CS_STOP_GRACE_SECONDS, CS_FIX_COMMAND,
      CS_DATA_DIR, CS_DEBUG, CS_NTFY_ENABLED, CS_NTFY_URL

    Examples:
      # Monitor PR 42 until it is clean
      clanker-spanker watch acme/widgets 42

      # List monitors that are still running
      clanker-spanker list --status running

    """
    ctx.ensure_object(dict)
    ctx.obj["data_dir"] = data_dir


@main.command("loop")
@click.argument("pr_number", type=click.IntRange(min=1))
@click.argument("repo")
@click.argument("max_iterations", type=click.IntRange(min=1), required=False)
@click.argument("interval_minutes", type=click.IntRange(min=1), required=False)
@click.option(
    "--state-file",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Persist loop state here so an interrupted loop can resume",
)
@click.option("-d", "--debug", is_flag=True, help="Enable verbose logging")
@click.pass_context
def loop_command(ctx: click.Context, **kwargs: CliValue) -> None:
    """Run the check/fix/sleep control loop for one PR (exit 0 clean, 1 max iterations)."""
    debug = bool(kwargs.get("debug", False))
    with _handle_errors(debug=debug, error_code=LOOP_ERROR_EXIT_CODE):
        settings = get_settings(_build_cli_options(ctx, kwargs))
        logger = configure_logger(debug=settings.debug)
        paths = Paths(settings.data_dir)
        pr = PrRef(repo=str(kwargs["repo"]), number=int(str(kwargs["pr_number"])))
        state_file = kwargs.get("state_file")

        repo_dir = find_local_clone(pr.repo)
        if repo_dir is None:
            repo_dir = Path.cwd()
            logger.warning(clone_not_found_warning(pr.repo, str(repo_dir)))

        options = LoopOptions.from_settings(settings)
        logger.info(
            render_prompt(
                "loop_banner.j2",
                pr_number=pr.number,
                repo=pr.repo,
                repo_dir=str(repo_dir),
                max_iterations=options.max_iterations,
                interval_minutes=options.interval_minutes,
            ),
        )

        fixer = ClaudeFixInvoker(repo_dir, paths, settings.fix_command, logger)
        control_loop = ControlLoop(
            pr,
            options,
            GhCiStatusProvider(repo_dir, logger),
            GhReviewThreadProvider(repo_dir, logger),
            fixer,
            logger=logger,
            state_file=state_file if isinstance(state_file, Path) else None,
        )
        try:
            outcome = control_loop.run()
        finally:
            fixer.cleanup(pr)

    sys.exit(outcome.exit_code)


@main.command("watch")
@click.argument("repo")
@click.argument("pr_number", type=click.IntRange(min=1))
@click.option(
    "-n",
    "--max-iterations",
    type=click.IntRange(min=1),
    help="Maximum loop iterations (default: 10)",
)
@click.option(
    "-i",
    "--interval",
    "interval_minutes",
    type=click.IntRange(min=1),
    help="Minutes between iterations (default: 15)",
)
@click.option("-d", "--debug", is_flag=True, help="Enable verbose logging")
@click.pass_context
def watch_command(ctx: click.Context, **kwargs: CliValue) -> None:
    """Start a monitor for a PR and stream its output until it finishes (Ctrl-C stops it)."""
    debug = bool(kwargs.get("debug", False))
    with _handle_errors(debug=debug):
        settings = get_settings(_build_cli_options(ctx, kwargs))
        paths = Paths(settings.data_dir)
        logger = configure_logger(paths.app_log, debug=settings.debug)
        pr = PrRef(repo=str(kwargs["repo"]), number=int(str(kwargs["pr_number"])))

        manager, store = _open_manager(settings)
        finished = _watch(manager, pr)
        store.close()

        console.print(f"[bold]{escape(monitor_summary(finished))}[/bold]")
        if settings.ntfy_enabled:
            send_ntfy_notification(
                succeeded=finished.exit_reason is ExitReason.PR_CLEAN,
                summary=monitor_summary(finished),
                repo_name=finished.pr.name,
                ntfy_url=settings.ntfy_url,
                logger=logger,
            )

    sys.exit(0 if finished.exit_reason is ExitReason.PR_CLEAN else 1)


def _watch(manager: MonitorManager, pr: PrRef) -> Monitor:
    """Start a monitor and block until its completion event arrives."""
    done = threading.Event()
    result: list[Monitor] = []

    def on_output(_monitor_id: str, line: str) -> None:
        console.print(line, markup=False, highlight=False)

    def on_complete(monitor: Monitor) -> None:
        result.append(monitor)
        done.set()

    unsubscribe = manager.subscribe(None, on_output, on_complete)
    try:
        monitor = manager.start(pr)
        console.print(f"[cyan]Started monitor {monitor.id[:SHORT_ID_LENGTH]} for {pr}[/cyan]")
        try:
            while not done.wait(WATCH_POLL_SECONDS):
                pass
        except KeyboardInterrupt:
            console.print("\n[yellow]Stopping monitor...[/yellow]")
            manager.shutdown()
            done.wait(manager.settings.stop_grace_seconds)
    finally:
        unsubscribe()

    return result[0] if result else manager.get(monitor.id)


@main.command("stop")
@click.argument("monitor_id")
@click.pass_context
def stop_command(ctx: click.Context, monitor_id: str) -> None:
    """Stop an active monitor."""
    with _handle_errors(debug=False):
        manager, store = _open_manager(get_settings(_build_cli_options(ctx, {})))
        monitor = manager.stop(_resolve_id(manager, monitor_id))
        store.close()
        short_id = monitor.id[:SHORT_ID_LENGTH]
        console.print(f"[yellow]Stopped monitor {short_id} ({monitor.pr})[/yellow]")


@main.command("list")
@click.option(
    "--status",
    type=click.Choice([str(status) for status in MonitorStatus]),
    help="Only show monitors with this status",
)
@click.option("--repo", help="Only show monitors of this repository (owner/name)")
@click.pass_context
def list_command(ctx: click.Context, status: str | None, repo: str | None) -> None:
    """List monitors, newest first."""
    with _handle_errors(debug=False):
        manager, store = _open_manager(get_settings(_build_cli_options(ctx, {})))
        monitors = manager.list_monitors(status=status, repo=repo)
        store.close()

        if not monitors:
            console.print("No monitors found.")
            return

        table = Table(title="Monitors")
        for column in ("ID", "PR", "Status", "Iteration", "Started", "Activity / Result"):
            table.add_column(column)
        for monitor in monitors:
            if monitor.is_active:
                detail = monitor.activity
            else:
                detail = exit_reason_text(monitor.exit_reason)
            table.add_row(
                monitor.id[:SHORT_ID_LENGTH],
                str(monitor.pr),
                str(monitor.status),
                f"{monitor.iteration}/{monitor.max_iterations}",
                monitor.started_at.astimezone().strftime("%Y-%m-%d %H:%M"),
                escape(detail or ""),
            )
        console.print(table)


@main.command("show")
@click.argument("monitor_id")
@click.pass_context
def show_command(ctx: click.Context, monitor_id: str) -> None:
    """Show one monitor as JSON."""
    with _handle_errors(debug=False):
        manager, store = _open_manager(get_settings(_build_cli_options(ctx, {})))
        monitor = manager.get(_resolve_id(manager, monitor_id))
        store.close()
        console.print_json(data=monitor.to_dict())


@main.command("logs")
@click.argument("monitor_id")
@click.option("--tail", type=click.IntRange(min=0), help="Only show the last N lines")
@click.pass_context
def logs_command(ctx: click.Context, monitor_id: str, tail: int | None) -> None:
    """Print the output log of a monitor."""
    with _handle_errors(debug=False):
        manager, store = _open_manager(get_settings(_build_cli_options(ctx, {})))
        lines = manager.read_log(_resolve_id(manager, monitor_id), tail=tail)
        store.close()
        for line in lines:
            console.print(line, markup=False, highlight=False)


def _resolve_id(manager: MonitorManager, monitor_id: str) -> str:
    """Expand a unique id prefix (as shown by ``list``) to a full monitor id."""
    matches = [m.id for m in manager.list_monitors() if m.id.startswith(monitor_id)]
    if len(matches) == 1:
        return matches[0]
    if len(matches) > 1:
        message = f"Monitor id prefix '{monitor_id}' is ambiguous"
        raise ValueError(message)
    return monitor_id


if __name__ == "__main__":
    main()
