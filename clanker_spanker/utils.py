"""Utility functions for clanker-spanker."""

import logging
import re
import shlex
import subprocess
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

console = Console()
LOG_FORMAT = "[%(asctime)s] [cs] [%(levelname)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOGGER_NAME = "clanker_spanker"


def get_logger() -> logging.Logger:
    """Return the project logger without touching its handlers."""
    return logging.getLogger(LOGGER_NAME)


def configure_logger(
    log_file: Path | None = None,
    *,
    debug: bool = False,
    log_console: Console | None = None,
) -> logging.Logger:
    """Configure and return the project logger.

    Args:
        log_file: Optional file that receives a copy of every record
        debug: Enable debug mode
        log_console: Console for the rich handler (defaults to the shared console)

    Returns:
        Configured logger instance

    """
    logger = get_logger()
    level = logging.DEBUG if debug else logging.INFO
    logger.setLevel(level)
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    rich_handler = RichHandler(
        console=log_console or console,
        show_time=False,
        show_level=False,
        show_path=False,
        markup=False,
        rich_tracebacks=True,
    )
    rich_handler.setLevel(level)
    rich_handler.setFormatter(formatter)
    logger.addHandler(rich_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def format_duration(total_seconds: int) -> str:
    """Format duration in seconds to human-readable string.

    Args:
        total_seconds: Duration in seconds

    Returns:
        Formatted duration string

    """
    hours = total_seconds // 3600
    minutes = (total_seconds % 3600) // 60
    seconds = total_seconds % 60

    if hours > 0:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes > 0:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def run_command(
    command: str | list[str],
    cwd: Path | None = None,
    *,
    capture_output: bool = True,
    check: bool = False,
) -> tuple[int, str, str]:
    """Run a command without invoking a shell.

    String commands are tokenized with ``shlex.split``.

    Args:
        command: Command to run as a string or argv list
        cwd: Working directory
        capture_output: Capture stdout and stderr
        check: Raise exception on non-zero exit code

    Returns:
        Tuple of (exit_code, stdout, stderr)

    """
    try:
        args = shlex.split(command) if isinstance(command, str) else command
    except ValueError as exc:
        return (2, "", f"Invalid command syntax: {exc}")

    if not args:
        return (2, "", "No command provided")

    try:
        result = subprocess.run(  # noqa: S603  # args are tokenized argv with shell disabled.
            args,
            cwd=cwd,
            capture_output=capture_output,
            text=True,
            check=check,
        )
    except FileNotFoundError:
        return (127, "", f"Command not found: {args[0]}")
    else:
        return (result.returncode, result.stdout or "", result.stderr or "")


def sanitize_ntfy_topic(text: str) -> str:
    """Sanitize text for ntfy topic name.

    Args:
        text: Text to sanitize

    Returns:
        Sanitized topic name

    """
    # ntfy allows alphanumeric, hyphen, underscore, and dot
    return re.sub(r"[^a-z0-9._-]", "-", text.lower()).strip("-")


def send_ntfy_notification(
    *,
    succeeded: bool,
    summary: str,
    repo_name: str,
    ntfy_url: str,
    logger: logging.Logger | None = None,
) -> None:
    """Send ntfy notification (best-effort).

    Args:
        succeeded: Whether the monitor finished with a clean PR
        summary: One-line description of the outcome
        repo_name: Repository name, used as topic
        ntfy_url: ntfy server URL
        logger: Logger instance for debug output

    """
    returncode, _, _ = run_command(["which", "curl"], check=False)
    if returncode != 0:
        return

    topic = sanitize_ntfy_topic(repo_name)

    if succeeded:
        title = "✓ clanker-spanker: PR is clean"
        tags = "white_check_mark,done"
        priority = "default"
    else:
        title = "✗ clanker-spanker: monitor finished"
        tags = "warning,x"
        priority = "high"

    run_command(
        [
            "curl",
            "-sS",
            "-X",
            "POST",
            f"{ntfy_url}/{topic}",
            "-H",
            f"Title: {title}",
            "-H",
            f"Tags: {tags}",
            "-H",
            f"Priority: {priority}",
            "-d",
            summary,
        ],
        check=False,
    )

    if logger:
        logger.debug("Sent ntfy notification to %s/%s", ntfy_url, topic)
