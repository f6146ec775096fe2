"""Configuration management for clanker-spanker."""

import os
from dataclasses import dataclass
from pathlib import Path

import pydantic as pyd
from pydantic_settings import BaseSettings, SettingsConfigDict

APP_DIR_NAME = "clanker-spanker"


def _default_data_dir() -> Path:
    """Return the per-user data directory, respecting XDG_DATA_HOME."""
    data_home = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))
    return data_home / APP_DIR_NAME


class Settings(BaseSettings):
    """Configuration settings for clanker-spanker."""

    # Iteration limits
    max_iterations: int = pyd.Field(
        default=10,
        alias="CS_MAX_ITERATIONS",
        description="Default maximum control-loop iterations per monitor",
    )

    interval_minutes: int = pyd.Field(
        default=15,
        alias="CS_INTERVAL_MINUTES",
        description="Default minutes to sleep between iterations",
    )

    # CI wait behaviour
    ci_max_waits: int = pyd.Field(
        default=3,
        alias="CS_CI_MAX_WAITS",
        description="How many times to re-query pending CI before moving on",
    )

    ci_wait_seconds: int = pyd.Field(
        default=300,
        alias="CS_CI_WAIT_SECONDS",
        description="Seconds to wait between pending CI re-queries",
    )

    # Review thread pagination
    max_thread_pages: int = pyd.Field(
        default=10,
        alias="CS_MAX_THREAD_PAGES",
        description="Safety cap on review-thread pages fetched per iteration",
    )

    # Supervision
    output_buffer_lines: int = pyd.Field(
        default=1000,
        alias="CS_OUTPUT_BUFFER_LINES",
        description="Recent output lines retained per monitor",
    )

    stop_grace_seconds: float = pyd.Field(
        default=5.0,
        alias="CS_STOP_GRACE_SECONDS",
        description="Seconds between SIGTERM and SIGKILL when stopping a monitor",
    )

    # Fix invocation
    fix_command: str = pyd.Field(
        default="claude",
        alias="CS_FIX_COMMAND",
        description="Executable used to apply automated fixes",
    )

    # Storage
    data_dir: Path = pyd.Field(
        default_factory=_default_data_dir,
        alias="CS_DATA_DIR",
        description="Directory holding the database, logs and loop state",
    )

    # Debug mode
    debug: bool = pyd.Field(
        default=False,
        alias="CS_DEBUG",
        description="Enable verbose logging",
    )

    # Notification settings
    ntfy_enabled: bool = pyd.Field(
        default=False,
        alias="CS_NTFY_ENABLED",
        description="Send ntfy notifications when a monitor finishes",
    )

    ntfy_url: str = pyd.Field(
        default="http://localhost:2586",
        alias="CS_NTFY_URL",
        description="ntfy server URL",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="CS_",
        extra="allow",
        populate_by_name=True,
    )

    def validate_limits(self) -> None:
        """Validate the iteration, pagination, buffer and CI wait limits.

        Raises:
            ValueError: If a count that must be positive is not, or a CI wait
                setting is negative

        """
        positive = {
            "CS_MAX_ITERATIONS": self.max_iterations,
            "CS_INTERVAL_MINUTES": self.interval_minutes,
            "CS_MAX_THREAD_PAGES": self.max_thread_pages,
            "CS_OUTPUT_BUFFER_LINES": self.output_buffer_lines,
        }
        for env_name, value in positive.items():
            if value <= 0:
                message = (
                    f"Invalid configuration: {env_name} must be a positive integer "
                    f"(got '{value}')"
                )
                raise ValueError(message)

        non_negative = {
            "CS_CI_MAX_WAITS": self.ci_max_waits,
            "CS_CI_WAIT_SECONDS": self.ci_wait_seconds,
        }
        for env_name, value in non_negative.items():
            if value < 0:
                message = (
                    f"Invalid configuration: {env_name} must not be negative (got '{value}')"
                )
                raise ValueError(message)


@dataclass(frozen=True)
class CliOptions:
    """CLI override options for Settings.

    Groups all CLI-provided overrides into a single object so commands pass one
    typed value around instead of Click's keyword arguments.
    """

    max_iterations: int | None = None
    interval_minutes: int | None = None
    data_dir: Path | None = None
    debug: bool = False


def get_settings(options: CliOptions | None = None) -> Settings:
    """Create Settings instance from command line args and environment.

    Args:
        options: CLI override options grouped into a dataclass

    Returns:
        Settings instance

    """
    settings = Settings()

    if options is not None:
        _apply_cli_options(settings, options)

    settings.validate_limits()

    return settings


def _apply_cli_options(settings: Settings, options: CliOptions) -> None:
    """Apply CLI options to Settings instance.

    Args:
        settings: Settings instance to modify
        options: CLI options to apply

    """
    if options.max_iterations is not None:
        settings.max_iterations = options.max_iterations
    if options.interval_minutes is not None:
        settings.interval_minutes = options.interval_minutes
    if options.data_dir is not None:
        settings.data_dir = options.data_dir
    if options.debug:
        settings.debug = options.debug


class Paths:
    """Path management for clanker-spanker."""

    def __init__(self, data_dir: Path | None = None) -> None:
        """Initialize paths.

        Args:
            data_dir: Data directory (defaults to the XDG data directory)

        """
        self.data_dir = data_dir or _default_data_dir()
        self.db_file = self.data_dir / "clanker-spanker.db"
        self.logs_dir = self.data_dir / "logs"
        self.state_dir = self.data_dir / "state"
        self.app_log = self.data_dir / "clanker-spanker.log"

    def ensure_dirs(self) -> None:
        """Create the data, log and state directories if missing."""
        for directory in (self.data_dir, self.logs_dir, self.state_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def monitor_log_file(self, pr_number: int, monitor_id: str) -> Path:
        """Return the full output log path of one monitor."""
        return self.logs_dir / f"monitor-{pr_number}-{monitor_id}.log"

    def threads_file(self, owner: str, name: str, pr_number: int) -> Path:
        """Return the prefetched-threads file handed to the comment fixer."""
        return self.state_dir / f"pr-{owner}-{name}-{pr_number}-threads.json"
