"""Fix invocation through the ``claude`` CLI."""

import json
import logging
import shutil
import subprocess
from pathlib import Path
from typing import Protocol

from clanker_spanker.config import Paths
from clanker_spanker.errors import CollaboratorError
from clanker_spanker.messages import fix_cli_missing_warning
from clanker_spanker.models import FixKind, PrRef, ReviewThread
from clanker_spanker.prompts import render_prompt
from clanker_spanker.utils import get_logger


class FixInvoker(Protocol):
    """Applies an automated fix to a PR; the loop consumes no structured result."""

    def invoke(
        self,
        pr: PrRef,
        kind: FixKind,
        threads: list[ReviewThread] | None = None,
    ) -> None:
        """Run one fix to completion.

        Raises:
            CollaboratorError: If the fix tool failed

        """


def extract_stream_text(line: str) -> list[str]:
    """Reduce one ``stream-json`` output line to the text lines it carries.

    Assistant messages and streamed deltas contribute their text; other event
    types are dropped. Lines that are not JSON are passed through.

    Args:
        line: One line of ``claude --output-format stream-json`` output

    Returns:
        Text lines, possibly empty

    """
    line = line.strip()
    if not line:
        return []
    try:
        payload = json.loads(line)
    except json.JSONDecodeError:
        return [line]
    if not isinstance(payload, dict):
        return []

    texts: list[str] = []
    match payload.get("type"):
        case "assistant":
            message = payload.get("message") or {}
            for block in message.get("content") or []:
                if isinstance(block, dict) and isinstance(block.get("text"), str):
                    texts.append(block["text"])
        case "content_block_delta":
            delta = payload.get("delta") or {}
            if isinstance(delta.get("text"), str):
                texts.append(delta["text"])
        case "result":
            result = payload.get("result")
            if isinstance(result, dict):
                for block in result.get("content") or []:
                    if isinstance(block, dict) and isinstance(block.get("text"), str):
                        texts.append(block["text"])

    return [text_line for text in texts for text_line in text.splitlines() if text_line.strip()]


class ClaudeFixInvoker:
    """Runs ``/fix-ci`` and ``/handle-pr-comments`` through the claude CLI.

    Output is reduced from stream-json to plain text and relayed through the
    logger so it lands in the monitor output stream.
    """

    def __init__(
        self,
        working_dir: Path,
        paths: Paths,
        command: str = "claude",
        logger: logging.Logger | None = None,
    ) -> None:
        """Initialize the invoker.

        Args:
            working_dir: Local clone the fixes run in
            paths: Path management (threads files live in the state directory)
            command: Executable of the claude CLI
            logger: Logger instance for output

        """
        self.working_dir = working_dir
        self.paths = paths
        self.command = command
        self.logger = logger or get_logger()

    def write_threads_file(self, pr: PrRef, threads: list[ReviewThread]) -> Path:
        """Save prefetched unresolved threads for the comment handler.

        Returns:
            Path of the JSON file

        """
        threads_file = self.paths.threads_file(pr.owner, pr.name, pr.number)
        threads_file.parent.mkdir(parents=True, exist_ok=True)
        threads_file.write_text(
            json.dumps([thread.to_dict() for thread in threads], indent=2),
            encoding="utf-8",
        )
        return threads_file

    def cleanup(self, pr: PrRef) -> None:
        """Remove the threads file of a PR."""
        self.paths.threads_file(pr.owner, pr.name, pr.number).unlink(missing_ok=True)

    def build_prompt(self, pr: PrRef, kind: FixKind, threads_file: Path | None = None) -> str:
        """Render the slash-command prompt for a fix."""
        if kind is FixKind.CI:
            return render_prompt("fix_ci.j2", pr_number=pr.number)
        return render_prompt(
            "handle_comments.j2",
            pr_number=pr.number,
            repo=pr.repo,
            threads_file=str(threads_file) if threads_file else None,
        )

    def build_command(self, prompt: str) -> list[str]:
        """Return the claude command line for a prompt."""
        return [
            self.command,
            "-p",
            prompt,
            "--verbose",
            "--output-format",
            "stream-json",
            "--dangerously-skip-permissions",
        ]

    def invoke(
        self,
        pr: PrRef,
        kind: FixKind,
        threads: list[ReviewThread] | None = None,
    ) -> None:
        """Run a fix and relay its text output.

        A missing CLI skips the fix with a warning.

        Args:
            pr: Pull request to fix
            kind: CI failure or review comments
            threads: Prefetched unresolved threads for comment handling

        Raises:
            CollaboratorError: If the CLI could not run or exited non-zero

        """
        if shutil.which(self.command) is None:
            self.logger.warning(fix_cli_missing_warning(self.command, kind))
            return

        threads_file = None
        if kind is FixKind.COMMENTS and threads:
            threads_file = self.write_threads_file(pr, threads)

        prompt = self.build_prompt(pr, kind, threads_file)
        self.logger.info("🔧 Running %s in %s", prompt, self.working_dir)

        try:
            process = subprocess.Popen(  # noqa: S603  # argv list with shell disabled.
                self.build_command(prompt),
                cwd=self.working_dir,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except OSError as exc:
            raise CollaboratorError(f"{self.command} {kind} fix", str(exc)) from exc

        if process.stdout is not None:
            for raw_line in process.stdout:
                for text in extract_stream_text(raw_line):
                    self.logger.info("%s", text)

        returncode = process.wait()
        if returncode != 0:
            raise CollaboratorError(
                f"{self.command} {kind} fix",
                f"exited with code {returncode}",
            )
