"""GitHub providers backed by the ``gh`` CLI.

This module covers the two queries the control loop needs:
- Aggregated CI status of a PR (``gh pr view --json statusCheckRollup``)
- Review threads of a PR, one GraphQL page at a time
"""

import json
import logging
from pathlib import Path

from clanker_spanker.errors import CollaboratorError
from clanker_spanker.models import CiStatus, PrRef, ReviewThread, ThreadPage
from clanker_spanker.utils import get_logger, run_command

_PENDING_STATES = frozenset(
    {"PENDING", "QUEUED", "IN_PROGRESS", "WAITING", "REQUESTED", "EXPECTED"},
)
_FAILED_STATES = frozenset({"FAILURE", "ERROR"})

REVIEW_THREADS_QUERY = """
    query($owner: String!, $repo: String!, $number: Int!, $cursor: String) {
        repository(owner: $owner, name: $repo) {
            pullRequest(number: $number) {
                reviewThreads(first: 100, after: $cursor) {
                    pageInfo {
                        hasNextPage
                        endCursor
                    }
                    nodes {
                        id
                        isResolved
                        path
                        line
                        comments(first: 1) {
                            nodes {
                                author { login }
                                body
                            }
                        }
                    }
                }
            }
        }
    }
"""


def _single_line(query: str) -> str:
    return " ".join(line.strip() for line in query.splitlines() if line.strip())


def classify_checks(checks: list[dict]) -> CiStatus:
    """Aggregate individual check results into one CI status.

    No checks counts as success. Any failed conclusion wins over anything
    pending; otherwise any queued or running check makes the result pending.

    Args:
        checks: Check entries with ``state``, ``status`` and ``conclusion`` keys

    Returns:
        Aggregated CI status

    """
    if not checks:
        return CiStatus.SUCCESS

    def upper(check: dict, key: str) -> str:
        return str(check.get(key) or "").upper()

    if any(
        upper(check, "conclusion") == "FAILURE" or upper(check, "state") in _FAILED_STATES
        for check in checks
    ):
        return CiStatus.FAILURE

    if any(
        upper(check, "state") in _PENDING_STATES or upper(check, "status") in _PENDING_STATES
        for check in checks
    ):
        return CiStatus.PENDING
    return CiStatus.SUCCESS


class GhCiStatusProvider:
    """CI status of a PR from the status check rollup."""

    def __init__(self, cwd: Path | None = None, logger: logging.Logger | None = None) -> None:
        """Initialize the provider.

        Args:
            cwd: Directory gh runs in
            logger: Logger instance for output

        """
        self.cwd = cwd
        self.logger = logger or get_logger()

    def get_status(self, pr: PrRef) -> CiStatus:
        """Return the aggregated CI status of a PR.

        Raises:
            CollaboratorError: If gh failed or returned unparseable output

        """
        returncode, stdout, stderr = run_command(
            [
                "gh",
                "pr",
                "view",
                str(pr.number),
                "--repo",
                pr.repo,
                "--json",
                "statusCheckRollup",
            ],
            cwd=self.cwd,
        )
        if returncode != 0:
            raise CollaboratorError("gh pr view", stderr.strip() or f"exit code {returncode}")

        try:
            data = json.loads(stdout)
        except json.JSONDecodeError as exc:
            self.logger.exception("Failed to parse CI status for %s", pr)
            raise CollaboratorError("gh pr view", f"invalid JSON: {exc}") from exc

        checks = data.get("statusCheckRollup") if isinstance(data, dict) else None
        if checks is None:
            checks = []
        if not isinstance(checks, list):
            raise CollaboratorError("gh pr view", f"unexpected statusCheckRollup: {checks!r}")
        return classify_checks([check for check in checks if isinstance(check, dict)])


class GhReviewThreadProvider:
    """Paginated review threads of a PR via ``gh api graphql``."""

    def __init__(self, cwd: Path | None = None, logger: logging.Logger | None = None) -> None:
        """Initialize the provider.

        Args:
            cwd: Directory gh runs in
            logger: Logger instance for output

        """
        self.cwd = cwd
        self.logger = logger or get_logger()

    def build_command(self, pr: PrRef, cursor: str | None) -> list[str]:
        """Return the gh command fetching one page of threads."""
        cmd = [
            "gh",
            "api",
            "graphql",
            "-f",
            f"query={_single_line(REVIEW_THREADS_QUERY)}",
            "-F",
            f"owner={pr.owner}",
            "-F",
            f"repo={pr.name}",
            "-F",
            f"number={pr.number}",
        ]
        if cursor:
            cmd.extend(["-f", f"cursor={cursor}"])
        return cmd

    def fetch_page(self, pr: PrRef, cursor: str | None = None) -> ThreadPage:
        """Fetch one page of review threads.

        Args:
            pr: Pull request
            cursor: End cursor of the previous page, None for the first page

        Returns:
            Threads of the page and the cursor of the next page

        Raises:
            CollaboratorError: If gh failed or returned unexpected data

        """
        returncode, stdout, stderr = run_command(self.build_command(pr, cursor), cwd=self.cwd)
        if returncode != 0:
            raise CollaboratorError("gh api graphql", stderr.strip() or f"exit code {returncode}")

        try:
            data = json.loads(stdout)
            review_threads = data["data"]["repository"]["pullRequest"]["reviewThreads"]
            nodes = review_threads["nodes"]
            page_info = review_threads.get("pageInfo") or {}
        except (json.JSONDecodeError, KeyError, TypeError) as exc:
            self.logger.exception("Failed to parse PR thread data")
            raise CollaboratorError("gh api graphql", f"unexpected response: {exc}") from exc

        threads = [self._parse_thread(node) for node in nodes if isinstance(node, dict)]
        next_cursor = page_info.get("endCursor") if page_info.get("hasNextPage") else None
        return ThreadPage(threads=threads, next_cursor=next_cursor)

    @staticmethod
    def _parse_thread(node: dict) -> ReviewThread:
        """Build a ReviewThread from a GraphQL node, keeping only its first comment."""
        comments = (node.get("comments") or {}).get("nodes") or []
        first = comments[0] if comments and isinstance(comments[0], dict) else {}
        author = (first.get("author") or {}).get("login") or "unknown"
        line = node.get("line")
        return ReviewThread(
            id=str(node.get("id") or ""),
            resolved=bool(node.get("isResolved", False)),
            author=str(author),
            body=str(first.get("body") or ""),
            path=node.get("path"),
            line=line if isinstance(line, int) else None,
        )
