"""Local clone discovery for a GitHub repository."""

from pathlib import Path

from clanker_spanker.models import PrRef


def _owner_variants(owner: str) -> list[str]:
    """Return owner directory spellings to try, e.g. ``AcmeHQ`` -> ``AcmeAI``."""
    base = owner.removesuffix("HQ")
    variants = [owner, f"{base}AI", base, f"{owner}AI"]
    return list(dict.fromkeys(v for v in variants if v))


def _is_clone(path: Path) -> bool:
    # Worktrees have a .git file instead of a directory
    return (path / ".git").exists()


def newest_conductor_workspace(home: Path, repo_name: str) -> Path | None:
    """Return the most recently modified Conductor worktree of a repository.

    Args:
        home: Home directory to search under
        repo_name: Repository name without the owner

    Returns:
        Workspace directory or None if there is none

    """
    workspace_dir = home / "conductor" / "workspaces" / repo_name
    if not workspace_dir.is_dir():
        return None

    candidates = [
        git_file.parent
        for git_file in workspace_dir.glob("*/.git")
        if git_file.is_file()
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda path: path.stat().st_mtime)


def candidate_paths(repo: str, home: Path) -> list[Path]:
    """List the locations searched for a clone of ``owner/name``, in priority order."""
    owner, name = PrRef(repo=repo, number=1).owner, repo.split("/", 1)[1]
    paths: list[Path] = []

    workspace = newest_conductor_workspace(home, name)
    if workspace is not None:
        paths.append(workspace)

    for variant in _owner_variants(owner):
        paths.extend(
            [
                home / variant / name,
                home / "repos" / variant / name,
                home / "code" / variant / name,
            ],
        )

    paths.extend(
        [
            home / "repos" / name,
            home / "code" / name,
            home / "projects" / name,
            home / "workspace" / name,
            home / "ghq" / "github.com" / owner / name,
        ],
    )
    return paths


def find_local_clone(repo: str, home: Path | None = None) -> Path | None:
    """Find a local clone of a repository.

    Args:
        repo: Repository identifier ``owner/name``
        home: Home directory to search under (defaults to the user's home)

    Returns:
        Path of the first clone found, or None

    """
    for path in candidate_paths(repo, home or Path.home()):
        if _is_clone(path):
            return path
    return None
