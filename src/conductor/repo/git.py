from __future__ import annotations

import logging
import subprocess
from collections.abc import Iterable
from pathlib import Path, PurePosixPath

logger = logging.getLogger(__name__)


class GitError(RuntimeError):
    """Raised when a git command exits non-zero."""

    def __init__(self, message: str, *, args: list[str] | None = None, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.git_args = args or []
        self.exit_code = exit_code


def relative_commit_paths(repo_root: Path, paths: Iterable[str]) -> list[str]:
    """Repo-relative forward-slash paths; entries escaping the repo are dropped."""
    root = repo_root.resolve()
    relative: list[str] = []
    for raw in paths:
        candidate = Path(raw.replace("\\", "/"))
        if candidate.is_absolute():
            try:
                candidate = candidate.resolve().relative_to(root)
            except ValueError:
                logger.warning("Rejected path outside repository: %s", raw)
                continue
        rel = PurePosixPath(candidate.as_posix())
        if ".." in rel.parts or rel.is_absolute() or not rel.parts:
            logger.warning("Rejected suspicious path during git operation: %s", raw)
            continue
        text = str(rel)
        if text not in relative:
            relative.append(text)
    return relative


class GitRepository:
    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root.resolve()

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=self.repo_root,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise GitError(
                proc.stderr.strip() or proc.stdout.strip() or f"git {args[0]} failed",
                args=args,
                exit_code=proc.returncode,
            )
        return proc

    def is_git_repo(self) -> bool:
        proc = self._run_git(["rev-parse", "--is-inside-work-tree"], check=False)
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def head(self) -> str | None:
        proc = self._run_git(["rev-parse", "HEAD"], check=False)
        if proc.returncode != 0:
            return None
        return proc.stdout.strip() or None

    def has_remote(self) -> bool:
        return bool(self._run_git(["remote"], check=False).stdout.strip())

    def dirty_paths(self) -> list[str]:
        proc = self._run_git(["status", "--porcelain"])
        paths: list[str] = []
        for line in proc.stdout.splitlines():
            if len(line) < 4:
                continue
            path = line[3:]
            if " -> " in path:
                path = path.split(" -> ", 1)[1]
            paths.append(path.strip().strip('"'))
        return paths

    def commit_paths(self, paths: list[str], message: str) -> str:
        """Stage and commit exactly ``paths``; returns the new HEAD."""
        if not paths:
            raise GitError("No paths to commit")
        self._run_git(["add", "--", *paths])
        staged = self._run_git(["diff", "--cached", "--name-only", "--", *paths]).stdout.strip()
        if not staged:
            raise GitError("No staged changes for the given paths")
        self._run_git(["commit", "-m", message, "--", *paths])
        head = self.head()
        if head is None:
            raise GitError("Commit did not produce a HEAD")
        logger.info("Committed %d path(s) as %s", len(paths), head[:10])
        return head

    def fetch(self) -> None:
        self._run_git(["fetch", "--prune"])

    def pull(self) -> tuple[str | None, str | None]:
        """Fast-forward pull; returns HEAD before and after."""
        before = self.head()
        self._run_git(["pull", "--ff-only"])
        return before, self.head()
