"""Evolver git operations -- diff stats for budget checks, rollback, and commit."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Sequence

from evolver.models import DiffStats, GitError

logger = logging.getLogger(__name__)

COMMIT_AUTHOR_NAME = "repo-evolver"
COMMIT_AUTHOR_EMAIL = "repo-evolver@users.noreply.github.com"


def _run_git(repo_root: Path, args: list[str]) -> subprocess.CompletedProcess[str]:
    command = ["git", "-C", str(repo_root), *args]
    try:
        return subprocess.run(
            command,
            text=True,
            capture_output=True,
            check=False,
        )
    except FileNotFoundError as exc:
        return subprocess.CompletedProcess(command, 127, "", f"git not found: {exc}")
    except OSError as exc:
        return subprocess.CompletedProcess(command, 1, "", str(exc))


def _checked_git(repo_root: Path, args: list[str]) -> str:
    completed = _run_git(repo_root, args)
    if completed.returncode != 0:
        detail = (completed.stderr or completed.stdout).strip()
        raise GitError(f"git {' '.join(args)} failed (exit={completed.returncode}): {detail}")
    return completed.stdout


def is_git_worktree(repo_root: Path) -> bool:
    check = _run_git(repo_root, ["rev-parse", "--is-inside-work-tree"])
    return check.returncode == 0 and check.stdout.strip() == "true"


def parse_numstat(output: str) -> tuple[int, int]:
    """Return ``(files, lines)`` from ``git diff --numstat`` output; binary rows count 0 lines."""
    files = 0
    lines = 0
    for row in output.splitlines():
        parts = row.split("\t")
        if len(parts) < 3:
            continue
        files += 1
        for value in parts[:2]:
            if value.isdigit():
                lines += int(value)
    return files, lines


class GitBudgetChecker:
    """Stage the working tree and report its size against HEAD.

    ``excluded_paths`` (relative to ``repo_root``) are left unstaged and survive
    ``discard_changes``; the run state, run log and lock file live there.
    """

    def __init__(self, repo_root: Path, *, excluded_paths: Sequence[str] = ()) -> None:
        self.repo_root = Path(repo_root)
        self.excluded_paths = tuple(path for path in excluded_paths if path)

    def _exclude_pathspecs(self) -> list[str]:
        return [f":(exclude){path}" for path in self.excluded_paths]

    def stage_all(self) -> None:
        _checked_git(self.repo_root, ["add", "-A", "--", ".", *self._exclude_pathspecs()])

    def has_changes(self) -> bool:
        output = _checked_git(self.repo_root, ["status", "--porcelain", "--", ".", *self._exclude_pathspecs()])
        return bool(output.strip())

    def compute_diff_stats(self) -> DiffStats:
        self.stage_all()
        files, lines = parse_numstat(_checked_git(self.repo_root, ["diff", "--cached", "--numstat"]))
        added = _checked_git(self.repo_root, ["diff", "--cached", "--name-status", "--diff-filter=A"])
        new_files = sum(1 for row in added.splitlines() if row.strip())
        return DiffStats(files_changed=files, lines_changed=lines, new_files=new_files)

    def discard_changes(self) -> None:
        logger.warning("discarding working tree changes", extra={"repo_root": str(self.repo_root)})
        _checked_git(self.repo_root, ["reset", "--hard"])
        clean_args = ["clean", "-fd"]
        for path in self.excluded_paths:
            clean_args.extend(["-e", path])
        _checked_git(self.repo_root, clean_args)

    def checkout_new(self, branch: str) -> None:
        _checked_git(self.repo_root, ["checkout", "-b", branch])

    def commit(self, message: str) -> None:
        self.stage_all()
        _checked_git(
            self.repo_root,
            [
                "-c",
                f"user.name={COMMIT_AUTHOR_NAME}",
                "-c",
                f"user.email={COMMIT_AUTHOR_EMAIL}",
                "commit",
                "-m",
                message,
            ],
        )
