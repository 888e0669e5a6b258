"""Git repository, worktree and commit operations.

``GitClient`` shells out to ``git`` and keeps every method close to a single
git command so callers can reason about side effects. All invocations go
through ``_git`` which raises ``GitError`` on a non-zero exit.

``DryRunGitClient`` has the same surface but never touches git state: worktree
creation only makes the directory, commits are skipped. It lets the
orchestrator be exercised end-to-end without a repository.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from multi_runner.paths import runner_branch_name

logger = logging.getLogger(__name__)

INITIAL_README = "# Initial repository\n"
NO_DESCRIPTION = "No description provided"


class GitError(RuntimeError):
    """A git command failed."""

    def __init__(self, args: list[str], returncode: int, stderr: str) -> None:
        self.command = ["git", *args]
        self.returncode = returncode
        self.stderr = stderr.strip()
        super().__init__(
            f"git {' '.join(args)} failed with exit code {returncode}: {self.stderr}",
        )


@dataclass(frozen=True)
class GitWorktree:
    branch: str
    path: Path


@dataclass(slots=True)
class CleanupReport:
    """What ``GitClient.cleanup`` removed."""

    removed_worktrees: list[Path] = field(default_factory=list)
    deleted_branches: list[str] = field(default_factory=list)
    removed_base_dir: bool = False


class GitClient:
    def __init__(self, *, control_root: Path) -> None:
        self.control_root = control_root

    def is_git_repo(self, path: Path | None = None) -> bool:
        target = path or self.control_root
        if not target.is_dir():
            return False
        p = subprocess.run(
            ["git", "rev-parse", "--git-dir"],
            cwd=target,
            capture_output=True,
            check=False,
        )
        return p.returncode == 0

    def has_commits(self) -> bool:
        p = subprocess.run(
            ["git", "rev-parse", "--verify", "--quiet", "HEAD"],
            cwd=self.control_root,
            capture_output=True,
            check=False,
        )
        return p.returncode == 0

    def current_branch(self, *, cwd: Path | None = None) -> str:
        return self._git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd).strip()

    def branch_exists(self, branch: str) -> bool:
        p = subprocess.run(
            ["git", "show-ref", "--verify", "--quiet", f"refs/heads/{branch}"],
            cwd=self.control_root,
            check=False,
        )
        return p.returncode == 0

    def ensure_repository(self, *, base_branch: str) -> None:
        """Make ``control_root`` a git repository with a commit on ``base_branch``."""

        if not self.control_root.is_dir():
            logger.info("Creating git project directory: %s", self.control_root)
            self.control_root.mkdir(parents=True, exist_ok=True)
        if not self.is_git_repo():
            logger.info("Initializing git repository: %s", self.control_root)
            self._git(["init"])
        if not self.has_commits():
            logger.info("Creating initial commit in: %s", self.control_root)
            (self.control_root / "README.md").write_text(INITIAL_README, "utf-8")
            self._git(["add", "README.md"])
            self._git(["commit", "-m", "Initial commit"])
        if self.current_branch() != base_branch:
            if self.branch_exists(base_branch):
                logger.info("Checking out existing base branch: %s", base_branch)
                self._git(["checkout", base_branch])
            else:
                logger.info("Creating and checking out base branch: %s", base_branch)
                self._git(["checkout", "-b", base_branch])

    def worktrees(self) -> dict[str, Path]:
        """Return mapping of branch name -> worktree path."""

        out = self._git(["worktree", "list", "--porcelain"])
        current_path: Path | None = None
        branch: str | None = None
        result: dict[str, Path] = {}

        def flush() -> None:
            nonlocal current_path, branch
            if current_path is not None and branch is not None and branch.startswith("refs/heads/"):
                result[branch.removeprefix("refs/heads/")] = current_path
            current_path = None
            branch = None

        for line in out.splitlines():
            if not line.strip():
                continue
            if line.startswith("worktree "):
                flush()
                current_path = Path(line.split(" ", 1)[1]).resolve()
            elif line.startswith("branch "):
                branch = line.split(" ", 1)[1].strip()

        flush()
        return result

    def create_runner_worktree(
        self,
        *,
        task_name: str,
        runner_name: str,
        path: Path,
        base_branch: str,
    ) -> GitWorktree:
        """Create a fresh worktree on ``<task>/<runner>``, replacing any previous one."""

        branch = runner_branch_name(task_name, runner_name)
        logger.info("Creating worktree for runner %s: branch=%s path=%s", runner_name, branch, path)

        self._git(["checkout", base_branch])
        existing = self.worktrees().get(branch)
        if existing is not None:
            logger.warning("Worktree for branch %s already exists, removing %s", branch, existing)
            self.remove_worktree(existing)
        if path.exists():
            logger.info("Removing existing directory at %s", path)
            shutil.rmtree(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        if self.branch_exists(branch):
            logger.info("Deleting existing branch: %s", branch)
            self._git(["branch", "-D", branch])

        self._git(["worktree", "add", str(path), "-b", branch, base_branch])
        return GitWorktree(branch=branch, path=path)

    def has_uncommitted_changes(self, *, cwd: Path) -> bool:
        return bool(self._git(["status", "--porcelain"], cwd=cwd).strip())

    def auto_commit(  # noqa: PLR0913
        self,
        *,
        cwd: Path,
        runner_name: str,
        iteration: str,
        prompt_type: str,
        agent_output: str,
        original_prompt: str,
    ) -> bool:
        """Stage and commit everything in ``cwd``; return whether a commit was made."""

        if not self.has_uncommitted_changes(cwd=cwd):
            logger.info("No changes to commit for %s (iteration %s)", runner_name, iteration)
            return False
        message = build_commit_message(
            runner_name=runner_name,
            iteration=iteration,
            prompt_type=prompt_type,
            agent_output=agent_output,
            original_prompt=original_prompt,
        )
        self._git(["add", "-A"], cwd=cwd)
        self._git(["commit", "-m", message], cwd=cwd)
        logger.info("Auto-committed changes for %s (%s)", runner_name, prompt_type)
        return True

    def remove_worktree(self, path: Path) -> None:
        self._git(["worktree", "remove", "--force", str(path)])

    def prune_worktrees(self) -> None:
        self._git(["worktree", "prune"])

    def local_branches(self) -> list[str]:
        out = self._git(["branch", "--list", "--format=%(refname:short)"])
        return [line.strip() for line in out.splitlines() if line.strip()]

    def cleanup(self, *, worktree_base: Path | None) -> CleanupReport:
        """Remove runner worktrees under ``worktree_base`` and every ``task/runner`` branch."""

        report = CleanupReport()
        if worktree_base is not None and worktree_base.is_dir():
            for worktree_dir in sorted(worktree_base.iterdir()):
                if not worktree_dir.is_dir():
                    continue
                try:
                    self.remove_worktree(worktree_dir)
                except GitError as error:
                    logger.warning("Could not remove worktree %s: %s", worktree_dir, error.stderr)
                    continue
                report.removed_worktrees.append(worktree_dir)
            try:
                worktree_base.rmdir()
                report.removed_base_dir = True
            except OSError:
                logger.info("Worktree base not empty, keeping: %s", worktree_base)

        self.prune_worktrees()
        for branch in self.local_branches():
            if "/" not in branch:
                continue
            try:
                self._git(["branch", "-D", branch])
            except GitError as error:
                logger.warning("Could not delete branch %s: %s", branch, error.stderr)
                continue
            report.deleted_branches.append(branch)
        return report

    def _git(self, args: list[str], *, cwd: Path | None = None) -> str:
        p = subprocess.run(
            ["git", *args],
            cwd=cwd or self.control_root,
            text=True,
            check=False,
            capture_output=True,
        )
        if p.returncode != 0:
            raise GitError(args, p.returncode, p.stderr)
        return p.stdout


class DryRunGitClient(GitClient):
    """A no-op Git client for smoke testing without touching git state."""

    def ensure_repository(self, *, base_branch: str) -> None:
        return

    def worktrees(self) -> dict[str, Path]:
        return {}

    def create_runner_worktree(
        self,
        *,
        task_name: str,
        runner_name: str,
        path: Path,
        base_branch: str,
    ) -> GitWorktree:
        path.mkdir(parents=True, exist_ok=True)
        return GitWorktree(branch=runner_branch_name(task_name, runner_name), path=path)

    def has_uncommitted_changes(self, *, cwd: Path) -> bool:
        return False

    def auto_commit(  # noqa: PLR0913
        self,
        *,
        cwd: Path,
        runner_name: str,
        iteration: str,
        prompt_type: str,
        agent_output: str,
        original_prompt: str,
    ) -> bool:
        return False

    def cleanup(self, *, worktree_base: Path | None) -> CleanupReport:
        return CleanupReport()


def build_commit_message(
    *,
    runner_name: str,
    iteration: str,
    prompt_type: str,
    agent_output: str,
    original_prompt: str,
    timestamp: datetime | None = None,
) -> str:
    """Commit message: agent summary on the subject line, run metadata in the body."""

    summary = agent_output.strip() or NO_DESCRIPTION
    stamp = (timestamp or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
    return (
        f"[{prompt_type}] {runner_name}: {summary}\n"
        f"\n"
        f"Prompt: {original_prompt}\n"
        f"Runner: {runner_name}\n"
        f"Iteration: {iteration}\n"
        f"Type: {prompt_type}\n"
        f"Timestamp: {stamp}"
    )
