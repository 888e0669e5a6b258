"""Path resolution for worktrees and run directories."""

from __future__ import annotations

import os
import re
from pathlib import Path

TASK_NAME_PROMPT_CHARS = 30
DEFAULT_CONTEXT_NAME = "default"
_NON_ALNUM = re.compile(r"[^A-Za-z0-9]+")


class PathNestingError(ValueError):
    """A configured path lies inside the tool's own directory."""


def resolve_absolute_path(base_dir: Path, path: str | Path) -> Path:
    """Resolve ``path`` against ``base_dir``; the target does not need to exist."""

    candidate = Path(path).expanduser()
    if not candidate.is_absolute():
        candidate = Path(base_dir) / candidate
    return candidate.resolve(strict=False)


def calculate_worktree_base(
    git_project_path: str | Path,
    worktree_base_config: str,
    tool_dir: Path,
) -> Path:
    """Return the directory that holds all runner worktrees.

    A bare name such as ``worktrees`` is placed next to the git project so that
    worktrees never end up inside the project itself.
    """

    if Path(worktree_base_config).is_absolute():
        return Path(os.path.normpath(worktree_base_config))
    if "/" not in worktree_base_config and ".." not in worktree_base_config:
        git_abs = resolve_absolute_path(tool_dir, git_project_path)
        return git_abs.parent / worktree_base_config
    return resolve_absolute_path(tool_dir, worktree_base_config)


def runner_worktree_path(worktree_base: Path, task_name: str, runner_name: str) -> Path:
    return worktree_base / f"{task_name}_{runner_name}"


def runner_branch_name(task_name: str, runner_name: str) -> str:
    return f"{task_name}/{runner_name}"


def validate_no_nesting(tool_dir: Path, git_project_path: str | Path, worktree_base: Path) -> None:
    """Raise ``PathNestingError`` if the project or worktrees sit inside ``tool_dir``."""

    tool_abs = Path(tool_dir).resolve(strict=False)
    git_abs = resolve_absolute_path(tool_abs, git_project_path)
    worktree_abs = resolve_absolute_path(tool_abs, worktree_base)

    if is_within(git_abs, tool_abs):
        raise PathNestingError(
            "git_project_path cannot be inside the tool directory: "
            f"{git_abs} is within {tool_abs}",
        )
    if is_within(worktree_abs, tool_abs):
        raise PathNestingError(
            "worktree_base_path cannot be inside the tool directory: "
            f"{worktree_abs} is within {tool_abs}",
        )


def is_within(path: Path, parent: Path) -> bool:
    """Component-wise containment; ``path == parent`` counts as inside."""

    return path == parent or parent in path.parents


def derive_task_name(prompt: str) -> str:
    """Build a filesystem-safe run name from the first characters of a prompt."""

    head = prompt.replace("\n", "").replace("\r", "")[:TASK_NAME_PROMPT_CHARS]
    name = _NON_ALNUM.sub("-", head).strip("-")
    return name or "run"


def runner_dir_name(runner_number: int, context_name: str | None) -> str:
    return f"{runner_number:05d}_{context_name or DEFAULT_CONTEXT_NAME}"
