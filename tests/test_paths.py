from __future__ import annotations

from pathlib import Path

import allure
import pytest

from multi_runner.paths import (
    PathNestingError,
    calculate_worktree_base,
    derive_task_name,
    is_within,
    resolve_absolute_path,
    runner_branch_name,
    runner_dir_name,
    runner_worktree_path,
    validate_no_nesting,
)

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Path Resolution"),
]


def test_resolve_absolute_path(tmp_path: Path) -> None:
    assert resolve_absolute_path(tmp_path, "a/../b") == (tmp_path / "b").resolve()
    assert resolve_absolute_path(tmp_path, "/abs/path") == Path("/abs/path").resolve()


def test_worktree_base_simple_name_is_sibling_of_project(tmp_path: Path) -> None:
    tool_dir = tmp_path / "tool"

    base = calculate_worktree_base("../project", "worktrees", tool_dir)

    assert base == (tmp_path / "worktrees").resolve()


def test_worktree_base_relative_path_resolves_from_tool_dir(tmp_path: Path) -> None:
    tool_dir = tmp_path / "tool"

    base = calculate_worktree_base("../project", "../elsewhere/trees", tool_dir)

    assert base == (tmp_path / "elsewhere" / "trees").resolve()


def test_worktree_base_absolute_path_is_kept(tmp_path: Path) -> None:
    target = tmp_path / "x" / ".." / "trees"

    assert calculate_worktree_base("../project", str(target), tmp_path) == tmp_path / "trees"


def test_runner_naming() -> None:
    assert runner_worktree_path(Path("/w"), "calc", "fast") == Path("/w/calc_fast")
    assert runner_branch_name("calc", "fast") == "calc/fast"
    assert runner_dir_name(7, "security") == "00007_security"
    assert runner_dir_name(12, None) == "00012_default"


def test_validate_no_nesting_rejects_paths_inside_tool_dir(tmp_path: Path) -> None:
    tool_dir = tmp_path / "tool"

    with pytest.raises(PathNestingError, match="git_project_path"):
        validate_no_nesting(tool_dir, "project", tmp_path / "worktrees")
    with pytest.raises(PathNestingError, match="worktree_base_path"):
        validate_no_nesting(tool_dir, "../project", tool_dir / "trees")
    with pytest.raises(PathNestingError, match="git_project_path"):
        validate_no_nesting(tool_dir, ".", tmp_path / "worktrees")


def test_validate_no_nesting_compares_components(tmp_path: Path) -> None:
    tool_dir = tmp_path / "tool"

    validate_no_nesting(tool_dir, tmp_path / "tool2", tmp_path / "tool-worktrees")
    assert not is_within(tmp_path / "tool2", tool_dir)
    assert is_within(tool_dir / "a" / "b", tool_dir)


def test_derive_task_name() -> None:
    assert derive_task_name("Create a REST API for users") == "Create-a-REST-API-for-users"
    assert derive_task_name("  --Fix: the #1 bug!! now please") == "Fix-the-1-bug-now-plea"
    assert derive_task_name("!!!") == "run"
