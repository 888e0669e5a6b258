"""Controllers for multi-runner CLI commands."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from multi_runner.backend import AgentBackend
from multi_runner.config import Settings
from multi_runner.contexts import ContextGenerator
from multi_runner.git_ops import DryRunGitClient, GitClient
from multi_runner.orchestrator import MultiRunOrchestrator, stop_on_signals
from multi_runner.paths import calculate_worktree_base, resolve_absolute_path, runner_worktree_path
from multi_runner.report import render_summary_lines
from multi_runner.simple_run import SimpleRunOrchestrator
from multi_runner.task_config import (
    ConfigError,
    load_json_document,
    load_task_config,
    parse_context_arg,
    parse_simple_config,
)


@dataclass(slots=True)
class RunTaskCommand:
    """CLI input for a worktree-mode task run."""

    config_path: Path
    dry_run: bool = False
    tool_dir: Path | None = None


@dataclass(slots=True)
class SimpleRunCommand:
    """CLI input for a directory-mode run; set fields override the config file."""

    config_path: Path | None = None
    prompts: tuple[str, ...] = ()
    num_runners: int | None = None
    max_parallel: int | None = None
    task_name: str | None = None
    base_directory: str | None = None
    template_directory: str | None = None
    contexts: tuple[str, ...] = ()
    execution_mode: str | None = None


@dataclass(slots=True)
class CleanupCommand:
    """Either ``config_path`` or ``git_project`` locates the repository."""

    git_project: Path | None = None
    worktree_base: Path | None = None
    config_path: Path | None = None
    tool_dir: Path | None = None


@dataclass(slots=True)
class ValidatePathsCommand:
    config_path: Path
    tool_dir: Path | None = None


@dataclass(slots=True)
class GenerateContextCommand:
    name: str
    prompts: tuple[str, ...]
    output_dir: Path
    template_file: Path | None = None
    overwrite: bool = False


@dataclass(slots=True)
class RunCommandResult:
    """Run report to render in CLI."""

    lines: list[str]
    success: bool
    interrupted: bool = False


class MultiRunnerCliController:
    """Builds orchestrators from CLI input and renders their outcome."""

    def __init__(self, *, backend: AgentBackend | None = None) -> None:
        self.backend = backend

    def run_task(self, command: RunTaskCommand) -> RunCommandResult:
        settings = _settings()
        config_path = command.config_path.resolve()
        task = load_task_config(config_path)
        stop_event = threading.Event()
        orchestrator = MultiRunOrchestrator(
            settings=settings,
            tool_dir=_tool_dir(config_path, command.tool_dir),
            backend=self.backend,
            git_factory=(lambda root: DryRunGitClient(control_root=root))
            if command.dry_run
            else None,
            stop_event=stop_event,
        )
        with stop_on_signals(stop_event):
            summary = orchestrator.run(task)

        lines = ["Dry run: git state was not modified."] if command.dry_run else []
        lines.extend(render_summary_lines(summary))
        return RunCommandResult(
            lines=lines,
            success=summary.success,
            interrupted=summary.interrupted,
        )

    def simple(self, command: SimpleRunCommand) -> RunCommandResult:
        settings = _settings()
        raw: dict[str, Any] = {}
        if command.config_path is not None:
            raw = load_json_document(command.config_path)
        overrides = _simple_overrides(command)
        raw.update(overrides)
        config = parse_simple_config(raw)
        if command.config_path is not None and not overrides:
            config.source_path = command.config_path

        stop_event = threading.Event()
        orchestrator = SimpleRunOrchestrator(
            settings=settings,
            backend=self.backend,
            stop_event=stop_event,
        )
        with stop_on_signals(stop_event):
            summary = orchestrator.run(config)
        return RunCommandResult(
            lines=render_summary_lines(summary),
            success=summary.success,
            interrupted=summary.interrupted,
        )

    def cleanup(self, command: CleanupCommand) -> list[str]:
        worktree_base = command.worktree_base.resolve() if command.worktree_base else None
        git_project = command.git_project.resolve() if command.git_project else None
        if command.config_path is not None:
            configured_project, configured_base = _configured_paths(
                command.config_path,
                command.tool_dir,
            )
            git_project = git_project or configured_project
            worktree_base = worktree_base or configured_base
        if git_project is None:
            raise ConfigError("Either a task configuration or --git-project is required")

        if not git_project.is_dir():
            return [f"Git project directory not found: {git_project}", "Nothing to clean up."]
        client = GitClient(control_root=git_project)
        if not client.is_git_repo():
            raise ConfigError(f"Not a git repository: {git_project}")
        report = client.cleanup(worktree_base=worktree_base)

        lines = [f"Cleaned up git project: {git_project}"]
        lines.extend(f"Removed worktree: {path}" for path in report.removed_worktrees)
        lines.extend(f"Deleted branch: {branch}" for branch in report.deleted_branches)
        if report.removed_base_dir and worktree_base is not None:
            lines.append(f"Removed worktree base: {worktree_base}")
        if not report.removed_worktrees and not report.deleted_branches:
            lines.append("Nothing to clean up.")
        return lines

    def validate_paths(self, command: ValidatePathsCommand) -> list[str]:
        config_path = command.config_path.resolve()
        task = load_task_config(config_path)
        tool_dir = _tool_dir(config_path, command.tool_dir)
        orchestrator = MultiRunOrchestrator(
            settings=_settings(),
            tool_dir=tool_dir,
            backend=self.backend,
        )
        git_project, worktree_base = orchestrator.resolve_paths(task)

        lines = [
            f"Tool directory: {tool_dir}",
            f"Git project: {git_project}",
            f"Worktree base: {worktree_base}",
        ]
        lines.extend(
            f"Runner {runner.name}: "
            f"{runner_worktree_path(worktree_base, task.task_name, runner.name)}"
            for runner in task.runners
        )
        lines.append("Paths are valid.")
        return lines

    def generate_context(self, command: GenerateContextCommand) -> list[str]:
        generator = ContextGenerator(agent=_settings().agent, backend=self.backend)
        generated = generator.generate(
            name=command.name,
            prompts=list(command.prompts),
            output_dir=command.output_dir,
            template_file=command.template_file,
            overwrite=command.overwrite,
        )
        lines = [
            f"Context generated: {generated.path}",
            "Preview:",
            *generated.preview,
        ]
        if generated.truncated:
            lines.append("...")
            lines.append(
                f"(showing first {len(generated.preview)} lines of {generated.total_lines} total)",
            )
        lines.append(
            "Use it with: multi-runner simple -p \"Your task\" "
            f'-c "{generated.name}:{generated.path}"',
        )
        return lines


def _settings() -> Settings:
    settings = Settings.from_env()
    settings.validate()
    return settings


def _simple_overrides(command: SimpleRunCommand) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if command.prompts:
        overrides["prompts"] = list(command.prompts)
    if command.num_runners is not None:
        overrides["num_runners"] = command.num_runners
    if command.max_parallel is not None:
        overrides["max_parallel"] = command.max_parallel
    if command.task_name:
        overrides["task_name"] = command.task_name
    if command.base_directory:
        overrides["base_directory"] = command.base_directory
    if command.template_directory:
        overrides["template_directory"] = command.template_directory
    if command.execution_mode:
        overrides["execution_mode"] = command.execution_mode
    if command.contexts:
        overrides["runner_contexts"] = [
            {"name": context.name, "claudemd_file": context.claudemd_file}
            for context in (parse_context_arg(value) for value in command.contexts)
        ]
    return overrides


def _tool_dir(config_path: Path, tool_dir: Path | None) -> Path:
    """Relative task paths resolve from the config file's directory unless overridden."""

    return tool_dir.resolve() if tool_dir is not None else config_path.resolve().parent


def _configured_paths(config_path: Path, tool_dir_override: Path | None) -> tuple[Path, Path]:
    task = load_task_config(config_path.resolve())
    tool_dir = _tool_dir(config_path, tool_dir_override)
    git_project = resolve_absolute_path(tool_dir, task.git_project_path)
    return git_project, calculate_worktree_base(git_project, task.worktree_base_path, tool_dir)
