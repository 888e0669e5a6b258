"""CLI entrypoint for multi-runner."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from multi_runner import __version__
from multi_runner.backend.cli_backend import INTERRUPTED_EXIT_CODE
from multi_runner.contexts import DEFAULT_CONTEXTS_DIR, ContextGenerationError
from multi_runner.controllers import (
    CleanupCommand,
    GenerateContextCommand,
    MultiRunnerCliController,
    RunCommandResult,
    RunTaskCommand,
    SimpleRunCommand,
    ValidatePathsCommand,
)
from multi_runner.git_ops import GitError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = MultiRunnerCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="multi-runner")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Logging level. Defaults to MULTI_RUNNER_LOG_LEVEL or INFO.",
)
def multi_runner(log_level: str | None) -> None:
    """Run the Claude CLI across many isolated directories or git worktrees.

    Use `run` for git worktree tasks and `simple` for plain directories.
    """

    level = (log_level or os.getenv("MULTI_RUNNER_LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)


_tool_dir_option = click.option(
    "--tool-dir",
    type=click.Path(path_type=Path, exists=True, file_okay=False),
    default=None,
    help=(
        "Directory that relative task paths resolve from and that worktrees must stay "
        "outside of. Defaults to the directory holding the task config."
    ),
)


@multi_runner.command("run")
@click.argument("config_path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="Create runner directories without touching git state.",
)
@_tool_dir_option
def run_task(config_path: Path, dry_run: bool, tool_dir: Path | None) -> None:
    """Run every runner of a task config in its own git worktree."""

    with _cli_errors():
        result = CONTROLLER.run_task(
            RunTaskCommand(config_path=config_path, dry_run=dry_run, tool_dir=tool_dir),
        )
    _finish(result, failure_message="Some runners did not complete.")


@multi_runner.command("simple")
@click.argument(
    "config_path",
    required=False,
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
)
@click.option("-p", "--prompt", "prompts", multiple=True, help="Prompt to run. Can be repeated.")
@click.option(
    "-n",
    "--num-runners",
    type=click.IntRange(min=1),
    default=None,
    help="Number of runners.",
)
@click.option(
    "-m",
    "--max-parallel",
    type=click.IntRange(min=1),
    default=None,
    help="Max runners in flight (parallel mode).",
)
@click.option(
    "-t",
    "--task-name",
    default=None,
    help="Run name; derived from the first prompt if omitted.",
)
@click.option("-b", "--base-directory", default=None, help="Directory that holds run directories.")
@click.option(
    "--template-directory",
    default=None,
    help="Directory copied into every runner directory.",
)
@click.option(
    "-c",
    "--context",
    "contexts",
    multiple=True,
    help="Runner context as name:path/to/CLAUDE.md. Can be repeated.",
)
@click.option(
    "-e",
    "--execution-mode",
    type=click.Choice(["parallel", "sequential"], case_sensitive=False),
    default=None,
    help="Run runners in parallel (default) or one after another.",
)
def simple(  # noqa: PLR0913
    config_path: Path | None,
    prompts: tuple[str, ...],
    num_runners: int | None,
    max_parallel: int | None,
    task_name: str | None,
    base_directory: str | None,
    template_directory: str | None,
    contexts: tuple[str, ...],
    execution_mode: str | None,
) -> None:
    """Run a prompt sequence in N plain directories.

    Options override values from `CONFIG_PATH`.
    """

    if config_path is None and not prompts:
        raise click.UsageError("Provide a config file or at least one --prompt.")
    with _cli_errors():
        result = CONTROLLER.simple(
            SimpleRunCommand(
                config_path=config_path,
                prompts=prompts,
                num_runners=num_runners,
                max_parallel=max_parallel,
                task_name=task_name,
                base_directory=base_directory,
                template_directory=template_directory,
                contexts=contexts,
                execution_mode=execution_mode.lower() if execution_mode else None,
            ),
        )
    _finish(result, failure_message="Some runners did not complete.")


@multi_runner.command("cleanup")
@click.argument(
    "config_path",
    required=False,
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
)
@click.option(
    "--git-project",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Git project whose runner worktrees and branches are removed.",
)
@click.option(
    "--worktree-base",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory holding runner worktrees.",
)
@_tool_dir_option
def cleanup(
    config_path: Path | None,
    git_project: Path | None,
    worktree_base: Path | None,
    tool_dir: Path | None,
) -> None:
    """Remove runner worktrees and every `task/runner` branch."""

    if config_path is None and git_project is None:
        raise click.UsageError("Provide a task config or --git-project.")
    with _cli_errors():
        lines = CONTROLLER.cleanup(
            CleanupCommand(
                git_project=git_project,
                worktree_base=worktree_base,
                config_path=config_path,
                tool_dir=tool_dir,
            ),
        )
    _emit_lines(lines)


@multi_runner.command("validate-paths")
@click.argument("config_path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@_tool_dir_option
def validate_paths(config_path: Path, tool_dir: Path | None) -> None:
    """Resolve task paths and check they are outside the tool directory."""

    with _cli_errors():
        lines = CONTROLLER.validate_paths(
            ValidatePathsCommand(config_path=config_path, tool_dir=tool_dir),
        )
    _emit_lines(lines)


@multi_runner.group()
def contexts() -> None:
    """Context file commands."""


@contexts.command("generate")
@click.option("-n", "--name", required=True, help="Context name (letters, digits, - and _).")
@click.option(
    "-p",
    "--prompt",
    "prompts",
    multiple=True,
    required=True,
    help="Requirement for the context. Can be repeated.",
)
@click.option(
    "-d",
    "--directory",
    type=click.Path(path_type=Path, file_okay=False),
    default=Path(DEFAULT_CONTEXTS_DIR),
    show_default=True,
    help="Output base directory.",
)
@click.option(
    "-t",
    "--template",
    "template_file",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Existing CLAUDE.md passed to the assistant as a reference.",
)
@click.option("--force", is_flag=True, default=False, help="Overwrite an existing CLAUDE.md.")
def contexts_generate(
    name: str,
    prompts: tuple[str, ...],
    directory: Path,
    template_file: Path | None,
    force: bool,
) -> None:
    """Generate `<directory>/<name>/CLAUDE.md` with the assistant."""

    with _cli_errors():
        lines = CONTROLLER.generate_context(
            GenerateContextCommand(
                name=name,
                prompts=prompts,
                output_dir=directory,
                template_file=template_file,
                overwrite=force,
            ),
        )
    _emit_lines(lines)


@contextmanager
def _cli_errors() -> Iterator[None]:
    try:
        yield
    except (ValueError, GitError, ContextGenerationError) as error:
        raise click.ClickException(str(error)) from error


def _finish(result: RunCommandResult, *, failure_message: str) -> None:
    _emit_lines(result.lines)
    if result.interrupted:
        click.echo("Interrupted.", err=True)
        raise SystemExit(INTERRUPTED_EXIT_CODE)
    if not result.success:
        raise click.ClickException(failure_message)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    multi_runner()
