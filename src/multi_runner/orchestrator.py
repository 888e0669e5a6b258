"""Runner execution and worktree-mode task orchestration.

A runner walks its merged prompt plan through three phases: initial prompts
(each optionally skipped by a shell ``skip_condition``), a bounded loop of
periodic prompts that stops early once an exit-condition file appears, and
end prompts. Every successful prompt is followed by an auto-commit in the
runner's worktree.

Runners are dispatched either one after another or through a bounded pool;
a failing runner never aborts its siblings.
"""

from __future__ import annotations

import json
import logging
import shutil
import signal
import subprocess
import threading
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TypeVar

from multi_runner.backend import AgentBackend, CliAgentBackend
from multi_runner.config import OrchestrationSettings, Settings
from multi_runner.executor import JobExecutor, PromptJob
from multi_runner.git_ops import GitClient, GitError
from multi_runner.models import (
    PromptOutcome,
    PromptPhase,
    PromptStatus,
    RunnerResult,
    RunnerStatus,
    TaskSummary,
)
from multi_runner.paths import (
    calculate_worktree_base,
    resolve_absolute_path,
    runner_worktree_path,
    validate_no_nesting,
)
from multi_runner.task_config import (
    ExitCondition,
    PromptSpec,
    RunnerPlan,
    TaskConfig,
    merge_runner_config,
)

logger = logging.getLogger(__name__)

SKIP_CONDITION_TIMEOUT_SECONDS = 300
_SLOT_POLL_SECONDS = 0.5

T = TypeVar("T")


class _RunnerDeadlineExceeded(Exception):
    pass


@dataclass(slots=True)
class _RunState:
    prompts_run: int = 0
    prompts_skipped: int = 0
    commits: int = 0


class RunnerExecutor:
    """Executes one runner plan inside its working directory."""

    def __init__(
        self,
        *,
        job_executor: JobExecutor,
        orchestration: OrchestrationSettings,
        git: GitClient | None = None,
    ) -> None:
        self.job_executor = job_executor
        self.orchestration = orchestration
        self.git = git

    def execute(
        self,
        plan: RunnerPlan,
        workdir: Path,
        *,
        branch: str | None = None,
    ) -> RunnerResult:
        result = RunnerResult(
            name=plan.runner_name,
            workdir=workdir,
            status=RunnerStatus.RUNNING,
            started_at=datetime.now(),
            branch=branch,
        )
        state = _RunState()
        timeout = self.orchestration.runner_timeout_seconds
        deadline = time.monotonic() + timeout if timeout > 0 else None
        logger.info("Starting runner %s in %s", plan.runner_name, workdir)

        try:
            (workdir / "logs").mkdir(parents=True, exist_ok=True)
            result.status, result.exit_condition = self._run_phases(plan, workdir, state, deadline)
        except _RunnerDeadlineExceeded:
            logger.error("Runner %s timed out after %d seconds", plan.runner_name, timeout)
            result.status = RunnerStatus.TIMEOUT
        except OSError as error:
            logger.error("Runner %s failed: %s", plan.runner_name, error)
            result.status = RunnerStatus.FAILED
            result.error = str(error)

        result.prompts_run = state.prompts_run
        result.prompts_skipped = state.prompts_skipped
        result.commits = state.commits
        result.finished_at = datetime.now()
        logger.info("Runner %s finished: %s", plan.runner_name, result.status.value)
        return result

    def _run_phases(
        self,
        plan: RunnerPlan,
        workdir: Path,
        state: _RunState,
        deadline: float | None,
    ) -> tuple[RunnerStatus, str | None]:
        for index, spec in enumerate(plan.initial_prompts):
            if spec.skip_condition and _skip_condition_met(spec.skip_condition, workdir):
                logger.info(
                    "Skipping initial prompt '%s' due to condition: %s",
                    spec.name,
                    spec.skip_condition,
                )
                state.prompts_skipped += 1
                continue
            outcome = self._run_prompt(
                plan, workdir, spec, PromptPhase.INITIAL, f"initial_{index}", state, deadline
            )
            if not outcome.succeeded:
                logger.error("Failed to complete initial prompt '%s'", spec.name)
                return _runner_status(outcome), None

        self._install_dependencies(workdir)

        exit_condition: str | None = None
        if plan.loop_prompts:
            for iteration in range(plan.max_loops):
                logger.info("[%s] Iteration %d of %d", plan.runner_name, iteration, plan.max_loops)
                exit_condition = _first_met_exit_condition(plan.exit_conditions, workdir)
                if exit_condition is not None:
                    logger.info("Exit condition triggered: %s", exit_condition)
                    break
                for index, spec in enumerate(plan.loop_prompts):
                    if iteration % spec.period != 0:
                        continue
                    outcome = self._run_prompt(
                        plan,
                        workdir,
                        spec,
                        PromptPhase.LOOP,
                        f"loop_{iteration}_{index}",
                        state,
                        deadline,
                    )
                    if not outcome.succeeded:
                        logger.error("Failed to complete loop prompt '%s'", spec.name)
                        return _runner_status(outcome), None
        else:
            logger.info("No loop prompts defined. Skipping main loop.")

        for index, spec in enumerate(plan.end_prompts):
            outcome = self._run_prompt(
                plan, workdir, spec, PromptPhase.FINAL, f"end_{index}", state, deadline
            )
            if outcome.status == PromptStatus.INTERRUPTED:
                return RunnerStatus.INTERRUPTED, exit_condition
            if not outcome.succeeded:
                logger.warning(
                    "End prompt '%s' did not complete: %s",
                    spec.name,
                    outcome.status.value,
                )

        return RunnerStatus.COMPLETED, exit_condition

    def _run_prompt(  # noqa: PLR0913
        self,
        plan: RunnerPlan,
        workdir: Path,
        spec: PromptSpec,
        phase: PromptPhase,
        iteration: str,
        state: _RunState,
        deadline: float | None,
    ) -> PromptOutcome:
        if deadline is not None and deadline <= time.monotonic():
            raise _RunnerDeadlineExceeded

        logger.info("[%s] Running %s prompt: %s", plan.runner_name, phase.value, spec.name)
        git = self.git if self.orchestration.auto_commit else None
        outcome = self.job_executor.run_prompt(
            PromptJob(
                prompt=spec.prompt,
                workdir=workdir,
                log_file=workdir / plan.log_file,
                label=f"{plan.runner_name} {iteration}",
                request_commit_message=git is not None,
                deadline=deadline,
            ),
        )
        state.prompts_run += 1
        if outcome.status == PromptStatus.TIMEOUT and deadline is not None:
            if deadline - time.monotonic() < 1:
                raise _RunnerDeadlineExceeded
        if outcome.succeeded and git is not None:
            state.commits += _auto_commit(git, plan, workdir, spec, phase, iteration, outcome)
        if not outcome.succeeded:
            _append_error(workdir / plan.error_file, plan.runner_name, spec, iteration, outcome)
        return outcome

    def _install_dependencies(self, workdir: Path) -> None:
        if not self.orchestration.install_dependencies:
            return
        if not (workdir / "package.json").is_file():
            return
        npm = shutil.which("npm")
        if npm is None:
            logger.warning("package.json found but npm is not available in PATH")
            return
        logger.info("Installing dependencies with npm in %s", workdir)
        completed = subprocess.run(  # noqa: S603
            [npm, "install"],
            cwd=workdir,
            capture_output=True,
            text=True,
            check=False,
        )
        if completed.returncode != 0:
            logger.warning(
                "npm install failed (exit %d): %s",
                completed.returncode,
                completed.stderr[-500:],
            )


@dataclass(slots=True)
class PreparedRunner:
    """A runner whose worktree and merged plan are ready."""

    plan: RunnerPlan
    worktree: Path
    branch: str | None


class MultiRunOrchestrator:
    """Creates one worktree per runner and drives all runners of a task."""

    def __init__(
        self,
        *,
        settings: Settings,
        tool_dir: Path,
        backend: AgentBackend | None = None,
        git_factory: Callable[[Path], GitClient] | None = None,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.settings = settings
        self.tool_dir = tool_dir
        self.backend = backend or CliAgentBackend()
        self.git_factory = git_factory or (lambda root: GitClient(control_root=root))
        self.stop_event = stop_event or threading.Event()

    def resolve_paths(self, task: TaskConfig) -> tuple[Path, Path]:
        """Return absolute ``(git_project, worktree_base)`` after the nesting check."""

        git_project = resolve_absolute_path(self.tool_dir, task.git_project_path)
        worktree_base = calculate_worktree_base(
            task.git_project_path,
            task.worktree_base_path,
            self.tool_dir,
        )
        validate_no_nesting(self.tool_dir, git_project, worktree_base)
        return git_project, worktree_base

    def prepare(self, task: TaskConfig) -> tuple[GitClient, list[PreparedRunner]]:
        git_project, worktree_base = self.resolve_paths(task)
        git = self.git_factory(git_project)
        git.ensure_repository(base_branch=task.git_base_branch)
        logger.info("Using git project at: %s (branch: %s)", git_project, task.git_base_branch)

        prepared: list[PreparedRunner] = []
        for index, runner in enumerate(task.runners):
            path = runner_worktree_path(worktree_base, task.task_name, runner.name)
            worktree = git.create_runner_worktree(
                task_name=task.task_name,
                runner_name=runner.name,
                path=path,
                base_branch=task.git_base_branch,
            )
            plan = merge_runner_config(task, index, retry=self.settings.retry)
            config_path = worktree.path / f"{runner.name}-config.json"
            config_path.write_text(
                json.dumps(plan.to_payload(), ensure_ascii=False, indent=2),
                "utf-8",
            )
            prepared.append(
                PreparedRunner(plan=plan, worktree=worktree.path, branch=worktree.branch),
            )
        return git, prepared

    def run(self, task: TaskConfig) -> TaskSummary:
        logger.info(
            "Multi-runner task %s: %d runner(s), mode=%s",
            task.task_name,
            len(task.runners),
            task.execution_mode,
        )
        git, prepared = self.prepare(task)
        runner_executor = RunnerExecutor(
            job_executor=JobExecutor(
                backend=self.backend,
                agent=self.settings.agent,
                retry=self.settings.retry,
                stop_event=self.stop_event,
            ),
            orchestration=self.settings.orchestration,
            git=git,
        )

        results = dispatch(
            prepared,
            lambda item: runner_executor.execute(item.plan, item.worktree, branch=item.branch),
            mode=task.execution_mode,
            max_parallel=task.effective_max_parallel,
            spawn_delay_seconds=self.settings.orchestration.spawn_delay_seconds,
            stop_event=self.stop_event,
            on_error=lambda item, error: RunnerResult(
                name=item.plan.runner_name,
                workdir=item.worktree,
                status=RunnerStatus.FAILED,
                error=str(error),
                branch=item.branch,
            ),
            on_skip=lambda item: RunnerResult(
                name=item.plan.runner_name,
                workdir=item.worktree,
                status=RunnerStatus.PENDING,
                branch=item.branch,
            ),
        )
        return TaskSummary(
            task_name=task.task_name,
            execution_mode=task.execution_mode,
            results=results,
            interrupted=self.stop_event.is_set(),
        )


def dispatch(  # noqa: PLR0913
    items: Sequence[T],
    run: Callable[[T], RunnerResult],
    *,
    mode: str,
    max_parallel: int,
    spawn_delay_seconds: float,
    stop_event: threading.Event,
    on_error: Callable[[T, Exception], RunnerResult],
    on_skip: Callable[[T], RunnerResult],
) -> list[RunnerResult]:
    """Run ``items`` sequentially or with at most ``max_parallel`` in flight.

    Results come back in input order. Items never started because a stop was
    requested are reported through ``on_skip``.
    """

    def guarded(item: T) -> RunnerResult:
        try:
            return run(item)
        except Exception as error:  # noqa: BLE001
            logger.exception("Runner crashed")
            return on_error(item, error)

    if mode != "parallel" or len(items) <= 1:
        results: list[RunnerResult] = []
        for item in items:
            results.append(on_skip(item) if stop_event.is_set() else guarded(item))
        return results

    slots = threading.BoundedSemaphore(max(1, max_parallel))
    futures: list[Future[RunnerResult] | None] = []
    with ThreadPoolExecutor(max_workers=max(1, max_parallel), thread_name_prefix="runner") as pool:
        for position, item in enumerate(items):
            if not _acquire_slot(slots, stop_event):
                futures.append(None)
                continue
            future = pool.submit(guarded, item)
            future.add_done_callback(lambda _: slots.release())
            futures.append(future)
            logger.info("Started runner %d/%d", position + 1, len(items))
            if position < len(items) - 1 and spawn_delay_seconds > 0:
                stop_event.wait(timeout=spawn_delay_seconds)

        ordered: list[RunnerResult] = []
        for item, maybe_future in zip(items, futures, strict=True):
            ordered.append(on_skip(item) if maybe_future is None else maybe_future.result())
    return ordered


def _acquire_slot(slots: threading.BoundedSemaphore, stop_event: threading.Event) -> bool:
    while not slots.acquire(timeout=_SLOT_POLL_SECONDS):
        if stop_event.is_set():
            return False
    if stop_event.is_set():
        slots.release()
        return False
    return True


@contextmanager
def stop_on_signals(stop_event: threading.Event) -> Iterator[None]:
    """Translate SIGINT/SIGTERM into ``stop_event`` while the block runs."""

    if not hasattr(signal, "SIGINT"):
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        logger.warning("Received %s, stopping runners...", name)
        stop_event.set()

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)


def _skip_condition_met(command: str, workdir: Path) -> bool:
    try:
        completed = subprocess.run(  # noqa: S602
            command,
            shell=True,
            cwd=workdir,
            capture_output=True,
            check=False,
            timeout=SKIP_CONDITION_TIMEOUT_SECONDS,
        )
    except subprocess.TimeoutExpired:
        logger.warning("Skip condition timed out, running prompt anyway: %s", command)
        return False
    return completed.returncode == 0


def _first_met_exit_condition(conditions: list[ExitCondition], workdir: Path) -> str | None:
    for condition in conditions:
        if (workdir / condition.file).is_file():
            return condition.name
    return None


def _runner_status(outcome: PromptOutcome) -> RunnerStatus:
    if outcome.status == PromptStatus.TIMEOUT:
        return RunnerStatus.TIMEOUT
    if outcome.status == PromptStatus.INTERRUPTED:
        return RunnerStatus.INTERRUPTED
    return RunnerStatus.FAILED


def _append_error(
    path: Path,
    runner_name: str,
    spec: PromptSpec,
    iteration: str,
    outcome: PromptOutcome,
) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(
            f"{datetime.now():%Y-%m-%d %H:%M:%S} {runner_name} {iteration} '{spec.name}': "
            f"{outcome.status.value} (exit {outcome.exit_code}, attempts {outcome.attempts})\n",
        )


def _auto_commit(  # noqa: PLR0913
    git: GitClient,
    plan: RunnerPlan,
    workdir: Path,
    spec: PromptSpec,
    phase: PromptPhase,
    iteration: str,
    outcome: PromptOutcome,
) -> int:
    try:
        committed = git.auto_commit(
            cwd=workdir,
            runner_name=plan.runner_name,
            iteration=iteration,
            prompt_type=phase.value,
            agent_output=outcome.output,
            original_prompt=spec.prompt,
        )
    except GitError as error:
        logger.warning("Auto-commit failed for %s: %s", plan.runner_name, error)
        return 0
    return 1 if committed else 0
