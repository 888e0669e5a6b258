"""Directory-mode runs: the same prompt sequence in N plain directories.

Layout of one run::

    <base>/<task>_<YYYYmmdd_HHMMSS>/
        config.json
        execution.log
        README.md
        00001_<context>/
            CLAUDE.md  info.txt  status.txt  timing.log  prompt_1.log ...

Runners share nothing but the stop event, so a failed runner only marks its
own ``status.txt``.
"""

from __future__ import annotations

import json
import logging
import shutil
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from multi_runner.backend import AgentBackend, CliAgentBackend
from multi_runner.config import Settings
from multi_runner.executor import JobExecutor, PromptJob
from multi_runner.models import PromptStatus, RunnerResult, RunnerStatus, TaskSummary
from multi_runner.orchestrator import dispatch
from multi_runner.paths import resolve_absolute_path, runner_dir_name
from multi_runner.report import append_run_index, write_run_readme
from multi_runner.task_config import RunnerContext, SimpleRunConfig

logger = logging.getLogger(__name__)

RUN_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"


@dataclass(slots=True)
class RunnerSlot:
    """One numbered runner directory and the context assigned to it."""

    number: int
    path: Path
    context: RunnerContext | None


class SimpleRunOrchestrator:
    """Runs a ``SimpleRunConfig`` and writes the run directory artifacts."""

    def __init__(
        self,
        *,
        settings: Settings,
        working_dir: Path | None = None,
        backend: AgentBackend | None = None,
        stop_event: threading.Event | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.settings = settings
        self.working_dir = working_dir or Path.cwd()
        self.backend = backend or CliAgentBackend()
        self.stop_event = stop_event or threading.Event()
        self.clock = clock
        self.job_executor = JobExecutor(
            backend=self.backend,
            agent=settings.agent,
            retry=settings.retry,
            stop_event=self.stop_event,
        )

    def available_contexts(self, config: SimpleRunConfig) -> list[RunnerContext]:
        """Contexts whose file exists; missing ones are dropped with a warning."""

        available: list[RunnerContext] = []
        for context in config.runner_contexts:
            path = resolve_absolute_path(self.working_dir, context.claudemd_file)
            if context.claudemd_file and path.is_file():
                available.append(RunnerContext(name=context.name, claudemd_file=str(path)))
            else:
                logger.warning("Context file not found: %s (context '%s')", path, context.name)
        if config.runner_contexts and not available:
            logger.warning("No valid context files found, running without contexts")
        return available

    def run(self, config: SimpleRunConfig) -> TaskSummary:
        task_name = config.effective_task_name
        timestamp = self.clock().strftime(RUN_TIMESTAMP_FORMAT)
        base_dir = resolve_absolute_path(self.working_dir, config.base_directory)
        run_dir = base_dir / f"{task_name}_{timestamp}"
        run_dir.mkdir(parents=True, exist_ok=True)
        self._write_config_snapshot(run_dir, config)

        contexts = self.available_contexts(config)
        template = self._template_dir(config)
        slots = [
            self._slot(number, run_dir, contexts)
            for number in range(1, config.num_runners + 1)
        ]
        logger.info(
            "Run %s: %d runner(s), max parallel %d, output %s",
            task_name,
            config.num_runners,
            config.effective_max_parallel,
            run_dir,
        )

        execution_log = run_dir / "execution.log"
        execution_log.write_text(f"Start time: {self._now()}\n", "utf-8")
        results = dispatch(
            slots,
            lambda slot: self.run_runner(slot, config.prompts, template),
            mode=config.execution_mode,
            max_parallel=config.effective_max_parallel,
            spawn_delay_seconds=self.settings.orchestration.spawn_delay_seconds,
            stop_event=self.stop_event,
            on_error=lambda slot, error: self._crashed(slot, error),
            on_skip=lambda slot: RunnerResult(
                name=slot.path.name,
                workdir=slot.path,
                status=RunnerStatus.PENDING,
                context_name=slot.context.name if slot.context else None,
            ),
        )
        with execution_log.open("a", encoding="utf-8") as handle:
            handle.write(f"End time: {self._now()}\n")

        summary = TaskSummary(
            task_name=task_name,
            execution_mode=config.execution_mode,
            results=results,
            run_dir=run_dir,
            interrupted=self.stop_event.is_set(),
        )
        write_run_readme(run_dir, summary)
        append_run_index(base_dir, summary, timestamp=timestamp, runners=config.num_runners)
        return summary

    def run_runner(
        self,
        slot: RunnerSlot,
        prompts: list[str],
        template: Path | None,
    ) -> RunnerResult:
        self._setup(slot, len(prompts), template)
        result = RunnerResult(
            name=slot.path.name,
            workdir=slot.path,
            status=RunnerStatus.RUNNING,
            started_at=self.clock(),
            context_name=slot.context.name if slot.context else None,
        )
        status_file = slot.path / "status.txt"
        timing_log = slot.path / "timing.log"
        status_file.write_text(f"{RunnerStatus.RUNNING.value}\n", "utf-8")
        timing_log.write_text(f"{self._now()}: Started\n", "utf-8")
        logger.info("[Runner %d] Starting in %s", slot.number, slot.path)

        overall_exit = 0
        result.status = RunnerStatus.COMPLETED
        for number, prompt in enumerate(prompts, start=1):
            logger.info("[Runner %d] Executing prompt %d/%d", slot.number, number, len(prompts))
            outcome = self.job_executor.run_prompt(
                PromptJob(
                    prompt=prompt,
                    workdir=slot.path,
                    log_file=slot.path / f"prompt_{number}.log",
                    label=f"Runner {slot.number}",
                    request_commit_message=False,
                ),
            )
            result.prompts_run += 1
            self._append(
                timing_log,
                f"{self._now()}: Prompt {number} completed (exit: {outcome.exit_code})\n",
            )
            if not outcome.succeeded:
                logger.warning(
                    "[Runner %d] Prompt %d failed (exit: %d)",
                    slot.number,
                    number,
                    outcome.exit_code,
                )
                self._append(slot.path / f"prompt_{number}.log", "=== FAILED ===\n")
                overall_exit = outcome.exit_code or 1
                result.status = {
                    PromptStatus.TIMEOUT: RunnerStatus.TIMEOUT,
                    PromptStatus.INTERRUPTED: RunnerStatus.INTERRUPTED,
                }.get(outcome.status, RunnerStatus.FAILED)
                break

        self._append(timing_log, f"{self._now()}: Overall completed (exit: {overall_exit})\n")
        status_file.write_text(f"{result.status.value}\n", "utf-8")
        result.finished_at = self.clock()
        logger.info("[Runner %d] %s", slot.number, result.status.value)
        return result

    def _slot(self, number: int, run_dir: Path, contexts: list[RunnerContext]) -> RunnerSlot:
        context = contexts[(number - 1) % len(contexts)] if contexts else None
        path = run_dir / runner_dir_name(number, context.name if context else None)
        return RunnerSlot(number=number, path=path, context=context)

    def _setup(self, slot: RunnerSlot, prompt_count: int, template: Path | None) -> None:
        slot.path.mkdir(parents=True, exist_ok=True)
        if template is not None:
            logger.debug("[Runner %d] Copying template %s", slot.number, template)
            shutil.copytree(template, slot.path, dirs_exist_ok=True)
        context_info = "none"
        if slot.context is not None:
            logger.info("[Runner %d] Using context: %s", slot.number, slot.context.name)
            shutil.copyfile(slot.context.claudemd_file, slot.path / "CLAUDE.md")
            context_info = slot.context.name
        (slot.path / "info.txt").write_text(
            f"Runner: {slot.number}\n"
            f"Context: {context_info}\n"
            f"Prompt Count: {prompt_count}\n"
            f"Started: {self._now()}\n",
            "utf-8",
        )

    def _template_dir(self, config: SimpleRunConfig) -> Path | None:
        if not config.template_directory:
            return None
        path = resolve_absolute_path(self.working_dir, config.template_directory)
        if not path.is_dir():
            logger.warning("Template directory not found, skipping copy: %s", path)
            return None
        return path

    def _write_config_snapshot(self, run_dir: Path, config: SimpleRunConfig) -> None:
        target = run_dir / "config.json"
        if config.source_path is not None and config.source_path.is_file():
            shutil.copyfile(config.source_path, target)
            return
        target.write_text(json.dumps(config.to_payload(), ensure_ascii=False, indent=2), "utf-8")

    def _crashed(self, slot: RunnerSlot, error: Exception) -> RunnerResult:
        status_file = slot.path / "status.txt"
        if slot.path.is_dir():
            status_file.write_text(f"{RunnerStatus.FAILED.value}\n", "utf-8")
        return RunnerResult(
            name=slot.path.name,
            workdir=slot.path,
            status=RunnerStatus.FAILED,
            error=str(error),
            context_name=slot.context.name if slot.context else None,
        )

    def _now(self) -> str:
        return self.clock().strftime("%Y-%m-%d %H:%M:%S")

    @staticmethod
    def _append(path: Path, text: str) -> None:
        with path.open("a", encoding="utf-8") as handle:
            handle.write(text)
