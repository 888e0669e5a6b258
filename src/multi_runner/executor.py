"""Prompt execution with rate-limit retry and per-job log files."""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from multi_runner.backend import AgentBackend, AgentRunRequest, AgentRunResult, BackendRunError
from multi_runner.backend.cli_backend import INTERRUPTED_EXIT_CODE, TIMEOUT_EXIT_CODE
from multi_runner.config import AgentSettings, RetrySettings
from multi_runner.failure_classifier import classify_agent_output
from multi_runner.models import FailureClass, PromptOutcome, PromptStatus

logger = logging.getLogger(__name__)

COMMIT_MESSAGE_REQUEST = "\n\nReturn a simple string describing changes made for git commit."
LOG_SEPARATOR = "--------------------------------"
COMMAND_NOT_FOUND_EXIT_CODE = 127
_GIT_WRITE_COMMANDS = re.compile(r"git (?:add|commit|push)[^;\n]*;*")


@dataclass(slots=True)
class PromptJob:
    """One prompt to run in one working directory."""

    prompt: str
    workdir: Path
    log_file: Path
    label: str
    request_commit_message: bool = True
    deadline: float | None = None  # time.monotonic() value bounding attempts and retry waits


def clean_git_commands(prompt: str) -> str:
    """Drop git write commands; the orchestrator commits on the assistant's behalf."""

    return _GIT_WRITE_COMMANDS.sub("", prompt)


def prepare_prompt(prompt: str, *, request_commit_message: bool) -> str:
    cleaned = clean_git_commands(prompt)
    if request_commit_message:
        return cleaned + COMMIT_MESSAGE_REQUEST
    return cleaned


class JobExecutor:
    """Runs prompts through the backend, retrying rate-limited attempts after a fixed delay."""

    def __init__(
        self,
        *,
        backend: AgentBackend,
        agent: AgentSettings,
        retry: RetrySettings,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.backend = backend
        self.agent = agent
        self.retry = retry
        self.stop_event = stop_event or threading.Event()

    def run_prompt(self, job: PromptJob) -> PromptOutcome:
        enhanced_prompt = prepare_prompt(
            job.prompt,
            request_commit_message=job.request_commit_message,
        )
        job.log_file.parent.mkdir(parents=True, exist_ok=True)
        max_attempts = self.retry.max_attempts
        last_output = ""
        last_exit_code = 1

        for attempt in range(1, max_attempts + 1):
            if self.stop_event.is_set():
                return PromptOutcome(
                    status=PromptStatus.INTERRUPTED,
                    exit_code=INTERRUPTED_EXIT_CODE,
                    output=last_output,
                    attempts=attempt - 1,
                )
            timeout_seconds = self._attempt_timeout(job)
            if timeout_seconds is None:
                return self._deadline_outcome(job, last_output, attempt - 1)
            logger.info("[%s] Attempt %d/%d", job.label, attempt, max_attempts)
            self._append_log(
                job.log_file,
                f"{LOG_SEPARATOR}\n=== ATTEMPT {attempt} === {_now()}\n"
                f"{job.prompt}\n=== OUTPUT ===\n",
            )

            try:
                result = self.backend.run(
                    AgentRunRequest(
                        prompt=enhanced_prompt,
                        workdir=job.workdir,
                        command_template=self.agent.command_template,
                        allowed_tools=self.agent.allowed_tools,
                        timeout_seconds=timeout_seconds,
                        shutdown_requested=self.stop_event.is_set,
                        graceful_shutdown_seconds=self.agent.graceful_shutdown_seconds,
                    ),
                )
            except BackendRunError as error:
                logger.error("[%s] %s", job.label, error)
                last_output = str(error)
                if not error.transient or attempt == max_attempts:
                    self._append_log(job.log_file, f"{error}\n=== FAILED ===\n")
                    return PromptOutcome(
                        status=PromptStatus.FAILED,
                        exit_code=COMMAND_NOT_FOUND_EXIT_CODE,
                        output=last_output,
                        attempts=attempt,
                        failure_class=FailureClass.NON_RETRYABLE,
                    )
                delay = self.retry.retry_delay_seconds
                self._append_log(
                    job.log_file,
                    f"{error}\n{_now()}: Retrying in {delay} seconds\n",
                )
                stopped = self._wait_before_retry(job, last_output, attempt)
                if stopped is not None:
                    return stopped
                continue

            last_output = result.output
            last_exit_code = result.exit_code
            self._append_log(job.log_file, _ensure_newline(result.output))

            if result.interrupted:
                self._append_log(job.log_file, "=== INTERRUPTED ===\n")
                return PromptOutcome(
                    status=PromptStatus.INTERRUPTED,
                    exit_code=INTERRUPTED_EXIT_CODE,
                    output=result.output,
                    attempts=attempt,
                )

            classification = classify_agent_output(result)
            if not classification.retryable:
                return _outcome_from_result(result, classification.failure_class, attempt)
            if attempt == max_attempts:
                break

            delay = self.retry.retry_delay_seconds
            logger.warning(
                "[%s] Rate limit reached (%s). Waiting %s seconds before retry...",
                job.label,
                classification.matched_pattern,
                delay,
            )
            self._append_log(job.log_file, f"{_now()}: Rate limit hit, waiting {delay} seconds\n")
            stopped = self._wait_before_retry(
                job,
                result.output,
                attempt,
                failure_class=FailureClass.RATE_LIMITED,
            )
            if stopped is not None:
                return stopped

        logger.error("[%s] Max retry attempts (%d) reached", job.label, max_attempts)
        self._append_log(job.log_file, f"{_now()}: Max retry attempts reached\n")
        return PromptOutcome(
            status=PromptStatus.RATE_LIMITED,
            exit_code=last_exit_code or 1,
            output=last_output,
            attempts=max_attempts,
            failure_class=FailureClass.RATE_LIMITED,
        )

    def _attempt_timeout(self, job: PromptJob) -> int | None:
        """Seconds the next attempt may run, or None once the job deadline has passed."""

        timeout_seconds = self.agent.prompt_timeout_seconds
        if job.deadline is None:
            return timeout_seconds
        remaining = job.deadline - time.monotonic()
        if remaining <= 0:
            return None
        return min(timeout_seconds, max(1, int(remaining)))

    def _wait_before_retry(
        self,
        job: PromptJob,
        output: str,
        attempt: int,
        *,
        failure_class: FailureClass | None = None,
    ) -> PromptOutcome | None:
        delay: float = self.retry.retry_delay_seconds
        if job.deadline is not None:
            delay = max(0.0, min(delay, job.deadline - time.monotonic()))
        if self.stop_event.wait(timeout=delay):
            return PromptOutcome(
                status=PromptStatus.INTERRUPTED,
                exit_code=INTERRUPTED_EXIT_CODE,
                output=output,
                attempts=attempt,
                failure_class=failure_class,
            )
        if job.deadline is not None and time.monotonic() >= job.deadline:
            return self._deadline_outcome(job, output, attempt)
        return None

    def _deadline_outcome(self, job: PromptJob, output: str, attempts: int) -> PromptOutcome:
        logger.error("[%s] Deadline reached before the prompt completed", job.label)
        self._append_log(job.log_file, f"{_now()}: Deadline reached\n=== TIMEOUT ===\n")
        return PromptOutcome(
            status=PromptStatus.TIMEOUT,
            exit_code=TIMEOUT_EXIT_CODE,
            output=output,
            attempts=attempts,
            failure_class=FailureClass.TIMEOUT,
        )

    def _append_log(self, path: Path, text: str) -> None:
        with path.open("a", encoding="utf-8") as handle:
            handle.write(text)


def _outcome_from_result(
    result: AgentRunResult,
    failure_class: FailureClass | None,
    attempt: int,
) -> PromptOutcome:
    if failure_class is None:
        status = PromptStatus.SUCCEEDED
    elif failure_class == FailureClass.TIMEOUT:
        status = PromptStatus.TIMEOUT
    else:
        status = PromptStatus.FAILED
    return PromptOutcome(
        status=status,
        exit_code=TIMEOUT_EXIT_CODE if result.timed_out else result.exit_code,
        output=result.output,
        attempts=attempt,
        failure_class=failure_class,
    )


def _ensure_newline(text: str) -> str:
    if not text or text.endswith("\n"):
        return text
    return text + "\n"


def _now() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")
