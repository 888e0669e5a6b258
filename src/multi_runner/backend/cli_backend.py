"""Subprocess-based backend runner for the assistant CLI."""

from __future__ import annotations

import shlex
import subprocess
import tempfile
import time
from typing import IO

from multi_runner.backend.base import AgentRunRequest, AgentRunResult

TIMEOUT_EXIT_CODE = 124
INTERRUPTED_EXIT_CODE = 130
_POLL_INTERVAL_SECONDS = 0.1


class BackendRunError(RuntimeError):
    """Backend execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CliAgentBackend:
    """Execute the configured command template inside the runner workdir."""

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        run_args = build_run_args(
            command_template=request.command_template,
            prompt=request.prompt,
            allowed_tools=request.allowed_tools,
        )
        try:
            with (
                tempfile.TemporaryFile("w+", encoding="utf-8") as output_handle,
                tempfile.TemporaryFile("w+", encoding="utf-8") as stdin_handle,
            ):
                if request.stdin_text is not None:
                    stdin_handle.write(request.stdin_text)
                    stdin_handle.flush()
                    stdin_handle.seek(0)
                exit_code, timed_out, interrupted = _run_subprocess_with_shutdown(
                    request=request,
                    run_args=run_args,
                    stdin_handle=stdin_handle if request.stdin_text is not None else None,
                    output_handle=output_handle,
                )
                output_handle.flush()
                output_handle.seek(0)
                output = output_handle.read()
        except FileNotFoundError as error:
            raise BackendRunError(
                f"Assistant command not found: {run_args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise BackendRunError(
                f"Assistant command failed to start: {error}",
                transient=True,
            ) from error

        return AgentRunResult(
            exit_code=exit_code,
            timed_out=timed_out,
            output=output,
            interrupted=interrupted,
        )


def build_run_args(*, command_template: str, prompt: str, allowed_tools: str) -> list[str]:
    """Render the command template into an argv list."""

    stripped = command_template.strip()
    if not stripped:
        raise BackendRunError("Assistant command template is empty.", transient=False)
    if "{prompt}" not in stripped:
        raise BackendRunError(
            "Assistant command template must include {prompt}.",
            transient=False,
        )
    try:
        rendered = stripped.format(
            prompt=shlex.quote(prompt),
            allowed_tools=shlex.quote(allowed_tools),
        )
    except (KeyError, IndexError) as error:
        raise BackendRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise BackendRunError(
            "Assistant command template rendered empty command.",
            transient=False,
        )
    return argv


def _run_subprocess_with_shutdown(
    *,
    request: AgentRunRequest,
    run_args: list[str],
    stdin_handle: IO[str] | None,
    output_handle: IO[str],
) -> tuple[int, bool, bool]:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        cwd=request.workdir,
        stdin=stdin_handle if stdin_handle is not None else subprocess.DEVNULL,
        stdout=output_handle,
        stderr=subprocess.STDOUT if request.merge_stderr else subprocess.DEVNULL,
        text=True,
    )
    start_monotonic = time.monotonic()
    shutdown_deadline: float | None = None
    graceful_seconds = max(0, request.graceful_shutdown_seconds or 0)

    while True:
        returncode = process.poll()
        if returncode is not None:
            return returncode, False, False

        now = time.monotonic()
        if now - start_monotonic >= request.timeout_seconds:
            _terminate_process(process)
            return TIMEOUT_EXIT_CODE, True, False

        if request.shutdown_requested is not None and request.shutdown_requested():
            if shutdown_deadline is None:
                shutdown_deadline = now + graceful_seconds
            if now >= shutdown_deadline:
                _terminate_process(process)
                return INTERRUPTED_EXIT_CODE, False, True

        time.sleep(_POLL_INTERVAL_SECONDS)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
