"""Shared test fixtures."""

from __future__ import annotations

import subprocess
import sys
import threading
from collections.abc import Callable
from pathlib import Path

import pytest

from multi_runner.backend import AgentRunRequest, AgentRunResult
from multi_runner.config import AgentSettings, OrchestrationSettings, RetrySettings, Settings

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m multi_runner.backend.echo_agent "
    "--allowed-tools {allowed_tools} -p {prompt}"
)


class ScriptedBackend:
    """In-process backend: answers every request through ``script``."""

    def __init__(self, script: Callable[[AgentRunRequest], AgentRunResult] | None = None) -> None:
        self.script = script or (
            lambda _: AgentRunResult(exit_code=0, timed_out=False, output="done")
        )
        self.requests: list[AgentRunRequest] = []
        self._lock = threading.Lock()

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        with self._lock:
            self.requests.append(request)
        return self.script(request)

    @property
    def prompts(self) -> list[str]:
        return [request.prompt for request in self.requests]


@pytest.fixture()
def scripted_backend() -> type[ScriptedBackend]:
    return ScriptedBackend


@pytest.fixture()
def fast_settings() -> Settings:
    """Settings that drive the echo agent without waits."""

    return Settings(
        agent=AgentSettings(
            command_template=ECHO_AGENT_COMMAND_TEMPLATE,
            prompt_timeout_seconds=30,
            graceful_shutdown_seconds=0,
        ),
        retry=RetrySettings(max_attempts=3, retry_delay_seconds=0),
        orchestration=OrchestrationSettings(
            runner_timeout_seconds=0,
            spawn_delay_seconds=0,
            install_dependencies=False,
        ),
    )


@pytest.fixture()
def echo_agent(monkeypatch) -> str:
    """Point ``Settings.from_env`` at the echo agent with zero delays."""

    monkeypatch.setenv("MULTI_RUNNER_AGENT_COMMAND_TEMPLATE", ECHO_AGENT_COMMAND_TEMPLATE)
    monkeypatch.setenv("MULTI_RUNNER_RETRY_DELAY_SECONDS", "0")
    monkeypatch.setenv("MULTI_RUNNER_SPAWN_DELAY_SECONDS", "0")
    monkeypatch.setenv("MULTI_RUNNER_INSTALL_DEPENDENCIES", "false")
    monkeypatch.setenv("MULTI_RUNNER_PROMPT_TIMEOUT_SECONDS", "30")
    return ECHO_AGENT_COMMAND_TEMPLATE


@pytest.fixture(autouse=True)
def git_identity(monkeypatch, tmp_path_factory) -> None:
    """Isolate git from the user's configuration."""

    home = tmp_path_factory.mktemp("home")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(home / ".gitconfig"))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test Runner")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "runner@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test Runner")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "runner@example.com")


@pytest.fixture()
def git_log() -> Callable[..., list[str]]:
    """Commit subjects of ``ref``, newest first."""

    def _subjects(repo: Path, ref: str = "HEAD") -> list[str]:
        completed = subprocess.run(
            ["git", "log", "--format=%s", ref],
            cwd=repo,
            capture_output=True,
            text=True,
            check=True,
        )
        return completed.stdout.splitlines()

    return _subjects
