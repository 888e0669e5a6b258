"""Backend interface for running one assistant invocation."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class AgentRunRequest:
    """Inputs required to execute one assistant invocation."""

    prompt: str
    workdir: Path
    command_template: str
    timeout_seconds: int
    allowed_tools: str = ""
    stdin_text: str | None = None
    shutdown_requested: Callable[[], bool] | None = None
    graceful_shutdown_seconds: int | None = None
    merge_stderr: bool = True


@dataclass(slots=True)
class AgentRunResult:
    """Execution outcome; ``output`` is stdout, plus stderr when the request merges it."""

    exit_code: int
    timed_out: bool
    output: str
    interrupted: bool = False


class AgentBackend(Protocol):
    """Protocol implemented by backend runners."""

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        """Run one invocation and return execution metadata."""
