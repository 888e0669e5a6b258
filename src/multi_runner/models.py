"""Domain models shared by the executor, orchestrators and reports."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path


class FailureClass(str, Enum):
    """Normalized failure classes used by the retry policy."""

    RATE_LIMITED = "rate_limited"
    ACCESS_OR_AUTH = "access_or_auth"
    TIMEOUT = "timeout"
    NON_RETRYABLE = "non_retryable"


class PromptStatus(str, Enum):
    """Outcome of one prompt after all attempts."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    INTERRUPTED = "interrupted"


class RunnerStatus(str, Enum):
    """Runner lifecycle states, also written to ``status.txt``."""

    PENDING = "not started"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    INTERRUPTED = "interrupted"


class PromptPhase(str, Enum):
    """Prompt phase; the value is the tag used in commit messages."""

    INITIAL = "initial"
    LOOP = "loop"
    FINAL = "final"
    SEQUENCE = "sequence"


@dataclass(slots=True)
class PromptOutcome:
    """Result of running one prompt through the retry loop."""

    status: PromptStatus
    exit_code: int
    output: str
    attempts: int
    failure_class: FailureClass | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == PromptStatus.SUCCEEDED


@dataclass(slots=True)
class RunnerResult:
    """Final state of one runner."""

    name: str
    workdir: Path
    status: RunnerStatus
    started_at: datetime | None = None
    finished_at: datetime | None = None
    prompts_run: int = 0
    prompts_skipped: int = 0
    commits: int = 0
    exit_condition: str | None = None
    error: str | None = None
    context_name: str | None = None
    branch: str | None = None

    @property
    def elapsed_seconds(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


@dataclass(slots=True)
class TaskSummary:
    """Aggregated outcome of all runners of a task."""

    task_name: str
    execution_mode: str
    results: list[RunnerResult] = field(default_factory=list)
    run_dir: Path | None = None
    interrupted: bool = False

    def count(self, status: RunnerStatus) -> int:
        return sum(1 for result in self.results if result.status == status)

    @property
    def completed(self) -> int:
        return self.count(RunnerStatus.COMPLETED)

    @property
    def failed(self) -> int:
        return len(self.results) - self.completed

    @property
    def success(self) -> bool:
        return bool(self.results) and self.failed == 0 and not self.interrupted
