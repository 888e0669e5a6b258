"""Runtime configuration for agent execution and orchestration."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

DEFAULT_ALLOWED_TOOLS = (
    "Read,Edit,Write,MultiEdit,NotebookEdit,Bash,TodoWrite,Glob,Grep,Task,"
    "WebFetch,WebSearch,ExitPlanMode,BashOutput,KillBash"
)
DEFAULT_COMMAND_TEMPLATE = "claude --allowedTools {allowed_tools} -p {prompt}"
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(slots=True)
class AgentSettings:
    """How the external assistant CLI is invoked."""

    command_template: str = DEFAULT_COMMAND_TEMPLATE
    allowed_tools: str = DEFAULT_ALLOWED_TOOLS
    prompt_timeout_seconds: int = 7_200
    graceful_shutdown_seconds: int = 1


@dataclass(slots=True)
class RetrySettings:
    """Fixed-backoff retry policy for rate-limited invocations."""

    max_attempts: int = 5
    retry_delay_seconds: float = 3_600.0


@dataclass(slots=True)
class OrchestrationSettings:
    """Runner dispatch settings."""

    runner_timeout_seconds: int = 3_600
    spawn_delay_seconds: float = 3.0
    install_dependencies: bool = True
    auto_commit: bool = True


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    agent: AgentSettings = field(default_factory=AgentSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    orchestration: OrchestrationSettings = field(default_factory=OrchestrationSettings)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with defaults matching the interactive tool."""

        return cls(
            agent=AgentSettings(
                command_template=os.getenv(
                    "MULTI_RUNNER_AGENT_COMMAND_TEMPLATE",
                    DEFAULT_COMMAND_TEMPLATE,
                ),
                allowed_tools=os.getenv("MULTI_RUNNER_ALLOWED_TOOLS", DEFAULT_ALLOWED_TOOLS),
                prompt_timeout_seconds=_env_int("MULTI_RUNNER_PROMPT_TIMEOUT_SECONDS", 7_200),
                graceful_shutdown_seconds=_env_int(
                    "MULTI_RUNNER_GRACEFUL_SHUTDOWN_SECONDS",
                    1,
                ),
            ),
            retry=RetrySettings(
                max_attempts=_env_int("MULTI_RUNNER_RETRY_ATTEMPTS", 5),
                retry_delay_seconds=_env_float("MULTI_RUNNER_RETRY_DELAY_SECONDS", 3_600.0),
            ),
            orchestration=OrchestrationSettings(
                runner_timeout_seconds=_env_int("MULTI_RUNNER_RUNNER_TIMEOUT_SECONDS", 3_600),
                spawn_delay_seconds=_env_float("MULTI_RUNNER_SPAWN_DELAY_SECONDS", 3.0),
                install_dependencies=_env_bool(
                    "MULTI_RUNNER_INSTALL_DEPENDENCIES",
                    default=True,
                ),
                auto_commit=_env_bool("MULTI_RUNNER_AUTO_COMMIT", default=True),
            ),
            log_level=os.getenv("MULTI_RUNNER_LOG_LEVEL", "INFO").strip().upper(),
        )

    def validate(self) -> None:
        """Raise ``ValueError`` when a setting cannot drive a run."""

        template = self.agent.command_template.strip()
        if not template:
            raise ValueError("MULTI_RUNNER_AGENT_COMMAND_TEMPLATE must not be empty.")
        if "{prompt}" not in template:
            raise ValueError("MULTI_RUNNER_AGENT_COMMAND_TEMPLATE must include {prompt}.")
        if self.agent.prompt_timeout_seconds <= 0:
            raise ValueError("MULTI_RUNNER_PROMPT_TIMEOUT_SECONDS must be > 0.")
        if self.agent.graceful_shutdown_seconds < 0:
            raise ValueError("MULTI_RUNNER_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if self.retry.max_attempts <= 0:
            raise ValueError("MULTI_RUNNER_RETRY_ATTEMPTS must be > 0.")
        if self.retry.retry_delay_seconds < 0:
            raise ValueError("MULTI_RUNNER_RETRY_DELAY_SECONDS must be >= 0.")
        if self.orchestration.runner_timeout_seconds < 0:
            raise ValueError("MULTI_RUNNER_RUNNER_TIMEOUT_SECONDS must be >= 0.")
        if self.orchestration.spawn_delay_seconds < 0:
            raise ValueError("MULTI_RUNNER_SPAWN_DELAY_SECONDS must be >= 0.")
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(f"Invalid MULTI_RUNNER_LOG_LEVEL: {self.log_level!r}")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid numeric value for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
