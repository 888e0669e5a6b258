"""Assistant CLI backend implementations."""

from multi_runner.backend.base import AgentBackend, AgentRunRequest, AgentRunResult
from multi_runner.backend.cli_backend import BackendRunError, CliAgentBackend

__all__ = [
    "AgentBackend",
    "AgentRunRequest",
    "AgentRunResult",
    "BackendRunError",
    "CliAgentBackend",
]
