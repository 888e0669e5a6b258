"""Deterministic classification of assistant output for the retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from multi_runner.backend.base import AgentRunResult
from multi_runner.models import FailureClass

RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "limit reached",
    "rate limit",
    "too many requests",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "invalid api key",
    "unauthorized",
    "please run /login",
    "authentication_error",
)


@dataclass(slots=True)
class OutputClassification:
    """Normalized classification result; ``failure_class`` is None on success."""

    failure_class: FailureClass | None
    matched_rule: str
    matched_pattern: str | None = None

    @property
    def retryable(self) -> bool:
        return self.failure_class == FailureClass.RATE_LIMITED


def classify_agent_output(result: AgentRunResult) -> OutputClassification:
    """Classify one invocation.

    Rate limiting is detected from the output even when the exit code is 0,
    because the assistant CLI reports usage limits as a normal answer.
    """

    if result.timed_out:
        return OutputClassification(FailureClass.TIMEOUT, matched_rule="timeout")

    haystack = result.output.lower()
    pattern = _first_match(haystack, RATE_LIMIT_PATTERNS)
    if pattern is not None:
        return OutputClassification(
            FailureClass.RATE_LIMITED,
            matched_rule="rate_limit",
            matched_pattern=pattern,
        )

    if result.exit_code == 0:
        return OutputClassification(None, matched_rule="success")

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None:
        return OutputClassification(
            FailureClass.ACCESS_OR_AUTH,
            matched_rule="access_or_auth",
            matched_pattern=pattern,
        )

    return OutputClassification(FailureClass.NON_RETRYABLE, matched_rule="fallback_non_retryable")


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
