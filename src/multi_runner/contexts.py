"""Generate ``CLAUDE.md`` context files by asking the assistant to write them."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path

from multi_runner.backend import AgentBackend, AgentRunRequest, BackendRunError, CliAgentBackend
from multi_runner.config import AgentSettings
from multi_runner.failure_classifier import classify_agent_output
from multi_runner.models import FailureClass

logger = logging.getLogger(__name__)

CONTEXT_FILE_NAME = "CLAUDE.md"
DEFAULT_CONTEXTS_DIR = "runner-contexts"
PREVIEW_LINES = 20
_CONTEXT_NAME = re.compile(r"^[A-Za-z0-9_-]+$")

_GENERATION_HEADER = (
    "I need you to create a CLAUDE.md context file. This file will be used to influence "
    "how Claude behaves when loaded as context for specific tasks.\n"
    "\n"
    "Requirements based on user input:\n"
)
_TEMPLATE_REFERENCE = (
    "\n"
    "TEMPLATE REFERENCE: Use the CLAUDE.md template provided as context to understand the "
    "desired format, structure, and style. Follow similar patterns but adapt the content to "
    "meet the specific requirements above.\n"
)
_GENERATION_FOOTER = """
Please create a comprehensive CLAUDE.md file that includes:

1. **Context Title**: Clear header describing the context
2. **Primary Priorities**: 3-4 main focus areas
3. **Guidelines**: Specific rules and approaches to follow
4. **Code Style**: Preferred coding patterns and practices
5. **Review Checklist**: Key items to verify in completed work

Format the output as proper markdown with clear sections. The content should be detailed \
enough to meaningfully influence Claude's behavior but concise enough to be practical.

Return ONLY the CLAUDE.md file content - no explanations, no wrapper text, just the \
markdown content that should be saved as CLAUDE.md."""


class ContextGenerationError(RuntimeError):
    """Context file could not be generated."""


@dataclass(slots=True)
class GeneratedContext:
    name: str
    path: Path
    preview: list[str]
    total_lines: int

    @property
    def truncated(self) -> bool:
        return self.total_lines > len(self.preview)


def build_generation_prompt(prompts: list[str], *, with_template: bool) -> str:
    """Numbered requirements, optional template reference, then the section checklist."""

    text = _GENERATION_HEADER
    for index, prompt in enumerate(prompts, start=1):
        text += f"{index}. {prompt}\n"
    if with_template:
        text += _TEMPLATE_REFERENCE
    return text + _GENERATION_FOOTER


class ContextGenerator:
    def __init__(self, *, agent: AgentSettings, backend: AgentBackend | None = None) -> None:
        self.agent = agent
        self.backend = backend or CliAgentBackend()

    def generate(  # noqa: PLR0913
        self,
        *,
        name: str,
        prompts: list[str],
        output_dir: Path,
        template_file: Path | None = None,
        overwrite: bool = False,
    ) -> GeneratedContext:
        if not _CONTEXT_NAME.match(name):
            raise ContextGenerationError(
                "Context name must contain only letters, numbers, hyphens, and underscores",
            )
        if not prompts:
            raise ContextGenerationError("No prompts provided for context generation")
        template_text: str | None = None
        if template_file is not None:
            if not template_file.is_file():
                raise ContextGenerationError(f"Template file not found: {template_file}")
            template_text = template_file.read_text("utf-8")
            logger.info("Using template: %s", template_file)

        context_dir = output_dir / name
        target = context_dir / CONTEXT_FILE_NAME
        if target.exists() and not overwrite:
            raise ContextGenerationError(
                f"{target} already exists; pass --force to overwrite it",
            )
        context_dir.mkdir(parents=True, exist_ok=True)

        logger.info("Generating context %s from %d prompt(s)", name, len(prompts))
        try:
            result = self.backend.run(
                AgentRunRequest(
                    prompt=build_generation_prompt(
                        prompts,
                        with_template=template_text is not None,
                    ),
                    workdir=context_dir,
                    command_template=self.agent.command_template,
                    allowed_tools=self.agent.allowed_tools,
                    timeout_seconds=self.agent.prompt_timeout_seconds,
                    stdin_text=template_text,
                    merge_stderr=False,
                ),
            )
        except BackendRunError as error:
            raise ContextGenerationError(str(error)) from error
        classification = classify_agent_output(result)
        if (
            classification.failure_class == FailureClass.RATE_LIMITED
            and len(result.output.strip().splitlines()) <= 1
        ):
            raise ContextGenerationError(
                f"Assistant usage limit reached; try again later ({result.output.strip()})",
            )
        if result.timed_out or result.exit_code != 0:
            raise ContextGenerationError(
                f"Failed to generate context (exit {result.exit_code}): "
                f"{result.output.strip()[-500:]}",
            )
        if not result.output.strip():
            raise ContextGenerationError("Generated context file is empty")

        target.write_text(result.output, "utf-8")
        lines = result.output.splitlines()
        logger.info("Context generated: %s", target)
        return GeneratedContext(
            name=name,
            path=target,
            preview=lines[:PREVIEW_LINES],
            total_lines=len(lines),
        )
