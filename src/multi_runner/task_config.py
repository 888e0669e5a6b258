"""JSON task configuration: loading, validation, defaults and per-runner merging."""

from __future__ import annotations

import json
import secrets
import string
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from multi_runner.config import RetrySettings
from multi_runner.paths import derive_task_name

DEFAULT_MAX_LOOPS = 10
DEFAULT_TASK_DESCRIPTION = "No description provided"
EXECUTION_MODES = ("sequential", "parallel")
_RANDOM_ID_ALPHABET = string.ascii_lowercase + string.digits


class ConfigError(ValueError):
    """Configuration file is missing, malformed or incomplete."""


@dataclass(slots=True)
class PromptSpec:
    """One named prompt; ``period`` applies to loop prompts only."""

    name: str
    prompt: str
    period: int = 1
    skip_condition: str | None = None


@dataclass(slots=True)
class ExitCondition:
    """Loop exits once ``file`` exists inside the runner workdir."""

    name: str
    file: str


@dataclass(slots=True)
class PromptModifications:
    """Text appended to the common prompts for one runner."""

    append_to_all: str = ""
    append_to_initial: str = ""
    append_to_loop: str = ""
    append_to_final: str = ""


@dataclass(slots=True)
class ExtraPrompts:
    """Runner-only prompts appended after the common ones."""

    initial_prompts: list[PromptSpec] = field(default_factory=list)
    loop_prompts: list[PromptSpec] = field(default_factory=list)
    exit_conditions: list[ExitCondition] = field(default_factory=list)
    end_prompts: list[PromptSpec] = field(default_factory=list)


@dataclass(slots=True)
class RunnerSpec:
    """One runner entry of a worktree task."""

    name: str
    prompt_modifications: PromptModifications = field(default_factory=PromptModifications)
    extra_prompts: ExtraPrompts = field(default_factory=ExtraPrompts)


@dataclass(slots=True)
class TaskConfig:
    """Worktree-mode task: one git project, many runners on their own branches."""

    task_name: str
    git_project_path: str
    runners: list[RunnerSpec]
    task_description: str = DEFAULT_TASK_DESCRIPTION
    git_base_branch: str = "main"
    worktree_base_path: str = "worktrees"
    execution_mode: str = "sequential"
    max_parallel: int | None = None
    max_loops: int = DEFAULT_MAX_LOOPS
    initial_prompts: list[PromptSpec] = field(default_factory=list)
    loop_prompts: list[PromptSpec] = field(default_factory=list)
    exit_conditions: list[ExitCondition] = field(default_factory=list)
    end_prompts: list[PromptSpec] = field(default_factory=list)
    source_path: Path | None = None

    @property
    def effective_max_parallel(self) -> int:
        return self.max_parallel or len(self.runners)


@dataclass(slots=True)
class RunnerPlan:
    """Fully merged prompt plan for one runner."""

    runner_name: str
    max_loops: int
    initial_prompts: list[PromptSpec]
    loop_prompts: list[PromptSpec]
    exit_conditions: list[ExitCondition]
    end_prompts: list[PromptSpec]
    log_file: str
    error_file: str
    retry_attempts: int
    retry_delay_seconds: float

    def to_payload(self) -> dict[str, Any]:
        """Serialize the plan as the per-runner ``<runner>-config.json`` document."""

        return {
            "config": {
                "retry_attempts": self.retry_attempts,
                "retry_delay": self.retry_delay_seconds,
                "log_file": self.log_file,
                "error_file": self.error_file,
            },
            "runner_name": self.runner_name,
            "max_loops": self.max_loops,
            "initial_prompts": [_prompt_payload(item) for item in self.initial_prompts],
            "loop_prompts": [_prompt_payload(item) for item in self.loop_prompts],
            "exit_conditions": [asdict(item) for item in self.exit_conditions],
            "end_prompts": [_prompt_payload(item) for item in self.end_prompts],
        }


@dataclass(slots=True)
class RunnerContext:
    """Named context file copied into a runner directory as ``CLAUDE.md``."""

    name: str
    claudemd_file: str


@dataclass(slots=True)
class SimpleRunConfig:
    """Directory-mode run: the same prompt sequence in N plain directories."""

    prompts: list[str]
    num_runners: int = 3
    max_parallel: int | None = None
    task_name: str | None = None
    base_directory: str = "./results"
    template_directory: str | None = None
    execution_mode: str = "parallel"
    runner_contexts: list[RunnerContext] = field(default_factory=list)
    source_path: Path | None = None

    @property
    def effective_max_parallel(self) -> int:
        return self.max_parallel or self.num_runners

    @property
    def effective_task_name(self) -> str:
        if self.task_name:
            return self.task_name
        return derive_task_name(self.prompts[0] if self.prompts else "")

    def to_payload(self) -> dict[str, Any]:
        return {
            "prompts": list(self.prompts),
            "num_runners": self.num_runners,
            "max_parallel": self.effective_max_parallel,
            "task_name": self.effective_task_name,
            "base_directory": self.base_directory,
            "project_template": self.template_directory or "",
            "execution_mode": self.execution_mode,
            "runner_contexts": [asdict(context) for context in self.runner_contexts],
        }


def load_json_document(path: Path) -> dict[str, Any]:
    """Read a JSON object from ``path`` or raise ``ConfigError``."""

    if not path.is_file():
        raise ConfigError(f"Configuration file not found: {path}")
    try:
        payload = json.loads(path.read_text("utf-8"))
    except json.JSONDecodeError as error:
        raise ConfigError(f"Invalid JSON in configuration file {path}: {error}") from error
    if not isinstance(payload, dict):
        raise ConfigError(f"Expected JSON object in {path}")
    return payload


def load_task_config(path: Path) -> TaskConfig:
    """Load and validate a worktree-mode task configuration file."""

    config = parse_task_config(load_json_document(path))
    config.source_path = path
    return config


def parse_task_config(raw: dict[str, Any]) -> TaskConfig:
    """Validate a worktree-mode task document and apply defaults."""

    task_name = raw.get("task_name")
    if not isinstance(task_name, str) or not task_name.strip():
        raise ConfigError("task_name is required and must be a non-empty string")
    git_project_path = raw.get("git_project_path")
    if not isinstance(git_project_path, str) or not git_project_path.strip():
        raise ConfigError("git_project_path is required in configuration file")

    raw_runners = raw.get("runners") or []
    if not isinstance(raw_runners, list):
        raise ConfigError("runners must be an array")
    if not raw_runners:
        raise ConfigError("No runners found in configuration")
    runners = [_parse_runner(item, index) for index, item in enumerate(raw_runners)]
    _reject_duplicate_names([runner.name for runner in runners])

    exit_conditions = _parse_exit_conditions(raw.get("exit_conditions"), "exit_conditions")
    legacy_break = raw.get("loop_break_condition")
    if legacy_break is not None:
        exit_conditions.append(_parse_exit_condition(legacy_break, "loop_break_condition"))

    return TaskConfig(
        task_name=task_name.strip(),
        git_project_path=git_project_path.strip(),
        runners=runners,
        task_description=_optional_str(raw, "task_description") or DEFAULT_TASK_DESCRIPTION,
        git_base_branch=_optional_str(raw, "git_base_branch") or "main",
        worktree_base_path=_optional_str(raw, "worktree_base_path") or "worktrees",
        execution_mode=_parse_execution_mode(raw.get("execution_mode"), default="sequential"),
        max_parallel=_optional_positive_int(raw, "max_parallel"),
        max_loops=_parse_max_loops(raw.get("max_loops")),
        initial_prompts=_parse_prompts(raw.get("initial_prompts"), "initial_prompts"),
        loop_prompts=_parse_prompts(raw.get("loop_prompts"), "loop_prompts"),
        exit_conditions=exit_conditions,
        end_prompts=_parse_prompts(raw.get("end_prompts"), "end_prompts"),
    )


def merge_runner_config(
    task: TaskConfig,
    runner_index: int,
    *,
    retry: RetrySettings | None = None,
) -> RunnerPlan:
    """Apply one runner's modifications and extra prompts to the common prompts."""

    if not 0 <= runner_index < len(task.runners):
        raise IndexError(f"Runner index out of range: {runner_index}")
    runner = task.runners[runner_index]
    mods = runner.prompt_modifications
    extra = runner.extra_prompts
    retry = retry or RetrySettings()

    return RunnerPlan(
        runner_name=runner.name,
        max_loops=task.max_loops,
        initial_prompts=(
            _with_suffix(task.initial_prompts, mods.append_to_all + mods.append_to_initial)
            + list(extra.initial_prompts)
        ),
        loop_prompts=(
            _with_suffix(task.loop_prompts, mods.append_to_all + mods.append_to_loop)
            + list(extra.loop_prompts)
        ),
        exit_conditions=list(task.exit_conditions) + list(extra.exit_conditions),
        end_prompts=(
            _with_suffix(task.end_prompts, mods.append_to_all + mods.append_to_final)
            + list(extra.end_prompts)
        ),
        log_file=f"logs/{runner.name}-log.log",
        error_file=f"logs/{runner.name}-error.log",
        retry_attempts=retry.max_attempts,
        retry_delay_seconds=retry.retry_delay_seconds,
    )


def load_simple_config(path: Path) -> SimpleRunConfig:
    """Load and validate a directory-mode run configuration file."""

    config = parse_simple_config(load_json_document(path))
    config.source_path = path
    return config


def parse_simple_config(raw: dict[str, Any]) -> SimpleRunConfig:
    """Validate a directory-mode document and apply defaults."""

    prompts = raw.get("prompts")
    if prompts is None or prompts == []:
        raise ConfigError("No prompts provided: 'prompts' must be a non-empty array")
    if not isinstance(prompts, list) or not all(isinstance(item, str) for item in prompts):
        raise ConfigError("prompts must be an array of strings")

    num_runners = _optional_positive_int(raw, "num_runners") or 3
    template_directory = _optional_str(raw, "template_directory") or _optional_str(
        raw,
        "project_template",
    )
    raw_contexts = raw.get("runner_contexts") or []
    if not isinstance(raw_contexts, list):
        raise ConfigError("runner_contexts must be an array")

    return SimpleRunConfig(
        prompts=list(prompts),
        num_runners=num_runners,
        max_parallel=_optional_positive_int(raw, "max_parallel"),
        task_name=_optional_str(raw, "task_name"),
        base_directory=_optional_str(raw, "base_directory") or "./results",
        template_directory=template_directory,
        execution_mode=_parse_execution_mode(raw.get("execution_mode"), default="parallel"),
        runner_contexts=[
            _parse_context(item, index) for index, item in enumerate(raw_contexts)
        ],
    )


def parse_context_arg(value: str) -> RunnerContext:
    """Parse a ``name:path`` command-line context argument."""

    if ":" not in value:
        raise ConfigError(f"Context format should be 'name:path', got: {value}")
    name, path = value.split(":", 1)
    if not name.strip() or not path.strip():
        raise ConfigError(f"Context format should be 'name:path', got: {value}")
    return RunnerContext(name=name.strip(), claudemd_file=path.strip())


def generate_random_id(length: int = 6) -> str:
    return "".join(secrets.choice(_RANDOM_ID_ALPHABET) for _ in range(length))


def _parse_runner(item: Any, index: int) -> RunnerSpec:
    if not isinstance(item, dict):
        raise ConfigError(f"runners[{index}] must be an object")
    name = item.get("name")
    if name is not None and not isinstance(name, str):
        raise ConfigError(f"runners[{index}].name must be a string")
    if not name or not name.strip():
        name = f"runner_{generate_random_id()}"

    raw_mods = item.get("prompt_modifications") or {}
    if not isinstance(raw_mods, dict):
        raise ConfigError(f"runners[{index}].prompt_modifications must be an object")
    mods = PromptModifications(
        **{
            key: _string_field(raw_mods, key, f"runners[{index}].prompt_modifications")
            for key in (
                "append_to_all",
                "append_to_initial",
                "append_to_loop",
                "append_to_final",
            )
        },
    )

    raw_extra = item.get("extra_prompts") or {}
    if not isinstance(raw_extra, dict):
        raise ConfigError(f"runners[{index}].extra_prompts must be an object")
    location = f"runners[{index}].extra_prompts"
    extra = ExtraPrompts(
        initial_prompts=_parse_prompts(
            raw_extra.get("initial_prompts"),
            f"{location}.initial_prompts",
        ),
        loop_prompts=_parse_prompts(raw_extra.get("loop_prompts"), f"{location}.loop_prompts"),
        exit_conditions=_parse_exit_conditions(
            raw_extra.get("exit_conditions"),
            f"{location}.exit_conditions",
        ),
        end_prompts=_parse_prompts(raw_extra.get("end_prompts"), f"{location}.end_prompts"),
    )
    return RunnerSpec(name=name.strip(), prompt_modifications=mods, extra_prompts=extra)


def _parse_prompts(raw: Any, location: str) -> list[PromptSpec]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ConfigError(f"{location} must be an array")

    prompts: list[PromptSpec] = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ConfigError(f"{location}[{index}] must be an object")
        name = item.get("name", "unnamed")
        prompt = item.get("prompt", "")
        skip_condition = item.get("skip_condition")
        if not isinstance(name, str):
            raise ConfigError(f"{location}[{index}].name must be a string")
        if not isinstance(prompt, str):
            raise ConfigError(f"{location}[{index}].prompt must be a string")
        if skip_condition is not None and not isinstance(skip_condition, str):
            raise ConfigError(f"{location}[{index}].skip_condition must be a string")
        prompts.append(
            PromptSpec(
                name=name,
                prompt=prompt,
                period=_parse_period(item.get("period")),
                skip_condition=skip_condition or None,
            ),
        )
    return prompts


def _parse_exit_conditions(raw: Any, location: str) -> list[ExitCondition]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ConfigError(f"{location} must be an array")
    return [
        _parse_exit_condition(item, f"{location}[{index}]") for index, item in enumerate(raw)
    ]


def _parse_exit_condition(item: Any, location: str) -> ExitCondition:
    if not isinstance(item, dict):
        raise ConfigError(f"{location} must be an object")
    file_name = item.get("file")
    if not isinstance(file_name, str) or not file_name.strip():
        raise ConfigError(f"{location}.file must be a non-empty string")
    name = item.get("name", "exit condition")
    if not isinstance(name, str):
        raise ConfigError(f"{location}.name must be a string")
    return ExitCondition(name=name, file=file_name.strip())


def _parse_context(item: Any, index: int) -> RunnerContext:
    if not isinstance(item, dict):
        raise ConfigError(f"runner_contexts[{index}] must be an object")
    name = item.get("name") or f"context_{index}"
    claudemd_file = item.get("claudemd_file") or item.get("claudemd_path") or ""
    if not isinstance(name, str) or not isinstance(claudemd_file, str):
        raise ConfigError(f"runner_contexts[{index}] name and claudemd_file must be strings")
    return RunnerContext(name=name, claudemd_file=claudemd_file)


def _parse_period(value: Any) -> int:
    if isinstance(value, bool):
        return 1
    if isinstance(value, int):
        return value if value >= 1 else 1
    if isinstance(value, str) and value.strip().isdigit():
        return max(int(value.strip()), 1)
    return 1


def _parse_max_loops(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_MAX_LOOPS
    if isinstance(value, int) and value >= 0:
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return DEFAULT_MAX_LOOPS


def _parse_execution_mode(value: Any, *, default: str) -> str:
    if value is None:
        return default
    if not isinstance(value, str) or value.strip().lower() not in EXECUTION_MODES:
        raise ConfigError(
            f"execution_mode must be one of {', '.join(EXECUTION_MODES)}, got: {value!r}",
        )
    return value.strip().lower()


def _optional_str(raw: dict[str, Any], key: str) -> str | None:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be a string")
    return value.strip() or None


def _optional_positive_int(raw: dict[str, Any], key: str) -> int | None:
    value = raw.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigError(f"{key} must be a positive integer, got: {value!r}")
    return value


def _string_field(raw: dict[str, Any], key: str, location: str) -> str:
    value = raw.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ConfigError(f"{location}.{key} must be a string")
    return value


def _with_suffix(prompts: list[PromptSpec], suffix: str) -> list[PromptSpec]:
    return [
        PromptSpec(
            name=item.name,
            prompt=item.prompt + suffix,
            period=item.period,
            skip_condition=item.skip_condition,
        )
        for item in prompts
    ]


def _prompt_payload(item: PromptSpec) -> dict[str, Any]:
    payload: dict[str, Any] = {"name": item.name, "prompt": item.prompt, "period": item.period}
    if item.skip_condition:
        payload["skip_condition"] = item.skip_condition
    return payload


def _reject_duplicate_names(names: list[str]) -> None:
    seen: set[str] = set()
    for name in names:
        if name in seen:
            raise ConfigError(f"Duplicate runner name: {name!r}")
        seen.add(name)
