from __future__ import annotations

import json
import re
from pathlib import Path

import allure
import pytest

from multi_runner.config import RetrySettings
from multi_runner.task_config import (
    ConfigError,
    load_simple_config,
    load_task_config,
    merge_runner_config,
    parse_context_arg,
    parse_simple_config,
    parse_task_config,
)

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Task Documents & Runner Merging"),
]


def _task(**overrides) -> dict:
    raw = {
        "task_name": "calc",
        "git_project_path": "../calc-project",
        "initial_prompts": [{"name": "setup", "prompt": "Create the project."}],
        "loop_prompts": [
            {"name": "improve", "prompt": "Improve the code."},
            {"name": "review", "prompt": "Review the code.", "period": 2},
        ],
        "exit_conditions": [{"name": "done", "file": "DONE.md"}],
        "end_prompts": [{"name": "wrap", "prompt": "Summarize."}],
        "runners": [
            {
                "name": "fast",
                "prompt_modifications": {
                    "append_to_all": " Be quick.",
                    "append_to_loop": " Small steps.",
                },
                "extra_prompts": {
                    "loop_prompts": [{"name": "bench", "prompt": "Run benchmarks."}],
                    "exit_conditions": [{"name": "fast-done", "file": "FAST.md"}],
                },
            },
            {"name": "careful"},
        ],
    }
    raw.update(overrides)
    return raw


def test_parse_task_config_applies_defaults() -> None:
    task = parse_task_config(_task())

    assert task.task_description == "No description provided"
    assert task.git_base_branch == "main"
    assert task.worktree_base_path == "worktrees"
    assert task.execution_mode == "sequential"
    assert task.max_loops == 10
    assert task.effective_max_parallel == 2
    assert task.loop_prompts[0].period == 1
    assert task.loop_prompts[1].period == 2


def test_parse_task_config_requires_task_name_and_project() -> None:
    with pytest.raises(ConfigError, match="task_name"):
        parse_task_config(_task(task_name=""))
    with pytest.raises(ConfigError, match="git_project_path"):
        parse_task_config(_task(git_project_path=None))


def test_parse_task_config_rejects_empty_runners() -> None:
    with pytest.raises(ConfigError, match="No runners found in configuration"):
        parse_task_config(_task(runners=[]))


def test_parse_task_config_rejects_duplicate_runner_names() -> None:
    with pytest.raises(ConfigError, match="Duplicate runner name"):
        parse_task_config(_task(runners=[{"name": "a"}, {"name": "a"}]))


def test_unnamed_runner_gets_random_name() -> None:
    task = parse_task_config(_task(runners=[{}]))

    assert re.fullmatch(r"runner_[a-z0-9]{6}", task.runners[0].name)


def test_invalid_period_and_max_loops_fall_back() -> None:
    task = parse_task_config(
        _task(
            max_loops=-3,
            loop_prompts=[
                {"name": "a", "prompt": "x", "period": 0},
                {"name": "b", "prompt": "y", "period": "often"},
                {"name": "c", "prompt": "z", "period": "3"},
            ],
        ),
    )

    assert task.max_loops == 10
    assert [prompt.period for prompt in task.loop_prompts] == [1, 1, 3]


def test_legacy_loop_break_condition_is_an_exit_condition() -> None:
    task = parse_task_config(_task(loop_break_condition={"name": "stop", "file": "STOP"}))

    assert [condition.file for condition in task.exit_conditions] == ["DONE.md", "STOP"]


def test_execution_mode_must_be_known() -> None:
    with pytest.raises(ConfigError, match="execution_mode"):
        parse_task_config(_task(execution_mode="swarm"))


def test_merge_runner_config_appends_modifications_and_extra_prompts() -> None:
    task = parse_task_config(_task())

    plan = merge_runner_config(task, 0, retry=RetrySettings(max_attempts=2, retry_delay_seconds=5))

    assert [prompt.prompt for prompt in plan.initial_prompts] == ["Create the project. Be quick."]
    assert [prompt.prompt for prompt in plan.loop_prompts] == [
        "Improve the code. Be quick. Small steps.",
        "Review the code. Be quick. Small steps.",
        "Run benchmarks.",
    ]
    assert plan.loop_prompts[1].period == 2
    assert [prompt.prompt for prompt in plan.end_prompts] == ["Summarize. Be quick."]
    assert [condition.file for condition in plan.exit_conditions] == ["DONE.md", "FAST.md"]
    assert plan.log_file == "logs/fast-log.log"
    assert plan.error_file == "logs/fast-error.log"
    assert plan.retry_attempts == 2


def test_merge_runner_config_without_modifications_keeps_prompts() -> None:
    task = parse_task_config(_task())

    plan = merge_runner_config(task, 1)

    assert [prompt.prompt for prompt in plan.loop_prompts] == [
        "Improve the code.",
        "Review the code.",
    ]
    assert [condition.name for condition in plan.exit_conditions] == ["done"]


def test_merge_runner_config_rejects_bad_index() -> None:
    with pytest.raises(IndexError):
        merge_runner_config(parse_task_config(_task()), 5)


def test_runner_plan_payload_shape() -> None:
    payload = merge_runner_config(parse_task_config(_task()), 0).to_payload()

    assert payload["runner_name"] == "fast"
    assert payload["config"]["log_file"] == "logs/fast-log.log"
    assert payload["config"]["retry_attempts"] == 5
    assert payload["loop_prompts"][1] == {
        "name": "review",
        "prompt": "Review the code. Be quick. Small steps.",
        "period": 2,
    }
    json.dumps(payload)


def test_load_task_config_reports_missing_and_invalid_files(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="not found"):
        load_task_config(tmp_path / "missing.json")

    broken = tmp_path / "broken.json"
    broken.write_text("{not json", "utf-8")
    with pytest.raises(ConfigError, match="Invalid JSON"):
        load_task_config(broken)

    valid = tmp_path / "task.json"
    valid.write_text(json.dumps(_task()), "utf-8")
    assert load_task_config(valid).source_path == valid


def test_parse_simple_config_defaults_and_derived_name() -> None:
    config = parse_simple_config({"prompts": ["Build a todo app\nwith tests!"]})

    assert config.num_runners == 3
    assert config.effective_max_parallel == 3
    assert config.execution_mode == "parallel"
    assert config.base_directory == "./results"
    assert config.effective_task_name == "Build-a-todo-appwith-tests"


def test_parse_simple_config_requires_prompts() -> None:
    with pytest.raises(ConfigError, match="No prompts provided"):
        parse_simple_config({"num_runners": 2})
    with pytest.raises(ConfigError, match="array of strings"):
        parse_simple_config({"prompts": [1, 2]})


def test_parse_simple_config_accepts_legacy_keys() -> None:
    config = parse_simple_config(
        {
            "prompts": ["x"],
            "project_template": "template",
            "runner_contexts": [
                {"name": "a", "claudemd_file": "a.md"},
                {"name": "b", "claudemd_path": "b.md"},
            ],
        },
    )

    assert config.template_directory == "template"
    assert [context.claudemd_file for context in config.runner_contexts] == ["a.md", "b.md"]


def test_load_simple_config_sets_source(tmp_path: Path) -> None:
    path = tmp_path / "simple.json"
    path.write_text(json.dumps({"prompts": ["hello"], "max_parallel": 1}), "utf-8")

    config = load_simple_config(path)

    assert config.source_path == path
    assert config.effective_max_parallel == 1
    assert config.to_payload()["task_name"] == "hello"


def test_parse_context_arg() -> None:
    context = parse_context_arg("security:contexts/sec/CLAUDE.md")

    assert context.name == "security"
    assert context.claudemd_file == "contexts/sec/CLAUDE.md"
    with pytest.raises(ConfigError, match="name:path"):
        parse_context_arg("no-separator")
