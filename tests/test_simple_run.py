from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path

import allure

from multi_runner.backend import AgentRunRequest, AgentRunResult
from multi_runner.models import RunnerStatus
from multi_runner.report import INDEX_HEADER
from multi_runner.simple_run import SimpleRunOrchestrator
from multi_runner.task_config import RunnerContext, SimpleRunConfig

pytestmark = [
    allure.epic("Directory Runs"),
    allure.feature("Simple Run Orchestration"),
]

_STARTED = datetime(2025, 1, 2, 3, 4, 5)


def _orchestrator(tmp_path: Path, settings, backend, **kwargs) -> SimpleRunOrchestrator:
    return SimpleRunOrchestrator(
        settings=settings,
        working_dir=tmp_path,
        backend=backend,
        clock=kwargs.pop("clock", lambda: _STARTED),
        **kwargs,
    )


def _contexts(tmp_path: Path) -> list[RunnerContext]:
    for name in ("fast", "careful"):
        (tmp_path / f"{name}.md").write_text(f"# {name} context\n", "utf-8")
    return [
        RunnerContext(name="fast", claudemd_file="fast.md"),
        RunnerContext(name="careful", claudemd_file="careful.md"),
    ]


def test_runners_get_round_robin_contexts_and_artifacts(
    tmp_path: Path,
    fast_settings,
    scripted_backend,
) -> None:
    backend = scripted_backend()
    config = SimpleRunConfig(
        prompts=["first step", "second step"],
        num_runners=3,
        task_name="calc",
        execution_mode="sequential",
        runner_contexts=_contexts(tmp_path),
    )

    summary = _orchestrator(tmp_path, fast_settings, backend).run(config)

    run_dir = tmp_path / "results" / "calc_20250102_030405"
    assert summary.success
    assert summary.run_dir == run_dir
    assert [result.name for result in summary.results] == [
        "00001_fast",
        "00002_careful",
        "00003_fast",
    ]
    assert backend.prompts == ["first step", "second step"] * 3

    runner = run_dir / "00002_careful"
    assert (runner / "CLAUDE.md").read_text("utf-8") == "# careful context\n"
    assert (runner / "status.txt").read_text("utf-8") == "completed\n"
    assert (runner / "info.txt").read_text("utf-8") == (
        "Runner: 2\n"
        "Context: careful\n"
        "Prompt Count: 2\n"
        "Started: 2025-01-02 03:04:05\n"
    )
    assert (runner / "timing.log").read_text("utf-8").splitlines() == [
        "2025-01-02 03:04:05: Started",
        "2025-01-02 03:04:05: Prompt 1 completed (exit: 0)",
        "2025-01-02 03:04:05: Prompt 2 completed (exit: 0)",
        "2025-01-02 03:04:05: Overall completed (exit: 0)",
    ]
    assert "second step" in (runner / "prompt_2.log").read_text("utf-8")

    snapshot = json.loads((run_dir / "config.json").read_text("utf-8"))
    assert snapshot["num_runners"] == 3
    assert snapshot["runner_contexts"][0]["name"] == "fast"
    assert (run_dir / "execution.log").read_text("utf-8").startswith("Start time: ")
    readme = (run_dir / "README.md").read_text("utf-8")
    assert "| 00003_fast | completed | 2025-01-02 03:04:05 | 2025-01-02 03:04:05 |" in readme


def test_failed_prompt_stops_only_that_runner(
    tmp_path: Path,
    fast_settings,
    scripted_backend,
) -> None:
    calls: dict[str, int] = {}
    lock = threading.Lock()

    def _script(request: AgentRunRequest) -> AgentRunResult:
        with lock:
            calls[request.workdir.name] = calls.get(request.workdir.name, 0) + 1
        if request.prompt == "second" and request.workdir.name.startswith("00001"):
            return AgentRunResult(exit_code=2, timed_out=False, output="broken")
        return AgentRunResult(exit_code=0, timed_out=False, output="ok")

    config = SimpleRunConfig(prompts=["first", "second", "third"], num_runners=2, task_name="calc")

    summary = _orchestrator(tmp_path, fast_settings, scripted_backend(_script)).run(config)

    assert [result.status for result in summary.results] == [
        RunnerStatus.FAILED,
        RunnerStatus.COMPLETED,
    ]
    assert calls == {"00001_default": 2, "00002_default": 3}
    failed_dir = summary.results[0].workdir
    assert (failed_dir / "status.txt").read_text("utf-8") == "failed\n"
    assert (failed_dir / "prompt_2.log").read_text("utf-8").endswith("=== FAILED ===\n")
    assert not (failed_dir / "prompt_3.log").exists()
    assert (failed_dir / "timing.log").read_text("utf-8").splitlines()[-1].endswith(
        "Overall completed (exit: 2)",
    )
    index = (tmp_path / "results" / "index.md").read_text("utf-8")
    assert "| 20250102_030405 | calc | 2 | 1✓ 1✗ |" in index


def test_template_is_copied_and_missing_context_dropped(
    tmp_path: Path,
    fast_settings,
    scripted_backend,
) -> None:
    template = tmp_path / "template"
    (template / "src").mkdir(parents=True)
    (template / "src" / "app.py").write_text("print('hi')\n", "utf-8")
    config = SimpleRunConfig(
        prompts=["go"],
        num_runners=1,
        task_name="calc",
        template_directory="template",
        runner_contexts=[RunnerContext(name="ghost", claudemd_file="missing.md")],
    )

    summary = _orchestrator(tmp_path, fast_settings, scripted_backend()).run(config)

    runner = summary.results[0].workdir
    assert runner.name == "00001_default"
    assert (runner / "src" / "app.py").read_text("utf-8") == "print('hi')\n"
    assert not (runner / "CLAUDE.md").exists()
    assert "Context: none" in (runner / "info.txt").read_text("utf-8")


def test_config_file_is_copied_verbatim(tmp_path: Path, fast_settings, scripted_backend) -> None:
    source = tmp_path / "run.json"
    source.write_text('{"prompts": ["go"], "num_runners": 1}\n', "utf-8")
    config = SimpleRunConfig(prompts=["go"], num_runners=1, task_name="calc", source_path=source)

    summary = _orchestrator(tmp_path, fast_settings, scripted_backend()).run(config)

    assert (summary.run_dir / "config.json").read_text("utf-8") == source.read_text("utf-8")


def test_task_name_defaults_to_prompt_prefix(
    tmp_path: Path,
    fast_settings,
    scripted_backend,
) -> None:
    config = SimpleRunConfig(prompts=["Build a calculator app"], num_runners=1)

    summary = _orchestrator(tmp_path, fast_settings, scripted_backend()).run(config)

    assert summary.task_name == "Build-a-calculator-app"
    assert summary.run_dir.name == "Build-a-calculator-app_20250102_030405"


def test_index_accumulates_runs(tmp_path: Path, fast_settings, scripted_backend) -> None:
    moments = iter([datetime(2025, 1, 2, 3, 4, 5), datetime(2025, 1, 3, 3, 4, 5)])
    current = {"value": _STARTED}

    def _clock() -> datetime:
        return current["value"]

    orchestrator = _orchestrator(tmp_path, fast_settings, scripted_backend(), clock=_clock)
    config = SimpleRunConfig(prompts=["go"], num_runners=1, task_name="calc")
    for moment in moments:
        current["value"] = moment
        orchestrator.run(config)

    index = (tmp_path / "results" / "index.md").read_text("utf-8")
    assert index.startswith(INDEX_HEADER)
    assert index.count(INDEX_HEADER) == 1
    rows = index[len(INDEX_HEADER) :].splitlines()
    assert [row.split(" | ")[0] for row in rows] == ["| 20250102_030405", "| 20250103_030405"]


def test_stop_before_start_leaves_runners_pending(
    tmp_path: Path,
    fast_settings,
    scripted_backend,
) -> None:
    stop_event = threading.Event()
    stop_event.set()
    backend = scripted_backend()
    config = SimpleRunConfig(prompts=["go"], num_runners=2, task_name="calc")

    summary = _orchestrator(tmp_path, fast_settings, backend, stop_event=stop_event).run(config)

    assert summary.interrupted
    assert not summary.success
    assert backend.requests == []
    assert [result.status for result in summary.results] == [RunnerStatus.PENDING] * 2
    readme = (summary.run_dir / "README.md").read_text("utf-8")
    assert "| 00001_default | not started | - | - |" in readme


def test_parallel_run_with_echo_agent(tmp_path: Path, fast_settings) -> None:
    config = SimpleRunConfig(
        prompts=["touch:hello.txt say hello", "touch:bye.txt say bye"],
        num_runners=3,
        max_parallel=2,
        task_name="echo",
    )

    summary = SimpleRunOrchestrator(settings=fast_settings, working_dir=tmp_path).run(config)

    assert summary.success, summary.results
    for result in summary.results:
        assert (result.workdir / "hello.txt").is_file()
        assert (result.workdir / "bye.txt").is_file()
        assert "echo: touch:bye.txt say bye" in (result.workdir / "prompt_2.log").read_text(
            "utf-8",
        )
