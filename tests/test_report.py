from __future__ import annotations

from datetime import datetime
from pathlib import Path

import allure

from multi_runner.models import RunnerResult, RunnerStatus, TaskSummary
from multi_runner.report import (
    INDEX_HEADER,
    README_TABLE_HEADER,
    append_run_index,
    render_summary_lines,
    status_cell,
    write_run_readme,
)

pytestmark = [
    allure.epic("Directory Runs"),
    allure.feature("Run Reports"),
]


def _summary(*statuses: RunnerStatus, run_dir: Path | None = None) -> TaskSummary:
    return TaskSummary(
        task_name="calc",
        execution_mode="parallel",
        run_dir=run_dir,
        results=[
            RunnerResult(
                name=f"r{index}",
                workdir=Path(f"r{index}"),
                status=status,
                started_at=datetime(2025, 1, 2, 3, 4, 5),
                finished_at=datetime(2025, 1, 2, 3, 5, 0),
            )
            for index, status in enumerate(statuses, start=1)
        ],
    )


def test_status_cell_counts_every_incomplete_runner() -> None:
    assert status_cell(_summary(RunnerStatus.COMPLETED, RunnerStatus.COMPLETED)) == "2✓"
    assert (
        status_cell(_summary(RunnerStatus.COMPLETED, RunnerStatus.TIMEOUT, RunnerStatus.PENDING))
        == "1✓ 2✗"
    )


def test_render_summary_lines() -> None:
    summary = _summary(RunnerStatus.COMPLETED, RunnerStatus.FAILED)
    summary.results[0].exit_condition = "done"
    summary.results[0].branch = "calc/r1"
    summary.results[1].error = "boom"

    lines = render_summary_lines(summary)

    assert lines == [
        "Task: calc",
        "Execution mode: parallel",
        "Runner status:",
        "  r1: completed, branch=calc/r1, exit condition: done, 55s",
        "  r2: failed, 55s, error: boom",
        "Completed: 1/2, not completed: 1",
    ]


def test_render_summary_lines_for_interrupted_run(tmp_path: Path) -> None:
    summary = _summary(RunnerStatus.PENDING, run_dir=tmp_path)
    summary.interrupted = True

    lines = render_summary_lines(summary)

    assert lines[2] == f"Run directory: {tmp_path}"
    assert lines[-1] == "Run was interrupted."


def test_write_run_readme_appends_table(tmp_path: Path) -> None:
    (tmp_path / "README.md").write_text("# calc\n", "utf-8")

    write_run_readme(tmp_path, _summary(RunnerStatus.COMPLETED, RunnerStatus.PENDING))

    assert (tmp_path / "README.md").read_text("utf-8") == (
        "# calc\n\n"
        + README_TABLE_HEADER
        + "| r1 | completed | 2025-01-02 03:04:05 | 2025-01-02 03:05:00 |\n"
        + "| r2 | not started | - | - |\n"
    )


def test_append_run_index_creates_header_once(tmp_path: Path) -> None:
    base = tmp_path / "results"
    run_dir = base / "calc_20250102_030405"

    append_run_index(base, _summary(RunnerStatus.COMPLETED, run_dir=run_dir), timestamp="t1")
    append_run_index(
        base,
        _summary(RunnerStatus.FAILED, run_dir=run_dir),
        timestamp="t2",
        runners=4,
    )

    assert (base / "index.md").read_text("utf-8") == (
        INDEX_HEADER
        + f"| t1 | calc | 1 | 1✓ | {run_dir} |\n"
        + f"| t2 | calc | 4 | 0✓ 1✗ | {run_dir} |\n"
    )
