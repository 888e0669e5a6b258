"""Run summaries: console lines, per-run README table and the run index."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

from multi_runner.models import RunnerResult, RunnerStatus, TaskSummary

INDEX_HEADER = (
    "# Run Index\n"
    "\n"
    "| Timestamp | Name | Runners | Status | Directory |\n"
    "|-----------|------|---------|--------|-----------|\n"
)
README_TABLE_HEADER = (
    "| Runner | Status | Start Time | End Time |\n"
    "|--------|--------|------------|----------|\n"
)
_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def status_cell(summary: TaskSummary) -> str:
    """``<completed>✓`` plus `` <failed>✗`` when any runner did not complete."""

    cell = f"{summary.completed}✓"
    if summary.failed:
        cell += f" {summary.failed}✗"
    return cell


def render_summary_lines(summary: TaskSummary) -> list[str]:
    lines = [
        f"Task: {summary.task_name}",
        f"Execution mode: {summary.execution_mode}",
    ]
    if summary.run_dir is not None:
        lines.append(f"Run directory: {summary.run_dir}")
    lines.append("Runner status:")
    for result in summary.results:
        lines.append(f"  {result.name}: {_describe(result)}")
    lines.append(
        f"Completed: {summary.completed}/{len(summary.results)}"
        + (f", not completed: {summary.failed}" if summary.failed else ""),
    )
    if summary.interrupted:
        lines.append("Run was interrupted.")
    return lines


def write_run_readme(run_dir: Path, summary: TaskSummary) -> Path:
    """Append the runner status table to ``<run_dir>/README.md``."""

    path = run_dir / "README.md"
    rows = [README_TABLE_HEADER]
    for result in summary.results:
        if result.status == RunnerStatus.PENDING:
            rows.append(f"| {result.name} | {RunnerStatus.PENDING.value} | - | - |\n")
            continue
        rows.append(
            f"| {result.name} | {result.status.value} | "
            f"{_format_time(result.started_at)} | {_format_time(result.finished_at)} |\n",
        )
    with path.open("a", encoding="utf-8") as handle:
        handle.write("\n")
        handle.writelines(rows)
    return path


def append_run_index(
    base_dir: Path,
    summary: TaskSummary,
    *,
    timestamp: str,
    runners: int | None = None,
) -> Path:
    """Append one row for this run to ``<base_dir>/index.md``, creating it if needed."""

    base_dir.mkdir(parents=True, exist_ok=True)
    path = base_dir / "index.md"
    if not path.exists():
        path.write_text(INDEX_HEADER, "utf-8")
    count = runners if runners is not None else len(summary.results)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(
            f"| {timestamp} | {summary.task_name} | {count} | {status_cell(summary)} "
            f"| {summary.run_dir or ''} |\n",
        )
    return path


def _describe(result: RunnerResult) -> str:
    parts = [result.status.value]
    if result.context_name:
        parts.append(f"context={result.context_name}")
    if result.branch:
        parts.append(f"branch={result.branch}")
    if result.exit_condition:
        parts.append(f"exit condition: {result.exit_condition}")
    elapsed = result.elapsed_seconds
    if elapsed is not None:
        parts.append(f"{elapsed:.0f}s")
    if result.error:
        parts.append(f"error: {result.error}")
    return ", ".join(parts)


def _format_time(value: datetime | None) -> str:
    return value.strftime(_TIME_FORMAT) if value is not None else "-"
