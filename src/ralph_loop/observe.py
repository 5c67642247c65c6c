"""Read-only status output: run state, backlog and feature progress, queue."""

from typing import List, Optional

import click

from ralph_loop.constants import STATUS_COMPLETED, STATUS_ERROR, STATUS_RUNNING, STATUS_STUCK
from ralph_loop.repo import (
    RunState,
    TaskFile,
    backlog_path,
    get_feature_tasks_path,
    list_features,
    read_queue,
    read_state,
    read_tasks_file,
)

BOX_WIDTH = 45


def _dim(text: str) -> str:
    return click.style(text, dim=True)


def _header(title: str) -> None:
    padding = max(0, BOX_WIDTH - 2 - len(title))
    left = padding // 2
    right = padding - left
    click.echo(_dim("┌" + "─" * BOX_WIDTH + "┐"))
    click.echo(_dim("│") + " " * left + click.style(title, fg="cyan", bold=True) + " " * right + _dim("│"))
    click.echo(_dim("└" + "─" * BOX_WIDTH + "┘"))


def status_icon(status: str) -> str:
    if status == STATUS_RUNNING:
        return "🟢"
    if status == STATUS_COMPLETED:
        return "✅"
    if status in (STATUS_ERROR, STATUS_STUCK):
        return "🔴"
    return "⚪"


def task_progress(task_file: Optional[TaskFile]) -> tuple:
    """(done, total) for a task file; (0, 0) when unreadable."""
    if task_file is None:
        return 0, 0
    done = sum(1 for task in task_file.tasks if task.passes)
    return done, len(task_file.tasks)


def print_status() -> None:
    """Print the persisted run state plus backlog and feature counts."""
    state = read_state()
    if state is None:
        click.echo("No Ralph state found. Run 'ralph setup' first.")
        return

    click.echo("📊 Ralph Status\n")
    click.echo(f"Status: {state.status}")
    click.echo(f"Iteration: {state.iteration} / {state.max_iterations}")
    if state.feature:
        click.echo(f"Feature: {state.feature}")
    click.echo(f"Started: {state.started_at}")

    backlog = read_tasks_file(backlog_path())
    if backlog is not None:
        done, total = task_progress(backlog)
        click.echo(f"\nBacklog: {done}/{total} tasks complete")

    features = list_features()
    if features:
        click.echo(f"\nFeatures: {', '.join(features)}")

    queued = read_queue()
    if queued:
        click.echo(f"Queued: {', '.join(queued)}")


def _print_state_section(state: Optional[RunState]) -> None:
    _header("Ralph Status")
    if state is None:
        click.echo("  ⚪ " + _dim("Not initialized (run 'ralph setup')"))
        return
    click.echo(f"  {status_icon(state.status)} {state.status}")
    if state.status == STATUS_RUNNING and state.feature:
        click.echo("     " + _dim("Working on:") + " " + click.style(state.feature, fg="cyan"))
    click.echo("     " + _dim("Iteration:") + f" {state.iteration}/{state.max_iterations}")


def _print_backlog_section() -> None:
    _header("Backlog Tasks")
    backlog = read_tasks_file(backlog_path())
    if backlog is None:
        click.echo("  " + _dim("No backlog found"))
        return

    open_tasks = [task for task in backlog.tasks if not task.passes]
    if not open_tasks:
        click.echo("  " + click.style("✅ All tasks complete!", fg="green"))
    for task in open_tasks:
        click.echo(f"  ○ {task.title}")
        if task.branch:
            click.echo("    " + _dim(f"└─ branch: {task.branch}"))

    done, total = task_progress(backlog)
    click.echo()
    click.echo("  " + _dim(f"{done}/{total} tasks completed"))


def _feature_mtime(name: str) -> float:
    try:
        return get_feature_tasks_path(name).stat().st_mtime
    except OSError:
        return 0.0


def print_list() -> None:
    """Print run state, open backlog tasks, and active and finished features."""
    state = read_state()
    _print_state_section(state)

    click.echo()
    _print_backlog_section()

    active: List[tuple] = []
    done_names: List[str] = []
    # most recently touched first
    for name in sorted(list_features(), key=_feature_mtime, reverse=True):
        task_file = read_tasks_file(get_feature_tasks_path(name))
        if task_file is None:
            continue
        done, total = task_progress(task_file)
        if done == total:
            done_names.append(name)
        else:
            active.append((name, task_file))

    click.echo()
    _header("Features (Active)")
    if not active:
        click.echo("  " + _dim("No active features"))
    for name, task_file in active:
        in_flight = state is not None and state.status == STATUS_RUNNING and state.feature == name
        icon = "🔄" if in_flight else "📋"
        done, total = task_progress(task_file)
        click.echo(f"  {icon} " + click.style(name, bold=True) + "  " + _dim(f"{done}/{total} done"))
        for task in task_file.tasks:
            if task.passes:
                click.echo("     " + click.style("✓", fg="green") + " " + _dim(task.title))
            else:
                click.echo(f"     ○ {task.title}")

    click.echo()
    _header("Features (Done)")
    if not done_names:
        click.echo("  " + _dim("No completed features"))
    for name in done_names:
        click.echo("  " + click.style(f"✅ {name}", fg="green"))


def print_queue() -> None:
    items = read_queue()
    if not items:
        click.echo(_dim("Queue is empty"))
        return
    click.echo(click.style("Queued features:", fg="cyan"))
    for i, name in enumerate(items, 1):
        click.echo(f"  {i}. {name}")
