"""CLI entrypoint for the ralph runner."""

import os
import signal
import subprocess
from pathlib import Path
from typing import Optional

import click
from dotenv import load_dotenv

from ralph_loop.config import ConfigError, find_project_config_file, load_config, read_project_config, write_project_config
from ralph_loop.constants import (
    DEFAULT_MAX_ITERATIONS,
    EXIT_FAILURE,
    PROGRESS_FILE,
    RALPH_DIR,
    STATUS_CANCELLED,
    STATUS_RUNNING,
)
from ralph_loop.debug import debug, set_debug

# Load .env file on CLI startup
load_dotenv()


def check_repo_root() -> None:
    """Exit unless the current directory is a repository root."""
    if not Path(".git").exists():
        click.echo("❌ Error: Must run from repository root", err=True)
        raise SystemExit(EXIT_FAILURE)


def has_uncommitted_changes() -> bool:
    try:
        result = subprocess.run(
            ["git", "status", "--porcelain"],
            capture_output=True,
            text=True,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError) as e:
        debug("git", f"git status failed: {e}")
        return False
    return bool(result.stdout.strip())


def check_clean_working_tree() -> None:
    if has_uncommitted_changes():
        click.echo("❌ Error: You have uncommitted changes in your working directory.", err=True)
        click.echo("   Ralph modifies files and creates commits, which can conflict with your work.", err=True)
        click.echo("", err=True)
        click.echo("   Options:", err=True)
        click.echo("   1. Commit or stash your changes first", err=True)
        click.echo("   2. Use --force to run anyway (not recommended)", err=True)
        raise SystemExit(EXIT_FAILURE)


def _ensure_file(path: Path) -> None:
    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("")


def _executor_factory(sandbox: bool, repo_url: Optional[str], branch: Optional[str], project_config):
    """Validate backend options up front and return a factory for the runner."""
    if not sandbox:
        return None

    from ralph_loop.executor import create_executor

    try:
        load_config(require_sandbox=True)
    except ConfigError as e:
        click.echo(f"Configuration error:\n{e}", err=True)
        raise SystemExit(EXIT_FAILURE)
    if not repo_url or not branch:
        click.echo("❌ --sandbox requires --repo-url and --branch", err=True)
        raise SystemExit(EXIT_FAILURE)

    return lambda: create_executor(
        sandbox=True,
        repo_url=repo_url,
        branch=branch,
        project_config=project_config,
    )


def _run(loop_config, once: bool) -> None:
    """Hand a LoopConfig to the runner and exit with its outcome."""
    from ralph_loop.executor import ExecutorError
    from ralph_loop.runner import run_single_iteration, run_with_queue

    try:
        if once:
            raise SystemExit(run_single_iteration(loop_config))
        outcome = run_with_queue(loop_config)
    except ExecutorError as e:
        click.echo(f"❌ {e}", err=True)
        raise SystemExit(EXIT_FAILURE)
    raise SystemExit(outcome.exit_code)


def _pick_feature_name(name: Optional[str], first: bool, command: str) -> str:
    """Resolve NAME / --first, or exit with a usage message listing features."""
    from ralph_loop.repo import get_most_recent_feature, list_features, list_open_features

    if first:
        name = get_most_recent_feature()
        if name is None:
            click.echo("❌ No features found. Create one under .ralph/features/<name>/", err=True)
            raise SystemExit(EXIT_FAILURE)
        click.echo(click.style("Using most recent feature:", fg="cyan") + f" {name}")

    if not name:
        click.echo(f"Usage: ralph {command} <name>", err=True)
        features = list_features()
        if features:
            click.echo(f"\nAvailable features: {', '.join(features)}", err=True)
            open_features = list_open_features()
            if open_features:
                click.echo(f"With open tasks: {', '.join(open_features)}", err=True)
        else:
            click.echo("\nNo features found. Create one under .ralph/features/<name>/", err=True)
        raise SystemExit(EXIT_FAILURE)
    return name


def _require_feature(name: str) -> None:
    from ralph_loop.repo import get_feature_tasks_path, list_features

    if not get_feature_tasks_path(name).exists():
        click.echo(f"❌ Feature '{name}' not found.", err=True)
        features = list_features()
        if features:
            click.echo(f"\nAvailable features: {', '.join(features)}", err=True)
        raise SystemExit(EXIT_FAILURE)


def sandbox_options(f):
    f = click.option("--branch", default=None, help="Branch to clone in sandbox mode.")(f)
    f = click.option("--repo-url", default=None, help="Repository URL to clone in sandbox mode.")(f)
    f = click.option("--sandbox", is_flag=True, help="Run the agent in a remote sandbox.")(f)
    return f


@click.group()
@click.version_option(package_name="ralph-loop")
def cli():
    """Ralph - run a coding agent in a loop until the work is done."""
    config = load_config()
    set_debug(config.debug)


@cli.command()
@click.option(
    "--max-iterations",
    default=DEFAULT_MAX_ITERATIONS,
    show_default=True,
    type=click.IntRange(min=1),
    help="Iteration cap stored in the run state.",
)
def setup(max_iterations: int):
    """Scaffold .ralph/ in the current repository."""
    from ralph_loop.prompts import write_default_prompts
    from ralph_loop.repo import Task, TaskFile, backlog_path, init_state, write_json

    check_repo_root()
    click.echo("🔧 Ralph Setup\n")

    Path(RALPH_DIR).mkdir(exist_ok=True)
    init_state(max_iterations)
    click.echo(f"✓ Initialized state (max iterations: {max_iterations})")

    if not backlog_path().exists():
        example = TaskFile(
            tasks=[
                Task(
                    title="Example task",
                    description="Replace this with a real task",
                    acceptance=["Describe how to verify the task"],
                    branch="feat/example",
                    passes=False,
                )
            ]
        )
        write_json(backlog_path(), example.to_dict())
        click.echo(f"✓ Created {backlog_path().as_posix()}")

    progress = Path(PROGRESS_FILE)
    if not progress.exists():
        _ensure_file(progress)
        click.echo(f"✓ Created {PROGRESS_FILE}")

    for path in write_default_prompts():
        click.echo(f"✓ Created {path.as_posix()}")

    if find_project_config_file() is None:
        path = write_project_config({"models": {}, "completion": {"promiseMarker": False}})
        click.echo(f"✓ Created {path.relative_to(Path.cwd()).as_posix()}")

    click.echo("\nNext steps:")
    click.echo("  1. Add tasks to .ralph/backlog.json")
    click.echo("  2. Run 'ralph backlog'")


@cli.command()
@click.option("--once", is_flag=True, help="Run a single interactive iteration.")
@click.option("--resume", is_flag=True, help="Continue from the persisted iteration.")
@click.option("--max-iterations", default=None, type=click.IntRange(min=1), help="Override the stored iteration cap.")
@click.option("--force", is_flag=True, help="Skip the clean working tree check.")
@click.option("--hooks", is_flag=True, help="Run on-iteration/on-complete hook prompts.")
@click.option("--debug", "debug_mode", is_flag=True, help="Print debug traces.")
@sandbox_options
def backlog(
    once: bool,
    resume: bool,
    max_iterations: Optional[int],
    force: bool,
    hooks: bool,
    debug_mode: bool,
    sandbox: bool,
    repo_url: Optional[str],
    branch: Optional[str],
):
    """Work through .ralph/backlog.json."""
    from ralph_loop.prompts import PromptError, get_backlog_prompt
    from ralph_loop.repo import backlog_path, read_state, read_tasks_file
    from ralph_loop.runner import LoopConfig

    if debug_mode:
        set_debug(True)

    check_repo_root()
    if not force:
        check_clean_working_tree()

    try:
        prompt = get_backlog_prompt()
    except PromptError as e:
        click.echo(f"❌ {e}", err=True)
        raise SystemExit(EXIT_FAILURE)

    if read_tasks_file(backlog_path()) is None:
        click.echo("❌ No backlog found. Run 'ralph setup' first.", err=True)
        raise SystemExit(EXIT_FAILURE)

    _ensure_file(Path(PROGRESS_FILE))

    project_config = read_project_config()
    state = read_state()
    loop_config = LoopConfig(
        prompt=prompt,
        tasks_file_path=backlog_path().as_posix(),
        label="Backlog",
        max_iterations=max_iterations,
        start_iteration=state.iteration if resume and state else 0,
        model=project_config.model_for("backlog"),
        hooks=hooks,
        debug=debug_mode,
        project_config=project_config,
        executor_factory=_executor_factory(sandbox, repo_url, branch, project_config),
    )
    _run(loop_config, once)


@cli.command()
@click.argument("name", required=False)
@click.option("--first", is_flag=True, help="Use the most recently modified feature.")
@click.option("--once", is_flag=True, help="Run a single interactive iteration.")
@click.option("--force", is_flag=True, help="Skip the clean working tree check.")
@click.option("--hooks", is_flag=True, help="Run on-iteration/on-complete hook prompts.")
@click.option("--debug", "debug_mode", is_flag=True, help="Print debug traces.")
@sandbox_options
def feature(
    name: Optional[str],
    first: bool,
    once: bool,
    force: bool,
    hooks: bool,
    debug_mode: bool,
    sandbox: bool,
    repo_url: Optional[str],
    branch: Optional[str],
):
    """Work through a feature's tasks.json, or queue it if a run is active."""
    from ralph_loop.prompts import PromptError, get_feature_prompt
    from ralph_loop.repo import add_to_queue, get_feature_dir, get_feature_tasks_path, is_running
    from ralph_loop.runner import LoopConfig

    if debug_mode:
        set_debug(True)

    name = _pick_feature_name(name, first, "feature")

    check_repo_root()
    if not force:
        check_clean_working_tree()
    _require_feature(name)

    if is_running():
        add_to_queue(name)
        click.echo(click.style("Queued feature:", fg="cyan") + f" {name}")
        click.echo(click.style("Will run automatically when current feature completes", dim=True))
        raise SystemExit(0)

    _ensure_file(get_feature_dir(name) / "progress.txt")

    try:
        prompt = get_feature_prompt(name)
    except PromptError as e:
        click.echo(f"❌ {e}", err=True)
        raise SystemExit(EXIT_FAILURE)

    project_config = read_project_config()
    loop_config = LoopConfig(
        prompt=prompt,
        tasks_file_path=get_feature_tasks_path(name).as_posix(),
        label=f"Feature: {name}",
        feature_name=name,
        model=project_config.model_for("feature"),
        hooks=hooks,
        debug=debug_mode,
        project_config=project_config,
        executor_factory=_executor_factory(sandbox, repo_url, branch, project_config),
    )
    _run(loop_config, once)


@cli.command()
@click.argument("name", required=False)
@click.option("--first", is_flag=True, help="Use the most recently modified feature.")
@click.option("--debug", "debug_mode", is_flag=True, help="Print debug traces.")
def oneshot(name: Optional[str], first: bool, debug_mode: bool):
    """Finish a whole feature in one interactive session."""
    from ralph_loop.prompts import PromptError, get_oneshot_prompt
    from ralph_loop.repo import get_feature_dir, get_feature_tasks_path
    from ralph_loop.runner import LoopConfig

    if debug_mode:
        set_debug(True)

    name = _pick_feature_name(name, first, "oneshot")
    check_repo_root()
    _require_feature(name)
    _ensure_file(get_feature_dir(name) / "progress.txt")

    try:
        prompt = get_oneshot_prompt(name)
    except PromptError as e:
        click.echo(f"❌ {e}", err=True)
        raise SystemExit(EXIT_FAILURE)

    loop_config = LoopConfig(
        prompt=prompt,
        tasks_file_path=get_feature_tasks_path(name).as_posix(),
        label=f"Oneshot: {name}",
        feature_name=name,
        debug=debug_mode,
    )
    _run(loop_config, once=True)


@cli.command()
@click.argument("name", required=False)
@click.option("--force", "-f", is_flag=True, help="Delete without asking.")
def delete(name: Optional[str], force: bool):
    """Delete a feature directory and drop it from the queue."""
    from ralph_loop.repo import delete_feature, read_live_lock, remove_from_queue

    name = _pick_feature_name(name, False, "delete")
    check_repo_root()
    _require_feature(name)

    lock = read_live_lock()
    if lock is not None and lock.feature == name:
        click.echo(f"❌ Feature '{name}' is being worked on by the active run. Cancel it first.", err=True)
        raise SystemExit(EXIT_FAILURE)

    if not force and not click.confirm(f"Delete feature '{name}'?", default=False):
        click.echo("Cancelled.")
        return

    delete_feature(name)
    if remove_from_queue(name):
        debug("delete", f"Dropped '{name}' from the queue")
    click.echo(click.style("Deleted feature:", fg="green") + f" {name}")


@cli.command()
def queue():
    """Show queued features."""
    from ralph_loop.observe import print_queue

    check_repo_root()
    print_queue()


@cli.command()
def cancel():
    """Mark the active run cancelled and interrupt its process."""
    from ralph_loop.repo import read_live_lock, read_lock, read_state, update_state

    check_repo_root()
    click.echo("🛑 Ralph Cancel\n")

    state = read_state()
    if state is None:
        click.echo("⚠️  No Ralph state found")
        return

    click.echo(f"Current: {state.status}, iteration {state.iteration}/{state.max_iterations}\n")
    if state.status != STATUS_RUNNING:
        click.echo("⚠️  Ralph is not running")
        return

    update_state(state, status=STATUS_CANCELLED)

    lock = read_live_lock()
    if lock is None:
        stale = read_lock()
        if stale is not None:
            debug("cancel", f"Lock pid {stale.pid} is not alive, not signalling")
    elif lock.pid != os.getpid():
        try:
            os.kill(lock.pid, signal.SIGTERM)
            debug("cancel", f"Sent SIGTERM to {lock.pid}")
        except OSError as e:
            debug("cancel", f"Could not signal {lock.pid}: {e}")

    click.echo("✓ Ralph cancelled")
    click.echo("\nTo resume: ralph backlog --resume")


@cli.command()
def status():
    """Show run status."""
    from ralph_loop.observe import print_status

    check_repo_root()
    print_status()


@cli.command("list")
def list_cmd():
    """List backlog tasks and features."""
    from ralph_loop.observe import print_list

    check_repo_root()
    print_list()


if __name__ == "__main__":
    cli()
