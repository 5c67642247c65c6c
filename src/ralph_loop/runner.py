"""Iteration runner: drives the agent until the unit of work is done.

Per iteration:
1. dispatch the prompt through the executor, streaming output through a
   fresh StreamFormatter
2. persist state (status=running, iteration=i)
3. non-zero agent exit -> error
4. task file has no open tasks -> completed (then the queue may continue)
5. stuck marker in the assistant text -> stuck
6. otherwise continue (optionally running the on-iteration hook)
Running out of iterations -> max_iterations_reached.

run_loop() returns a LoopOutcome instead of exiting the process; the CLI maps
the outcome's exit_code to SystemExit.
"""

import signal
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

import click

from ralph_loop.config import ProjectConfig
from ralph_loop.constants import (
    COMPLETE_MARKER,
    EXIT_CANCELLED,
    EXIT_FAILURE,
    EXIT_OK,
    EXIT_STUCK,
    HOOK_ON_COMPLETE,
    HOOK_ON_ITERATION,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_ERROR,
    STATUS_MAX_ITERATIONS,
    STATUS_RUNNING,
    STATUS_STUCK,
    STUCK_MARKER,
)
from ralph_loop.debug import debug
from ralph_loop.executor import ExecuteOptions, ExecutionResult, Executor, ExecutorError
from ralph_loop.formatter import StreamFormatter
from ralph_loop.notify import notify
from ralph_loop.prompts import PromptError, get_feature_prompt, get_hook_prompt
from ralph_loop.repo import (
    acquire_run_lock,
    get_feature_dir,
    get_feature_tasks_path,
    get_incomplete_task_titles,
    is_complete,
    parse_task_file,
    pop_queue,
    read_state,
    release_run_lock,
    update_state,
)

RULE = "═" * 40


class RunCancelled(Exception):
    """Raised from the signal handler when the operator interrupts a run."""

    def __init__(self, signum: int):
        super().__init__(f"cancelled by signal {signum}")
        self.signum = signum


@dataclass
class LoopConfig:
    """Everything run_loop needs to drive one unit of work."""
    prompt: str
    tasks_file_path: str
    label: str
    feature_name: Optional[str] = None
    max_iterations: Optional[int] = None
    start_iteration: int = 0
    model: Optional[str] = None
    hooks: bool = False
    debug: bool = False
    project_config: ProjectConfig = field(default_factory=ProjectConfig)
    executor_factory: Optional[Callable[[], Executor]] = None

    def make_executor(self) -> Executor:
        if self.executor_factory is not None:
            return self.executor_factory()
        from ralph_loop.executors.local import LocalExecutor
        return LocalExecutor(project_config=self.project_config)


@dataclass
class LoopOutcome:
    """Terminal result of a loop."""
    status: str
    exit_code: int
    iteration: int
    label: str


# =============================================================================
# DISPATCH
# =============================================================================

def _dispatch(
    executor: Executor,
    prompt: str,
    model: Optional[str],
    trace_name: str,
    trace_metadata: dict,
) -> tuple:
    """
    Run one agent session, echoing formatted output as it streams.

    Returns:
        (ExecutionResult, StreamFormatter) - the formatter holds the
        accumulated assistant text for marker scanning.
    """
    from langsmith import traceable

    formatter = StreamFormatter()

    def on_stdout(chunk: str) -> None:
        output = formatter.parse(chunk).output
        if output:
            click.echo(output, nl=False)

    def on_stderr(chunk: str) -> None:
        click.echo(chunk, nl=False, err=True)

    @traceable(name=trace_name, run_type="chain", metadata=trace_metadata)
    def _traced_execute(prompt_input: str, model_name: Optional[str]) -> dict:
        result = executor.execute(prompt_input, on_stdout, on_stderr, ExecuteOptions(model=model_name))
        return {
            "exit_code": result.exit_code,
            "output": result.output,
            "assistant_text": formatter.get_assistant_text(),
        }

    traced = _traced_execute(prompt, model)

    remaining = formatter.flush()
    if remaining:
        click.echo(remaining, nl=False)

    return ExecutionResult(exit_code=traced["exit_code"], output=traced["output"]), formatter


def _run_hook(executor: Executor, hook: str, config: LoopConfig) -> Optional[int]:
    """Run a hook prompt if one exists. Returns the agent exit code, or None."""
    prompt = get_hook_prompt(hook, config.feature_name)
    if prompt is None:
        debug("hooks", f"No {hook} hook configured")
        return None

    model_key = "onIteration" if hook == HOOK_ON_ITERATION else "onComplete"
    model = config.project_config.model_for(model_key) or config.model

    click.echo(click.style(f"\n🪝 Running {hook} hook\n", fg="cyan"))
    result, _ = _dispatch(
        executor,
        prompt,
        model,
        trace_name=f"hook_{hook}",
        trace_metadata={"hook": hook, "label": config.label, "model": model},
    )
    if result.exit_code != 0:
        click.echo(f"⚠ {hook} hook exited with code {result.exit_code}", err=True)
    return result.exit_code


def _is_unit_complete(executor: Executor, config: LoopConfig, assistant_text: str) -> bool:
    """
    Decide whether the unit of work is finished.

    The task file (read through the executor, so sandboxes see their own
    copy) is authoritative. The COMPLETE marker only counts when the project
    opts in and the task file can't be read.
    """
    task_file = parse_task_file(executor.read_file(config.tasks_file_path))
    if task_file is not None:
        if is_complete(task_file):
            return True
        debug("runner", "Open tasks remain", {"open": get_incomplete_task_titles(task_file)})
        return False
    debug("runner", f"Task file unreadable: {config.tasks_file_path}")
    return config.project_config.promise_marker and COMPLETE_MARKER in assistant_text


# =============================================================================
# LOOP
# =============================================================================

def _install_signal_handlers() -> Optional[dict]:
    if threading.current_thread() is not threading.main_thread():
        return None

    fired = []

    def _on_signal(signum, frame):
        if fired:
            return
        fired.append(signum)
        raise RunCancelled(signum)

    return {sig: signal.signal(sig, _on_signal) for sig in (signal.SIGINT, signal.SIGTERM)}


def _restore_signal_handlers(previous: Optional[dict]) -> None:
    if previous is None:
        return
    for sig, handler in previous.items():
        signal.signal(sig, handler)


def run_loop(config: LoopConfig) -> LoopOutcome:
    """
    Run iterations for one unit of work until a terminal condition.

    Returns:
        LoopOutcome with status in {completed, error, stuck, cancelled,
        max_iterations_reached} and the process exit code for it.
    """
    label = config.label
    click.echo(f"🤖 Ralph {label} - Autonomous Loop\n")

    state = read_state()
    if state is None:
        click.echo("❌ No state found. Run 'ralph setup' first.", err=True)
        return LoopOutcome(status=STATUS_ERROR, exit_code=EXIT_FAILURE, iteration=0, label=label)

    max_iterations = config.max_iterations or state.max_iterations
    current = config.start_iteration

    if current > 0:
        click.echo(f"📍 Resuming from iteration {current}\n")
    click.echo(f"Tasks: {config.tasks_file_path}")
    click.echo(f"Max iterations: {max_iterations}")
    click.echo(f"Starting from: {current + 1}\n")
    click.echo("Press Ctrl+C to cancel\n")

    state = update_state(
        state,
        iteration=current,
        max_iterations=max_iterations,
        status=STATUS_RUNNING,
        feature=config.feature_name,
    )

    executor = config.make_executor()
    previous_handlers = _install_signal_handlers()
    try:
        executor.initialize()

        for i in range(current + 1, max_iterations + 1):
            click.echo(click.style(RULE, dim=True))
            click.echo(click.style(f"Iteration {i}", bold=True))
            click.echo(click.style(RULE, dim=True) + "\n")

            result, formatter = _dispatch(
                executor,
                config.prompt,
                config.model,
                trace_name=f"iteration_{i}",
                trace_metadata={
                    "label": label,
                    "feature": config.feature_name,
                    "iteration": i,
                    "model": config.model,
                },
            )
            assistant_text = formatter.get_assistant_text()
            state = update_state(state, iteration=i, status=STATUS_RUNNING)

            if result.exit_code != 0:
                click.echo(f"\n❌ Agent exited with code {result.exit_code}", err=True)
                state = update_state(state, status=STATUS_ERROR)
                notify("Ralph Error", f"Agent exited with code {result.exit_code} after {i} iterations", "high")
                return LoopOutcome(status=STATUS_ERROR, exit_code=result.exit_code, iteration=i, label=label)

            if _is_unit_complete(executor, config, assistant_text):
                click.echo(click.style("\n✅ All tasks complete!", fg="green"))
                state = update_state(state, status=STATUS_COMPLETED)
                notify("Ralph Complete", f"{label} complete after {i} iterations")
                if config.hooks:
                    _run_hook(executor, HOOK_ON_COMPLETE, config)
                return LoopOutcome(status=STATUS_COMPLETED, exit_code=EXIT_OK, iteration=i, label=label)

            if STUCK_MARKER in assistant_text:
                click.echo(click.style("\n🛑 Agent is stuck", fg="red"))
                state = update_state(state, status=STATUS_STUCK)
                notify("Ralph Stuck", f"Exhausted options after {i} iterations", "high")
                return LoopOutcome(status=STATUS_STUCK, exit_code=EXIT_STUCK, iteration=i, label=label)

            click.echo(click.style(f"\n✓ Iteration {i} complete\n", fg="green"))

            if config.hooks and i < max_iterations:
                _run_hook(executor, HOOK_ON_ITERATION, config)

        click.echo(f"\n⚠️  Max iterations ({max_iterations}) reached")
        state = update_state(state, status=STATUS_MAX_ITERATIONS)
        notify("Ralph Max Iterations", f"Reached {max_iterations} iterations")
        return LoopOutcome(
            status=STATUS_MAX_ITERATIONS,
            exit_code=EXIT_FAILURE,
            iteration=state.iteration,
            label=label,
        )

    except RunCancelled:
        click.echo("\n🛑 Cancelled", err=True)
        state = update_state(state, status=STATUS_CANCELLED)
        return LoopOutcome(status=STATUS_CANCELLED, exit_code=EXIT_CANCELLED, iteration=state.iteration, label=label)

    except ExecutorError as e:
        click.echo(f"\n❌ Executor error: {e}", err=True)
        state = update_state(state, status=STATUS_ERROR)
        notify("Ralph Error", f"Executor error: {e}", "high")
        return LoopOutcome(status=STATUS_ERROR, exit_code=EXIT_FAILURE, iteration=state.iteration, label=label)

    except Exception as e:
        # state must not stay "running" once the lock is released
        click.echo(f"\n❌ Unexpected error: {type(e).__name__}: {e}", err=True)
        debug("runner", "Unexpected error", {"type": type(e).__name__, "error": str(e)})
        state = update_state(state, status=STATUS_ERROR)
        notify("Ralph Error", f"Unexpected error: {type(e).__name__}: {e}", "high")
        return LoopOutcome(status=STATUS_ERROR, exit_code=EXIT_FAILURE, iteration=state.iteration, label=label)

    finally:
        _restore_signal_handlers(previous_handlers)
        executor.cleanup()


# =============================================================================
# QUEUE CONTINUATION
# =============================================================================

def next_queued_config(previous: LoopConfig) -> Optional[LoopConfig]:
    """
    Pop queue entries until one names an existing feature.

    Entries without a tasks.json are dropped with a warning. The returned
    config starts from iteration 0 and inherits model, hooks, debug, project
    config and executor factory from `previous`.
    """
    while True:
        name = pop_queue()
        if name is None:
            return None

        tasks_path = get_feature_tasks_path(name)
        if not tasks_path.exists():
            click.echo(click.style(f"Queued feature '{name}' not found, skipping", fg="yellow"), err=True)
            continue

        progress_path = get_feature_dir(name) / "progress.txt"
        if not progress_path.exists():
            progress_path.write_text("")

        try:
            prompt = get_feature_prompt(name)
        except PromptError as e:
            click.echo(f"❌ Cannot start queued feature '{name}': {e}", err=True)
            return None

        return LoopConfig(
            prompt=prompt,
            tasks_file_path=tasks_path.as_posix(),
            label=f"Feature: {name}",
            feature_name=name,
            start_iteration=0,
            model=previous.model,
            hooks=previous.hooks,
            debug=previous.debug,
            project_config=previous.project_config,
            executor_factory=previous.executor_factory,
        )


def run_with_queue(config: LoopConfig) -> LoopOutcome:
    """
    Run a unit of work, then keep draining the queue while units complete.

    Holds the run lock for the whole drive so at most one unit is in flight.
    """
    token = acquire_run_lock(config.feature_name)
    if token is None:
        click.echo("❌ Another ralph run currently owns execution.", err=True)
        return LoopOutcome(status=STATUS_ERROR, exit_code=EXIT_FAILURE, iteration=0, label=config.label)

    try:
        outcome = run_loop(config)
        while outcome.status == STATUS_COMPLETED:
            next_config = next_queued_config(config)
            if next_config is None:
                debug("queue", "Nothing queued")
                break
            click.echo(
                "\n" + click.style("Starting next queued feature:", fg="cyan") + f" {next_config.feature_name}\n"
            )
            config = next_config
            outcome = run_loop(config)
        return outcome
    finally:
        release_run_lock(token)


def run_single_iteration(config: LoopConfig) -> int:
    """Run the agent once, interactively, without state, queue or hooks."""
    from ralph_loop.executors.local import run_interactive

    click.echo(f"🔄 Ralph {config.label} (single iteration)\n")
    return run_interactive(config.prompt, cwd=Path.cwd())
