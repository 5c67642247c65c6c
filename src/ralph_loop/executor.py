"""Execution backend interface and factory."""

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, List, Optional

from ralph_loop.config import ProjectConfig
from ralph_loop.constants import DEFAULT_AGENT_BIN


OutputCallback = Callable[[str], None]


@dataclass
class ExecuteOptions:
    """Per-call options for Executor.execute."""
    model: Optional[str] = None


@dataclass
class ExecutionResult:
    """Outcome of one agent session."""
    exit_code: int
    output: str


class ExecutorError(Exception):
    """Backend could not be set up or used."""
    pass


class Executor(ABC):
    """
    Where the agent runs.

    The runner owns exactly one Executor for the lifetime of a loop. It calls
    initialize() once, execute() once per iteration, read_file() to inspect
    the task file, and cleanup() on every exit path.
    """

    @abstractmethod
    def initialize(self) -> None:
        """Prepare the backend (start services, provision a sandbox...)."""
        pass

    @abstractmethod
    def execute(
        self,
        prompt: str,
        on_stdout: OutputCallback,
        on_stderr: OutputCallback,
        options: Optional[ExecuteOptions] = None,
    ) -> ExecutionResult:
        """
        Run the agent once with `prompt`.

        Output chunks are delivered to the callbacks as they arrive. Safe to
        call once per iteration on the same instance.
        """
        pass

    @abstractmethod
    def read_file(self, path: str) -> Optional[str]:
        """Contents of `path` as the agent sees it, or None."""
        pass

    @abstractmethod
    def cleanup(self) -> None:
        """Release resources. Idempotent."""
        pass


def agent_bin() -> str:
    return os.environ.get("RALPH_AGENT_BIN") or DEFAULT_AGENT_BIN


def build_agent_command(
    prompt: str,
    model: Optional[str] = None,
    mcp_config_path: Optional[str] = None,
    binary: Optional[str] = None,
) -> List[str]:
    """Argv for a headless, stream-json agent session."""
    args = [
        binary or agent_bin(),
        "--dangerously-skip-permissions",
        "-p",
        "--output-format",
        "stream-json",
        "--verbose",
    ]
    if model:
        args += ["--model", model]
    if mcp_config_path:
        args += ["--mcp-config", mcp_config_path]
    args.append(prompt)
    return args


def create_executor(
    sandbox: bool = False,
    repo_url: Optional[str] = None,
    branch: Optional[str] = None,
    project_config: Optional[ProjectConfig] = None,
) -> Executor:
    """
    Build the backend requested on the command line.

    Raises:
        ExecutorError: If sandbox mode is missing repo_url or branch.
    """
    project_config = project_config or ProjectConfig()

    if not sandbox:
        from ralph_loop.executors.local import LocalExecutor
        return LocalExecutor(project_config=project_config)

    if not repo_url:
        raise ExecutorError("repo_url is required for sandbox mode")
    if not branch:
        raise ExecutorError("branch is required for sandbox mode")

    from ralph_loop.executors.sandbox import SandboxExecutor
    return SandboxExecutor(
        repo_url=repo_url,
        branch=branch,
        setup_commands=project_config.sandbox_setup_commands,
    )
