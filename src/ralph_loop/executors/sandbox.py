"""Remote sandbox backend (Daytona).

The agent runs inside a freshly provisioned sandbox: the repository is cloned
into /workspace, the agent CLI is installed, and every iteration runs as a
session command whose logs are streamed back while it runs.

The Daytona SDK is only imported when a sandbox is actually provisioned.
"""

import asyncio
import os
import shlex
from typing import Any, Callable, List, Optional

from ralph_loop.constants import DEFAULT_SANDBOX_SETUP_COMMANDS, SANDBOX_SESSION_ID, SANDBOX_WORKDIR
from ralph_loop.debug import debug
from ralph_loop.executor import (
    ExecuteOptions,
    ExecutionResult,
    Executor,
    ExecutorError,
    OutputCallback,
    build_agent_command,
)


class DaytonaProvider:
    """Thin wrapper over the Daytona SDK calls the executor needs."""

    def __init__(self, client: Any = None):
        try:
            import daytona
        except ImportError as e:
            raise ExecutorError(
                "Sandbox mode requires the daytona package. "
                "Install it with: pip install 'ralph-loop[sandbox]'"
            ) from e
        self._sdk = daytona
        self._client = client or daytona.Daytona()

    def create_sandbox(self, env_vars: dict) -> Any:
        params = self._sdk.CreateSandboxFromSnapshotParams(language="typescript", env_vars=env_vars)
        return self._client.create(params)

    def clone(self, sandbox: Any, url: str, path: str, branch: str, token: str) -> None:
        sandbox.git.clone(url=url, path=path, branch=branch, username="x-access-token", password=token)

    def create_session(self, sandbox: Any, session_id: str) -> None:
        sandbox.process.create_session(session_id)

    def run(self, sandbox: Any, session_id: str, command: str) -> int:
        request = self._sdk.SessionExecuteRequest(command=command)
        response = sandbox.process.execute_session_command(session_id, request)
        return response.exit_code if response.exit_code is not None else 1

    def run_streaming(
        self,
        sandbox: Any,
        session_id: str,
        command: str,
        on_stdout: Callable[[str], None],
        on_stderr: Callable[[str], None],
    ) -> int:
        request = self._sdk.SessionExecuteRequest(command=command, run_async=True)
        response = sandbox.process.execute_session_command(session_id, request)
        cmd_id = response.cmd_id
        if not cmd_id:
            raise ExecutorError("No command ID returned from session command")

        asyncio.run(
            sandbox.process.get_session_command_logs_async(session_id, cmd_id, on_stdout, on_stderr)
        )
        command_info = sandbox.process.get_session_command(session_id, cmd_id)
        return command_info.exit_code if command_info.exit_code is not None else 1

    def download(self, sandbox: Any, path: str) -> bytes:
        return sandbox.fs.download_file(path)

    def delete(self, sandbox: Any) -> None:
        self._client.delete(sandbox)


class SandboxExecutor(Executor):
    """Runs the agent in an isolated remote sandbox."""

    def __init__(
        self,
        repo_url: str,
        branch: str,
        setup_commands: Optional[List[str]] = None,
        provider: Any = None,
    ):
        self.repo_url = repo_url
        self.branch = branch
        self.setup_commands = (
            list(setup_commands) if setup_commands is not None else list(DEFAULT_SANDBOX_SETUP_COMMANDS)
        )
        self._provider = provider
        self._sandbox: Any = None

    @property
    def provider(self) -> Any:
        if self._provider is None:
            self._provider = DaytonaProvider()
        return self._provider

    def _require_sandbox(self) -> Any:
        if self._sandbox is None:
            raise ExecutorError("Executor not initialized. Call initialize() first.")
        return self._sandbox

    def initialize(self) -> None:
        """
        Provision the sandbox.

        Raises:
            ExecutorError: If credentials are missing or setup fails.
        """
        if self._sandbox is not None:
            return

        anthropic_key = os.environ.get("ANTHROPIC_API_KEY")
        gh_token = os.environ.get("GH_TOKEN")
        if not anthropic_key:
            raise ExecutorError("ANTHROPIC_API_KEY environment variable is required for sandbox mode")
        if not gh_token:
            raise ExecutorError("GH_TOKEN environment variable is required for sandbox mode")

        debug("sandbox", "Creating sandbox", {"repo": self.repo_url, "branch": self.branch})
        self._sandbox = self.provider.create_sandbox(
            {"ANTHROPIC_API_KEY": anthropic_key, "GH_TOKEN": gh_token}
        )

        self.provider.clone(self._sandbox, self.repo_url, SANDBOX_WORKDIR, self.branch, gh_token)
        self.provider.create_session(self._sandbox, SANDBOX_SESSION_ID)

        for command in self.setup_commands:
            debug("sandbox", f"Setup: {command}")
            exit_code = self.provider.run(
                self._sandbox,
                SANDBOX_SESSION_ID,
                f"cd {SANDBOX_WORKDIR} && {command}",
            )
            if exit_code != 0:
                raise ExecutorError(f"Sandbox setup command failed ({exit_code}): {command}")

    def execute(
        self,
        prompt: str,
        on_stdout: OutputCallback,
        on_stderr: OutputCallback,
        options: Optional[ExecuteOptions] = None,
    ) -> ExecutionResult:
        sandbox = self._require_sandbox()
        options = options or ExecuteOptions()
        command = f"cd {SANDBOX_WORKDIR} && " + shlex.join(
            build_agent_command(prompt, model=options.model, binary="claude")
        )

        output: List[str] = []

        def _stdout(chunk: str) -> None:
            output.append(chunk)
            on_stdout(chunk)

        def _stderr(chunk: str) -> None:
            output.append(chunk)
            on_stderr(chunk)

        exit_code = self.provider.run_streaming(sandbox, SANDBOX_SESSION_ID, command, _stdout, _stderr)
        return ExecutionResult(exit_code=exit_code, output="".join(output))

    def read_file(self, path: str) -> Optional[str]:
        sandbox = self._require_sandbox()
        remote_path = path if path.startswith("/") else f"{SANDBOX_WORKDIR}/{path}"
        try:
            content = self.provider.download(sandbox, remote_path)
        except Exception as e:
            debug("sandbox", f"download failed for {remote_path}: {e}")
            return None
        if isinstance(content, bytes):
            return content.decode("utf-8", errors="replace")
        return content

    def cleanup(self) -> None:
        sandbox, self._sandbox = self._sandbox, None
        if sandbox is None:
            return
        try:
            self.provider.delete(sandbox)
        except Exception as e:
            debug("sandbox", f"Ignoring teardown error: {e}")
