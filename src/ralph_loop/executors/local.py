"""Local subprocess backend."""

import codecs
import subprocess
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import List, Optional

from ralph_loop.config import ProjectConfig
from ralph_loop.debug import debug
from ralph_loop.executor import (
    ExecuteOptions,
    ExecutionResult,
    Executor,
    ExecutorError,
    OutputCallback,
    agent_bin,
    build_agent_command,
)
from ralph_loop.services import ServiceManager

READ_CHUNK_BYTES = 65536


def exit_status(returncode: int) -> int:
    """Map Popen's negative "killed by signal N" code to the shell's 128+N."""
    return 128 - returncode if returncode < 0 else returncode


class LocalExecutor(Executor):
    """Runs the agent binary on this machine, in the current repository."""

    def __init__(
        self,
        project_config: Optional[ProjectConfig] = None,
        cwd: Optional[Path] = None,
        service_manager: Optional[ServiceManager] = None,
    ):
        self.project_config = project_config or ProjectConfig()
        self.cwd = Path(cwd) if cwd else Path.cwd()
        self.services = service_manager or ServiceManager(
            self.project_config.services,
            self.project_config.mcp,
            root=self.cwd,
        )
        self._initialized = False
        self._proc: Optional[subprocess.Popen] = None

    def initialize(self) -> None:
        if self._initialized:
            return
        self.services.start_all()
        self._initialized = True

    def _drain(
        self,
        stream,
        handler: OutputCallback,
        chunks: List[str],
        chunks_lock: threading.Lock,
    ) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                data = stream.read1(READ_CHUNK_BYTES)
                text = decoder.decode(data, final=not data)
                if text:
                    with chunks_lock:
                        chunks.append(text)
                    handler(text)
                if not data:
                    break
        finally:
            stream.close()

    def execute(
        self,
        prompt: str,
        on_stdout: OutputCallback,
        on_stderr: OutputCallback,
        options: Optional[ExecuteOptions] = None,
    ) -> ExecutionResult:
        """
        Spawn the agent and stream both pipes until it exits.

        stdout and stderr are drained on two worker threads so a chatty
        stderr can never block stdout (or the reverse).
        """
        options = options or ExecuteOptions()
        args = build_agent_command(
            prompt,
            model=options.model,
            mcp_config_path=self.services.get_mcp_config_path(),
        )
        debug("local", "Spawning agent", {"argv": args[:-1], "model": options.model})

        try:
            proc = subprocess.Popen(
                args,
                cwd=self.cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            raise ExecutorError(f"Could not start agent '{agent_bin()}': {e}") from e
        self._proc = proc

        chunks: List[str] = []
        chunks_lock = threading.Lock()
        pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="agent-io")
        try:
            futures = [
                pool.submit(self._drain, proc.stdout, on_stdout, chunks, chunks_lock),
                pool.submit(self._drain, proc.stderr, on_stderr, chunks, chunks_lock),
            ]
            for future in futures:
                future.result()
            exit_code = exit_status(proc.wait())
        finally:
            # on interrupt, don't wait for the readers; cleanup() kills the process
            pool.shutdown(wait=False)

        self._proc = None
        debug("local", f"Agent exited with code {exit_code}")
        return ExecutionResult(exit_code=exit_code, output="".join(chunks))

    def read_file(self, path: str) -> Optional[str]:
        file_path = Path(path)
        if not file_path.is_absolute():
            file_path = self.cwd / file_path
        try:
            return file_path.read_text()
        except (OSError, UnicodeDecodeError):
            return None

    def cleanup(self) -> None:
        proc, self._proc = self._proc, None
        if proc is not None and proc.poll() is None:
            proc.terminate()
            try:
                proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
        self.services.stop_all()
        self._initialized = False


def run_interactive(prompt: str, cwd: Optional[Path] = None) -> int:
    """Run one interactive agent session with inherited stdio."""
    args = [agent_bin(), "--permission-mode", "acceptEdits", prompt]
    try:
        return exit_status(subprocess.run(args, cwd=cwd).returncode)
    except OSError as e:
        raise ExecutorError(f"Could not start agent '{args[0]}': {e}") from e
