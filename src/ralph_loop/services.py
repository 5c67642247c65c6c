"""Auxiliary services started alongside local agent runs.

A service is a long-running helper process (dev server, database...) declared
in the project config. Its output goes to .ralph/logs/<name>.log; when a
readyPattern is set, startup waits until the pattern shows up in that output
or the timeout passes.
"""

import json
import re
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, IO, List, Optional

import click

from ralph_loop.config import ServiceConfig
from ralph_loop.constants import LOGS_DIR, MCP_CONFIG_FILE, MCP_MANIFESTS_DIR
from ralph_loop.debug import debug
from ralph_loop.repo import now_iso, write_json


PLAYWRITER_SERVER = {"command": "npx", "args": ["-y", "playwriter@latest"]}


@dataclass
class RunningService:
    name: str
    proc: subprocess.Popen
    log_file: IO[str]
    ready: threading.Event
    write_lock: threading.Lock = field(default_factory=threading.Lock)
    threads: List[threading.Thread] = field(default_factory=list)


def collect_mcp_servers(mcp: Dict[str, Any], root: Path) -> Dict[str, Any]:
    """
    Merge every available tool-integration manifest into one server map.

    Sources, later ones winning on name clashes:
        1. built-in playwriter server when mcp.playwriter.enabled
        2. mcp.servers from the project config
        3. .ralph/mcp/*.json files carrying an "mcpServers" object
    """
    servers: Dict[str, Any] = {}

    playwriter = mcp.get("playwriter")
    if isinstance(playwriter, dict) and playwriter.get("enabled"):
        servers["playwriter"] = dict(PLAYWRITER_SERVER)

    configured = mcp.get("servers")
    if isinstance(configured, dict):
        servers.update(configured)

    manifests_dir = root / MCP_MANIFESTS_DIR
    if manifests_dir.is_dir():
        for manifest in sorted(manifests_dir.glob("*.json")):
            try:
                data = json.loads(manifest.read_text())
            except (OSError, ValueError):
                click.echo(f"⚠ Skipping unreadable MCP manifest {manifest}", err=True)
                continue
            if isinstance(data, dict) and isinstance(data.get("mcpServers"), dict):
                servers.update(data["mcpServers"])

    return servers


class ServiceManager:
    """Starts and stops the services declared for a repository."""

    def __init__(
        self,
        services: List[ServiceConfig],
        mcp: Optional[Dict[str, Any]] = None,
        root: Optional[Path] = None,
    ):
        self.services = services
        self.mcp = mcp or {}
        self.root = root or Path.cwd()
        self.running: List[RunningService] = []
        self.mcp_config_path: Optional[str] = None

    @property
    def logs_dir(self) -> Path:
        return self.root / LOGS_DIR

    def start_all(self) -> None:
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        self._write_mcp_config()

        started = []
        for config in self.services:
            service = self._start_service(config)
            if service is not None:
                started.append((config, service))

        for config, service in started:
            self._wait_for_ready(config, service)

    def _write_mcp_config(self) -> None:
        servers = collect_mcp_servers(self.mcp, self.root)
        if not servers:
            return
        path = self.root / MCP_CONFIG_FILE
        write_json(path, {"mcpServers": servers})
        self.mcp_config_path = str(path)
        click.echo(f"✓ Generated MCP config ({', '.join(sorted(servers))})")

    def _start_service(self, config: ServiceConfig) -> Optional[RunningService]:
        log_path = self.logs_dir / f"{config.name}.log"
        log_file = open(log_path, "w")
        log_file.write(f"[{now_iso()}] Starting {config.command} {' '.join(config.args)}\n")
        log_file.flush()

        try:
            proc = subprocess.Popen(
                [config.command, *config.args],
                cwd=self.root,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,
            )
        except OSError as e:
            log_file.close()
            click.echo(f"⚠ Service \"{config.name}\" failed to start: {e}", err=True)
            return None

        pattern = None
        if config.ready_pattern:
            try:
                pattern = re.compile(config.ready_pattern)
            except re.error as e:
                click.echo(f"⚠ Invalid readyPattern for \"{config.name}\": {e}", err=True)

        ready = threading.Event()
        if pattern is None:
            ready.set()

        service = RunningService(name=config.name, proc=proc, log_file=log_file, ready=ready)
        for stream in (proc.stdout, proc.stderr):
            thread = threading.Thread(
                target=self._pump_output,
                args=(stream, service, pattern),
                daemon=True,
            )
            thread.start()
            service.threads.append(thread)

        self.running.append(service)
        debug("services", f"Started {config.name}", {"pid": proc.pid})
        return service

    def _pump_output(
        self,
        stream: Any,
        service: RunningService,
        pattern: Optional[re.Pattern],
    ) -> None:
        try:
            for line in iter(stream.readline, ""):
                with service.write_lock:
                    if not service.log_file.closed:
                        service.log_file.write(line)
                        service.log_file.flush()
                if pattern is not None and not service.ready.is_set() and pattern.search(line):
                    service.ready.set()
        except (OSError, ValueError):
            # stream closed while stopping
            pass

    def _wait_for_ready(self, config: ServiceConfig, service: RunningService) -> None:
        if not config.ready_pattern:
            click.echo(f"✓ Service \"{config.name}\" started")
            return
        if service.ready.wait(timeout=config.ready_timeout_ms / 1000):
            click.echo(f"✓ Service \"{config.name}\" started and ready")
        else:
            click.echo(
                f"⚠ Service \"{config.name}\" did not become ready within {config.ready_timeout_ms}ms",
                err=True,
            )

    def get_mcp_config_path(self) -> Optional[str]:
        return self.mcp_config_path

    def stop_all(self) -> None:
        for service in self.running:
            if service.proc.poll() is None:
                service.proc.terminate()
                try:
                    service.proc.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    service.proc.kill()
                    service.proc.wait()
            for thread in service.threads:
                thread.join(timeout=1)
            with service.write_lock:
                service.log_file.close()
            click.echo(f"✓ Stopped service \"{service.name}\"")
        self.running = []
