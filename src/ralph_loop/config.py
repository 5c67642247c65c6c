"""Configuration loading for the ralph runner.

Two layers:
- environment (credentials, webhook URL), loaded through python-dotenv
- project config in .ralph/config.yaml (or .ralph/config.json)
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from ralph_loop.constants import (
    CONFIG_FILES,
    DEFAULT_AGENT_BIN,
    DEFAULT_READY_TIMEOUT_MS,
    DEFAULT_SANDBOX_SETUP_COMMANDS,
)


@dataclass
class Config:
    """Application configuration loaded from environment."""

    ntfy_url: Optional[str]
    anthropic_api_key: Optional[str]
    gh_token: Optional[str]
    agent_bin: str = DEFAULT_AGENT_BIN
    debug: bool = False


class ConfigError(Exception):
    """Raised when required configuration is missing."""
    pass


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes", "on")


def load_config(require_sandbox: bool = False) -> Config:
    """
    Load configuration from environment variables.

    Args:
        require_sandbox: If True, raises ConfigError when the credentials
                         needed by the sandbox backend are missing.

    Returns:
        Config object.

    Raises:
        ConfigError: If require_sandbox=True and required vars are missing.
    """
    load_dotenv()

    anthropic_api_key = os.environ.get("ANTHROPIC_API_KEY")
    gh_token = os.environ.get("GH_TOKEN")

    if require_sandbox:
        missing = []
        if not anthropic_api_key:
            missing.append("ANTHROPIC_API_KEY")
        if not gh_token:
            missing.append("GH_TOKEN")
        if missing:
            raise ConfigError(
                f"Missing required environment variables for sandbox mode: {', '.join(missing)}\n"
                f"Please set them in your environment or create a .env file."
            )

    return Config(
        ntfy_url=os.environ.get("NTFY_URL") or None,
        anthropic_api_key=anthropic_api_key,
        gh_token=gh_token,
        agent_bin=os.environ.get("RALPH_AGENT_BIN") or DEFAULT_AGENT_BIN,
        debug=_env_flag("RALPH_DEBUG"),
    )


# =============================================================================
# PROJECT CONFIG (.ralph/config.yaml)
# =============================================================================

@dataclass
class ServiceConfig:
    """An auxiliary process started before the agent runs."""
    name: str
    command: str
    args: List[str] = field(default_factory=list)
    ready_pattern: Optional[str] = None
    ready_timeout_ms: int = DEFAULT_READY_TIMEOUT_MS


@dataclass
class ProjectConfig:
    """Per-repository settings read from .ralph/config.*."""
    models: Dict[str, str] = field(default_factory=dict)
    services: List[ServiceConfig] = field(default_factory=list)
    mcp: Dict[str, Any] = field(default_factory=dict)
    sandbox_setup_commands: List[str] = field(
        default_factory=lambda: list(DEFAULT_SANDBOX_SETUP_COMMANDS)
    )
    promise_marker: bool = False

    def model_for(self, key: str) -> Optional[str]:
        """Model alias configured for a prompt kind (backlog, feature, onComplete...)."""
        value = self.models.get(key)
        return str(value) if value else None


def _mapping(value: Any) -> Dict[str, Any]:
    return dict(value) if isinstance(value, dict) else {}


def _timeout_ms(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return DEFAULT_READY_TIMEOUT_MS


def _parse_services(raw: Any) -> List[ServiceConfig]:
    services = []
    if not isinstance(raw, list):
        return services
    for entry in raw:
        if not isinstance(entry, dict) or not entry.get("name") or not entry.get("command"):
            continue
        args = entry.get("args")
        ready_pattern = entry.get("readyPattern")
        services.append(
            ServiceConfig(
                name=str(entry["name"]),
                command=str(entry["command"]),
                args=[str(a) for a in args] if isinstance(args, list) else [],
                ready_pattern=str(ready_pattern) if ready_pattern else None,
                ready_timeout_ms=_timeout_ms(entry.get("readyTimeout", DEFAULT_READY_TIMEOUT_MS)),
            )
        )
    return services


def parse_project_config(data: Dict[str, Any]) -> ProjectConfig:
    """Build a ProjectConfig from the raw mapping stored on disk."""
    sandbox = _mapping(data.get("sandbox"))
    completion = _mapping(data.get("completion"))

    config = ProjectConfig(
        models=_mapping(data.get("models")),
        services=_parse_services(data.get("services")),
        mcp=_mapping(data.get("mcp")),
        promise_marker=bool(completion.get("promiseMarker", False)),
    )
    if isinstance(sandbox.get("setupCommands"), list):
        config.sandbox_setup_commands = [str(c) for c in sandbox["setupCommands"]]
    return config


def find_project_config_file(root: Optional[Path] = None) -> Optional[Path]:
    """Return the first existing project config file, YAML preferred."""
    base = root or Path.cwd()
    for name in CONFIG_FILES:
        candidate = base / name
        if candidate.exists():
            return candidate
    return None


def read_project_config(root: Optional[Path] = None) -> ProjectConfig:
    """
    Load the project config.

    Missing or malformed files yield an empty ProjectConfig so callers can
    always fall back to defaults.
    """
    path = find_project_config_file(root)
    if path is None:
        return ProjectConfig()

    try:
        content = path.read_text()
        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(content)
        else:
            data = json.loads(content)
    except (OSError, yaml.YAMLError, json.JSONDecodeError):
        return ProjectConfig()

    if not isinstance(data, dict):
        return ProjectConfig()
    return parse_project_config(data)


def write_project_config(data: Dict[str, Any], root: Optional[Path] = None) -> Path:
    """Write the raw project config mapping as YAML."""
    base = root or Path.cwd()
    path = base / CONFIG_FILES[0]
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data, sort_keys=False))
    return path
