"""Debug tracing (enabled with --debug or RALPH_DEBUG=1)."""

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import click

from ralph_loop.constants import LOGS_DIR

_debug_enabled = False


def set_debug(enabled: bool) -> None:
    global _debug_enabled
    _debug_enabled = enabled


def _append_log(line: str) -> None:
    log_path = Path(LOGS_DIR) / "debug.log"
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a") as f:
            f.write(line + "\n")
    except OSError:
        pass


def debug(context: str, message: str, data: Optional[Dict[str, Any]] = None) -> None:
    """Print a timestamped debug line and mirror it to .ralph/logs/debug.log."""
    if not _debug_enabled:
        return

    timestamp = datetime.now().strftime("%H:%M:%S.%f")[:12]
    line = f"[{timestamp}] [{context}] {message}"
    if data is not None:
        line += " " + json.dumps(data, indent=2, default=str)

    click.echo(
        click.style(f"[{timestamp}]", dim=True)
        + " "
        + click.style(f"[{context}]", fg="magenta")
        + f" {message}"
        + (" " + json.dumps(data, indent=2, default=str) if data is not None else "")
    )
    _append_log(line)
