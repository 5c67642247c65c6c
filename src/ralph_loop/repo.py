"""Repository layer for run state, task files and the work queue.

Everything lives in JSON files under .ralph/. Reads are forgiving: a missing,
unparsable or schema-invalid file reads as "no data" (None, or an empty
queue). Writes replace the whole file.
"""

import json
import os
import shutil
import tempfile
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

import jsonschema

from ralph_loop.constants import (
    BACKLOG_FILE,
    DEFAULT_MAX_ITERATIONS,
    FEATURES_DIR,
    LOCK_FILE,
    QUEUE_FILE,
    RUN_STATUSES,
    STATE_FILE,
    STATUS_INITIALIZED,
    STATUS_RUNNING,
    TASKS_FILENAME,
)
from ralph_loop.debug import debug


# =============================================================================
# SCHEMAS
# =============================================================================

STATE_SCHEMA = {
    "type": "object",
    "required": ["iteration", "maxIterations", "status"],
    "properties": {
        "iteration": {"type": "integer", "minimum": 0},
        "maxIterations": {"type": "integer", "minimum": 1},
        "status": {"enum": RUN_STATUSES},
        "feature": {"type": ["string", "null"]},
        "startedAt": {"type": "string"},
    },
}

TASK_FILE_SCHEMA = {
    "type": "object",
    "required": ["tasks"],
    "properties": {
        "tasks": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["title", "passes"],
                "properties": {
                    "title": {"type": "string"},
                    "description": {"type": "string"},
                    "acceptance": {"type": "array", "items": {"type": "string"}},
                    "branch": {"type": "string"},
                    "passes": {"type": "boolean"},
                },
            },
        },
    },
}

QUEUE_SCHEMA = {
    "type": "object",
    "properties": {
        "items": {"type": "array", "items": {"type": "string"}},
    },
}

LOCK_SCHEMA = {
    "type": "object",
    "required": ["owner", "pid"],
    "properties": {
        "owner": {"type": "string"},
        "pid": {"type": "integer"},
        "acquiredAt": {"type": "string"},
        "feature": {"type": ["string", "null"]},
    },
}


def _is_valid(data: Any, schema: dict) -> bool:
    try:
        jsonschema.validate(instance=data, schema=schema)
        return True
    except jsonschema.ValidationError:
        return False


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class RunState:
    """Process-wide run state (.ralph/state.json)."""
    iteration: int = 0
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    status: str = STATUS_INITIALIZED
    feature: Optional[str] = None
    started_at: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunState":
        return cls(
            iteration=data["iteration"],
            max_iterations=data["maxIterations"],
            status=data["status"],
            feature=data.get("feature"),
            started_at=data.get("startedAt", ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "iteration": self.iteration,
            "maxIterations": self.max_iterations,
            "status": self.status,
        }
        if self.feature is not None:
            data["feature"] = self.feature
        data["startedAt"] = self.started_at
        return data


@dataclass
class Task:
    """One entry of a task file. Only the agent flips `passes`."""
    title: str
    passes: bool = False
    description: Optional[str] = None
    acceptance: List[str] = field(default_factory=list)
    branch: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"title": self.title}
        if self.description is not None:
            data["description"] = self.description
        if self.acceptance:
            data["acceptance"] = list(self.acceptance)
        if self.branch is not None:
            data["branch"] = self.branch
        data["passes"] = self.passes
        return data


@dataclass
class TaskFile:
    """Ordered task list for one unit of work."""
    tasks: List[Task] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskFile":
        return cls(
            tasks=[
                Task(
                    title=t["title"],
                    passes=t["passes"],
                    description=t.get("description"),
                    acceptance=list(t.get("acceptance") or []),
                    branch=t.get("branch"),
                )
                for t in data["tasks"]
            ]
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"tasks": [t.to_dict() for t in self.tasks]}


# =============================================================================
# FILE HELPERS
# =============================================================================

def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _read_json(path: Path) -> Optional[Any]:
    try:
        return json.loads(path.read_text())
    except (OSError, ValueError):
        return None


def write_json(path: Path, data: Any) -> None:
    """Replace the file at `path` with 2-space indented JSON."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(json.dumps(data, indent=2))
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


# =============================================================================
# RUN STATE
# =============================================================================

def read_state() -> Optional[RunState]:
    """Load RunState, or None if missing or malformed."""
    data = _read_json(Path(STATE_FILE))
    if data is None or not _is_valid(data, STATE_SCHEMA):
        return None
    return RunState.from_dict(data)


def write_state(state: RunState) -> None:
    write_json(Path(STATE_FILE), state.to_dict())


def update_state(state: RunState, **changes: Any) -> RunState:
    """Write a copy of `state` with `changes` applied and return it."""
    updated = replace(state, **changes)
    write_state(updated)
    debug("state", f"status={updated.status} iteration={updated.iteration}", {"feature": updated.feature})
    return updated


def init_state(max_iterations: int = DEFAULT_MAX_ITERATIONS) -> RunState:
    state = RunState(
        iteration=0,
        max_iterations=max_iterations,
        status=STATUS_INITIALIZED,
        started_at=now_iso(),
    )
    write_state(state)
    return state


# =============================================================================
# TASK FILES
# =============================================================================

def parse_task_file(content: Optional[str]) -> Optional[TaskFile]:
    """Parse task file text, or None if it isn't a valid task file."""
    if not content:
        return None
    try:
        data = json.loads(content)
    except ValueError:
        return None
    if not _is_valid(data, TASK_FILE_SCHEMA):
        return None
    return TaskFile.from_dict(data)


def read_tasks_file(path) -> Optional[TaskFile]:
    try:
        content = Path(path).read_text()
    except OSError:
        return None
    return parse_task_file(content)


def has_open_tasks(task_file: TaskFile) -> bool:
    return any(not t.passes for t in task_file.tasks)


def is_complete(task_file: TaskFile) -> bool:
    """True when there are no tasks or every task passes."""
    return not has_open_tasks(task_file)


def get_incomplete_task_titles(task_file: TaskFile) -> List[str]:
    return sorted(t.title for t in task_file.tasks if not t.passes)


def get_feature_dir(name: str) -> Path:
    return Path(FEATURES_DIR) / name


def get_feature_tasks_path(name: str) -> Path:
    return get_feature_dir(name) / TASKS_FILENAME


def backlog_path() -> Path:
    return Path(BACKLOG_FILE)


def list_features() -> List[str]:
    """Names of features that have a tasks.json."""
    features_dir = Path(FEATURES_DIR)
    if not features_dir.is_dir():
        return []
    return sorted(p.parent.name for p in features_dir.glob(f"*/{TASKS_FILENAME}"))


def get_most_recent_feature() -> Optional[str]:
    """Feature whose tasks.json was modified last."""
    features = list_features()
    if not features:
        return None
    return max(features, key=lambda name: get_feature_tasks_path(name).stat().st_mtime)


def list_open_features() -> List[str]:
    open_features = []
    for name in list_features():
        task_file = read_tasks_file(get_feature_tasks_path(name))
        if task_file and has_open_tasks(task_file):
            open_features.append(name)
    return open_features


def delete_feature(name: str) -> bool:
    """Remove a feature directory. Returns False if it has no tasks.json."""
    if not get_feature_tasks_path(name).exists():
        return False
    shutil.rmtree(get_feature_dir(name))
    return True


# =============================================================================
# QUEUE
# =============================================================================

def read_queue() -> List[str]:
    path = Path(QUEUE_FILE)
    data = _read_json(path)
    if data is None:
        debug("readQueue", f"No readable queue at {path}, returning empty list")
        return []
    if not _is_valid(data, QUEUE_SCHEMA):
        debug("readQueue", "Queue file failed validation, returning empty list")
        return []
    items = list(data.get("items") or [])
    debug("readQueue", "Parsed items", {"items": items})
    return items


def _write_queue(items: List[str]) -> None:
    write_json(Path(QUEUE_FILE), {"items": items})


def add_to_queue(name: str) -> None:
    items = read_queue()
    items.append(name)
    _write_queue(items)
    debug("addToQueue", f'Added "{name}"', {"items": items})


def pop_queue() -> Optional[str]:
    """Remove and return the head of the queue, or None if empty."""
    items = read_queue()
    if not items:
        debug("popQueue", "Queue empty, returning None")
        return None
    head = items.pop(0)
    _write_queue(items)
    debug("popQueue", f'Popped "{head}"', {"remaining": items})
    return head


def remove_from_queue(name: str) -> int:
    """Drop every queued entry for `name`. Returns how many were removed."""
    items = read_queue()
    kept = [item for item in items if item != name]
    if len(kept) != len(items):
        _write_queue(kept)
        debug("removeFromQueue", f'Removed "{name}"', {"items": kept})
    return len(items) - len(kept)


# =============================================================================
# RUN LOCK
# =============================================================================

@dataclass
class RunLock:
    """Ownership record for the single active runner (.ralph/lock.json)."""
    owner: str
    pid: int
    acquired_at: str
    feature: Optional[str] = None


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def read_lock() -> Optional[RunLock]:
    data = _read_json(Path(LOCK_FILE))
    if data is None or not _is_valid(data, LOCK_SCHEMA):
        return None
    return RunLock(
        owner=data["owner"],
        pid=data["pid"],
        acquired_at=data.get("acquiredAt", ""),
        feature=data.get("feature"),
    )


def read_live_lock() -> Optional[RunLock]:
    lock = read_lock()
    if lock is not None and _pid_alive(lock.pid):
        return lock
    return None


def acquire_run_lock(feature: Optional[str] = None) -> Optional[str]:
    """
    Take ownership of execution.

    Returns:
        Owner token, or None if another live process holds the lock.
        Stale locks (owner process gone) are replaced.
    """
    holder = read_live_lock()
    if holder is not None and holder.pid != os.getpid():
        debug("lock", "Lock held by another process", {"owner": holder.owner, "pid": holder.pid})
        return None

    token = uuid4().hex
    write_json(
        Path(LOCK_FILE),
        {"owner": token, "pid": os.getpid(), "acquiredAt": now_iso(), "feature": feature},
    )
    debug("lock", "Acquired run lock", {"owner": token})
    return token


def release_run_lock(token: str) -> bool:
    """Remove the lock if `token` still owns it."""
    lock = read_lock()
    if lock is None or lock.owner != token:
        return False
    try:
        Path(LOCK_FILE).unlink()
    except FileNotFoundError:
        return False
    debug("lock", "Released run lock", {"owner": token})
    return True


def is_running() -> bool:
    """
    True if a runner currently owns execution.

    A live lock decides. Without any lock file, fall back to the persisted
    status for state written by older runs.
    """
    if read_live_lock() is not None:
        return True
    if Path(LOCK_FILE).exists():
        return False
    state = read_state()
    running = state is not None and state.status == STATUS_RUNNING
    debug("isRunning", f"status={state.status if state else None} running={running}")
    return running
