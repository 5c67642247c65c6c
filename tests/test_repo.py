"""Tests for run state, task files, the queue and the run lock."""

import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

from ralph_loop.constants import LOCK_FILE, QUEUE_FILE, STATE_FILE, STATUS_RUNNING
from ralph_loop.repo import (
    RunState,
    acquire_run_lock,
    add_to_queue,
    delete_feature,
    get_feature_dir,
    get_incomplete_task_titles,
    get_most_recent_feature,
    init_state,
    is_complete,
    is_running,
    list_features,
    list_open_features,
    parse_task_file,
    pop_queue,
    read_lock,
    read_queue,
    read_state,
    release_run_lock,
    remove_from_queue,
    update_state,
    write_json,
)


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return tmp_path


def write_feature(name: str, tasks: list) -> Path:
    path = get_feature_dir(name) / "tasks.json"
    write_json(path, {"tasks": tasks})
    return path


def dead_pid() -> int:
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


# =============================================================================
# RUN STATE
# =============================================================================

class TestRunState:
    """state.json reads and writes."""

    def test_missing_state(self, workspace):
        """No state file reads as None."""
        assert read_state() is None

    def test_init_and_read(self, workspace):
        """init_state persists a fresh state."""
        state = init_state(max_iterations=12)
        loaded = read_state()
        assert loaded == state
        assert loaded.iteration == 0
        assert loaded.max_iterations == 12
        assert loaded.status == "initialized"

    def test_camel_case_on_disk(self, workspace):
        """The on-disk format uses camelCase keys."""
        state = init_state(max_iterations=3)
        update_state(state, feature="auth", status=STATUS_RUNNING)
        data = json.loads(Path(STATE_FILE).read_text())
        assert data["maxIterations"] == 3
        assert data["feature"] == "auth"
        assert "startedAt" in data

    def test_update_returns_new_state(self, workspace):
        """update_state writes and returns a modified copy."""
        state = init_state()
        updated = update_state(state, iteration=4, status="stuck")
        assert state.iteration == 0
        assert read_state() == updated == RunState(
            iteration=4,
            max_iterations=state.max_iterations,
            status="stuck",
            started_at=state.started_at,
        )

    @pytest.mark.parametrize("content", [
        "{not json",
        json.dumps({"iteration": 1, "maxIterations": 5, "status": "sleeping"}),
        json.dumps({"iteration": -1, "maxIterations": 5, "status": "running"}),
        json.dumps([1, 2, 3]),
    ])
    def test_malformed_state(self, workspace, content):
        """Unparsable or invalid state reads as None."""
        path = Path(STATE_FILE)
        path.parent.mkdir(parents=True)
        path.write_text(content)
        assert read_state() is None


# =============================================================================
# TASK FILES
# =============================================================================

class TestTaskFiles:
    """Task file parsing and completion."""

    def test_empty_task_list_is_complete(self):
        """A task file with no tasks counts as complete."""
        assert is_complete(parse_task_file('{"tasks": []}'))

    def test_open_task_blocks_completion(self):
        """Any task with passes=false keeps the unit open."""
        task_file = parse_task_file(json.dumps({
            "tasks": [
                {"title": "b", "passes": False},
                {"title": "a", "passes": False, "branch": "feat/a"},
                {"title": "c", "passes": True},
            ]
        }))
        assert not is_complete(task_file)
        assert get_incomplete_task_titles(task_file) == ["a", "b"]
        assert task_file.tasks[1].branch == "feat/a"

    def test_all_passing(self):
        """All tasks passing means complete."""
        task_file = parse_task_file('{"tasks": [{"title": "x", "passes": true}]}')
        assert is_complete(task_file)

    @pytest.mark.parametrize("content", [
        None,
        "",
        "not json",
        '{"items": []}',
        '{"tasks": [{"title": "x"}]}',
        '{"tasks": [{"title": "x", "passes": "yes"}]}',
    ])
    def test_invalid_task_files(self, content):
        """Malformed task files parse to None."""
        assert parse_task_file(content) is None


# =============================================================================
# FEATURES
# =============================================================================

class TestFeatures:
    """Feature discovery under .ralph/features."""

    def test_list_features_requires_tasks_file(self, workspace):
        """Only directories with a tasks.json are features."""
        write_feature("beta", [{"title": "t", "passes": False}])
        write_feature("alpha", [{"title": "t", "passes": True}])
        get_feature_dir("empty").mkdir(parents=True)
        assert list_features() == ["alpha", "beta"]
        assert list_open_features() == ["beta"]

    def test_most_recent_feature(self, workspace):
        """The feature with the newest tasks.json wins."""
        old = write_feature("old", [])
        new = write_feature("new", [])
        os.utime(old, (1000, 1000))
        os.utime(new, (2000, 2000))
        assert get_most_recent_feature() == "new"

    def test_no_features(self, workspace):
        assert list_features() == []
        assert get_most_recent_feature() is None

    def test_delete_feature(self, workspace):
        """Deleting removes the whole directory; unknown names are a no-op."""
        write_feature("gone", [])
        (get_feature_dir("gone") / "plan.md").write_text("plan")
        assert delete_feature("gone") is True
        assert not get_feature_dir("gone").exists()
        assert delete_feature("gone") is False


# =============================================================================
# QUEUE
# =============================================================================

class TestQueue:
    """FIFO queue of feature names."""

    def test_fifo_order(self, workspace):
        """Items come out in insertion order."""
        add_to_queue("a")
        add_to_queue("b")
        assert read_queue() == ["a", "b"]
        assert pop_queue() == "a"
        assert read_queue() == ["b"]
        assert pop_queue() == "b"
        assert pop_queue() is None

    def test_empty_queue(self, workspace):
        """A missing queue file is an empty queue."""
        assert read_queue() == []
        assert pop_queue() is None

    def test_on_disk_format(self, workspace):
        """The queue file holds an items list."""
        add_to_queue("feat")
        assert json.loads(Path(QUEUE_FILE).read_text()) == {"items": ["feat"]}

    @pytest.mark.parametrize("content", ["{oops", '{"items": "x"}', '{"items": [1, 2]}'])
    def test_malformed_queue(self, workspace, content):
        """A malformed queue reads as empty, and the next write replaces it."""
        path = Path(QUEUE_FILE)
        path.parent.mkdir(parents=True)
        path.write_text(content)
        assert read_queue() == []
        add_to_queue("fresh")
        assert read_queue() == ["fresh"]

    def test_remove_from_queue(self, workspace):
        """Every entry for a name is dropped, order of the rest kept."""
        for name in ["a", "b", "a", "c"]:
            add_to_queue(name)
        assert remove_from_queue("a") == 2
        assert read_queue() == ["b", "c"]
        assert remove_from_queue("zzz") == 0


# =============================================================================
# RUN LOCK
# =============================================================================

class TestRunLock:
    """Single-runner ownership through .ralph/lock.json."""

    def test_acquire_and_release(self, workspace):
        """The owner token releases the lock."""
        token = acquire_run_lock("auth")
        assert token
        lock = read_lock()
        assert lock.owner == token
        assert lock.pid == os.getpid()
        assert lock.feature == "auth"
        assert is_running()

        assert release_run_lock(token)
        assert not Path(LOCK_FILE).exists()

    def test_release_with_wrong_token(self, workspace):
        """Only the owner can release."""
        token = acquire_run_lock()
        assert not release_run_lock("someone-else")
        assert read_lock().owner == token

    def test_live_lock_blocks_acquire(self, workspace):
        """A lock held by another live process can't be taken."""
        write_json(Path(LOCK_FILE), {"owner": "other", "pid": os.getppid()})
        assert acquire_run_lock() is None
        assert is_running()

    def test_stale_lock_is_replaced(self, workspace):
        """A lock whose process has exited is taken over."""
        write_json(Path(LOCK_FILE), {"owner": "ghost", "pid": dead_pid()})
        assert not is_running()
        token = acquire_run_lock()
        assert token is not None
        assert read_lock().owner == token

    def test_stale_lock_overrides_running_status(self, workspace):
        """A crashed runner's status=running is not treated as live."""
        update_state(init_state(), status=STATUS_RUNNING)
        write_json(Path(LOCK_FILE), {"owner": "ghost", "pid": dead_pid()})
        assert not is_running()

    def test_status_fallback_without_lock(self, workspace):
        """Without a lock file the persisted status decides."""
        state = init_state()
        assert not is_running()
        update_state(state, status=STATUS_RUNNING)
        assert is_running()
