"""CLI smoke tests with click's CliRunner."""

import json
import os
import signal
import subprocess
import sys
from pathlib import Path

import pytest
from click.testing import CliRunner

from ralph_loop.cli import cli
from ralph_loop.constants import LOCK_FILE
from ralph_loop.repo import add_to_queue, get_feature_dir, init_state, read_queue, read_state, update_state, write_json
from ralph_loop.runner import LoopOutcome


@pytest.fixture
def repo(tmp_path, monkeypatch):
    """An empty git-looking repository as the working directory."""
    (tmp_path / ".git").mkdir()
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("RALPH_DEBUG", raising=False)
    return tmp_path


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def captured_runs(monkeypatch):
    """Replace the runner drive with a recorder returning a canned outcome."""
    runs = []
    outcome = {"value": LoopOutcome(status="completed", exit_code=0, iteration=1, label="")}

    def fake_run_with_queue(config):
        runs.append(config)
        return outcome["value"]

    monkeypatch.setattr("ralph_loop.runner.run_with_queue", fake_run_with_queue)
    return runs, outcome


@pytest.fixture
def signals_sent(monkeypatch):
    """Record real signals instead of delivering them; liveness checks still run."""
    sent = []
    real_kill = os.kill

    def recording_kill(pid, sig):
        if sig == 0:
            return real_kill(pid, sig)
        sent.append((pid, sig))

    monkeypatch.setattr(os, "kill", recording_kill)
    return sent


def make_feature(name, passes=False):
    write_json(get_feature_dir(name) / "tasks.json", {"tasks": [{"title": "t", "passes": passes}]})


class TestSetup:
    """ralph setup."""

    def test_scaffolds_ralph_dir(self, repo, runner):
        """setup writes state, backlog, progress, prompts and config."""
        result = runner.invoke(cli, ["setup", "--max-iterations", "7"])

        assert result.exit_code == 0, result.output
        state = read_state()
        assert (state.status, state.max_iterations) == ("initialized", 7)
        backlog = json.loads(Path(".ralph/backlog.json").read_text())
        assert backlog["tasks"][0]["passes"] is False
        assert Path(".ralph/progress.txt").exists()
        assert Path(".ralph/prompts/backlog.md").exists()
        assert Path(".ralph/prompts/feature.md").exists()
        assert Path(".ralph/config.yaml").exists()

    def test_keeps_existing_backlog(self, repo, runner):
        write_json(Path(".ralph/backlog.json"), {"tasks": []})
        runner.invoke(cli, ["setup"])
        assert json.loads(Path(".ralph/backlog.json").read_text()) == {"tasks": []}

    def test_requires_repo_root(self, tmp_path, monkeypatch, runner):
        """Commands refuse to run outside a repository root."""
        monkeypatch.chdir(tmp_path)
        result = runner.invoke(cli, ["setup"])
        assert result.exit_code == 1


class TestBacklog:
    """ralph backlog."""

    def test_runs_loop_and_maps_exit_code(self, repo, runner, captured_runs):
        """The runner's outcome becomes the process exit code."""
        runner.invoke(cli, ["setup"])
        runs, outcome = captured_runs
        outcome["value"] = LoopOutcome(status="stuck", exit_code=2, iteration=3, label="Backlog")

        result = runner.invoke(cli, ["backlog", "--force", "--max-iterations", "4", "--hooks"])

        assert result.exit_code == 2
        config = runs[0]
        assert config.label == "Backlog"
        assert config.tasks_file_path == ".ralph/backlog.json"
        assert config.max_iterations == 4
        assert config.start_iteration == 0
        assert config.hooks is True
        assert config.feature_name is None
        assert config.prompt.startswith("@.ralph/backlog.json @.ralph/progress.txt\n")

    def test_resume_uses_persisted_iteration(self, repo, runner, captured_runs):
        """--resume continues after the stored iteration."""
        runner.invoke(cli, ["setup"])
        update_state(read_state(), iteration=7)
        runs, _ = captured_runs

        result = runner.invoke(cli, ["backlog", "--force", "--resume"])

        assert result.exit_code == 0
        assert runs[0].start_iteration == 7

    def test_model_from_project_config(self, repo, runner, captured_runs):
        runner.invoke(cli, ["setup"])
        Path(".ralph/config.yaml").write_text("models:\n  backlog: sonnet\n")
        runs, _ = captured_runs
        runner.invoke(cli, ["backlog", "--force"])
        assert runs[0].model == "sonnet"

    def test_without_setup(self, repo, runner, captured_runs):
        """Missing prompts are a setup error."""
        result = runner.invoke(cli, ["backlog", "--force"])
        assert result.exit_code == 1
        assert captured_runs[0] == []

    def test_sandbox_requires_credentials(self, repo, runner, captured_runs, monkeypatch):
        """Sandbox mode fails early without credentials."""
        runner.invoke(cli, ["setup"])
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        monkeypatch.delenv("GH_TOKEN", raising=False)
        result = runner.invoke(cli, ["backlog", "--force", "--sandbox", "--repo-url", "u", "--branch", "b"])
        assert result.exit_code == 1
        assert captured_runs[0] == []


class TestFeature:
    """ralph feature."""

    def test_runs_named_feature(self, repo, runner, captured_runs):
        runner.invoke(cli, ["setup"])
        make_feature("login")
        runs, _ = captured_runs

        result = runner.invoke(cli, ["feature", "login", "--force"])

        assert result.exit_code == 0, result.output
        assert runs[0].feature_name == "login"
        assert runs[0].label == "Feature: login"
        assert (get_feature_dir("login") / "progress.txt").exists()

    def test_first_picks_most_recent(self, repo, runner, captured_runs):
        runner.invoke(cli, ["setup"])
        make_feature("old")
        make_feature("new")
        os.utime(get_feature_dir("old") / "tasks.json", (1000, 1000))
        runs, _ = captured_runs

        runner.invoke(cli, ["feature", "--first", "--force"])

        assert runs[0].feature_name == "new"

    def test_unknown_feature(self, repo, runner, captured_runs):
        runner.invoke(cli, ["setup"])
        make_feature("login")
        result = runner.invoke(cli, ["feature", "logout", "--force"])
        assert result.exit_code == 1
        assert "login" in result.output

    def test_queues_when_running(self, repo, runner, captured_runs):
        """A feature requested during an active run is queued instead."""
        runner.invoke(cli, ["setup"])
        make_feature("login")
        write_json(Path(LOCK_FILE), {"owner": "other", "pid": os.getppid()})

        result = runner.invoke(cli, ["feature", "login", "--force"])

        assert result.exit_code == 0
        assert read_queue() == ["login"]
        assert captured_runs[0] == []
        assert "Queued feature:" in result.output


class TestOneshot:
    """ralph oneshot."""

    def test_single_session_with_oneshot_prompt(self, repo, runner, monkeypatch):
        """oneshot runs one interactive session with its own prompt."""
        runner.invoke(cli, ["setup"])
        make_feature("login")
        sessions = []
        monkeypatch.setattr(
            "ralph_loop.runner.run_single_iteration",
            lambda config: sessions.append(config) or 4,
        )

        result = runner.invoke(cli, ["oneshot", "login"])

        assert result.exit_code == 4
        config = sessions[0]
        assert config.label == "Oneshot: login"
        assert config.prompt.startswith("@.ralph/features/login/plan.md")
        assert "SINGLE session" in config.prompt
        assert (get_feature_dir("login") / "progress.txt").exists()

    def test_unknown_feature(self, repo, runner):
        runner.invoke(cli, ["setup"])
        assert runner.invoke(cli, ["oneshot", "nope"]).exit_code == 1


class TestDelete:
    """ralph delete."""

    def test_force_deletes_and_unqueues(self, repo, runner):
        make_feature("login")
        add_to_queue("login")
        add_to_queue("other")

        result = runner.invoke(cli, ["delete", "login", "--force"])

        assert result.exit_code == 0
        assert not get_feature_dir("login").exists()
        assert read_queue() == ["other"]
        assert "Deleted feature:" in result.output

    def test_declined_confirmation_keeps_feature(self, repo, runner):
        make_feature("login")
        result = runner.invoke(cli, ["delete", "login"], input="n\n")
        assert result.exit_code == 0
        assert "Cancelled." in result.output
        assert get_feature_dir("login").exists()

    def test_confirmed_deletion(self, repo, runner):
        make_feature("login")
        runner.invoke(cli, ["delete", "login"], input="y\n")
        assert not get_feature_dir("login").exists()

    def test_refuses_feature_of_active_run(self, repo, runner):
        """The feature a live run is working on can't be deleted."""
        make_feature("login")
        write_json(Path(LOCK_FILE), {"owner": "other", "pid": os.getppid(), "feature": "login"})

        result = runner.invoke(cli, ["delete", "login", "-f"])

        assert result.exit_code == 1
        assert get_feature_dir("login").exists()

    def test_without_name(self, repo, runner):
        make_feature("login")
        result = runner.invoke(cli, ["delete"])
        assert result.exit_code == 1
        assert "Usage: ralph delete <name>" in result.output


class TestObserve:
    """status, list, queue and cancel."""

    def test_status_without_state(self, repo, runner):
        result = runner.invoke(cli, ["status"])
        assert result.exit_code == 0
        assert "No Ralph state found" in result.output

    def test_status(self, repo, runner):
        update_state(init_state(max_iterations=9), iteration=2, feature="login", status="running")
        result = runner.invoke(cli, ["status"])
        assert "Status: running" in result.output
        assert "Iteration: 2 / 9" in result.output
        assert "Feature: login" in result.output

    def test_list_sections(self, repo, runner):
        runner.invoke(cli, ["setup"])
        make_feature("open-one")
        make_feature("done-one", passes=True)

        result = runner.invoke(cli, ["list"])

        assert result.exit_code == 0
        assert "Backlog Tasks" in result.output
        assert "○ Example task" in result.output
        assert "open-one" in result.output
        assert "✅ done-one" in result.output

    def test_queue(self, repo, runner):
        assert "Queue is empty" in runner.invoke(cli, ["queue"]).output
        add_to_queue("a")
        add_to_queue("b")
        result = runner.invoke(cli, ["queue"])
        assert "1. a" in result.output
        assert "2. b" in result.output

    def test_cancel_running(self, repo, runner):
        """cancel marks a running state cancelled."""
        update_state(init_state(), status="running")
        result = runner.invoke(cli, ["cancel"])
        assert result.exit_code == 0
        assert read_state().status == "cancelled"

    def test_cancel_when_idle(self, repo, runner):
        init_state()
        result = runner.invoke(cli, ["cancel"])
        assert "not running" in result.output
        assert read_state().status == "initialized"

    def test_cancel_skips_stale_lock(self, repo, runner, signals_sent):
        """A lock left by a dead process is never signalled."""
        update_state(init_state(), status="running")
        proc = subprocess.Popen([sys.executable, "-c", "pass"])
        proc.wait()
        write_json(Path(LOCK_FILE), {"owner": "gone", "pid": proc.pid})

        result = runner.invoke(cli, ["cancel"])

        assert result.exit_code == 0
        assert read_state().status == "cancelled"
        assert signals_sent == []

    def test_cancel_signals_live_owner(self, repo, runner, signals_sent):
        """A live lock holder receives SIGTERM."""
        update_state(init_state(), status="running")
        write_json(Path(LOCK_FILE), {"owner": "other", "pid": os.getppid()})

        runner.invoke(cli, ["cancel"])

        assert signals_sent == [(os.getppid(), signal.SIGTERM)]
