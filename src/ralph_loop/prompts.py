"""Prompt assembly for backlog, feature and hook sessions.

Prompt files live in .ralph/prompts/. Each prompt is prefixed with @-references
to the files the agent should load (task list, plan, progress log).
"""

from pathlib import Path
from typing import Optional

from ralph_loop.constants import (
    BACKLOG_FILE,
    COMPLETE_MARKER,
    HOOKS_DIR,
    PROGRESS_FILE,
    PROMPTS_DIR,
    STUCK_MARKER,
    TASKS_FILENAME,
)
from ralph_loop.repo import get_feature_dir


class PromptError(Exception):
    """A required prompt file is missing."""
    pass


DEFAULT_BACKLOG_PROMPT = f"""You are working through the task backlog in .ralph/backlog.json.

1. Read .ralph/progress.txt to see what previous sessions did.
2. Pick the highest-priority task with "passes": false. Work on ONE task only.
3. Implement it, run the checks the repository provides, and commit.
4. When the acceptance criteria are met, set "passes": true for that task.
5. Append a short note to .ralph/progress.txt: what you did, what is left.

If you cannot make progress (missing access, contradictory requirements,
repeated failures), explain why and output exactly:
{STUCK_MARKER}
"""

DEFAULT_FEATURE_PROMPT = f"""You are implementing a feature described by plan.md and tasks.json.

1. Read progress.txt to see what previous sessions did.
2. Pick the next task with "passes": false. Work on ONE task only.
3. Implement it on the feature branch, run the checks, and commit.
4. When the acceptance criteria are met, set "passes": true for that task.
5. Append a short note to progress.txt.

If every task passes you may output {COMPLETE_MARKER}.
If you cannot make progress, explain why and output exactly:
{STUCK_MARKER}
"""

DEFAULT_ONESHOT_PROMPT = """You are completing a feature in a SINGLE session. There are no follow-up
iterations, so finish every task in tasks.json before ending.

1. Read plan.md for the branch and full context.
2. Work through ALL tasks with "passes": false, one by one.
3. For each task: implement it, run the checks, set "passes": true.
4. When all tasks are done, append a summary to progress.txt and commit.

If a task is blocked, note why in progress.txt and move on to the next one.
"""

DEFAULT_PROMPTS = {
    "backlog.md": DEFAULT_BACKLOG_PROMPT,
    "feature.md": DEFAULT_FEATURE_PROMPT,
    "oneshot.md": DEFAULT_ONESHOT_PROMPT,
}


def _read_prompt_file(path: Path) -> str:
    if not path.exists():
        raise PromptError(f"Prompt not found at {path}. Run `ralph setup` first.")
    return path.read_text()


def _feature_refs(name: str) -> str:
    feature_dir = get_feature_dir(name).as_posix()
    return f"@{feature_dir}/plan.md @{feature_dir}/{TASKS_FILENAME} @{feature_dir}/progress.txt"


def get_backlog_prompt() -> str:
    instructions = _read_prompt_file(Path(PROMPTS_DIR) / "backlog.md")
    return f"@{BACKLOG_FILE} @{PROGRESS_FILE}\n{instructions}"


def get_feature_prompt(name: str) -> str:
    instructions = _read_prompt_file(Path(PROMPTS_DIR) / "feature.md")
    return f"{_feature_refs(name)}\n{instructions}"


def get_oneshot_prompt(name: str) -> str:
    """Feature prompt for a single session that should finish every task."""
    instructions = _read_prompt_file(Path(PROMPTS_DIR) / "oneshot.md")
    return f"{_feature_refs(name)}\n{instructions}"


def get_hook_prompt(hook: str, feature_name: Optional[str] = None) -> Optional[str]:
    """Prompt for a hook, or None when .ralph/prompts/hooks/<hook>.md is absent."""
    path = Path(HOOKS_DIR) / f"{hook}.md"
    if not path.exists():
        return None
    instructions = path.read_text()
    if feature_name:
        return f"{_feature_refs(feature_name)}\n{instructions}"
    return instructions


def write_default_prompts() -> list:
    """Write any missing default prompt files. Returns the paths created."""
    prompts_dir = Path(PROMPTS_DIR)
    prompts_dir.mkdir(parents=True, exist_ok=True)
    Path(HOOKS_DIR).mkdir(parents=True, exist_ok=True)

    created = []
    for filename, content in DEFAULT_PROMPTS.items():
        path = prompts_dir / filename
        if not path.exists():
            path.write_text(content)
            created.append(path)
    return created
