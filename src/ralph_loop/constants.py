"""Constants for the ralph runner."""

import os

# Working directory layout (all paths relative to the repository root)

RALPH_DIR = ".ralph"
STATE_FILE = f"{RALPH_DIR}/state.json"
QUEUE_FILE = f"{RALPH_DIR}/queue.json"
LOCK_FILE = f"{RALPH_DIR}/lock.json"
BACKLOG_FILE = f"{RALPH_DIR}/backlog.json"
PROGRESS_FILE = f"{RALPH_DIR}/progress.txt"
FEATURES_DIR = f"{RALPH_DIR}/features"
PROMPTS_DIR = f"{RALPH_DIR}/prompts"
HOOKS_DIR = f"{PROMPTS_DIR}/hooks"
LOGS_DIR = f"{RALPH_DIR}/logs"
MCP_MANIFESTS_DIR = f"{RALPH_DIR}/mcp"
MCP_CONFIG_FILE = f"{RALPH_DIR}/mcp-config.json"
CONFIG_FILES = (f"{RALPH_DIR}/config.yaml", f"{RALPH_DIR}/config.yml", f"{RALPH_DIR}/config.json")

TASKS_FILENAME = "tasks.json"


# Run statuses

STATUS_INITIALIZED = "initialized"
STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_ERROR = "error"
STATUS_STUCK = "stuck"
STATUS_CANCELLED = "cancelled"
STATUS_MAX_ITERATIONS = "max_iterations_reached"

RUN_STATUSES = [
    STATUS_INITIALIZED,
    STATUS_RUNNING,
    STATUS_COMPLETED,
    STATUS_ERROR,
    STATUS_STUCK,
    STATUS_CANCELLED,
    STATUS_MAX_ITERATIONS,
]


# Process exit codes

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_STUCK = 2
EXIT_CANCELLED = 130


# Markers the agent prints in its text output

STUCK_MARKER = "<promise>STUCK</promise>"
COMPLETE_MARKER = "<promise>COMPLETE</promise>"


# Hook prompt names

HOOK_ON_ITERATION = "on-iteration"
HOOK_ON_COMPLETE = "on-complete"


# Agent invocation

DEFAULT_AGENT_BIN = "claude"

DEFAULT_MAX_ITERATIONS = 50


# Display tuning

MAX_CONTENT_LINES = 10
TRUNCATION_MARKER = "...continuing..."
MAX_SUMMARY_CHARS = 60


# Auxiliary services

DEFAULT_READY_TIMEOUT_MS = int(os.getenv("RALPH_READY_TIMEOUT_MS", "30000"))


# Sandbox backend

SANDBOX_WORKDIR = "/workspace"
SANDBOX_SESSION_ID = "ralph-session"
DEFAULT_SANDBOX_SETUP_COMMANDS = [
    "npm install -g @anthropic-ai/claude-code",
]


# Notifications

NOTIFY_TIMEOUT_S = float(os.getenv("RALPH_NOTIFY_TIMEOUT_S", "5"))
