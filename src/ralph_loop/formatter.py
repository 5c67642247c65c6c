"""Incremental parser for the agent's stream-json output.

The agent writes one JSON record per line. Records are decoded into a small
closed set of events, which are rendered for the console. Rendering is
best-effort: lines that are not JSON, or JSON of an unknown shape, are
skipped. The raw assistant text is accumulated separately (never truncated)
so the runner can scan it for markers.
"""

import codecs
import json
import re
from dataclasses import dataclass, replace
from typing import Any, Dict, List, NamedTuple, Optional, Union

import click

from ralph_loop.constants import MAX_CONTENT_LINES, MAX_SUMMARY_CHARS, TRUNCATION_MARKER
from ralph_loop.debug import debug


# =============================================================================
# EVENTS
# =============================================================================

@dataclass
class AssistantText:
    """A text block written by the assistant."""
    text: str


@dataclass
class ToolInvocation:
    """A tool_use block: the assistant is calling a tool."""
    tool_id: str
    name: str
    input_summary: str


@dataclass
class ToolResult:
    """A tool_result block; tool_name/summary are filled in by the formatter."""
    tool_id: str
    content: str
    is_error: bool = False
    tool_name: Optional[str] = None
    summary: Optional[str] = None


@dataclass
class SessionResult:
    """Terminal record of a session."""
    subtype: Optional[str]


@dataclass
class UnknownRecord:
    """Valid JSON of a shape we don't handle."""
    record_type: Optional[str]


StreamEvent = Union[AssistantText, ToolInvocation, ToolResult, SessionResult, UnknownRecord]


class ParseResult(NamedTuple):
    output: str
    events: List[StreamEvent]


# =============================================================================
# TOOL SUMMARIES
# =============================================================================

FILE_TOOLS = {"Read", "Write", "Edit", "MultiEdit", "NotebookEdit"}
EDIT_TOOLS = {"Write", "Edit", "MultiEdit", "NotebookEdit"}
SEARCH_TOOLS = {"Grep", "Glob"}


def _truncate(text: str, limit: int = MAX_SUMMARY_CHARS) -> str:
    first_line = text.strip().split("\n", 1)[0]
    if len(first_line) <= limit:
        return first_line
    return first_line[: limit - 3] + "..."


def _plural(count: int, noun: str) -> str:
    return f"{count} {noun}" if count == 1 else f"{count} {noun}s"


def summarize_tool_input(name: str, tool_input: Any) -> str:
    """One-line description of a tool call, picked per tool name."""
    if not isinstance(tool_input, dict):
        return ""

    if name in FILE_TOOLS:
        return str(tool_input.get("file_path") or tool_input.get("notebook_path") or "")
    if name == "Bash":
        description = tool_input.get("description")
        if description:
            return str(description)
        return _truncate(str(tool_input.get("command", "")))
    if name == "Grep":
        pattern = f"/{tool_input.get('pattern', '')}/"
        path = tool_input.get("path")
        return f"{pattern} in {path}" if path else pattern
    if name == "Glob":
        return str(tool_input.get("pattern", ""))
    if name == "Task":
        return str(tool_input.get("description", ""))
    if name == "WebFetch":
        return str(tool_input.get("url", ""))
    if name == "WebSearch":
        return str(tool_input.get("query", ""))
    if name == "TodoWrite":
        todos = tool_input.get("todos")
        return _plural(len(todos), "todo") if isinstance(todos, list) else ""
    return ""


def _result_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, dict) and isinstance(block.get("text"), str):
                parts.append(block["text"])
            elif isinstance(block, str):
                parts.append(block)
        return "\n".join(parts)
    return ""


def summarize_tool_result(tool_name: Optional[str], content: str, is_error: bool = False) -> Optional[str]:
    """
    One-line summary of a tool result.

    Returns None when there is nothing worth showing (unknown tool).
    """
    if is_error:
        return f"error: {_truncate(content)}" if content.strip() else "error"

    non_blank = [line for line in content.splitlines() if line.strip()]

    if tool_name == "Read":
        if not content.strip():
            return "empty"
        return _plural(len(content.splitlines()), "line")
    if tool_name in SEARCH_TOOLS:
        if not non_blank:
            return "no matches"
        return _plural(len(non_blank), "file")
    if tool_name == "Bash":
        if not non_blank:
            return "no output"
        preview = _truncate(non_blank[0])
        rest = len(non_blank) - 1
        return f"{preview} (+{_plural(rest, 'line')})" if rest else preview
    if tool_name in EDIT_TOOLS:
        return "✓ done"
    if tool_name == "Task":
        return "completed"
    return None


# =============================================================================
# RECORD DECODING
# =============================================================================

def _content_blocks(record: Dict[str, Any]) -> List[Dict[str, Any]]:
    message = record.get("message")
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if not isinstance(content, list):
        return []
    return [block for block in content if isinstance(block, dict)]


def decode_record(record: Any) -> List[StreamEvent]:
    """
    Map one decoded JSON record to zero or more events.

    Known shapes:
        {"type": "assistant", "message": {"content": [text | tool_use, ...]}}
        {"type": "user", "message": {"content": [tool_result, ...]}}
        {"type": "result", "subtype": "..."}
    Anything else becomes a single UnknownRecord.
    """
    if not isinstance(record, dict):
        return [UnknownRecord(record_type=None)]

    record_type = record.get("type")

    if record_type == "assistant":
        events: List[StreamEvent] = []
        for block in _content_blocks(record):
            if block.get("type") == "text" and isinstance(block.get("text"), str):
                events.append(AssistantText(text=block["text"]))
            elif block.get("type") == "tool_use":
                name = str(block.get("name", ""))
                events.append(
                    ToolInvocation(
                        tool_id=str(block.get("id", "")),
                        name=name,
                        input_summary=summarize_tool_input(name, block.get("input")),
                    )
                )
        return events

    if record_type == "user":
        return [
            ToolResult(
                tool_id=str(block.get("tool_use_id", "")),
                content=_result_text(block.get("content")),
                is_error=bool(block.get("is_error", False)),
            )
            for block in _content_blocks(record)
            if block.get("type") == "tool_result"
        ]

    if record_type == "result":
        subtype = record.get("subtype")
        return [SessionResult(subtype=str(subtype) if subtype is not None else None)]

    return [UnknownRecord(record_type=str(record_type) if record_type is not None else None)]


# =============================================================================
# FORMATTER
# =============================================================================

_NUMBERED = re.compile(r"^(\d+)\. (.*)$")
_INLINE_CODE = re.compile(r"`([^`]+)`")


def _dim(text: str) -> str:
    return click.style(text, dim=True)


class StreamFormatter:
    """Turns chunks of stream-json output into console text."""

    def __init__(self):
        self.reset()

    def reset(self) -> None:
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._line_buffer = ""
        self._in_code_block = False
        self._content_lines = 0
        self._tool_names: Dict[str, str] = {}
        self._assistant_text = ""

    def get_assistant_text(self) -> str:
        return self._assistant_text

    # --- display lines ---

    def _format_line(self, line: str) -> str:
        if line.startswith("```"):
            self._in_code_block = not self._in_code_block
            if self._in_code_block:
                lang = line[3:].strip()
                return _dim("┌──" + (f" {lang}" if lang else "")) + "\n"
            return _dim("└──") + "\n"

        if self._in_code_block:
            return _dim("│") + " " + click.style(line, fg="cyan") + "\n"

        if line.startswith("### "):
            return click.style(line[4:], fg="blue", bold=True) + "\n"
        if line.startswith("## "):
            return click.style(line[3:], fg="magenta", bold=True) + "\n"
        if line.startswith("# "):
            return click.style(line[2:], fg="green", bold=True) + "\n"

        if line.startswith("- ") or line.startswith("* "):
            return click.style("•", fg="yellow") + " " + line[2:] + "\n"

        numbered = _NUMBERED.match(line)
        if numbered:
            return click.style(f"{numbered.group(1)}.", fg="yellow") + " " + numbered.group(2) + "\n"

        return _INLINE_CODE.sub(lambda m: click.style(m.group(1), fg="cyan"), line) + "\n"

    def _format_display_line(self, line: str) -> str:
        if line.strip():
            self._content_lines += 1
            if self._content_lines > MAX_CONTENT_LINES:
                # keep fence state in sync while hidden
                if line.startswith("```"):
                    self._in_code_block = not self._in_code_block
                if self._content_lines == MAX_CONTENT_LINES + 1:
                    return _dim(TRUNCATION_MARKER) + "\n"
                return ""
        elif self._content_lines > MAX_CONTENT_LINES:
            return ""
        return self._format_line(line)

    def format_text(self, text: str) -> str:
        """Format assistant text, holding back the last incomplete line."""
        lines = (self._line_buffer + text).split("\n")
        self._line_buffer = lines.pop()
        return "".join(self._format_display_line(line) for line in lines)

    def _flush_line_buffer(self) -> str:
        if not self._line_buffer:
            return ""
        line, self._line_buffer = self._line_buffer, ""
        return self._format_display_line(line)

    # --- records ---

    def _render(self, event: StreamEvent) -> str:
        if isinstance(event, AssistantText):
            self._assistant_text += event.text
            return self.format_text(event.text)

        if isinstance(event, ToolInvocation):
            pending = self._flush_line_buffer()
            self._tool_names[event.tool_id] = event.name
            self._content_lines = 0
            summary = f" {event.input_summary}" if event.input_summary else ""
            return (
                pending
                + "\n"
                + _dim("─── ")
                + click.style(event.name, fg="yellow")
                + summary
                + _dim(" ───")
                + "\n"
            )

        if isinstance(event, ToolResult):
            if not event.summary:
                return ""
            return _dim("  ⎿ ") + event.summary + "\n"

        if isinstance(event, SessionResult) and event.subtype == "success":
            return self._flush_line_buffer() + _dim("───────────────") + "\n\n"

        return ""

    def _process_line(self, line: str, events: List[StreamEvent]) -> str:
        if not line.strip():
            return ""
        try:
            record = json.loads(line)
        except (ValueError, RecursionError):
            return ""

        # a bad record is dropped, never raised into the stream reader
        output = ""
        try:
            for event in decode_record(record):
                if isinstance(event, ToolResult):
                    tool_name = self._tool_names.get(event.tool_id)
                    event = replace(
                        event,
                        tool_name=tool_name,
                        summary=summarize_tool_result(tool_name, event.content, event.is_error),
                    )
                events.append(event)
                output += self._render(event)
        except Exception as e:
            debug("formatter", f"Skipped record: {type(e).__name__}: {e}")
        return output

    def parse(self, chunk: Union[str, bytes]) -> ParseResult:
        """Feed a chunk of raw output; returns rendered text and decoded events."""
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)

        lines = (self._buffer + chunk).split("\n")
        self._buffer = lines.pop()

        events: List[StreamEvent] = []
        output = "".join(self._process_line(line, events) for line in lines)
        return ParseResult(output=output, events=events)

    def flush(self) -> str:
        """Render whatever is still buffered at end of stream."""
        remaining = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        output = self._process_line(remaining, []) if remaining else ""
        return output + self._flush_line_buffer()
