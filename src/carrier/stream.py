"""Per-task stream event log: append-only writer, offset reader and live follower."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from carrier.models import utc_now

logger = logging.getLogger(__name__)

STREAM_SUFFIX = ".stream"

# Status values that end a task's stream.
TERMINAL_STREAM_STATUSES = frozenset({"complete", "completed", "failed", "cancelled", "timeout"})


class StreamEventType(str, Enum):
    AGENT_ACTIVITY = "agent_activity"
    TOOL_USE = "tool_use"
    THINKING = "thinking"
    OUTPUT = "output"
    ERROR = "error"
    STATUS = "status"
    PROGRESS = "progress"


@dataclass
class StreamEvent:
    """One timestamped unit of task execution output."""

    type: str
    deployed_id: str
    task_id: str
    content: Any = None
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "type": self.type,
            "deployedId": self.deployed_id,
            "taskId": self.task_id,
            "content": self.content,
            "metadata": self.metadata,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StreamEvent:
        return cls(
            type=str(data["type"]),
            deployed_id=str(data.get("deployedId", "")),
            task_id=str(data.get("taskId", "")),
            content=data.get("content"),
            metadata=data.get("metadata") or {},
            timestamp=str(data.get("timestamp") or ""),
        )

    @property
    def is_terminal(self) -> bool:
        """True for a ``status`` event that ends the task's stream."""
        if self.type != StreamEventType.STATUS.value or not isinstance(self.content, dict):
            return False
        return str(self.content.get("status", "")).lower() in TERMINAL_STREAM_STATUSES


@dataclass
class LogRecord:
    """Leveled log entry derived from a stream event, for batch reporting."""

    level: str
    message: str
    metadata: dict[str, Any] | None
    timestamp: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": self.level,
            "message": self.message,
            "metadata": self.metadata,
            "timestamp": self.timestamp,
        }


def streams_dir(carrier_path: str | Path, deployed_id: str) -> Path:
    return Path(carrier_path) / "deployed" / deployed_id / "streams"


def stream_path(carrier_path: str | Path, deployed_id: str, task_id: str) -> Path:
    return streams_dir(carrier_path, deployed_id) / f"{task_id}{STREAM_SUFFIX}"


class StreamWriter:
    """Append-only writer; one JSON line per event, flushed per line.

    Each task's stream has a single writer (the task process), so appends
    need no locking.
    """

    def __init__(self, carrier_path: str | Path) -> None:
        self.carrier_path = Path(carrier_path)

    def path_for(self, deployed_id: str, task_id: str) -> Path:
        return stream_path(self.carrier_path, deployed_id, task_id)

    def emit(
        self,
        deployed_id: str,
        task_id: str,
        event: StreamEvent | StreamEventType | str,
        content: Any = None,
        metadata: dict[str, Any] | None = None,
    ) -> StreamEvent:
        """Append one event. ``event`` is a StreamEvent or an event type."""
        if not isinstance(event, StreamEvent):
            event_type = event.value if isinstance(event, StreamEventType) else str(event)
            event = StreamEvent(
                type=event_type,
                deployed_id=deployed_id,
                task_id=task_id,
                content=content,
                metadata=metadata or {},
            )
        path = self.path_for(deployed_id, task_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(event.to_json() + "\n")
            f.flush()
        return event

    def start(self, deployed_id: str, task_id: str) -> StreamEvent:
        return self.emit(
            deployed_id,
            task_id,
            StreamEventType.STATUS,
            {"status": "started", "message": "Task execution started"},
        )

    def finish(
        self, deployed_id: str, task_id: str, status: str, message: str = "", **extra: Any
    ) -> StreamEvent:
        return self.emit(
            deployed_id,
            task_id,
            StreamEventType.STATUS,
            {"status": status, "message": message, **extra},
        )


def read_events(path: str | Path, offset: int = 0) -> tuple[list[StreamEvent], int]:
    """Read complete lines from ``offset``. Returns ``(events, new_offset)``.

    A trailing line without a newline is left for the next read. Lines that
    are not valid events are skipped.
    """
    path = Path(path)
    try:
        with open(path, "rb") as f:
            f.seek(offset)
            data = f.read()
    except FileNotFoundError:
        return [], offset

    end = data.rfind(b"\n")
    if end < 0:
        return [], offset
    consumed = data[: end + 1]

    events: list[StreamEvent] = []
    for raw in consumed.splitlines():
        line = raw.strip()
        if not line:
            continue
        try:
            payload = json.loads(line)
            if not isinstance(payload, dict):
                raise ValueError("event is not an object")
            events.append(StreamEvent.from_dict(payload))
        except (ValueError, KeyError) as e:
            logger.debug("Skipping malformed stream line in %s: %s", path, e)
    return events, offset + len(consumed)


@dataclass
class _Cursor:
    path: Path
    offset: int = 0
    inode: int | None = None
    finished: bool = False


def _list_streams(directory: Path, task_filter: str | None) -> list[Path]:
    if not directory.exists():
        return []
    if task_filter:
        path = directory / f"{task_filter}{STREAM_SUFFIX}"
        return [path] if path.exists() else []
    return sorted(directory.glob(f"*{STREAM_SUFFIX}"))


def _matches(event: StreamEvent, regex: re.Pattern[str] | None) -> bool:
    return regex is None or bool(regex.search(event.to_json()))


async def watch_stream(
    carrier_path: str | Path,
    deployed_id: str,
    *,
    follow: bool = False,
    tail: int | None = None,
    task_filter: str | None = None,
    pattern: str | None = None,
    poll_interval: float = 0.25,
    is_finished: Callable[[], bool] | None = None,
) -> AsyncIterator[StreamEvent]:
    """Yield a deployment's stream events, optionally following new ones.

    History is replayed first (the last ``tail`` events when given). With
    ``follow`` the generator polls for appended lines and newly created
    stream files. A stream ends on a terminal ``status`` event or when its
    file is rotated or truncated. Following stops once every known stream
    has ended, or, when ``is_finished`` is given, once it returns True.
    Cancelling the consumer only detaches; nothing is written.
    """
    directory = streams_dir(carrier_path, deployed_id)
    regex = re.compile(pattern, re.IGNORECASE) if pattern else None
    cursors: dict[Path, _Cursor] = {}

    def _advance(cursor: _Cursor) -> list[StreamEvent]:
        try:
            st = os.stat(cursor.path)
        except FileNotFoundError:
            cursor.finished = True
            return []
        if cursor.inode is not None and (st.st_ino != cursor.inode or st.st_size < cursor.offset):
            logger.debug("Stream %s rotated, ending it", cursor.path)
            cursor.finished = True
            return []
        cursor.inode = st.st_ino
        if st.st_size == cursor.offset:
            return []
        events, cursor.offset = read_events(cursor.path, cursor.offset)
        if any(e.is_terminal for e in events):
            cursor.finished = True
        return events

    history: list[StreamEvent] = []
    for path in _list_streams(directory, task_filter):
        cursor = cursors[path] = _Cursor(path)
        history.extend(_advance(cursor))
    history = [e for e in history if _matches(e, regex)]
    # Stable sort keeps per-file append order for equal timestamps.
    history.sort(key=lambda e: e.timestamp)
    if tail is not None:
        history = history[-tail:] if tail > 0 else []
    for event in history:
        yield event

    if not follow:
        return

    while True:
        for path in _list_streams(directory, task_filter):
            if path not in cursors:
                cursors[path] = _Cursor(path)

        for cursor in list(cursors.values()):
            if cursor.finished:
                continue
            for event in _advance(cursor):
                if _matches(event, regex):
                    yield event

        if is_finished is not None:
            if is_finished():
                # Final drain so events written just before finishing are seen.
                for cursor in cursors.values():
                    if not cursor.finished:
                        for event in _advance(cursor):
                            if _matches(event, regex):
                                yield event
                return
        elif cursors and all(c.finished for c in cursors.values()):
            return

        await asyncio.sleep(poll_interval)


# --- Log classification ---


def _truncate(value: str, max_len: int) -> str:
    if len(value) <= max_len:
        return value
    return value[:max_len] + "..."


def _tool_message(tool: dict[str, Any]) -> str:
    name = str(tool.get("name", "tool"))
    params = tool.get("input")
    if not isinstance(params, dict) or not params:
        return name
    if name == "Read":
        return f"Read: {params.get('file_path') or 'file'}"
    if name == "Write":
        path = params.get("file_path") or "file"
        content = params.get("content")
        return f"Write: {path} ({len(content)} chars)" if isinstance(content, str) else f"Write: {path}"
    if name == "Edit":
        return f"Edit: {params.get('file_path') or 'file'}"
    if name == "Bash":
        cmd = str(params.get("command") or params.get("description") or "command")
        return f"Bash: {_truncate(cmd, 80)}"
    if name == "Grep":
        return f"Grep: \"{params.get('pattern', '')}\" in {params.get('path') or 'files'}"
    if name == "Glob":
        return f"Glob: {params.get('pattern', '')}"
    if name == "TodoWrite":
        todos = params.get("todos")
        return f"TodoWrite: {len(todos) if isinstance(todos, list) else 0} tasks"
    return f"{name}: {tool.get('status') or 'started'}"


def _content_text(content: Any, key: str) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, dict) and content.get(key):
        return str(content[key])
    return json.dumps(content, ensure_ascii=False)


def event_to_log_record(event: StreamEvent) -> LogRecord:
    """Classify a stream event into a leveled log record."""
    content = event.content
    metadata: dict[str, Any] | None = None

    if event.type == StreamEventType.ERROR.value:
        level, message = "error", _content_text(content, "message")
    elif event.type == StreamEventType.TOOL_USE.value:
        tool = content if isinstance(content, dict) else {"name": str(content)}
        level, message = "info", _tool_message(tool)
        metadata = {
            "toolCall": tool.get("name"),
            "toolResult": tool.get("input") or tool.get("result"),
            "toolStatus": tool.get("status"),
        }
    elif event.type == StreamEventType.AGENT_ACTIVITY.value:
        level, message = "info", _content_text(content, "activity")
    elif event.type == StreamEventType.OUTPUT.value:
        level, message = "info", f"Output: {_content_text(content, 'text')}"
    elif event.type == StreamEventType.STATUS.value:
        body = content if isinstance(content, dict) else {"status": content}
        level, message = "info", f"Status: {body.get('status')} - {body.get('message') or ''}"
    elif event.type == StreamEventType.PROGRESS.value:
        body = content if isinstance(content, dict) else {}
        level, message = "debug", str(body.get("message") or "Processing...")
    elif event.type == StreamEventType.THINKING.value:
        text = content if isinstance(content, str) else json.dumps(content, ensure_ascii=False)
        level, message = "debug", f"Thinking: {text[:200]}"
    else:
        level, message = "debug", json.dumps(content, ensure_ascii=False)

    return LogRecord(level=level, message=message, metadata=metadata, timestamp=event.timestamp)


def stream_stats(carrier_path: str | Path, deployed_id: str) -> dict[str, Any]:
    """Count a deployment's events by type and by task."""
    by_type: dict[str, int] = {}
    by_task: dict[str, int] = {}
    total = 0
    for path in _list_streams(streams_dir(carrier_path, deployed_id), None):
        events, _ = read_events(path)
        for event in events:
            total += 1
            by_type[event.type] = by_type.get(event.type, 0) + 1
            by_task[event.task_id] = by_task.get(event.task_id, 0) + 1
    return {"total": total, "by_type": by_type, "by_task": by_task}
