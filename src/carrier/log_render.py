"""Render stream events with readable, colorized output."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.text import Text

from carrier.stream import StreamEvent, StreamEventType
from carrier.ui import Icons, Theme

FORMATS = ("pretty", "json", "raw")


def render_event(event: StreamEvent, console: Console, fmt: str = "pretty") -> None:
    """Print one event as ``pretty`` (rich), ``json`` (one line) or ``raw`` (content only)."""
    if fmt == "json":
        console.print(escape(event.to_json()), soft_wrap=True, highlight=False)
        return
    if fmt == "raw":
        content = event.content
        if not isinstance(content, str):
            content = json.dumps(content, ensure_ascii=False)
        console.print(escape(content), soft_wrap=True, highlight=False)
        return
    if fmt != "pretty":
        raise ValueError(f"Unknown format: {fmt}. Valid: {', '.join(FORMATS)}")

    line = _render_pretty(event)
    if line is not None:
        console.print(line)


def _render_pretty(event: StreamEvent) -> Text | None:
    content = event.content
    header = Text()
    header.append(f"{_format_time(event.timestamp)} ", style=Theme.MUTED)
    header.append(f"[{event.task_id}] ", style=Theme.PRIMARY)

    if event.type == StreamEventType.AGENT_ACTIVITY.value:
        activity = content.get("activity") if isinstance(content, dict) else content
        header.append(f"{Icons.ROBOT} {activity}", style=Theme.MESSAGE)
        return header

    if event.type == StreamEventType.TOOL_USE.value:
        if not isinstance(content, dict) or not content.get("name"):
            return None
        header.append(f"{Icons.TOOL} {content['name']}", style=f"bold {Theme.WARNING}")
        params = _format_tool_params(content)
        if params:
            header.append(f": {params}", style=Theme.MUTED)
        return header

    if event.type == StreamEventType.THINKING.value:
        if not isinstance(content, str):
            return None
        header.append(f"{Icons.THINKING} {_truncate(content, 100)}", style=Theme.REASONING)
        return header

    if event.type == StreamEventType.OUTPUT.value:
        text = content.get("text") if isinstance(content, dict) else content
        header.append(f"{Icons.FILE_WRITE} {text}", style=Theme.MESSAGE)
        return header

    if event.type == StreamEventType.ERROR.value:
        message = content.get("message") if isinstance(content, dict) else content
        header.append(f"{Icons.ERROR} {message}", style=f"bold {Theme.ERROR}")
        return header

    if event.type == StreamEventType.STATUS.value:
        body = content if isinstance(content, dict) else {"status": content}
        status = str(body.get("status", ""))
        style = Theme.INFO
        icon = Icons.INFO
        if status in ("complete", "completed"):
            style, icon = Theme.SUCCESS, Icons.DONE
        elif status in ("failed", "timeout"):
            style, icon = Theme.ERROR, Icons.ERROR
        elif status == "cancelled":
            style, icon = Theme.WARNING, Icons.WARNING
        header.append(f"{icon} {body.get('message') or status}", style=style)
        return header

    if event.type == StreamEventType.PROGRESS.value:
        body = content if isinstance(content, dict) else {}
        percentage = body.get("percentage")
        if percentage is not None:
            header.append(_progress_bar(percentage), style=Theme.PRIMARY)
            header.append(f" {body.get('message') or ''}", style=Theme.MUTED)
        else:
            header.append(f"{Icons.CLOCK} {body.get('message') or 'Processing...'}", style=Theme.MUTED)
        return header

    header.append(json.dumps(content, ensure_ascii=False), style=Theme.MUTED)
    return header


def _format_time(timestamp: str) -> str:
    try:
        return datetime.fromisoformat(timestamp).astimezone().strftime("%H:%M:%S")
    except ValueError:
        return timestamp


def _format_tool_params(tool: dict[str, Any]) -> str:
    params = tool.get("input")
    if not isinstance(params, dict) or not params:
        return ""
    name = tool.get("name")
    if name in ("Read", "Write", "Edit"):
        return str(params.get("file_path", ""))
    if name == "Bash":
        command = params.get("command")
        return f'"{_truncate(str(command), 50)}"' if command else ""
    if name in ("Grep", "Search", "Glob"):
        pattern = params.get("pattern")
        return f'"{pattern}"' if pattern else ""
    first = next(iter(params.values()))
    return _truncate(first, 50) if isinstance(first, str) else ""


def _progress_bar(percentage: Any, width: int = 20) -> str:
    try:
        pct = max(0.0, min(100.0, float(percentage)))
    except (TypeError, ValueError):
        return ""
    filled = round(pct / 100 * width)
    return f"[{'█' * filled}{'-' * (width - filled)}] {pct:g}%"


def _truncate(value: str, max_len: int) -> str:
    if len(value) <= max_len:
        return value
    return value[:max_len] + "..."
