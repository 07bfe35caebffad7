"""Terminal theme shared by the CLI and the stream renderer."""

from __future__ import annotations

import os

from carrier.models import Status


def is_light_theme() -> bool:
    """Detect a light terminal background from COLORFGBG ("fg;bg")."""
    colorfgbg = os.environ.get("COLORFGBG", "")
    if ";" in colorfgbg:
        try:
            _, bg = colorfgbg.rsplit(";", 1)
            return int(bg) in (7, 15)
        except ValueError:
            return False
    return False


class Theme:
    """Color theme for the UI - adapts to terminal colors."""

    _is_light = is_light_theme()

    PRIMARY = "cyan"
    SECONDARY = "blue"
    ACCENT = "magenta"

    # Status colors
    SUCCESS = "green"
    WARNING = "yellow"
    ERROR = "red"
    INFO = "cyan"

    # Content colors
    REASONING = "dim italic"
    MESSAGE = "default"
    MUTED = "dim"

    HEADER = "bold cyan"
    BORDER = "bright_black" if not _is_light else "grey70"


class Icons:
    """Unicode icons for terminal output."""

    THINKING = "◐"
    DONE = "✓"
    ERROR = "✗"
    WARNING = "⚠"
    INFO = "ℹ"
    TOOL = "⚡"
    ROBOT = "🤖"
    FILE_WRITE = "📝"
    CLOCK = "⏱"
    BULLET = "•"
    ARROW_RIGHT = "→"


STATUS_STYLES: dict[Status, tuple[str, str]] = {
    Status.PENDING: (Icons.CLOCK, Theme.MUTED),
    Status.ACTIVE: (Icons.THINKING, Theme.PRIMARY),
    Status.AWAITING_APPROVAL: (Icons.WARNING, Theme.WARNING),
    Status.COMPLETE: (Icons.DONE, Theme.SUCCESS),
    Status.FAILED: (Icons.ERROR, Theme.ERROR),
    Status.CANCELLED: (Icons.ERROR, Theme.WARNING),
}


def status_label(status: Status) -> tuple[str, str]:
    """Return ``(text, style)`` for a status cell."""
    icon, style = STATUS_STYLES[status]
    return f"{icon} {status.value}", style
