"""Test doubles: a provider that runs small Python scripts speaking stream-json."""

from __future__ import annotations

import json
import sys

from carrier.provider import ClaudeCLIProvider, TaskConfig


def claude_script(
    result: str = "done",
    exit_code: int = 0,
    tools: list[dict] | None = None,
    text: str | None = None,
    sleep: float = 0,
    stderr: str | None = None,
) -> str:
    """Python source printing Claude-style stream-json lines, then exiting."""
    lines = [{"type": "system", "subtype": "init", "model": "test-model"}]
    blocks = []
    if text:
        blocks.append({"type": "text", "text": text})
    for tool in tools or []:
        blocks.append({"type": "tool_use", "id": f"t{len(blocks)}", **tool})
    if blocks:
        lines.append({"type": "assistant", "message": {"content": blocks}})
    body = [
        "import json, sys, time",
        f"for line in {json.dumps([json.dumps(line) for line in lines])}:",
        "    print(line, flush=True)",
    ]
    if sleep:
        body.append(f"time.sleep({sleep})")
    if stderr:
        body.append(f"sys.stderr.write({stderr!r})")
    if exit_code == 0:
        final = {"type": "result", "subtype": "success", "result": result}
        body.append(f"print({json.dumps(json.dumps(final))}, flush=True)")
    body.append(f"sys.exit({exit_code})")
    return "\n".join(body)


class ScriptProvider(ClaudeCLIProvider):
    """Runs each task as ``python -c <script>``; records every TaskConfig."""

    name = "script"

    def __init__(self, *scripts: str) -> None:
        super().__init__(cli_path=sys.executable)
        self.scripts = list(scripts) or [claude_script()]
        self.calls: list[TaskConfig] = []

    def is_available(self) -> bool:
        return True

    def build_command(self, config: TaskConfig) -> list[str]:
        self.calls.append(config)
        index = min(len(self.calls), len(self.scripts)) - 1
        return [sys.executable, "-c", self.scripts[index]]
