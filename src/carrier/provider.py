"""Execution provider contract and the Claude CLI provider.

A provider turns a ``TaskConfig`` into a child-process command line and
translates each line the child prints into stream event payloads.
Carrier treats the agent itself as a black box.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

import psutil

from carrier.config import CarrierConfig, find_claude_cli
from carrier.exceptions import ProcessError, ProviderError
from carrier.stream import StreamEventType

logger = logging.getLogger(__name__)

EventPayload = dict[str, Any]

# stream-json puts a whole message on one line; tool inputs can be large.
STREAM_LINE_LIMIT = 16 * 1024 * 1024


@dataclass
class TaskConfig:
    """Everything a provider needs to run one task."""

    deployed_id: str
    task_id: str
    agent_type: str
    prompt: str
    timeout: float | None = None
    max_turns: int | None = None
    model: str | None = None


@dataclass
class TaskResult:
    """Outcome of one provider run."""

    success: bool
    output: str = ""
    error: str | None = None
    exit_code: int | None = None


def _event(event_type: StreamEventType, content: Any, **metadata: Any) -> EventPayload:
    return {"type": event_type.value, "content": content, "metadata": metadata}


class Provider(ABC):
    """Base class for execution providers."""

    name: str = ""

    @abstractmethod
    def is_available(self) -> bool:
        """Whether the provider's executable can be found."""

    @abstractmethod
    def build_command(self, config: TaskConfig) -> list[str]:
        """Full argv for running ``config`` as a child process."""

    def parse_line(self, config: TaskConfig, line: str) -> list[EventPayload]:
        """Translate one line of child stdout into event payloads."""
        text = line.rstrip("\n")
        if not text.strip():
            return []
        return [_event(StreamEventType.OUTPUT, text)]

    def collect_output(self, events: list[EventPayload]) -> str:
        """Final task output: the last ``result`` output, else all output text."""
        outputs = [e for e in events if e["type"] == StreamEventType.OUTPUT.value]
        results = [e for e in outputs if e.get("metadata", {}).get("result")]
        if results:
            return _text_of(results[-1]["content"])
        return "\n".join(_text_of(e["content"]) for e in outputs)

    async def execute_task(
        self,
        config: TaskConfig,
        on_event: Callable[[EventPayload], None] | None = None,
        on_spawn: Callable[[int], None] | None = None,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> TaskResult:
        """Run the task to completion, enforcing ``config.timeout``.

        ``on_spawn`` receives the child PID; ``on_event`` receives every
        parsed event payload in arrival order. A timeout kills the child (and
        anything it spawned) and yields ``exit_code=-1``. Cancellation kills
        the same tree and re-raises.
        """
        cmd = self.build_command(config)
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=dict(env) if env is not None else None,
                limit=STREAM_LINE_LIMIT,
            )
        except OSError as e:
            raise ProcessError(
                f"Failed to spawn {self.name} for task {config.task_id}: {e}",
                context={"deployed_id": config.deployed_id, "task_id": config.task_id},
            ) from e

        if on_spawn:
            on_spawn(process.pid)
        logger.debug("Spawned %s pid=%s for %s/%s", self.name, process.pid, config.deployed_id, config.task_id)

        events: list[EventPayload] = []
        stderr_chunks: list[bytes] = []

        async def _pump() -> None:
            assert process.stdout is not None and process.stderr is not None

            async def _drain_stderr() -> None:
                assert process.stderr is not None
                async for chunk in process.stderr:
                    stderr_chunks.append(chunk)

            stderr_task = asyncio.create_task(_drain_stderr())
            try:
                async for raw in process.stdout:
                    for payload in self.parse_line(config, raw.decode("utf-8", errors="replace")):
                        events.append(payload)
                        if on_event:
                            on_event(payload)
                await process.wait()
                await stderr_task
            except BaseException:
                stderr_task.cancel()
                raise

        try:
            if config.timeout:
                await asyncio.wait_for(_pump(), timeout=config.timeout)
            else:
                await _pump()
        except asyncio.TimeoutError:
            _kill_tree(process)
            await process.wait()
            logger.warning("Task %s/%s timed out after %ss", config.deployed_id, config.task_id, config.timeout)
            return TaskResult(
                success=False,
                output=self.collect_output(events),
                error=f"Task timed out after {config.timeout}s",
                exit_code=-1,
            )
        except BaseException:
            _kill_tree(process)
            await process.wait()
            raise

        exit_code = process.returncode
        stderr_text = b"".join(stderr_chunks).decode("utf-8", errors="replace").strip()
        error_events = [e for e in events if e["type"] == StreamEventType.ERROR.value]
        error: str | None = None
        if exit_code != 0:
            error = stderr_text or (
                _text_of(error_events[-1]["content"]) if error_events else f"exited with code {exit_code}"
            )
        return TaskResult(
            success=exit_code == 0,
            output=self.collect_output(events),
            error=error,
            exit_code=exit_code,
        )


def _kill_tree(process: asyncio.subprocess.Process) -> None:
    """SIGKILL the provider child and every process it spawned."""
    try:
        descendants = psutil.Process(process.pid).children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        descendants = []
    if process.returncode is None:
        process.kill()
    for proc in descendants:
        try:
            proc.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue


def _text_of(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, dict):
        for key in ("text", "message", "activity"):
            if isinstance(content.get(key), str):
                return content[key]
    return json.dumps(content, ensure_ascii=False)


class ClaudeCLIProvider(Provider):
    """Runs tasks through ``claude -p <prompt> --output-format stream-json``."""

    name = "claude"

    def __init__(
        self,
        cli_path: str | None = None,
        model: str | None = None,
        max_turns: int | None = None,
        permission_mode: str = "acceptEdits",
    ) -> None:
        self.cli_path = cli_path
        self.model = model
        self.max_turns = max_turns
        self.permission_mode = permission_mode

    def _resolve_cli(self) -> str | None:
        return self.cli_path or find_claude_cli()

    def is_available(self) -> bool:
        path = self._resolve_cli()
        return bool(path) and os.access(path, os.X_OK)

    def build_prompt(self, config: TaskConfig) -> str:
        return (
            "[Carrier Task Execution]\n"
            f"Deployment ID: {config.deployed_id}\n"
            f"Task ID: {config.task_id}\n"
            f"Agent Type: {config.agent_type}\n\n"
            f"Main Task:\n{config.prompt}\n\n"
            "Please use the Task tool with the following parameters:\n"
            f"- subagent_type: {config.agent_type}\n"
            f'- description: "Task {config.task_id} for deployment {config.deployed_id}"\n'
            '- prompt: "Execute the task described above with all provided context"\n\n'
            "Execute this task now and provide the results."
        )

    def build_command(self, config: TaskConfig) -> list[str]:
        cli = self._resolve_cli()
        if not cli:
            raise ProviderError(
                "Claude CLI not found. Install with: npm i -g @anthropic-ai/claude-code",
                context={"provider": self.name},
            )
        cmd = [
            cli,
            "-p", self.build_prompt(config),
            "--output-format", "stream-json",
            "--verbose",
            "--permission-mode", self.permission_mode,
        ]
        max_turns = config.max_turns or self.max_turns
        if max_turns:
            cmd.extend(["--max-turns", str(max_turns)])
        model = config.model or self.model
        if model:
            cmd.extend(["--model", model])
        return cmd

    def parse_line(self, config: TaskConfig, line: str) -> list[EventPayload]:
        text = line.strip()
        if not text:
            return []
        try:
            message = json.loads(text)
        except json.JSONDecodeError:
            return [_event(StreamEventType.OUTPUT, text)]
        if not isinstance(message, dict):
            return [_event(StreamEventType.OUTPUT, text)]

        kind = message.get("type")
        if kind == "system":
            model = message.get("model") or "unknown model"
            return [
                _event(
                    StreamEventType.STATUS,
                    {"status": message.get("subtype") or "system", "message": f"Session initialized ({model})"},
                )
            ]
        if kind == "assistant":
            return self._parse_blocks(message)
        if kind == "user":
            events: list[EventPayload] = []
            for block in _content_blocks(message):
                if block.get("type") == "tool_result" and block.get("is_error"):
                    events.append(_event(StreamEventType.ERROR, {"message": _text_of(block.get("content"))}))
            return events
        if kind == "result":
            if message.get("is_error") or message.get("subtype", "success") != "success":
                return [
                    _event(
                        StreamEventType.ERROR,
                        {"message": str(message.get("result") or message.get("subtype") or "error")},
                    )
                ]
            return [
                _event(
                    StreamEventType.OUTPUT,
                    {"text": str(message.get("result") or "")},
                    result=True,
                    cost=message.get("total_cost_usd"),
                    duration_ms=message.get("duration_ms"),
                    num_turns=message.get("num_turns"),
                )
            ]
        return [_event(StreamEventType.PROGRESS, {"message": f"{kind or 'event'} received"})]

    def _parse_blocks(self, message: dict[str, Any]) -> list[EventPayload]:
        events: list[EventPayload] = []
        for block in _content_blocks(message):
            block_type = block.get("type")
            if block_type == "text" and block.get("text"):
                events.append(_event(StreamEventType.AGENT_ACTIVITY, {"activity": block["text"]}))
            elif block_type == "tool_use":
                events.append(
                    _event(
                        StreamEventType.TOOL_USE,
                        {
                            "id": block.get("id"),
                            "name": block.get("name"),
                            "input": block.get("input") or {},
                            "status": "started",
                        },
                    )
                )
            elif block_type == "thinking" and block.get("thinking"):
                events.append(_event(StreamEventType.THINKING, block["thinking"]))
        return events


def _content_blocks(message: dict[str, Any]) -> list[dict[str, Any]]:
    inner = message.get("message")
    content = inner.get("content") if isinstance(inner, dict) else None
    if isinstance(content, list):
        return [b for b in content if isinstance(b, dict)]
    return []


_PROVIDERS: dict[str, type[Provider]] = {"claude": ClaudeCLIProvider}


def register_provider(provider_cls: type[Provider]) -> type[Provider]:
    """Make ``provider_cls`` available to ``get_provider`` under its ``name``."""
    if not provider_cls.name:
        raise ProviderError("Provider class must define a name")
    _PROVIDERS[provider_cls.name] = provider_cls
    return provider_cls


def available_providers() -> list[str]:
    return sorted(_PROVIDERS)


def get_provider(name: str | None = None, config: CarrierConfig | None = None) -> Provider:
    """Instantiate a provider by name, configured from ``config``."""
    config = config or CarrierConfig()
    name = (name or config.provider).lower()
    provider_cls = _PROVIDERS.get(name)
    if provider_cls is None:
        raise ProviderError(
            f"Unknown provider: {name}. Available: {', '.join(available_providers())}",
            context={"provider": name},
        )
    if provider_cls is ClaudeCLIProvider:
        return ClaudeCLIProvider(cli_path=config.cli_path, model=config.model, max_turns=config.max_turns)
    return provider_cls()
