"""
Context Extraction & Resumption Engine.

Two tiers of execution context:

- audit tier: ``context/<taskId>.json``, one record per task, derived from the
  task's stream log when the task exits and never modified afterwards;
- resumption tier: ``context-cache.json``, an aggregate that can be
  regenerated from the audit tier at any time.

The resumption prompt built from the aggregate is bounded by the number of
tasks, never by the size of their stream logs.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from carrier.exceptions import NotFoundError
from carrier.models import Status
from carrier.registry import RegistryStore, write_json_atomic
from carrier.stream import STREAM_SUFFIX, StreamEvent, StreamEventType, read_events, stream_path, streams_dir

logger = logging.getLogger(__name__)

# Prompt bounds
MAX_FILES_PER_TASK = 10
MAX_GLOBAL_MODIFIED = 20
MAX_GLOBAL_READ = 10
MAX_LINE_CHARS = 300
MAX_DECISIONS = 5

_DECISION_MARKERS = ("will", "need to", "should", "must")
_FILE_TOOLS = {"Read": "read", "Write": "write", "Edit": "edit", "MultiEdit": "edit"}


@dataclass
class FileAccess:
    path: str
    operation: str  # "read", "write" or "edit"
    timestamp: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "operation": self.operation, "timestamp": self.timestamp}


@dataclass
class CommandExecution:
    command: str
    directory: str | None = None
    timestamp: str = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"command": self.command, "timestamp": self.timestamp}
        if self.directory:
            data["directory"] = self.directory
        return data


@dataclass
class TaskContext:
    """What one task did, distilled from its stream log."""

    task_id: str
    files_accessed: list[FileAccess] = field(default_factory=list)
    commands_executed: list[CommandExecution] = field(default_factory=list)
    tools_used: dict[str, int] = field(default_factory=dict)
    key_decisions: list[str] = field(default_factory=list)
    last_activity: str = ""
    event_count: int = 0

    @property
    def files_read(self) -> list[str]:
        return _unique(f.path for f in self.files_accessed if f.operation == "read")

    @property
    def files_modified(self) -> list[str]:
        return _unique(f.path for f in self.files_accessed if f.operation != "read")

    def observe(self, event: StreamEvent) -> None:
        """Fold one stream event into this context."""
        self.event_count += 1
        content = event.content

        if event.type == StreamEventType.TOOL_USE.value and isinstance(content, dict) and content.get("name"):
            name = str(content["name"])
            self.tools_used[name] = self.tools_used.get(name, 0) + 1
            params = content.get("input") or content.get("parameters") or {}
            if not isinstance(params, dict):
                return
            if name in _FILE_TOOLS and params.get("file_path"):
                self.files_accessed.append(
                    FileAccess(str(params["file_path"]), _FILE_TOOLS[name], event.timestamp)
                )
            elif name == "Bash" and params.get("command"):
                self.commands_executed.append(
                    CommandExecution(str(params["command"]), params.get("cwd"), event.timestamp)
                )
            elif name == "Glob" and params.get("pattern"):
                marker = f"[search: {params['pattern']}]"
                if not any(f.path == marker for f in self.files_accessed):
                    self.files_accessed.append(FileAccess(marker, "read", event.timestamp))
            return

        if event.type == StreamEventType.AGENT_ACTIVITY.value:
            activity = content.get("activity") if isinstance(content, dict) else content
            if isinstance(activity, str) and activity:
                self.last_activity = activity
                if any(marker in activity for marker in _DECISION_MARKERS):
                    self.key_decisions.append(activity)

    def to_dict(self) -> dict[str, Any]:
        return {
            "taskId": self.task_id,
            "filesAccessed": [f.to_dict() for f in self.files_accessed],
            "commandsExecuted": [c.to_dict() for c in self.commands_executed],
            "toolsUsed": dict(self.tools_used),
            "keyDecisions": list(self.key_decisions),
            "lastActivity": self.last_activity,
            "eventCount": self.event_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskContext:
        tools = data.get("toolsUsed") or {}
        if isinstance(tools, list):
            tools = {str(k): int(v) for k, v in tools}
        return cls(
            task_id=str(data["taskId"]),
            files_accessed=[
                FileAccess(str(f["path"]), str(f.get("operation", "read")), str(f.get("timestamp", "")))
                for f in data.get("filesAccessed") or []
            ],
            commands_executed=[
                CommandExecution(str(c["command"]), c.get("directory"), str(c.get("timestamp", "")))
                for c in data.get("commandsExecuted") or []
            ],
            tools_used={str(k): int(v) for k, v in tools.items()},
            key_decisions=[str(d) for d in data.get("keyDecisions") or []],
            last_activity=str(data.get("lastActivity") or ""),
            event_count=int(data.get("eventCount") or 0),
        )


@dataclass
class DeploymentContext:
    """Aggregate of every task record of one deployment."""

    deployed_id: str
    fleet_id: str
    original_request: str
    tasks_completed: list[str] = field(default_factory=list)
    current_task: str = ""
    task_contexts: dict[str, TaskContext] = field(default_factory=dict)
    global_files_modified: list[str] = field(default_factory=list)
    global_files_read: list[str] = field(default_factory=list)
    tools_used: dict[str, int] = field(default_factory=dict)
    key_decisions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "deployedId": self.deployed_id,
            "fleetId": self.fleet_id,
            "originalRequest": self.original_request,
            "tasksCompleted": list(self.tasks_completed),
            "currentTask": self.current_task,
            "taskContexts": [ctx.to_dict() for ctx in self.task_contexts.values()],
            "globalFilesModified": list(self.global_files_modified),
            "globalFilesRead": list(self.global_files_read),
            "toolsUsed": dict(self.tools_used),
            "keyDecisions": list(self.key_decisions),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeploymentContext:
        contexts = [TaskContext.from_dict(t) for t in data.get("taskContexts") or []]
        return cls(
            deployed_id=str(data["deployedId"]),
            fleet_id=str(data.get("fleetId", "")),
            original_request=str(data.get("originalRequest", "")),
            tasks_completed=[str(t) for t in data.get("tasksCompleted") or []],
            current_task=str(data.get("currentTask") or ""),
            task_contexts={ctx.task_id: ctx for ctx in contexts},
            global_files_modified=[str(p) for p in data.get("globalFilesModified") or []],
            global_files_read=[str(p) for p in data.get("globalFilesRead") or []],
            tools_used={str(k): int(v) for k, v in (data.get("toolsUsed") or {}).items()},
            key_decisions=[str(d) for d in data.get("keyDecisions") or []],
        )


def _unique(items: Any) -> list[str]:
    seen: dict[str, None] = {}
    for item in items:
        seen.setdefault(item, None)
    return list(seen)


def _one_line(text: str, max_chars: int = MAX_LINE_CHARS) -> str:
    flat = " ".join(text.split())
    if len(flat) <= max_chars:
        return flat
    return flat[: max_chars - 3] + "..."


def _capped(paths: list[str], limit: int) -> str:
    shown = ", ".join(paths[:limit])
    if len(paths) > limit:
        shown += f" ... (+{len(paths) - limit} more)"
    return shown


class ContextExtractor:
    """Builds, aggregates and caches task execution context.

    Usage:
        extractor = ContextExtractor(store)
        extractor.record_task_context("3", "analyze")      # at task exit
        context = extractor.extract_deployment_context("3")
        prompt = extractor.generate_resumption_prompt(context)
    """

    def __init__(self, registry: RegistryStore) -> None:
        self.registry = registry

    def context_dir(self, deployed_id: str) -> Path:
        return self.registry.deployment_dir(deployed_id) / "context"

    def record_path(self, deployed_id: str, task_id: str) -> Path:
        return self.context_dir(deployed_id) / f"{task_id}.json"

    def cache_path(self, deployed_id: str) -> Path:
        return self.registry.deployment_dir(deployed_id) / "context-cache.json"

    # --- Audit tier ---

    def extract_task_context_from_stream(self, path: Path, task_id: str) -> TaskContext:
        context = TaskContext(task_id=task_id)
        events, _ = read_events(path)
        for event in events:
            context.observe(event)
        return context

    def record_task_context(self, deployed_id: str, task_id: str) -> TaskContext:
        """Derive ``context/<taskId>.json`` from the task's stream log."""
        path = stream_path(self.registry.carrier_path, deployed_id, task_id)
        context = self.extract_task_context_from_stream(path, task_id)
        write_json_atomic(self.record_path(deployed_id, task_id), context.to_dict())
        return context

    def load_task_context(self, deployed_id: str, task_id: str) -> TaskContext | None:
        """Read one task record. Missing or unparsable records yield None."""
        path = self.record_path(deployed_id, task_id)
        if not path.exists():
            return None
        try:
            return TaskContext.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning("Skipping unreadable context record %s: %s", path, e)
            return None

    # --- Resumption tier ---

    def extract_deployment_context(self, deployed_id: str) -> DeploymentContext:
        """Aggregate task records in task-graph order. Reads only.

        A task without a record (for example one stopped mid-run) is derived
        from its stream log in memory; nothing is written.
        """
        deployed = self.registry.get(deployed_id)
        folder = self.registry.deployment_dir(deployed.id)
        request_path = folder / "request.md"
        request = (
            request_path.read_text(encoding="utf-8").strip() if request_path.exists() else deployed.request
        )

        context = DeploymentContext(
            deployed_id=deployed.id,
            fleet_id=deployed.fleet_id,
            original_request=request,
            tasks_completed=[t.task_id for t in deployed.tasks if t.status == Status.COMPLETE],
            current_task=deployed.current_task,
        )
        modified: dict[str, None] = {}
        read: dict[str, None] = {}

        for task in deployed.tasks:
            task_context = self.load_task_context(deployed.id, task.task_id)
            if task_context is None:
                stream = stream_path(self.registry.carrier_path, deployed.id, task.task_id)
                if not stream.exists():
                    continue
                task_context = self.extract_task_context_from_stream(stream, task.task_id)
            context.task_contexts[task.task_id] = task_context
            for access in task_context.files_accessed:
                target = read if access.operation == "read" else modified
                target.setdefault(access.path, None)
            for name, count in task_context.tools_used.items():
                context.tools_used[name] = context.tools_used.get(name, 0) + count
            context.key_decisions.extend(task_context.key_decisions)

        context.global_files_modified = list(modified)
        context.global_files_read = list(read)
        return context

    def generate_resumption_prompt(self, context: DeploymentContext) -> str:
        """Compact prompt for continuing a stopped deployment."""
        lines: list[str] = [f"## Original Request\n{context.original_request}\n"]

        if context.tasks_completed:
            lines.append("## Completed Tasks")
            for task_id in context.tasks_completed:
                task_context = context.task_contexts.get(task_id)
                lines.append(f"\n### {task_id}")
                if task_context is None:
                    lines.append("Completed (no recorded context)")
                    continue
                if task_context.files_modified:
                    lines.append(f"Modified files: {_capped(task_context.files_modified, MAX_FILES_PER_TASK)}")
                if task_context.tools_used:
                    ranked = sorted(task_context.tools_used.items(), key=lambda kv: (-kv[1], kv[0]))
                    lines.append("Tools used: " + ", ".join(f"{name}({count})" for name, count in ranked))
                if task_context.last_activity:
                    lines.append(f"Last activity: {_one_line(task_context.last_activity)}")

        current = context.task_contexts.get(context.current_task)
        if current and (current.files_accessed or current.last_activity):
            lines.append(f"\n## Current Task: {context.current_task}")
            if current.last_activity:
                lines.append(f"Progress: {_one_line(current.last_activity)}")
            if current.files_read:
                lines.append(f"Files examined: {_capped(current.files_read, MAX_FILES_PER_TASK)}")

        if context.key_decisions:
            lines.append("\n## Key Decisions")
            for decision in context.key_decisions[-MAX_DECISIONS:]:
                lines.append(f"- {_one_line(decision)}")

        lines.append("\n## File State")
        if context.global_files_modified:
            lines.append(f"Files modified: {_capped(context.global_files_modified, MAX_GLOBAL_MODIFIED)}")
        if context.global_files_read:
            shown = ", ".join(context.global_files_read[:MAX_GLOBAL_READ])
            suffix = " ..." if len(context.global_files_read) > MAX_GLOBAL_READ else ""
            lines.append(f"Files read: {shown}{suffix}")

        lines.append("\n## Instructions")
        lines.append(
            "You are resuming a stopped deployment. The above context shows what has been completed."
        )
        lines.append(
            "Continue from where the previous task left off, maintaining consistency with previous work."
        )
        return "\n".join(lines)

    def save_context_cache(self, deployed_id: str) -> DeploymentContext:
        context = self.extract_deployment_context(deployed_id)
        write_json_atomic(self.cache_path(context.deployed_id), context.to_dict())
        return context

    def load_context_cache(self, deployed_id: str) -> DeploymentContext | None:
        path = self.cache_path(deployed_id)
        if not path.exists():
            return None
        try:
            return DeploymentContext.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning("Ignoring unreadable context cache %s: %s", path, e)
            return None

    def _newest_source_mtime(self, deployed_id: str) -> int:
        folder = self.registry.deployment_dir(deployed_id)
        sources = [
            folder / "request.md",
            folder / "metadata.json",
            *self.context_dir(deployed_id).glob("*.json"),
            *streams_dir(self.registry.carrier_path, deployed_id).glob(f"*{STREAM_SUFFIX}"),
        ]
        newest = 0
        for source in sources:
            try:
                newest = max(newest, source.stat().st_mtime_ns)
            except OSError:
                continue
        return newest

    def current_deployment_context(self, deployed_id: str) -> DeploymentContext:
        """Aggregate context, served from the cache while it is newer than every input.

        Reads only; a stale or unreadable cache falls back to
        ``extract_deployment_context``.
        """
        try:
            cached_at = self.cache_path(deployed_id).stat().st_mtime_ns
        except OSError:
            cached_at = None
        if cached_at is not None and cached_at > self._newest_source_mtime(deployed_id):
            context = self.load_context_cache(deployed_id)
            if context is not None:
                logger.debug("Using cached context for deployment %s", deployed_id)
                return context
        return self.extract_deployment_context(deployed_id)

    def fallback_resumption_prompt(self, deployed_id: str, resume_task: str | None = None) -> str:
        """Degraded prompt: the request plus raw outputs of tasks before ``resume_task``."""
        deployed = self.registry.get(deployed_id)
        resume_task = resume_task or deployed.current_task
        sections: list[str] = []
        for task in deployed.tasks:
            if task.task_id == resume_task:
                break
            try:
                output = self.registry.load_task_output(deployed.id, task.task_id)
            except NotFoundError:
                continue
            sections.append(f"## Previous Task: {task.task_id}\n\n{output}")

        if not sections:
            return deployed.request
        return (
            f"{deployed.request}\n\n## Context from Previous Tasks\n\n"
            + "\n\n".join(sections)
            + "\n\n## Instructions\nYou are resuming a stopped deployment. "
            "Continue from where the previous tasks left off."
        )

    def build_resumption_prompt(self, deployed_id: str, resume_task: str | None = None) -> str:
        """Resumption prompt from extracted context, falling back to raw outputs."""
        try:
            context = self.save_context_cache(deployed_id)
            return self.generate_resumption_prompt(context)
        except (OSError, ValueError) as e:
            logger.warning("Context extraction failed for %s, using task outputs: %s", deployed_id, e)
            return self.fallback_resumption_prompt(deployed_id, resume_task)
