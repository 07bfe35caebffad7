"""
Process Lifecycle Manager - spawn, track and cancel task processes.

Foreground launches supervise the provider child until it exits or times
out. Detached launches re-enter Carrier through ``python -m carrier
run-task`` in a new session so the task outlives the invoking command.

PIDs are advisory: every stored PID is re-validated against the live
process table (create time, or the ``CARRIER_DEPLOYED_ID`` tag) before it
is signaled.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import psutil

from carrier.config import CarrierConfig
from carrier.context import ContextExtractor
from carrier.exceptions import ProcessError, StateConflictError
from carrier.models import DeployedFleet, Status, utc_now
from carrier.provider import EventPayload, Provider, TaskConfig, get_provider
from carrier.registry import RegistryStore
from carrier.stream import StreamEvent, StreamEventType, StreamWriter

logger = logging.getLogger(__name__)

ENV_DETACHED = "CARRIER_DETACHED"
ENV_PATH = "CARRIER_PATH"
ENV_DEPLOYED_ID = "CARRIER_DEPLOYED_ID"
ENV_TASK_ID = "CARRIER_TASK_ID"

# Allowed drift between a recorded and a live process create_time.
_CREATE_TIME_TOLERANCE = 1.0


@dataclass
class LaunchResult:
    """Outcome of ``ProcessManager.launch``."""

    deployed_id: str
    task_id: str
    status: Status
    success: bool
    pid: int | None = None
    exit_code: int | None = None
    output: str = ""
    error: str | None = None
    detached: bool = False
    stdout_log: Path | None = None
    stderr_log: Path | None = None


@dataclass
class StopResult:
    """What ``ProcessManager.stop`` signaled and recorded."""

    deployed_id: str
    task_id: str
    stopped_at: str
    killed: list[int] = field(default_factory=list)
    orphans: list[int] = field(default_factory=list)


def is_tagged(proc: psutil.Process, deployed_id: str) -> bool:
    """Whether ``proc`` belongs to ``deployed_id``.

    Matches the exact ``CARRIER_DEPLOYED_ID`` environment tag, falling back
    to an exact ``run-task <id>`` argument pair when the environment is
    unreadable. Substrings never match.
    """
    try:
        if proc.environ().get(ENV_DEPLOYED_ID) == deployed_id:
            return True
    except (psutil.AccessDenied, psutil.ZombieProcess, psutil.NoSuchProcess, OSError):
        pass
    try:
        cmdline = proc.cmdline()
    except (psutil.AccessDenied, psutil.ZombieProcess, psutil.NoSuchProcess, OSError):
        return False
    return any(
        cmdline[i] == "run-task" and cmdline[i + 1] == deployed_id for i in range(len(cmdline) - 1)
    )


def live_process(pid: int | None, create_time: float | None = None) -> psutil.Process | None:
    """Return the live process for ``pid``, or None if gone, a zombie or a reused PID."""
    if pid is None or pid <= 0:
        return None
    try:
        proc = psutil.Process(pid)
        if proc.status() == psutil.STATUS_ZOMBIE:
            return None
        if create_time is not None and abs(proc.create_time() - create_time) > _CREATE_TIME_TOLERANCE:
            logger.debug("PID %s was reused (create_time mismatch)", pid)
            return None
        return proc
    except (psutil.NoSuchProcess, psutil.ZombieProcess):
        return None


def terminate(proc: psutil.Process, grace_period: float = 2.0) -> bool:
    """SIGTERM ``proc`` and its descendants, SIGKILL survivors after ``grace_period``.

    Returns False when the process had already exited.
    """
    try:
        procs = [proc, *proc.children(recursive=True)]
    except psutil.NoSuchProcess:
        return False
    signaled = False
    for p in procs:
        try:
            p.terminate()
            signaled = True
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied:
            logger.warning("Not permitted to signal pid %s", p.pid)
    _, alive = psutil.wait_procs(procs, timeout=grace_period)
    for p in alive:
        try:
            p.kill()
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied:
            logger.warning("Not permitted to kill pid %s", p.pid)
    if alive:
        psutil.wait_procs(alive, timeout=grace_period)
    return signaled


class ProcessManager:
    """Launches providers for tasks and enforces cancellation.

    Usage:
        manager = ProcessManager(store, config)
        result = await manager.launch("1", "analyze", "code-analyzer", prompt)
        manager.stop("1")
    """

    def __init__(
        self,
        registry: RegistryStore,
        config: CarrierConfig | None = None,
        provider: Provider | None = None,
        writer: StreamWriter | None = None,
        context: ContextExtractor | None = None,
    ) -> None:
        self.registry = registry
        self.config = config or CarrierConfig(carrier_path=registry.carrier_path)
        self._provider = provider
        self.writer = writer or StreamWriter(registry.carrier_path)
        self.context = context or ContextExtractor(registry)

    @property
    def provider(self) -> Provider:
        if self._provider is None:
            self._provider = get_provider(config=self.config)
        return self._provider

    # --- Paths and markers ---

    def logs_dir(self, deployed_id: str) -> Path:
        return self.registry.deployment_dir(deployed_id) / "logs"

    def pid_file(self, deployed_id: str, task_id: str) -> Path:
        return self.logs_dir(deployed_id) / f"{task_id}.pid"

    def stop_file(self, deployed_id: str) -> Path:
        return self.registry.deployment_dir(deployed_id) / ".stop"

    def should_stop(self, deployed_id: str) -> bool:
        """Cooperative cancellation check: has a stop been requested?"""
        return self.stop_file(deployed_id).exists()

    def clear_stop(self, deployed_id: str) -> None:
        self.stop_file(deployed_id).unlink(missing_ok=True)

    def write_pid_file(self, deployed_id: str, task_id: str, pid: int) -> None:
        try:
            create_time: float | None = psutil.Process(pid).create_time()
        except psutil.Error:
            create_time = None
        path = self.pid_file(deployed_id, task_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps({"pid": pid, "create_time": create_time}), encoding="utf-8")

    def read_pid_file(self, deployed_id: str, task_id: str) -> tuple[int, float | None] | None:
        path = self.pid_file(deployed_id, task_id)
        try:
            raw = path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return None
        if isinstance(data, int):
            return data, None
        if isinstance(data, dict) and isinstance(data.get("pid"), int):
            create_time = data.get("create_time")
            return data["pid"], float(create_time) if create_time is not None else None
        return None

    def _tracked_process(self, deployed: DeployedFleet, task_id: str) -> psutil.Process | None:
        """Validated live process for a task, from its PID file or registry PID."""
        recorded = self.read_pid_file(deployed.id, task_id)
        if recorded is not None:
            proc = live_process(*recorded)
            if proc is not None:
                return proc
        task = deployed.get_task(task_id)
        if task is None or task.pid is None:
            return None
        if recorded is not None and recorded[0] == task.pid:
            return None
        proc = live_process(task.pid)
        if proc is not None and is_tagged(proc, deployed.id):
            return proc
        if proc is not None:
            logger.warning(
                "Ignoring pid %s recorded for %s/%s: process is not tagged for this deployment",
                task.pid,
                deployed.id,
                task_id,
            )
        return None

    def is_running(self, deployed_id: str, task_id: str) -> bool:
        return self._tracked_process(self.registry.get(deployed_id), task_id) is not None

    def child_env(self, deployed_id: str, task_id: str, detached: bool = False) -> dict[str, str]:
        env = dict(os.environ)
        env[ENV_PATH] = str(self.registry.carrier_path.resolve())
        env[ENV_DEPLOYED_ID] = deployed_id
        env[ENV_TASK_ID] = task_id
        if detached:
            env[ENV_DETACHED] = "true"
        return env

    # --- Launch ---

    async def launch(
        self,
        deployed_id: str,
        task_id: str,
        agent_type: str,
        prompt: str,
        *,
        background: bool = False,
        timeout: float | None = None,
        cwd: str | None = None,
    ) -> LaunchResult:
        """Run a task in the foreground, or spawn it detached and return at once."""
        if self.should_stop(deployed_id):
            raise StateConflictError(
                f"Deployment {deployed_id} has a pending stop request; not launching {task_id}",
                current_status=Status.CANCELLED.value,
                requested_status=Status.ACTIVE.value,
            )
        self.registry.update_fleet_status(
            deployed_id, Status.ACTIVE, current_task=task_id, current_agent=agent_type
        )
        if background:
            return self._launch_detached(deployed_id, task_id, agent_type, prompt, cwd=cwd)
        return await self._launch_foreground(
            deployed_id, task_id, agent_type, prompt, timeout=timeout, cwd=cwd
        )

    async def _launch_foreground(
        self,
        deployed_id: str,
        task_id: str,
        agent_type: str,
        prompt: str,
        *,
        timeout: float | None,
        cwd: str | None,
    ) -> LaunchResult:
        self.registry.update_task_status(deployed_id, task_id, Status.ACTIVE)
        self.writer.start(deployed_id, task_id)
        task_config = TaskConfig(
            deployed_id=deployed_id,
            task_id=task_id,
            agent_type=agent_type,
            prompt=prompt,
            timeout=timeout or self.config.task_timeout,
            max_turns=self.config.max_turns,
            model=self.config.model,
        )

        def on_event(payload: EventPayload) -> None:
            self.writer.emit(
                deployed_id,
                task_id,
                StreamEvent(
                    type=payload["type"],
                    deployed_id=deployed_id,
                    task_id=task_id,
                    content=payload.get("content"),
                    metadata=payload.get("metadata") or {},
                ),
            )

        def on_spawn(pid: int) -> None:
            self.write_pid_file(deployed_id, task_id, pid)
            self.registry.update_task_process(deployed_id, task_id, pid)

        try:
            result = await self.provider.execute_task(
                task_config,
                on_event=on_event,
                on_spawn=on_spawn,
                cwd=cwd,
                env=self.child_env(deployed_id, task_id),
            )
        except ProcessError as e:
            self.writer.emit(deployed_id, task_id, StreamEventType.ERROR, {"message": e.message})
            self._finish(deployed_id, task_id, Status.FAILED, None, e.message)
            raise
        except Exception as e:
            # Unreadable child output; the provider already killed the tree.
            message = f"Task {task_id} output could not be processed: {e}"
            logger.error("Deployment %s: %s", deployed_id, message)
            self.writer.emit(deployed_id, task_id, StreamEventType.ERROR, {"message": message})
            self._finish(deployed_id, task_id, Status.FAILED, None, message)
            raise ProcessError(message, context={"deployed_id": deployed_id, "task_id": task_id}) from e
        except BaseException:
            # Interrupted or cancelled: the provider already killed its child.
            self._finish(deployed_id, task_id, Status.CANCELLED, None, "Task interrupted")
            try:
                self.registry.update_fleet_status(deployed_id, Status.CANCELLED)
            except StateConflictError:
                pass
            raise

        if self.should_stop(deployed_id):
            status = Status.CANCELLED
        elif result.success:
            status = Status.COMPLETE
        else:
            status = Status.FAILED
        self._finish(deployed_id, task_id, status, result.exit_code, result.error, timed_out=result.exit_code == -1)
        return LaunchResult(
            deployed_id=deployed_id,
            task_id=task_id,
            status=status,
            success=status == Status.COMPLETE,
            exit_code=result.exit_code,
            output=result.output,
            error=result.error,
        )

    def _finish(
        self,
        deployed_id: str,
        task_id: str,
        status: Status,
        exit_code: int | None,
        error: str | None,
        timed_out: bool = False,
    ) -> None:
        self.pid_file(deployed_id, task_id).unlink(missing_ok=True)
        deployed = self.registry.get(deployed_id)
        task = deployed.get_task(task_id)
        if task is not None and task.status == Status.CANCELLED:
            # A concurrent stop already recorded the outcome.
            status = Status.CANCELLED
            self.registry.update_task_process(deployed_id, task_id, None)
        else:
            self.registry.update_task_status(deployed_id, task_id, status, exit_code=exit_code)

        stream_status = {
            Status.COMPLETE: "completed",
            Status.FAILED: "timeout" if timed_out else "failed",
            Status.CANCELLED: "cancelled",
        }[status]
        message = error or f"Task {stream_status}"
        self.writer.finish(deployed_id, task_id, stream_status, message, exitCode=exit_code)
        try:
            self.context.record_task_context(deployed_id, task_id)
        except OSError as e:
            logger.warning("Could not record context for %s/%s: %s", deployed_id, task_id, e)
        logger.info("Task %s/%s finished: %s (exit %s)", deployed_id, task_id, status.value, exit_code)

    def detached_command(
        self, deployed_id: str, task_id: str, agent_type: str, prompt_file: Path
    ) -> list[str]:
        return [
            sys.executable,
            "-m",
            "carrier",
            "run-task",
            deployed_id,
            task_id,
            "--agent",
            agent_type,
            "--prompt-file",
            str(prompt_file),
            "--carrier-path",
            str(self.registry.carrier_path.resolve()),
        ]

    def _launch_detached(
        self,
        deployed_id: str,
        task_id: str,
        agent_type: str,
        prompt: str,
        *,
        cwd: str | None,
    ) -> LaunchResult:
        logs = self.logs_dir(deployed_id)
        logs.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        out_log = logs / f"{task_id}_{stamp}_out.log"
        err_log = logs / f"{task_id}_{stamp}_err.log"
        prompt_file = logs / f"{task_id}_{stamp}_prompt.md"
        prompt_file.write_text(prompt, encoding="utf-8")

        cmd = self.detached_command(deployed_id, task_id, agent_type, prompt_file)
        try:
            with open(out_log, "ab") as out, open(err_log, "ab") as err:
                child = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=out,
                    stderr=err,
                    cwd=cwd,
                    env=self.child_env(deployed_id, task_id, detached=True),
                    start_new_session=True,
                )
        except OSError as e:
            self.registry.update_task_status(deployed_id, task_id, Status.FAILED)
            raise ProcessError(
                f"Failed to spawn detached task {task_id} for deployment {deployed_id}: {e}",
                context={"deployed_id": deployed_id, "task_id": task_id},
            ) from e

        self.write_pid_file(deployed_id, task_id, child.pid)
        self.registry.update_task_process(deployed_id, task_id, child.pid)
        logger.info("Detached task %s/%s running as pid %s", deployed_id, task_id, child.pid)
        return LaunchResult(
            deployed_id=deployed_id,
            task_id=task_id,
            status=Status.ACTIVE,
            success=True,
            pid=child.pid,
            detached=True,
            stdout_log=out_log,
            stderr_log=err_log,
        )

    # --- Cancellation ---

    def kill(self, deployed_id: str, task_id: str) -> bool:
        """Terminate the process recorded in a task's PID file.

        Returns whether a live process was found and signaled.
        """
        recorded = self.read_pid_file(deployed_id, task_id)
        if recorded is None:
            return False
        proc = live_process(*recorded)
        signaled = proc is not None and terminate(proc, self.config.stop_grace_period)
        self.pid_file(deployed_id, task_id).unlink(missing_ok=True)
        return signaled

    def sweep_orphans(self, deployed_id: str, exclude: set[int] | None = None) -> list[int]:
        """Terminate remaining processes tagged for ``deployed_id``. Best effort."""
        skip = {os.getpid(), *(exclude or set())}
        found: list[psutil.Process] = []
        for proc in psutil.process_iter():
            if proc.pid in skip:
                continue
            if is_tagged(proc, deployed_id):
                found.append(proc)
        killed: list[int] = []
        for proc in found:
            try:
                if terminate(proc, self.config.stop_grace_period):
                    killed.append(proc.pid)
            except psutil.Error as e:
                logger.warning("Orphan sweep could not stop pid %s: %s", proc.pid, e)
        if killed:
            logger.info("Swept %d orphan process(es) for deployment %s", len(killed), deployed_id)
        return killed

    def stop(self, deployed_id: str, task_id: str | None = None) -> StopResult:
        """Cancel a deployment: marker, signals, orphan sweep, state, audit line."""
        deployed = self.registry.get(deployed_id)
        if deployed.status.is_terminal:
            raise StateConflictError(
                f"Deployment {deployed.id} is already {deployed.status.value}",
                current_status=deployed.status.value,
                requested_status=Status.CANCELLED.value,
                context={"deployed_id": deployed.id},
            )
        deployed_id = deployed.id
        target = task_id or deployed.current_task
        stopped_at = utc_now()
        stop_file = self.stop_file(deployed_id)
        stop_file.parent.mkdir(parents=True, exist_ok=True)
        stop_file.write_text(stopped_at, encoding="utf-8")

        result = StopResult(deployed_id=deployed_id, task_id=target, stopped_at=stopped_at)
        to_cancel = [
            t.task_id
            for t in deployed.tasks
            if t.task_id == target or (t.status.is_running and t.pid is not None)
        ]
        for tid in to_cancel:
            proc = self._tracked_process(deployed, tid)
            if proc is not None and terminate(proc, self.config.stop_grace_period):
                result.killed.append(proc.pid)
            self.pid_file(deployed_id, tid).unlink(missing_ok=True)

        result.orphans = self.sweep_orphans(deployed_id, exclude=set(result.killed))

        current = self.registry.get(deployed_id)
        for tid in to_cancel:
            task = current.get_task(tid)
            if task is not None and not task.status.is_terminal:
                self.registry.update_task_status(deployed_id, tid, Status.CANCELLED)
        self.registry.update_fleet_status(deployed_id, Status.CANCELLED)

        if target and self.writer.path_for(deployed_id, target).exists():
            self.writer.finish(deployed_id, target, "cancelled", "Deployment stopped")

        killed = result.killed + result.orphans
        with open(self.registry.deployment_dir(deployed_id) / "cancelled.log", "a", encoding="utf-8") as f:
            f.write(
                f"{stopped_at} Deployment {deployed_id} cancelled at task {target or '-'}"
                f" (signaled: {', '.join(map(str, killed)) or 'none'})\n"
            )
        logger.info("Stopped deployment %s at task %s", deployed_id, target)
        return result

    def describe(self, deployed_id: str) -> dict[str, Any]:
        """Process view of a deployment: live PIDs per task and the stop marker."""
        deployed = self.registry.get(deployed_id)
        running: dict[str, int] = {}
        for task in deployed.tasks:
            proc = self._tracked_process(deployed, task.task_id)
            if proc is not None:
                running[task.task_id] = proc.pid
        return {"stop_requested": self.should_stop(deployed.id), "running": running}
