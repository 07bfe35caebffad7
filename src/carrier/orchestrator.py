"""
Orchestration Core - deploy fleets and drive them through their task graph.

Usage:
    carrier = Carrier(CarrierConfig.load())
    deployed = await carrier.deploy("code-change", "Fix the login bug")
    carrier.stop(deployed.id)
    await carrier.start(deployed.id)
"""

from __future__ import annotations

import logging
from datetime import datetime

from carrier.config import CarrierConfig
from carrier.context import ContextExtractor, TaskContext
from carrier.exceptions import NotFoundError, ProcessError, ProviderError, StateConflictError
from carrier.models import DeployedFleet, DeployedTask, Fleet, Status, Task, TaskRoute, utc_now
from carrier.process import LaunchResult, ProcessManager, StopResult
from carrier.provider import Provider
from carrier.registry import RegistryStore
from carrier.reporter import APIReporter
from carrier.routing import RouteContext, is_complete_route, select_route, validate_routes
from carrier.stream import StreamWriter, read_events, stream_path

logger = logging.getLogger(__name__)


def _duration(start: str | None, end: str | None) -> str:
    if not start or not end:
        return "-"
    try:
        seconds = (datetime.fromisoformat(end) - datetime.fromisoformat(start)).total_seconds()
    except ValueError:
        return "-"
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m"


class Carrier:
    """Composes the registry, process manager, context engine and reporter."""

    def __init__(
        self,
        config: CarrierConfig | None = None,
        provider: Provider | None = None,
        reporter: APIReporter | None = None,
    ) -> None:
        self.config = config or CarrierConfig()
        self.registry = RegistryStore(self.config.carrier_path, lock_timeout=self.config.lock_timeout)
        self.writer = StreamWriter(self.config.carrier_path)
        self.context = ContextExtractor(self.registry)
        self.processes = ProcessManager(
            self.registry, self.config, provider=provider, writer=self.writer, context=self.context
        )
        self.reporter = reporter if reporter is not None else APIReporter.from_config(self.config)

    # --- Helpers ---

    def _require_provider(self) -> None:
        provider = self.processes.provider
        if not provider.is_available():
            raise ProviderError(
                f"Provider {provider.name} is not available; install its CLI or set cli_path",
                context={"provider": provider.name},
            )

    def _task_definition(self, fleet: Fleet, task_id: str) -> Task:
        task = fleet.get_task(task_id)
        if task is None:
            raise NotFoundError(
                f"Task {task_id} is not defined in fleet {fleet.id}", task_id=task_id, fleet_id=fleet.id
            )
        return task

    def build_task_prompt(
        self, deployed: DeployedFleet, task: Task, route_context: str | None = None
    ) -> str:
        """Request, task description, route context and referenced task outputs."""
        sections = [deployed.request]
        if task.description:
            sections.append(f"## Task: {task.id}\n{task.description}")
        if route_context:
            sections.append(f"## Context\n{route_context}")
        for item in task.inputs:
            if item.type != "output":
                continue
            try:
                content = self.registry.load_task_output(deployed.id, item.source)
            except NotFoundError:
                content = "(not available yet)"
            sections.append(f"## Output of {item.source}\n{content}")
        return "\n\n".join(sections)

    # --- Deploy and run ---

    async def deploy(
        self,
        fleet_id: str,
        request: str,
        *,
        detach: bool = False,
        timeout: float | None = None,
    ) -> DeployedFleet:
        """Create a deployment and launch its first task."""
        fleet = self.registry.load_fleet(fleet_id)
        validate_routes(fleet.tasks)
        self._require_provider()
        deployed = self.registry.create(fleet_id, request)
        if self.reporter is not None:
            self.reporter.set_deployment_id(deployed.id)

        first = fleet.tasks[0]
        prompt = self.build_task_prompt(deployed, first)
        if detach:
            await self.processes.launch(deployed.id, first.id, first.agent, prompt, background=True)
            return self.registry.get(deployed.id)
        return await self.run_task(deployed.id, first.id, prompt, timeout=timeout)

    async def run_task(
        self,
        deployed_id: str,
        task_id: str,
        prompt: str,
        *,
        agent_type: str | None = None,
        timeout: float | None = None,
        cwd: str | None = None,
    ) -> DeployedFleet:
        """Run a task in the foreground and keep following routes until the fleet stops."""
        deployed = self.registry.get(deployed_id)
        fleet = self.registry.load_fleet(deployed.fleet_id)
        if self.reporter is not None and self.reporter.deployment_id is None:
            self.reporter.set_deployment_id(deployed.id)

        next_step: tuple[Task, str] | None = (self._task_definition(fleet, task_id), prompt)
        agent = agent_type
        while next_step is not None:
            task, task_prompt = next_step
            agent = agent or task.agent
            if self.reporter is not None:
                await self.reporter.report_task_start(deployed.id, task.id, agent)
            try:
                result = await self.processes.launch(
                    deployed.id, task.id, agent, task_prompt, timeout=timeout, cwd=cwd
                )
            except ProcessError:
                self.registry.update_fleet_status(deployed.id, Status.FAILED)
                raise
            if self.reporter is not None:
                events, _ = read_events(stream_path(self.config.carrier_path, deployed.id, task.id))
                await self.reporter.batch_report_logs(deployed.id, task.id, events)
                await self.reporter.report_task_complete(
                    deployed.id,
                    task.id,
                    result.output,
                    "completed" if result.success else "failed",
                    result.error,
                )
            next_step = await self.complete_task(deployed.id, task.id, result)
            agent = None
        return self.registry.get(deployed.id)

    async def complete_task(
        self, deployed_id: str, task_id: str, result: LaunchResult
    ) -> tuple[Task, str] | None:
        """Persist a finished task's outputs and pick what runs next.

        Returns the next task and its prompt, or None when the fleet stops
        here (completed, failed, cancelled or parked for approval).
        """
        deployed = self.registry.get(deployed_id)
        fleet = self.registry.load_fleet(deployed.fleet_id)
        task = self._task_definition(fleet, task_id)

        self.registry.save_task_output(
            deployed.id,
            task_id,
            result.output,
            {
                "taskId": task_id,
                "agent": task.agent,
                "status": result.status.value,
                "exitCode": result.exit_code,
                "output": result.output,
                "error": result.error,
                "completedAt": utc_now(),
            },
        )

        if result.status == Status.CANCELLED or self.processes.should_stop(deployed.id):
            logger.info("Deployment %s was stopped during task %s", deployed.id, task_id)
            return None

        if result.status == Status.COMPLETE and task.approval_required:
            self.registry.update_task_status(deployed.id, task_id, Status.AWAITING_APPROVAL)
            self.registry.update_fleet_status(deployed.id, Status.AWAITING_APPROVAL, current_task=task_id)
            logger.info("Deployment %s awaiting approval after task %s", deployed.id, task_id)
            return None

        route = select_route(
            task, RouteContext(status=result.status, output=result.output, exit_code=result.exit_code)
        )
        return await self._follow_route(deployed, fleet, task, route, succeeded=result.status == Status.COMPLETE)

    async def _follow_route(
        self,
        deployed: DeployedFleet,
        fleet: Fleet,
        task: Task,
        route: TaskRoute | None,
        succeeded: bool,
    ) -> tuple[Task, str] | None:
        if route is None or is_complete_route(route):
            final = Status.COMPLETE if (succeeded or route is not None) else Status.FAILED
            self.registry.update_fleet_status(deployed.id, final)
            logger.info("Deployment %s finished: %s", deployed.id, final.value)
            if self.reporter is not None:
                await self.reporter.report_deployment_complete(
                    deployed.id, final == Status.COMPLETE, f"Finished after task {task.id}"
                )
            return None

        next_task = fleet.get_task(route.task_id)
        if next_task is None:
            self.registry.update_fleet_status(deployed.id, Status.FAILED)
            raise NotFoundError(
                f"Task {task.id} routes to unknown task {route.task_id}",
                deployed_id=deployed.id,
                task_id=route.task_id,
            )
        logger.info("Deployment %s routing %s -> %s", deployed.id, task.id, next_task.id)
        prompt = self.build_task_prompt(deployed, next_task, route.context)
        return next_task, prompt

    # --- Approval ---

    async def approve(self, deployed_id: str, *, detach: bool = False) -> DeployedFleet:
        """Resume a fleet parked in ``awaiting_approval``."""
        deployed = self.registry.get(deployed_id)
        if deployed.status != Status.AWAITING_APPROVAL:
            raise StateConflictError(
                f"Deployment {deployed.id} is not awaiting approval (status: {deployed.status.value})",
                current_status=deployed.status.value,
                requested_status=Status.ACTIVE.value,
            )
        fleet = self.registry.load_fleet(deployed.fleet_id)
        task = self._task_definition(fleet, deployed.current_task)
        deployed_task = deployed.get_task(task.id)
        self.registry.update_task_status(deployed.id, task.id, Status.COMPLETE)

        try:
            output = self.registry.load_task_output(deployed.id, task.id)
        except NotFoundError:
            output = ""
        route = select_route(
            task,
            RouteContext(
                status=Status.COMPLETE,
                output=output,
                exit_code=deployed_task.exit_code if deployed_task else None,
                approved=True,
            ),
        )
        next_step = await self._follow_route(deployed, fleet, task, route, succeeded=True)
        if next_step is None:
            return self.registry.get(deployed.id)

        next_task, prompt = next_step
        if detach:
            await self.processes.launch(deployed.id, next_task.id, next_task.agent, prompt, background=True)
            return self.registry.get(deployed.id)
        return await self.run_task(deployed.id, next_task.id, prompt)

    # --- Stop and start ---

    def stop(self, deployed_id: str, task_id: str | None = None) -> StopResult:
        return self.processes.stop(deployed_id, task_id)

    def _resume_point(self, deployed: DeployedFleet, fleet: Fleet) -> Task:
        if deployed.current_task and fleet.get_task(deployed.current_task):
            return self._task_definition(fleet, deployed.current_task)
        for task in fleet.tasks:
            runtime = deployed.get_task(task.id)
            if runtime is None or runtime.status != Status.COMPLETE:
                return task
        raise StateConflictError(
            f"Deployment {deployed.id} has no unfinished task to resume",
            current_status=deployed.status.value,
            requested_status=Status.ACTIVE.value,
        )

    def check_startable(self, deployed: DeployedFleet, from_start: bool = False) -> None:
        """Raise StateConflictError unless ``deployed`` may be (re)started."""
        current = deployed.get_task(deployed.current_task) if deployed.current_task else None
        current_failed = current is not None and current.status == Status.FAILED
        if deployed.status == Status.COMPLETE:
            raise StateConflictError(
                f"Deployment {deployed.id} is already complete",
                current_status=deployed.status.value,
                requested_status=Status.ACTIVE.value,
            )
        if deployed.status.is_running and not current_failed:
            raise StateConflictError(
                f"Deployment {deployed.id} is already {deployed.status.value}",
                current_status=deployed.status.value,
                requested_status=Status.ACTIVE.value,
            )
        has_failed_task = any(t.status == Status.FAILED for t in deployed.tasks)
        if deployed.status not in (Status.CANCELLED, Status.FAILED) and not has_failed_task and not from_start:
            raise StateConflictError(
                f"Deployment {deployed.id} is {deployed.status.value}; nothing to restart",
                current_status=deployed.status.value,
                requested_status=Status.ACTIVE.value,
            )

    async def start(
        self,
        deployed_id: str,
        *,
        from_start: bool = False,
        detach: bool = False,
        timeout: float | None = None,
    ) -> DeployedFleet:
        """Reopen a stopped or failed deployment.

        Without ``from_start`` the resumed task gets a resumption prompt built
        from recorded context instead of the original request.
        """
        deployed = self.registry.get(deployed_id)
        self.check_startable(deployed, from_start)
        self._require_provider()
        self.processes.clear_stop(deployed.id)
        fleet = self.registry.load_fleet(deployed.fleet_id)

        if from_start:
            for task in deployed.tasks:
                self.registry.update_task_status(deployed.id, task.task_id, Status.PENDING)
            resume = fleet.tasks[0]
            prompt = self.build_task_prompt(deployed, resume)
        else:
            resume = self._resume_point(deployed, fleet)
            prompt = self.context.build_resumption_prompt(deployed.id, resume.id)

        logger.info("Starting deployment %s at task %s", deployed.id, resume.id)
        if detach:
            await self.processes.launch(deployed.id, resume.id, resume.agent, prompt, background=True)
            return self.registry.get(deployed.id)
        return await self.run_task(deployed.id, resume.id, prompt, timeout=timeout)

    # --- Queries ---

    def status(self, deployed_id: str | None = None) -> DeployedFleet | list[DeployedFleet]:
        if deployed_id is None:
            return self.registry.list()
        return self.registry.get(deployed_id)

    def summary(self, deployed_id: str) -> str:
        """Markdown report of a deployment's tasks and activity."""
        deployed = self.registry.get(deployed_id)
        context = self.context.current_deployment_context(deployed.id)
        end = deployed.completed_at or None

        lines = [
            f"# Deployment {deployed.id}: {deployed.fleet_id}",
            "",
            f"- **Status:** {deployed.status.value}",
            f"- **Unique ID:** {deployed.unique_id or '-'}",
            f"- **Deployed:** {deployed.deployed_at}",
            f"- **Duration:** {_duration(deployed.deployed_at, end or utc_now())}",
            "",
            "## Request",
            "",
            deployed.request,
            "",
            "## Tasks",
            "",
            "| Task | Status | Duration | Exit | Tools | Files read | Files modified |",
            "|------|--------|----------|------|-------|------------|----------------|",
        ]
        for task in deployed.tasks:
            lines.append(self._summary_row(task, context.task_contexts.get(task.task_id)))

        if context.tools_used:
            ranked = sorted(context.tools_used.items(), key=lambda kv: (-kv[1], kv[0]))
            lines += ["", "## Tool Usage", ""]
            lines += [f"- {name}: {count}" for name, count in ranked]
        if context.global_files_modified:
            lines += ["", "## Files Modified", ""]
            lines += [f"- {path}" for path in context.global_files_modified]
        return "\n".join(lines) + "\n"

    def _summary_row(self, task: DeployedTask, task_context: TaskContext | None) -> str:
        tools = reads = writes = 0
        if task_context is not None:
            tools = sum(task_context.tools_used.values())
            reads = len(task_context.files_read)
            writes = len(task_context.files_modified)
        exit_code = "-" if task.exit_code is None else str(task.exit_code)
        duration = _duration(task.started_at or task.deployed_at or None, task.completed_at or None)
        return (
            f"| {task.task_id} | {task.status.value} | {duration} | {exit_code} "
            f"| {tools} | {reads} | {writes} |"
        )
