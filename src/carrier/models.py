"""Fleet definitions and deployment records."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> str:
    """ISO-8601 UTC timestamp used for every persisted time field."""
    return datetime.now(timezone.utc).isoformat()


class Status(str, Enum):
    """Status shared by deployed fleets and deployed tasks."""

    PENDING = "pending"
    ACTIVE = "active"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_running(self) -> bool:
        return self in (Status.ACTIVE, Status.AWAITING_APPROVAL)


TERMINAL_STATUSES = frozenset({Status.COMPLETE, Status.FAILED, Status.CANCELLED})

# Allowed fleet status transitions. COMPLETE is final; FAILED and CANCELLED only reopen to ACTIVE.
FLEET_TRANSITIONS: dict[Status, frozenset[Status]] = {
    Status.PENDING: frozenset(
        {Status.PENDING, Status.ACTIVE, Status.COMPLETE, Status.FAILED, Status.CANCELLED}
    ),
    Status.ACTIVE: frozenset(
        {Status.ACTIVE, Status.AWAITING_APPROVAL, Status.COMPLETE, Status.FAILED, Status.CANCELLED}
    ),
    Status.AWAITING_APPROVAL: frozenset(
        {Status.ACTIVE, Status.AWAITING_APPROVAL, Status.COMPLETE, Status.FAILED, Status.CANCELLED}
    ),
    Status.COMPLETE: frozenset(),
    Status.FAILED: frozenset({Status.ACTIVE}),
    Status.CANCELLED: frozenset({Status.ACTIVE}),
}


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, use_enum_values=False)

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class InputDefinition(_CamelModel):
    type: str
    source: str


class OutputDefinition(_CamelModel):
    type: str
    path: str


class TaskRoute(_CamelModel):
    """One entry of a task's routing table."""

    task_id: str = Field(alias="taskId")
    condition: str = "success"
    context: str | None = None


class Task(_CamelModel):
    """A node of the fleet graph."""

    id: str
    agent: str
    description: str = ""
    inputs: list[InputDefinition] = Field(default_factory=list)
    outputs: list[OutputDefinition] = Field(default_factory=list)
    next_tasks: list[TaskRoute] = Field(default_factory=list, alias="nextTasks")
    approval_required: bool = False


class Fleet(_CamelModel):
    """Static task graph definition, authored outside Carrier."""

    id: str
    description: str = ""
    agent: str | None = None
    tasks: list[Task] = Field(default_factory=list)

    def get_task(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None


class DeployedTask(_CamelModel):
    """Runtime state of one task within a deployment."""

    task_id: str = Field(alias="taskId")
    status: Status = Status.PENDING
    deployed_at: str = Field(default="", alias="deployedAt")
    started_at: str | None = Field(default=None, alias="startedAt")
    completed_at: str = Field(default="", alias="completedAt")
    pid: int | None = None
    exit_code: int | None = Field(default=None, alias="exitCode")


class DeployedFleet(_CamelModel):
    """Runtime instance of a fleet."""

    id: str
    unique_id: str | None = Field(default=None, alias="uniqueId")
    fleet_id: str = Field(alias="fleetId")
    request: str
    status: Status = Status.PENDING
    current_task: str = Field(default="", alias="currentTask")
    current_agent: str | None = Field(default=None, alias="currentAgent")
    deployed_at: str = Field(default_factory=utc_now, alias="deployedAt")
    completed_at: str = Field(default="", alias="completedAt")
    tasks: list[DeployedTask] = Field(default_factory=list)

    def get_task(self, task_id: str) -> DeployedTask | None:
        for task in self.tasks:
            if task.task_id == task_id:
                return task
        return None

    def matches(self, deployed_id: str) -> bool:
        return self.id == deployed_id or (self.unique_id is not None and self.unique_id == deployed_id)


class Registry(_CamelModel):
    """Persisted index of every deployment."""

    deployed_fleets: list[DeployedFleet] = Field(default_factory=list, alias="deployedFleets")
    next_id: int = Field(default=1, alias="nextId")

    def find(self, deployed_id: str) -> DeployedFleet | None:
        for deployed in self.deployed_fleets:
            if deployed.matches(deployed_id):
                return deployed
        return None
