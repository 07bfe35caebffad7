"""
Registry Store - file-backed persistence for deployed fleets.

Enables:
- Persistent fleet/task state tracking across crashes
- Resume of stopped or failed deployments
- Audit trail of deployments via per-deployment metadata

Every mutation is a locked read-modify-write of ``deployed/registry.json``.
"""

from __future__ import annotations

import errno
import fcntl
import json
import logging
import os
import shutil
import tempfile
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from carrier.exceptions import NotFoundError, RegistryError, StateConflictError, ValidationError
from carrier.models import (
    FLEET_TRANSITIONS,
    DeployedFleet,
    DeployedTask,
    Fleet,
    Registry,
    Status,
    utc_now,
)

logger = logging.getLogger(__name__)


def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON through a temp file and ``os.replace`` so readers never see a torn file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


class RegistryLock:
    """Exclusive advisory lock serializing registry read-modify-write cycles.

    Usage:
        with RegistryLock(lock_path, timeout=10):
            registry = store.load()
            ...
            store.save(registry)

    The lock lives on a sidecar file so the registry itself can be replaced
    atomically while the lock is held.
    """

    def __init__(self, path: Path, timeout: float = 10.0, retry_delay: float = 0.05) -> None:
        self.path = path
        self.timeout = timeout
        self.retry_delay = retry_delay
        self._file: Any = None

    def __enter__(self) -> RegistryLock:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self.path, "a+")
        start = time.monotonic()
        while True:
            try:
                fcntl.flock(self._file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                return self
            except OSError as e:
                if e.errno not in (errno.EACCES, errno.EAGAIN):
                    self._file.close()
                    self._file = None
                    raise RegistryError(
                        f"Could not lock registry: {e}", context={"path": str(self.path)}
                    ) from e
                if time.monotonic() - start >= self.timeout:
                    self._file.close()
                    self._file = None
                    raise RegistryError(
                        f"Could not acquire registry lock after {self.timeout}s",
                        context={"path": str(self.path)},
                    ) from e
                time.sleep(self.retry_delay)

    def __exit__(self, *args: Any) -> None:
        if self._file is None:
            return
        try:
            fcntl.flock(self._file.fileno(), fcntl.LOCK_UN)
        finally:
            self._file.close()
            self._file = None


class RegistryStore:
    """Durable mapping of deployment ids to deployment records.

    Usage:
        store = RegistryStore(".carrier")
        deployed = store.create("code-change", "Fix the login bug")
        store.update_fleet_status(deployed.id, Status.ACTIVE, current_task="analyze")
        store.update_task_status(deployed.id, "analyze", Status.COMPLETE)
        store.get(deployed.id)
    """

    def __init__(self, carrier_path: str | Path, lock_timeout: float = 10.0) -> None:
        self.carrier_path = Path(carrier_path)
        self.lock_timeout = lock_timeout

    # --- Paths ---

    @property
    def deployed_dir(self) -> Path:
        return self.carrier_path / "deployed"

    @property
    def registry_path(self) -> Path:
        return self.deployed_dir / "registry.json"

    @property
    def lock_path(self) -> Path:
        return self.deployed_dir / "registry.lock"

    def deployment_dir(self, deployed_id: str) -> Path:
        return self.deployed_dir / deployed_id

    # --- Fleet definitions ---

    def load_fleet(self, fleet_id: str) -> Fleet:
        """Load ``fleets/<id>/<id>.json`` (or the legacy flat ``fleets/<id>.json``)."""
        fleets_dir = self.carrier_path / "fleets"
        path = fleets_dir / fleet_id / f"{fleet_id}.json"
        if not path.exists():
            legacy = fleets_dir / f"{fleet_id}.json"
            if not legacy.exists():
                raise NotFoundError(f"Fleet {fleet_id} not found", fleet_id=fleet_id)
            path = legacy
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return Fleet.model_validate(data)
        except (json.JSONDecodeError, PydanticValidationError) as e:
            raise ValidationError(
                f"Fleet {fleet_id} definition is invalid: {e}", field_name="fleet", value=str(path)
            ) from e

    def list_fleets(self) -> list[str]:
        fleets_dir = self.carrier_path / "fleets"
        if not fleets_dir.exists():
            return []
        fleets: list[str] = []
        for entry in sorted(fleets_dir.iterdir()):
            if entry.is_dir() and (entry / f"{entry.name}.json").exists():
                fleets.append(entry.name)
            elif entry.is_file() and entry.suffix == ".json":
                fleets.append(entry.stem)
        return fleets

    # --- Registry I/O ---

    def load(self) -> Registry:
        """Read the registry. Missing or malformed files yield an empty registry."""
        if not self.registry_path.exists():
            return Registry()
        try:
            data = json.loads(self.registry_path.read_text(encoding="utf-8"))
            return Registry.model_validate(data)
        except (OSError, json.JSONDecodeError, PydanticValidationError) as e:
            logger.warning("Registry at %s is unreadable, treating as empty: %s", self.registry_path, e)
            return Registry()

    def _save(self, registry: Registry) -> None:
        try:
            write_json_atomic(self.registry_path, registry.to_json_dict())
        except OSError as e:
            raise RegistryError(
                f"Failed to write registry: {e}", context={"path": str(self.registry_path)}
            ) from e

    def write_metadata(self, deployed: DeployedFleet) -> None:
        """Refresh the denormalized ``metadata.json`` copy for one deployment."""
        folder = self.deployment_dir(deployed.id)
        if not folder.exists():
            return
        try:
            write_json_atomic(folder / "metadata.json", deployed.to_json_dict())
        except OSError as e:
            raise RegistryError(
                f"Failed to write metadata for deployment {deployed.id}: {e}",
                context={"deployed_id": deployed.id},
            ) from e

    @contextmanager
    def transaction(self) -> Iterator[Registry]:
        """Hold the registry lock across one read-modify-write cycle.

        The registry is saved only when the block exits without an exception.
        """
        with RegistryLock(self.lock_path, timeout=self.lock_timeout):
            registry = self.load()
            yield registry
            self._save(registry)

    @contextmanager
    def _mutate(self, deployed_id: str) -> Iterator[DeployedFleet]:
        with self.transaction() as registry:
            deployed = registry.find(deployed_id)
            if deployed is None:
                raise NotFoundError(f"Deployment {deployed_id} not found", deployed_id=deployed_id)
            yield deployed
        self.write_metadata(deployed)

    # --- Queries ---

    def find(self, deployed_id: str) -> DeployedFleet | None:
        return self.load().find(deployed_id)

    def get(self, deployed_id: str) -> DeployedFleet:
        deployed = self.find(deployed_id)
        if deployed is None:
            raise NotFoundError(f"Deployment {deployed_id} not found", deployed_id=deployed_id)
        return deployed

    def list(self, status: Status | None = None) -> list[DeployedFleet]:
        deployments = self.load().deployed_fleets
        if status is None:
            return deployments
        return [d for d in deployments if d.status == status]

    # --- Mutations ---

    def create(self, fleet_id: str, request: str) -> DeployedFleet:
        """Create a pending deployment of ``fleet_id`` with the next free id."""
        fleet = self.load_fleet(fleet_id)
        if not fleet.tasks:
            raise ValidationError(f"Fleet {fleet_id} has no tasks", field_name="tasks")

        with self.transaction() as registry:
            existing = [int(d.id) for d in registry.deployed_fleets if d.id.isdigit()]
            next_id = max([registry.next_id, *(i + 1 for i in existing)])
            same_fleet = sum(1 for d in registry.deployed_fleets if d.fleet_id == fleet_id)
            date = datetime.now(timezone.utc).strftime("%Y%m%d")

            deployed = DeployedFleet(
                id=str(next_id),
                unique_id=f"{fleet_id}-{same_fleet + 1:03d}-{date}",
                fleet_id=fleet_id,
                request=request,
                status=Status.PENDING,
                current_task=fleet.tasks[0].id,
                current_agent=fleet.tasks[0].agent,
                tasks=[DeployedTask(task_id=task.id) for task in fleet.tasks],
            )
            folder = self.deployment_dir(deployed.id)
            (folder / "outputs").mkdir(parents=True, exist_ok=True)
            (folder / "request.md").write_text(request, encoding="utf-8")

            registry.deployed_fleets.append(deployed)
            registry.next_id = next_id + 1

        self.write_metadata(deployed)
        logger.info("Created deployment %s of fleet %s", deployed.id, fleet_id)
        return deployed

    def update_fleet_status(
        self,
        deployed_id: str,
        status: Status | str,
        current_task: str | None = None,
        current_agent: str | None = None,
    ) -> DeployedFleet:
        """Transition a deployment, optionally moving its current task pointer."""
        status = Status(status)
        with self._mutate(deployed_id) as deployed:
            if status not in FLEET_TRANSITIONS[deployed.status]:
                raise StateConflictError(
                    f"Deployment {deployed_id} cannot go from {deployed.status.value} to {status.value}",
                    current_status=deployed.status.value,
                    requested_status=status.value,
                )
            now = utc_now()

            if current_task:
                task = deployed.get_task(current_task)
                if task is None:
                    raise NotFoundError(
                        f"Task {current_task} is not part of deployment {deployed_id}",
                        deployed_id=deployed_id,
                        task_id=current_task,
                    )
                if status.is_running and not task.status.is_running:
                    task.status = status
                    task.deployed_at = task.deployed_at or now
                    task.completed_at = ""
                    task.exit_code = None
                deployed.current_task = current_task
                deployed.current_agent = current_agent or self._agent_for(deployed, current_task)
            elif current_agent:
                deployed.current_agent = current_agent

            if deployed.status.is_terminal and status == Status.ACTIVE:
                deployed.completed_at = ""
            if status == Status.COMPLETE:
                for task in deployed.tasks:
                    if task.status.is_running:
                        task.status = Status.COMPLETE
                        task.completed_at = task.completed_at or now
                        task.pid = None
            if status.is_terminal:
                deployed.completed_at = now
            deployed.status = status

        logger.debug("Deployment %s -> %s", deployed_id, status.value)
        return deployed

    def update_task_status(
        self,
        deployed_id: str,
        task_id: str,
        status: Status | str,
        exit_code: int | None = None,
    ) -> DeployedFleet:
        """Set one task's status; unrelated tasks and deployments are untouched."""
        status = Status(status)
        with self._mutate(deployed_id) as deployed:
            task = deployed.get_task(task_id)
            if task is None:
                raise NotFoundError(
                    f"Task {task_id} is not part of deployment {deployed_id}",
                    deployed_id=deployed_id,
                    task_id=task_id,
                )
            now = utc_now()
            task.status = status
            if status == Status.PENDING:
                task.deployed_at = ""
                task.started_at = None
                task.completed_at = ""
                task.exit_code = None
            elif status == Status.ACTIVE:
                task.deployed_at = task.deployed_at or now
                task.started_at = task.started_at or now
                task.completed_at = ""
            elif status.is_terminal:
                task.completed_at = now
            if exit_code is not None:
                task.exit_code = exit_code
            if not status.is_running:
                task.pid = None

        logger.debug("Deployment %s task %s -> %s", deployed_id, task_id, status.value)
        return deployed

    def update_task_process(self, deployed_id: str, task_id: str, pid: int | None) -> DeployedFleet:
        """Record (or clear, with ``pid=None``) the process running a task."""
        with self._mutate(deployed_id) as deployed:
            task = deployed.get_task(task_id)
            if task is None:
                raise NotFoundError(
                    f"Task {task_id} is not part of deployment {deployed_id}",
                    deployed_id=deployed_id,
                    task_id=task_id,
                )
            if pid is not None:
                now = utc_now()
                task.status = Status.ACTIVE if not task.status.is_running else task.status
                task.deployed_at = task.deployed_at or now
                task.started_at = now
            task.pid = pid
        return deployed

    def remove(self, deployed_id: str, keep_outputs: bool = False) -> None:
        """Drop a deployment from the registry and delete its directory."""
        with self.transaction() as registry:
            deployed = registry.find(deployed_id)
            if deployed is None:
                raise NotFoundError(f"Deployment {deployed_id} not found", deployed_id=deployed_id)
            registry.deployed_fleets.remove(deployed)

        folder = self.deployment_dir(deployed.id)
        if not folder.exists():
            return
        if keep_outputs:
            for child in folder.iterdir():
                if child.name == "outputs":
                    continue
                if child.is_dir():
                    shutil.rmtree(child, ignore_errors=True)
                else:
                    child.unlink(missing_ok=True)
        else:
            shutil.rmtree(folder, ignore_errors=True)

    def clean_completed(self) -> list[str]:
        """Remove every deployment with status ``complete``. Returns removed ids."""
        with self.transaction() as registry:
            removed = [d for d in registry.deployed_fleets if d.status == Status.COMPLETE]
            registry.deployed_fleets = [
                d for d in registry.deployed_fleets if d.status != Status.COMPLETE
            ]
        for deployed in removed:
            shutil.rmtree(self.deployment_dir(deployed.id), ignore_errors=True)
        return [d.id for d in removed]

    # --- Task outputs ---

    def save_task_output(
        self,
        deployed_id: str,
        task_id: str,
        output: str,
        bundle: dict[str, Any] | None = None,
    ) -> Path:
        """Write ``outputs/<task>.md`` and the structured ``outputs/<task>.json``."""
        outputs = self.deployment_dir(deployed_id) / "outputs"
        outputs.mkdir(parents=True, exist_ok=True)
        md_path = outputs / f"{task_id}.md"
        md_path.write_text(output, encoding="utf-8")
        write_json_atomic(outputs / f"{task_id}.json", bundle or {"taskId": task_id, "output": output})
        return md_path

    def load_task_output(self, deployed_id: str, task_id: str) -> str:
        path = self.deployment_dir(deployed_id) / "outputs" / f"{task_id}.md"
        if not path.exists():
            raise NotFoundError(
                f"Task output {task_id}.md not found for deployment {deployed_id}",
                deployed_id=deployed_id,
                task_id=task_id,
            )
        return path.read_text(encoding="utf-8")

    def _agent_for(self, deployed: DeployedFleet, task_id: str) -> str | None:
        try:
            task = self.load_fleet(deployed.fleet_id).get_task(task_id)
        except (NotFoundError, ValidationError):
            return deployed.current_agent
        return task.agent if task else deployed.current_agent
