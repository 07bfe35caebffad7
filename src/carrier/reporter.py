"""Best-effort reporting of task execution to a remote Carrier API.

Reporting never blocks task progress: every transport or server error is
logged and swallowed.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from carrier.config import CarrierConfig
from carrier.models import utc_now
from carrier.stream import StreamEvent, event_to_log_record

logger = logging.getLogger(__name__)


class APIReporter:
    """Mirror task lifecycle and stream logs to ``{api_url}/api/deployments/...``.

    The server assigns an execution id per task on ``report_task_start``;
    later calls for that task are keyed by it and skipped when it is unknown.
    """

    def __init__(
        self,
        api_url: str,
        api_key: str | None = None,
        enabled: bool = True,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.enabled = enabled
        self.timeout = timeout
        self.deployment_id: str | None = None
        self.task_execution_ids: dict[str, str] = {}
        self._client = client

    @classmethod
    def from_config(cls, config: CarrierConfig) -> APIReporter | None:
        if not config.reporting_enabled or not config.api_url:
            return None
        return cls(config.api_url, api_key=config.api_key, timeout=config.api_timeout)

    def set_deployment_id(self, deployment_id: str) -> None:
        self.deployment_id = deployment_id

    @property
    def active(self) -> bool:
        return self.enabled and self.deployment_id is not None

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _request(self, method: str, path: str, payload: Any) -> httpx.Response:
        url = f"{self.api_url}{path}"
        if self._client is not None:
            response = await self._client.request(method, url, json=payload, headers=self._headers())
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(method, url, json=payload, headers=self._headers())
        response.raise_for_status()
        return response

    async def report_task_start(self, deployed_id: str, task_id: str, agent_name: str) -> str | None:
        """Announce a task; returns the server-assigned execution id."""
        if not self.active:
            return None
        payload = {
            "taskId": task_id,
            "taskName": task_id,
            "agentName": agent_name,
            "status": "running",
            "startedAt": utc_now(),
        }
        try:
            response = await self._request("POST", f"/api/deployments/{self.deployment_id}/tasks", payload)
            execution_id = response.json().get("id")
        except httpx.HTTPStatusError as e:
            logger.warning(
                "Failed to report task start for %s/%s: %s - %s",
                deployed_id,
                task_id,
                e.response.status_code,
                e.response.text,
            )
            return None
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            logger.warning("Failed to report task start for %s/%s: %s", deployed_id, task_id, e)
            return None
        if execution_id is None:
            logger.warning("Task start for %s/%s returned no execution id", deployed_id, task_id)
            return None
        self.task_execution_ids[task_id] = str(execution_id)
        return str(execution_id)

    async def report_task_complete(
        self,
        deployed_id: str,
        task_id: str,
        output: str,
        status: str,
        error: str | None = None,
    ) -> bool:
        """Report a task's final status (``completed`` or ``failed``)."""
        if not self.active:
            return False
        execution_id = self.task_execution_ids.get(task_id)
        if execution_id is None:
            logger.warning("No task execution id for %s/%s", deployed_id, task_id)
            return False
        payload = {"status": status, "output": output, "error": error, "completedAt": utc_now()}
        try:
            await self._request(
                "PUT", f"/api/deployments/{self.deployment_id}/tasks/{execution_id}", payload
            )
        except httpx.HTTPError as e:
            logger.warning("Failed to report task completion for %s/%s: %s", deployed_id, task_id, e)
            return False
        logger.info("Reported task completion to API: %s (%s)", task_id, status)
        return True

    async def batch_report_logs(
        self, deployed_id: str, task_id: str, events: list[StreamEvent]
    ) -> int:
        """Send a task's events as leveled log records. Returns the count sent."""
        if not self.active or not events:
            return 0
        execution_id = self.task_execution_ids.get(task_id)
        if execution_id is None:
            return 0
        logs = [event_to_log_record(event).to_dict() for event in events]
        try:
            await self._request(
                "POST", f"/api/deployments/{self.deployment_id}/tasks/{execution_id}/logs", logs
            )
        except httpx.HTTPError as e:
            logger.warning("Failed to batch report logs for %s/%s: %s", deployed_id, task_id, e)
            return 0
        logger.info("Reported %d logs to API for task %s", len(logs), task_id)
        return len(logs)

    async def report_deployment_complete(
        self, deployed_id: str, success: bool, message: str | None = None
    ) -> bool:
        if not self.active:
            return False
        payload = {
            "status": "completed" if success else "failed",
            "completedAt": utc_now(),
            "result": {"success": success, "message": message},
        }
        try:
            await self._request("PUT", f"/api/deployments/{self.deployment_id}", payload)
        except httpx.HTTPError as e:
            logger.warning("Failed to report completion of deployment %s: %s", deployed_id, e)
            return False
        logger.info("Reported deployment completion to API: %s", "SUCCESS" if success else "FAILED")
        return True
