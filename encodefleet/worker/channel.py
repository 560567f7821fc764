"""HTTP reporting channel used by worker agents to talk to the API."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from encodefleet.core.config import Settings, get_settings
from encodefleet.core.errors import AssignmentConflict, JobNotFound, TransientInfraError, WorkerNotFound
from encodefleet.fleet.models import HeartbeatResponse
from encodefleet.jobs.models import AssignmentResponse, JobOutcome

logger = logging.getLogger(__name__)


class HttpReportingChannel:
    def __init__(self, client: httpx.Client):
        self._client = client

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "HttpReportingChannel":
        settings = settings or get_settings()
        client = httpx.Client(base_url=settings.API_BASE_URL, timeout=settings.PROVIDER_TIMEOUT_SECONDS)
        return cls(client)

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, url: str, operation: str, **kwargs) -> httpx.Response:
        try:
            resp = self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise TransientInfraError(f"{operation} failed: {e}", operation=operation) from e
        if resp.status_code >= 500 or resp.status_code == 429:
            raise TransientInfraError(f"{operation} returned {resp.status_code}", operation=operation)
        return resp

    def heartbeat(self, worker_id: str) -> HeartbeatResponse:
        resp = self._request("POST", f"/workers/{worker_id}/heartbeat", "heartbeat")
        if resp.status_code == 404:
            raise WorkerNotFound(worker_id)
        resp.raise_for_status()
        return HeartbeatResponse(**resp.json())

    def poll_assignment(self, worker_id: str) -> AssignmentResponse:
        resp = self._request("GET", f"/workers/{worker_id}/assignment", "poll_assignment")
        if resp.status_code == 404:
            raise WorkerNotFound(worker_id)
        resp.raise_for_status()
        return AssignmentResponse(**resp.json())

    def report_status(self, job_id: str, outcome: JobOutcome) -> None:
        resp = self._request(
            "POST",
            f"/jobs/{job_id}/report",
            "report_status",
            json=outcome.model_dump(mode="json"),
        )
        if resp.status_code == 404:
            raise JobNotFound(job_id)
        if resp.status_code == 409:
            raise AssignmentConflict(resp.json().get("detail") or f"Job {job_id} is no longer ours")
        resp.raise_for_status()
