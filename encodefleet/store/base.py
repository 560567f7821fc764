"""
Record store capability for jobs and workers.

All mutation that can race goes through ``conditional_update_*``: the update
applies only if the record is still in the expected state (and matches any
extra equality conditions), and returns ``None`` otherwise. This is the only
concurrency guard the engine relies on, so several dispatcher and autoscaler
instances can share one store.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Protocol, Union

from encodefleet.fleet.models import Worker, WorkerStatus
from encodefleet.jobs.models import Job, JobFilter, JobState

JobStates = Union[JobState, Iterable[JobState]]
WorkerStatuses = Union[WorkerStatus, Iterable[WorkerStatus]]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_set(value) -> set:
    """Normalize a single enum member or an iterable of them to a set."""
    if isinstance(value, (JobState, WorkerStatus)):
        return {value}
    return set(value)


class JobStore(Protocol):
    def create_job(self, job: Job) -> Job: ...

    def get_job(self, job_id: str) -> Optional[Job]: ...

    def conditional_update_job(
        self,
        job_id: str,
        expected_state: JobStates,
        new_state: JobState,
        fields: Optional[Dict[str, Any]] = None,
        *,
        match: Optional[Dict[str, Any]] = None,
    ) -> Optional[Job]: ...

    def list_jobs(self, query: Optional[JobFilter] = None) -> List[Job]: ...

    def count_jobs(self, state: JobState) -> int: ...

    def claim_worker_slot(self, worker: Worker) -> bool: ...

    def get_worker(self, worker_id: str) -> Optional[Worker]: ...

    def conditional_update_worker(
        self,
        worker_id: str,
        expected_status: WorkerStatuses,
        new_status: WorkerStatus,
        fields: Optional[Dict[str, Any]] = None,
        *,
        match: Optional[Dict[str, Any]] = None,
    ) -> Optional[Worker]: ...

    def record_heartbeat(self, worker_id: str, at: datetime) -> Optional[Worker]: ...

    def list_workers(self, statuses: Optional[WorkerStatuses] = None) -> List[Worker]: ...
