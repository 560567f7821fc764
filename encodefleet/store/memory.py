"""Process-local store. Same conditional semantics as the Mongo store."""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

from encodefleet.fleet.models import Worker, WorkerStatus
from encodefleet.jobs.models import Job, JobFilter, JobState
from encodefleet.store.base import JobStates, WorkerStatuses, as_set, utcnow


def _matches(record, match: Optional[Dict[str, Any]]) -> bool:
    return all(getattr(record, k) == v for k, v in (match or {}).items())


class MemoryStore:
    """Lock-protected dictionaries of jobs and workers."""

    def __init__(self):
        self._lock = threading.Lock()
        self._jobs: Dict[str, Job] = {}
        self._workers: Dict[str, Worker] = {}

    # Jobs

    def create_job(self, job: Job) -> Job:
        with self._lock:
            if job.id in self._jobs:
                raise ValueError(f"Job {job.id} already exists")
            self._jobs[job.id] = job.model_copy(deep=True)
            return job.model_copy(deep=True)

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    def conditional_update_job(
        self,
        job_id: str,
        expected_state: JobStates,
        new_state: JobState,
        fields: Optional[Dict[str, Any]] = None,
        *,
        match: Optional[Dict[str, Any]] = None,
    ) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state not in as_set(expected_state) or not _matches(job, match):
                return None
            update = {"updated_at": utcnow(), **(fields or {}), "state": new_state}
            self._jobs[job_id] = job.model_copy(update=update, deep=True)
            return self._jobs[job_id].model_copy(deep=True)

    def list_jobs(self, query: Optional[JobFilter] = None) -> List[Job]:
        query = query or JobFilter()
        with self._lock:
            jobs = [
                j
                for j in self._jobs.values()
                if (query.state is None or j.state == query.state)
                and (query.assigned_worker is None or j.assigned_worker == query.assigned_worker)
                and (query.idempotency_key is None or j.idempotency_key == query.idempotency_key)
                and (query.created_after is None or j.created_at >= query.created_after)
            ]
            jobs.sort(key=lambda j: (j.created_at, j.id))
            if query.limit is not None:
                jobs = jobs[: query.limit]
            return [j.model_copy(deep=True) for j in jobs]

    def count_jobs(self, state: JobState) -> int:
        with self._lock:
            return sum(1 for j in self._jobs.values() if j.state == state)

    # Workers

    def claim_worker_slot(self, worker: Worker) -> bool:
        with self._lock:
            existing = self._workers.get(worker.id)
            if existing is not None and existing.status != WorkerStatus.TERMINATED:
                return False
            self._workers[worker.id] = worker.model_copy(deep=True)
            return True

    def get_worker(self, worker_id: str) -> Optional[Worker]:
        with self._lock:
            worker = self._workers.get(worker_id)
            return worker.model_copy(deep=True) if worker else None

    def conditional_update_worker(
        self,
        worker_id: str,
        expected_status: WorkerStatuses,
        new_status: WorkerStatus,
        fields: Optional[Dict[str, Any]] = None,
        *,
        match: Optional[Dict[str, Any]] = None,
    ) -> Optional[Worker]:
        with self._lock:
            worker = self._workers.get(worker_id)
            if worker is None or worker.status not in as_set(expected_status) or not _matches(worker, match):
                return None
            update = {"updated_at": utcnow(), **(fields or {}), "status": new_status}
            self._workers[worker_id] = worker.model_copy(update=update, deep=True)
            return self._workers[worker_id].model_copy(deep=True)

    def record_heartbeat(self, worker_id: str, at: datetime) -> Optional[Worker]:
        with self._lock:
            worker = self._workers.get(worker_id)
            if worker is None:
                return None
            self._workers[worker_id] = worker.model_copy(update={"last_heartbeat": at, "updated_at": at})
            return self._workers[worker_id].model_copy(deep=True)

    def list_workers(self, statuses: Optional[WorkerStatuses] = None) -> List[Worker]:
        with self._lock:
            wanted = as_set(statuses) if statuses is not None else None
            workers = [w for w in self._workers.values() if wanted is None or w.status in wanted]
            workers.sort(key=lambda w: w.id)
            return [w.model_copy(deep=True) for w in workers]
