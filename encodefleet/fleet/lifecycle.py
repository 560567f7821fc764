"""Job and worker transitions shared by the dispatcher and the autoscaler."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from encodefleet.fleet.models import Worker, WorkerStatus
from encodefleet.jobs.models import Job, JobState
from encodefleet.jobs.state import ACTIVE_STATES, failure_transition
from encodefleet.store.base import JobStore

logger = logging.getLogger(__name__)

MAX_ERROR_CHARS = 1200


def _truncate(err: str) -> str:
    if len(err) > MAX_ERROR_CHARS:
        return err[:MAX_ERROR_CHARS] + "…"
    return err


def fail_attempt(
    store: JobStore,
    job: Job,
    error: str,
    now: datetime,
    *,
    fatal: bool = False,
) -> Optional[Job]:
    """
    Count a failed run of an active job and requeue or fail it.

    ``fatal`` fails the job regardless of the attempts left. Returns the
    updated job, or None if the job moved on since it was read.
    """
    if job.state not in ACTIVE_STATES:
        return None
    next_state, attempts = failure_transition(job.attempts, job.max_attempts)
    if fatal:
        next_state = JobState.FAILED
    fields = {
        "attempts": attempts,
        "last_error": _truncate(error),
        "assigned_worker": None,
        "updated_at": now,
    }
    if next_state == JobState.FAILED:
        fields["finished_at"] = now
    else:
        fields["started_at"] = None
    updated = store.conditional_update_job(
        job.id,
        job.state,
        next_state,
        fields,
        match={"assigned_worker": job.assigned_worker},
    )
    if updated is None:
        logger.info(f"Job {job.id} changed concurrently; failure of attempt not applied")
        return None
    if updated.state == JobState.FAILED:
        logger.warning(f"Job {job.id} failed after {updated.attempts} attempt(s): {updated.last_error}")
    else:
        logger.info(f"Job {job.id} requeued (attempts={updated.attempts}/{updated.max_attempts})")
    return updated


def free_worker(store: JobStore, worker_id: str, job_id: str, now: datetime) -> Optional[Worker]:
    """busy -> ready for the worker still holding ``job_id``."""
    worker = store.conditional_update_worker(
        worker_id,
        WorkerStatus.BUSY,
        WorkerStatus.READY,
        {"current_job": None, "idle_since": now, "updated_at": now},
        match={"current_job": job_id},
    )
    if worker is None:
        logger.info(f"Worker {worker_id} no longer holds job {job_id}; not freed")
    return worker


def release_lost_worker(
    store: JobStore,
    worker: Worker,
    new_status: WorkerStatus,
    reason: str,
    now: datetime,
) -> Optional[Worker]:
    """
    Take a worker out of service and recover the job it was running.

    The job (if the worker still holds it) is failed-by-loss first, then the
    worker record moves to ``new_status`` with its job cleared.
    """
    if worker.current_job:
        job = store.get_job(worker.current_job)
        if job is not None and job.state in ACTIVE_STATES and job.assigned_worker == worker.id:
            fail_attempt(store, job, f"worker {worker.id} {reason}", now)
    updated = store.conditional_update_worker(
        worker.id,
        worker.status,
        new_status,
        {"current_job": None, "idle_since": None, "updated_at": now},
        match={"current_job": worker.current_job},
    )
    if updated is None:
        logger.info(f"Worker {worker.id} changed concurrently; not moved to {new_status.value}")
    else:
        logger.warning(f"Worker {worker.id} marked {new_status.value}: {reason}")
    return updated
