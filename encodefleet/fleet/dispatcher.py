"""
Dispatcher: matches queued jobs to ready workers.

Every tick first repairs the fleet records, then pairs the oldest queued jobs
with the longest-idle ready workers. A pairing is two conditional updates:
the job ``queued -> assigned`` and then the worker ``ready -> busy``. The
worker is never marked busy before the job update is confirmed, and a worker
update that is lost or errors out is compensated on the job.

The repair pass covers what a crash between two writes can leave behind:

- busy or ready workers with stale heartbeats are taken out of service,
  recovering the job a busy one held
- busy workers whose job finished or moved on are freed
- active jobs whose worker does not hold them are returned to the queue
  once they are older than the heartbeat timeout
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from encodefleet.core.errors import (
    AssignmentConflict,
    InvalidTransition,
    JobNotFound,
    TransientInfraError,
    WorkerNotFound,
)
from encodefleet.fleet.lifecycle import fail_attempt, free_worker, release_lost_worker
from encodefleet.fleet.models import Worker, WorkerStatus
from encodefleet.jobs.models import Job, JobFilter, JobOutcome, JobState
from encodefleet.jobs.state import ACTIVE_STATES
from encodefleet.store.base import JobStore

logger = logging.getLogger(__name__)


def _utc_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


@dataclass
class DispatchReport:
    assigned: List[Tuple[str, str]] = field(default_factory=list)  # (job_id, worker_id)
    timed_out: List[str] = field(default_factory=list)  # worker ids
    freed: List[str] = field(default_factory=list)  # busy worker ids holding a finished job
    requeued: List[str] = field(default_factory=list)  # orphaned job ids
    skipped: List[str] = field(default_factory=list)  # job ids lost to a race or store error
    errors: int = 0


class Dispatcher:
    def __init__(self, store: JobStore, *, heartbeat_timeout: float):
        self.store = store
        self.heartbeat_timeout = timedelta(seconds=heartbeat_timeout)

    # Tick

    def tick(self, now: Optional[datetime] = None) -> DispatchReport:
        now = _utc_now(now)
        report = DispatchReport()
        try:
            self.sweep_stale_workers(now, report)
            self.sweep_orphaned_jobs(now, report)
            self.assign_queued(now, report)
        except TransientInfraError as e:
            report.errors += 1
            logger.warning(f"Dispatch tick aborted, retrying next tick: {e}")
        if report.assigned or report.timed_out or report.freed or report.requeued or report.skipped:
            logger.info(
                f"Dispatch tick: assigned={len(report.assigned)} timed_out={len(report.timed_out)} "
                f"freed={len(report.freed)} requeued={len(report.requeued)} skipped={len(report.skipped)}"
            )
        return report

    def sweep_stale_workers(self, now: datetime, report: DispatchReport) -> None:
        """
        Take silent workers out of service and free busy workers left holding
        a job that already finished or moved to another worker.
        """
        for worker in self.store.list_workers([WorkerStatus.BUSY, WorkerStatus.READY]):
            last_seen = worker.last_heartbeat or worker.updated_at
            try:
                if now - last_seen > self.heartbeat_timeout:
                    released = release_lost_worker(
                        self.store, worker, WorkerStatus.UNREACHABLE, "missed heartbeat", now
                    )
                    if released is not None:
                        report.timed_out.append(worker.id)
                elif worker.status == WorkerStatus.BUSY and not self._holds_live_job(worker):
                    if free_worker(self.store, worker.id, worker.current_job, now) is not None:
                        logger.warning(f"Worker {worker.id} freed; job {worker.current_job} is no longer its")
                        report.freed.append(worker.id)
            except TransientInfraError as e:
                report.errors += 1
                logger.warning(f"Could not repair worker {worker.id}: {e}")

    def _holds_live_job(self, worker: Worker) -> bool:
        if not worker.current_job:
            return False
        job = self.store.get_job(worker.current_job)
        return job is not None and job.state in ACTIVE_STATES and job.assigned_worker == worker.id

    def sweep_orphaned_jobs(self, now: datetime, report: DispatchReport) -> None:
        """Requeue active jobs that their worker record no longer holds."""
        for state in (JobState.ASSIGNED, JobState.ENCODING):
            for job in self.store.list_jobs(JobFilter(state=state)):
                if now - job.updated_at <= self.heartbeat_timeout:
                    continue
                worker = self.store.get_worker(job.assigned_worker) if job.assigned_worker else None
                if worker is not None and worker.status == WorkerStatus.BUSY and worker.current_job == job.id:
                    continue
                try:
                    if job.state == JobState.ASSIGNED:
                        requeued = self._return_to_queue(job.id, job.assigned_worker, now)
                    else:
                        requeued = fail_attempt(
                            self.store, job, f"worker {job.assigned_worker} no longer holds the job", now
                        )
                except TransientInfraError as e:
                    report.errors += 1
                    logger.warning(f"Could not requeue orphaned job {job.id}: {e}")
                    continue
                if requeued is not None:
                    logger.warning(
                        f"Job {job.id} was orphaned by worker {job.assigned_worker}; now {requeued.state.value}"
                    )
                    report.requeued.append(job.id)

    def assign_queued(self, now: datetime, report: DispatchReport) -> None:
        """Assign queued jobs, oldest first, to ready workers, longest idle first."""
        workers = self.store.list_workers(WorkerStatus.READY)
        if not workers:
            return
        workers.sort(key=lambda w: (w.idle_since or w.created_at, w.id))
        jobs = self.store.list_jobs(JobFilter(state=JobState.QUEUED, limit=len(workers)))

        for job in jobs:
            while workers:
                worker = workers[0]
                try:
                    outcome = self._assign(job, worker, now)
                except TransientInfraError as e:
                    report.errors += 1
                    report.skipped.append(job.id)
                    logger.warning(f"Assignment of job {job.id} deferred: {e}")
                    break
                if outcome == "assigned":
                    workers.pop(0)
                    report.assigned.append((job.id, worker.id))
                    break
                if outcome == "job_taken":
                    report.skipped.append(job.id)
                    break
                # Worker was taken (drained, reassigned) between listing and update.
                workers.pop(0)
            if not workers:
                break

    def _assign(self, job: Job, worker: Worker, now: datetime) -> str:
        assigned = self.store.conditional_update_job(
            job.id,
            JobState.QUEUED,
            JobState.ASSIGNED,
            {"assigned_worker": worker.id, "updated_at": now},
        )
        if assigned is None:
            logger.info(f"Job {job.id} no longer queued; skipped")
            return "job_taken"

        try:
            busy = self.store.conditional_update_worker(
                worker.id,
                WorkerStatus.READY,
                WorkerStatus.BUSY,
                {"current_job": job.id, "idle_since": None, "updated_at": now},
                match={"current_job": None},
            )
        except Exception:
            logger.warning(f"Worker {worker.id} update failed; returning job {job.id} to the queue")
            self._return_to_queue(job.id, worker.id, now)
            raise
        if busy is not None:
            logger.info(f"Job {job.id} assigned to worker {worker.id}")
            return "assigned"

        if self._return_to_queue(job.id, worker.id, now) is None:
            logger.error(f"Job {job.id} could not be returned to the queue after worker {worker.id} was taken")
        return "worker_taken"

    def _return_to_queue(self, job_id: str, worker_id: Optional[str], now: datetime) -> Optional[Job]:
        """assigned -> queued for a job that never started; no attempt is counted."""
        return self.store.conditional_update_job(
            job_id,
            JobState.ASSIGNED,
            JobState.QUEUED,
            {"assigned_worker": None, "updated_at": now},
            match={"assigned_worker": worker_id},
        )

    # Worker reporting channel

    def heartbeat(self, worker_id: str, now: Optional[datetime] = None) -> Worker:
        """Record a heartbeat; a provisioning or unreachable worker becomes ready."""
        now = _utc_now(now)
        worker = self.store.record_heartbeat(worker_id, now)
        if worker is None:
            raise WorkerNotFound(worker_id)
        if worker.status in (WorkerStatus.PROVISIONING, WorkerStatus.UNREACHABLE):
            ready = self.store.conditional_update_worker(
                worker_id,
                worker.status,
                WorkerStatus.READY,
                {"current_job": None, "idle_since": now, "updated_at": now},
            )
            if ready is not None:
                logger.info(f"Worker {worker_id} is ready (was {worker.status.value})")
                return ready
            return self.store.get_worker(worker_id) or worker
        return worker

    def poll_assignment(self, worker_id: str) -> Optional[Job]:
        """The job the worker should be running, if any."""
        worker = self.store.get_worker(worker_id)
        if worker is None:
            raise WorkerNotFound(worker_id)
        if worker.status != WorkerStatus.BUSY or not worker.current_job:
            return None
        job = self.store.get_job(worker.current_job)
        if job is None or job.state not in ACTIVE_STATES or job.assigned_worker != worker_id:
            return None
        return job

    def apply_outcome(self, job_id: str, outcome: JobOutcome, now: Optional[datetime] = None) -> Job:
        """Apply a worker's status report for ``job_id``."""
        now = _utc_now(now)
        job = self.store.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        if outcome.status == "done" and job.state == JobState.DONE and job.assigned_worker == outcome.worker_id:
            # Completion was recorded but the worker may not have been freed.
            free_worker(self.store, outcome.worker_id, job_id, now)
            return job
        if job.state not in ACTIVE_STATES or job.assigned_worker != outcome.worker_id:
            raise AssignmentConflict(
                f"Job {job_id} is {job.state.value} and not held by worker {outcome.worker_id}"
            )

        if outcome.status == "encoding":
            if job.state == JobState.ENCODING:
                return job
            started = self.store.conditional_update_job(
                job_id,
                JobState.ASSIGNED,
                JobState.ENCODING,
                {"started_at": now, "updated_at": now},
                match={"assigned_worker": outcome.worker_id},
            )
            if started is None:
                raise AssignmentConflict(f"Job {job_id} changed before start was recorded")
            logger.info(f"Job {job_id} encoding on worker {outcome.worker_id}")
            return started

        if outcome.status == "done":
            if job.state != JobState.ENCODING:
                raise InvalidTransition(job_id, job.state.value, JobState.DONE.value)
            finished = self.store.conditional_update_job(
                job_id,
                JobState.ENCODING,
                JobState.DONE,
                {"output_ref": outcome.output_ref, "finished_at": now, "last_error": None, "updated_at": now},
                match={"assigned_worker": outcome.worker_id},
            )
            if finished is None:
                raise AssignmentConflict(f"Job {job_id} changed before completion was recorded")
            logger.info(f"Job {job_id} done: {outcome.output_ref}")
            free_worker(self.store, outcome.worker_id, job_id, now)
            return finished

        error = outcome.error or "encode failed"
        failed = fail_attempt(
            self.store,
            job,
            f"{outcome.error_kind}: {error}",
            now,
            fatal=outcome.error_kind == "configuration",
        )
        if failed is None:
            raise AssignmentConflict(f"Job {job_id} changed before failure was recorded")
        free_worker(self.store, outcome.worker_id, job_id, now)
        return failed
