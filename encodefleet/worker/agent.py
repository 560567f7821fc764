"""
Worker agent: the process running on each provisioned machine.

It heartbeats, polls for the job the dispatcher assigned to it, and runs
that job end to end: report start, fetch the input, encode, store the
output, report the outcome. Storage and channel calls are retried with
backoff before the attempt is given up and reported as a failure.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Optional, Protocol

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from encodefleet.core.errors import (
    AssignmentConflict,
    ConfigurationError,
    EncodeFailure,
    FleetError,
    TransientInfraError,
)
from encodefleet.fleet.models import WorkerStatus
from encodefleet.jobs.models import AssignmentResponse, JobOutcome
from encodefleet.worker.encoder import parse_profile

logger = logging.getLogger(__name__)


class Storage(Protocol):
    def fetch(self, ref: str) -> bytes: ...

    def store(self, data: bytes, ref: str, content_type: str = ...) -> str: ...


class Encoder(Protocol):
    def encode(self, data: bytes, profile: Dict[str, Any]) -> bytes: ...


class WorkerAgent:
    def __init__(
        self,
        worker_id: str,
        channel,
        storage: Storage,
        encoder: Encoder,
        *,
        poll_interval: float = 5.0,
        output_prefix: str = "encoded",
        retry_attempts: int = 4,
        retry_max_wait: float = 30.0,
    ):
        self.worker_id = worker_id
        self.channel = channel
        self.storage = storage
        self.encoder = encoder
        self.poll_interval = poll_interval
        self.output_prefix = output_prefix.strip("/")
        self.retry_attempts = retry_attempts
        self.retry_max_wait = retry_max_wait
        self._stop = threading.Event()

    def _retrying(self, fn: Callable, *args, **kwargs):
        policy = Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_random_exponential(multiplier=0.5, max=self.retry_max_wait),
            retry=retry_if_exception_type(TransientInfraError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return policy(fn, *args, **kwargs)

    def output_ref(self, job_id: str, container: str) -> str:
        return f"{self.output_prefix}/{job_id}.{container}"

    @contextmanager
    def _heartbeating(self):
        """Keep heartbeating in the background while a job runs."""
        done = threading.Event()

        def beat():
            while not done.wait(self.poll_interval):
                try:
                    self.channel.heartbeat(self.worker_id)
                except FleetError as e:
                    logger.warning(f"Heartbeat failed: {e}")

        thread = threading.Thread(target=beat, name=f"heartbeat-{self.worker_id}", daemon=True)
        thread.start()
        try:
            yield
        finally:
            done.set()
            thread.join(timeout=self.poll_interval)

    def run_once(self) -> str:
        """
        One poll cycle. Returns what happened: ``stop``, ``idle``, ``done``,
        ``failed`` or ``lost`` (the job was taken away mid-run).
        """
        status = self._retrying(self.channel.heartbeat, self.worker_id)
        if status.status in (WorkerStatus.DRAINING, WorkerStatus.TERMINATED):
            logger.info(f"Worker {self.worker_id} is {status.status.value}; stopping")
            return "stop"
        assignment = self._retrying(self.channel.poll_assignment, self.worker_id)
        if not assignment.job_id:
            return "idle"
        with self._heartbeating():
            return self.process(assignment)

    def process(self, assignment: AssignmentResponse) -> str:
        job_id = assignment.job_id
        try:
            self._report(job_id, JobOutcome(worker_id=self.worker_id, status="encoding"))
        except AssignmentConflict as e:
            logger.warning(f"Job {job_id} no longer assigned to us: {e}")
            return "lost"

        try:
            profile = parse_profile(assignment.profile)
            data = self._retrying(self.storage.fetch, assignment.input_ref)
            output = self.encoder.encode(data, assignment.profile)
            ref = self._retrying(
                self.storage.store, output, self.output_ref(job_id, profile.container), profile.content_type
            )
        except ConfigurationError as e:
            return self._fail(job_id, str(e), "configuration")
        except EncodeFailure as e:
            return self._fail(job_id, str(e), "encode")
        except TransientInfraError as e:
            return self._fail(job_id, f"storage unavailable: {e}", "encode")

        try:
            self._report(job_id, JobOutcome(worker_id=self.worker_id, status="done", output_ref=ref))
        except AssignmentConflict as e:
            logger.warning(f"Completion of job {job_id} rejected: {e}")
            return "lost"
        logger.info(f"Job {job_id} done -> {ref}")
        return "done"

    def _fail(self, job_id: str, error: str, kind: str) -> str:
        logger.error(f"Job {job_id} failed ({kind}): {error}")
        try:
            self._report(
                job_id,
                JobOutcome(worker_id=self.worker_id, status="failed", error=error[:4000], error_kind=kind),
            )
        except AssignmentConflict as e:
            logger.warning(f"Failure of job {job_id} rejected: {e}")
            return "lost"
        return "failed"

    def _report(self, job_id: str, outcome: JobOutcome) -> None:
        self._retrying(self.channel.report_status, job_id, outcome)

    def stop(self) -> None:
        self._stop.set()

    def run(self) -> None:
        """Poll until the fleet drains this worker or ``stop()`` is called."""
        logger.info(f"Worker agent {self.worker_id} started")
        while not self._stop.is_set():
            try:
                result = self.run_once()
            except TransientInfraError as e:
                logger.warning(f"API unreachable, retrying: {e}")
                result = "idle"
            except FleetError as e:
                logger.error(f"Poll cycle for worker {self.worker_id} failed: {e}")
                result = "idle"
            if result == "stop":
                break
            if result == "idle":
                self._stop.wait(self.poll_interval)
        logger.info(f"Worker agent {self.worker_id} stopped")


def build_agent(settings=None) -> WorkerAgent:
    """Wire an agent from settings: HTTP channel, S3 storage, ffmpeg encoder."""
    import socket

    from encodefleet.core.aws import S3Storage
    from encodefleet.core.config import get_settings
    from encodefleet.worker.channel import HttpReportingChannel
    from encodefleet.worker.encoder import FFmpegEncoder

    settings = settings or get_settings()
    worker_id = settings.WORKER_ID or socket.gethostname()
    return WorkerAgent(
        worker_id,
        HttpReportingChannel.from_settings(settings),
        S3Storage.from_settings(settings),
        FFmpegEncoder(settings.FFMPEG_BINARY),
        poll_interval=settings.AGENT_POLL_INTERVAL_SECONDS,
        output_prefix=settings.OUTPUT_PREFIX,
        retry_attempts=settings.AGENT_RETRY_ATTEMPTS,
    )
