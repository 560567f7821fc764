"""
Orchestrator: owns the control loops and the operations exposed to the API.

The dispatcher and the autoscaler tick independently, each in its own
thread, against the shared store and provider. Nothing here holds state that
another replica would need; any number of orchestrators can run at once.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from functools import lru_cache
from typing import Dict, List, Optional

from encodefleet.core.config import Settings, get_settings
from encodefleet.fleet.autoscaler import Autoscaler, ScaleReport, ScalingPolicy, machine_spec_factory
from encodefleet.fleet.dispatcher import DispatchReport, Dispatcher
from encodefleet.fleet.models import Worker, WorkerStatus
from encodefleet.jobs.models import Job, JobOutcome, JobState
from encodefleet.jobs.service import JobsService
from encodefleet.providers import Machine, ProviderAdapter, get_provider
from encodefleet.store import JobStore, get_store

logger = logging.getLogger(__name__)


class Orchestrator:
    def __init__(self, store: JobStore, provider: ProviderAdapter, settings: Settings):
        self.settings = settings
        self.store = store
        self.provider = provider
        self.jobs = JobsService(
            store,
            max_attempts=settings.MAX_ATTEMPTS,
            max_profile_bytes=settings.JOBS_MAX_PROFILE_BYTES,
            idempotency_window_hours=settings.JOBS_IDEMPOTENCY_WINDOW_HOURS,
        )
        self.dispatcher = Dispatcher(store, heartbeat_timeout=settings.HEARTBEAT_TIMEOUT_SECONDS)
        self.autoscaler = Autoscaler(
            store,
            provider,
            ScalingPolicy.from_settings(settings),
            machine_spec_factory(settings),
        )
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "Orchestrator":
        settings = settings or get_settings()
        return cls(get_store(settings), get_provider(settings), settings)

    # Operations exposed to the API layer

    def submit_job(
        self,
        input_ref: str,
        profile: Dict,
        *,
        idempotency_key: Optional[str] = None,
    ) -> str:
        return self.jobs.submit_job(input_ref, profile, idempotency_key=idempotency_key).id

    def get_job(self, job_id: str) -> Job:
        return self.jobs.get_job(job_id)

    def get_job_status(self, job_id: str) -> JobState:
        return self.jobs.get_job_status(job_id)

    def cancel_job(self, job_id: str) -> Job:
        return self.jobs.cancel_job(job_id)

    def list_fleet(self, include_terminated: bool = False) -> List[Worker]:
        workers = self.store.list_workers()
        if include_terminated:
            return workers
        return [w for w in workers if w.status != WorkerStatus.TERMINATED]

    def list_machines(self) -> List[Machine]:
        return self.provider.list_machines()

    # Worker reporting channel

    def heartbeat(self, worker_id: str) -> Worker:
        return self.dispatcher.heartbeat(worker_id)

    def poll_assignment(self, worker_id: str) -> Optional[Job]:
        return self.dispatcher.poll_assignment(worker_id)

    def report_status(self, job_id: str, outcome: JobOutcome) -> Job:
        return self.dispatcher.apply_outcome(job_id, outcome)

    # Control loops

    def tick_dispatcher(self, now: Optional[datetime] = None) -> DispatchReport:
        return self.dispatcher.tick(now)

    def tick_autoscaler(self, now: Optional[datetime] = None) -> ScaleReport:
        return self.autoscaler.tick(now)

    def _loop(self, name: str, interval: float, tick) -> None:
        logger.info(f"{name} loop started (every {interval}s)")
        while not self._stop.is_set():
            try:
                tick()
            except Exception:
                logger.exception(f"{name} tick crashed")
            self._stop.wait(interval)
        logger.info(f"{name} loop stopped")

    def start(self) -> None:
        """Start the dispatcher and autoscaler loops in background threads."""
        if self._threads:
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(
                target=self._loop,
                args=("dispatcher", self.settings.DISPATCH_INTERVAL_SECONDS, self.tick_dispatcher),
                name="dispatcher-loop",
                daemon=True,
            ),
            threading.Thread(
                target=self._loop,
                args=("autoscaler", self.settings.AUTOSCALE_INTERVAL_SECONDS, self.tick_autoscaler),
                name="autoscaler-loop",
                daemon=True,
            ),
        ]
        for t in self._threads:
            t.start()

    def stop(self, timeout: float = 10.0) -> None:
        self._stop.set()
        for t in self._threads:
            t.join(timeout=timeout)
        self._threads = []

    def run(self) -> None:
        """Run the loops in the foreground until interrupted."""
        self.start()
        try:
            while not self._stop.wait(0.5):
                pass
        except KeyboardInterrupt:
            logger.info("Stopping control loops ...")
        finally:
            self.stop()


@lru_cache
def get_orchestrator() -> Orchestrator:
    """Process-wide orchestrator built from settings."""
    return Orchestrator.from_settings(get_settings())
