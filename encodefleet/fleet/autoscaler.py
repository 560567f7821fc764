"""
Autoscaler: sizes the worker fleet to the queue.

Each tick rebuilds a ``FleetState`` from the provider's live listing and the
store, reconciles worker records against the machines that actually exist,
then issues creations or deletions for the difference between desired and
actual size. Worker ids are fleet slots (``<prefix>-<n>`` for n < max size);
a creation first claims its slot in the store, so replicas racing the same
tick cannot both create a machine for it, and an identifier already pending
is never created or deleted twice.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from encodefleet.core.config import Settings
from encodefleet.core.errors import ProvisioningFailure, TransientInfraError
from encodefleet.fleet.lifecycle import release_lost_worker
from encodefleet.fleet.models import FleetState, Worker, WorkerStatus
from encodefleet.jobs.models import JobState
from encodefleet.providers.base import Machine, MachineSpec, MachineStatus, ProviderAdapter
from encodefleet.store.base import JobStore

logger = logging.getLogger(__name__)

SpecFactory = Callable[[str, Optional[str]], MachineSpec]

_GONE = (MachineStatus.TERMINATED, MachineStatus.ERROR)
_LIVE = (MachineStatus.PROVISIONING, MachineStatus.RUNNING)

AGENT_USER_DATA = """#cloud-config
runcmd:
  - [sh, -c, "WORKER_ID={worker_id} API_BASE_URL={api_base_url} encodefleet agent"]
"""


@dataclass(frozen=True)
class ScalingPolicy:
    min_size: int = 1
    max_size: int = 10
    jobs_per_worker: float = 1.0
    max_pending_creations: int = 5
    scale_down_idle_seconds: float = 300.0
    provision_timeout_seconds: float = 600.0
    delete_confirm_timeout_seconds: float = 300.0
    unreachable_grace_seconds: float = 300.0
    failure_cap: int = 3
    backoff_seconds: float = 60.0
    backoff_max_seconds: float = 1800.0
    name_prefix: str = "encoder"

    @classmethod
    def from_settings(cls, settings: Settings) -> "ScalingPolicy":
        return cls(
            min_size=settings.MIN_SIZE,
            max_size=settings.MAX_SIZE,
            jobs_per_worker=settings.JOBS_PER_WORKER,
            max_pending_creations=settings.MAX_PENDING_CREATIONS,
            scale_down_idle_seconds=settings.SCALE_DOWN_IDLE_SECONDS,
            provision_timeout_seconds=settings.PROVISION_TIMEOUT_SECONDS,
            delete_confirm_timeout_seconds=settings.DELETE_CONFIRM_TIMEOUT_SECONDS,
            unreachable_grace_seconds=settings.UNREACHABLE_GRACE_SECONDS,
            failure_cap=settings.PROVISION_FAILURE_CAP,
            backoff_seconds=settings.PROVISION_BACKOFF_SECONDS,
            backoff_max_seconds=settings.PROVISION_BACKOFF_MAX_SECONDS,
            name_prefix=settings.WORKER_NAME_PREFIX,
        )

    def desired_size(self, queued_jobs: int) -> int:
        wanted = math.ceil(queued_jobs / self.jobs_per_worker) if queued_jobs > 0 else 0
        return max(self.min_size, min(self.max_size, wanted))

    def slot_names(self) -> List[str]:
        return [f"{self.name_prefix}-{i}" for i in range(self.max_size)]


def machine_spec_factory(settings: Settings) -> SpecFactory:
    """Build worker machine specs from configuration."""
    ssh_keys = [k.strip() for k in settings.MACHINE_SSH_KEYS.split(",") if k.strip()]

    def build(worker_id: str, client_token: Optional[str] = None) -> MachineSpec:
        return MachineSpec(
            name=worker_id,
            size=settings.MACHINE_SIZE,
            region=settings.MACHINE_REGION,
            image=settings.MACHINE_IMAGE,
            tags=[settings.FLEET_TAG],
            user_data=AGENT_USER_DATA.format(worker_id=worker_id, api_base_url=settings.API_BASE_URL),
            ssh_keys=ssh_keys,
            client_token=client_token,
        )

    return build


@dataclass
class ScaleReport:
    queued_jobs: int = 0
    desired_size: int = 0
    actual_size: int = 0
    created: List[str] = field(default_factory=list)  # worker ids
    deleted: List[str] = field(default_factory=list)  # worker ids
    terminated: List[str] = field(default_factory=list)  # worker ids retired this tick
    adopted: List[str] = field(default_factory=list)
    failures: int = 0
    suspended: bool = False
    aborted: bool = False


def _utc_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


class Autoscaler:
    def __init__(
        self,
        store: JobStore,
        provider: ProviderAdapter,
        policy: ScalingPolicy,
        spec_factory: SpecFactory,
    ):
        self.store = store
        self.provider = provider
        self.policy = policy
        self.spec_factory = spec_factory
        # Provisioning failure backoff; per instance, never persisted.
        self._consecutive_failures = 0
        self._suspended_until: Optional[datetime] = None

    # Snapshot

    def snapshot(self) -> FleetState:
        """Rebuild the fleet view from the store and the provider listing."""
        queued = self.store.count_jobs(JobState.QUEUED)
        workers = [w for w in self.store.list_workers() if w.status != WorkerStatus.TERMINATED]
        machines = {m.id: m for m in self.provider.list_machines()}
        return FleetState(queued_jobs=queued, workers=workers, machines=machines)

    # Tick

    def tick(self, now: Optional[datetime] = None) -> ScaleReport:
        now = _utc_now(now)
        report = ScaleReport()
        try:
            state = self.snapshot()
        except TransientInfraError as e:
            report.aborted = True
            logger.warning(f"Autoscale tick skipped, fleet snapshot unavailable: {e}")
            return report

        try:
            self.reconcile(state, now, report)
            actual = state.actual_size
            desired = self._target(state.queued_jobs, actual, now, report)
            state.desired_size = desired
            if desired > actual:
                self.scale_up(state, desired - actual, now, report)
            elif desired < actual:
                self.scale_down(state, actual - desired, now, report)
        except TransientInfraError as e:
            report.aborted = True
            logger.warning(f"Autoscale tick interrupted, retrying next tick: {e}")

        report.queued_jobs = state.queued_jobs
        report.desired_size = state.desired_size
        report.actual_size = state.actual_size
        logger.info(
            f"Autoscale tick: queued={report.queued_jobs} desired={report.desired_size} "
            f"actual={report.actual_size} created={len(report.created)} deleted={len(report.deleted)} "
            f"pending_creations={len(state.pending_creations)} pending_deletions={len(state.pending_deletions)}"
        )
        return report

    def _target(self, queued: int, actual: int, now: datetime, report: ScaleReport) -> int:
        desired = self.policy.desired_size(queued)
        if self._suspended(now) and desired > actual:
            report.suspended = True
            logger.warning(
                f"Scale-up suspended until {self._suspended_until.isoformat()} after "
                f"{self._consecutive_failures} provisioning failures; holding at {max(actual, self.policy.min_size)}"
            )
            return max(actual, self.policy.min_size)
        return desired

    # Reconciliation

    def reconcile(self, state: FleetState, now: datetime, report: ScaleReport) -> None:
        """Bring worker records in line with the machines the provider reports."""
        known_refs = set()
        for worker in list(state.workers):
            if worker.machine_ref:
                known_refs.add(worker.machine_ref)
            status = self._machine_status(state, worker.machine_ref)

            if worker.status == WorkerStatus.PROVISIONING:
                self._reconcile_provisioning(state, worker, status, now, report)
            elif worker.status == WorkerStatus.DRAINING:
                self._reconcile_draining(state, worker, status, now, report)
            elif status in _GONE:
                released = release_lost_worker(
                    self.store, worker, WorkerStatus.TERMINATED, "machine disappeared", now
                )
                if released is not None:
                    self._replace(state, released)
                    report.terminated.append(worker.id)
            elif worker.status == WorkerStatus.UNREACHABLE:
                last_seen = worker.last_heartbeat or worker.updated_at
                if now - last_seen > timedelta(seconds=self.policy.unreachable_grace_seconds):
                    self._drain_and_delete(state, worker, WorkerStatus.UNREACHABLE, now, report)

        for machine in state.machines.values():
            if machine.id not in known_refs and machine.status in _LIVE:
                self._adopt(state, machine, now, report)

    def _machine_status(self, state: FleetState, machine_ref: Optional[str]) -> Optional[MachineStatus]:
        """Status from the listing; machines missing from it are confirmed one by one."""
        if not machine_ref:
            return None
        machine = state.machines.get(machine_ref)
        if machine is not None:
            return machine.status
        return self.provider.describe_machine(machine_ref)

    def _reconcile_provisioning(
        self,
        state: FleetState,
        worker: Worker,
        status: Optional[MachineStatus],
        now: datetime,
        report: ScaleReport,
    ) -> None:
        age = now - worker.created_at
        timed_out = age > timedelta(seconds=self.policy.provision_timeout_seconds)

        if not worker.machine_ref:
            # Slot claimed but the create call's result was never recorded.
            # _adopt() attaches the machine if the provider lists one by name.
            if timed_out and not any(m.name == worker.id for m in state.machines.values()):
                self._retire(state, worker, now, report, "creation never confirmed")
                self._record_failure(report, now, f"creation of {worker.id} never confirmed")
            else:
                state.pending_creations.add(worker.id)
            return

        if status in _GONE:
            if status == MachineStatus.ERROR:
                self._delete_machine(state, worker.machine_ref)
            self._retire(state, worker, now, report, "machine failed to provision")
            self._record_failure(report, now, f"machine {worker.machine_ref} for {worker.id} failed to provision")
            return

        if timed_out:
            logger.error(f"Worker {worker.id} never became reachable; deleting {worker.machine_ref}")
            self._record_failure(report, now, f"worker {worker.id} provisioning timed out")
            self._drain_and_delete(state, worker, WorkerStatus.PROVISIONING, now, report)
            return

        state.pending_creations.add(worker.id)

    def _reconcile_draining(
        self,
        state: FleetState,
        worker: Worker,
        status: Optional[MachineStatus],
        now: datetime,
        report: ScaleReport,
    ) -> None:
        if not worker.machine_ref or status == MachineStatus.TERMINATED:
            self._retire(state, worker, now, report, "deletion confirmed")
            return
        since = worker.draining_since or worker.updated_at
        if now - since > timedelta(seconds=self.policy.delete_confirm_timeout_seconds):
            logger.warning(f"Deletion of {worker.machine_ref} unconfirmed; re-issuing")
            if self._delete_machine(state, worker.machine_ref, reissue=True):
                self.store.conditional_update_worker(
                    worker.id,
                    WorkerStatus.DRAINING,
                    WorkerStatus.DRAINING,
                    {"draining_since": now, "updated_at": now},
                )
            return
        state.pending_deletions.add(worker.machine_ref)

    def _adopt(self, state: FleetState, machine: Machine, now: datetime, report: ScaleReport) -> None:
        """Attach a fleet machine that no worker record points at."""
        owner = next((w for w in state.workers if w.id == machine.name), None)
        if owner is not None and owner.status == WorkerStatus.PROVISIONING and not owner.machine_ref:
            updated = self.store.conditional_update_worker(
                owner.id,
                WorkerStatus.PROVISIONING,
                WorkerStatus.PROVISIONING,
                {"machine_ref": machine.id, "updated_at": now},
                match={"machine_ref": None},
            )
            if updated is not None:
                self._replace(state, updated)
                logger.info(f"Recorded machine {machine.id} for worker {owner.id}")
            return
        if owner is not None:
            # Slot is held by another machine: this one is a duplicate.
            logger.error(f"Machine {machine.id} duplicates slot {machine.name}; deleting")
            self._delete_machine(state, machine.id)
            return
        if machine.name not in self.policy.slot_names():
            logger.error(f"Machine {machine.id} ({machine.name}) is outside the fleet's slots; deleting")
            self._delete_machine(state, machine.id)
            return
        worker = Worker(
            id=machine.name,
            machine_ref=machine.id,
            status=WorkerStatus.PROVISIONING,
            created_at=now,
            updated_at=now,
        )
        if self.store.claim_worker_slot(worker):
            state.workers.append(worker)
            state.pending_creations.add(worker.id)
            report.adopted.append(worker.id)
            logger.info(f"Adopted machine {machine.id} as worker {worker.id}")

    # Scale up / down

    def scale_up(self, state: FleetState, deficit: int, now: datetime, report: ScaleReport) -> None:
        room = self.policy.max_pending_creations - len(state.pending_creations)
        count = min(deficit, room)
        if count <= 0:
            logger.info(f"Scale-up of {deficit} deferred: {len(state.pending_creations)} creations pending")
            return
        taken = {w.id for w in state.workers}
        free_slots = [s for s in self.policy.slot_names() if s not in taken and s not in state.pending_creations]
        for worker_id in free_slots[:count]:
            if self._suspended(now):
                report.suspended = True
                logger.warning(f"Scale-up stopped after {self._consecutive_failures} provisioning failures")
                break
            self._create(state, worker_id, now, report)

    def _create(self, state: FleetState, worker_id: str, now: datetime, report: ScaleReport) -> None:
        worker = Worker(id=worker_id, status=WorkerStatus.PROVISIONING, created_at=now, updated_at=now)
        if not self.store.claim_worker_slot(worker):
            logger.info(f"Slot {worker_id} claimed by another instance")
            return
        state.pending_creations.add(worker_id)
        spec = self.spec_factory(worker_id, f"{worker_id}-{int(now.timestamp())}")
        try:
            created = self.provider.create_machine(spec)
        except ProvisioningFailure as e:
            logger.error(f"Provider rejected creation of {worker_id}: {e}")
            state.pending_creations.discard(worker_id)
            self.store.conditional_update_worker(
                worker_id,
                WorkerStatus.PROVISIONING,
                WorkerStatus.TERMINATED,
                {"updated_at": now},
                match={"machine_ref": None},
            )
            self._record_failure(report, now, str(e))
            return
        except TransientInfraError as e:
            # Outcome unknown: the slot stays pending and is resolved by name or timeout.
            logger.warning(f"Creation of {worker_id} unconfirmed: {e}")
            state.workers.append(worker)
            return

        recorded = self.store.conditional_update_worker(
            worker_id,
            WorkerStatus.PROVISIONING,
            WorkerStatus.PROVISIONING,
            {"machine_ref": created.id, "updated_at": now},
            match={"machine_ref": None},
        )
        state.workers.append(recorded or worker.model_copy(update={"machine_ref": created.id}))
        self._consecutive_failures = 0
        self._suspended_until = None
        report.created.append(worker_id)
        logger.info(f"Creating machine {created.id} for worker {worker_id}")

    def scale_down(self, state: FleetState, excess: int, now: datetime, report: ScaleReport) -> None:
        idle_cutoff = now - timedelta(seconds=self.policy.scale_down_idle_seconds)
        candidates = [
            w
            for w in state.with_status(WorkerStatus.READY)
            if w.current_job is None
            and (w.idle_since or w.created_at) <= idle_cutoff
            and w.machine_ref not in state.pending_deletions
        ]
        candidates.sort(key=lambda w: (w.idle_since or w.created_at, w.id))
        for worker in candidates[:excess]:
            if self._drain_and_delete(state, worker, WorkerStatus.READY, now, report):
                report.deleted.append(worker.id)

    def _drain_and_delete(
        self,
        state: FleetState,
        worker: Worker,
        expected: WorkerStatus,
        now: datetime,
        report: ScaleReport,
    ) -> bool:
        drained = self.store.conditional_update_worker(
            worker.id,
            expected,
            WorkerStatus.DRAINING,
            {"draining_since": now, "idle_since": None, "updated_at": now},
            match={"current_job": None},
        )
        if drained is None:
            logger.info(f"Worker {worker.id} changed before drain; kept")
            return False
        self._replace(state, drained)
        if not worker.machine_ref:
            self._retire(state, drained, now, report, "no machine to delete")
            return True
        try:
            deleted = self._delete_machine(state, worker.machine_ref, raise_rejection=True)
        except ProvisioningFailure as e:
            logger.error(f"Provider rejected deletion of {worker.machine_ref}: {e}")
            report.failures += 1
            if expected == WorkerStatus.READY:
                restored = self.store.conditional_update_worker(
                    worker.id,
                    WorkerStatus.DRAINING,
                    WorkerStatus.READY,
                    {"draining_since": None, "idle_since": worker.idle_since or now, "updated_at": now},
                )
                if restored is not None:
                    self._replace(state, restored)
            return False
        if deleted:
            logger.info(f"Draining worker {worker.id}; deleting machine {worker.machine_ref}")
        return True

    def _delete_machine(
        self,
        state: FleetState,
        machine_ref: str,
        *,
        reissue: bool = False,
        raise_rejection: bool = False,
    ) -> bool:
        """
        Issue a deletion unless one is already pending for ``machine_ref``.

        Transient failures leave the deletion pending; it is re-issued once
        the confirmation timeout passes. A rejection is logged and retried
        next tick unless ``raise_rejection`` asks for it.
        """
        if machine_ref in state.pending_deletions and not reissue:
            return False
        state.pending_deletions.add(machine_ref)
        try:
            self.provider.delete_machine(machine_ref)
        except TransientInfraError as e:
            logger.warning(f"Deletion of {machine_ref} unconfirmed: {e}")
            return False
        except ProvisioningFailure as e:
            state.pending_deletions.discard(machine_ref)
            if raise_rejection:
                raise
            logger.error(f"Provider rejected deletion of {machine_ref}: {e}")
            return False
        return True

    # Bookkeeping

    def _retire(self, state: FleetState, worker: Worker, now: datetime, report: ScaleReport, reason: str) -> None:
        retired = self.store.conditional_update_worker(
            worker.id,
            worker.status,
            WorkerStatus.TERMINATED,
            {"current_job": None, "idle_since": None, "updated_at": now},
            match={"current_job": None},
        )
        if retired is None:
            return
        self._replace(state, retired)
        state.pending_creations.discard(worker.id)
        report.terminated.append(worker.id)
        logger.info(f"Worker {worker.id} terminated: {reason}")

    def _record_failure(self, report: ScaleReport, now: datetime, reason: str) -> None:
        report.failures += 1
        self._consecutive_failures += 1
        logger.error(f"Provisioning failure {self._consecutive_failures}: {reason}")
        if self._consecutive_failures >= self.policy.failure_cap:
            exponent = self._consecutive_failures - self.policy.failure_cap
            delay = min(self.policy.backoff_seconds * (2 ** exponent), self.policy.backoff_max_seconds)
            self._suspended_until = now + timedelta(seconds=delay)

    def _suspended(self, now: datetime) -> bool:
        return self._suspended_until is not None and now < self._suspended_until

    @staticmethod
    def _replace(state: FleetState, worker: Worker) -> None:
        state.workers = [worker if w.id == worker.id else w for w in state.workers]
