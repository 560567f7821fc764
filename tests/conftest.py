"""Shared fixtures: in-memory store, a recording fake provider, record factories."""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from encodefleet.fleet.autoscaler import Autoscaler, ScalingPolicy
from encodefleet.fleet.dispatcher import Dispatcher
from encodefleet.fleet.models import Worker, WorkerStatus
from encodefleet.jobs.models import Job, JobState
from encodefleet.jobs.service import JobsService
from encodefleet.providers import Machine, MachineCreated, MachineDeleted, MachineSpec, MachineStatus
from encodefleet.store import MemoryStore

T0 = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


class FakeProvider:
    """Provider double that keeps machines in a dict and records every call."""

    name = "fake"

    def __init__(self):
        self.machines: Dict[str, Machine] = {}
        self.created: List[MachineSpec] = []
        self.deleted: List[str] = []
        self.create_error: Optional[Exception] = None
        self.delete_error: Optional[Exception] = None
        self.list_error: Optional[Exception] = None
        self._seq = 0

    def add_machine(self, name: str, status: MachineStatus = MachineStatus.RUNNING) -> Machine:
        self._seq += 1
        machine = Machine(id=f"m-{self._seq}", name=name, status=status, tags=["encodefleet"], provider=self.name)
        self.machines[machine.id] = machine
        return machine

    def set_status(self, machine_ref: str, status: MachineStatus) -> None:
        self.machines[machine_ref] = self.machines[machine_ref].model_copy(update={"status": status})

    def create_machine(self, spec: MachineSpec) -> MachineCreated:
        self.created.append(spec)
        if self.create_error is not None:
            raise self.create_error
        machine = self.add_machine(spec.name, MachineStatus.PROVISIONING)
        return MachineCreated(id=machine.id, provider=self.name)

    def delete_machine(self, machine_ref: str) -> MachineDeleted:
        self.deleted.append(machine_ref)
        if self.delete_error is not None:
            raise self.delete_error
        if machine_ref in self.machines:
            self.set_status(machine_ref, MachineStatus.STOPPING)
        return MachineDeleted(id=machine_ref, provider=self.name)

    def list_machines(self) -> List[Machine]:
        if self.list_error is not None:
            raise self.list_error
        return [m for m in self.machines.values() if m.status != MachineStatus.TERMINATED]

    def describe_machine(self, machine_ref: str) -> MachineStatus:
        machine = self.machines.get(machine_ref)
        return machine.status if machine else MachineStatus.TERMINATED


def spec_factory(worker_id: str, client_token: Optional[str] = None) -> MachineSpec:
    return MachineSpec(
        name=worker_id,
        size="s-2vcpu-4gb",
        region="nyc3",
        image="encoder-image",
        tags=["encodefleet"],
        client_token=client_token,
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def policy():
    return ScalingPolicy(
        min_size=0,
        max_size=10,
        jobs_per_worker=1.0,
        max_pending_creations=5,
        scale_down_idle_seconds=0,
        provision_timeout_seconds=600,
        delete_confirm_timeout_seconds=300,
        unreachable_grace_seconds=300,
        failure_cap=3,
        backoff_seconds=60,
        backoff_max_seconds=600,
        name_prefix="encoder",
    )


@pytest.fixture
def autoscaler(store, provider, policy):
    return Autoscaler(store, provider, policy, spec_factory)


@pytest.fixture
def dispatcher(store):
    return Dispatcher(store, heartbeat_timeout=60)


@pytest.fixture
def jobs(store):
    return JobsService(store, max_attempts=3, max_profile_bytes=2_000, idempotency_window_hours=6)


@pytest.fixture
def make_job(store):
    """Insert a job directly into the store; ``age`` orders jobs oldest-first."""
    def _make(job_id: str, *, state: JobState = JobState.QUEUED, age: int = 0, **fields) -> Job:
        created = T0 - timedelta(seconds=age)
        job = Job(
            id=job_id,
            state=state,
            input_ref=f"s3://media-in/{job_id}.mov",
            profile={"container": "mp4"},
            created_at=created,
            updated_at=created,
            **fields,
        )
        return store.create_job(job)

    return _make


@pytest.fixture
def make_worker(store, provider):
    """Insert a worker record backed by a running fake machine."""
    def _make(worker_id: str, *, status: WorkerStatus = WorkerStatus.READY, idle_for: int = 600, **fields) -> Worker:
        machine = provider.add_machine(worker_id)
        since = T0 - timedelta(seconds=idle_for)
        values = {
            "machine_ref": machine.id,
            "status": status,
            "last_heartbeat": T0,
            "idle_since": since if status == WorkerStatus.READY else None,
            "created_at": since,
            "updated_at": since,
        }
        values.update(fields)
        worker = Worker(id=worker_id, **values)
        assert store.claim_worker_slot(worker)
        return worker

    return _make


@pytest.fixture
def t0():
    return T0
