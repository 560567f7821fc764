"""Fleet models: worker records and the per-tick fleet snapshot."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Set

from pydantic import BaseModel

from encodefleet.providers.base import Machine


class WorkerStatus(str, Enum):
    PROVISIONING = "provisioning"
    READY = "ready"
    BUSY = "busy"
    UNREACHABLE = "unreachable"
    DRAINING = "draining"
    TERMINATED = "terminated"


# Workers that count towards the fleet's actual size.
COUNTED_STATUSES = frozenset({WorkerStatus.READY, WorkerStatus.BUSY, WorkerStatus.PROVISIONING})


class Worker(BaseModel):
    """A fleet member. ``id`` doubles as the provider machine name."""
    id: str
    machine_ref: Optional[str] = None
    status: WorkerStatus = WorkerStatus.PROVISIONING
    current_job: Optional[str] = None
    last_heartbeat: Optional[datetime] = None
    idle_since: Optional[datetime] = None
    draining_since: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class WorkerResponse(BaseModel):
    worker_id: str
    machine_ref: Optional[str] = None
    status: WorkerStatus
    current_job: Optional[str] = None
    last_heartbeat: Optional[datetime] = None
    idle_since: Optional[datetime] = None

    @classmethod
    def from_worker(cls, worker: Worker) -> "WorkerResponse":
        return cls(
            worker_id=worker.id,
            machine_ref=worker.machine_ref,
            status=worker.status,
            current_job=worker.current_job,
            last_heartbeat=worker.last_heartbeat,
            idle_since=worker.idle_since,
        )


class HeartbeatResponse(BaseModel):
    worker_id: str
    status: WorkerStatus
    current_job: Optional[str] = None


@dataclass
class FleetState:
    """
    Snapshot of the fleet, rebuilt at the start of every autoscaler tick.

    Never persisted and never reused across ticks.
    """
    queued_jobs: int
    workers: List[Worker]
    machines: Dict[str, Machine]  # by machine ref
    desired_size: int = 0
    pending_creations: Set[str] = field(default_factory=set)  # worker ids / machine names
    pending_deletions: Set[str] = field(default_factory=set)  # machine refs

    def with_status(self, *statuses: WorkerStatus) -> List[Worker]:
        return [w for w in self.workers if w.status in statuses]

    @property
    def actual_size(self) -> int:
        return sum(
            1
            for w in self.workers
            if w.status in COUNTED_STATUSES
            and not (w.machine_ref and w.machine_ref in self.pending_deletions)
        )
