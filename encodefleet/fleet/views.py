"""Fleet API endpoints: fleet listing and the worker reporting channel."""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Path, Query

from encodefleet.core.exceptions import http_errors
from encodefleet.fleet.models import HeartbeatResponse, WorkerResponse
from encodefleet.jobs.models import AssignmentResponse
from encodefleet.orchestrator import Orchestrator, get_orchestrator
from encodefleet.providers import Machine


router = APIRouter(tags=["Fleet"])


@router.get("/fleet", response_model=List[WorkerResponse])
def list_fleet(
    include_terminated: bool = Query(False),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    with http_errors():
        workers = orchestrator.list_fleet(include_terminated=include_terminated)
    return [WorkerResponse.from_worker(w) for w in workers]


@router.get("/fleet/machines", response_model=List[Machine])
def list_machines(orchestrator: Orchestrator = Depends(get_orchestrator)):
    with http_errors():
        return orchestrator.list_machines()


@router.post("/workers/{worker_id}/heartbeat", response_model=HeartbeatResponse)
def heartbeat(
    worker_id: str = Path(..., description="Worker ID"),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    with http_errors():
        worker = orchestrator.heartbeat(worker_id)
    return HeartbeatResponse(worker_id=worker.id, status=worker.status, current_job=worker.current_job)


@router.get("/workers/{worker_id}/assignment", response_model=AssignmentResponse)
def poll_assignment(
    worker_id: str = Path(..., description="Worker ID"),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    with http_errors():
        job = orchestrator.poll_assignment(worker_id)
    if job is None:
        return AssignmentResponse()
    return AssignmentResponse(job_id=job.id, input_ref=job.input_ref, profile=job.profile, state=job.state)
