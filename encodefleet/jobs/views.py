"""Jobs API endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Path

from encodefleet.core.exceptions import http_errors
from encodefleet.jobs.models import (
    JobOutcome,
    JobStatusResponse,
    JobSubmitRequest,
    JobSubmitResponse,
)
from encodefleet.orchestrator import Orchestrator, get_orchestrator


router = APIRouter(prefix="/jobs", tags=["Jobs"])


@router.post("", response_model=JobSubmitResponse)
def submit_job(
    body: JobSubmitRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    with http_errors():
        job_id = orchestrator.submit_job(
            body.input_ref,
            body.profile or {},
            idempotency_key=body.idempotency_key,
        )
        state = orchestrator.get_job_status(job_id)
    return JobSubmitResponse(job_id=job_id, state=state)


@router.get("/{job_id}", response_model=JobStatusResponse)
def get_job(
    job_id: str = Path(..., description="Job ID"),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    with http_errors():
        job = orchestrator.get_job(job_id)
    return JobStatusResponse.from_job(job)


@router.post("/{job_id}/cancel", response_model=JobStatusResponse)
def cancel_job(
    job_id: str = Path(..., description="Job ID"),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    with http_errors():
        job = orchestrator.cancel_job(job_id)
    return JobStatusResponse.from_job(job)


@router.post("/{job_id}/report", response_model=JobStatusResponse)
def report_status(
    body: JobOutcome,
    job_id: str = Path(..., description="Job ID"),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Worker agents report start, completion or failure of their job here."""
    with http_errors():
        job = orchestrator.report_status(job_id, body)
    return JobStatusResponse.from_job(job)
