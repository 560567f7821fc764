"""Job models and API schemas."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field


class JobState(str, Enum):
    """Lifecycle states of an encoding job."""
    QUEUED = "queued"
    ASSIGNED = "assigned"
    ENCODING = "encoding"
    DONE = "done"
    FAILED = "failed"
    CANCELED = "canceled"


class Job(BaseModel):
    """A single encoding job as held by the store."""
    id: str
    state: JobState = JobState.QUEUED
    input_ref: str
    output_ref: Optional[str] = None
    profile: Dict[str, Any] = Field(default_factory=dict)  # opaque, passed to the encoder
    assigned_worker: Optional[str] = None
    attempts: int = 0
    max_attempts: int = 3
    last_error: Optional[str] = None
    idempotency_key: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class JobFilter(BaseModel):
    """Query for ``list_jobs``. Results are always oldest-first."""
    state: Optional[JobState] = None
    assigned_worker: Optional[str] = None
    idempotency_key: Optional[str] = None
    created_after: Optional[datetime] = None
    limit: Optional[int] = None


OutcomeStatus = Literal["encoding", "done", "failed"]
ErrorKind = Literal["encode", "configuration"]


class JobOutcome(BaseModel):
    """Status report sent by a worker agent for its current job."""
    worker_id: str
    status: OutcomeStatus
    output_ref: Optional[str] = None
    error: Optional[str] = Field(default=None, max_length=4000)
    error_kind: ErrorKind = "encode"


class JobSubmitRequest(BaseModel):
    input_ref: str = Field(..., min_length=1, max_length=1024, description="Storage reference of the source media")
    profile: Dict[str, Any] = Field(default_factory=dict, description="Encode parameters, passed through to workers")
    idempotency_key: Optional[str] = Field(default=None, max_length=200)


class JobSubmitResponse(BaseModel):
    job_id: str
    state: JobState


class JobStatusResponse(BaseModel):
    job_id: str
    state: JobState
    input_ref: str
    output_ref: Optional[str] = None
    attempts: int = 0
    max_attempts: int
    last_error: Optional[str] = None
    assigned_worker: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobStatusResponse":
        return cls(
            job_id=job.id,
            state=job.state,
            input_ref=job.input_ref,
            output_ref=job.output_ref,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            last_error=job.last_error,
            assigned_worker=job.assigned_worker,
            created_at=job.created_at,
            updated_at=job.updated_at,
            started_at=job.started_at,
            finished_at=job.finished_at,
        )


class AssignmentResponse(BaseModel):
    """What a polling worker receives: its current job, if any."""
    job_id: Optional[str] = None
    input_ref: Optional[str] = None
    profile: Dict[str, Any] = Field(default_factory=dict)
    state: Optional[JobState] = None
