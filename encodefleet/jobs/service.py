"""Jobs service: submission, status and cancellation."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from bson import ObjectId

from encodefleet.core.errors import ConfigurationError, InvalidTransition, JobNotFound
from encodefleet.jobs.models import Job, JobFilter, JobState
from encodefleet.store.base import JobStore

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _is_base64_like(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    # Heuristic: large base64 strings tend to be long without spaces.
    return " " not in value and "\n" not in value and len(value) > 8000


def validate_profile(profile: Any, max_bytes: int) -> Dict[str, Any]:
    """
    Reject profiles that cannot be passed through to a worker.

    The profile itself is opaque here; it only has to be a small JSON object
    without embedded media.
    """
    if not isinstance(profile, dict):
        raise ConfigurationError("Profile must be a JSON object.")
    try:
        raw = json.dumps(profile, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Profile is not JSON serializable: {e}") from e
    if len(raw) > max_bytes:
        raise ConfigurationError("Profile too large.")

    def walk(obj: Any) -> None:
        if isinstance(obj, dict):
            for k, v in obj.items():
                if isinstance(k, str) and "base64" in k.lower():
                    raise ConfigurationError("Profile must not include base64 data.")
                walk(v)
        elif isinstance(obj, list):
            for v in obj:
                walk(v)
        elif _is_base64_like(obj):
            raise ConfigurationError("Profile must not include base64 data.")

    walk(profile)
    return profile


class JobsService:
    def __init__(
        self,
        store: JobStore,
        *,
        max_attempts: int,
        max_profile_bytes: int = 20_000,
        idempotency_window_hours: int = 6,
    ):
        self.store = store
        self.max_attempts = max_attempts
        self.max_profile_bytes = max_profile_bytes
        self.idempotency_window = timedelta(hours=idempotency_window_hours)

    def find_idempotent_job(self, idempotency_key: str, now: Optional[datetime] = None) -> Optional[Job]:
        since = (now or _now()) - self.idempotency_window
        jobs = self.store.list_jobs(JobFilter(idempotency_key=idempotency_key, created_after=since))
        return jobs[-1] if jobs else None

    def submit_job(
        self,
        input_ref: str,
        profile: Dict[str, Any],
        *,
        idempotency_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Job:
        """Validate and enqueue a job. A repeated idempotency key returns the earlier job."""
        input_ref = (input_ref or "").strip()
        if not input_ref:
            raise ConfigurationError("input_ref is required.")
        validate_profile(profile, self.max_profile_bytes)

        if idempotency_key:
            existing = self.find_idempotent_job(idempotency_key, now)
            if existing is not None:
                return existing

        now = now or _now()
        job = Job(
            id=str(ObjectId()),
            state=JobState.QUEUED,
            input_ref=input_ref,
            profile=profile,
            max_attempts=self.max_attempts,
            idempotency_key=idempotency_key,
            created_at=now,
            updated_at=now,
        )
        self.store.create_job(job)
        logger.info(f"Job {job.id} queued for {input_ref}")
        return job

    def get_job(self, job_id: str) -> Job:
        job = self.store.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def get_job_status(self, job_id: str) -> JobState:
        return self.get_job(job_id).state

    def cancel_job(self, job_id: str, now: Optional[datetime] = None) -> Job:
        """Cancel a job that has not been picked up yet."""
        now = now or _now()
        canceled = self.store.conditional_update_job(
            job_id,
            JobState.QUEUED,
            JobState.CANCELED,
            {"finished_at": now, "updated_at": now},
        )
        if canceled is not None:
            logger.info(f"Job {job_id} canceled")
            return canceled
        job = self.get_job(job_id)
        raise InvalidTransition(job_id, job.state.value, JobState.CANCELED.value)
