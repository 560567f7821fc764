"""MongoDB-backed store (pymongo, synchronous)."""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, ReturnDocument
from pymongo.database import Database as MongoDatabase
from pymongo.errors import DuplicateKeyError, PyMongoError

from encodefleet.core.errors import TransientInfraError
from encodefleet.fleet.models import Worker, WorkerStatus
from encodefleet.jobs.models import Job, JobFilter, JobState
from encodefleet.store.base import JobStates, WorkerStatuses, as_set, utcnow

logger = logging.getLogger(__name__)


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _to_doc(record) -> Dict[str, Any]:
    doc = {k: _plain(v) for k, v in record.model_dump().items()}
    doc["_id"] = doc.pop("id")
    return doc


def _set_clause(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {k: _plain(v) for k, v in fields.items()}


def _state_filter(values: set) -> Any:
    plain = sorted(_plain(v) for v in values)
    return plain[0] if len(plain) == 1 else {"$in": plain}


def _job(doc: Optional[dict]) -> Optional[Job]:
    if not doc:
        return None
    doc["id"] = str(doc.pop("_id"))
    return Job(**doc)


def _worker(doc: Optional[dict]) -> Optional[Worker]:
    if not doc:
        return None
    doc["id"] = str(doc.pop("_id"))
    return Worker(**doc)


class MongoStore:
    """Jobs and workers as documents keyed by their ids."""

    def __init__(self, db: MongoDatabase):
        self._db = db

    def _jobs(self):
        return self._db["jobs"]

    def _workers(self):
        return self._db["workers"]

    @staticmethod
    def _transient(operation: str, e: PyMongoError) -> TransientInfraError:
        logger.warning(f"Store {operation} failed: {e}")
        return TransientInfraError(f"Store {operation} failed: {e}", operation=operation)

    # Jobs

    def create_job(self, job: Job) -> Job:
        try:
            self._jobs().insert_one(_to_doc(job))
        except DuplicateKeyError:
            raise ValueError(f"Job {job.id} already exists")
        except PyMongoError as e:
            raise self._transient("create_job", e) from e
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        try:
            return _job(self._jobs().find_one({"_id": job_id}))
        except PyMongoError as e:
            raise self._transient("get_job", e) from e

    def conditional_update_job(
        self,
        job_id: str,
        expected_state: JobStates,
        new_state: JobState,
        fields: Optional[Dict[str, Any]] = None,
        *,
        match: Optional[Dict[str, Any]] = None,
    ) -> Optional[Job]:
        query = {"_id": job_id, "state": _state_filter(as_set(expected_state)), **_set_clause(match or {})}
        update = {"updated_at": utcnow(), **(fields or {}), "state": new_state}
        try:
            doc = self._jobs().find_one_and_update(
                query,
                {"$set": _set_clause(update)},
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            raise self._transient("conditional_update_job", e) from e
        return _job(doc)

    def list_jobs(self, query: Optional[JobFilter] = None) -> List[Job]:
        query = query or JobFilter()
        criteria: Dict[str, Any] = {}
        if query.state is not None:
            criteria["state"] = query.state.value
        if query.assigned_worker is not None:
            criteria["assigned_worker"] = query.assigned_worker
        if query.idempotency_key is not None:
            criteria["idempotency_key"] = query.idempotency_key
        if query.created_after is not None:
            criteria["created_at"] = {"$gte": query.created_after}
        try:
            cursor = self._jobs().find(criteria).sort([("created_at", ASCENDING), ("_id", ASCENDING)])
            if query.limit is not None:
                cursor = cursor.limit(query.limit)
            return [_job(doc) for doc in cursor]
        except PyMongoError as e:
            raise self._transient("list_jobs", e) from e

    def count_jobs(self, state: JobState) -> int:
        try:
            return self._jobs().count_documents({"state": state.value})
        except PyMongoError as e:
            raise self._transient("count_jobs", e) from e

    # Workers

    def claim_worker_slot(self, worker: Worker) -> bool:
        doc = _to_doc(worker)
        try:
            self._workers().insert_one(doc)
            return True
        except DuplicateKeyError:
            pass
        except PyMongoError as e:
            raise self._transient("claim_worker_slot", e) from e
        # The slot exists; reclaim it only if it was retired.
        try:
            result = self._workers().replace_one(
                {"_id": worker.id, "status": WorkerStatus.TERMINATED.value},
                {k: v for k, v in doc.items() if k != "_id"},
            )
        except PyMongoError as e:
            raise self._transient("claim_worker_slot", e) from e
        return result.modified_count == 1

    def get_worker(self, worker_id: str) -> Optional[Worker]:
        try:
            return _worker(self._workers().find_one({"_id": worker_id}))
        except PyMongoError as e:
            raise self._transient("get_worker", e) from e

    def conditional_update_worker(
        self,
        worker_id: str,
        expected_status: WorkerStatuses,
        new_status: WorkerStatus,
        fields: Optional[Dict[str, Any]] = None,
        *,
        match: Optional[Dict[str, Any]] = None,
    ) -> Optional[Worker]:
        query = {"_id": worker_id, "status": _state_filter(as_set(expected_status)), **_set_clause(match or {})}
        update = {"updated_at": utcnow(), **(fields or {}), "status": new_status}
        try:
            doc = self._workers().find_one_and_update(
                query,
                {"$set": _set_clause(update)},
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            raise self._transient("conditional_update_worker", e) from e
        return _worker(doc)

    def record_heartbeat(self, worker_id: str, at: datetime) -> Optional[Worker]:
        try:
            doc = self._workers().find_one_and_update(
                {"_id": worker_id},
                {"$set": {"last_heartbeat": at, "updated_at": at}},
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            raise self._transient("record_heartbeat", e) from e
        return _worker(doc)

    def list_workers(self, statuses: Optional[WorkerStatuses] = None) -> List[Worker]:
        criteria: Dict[str, Any] = {}
        if statuses is not None:
            criteria["status"] = {"$in": sorted(_plain(s) for s in as_set(statuses))}
        try:
            return [_worker(doc) for doc in self._workers().find(criteria).sort("_id", ASCENDING)]
        except PyMongoError as e:
            raise self._transient("list_workers", e) from e
