"""Celery tasks wrapping the dispatcher and autoscaler ticks."""

from __future__ import annotations

import logging
from typing import Any, Dict

from encodefleet.fleet.autoscaler import ScaleReport
from encodefleet.fleet.dispatcher import DispatchReport
from encodefleet.orchestrator import get_orchestrator
from encodefleet.worker.celery_app import celery_app

logger = logging.getLogger(__name__)


def summarize_dispatch(report: DispatchReport) -> Dict[str, Any]:
    return {
        "assigned": [{"job_id": job_id, "worker_id": worker_id} for job_id, worker_id in report.assigned],
        "timed_out": list(report.timed_out),
        "freed": list(report.freed),
        "requeued": list(report.requeued),
        "skipped": list(report.skipped),
        "errors": report.errors,
    }


def summarize_scale(report: ScaleReport) -> Dict[str, Any]:
    return {
        "queued_jobs": report.queued_jobs,
        "desired_size": report.desired_size,
        "actual_size": report.actual_size,
        "created": list(report.created),
        "deleted": list(report.deleted),
        "terminated": list(report.terminated),
        "adopted": list(report.adopted),
        "failures": report.failures,
        "suspended": report.suspended,
        "aborted": report.aborted,
    }


@celery_app.task(name="encodefleet.worker.tasks.dispatch_tick", acks_late=True)
def dispatch_tick() -> Dict[str, Any]:
    report = get_orchestrator().tick_dispatcher()
    summary = summarize_dispatch(report)
    if report.assigned or report.timed_out:
        logger.info(f"dispatch_tick: {summary}")
    return summary


@celery_app.task(name="encodefleet.worker.tasks.autoscale_tick", acks_late=True)
def autoscale_tick() -> Dict[str, Any]:
    report = get_orchestrator().tick_autoscaler()
    summary = summarize_scale(report)
    logger.info(
        f"autoscale_tick: queued={report.queued_jobs} desired={report.desired_size} "
        f"actual={report.actual_size} created={len(report.created)} deleted={len(report.deleted)}"
    )
    return summary
