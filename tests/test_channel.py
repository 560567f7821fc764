"""
Tests for the HTTP reporting channel used by worker agents
"""

import httpx
import pytest

from encodefleet.core.errors import AssignmentConflict, JobNotFound, TransientInfraError, WorkerNotFound
from encodefleet.fleet.models import WorkerStatus
from encodefleet.jobs.models import JobOutcome
from encodefleet.worker.channel import HttpReportingChannel


def _channel(handler):
    client = httpx.Client(transport=httpx.MockTransport(handler), base_url="http://control.test/api/v1")
    return HttpReportingChannel(client)


def test_heartbeat():
    def handler(request):
        assert request.method == "POST"
        assert request.url.path == "/api/v1/workers/encoder-0/heartbeat"
        return httpx.Response(200, json={"worker_id": "encoder-0", "status": "ready", "current_job": None})

    beat = _channel(handler).heartbeat("encoder-0")
    assert beat.status == WorkerStatus.READY


def test_poll_assignment():
    def handler(request):
        return httpx.Response(
            200,
            json={"job_id": "j1", "input_ref": "uploads/a.mov", "profile": {"container": "mp4"}, "state": "assigned"},
        )

    assignment = _channel(handler).poll_assignment("encoder-0")
    assert assignment.job_id == "j1"
    assert assignment.profile == {"container": "mp4"}


def test_report_sends_outcome():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = request.content
        return httpx.Response(200, json={})

    _channel(handler).report_status("j1", JobOutcome(worker_id="encoder-0", status="done", output_ref="s3://b/k"))
    assert seen["path"] == "/api/v1/jobs/j1/report"
    assert b'"output_ref":"s3://b/k"' in seen["body"].replace(b" ", b"")


@pytest.mark.parametrize(
    "status_code,error",
    [(409, AssignmentConflict), (404, JobNotFound), (503, TransientInfraError), (429, TransientInfraError)],
)
def test_report_errors(status_code, error):
    channel = _channel(lambda request: httpx.Response(status_code, json={"detail": "Job j1 is queued"}))
    with pytest.raises(error):
        channel.report_status("j1", JobOutcome(worker_id="encoder-0", status="encoding"))


def test_unknown_worker():
    channel = _channel(lambda request: httpx.Response(404, json={"detail": "Worker not found"}))
    with pytest.raises(WorkerNotFound):
        channel.heartbeat("encoder-9")


def test_connection_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(TransientInfraError):
        _channel(handler).poll_assignment("encoder-0")
