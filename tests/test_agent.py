"""
Tests for the worker agent and encoder

Validates:
- One poll cycle runs an assigned job end to end
- Encode and configuration failures are reported with their kind
- Transient storage errors are retried before the attempt is given up
- A draining worker stops polling
- Fleet errors in a poll cycle are logged and the agent keeps polling
"""

import subprocess
from pathlib import Path
from typing import List, Tuple

import pytest

from encodefleet.core.errors import (
    AssignmentConflict,
    ConfigurationError,
    EncodeFailure,
    JobNotFound,
    TransientInfraError,
    WorkerNotFound,
)
from encodefleet.fleet.models import HeartbeatResponse, WorkerStatus
from encodefleet.jobs.models import AssignmentResponse, JobOutcome, JobState
from encodefleet.worker.agent import WorkerAgent
from encodefleet.worker.encoder import FFmpegEncoder, parse_profile


class FakeChannel:
    def __init__(self, assignment=None, status=WorkerStatus.BUSY):
        self.assignment = assignment or AssignmentResponse()
        self.status = status
        self.heartbeats = 0
        self.reports: List[Tuple[str, JobOutcome]] = []
        self.report_error = None
        self.heartbeat_errors = []

    def heartbeat(self, worker_id):
        self.heartbeats += 1
        if self.heartbeat_errors:
            raise self.heartbeat_errors.pop(0)
        return HeartbeatResponse(worker_id=worker_id, status=self.status)

    def poll_assignment(self, worker_id):
        return self.assignment

    def report_status(self, job_id, outcome):
        if self.report_error is not None:
            raise self.report_error
        self.reports.append((job_id, outcome))


class FakeStorage:
    def __init__(self, objects=None, fetch_errors=None):
        self.objects = dict(objects or {})
        self.fetch_errors = list(fetch_errors or [])
        self.fetch_calls = 0

    def fetch(self, ref):
        self.fetch_calls += 1
        if self.fetch_errors:
            raise self.fetch_errors.pop(0)
        if ref not in self.objects:
            raise ConfigurationError(f"Input '{ref}' does not exist.")
        return self.objects[ref]

    def store(self, data, ref, content_type="application/octet-stream"):
        self.objects[ref] = data
        return f"s3://media-out/{ref}"


class FakeEncoder:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def encode(self, data, profile):
        self.calls.append((data, profile))
        if self.error is not None:
            raise self.error
        return b"encoded:" + data


def _assignment(job_id="j1", profile=None):
    return AssignmentResponse(
        job_id=job_id,
        input_ref="uploads/clip.mov",
        profile={"container": "mp4"} if profile is None else profile,
        state=JobState.ASSIGNED,
    )


def _agent(channel, storage=None, encoder=None):
    return WorkerAgent(
        "encoder-0",
        channel,
        storage or FakeStorage({"uploads/clip.mov": b"raw"}),
        encoder or FakeEncoder(),
        poll_interval=0.01,
        retry_attempts=3,
        retry_max_wait=0,
    )


def _statuses(channel):
    return [(outcome.status, outcome.error_kind) for _, outcome in channel.reports]


class TestRunOnce:
    def test_idle_when_nothing_assigned(self):
        channel = FakeChannel(status=WorkerStatus.READY)
        assert _agent(channel).run_once() == "idle"
        assert channel.reports == []

    @pytest.mark.parametrize("status", [WorkerStatus.DRAINING, WorkerStatus.TERMINATED])
    def test_stops_when_drained(self, status):
        channel = FakeChannel(_assignment(), status=status)
        assert _agent(channel).run_once() == "stop"
        assert channel.reports == []

    def test_runs_job_end_to_end(self):
        channel = FakeChannel(_assignment())
        storage = FakeStorage({"uploads/clip.mov": b"raw"})

        assert _agent(channel, storage).run_once() == "done"

        assert [o.status for _, o in channel.reports] == ["encoding", "done"]
        job_id, done = channel.reports[-1]
        assert job_id == "j1"
        assert done.worker_id == "encoder-0"
        assert done.output_ref == "s3://media-out/encoded/j1.mp4"
        assert storage.objects["encoded/j1.mp4"] == b"encoded:raw"

    def test_output_uses_profile_container(self):
        channel = FakeChannel(_assignment(profile={"container": "webm"}))
        _agent(channel).run_once()
        assert channel.reports[-1][1].output_ref == "s3://media-out/encoded/j1.webm"

    def test_encode_failure_reported(self):
        channel = FakeChannel(_assignment())
        encoder = FakeEncoder(EncodeFailure("ffmpeg exited with 1"))

        assert _agent(channel, encoder=encoder).run_once() == "failed"

        assert _statuses(channel)[-1] == ("failed", "encode")
        assert "ffmpeg exited with 1" in channel.reports[-1][1].error

    def test_invalid_profile_is_configuration_error(self):
        channel = FakeChannel(_assignment(profile={"container": "NOT VALID"}))
        encoder = FakeEncoder()

        assert _agent(channel, encoder=encoder).run_once() == "failed"

        assert _statuses(channel)[-1] == ("failed", "configuration")
        assert encoder.calls == []

    def test_missing_input_is_configuration_error(self):
        channel = FakeChannel(_assignment())
        storage = FakeStorage({})

        _agent(channel, storage).run_once()

        assert _statuses(channel)[-1] == ("failed", "configuration")

    def test_transient_storage_errors_retried(self):
        channel = FakeChannel(_assignment())
        storage = FakeStorage(
            {"uploads/clip.mov": b"raw"},
            fetch_errors=[TransientInfraError("timeout"), TransientInfraError("timeout")],
        )

        assert _agent(channel, storage).run_once() == "done"
        assert storage.fetch_calls == 3

    def test_storage_outage_fails_attempt(self):
        channel = FakeChannel(_assignment())
        storage = FakeStorage(
            {"uploads/clip.mov": b"raw"},
            fetch_errors=[TransientInfraError("timeout")] * 3,
        )

        assert _agent(channel, storage).run_once() == "failed"

        assert storage.fetch_calls == 3
        assert _statuses(channel)[-1] == ("failed", "encode")
        assert "storage unavailable" in channel.reports[-1][1].error

    def test_job_taken_away_before_start(self):
        channel = FakeChannel(_assignment())
        channel.report_error = AssignmentConflict("job requeued")
        storage = FakeStorage({"uploads/clip.mov": b"raw"})

        assert _agent(channel, storage).run_once() == "lost"
        assert storage.fetch_calls == 0


class TestRun:
    def test_run_exits_when_draining(self):
        channel = FakeChannel(status=WorkerStatus.DRAINING)
        _agent(channel).run()
        assert channel.heartbeats == 1

    def test_stop_before_run(self):
        channel = FakeChannel(status=WorkerStatus.READY)
        agent = _agent(channel)
        agent.stop()
        agent.run()
        assert channel.heartbeats == 0

    def test_unknown_worker_is_logged_and_retried(self, caplog):
        channel = FakeChannel(status=WorkerStatus.DRAINING)
        channel.heartbeat_errors = [WorkerNotFound("encoder-0")]

        _agent(channel).run()

        assert channel.heartbeats == 2
        assert "encoder-0" in caplog.text

    def test_vanished_job_does_not_crash_the_agent(self):
        class VanishingJobChannel(FakeChannel):
            def report_status(self, job_id, outcome):
                self.status = WorkerStatus.DRAINING
                raise JobNotFound(job_id)

        channel = VanishingJobChannel(_assignment())
        _agent(channel).run()

        assert channel.heartbeats >= 2
        assert channel.reports == []


class TestEncoder:
    def test_profile_defaults(self):
        profile = parse_profile({})
        assert profile.container == "mp4"
        assert profile.ffmpeg_args == []

    def test_profile_rejects_bad_container(self):
        with pytest.raises(ConfigurationError):
            parse_profile({"container": "../../etc"})

    def test_build_command(self):
        profile = parse_profile({"ffmpeg_args": ["-c:v", "libx264", "-crf", "23"]})
        cmd = FFmpegEncoder("/usr/bin/ffmpeg").build_command(Path("in"), Path("out.mp4"), profile)
        assert cmd == ["/usr/bin/ffmpeg", "-hide_banner", "-nostdin", "-y", "-i", "in", "-c:v", "libx264", "-crf", "23", "out.mp4"]

    def test_encode_returns_output(self, monkeypatch):
        def fake_run(cmd, **kwargs):
            Path(cmd[-1]).write_bytes(b"encoded")
            return subprocess.CompletedProcess(cmd, 0, b"", b"")

        monkeypatch.setattr(subprocess, "run", fake_run)
        assert FFmpegEncoder().encode(b"raw", {"container": "mkv"}) == b"encoded"

    def test_nonzero_exit(self, monkeypatch):
        monkeypatch.setattr(
            subprocess, "run", lambda cmd, **kwargs: subprocess.CompletedProcess(cmd, 1, b"", b"Invalid data found")
        )
        with pytest.raises(EncodeFailure, match="Invalid data found"):
            FFmpegEncoder().encode(b"raw", {})

    def test_missing_binary(self):
        with pytest.raises(EncodeFailure, match="not found"):
            FFmpegEncoder("/nonexistent/ffmpeg-binary").encode(b"raw", {})
