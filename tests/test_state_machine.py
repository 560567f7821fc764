"""
Tests for the job state machine

Validates:
- Legal and illegal transitions
- Terminal states are final
- Attempt counting on failure is monotone and bounded
"""

import pytest

from encodefleet.jobs.models import JobState
from encodefleet.jobs.state import (
    ACTIVE_STATES,
    TERMINAL_STATES,
    can_transition,
    failure_transition,
    is_terminal,
)


class TestTransitions:
    @pytest.mark.parametrize(
        "current,target",
        [
            (JobState.QUEUED, JobState.ASSIGNED),
            (JobState.ASSIGNED, JobState.ENCODING),
            (JobState.ENCODING, JobState.DONE),
            (JobState.ENCODING, JobState.QUEUED),
            (JobState.ENCODING, JobState.FAILED),
            (JobState.QUEUED, JobState.CANCELED),
            (JobState.ASSIGNED, JobState.QUEUED),
            (JobState.ASSIGNED, JobState.FAILED),
        ],
    )
    def test_allowed(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize(
        "current,target",
        [
            (JobState.QUEUED, JobState.DONE),
            (JobState.QUEUED, JobState.ENCODING),
            (JobState.ASSIGNED, JobState.DONE),
            (JobState.ENCODING, JobState.CANCELED),
            (JobState.ASSIGNED, JobState.CANCELED),
        ],
    )
    def test_rejected(self, current, target):
        assert not can_transition(current, target)

    def test_terminal_states_have_no_exits(self):
        """Nothing moves a job out of done, failed or canceled."""
        for current in TERMINAL_STATES:
            assert is_terminal(current)
            for target in JobState:
                assert not can_transition(current, target)

    def test_active_states_are_not_terminal(self):
        assert not (ACTIVE_STATES & TERMINAL_STATES)
        assert not is_terminal(JobState.QUEUED)


class TestFailureTransition:
    def test_requeues_while_attempts_remain(self):
        assert failure_transition(0, 3) == (JobState.QUEUED, 1)
        assert failure_transition(1, 3) == (JobState.QUEUED, 2)

    def test_fails_when_attempts_reach_max(self):
        assert failure_transition(2, 3) == (JobState.FAILED, 3)

    def test_single_attempt_job_fails_immediately(self):
        assert failure_transition(0, 1) == (JobState.FAILED, 1)

    def test_count_never_exceeds_max(self):
        """Attempts stay bounded even for a record already at the limit."""
        assert failure_transition(3, 3) == (JobState.FAILED, 3)
        assert failure_transition(7, 3) == (JobState.FAILED, 3)
