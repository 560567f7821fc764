"""
Job state machine.

Terminal states (done, failed, canceled) are immutable: nothing moves a job
out of them. Every move into ``queued`` counts an attempt; the helpers here
compute the next state and attempt count for a failed run.
"""

from __future__ import annotations

from typing import FrozenSet, Set, Tuple

from encodefleet.jobs.models import JobState

TERMINAL_STATES: FrozenSet[JobState] = frozenset({
    JobState.DONE,
    JobState.FAILED,
    JobState.CANCELED,
})

# States in which a worker holds the job.
ACTIVE_STATES: FrozenSet[JobState] = frozenset({
    JobState.ASSIGNED,
    JobState.ENCODING,
})

_TRANSITIONS: Set[Tuple[JobState, JobState]] = {
    (JobState.QUEUED, JobState.ASSIGNED),
    (JobState.ASSIGNED, JobState.ENCODING),
    (JobState.ENCODING, JobState.DONE),
    (JobState.ENCODING, JobState.QUEUED),
    (JobState.ENCODING, JobState.FAILED),
    (JobState.QUEUED, JobState.CANCELED),
    (JobState.ASSIGNED, JobState.QUEUED),
    # Lost or rejected before start with nothing left to retry.
    (JobState.ASSIGNED, JobState.FAILED),
}


def is_terminal(state: JobState) -> bool:
    return state in TERMINAL_STATES


def can_transition(current: JobState, target: JobState) -> bool:
    """True if ``current -> target`` is a legal move."""
    return (current, target) in _TRANSITIONS


def failure_transition(attempts: int, max_attempts: int) -> Tuple[JobState, int]:
    """
    Next state and attempt count for a job whose run failed or timed out.

    The failed run is counted first; the job goes back to the queue while the
    count stays under ``max_attempts`` and fails once it reaches it.
    """
    counted = min(attempts + 1, max_attempts)
    if counted < max_attempts:
        return JobState.QUEUED, counted
    return JobState.FAILED, counted
