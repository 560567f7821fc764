"""Domain error taxonomy for the dispatch and autoscaling engine.

Only ``EncodeFailure`` (after attempts are exhausted) and
``ConfigurationError`` ever surface as a failed job. Everything else is
handled inside the tick that raised it and retried on the next one.
"""

from __future__ import annotations

from typing import Optional


class FleetError(Exception):
    """Base class for engine errors."""


class TransientInfraError(FleetError):
    """Store, provider or network call failed or timed out; retry next tick."""

    def __init__(self, message: str, *, operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation


class AssignmentConflict(FleetError):
    """A conditional update lost its race against another writer."""


class EncodeFailure(FleetError):
    """The worker could not produce an output for the job."""


class ProvisioningFailure(FleetError):
    """The provider rejected a machine create or delete."""

    def __init__(self, message: str, *, machine: Optional[str] = None):
        super().__init__(message)
        self.machine = machine


class ConfigurationError(FleetError):
    """Invalid profile, input or machine spec. Never retried."""


class InvalidTransition(FleetError):
    """The requested job state change is not allowed from the current state."""

    def __init__(self, job_id: str, current: str, target: str):
        super().__init__(f"Job {job_id} cannot move from {current} to {target}")
        self.job_id = job_id
        self.current = current
        self.target = target


class JobNotFound(FleetError):
    pass


class WorkerNotFound(FleetError):
    pass
