"""
Custom application exceptions.
"""

from contextlib import contextmanager

from fastapi import HTTPException, status

from encodefleet.core.errors import (
    AssignmentConflict,
    ConfigurationError,
    InvalidTransition,
    JobNotFound,
    TransientInfraError,
    WorkerNotFound,
)


class AppException(HTTPException):
    """Base application exception."""

    def __init__(self, detail: str, status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR):
        super().__init__(status_code=status_code, detail=detail)


class NotFoundException(AppException):
    """Resource not found exception."""

    def __init__(self, detail: str = "Resource not found"):
        super().__init__(detail=detail, status_code=status.HTTP_404_NOT_FOUND)


class BadRequestException(AppException):
    """Bad request exception."""

    def __init__(self, detail: str = "Bad request"):
        super().__init__(detail=detail, status_code=status.HTTP_400_BAD_REQUEST)


class ConflictException(AppException):
    """Request conflicts with the current state of the resource."""

    def __init__(self, detail: str = "Conflict"):
        super().__init__(detail=detail, status_code=status.HTTP_409_CONFLICT)


class ServiceUnavailableException(AppException):
    """A backing service (store, provider) is temporarily unavailable."""

    def __init__(self, detail: str = "Service temporarily unavailable"):
        super().__init__(detail=detail, status_code=status.HTTP_503_SERVICE_UNAVAILABLE)


@contextmanager
def http_errors():
    """Translate engine errors raised inside a route into HTTP errors."""
    try:
        yield
    except (JobNotFound, WorkerNotFound) as e:
        kind = "Job" if isinstance(e, JobNotFound) else "Worker"
        raise NotFoundException(f"{kind} not found") from e
    except ConfigurationError as e:
        raise BadRequestException(str(e)) from e
    except (InvalidTransition, AssignmentConflict) as e:
        raise ConflictException(str(e)) from e
    except TransientInfraError as e:
        raise ServiceUnavailableException("Backing service unavailable, retry later.") from e
