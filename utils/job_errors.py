"""Job error types and classification helpers."""

from __future__ import annotations

from pydantic import ValidationError


class ConfigurationError(RuntimeError):
    """Raised when required worker configuration is missing or invalid."""


class ContentError(ValueError):
    """Raised when a job's payload, database row or image content is unusable."""


PERMANENT_JOB_ERRORS = (ValidationError, ValueError, FileNotFoundError)


def is_permanent_job_error(error: BaseException) -> bool:
    return isinstance(error, PERMANENT_JOB_ERRORS)


def format_job_error(error: BaseException) -> str:
    """Render an error for the job row's last_error column."""
    message = str(error).strip()
    if not message:
        return type(error).__name__
    return f"{type(error).__name__}: {message}"
