"""Error taxonomy for workflow execution.

Every error carries a ``retryable`` flag that the retry policy consults.
Step-level errors end up on the ``StepResult`` they occurred in; execution
level errors (timeout, cancellation) are reflected on the execution record.
"""

from __future__ import annotations

from typing import Optional


class ApiflowError(Exception):
    """Base class for all apiflow errors."""

    retryable: bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(ApiflowError):
    """Malformed workflow or step configuration."""

    def __init__(self, message: str, problems: Optional[list[str]] = None) -> None:
        self.problems = problems or []
        if self.problems:
            message = f"{message}: " + "; ".join(self.problems)
        super().__init__(message)


class NotFoundError(ApiflowError):
    """Requested workflow or execution does not exist."""


class TemplateResolutionError(ApiflowError):
    """A template referenced data that is not present in the context."""


class ConditionEvaluationError(ApiflowError):
    """A condition expression could not be evaluated."""


class TransformError(ApiflowError):
    """A transform operation could not be applied."""


class NetworkError(ApiflowError):
    """The request never produced an HTTP response."""

    retryable = True


class CallTimeoutError(ApiflowError):
    """A single HTTP call exceeded its own timeout."""

    retryable = True


class ResponseStatusError(ApiflowError):
    """The remote service answered with an unacceptable status code."""

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class HTTPClientError(ResponseStatusError):
    """4xx response."""


class HTTPServerError(ResponseStatusError):
    """5xx response."""

    retryable = True


class ExecutionTimeoutError(ApiflowError):
    """The execution-wide deadline was exceeded."""


class ExecutionCanceled(ApiflowError):
    """The execution was canceled by a user request."""


def status_error(status_code: int, message: str) -> ResponseStatusError:
    """Return the error class matching ``status_code``."""
    if status_code >= 500:
        return HTTPServerError(message, status_code)
    if status_code >= 400:
        return HTTPClientError(message, status_code)
    return ResponseStatusError(message, status_code)


__all__ = [
    "ApiflowError",
    "ValidationError",
    "NotFoundError",
    "TemplateResolutionError",
    "ConditionEvaluationError",
    "TransformError",
    "NetworkError",
    "CallTimeoutError",
    "ResponseStatusError",
    "HTTPClientError",
    "HTTPServerError",
    "ExecutionTimeoutError",
    "ExecutionCanceled",
    "status_error",
]
