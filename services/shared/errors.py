from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse


class LendingError(Exception):
    """Base class for every failure the lending core reports to its callers."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(LendingError):
    """Unknown borrower, title or loan id."""

    status_code = 404


class InvalidState(LendingError):
    """The requested transition is not allowed from the current status."""

    status_code = 409


class PolicyViolation(LendingError):
    """A lending rule forbids the action (limits, holds, stock)."""

    status_code = 400


class ValidationError(LendingError):
    """Malformed input: missing ids, negative counts and the like."""

    status_code = 422


class ProviderUnavailable(LendingError):
    """A remote collaborator could not be reached or failed internally."""

    status_code = 503


async def lending_error_handler(request: Request, exc: LendingError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": type(exc).__name__},
    )


def error_from_status(status_code: int, detail: str) -> LendingError:
    """Rebuild the typed error a remote service reported over HTTP."""
    if status_code == 404:
        return NotFound(detail)
    if status_code == 409:
        return InvalidState(detail)
    if status_code == 422:
        return ValidationError(detail)
    if status_code >= 500:
        return ProviderUnavailable(detail)
    return PolicyViolation(detail)
