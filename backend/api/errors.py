"""Translate domain errors into HTTP responses for admin-facing routes."""

from fastapi import HTTPException

from experiments.errors import ABTestError, ConflictError


def http_error(exc: ABTestError) -> HTTPException:
    detail: dict | str = str(exc)
    if isinstance(exc, ConflictError) and exc.blocking_id:
        detail = {"message": str(exc), "blockingTestId": exc.blocking_id}
    return HTTPException(status_code=exc.status_code, detail=detail)
