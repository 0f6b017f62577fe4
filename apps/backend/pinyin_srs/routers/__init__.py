"""HTTP routers and the shared SRS error → HTTP status translation."""

from __future__ import annotations

from fastapi import HTTPException, status

from ..errors import (
    BackendUnavailableError,
    ConcurrencyConflictError,
    NotFoundError,
    SRSError,
    ValidationError,
)


def http_error_for(exc: SRSError) -> HTTPException:
    """Translate an SRS error into the HTTP status the client should see.

    - ValidationError → 400（入力を直せば成功する）
    - NotFoundError → 404
    - ConcurrencyConflictError → 409（再送で成功し得る）
    - BackendUnavailableError → 503（時間をおいて再試行）
    """

    if isinstance(exc, ValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, ConcurrencyConflictError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Review was updated concurrently; please retry",
        )
    if isinstance(exc, BackendUnavailableError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Review storage is temporarily unavailable",
            headers={"Retry-After": "1"},
        )
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="SRS failure")
