"""
api/errors.py -- AuthError -> HTTP envelope mapping.

Shared by the global exception handler in api/main.py and by routes that
need to decorate an error response (e.g. Cache-Control on /auth/login).

StoreError and any other 5xx never expose the internal message: the client
gets a generic text, the full detail is already in the server log.
"""

from __future__ import annotations

from fastapi.responses import JSONResponse

from api.models import ErrorDetail, ErrorResponse
from auth.errors import AuthError, TemporaryLockError

_GENERIC_SERVER_MESSAGE = "An unexpected error occurred."


def auth_error_response(exc: AuthError) -> JSONResponse:
    if exc.status_code >= 500:
        detail = ErrorDetail(code=exc.error_code, message=_GENERIC_SERVER_MESSAGE)
    else:
        detail = ErrorDetail(code=exc.error_code, message=exc.message, detail=exc.detail or None)
    response = JSONResponse(status_code=exc.status_code, content=ErrorResponse(error=detail).model_dump())
    if isinstance(exc, TemporaryLockError):
        response.headers["Retry-After"] = str(exc.remaining_seconds)
    return response
