from __future__ import annotations

import re
import uuid
from typing import Awaitable, Callable

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from structlog import contextvars as structlog_contextvars


_INCOMING_REQUEST_ID = re.compile(r"^[A-Za-z0-9._-]{8,128}$")


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Assign a request ID to each incoming request and expose it in headers.

    - 呼び出し元が妥当な X-Request-ID を送ってきた場合はそれを引き継ぐ
    - `request.state.request_id` に格納し、structlog の contextvars にも束縛する
    - レスポンスヘッダ `X-Request-ID` に同じ値を返す
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:  # type: ignore[override]
        incoming = request.headers.get("x-request-id", "")
        request_id = incoming if _INCOMING_REQUEST_ID.match(incoming) else str(uuid.uuid4())
        request.state.request_id = request_id
        structlog_contextvars.clear_contextvars()
        structlog_contextvars.bind_contextvars(request_id=request_id)
        try:
            response = await call_next(request)
        finally:
            structlog_contextvars.unbind_contextvars("request_id")
        try:
            response.headers["X-Request-ID"] = request_id
        except Exception:
            # Some response types may not allow header mutation after body start
            pass
        return response
