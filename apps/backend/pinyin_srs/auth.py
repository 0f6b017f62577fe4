from __future__ import annotations

from fastapi import HTTPException, Request, status
from structlog import contextvars as structlog_contextvars

from .logging import logger


USER_ID_HEADER = "X-User-Id"
_MAX_USER_ID_LENGTH = 128


async def get_current_user_id(request: Request) -> str:
    """Resolve the caller's user id from the ``X-User-Id`` header.

    なぜ: 認証そのものは前段（API ゲートウェイ等）が担い、このサービスは
    検証済みのユーザー ID をヘッダーで受け取る。欠落・不正値は 401 で拒否し、
    以降のログへ user_id を contextvars で紐付ける。
    """

    raw = (request.headers.get(USER_ID_HEADER) or "").strip()
    if not raw or len(raw) > _MAX_USER_ID_LENGTH:
        logger.warning(
            "user_id_missing",
            path=request.url.path,
            request_id=getattr(request.state, "request_id", None),
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-Id header is missing or invalid",
        )
    request.state.user_id = raw
    structlog_contextvars.bind_contextvars(user_id=raw)
    return raw
