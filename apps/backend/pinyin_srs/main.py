from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import Response
from starlette.types import ASGIApp

from .config import settings
from .logging import configure_logging, logger
from .metrics import registry
from .middleware import RequestIDMiddleware
from .routers import health
from .routers import review as review_router
from .routers import stats as stats_router
from .service import get_review_service


class AccessLogAndMetricsMiddleware(BaseHTTPMiddleware):
    """Emit structured request logs and capture latency/metrics for each call.

    なぜ: すべてのリクエストに `request_id` を付与したうえで、
    構造化ログとメトリクスへ遅延・ステータス・エラー有無を記録し、
    運用時に 409/503 の増加を即座に追えるようにする。
    """

    def __init__(self, app: ASGIApp) -> None:
        super().__init__(app)

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:  # type: ignore[override]
        start = time.time()
        path = request.url.path
        method = request.method
        request_id = getattr(request.state, "request_id", None)
        if not request_id:
            request_id = uuid4().hex
            request.state.request_id = request_id
        client_ip = request.client.host if request.client else "unknown"
        is_error = False
        is_timeout = False
        status_code: int | None = None
        error_type: str | None = None
        error_message: str | None = None
        try:
            response = await call_next(request)
            status_code = getattr(response, "status_code", None)
            is_error = status_code is not None and status_code >= 500
            return response
        except Exception as exc:
            is_error = True
            status_code = 500
            error_type = exc.__class__.__name__
            raw_error_message = str(exc)
            # 例外型と簡潔なメッセージを残しつつログ膨張を防ぐ
            error_message = (
                raw_error_message
                if len(raw_error_message) <= 200
                else f"{raw_error_message[:197]}..."
            )
            if isinstance(exc, asyncio.TimeoutError):
                is_timeout = True
            raise
        finally:
            latency_ms = (time.time() - start) * 1000
            registry.record(
                path,
                latency_ms,
                status_code=status_code,
                is_error=is_error,
                is_timeout=is_timeout,
            )
            # エラー時は severity=ERROR になる logger.error を使い分ける
            log_method = logger.error if is_error else logger.info
            log_method(
                "request_complete",
                path=path,
                method=method,
                latency_ms=latency_ms,
                is_error=is_error,
                is_timeout=is_timeout,
                status_code=status_code,
                error_type=error_type,
                error_message=error_message,
                request_id=request_id,
                client_ip=client_ip,
            )


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Release the cache executor owned by the review service on shutdown."""
    yield
    if get_review_service.cache_info().currsize:
        get_review_service().shutdown()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application instance."""
    configure_logging()
    app = FastAPI(title="Pinyin SRS API", version="0.1.0", lifespan=_lifespan)

    configured_origins = list(settings.allowed_cors_origins)
    allow_credentials = bool(configured_origins)
    if not configured_origins:
        configured_origins = ["*"]

    # なぜ: ワイルドカード許可時に資格情報を無効化し、設定で明示された
    # オリジンに対してのみクレデンシャル付き CORS を許可する。
    app.add_middleware(
        CORSMiddleware,
        allow_origins=configured_origins,
        allow_credentials=allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    # Starlette では後から追加したミドルウェアが外側で実行される。
    # 最外周の RequestID が採番し、内側の AccessLog がその ID でログを残す。
    app.add_middleware(AccessLogAndMetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    app.include_router(review_router.router, prefix="/api/reviews")
    app.include_router(stats_router.router, prefix="/api/stats")
    app.include_router(health.router)

    logger.info("app_created", environment=settings.environment, db_path=settings.srs_db_path)
    return app


app = create_app()
