from fastapi import APIRouter
from fastapi.responses import JSONResponse
from ..metrics import registry

router = APIRouter()


@router.get("/healthz")
def health_check() -> dict[str, str]:
    """ライブネス確認用の簡易エンドポイント。"""
    return {"status": "ok"}


@router.get("/metrics")
def metrics() -> JSONResponse:
    """Return in-memory metrics snapshot.

    パス別の p95/エラー/タイムアウト/件数に加え、ステータスコード別の件数を返す。
    """
    return JSONResponse(content={"paths": registry.snapshot()})
