import io
import json
from contextlib import redirect_stderr, redirect_stdout

from fastapi.testclient import TestClient

from pinyin_srs.errors import BackendUnavailableError
from pinyin_srs.service import get_review_service


def _extract_request_complete_lines(buffer_text: str) -> list[str]:
    """Return request_complete log lines from mixed stdout/stderr text."""

    lines = [ln for ln in buffer_text.splitlines() if ln.strip()]
    return [ln for ln in lines if '"event": "request_complete"' in ln]


class _UnavailableService:
    def get_queue(self, *args, **kwargs):
        raise BackendUnavailableError("database is locked")


def test_structlog_outputs_pure_json_without_stdlib_prefix():
    # Capture both stdout/stderr because logging may use stderr by default
    buf_out = io.StringIO()
    buf_err = io.StringIO()

    with redirect_stdout(buf_out), redirect_stderr(buf_err):
        from pinyin_srs.logging import configure_logging, logger

        configure_logging()
        logger.info(
            "review_submitted",
            user_id="learner-1",
            item_id=12,
            grade=2,
        )

    raw = buf_err.getvalue().strip() or buf_out.getvalue().strip()
    lines = [ln for ln in raw.splitlines() if ln.strip()]
    message_text = lines[-1] if lines else ""

    assert message_text, "no log output captured"
    # Should not contain stdlib prefix like 'INFO:...:'
    assert not message_text.startswith("INFO:"), message_text

    data = json.loads(message_text)
    assert data.get("event") == "review_submitted"
    assert data.get("level") in {"info", "INFO"}
    assert data.get("item_id") == 12
    assert "timestamp" in data


def test_request_complete_log_contains_request_id_and_status() -> None:
    buf_out = io.StringIO()
    buf_err = io.StringIO()

    with redirect_stdout(buf_out), redirect_stderr(buf_err):
        from pinyin_srs.logging import configure_logging
        from pinyin_srs.main import create_app

        configure_logging()
        app = create_app()
        with TestClient(app) as client:
            response = client.get("/healthz")

        assert response.status_code == 200

    raw = buf_err.getvalue().strip() or buf_out.getvalue().strip()
    request_lines = _extract_request_complete_lines(raw)

    assert request_lines, "request_complete log line not found"

    data = json.loads(request_lines[-1])
    assert data.get("request_id") == response.headers["x-request-id"]
    assert data.get("status_code") == 200
    assert data.get("path") == "/healthz"


def test_sensitive_values_are_masked_in_logs() -> None:
    buf_out = io.StringIO()
    buf_err = io.StringIO()
    secret = "sk-proj-1234567890"

    with redirect_stdout(buf_out), redirect_stderr(buf_err):
        from pinyin_srs.logging import configure_logging, logger

        configure_logging()
        logger.info(
            "config_dump",
            api_token=secret,
            nested={"db_password": secret, "note": "ok"},
        )

    raw = buf_err.getvalue().strip() or buf_out.getvalue().strip()
    lines = [ln for ln in raw.splitlines() if ln.strip()]
    message_text = lines[-1] if lines else ""

    assert message_text, "log output missing"
    assert secret not in message_text

    data = json.loads(message_text)
    assert data.get("api_token") == "sk-p…7890"
    assert data.get("nested", {}).get("note") == "ok"


def test_request_log_records_error_context() -> None:
    """失敗リクエストでも構造化ログへステータスを残す。"""

    buf_out = io.StringIO()
    buf_err = io.StringIO()

    with redirect_stdout(buf_out), redirect_stderr(buf_err):
        from pinyin_srs.logging import configure_logging
        from pinyin_srs.main import create_app

        configure_logging()
        app = create_app()

        @app.get("/boom")
        async def boom() -> None:  # pragma: no cover - 呼び出し側で検証
            raise RuntimeError("intentional failure")

        app.dependency_overrides[get_review_service] = lambda: _UnavailableService()
        client = TestClient(app, raise_server_exceptions=False)
        boom_response = client.get("/boom")
        queue_response = client.get("/api/reviews/queue", headers={"X-User-Id": "learner-1"})

        assert boom_response.status_code == 500
        assert queue_response.status_code == 503

    raw = buf_err.getvalue().strip() or buf_out.getvalue().strip()
    request_lines = [json.loads(ln) for ln in _extract_request_complete_lines(raw)]

    boom = next(line for line in request_lines if line["path"] == "/boom")
    assert boom.get("status_code") == 500
    assert boom.get("error_type") == "RuntimeError"
    assert "intentional failure" in boom.get("error_message", "")
    assert boom.get("level") == "error"

    queue = next(line for line in request_lines if line["path"] == "/api/reviews/queue")
    assert queue.get("status_code") == 503
    assert queue.get("is_error") is True
