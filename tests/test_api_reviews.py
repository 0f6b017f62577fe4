"""HTTP surface: status mapping, JSON field names and the X-User-Id requirement."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from fastapi.testclient import TestClient

from pinyin_srs.cache import QueueCache
from pinyin_srs.config import Settings
from pinyin_srs.errors import BackendUnavailableError, ConcurrencyConflictError
from pinyin_srs.main import app
from pinyin_srs.service import ReviewService, get_review_service
from pinyin_srs.stats import StatsUpdater
from pinyin_srs.store import SQLiteItemStore
from tests.srs_fakes import FakeMonotonic, FakeWallClock, InlineExecutor

START = datetime(2026, 6, 1, 7, 0, tzinfo=UTC)
HEADERS = {"X-User-Id": "learner-1"}


class FailingService:
    def __init__(self, exc: Exception) -> None:
        self.exc = exc

    def submit_review(self, *args, **kwargs):
        raise self.exc

    def get_queue(self, *args, **kwargs):
        raise self.exc


@pytest.fixture
def service(tmp_path) -> ReviewService:
    store = SQLiteItemStore(str(tmp_path / "srs.sqlite3"))
    cache = QueueCache(default_ttl_seconds=60, clock=FakeMonotonic(), executor=InlineExecutor())
    return ReviewService(
        store,
        cache,
        stats=StatsUpdater(store),
        clock=FakeWallClock(START),
        config=Settings(_env_file=None),
        sleep=lambda _: None,
    )


@pytest.fixture
def client(service):
    app.dependency_overrides[get_review_service] = lambda: service
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.pop(get_review_service, None)


def _use(service_obj) -> TestClient:
    app.dependency_overrides[get_review_service] = lambda: service_obj
    return TestClient(app)


def test_missing_user_header_is_unauthorized(client):
    response = client.get("/api/reviews/queue")

    assert response.status_code == 401


def test_enroll_then_read_queue(client):
    enrolled = client.post(
        "/api/reviews/items",
        json={"items": [{"item_id": 2, "item_type": "character"}, {"item_id": 1, "item_type": "radical"}]},
        headers=HEADERS,
    )
    assert enrolled.status_code == 200
    assert enrolled.json() == {"created": 2}

    response = client.get("/api/reviews/queue", params={"limit": 10}, headers=HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["count"] == 2
    assert [item["item_id"] for item in body["items"]] == [1, 2]
    first = body["items"][0]
    assert first["stage"] == "new"
    assert first["item_type"] == "radical"
    assert first["ease_factor"] == pytest.approx(2.5)


def test_submit_returns_updated_schedule(client):
    client.post("/api/reviews/items", json={"items": [{"item_id": 5, "item_type": "vocabulary"}]}, headers=HEADERS)

    response = client.post(
        "/api/reviews/submit",
        json={
            "item_id": 5,
            "item_type": "vocabulary",
            "user_answer": "ni3 hao3",
            "correct_answer": "nǐ hǎo",
            "grade": 2,
            "response_time_ms": 4000,
        },
        headers=HEADERS,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["is_correct"] is True
    assert body["grade"] == 2
    assert body["updated_state"]["stage"] == "learning"
    assert body["updated_state"]["interval_days"] == 1
    assert body["updated_state"]["total_reviews"] == 1


def test_out_of_range_grade_is_bad_request(client):
    client.post("/api/reviews/items", json={"items": [{"item_id": 5, "item_type": "character"}]}, headers=HEADERS)

    response = client.post(
        "/api/reviews/submit",
        json={
            "item_id": 5,
            "item_type": "character",
            "user_answer": "a",
            "correct_answer": "ā",
            "grade": 9,
            "response_time_ms": 1500,
        },
        headers=HEADERS,
    )

    assert response.status_code == 400


def test_unknown_item_is_not_found(client):
    response = client.post(
        "/api/reviews/submit",
        json={
            "item_id": 404,
            "item_type": "character",
            "user_answer": "ma1",
            "correct_answer": "mā",
            "response_time_ms": 1500,
        },
        headers=HEADERS,
    )

    assert response.status_code == 404


def test_malformed_body_is_rejected_by_schema(client):
    response = client.post("/api/reviews/submit", json={"item_id": 1}, headers=HEADERS)

    assert response.status_code == 422


def test_missing_response_time_is_rejected_by_schema(client):
    client.post("/api/reviews/items", json={"items": [{"item_id": 5, "item_type": "character"}]}, headers=HEADERS)

    response = client.post(
        "/api/reviews/submit",
        json={"item_id": 5, "item_type": "character", "user_answer": "ni3", "correct_answer": "nǐ"},
        headers=HEADERS,
    )

    assert response.status_code == 422
    state = client.get("/api/reviews/queue", headers=HEADERS).json()["items"][0]
    assert state["stage"] == "new"
    assert state["total_reviews"] == 0


@pytest.mark.parametrize(
    "exc, status",
    [
        (ConcurrencyConflictError("version mismatch"), 409),
        (BackendUnavailableError("database is locked"), 503),
    ],
)
def test_retryable_errors_map_to_status(exc, status):
    try:
        client = _use(FailingService(exc))
        response = client.post(
            "/api/reviews/submit",
            json={
                "item_id": 1,
                "item_type": "character",
                "user_answer": "ma1",
                "correct_answer": "mā",
                "response_time_ms": 1500,
            },
            headers=HEADERS,
        )
        queue = client.get("/api/reviews/queue", headers=HEADERS)
    finally:
        app.dependency_overrides.pop(get_review_service, None)

    assert response.status_code == status
    assert queue.status_code == status
    if status == 503:
        assert response.headers.get("retry-after") == "1"


def test_upcoming_forecast_shape(client):
    response = client.get("/api/reviews/upcoming", params={"hours": 6}, headers=HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 0
    assert [bucket["hour"] for bucket in body["forecast"]] == [0, 1, 2, 3, 4, 5]


def test_upcoming_forecast_rejects_long_windows(client):
    response = client.get("/api/reviews/upcoming", params={"hours": 500}, headers=HEADERS)

    assert response.status_code == 422


def test_today_stats_after_submission(client):
    client.post("/api/reviews/items", json={"items": [{"item_id": 1, "item_type": "character"}]}, headers=HEADERS)
    client.post(
        "/api/reviews/submit",
        json={
            "item_id": 1,
            "item_type": "character",
            "user_answer": "ma3",
            "correct_answer": "mǎ",
            "grade": 3,
            "response_time_ms": 1500,
        },
        headers=HEADERS,
    )

    response = client.get("/api/stats/today", headers=HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["date"] == "2026-06-01"
    assert body["reviews_completed"] == 1
    assert body["accuracy_percent"] == 100
    assert body["new_items_learned"] == 1
    assert body["current_streak"] == 1


def test_stats_range_route(client):
    client.post("/api/reviews/items", json={"items": [{"item_id": 1, "item_type": "character"}]}, headers=HEADERS)
    client.post(
        "/api/reviews/submit",
        json={
            "item_id": 1,
            "item_type": "character",
            "user_answer": "ma3",
            "correct_answer": "mǎ",
            "grade": 2,
            "response_time_ms": 1500,
        },
        headers=HEADERS,
    )

    response = client.get("/api/stats/range", params={"days": 7}, headers=HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["start"] == "2026-05-26"
    assert body["end"] == "2026-06-01"
    assert len(body["days"]) == 7
    assert body["days"][-1]["reviews_completed"] == 1
    assert body["days"][-1]["new_items_learned"] == 1
    assert body["total_reviews"] == 1
    assert client.get("/api/stats/range", params={"days": 400}, headers=HEADERS).status_code == 422


def test_review_history_route(client):
    client.post("/api/reviews/items", json={"items": [{"item_id": 3, "item_type": "radical"}]}, headers=HEADERS)
    client.post(
        "/api/reviews/submit",
        json={
            "item_id": 3,
            "item_type": "radical",
            "user_answer": "ren2",
            "correct_answer": "rén",
            "response_time_ms": 45000,
        },
        headers=HEADERS,
    )

    response = client.get("/api/reviews/history", params={"limit": 5}, headers=HEADERS)

    assert response.status_code == 200
    entry = response.json()["entries"][0]
    assert entry["item_id"] == 3
    assert entry["is_correct"] is True
    assert entry["grade"] == 1
    assert entry["new_stage"] == "learning"
    assert entry["response_time_ms"] == 45000


def test_health_and_metrics_endpoints(client):
    health = client.get("/healthz")
    client.get("/api/reviews/queue", headers=HEADERS)
    metrics = client.get("/metrics")

    assert health.status_code == 200
    assert health.json() == {"status": "ok"}
    assert health.headers.get("x-request-id")
    paths = metrics.json()["paths"]
    assert paths["/api/reviews/queue"]["count"] >= 1
    assert "200" in paths["/api/reviews/queue"]["status_codes"]


def test_incoming_request_id_is_propagated(client):
    response = client.get("/healthz", headers={"X-Request-ID": "req-abcdef123"})

    assert response.headers["x-request-id"] == "req-abcdef123"
