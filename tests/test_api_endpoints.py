import asyncio
import json
from typing import Optional
from urllib.parse import urlencode

import pytest

import app
from catalog import CourseCatalog
from engines.aggregation import AggregationEngine
from engines.insights import InsightGenerator
from engines.positions import PositionTracker
from engines.reports import ReportBuilder
from engines.sessions import SessionManager
from errors import StorageError


def _request(method: str, path: str, payload: Optional[dict] = None, query: Optional[dict] = None):
    async def _call():
        body = json.dumps(payload).encode("utf-8") if payload is not None else b""
        received_once = False

        async def receive():
            nonlocal received_once
            if not received_once:
                received_once = True
                return {"type": "http.request", "body": body, "more_body": False}
            return {"type": "http.disconnect"}

        messages = []

        async def send(message):
            messages.append(message)

        headers = [(b"host", b"testserver")]
        if payload is not None:
            headers += [
                (b"content-type", b"application/json"),
                (b"content-length", str(len(body)).encode()),
            ]
        scope = {
            "type": "http",
            "http_version": "1.1",
            "method": method,
            "path": path,
            "raw_path": path.encode(),
            "root_path": "",
            "scheme": "http",
            "query_string": urlencode(query or {}).encode(),
            "headers": headers,
            "client": ("testclient", 12345),
            "server": ("testserver", 80),
            "state": {},
        }

        await app.app(scope, receive, send)
        return messages

    messages = asyncio.run(_call())
    status = 500
    body_bytes = b""

    for message in messages:
        if message["type"] == "http.response.start":
            status = message["status"]
        elif message["type"] == "http.response.body":
            body_bytes += message.get("body", b"")

    data = json.loads(body_bytes.decode("utf-8") or "{}")
    return status, data


@pytest.fixture
def api(temp_db, monkeypatch, clock):
    sessions = SessionManager(clock=clock)
    aggregation = AggregationEngine(clock=clock)
    aggregation.attach(sessions)
    monkeypatch.setattr(app, "SESSIONS", sessions)
    monkeypatch.setattr(app, "POSITIONS", PositionTracker(sessions))
    monkeypatch.setattr(app, "AGGREGATION", aggregation)
    monkeypatch.setattr(app, "INSIGHTS", InsightGenerator(aggregation))
    monkeypatch.setattr(app, "REPORTS", ReportBuilder(aggregation, CourseCatalog(base_url="")))
    return clock


def test_record_activity_and_current_session(api):
    status, event = _request(
        "POST",
        "/activities",
        {"user_id": "alice", "activity_type": "quiz_attempt", "duration_seconds": 90, "correct": True},
    )
    assert status == 201
    assert event["activity_type"] == "quiz_attempt"
    assert event["correct"] is True

    status, session = _request("GET", "/sessions/current", query={"user_id": "alice"})
    assert status == 200
    assert session["activity_ids"] == [event["id"]]
    assert session["status"] == "open"


def test_invalid_activity_returns_400(api):
    status, payload = _request("POST", "/activities", {"user_id": "alice", "activity_type": "dancing"})
    assert status == 400
    assert "unknown activity type" in payload["detail"]

    status, _ = _request(
        "POST", "/activities", {"user_id": "alice", "activity_type": "quiz_attempt", "duration_seconds": -5}
    )
    assert status == 400


def test_missing_body_field_is_rejected(api):
    status, _ = _request("POST", "/activities", {"activity_type": "quiz_attempt"})
    assert status == 422


def test_end_session_then_404(api):
    _request("POST", "/activities", {"user_id": "alice", "activity_type": "lesson_view"})
    api.advance(minutes=12)
    _request("POST", "/activities", {"user_id": "alice", "activity_type": "lesson_complete"})

    status, closed = _request("POST", "/sessions/end", {"user_id": "alice"})
    assert status == 200
    assert closed["status"] == "closed"
    assert closed["total_duration_seconds"] == 720
    assert closed["completed_item_count"] == 1

    status, _ = _request("POST", "/sessions/end", {"user_id": "alice"})
    assert status == 404
    status, _ = _request("GET", "/sessions/current", query={"user_id": "alice"})
    assert status == 404

    status, history = _request("GET", "/sessions", query={"user_id": "alice", "limit": 5})
    assert status == 200
    assert len(history) == 1


def test_positions_endpoints(api):
    status, saved = _request(
        "POST", "/positions", {"user_id": "alice", "course_id": "c1", "lesson_id": "l1", "position": 33}
    )
    assert status == 200
    assert saved["position"] == 33

    status, position = _request(
        "GET", "/positions", query={"user_id": "alice", "course_id": "c1", "lesson_id": "l1"}
    )
    assert status == 200
    assert position["lesson_id"] == "l1"

    status, _ = _request("GET", "/positions", query={"user_id": "alice", "course_id": "c1", "lesson_id": "l9"})
    assert status == 404

    status, recent = _request("GET", "/positions/recent", query={"user_id": "alice"})
    assert status == 200
    assert [p["lesson_id"] for p in recent] == ["l1"]


def test_rollups_and_heatmap(api):
    _request(
        "POST", "/activities", {"user_id": "alice", "activity_type": "listening", "duration_seconds": 1200}
    )

    status, rollups = _request("GET", "/analytics/rollups", query={"user_id": "alice", "window_days": 2})
    assert status == 200
    assert len(rollups) == 3
    assert rollups[-1]["minutes_spent"] == 20
    assert rollups[-1]["streak"] == 1

    status, heatmap = _request("GET", "/analytics/heatmap", query={"user_id": "alice", "window_weeks": 1})
    assert status == 200
    assert heatmap["grid"][0][9] == 20

    status, payload = _request("GET", "/analytics/heatmap", query={"user_id": "alice", "tz": "Nowhere/City"})
    assert status == 400
    assert "time zone" in payload["detail"]


def test_insights_and_report(api):
    _request(
        "POST",
        "/activities",
        {
            "user_id": "alice",
            "activity_type": "quiz_attempt",
            "duration_seconds": 600,
            "correct": True,
            "metadata": {"focus_score": 9},
        },
    )

    status, bundle = _request("GET", "/analytics/insights/alice")
    assert status == 200
    assert set(bundle) == {
        "productivity_insights",
        "vocabulary_insights",
        "habit_insights",
        "recommended_actions",
    }
    assert any(i["rule_id"] == "focus_high" for i in bundle["productivity_insights"])

    status, report = _request("GET", "/analytics/report", query={"user_id": "alice", "timeframe": "week"})
    assert status == 200
    assert report["summary"]["time_spent_minutes"] == 10
    assert report["strengths"]

    status, _ = _request("GET", "/analytics/report", query={"user_id": "alice", "timeframe": "decade"})
    assert status == 422


def test_report_history_endpoints(api):
    _request("POST", "/activities", {"user_id": "alice", "activity_type": "lesson_view", "duration_seconds": 300})
    _, weekly = _request("GET", "/analytics/report", query={"user_id": "alice", "timeframe": "week"})
    api.advance(minutes=1)
    _, monthly = _request("GET", "/analytics/report", query={"user_id": "alice", "timeframe": "month"})

    status, stored = _request("GET", f"/analytics/reports/{weekly['id']}")
    assert status == 200
    assert stored["summary"] == weekly["summary"]

    status, history = _request("GET", "/analytics/reports", query={"user_id": "alice"})
    assert status == 200
    assert [r["id"] for r in history] == [monthly["id"], weekly["id"]]

    status, history = _request("GET", "/analytics/reports", query={"user_id": "alice", "timeframe": "week"})
    assert [r["id"] for r in history] == [weekly["id"]]

    status, _ = _request("GET", "/analytics/reports/unknown")
    assert status == 404


def test_delete_user_telemetry(api):
    _request("POST", "/activities", {"user_id": "alice", "activity_type": "lesson_view"})
    _request("POST", "/positions", {"user_id": "alice", "course_id": "c1", "lesson_id": "l1"})

    status, payload = _request("DELETE", "/users/alice/telemetry")
    assert status == 200
    assert payload["deleted"] == {
        "activity_events": 2,
        "learning_sessions": 1,
        "learning_positions": 1,
        "reports": 0,
    }

    status, recent = _request("GET", "/positions/recent", query={"user_id": "alice"})
    assert recent == []


def test_storage_errors_map_to_503(api, monkeypatch):
    def unavailable(*args, **kwargs):
        raise StorageError("disk on fire")

    monkeypatch.setattr(app.SESSIONS, "get_session_history", unavailable)
    status, payload = _request("GET", "/sessions", query={"user_id": "alice"})
    assert status == 503
    assert payload["detail"] == "event store unavailable"
