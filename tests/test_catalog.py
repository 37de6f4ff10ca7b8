from unittest.mock import MagicMock

import pytest
import requests

import db
from catalog import CourseCatalog


def _response(status_code=200, payload=None, json_error=None):
    response = MagicMock()
    response.status_code = status_code
    if json_error is not None:
        response.json.side_effect = json_error
    else:
        response.json.return_value = payload
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status_code} error")
    return response


def test_local_course_wins_over_remote(temp_db):
    http = MagicMock()
    catalog = CourseCatalog("http://catalog.test", session=http)
    catalog.register_course("c1", "Grammar Basics", {"level": "A2"})

    course = catalog.get_course("c1")

    assert course["title"] == "Grammar Basics"
    assert course["metadata"] == {"level": "A2"}
    http.get.assert_not_called()


def test_remote_hit_is_cached_locally(temp_db):
    http = MagicMock()
    http.get.return_value = _response(payload={"course": {"id": "c2", "title": "Business English", "level": "B2"}})
    catalog = CourseCatalog("http://catalog.test/", timeout=1.5, session=http)

    assert catalog.course_title("c2") == "Business English"
    http.get.assert_called_once_with("http://catalog.test/courses/c2", timeout=1.5)
    assert db.get_course("c2")["metadata"] == {"level": "B2"}

    assert catalog.course_title("c2") == "Business English"
    assert http.get.call_count == 1


@pytest.mark.parametrize(
    "response",
    [
        _response(status_code=404),
        _response(status_code=500),
        _response(payload=["not", "a", "course"]),
        _response(payload={"title": "   "}),
        _response(json_error=ValueError("bad json")),
    ],
)
def test_remote_failures_fall_back_to_course_id(temp_db, response):
    http = MagicMock()
    http.get.return_value = response
    catalog = CourseCatalog("http://catalog.test", session=http)

    assert catalog.course_title("c3") == "c3"
    assert db.get_course("c3") is None


def test_network_error_falls_back_to_course_id(temp_db, caplog):
    http = MagicMock()
    http.get.side_effect = requests.ConnectionError("refused")
    catalog = CourseCatalog("http://catalog.test", session=http)

    with caplog.at_level("WARNING"):
        assert catalog.course_title("c4") == "c4"
    assert "c4" in caplog.text


def test_without_catalog_url_no_request_is_made(temp_db, monkeypatch):
    monkeypatch.delenv("CATALOG_URL", raising=False)
    http = MagicMock()
    catalog = CourseCatalog(session=http)

    assert catalog.course_title("c5") == "c5"
    http.get.assert_not_called()


def test_register_course_requires_title(temp_db):
    with pytest.raises(ValueError):
        CourseCatalog("").register_course("c6", "")
