"""Course catalog lookups used to put titles on report course progress.

Courses are looked up in the local ``courses`` table first. When
``CATALOG_URL`` is configured the remote catalog is asked next and any hit is
stored locally. Lookup failures never fail a report; the course id stands in
for the title.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

import requests

import db
from env_validation import get_env_float

logger = logging.getLogger(__name__)


class CourseCatalog:
    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        db_module=db,
        session: Optional[requests.Session] = None,
    ) -> None:
        url = base_url if base_url is not None else os.getenv("CATALOG_URL", "")
        self.base_url = url.rstrip("/")
        self.timeout = timeout if timeout is not None else get_env_float("CATALOG_TIMEOUT_SECONDS", 3.0)
        self._db = db_module
        self._http = session or requests.Session()

    def register_course(self, course_id: str, title: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        if not course_id or not title:
            raise ValueError("course_id and title are required")
        self._db.upsert_course(course_id, title, metadata)

    def _fetch_remote(self, course_id: str) -> Optional[Dict[str, Any]]:
        if not self.base_url:
            return None
        endpoint = f"{self.base_url}/courses/{course_id}"
        try:
            response = self._http.get(endpoint, timeout=self.timeout)
            if response.status_code == 404:
                return None
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as exc:
            logger.warning("Course catalog lookup failed for %s: %s", course_id, exc)
            return None
        except ValueError as exc:
            logger.warning("Invalid JSON from course catalog for %s: %s", course_id, exc)
            return None

        if isinstance(payload, dict) and isinstance(payload.get("course"), dict):
            payload = payload["course"]
        if not isinstance(payload, dict):
            logger.warning("Unexpected course catalog payload type: %s", type(payload))
            return None
        title = payload.get("title") or payload.get("name")
        if not isinstance(title, str) or not title.strip():
            return None
        metadata = {k: v for k, v in payload.items() if k not in {"id", "title", "name"}}
        return {"course_id": course_id, "title": title.strip(), "metadata": metadata}

    def get_course(self, course_id: str) -> Optional[Dict[str, Any]]:
        course = self._db.get_course(course_id)
        if course is not None:
            return course
        course = self._fetch_remote(course_id)
        if course is not None:
            self._db.upsert_course(course_id, course["title"], course["metadata"])
        return course

    def course_title(self, course_id: str) -> str:
        course = self.get_course(course_id)
        if course is None:
            return course_id
        return course["title"]
