import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, Optional

from pydantic import ValidationError as PydanticValidationError

from db_pool import SQLiteConnectionPool
from errors import AggregationError, StorageError
from schemas import ActivityEvent, LearningPosition, Report, Session

logger = logging.getLogger(__name__)

DB_PATH = os.getenv("DB_PATH", "telemetry.db")
DB_TIMEOUT_SECONDS = float(os.getenv("DB_TIMEOUT_SECONDS", "5") or 5)

# Fixed width keeps lexical and chronological order identical.
ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

MAX_POSITIONS_PER_USER = 100

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10, timeout=DB_TIMEOUT_SECONDS)


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()):
    try:
        with _pool.get_connection() as con:
            cur = con.execute(sql, params)
            con.commit()
            return cur
    except sqlite3.Error as exc:
        raise StorageError(f"event store write failed: {exc}") from exc


def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    try:
        with _pool.get_connection() as con:
            cur = con.execute(sql, params)
            return cur.fetchall()
    except sqlite3.Error as exc:
        raise StorageError(f"event store read failed: {exc}") from exc


@contextmanager
def _transaction() -> Iterator[sqlite3.Connection]:
    """Run several statements atomically; nothing is committed on failure."""
    try:
        with _pool.get_connection() as con:
            yield con
            con.commit()
    except sqlite3.Error as exc:
        raise StorageError(f"event store transaction failed: {exc}") from exc


def init():
    with _transaction() as con:
        con.executescript(
            """
            CREATE TABLE IF NOT EXISTS activity_events (
              id                TEXT PRIMARY KEY,
              user_id           TEXT NOT NULL,
              recorded_at       TEXT NOT NULL,
              activity_type     TEXT NOT NULL,
              resource_id       TEXT,
              resource_type     TEXT,
              duration_seconds  REAL,
              progress          REAL,
              correct           INTEGER,
              metadata          TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_activity_events_user_time
              ON activity_events(user_id, recorded_at);

            CREATE TABLE IF NOT EXISTS learning_sessions (
              id                     TEXT PRIMARY KEY,
              user_id                TEXT NOT NULL,
              start_time             TEXT NOT NULL,
              last_activity_at       TEXT NOT NULL,
              end_time               TEXT,
              activity_ids           TEXT NOT NULL DEFAULT '[]',
              completed_item_count   INTEGER NOT NULL DEFAULT 0,
              total_duration_seconds REAL,
              status                 TEXT NOT NULL CHECK(status IN ('open','closed'))
            );
            CREATE INDEX IF NOT EXISTS idx_learning_sessions_user_start
              ON learning_sessions(user_id, start_time);
            CREATE UNIQUE INDEX IF NOT EXISTS idx_learning_sessions_one_open
              ON learning_sessions(user_id) WHERE status = 'open';

            CREATE TABLE IF NOT EXISTS learning_positions (
              user_id     TEXT NOT NULL,
              course_id   TEXT NOT NULL,
              lesson_id   TEXT NOT NULL,
              mode        TEXT NOT NULL DEFAULT 'default',
              position    REAL NOT NULL DEFAULT 0,
              recorded_at TEXT NOT NULL,
              PRIMARY KEY (user_id, course_id, lesson_id)
            );

            CREATE TABLE IF NOT EXISTS reports (
              id           TEXT PRIMARY KEY,
              user_id      TEXT NOT NULL,
              timeframe    TEXT NOT NULL,
              generated_at TEXT NOT NULL,
              payload      TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_reports_user_generated
              ON reports(user_id, generated_at);

            CREATE TABLE IF NOT EXISTS courses (
              course_id  TEXT PRIMARY KEY,
              title      TEXT NOT NULL,
              metadata   TEXT,
              updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );
            """
        )


# -------------- time helpers --------------
def to_iso(dt: datetime) -> str:
    return coerce_to_utc(dt).strftime(ISO_FORMAT)


def coerce_to_utc(dt: Optional[datetime], fallback: Optional[datetime] = None) -> datetime:
    if dt is None:
        dt = fallback or datetime.now(timezone.utc)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_iso_timestamp(value: Any) -> Optional[datetime]:
    """Parse stored timestamps into timezone-aware UTC datetimes.

    Returns ``None`` for empty or unparseable values so callers decide whether
    that is corruption or simply an absent field.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return coerce_to_utc(value)
    text = str(value).strip()
    if not text:
        return None
    try:
        return datetime.strptime(text, ISO_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        pass
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return coerce_to_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=str)


def _decode_json_field(value: Optional[str]) -> Any:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    value = value.strip()
    if not value:
        return None
    return json.loads(value)


# -------------- activity events --------------
def _event_params(event: ActivityEvent) -> tuple:
    return (
        event.id,
        event.user_id,
        to_iso(event.timestamp),
        event.activity_type.value,
        event.resource_id,
        event.resource_type,
        event.duration_seconds,
        event.progress,
        None if event.correct is None else int(event.correct),
        json_dumps(event.metadata or {}),
    )


_INSERT_EVENT_SQL = """
    INSERT INTO activity_events(
      id, user_id, recorded_at, activity_type, resource_id, resource_type,
      duration_seconds, progress, correct, metadata
    ) VALUES (?,?,?,?,?,?,?,?,?,?)
"""


def append_event(event: ActivityEvent) -> ActivityEvent:
    """Durably append a single event outside of any session bookkeeping."""
    _exec(_INSERT_EVENT_SQL, _event_params(event))
    return event


def event_from_row(row: sqlite3.Row) -> ActivityEvent:
    """Rebuild an :class:`ActivityEvent` from storage.

    Raises :class:`AggregationError` when the stored row is corrupt.
    """
    event_id = row["id"]
    timestamp = parse_iso_timestamp(row["recorded_at"])
    if timestamp is None:
        raise AggregationError(f"unreadable timestamp {row['recorded_at']!r}", event_id)
    try:
        metadata = _decode_json_field(row["metadata"]) or {}
    except json.JSONDecodeError as exc:
        raise AggregationError(f"corrupt metadata: {exc}", event_id) from exc
    if not isinstance(metadata, dict):
        raise AggregationError("metadata is not an object", event_id)
    correct = row["correct"]
    try:
        return ActivityEvent(
            id=event_id,
            user_id=row["user_id"],
            timestamp=timestamp,
            activity_type=row["activity_type"],
            resource_id=row["resource_id"],
            resource_type=row["resource_type"],
            duration_seconds=row["duration_seconds"],
            progress=row["progress"],
            correct=None if correct is None else bool(correct),
            metadata=metadata,
        )
    except PydanticValidationError as exc:
        raise AggregationError(f"invalid stored event: {exc.errors()[0]['msg']}", event_id) from exc


def query_events(
    user_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> list[ActivityEvent]:
    """Return events for ``user_id`` in ``[start, end]`` in timestamp order.

    Corrupt rows are skipped with a warning so read paths keep working.
    """
    sql = (
        "SELECT id, user_id, recorded_at, activity_type, resource_id, resource_type, "
        "duration_seconds, progress, correct, metadata FROM activity_events WHERE user_id = ?"
    )
    params: list[Any] = [user_id]
    if start is not None:
        sql += " AND recorded_at >= ?"
        params.append(to_iso(start))
    if end is not None:
        sql += " AND recorded_at <= ?"
        params.append(to_iso(end))
    sql += " ORDER BY recorded_at ASC, rowid ASC"

    events: list[ActivityEvent] = []
    for row in _query(sql, params):
        try:
            events.append(event_from_row(row))
        except AggregationError as exc:
            logger.warning(
                "Skipping corrupt activity event %s for user %s: %s", exc.event_id, user_id, exc
            )
    events.sort(key=lambda event: event.timestamp)
    return events


# -------------- sessions --------------
def _session_params(session: Session) -> tuple:
    return (
        session.id,
        session.user_id,
        to_iso(session.start_time),
        to_iso(session.last_activity_at),
        to_iso(session.end_time) if session.end_time else None,
        json_dumps(session.activity_ids),
        int(session.completed_item_count),
        session.total_duration_seconds,
        session.status,
    )


_UPSERT_SESSION_SQL = """
    INSERT INTO learning_sessions(
      id, user_id, start_time, last_activity_at, end_time, activity_ids,
      completed_item_count, total_duration_seconds, status
    ) VALUES (?,?,?,?,?,?,?,?,?)
    ON CONFLICT(id) DO UPDATE SET
      last_activity_at = excluded.last_activity_at,
      end_time = excluded.end_time,
      activity_ids = excluded.activity_ids,
      completed_item_count = excluded.completed_item_count,
      total_duration_seconds = excluded.total_duration_seconds,
      status = excluded.status
"""


def _session_from_row(row: sqlite3.Row) -> Session:
    return Session(
        id=row["id"],
        user_id=row["user_id"],
        start_time=parse_iso_timestamp(row["start_time"]),
        last_activity_at=parse_iso_timestamp(row["last_activity_at"]),
        end_time=parse_iso_timestamp(row["end_time"]),
        activity_ids=_decode_json_field(row["activity_ids"]) or [],
        completed_item_count=int(row["completed_item_count"] or 0),
        total_duration_seconds=row["total_duration_seconds"],
        status=row["status"],
    )


def record_event(
    event: ActivityEvent,
    session: Session,
    closed_session: Optional[Session] = None,
    position: Optional[LearningPosition] = None,
    max_positions: int = MAX_POSITIONS_PER_USER,
) -> None:
    """Append ``event`` and persist the session state it produced, atomically.

    ``closed_session`` is written first so the one-open-session index never
    sees two open rows for the same user. A ``position`` is upserted in the
    same transaction.
    """
    with _transaction() as con:
        if closed_session is not None:
            con.execute(_UPSERT_SESSION_SQL, _session_params(closed_session))
        con.execute(_INSERT_EVENT_SQL, _event_params(event))
        con.execute(_UPSERT_SESSION_SQL, _session_params(session))
        if position is not None:
            _write_position(con, position, max_positions)


def save_session(session: Session) -> None:
    _exec(_UPSERT_SESSION_SQL, _session_params(session))


def get_latest_session(user_id: str) -> Optional[Session]:
    rows = _query(
        "SELECT * FROM learning_sessions WHERE user_id = ? ORDER BY start_time DESC LIMIT 1",
        (user_id,),
    )
    return _session_from_row(rows[0]) if rows else None


def get_open_session(user_id: str) -> Optional[Session]:
    rows = _query(
        "SELECT * FROM learning_sessions WHERE user_id = ? AND status = 'open' LIMIT 1",
        (user_id,),
    )
    return _session_from_row(rows[0]) if rows else None


def list_open_sessions() -> list[Session]:
    rows = _query("SELECT * FROM learning_sessions WHERE status = 'open' ORDER BY start_time")
    return [_session_from_row(row) for row in rows]


def list_sessions(
    user_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: Optional[int] = None,
    newest_first: bool = False,
) -> list[Session]:
    """Return sessions whose start time lies in ``[start, end]``."""
    sql = "SELECT * FROM learning_sessions WHERE user_id = ?"
    params: list[Any] = [user_id]
    if start is not None:
        sql += " AND start_time >= ?"
        params.append(to_iso(start))
    if end is not None:
        sql += " AND start_time <= ?"
        params.append(to_iso(end))
    sql += " ORDER BY start_time DESC" if newest_first else " ORDER BY start_time ASC"
    if limit is not None:
        sql += " LIMIT ?"
        params.append(int(limit))
    return [_session_from_row(row) for row in _query(sql, params)]


# -------------- positions --------------
def _position_from_row(row: sqlite3.Row) -> LearningPosition:
    return LearningPosition(
        user_id=row["user_id"],
        course_id=row["course_id"],
        lesson_id=row["lesson_id"],
        mode=row["mode"],
        position=row["position"],
        timestamp=parse_iso_timestamp(row["recorded_at"]),
    )


def _write_position(con: sqlite3.Connection, position: LearningPosition, max_positions: int) -> None:
    con.execute(
        """
        INSERT INTO learning_positions(user_id, course_id, lesson_id, mode, position, recorded_at)
        VALUES (?,?,?,?,?,?)
        ON CONFLICT(user_id, course_id, lesson_id) DO UPDATE SET
          mode = excluded.mode,
          position = excluded.position,
          recorded_at = excluded.recorded_at
        """,
        (
            position.user_id,
            position.course_id,
            position.lesson_id,
            position.mode,
            float(position.position),
            to_iso(position.timestamp),
        ),
    )
    con.execute(
        """
        DELETE FROM learning_positions
        WHERE user_id = ? AND rowid NOT IN (
          SELECT rowid FROM learning_positions WHERE user_id = ?
          ORDER BY recorded_at DESC LIMIT ?
        )
        """,
        (position.user_id, position.user_id, int(max_positions)),
    )


def get_position(user_id: str, course_id: str, lesson_id: str) -> Optional[LearningPosition]:
    rows = _query(
        """
        SELECT user_id, course_id, lesson_id, mode, position, recorded_at
        FROM learning_positions
        WHERE user_id = ? AND course_id = ? AND lesson_id = ?
        """,
        (user_id, course_id, lesson_id),
    )
    return _position_from_row(rows[0]) if rows else None


def list_positions(user_id: str, limit: Optional[int] = None) -> list[LearningPosition]:
    sql = (
        "SELECT user_id, course_id, lesson_id, mode, position, recorded_at "
        "FROM learning_positions WHERE user_id = ? ORDER BY recorded_at DESC"
    )
    params: list[Any] = [user_id]
    if limit is not None:
        sql += " LIMIT ?"
        params.append(int(limit))
    return [_position_from_row(row) for row in _query(sql, params)]


# -------------- course catalog --------------
def upsert_course(course_id: str, title: str, metadata: Optional[Dict[str, Any]] = None) -> None:
    _exec(
        """
        INSERT INTO courses(course_id, title, metadata, updated_at)
        VALUES (?, ?, ?, CURRENT_TIMESTAMP)
        ON CONFLICT(course_id) DO UPDATE SET
          title = excluded.title,
          metadata = excluded.metadata,
          updated_at = CURRENT_TIMESTAMP
        """,
        (course_id, title, json_dumps(metadata or {})),
    )


def get_course(course_id: str) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT course_id, title, metadata FROM courses WHERE course_id = ?", (course_id,))
    if not rows:
        return None
    item = dict(rows[0])
    try:
        item["metadata"] = _decode_json_field(item.get("metadata")) or {}
    except json.JSONDecodeError:
        item["metadata"] = {}
    return item


# -------------- reports --------------
def _report_from_row(row: sqlite3.Row) -> Optional[Report]:
    try:
        return Report.model_validate_json(row["payload"])
    except PydanticValidationError as exc:
        logger.warning("Skipping unreadable report %s: %s", row["id"], exc.errors()[0]["msg"])
        return None


def save_report(report: Report) -> Report:
    _exec(
        "INSERT OR REPLACE INTO reports(id, user_id, timeframe, generated_at, payload) VALUES (?,?,?,?,?)",
        (
            report.id,
            report.user_id,
            report.timeframe,
            to_iso(report.generated_at),
            report.model_dump_json(),
        ),
    )
    return report


def get_report(report_id: str) -> Optional[Report]:
    rows = _query("SELECT id, payload FROM reports WHERE id = ?", (report_id,))
    return _report_from_row(rows[0]) if rows else None


def list_reports(user_id: str, timeframe: Optional[str] = None, limit: Optional[int] = None) -> list[Report]:
    """Stored reports of ``user_id``, newest first."""
    sql = "SELECT id, payload FROM reports WHERE user_id = ?"
    params: list[Any] = [user_id]
    if timeframe is not None:
        sql += " AND timeframe = ?"
        params.append(timeframe)
    sql += " ORDER BY generated_at DESC, rowid DESC"
    if limit is not None:
        sql += " LIMIT ?"
        params.append(int(limit))
    reports = (_report_from_row(row) for row in _query(sql, params))
    return [report for report in reports if report is not None]


# -------------- privacy --------------
def delete_user_data(user_id: str) -> Dict[str, int]:
    """Remove every telemetry record of ``user_id``; returns deleted row counts."""
    counts: Dict[str, int] = {}
    with _transaction() as con:
        for table in ("activity_events", "learning_sessions", "learning_positions", "reports"):
            cur = con.execute(f"DELETE FROM {table} WHERE user_id = ?", (user_id,))
            counts[table] = cur.rowcount
    return counts
