# app.py — learning telemetry service
# - Activity ingest with idle-timeout sessions
# - Daily rollups, weekly heatmap, rule-based insights, period reports

import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

import db
from catalog import CourseCatalog
from engines.aggregation import AggregationEngine
from engines.insights import InsightGenerator
from engines.positions import PositionTracker
from engines.reports import ReportBuilder
from engines.sessions import SessionManager
from errors import OperationCancelled, StorageError, ValidationError
from schemas import (
    ActivityEvent,
    ActivityRequest,
    DailyRollup,
    InsightBundle,
    LearningPosition,
    PositionRequest,
    Report,
    Session,
    SessionEndRequest,
    Timeframe,
    WeeklyHeatmap,
)

logger = logging.getLogger(__name__)

SESSIONS = SessionManager()
POSITIONS = PositionTracker(SESSIONS)
AGGREGATION = AggregationEngine()
AGGREGATION.attach(SESSIONS)
INSIGHTS = InsightGenerator(AGGREGATION)
CATALOG = CourseCatalog()
REPORTS = ReportBuilder(AGGREGATION, CATALOG)


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        # Validate environment variables first
        from env_validation import describe_environment, validate_environment
        validate_environment()

        db.init()
        recovered = SESSIONS.recover_stale_sessions()
        logger.info(
            "Telemetry service ready (%s); closed %d stale sessions",
            describe_environment(),
            len(recovered),
        )
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="Learning Telemetry", version="1.0.0", lifespan=_lifespan)


@app.exception_handler(ValidationError)
async def _validation_error(_: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(StorageError)
async def _storage_error(_: Request, exc: StorageError):
    logger.error("Event store unavailable: %s", exc)
    return JSONResponse(status_code=503, content={"detail": "event store unavailable"})


@app.exception_handler(OperationCancelled)
async def _cancelled(_: Request, exc: OperationCancelled):
    return JSONResponse(status_code=503, content={"detail": f"operation cancelled: {exc}"})


def _require_user(user_id: Optional[str]) -> str:
    user_id = (user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=400, detail="user_id required")
    return user_id


@app.get("/")
def root():
    return {"service": "learning-telemetry", "status": "ok"}


# ---------- Activities & sessions ----------
@app.post("/activities", response_model=ActivityEvent, status_code=201)
def record_activity(body: ActivityRequest):
    return SESSIONS.record_activity(
        _require_user(body.user_id),
        body.activity_type,
        resource_id=body.resource_id,
        resource_type=body.resource_type,
        duration_seconds=body.duration_seconds,
        progress=body.progress,
        correct=body.correct,
        metadata=body.metadata,
    )


@app.post("/sessions/end", response_model=Session)
def end_session(body: SessionEndRequest):
    closed = SESSIONS.end_session(_require_user(body.user_id))
    if closed is None:
        raise HTTPException(status_code=404, detail="no open session")
    return closed


@app.get("/sessions", response_model=List[Session])
def session_history(user_id: str, limit: int = 10):
    return SESSIONS.get_session_history(_require_user(user_id), limit=limit)


@app.get("/sessions/current", response_model=Session)
def current_session(user_id: str):
    session = SESSIONS.get_open_session(_require_user(user_id))
    if session is None:
        raise HTTPException(status_code=404, detail="no open session")
    return session


# ---------- Positions ----------
@app.post("/positions", response_model=LearningPosition)
def save_position(body: PositionRequest):
    return POSITIONS.save_position(
        _require_user(body.user_id),
        body.course_id,
        body.lesson_id,
        mode=body.mode,
        position=body.position,
    )


@app.get("/positions", response_model=LearningPosition)
def get_position(user_id: str, course_id: str, lesson_id: str):
    position = POSITIONS.get_position(_require_user(user_id), course_id, lesson_id)
    if position is None:
        raise HTTPException(status_code=404, detail="position not found")
    return position


@app.get("/positions/recent", response_model=List[LearningPosition])
def recent_positions(user_id: str, limit: int = 5):
    return POSITIONS.get_recent_positions(_require_user(user_id), limit=limit)


# ---------- Analytics ----------
@app.get("/analytics/rollups", response_model=List[DailyRollup])
def daily_rollups(user_id: str, window_days: int = 30, tz: str = "UTC"):
    return AGGREGATION.get_daily_rollups(_require_user(user_id), window_days=window_days, tz=tz)


@app.get("/analytics/heatmap", response_model=WeeklyHeatmap)
def weekly_heatmap(user_id: str, window_weeks: int = 4, tz: str = "UTC"):
    return AGGREGATION.get_weekly_heatmap(_require_user(user_id), window_weeks=window_weeks, tz=tz)


@app.get("/analytics/insights/{user_id}", response_model=InsightBundle)
def insights(user_id: str, tz: str = "UTC"):
    return INSIGHTS.generate_insights(_require_user(user_id), tz=tz)


@app.get("/analytics/report", response_model=Report)
def report(user_id: str, timeframe: Timeframe = "week", tz: str = "UTC"):
    return REPORTS.build_report(_require_user(user_id), timeframe, tz=tz)


@app.get("/analytics/reports", response_model=List[Report])
def report_history(user_id: str, timeframe: Optional[Timeframe] = None, limit: int = 20):
    return REPORTS.list_reports(_require_user(user_id), timeframe, limit=limit)


@app.get("/analytics/reports/{report_id}", response_model=Report)
def stored_report(report_id: str):
    stored = REPORTS.get_report(report_id)
    if stored is None:
        raise HTTPException(status_code=404, detail="report not found")
    return stored


# ---------- Privacy ----------
@app.delete("/users/{user_id}/telemetry")
def delete_telemetry(user_id: str):
    deleted = SESSIONS.clear_user_data(_require_user(user_id))
    logger.info("Deleted telemetry for user %s: %s", user_id, deleted)
    return {"status": "deleted", "user_id": user_id, "deleted": deleted}
