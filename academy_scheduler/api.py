import logging
import os
import threading
import uuid
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

import uvicorn
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from academy_scheduler.auth import get_current_user, init_firebase
from academy_scheduler.config import DEFAULT_CONFIG
from academy_scheduler.data_store import SheetsDataStore, load_config_overrides
from academy_scheduler.errors import ConfigurationError, DataStoreError, ValidationError
from academy_scheduler.makeup import MakeUpSuggestionEngine
from academy_scheduler.model import (
    ClassComposition, MakeUpSuggestionRequest, RequestConstraints, SchedulingDecision,
    SchedulingRequest, SchedulingResult, SlotCapacity, StudentSchedulePreferences,
    SuggestionConstraints, TimeSlot,
)
from academy_scheduler.scheduler import SchedulingService
from academy_scheduler.timegrid import TimeGrid

logger = logging.getLogger(__name__)

SPREADSHEET_NAME = os.environ.get('ACADEMY_SPREADSHEET', 'ACADEMY_SCHEDULING')
CREDENTIALS_FILE = os.environ.get('ACADEMY_CREDENTIALS_FILE', 'credentials.json')

HHMM = r'^([01]\d|2[0-3]):[0-5]\d$'


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_firebase()
    yield


app = FastAPI(
    title="Academy Scheduler API",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],  # Authorization header carries the Firebase token
)

# --- In-memory job table (single instance) ---
jobs: Dict[str, Dict[str, Any]] = {}
results: Dict[str, SchedulingResult] = {}

_service: Optional[SchedulingService] = None
_service_lock = threading.Lock()


def get_service() -> SchedulingService:
    """Builds the service from the academy spreadsheet on first use."""
    global _service
    with _service_lock:
        if _service is None:
            store = SheetsDataStore(SPREADSHEET_NAME, CREDENTIALS_FILE).load()
            overrides = load_config_overrides(SPREADSHEET_NAME, CREDENTIALS_FILE)
            config = DEFAULT_CONFIG.merged(overrides) if overrides else DEFAULT_CONFIG
            _service = SchedulingService(store, config)
    return _service


# --- Error mapping ---

@app.exception_handler(ValidationError)
@app.exception_handler(ConfigurationError)
async def bad_request_handler(request: Request, exc):
    return JSONResponse(status_code=400, content={"detail": exc.message, "category": exc.category})


@app.exception_handler(DataStoreError)
async def store_error_handler(request: Request, exc: DataStoreError):
    logger.error("Data store error on %s: %s", request.url.path, exc.message)
    return JSONResponse(status_code=503, content={"detail": exc.message, "category": exc.category})


# --- Request models ---

class TimeSlotIn(BaseModel):
    id: Optional[str] = None
    day_of_week: int = Field(ge=1, le=7)
    start_time: str = Field(pattern=HHMM)
    end_time: str = Field(pattern=HHMM)
    max_students: int = Field(default=9, ge=1)
    location: Optional[str] = None

    def to_slot(self) -> TimeSlot:
        return TimeSlot(
            id=self.id or TimeGrid.slot_id(self.day_of_week, self.start_time),
            start_time=self.start_time,
            end_time=self.end_time,
            day_of_week=self.day_of_week,
            capacity=SlotCapacity(max_students=self.max_students),
            location=self.location,
        )


class RequestConstraintsIn(BaseModel):
    available_days: Optional[List[int]] = None
    earliest_hour: Optional[int] = Field(default=None, ge=0, le=23)
    latest_hour: Optional[int] = Field(default=None, ge=1, le=24)
    teacher_id: Optional[str] = None


class ScheduleRequestIn(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    course_id: str
    student_ids: List[str]
    type: Literal['auto_schedule', 'reschedule', 'conflict_resolution',
                  'optimization', 'content_sync', 'manual_override'] = 'auto_schedule'
    priority: Literal['low', 'medium', 'high', 'urgent'] = 'medium'
    preferred_time_slots: List[TimeSlotIn] = []
    constraints: Optional[RequestConstraintsIn] = None
    preferred_class_id: Optional[str] = None

    def to_request(self) -> SchedulingRequest:
        constraints = None
        if self.constraints:
            c = self.constraints
            constraints = RequestConstraints(
                available_days=tuple(c.available_days) if c.available_days else None,
                earliest_hour=c.earliest_hour,
                latest_hour=c.latest_hour,
                teacher_id=c.teacher_id,
            )
        return SchedulingRequest(
            id=self.id,
            course_id=self.course_id,
            student_ids=tuple(self.student_ids),
            type=self.type,
            priority=self.priority,
            preferred_time_slots=tuple(s.to_slot() for s in self.preferred_time_slots),
            constraints=constraints,
            preferred_class_id=self.preferred_class_id,
        )


class CommitIn(BaseModel):
    request_id: str


class PreferencesIn(BaseModel):
    preferred_days: List[int] = [1, 2, 3, 4, 5]
    preferred_times: Optional[Dict[int, List[str]]] = None
    preferred_class_size_min: int = Field(default=1, ge=1)
    preferred_class_size_max: int = Field(default=9, ge=1)
    preferred_teachers: List[str] = []
    avoided_teachers: List[str] = []
    willing_to_change_teacher: bool = True
    advance_notice_required_hours: int = Field(default=24, ge=0)


class SuggestionConstraintsIn(BaseModel):
    earliest_date: Optional[datetime] = None
    latest_date: Optional[datetime] = None
    excluded_class_ids: List[str] = []
    excluded_teacher_ids: List[str] = []
    min_compatibility_score: Optional[float] = Field(default=None, ge=0, le=1)
    include_other_course_types: bool = False


class MakeUpRequestIn(BaseModel):
    student_id: str
    original_class_id: str
    postponement_id: str = ''
    student_preferences: Optional[PreferencesIn] = None
    constraints: Optional[SuggestionConstraintsIn] = None
    max_suggestions: Optional[int] = Field(default=None, ge=1, le=50)
    reference_time: Optional[datetime] = None

    def to_request(self) -> MakeUpSuggestionRequest:
        prefs = None
        if self.student_preferences:
            values = self.student_preferences.model_dump(exclude_none=True)
            prefs = StudentSchedulePreferences(student_id=self.student_id, **values)
        constraints = SuggestionConstraints(**self.constraints.model_dump()) if self.constraints else None
        return MakeUpSuggestionRequest(
            student_id=self.student_id,
            original_class_id=self.original_class_id,
            postponement_id=self.postponement_id,
            student_preferences=prefs,
            constraints=constraints,
            max_suggestions=self.max_suggestions,
            reference_time=self.reference_time,
        )


class DecisionIn(BaseModel):
    id: str
    course_id: str
    student_ids: List[str] = Field(min_length=1)
    teacher_id: Optional[str] = None
    time_slot: Optional[TimeSlotIn] = None
    priority: Literal['low', 'medium', 'high', 'urgent'] = 'medium'
    difficulty_level: int = Field(default=5, ge=1, le=10)
    duration_minutes: int = Field(default=60, ge=1)
    teacher_requirements: List[str] = []
    confidence_score: float = Field(default=0.75, ge=0, le=1)

    def to_decision(self) -> SchedulingDecision:
        return SchedulingDecision(
            id=self.id,
            course_id=self.course_id,
            composition=ClassComposition(
                id=f"comp-{self.id}",
                student_ids=list(self.student_ids),
                class_type='individual' if len(self.student_ids) == 1 else 'group',
                recommended_duration=self.duration_minutes,
                difficulty_level=self.difficulty_level,
                scheduling_priority=self.priority,
                teacher_requirements=list(self.teacher_requirements),
            ),
            teacher_id=self.teacher_id,
            time_slot=self.time_slot.to_slot() if self.time_slot else None,
            confidence_score=self.confidence_score,
        )


class OptimizeIn(BaseModel):
    decisions: List[DecisionIn] = Field(min_length=1)
    balance_workload: Optional[bool] = None
    optimize_timing: Optional[bool] = None
    alternative_count: Optional[int] = Field(default=None, ge=0, le=3)


# --- Response models ---

class JobResponse(BaseModel):
    job_id: str
    request_id: str
    status: str


class HealthResponse(BaseModel):
    status: str
    success_rate: float
    queue_depth: int
    total_requests: int
    failed_requests: int
    average_processing_ms: float
    uptime_seconds: float


# --- Endpoints ---

@app.api_route("/", methods=["GET", "HEAD"], tags=["General"])
def read_root():
    return {"status": "online", "system": "Academy Scheduler"}


@app.get("/health", response_model=HealthResponse, tags=["General"])
def health(service: SchedulingService = Depends(get_service)):
    return asdict(service.get_health_status())


@app.post("/schedule", tags=["Scheduling"])
def schedule(payload: ScheduleRequestIn,
             service: SchedulingService = Depends(get_service),
             current_user: str = Depends(get_current_user)):
    """Runs one scheduling request synchronously. Nothing is written until /schedule/commit."""
    result = service.schedule(payload.to_request())
    results[result.request_id] = result
    return asdict(result)


def run_schedule_job(job_id: str, request: SchedulingRequest, service: SchedulingService):
    """Runs a scheduling request in the background and records the outcome in `jobs`."""
    def check_cancellation():
        return jobs[job_id]["status"] == "cancelled"

    logger.info("[Job %s] starting request %s", job_id, request.id)
    try:
        result = service.schedule(request, should_cancel=check_cancellation)
    except ValidationError as e:
        jobs[job_id]["status"] = "failed"
        jobs[job_id]["error"] = e.message
        logger.warning("[Job %s] rejected: %s", job_id, e.message)
        return

    results[request.id] = result
    jobs[job_id]["result"] = asdict(result)
    if jobs[job_id]["status"] == "cancelled":
        logger.info("[Job %s] stopped on user request", job_id)
        return
    jobs[job_id]["status"] = "completed" if result.success else "failed"
    jobs[job_id]["error"] = result.error.message if result.error else None
    logger.info("[Job %s] %s", job_id, jobs[job_id]["status"])


@app.post("/schedule/jobs", response_model=JobResponse, tags=["Scheduling"])
def start_schedule_job(payload: ScheduleRequestIn, background_tasks: BackgroundTasks,
                       service: SchedulingService = Depends(get_service),
                       current_user: str = Depends(get_current_user)):
    """
    Starts a scheduling request in the background and returns a job id.
    Poll GET /jobs/{job_id} for the result.
    """
    request = payload.to_request()
    job_id = str(uuid.uuid4())
    jobs[job_id] = {
        "status": "running",
        "request_id": request.id,
        "result": None,
        "error": None,
        "user": current_user,
    }
    background_tasks.add_task(run_schedule_job, job_id, request, service)
    return {"job_id": job_id, "request_id": request.id, "status": "started"}


@app.get("/jobs/{job_id}", tags=["Scheduling"])
def get_job(job_id: str, current_user: str = Depends(get_current_user)):
    if job_id not in jobs:
        raise HTTPException(status_code=404, detail="Job not found")
    job = jobs[job_id]
    return {
        "job_id": job_id,
        "request_id": job["request_id"],
        "status": job["status"],
        "result": job.get("result"),
        "error": job.get("error"),
    }


@app.post("/jobs/{job_id}/cancel", tags=["Scheduling"])
def cancel_job(job_id: str, current_user: str = Depends(get_current_user)):
    if job_id not in jobs:
        raise HTTPException(status_code=404, detail="Job not found")
    if jobs[job_id]["status"] in ("completed", "failed"):
        return {"status": "job_already_finished"}
    jobs[job_id]["status"] = "cancelled"
    return {"status": "cancelled"}


@app.post("/schedule/commit", tags=["Persistence"])
def commit_schedule(payload: CommitIn,
                    service: SchedulingService = Depends(get_service),
                    current_user: str = Depends(get_current_user)):
    """Writes the classes of a previous scheduling result to the store."""
    result = results.get(payload.request_id)
    if result is None:
        raise HTTPException(status_code=404, detail="Scheduling result not found")
    logger.info("User %s committing request %s", current_user, payload.request_id)
    report = service.commit(result)
    results.pop(payload.request_id, None)
    return asdict(report)


@app.post("/makeup-suggestions", tags=["Make-up"])
def makeup_suggestions(payload: MakeUpRequestIn,
                       service: SchedulingService = Depends(get_service),
                       current_user: str = Depends(get_current_user)):
    engine = MakeUpSuggestionEngine(service.store, service.config.suggestion)
    suggestions = engine.generate_suggestions(payload.to_request())
    return {"count": len(suggestions), "suggestions": [asdict(s) for s in suggestions]}


@app.post("/optimize", tags=["Scheduling"])
def optimize(payload: OptimizeIn,
             service: SchedulingService = Depends(get_service),
             current_user: str = Depends(get_current_user)):
    decisions = [d.to_decision() for d in payload.decisions]
    constraints = service.constraints_for(
        decisions,
        balance_workload=payload.balance_workload,
        optimize_timing=payload.optimize_timing,
        alternative_count=payload.alternative_count,
    )
    return asdict(service.optimize(decisions, constraints))


@app.get("/config", tags=["Configuration"])
def get_config(service: SchedulingService = Depends(get_service),
               current_user: str = Depends(get_current_user)):
    return service.config.to_dict()


@app.patch("/config", tags=["Configuration"])
def update_config(partial: Dict[str, Any],
                  service: SchedulingService = Depends(get_service),
                  current_user: str = Depends(get_current_user)):
    return service.update_configuration(partial).to_dict()


if __name__ == "__main__":
    uvicorn.run("academy_scheduler.api:app", host="127.0.0.1", port=8000, reload=True)
