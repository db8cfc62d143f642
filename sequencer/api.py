"""HTTP surface for the enrollment engine."""

from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from sequencer.core.config import DEFAULT_CONFIG_PATH, Settings, load_settings
from sequencer.core.db import DEFAULT_DB_PATH, get_step_logs, init_db, list_enrollments
from sequencer.outreach import lifecycle
from sequencer.outreach.enrollment import bulk_enroll, enroll_contact
from sequencer.outreach.errors import InvalidAction, OutreachError, Unauthenticated
from sequencer.outreach.executor import Collaborators, build_collaborators, execute_step
from sequencer.outreach.lifecycle import storage_errors
from sequencer.outreach.models import ENROLLMENT_STATUSES
from sequencer.outreach.scheduler import get_due_steps

log = structlog.get_logger()

router = APIRouter(prefix="/api/outreach", tags=["outreach"])


class TransitionBody(BaseModel):
    action: Optional[str] = None
    outcome: Optional[str] = None
    notes: Optional[str] = None


class ExecuteBody(BaseModel):
    outcome: Optional[str] = None
    notes: Optional[str] = None
    draft_content: Optional[str] = Field(None, alias="draftContent")


class EnrollBody(BaseModel):
    sequence_id: Optional[str] = Field(None, alias="sequenceId")
    contact_id: Optional[str] = Field(None, alias="contactId")
    company_domain: Optional[str] = Field(None, alias="companyDomain")


class BulkEnrollBody(BaseModel):
    sequence_id: Optional[str] = Field(None, alias="sequenceId")
    contacts: list[dict] = []


def current_actor(request: Request) -> str:
    """Actor identity from the user_name cookie or X-User-Name header."""
    actor = request.cookies.get("user_name") or request.headers.get("X-User-Name")
    if not actor:
        raise Unauthenticated()
    return actor


def db_path_of(request: Request) -> Path:
    return request.app.state.db_path


def collaborators_of(request: Request) -> Collaborators:
    return request.app.state.collaborators


async def read_body(request: Request, model: type[BaseModel], required: bool) -> BaseModel:
    """Parse a JSON body into a model. A missing body is empty unless required."""
    try:
        data = await request.json()
    except ValueError:
        if required:
            raise InvalidAction("Invalid request body")
        data = {}

    if not isinstance(data, dict):
        raise InvalidAction("Invalid request body")
    try:
        return model(**data)
    except ValidationError:
        raise InvalidAction("Invalid request body")


@router.get("/enrollments/{enrollment_id}")
def read_enrollment(
    enrollment_id: str,
    actor: str = Depends(current_actor),
    db_path: Path = Depends(db_path_of),
) -> dict:
    enrollment = lifecycle.load_enrollment(db_path, enrollment_id)
    with storage_errors("Failed to fetch enrollment"):
        step_logs = get_step_logs(db_path, enrollment_id)

    return {
        "enrollment": enrollment.to_dict(),
        "stepLogs": [s.to_dict() for s in step_logs],
    }


@router.put("/enrollments/{enrollment_id}")
async def transition_enrollment(
    enrollment_id: str,
    request: Request,
    actor: str = Depends(current_actor),
    db_path: Path = Depends(db_path_of),
) -> dict:
    body = await read_body(request, TransitionBody, required=True)
    result = await run_in_threadpool(
        lifecycle.transition,
        db_path,
        enrollment_id,
        actor,
        body.action,
        outcome=body.outcome,
        notes=body.notes,
    )
    return result.to_dict()


@router.post("/enrollments/{enrollment_id}/execute")
async def execute_enrollment_step(
    enrollment_id: str,
    request: Request,
    actor: str = Depends(current_actor),
    db_path: Path = Depends(db_path_of),
    collaborators: Collaborators = Depends(collaborators_of),
) -> dict:
    body = await read_body(request, ExecuteBody, required=False)
    result = await execute_step(
        db_path,
        enrollment_id,
        actor,
        collaborators,
        outcome=body.outcome,
        notes=body.notes,
        draft_content=body.draft_content,
    )
    return result.to_dict()


@router.get("/due-steps")
def due_steps(
    request: Request,
    actor: str = Depends(current_actor),
    db_path: Path = Depends(db_path_of),
    collaborators: Collaborators = Depends(collaborators_of),
) -> dict:
    settings: Settings = request.app.state.settings
    items = get_due_steps(db_path, collaborators.cache, limit=settings.due_steps.limit)
    return {"items": [item.to_dict() for item in items]}


@router.get("/enrollments")
def enrollments_index(
    contact_id: Optional[str] = Query(None, alias="contactId"),
    status: Optional[str] = Query(None),
    due_by: Optional[datetime] = Query(None, alias="dueBy"),
    actor: str = Depends(current_actor),
    db_path: Path = Depends(db_path_of),
) -> dict:
    if status is not None and status not in ENROLLMENT_STATUSES:
        raise InvalidAction(f"Invalid status. Must be one of: {', '.join(ENROLLMENT_STATUSES)}")
    with storage_errors("Failed to fetch enrollments"):
        enrollments = list_enrollments(db_path, contact_id=contact_id, status=status, due_by=due_by)
    return {"enrollments": [e.to_dict() for e in enrollments]}


@router.post("/enrollments", status_code=201)
async def create_enrollment(
    request: Request,
    actor: str = Depends(current_actor),
    db_path: Path = Depends(db_path_of),
) -> dict:
    body = await read_body(request, EnrollBody, required=True)
    enrollment = await run_in_threadpool(
        enroll_contact, db_path, actor, body.sequence_id, body.contact_id, body.company_domain
    )
    return enrollment.to_dict()


@router.post("/enrollments/bulk")
async def create_enrollments_bulk(
    request: Request,
    actor: str = Depends(current_actor),
    db_path: Path = Depends(db_path_of),
) -> dict:
    body = await read_body(request, BulkEnrollBody, required=True)
    return await run_in_threadpool(bulk_enroll, db_path, actor, body.sequence_id, body.contacts)


async def outreach_error_handler(request: Request, exc: OutreachError) -> JSONResponse:
    if exc.status_code >= 500:
        log.error("request_failed", path=request.url.path, error=exc.message)
    content = {"error": exc.message}
    enrollment_id = getattr(exc, "enrollment_id", None)
    if enrollment_id:
        content.update({"enrollmentId": enrollment_id, "status": exc.status})
    return JSONResponse(status_code=exc.status_code, content=content)


def create_app(
    db_path: Path = DEFAULT_DB_PATH,
    settings: Optional[Settings] = None,
    collaborators: Optional[Collaborators] = None,
) -> FastAPI:
    settings = settings or load_settings(DEFAULT_CONFIG_PATH)
    init_db(db_path)
    collaborators = collaborators or build_collaborators(db_path, settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if collaborators.crm_sync is not None:
            collaborators.crm_sync.shutdown(wait_for_jobs=True)

    app = FastAPI(title="Outreach Sequencer", lifespan=lifespan)
    app.state.db_path = db_path
    app.state.settings = settings
    app.state.collaborators = collaborators

    app.add_exception_handler(OutreachError, outreach_error_handler)
    app.include_router(router)
    return app
