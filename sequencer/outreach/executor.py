"""Step execution: generate content for the current step, complete it, advance."""

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import structlog

from sequencer.clients.freshsales import FreshsalesClient
from sequencer.core.config import Settings
from sequencer.core.db import get_step_logs
from sequencer.outreach.channels import StepContext, dispatch
from sequencer.outreach.composer import DraftComposer
from sequencer.outreach.crm_sync import CrmSyncSidecar
from sequencer.outreach.errors import InvalidTransition, NoStepsRemaining, require_actor
from sequencer.outreach.lifecycle import (
    advance_or_complete,
    load_enrollment,
    load_steps,
    storage_errors,
)
from sequencer.outreach.models import ACTIVE, COMPLETED, Enrollment, ExecutionResult, Step, StepLog
from sequencer.services.snapshot_cache import SnapshotCache, contact_display_name

log = structlog.get_logger()


@dataclass
class Collaborators:
    """External services the engine talks to while executing a step."""
    cache: SnapshotCache
    composer: DraftComposer
    crm_sync: Optional[CrmSyncSidecar] = None
    draft_timeout: float = 20.0


def build_collaborators(db_path: Path, settings: Settings) -> Collaborators:
    """Wire the default collaborators from settings."""
    cache = SnapshotCache(db_path, ttl_seconds=settings.cache.ttl_minutes * 60)
    crm = FreshsalesClient(settings.crm)
    return Collaborators(
        cache=cache,
        composer=DraftComposer(settings.drafts),
        crm_sync=CrmSyncSidecar(crm, cache, workers=settings.crm.workers),
        draft_timeout=settings.drafts.timeout_seconds,
    )


def resolve_context(
    db_path: Path,
    actor: str,
    enrollment: Enrollment,
    step: Step,
    cache: SnapshotCache,
) -> StepContext:
    """Personalize a step from the snapshot cache, falling back on misses."""
    contact = cache.get_contact(enrollment.company_domain, enrollment.contact_id) or {}
    company = cache.get_company(enrollment.company_domain) or {}

    crm_contact_id = contact.get("freshsalesId") or contact.get("freshsalesOwnerId")

    return StepContext(
        db_path=db_path,
        actor=actor,
        enrollment=enrollment,
        step=step,
        contact_name=contact_display_name(contact, enrollment.contact_id),
        contact_title=contact.get("title") or "",
        contact_seniority=contact.get("seniority") or "",
        linkedin_url=contact.get("linkedinUrl"),
        crm_contact_id=str(crm_contact_id) if crm_contact_id else None,
        company_industry=company.get("industry") or "",
        signals=company.get("signals") or [],
        hubspot_status=company.get("hubspotStatus") or "none",
        freshsales_status=company.get("freshsalesStatus") or "none",
        icp_score=company.get("icpScore"),
    )


def load_for_execution(db_path: Path, enrollment_id: str) -> tuple[Enrollment, list[Step]]:
    """Load an enrollment and its steps, checking it can execute its current step."""
    enrollment = load_enrollment(db_path, enrollment_id)

    if enrollment.status != ACTIVE:
        raise InvalidTransition("Can only execute steps on active enrollments")

    steps = load_steps(db_path, enrollment)
    if enrollment.current_step >= len(steps):
        raise NoStepsRemaining()

    return enrollment, steps


def fetch_step_logs(db_path: Path, enrollment_id: str) -> list[StepLog]:
    with storage_errors("Failed to fetch step logs"):
        return get_step_logs(db_path, enrollment_id)


async def execute_step(
    db_path: Path,
    enrollment_id: str,
    actor: Optional[str],
    collaborators: Collaborators,
    outcome: Optional[str] = None,
    notes: Optional[str] = None,
    draft_content: Optional[str] = None,
) -> ExecutionResult:
    """Execute the current step of an active enrollment.

    Draft generation failures degrade into the execution result; the step is
    completed regardless. The CRM sync is queued, never awaited. Database work
    runs in worker threads so a locked database never stalls the event loop.
    """
    require_actor(actor)
    enrollment, steps = await asyncio.to_thread(load_for_execution, db_path, enrollment_id)

    step = steps[enrollment.current_step]
    ctx = await asyncio.to_thread(
        resolve_context, db_path, actor, enrollment, step, collaborators.cache
    )

    channel_outcome = await dispatch(ctx, collaborators.composer, collaborators.draft_timeout)
    execution_result = channel_outcome.payload

    if draft_content is None:
        draft_content = channel_outcome.draft_content
    if not isinstance(draft_content, str):
        draft_content = None

    updated, applied = await asyncio.to_thread(
        advance_or_complete,
        db_path,
        enrollment,
        steps,
        outcome=outcome,
        notes=notes,
        draft_content=draft_content,
    )

    if applied and collaborators.crm_sync is not None:
        collaborators.crm_sync.submit(enrollment.company_domain, step.channel, draft_content)

    step_logs = await asyncio.to_thread(fetch_step_logs, db_path, enrollment_id)

    completed = updated.status == COMPLETED
    log.info(
        "step_executed",
        enrollment_id=enrollment_id,
        actor=actor,
        channel=step.channel,
        step=enrollment.current_step,
        completed=completed,
        applied=applied,
        draft_error="error" in execution_result,
    )

    return ExecutionResult(
        enrollment=updated,
        step_logs=step_logs,
        execution_result=execution_result,
        completed=completed,
        applied=applied,
    )
