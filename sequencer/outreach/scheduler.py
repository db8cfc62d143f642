"""Due-step queries and the caller-side execution cycle."""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

import structlog

from sequencer.core.db import DEFAULT_DB_PATH, get_due_enrollments, get_sequences_by_ids, utc_now
from sequencer.outreach.errors import OutreachError
from sequencer.outreach.executor import Collaborators, execute_step
from sequencer.outreach.lifecycle import storage_errors
from sequencer.outreach.models import Enrollment, Sequence
from sequencer.services.snapshot_cache import (
    SnapshotCache,
    company_display_name,
    contact_display_name,
)

log = structlog.get_logger()


@dataclass
class DueStep:
    enrollment: Enrollment
    sequence: Sequence
    contact_name: str
    company_name: str

    def to_dict(self) -> dict:
        return {
            "enrollment": self.enrollment.to_dict(),
            "sequence": self.sequence.to_dict(),
            "contactName": self.contact_name,
            "companyName": self.company_name,
        }


def get_due_steps(
    db_path: Path = DEFAULT_DB_PATH,
    cache: Optional[SnapshotCache] = None,
    now: Optional[datetime] = None,
    limit: int = 50,
) -> list[DueStep]:
    """Get active enrollments whose next step is due.

    Read-only. Enrollments whose sequence is missing or has no steps are left out.
    """
    now = now or utc_now()
    cache = cache or SnapshotCache(db_path)

    with storage_errors("Failed to fetch due steps"):
        enrollments = get_due_enrollments(db_path, now, limit)
        if not enrollments:
            return []
        sequences = get_sequences_by_ids(db_path, (e.sequence_id for e in enrollments))

    items = []
    for enrollment in enrollments:
        sequence = sequences.get(enrollment.sequence_id)
        if sequence is None or not sequence.steps:
            log.warning("due_step_without_sequence", enrollment_id=enrollment.id)
            continue

        contact = cache.get_contact(enrollment.company_domain, enrollment.contact_id)
        company = cache.get_company(enrollment.company_domain)
        items.append(DueStep(
            enrollment=enrollment,
            sequence=sequence,
            contact_name=contact_display_name(contact, enrollment.contact_id),
            company_name=company_display_name(company, enrollment.company_domain),
        ))

    return items


async def run_due_cycle(
    db_path: Path,
    actor: str,
    collaborators: Collaborators,
    now: Optional[datetime] = None,
    limit: int = 50,
) -> dict:
    """Execute every due step once.

    A failing enrollment is recorded and skipped; the cycle carries on.

    Returns summary dict.
    """
    due = await asyncio.to_thread(get_due_steps, db_path, collaborators.cache, now=now, limit=limit)

    results = {
        "due": len(due),
        "executed": [],
        "completed": [],
        "failed": [],
    }

    for item in due:
        enrollment_id = item.enrollment.id
        try:
            result = await execute_step(db_path, enrollment_id, actor, collaborators)
        except OutreachError as e:
            log.error("due_step_failed", enrollment_id=enrollment_id, error=e.message)
            results["failed"].append(enrollment_id)
            continue

        results["executed"].append(enrollment_id)
        if result.completed:
            results["completed"].append(enrollment_id)

    log.info("due_cycle_complete", due=results["due"], executed=len(results["executed"]),
             failed=len(results["failed"]))
    return results
