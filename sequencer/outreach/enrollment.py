"""Enrolling contacts into sequences."""

import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Optional

import structlog

from sequencer.core.db import find_enrollments_for_contacts, get_sequence, insert_enrollment
from sequencer.outreach.errors import (
    AlreadyEnrolled,
    InvalidTransition,
    MissingField,
    NotFound,
    require_actor,
)
from sequencer.outreach.lifecycle import storage_errors
from sequencer.outreach.models import ACTIVE, COMPLETED, PAUSED, Enrollment, Sequence

log = structlog.get_logger()


def _load_enrollable_sequence(db_path: Path, sequence_id: str) -> Sequence:
    with storage_errors("Failed to fetch sequence"):
        sequence = get_sequence(db_path, sequence_id)
    if sequence is None:
        raise NotFound("Sequence not found")
    if not sequence.steps:
        raise InvalidTransition("Sequence has no steps")
    return sequence


def enroll_contact(
    db_path: Path,
    actor: Optional[str],
    sequence_id: Optional[str],
    contact_id: Optional[str],
    company_domain: Optional[str],
    now: Optional[datetime] = None,
) -> Enrollment:
    """Enroll one contact at step 0 of a sequence.

    Raises AlreadyEnrolled if the contact has an active or paused enrollment
    in the same sequence.
    """
    require_actor(actor)
    for name, value in (("sequenceId", sequence_id), ("contactId", contact_id),
                        ("companyDomain", company_domain)):
        if not value:
            raise MissingField(name)

    sequence = _load_enrollable_sequence(db_path, sequence_id)

    with storage_errors("Failed to create enrollment"):
        existing = find_enrollments_for_contacts(db_path, sequence_id, [contact_id], (ACTIVE, PAUSED))
    if existing:
        raise AlreadyEnrolled(existing[0].id, existing[0].status)

    with storage_errors("Failed to create enrollment"):
        enrollment = insert_enrollment(
            db_path, sequence_id, contact_id, company_domain, actor, sequence.steps[0], now=now
        )

    log.info("contact_enrolled", enrollment_id=enrollment.id, sequence_id=sequence_id,
             contact_id=contact_id, actor=actor)
    return enrollment


def bulk_enroll(
    db_path: Path,
    actor: Optional[str],
    sequence_id: Optional[str],
    contacts: list[dict],
    now: Optional[datetime] = None,
) -> dict:
    """Enroll many contacts, skipping ones already in (or done with) the sequence.

    Each contact dict has contactId and companyDomain.

    Returns dict with enrolled count, skipped count and per-contact errors.
    """
    require_actor(actor)
    if not sequence_id:
        raise MissingField("sequenceId")
    if not contacts:
        raise MissingField("contacts")

    sequence = _load_enrollable_sequence(db_path, sequence_id)

    contact_ids = [c.get("contactId") for c in contacts if c.get("contactId")]
    with storage_errors("Bulk enrollment failed"):
        existing = find_enrollments_for_contacts(
            db_path, sequence_id, contact_ids, (ACTIVE, PAUSED, COMPLETED)
        )
    already_enrolled = {e.contact_id for e in existing}

    enrolled = 0
    skipped = 0
    errors = []

    for contact in contacts:
        contact_id = contact.get("contactId")
        company_domain = contact.get("companyDomain")

        if not contact_id or not company_domain:
            errors.append(f"Missing contactId or companyDomain: {contact}")
            continue
        if contact_id in already_enrolled:
            skipped += 1
            continue

        try:
            insert_enrollment(
                db_path, sequence_id, contact_id, company_domain, actor, sequence.steps[0], now=now
            )
        except sqlite3.Error as e:
            log.error("bulk_enroll_insert_failed", contact_id=contact_id, error=str(e))
            errors.append(f"{contact_id}: {e}")
            continue

        already_enrolled.add(contact_id)
        enrolled += 1

    log.info("bulk_enroll_complete", sequence_id=sequence_id, enrolled=enrolled,
             skipped=skipped, errors=len(errors))
    return {"enrolled": enrolled, "skipped": skipped, "errors": errors}
