"""Enrollment lifecycle: pause, resume, unenroll and manual advance."""

import sqlite3
from contextlib import contextmanager
from datetime import datetime
from functools import partial
from pathlib import Path
from typing import Iterator, Optional

import structlog

from sequencer.core.db import (
    complete_step_and_advance,
    get_enrollment,
    get_sequence,
    update_enrollment_status,
)
from sequencer.outreach.errors import (
    AlreadyFinished,
    InternalError,
    InvalidAction,
    InvalidTransition,
    MissingField,
    NoStepsRemaining,
    NotFound,
    require_actor,
)
from sequencer.outreach.models import (
    ACTIVE,
    COMPLETED,
    PAUSED,
    UNENROLLED,
    Enrollment,
    Step,
    TransitionResult,
)

log = structlog.get_logger()

ACTIONS = ("pause", "resume", "unenroll", "advance")


@contextmanager
def storage_errors(message: str) -> Iterator[None]:
    """Turn database failures into InternalError."""
    try:
        yield
    except sqlite3.Error as e:
        log.error("storage_error", operation=message, error=str(e))
        raise InternalError(message) from e


def load_enrollment(db_path: Path, enrollment_id: str) -> Enrollment:
    with storage_errors("Failed to fetch enrollment"):
        enrollment = get_enrollment(db_path, enrollment_id)
    if enrollment is None:
        raise NotFound()
    return enrollment


def load_steps(db_path: Path, enrollment: Enrollment) -> list[Step]:
    with storage_errors("Failed to fetch sequence"):
        sequence = get_sequence(db_path, enrollment.sequence_id)
    if sequence is None:
        raise InternalError("Sequence not found")
    return sequence.steps


def advance_or_complete(
    db_path: Path,
    enrollment: Enrollment,
    steps: list[Step],
    outcome: Optional[str] = None,
    notes: Optional[str] = None,
    draft_content: Optional[str] = None,
    now: Optional[datetime] = None,
) -> tuple[Enrollment, bool]:
    """Complete the enrollment's current step and move to the next one.

    Uses the current_step of the enrollment as read by the caller. Returns the
    enrollment as persisted afterwards and whether this call applied the change
    (False when another call had already completed the step).
    """
    with storage_errors("Failed to advance enrollment"):
        applied = complete_step_and_advance(
            db_path,
            enrollment.id,
            enrollment.current_step,
            steps,
            outcome=outcome,
            notes=notes,
            draft_content=draft_content,
            now=now,
        )

    if not applied:
        log.info("step_already_handled", enrollment_id=enrollment.id, step=enrollment.current_step)

    return load_enrollment(db_path, enrollment.id), applied


def _require_active(enrollment: Enrollment, verb: str) -> None:
    if enrollment.status != ACTIVE:
        raise InvalidTransition(f"Can only {verb} active enrollments")


def _require_paused(enrollment: Enrollment) -> None:
    if enrollment.status != PAUSED:
        raise InvalidTransition("Can only resume paused enrollments")


def _require_unfinished(enrollment: Enrollment) -> None:
    if enrollment.is_finished:
        raise AlreadyFinished()


def _set_status(db_path: Path, enrollment: Enrollment, to_status: str, check, clear_due: bool = False) -> Enrollment:
    """Write a status change conditioned on the status we validated against.

    On a lost race the precondition is checked against the fresh state and, if it
    still holds, the write is tried once more from that state.
    """
    current = enrollment
    for _ in range(2):
        with storage_errors(f"Failed to set enrollment {to_status}"):
            changed = update_enrollment_status(
                db_path, enrollment.id, current.status, to_status, clear_due=clear_due
            )
        if changed:
            return load_enrollment(db_path, enrollment.id)

        current = load_enrollment(db_path, enrollment.id)
        check(current)

    raise InternalError(f"Failed to set enrollment {to_status}")


def pause(db_path: Path, enrollment_id: str, actor: Optional[str]) -> TransitionResult:
    """Pause an active enrollment. The due timestamp is kept for resume."""
    require_actor(actor)
    enrollment = load_enrollment(db_path, enrollment_id)

    check = partial(_require_active, verb="pause")
    check(enrollment)
    updated = _set_status(db_path, enrollment, PAUSED, check)

    log.info("enrollment_paused", enrollment_id=enrollment_id, actor=actor)
    return TransitionResult(updated)


def resume(db_path: Path, enrollment_id: str, actor: Optional[str]) -> TransitionResult:
    """Resume a paused enrollment."""
    require_actor(actor)
    enrollment = load_enrollment(db_path, enrollment_id)

    _require_paused(enrollment)
    updated = _set_status(db_path, enrollment, ACTIVE, _require_paused)

    log.info("enrollment_resumed", enrollment_id=enrollment_id, actor=actor)
    return TransitionResult(updated)


def unenroll(db_path: Path, enrollment_id: str, actor: Optional[str]) -> TransitionResult:
    """Stop an active or paused enrollment for good."""
    require_actor(actor)
    enrollment = load_enrollment(db_path, enrollment_id)

    _require_unfinished(enrollment)
    updated = _set_status(db_path, enrollment, UNENROLLED, _require_unfinished, clear_due=True)

    log.info("enrollment_unenrolled", enrollment_id=enrollment_id, actor=actor)
    return TransitionResult(updated)


def advance(
    db_path: Path,
    enrollment_id: str,
    actor: Optional[str],
    outcome: Optional[str] = None,
    notes: Optional[str] = None,
) -> TransitionResult:
    """Mark the current step done without executing it, then move on."""
    require_actor(actor)
    enrollment = load_enrollment(db_path, enrollment_id)
    _require_active(enrollment, "advance")

    steps = load_steps(db_path, enrollment)
    if enrollment.current_step >= len(steps):
        raise NoStepsRemaining()

    updated, applied = advance_or_complete(db_path, enrollment, steps, outcome=outcome, notes=notes)
    completed = updated.status == COMPLETED

    log.info("enrollment_advanced", enrollment_id=enrollment_id, actor=actor,
             step=updated.current_step, completed=completed, applied=applied)
    return TransitionResult(updated, completed=completed)


def transition(
    db_path: Path,
    enrollment_id: str,
    actor: Optional[str],
    action: Optional[str],
    outcome: Optional[str] = None,
    notes: Optional[str] = None,
) -> TransitionResult:
    """Validate an action name and dispatch to the matching transition."""
    require_actor(actor)

    if not action:
        raise MissingField("action")
    if action not in ACTIONS:
        raise InvalidAction(f"Invalid action. Must be one of: {', '.join(ACTIONS)}")

    if action == "pause":
        return pause(db_path, enrollment_id, actor)
    if action == "resume":
        return resume(db_path, enrollment_id, actor)
    if action == "unenroll":
        return unenroll(db_path, enrollment_id, actor)
    return advance(db_path, enrollment_id, actor, outcome=outcome, notes=notes)
