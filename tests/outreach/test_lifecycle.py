import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from sequencer.core.db import (
    get_connection,
    get_due_enrollments,
    get_enrollment,
    get_step_logs,
    init_db,
    insert_enrollment,
    insert_sequence,
    update_enrollment_status,
)
from sequencer.outreach import lifecycle
from sequencer.outreach.errors import (
    AlreadyFinished,
    InternalError,
    InvalidAction,
    InvalidTransition,
    MissingField,
    NoStepsRemaining,
    NotFound,
    Unauthenticated,
)
from sequencer.outreach.models import Step

NOW = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)

STEPS = [Step(channel="email"), Step(channel="call", delay_days=2)]


def setup_enrollment(db_path, steps=STEPS):
    init_db(db_path)
    sequence_id = insert_sequence(db_path, "Intro", steps)
    return insert_enrollment(db_path, sequence_id, "c1", "example.com", "alice", steps[0], now=NOW)


def test_pause_keeps_due_date():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        enrollment = setup_enrollment(db_path)

        result = lifecycle.pause(db_path, enrollment.id, "alice")

        assert result.enrollment.status == "paused"
        assert result.enrollment.next_step_due_at == enrollment.next_step_due_at
        assert "completed" not in result.to_dict()

        # Paused enrollments never show up as due
        assert get_due_enrollments(db_path, NOW + timedelta(days=30)) == []


def test_pause_requires_active():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        enrollment = setup_enrollment(db_path)
        lifecycle.pause(db_path, enrollment.id, "alice")

        with pytest.raises(InvalidTransition, match="Can only pause active enrollments"):
            lifecycle.pause(db_path, enrollment.id, "alice")


def test_resume_paused_enrollment():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        enrollment = setup_enrollment(db_path)
        logs_before = get_step_logs(db_path, enrollment.id)
        lifecycle.pause(db_path, enrollment.id, "alice")

        result = lifecycle.resume(db_path, enrollment.id, "alice")

        assert result.enrollment.status == "active"
        assert result.enrollment.current_step == 0
        assert result.enrollment.next_step_due_at == enrollment.next_step_due_at
        # Pause and resume leave the step logs alone
        assert get_step_logs(db_path, enrollment.id) == logs_before
        assert [log.status for log in logs_before] == ["pending"]


def test_resume_requires_paused():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        enrollment = setup_enrollment(db_path)

        with pytest.raises(InvalidTransition, match="Can only resume paused enrollments"):
            lifecycle.resume(db_path, enrollment.id, "alice")


def test_unenroll_is_terminal():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        enrollment = setup_enrollment(db_path)

        result = lifecycle.unenroll(db_path, enrollment.id, "alice")

        assert result.enrollment.status == "unenrolled"
        assert result.enrollment.next_step_due_at is None

        with pytest.raises(InvalidTransition):
            lifecycle.pause(db_path, enrollment.id, "alice")
        with pytest.raises(InvalidTransition):
            lifecycle.resume(db_path, enrollment.id, "alice")
        with pytest.raises(InvalidTransition, match="Can only advance active enrollments"):
            lifecycle.advance(db_path, enrollment.id, "alice")
        with pytest.raises(AlreadyFinished, match="Enrollment is already finished"):
            lifecycle.unenroll(db_path, enrollment.id, "alice")

        assert get_enrollment(db_path, enrollment.id).status == "unenrolled"


def test_unenroll_paused_enrollment():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        enrollment = setup_enrollment(db_path)
        lifecycle.pause(db_path, enrollment.id, "alice")

        result = lifecycle.unenroll(db_path, enrollment.id, "alice")

        assert result.enrollment.status == "unenrolled"


def test_advance_records_outcome_and_moves_on():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        enrollment = setup_enrollment(db_path)

        result = lifecycle.advance(db_path, enrollment.id, "alice", outcome="replied", notes="Warm lead")

        assert result.completed is False
        assert result.enrollment.current_step == 1
        assert result.enrollment.status == "active"

        logs = get_step_logs(db_path, enrollment.id)
        assert logs[0].status == "completed"
        assert logs[0].outcome == "replied"
        assert logs[0].notes == "Warm lead"
        assert logs[0].draft_content is None
        assert logs[1].status == "pending"


def test_advance_last_step_completes():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        enrollment = setup_enrollment(db_path)
        lifecycle.advance(db_path, enrollment.id, "alice")

        result = lifecycle.advance(db_path, enrollment.id, "alice")

        assert result.completed is True
        assert result.to_dict()["completed"] is True
        assert result.enrollment.status == "completed"
        assert result.enrollment.current_step == 2
        assert result.enrollment.next_step_due_at is None

        with pytest.raises(InvalidTransition):
            lifecycle.advance(db_path, enrollment.id, "alice")
        with pytest.raises(AlreadyFinished):
            lifecycle.unenroll(db_path, enrollment.id, "alice")


def test_advance_without_remaining_steps():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        enrollment = setup_enrollment(db_path)

        conn = get_connection(db_path)
        conn.execute("UPDATE outreach_enrollments SET current_step = 5 WHERE id = ?", (enrollment.id,))
        conn.commit()
        conn.close()

        with pytest.raises(NoStepsRemaining, match="No more steps to execute"):
            lifecycle.advance(db_path, enrollment.id, "alice")


def test_transition_validates_action():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        enrollment = setup_enrollment(db_path)

        with pytest.raises(MissingField, match="Missing required field: action"):
            lifecycle.transition(db_path, enrollment.id, "alice", None)
        with pytest.raises(InvalidAction, match="Must be one of: pause, resume, unenroll, advance"):
            lifecycle.transition(db_path, enrollment.id, "alice", "archive")
        with pytest.raises(Unauthenticated):
            lifecycle.transition(db_path, enrollment.id, None, "pause")


def test_transition_dispatches():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        enrollment = setup_enrollment(db_path)

        assert lifecycle.transition(db_path, enrollment.id, "alice", "pause").enrollment.status == "paused"
        assert lifecycle.transition(db_path, enrollment.id, "alice", "resume").enrollment.status == "active"

        result = lifecycle.transition(db_path, enrollment.id, "alice", "advance", outcome="no_answer")
        assert result.enrollment.current_step == 1
        assert get_step_logs(db_path, enrollment.id)[0].outcome == "no_answer"


def test_unknown_enrollment():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        init_db(db_path)

        with pytest.raises(NotFound, match="Enrollment not found"):
            lifecycle.pause(db_path, "missing", "alice")


def test_lost_status_race_reports_fresh_state():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        enrollment = setup_enrollment(db_path)

        def concurrent_pause(db_path, enrollment_id, from_status, to_status, clear_due=False):
            # Another caller pauses first, so this write matches nothing
            update_enrollment_status(db_path, enrollment_id, "active", "paused")
            return False

        with patch("sequencer.outreach.lifecycle.update_enrollment_status", side_effect=concurrent_pause):
            with pytest.raises(InvalidTransition, match="Can only pause active enrollments"):
                lifecycle.pause(db_path, enrollment.id, "alice")


def test_failed_status_write_without_race():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        enrollment = setup_enrollment(db_path)

        with patch("sequencer.outreach.lifecycle.update_enrollment_status", return_value=False):
            with pytest.raises(InternalError):
                lifecycle.pause(db_path, enrollment.id, "alice")


def test_unenroll_retries_after_concurrent_pause():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        enrollment = setup_enrollment(db_path)
        calls = []

        def pause_then_write(db_path, enrollment_id, from_status, to_status, clear_due=False):
            calls.append(from_status)
            if len(calls) == 1:
                # Another caller pauses between our read and our write
                update_enrollment_status(db_path, enrollment_id, "active", "paused")
                return False
            return update_enrollment_status(db_path, enrollment_id, from_status, to_status, clear_due=clear_due)

        with patch("sequencer.outreach.lifecycle.update_enrollment_status", side_effect=pause_then_write):
            result = lifecycle.unenroll(db_path, enrollment.id, "alice")

        assert calls == ["active", "paused"]
        assert result.enrollment.status == "unenrolled"
        assert result.enrollment.next_step_due_at is None
        assert get_enrollment(db_path, enrollment.id).status == "unenrolled"
