"""Outreach records: sequences, enrollments and step logs."""

import json
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Optional

ACTIVE = "active"
PAUSED = "paused"
UNENROLLED = "unenrolled"
COMPLETED = "completed"

ENROLLMENT_STATUSES = (ACTIVE, PAUSED, UNENROLLED, COMPLETED)
FINISHED_STATUSES = (COMPLETED, UNENROLLED)

PENDING = "pending"

CHANNELS = ("email", "call", "linkedin_connect", "linkedin_inmail", "whatsapp")


@dataclass
class Step:
    """One planned touch-point of a sequence."""
    channel: str
    tone: Optional[str] = None
    template: Optional[str] = None
    delay_days: int = 0
    notes: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "Step":
        # Stored JSON uses camelCase (delayDays), YAML uses snake_case
        delay = data.get("delayDays", data.get("delay_days", 0))
        return cls(
            channel=data.get("channel", ""),
            tone=data.get("tone"),
            template=data.get("template"),
            delay_days=int(delay or 0),
            notes=data.get("notes"),
        )

    def to_dict(self) -> dict:
        return {
            "channel": self.channel,
            "tone": self.tone,
            "template": self.template,
            "delayDays": self.delay_days,
            "notes": self.notes,
        }


@dataclass
class Sequence:
    """An ordered, reusable outreach plan."""
    id: str
    name: str
    description: str = ""
    steps: list[Step] = field(default_factory=list)
    created_by: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Sequence":
        raw_steps = json.loads(row["steps_json"]) if row["steps_json"] else []
        return cls(
            id=row["id"],
            name=row["name"],
            description=row["description"] or "",
            steps=[Step.from_dict(s) for s in raw_steps],
            created_by=row["created_by"],
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "steps": [s.to_dict() for s in self.steps],
            "createdBy": self.created_by,
            "createdAt": self.created_at,
        }


@dataclass
class Enrollment:
    """A contact's run through one sequence."""
    id: str
    sequence_id: str
    contact_id: str
    company_domain: str
    enrolled_by: str
    current_step: int = 0
    status: str = ACTIVE
    next_step_due_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Enrollment":
        return cls(
            id=row["id"],
            sequence_id=row["sequence_id"],
            contact_id=row["contact_id"],
            company_domain=row["company_domain"],
            enrolled_by=row["enrolled_by"],
            current_step=row["current_step"] or 0,
            status=row["status"] or ACTIVE,
            next_step_due_at=row["next_step_due_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @property
    def is_finished(self) -> bool:
        return self.status in FINISHED_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sequenceId": self.sequence_id,
            "contactId": self.contact_id,
            "companyDomain": self.company_domain,
            "enrolledBy": self.enrolled_by,
            "currentStep": self.current_step,
            "status": self.status,
            "nextStepDueAt": self.next_step_due_at,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class StepLog:
    """Execution record for one step within one enrollment."""
    id: str
    enrollment_id: str
    step_index: int
    channel: str
    status: str = PENDING
    completed_at: Optional[str] = None
    outcome: Optional[str] = None
    notes: Optional[str] = None
    draft_content: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "StepLog":
        return cls(
            id=row["id"],
            enrollment_id=row["enrollment_id"],
            step_index=row["step_index"],
            channel=row["channel"],
            status=row["status"],
            completed_at=row["completed_at"],
            outcome=row["outcome"],
            notes=row["notes"],
            draft_content=row["draft_content"],
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "enrollmentId": self.enrollment_id,
            "stepIndex": self.step_index,
            "channel": self.channel,
            "status": self.status,
            "completedAt": self.completed_at,
            "outcome": self.outcome,
            "notes": self.notes,
            "draftContent": self.draft_content,
        }


@dataclass
class TransitionResult:
    """Outcome of a manual lifecycle transition."""
    enrollment: Enrollment
    completed: Optional[bool] = None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"enrollment": self.enrollment.to_dict()}
        if self.completed is not None:
            data["completed"] = self.completed
        return data


@dataclass
class ExecutionResult:
    """Outcome of executing the current step of an enrollment."""
    enrollment: Enrollment
    step_logs: list[StepLog]
    execution_result: dict
    completed: bool
    # False when a concurrent or earlier call had already completed the step
    applied: bool = True

    def to_dict(self) -> dict:
        return {
            "enrollment": self.enrollment.to_dict(),
            "stepLogs": [log.to_dict() for log in self.step_logs],
            "executionResult": self.execution_result,
            "completed": self.completed,
        }
