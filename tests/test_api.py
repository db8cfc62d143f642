import tempfile
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

from fastapi.testclient import TestClient

from sequencer.api import create_app
from sequencer.core.config import Settings
from sequencer.core.db import init_db, insert_sequence
from sequencer.outreach.composer import Draft
from sequencer.outreach.enrollment import enroll_contact
from sequencer.outreach.executor import Collaborators
from sequencer.outreach.models import Step
from sequencer.services.snapshot_cache import SnapshotCache

NOW = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)

AUTH = {"X-User-Name": "alice"}


def make_client(db_path):
    init_db(db_path)
    composer = MagicMock()
    composer.generate = AsyncMock(return_value=Draft(channel="email", message="Hello", subject="Hi"))
    collaborators = Collaborators(cache=SnapshotCache(db_path), composer=composer)
    return TestClient(create_app(db_path, Settings(), collaborators))


def setup_enrollment(db_path):
    init_db(db_path)
    sequence_id = insert_sequence(db_path, "Intro", [Step(channel="email"), Step(channel="call", delay_days=2)])
    return sequence_id, enroll_contact(db_path, "alice", sequence_id, "c1", "example.com", now=NOW)


def test_requires_actor():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        client = make_client(db_path)
        _, enrollment = setup_enrollment(db_path)

        response = client.get(f"/api/outreach/enrollments/{enrollment.id}")

        assert response.status_code == 401
        assert response.json() == {"error": "Not authenticated"}


def test_actor_from_cookie():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        client = make_client(db_path)
        _, enrollment = setup_enrollment(db_path)
        client.cookies.set("user_name", "alice")

        response = client.get(f"/api/outreach/enrollments/{enrollment.id}")

        assert response.status_code == 200


def test_get_enrollment():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        client = make_client(db_path)
        _, enrollment = setup_enrollment(db_path)

        response = client.get(f"/api/outreach/enrollments/{enrollment.id}", headers=AUTH)
        data = response.json()

        assert response.status_code == 200
        assert data["enrollment"]["id"] == enrollment.id
        assert data["enrollment"]["status"] == "active"
        assert [s["status"] for s in data["stepLogs"]] == ["pending"]

        missing = client.get("/api/outreach/enrollments/missing", headers=AUTH)
        assert missing.status_code == 404
        assert missing.json() == {"error": "Enrollment not found"}


def test_transition_actions():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        client = make_client(db_path)
        _, enrollment = setup_enrollment(db_path)
        url = f"/api/outreach/enrollments/{enrollment.id}"

        response = client.put(url, json={"action": "pause"}, headers=AUTH)
        assert response.status_code == 200
        assert response.json()["enrollment"]["status"] == "paused"

        response = client.put(url, json={"action": "pause"}, headers=AUTH)
        assert response.status_code == 400
        assert response.json() == {"error": "Can only pause active enrollments"}

        response = client.put(url, json={"action": "resume"}, headers=AUTH)
        assert response.json()["enrollment"]["status"] == "active"

        response = client.put(url, json={"action": "advance", "outcome": "skipped"}, headers=AUTH)
        assert response.status_code == 200
        assert response.json()["completed"] is False
        assert response.json()["enrollment"]["currentStep"] == 1


def test_transition_validation():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        client = make_client(db_path)
        _, enrollment = setup_enrollment(db_path)
        url = f"/api/outreach/enrollments/{enrollment.id}"

        response = client.put(url, json={}, headers=AUTH)
        assert response.status_code == 400
        assert response.json() == {"error": "Missing required field: action"}

        response = client.put(url, json={"action": "archive"}, headers=AUTH)
        assert response.status_code == 400
        assert "Invalid action" in response.json()["error"]

        response = client.put(url, content="not json", headers=AUTH)
        assert response.status_code == 400


def test_execute_step():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        client = make_client(db_path)
        _, enrollment = setup_enrollment(db_path)

        response = client.post(f"/api/outreach/enrollments/{enrollment.id}/execute", headers=AUTH)
        data = response.json()

        assert response.status_code == 200
        assert data["executionResult"] == {"type": "email_draft", "subject": "Hi", "message": "Hello"}
        assert data["completed"] is False
        assert data["enrollment"]["currentStep"] == 1
        assert [s["status"] for s in data["stepLogs"]] == ["completed", "pending"]

        response = client.post(
            f"/api/outreach/enrollments/{enrollment.id}/execute",
            json={"outcome": "connected", "notes": "Good call"},
            headers=AUTH,
        )
        data = response.json()
        assert data["completed"] is True
        assert data["enrollment"]["status"] == "completed"
        assert data["stepLogs"][1]["outcome"] == "connected"

        response = client.post(f"/api/outreach/enrollments/{enrollment.id}/execute", headers=AUTH)
        assert response.status_code == 400
        assert response.json() == {"error": "Can only execute steps on active enrollments"}


def test_due_steps():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        client = make_client(db_path)
        _, enrollment = setup_enrollment(db_path)

        response = client.get("/api/outreach/due-steps", headers=AUTH)
        items = response.json()["items"]

        assert response.status_code == 200
        assert [i["enrollment"]["id"] for i in items] == [enrollment.id]
        assert items[0]["contactName"] == "c1"
        assert items[0]["companyName"] == "example.com"


def test_create_and_list_enrollments():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        client = make_client(db_path)
        sequence_id, existing = setup_enrollment(db_path)

        body = {"sequenceId": sequence_id, "contactId": "c2", "companyDomain": "other.com"}
        response = client.post("/api/outreach/enrollments", json=body, headers=AUTH)
        assert response.status_code == 201
        assert response.json()["contactId"] == "c2"

        duplicate = {"sequenceId": sequence_id, "contactId": "c1", "companyDomain": "example.com"}
        response = client.post("/api/outreach/enrollments", json=duplicate, headers=AUTH)
        assert response.status_code == 409
        assert response.json()["enrollmentId"] == existing.id

        response = client.post("/api/outreach/enrollments", json={"sequenceId": sequence_id}, headers=AUTH)
        assert response.status_code == 400
        assert response.json() == {"error": "Missing required field: contactId"}

        response = client.get("/api/outreach/enrollments", params={"contactId": "c2"}, headers=AUTH)
        assert [e["contactId"] for e in response.json()["enrollments"]] == ["c2"]


def test_list_enrollments_status_filter():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        client = make_client(db_path)
        _, enrollment = setup_enrollment(db_path)

        response = client.get("/api/outreach/enrollments", params={"status": "active"}, headers=AUTH)
        assert [e["id"] for e in response.json()["enrollments"]] == [enrollment.id]

        response = client.get("/api/outreach/enrollments", params={"status": "paused"}, headers=AUTH)
        assert response.json() == {"enrollments": []}

        response = client.get("/api/outreach/enrollments", params={"status": "bogus"}, headers=AUTH)
        assert response.status_code == 400
        assert response.json() == {
            "error": "Invalid status. Must be one of: active, paused, unenrolled, completed"
        }


def test_bulk_enroll():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        client = make_client(db_path)
        sequence_id, _ = setup_enrollment(db_path)

        body = {
            "sequenceId": sequence_id,
            "contacts": [
                {"contactId": "c1", "companyDomain": "example.com"},
                {"contactId": "c2", "companyDomain": "other.com"},
            ],
        }
        response = client.post("/api/outreach/enrollments/bulk", json=body, headers=AUTH)

        assert response.status_code == 200
        assert response.json() == {"enrolled": 1, "skipped": 1, "errors": []}
