"""
End-to-End Tests for the Class Registry API

Drives the FastAPI app with an in-memory registry store and overridden
authentication.
"""

import pytest
import sys
import os
from datetime import date, timedelta
from unittest.mock import AsyncMock

from fastapi.testclient import TestClient

# Add project root to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "class_registry", "src"))
sys.path.insert(0, os.path.join(project_root, "backend"))

import main
from class_registry.errors import PermissionDeniedError
from class_registry.registry_store import RegistryStore

TODAY = date.today()
PROFESSOR = {"id": "prof-1", "email": "prof@example.com", "role": "professor"}
ADMIN = {"id": "admin-1", "email": "admin@example.com", "role": "admin"}
STUDENT = {"id": "stud-1", "email": "student@example.com", "role": "student"}

BASE = "/api/class-registry/enr-1"


def make_store():
    store = RegistryStore()
    store.load_rows("class_registries", [
        {"id": "s1", "enrollment_id": "enr-1", "class_date": TODAY.isoformat(), "class_time": "10:00",
         "reschedule": 0, "class_viewed": 0},
        {"id": "s2", "enrollment_id": "enr-1", "class_date": (TODAY - timedelta(days=7)).isoformat(),
         "class_time": "10:00", "reschedule": 0, "class_viewed": 0},
    ])
    store.load_rows("class_types", [{"id": "t-normal", "name": "Normal", "status": 1}])
    store.load_rows("content_classes", [
        {"id": "c1", "name": "Grammar", "status": 1},
        {"id": "c2", "name": "Listening", "status": 1},
    ])
    return store


class TestClassRegistryAPI:
    """Test suite for the HTTP surface."""

    @pytest.fixture
    def store(self):
        return make_store()

    @pytest.fixture
    def as_user(self, store):
        """Return a function that builds a client authenticated as the given user."""
        main._workspaces.clear()
        main.app.dependency_overrides[main.get_registry_store] = lambda: store

        def build(user):
            main.app.dependency_overrides[main.get_current_user] = lambda: user
            return TestClient(main.app)

        yield build
        main.app.dependency_overrides.clear()
        main._workspaces.clear()

    def test_health_check(self):
        response = TestClient(main.app).get("/")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_students_are_refused(self, as_user):
        response = as_user(STUDENT).get(BASE)

        assert response.status_code == 403

    def test_registry_listing(self, as_user):
        response = as_user(PROFESSOR).get(BASE)

        assert response.status_code == 200
        body = response.json()
        assert [s["id"] for s in body["sessions"]] == ["s2", "s1"]
        assert body["sessions"][0]["locked"] is False
        assert body["sessions"][0]["reschedule_label"] == "Normal"
        assert len(body["objectives"]) == 4
        assert [c["id"] for c in body["content_categories"]] == ["c1", "c2"]

    def test_partial_class_save_is_blocked(self, as_user):
        client = as_user(PROFESSOR)
        client.patch(f"{BASE}/drafts/s1", json={"minutes_viewed": 45, "class_type": ["t-normal"]})

        response = client.post(f"{BASE}/sessions/s1/save", json={"confirmed": True})

        assert response.status_code == 409
        assert response.json()["error"] == "RescheduleRequiredError"
        assert response.json()["field"] == "minutes_viewed"

    def test_reschedule_keeps_draft(self, as_user):
        client = as_user(PROFESSOR)
        client.patch(f"{BASE}/drafts/s1", json={"minutes_viewed": 45, "homework": "Page 12"})

        response = client.post(
            f"{BASE}/sessions/s1/reschedule",
            json={"class_date": (TODAY + timedelta(days=1)).isoformat()},
        )

        assert response.status_code == 200
        body = response.json()
        assert "Remember to save" in body["message"]
        assert body["original_session"]["reschedule"] == 1
        assert body["original_session"]["reschedule_label"] == "In reschedule"
        assert body["original_session"]["draft"]["homework"] == "Page 12"
        assert body["original_session"]["dirty"] is True
        assert body["new_session"]["original_session_id"] == "s1"

    def test_past_reschedule_rejected(self, as_user):
        response = as_user(PROFESSOR).post(
            f"{BASE}/sessions/s1/reschedule",
            json={"class_date": (TODAY - timedelta(days=1)).isoformat()},
        )

        assert response.status_code == 409
        assert response.json()["error"] == "RescheduleNotAllowedError"

    def test_professor_save_requires_confirmation(self, as_user):
        client = as_user(PROFESSOR)
        client.patch(f"{BASE}/drafts/s2", json={"minutes_viewed": 60, "class_type": ["t-normal"]})

        first = client.post(f"{BASE}/sessions/s2/save", json={})
        assert first.json()["requires_confirmation"] is True
        assert first.json()["ok"] is False

        second = client.post(f"{BASE}/sessions/s2/save", json={"confirmed": True})
        assert second.json()["ok"] is True

        locked = client.patch(f"{BASE}/drafts/s2", json={"homework": "Too late"})
        assert locked.status_code == 409
        assert locked.json()["error"] == "SessionLockedError"

    def test_save_all(self, as_user):
        client = as_user(ADMIN)
        client.patch(f"{BASE}/drafts/s1", json={"minutes_viewed": 0})
        client.patch(f"{BASE}/drafts/s2", json={"minutes_viewed": 60})

        response = client.post(f"{BASE}/save", json={})

        assert response.status_code == 200
        assert sorted(response.json()["saved"]) == ["s1", "s2"]

    def test_permission_error_message(self, as_user, store):
        client = as_user(PROFESSOR)
        client.patch(f"{BASE}/drafts/s2", json={"minutes_viewed": 60})
        store.save_session = AsyncMock(side_effect=PermissionDeniedError("denied"))

        response = client.post(f"{BASE}/sessions/s2/save", json={"confirmed": True})

        assert response.status_code == 403
        assert "contact an administrator" in response.json()["detail"]

    def test_negative_minutes(self, as_user):
        response = as_user(PROFESSOR).patch(f"{BASE}/drafts/s1", json={"minutes_viewed": -1})

        assert response.status_code == 400
        assert response.json()["error"] == "ValidationError"

    def test_note_visibility(self, as_user):
        response = as_user(PROFESSOR).put(
            f"{BASE}/sessions/s1/note",
            json={"content": "Shy but improving", "student_visible": True},
        )

        assert response.status_code == 200
        assert response.json()["note"]["visible"] == {"admin": True, "student": True, "professor": True}

    def test_objective_validation(self, as_user):
        response = as_user(PROFESSOR).put(
            f"{BASE}/objectives/temp-1",
            json={"category": "c1", "objective": "", "objective_date": TODAY.isoformat()},
        )

        assert response.status_code == 400
        assert response.json()["field"] == "objective"

    def test_objective_create(self, as_user):
        client = as_user(PROFESSOR)

        response = client.put(
            f"{BASE}/objectives/temp-1",
            json={"category": "c1", "objective": "Past simple", "objective_date": TODAY.isoformat()},
        )

        assert response.status_code == 200
        assert not response.json()["objective"]["id"].startswith("temp-")
        history = client.get(f"{BASE}/objectives/history").json()["objectives"]
        assert [o["objective"] for o in history] == ["Past simple"]

    def test_single_evaluation_per_session(self, as_user):
        client = as_user(ADMIN)

        first = client.post(f"{BASE}/sessions/s2/evaluation", json={"score": "8/10"})
        second = client.post(f"{BASE}/sessions/s2/evaluation", json={"score": "9/10"})

        assert first.status_code == 200
        assert first.json()["evaluation"]["evaluation_date"] == (TODAY - timedelta(days=7)).strftime("%d/%m/%Y")
        assert second.status_code == 409
        evaluations = client.get(f"{BASE}/evaluations").json()["evaluations"]
        assert len(evaluations) == 1

    def test_history(self, as_user):
        client = as_user(ADMIN)
        client.post(f"{BASE}/sessions/s2/reschedule", json={"class_date": TODAY.isoformat()})

        sessions = client.get(f"{BASE}/history").json()["sessions"]

        assert [s["id"] for s in sessions][:2] == ["s1", "s2"]
        assert sessions[2]["original_session_id"] == "s2"

    def test_first_listing_loads_sessions_once(self, as_user, store):
        store.list_sessions = AsyncMock(wraps=store.list_sessions)
        client = as_user(PROFESSOR)

        client.get(BASE)
        assert store.list_sessions.await_count == 1

        client.get(BASE)
        assert store.list_sessions.await_count == 2

    def test_drafts_survive_between_requests(self, as_user, store):
        store.list_sessions = AsyncMock(wraps=store.list_sessions)
        client = as_user(PROFESSOR)
        client.patch(f"{BASE}/drafts/s1", json={"homework": "Page 12"})

        client.patch(f"{BASE}/drafts/s1", json={"student_mood": "Happy"})

        assert store.list_sessions.await_count == 1
        session = next(s for s in client.get(BASE).json()["sessions"] if s["id"] == "s1")
        assert session["draft"]["homework"] == "Page 12"
        assert session["draft"]["student_mood"] == "Happy"

    def test_least_recently_used_workspace_is_evicted(self, as_user, monkeypatch):
        monkeypatch.setattr(main, "MAX_WORKSPACES", 2)
        client = as_user(PROFESSOR)

        client.get(BASE)
        client.get("/api/class-registry/enr-2")
        client.get(BASE)
        client.get("/api/class-registry/enr-3")

        assert list(main._workspaces) == [("prof-1", "enr-1"), ("prof-1", "enr-3")]

    def test_evicted_workspace_starts_clean(self, as_user, monkeypatch):
        monkeypatch.setattr(main, "MAX_WORKSPACES", 1)
        client = as_user(PROFESSOR)
        client.patch(f"{BASE}/drafts/s1", json={"homework": "Page 12"})

        client.get("/api/class-registry/enr-2")
        session = next(s for s in client.get(BASE).json()["sessions"] if s["id"] == "s1")

        assert len(main._workspaces) == 1
        assert session["dirty"] is False
        assert session["draft"]["homework"] == ""

    def test_concurrent_reschedules_create_one_session(self, as_user):
        new_date = (TODAY + timedelta(days=1)).isoformat()
        as_user(PROFESSOR).get(BASE)
        as_user(ADMIN).get(BASE)

        first = as_user(PROFESSOR).post(f"{BASE}/sessions/s1/reschedule", json={"class_date": new_date})
        # The admin's workspace still shows s1 without a reschedule
        second = as_user(ADMIN).post(f"{BASE}/sessions/s1/reschedule", json={"class_date": new_date})

        assert first.status_code == 200
        assert second.status_code == 409
        assert second.json()["error"] == "ConflictError"
        sessions = as_user(ADMIN).get(f"{BASE}/history").json()["sessions"]
        assert len([s for s in sessions if s["original_session_id"] == "s1"]) == 1
