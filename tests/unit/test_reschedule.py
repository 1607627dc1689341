"""
Unit Tests for Reschedule Coordination

Tests eligibility rules, buffer preservation across the refetch and
cleanup when the store fails.
"""

import pytest
import sys
import os
from datetime import date, timedelta
from unittest.mock import AsyncMock, MagicMock

# Add project root to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "class_registry", "src"))

from class_registry.edit_buffer import EditBuffer
from class_registry.errors import (
    ConflictError,
    PermissionDeniedError,
    RescheduleNotAllowedError,
    ValidationError,
)
from class_registry.models import Actor, ActorRole, AttendanceStatus, ClassSession, RescheduleStatus
from class_registry.registry_store import RegistryStore
from class_registry.reschedule import RescheduleCoordinator

TODAY = date(2026, 3, 2)
TOMORROW = TODAY + timedelta(days=1)
PROFESSOR = Actor(id="prof-1", role=ActorRole.PROFESSOR)


def make_session(session_id="s1", **overrides):
    defaults = dict(id=session_id, enrollment_id="enr-1", class_date=TODAY, minutes_viewed=45)
    defaults.update(overrides)
    return ClassSession(**defaults)


class TestRescheduleEligibility:
    """Test suite for RescheduleCoordinator.check_eligibility."""

    @pytest.fixture
    def coordinator(self):
        return RescheduleCoordinator(MagicMock(), EditBuffer(), "enr-1")

    def test_eligible_session(self, coordinator):
        coordinator.check_eligibility(make_session(), TOMORROW, TODAY)
        coordinator.check_eligibility(make_session(), TODAY, TODAY)

    def test_missing_date(self, coordinator):
        with pytest.raises(ValidationError):
            coordinator.check_eligibility(make_session(), None, TODAY)

    def test_past_date(self, coordinator):
        with pytest.raises(RescheduleNotAllowedError):
            coordinator.check_eligibility(make_session(), TODAY - timedelta(days=1), TODAY)

    @pytest.mark.parametrize("reschedule", [RescheduleStatus.IN_RESCHEDULE, RescheduleStatus.RESCHEDULE_VIEWED])
    def test_existing_reschedule(self, coordinator, reschedule):
        with pytest.raises(RescheduleNotAllowedError):
            coordinator.check_eligibility(make_session(reschedule=reschedule), TOMORROW, TODAY)

    def test_reschedule_of_reschedule(self, coordinator):
        with pytest.raises(RescheduleNotAllowedError):
            coordinator.check_eligibility(make_session(original_session_id="s0"), TOMORROW, TODAY)

    def test_long_saved_class(self, coordinator):
        saved = make_session(minutes_viewed=55, attendance_status=AttendanceStatus.PARTIALLY_VIEWED)

        with pytest.raises(RescheduleNotAllowedError):
            coordinator.check_eligibility(saved, TOMORROW, TODAY)

    def test_long_pending_class_allowed(self, coordinator):
        coordinator.check_eligibility(make_session(minutes_viewed=55), TOMORROW, TODAY)


class TestRescheduleCreation:
    """Test suite for RescheduleCoordinator.create_reschedule."""

    @pytest.fixture
    def store(self):
        store = RegistryStore()
        store.load_rows("class_registries", [{
            "id": "s1",
            "enrollment_id": "enr-1",
            "class_date": TODAY.isoformat(),
            "class_time": "10:00",
            "minutes_viewed": None,
            "reschedule": 0,
            "class_viewed": 0,
        }])
        return store

    @pytest.fixture
    def buffer(self):
        return EditBuffer()

    @pytest.fixture
    def coordinator(self, store, buffer):
        return RescheduleCoordinator(store, buffer, "enr-1")

    @pytest.fixture
    def original(self, store, buffer):
        session = make_session(minutes_viewed=None, class_time="10:00")
        buffer.seed(session.id, session)
        buffer.set(session.id, {"minutes_viewed": 45, "homework": "Typed before rescheduling"})
        return session

    @pytest.mark.asyncio
    async def test_creates_linked_session(self, coordinator, original):
        outcome = await coordinator.create_reschedule(original, TOMORROW, PROFESSOR, TODAY)

        assert outcome.new_session.original_session_id == "s1"
        assert outcome.new_session.class_date == TOMORROW
        assert outcome.new_session.class_time == "10:00"
        assert outcome.original_session.reschedule == RescheduleStatus.IN_RESCHEDULE
        assert len(outcome.sessions) == 2
        assert "Remember to save" in outcome.reminder

    @pytest.mark.asyncio
    async def test_unsaved_edits_survive(self, coordinator, buffer, original):
        await coordinator.create_reschedule(original, TOMORROW, PROFESSOR, TODAY)

        draft = buffer.get("s1")
        assert draft.homework == "Typed before rescheduling"
        assert draft.minutes_viewed == 45
        assert buffer.is_dirty("s1") is True
        assert coordinator.dialog.is_open is False
        assert coordinator.dialog.is_creating is False

    @pytest.mark.asyncio
    async def test_on_refresh_receives_sessions(self, store, buffer, original):
        refreshed = []
        coordinator = RescheduleCoordinator(store, buffer, "enr-1", on_refresh=refreshed.append)

        await coordinator.create_reschedule(original, TOMORROW, PROFESSOR, TODAY)

        assert len(refreshed) == 1 and len(refreshed[0]) == 2

    @pytest.mark.asyncio
    async def test_past_date_does_no_io(self, buffer):
        store = MagicMock()
        store.create_reschedule = AsyncMock()
        store.list_sessions = AsyncMock()
        coordinator = RescheduleCoordinator(store, buffer, "enr-1")

        with pytest.raises(RescheduleNotAllowedError):
            await coordinator.create_reschedule(make_session(), TODAY - timedelta(days=1), PROFESSOR, TODAY)

        store.create_reschedule.assert_not_called()
        store.list_sessions.assert_not_called()

    @pytest.mark.asyncio
    async def test_in_flight_creation_rejected(self, coordinator, original):
        coordinator.dialog.is_creating = True

        with pytest.raises(ConflictError):
            await coordinator.create_reschedule(original, TOMORROW, PROFESSOR, TODAY)

    @pytest.mark.asyncio
    async def test_store_failure_releases_preserved_entry(self, buffer, original):
        store = MagicMock()
        store.create_reschedule = AsyncMock(side_effect=PermissionDeniedError("denied"))
        store.list_sessions = AsyncMock()
        coordinator = RescheduleCoordinator(store, buffer, "enr-1")

        with pytest.raises(PermissionDeniedError) as exc_info:
            await coordinator.create_reschedule(original, TOMORROW, PROFESSOR, TODAY)

        assert "contact an administrator" in exc_info.value.user_message
        assert coordinator.dialog.error_message == exc_info.value.user_message
        assert coordinator.dialog.is_creating is False
        assert buffer.has_pending("s1") is False
        assert buffer.get("s1").homework == "Typed before rescheduling"
