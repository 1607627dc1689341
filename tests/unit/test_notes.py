"""
Unit Tests for Note Visibility
"""

import pytest
import sys
import os

# Add project root to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "class_registry", "src"))

from class_registry.notes import NotePermissionModel


class TestNotePermissionModel:
    """Test suite for NotePermissionModel."""

    @pytest.fixture
    def notes(self):
        return NotePermissionModel()

    @pytest.mark.parametrize("student_visible", [True, False, 0, 1, None])
    def test_staff_always_see_notes(self, notes, student_visible):
        note = notes.build_note("Great progress", student_visible)

        assert note.visible.admin is True
        assert note.visible.professor is True
        assert note.visible.student is bool(student_visible)

    def test_content_is_trimmed(self, notes):
        assert notes.build_note("  hi  ", False).content == "hi"
        assert notes.build_note("   ", False).content is None

    def test_payload_flags_for_staff_ignored(self, notes):
        note = notes.from_payload({
            "content": "Private",
            "visible": {"admin": 0, "professor": 0, "student": 1},
        })

        assert note.visible.admin is True
        assert note.visible.professor is True
        assert note.visible.student is True

    def test_missing_payload(self, notes):
        assert notes.from_payload(None) is None

    def test_serialized_flags(self, notes):
        assert notes.build_note("x", True).to_dict() == {
            "content": "x",
            "visible": {"admin": 1, "student": 1, "professor": 1},
        }
