"""Note visibility rules for session notes."""

from typing import Optional, Dict, Any

from class_registry.models import Note, NoteVisibility


class NotePermissionModel:
    """
    Admin and professor always see a note; only student visibility is
    controlled by the caller.
    """

    def build_note(self, content: Optional[str], student_visible: bool) -> Note:
        return Note(
            content=(content or "").strip() or None,
            visible=NoteVisibility(admin=True, professor=True, student=bool(student_visible)),
        )

    def from_payload(self, payload: Optional[Dict[str, Any]]) -> Optional[Note]:
        """Build a note from client input, ignoring any admin/professor flags sent."""
        if payload is None:
            return None
        visible = payload.get("visible") or {}
        student_visible = payload.get("student_visible", visible.get("student", False))
        return self.build_note(payload.get("content"), bool(student_visible))
