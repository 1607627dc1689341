"""
Edit Buffer

Holds the unsaved working copy of each session's editable fields, separate
from the last fetched authoritative records. Entries are keyed by session id
and survive refetches until they are saved or explicitly discarded.
"""

import copy
import logging
from dataclasses import dataclass, field, fields as dataclass_fields
from datetime import date
from typing import Optional, List, Dict, Set, Any, Iterable

from class_registry.errors import ValidationError
from class_registry.models import ClassSession, Note

logger = logging.getLogger(__name__)


@dataclass
class RegistryDraft:
    """Working copy of the editable fields of one session."""
    minutes_viewed: Optional[int] = None
    class_type: List[str] = field(default_factory=list)  # tag ids
    content_type: List[str] = field(default_factory=list)  # tag ids
    vocabulary_content: str = ""
    student_mood: str = ""
    note: Optional[Note] = None
    homework: str = ""
    class_time: str = ""
    # Only editable on sessions spawned by a reschedule
    class_date: Optional[date] = None

    @classmethod
    def from_session(cls, session: ClassSession) -> "RegistryDraft":
        return cls(
            minutes_viewed=session.minutes_viewed,
            class_type=[tag.id for tag in session.class_type],
            content_type=[tag.id for tag in session.content_type],
            vocabulary_content=session.vocabulary_content or "",
            student_mood=session.student_mood or "",
            note=copy.deepcopy(session.note),
            homework=session.homework or "",
            class_time=session.class_time or "",
            class_date=session.class_date if session.is_reschedule else None,
        )


EDITABLE_FIELDS = tuple(f.name for f in dataclass_fields(RegistryDraft))


class EditBuffer:
    """
    Per-session store of in-progress edits.

    Besides the entries themselves, the buffer keeps a "preserved" side-table:
    entries set aside before an operation that triggers a refetch (a reschedule)
    and adopted verbatim by the next `reconcile`.
    """

    def __init__(self):
        self._entries: Dict[str, RegistryDraft] = {}
        self._dirty: Set[str] = set()
        self._preserved: Dict[str, RegistryDraft] = {}
        self._sessions: Dict[str, ClassSession] = {}

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, session_id: str) -> Optional[RegistryDraft]:
        return self._entries.get(session_id)

    def seed(self, session_id: str, from_session: ClassSession) -> RegistryDraft:
        """Initialize the entry from authoritative data if it does not exist yet."""
        self._sessions[session_id] = from_session
        if session_id not in self._entries:
            self._entries[session_id] = RegistryDraft.from_session(from_session)
        return self._entries[session_id]

    def set(self, session_id: str, partial_fields: Dict[str, Any]) -> RegistryDraft:
        """
        Merge edits into the entry of a session, creating it lazily.

        Args:
            session_id: Session being edited
            partial_fields: Subset of RegistryDraft fields

        Returns:
            The updated entry

        Raises:
            KeyError: If the session was never seen by the buffer
            ValidationError: For unknown fields or a date edit on a non-reschedule session
        """
        entry = self._entries.get(session_id)
        if entry is None:
            session = self._sessions.get(session_id)
            if session is None:
                raise KeyError(session_id)
            entry = self.seed(session_id, session)

        unknown = set(partial_fields) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")

        if "class_date" in partial_fields:
            session = self._sessions.get(session_id)
            if session is None or not session.is_reschedule:
                raise ValidationError(
                    "Only the date of a rescheduled class can be changed",
                    field="class_date",
                )

        for name, value in partial_fields.items():
            setattr(entry, name, copy.deepcopy(value))
        self._dirty.add(session_id)
        return entry

    def mark_persisted(self, session_id: str, session: ClassSession, field_names: Iterable[str]) -> None:
        """
        Record that some fields of an entry were written to the store.

        Those fields take the stored values; the entry stays dirty only if
        another field still differs from `session`.
        """
        self._sessions[session_id] = session
        entry = self._entries.get(session_id)
        if entry is None:
            return
        fresh = RegistryDraft.from_session(session)
        for name in field_names:
            setattr(entry, name, copy.deepcopy(getattr(fresh, name)))
        if entry == fresh:
            self._dirty.discard(session_id)

    def is_dirty(self, session_id: str) -> bool:
        return session_id in self._dirty

    def dirty_ids(self) -> List[str]:
        return [session_id for session_id in self._entries if session_id in self._dirty]

    def promote_to_pending(self, session_id: str) -> Optional[RegistryDraft]:
        """
        Set the current entry aside so the next reconcile restores it verbatim.

        Returns:
            The preserved copy, or None if the session has no entry
        """
        entry = self._entries.get(session_id)
        if entry is None:
            return None
        self._preserved[session_id] = copy.deepcopy(entry)
        logger.debug(f"[EditBuffer] Preserved edits of {session_id}")
        return self._preserved[session_id]

    def has_pending(self, session_id: str) -> bool:
        return session_id in self._preserved

    def release_pending(self, session_id: str) -> None:
        self._preserved.pop(session_id, None)

    def discard(self, session_id: str) -> None:
        self._entries.pop(session_id, None)
        self._dirty.discard(session_id)
        self._preserved.pop(session_id, None)

    def reconcile(self, fresh_sessions: Iterable[ClassSession]) -> None:
        """
        Align the buffer with a freshly fetched session list.

        For each session: a preserved entry is adopted verbatim (and stays
        unsaved); otherwise an entry with unsaved edits is kept; otherwise the
        entry is reseeded from the fresh record. The preserved side-table is
        empty afterwards.
        """
        for session in fresh_sessions:
            self._sessions[session.id] = session
            preserved = self._preserved.pop(session.id, None)
            if preserved is not None:
                self._entries[session.id] = preserved
                self._dirty.add(session.id)
            elif session.id not in self._dirty:
                self._entries[session.id] = RegistryDraft.from_session(session)

        if self._preserved:
            # Session missing from the fetched range: keep the edits as regular entries
            logger.warning(
                f"[EditBuffer] {len(self._preserved)} preserved entries had no matching session"
            )
            for session_id, preserved in self._preserved.items():
                self._entries[session_id] = preserved
                self._dirty.add(session_id)
            self._preserved.clear()
