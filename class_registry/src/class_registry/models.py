"""
Class Registry Data Model

Defines the dataclasses for class sessions ("class registries"), objectives,
evaluations and the acting user, plus the row conversion helpers used by the
registry store.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum, IntEnum
from typing import Optional, List, Dict, Any


class AttendanceStatus(IntEnum):
    """Attendance outcome of a session (stored as `class_viewed`)."""
    PENDING = 0
    VIEWED = 1
    PARTIALLY_VIEWED = 2
    NO_SHOW = 3
    LOST = 4  # Only assigned by the external batch job


class RescheduleStatus(IntEnum):
    """Reschedule state of an original session."""
    NOT_MADE = 0
    IN_RESCHEDULE = 1
    RESCHEDULE_VIEWED = 2


RESCHEDULE_LABELS = {
    RescheduleStatus.NOT_MADE: "Normal",
    RescheduleStatus.IN_RESCHEDULE: "In reschedule",
    RescheduleStatus.RESCHEDULE_VIEWED: "Reschedule viewed",
}


def reschedule_label(value: Optional[int]) -> str:
    """Human label for a reschedule value; unknown values read as "Normal"."""
    try:
        return RESCHEDULE_LABELS[RescheduleStatus(value)]
    except (ValueError, TypeError):
        return RESCHEDULE_LABELS[RescheduleStatus.NOT_MADE]


class ActorRole(str, Enum):
    """Roles allowed to work on class registries."""
    ADMIN = "admin"
    PROFESSOR = "professor"


@dataclass
class Actor:
    """The user performing an action."""
    id: str
    role: ActorRole

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN


@dataclass
class TagRef:
    """A catalog entry (class type, content type, objective category)."""
    id: str
    name: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "name": self.name}


@dataclass
class NoteVisibility:
    """Per-audience visibility flags of a note."""
    admin: bool = True
    student: bool = False
    professor: bool = True


@dataclass
class Note:
    """Session note with its visibility flags."""
    content: Optional[str] = None
    visible: NoteVisibility = field(default_factory=NoteVisibility)

    def to_dict(self) -> Dict[str, Any]:
        # Stored as 0/1 flags, like the rest of the registry columns
        return {
            "content": self.content,
            "visible": {
                "admin": int(self.visible.admin),
                "student": int(self.visible.student),
                "professor": int(self.visible.professor),
            },
        }


@dataclass
class ClassSession:
    """One scheduled (or held) tutoring class of an enrollment."""
    id: str
    enrollment_id: str
    class_date: date
    class_time: Optional[str] = None
    minutes_viewed: Optional[int] = None
    class_type: List[TagRef] = field(default_factory=list)
    content_type: List[TagRef] = field(default_factory=list)
    vocabulary_content: Optional[str] = None
    student_mood: Optional[str] = None
    note: Optional[Note] = None
    homework: Optional[str] = None
    reschedule: int = RescheduleStatus.NOT_MADE
    attendance_status: int = AttendanceStatus.PENDING
    # Set when this session is itself a reschedule of another one
    original_session_id: Optional[str] = None
    original_class_date: Optional[date] = None
    evaluation_ids: List[str] = field(default_factory=list)

    @property
    def is_reschedule(self) -> bool:
        return self.original_session_id is not None

    @property
    def is_pending(self) -> bool:
        return self.attendance_status == AttendanceStatus.PENDING


@dataclass
class ClassObjective:
    """A learning objective slot of an enrollment."""
    id: str
    enrollment_id: str
    category: TagRef
    objective: str = ""
    objective_date: Optional[date] = None
    teachers_note: Optional[str] = None
    objective_achieved: bool = False
    is_active: bool = True
    # True for placeholders synthesized to fill the quota
    synthetic: bool = False


@dataclass
class Evaluation:
    """The (single) evaluation attached to a session."""
    id: str
    session_id: str
    evaluation_date: str  # DD/MM/YYYY, always the session's date
    topics_evaluated: Optional[str] = None
    skill_evaluated: Optional[str] = None
    material_link: Optional[str] = None
    capture: Optional[str] = None  # data URL, opaque to this package
    score: Optional[str] = None
    comment: Optional[str] = None
    is_active: bool = True
    class_date: Optional[date] = None


# ==================== Conversion helpers ====================

def parse_date(value: Any) -> Optional[date]:
    """Parse a `date`, `datetime`, ISO date or ISO timestamp into a `date`."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if len(text) == 10:
        return date.fromisoformat(text)
    return datetime.fromisoformat(text.replace("Z", "+00:00")).date()


def format_ddmmyyyy(value: date) -> str:
    return value.strftime("%d/%m/%Y")


def _tags_from_rows(rows: Optional[List[Dict[str, Any]]]) -> List[TagRef]:
    return [TagRef(id=str(row["id"]), name=row.get("name") or "") for row in rows or []]


def _flag(value: Any, default: bool) -> bool:
    if value is None:
        return default
    return bool(int(value)) if isinstance(value, (int, str)) else bool(value)


def note_from_dict(data: Optional[Dict[str, Any]]) -> Optional[Note]:
    if not data:
        return None
    visible = data.get("visible") or {}
    return Note(
        content=data.get("content"),
        visible=NoteVisibility(
            admin=_flag(visible.get("admin"), True),
            student=_flag(visible.get("student"), False),
            professor=_flag(visible.get("professor"), True),
        ),
    )


def session_from_row(row: Dict[str, Any]) -> ClassSession:
    """Convert a `class_registries` row into a ClassSession."""
    original = row.get("original_class")
    evaluations = row.get("evaluations") or []
    return ClassSession(
        id=str(row["id"]),
        enrollment_id=str(row["enrollment_id"]),
        class_date=parse_date(row["class_date"]),
        class_time=row.get("class_time"),
        minutes_viewed=row.get("minutes_viewed"),
        class_type=_tags_from_rows(row.get("class_type")),
        content_type=_tags_from_rows(row.get("content_type")),
        vocabulary_content=row.get("vocabulary_content"),
        student_mood=row.get("student_mood"),
        note=note_from_dict(row.get("note")),
        homework=row.get("homework"),
        reschedule=row.get("reschedule") or RescheduleStatus.NOT_MADE,
        attendance_status=row.get("class_viewed") or AttendanceStatus.PENDING,
        original_session_id=row.get("original_class_id"),
        original_class_date=parse_date(original.get("class_date")) if original else None,
        evaluation_ids=[str(e["id"]) for e in evaluations if e.get("is_active", True)],
    )


def objective_from_row(row: Dict[str, Any]) -> ClassObjective:
    category = row.get("category") or {}
    return ClassObjective(
        id=str(row["id"]),
        enrollment_id=str(row["enrollment_id"]),
        category=TagRef(id=str(category.get("id", "")), name=category.get("name") or ""),
        objective=row.get("objective") or "",
        objective_date=parse_date(row.get("objective_date")),
        teachers_note=row.get("teachers_note"),
        objective_achieved=bool(row.get("objective_achieved", False)),
        is_active=bool(row.get("is_active", True)),
    )


def evaluation_from_row(row: Dict[str, Any]) -> Evaluation:
    registry = row.get("class_registry") or {}
    return Evaluation(
        id=str(row["id"]),
        session_id=str(row["class_registry_id"]),
        evaluation_date=row.get("evaluation_date") or "",
        topics_evaluated=row.get("topics_evaluated"),
        skill_evaluated=row.get("skill_evaluated"),
        material_link=row.get("material_link"),
        capture=row.get("capture"),
        score=row.get("score"),
        comment=row.get("comment"),
        is_active=bool(row.get("is_active", True)),
        class_date=parse_date(registry.get("class_date")),
    )
