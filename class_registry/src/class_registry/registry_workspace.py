"""
Registry Workspace

Per-enrollment workflow of the class registry page: loading sessions,
objectives and evaluations, editing sessions through the edit buffer,
saving one or all sessions, notes, reschedules and the class history view.
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from typing import Optional, List, Dict, Set, Any, Sequence

from class_registry.attendance import AttendanceClassifier, EditLockPolicy
from class_registry.edit_buffer import EditBuffer, RegistryDraft
from class_registry.errors import (
    ClassRegistryError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    TransientError,
    ValidationError,
    permission_message,
    transient_message,
    with_role_message,
)
from class_registry.evaluation_guard import EvaluationGuard
from class_registry.models import (
    Actor,
    AttendanceStatus,
    ClassObjective,
    ClassSession,
    Evaluation,
    TagRef,
)
from class_registry.notes import NotePermissionModel
from class_registry.objective_quota import ObjectiveQuotaManager
from class_registry.reschedule import RescheduleCoordinator, RescheduleOutcome

logger = logging.getLogger(__name__)

CONFIRMATION_MESSAGE = (
    "Once saved, these classes can no longer be edited by a professor. "
    "Do you want to continue?"
)


@dataclass
class SavePlan:
    """Composed record for one session, ready to be written."""
    session_id: str
    payload: Dict[str, Any]
    status: AttendanceStatus
    requires_confirmation: bool


@dataclass
class SaveResult:
    """Outcome of a save or save-all."""
    saved: List[str] = field(default_factory=list)
    requires_confirmation: bool = False
    pending_confirmation: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return not self.errors and not self.requires_confirmation


def _parse_minutes(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError("Minutes viewed must be a whole number", field="minutes_viewed")
    try:
        minutes = int(str(value).strip())
    except ValueError:
        raise ValidationError("Minutes viewed must be a whole number", field="minutes_viewed")
    if minutes < 0:
        raise ValidationError("Minutes viewed cannot be negative", field="minutes_viewed")
    return minutes


class RegistryWorkspace:
    """
    Class registry workflow for one enrollment and one actor.

    The edit buffer is the only mutable shared structure; every other list is
    replaced wholesale from the store after each write.
    """

    def __init__(
        self,
        store,
        enrollment_id: str,
        actor: Actor,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ):
        """
        Initialize RegistryWorkspace.

        Args:
            store: RegistryStore instance
            enrollment_id: Enrollment being worked on
            actor: Resolved acting user
            date_from: Optional lower bound of the listed period
            date_to: Optional upper bound of the listed period
        """
        self.store = store
        self.enrollment_id = enrollment_id
        self.actor = actor
        self.date_from = date_from
        self.date_to = date_to

        self.buffer = EditBuffer()
        self.classifier = AttendanceClassifier()
        self.lock_policy = EditLockPolicy()
        self.notes = NotePermissionModel()
        self.quota = ObjectiveQuotaManager()
        self.evaluations = EvaluationGuard(store, enrollment_id)
        self.reschedules = RescheduleCoordinator(
            store, self.buffer, enrollment_id, on_refresh=self._on_sessions_refreshed
        )

        self.sessions: List[ClassSession] = []
        self.objectives: List[ClassObjective] = []
        self.class_types: List[TagRef] = []
        self.content_categories: List[TagRef] = []
        self._saving: Set[str] = set()

    # ==================== Loading ====================

    async def load(self) -> None:
        """Fetch catalogs, sessions, objectives and evaluations."""
        self.class_types, self.content_categories = await asyncio.gather(
            self.store.list_class_types(),
            self.store.list_content_categories(),
        )
        await self.fetch_sessions()
        await self.fetch_objectives()
        await self.evaluations.refresh()

    async def fetch_sessions(self) -> List[ClassSession]:
        sessions = await self.store.list_sessions(self.enrollment_id, self.date_from, self.date_to)
        self.buffer.reconcile(sessions)
        self._on_sessions_refreshed(sessions)
        return sessions

    def _on_sessions_refreshed(self, sessions: List[ClassSession]) -> None:
        self.sessions = sessions
        self.evaluations.sync_from_sessions(sessions)

    def get_session(self, session_id: str) -> ClassSession:
        for session in self.sessions:
            if session.id == session_id:
                return session
        raise NotFoundError(f"Class {session_id} is not part of this enrollment.")

    # ==================== Editing ====================

    def draft(self, session_id: str) -> RegistryDraft:
        return self.buffer.get(session_id) or self.buffer.seed(session_id, self.get_session(session_id))

    def is_locked(self, session_id: str) -> bool:
        return self.lock_policy.is_locked(self.actor.role, self.get_session(session_id).attendance_status)

    def edit(self, session_id: str, **fields: Any) -> RegistryDraft:
        """
        Merge field edits into the buffer entry of a session.

        Raises:
            SessionLockedError: If the actor may no longer edit the session
            ConflictError: While a reschedule of this session is in flight
            ValidationError: For malformed values
        """
        session = self.get_session(session_id)
        self.lock_policy.ensure_editable(self.actor.role, session.attendance_status, session_id)
        dialog = self.reschedules.dialog
        if dialog.is_creating and dialog.session_id == session_id:
            raise ConflictError("Wait until the reschedule is created before editing this class.")

        if "minutes_viewed" in fields:
            fields["minutes_viewed"] = _parse_minutes(fields["minutes_viewed"])
        self.buffer.seed(session_id, session)
        return self.buffer.set(session_id, fields)

    def discard(self, session_id: str) -> None:
        self.buffer.discard(session_id)

    # ==================== Saving ====================

    def _resolve_tags(
        self,
        tag_ids: Sequence[str],
        catalog: Sequence[TagRef],
        current: Sequence[TagRef],
        field_name: str,
    ) -> List[TagRef]:
        known = {tag.id: tag for tag in list(current) + list(catalog)}
        missing = [tag_id for tag_id in tag_ids if tag_id not in known]
        if missing:
            raise ValidationError(f"Unknown {field_name.replace('_', ' ')}: {', '.join(missing)}", field=field_name)
        return [known[tag_id] for tag_id in tag_ids]

    def prepare_save(self, session_id: str) -> SavePlan:
        """
        Compose the record to write for a session without doing any I/O.

        Raises:
            SessionLockedError: If the actor may no longer edit the session
            RescheduleRequiredError: For a partially viewed class without reschedule
            ValidationError: For malformed buffer values
        """
        session = self.get_session(session_id)
        self.lock_policy.ensure_editable(self.actor.role, session.attendance_status, session_id)
        draft = self.draft(session_id)

        class_type = self._resolve_tags(draft.class_type, self.class_types, session.class_type, "class_type")
        content_type = self._resolve_tags(
            draft.content_type, self.content_categories, session.content_type, "content_type"
        )
        decision = self.classifier.classify(draft.minutes_viewed, class_type, session.reschedule)
        self.classifier.ensure_saveable(session_id, decision)
        edit_decision = self.lock_policy.check_save(
            self.actor.role, session.attendance_status, decision.status
        )

        payload: Dict[str, Any] = {
            "minutes_viewed": draft.minutes_viewed,
            "class_type": [tag.to_dict() for tag in class_type],
            "content_type": [tag.to_dict() for tag in content_type],
            "vocabulary_content": draft.vocabulary_content.strip() or None,
            "student_mood": draft.student_mood or None,
            "note": draft.note.to_dict() if draft.note else None,
            "homework": draft.homework.strip() or None,
            "class_time": draft.class_time.strip() or None,
            "class_viewed": int(decision.status),
            "updated_by": self.actor.id,
        }
        if session.is_reschedule and draft.class_date:
            payload["class_date"] = draft.class_date.isoformat()

        return SavePlan(
            session_id=session_id,
            payload=payload,
            status=decision.status,
            requires_confirmation=edit_decision.requires_confirmation,
        )

    async def save_session(self, session_id: str, confirmed: bool = False) -> SaveResult:
        """
        Save the buffered edits of one session.

        Returns a result asking for confirmation (without writing) when a
        professor save would finalize the session and `confirmed` is False.
        Errors from the store propagate and leave the buffer untouched.
        """
        if session_id in self._saving:
            raise ConflictError("This class is already being saved.")

        plan = self.prepare_save(session_id)
        if plan.requires_confirmation and not confirmed:
            return SaveResult(
                requires_confirmation=True,
                pending_confirmation=[session_id],
                message=CONFIRMATION_MESSAGE,
            )

        self._saving.add(session_id)
        try:
            await self.store.save_session(session_id, plan.payload)
        except ClassRegistryError as e:
            raise with_role_message(
                e, "update this class registry", "saving the class registry", self.actor.role
            ) from e
        finally:
            self._saving.discard(session_id)

        self.buffer.discard(session_id)
        await self.fetch_sessions()
        logger.info(f"✅ [RegistryWorkspace] Class {session_id} saved as {plan.status.name}")
        return SaveResult(saved=[session_id], message="Class registry saved successfully")

    async def save_all(self, confirmed: bool = False) -> SaveResult:
        """
        Save every session with unsaved edits.

        All entries are checked before any write; a precondition failure on
        any of them blocks the whole batch. When a write fails the buffer is
        left untouched and an aggregated message is returned.
        """
        session_ids = self.buffer.dirty_ids()
        if not session_ids:
            return SaveResult(message="No changes to save")
        busy = self._saving.intersection(session_ids)
        if busy:
            raise ConflictError("Some classes are already being saved.")

        plans = [self.prepare_save(session_id) for session_id in session_ids]
        needing_confirmation = [plan.session_id for plan in plans if plan.requires_confirmation]
        if needing_confirmation and not confirmed:
            return SaveResult(
                requires_confirmation=True,
                pending_confirmation=needing_confirmation,
                message=CONFIRMATION_MESSAGE,
            )

        self._saving.update(session_ids)
        try:
            results = await asyncio.gather(
                *(self.store.save_session(plan.session_id, plan.payload) for plan in plans),
                return_exceptions=True,
            )
        finally:
            self._saving.difference_update(session_ids)

        failures: Dict[str, ClassRegistryError] = {}
        for plan, result in zip(plans, results):
            if isinstance(result, ClassRegistryError):
                failures[plan.session_id] = result
            elif isinstance(result, Exception):
                logger.error(f"❌ [RegistryWorkspace] Unexpected error saving {plan.session_id}", exc_info=result)
                failures[plan.session_id] = TransientError(transient_message("saving the class registry"))
            elif isinstance(result, BaseException):
                raise result

        if failures:
            return SaveResult(
                saved=[p.session_id for p in plans if p.session_id not in failures],
                errors={session_id: error.user_message for session_id, error in failures.items()},
                message=self._aggregate_message(list(failures.values())),
            )

        for plan in plans:
            self.buffer.discard(plan.session_id)
        await self.fetch_sessions()
        logger.info(f"✅ [RegistryWorkspace] Saved {len(plans)} class registries")
        return SaveResult(saved=session_ids, message="Class registries saved successfully")

    def _aggregate_message(self, failures: List[ClassRegistryError]) -> str:
        if any(isinstance(error, PermissionDeniedError) for error in failures):
            return permission_message("update the class registries", self.actor.role)
        if len(failures) == 1:
            return f"Error saving the registry: {failures[0].user_message}"
        return f"Error saving {len(failures)} registries. Please try again."

    async def save_note(self, session_id: str, content: Optional[str], student_visible: bool) -> ClassSession:
        """
        Write a note into the buffer and persist only the note right away.

        Other unsaved edits of the session stay in the buffer; without them the
        entry is clean again, so a later save-all does not finalize it.
        """
        note = self.notes.build_note(content, student_visible)
        self.edit(session_id, note=note)
        try:
            session = await self.store.save_session(
                session_id, {"note": note.to_dict(), "updated_by": self.actor.id}
            )
        except ClassRegistryError as e:
            raise with_role_message(
                e, "update this class registry", "saving the note", self.actor.role
            ) from e
        self.buffer.mark_persisted(session_id, session, ["note"])
        await self.fetch_sessions()
        return session

    # ==================== Reschedules ====================

    async def create_reschedule(
        self,
        session_id: str,
        new_date: Optional[date],
        today: Optional[date] = None,
    ) -> RescheduleOutcome:
        return await self.reschedules.create_reschedule(
            self.get_session(session_id), new_date, self.actor, today
        )

    def class_history(self) -> List[ClassSession]:
        """
        Originals newest first, each followed by its reschedules (newest
        first); reschedules of originals outside the list go last.
        """
        originals = sorted(
            (s for s in self.sessions if not s.is_reschedule),
            key=lambda s: s.class_date,
            reverse=True,
        )
        by_original: Dict[str, List[ClassSession]] = defaultdict(list)
        for session in self.sessions:
            if session.is_reschedule:
                by_original[session.original_session_id].append(session)

        history: List[ClassSession] = []
        for original in originals:
            history.append(original)
            history.extend(sorted(by_original.pop(original.id, []), key=lambda s: s.class_date, reverse=True))

        orphans = [s for group in by_original.values() for s in group]
        history.extend(sorted(orphans, key=lambda s: s.class_date, reverse=True))
        return history

    # ==================== Objectives ====================

    async def fetch_objectives(self) -> List[ClassObjective]:
        self.objectives = await self.store.list_objectives(self.enrollment_id, self.date_from, self.date_to)
        return self.objectives

    def objective_slots(self, today: Optional[date] = None) -> List[ClassObjective]:
        return self.quota.active_slots(self.objectives, self.content_categories, self.enrollment_id, today)

    def objective_history(self) -> List[ClassObjective]:
        return self.quota.history(self.objectives)

    async def save_objective(self, objective_id: Optional[str], fields: Dict[str, Any]) -> ClassObjective:
        """
        Create (temporary or missing id) or update an objective.

        Raises:
            ValidationError: For missing category, objective or date (no I/O)
        """
        payload = self.quota.build_payload(fields, self.enrollment_id)
        payload["updated_by"] = self.actor.id
        target_id = None if not objective_id or self.quota.is_temporary_id(objective_id) else objective_id
        try:
            saved = await self.store.save_objective(target_id, payload)
        except ClassRegistryError as e:
            raise with_role_message(e, "save objectives", "saving objective", self.actor.role) from e
        await self.fetch_objectives()
        logger.info(f"✅ [RegistryWorkspace] Objective {saved.id} saved")
        return saved

    # ==================== Evaluations ====================

    def has_evaluation(self, session_id: str) -> bool:
        return self.evaluations.exists(session_id)

    async def fetch_evaluations(self) -> List[Evaluation]:
        return await self.evaluations.refresh()

    async def create_evaluation(self, session_id: str, fields: Dict[str, Any]) -> Evaluation:
        evaluation = await self.evaluations.create(self.get_session(session_id), fields, self.actor)
        await self.fetch_sessions()
        return evaluation

    async def update_evaluation(self, evaluation_id: str, fields: Dict[str, Any]) -> Evaluation:
        evaluation = await self.evaluations.update(evaluation_id, fields, self.actor)
        await self.fetch_sessions()
        return evaluation
