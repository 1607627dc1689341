"""
Reschedule Coordination

Creates the makeup session of a class that was not fully delivered while
keeping the unsaved edits of the original class across the refetch that
follows.
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional, List, Callable

from class_registry.edit_buffer import EditBuffer
from class_registry.errors import (
    ClassRegistryError,
    ConflictError,
    RescheduleNotAllowedError,
    ValidationError,
    with_role_message,
)
from class_registry.models import Actor, ClassSession, RescheduleStatus

logger = logging.getLogger(__name__)


@dataclass
class RescheduleDialogState:
    """State of the reschedule dialog."""
    session_id: Optional[str] = None
    class_date: Optional[date] = None
    is_creating: bool = False
    error_message: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.session_id is not None


@dataclass
class RescheduleOutcome:
    """Result of a successful reschedule."""
    new_session: ClassSession
    original_session: Optional[ClassSession]
    sessions: List[ClassSession]
    reminder: str


class RescheduleCoordinator:
    """
    Runs the reschedule workflow for one enrollment.

    Order of a successful call: eligibility checks, preserve the original's
    buffer entry, create the linked session, refetch the list, reconcile the
    buffer (which restores the preserved entry), close the dialog.
    """

    LONG_SESSION_MINUTES = 50
    REMINDER = (
        "Reschedule created successfully. "
        "Remember to save the changes of the original class."
    )

    def __init__(
        self,
        store,
        buffer: EditBuffer,
        enrollment_id: str,
        on_refresh: Optional[Callable[[List[ClassSession]], None]] = None,
    ):
        """
        Initialize RescheduleCoordinator.

        Args:
            store: RegistryStore used for creation and refetch
            buffer: EditBuffer shared with the editing workflow
            enrollment_id: Enrollment whose sessions are listed after creation
            on_refresh: Called with the refetched sessions after reconciliation
        """
        self.store = store
        self.buffer = buffer
        self.enrollment_id = enrollment_id
        self.on_refresh = on_refresh
        self.dialog = RescheduleDialogState()

    def open_dialog(self, session_id: str) -> None:
        self.dialog = RescheduleDialogState(session_id=session_id)

    def close_dialog(self) -> None:
        self.dialog = RescheduleDialogState()

    def check_eligibility(
        self,
        original: ClassSession,
        new_date: Optional[date],
        today: Optional[date] = None,
    ) -> None:
        """
        Raise if `original` cannot be rescheduled to `new_date`.

        Raises:
            ValidationError: If no date was given
            RescheduleNotAllowedError: Past date, existing reschedule, reschedule
                of a reschedule, or a long class that was already saved
        """
        today = today or date.today()
        if new_date is None:
            raise ValidationError("Reschedule date is required", field="class_date")
        if new_date < today:
            raise RescheduleNotAllowedError("The reschedule date cannot be in the past.", field="class_date")
        if original.reschedule != RescheduleStatus.NOT_MADE:
            raise RescheduleNotAllowedError("This class already has a reschedule.")
        if original.is_reschedule:
            raise RescheduleNotAllowedError("A rescheduled class cannot be rescheduled again.")
        if (
            original.minutes_viewed is not None
            and original.minutes_viewed > self.LONG_SESSION_MINUTES
            and not original.is_pending
        ):
            raise RescheduleNotAllowedError(
                f"Classes saved with more than {self.LONG_SESSION_MINUTES} minutes cannot be rescheduled."
            )

    async def create_reschedule(
        self,
        original: ClassSession,
        new_date: Optional[date],
        actor: Actor,
        today: Optional[date] = None,
    ) -> RescheduleOutcome:
        """
        Create a reschedule of `original` on `new_date`.

        Returns:
            RescheduleOutcome with the new session and the refetched list

        Raises:
            ConflictError: If a reschedule creation is already in flight
            RescheduleNotAllowedError / ValidationError: Before any I/O
            PermissionDeniedError / TransientError / NotFoundError: From the store,
                with role-appropriate messages
        """
        if self.dialog.is_creating:
            raise ConflictError("A reschedule is already being created.")

        self.check_eligibility(original, new_date, today)

        self.buffer.promote_to_pending(original.id)
        self.dialog.session_id = original.id
        self.dialog.class_date = new_date
        self.dialog.is_creating = True
        self.dialog.error_message = None
        try:
            new_session = await self.store.create_reschedule(original.id, new_date, actor)
            sessions = await self.store.list_sessions(self.enrollment_id)
        except ClassRegistryError as e:
            self.buffer.release_pending(original.id)
            error = with_role_message(e, "create reschedules", "creating reschedule", actor.role)
            self.dialog.error_message = error.user_message
            logger.warning(f"⚠️ [RescheduleCoordinator] Reschedule of {original.id} failed: {error.user_message}")
            raise error from e
        except Exception:
            self.buffer.release_pending(original.id)
            raise
        finally:
            self.dialog.is_creating = False

        self.buffer.reconcile(sessions)
        if self.on_refresh:
            self.on_refresh(sessions)
        self.close_dialog()

        logger.info(
            f"✅ [RescheduleCoordinator] Class {original.id} rescheduled to {new_date.isoformat()} "
            f"as {new_session.id}"
        )
        return RescheduleOutcome(
            new_session=new_session,
            original_session=next((s for s in sessions if s.id == original.id), None),
            sessions=sessions,
            reminder=self.REMINDER,
        )
