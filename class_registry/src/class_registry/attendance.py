"""
Attendance Classification and Edit Locking

Turns the minutes viewed and the class type of a session into an attendance
status, and decides whether an actor may still edit a session once it has
been finalized.
"""

import re
import unicodedata
from dataclasses import dataclass
from typing import Iterable, Optional, Union

from class_registry.errors import RescheduleRequiredError, SessionLockedError, ValidationError
from class_registry.models import ActorRole, AttendanceStatus, RescheduleStatus, TagRef

ClassTypeInput = Union[None, str, TagRef, Iterable[Union[str, TagRef]]]


@dataclass
class AttendanceDecision:
    """Result of classifying a session."""
    status: AttendanceStatus
    requires_reschedule: bool
    reason: str


class AttendanceClassifier:
    """
    Classifies a session from its minutes viewed and class type.

    Rules, in priority order:
    - 0 / unset minutes, or a no-show class type -> no-show
    - exactly 60 minutes -> viewed
    - 1..59 minutes -> partially viewed (needs a reschedule before saving)
    - more than 60 minutes -> viewed

    "Lost" is assigned by an external batch job and never produced here.
    """

    FULL_CLASS_MINUTES = 60
    # Compared after lower-casing, dropping accents and stripping non-alphanumerics
    NO_SHOW_TAGS = {"noshow", "noasistio", "ausente"}

    @classmethod
    def is_no_show_tag(cls, tag: Union[str, TagRef]) -> bool:
        name = tag.name if isinstance(tag, TagRef) else tag
        decomposed = unicodedata.normalize("NFKD", (name or "").lower())
        normalized = re.sub(r"[^a-z0-9]", "", decomposed.encode("ascii", "ignore").decode("ascii"))
        return normalized in cls.NO_SHOW_TAGS

    def _has_no_show(self, class_type: ClassTypeInput) -> bool:
        if class_type is None:
            return False
        if isinstance(class_type, (str, TagRef)):
            return self.is_no_show_tag(class_type)
        return any(self.is_no_show_tag(tag) for tag in class_type)

    def classify(
        self,
        minutes_viewed: Optional[int],
        class_type: ClassTypeInput = None,
        reschedule: int = RescheduleStatus.NOT_MADE,
    ) -> AttendanceDecision:
        """
        Classify a session.

        Args:
            minutes_viewed: Minutes actually held, or None when unset
            class_type: Selected class type tag(s), by name or TagRef
            reschedule: Current reschedule value of the session

        Returns:
            AttendanceDecision with the derived status

        Raises:
            ValidationError: If minutes_viewed is negative
        """
        if minutes_viewed is not None and minutes_viewed < 0:
            raise ValidationError("Minutes viewed cannot be negative", field="minutes_viewed")

        if not minutes_viewed or self._has_no_show(class_type):
            return AttendanceDecision(
                status=AttendanceStatus.NO_SHOW,
                requires_reschedule=False,
                reason="No minutes viewed or no-show class type",
            )

        if minutes_viewed == self.FULL_CLASS_MINUTES:
            return AttendanceDecision(
                status=AttendanceStatus.VIEWED,
                requires_reschedule=False,
                reason="Full class viewed",
            )

        if minutes_viewed < self.FULL_CLASS_MINUTES:
            return AttendanceDecision(
                status=AttendanceStatus.PARTIALLY_VIEWED,
                requires_reschedule=reschedule == RescheduleStatus.NOT_MADE,
                reason=f"Partially viewed ({minutes_viewed} of {self.FULL_CLASS_MINUTES} minutes)",
            )

        # TODO: confirm with product whether >60 minutes should be rejected instead
        return AttendanceDecision(
            status=AttendanceStatus.VIEWED,
            requires_reschedule=False,
            reason=f"Over-long class ({minutes_viewed} minutes) counted as viewed",
        )

    def ensure_saveable(self, session_id: str, decision: AttendanceDecision) -> None:
        """Raise if the decision blocks saving (partial class without reschedule)."""
        if decision.requires_reschedule:
            raise RescheduleRequiredError(session_id)


@dataclass
class EditDecision:
    """Whether a save may proceed and whether it needs confirmation first."""
    locked: bool
    requires_confirmation: bool
    reason: str


class EditLockPolicy:
    """
    Role-dependent edit lock.

    A professor can edit a session only while it is pending; admins are never
    locked by this policy. A professor save that moves a session away from
    pending is irreversible and needs an explicit confirmation.
    """

    def is_locked(self, role: ActorRole, status: int) -> bool:
        if role == ActorRole.ADMIN:
            return False
        return status != AttendanceStatus.PENDING

    def check_save(self, role: ActorRole, current_status: int, next_status: int) -> EditDecision:
        if self.is_locked(role, current_status):
            return EditDecision(
                locked=True,
                requires_confirmation=False,
                reason="Session already finalized",
            )
        needs_confirmation = (
            role == ActorRole.PROFESSOR
            and current_status == AttendanceStatus.PENDING
            and next_status != AttendanceStatus.PENDING
        )
        return EditDecision(
            locked=False,
            requires_confirmation=needs_confirmation,
            reason="Saving finalizes the session" if needs_confirmation else "Editable",
        )

    def ensure_editable(self, role: ActorRole, status: int, session_id: str) -> None:
        if self.is_locked(role, status):
            raise SessionLockedError(
                f"Class {session_id} was already saved and can no longer be edited. "
                "Please contact an administrator.",
            )
