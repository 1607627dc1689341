"""
Class Registry Errors

Error taxonomy shared by the registry components. Every error carries a
user-facing message so callers can surface it without re-deriving wording.
"""

from typing import Optional

from class_registry.models import ActorRole


class ClassRegistryError(Exception):
    """Base class for all class registry errors."""

    def __init__(self, user_message: str, field: Optional[str] = None):
        super().__init__(user_message)
        self.user_message = user_message
        self.field = field


class ValidationError(ClassRegistryError):
    """Local field problem; shown inline, never sent to the store."""


class PreconditionError(ClassRegistryError):
    """Hard stop detected before any I/O."""


class RescheduleRequiredError(PreconditionError):
    """A partially viewed session must get a reschedule before saving."""

    def __init__(self, session_id: str):
        super().__init__(
            "This class was partially viewed. Create a reschedule before saving it.",
            field="minutes_viewed",
        )
        self.session_id = session_id


class RescheduleNotAllowedError(PreconditionError):
    """The session cannot be rescheduled (date, state or duration)."""


class SessionLockedError(PreconditionError):
    """The actor may no longer edit this session."""


class ConflictError(ClassRegistryError):
    """Duplicate resource or overlapping operation."""


class PermissionDeniedError(ClassRegistryError):
    """401/403 returned by the backing store."""

    def __init__(self, user_message: str, status_code: int = 403):
        super().__init__(user_message)
        self.status_code = status_code


class NotFoundError(ClassRegistryError):
    """The record id is stale or unknown."""


class TransientError(ClassRegistryError):
    """Network or server failure; the user may retry."""


def permission_message(action: str, role: Optional[ActorRole] = None) -> str:
    """
    Role-appropriate message for a permission failure.

    Args:
        action: Verb phrase, e.g. "create reschedules"
        role: Role of the actor that was refused

    Returns:
        Message to show the user
    """
    if role == ActorRole.ADMIN:
        return f"Your account doesn't have permission to {action}. Please check the administrator role settings."
    return f"You don't have permission to {action}. Please contact an administrator."


def transient_message(action: str) -> str:
    return f"Error {action}. Please try again."


def with_role_message(
    error: ClassRegistryError,
    action: str,
    gerund: str,
    role: Optional[ActorRole] = None,
) -> ClassRegistryError:
    """
    Rewrite the message of a store error for the action being performed.

    Permission failures get the role-appropriate wording, transient failures
    the generic retry wording. Other errors are returned unchanged.
    """
    if isinstance(error, PermissionDeniedError):
        error.user_message = permission_message(action, role)
    elif isinstance(error, TransientError):
        error.user_message = transient_message(gerund)
    error.args = (error.user_message,)
    return error
