"""Class registry core: attendance, edit buffer, reschedules, objectives, evaluations"""
from .attendance import AttendanceClassifier, EditLockPolicy
from .edit_buffer import EditBuffer
from .evaluation_guard import EvaluationGuard
from .notes import NotePermissionModel
from .objective_quota import ObjectiveQuotaManager
from .registry_store import RegistryStore
from .registry_workspace import RegistryWorkspace
from .reschedule import RescheduleCoordinator

__all__ = [
    "AttendanceClassifier",
    "EditLockPolicy",
    "EditBuffer",
    "EvaluationGuard",
    "NotePermissionModel",
    "ObjectiveQuotaManager",
    "RegistryStore",
    "RegistryWorkspace",
    "RescheduleCoordinator",
]
