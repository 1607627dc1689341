"""
Evaluation Guard

Enforces at most one evaluation per session. Keeps a session id -> "has
evaluation" cache that is only ever refreshed from the authoritative
evaluation list, so `exists` is a dictionary lookup.
"""

import base64
import logging
from typing import Optional, List, Dict, Set, Any, Iterable

from class_registry.errors import ClassRegistryError, ConflictError, with_role_message
from class_registry.models import Actor, ClassSession, Evaluation, format_ddmmyyyy

logger = logging.getLogger(__name__)

EVALUATION_FIELDS = (
    "topics_evaluated",
    "skill_evaluated",
    "material_link",
    "capture",
    "score",
    "comment",
)


def encode_capture(content: bytes, mime_type: str = "image/png") -> str:
    """Encode an image attachment as a data URL."""
    encoded = base64.b64encode(content).decode("ascii")
    return f"data:{mime_type};base64,{encoded}"


class EvaluationGuard:
    """Creates and updates evaluations while guarding the one-per-session rule."""

    def __init__(self, store, enrollment_id: str):
        """
        Initialize EvaluationGuard.

        Args:
            store: RegistryStore used for evaluation I/O
            enrollment_id: Enrollment whose evaluations are tracked
        """
        self.store = store
        self.enrollment_id = enrollment_id
        self.evaluations: List[Evaluation] = []
        self._cache: Dict[str, bool] = {}
        self._creating: Set[str] = set()

    def exists(self, session_id: str) -> bool:
        return self._cache.get(session_id, False)

    def sync(self, evaluations: Iterable[Evaluation]) -> None:
        """Replace the cache with what the evaluation list says."""
        self.evaluations = [e for e in evaluations if e.is_active]
        self._cache = {session_id: False for session_id in self._cache}
        for evaluation in self.evaluations:
            self._cache[evaluation.session_id] = True

    def sync_from_sessions(self, sessions: Iterable[ClassSession]) -> None:
        """Seed the cache from sessions that embed their evaluation ids."""
        for session in sessions:
            self._cache[session.id] = bool(session.evaluation_ids)

    async def refresh(self) -> List[Evaluation]:
        evaluations = await self.store.list_evaluations(self.enrollment_id)
        self.sync(evaluations)
        return self.evaluations

    @staticmethod
    def build_create_payload(session: ClassSession, fields: Dict[str, Any]) -> Dict[str, Any]:
        """The evaluation date always comes from the session; empty fields are left out."""
        payload: Dict[str, Any] = {"evaluation_date": format_ddmmyyyy(session.class_date)}
        for name in EVALUATION_FIELDS:
            value = fields.get(name)
            if value:
                payload[name] = value
        return payload

    @staticmethod
    def build_update_payload(fields: Dict[str, Any]) -> Dict[str, Any]:
        # evaluation_date is never editable
        return {name: fields.get(name) or None for name in EVALUATION_FIELDS if name in fields}

    async def create(
        self,
        session: ClassSession,
        fields: Dict[str, Any],
        actor: Optional[Actor] = None,
    ) -> Evaluation:
        """
        Create the evaluation of a session.

        Raises:
            ConflictError: If the session already has an evaluation (no I/O is done)
                or a creation for it is already in flight
        """
        if self.exists(session.id):
            raise ConflictError("This class already has an evaluation.")
        if session.id in self._creating:
            raise ConflictError("The evaluation is already being created.")

        payload = self.build_create_payload(session, fields)
        self._creating.add(session.id)
        try:
            evaluation = await self.store.create_evaluation(session.id, payload)
            # Known from the create response even if the refresh below fails
            self._cache[session.id] = True
            await self.refresh()
        except ClassRegistryError as e:
            raise with_role_message(
                e, "create evaluations", "creating evaluation", actor.role if actor else None
            ) from e
        finally:
            self._creating.discard(session.id)

        logger.info(f"✅ [EvaluationGuard] Evaluation created for class {session.id}")
        return evaluation

    async def update(
        self,
        evaluation_id: str,
        fields: Dict[str, Any],
        actor: Optional[Actor] = None,
    ) -> Evaluation:
        payload = self.build_update_payload(fields)
        try:
            evaluation = await self.store.update_evaluation(evaluation_id, payload)
            await self.refresh()
        except ClassRegistryError as e:
            raise with_role_message(
                e, "update evaluations", "updating evaluation", actor.role if actor else None
            ) from e

        logger.info(f"✅ [EvaluationGuard] Evaluation {evaluation_id} updated")
        return evaluation
