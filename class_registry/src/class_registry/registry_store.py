"""
Registry Store

Persistence of class registries, objectives and evaluations using Supabase.
Without a Supabase client the store keeps rows in memory (tests, local demos),
going through the same row conversion as the database path.
"""

import copy
import logging
import uuid
from datetime import date
from typing import Optional, List, Dict, Any

import httpx
from postgrest.exceptions import APIError

from class_registry.errors import (
    ClassRegistryError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    TransientError,
    permission_message,
    transient_message,
)
from class_registry.models import (
    Actor,
    AttendanceStatus,
    ClassObjective,
    ClassSession,
    Evaluation,
    RescheduleStatus,
    TagRef,
    evaluation_from_row,
    objective_from_row,
    session_from_row,
)

logger = logging.getLogger(__name__)

SESSION_SELECT = "*, evaluations(id, is_active), original_class:original_class_id(class_date)"
OBJECTIVE_SELECT = "*, category:content_classes(id, name)"
EVALUATION_SELECT = "*, class_registry:class_registries!inner(class_date, enrollment_id)"

PERMISSION_CODES = {"42501", "PGRST301", "PGRST302", "401", "403"}
NOT_FOUND_CODES = {"PGRST116"}
UNIQUE_VIOLATION_CODE = "23505"


class RegistryStore:
    """
    Backing store for the class registry workflow.

    Tables: class_registries, class_objectives, evaluations, class_types,
    content_classes.
    """

    def __init__(self, supabase_client=None):
        """
        Initialize RegistryStore.

        Args:
            supabase_client: Supabase client instance (optional)
        """
        self.supabase = supabase_client
        self.use_supabase = supabase_client is not None

        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = {
            "class_registries": {},
            "class_objectives": {},
            "evaluations": {},
            "class_types": {},
            "content_classes": {},
        }
        if not self.use_supabase:
            logger.warning("⚠️ [RegistryStore] Supabase not available, using in-memory rows")

    # ==================== Error mapping ====================

    def _translate(self, error: Exception, gerund: str) -> ClassRegistryError:
        """Map a client exception onto the registry error taxonomy."""
        if isinstance(error, ClassRegistryError):
            return error
        if isinstance(error, APIError):
            code = str(error.code or "")
            if code in PERMISSION_CODES:
                status = 401 if code in {"401", "PGRST301", "PGRST302"} else 403
                return PermissionDeniedError(permission_message("perform this action"), status_code=status)
            if code in NOT_FOUND_CODES:
                return NotFoundError("The record no longer exists. Please reload the page.")
            if code == UNIQUE_VIOLATION_CODE:
                return ConflictError("This record was already created. Please reload the page.")
        if isinstance(error, (APIError, httpx.HTTPError)):
            logger.error(f"❌ [RegistryStore] Error {gerund}: {error}")
            return TransientError(transient_message(gerund))
        logger.error(f"❌ [RegistryStore] Unexpected error {gerund}", exc_info=error)
        return TransientError(transient_message(gerund))

    # ==================== In-memory helpers ====================

    def load_rows(self, table: str, rows: List[Dict[str, Any]]) -> None:
        """Insert rows directly into the in-memory tables."""
        for row in rows:
            row = copy.deepcopy(row)
            row.setdefault("id", uuid.uuid4().hex)
            self._tables[table][str(row["id"])] = row

    def _memory_row(self, table: str, row_id: str) -> Dict[str, Any]:
        row = self._tables[table].get(row_id)
        if row is None:
            raise NotFoundError("The record no longer exists. Please reload the page.")
        return row

    def _memory_session_row(self, row: Dict[str, Any]) -> Dict[str, Any]:
        expanded = copy.deepcopy(row)
        expanded["evaluations"] = [
            {"id": e["id"], "is_active": e.get("is_active", True)}
            for e in self._tables["evaluations"].values()
            if e["class_registry_id"] == row["id"]
        ]
        original_id = row.get("original_class_id")
        original = self._tables["class_registries"].get(original_id) if original_id else None
        expanded["original_class"] = {"class_date": original["class_date"]} if original else None
        return expanded

    def _memory_objective_row(self, row: Dict[str, Any]) -> Dict[str, Any]:
        expanded = copy.deepcopy(row)
        category = self._tables["content_classes"].get(row.get("category_id") or "")
        expanded["category"] = (
            {"id": category["id"], "name": category.get("name")}
            if category
            else {"id": row.get("category_id") or "", "name": ""}
        )
        return expanded

    def _memory_evaluation_row(self, row: Dict[str, Any]) -> Dict[str, Any]:
        expanded = copy.deepcopy(row)
        registry = self._tables["class_registries"].get(row["class_registry_id"]) or {}
        expanded["class_registry"] = {
            "class_date": registry.get("class_date"),
            "enrollment_id": registry.get("enrollment_id"),
        }
        return expanded

    @staticmethod
    def _in_range(value: Any, date_from: Optional[date], date_to: Optional[date]) -> bool:
        if value is None:
            return date_from is None and date_to is None
        day = str(value)[:10]
        if date_from and day < date_from.isoformat():
            return False
        if date_to and day > date_to.isoformat():
            return False
        return True

    # ==================== Catalogs ====================

    async def list_class_types(self) -> List[TagRef]:
        return await self._list_catalog("class_types")

    async def list_content_categories(self) -> List[TagRef]:
        return await self._list_catalog("content_classes")

    async def _list_catalog(self, table: str) -> List[TagRef]:
        if not self.use_supabase:
            rows = [r for r in self._tables[table].values() if r.get("status", 1) == 1]
        else:
            try:
                result = self.supabase.table(table).select("id, name").eq("status", 1).order("name").execute()
                rows = result.data or []
            except Exception as e:
                raise self._translate(e, f"loading {table}") from e
        return [TagRef(id=str(r["id"]), name=r.get("name") or "") for r in rows]

    # ==================== Sessions ====================

    async def list_sessions(
        self,
        enrollment_id: str,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> List[ClassSession]:
        """
        List the sessions of an enrollment, oldest first.

        Args:
            enrollment_id: Owning enrollment
            date_from: Inclusive lower bound (None for all)
            date_to: Inclusive upper bound (None for all)
        """
        if not self.use_supabase:
            rows = [
                self._memory_session_row(r)
                for r in self._tables["class_registries"].values()
                if r["enrollment_id"] == enrollment_id
                and self._in_range(r.get("class_date"), date_from, date_to)
            ]
            rows.sort(key=lambda r: str(r["class_date"]))
        else:
            try:
                query = self.supabase.table("class_registries") \
                    .select(SESSION_SELECT) \
                    .eq("enrollment_id", enrollment_id)
                if date_from:
                    query = query.gte("class_date", date_from.isoformat())
                if date_to:
                    query = query.lte("class_date", date_to.isoformat())
                result = query.order("class_date", desc=False).execute()
                rows = result.data or []
            except Exception as e:
                raise self._translate(e, "loading class registries") from e

        return [session_from_row(row) for row in rows]

    async def get_session(self, session_id: str) -> ClassSession:
        if not self.use_supabase:
            return session_from_row(self._memory_session_row(self._memory_row("class_registries", session_id)))
        try:
            result = self.supabase.table("class_registries") \
                .select(SESSION_SELECT) \
                .eq("id", session_id) \
                .single() \
                .execute()
        except Exception as e:
            raise self._translate(e, "loading the class registry") from e
        return session_from_row(result.data)

    async def save_session(self, session_id: str, fields: Dict[str, Any]) -> ClassSession:
        """
        Update a session.

        When a rescheduled class is saved as viewed, its original moves from
        "in reschedule" to "reschedule viewed".

        Raises:
            PermissionDeniedError: If the actor may not write the session
            NotFoundError: If the id is stale
            TransientError: On network/server failures
        """
        if not self.use_supabase:
            row = self._memory_row("class_registries", session_id)
            row.update(copy.deepcopy(fields))
        else:
            try:
                result = self.supabase.table("class_registries").update(fields).eq("id", session_id).execute()
            except Exception as e:
                raise self._translate(e, "saving the class registry") from e
            if not result.data:
                raise NotFoundError("The record no longer exists. Please reload the page.")

        session = await self.get_session(session_id)
        if session.is_reschedule and session.attendance_status == AttendanceStatus.VIEWED:
            await self._mark_reschedule_viewed(session.original_session_id)
        return session

    async def _mark_reschedule_viewed(self, original_id: str) -> None:
        if not self.use_supabase:
            original = self._tables["class_registries"].get(original_id)
            if original and original.get("reschedule") == RescheduleStatus.IN_RESCHEDULE:
                original["reschedule"] = int(RescheduleStatus.RESCHEDULE_VIEWED)
            return
        try:
            self.supabase.table("class_registries") \
                .update({"reschedule": int(RescheduleStatus.RESCHEDULE_VIEWED)}) \
                .eq("id", original_id) \
                .eq("reschedule", int(RescheduleStatus.IN_RESCHEDULE)) \
                .execute()
        except Exception as e:
            raise self._translate(e, "updating the original class") from e

    async def create_reschedule(self, session_id: str, new_date: date, actor: Actor) -> ClassSession:
        """
        Create the makeup session linked to `session_id` and mark the
        original as in reschedule.

        The original is claimed first with a conditional update (reschedule
        0 -> 1); the claim is released if the insert fails.

        Returns:
            The new, linked session

        Raises:
            ConflictError: If the original was already rescheduled
        """
        if not self.use_supabase:
            original = self._memory_row("class_registries", session_id)
            if original.get("reschedule"):
                raise ConflictError("This class already has a reschedule.")
            new_row = {
                "id": uuid.uuid4().hex,
                "enrollment_id": original["enrollment_id"],
                "class_date": new_date.isoformat(),
                "class_time": original.get("class_time"),
                "reschedule": int(RescheduleStatus.NOT_MADE),
                "class_viewed": int(AttendanceStatus.PENDING),
                "original_class_id": session_id,
                "created_by": actor.id,
            }
            self._tables["class_registries"][new_row["id"]] = new_row
            original["reschedule"] = int(RescheduleStatus.IN_RESCHEDULE)
            return await self.get_session(new_row["id"])

        try:
            claim = self.supabase.table("class_registries") \
                .update({"reschedule": int(RescheduleStatus.IN_RESCHEDULE), "updated_by": actor.id}) \
                .eq("id", session_id) \
                .eq("reschedule", int(RescheduleStatus.NOT_MADE)) \
                .execute()
        except Exception as e:
            raise self._translate(e, "creating the reschedule") from e
        if not claim.data:
            raise ConflictError("This class already has a reschedule.")
        original = claim.data[0]

        try:
            inserted = self.supabase.table("class_registries").insert({
                "enrollment_id": original["enrollment_id"],
                "class_date": new_date.isoformat(),
                "class_time": original.get("class_time"),
                "reschedule": int(RescheduleStatus.NOT_MADE),
                "class_viewed": int(AttendanceStatus.PENDING),
                "original_class_id": session_id,
                "created_by": actor.id,
            }).execute()
        except Exception as e:
            self._release_reschedule_claim(session_id)
            raise self._translate(e, "creating the reschedule") from e

        return await self.get_session(str(inserted.data[0]["id"]))

    def _release_reschedule_claim(self, session_id: str) -> None:
        try:
            self.supabase.table("class_registries") \
                .update({"reschedule": int(RescheduleStatus.NOT_MADE)}) \
                .eq("id", session_id) \
                .eq("reschedule", int(RescheduleStatus.IN_RESCHEDULE)) \
                .execute()
            logger.warning(f"⚠️ [RegistryStore] Released reschedule claim on {session_id}")
        except Exception as e:
            logger.error(f"❌ [RegistryStore] Could not release reschedule claim on {session_id}: {e}")

    # ==================== Objectives ====================

    async def list_objectives(
        self,
        enrollment_id: str,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> List[ClassObjective]:
        if not self.use_supabase:
            rows = [
                self._memory_objective_row(r)
                for r in self._tables["class_objectives"].values()
                if r["enrollment_id"] == enrollment_id
                and self._in_range(r.get("objective_date"), date_from, date_to)
            ]
            rows.sort(key=lambda r: str(r.get("objective_date") or ""))
        else:
            try:
                query = self.supabase.table("class_objectives") \
                    .select(OBJECTIVE_SELECT) \
                    .eq("enrollment_id", enrollment_id)
                if date_from:
                    query = query.gte("objective_date", date_from.isoformat())
                if date_to:
                    query = query.lte("objective_date", date_to.isoformat())
                result = query.order("objective_date", desc=False).execute()
                rows = result.data or []
            except Exception as e:
                raise self._translate(e, "loading objectives") from e

        return [objective_from_row(row) for row in rows]

    async def save_objective(self, objective_id: Optional[str], fields: Dict[str, Any]) -> ClassObjective:
        """Create (objective_id None) or update an objective."""
        if not self.use_supabase:
            if objective_id is None:
                row = {"id": uuid.uuid4().hex, "is_active": True, **copy.deepcopy(fields)}
                self._tables["class_objectives"][row["id"]] = row
            else:
                row = self._memory_row("class_objectives", objective_id)
                row.update(copy.deepcopy(fields))
            return objective_from_row(self._memory_objective_row(row))

        try:
            if objective_id is None:
                result = self.supabase.table("class_objectives").insert(fields).execute()
            else:
                result = self.supabase.table("class_objectives").update(fields).eq("id", objective_id).execute()
            if not result.data:
                raise NotFoundError("The objective no longer exists. Please reload the page.")
            saved = self.supabase.table("class_objectives") \
                .select(OBJECTIVE_SELECT) \
                .eq("id", result.data[0]["id"]) \
                .single() \
                .execute()
        except Exception as e:
            raise self._translate(e, "saving objective") from e
        return objective_from_row(saved.data)

    # ==================== Evaluations ====================

    async def list_evaluations(self, enrollment_id: str) -> List[Evaluation]:
        if not self.use_supabase:
            rows = [
                self._memory_evaluation_row(r)
                for r in self._tables["evaluations"].values()
                if r.get("is_active", True)
            ]
            rows = [r for r in rows if r["class_registry"]["enrollment_id"] == enrollment_id]
        else:
            try:
                result = self.supabase.table("evaluations") \
                    .select(EVALUATION_SELECT) \
                    .eq("class_registry.enrollment_id", enrollment_id) \
                    .eq("is_active", True) \
                    .execute()
                rows = result.data or []
            except Exception as e:
                raise self._translate(e, "loading evaluations") from e
        return [evaluation_from_row(row) for row in rows]

    async def create_evaluation(self, session_id: str, fields: Dict[str, Any]) -> Evaluation:
        row_data = {"class_registry_id": session_id, "is_active": True, **fields}
        if not self.use_supabase:
            self._memory_row("class_registries", session_id)
            if any(
                r.get("class_registry_id") == session_id and r.get("is_active", True)
                for r in self._tables["evaluations"].values()
            ):
                raise ConflictError("This class already has an evaluation.")
            row = {"id": uuid.uuid4().hex, **copy.deepcopy(row_data)}
            self._tables["evaluations"][row["id"]] = row
            return evaluation_from_row(self._memory_evaluation_row(row))
        try:
            existing = self.supabase.table("evaluations") \
                .select("id") \
                .eq("class_registry_id", session_id) \
                .eq("is_active", True) \
                .execute()
            if existing.data:
                raise ConflictError("This class already has an evaluation.")
            result = self.supabase.table("evaluations").insert(row_data).execute()
        except Exception as e:
            raise self._translate(e, "creating evaluation") from e
        return evaluation_from_row(result.data[0])

    async def update_evaluation(self, evaluation_id: str, fields: Dict[str, Any]) -> Evaluation:
        if not self.use_supabase:
            row = self._memory_row("evaluations", evaluation_id)
            row.update(copy.deepcopy(fields))
            return evaluation_from_row(self._memory_evaluation_row(row))
        try:
            result = self.supabase.table("evaluations").update(fields).eq("id", evaluation_id).execute()
        except Exception as e:
            raise self._translate(e, "updating evaluation") from e
        if not result.data:
            raise NotFoundError("The evaluation no longer exists. Please reload the page.")
        return evaluation_from_row(result.data[0])
