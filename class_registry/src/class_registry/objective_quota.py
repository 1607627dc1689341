"""
Objective Quota

Keeps exactly four objective slots per enrollment period, filling gaps with
unsaved placeholders and never dropping a saved objective in favour of one.
Also validates objective edits and shapes the payload sent to the store.
"""

import uuid
from datetime import date
from typing import Optional, List, Dict, Any, Sequence

from class_registry.errors import ValidationError
from class_registry.models import ClassObjective, TagRef


class ObjectiveQuotaManager:
    """Normalizes objective lists to the fixed quota."""

    QUOTA = 4
    TEMPORARY_ID_PREFIX = "temp-"

    @classmethod
    def is_temporary_id(cls, objective_id: Optional[str]) -> bool:
        return bool(objective_id) and objective_id.startswith(cls.TEMPORARY_ID_PREFIX)

    @classmethod
    def is_placeholder(cls, objective: ClassObjective) -> bool:
        return objective.synthetic or cls.is_temporary_id(objective.id)

    def _placeholder(
        self,
        enrollment_id: str,
        category: TagRef,
        today: date,
    ) -> ClassObjective:
        return ClassObjective(
            id=f"{self.TEMPORARY_ID_PREFIX}{uuid.uuid4().hex}",
            enrollment_id=enrollment_id,
            category=category,
            objective="",
            objective_date=today,
            synthetic=True,
        )

    def normalize(
        self,
        objectives: Sequence[ClassObjective],
        content_categories: Sequence[TagRef],
        enrollment_id: str = "",
        today: Optional[date] = None,
    ) -> List[ClassObjective]:
        """
        Return exactly QUOTA objectives.

        Args:
            objectives: Objectives of the period (saved and/or placeholders)
            content_categories: Categories available for placeholders
            enrollment_id: Owner used for new placeholders
            today: Default target date of placeholders

        Returns:
            The input unchanged when it already has QUOTA entries; otherwise
            padded with placeholders (categories assigned round-robin) or
            truncated with saved objectives first.
        """
        objectives = list(objectives)

        if len(objectives) == self.QUOTA:
            return objectives

        if len(objectives) > self.QUOTA:
            # sorted() is stable: saved objectives keep their relative order
            ordered = sorted(objectives, key=self.is_placeholder)
            return ordered[: self.QUOTA]

        today = today or date.today()
        if not enrollment_id and objectives:
            enrollment_id = objectives[0].enrollment_id

        missing = self.QUOTA - len(objectives)
        for index in range(missing):
            if content_categories:
                category = content_categories[index % len(content_categories)]
            else:
                category = TagRef(id="", name="")
            objectives.append(self._placeholder(enrollment_id, category, today))
        return objectives

    def active_slots(
        self,
        objectives: Sequence[ClassObjective],
        content_categories: Sequence[TagRef],
        enrollment_id: str = "",
        today: Optional[date] = None,
    ) -> List[ClassObjective]:
        """Quota-normalized view of the unachieved, active objectives."""
        open_objectives = [o for o in objectives if o.is_active and not o.objective_achieved]
        return self.normalize(open_objectives, content_categories, enrollment_id, today)

    @staticmethod
    def history(objectives: Sequence[ClassObjective]) -> List[ClassObjective]:
        """All objectives, newest target date first (undated last)."""
        return sorted(
            objectives,
            key=lambda o: o.objective_date or date.min,
            reverse=True,
        )

    @staticmethod
    def validate(fields: Dict[str, Any]) -> None:
        """Check the required objective fields."""
        if not str(fields.get("category") or "").strip():
            raise ValidationError("Category is required", field="category")
        if not str(fields.get("objective") or "").strip():
            raise ValidationError("Objective is required", field="objective")
        if not str(fields.get("objective_date") or "").strip():
            raise ValidationError("Objective date is required", field="objective_date")

    def build_payload(self, fields: Dict[str, Any], enrollment_id: str) -> Dict[str, Any]:
        """
        Validate and shape an objective save payload.

        Bare dates are sent as midnight UTC ISO timestamps.
        """
        self.validate(fields)
        objective_date = fields["objective_date"]
        if isinstance(objective_date, date):
            objective_date = objective_date.isoformat()
        if "T" not in objective_date:
            objective_date = f"{objective_date}T00:00:00.000Z"

        teachers_note = fields.get("teachers_note")
        return {
            "enrollment_id": enrollment_id,
            "category_id": str(fields["category"]),
            "objective": str(fields["objective"]).strip(),
            "objective_date": objective_date,
            "teachers_note": (teachers_note or "").strip() or None,
            "objective_achieved": bool(fields.get("objective_achieved", False)),
        }

