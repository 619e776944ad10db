"""
Duplicate Intervention Detection

Finds recent open interventions for the same patient and category so
callers can warn before creating redundant work. Pure read.
"""

from datetime import datetime, timedelta

import structlog

from rxcare.db.store import InterventionFilter, InterventionStore, SortSpec
from rxcare.errors import ValidationError
from rxcare.models.base import utcnow
from rxcare.models.intervention import ClinicalIntervention, InterventionCategory, OPEN_STATUSES
from rxcare.tenancy import scope_for
from rxcare.validators import validate_object_id

logger = structlog.get_logger(__name__)


class DuplicateDetector:
    def __init__(self, store: InterventionStore, window_days: int = 30):
        self.store = store
        self.window_days = window_days

    async def find_duplicates(
        self,
        patient_id: str,
        category: InterventionCategory | str,
        tenant_id: str,
        exclude_id: str | None = None,
        now: datetime | None = None,
    ) -> list[ClinicalIntervention]:
        """
        Open same-category interventions identified within the window.

        The window boundary instant is included.
        """
        patient_id = validate_object_id(patient_id, "patient_id")
        if exclude_id is not None:
            exclude_id = validate_object_id(exclude_id, "exclude_id")
        try:
            category = InterventionCategory(category)
        except ValueError:
            raise ValidationError(f"Invalid category: {category!r}", field="category") from None
        since = (now or utcnow()) - timedelta(days=self.window_days)

        duplicates = await self.store.find(
            scope_for(tenant_id),
            InterventionFilter(
                patient_id=patient_id,
                category=category,
                statuses=OPEN_STATUSES,
                identified_from=since,
                exclude_id=exclude_id,
            ),
            sort=SortSpec("identified_date", descending=True),
        )
        if duplicates:
            logger.info(
                "Potential duplicate interventions found",
                patient_id=patient_id,
                category=category.value,
                count=len(duplicates),
            )
        return duplicates
