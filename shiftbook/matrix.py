"""
Admin-side provisioning of the cohort x location x date x shift matrix.
"""

import logging

from shiftbook.database import Store
from shiftbook.errors import CohortExists, ShiftCellNotFound
from shiftbook.models import ShiftCell

logger = logging.getLogger(__name__)

SHIFT_TYPES = ("DS", "SS")
DEFAULT_RATES = {"DS": "1x", "SS": "1.5x"}
DEFAULT_CAPACITY = 10
DEFAULT_LOCATIONS = ("FC1", "FC2", "FC3", "FC4", "FC5")
DEFAULT_DATES = ("10-Jun", "11-Jun", "12-Jun")


def _unique(values) -> list[str]:
    return list(dict.fromkeys(values))


class CohortMatrix:
    def __init__(self, store: Store) -> None:
        self._store = store

    def list_cohorts(self) -> list[str]:
        return sorted({c.cohort for c in self._store.list_cells()})

    def list_cells(self, cohort: str | None = None) -> list[ShiftCell]:
        return self._store.list_cells(cohort)

    def create_cohort(self, cohort: str) -> list[ShiftCell]:
        """
        Provision a new cohort over every location and date already in use,
        or over the default grid when nothing has been provisioned yet.
        """
        if self._store.list_cells(cohort):
            raise CohortExists(f"Cohort {cohort} already exists")

        existing = self._store.list_cells()
        locations = _unique(c.location for c in existing) or DEFAULT_LOCATIONS
        dates = _unique(c.date for c in existing) or DEFAULT_DATES
        created = self._store.add_cells(
            self._default_cell(cohort, location, date, shift)
            for location in locations
            for date in dates
            for shift in SHIFT_TYPES
        )
        logger.info(f"Created cohort {cohort} with {len(created)} shift cells")
        return created

    def duplicate_cohort(self, source: str, target: str) -> list[ShiftCell]:
        if self._store.list_cells(target):
            raise CohortExists(f"Cohort {target} already exists")
        source_cells = self._store.list_cells(source)
        if not source_cells:
            raise ShiftCellNotFound(f"Cohort {source} has no shift cells")

        return self._store.add_cells(
            c.model_copy(update={"id": None, "cohort": target, "booked_count": 0})
            for c in source_cells
        )

    def delete_cohort(self, cohort: str) -> int:
        removed = self._store.delete_cells(cohort)
        logger.info(f"Deleted cohort {cohort} ({removed} shift cells)")
        return removed

    def add_location(self, cohort: str, location: str) -> list[ShiftCell]:
        dates = _unique(c.date for c in self._store.list_cells(cohort))
        return self._store.add_cells(
            self._default_cell(cohort, location, date, shift)
            for date in dates or DEFAULT_DATES
            for shift in SHIFT_TYPES
        )

    def add_date(self, cohort: str, date: str) -> list[ShiftCell]:
        locations = _unique(c.location for c in self._store.list_cells(cohort))
        return self._store.add_cells(
            self._default_cell(cohort, location, date, shift)
            for location in locations or DEFAULT_LOCATIONS
            for shift in SHIFT_TYPES
        )

    def rename_location(self, cohort: str, old: str, new: str) -> int:
        return self._store.rename_cells(cohort, field="location", old=old, new=new)

    def rename_date(self, cohort: str, old: str, new: str) -> int:
        return self._store.rename_cells(cohort, field="date", old=old, new=new)

    def delete_location(self, cohort: str, location: str) -> int:
        return self._store.delete_cells(cohort, location=location)

    def delete_date(self, cohort: str, date: str) -> int:
        return self._store.delete_cells(cohort, date=date)

    def update_cell(
        self,
        cell_id: int,
        *,
        rate: str | None = None,
        capacity: int | None = None,
    ) -> ShiftCell:
        return self._store.update_cell(cell_id, rate=rate, capacity=capacity)

    @staticmethod
    def _default_cell(
        cohort: str, location: str, date: str, shift: str
    ) -> ShiftCell:
        return ShiftCell(
            cohort=cohort,
            location=location,
            date=date,
            shift=shift,
            rate=DEFAULT_RATES.get(shift, "1x"),
            capacity=DEFAULT_CAPACITY,
        )
