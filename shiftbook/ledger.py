"""
Booking ledger: shift-cell capacity and applicant bookings.

Slots are reserved all-or-nothing through Store.reserve_slots. Amending a
booking books the new selection without releasing the slots of the previous
one, so capacity taken by an earlier selection stays taken.

Only employees on the roster, marked eligible, may book, and only in the
cohort the roster assigns them.
"""

import logging
from collections.abc import Callable, Iterable, Sequence
from datetime import UTC, datetime

from shiftbook.database import Store
from shiftbook.errors import (
    BookingNotFound,
    CapacityExceeded,
    EmployeeNotEligible,
    EmployeeNotFound,
    NoShiftsSelected,
    UnknownShiftCell,
)
from shiftbook.models import (
    Booking,
    BookingResult,
    ContactInfo,
    Employee,
    ShiftCell,
    ShiftSelection,
)

logger = logging.getLogger(__name__)

NowFn = Callable[[], datetime]

DEFAULT_COHORT = "A"


def normalize_employee_id(employee_id: str) -> str:
    return employee_id.strip().upper()


class BookingLedger:
    def __init__(self, store: Store, *, now_fn: NowFn | None = None) -> None:
        self._store = store
        self._now_fn = now_fn or (lambda: datetime.now(UTC))

    def load_roster(self, employees: Iterable[Employee]) -> int:
        """Replace the whole roster. Ids are normalized like lookups are."""
        roster = [
            e.model_copy(
                update={"employee_id": normalize_employee_id(e.employee_id)}
            )
            for e in employees
        ]
        count = self._store.replace_employees(roster)
        logger.info(f"Roster replaced with {count} employees")
        return count

    def verify_employee(self, employee_id: str) -> Employee:
        """
        Look up an employee on the roster.

        Raises EmployeeNotFound for unknown ids and EmployeeNotEligible for
        entries that may not book. The returned entry always has a cohort;
        entries without one default to cohort A.
        """
        employee = self._store.get_employee(normalize_employee_id(employee_id))
        if employee is None:
            raise EmployeeNotFound(f"Employee {employee_id} not found")
        if not employee.eligible:
            logger.info(f"Employee {employee.employee_id} is not eligible")
            raise EmployeeNotEligible(
                f"Employee {employee.employee_id} is not eligible "
                f"for shift applications"
            )
        if not employee.cohort:
            employee.cohort = DEFAULT_COHORT
        return employee

    def submit(
        self,
        cohort: str,
        employee_id: str,
        selections: Sequence[ShiftSelection],
        contact: ContactInfo,
    ) -> BookingResult:
        """
        Book every selected shift for `employee_id` in `cohort`.

        A second submission from the same applicant replaces the first
        booking (same id and reference) instead of creating another one,
        even when both arrive at once.
        """
        employee = self._eligible_for(employee_id, cohort)
        accepted, cells = self._reserve(cohort, selections)

        saved, amended = self._store.upsert_booking(
            Booking(
                employee_id=employee.employee_id,
                name=contact.name,
                cohort=cohort,
                selected_shifts=accepted,
                line_id=contact.line_id,
                phone=contact.phone,
                submitted_at=self._now_fn(),
            )
        )
        logger.info(
            f"Booking {saved.reference} accepted for {saved.employee_id} "
            f"({len(accepted)} shifts, cohort {cohort})"
        )
        return BookingResult(
            booking=saved,
            reference=saved.reference,
            amended=amended,
            cells=cells,
        )

    def amend(
        self,
        booking_id: int,
        employee_id: str,
        selections: Sequence[ShiftSelection],
        contact: ContactInfo | None = None,
    ) -> BookingResult:
        employee_id = normalize_employee_id(employee_id)
        existing = self._store.get_booking(booking_id)
        if existing is None or existing.employee_id != employee_id:
            raise BookingNotFound(f"Booking {booking_id} not found")
        self._eligible_for(employee_id, existing.cohort)

        accepted, cells = self._reserve(existing.cohort, selections)

        update = {"selected_shifts": accepted, "updated_at": self._now_fn()}
        if contact is not None:
            update.update(
                name=contact.name or existing.name,
                line_id=contact.line_id,
                phone=contact.phone,
            )
        saved = self._store.save_booking(existing.model_copy(update=update))
        logger.info(f"Booking {saved.reference} amended by {employee_id}")
        return BookingResult(
            booking=saved, reference=saved.reference, amended=True, cells=cells
        )

    def get_capacity_snapshot(self, cohort: str) -> list[ShiftCell]:
        return self._store.list_cells(cohort)

    def get_booking(
        self, employee_id: str, cohort: str | None = None
    ) -> Booking | None:
        return self._store.find_booking(
            normalize_employee_id(employee_id), cohort
        )

    def list_bookings(self) -> list[Booking]:
        return self._store.list_bookings()

    def _eligible_for(self, employee_id: str, cohort: str) -> Employee:
        employee = self.verify_employee(employee_id)
        if employee.cohort != cohort:
            logger.warning(
                f"Employee {employee.employee_id} of cohort {employee.cohort} "
                f"tried to book cohort {cohort}"
            )
            raise EmployeeNotEligible(
                f"Employee {employee.employee_id} may only book "
                f"cohort {employee.cohort}"
            )
        return employee

    def _reserve(
        self, cohort: str, selections: Sequence[ShiftSelection]
    ) -> tuple[list[ShiftSelection], list[ShiftCell]]:
        picked: dict = {}
        for selection in selections:
            picked.setdefault(selection.key_for(cohort), selection)
        unique = list(picked.values())
        if not unique:
            raise NoShiftsSelected("At least one shift must be selected")

        cells = []
        for selection in unique:
            cell = self._store.get_cell(selection.key_for(cohort))
            if cell is None:
                raise UnknownShiftCell(selection.key_for(cohort))
            cells.append(cell)

        full = self._store.reserve_slots([c.key for c in cells])
        if full is not None:
            # renamed or deleted since the lookup above
            if self._store.get_cell(full) is None:
                logger.warning(f"Submission rejected, {full} no longer exists")
                raise UnknownShiftCell(full)
            logger.warning(f"Submission rejected, {full} is fully booked")
            raise CapacityExceeded(full)

        accepted = [
            ShiftSelection(
                location=c.location, date=c.date, shift=c.shift, rate=c.rate
            )
            for c in cells
        ]
        refreshed = [self._store.get_cell(c.key) or c for c in cells]
        return accepted, refreshed
