import threading
from collections.abc import Iterable, Sequence
from contextlib import ExitStack
from datetime import datetime
from typing import Protocol

from shiftbook.errors import InvalidCapacity, ShiftCellNotFound
from shiftbook.models import (
    Booking,
    Employee,
    ReminderEvent,
    ReminderStatus,
    ShiftCell,
    ShiftKey,
)


class Store(Protocol):
    """
    Persistence capabilities the ledger and the scheduler rely on.

    reserve_slots must be atomic: either every key gets booked_count + 1
    or none does. upsert_booking must leave exactly one booking per
    (employee_id, cohort), however many submissions race.
    """

    def list_cells(self, cohort: str | None = None) -> list[ShiftCell]: ...

    def get_cell(self, key: ShiftKey) -> ShiftCell | None: ...

    def get_cell_by_id(self, cell_id: int) -> ShiftCell | None: ...

    def add_cells(self, cells: Iterable[ShiftCell]) -> list[ShiftCell]: ...

    def update_cell(
        self,
        cell_id: int,
        *,
        rate: str | None = None,
        capacity: int | None = None,
    ) -> ShiftCell: ...

    def rename_cells(
        self, cohort: str, *, field: str, old: str, new: str
    ) -> int: ...

    def delete_cells(
        self,
        cohort: str,
        *,
        location: str | None = None,
        date: str | None = None,
    ) -> int: ...

    def reserve_slots(self, keys: Sequence[ShiftKey]) -> ShiftKey | None: ...

    def save_booking(self, booking: Booking) -> Booking: ...

    def upsert_booking(self, booking: Booking) -> tuple[Booking, bool]: ...

    def get_booking(self, booking_id: int) -> Booking | None: ...

    def find_booking(
        self, employee_id: str, cohort: str | None = None
    ) -> Booking | None: ...

    def list_bookings(self) -> list[Booking]: ...

    def replace_employees(self, employees: Iterable[Employee]) -> int: ...

    def get_employee(self, employee_id: str) -> Employee | None: ...

    def add_reminder(self, event: ReminderEvent) -> ReminderEvent: ...

    def get_reminder(self, event_id: int) -> ReminderEvent | None: ...

    def list_reminders(
        self, status: ReminderStatus | None = None
    ) -> list[ReminderEvent]: ...

    def update_reminder(
        self,
        event_id: int,
        *,
        status: ReminderStatus,
        response: str | None,
        processed_at: datetime,
    ) -> ReminderEvent | None: ...

    def delete_pending_reminders(self, application_id: int) -> int: ...


def replace_booking(existing: Booking, incoming: Booking) -> Booking:
    """`existing` with the selection and contact details of `incoming`."""
    return existing.model_copy(
        update={
            "name": incoming.name or existing.name,
            "selected_shifts": incoming.selected_shifts,
            "line_id": incoming.line_id,
            "phone": incoming.phone,
            "updated_at": incoming.updated_at or incoming.submitted_at,
        }
    )


def _cell_sort_key(cell: ShiftCell) -> tuple:
    return (cell.cohort, cell.location, cell.date, cell.shift)


class InMemoryStore:
    """
    Store backed by dicts, used for tests and single-process deployments.

    Every cell has its own lock; a reservation takes the locks of all its
    cells in sorted key order so two batches can never deadlock.
    """

    def __init__(self) -> None:
        self._cells: dict[ShiftKey, ShiftCell] = {}
        self._bookings: dict[int, Booking] = {}
        self._reminders: dict[int, ReminderEvent] = {}
        self._employees: dict[str, Employee] = {}
        self._cell_locks: dict[ShiftKey, threading.Lock] = {}
        self._lock = threading.RLock()
        self._next_ids = {"cell": 1, "booking": 1, "reminder": 1}

    def _next_id(self, kind: str) -> int:
        value = self._next_ids[kind]
        self._next_ids[kind] = value + 1
        return value

    def _cell_lock(self, key: ShiftKey) -> threading.Lock:
        with self._lock:
            return self._cell_locks.setdefault(key, threading.Lock())

    # shift cells

    def list_cells(self, cohort: str | None = None) -> list[ShiftCell]:
        with self._lock:
            cells = [
                c.model_copy()
                for c in self._cells.values()
                if cohort is None or c.cohort == cohort
            ]
        return sorted(cells, key=_cell_sort_key)

    def get_cell(self, key: ShiftKey) -> ShiftCell | None:
        with self._lock:
            cell = self._cells.get(key)
            return cell.model_copy() if cell else None

    def get_cell_by_id(self, cell_id: int) -> ShiftCell | None:
        with self._lock:
            cell = next(
                (c for c in self._cells.values() if c.id == cell_id), None
            )
            return cell.model_copy() if cell else None

    def add_cells(self, cells: Iterable[ShiftCell]) -> list[ShiftCell]:
        created = []
        with self._lock:
            for cell in cells:
                if cell.key in self._cells:
                    continue
                stored = cell.model_copy(update={"id": self._next_id("cell")})
                self._cells[stored.key] = stored
                created.append(stored.model_copy())
        return created

    def update_cell(
        self,
        cell_id: int,
        *,
        rate: str | None = None,
        capacity: int | None = None,
    ) -> ShiftCell:
        existing = self.get_cell_by_id(cell_id)
        if existing is None:
            raise ShiftCellNotFound(f"Shift cell {cell_id} not found")

        with self._cell_lock(existing.key):
            cell = self._cells.get(existing.key)
            if cell is None:
                raise ShiftCellNotFound(f"Shift cell {cell_id} not found")
            if capacity is not None:
                if capacity < 1 or capacity < cell.booked_count:
                    raise InvalidCapacity(
                        f"Capacity {capacity} is below the "
                        f"{cell.booked_count} slots already booked"
                    )
                cell.capacity = capacity
            if rate is not None:
                cell.rate = rate
            return cell.model_copy()

    def rename_cells(
        self, cohort: str, *, field: str, old: str, new: str
    ) -> int:
        with self._lock:
            matching = [
                c
                for c in self._cells.values()
                if c.cohort == cohort and getattr(c, field) == old
            ]
            for cell in matching:
                del self._cells[cell.key]
                self._cell_locks.pop(cell.key, None)
                setattr(cell, field, new)
                self._cells[cell.key] = cell
        return len(matching)

    def delete_cells(
        self,
        cohort: str,
        *,
        location: str | None = None,
        date: str | None = None,
    ) -> int:
        with self._lock:
            doomed = [
                key
                for key, c in self._cells.items()
                if c.cohort == cohort
                and (location is None or c.location == location)
                and (date is None or c.date == date)
            ]
            for key in doomed:
                del self._cells[key]
                self._cell_locks.pop(key, None)
        return len(doomed)

    def reserve_slots(self, keys: Sequence[ShiftKey]) -> ShiftKey | None:
        """
        Increment booked_count of every key, or of none of them.
        Returns the first key found full (or missing), None on success.
        """
        unique = list(dict.fromkeys(keys))
        with ExitStack() as stack:
            for key in sorted(unique):
                stack.enter_context(self._cell_lock(key))

            cells = []
            for key in unique:
                cell = self._cells.get(key)
                if cell is None or cell.booked_count >= cell.capacity:
                    return key
                cells.append(cell)

            for cell in cells:
                cell.booked_count += 1
        return None

    # bookings

    def save_booking(self, booking: Booking) -> Booking:
        with self._lock:
            if booking.id is None:
                booking = booking.model_copy(
                    update={"id": self._next_id("booking")}
                )
            else:
                booking = booking.model_copy()
            self._bookings[booking.id] = booking
        return booking.model_copy()

    def upsert_booking(self, booking: Booking) -> tuple[Booking, bool]:
        """
        Store `booking` as the one booking of (employee_id, cohort).
        Returns the stored booking and whether an existing one was replaced.
        """
        with self._lock:
            existing = self._find_booking(booking.employee_id, booking.cohort)
            if existing is None:
                fresh = booking.model_copy(update={"id": None})
                return self.save_booking(fresh), False
            merged = replace_booking(existing, booking)
            self._bookings[merged.id] = merged
            return merged.model_copy(), True

    def get_booking(self, booking_id: int) -> Booking | None:
        with self._lock:
            booking = self._bookings.get(booking_id)
            return booking.model_copy() if booking else None

    def find_booking(
        self, employee_id: str, cohort: str | None = None
    ) -> Booking | None:
        with self._lock:
            latest = self._find_booking(employee_id, cohort)
            return latest.model_copy() if latest else None

    def _find_booking(
        self, employee_id: str, cohort: str | None
    ) -> Booking | None:
        matching = [
            b
            for b in self._bookings.values()
            if b.employee_id == employee_id
            and (cohort is None or b.cohort == cohort)
        ]
        if not matching:
            return None
        return max(matching, key=lambda b: (b.updated_at or b.submitted_at, b.id))

    def list_bookings(self) -> list[Booking]:
        with self._lock:
            return sorted(
                (b.model_copy() for b in self._bookings.values()),
                key=lambda b: b.id,
            )

    # employee roster

    def replace_employees(self, employees: Iterable[Employee]) -> int:
        with self._lock:
            self._employees = {e.employee_id: e.model_copy() for e in employees}
            return len(self._employees)

    def get_employee(self, employee_id: str) -> Employee | None:
        with self._lock:
            employee = self._employees.get(employee_id)
            return employee.model_copy() if employee else None

    # reminder events

    def add_reminder(self, event: ReminderEvent) -> ReminderEvent:
        with self._lock:
            stored = event.model_copy(update={"id": self._next_id("reminder")})
            self._reminders[stored.id] = stored
        return stored.model_copy()

    def get_reminder(self, event_id: int) -> ReminderEvent | None:
        with self._lock:
            event = self._reminders.get(event_id)
            return event.model_copy() if event else None

    def list_reminders(
        self, status: ReminderStatus | None = None
    ) -> list[ReminderEvent]:
        with self._lock:
            events = [
                e.model_copy()
                for e in self._reminders.values()
                if status is None or e.status == status
            ]
        return sorted(events, key=lambda e: (e.scheduled_for, e.id))

    def update_reminder(
        self,
        event_id: int,
        *,
        status: ReminderStatus,
        response: str | None,
        processed_at: datetime,
    ) -> ReminderEvent | None:
        with self._lock:
            event = self._reminders.get(event_id)
            if event is None:
                return None
            # sent and failed are terminal
            if event.status == ReminderStatus.PENDING:
                event.status = status
            event.response = response
            event.processed_at = processed_at
            return event.model_copy()

    def delete_pending_reminders(self, application_id: int) -> int:
        with self._lock:
            doomed = [
                e.id
                for e in self._reminders.values()
                if e.application_id == application_id
                and e.status == ReminderStatus.PENDING
            ]
            for event_id in doomed:
                del self._reminders[event_id]
        return len(doomed)
