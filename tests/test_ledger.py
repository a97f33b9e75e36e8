import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime

import pytest

from shiftbook.database import InMemoryStore
from shiftbook.errors import (
    BookingNotFound,
    CapacityExceeded,
    EmployeeNotEligible,
    EmployeeNotFound,
    NoShiftsSelected,
    UnknownShiftCell,
)
from shiftbook.ledger import BookingLedger
from shiftbook.models import ContactInfo, Employee, ShiftCell, ShiftKey, ShiftSelection


def _p(msg: str) -> None:
    print(msg, flush=True)


NOW = datetime(2024, 6, 1, 3, 0, tzinfo=UTC)


def _contact(name: str = "Alice") -> ContactInfo:
    return ContactInfo(name=name, line_id=f"U-{name.lower()}", phone="0912-345-678")


def _pick(location: str, date: str, shift: str = "DS") -> ShiftSelection:
    return ShiftSelection(location=location, date=date, shift=shift)


def _seed_roster(store: InMemoryStore) -> None:
    employees = [Employee(employee_id=f"E{i:03d}", name=f"user{i}", cohort="A") for i in range(100)]
    employees += [
        Employee(employee_id="B001", name="Bea", cohort="B"),
        Employee(employee_id="N001", name="Nolan", cohort=None),
        Employee(employee_id="X001", name="Xavier", eligible=False, cohort="A"),
    ]
    store.replace_employees(employees)


@pytest.fixture
def store() -> InMemoryStore:
    store = InMemoryStore()
    store.add_cells(
        [
            ShiftCell(cohort="A", location="FC1", date="13-Jun", shift="DS", rate="1x", capacity=1),
            ShiftCell(cohort="A", location="FC1", date="13-Jun", shift="SS", rate="1.5x", capacity=3),
            ShiftCell(cohort="A", location="FC2", date="Mon, Jun 16", shift="DS", rate="2x", capacity=2),
            ShiftCell(cohort="B", location="FC1", date="13-Jun", shift="DS", rate="1x", capacity=5),
        ]
    )
    _seed_roster(store)
    return store


@pytest.fixture
def ledger(store: InMemoryStore) -> BookingLedger:
    return BookingLedger(store, now_fn=lambda: NOW)


def test_submit_books_every_selected_cell(ledger: BookingLedger, store: InMemoryStore) -> None:
    result = ledger.submit(
        "A",
        "E001",
        [_pick("FC1", "13-Jun", "SS"), _pick("FC2", "Mon, Jun 16")],
        _contact(),
    )

    assert result.reference == f"APP-20240601-{result.booking.id:03d}"
    assert result.amended is False
    assert store.get_cell(ShiftKey("A", "FC1", "13-Jun", "SS")).booked_count == 1
    assert store.get_cell(ShiftKey("A", "FC2", "Mon, Jun 16", "DS")).booked_count == 1
    assert [c.booked_count for c in result.cells] == [1, 1]


def test_accepted_selections_round_trip_through_lookup(ledger: BookingLedger) -> None:
    ledger.submit(
        "A",
        "E001",
        [_pick("FC1", "13-Jun", "SS"), _pick("FC2", "Mon, Jun 16")],
        _contact(),
    )

    booking = ledger.get_booking("E001")
    assert booking is not None
    assert [(s.location, s.date, s.shift, s.rate) for s in booking.selected_shifts] == [
        ("FC1", "13-Jun", "SS", "1.5x"),
        ("FC2", "Mon, Jun 16", "DS", "2x"),
    ]
    assert booking.line_id == "U-alice"
    assert booking.phone == "0912-345-678"


def test_unknown_cell_rejects_whole_submission(ledger: BookingLedger, store: InMemoryStore) -> None:
    with pytest.raises(UnknownShiftCell) as exc:
        ledger.submit(
            "A",
            "E001",
            [_pick("FC1", "13-Jun", "SS"), _pick("FC9", "13-Jun")],
            _contact(),
        )

    assert exc.value.key == ShiftKey("A", "FC9", "13-Jun", "DS")
    assert store.get_cell(ShiftKey("A", "FC1", "13-Jun", "SS")).booked_count == 0
    assert ledger.get_booking("E001") is None


def test_cell_of_another_cohort_is_unknown(ledger: BookingLedger) -> None:
    with pytest.raises(UnknownShiftCell):
        ledger.submit("B", "B001", [_pick("FC2", "Mon, Jun 16")], _contact("Bea"))


def test_full_cell_rejects_batch_without_partial_commit(
    ledger: BookingLedger, store: InMemoryStore
) -> None:
    ledger.submit("A", "E001", [_pick("FC1", "13-Jun")], _contact())

    with pytest.raises(CapacityExceeded) as exc:
        ledger.submit(
            "A",
            "E002",
            [_pick("FC1", "13-Jun", "SS"), _pick("FC1", "13-Jun")],
            _contact("Bob"),
        )

    assert exc.value.key == ShiftKey("A", "FC1", "13-Jun", "DS")
    assert "FC1" in str(exc.value)
    # the SS cell earlier in the batch was not incremented
    assert store.get_cell(ShiftKey("A", "FC1", "13-Jun", "SS")).booked_count == 0
    assert ledger.get_booking("E002") is None


def test_empty_selection_is_rejected(ledger: BookingLedger) -> None:
    with pytest.raises(NoShiftsSelected):
        ledger.submit("A", "E001", [], _contact())


def test_duplicate_selection_counts_once(ledger: BookingLedger, store: InMemoryStore) -> None:
    result = ledger.submit(
        "A",
        "E001",
        [_pick("FC1", "13-Jun", "SS"), _pick("FC1", "13-Jun", "SS")],
        _contact(),
    )

    assert len(result.booking.selected_shifts) == 1
    assert store.get_cell(ShiftKey("A", "FC1", "13-Jun", "SS")).booked_count == 1


def test_resubmission_replaces_booking_without_releasing_slots(
    ledger: BookingLedger, store: InMemoryStore
) -> None:
    first = ledger.submit("A", "E001", [_pick("FC1", "13-Jun", "SS")], _contact())
    second = ledger.submit("A", "E001", [_pick("FC2", "Mon, Jun 16")], _contact())

    assert second.amended is True
    assert second.booking.id == first.booking.id
    assert second.reference == first.reference
    assert len(ledger.list_bookings()) == 1
    assert [s.location for s in ledger.get_booking("E001").selected_shifts] == ["FC2"]
    # earlier slot stays taken
    assert store.get_cell(ShiftKey("A", "FC1", "13-Jun", "SS")).booked_count == 1


def test_amend_applies_same_capacity_rules(ledger: BookingLedger, store: InMemoryStore) -> None:
    booking = ledger.submit("A", "E001", [_pick("FC1", "13-Jun", "SS")], _contact()).booking
    ledger.submit("A", "E002", [_pick("FC1", "13-Jun")], _contact("Bob"))

    with pytest.raises(CapacityExceeded):
        ledger.amend(booking.id, "E001", [_pick("FC1", "13-Jun")])

    result = ledger.amend(
        booking.id, "E001", [_pick("FC2", "Mon, Jun 16")], _contact("Alicia")
    )
    assert result.amended is True
    assert result.booking.name == "Alicia"
    assert result.booking.updated_at == NOW
    assert store.get_cell(ShiftKey("A", "FC1", "13-Jun", "SS")).booked_count == 1
    assert store.get_cell(ShiftKey("A", "FC2", "Mon, Jun 16", "DS")).booked_count == 1


def test_amend_requires_matching_identity(ledger: BookingLedger) -> None:
    booking = ledger.submit("A", "E001", [_pick("FC1", "13-Jun", "SS")], _contact()).booking

    with pytest.raises(BookingNotFound):
        ledger.amend(booking.id, "E999", [_pick("FC1", "13-Jun", "SS")])
    with pytest.raises(BookingNotFound):
        ledger.amend(12345, "E001", [_pick("FC1", "13-Jun", "SS")])


def test_capacity_snapshot_is_stable_without_submissions(ledger: BookingLedger) -> None:
    first = ledger.get_capacity_snapshot("A")
    second = ledger.get_capacity_snapshot("A")

    assert first == second
    assert [c.key for c in first] == sorted(c.key for c in first)
    assert {c.cohort for c in first} == {"A"}


def test_snapshot_is_a_copy(ledger: BookingLedger) -> None:
    snapshot = ledger.get_capacity_snapshot("A")
    snapshot[0].booked_count = 99

    assert ledger.get_capacity_snapshot("A")[0].booked_count == 0


@pytest.mark.parametrize("capacity, callers", [(1, 2), (5, 40), (12, 12)])
def test_concurrent_submissions_never_overbook(capacity: int, callers: int) -> None:
    store = InMemoryStore()
    store.add_cells(
        [ShiftCell(cohort="A", location="FC1", date="13-Jun", shift="DS", rate="1x", capacity=capacity)]
    )
    _seed_roster(store)
    ledger = BookingLedger(store)
    barrier = threading.Barrier(callers)

    def _attempt(i: int) -> str:
        barrier.wait()
        try:
            ledger.submit("A", f"E{i:03d}", [_pick("FC1", "13-Jun")], _contact(f"user{i}"))
        except CapacityExceeded:
            return "full"
        return "booked"

    with ThreadPoolExecutor(max_workers=callers) as pool:
        outcomes = list(pool.map(_attempt, range(callers)))

    _p(f"capacity={capacity} callers={callers} outcomes={sorted(outcomes)}")
    cell = store.get_cell(ShiftKey("A", "FC1", "13-Jun", "DS"))
    assert outcomes.count("booked") == min(capacity, callers)
    assert outcomes.count("full") == callers - min(capacity, callers)
    assert cell.booked_count == min(capacity, callers)
    assert cell.booked_count <= cell.capacity


def test_overlapping_batches_do_not_deadlock_or_overbook() -> None:
    store = InMemoryStore()
    store.add_cells(
        [
            ShiftCell(cohort="A", location="FC1", date="13-Jun", shift="DS", rate="1x", capacity=10),
            ShiftCell(cohort="A", location="FC2", date="13-Jun", shift="DS", rate="1x", capacity=10),
        ]
    )
    _seed_roster(store)
    ledger = BookingLedger(store)
    forward = [_pick("FC1", "13-Jun"), _pick("FC2", "13-Jun")]
    backward = list(reversed(forward))

    def _attempt(i: int) -> bool:
        try:
            ledger.submit("A", f"E{i:03d}", forward if i % 2 else backward, _contact())
        except CapacityExceeded:
            return False
        return True

    with ThreadPoolExecutor(max_workers=16) as pool:
        results = list(pool.map(_attempt, range(30)))

    assert results.count(True) == 10
    for cell in store.list_cells("A"):
        assert cell.booked_count == 10


def test_verify_employee_normalizes_id_and_defaults_cohort(ledger: BookingLedger) -> None:
    employee = ledger.verify_employee("  e001 ")
    assert (employee.employee_id, employee.name, employee.cohort) == ("E001", "user1", "A")

    assert ledger.verify_employee("N001").cohort == "A"

    with pytest.raises(EmployeeNotFound):
        ledger.verify_employee("E999X")
    with pytest.raises(EmployeeNotEligible):
        ledger.verify_employee("X001")


def test_ineligible_or_unknown_employee_cannot_book(ledger: BookingLedger, store: InMemoryStore) -> None:
    with pytest.raises(EmployeeNotEligible):
        ledger.submit("A", "X001", [_pick("FC1", "13-Jun", "SS")], _contact("Xavier"))
    with pytest.raises(EmployeeNotFound):
        ledger.submit("A", "Z404", [_pick("FC1", "13-Jun", "SS")], _contact())

    assert store.get_cell(ShiftKey("A", "FC1", "13-Jun", "SS")).booked_count == 0
    assert ledger.list_bookings() == []


def test_employee_may_only_book_their_own_cohort(ledger: BookingLedger, store: InMemoryStore) -> None:
    with pytest.raises(EmployeeNotEligible):
        ledger.submit("B", "E001", [_pick("FC1", "13-Jun")], _contact())

    assert store.get_cell(ShiftKey("B", "FC1", "13-Jun", "DS")).booked_count == 0

    result = ledger.submit("B", "b001", [_pick("FC1", "13-Jun")], _contact("Bea"))
    assert result.booking.employee_id == "B001"


def test_amend_rechecks_roster(ledger: BookingLedger, store: InMemoryStore) -> None:
    booking = ledger.submit("A", "E001", [_pick("FC1", "13-Jun", "SS")], _contact()).booking
    store.replace_employees([Employee(employee_id="E001", name="user1", eligible=False, cohort="A")])

    with pytest.raises(EmployeeNotEligible):
        ledger.amend(booking.id, "E001", [_pick("FC2", "Mon, Jun 16")])

    assert store.get_cell(ShiftKey("A", "FC2", "Mon, Jun 16", "DS")).booked_count == 0


def test_concurrent_submissions_of_one_applicant_keep_one_booking(store: InMemoryStore) -> None:
    ledger = BookingLedger(store, now_fn=lambda: NOW)
    callers = 12
    barrier = threading.Barrier(callers)

    def _attempt(i: int) -> int:
        barrier.wait()
        return ledger.submit("A", "E001", [_pick("FC1", "13-Jun", "SS")], _contact(f"user{i}")).booking.id

    with ThreadPoolExecutor(max_workers=callers) as pool:
        ids = list(pool.map(_attempt, range(callers)))

    _p(f"booking ids={sorted(set(ids))}")
    assert len(set(ids)) == 1
    assert len(ledger.list_bookings()) == 1
    assert ledger.get_booking("E001", "A").id == ids[0]


class _RenamingStore(InMemoryStore):
    """Renames a location between the ledger's lookup and the reservation."""

    def reserve_slots(self, keys):
        self.rename_cells("A", field="location", old="FC1", new="FC1-North")
        return super().reserve_slots(keys)


def test_cell_renamed_during_reservation_is_reported_unknown() -> None:
    store = _RenamingStore()
    store.add_cells(
        [ShiftCell(cohort="A", location="FC1", date="13-Jun", shift="SS", rate="1.5x", capacity=3)]
    )
    _seed_roster(store)
    ledger = BookingLedger(store, now_fn=lambda: NOW)

    with pytest.raises(UnknownShiftCell) as exc:
        ledger.submit("A", "E001", [_pick("FC1", "13-Jun", "SS")], _contact())

    assert exc.value.key == ShiftKey("A", "FC1", "13-Jun", "SS")
    assert store.get_cell(ShiftKey("A", "FC1-North", "13-Jun", "SS")).booked_count == 0
