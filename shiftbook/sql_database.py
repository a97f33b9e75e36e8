"""
Relational store backed by SQLAlchemy.

The capacity check and the increment happen in one conditional UPDATE per
cell, all inside a single transaction that is rolled back as soon as one
cell refuses the increment.
"""

import logging
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    case,
    create_engine,
    delete,
    func,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.types import TypeDecorator

from shiftbook.database import replace_booking
from shiftbook.errors import InvalidCapacity, ShiftCellNotFound
from shiftbook.models import (
    Booking,
    Employee,
    ReminderEvent,
    ReminderStatus,
    ShiftCell,
    ShiftKey,
)

logger = logging.getLogger(__name__)

Base = declarative_base()


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, hands back aware datetimes."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(UTC)
        return value.replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=UTC)


class ShiftCellRow(Base):
    __tablename__ = "shift_data"
    __table_args__ = (
        UniqueConstraint(
            "cohort", "location", "date", "shift", name="uq_shift_cell"
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    cohort = Column(String(50), nullable=False, index=True)
    location = Column(String(100), nullable=False)
    date = Column(String(50), nullable=False)
    shift = Column(String(10), nullable=False)
    rate = Column(String(20), nullable=False)
    capacity = Column(Integer, nullable=False, default=10)
    booked_count = Column(Integer, nullable=False, default=0)


class BookingRow(Base):
    __tablename__ = "applications"
    __table_args__ = (
        UniqueConstraint(
            "employee_id", "cohort", name="uq_application_identity"
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    employee_id = Column(String(50), nullable=False, index=True)
    name = Column(String(200), nullable=False, default="")
    cohort = Column(String(50), nullable=False)
    selected_shifts = Column(JSON, nullable=False)
    line_id = Column(String(100), nullable=False)
    phone = Column(String(50), nullable=False)
    submitted_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime, nullable=True)


class EmployeeRow(Base):
    __tablename__ = "employees"

    employee_id = Column(String(50), primary_key=True)
    name = Column(String(200), nullable=False, default="")
    eligible = Column(Boolean, nullable=False, default=True)
    cohort = Column(String(50), nullable=True)


class ReminderRow(Base):
    __tablename__ = "line_notifications"

    id = Column(Integer, primary_key=True, index=True)
    application_id = Column(Integer, nullable=False, index=True)
    employee_id = Column(String(50), nullable=True)
    target = Column(String(100), nullable=False)
    shift_location = Column(String(100), nullable=True)
    shift_date = Column(String(50), nullable=True)
    shift_type = Column(String(10), nullable=True)
    message = Column(Text, nullable=True)
    scheduled_for = Column(UTCDateTime, nullable=False, index=True)
    status = Column(String(20), nullable=False, default="pending", index=True)
    response = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, nullable=False)
    processed_at = Column(UTCDateTime, nullable=True)


def _key_filter(key: ShiftKey):
    return (
        ShiftCellRow.cohort == key.cohort,
        ShiftCellRow.location == key.location,
        ShiftCellRow.date == key.date,
        ShiftCellRow.shift == key.shift,
    )


def create_store_engine(database_url: str) -> Engine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        # writers queue on the database lock instead of failing fast
        connect_args["timeout"] = 30
    return create_engine(
        database_url, pool_pre_ping=True, connect_args=connect_args
    )


class SqlStore:
    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._session_factory = sessionmaker(
            bind=engine, autoflush=False, expire_on_commit=False
        )
        Base.metadata.create_all(engine)

    @classmethod
    def from_url(cls, database_url: str) -> "SqlStore":
        return cls(create_store_engine(database_url))

    # shift cells

    def list_cells(self, cohort: str | None = None) -> list[ShiftCell]:
        stmt = select(ShiftCellRow).order_by(
            ShiftCellRow.cohort,
            ShiftCellRow.location,
            ShiftCellRow.date,
            ShiftCellRow.shift,
        )
        if cohort is not None:
            stmt = stmt.where(ShiftCellRow.cohort == cohort)
        with self._session_factory() as session:
            rows = session.scalars(stmt).all()
            return [ShiftCell.model_validate(r) for r in rows]

    def get_cell(self, key: ShiftKey) -> ShiftCell | None:
        with self._session_factory() as session:
            row = session.scalars(
                select(ShiftCellRow).where(*_key_filter(key))
            ).first()
            return ShiftCell.model_validate(row) if row else None

    def get_cell_by_id(self, cell_id: int) -> ShiftCell | None:
        with self._session_factory() as session:
            row = session.get(ShiftCellRow, cell_id)
            return ShiftCell.model_validate(row) if row else None

    def add_cells(self, cells: Iterable[ShiftCell]) -> list[ShiftCell]:
        created = []
        with self._session_factory() as session:
            for cell in cells:
                exists = session.scalars(
                    select(ShiftCellRow.id).where(*_key_filter(cell.key))
                ).first()
                if exists is not None:
                    continue
                row = ShiftCellRow(**cell.model_dump(exclude={"id"}))
                session.add(row)
                created.append(row)
            session.commit()
            return [ShiftCell.model_validate(r) for r in created]

    def update_cell(
        self,
        cell_id: int,
        *,
        rate: str | None = None,
        capacity: int | None = None,
    ) -> ShiftCell:
        values = {}
        if rate is not None:
            values["rate"] = rate
        if capacity is not None:
            if capacity < 1:
                raise InvalidCapacity("Capacity must be positive")
            values["capacity"] = capacity

        with self._session_factory() as session:
            stmt = (
                update(ShiftCellRow)
                .where(ShiftCellRow.id == cell_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if capacity is not None:
                stmt = stmt.where(ShiftCellRow.booked_count <= capacity)
            if values:
                result = session.execute(stmt)
                session.commit()
                updated = result.rowcount
            else:
                updated = 1

            row = session.get(ShiftCellRow, cell_id)
            if row is None:
                raise ShiftCellNotFound(f"Shift cell {cell_id} not found")
            if updated == 0:
                raise InvalidCapacity(
                    f"Capacity {capacity} is below the "
                    f"{row.booked_count} slots already booked"
                )
            session.refresh(row)
            return ShiftCell.model_validate(row)

    def rename_cells(
        self, cohort: str, *, field: str, old: str, new: str
    ) -> int:
        column = getattr(ShiftCellRow, field)
        with self._session_factory() as session:
            result = session.execute(
                update(ShiftCellRow)
                .where(ShiftCellRow.cohort == cohort, column == old)
                .values({field: new})
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount

    def delete_cells(
        self,
        cohort: str,
        *,
        location: str | None = None,
        date: str | None = None,
    ) -> int:
        stmt = delete(ShiftCellRow).where(ShiftCellRow.cohort == cohort)
        if location is not None:
            stmt = stmt.where(ShiftCellRow.location == location)
        if date is not None:
            stmt = stmt.where(ShiftCellRow.date == date)
        with self._session_factory() as session:
            result = session.execute(
                stmt.execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount

    def reserve_slots(self, keys: Sequence[ShiftKey]) -> ShiftKey | None:
        with self._session_factory() as session:
            for key in sorted(dict.fromkeys(keys)):
                result = session.execute(
                    update(ShiftCellRow)
                    .where(
                        *_key_filter(key),
                        ShiftCellRow.booked_count < ShiftCellRow.capacity,
                    )
                    .values(booked_count=ShiftCellRow.booked_count + 1)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    session.rollback()
                    logger.info(f"Reservation rolled back, {key} is full")
                    return key
            session.commit()
        return None

    # bookings

    def save_booking(self, booking: Booking) -> Booking:
        data = booking.model_dump(exclude={"id"})
        with self._session_factory() as session:
            row = None
            if booking.id is not None:
                row = session.get(BookingRow, booking.id)
            if row is None:
                row = BookingRow(**data)
                session.add(row)
            else:
                for name, value in data.items():
                    setattr(row, name, value)
            session.commit()
            session.refresh(row)
            return Booking.model_validate(row)

    def upsert_booking(self, booking: Booking) -> tuple[Booking, bool]:
        """
        Insert the booking of (employee_id, cohort), or replace the stored
        one. A concurrent insert for the same identity trips
        uq_application_identity and falls back to replacing it.
        """
        data = booking.model_dump(exclude={"id"})
        with self._session_factory() as session:
            row = self._identity_row(session, booking)
            if row is None:
                row = BookingRow(**data)
                session.add(row)
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    logger.info(
                        f"Booking of {booking.employee_id} in {booking.cohort} "
                        f"inserted concurrently, replacing it"
                    )
                    row = self._identity_row(session, booking)
                else:
                    session.refresh(row)
                    return Booking.model_validate(row), False

            merged = replace_booking(Booking.model_validate(row), booking)
            for name, value in merged.model_dump(exclude={"id"}).items():
                setattr(row, name, value)
            session.commit()
            session.refresh(row)
            return Booking.model_validate(row), True

    @staticmethod
    def _identity_row(session, booking: Booking) -> BookingRow | None:
        return session.scalars(
            select(BookingRow).where(
                BookingRow.employee_id == booking.employee_id,
                BookingRow.cohort == booking.cohort,
            )
        ).first()

    def get_booking(self, booking_id: int) -> Booking | None:
        with self._session_factory() as session:
            row = session.get(BookingRow, booking_id)
            return Booking.model_validate(row) if row else None

    def find_booking(
        self, employee_id: str, cohort: str | None = None
    ) -> Booking | None:
        stmt = (
            select(BookingRow)
            .where(BookingRow.employee_id == employee_id)
            .order_by(
                func.coalesce(
                    BookingRow.updated_at, BookingRow.submitted_at
                ).desc(),
                BookingRow.id.desc(),
            )
        )
        if cohort is not None:
            stmt = stmt.where(BookingRow.cohort == cohort)
        with self._session_factory() as session:
            row = session.scalars(stmt).first()
            return Booking.model_validate(row) if row else None

    def list_bookings(self) -> list[Booking]:
        with self._session_factory() as session:
            rows = session.scalars(select(BookingRow).order_by(BookingRow.id))
            return [Booking.model_validate(r) for r in rows]

    # employee roster

    def replace_employees(self, employees: Iterable[Employee]) -> int:
        with self._session_factory() as session:
            session.execute(delete(EmployeeRow))
            rows = [EmployeeRow(**e.model_dump()) for e in employees]
            session.add_all(rows)
            session.commit()
            return len(rows)

    def get_employee(self, employee_id: str) -> Employee | None:
        with self._session_factory() as session:
            row = session.get(EmployeeRow, employee_id)
            return Employee.model_validate(row) if row else None

    # reminder events

    def add_reminder(self, event: ReminderEvent) -> ReminderEvent:
        with self._session_factory() as session:
            data = event.model_dump(exclude={"id"})
            data["status"] = event.status.value
            row = ReminderRow(**data)
            session.add(row)
            session.commit()
            session.refresh(row)
            return ReminderEvent.model_validate(row)

    def get_reminder(self, event_id: int) -> ReminderEvent | None:
        with self._session_factory() as session:
            row = session.get(ReminderRow, event_id)
            return ReminderEvent.model_validate(row) if row else None

    def list_reminders(
        self, status: ReminderStatus | None = None
    ) -> list[ReminderEvent]:
        stmt = select(ReminderRow).order_by(
            ReminderRow.scheduled_for, ReminderRow.id
        )
        if status is not None:
            stmt = stmt.where(ReminderRow.status == status.value)
        with self._session_factory() as session:
            return [
                ReminderEvent.model_validate(r) for r in session.scalars(stmt)
            ]

    def update_reminder(
        self,
        event_id: int,
        *,
        status: ReminderStatus,
        response: str | None,
        processed_at: datetime,
    ) -> ReminderEvent | None:
        with self._session_factory() as session:
            row = session.get(ReminderRow, event_id)
            if row is None:
                return None
            session.execute(
                update(ReminderRow)
                .where(ReminderRow.id == event_id)
                .values(
                    # sent and failed are terminal
                    status=case(
                        (
                            ReminderRow.status == ReminderStatus.PENDING.value,
                            status.value,
                        ),
                        else_=ReminderRow.status,
                    ),
                    response=response,
                    processed_at=processed_at,
                )
                .execution_options(synchronize_session=False)
            )
            session.commit()
            session.refresh(row)
            return ReminderEvent.model_validate(row)

    def delete_pending_reminders(self, application_id: int) -> int:
        with self._session_factory() as session:
            result = session.execute(
                delete(ReminderRow)
                .where(
                    ReminderRow.application_id == application_id,
                    ReminderRow.status == ReminderStatus.PENDING.value,
                )
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount
