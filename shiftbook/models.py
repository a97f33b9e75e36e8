"""
Domain models for shift booking and reminder delivery.
"""

from datetime import datetime
from enum import StrEnum
from typing import NamedTuple

from pydantic import BaseModel, ConfigDict, Field


class ShiftKey(NamedTuple):
    cohort: str
    location: str
    date: str
    shift: str

    def __str__(self) -> str:
        return f"{self.cohort}/{self.location}/{self.date}/{self.shift}"


class ShiftCell(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int | None = None
    cohort: str
    location: str
    date: str  # display text, e.g. "13-Jun" or "Mon, Jun 16"
    shift: str  # DS, SS, NS
    rate: str  # opaque display value, e.g. "1.5x"
    capacity: int = Field(default=10, gt=0)
    booked_count: int = Field(default=0, ge=0)

    @property
    def key(self) -> ShiftKey:
        return ShiftKey(self.cohort, self.location, self.date, self.shift)

    @property
    def available(self) -> int:
        return self.capacity - self.booked_count


class ShiftSelection(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    location: str
    date: str
    shift: str
    rate: str | None = None  # filled from the cell when accepted

    def key_for(self, cohort: str) -> ShiftKey:
        return ShiftKey(cohort, self.location, self.date, self.shift)


class Employee(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    employee_id: str = Field(min_length=1)
    name: str = ""
    eligible: bool = True
    cohort: str | None = None


class ContactInfo(BaseModel):
    name: str = ""
    line_id: str = Field(min_length=1)
    phone: str = Field(min_length=1)


class Booking(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int | None = None
    employee_id: str
    name: str = ""
    cohort: str
    selected_shifts: list[ShiftSelection] = Field(default_factory=list)
    line_id: str
    phone: str
    submitted_at: datetime
    updated_at: datetime | None = None

    @property
    def reference(self) -> str:
        """Human-presentable id, stable across amendments."""
        return f"APP-{self.submitted_at:%Y%m%d}-{self.id or 0:03d}"


class BookingResult(BaseModel):
    booking: Booking
    reference: str
    amended: bool = False
    cells: list[ShiftCell] = Field(default_factory=list)


class ReminderStatus(StrEnum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class ReminderEvent(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int | None = None
    application_id: int  # 0 for manual sends
    employee_id: str | None = None
    target: str  # LINE user id
    shift_location: str | None = None
    shift_date: str | None = None
    shift_type: str | None = None
    message: str | None = None
    scheduled_for: datetime  # UTC
    status: ReminderStatus = ReminderStatus.PENDING
    response: str | None = None
    created_at: datetime
    processed_at: datetime | None = None


class DeliveryOutcome(BaseModel):
    success: bool
    response: str | None = None
    error: str | None = None

    @property
    def text(self) -> str | None:
        return self.response if self.success else self.error

    @classmethod
    def ok(cls, response: str) -> "DeliveryOutcome":
        return cls(success=True, response=response)

    @classmethod
    def failed(cls, error: str) -> "DeliveryOutcome":
        return cls(success=False, error=error)


class DispatchOutcome(BaseModel):
    text: str
    outcome: DeliveryOutcome
    event: ReminderEvent
