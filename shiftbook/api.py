import logging
from datetime import UTC, datetime

from fastapi import APIRouter, FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from shiftbook.config import Settings, get_settings
from shiftbook.database import InMemoryStore, Store
from shiftbook.errors import (
    BookingNotFound,
    CapacityExceeded,
    CohortExists,
    EmployeeNotEligible,
    EmployeeNotFound,
    InvalidCapacity,
    MessagingNotConfigured,
    NoShiftsSelected,
    ShiftCellNotFound,
    UnknownShiftCell,
)
from shiftbook.ledger import BookingLedger
from shiftbook.matrix import CohortMatrix
from shiftbook.models import (
    Booking,
    ContactInfo,
    Employee,
    ReminderEvent,
    ShiftCell,
    ShiftSelection,
)
from shiftbook.notifier import LinePushClient, Messenger
from shiftbook.reminders import DEFAULT_MANUAL_TEMPLATE, ReminderScheduler
from shiftbook.sql_database import SqlStore

logger = logging.getLogger(__name__)

router = APIRouter()
admin_router = APIRouter(prefix="/admin")


class VerifyEmployeeRequest(BaseModel):
    employee_id: str = Field(min_length=1)


class SubmitApplicationRequest(BaseModel):
    employee_id: str = Field(min_length=1)
    name: str = ""
    cohort: str = Field(min_length=1)
    selected_shifts: list[ShiftSelection]
    line_id: str = Field(min_length=1)
    phone: str = Field(min_length=1)


class AmendApplicationRequest(BaseModel):
    employee_id: str = Field(min_length=1)
    selected_shifts: list[ShiftSelection]
    name: str = ""
    line_id: str | None = None
    phone: str | None = None


class EmployeeRosterRequest(BaseModel):
    employees: list[Employee] = Field(min_length=1)


class CohortRequest(BaseModel):
    cohort: str = Field(min_length=1)


class DuplicateCohortRequest(BaseModel):
    to_cohort: str = Field(min_length=1)


class LocationRequest(BaseModel):
    location: str = Field(min_length=1)


class DateRequest(BaseModel):
    date: str = Field(min_length=1)


class RenameRequest(BaseModel):
    new_value: str = Field(min_length=1)


class CellUpdateRequest(BaseModel):
    rate: str | None = None
    capacity: int | None = None


class ManualSendRequest(BaseModel):
    target: str = Field(min_length=1)
    shift_date: str = Field(min_length=1)
    template: str = DEFAULT_MANUAL_TEMPLATE
    values: dict[str, str] = Field(default_factory=dict)


def _ledger(request: Request) -> BookingLedger:
    return request.app.state.ledger


def _scheduler(request: Request) -> ReminderScheduler:
    return request.app.state.scheduler


def _matrix(request: Request) -> CohortMatrix:
    return request.app.state.matrix


@router.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/verify-employee")
def verify_employee(body: VerifyEmployeeRequest, request: Request) -> Employee:
    try:
        return _ledger(request).verify_employee(body.employee_id)
    except EmployeeNotFound:
        raise HTTPException(
            status_code=404,
            detail="Employee ID not found. Please check your ID or contact HR.",
        )
    except EmployeeNotEligible:
        raise HTTPException(
            status_code=403,
            detail="You are not eligible for shift applications. "
            "Please contact HR for more information.",
        )


@router.get("/shift-data/{cohort}")
def get_shift_data(cohort: str, request: Request) -> list[ShiftCell]:
    return _ledger(request).get_capacity_snapshot(cohort)


@router.post("/applications")
def submit_application(body: SubmitApplicationRequest, request: Request) -> dict:
    contact = ContactInfo(name=body.name, line_id=body.line_id, phone=body.phone)
    try:
        result = _ledger(request).submit(
            body.cohort, body.employee_id, body.selected_shifts, contact
        )
    except NoShiftsSelected as e:
        raise HTTPException(status_code=400, detail=str(e))
    except UnknownShiftCell as e:
        raise HTTPException(status_code=404, detail=str(e))
    except EmployeeNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except EmployeeNotEligible as e:
        raise HTTPException(status_code=403, detail=str(e))
    except CapacityExceeded as e:
        raise HTTPException(
            status_code=409,
            detail=f"{e}. Please choose different shifts and resubmit.",
        )

    reminders = _scheduler(request).schedule_for(result.booking)
    return {
        "message": "Application submitted successfully",
        "application_id": result.reference,
        "booking_id": result.booking.id,
        "amended": result.amended,
        "reminders_scheduled": len(reminders),
    }


@router.put("/applications/{booking_id}")
def amend_application(
    booking_id: int, body: AmendApplicationRequest, request: Request
) -> dict:
    contact = None
    if body.line_id and body.phone:
        contact = ContactInfo(
            name=body.name, line_id=body.line_id, phone=body.phone
        )
    try:
        result = _ledger(request).amend(
            booking_id, body.employee_id, body.selected_shifts, contact
        )
    except NoShiftsSelected as e:
        raise HTTPException(status_code=400, detail=str(e))
    except (BookingNotFound, EmployeeNotFound, UnknownShiftCell) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except EmployeeNotEligible as e:
        raise HTTPException(status_code=403, detail=str(e))
    except CapacityExceeded as e:
        raise HTTPException(
            status_code=409,
            detail=f"{e}. Please choose different shifts and resubmit.",
        )

    reminders = _scheduler(request).schedule_for(result.booking)
    return {
        "message": "Application updated successfully",
        "application_id": result.reference,
        "application": result.booking.model_dump(mode="json"),
        "reminders_scheduled": len(reminders),
    }


@router.get("/applications/{employee_id}")
def get_latest_application(
    employee_id: str, request: Request, cohort: str | None = None
) -> Booking:
    booking = _ledger(request).get_booking(employee_id, cohort)
    if booking is None:
        raise HTTPException(
            status_code=404, detail="No application found for this employee"
        )
    return booking


@admin_router.get("/applications")
def list_applications(request: Request) -> list[Booking]:
    return _ledger(request).list_bookings()


@admin_router.post("/employees")
def replace_roster(body: EmployeeRosterRequest, request: Request) -> dict:
    loaded = _ledger(request).load_roster(body.employees)
    return {"message": "Employee roster replaced", "employees_loaded": loaded}


@admin_router.get("/shift-data")
def list_all_shift_data(request: Request) -> list[ShiftCell]:
    return _matrix(request).list_cells()


@admin_router.put("/shift-data/{cell_id}")
def update_shift_cell(
    cell_id: int, body: CellUpdateRequest, request: Request
) -> ShiftCell:
    if body.rate is None and body.capacity is None:
        raise HTTPException(
            status_code=400,
            detail="At least one field (rate or capacity) is required",
        )
    try:
        return _matrix(request).update_cell(
            cell_id, rate=body.rate, capacity=body.capacity
        )
    except ShiftCellNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidCapacity as e:
        raise HTTPException(status_code=400, detail=str(e))


@admin_router.get("/cohorts")
def list_cohorts(request: Request) -> list[str]:
    return _matrix(request).list_cohorts()


@admin_router.post("/cohorts")
def create_cohort(body: CohortRequest, request: Request) -> dict:
    try:
        cells = _matrix(request).create_cohort(body.cohort)
    except CohortExists as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"message": "Cohort matrix created successfully", "cells": len(cells)}


@admin_router.post("/cohorts/{from_cohort}/duplicate")
def duplicate_cohort(
    from_cohort: str, body: DuplicateCohortRequest, request: Request
) -> dict:
    try:
        cells = _matrix(request).duplicate_cohort(from_cohort, body.to_cohort)
    except CohortExists as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ShiftCellNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"message": "Cohort matrix duplicated successfully", "cells": len(cells)}


@admin_router.delete("/cohorts/{cohort}")
def delete_cohort(cohort: str, request: Request) -> dict:
    removed = _matrix(request).delete_cohort(cohort)
    return {"message": "Cohort matrix deleted successfully", "cells": removed}


@admin_router.post("/cohorts/{cohort}/locations")
def add_location(cohort: str, body: LocationRequest, request: Request) -> dict:
    cells = _matrix(request).add_location(cohort, body.location)
    return {"message": "Location added successfully", "cells": len(cells)}


@admin_router.put("/cohorts/{cohort}/locations/{location}")
def rename_location(
    cohort: str, location: str, body: RenameRequest, request: Request
) -> dict:
    renamed = _matrix(request).rename_location(cohort, location, body.new_value)
    if not renamed:
        raise HTTPException(status_code=404, detail="Location not found")
    return {"message": "Location updated successfully", "cells": renamed}


@admin_router.delete("/cohorts/{cohort}/locations/{location}")
def delete_location(cohort: str, location: str, request: Request) -> dict:
    removed = _matrix(request).delete_location(cohort, location)
    return {"message": "Location deleted successfully", "cells": removed}


@admin_router.post("/cohorts/{cohort}/dates")
def add_date(cohort: str, body: DateRequest, request: Request) -> dict:
    cells = _matrix(request).add_date(cohort, body.date)
    return {"message": "Date added successfully", "cells": len(cells)}


@admin_router.put("/cohorts/{cohort}/dates/{date}")
def rename_date(
    cohort: str, date: str, body: RenameRequest, request: Request
) -> dict:
    renamed = _matrix(request).rename_date(cohort, date, body.new_value)
    if not renamed:
        raise HTTPException(status_code=404, detail="Date not found")
    return {"message": "Date updated successfully", "cells": renamed}


@admin_router.delete("/cohorts/{cohort}/dates/{date}")
def delete_date(cohort: str, date: str, request: Request) -> dict:
    removed = _matrix(request).delete_date(cohort, date)
    return {"message": "Date deleted successfully", "cells": removed}


@admin_router.get("/notifications")
def list_notifications(request: Request) -> list[ReminderEvent]:
    return _scheduler(request).list_events()


@admin_router.post("/notifications/process")
async def process_notifications(request: Request) -> dict:
    now = request.app.state.now_fn()
    try:
        events = await _scheduler(request).process_due(now)
    except MessagingNotConfigured as e:
        raise HTTPException(status_code=503, detail=str(e))

    sent = sum(1 for e in events if e.status == "sent")
    return {
        "processed": len(events),
        "sent": sent,
        "failed": len(events) - sent,
        "processed_at": now.isoformat(),
    }


@admin_router.post("/notifications/send")
async def send_manual_notification(body: ManualSendRequest, request: Request) -> dict:
    try:
        result = await _scheduler(request).manual_send(
            body.target, body.shift_date, template=body.template, values=body.values
        )
    except MessagingNotConfigured as e:
        raise HTTPException(status_code=503, detail=str(e))

    return {
        "success": result.outcome.success,
        "text": result.text,
        "response": result.outcome.text,
        "notification_id": result.event.id,
    }


def build_store(settings: Settings) -> Store:
    if settings.store_backend == "memory":
        return InMemoryStore()
    if settings.store_backend == "sql":
        if not settings.database_url:
            raise ValueError("DATABASE_URL is required when SHIFTBOOK_STORE=sql")
        return SqlStore.from_url(settings.database_url)
    raise ValueError(f"Unknown store backend: {settings.store_backend}")


def build_messenger(settings: Settings) -> Messenger | None:
    if not settings.line_configured:
        logger.warning("LINE credentials not configured; reminders cannot be sent")
        return None
    return LinePushClient(
        settings.line_channel_access_token,
        base_url=settings.line_api_base,
        timeout=settings.line_push_timeout,
    )


def create_app(
    settings: Settings | None = None,
    *,
    store: Store | None = None,
    messenger: Messenger | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    app = FastAPI(title="Shift Booking")
    store = store or build_store(settings)
    messenger = messenger or build_messenger(settings)

    app.state.store = store
    app.state.now_fn = lambda: datetime.now(UTC)

    def now_fn() -> datetime:
        return app.state.now_fn()

    app.state.ledger = BookingLedger(store, now_fn=now_fn)
    app.state.matrix = CohortMatrix(store)
    app.state.scheduler = ReminderScheduler(
        store, messenger=messenger, now_fn=now_fn
    )

    app.include_router(router)
    app.include_router(admin_router)
    return app
