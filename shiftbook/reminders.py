"""
Reminder scheduling and delivery.

Every booked shift gets one reminder at 09:00 Taiwan time on the day before
the shift. Reminders only go out while the Taiwan clock is inside the
09:00-09:30 dispatch window; anything due outside it waits for the next
day's window. Dispatch is driven from outside (cron hitting the process
endpoint); nothing here runs on its own timer.
"""

import asyncio
import logging
import re
import threading
from collections.abc import Callable, Mapping
from datetime import UTC, datetime

from shiftbook.database import Store
from shiftbook.errors import (
    InvalidDateFormat,
    MessagingNotConfigured,
    ReminderNotFound,
)
from shiftbook.models import (
    Booking,
    DeliveryOutcome,
    DispatchOutcome,
    ReminderEvent,
    ReminderStatus,
)
from shiftbook.notifier import Messenger
from shiftbook.shift_dates import (
    in_dispatch_window,
    parse_shift_date,
    reminder_instant,
    taiwan_now,
)

logger = logging.getLogger(__name__)

NowFn = Callable[[], datetime]

PLACEHOLDERS = frozenset({"name", "location", "date", "time", "shift"})
_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")

SHIFT_NAMES = {"DS": "Day Shift", "NS": "Night Shift"}
SHIFT_HOURS = {"DS": "08:00 - 17:00", "NS": "18:00 - 03:00"}

DEFAULT_MANUAL_TEMPLATE = (
    "Hi {{name}}, reminder of your {{shift}} shift at {{location}} "
    "on {{date}} ({{time}})."
)


def render_template(template: str, values: Mapping[str, str]) -> str:
    """
    Substitute {{name}}-style placeholders. Unknown placeholders and
    placeholders without a value are left as written.
    """

    def _replace(match: re.Match) -> str:
        key = match.group(1)
        if key in PLACEHOLDERS and values.get(key) is not None:
            return str(values[key])
        return match.group(0)

    return _PLACEHOLDER.sub(_replace, template)


def reminder_text(name: str, location: str, date: str, shift: str) -> str:
    shift_name = SHIFT_NAMES.get(shift, shift)
    hours = SHIFT_HOURS.get(shift)
    lines = [
        "Shift Reminder",
        "",
        f"Hello {name}!" if name else "Hello!",
        "",
        f"You have a {shift_name} tomorrow:",
        f"Location: {location}",
        f"Date: {date}",
    ]
    if hours:
        lines.append(f"Time: {hours}")
    lines += [
        "",
        "If you have any questions or need to make changes, please contact "
        "us through this LINE account or call our support team.",
    ]
    return "\n".join(lines)


class ReminderScheduler:
    def __init__(
        self,
        store: Store,
        *,
        messenger: Messenger | None = None,
        now_fn: NowFn | None = None,
    ) -> None:
        self._store = store
        self._messenger = messenger
        self._now_fn = now_fn or (lambda: datetime.now(UTC))
        self._dispatch_lock = asyncio.Lock()
        self._schedule_lock = threading.Lock()

    def schedule_for(self, booking: Booking) -> list[ReminderEvent]:
        """
        Create one pending reminder per selected shift of `booking`.

        Pending reminders from an earlier version of the booking are dropped
        first; sent and failed ones stay as history. A shift whose date
        cannot be parsed is skipped.
        """
        now = self._now_fn()
        year = taiwan_now(now).year

        events = []
        for shift in booking.selected_shifts:
            try:
                shift_date = parse_shift_date(shift.date, year)
            except InvalidDateFormat as e:
                logger.warning(f"Skipping reminder for booking {booking.id}: {e}")
                continue

            events.append(
                ReminderEvent(
                    application_id=booking.id,
                    employee_id=booking.employee_id,
                    target=booking.line_id,
                    shift_location=shift.location,
                    shift_date=shift.date,
                    shift_type=shift.shift,
                    scheduled_for=reminder_instant(shift_date),
                    created_at=now,
                )
            )

        # two schedules of one booking must not interleave their delete and add
        with self._schedule_lock:
            replaced = self._store.delete_pending_reminders(booking.id)
            if replaced:
                logger.info(
                    f"Dropped {replaced} pending reminders of booking {booking.id}"
                )
            return [self._store.add_reminder(event) for event in events]

    def due_notifications(self, now: datetime | None = None) -> list[ReminderEvent]:
        now = now or self._now_fn()
        if now.tzinfo is None:
            now = now.replace(tzinfo=UTC)
        if not in_dispatch_window(now):
            return []
        return [
            e
            for e in self._store.list_reminders(ReminderStatus.PENDING)
            if e.scheduled_for <= now
        ]

    def record_outcome(
        self, event_id: int, outcome: DeliveryOutcome
    ) -> ReminderEvent:
        status = ReminderStatus.SENT if outcome.success else ReminderStatus.FAILED
        event = self._store.update_reminder(
            event_id,
            status=status,
            response=outcome.text,
            processed_at=self._now_fn(),
        )
        if event is None:
            raise ReminderNotFound(f"Reminder {event_id} not found")
        return event

    async def process_due(self, now: datetime | None = None) -> list[ReminderEvent]:
        """Send every due reminder and record how each delivery went."""
        messenger = self._require_messenger()
        async with self._dispatch_lock:
            due = self.due_notifications(now)
            if not due:
                return []
            results = await asyncio.gather(
                *(self._dispatch(messenger, event) for event in due)
            )
            return [event for event in results if event is not None]

    async def manual_send(
        self,
        target: str,
        shift_date_text: str,
        *,
        template: str = DEFAULT_MANUAL_TEMPLATE,
        values: Mapping[str, str] | None = None,
    ) -> DispatchOutcome:
        messenger = self._require_messenger()
        merged = {"date": shift_date_text, **(values or {})}
        if "time" not in merged and merged.get("shift") in SHIFT_HOURS:
            merged["time"] = SHIFT_HOURS[merged["shift"]]
        text = render_template(template, merged)

        outcome = await self._push(messenger, target, text)
        now = self._now_fn()
        event = self._store.add_reminder(
            ReminderEvent(
                application_id=0,
                target=target,
                shift_location=merged.get("location"),
                shift_date=shift_date_text,
                shift_type=merged.get("shift"),
                message=text,
                scheduled_for=now,
                status=(
                    ReminderStatus.SENT
                    if outcome.success
                    else ReminderStatus.FAILED
                ),
                response=outcome.text,
                created_at=now,
                processed_at=now,
            )
        )
        return DispatchOutcome(text=text, outcome=outcome, event=event)

    def list_events(self) -> list[ReminderEvent]:
        return sorted(
            self._store.list_reminders(),
            key=lambda e: (e.created_at, e.id),
            reverse=True,
        )

    def _require_messenger(self) -> Messenger:
        if self._messenger is None:
            raise MessagingNotConfigured(
                "LINE credentials not configured. Set LINE_CHANNEL_ACCESS_TOKEN "
                "and LINE_CHANNEL_SECRET."
            )
        return self._messenger

    async def _dispatch(
        self, messenger: Messenger, event: ReminderEvent
    ) -> ReminderEvent | None:
        if event.message:
            text = event.message
        else:
            booking = self._store.get_booking(event.application_id)
            text = reminder_text(
                booking.name if booking else "",
                event.shift_location or "",
                event.shift_date or "",
                event.shift_type or "",
            )

        outcome = await self._push(messenger, event.target, text)
        try:
            recorded = self.record_outcome(event.id, outcome)
        except ReminderNotFound:
            # the booking was rescheduled while the push was in flight
            logger.warning(
                f"Reminder {event.id} was replaced before its outcome could "
                f"be recorded: {outcome.text}"
            )
            return None
        if outcome.success:
            logger.info(
                f"Reminder {event.id} sent to {event.target} for "
                f"{event.shift_location} on {event.shift_date}"
            )
        else:
            logger.warning(
                f"Reminder {event.id} to {event.target} failed: {outcome.error}"
            )
        return recorded

    @staticmethod
    async def _push(
        messenger: Messenger, target: str, text: str
    ) -> DeliveryOutcome:
        try:
            return await messenger.push_text(target, text)
        except Exception as e:
            logger.exception(f"Unexpected error pushing to {target}")
            return DeliveryOutcome.failed(str(e) or "Unknown error occurred")
