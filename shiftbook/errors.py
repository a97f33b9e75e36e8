"""
Exceptions raised by the booking ledger and the reminder scheduler.
"""

from shiftbook.models import ShiftKey


class BookingError(Exception):
    """Base exception for ledger and cohort matrix operations"""


class UnknownShiftCell(BookingError):
    """Raised when a selection does not resolve to a cell of the cohort"""

    def __init__(self, key: ShiftKey) -> None:
        super().__init__(f"Shift {key} does not exist")
        self.key = key


class CapacityExceeded(BookingError):
    """Raised when a selected cell is already fully booked"""

    def __init__(self, key: ShiftKey) -> None:
        super().__init__(f"Shift {key} is fully booked")
        self.key = key


class NoShiftsSelected(BookingError):
    pass


class BookingNotFound(BookingError):
    pass


class CohortExists(BookingError):
    pass


class InvalidCapacity(BookingError):
    pass


class ShiftCellNotFound(BookingError):
    pass


class EmployeeNotFound(BookingError):
    pass


class EmployeeNotEligible(BookingError):
    """Raised for roster entries that may not book, or book another cohort"""


class ReminderError(Exception):
    """Base exception for reminder scheduling and delivery"""


class InvalidDateFormat(ReminderError):
    def __init__(self, text: str) -> None:
        super().__init__(f"Unsupported shift date format: {text!r}")
        self.text = text


class ReminderNotFound(ReminderError):
    pass


class MessagingNotConfigured(ReminderError):
    pass


class DeliveryFailure(ReminderError):
    """
    Raised inside the LINE client when a push is rejected. LinePushClient
    converts it into a failed DeliveryOutcome before push_text returns, so
    it never reaches the scheduler.
    """

    def __init__(self, target: str, error: str) -> None:
        super().__init__(f"Delivery to {target} failed: {error}")
        self.target = target
        self.error = error
