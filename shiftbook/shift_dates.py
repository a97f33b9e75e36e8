import re
from datetime import UTC, date, datetime, time, timedelta, timezone

from shiftbook.errors import InvalidDateFormat

# Taiwan has not observed daylight saving since 1979
TAIWAN_TZ = timezone(timedelta(hours=8), "Asia/Taipei")

REMINDER_TIME = time(9, 0)
DISPATCH_WINDOW_START = time(9, 0)
DISPATCH_WINDOW_END = time(9, 30)

MONTHS = {
    name: index
    for index, name in enumerate(
        [
            "Jan",
            "Feb",
            "Mar",
            "Apr",
            "May",
            "Jun",
            "Jul",
            "Aug",
            "Sep",
            "Oct",
            "Nov",
            "Dec",
        ],
        start=1,
    )
}

# "13-Jun"
_DAY_MONTH = re.compile(r"^\s*(\d{1,2})-([A-Za-z]{3})\s*$")
# "Mon, Jun 16"; the weekday is not checked against the date
_WEEKDAY_MONTH_DAY = re.compile(r"^\s*[A-Za-z]{3}, ([A-Za-z]{3}) (\d{1,2})\s*$")


def parse_shift_date(text: str, year: int) -> date:
    """
    Turn a shift display date into a calendar date in `year`.

    Accepts "13-Jun" and "Mon, Jun 16". Raises InvalidDateFormat otherwise.
    """
    if match := _DAY_MONTH.match(text):
        day, month_name = match.groups()
    elif match := _WEEKDAY_MONTH_DAY.match(text):
        month_name, day = match.groups()
    else:
        raise InvalidDateFormat(text)

    month = MONTHS.get(month_name.capitalize())
    if month is None:
        raise InvalidDateFormat(text)
    try:
        return date(year, month, int(day))
    except ValueError as e:
        raise InvalidDateFormat(text) from e


def taiwan_now(now: datetime) -> datetime:
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    return now.astimezone(TAIWAN_TZ)


def reminder_instant(shift_date: date) -> datetime:
    """09:00 Taiwan time on the day before the shift, as UTC."""
    local = datetime.combine(
        shift_date - timedelta(days=1), REMINDER_TIME, tzinfo=TAIWAN_TZ
    )
    return local.astimezone(UTC)


def in_dispatch_window(now: datetime) -> bool:
    local = taiwan_now(now).time()
    return DISPATCH_WINDOW_START <= local < DISPATCH_WINDOW_END
