"""Date and time-slot parsing shared by tasks, appointments and the calendar."""

from datetime import date, datetime, time

from garage_workflow.errors import ValidationError


def validate_date(value: str | date) -> str:
    """Return ``value`` as YYYY-MM-DD or raise ValidationError."""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    try:
        return date.fromisoformat(str(value).strip()).isoformat()
    except ValueError:
        raise ValidationError(f"Invalid date: {value!r} (expected YYYY-MM-DD)") from None


def validate_time(value: str | time) -> str:
    """Return ``value`` as HH:MM or raise ValidationError. Seconds are dropped."""
    if isinstance(value, time):
        return value.strftime("%H:%M")
    text = str(value).strip()
    for fmt in ("%H:%M", "%H:%M:%S"):
        try:
            return datetime.strptime(text, fmt).strftime("%H:%M")
        except ValueError:
            continue
    raise ValidationError(f"Invalid time: {value!r} (expected HH:MM)")


def parse_timestamp(value: str | datetime) -> datetime:
    """Parse an ISO-8601 timestamp into naive local time.

    Values carrying a UTC offset are converted, so they compare and sort
    alongside the naive timestamps the store keeps.
    """
    if not isinstance(value, datetime):
        try:
            value = datetime.fromisoformat(str(value).strip())
        except ValueError:
            raise ValidationError(f"Invalid timestamp: {value!r}") from None
    if value.tzinfo is not None:
        value = value.astimezone().replace(tzinfo=None)
    return value


def validate_amount(value, what: str = "Price"):
    """Reject non-numeric and negative amounts. None passes through."""
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{what} must be a number, got {value!r}")
    if value < 0:
        raise ValidationError(f"{what} cannot be negative")
    return value


def slot_hour(hhmm: str) -> str:
    """The hourly calendar slot a time falls into: '08:30' -> '08:00'."""
    return f"{hhmm[:2]}:00"
