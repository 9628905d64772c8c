"""Time-window rules for room reservations.

Everything in this module is pure: callers pass the current time and the
:class:`~config.ReservationSettings` in, nothing is read from the environment
or the database. All datetimes handled here are naive local wall-clock times;
offset-aware input is converted to local time on parse.
"""
import logging
from datetime import datetime, time, timedelta
from typing import Iterable, NamedTuple, Optional, Protocol, Sequence, Union

from config import ReservationSettings
from errors import InvalidWindow, WindowViolation

logger = logging.getLogger(__name__)

DEFAULT_AVAILABILITY_DAYS = 7


class Booked(Protocol):
    id: Optional[int]
    start_time: datetime
    end_time: datetime


class Slot(NamedTuple):
    start: datetime
    end: datetime


def _to_local(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value


def parse_timestamp(value: Union[str, datetime]) -> datetime:
    """Parse an ISO-8601 timestamp into a naive local datetime."""
    if isinstance(value, datetime):
        return _to_local(value)
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        raise InvalidWindow(
            WindowViolation.MALFORMED,
            "Invalid date format for startTime or endTime",
        )
    return _to_local(parsed)


def validate_window(
    start: Union[str, datetime],
    end: Union[str, datetime],
    now: datetime,
    settings: ReservationSettings,
    check_past: bool = True,
) -> tuple[datetime, datetime]:
    """Check a proposed booking window against every timing rule.

    Rules are applied in a fixed order and the first failure is raised as
    :class:`~errors.InvalidWindow`. ``check_past`` is turned off when an
    update keeps the stored start time, so a meeting that already began can
    still have its other fields edited. Returns the parsed ``(start, end)``
    pair.
    """
    start = parse_timestamp(start)
    end = parse_timestamp(end)
    now = _to_local(now)

    if check_past and start < now:
        logger.warning("Reservation start %s is in the past", start.isoformat())
        raise InvalidWindow(
            WindowViolation.START_IN_PAST, "Start time cannot be in the past"
        )

    if start >= end:
        raise InvalidWindow(
            WindowViolation.END_BEFORE_START, "End time must be after start time"
        )

    advance = start - now
    if advance < settings.min_advance:
        logger.warning(
            "Reservation violates minimum advance time: %d minutes given, %d required",
            advance // timedelta(minutes=1),
            settings.min_advance_minutes,
        )
        raise InvalidWindow(
            WindowViolation.INSUFFICIENT_ADVANCE,
            f"Reservations must be made at least "
            f"{settings.min_advance_minutes} minutes in advance",
        )

    duration = end - start
    if duration > settings.max_duration:
        logger.warning(
            "Reservation exceeds maximum duration: %.2f hours, max %d",
            duration / timedelta(hours=1),
            settings.max_duration_hours,
        )
        raise InvalidWindow(
            WindowViolation.DURATION_EXCEEDED,
            f"Reservations cannot exceed {settings.max_duration_hours} hours",
        )

    max_advance = settings.max_advance
    if max_advance is not None and advance > max_advance:
        logger.warning(
            "Reservation exceeds maximum advance booking: %d days, max %d",
            advance.days,
            settings.max_advance_days,
        )
        raise InvalidWindow(
            WindowViolation.TOO_FAR_IN_ADVANCE,
            f"Reservations cannot be made more than "
            f"{settings.max_advance_days} days in advance",
        )

    if settings.enforce_business_hours:
        _check_business_hours(start, end, settings)

    return start, end


def _check_business_hours(
    start: datetime, end: datetime, settings: ReservationSettings
) -> None:
    opens = settings.business_hours_start
    closes = settings.business_hours_end

    if start.hour < opens or start.hour >= closes:
        logger.warning(
            "Reservation outside business hours (start hour %d, open %d-%d)",
            start.hour,
            opens,
            closes,
        )
        raise InvalidWindow(
            WindowViolation.OUTSIDE_BUSINESS_HOURS,
            f"Reservations must start between {opens}:00 and {closes}:00",
        )

    # Only a midnight close may end on the following day
    next_midnight = datetime.combine(start.date() + timedelta(days=1), time.min)
    if end.date() != start.date() and not (closes == 24 and end == next_midnight):
        logger.warning(
            "Reservation outside business hours (ends on %s, starts on %s)",
            end.date().isoformat(),
            start.date().isoformat(),
        )
        raise InvalidWindow(
            WindowViolation.OUTSIDE_BUSINESS_HOURS,
            f"Reservations must end by {closes}:00 on the day they start",
        )

    # Ending exactly on the closing hour is allowed
    past_close = (end.minute, end.second, end.microsecond) != (0, 0, 0)
    if end.hour > closes or (end.hour == closes and past_close):
        logger.warning(
            "Reservation outside business hours (ends %s, close %d)",
            end.time().isoformat(),
            closes,
        )
        raise InvalidWindow(
            WindowViolation.OUTSIDE_BUSINESS_HOURS,
            f"Reservations must end by {closes}:00",
        )


def buffered_bounds(
    start: datetime, end: datetime, buffer: timedelta
) -> tuple[datetime, datetime]:
    return start - buffer, end + buffer


def windows_conflict(
    start: datetime,
    end: datetime,
    other_start: datetime,
    other_end: datetime,
    buffer: timedelta,
) -> bool:
    """True when two windows are closer than ``buffer`` or overlap.

    The proposed window is widened by ``buffer`` on both sides and compared
    to the stored one with half-open overlap, so a gap of exactly ``buffer``
    is allowed and the relation is symmetric.
    """
    buffered_start, buffered_end = buffered_bounds(start, end, buffer)
    return buffered_start < other_end and buffered_end > other_start


def has_conflict(
    existing: Iterable[Booked],
    start: datetime,
    end: datetime,
    buffer: timedelta,
    exclude_id: Optional[int] = None,
) -> bool:
    return any(
        windows_conflict(start, end, booked.start_time, booked.end_time, buffer)
        for booked in existing
        if exclude_id is None or booked.id != exclude_id
    )


def normalize_invitees(invitees: Optional[Iterable[int]], organizer_id: int) -> list[int]:
    """Drop duplicates and the organizer, keeping first-seen order."""
    seen: list[int] = []
    for user_id in invitees or ():
        if user_id != organizer_id and user_id not in seen:
            seen.append(user_id)
    return seen


def capacity_warning(capacity: Optional[int], invitee_count: int) -> Optional[str]:
    participants = 1 + invitee_count
    if capacity and participants > capacity:
        return (
            f"Warning: The number of participants ({participants}) "
            f"exceeds the room capacity ({capacity})"
        )
    return None


def availability_range(
    start_date: Optional[Union[str, datetime]],
    end_date: Optional[Union[str, datetime]],
    now: datetime,
) -> tuple[datetime, datetime]:
    """Resolve the requested range to whole days.

    A missing start defaults to now and a missing end to a week after the
    start. The start snaps back to midnight, the end forward to the last
    millisecond of its day.
    """
    now = _to_local(now)
    start = parse_timestamp(start_date) if start_date else now
    if end_date:
        end = parse_timestamp(end_date)
    else:
        end = start + timedelta(days=DEFAULT_AVAILABILITY_DAYS)
    start = datetime.combine(start.date(), time.min)
    end = datetime.combine(end.date(), time(23, 59, 59, 999000))
    if start > end:
        raise InvalidWindow(
            WindowViolation.END_BEFORE_START, "End date must not be before start date"
        )
    return start, end


def compute_available_slots(
    reservations: Sequence[Booked],
    range_start: datetime,
    range_end: datetime,
    buffer: timedelta = timedelta(0),
) -> list[Slot]:
    """Free gaps between reservations inside ``[range_start, range_end]``.

    ``range_start`` and ``range_end`` are expected to be already normalized
    by :func:`availability_range`. With a non-zero ``buffer`` each reservation
    blocks ``buffer`` extra on both sides, so every gap is actually bookable.
    """
    slots = []
    cursor = range_start
    for booked in sorted(reservations, key=lambda r: r.start_time):
        blocked_start, blocked_end = buffered_bounds(
            booked.start_time, booked.end_time, buffer
        )
        if blocked_start > cursor:
            slots.append(Slot(cursor, min(blocked_start, range_end)))
        cursor = max(cursor, blocked_end)
        if cursor >= range_end:
            break

    if cursor < range_end:
        slots.append(Slot(cursor, range_end))
    return slots
