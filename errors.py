from enum import Enum


class ReservationError(Exception):
    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class WindowViolation(str, Enum):
    MALFORMED = "malformed"
    START_IN_PAST = "start in past"
    END_BEFORE_START = "end before start"
    INSUFFICIENT_ADVANCE = "insufficient advance notice"
    DURATION_EXCEEDED = "duration exceeds maximum"
    TOO_FAR_IN_ADVANCE = "too far in advance"
    OUTSIDE_BUSINESS_HOURS = "outside business hours"


class InvalidWindow(ReservationError):
    """The requested start/end pair breaks one of the booking rules."""

    status_code = 400

    def __init__(self, reason: WindowViolation, detail: str):
        super().__init__(detail)
        self.reason = reason


class Conflict(ReservationError):
    status_code = 409


class NotFound(ReservationError):
    status_code = 404


class Forbidden(ReservationError):
    status_code = 403
