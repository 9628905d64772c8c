import os
from datetime import timedelta
from typing import Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, model_validator


class ReservationSettings(BaseModel):
    """Business rules for room reservations.

    Every threshold the scheduling rules look at lives here, so the rules can
    be exercised with any combination of values without touching the process
    environment.
    """

    model_config = ConfigDict(frozen=True)

    max_duration_hours: int = Field(default=8, ge=1)
    min_advance_minutes: int = Field(default=15, ge=0)
    buffer_minutes: int = Field(default=15, ge=0)
    business_hours_start: int = Field(default=8, ge=0, le=23)
    business_hours_end: int = Field(default=20, ge=1, le=24)
    # 0 means unlimited
    max_advance_days: int = Field(default=90, ge=0)
    enforce_business_hours: bool = True
    availability_apply_buffer: bool = False

    @model_validator(mode="after")
    def check_business_hours(self) -> "ReservationSettings":
        if self.business_hours_start >= self.business_hours_end:
            raise ValueError(
                f"BUSINESS_HOURS_START ({self.business_hours_start}) must be before "
                f"BUSINESS_HOURS_END ({self.business_hours_end})"
            )
        return self

    @property
    def buffer(self) -> timedelta:
        return timedelta(minutes=self.buffer_minutes)

    @property
    def min_advance(self) -> timedelta:
        return timedelta(minutes=self.min_advance_minutes)

    @property
    def max_duration(self) -> timedelta:
        return timedelta(hours=self.max_duration_hours)

    @property
    def max_advance(self) -> Optional[timedelta]:
        if self.max_advance_days == 0:
            return None
        return timedelta(days=self.max_advance_days)

    @classmethod
    def from_env(cls, environ: Mapping[str, str]) -> "ReservationSettings":
        def _int(name: str, default: int) -> int:
            raw = environ.get(name)
            if raw is None or raw.strip() == "":
                return default
            try:
                return int(raw)
            except ValueError:
                raise ValueError(f"{name} must be an integer, got {raw!r}")

        return cls(
            max_duration_hours=_int("MAX_RESERVATION_HOURS", 8),
            min_advance_minutes=_int("MIN_ADVANCE_BOOKING_MINUTES", 15),
            buffer_minutes=_int("BUFFER_TIME_MINUTES", 15),
            business_hours_start=_int("BUSINESS_HOURS_START", 8),
            business_hours_end=_int("BUSINESS_HOURS_END", 20),
            max_advance_days=_int("MAX_ADVANCE_BOOKING_DAYS", 90),
            # Only the literal "false" switches enforcement off
            enforce_business_hours=environ.get("ENFORCE_BUSINESS_HOURS") != "false",
            availability_apply_buffer=environ.get("AVAILABILITY_APPLY_BUFFER") == "true",
        )


def load_settings() -> ReservationSettings:
    load_dotenv()
    return ReservationSettings.from_env(os.environ)
