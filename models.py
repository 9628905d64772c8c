from typing import Optional
from datetime import datetime
from sqlmodel import SQLModel, Field
from sqlalchemy import Column, DateTime
from pydantic import BaseModel, field_validator


# --- Organization (read-only here; managed elsewhere) ---

class User(SQLModel, table=True):
    __tablename__ = "users"

    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(index=True, unique=True)
    name: Optional[str] = None


class Building(SQLModel, table=True):
    __tablename__ = "buildings"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str


class BuildingMember(SQLModel, table=True):
    __tablename__ = "building_members"

    building_id: int = Field(foreign_key="buildings.id", primary_key=True)
    user_id: int = Field(foreign_key="users.id", primary_key=True)


class Story(SQLModel, table=True):
    __tablename__ = "stories"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    building_id: int = Field(foreign_key="buildings.id", index=True)


class Room(SQLModel, table=True):
    __tablename__ = "rooms"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    description: Optional[str] = None
    capacity: int = Field(default=1, ge=1)
    story_id: int = Field(foreign_key="stories.id", index=True)


# --- Reservations ---

class Reservation(SQLModel, table=True):
    __tablename__ = "reservations"

    id: Optional[int] = Field(default=None, primary_key=True)
    title: str
    description: Optional[str] = None
    # Naive local wall-clock times; business hours are local hours
    start_time: datetime = Field(sa_column=Column(DateTime(timezone=False), nullable=False, index=True))
    end_time: datetime = Field(sa_column=Column(DateTime(timezone=False), nullable=False))
    room_id: int = Field(foreign_key="rooms.id", index=True)
    organizer_id: int = Field(foreign_key="users.id", index=True)
    created_at: datetime = Field(
        default_factory=datetime.now, sa_column=Column(DateTime(timezone=False), nullable=False)
    )
    updated_at: datetime = Field(
        default_factory=datetime.now, sa_column=Column(DateTime(timezone=False), nullable=False)
    )


class ReservationInvitee(SQLModel, table=True):
    __tablename__ = "reservation_invitees"

    reservation_id: int = Field(foreign_key="reservations.id", primary_key=True)
    user_id: int = Field(foreign_key="users.id", primary_key=True)


# Pydantic Schemas for Request/Response

class ReservationCreate(BaseModel):
    title: str
    description: Optional[str] = None
    start_time: str
    end_time: str
    invitees: list[int] = []


class ReservationUpdate(BaseModel):
    """Partial update.

    Only fields present in the payload are applied (``model_fields_set``);
    an explicit ``null`` clears ``description`` and is rejected for the rest.
    """

    title: Optional[str] = None
    description: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    invitees: Optional[list[int]] = None

    @field_validator("title", "start_time", "end_time", "invitees")
    @classmethod
    def not_null(cls, value):
        if value is None:
            raise ValueError("may not be null")
        return value

    def supplied(self, name: str) -> bool:
        return name in self.model_fields_set


class ReservationRead(BaseModel):
    id: int
    title: str
    description: Optional[str]
    start_time: datetime
    end_time: datetime
    room_id: int
    organizer_id: int
    invitees: list[int]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def build(cls, reservation: Reservation, invitees: list[int]) -> "ReservationRead":
        return cls(**reservation.model_dump(), invitees=sorted(invitees))


class ReservationResult(BaseModel):
    reservation: ReservationRead
    warning: Optional[str] = None


class RoomRead(BaseModel):
    id: int
    name: str
    description: Optional[str]
    capacity: int
    story_id: int


class AvailableSlot(BaseModel):
    start: datetime
    end: datetime


class RoomAvailability(BaseModel):
    room: RoomRead
    reservations: list[ReservationRead]
    available_slots: list[AvailableSlot]
