import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional, Union

from sqlalchemy import delete as delete_rows, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from access import AccessGate, Directory
from config import ReservationSettings
from errors import Conflict, Forbidden, NotFound
from models import (
    AvailableSlot,
    Reservation,
    ReservationCreate,
    ReservationInvitee,
    ReservationRead,
    ReservationResult,
    ReservationUpdate,
    Room,
    RoomAvailability,
    RoomRead,
)
from scheduling import (
    availability_range,
    buffered_bounds,
    capacity_warning,
    compute_available_slots,
    normalize_invitees,
    validate_window,
)

logger = logging.getLogger(__name__)


class RoomLocks:
    """One asyncio lock per room, shared by every request in the process."""

    def __init__(self):
        self._locks: dict[int, asyncio.Lock] = {}

    def for_room(self, room_id: int) -> asyncio.Lock:
        return self._locks.setdefault(room_id, asyncio.Lock())


room_locks = RoomLocks()


class ReservationService:
    """Booking operations for a single request.

    Conflict checks and the writes they guard run under a per-room lock and a
    ``SELECT ... FOR UPDATE`` on the room row inside the same transaction, so
    two overlapping bookings for one room cannot both pass the check.
    """

    def __init__(
        self,
        session: AsyncSession,
        access_gate: AccessGate,
        directory: Directory,
        settings: ReservationSettings,
        locks: RoomLocks = room_locks,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.session = session
        self.access_gate = access_gate
        self.directory = directory
        self.settings = settings
        self.locks = locks
        self.clock = clock

    # --- Queries ---

    async def list_for_room(self, room_id: int, user_id: int) -> list[ReservationRead]:
        await self.access_gate.authorize(room_id, user_id)
        statement = (
            select(Reservation)
            .where(Reservation.room_id == room_id)
            .order_by(Reservation.start_time)
        )
        result = await self.session.execute(statement)
        return await self._read_all(result.scalars().all())

    async def get(self, reservation_id: int, user_id: int) -> ReservationRead:
        reservation, _ = await self._load(reservation_id, user_id)
        return (await self._read_all([reservation]))[0]

    async def has_conflict(
        self,
        room_id: int,
        start: datetime,
        end: datetime,
        exclude_id: Optional[int] = None,
    ) -> bool:
        buffered_start, buffered_end = buffered_bounds(start, end, self.settings.buffer)
        statement = (
            select(func.count())
            .select_from(Reservation)
            .where(
                Reservation.room_id == room_id,
                Reservation.start_time < buffered_end,
                Reservation.end_time > buffered_start,
            )
        )
        if exclude_id is not None:
            statement = statement.where(col(Reservation.id) != exclude_id)
        result = await self.session.execute(statement)
        return result.scalar_one() > 0

    async def get_availability(
        self,
        room_id: int,
        user_id: int,
        start_date: Optional[Union[str, datetime]] = None,
        end_date: Optional[Union[str, datetime]] = None,
    ) -> RoomAvailability:
        room = await self.access_gate.authorize(room_id, user_id)
        range_start, range_end = availability_range(start_date, end_date, self.clock())

        statement = (
            select(Reservation)
            .where(
                Reservation.room_id == room_id,
                Reservation.start_time < range_end,
                Reservation.end_time > range_start,
            )
            .order_by(Reservation.start_time)
        )
        result = await self.session.execute(statement)
        reservations = result.scalars().all()

        buffer = self.settings.buffer if self.settings.availability_apply_buffer else timedelta(0)
        slots = compute_available_slots(reservations, range_start, range_end, buffer)
        return RoomAvailability(
            room=RoomRead(**room.model_dump()),
            reservations=await self._read_all(reservations),
            available_slots=[AvailableSlot(start=s.start, end=s.end) for s in slots],
        )

    # --- Commands ---

    async def create(
        self, room_id: int, data: ReservationCreate, organizer_id: int
    ) -> ReservationResult:
        room = await self.access_gate.authorize(room_id, organizer_id)
        start, end = validate_window(data.start_time, data.end_time, self.clock(), self.settings)

        async with self._serialized(room_id):
            if await self.has_conflict(room_id, start, end):
                logger.warning(
                    "Reservation conflict detected: room %s, user %s, %s - %s",
                    room_id,
                    organizer_id,
                    start.isoformat(),
                    end.isoformat(),
                )
                raise Conflict("The room is already booked for this time slot")

            invitees = normalize_invitees(data.invitees, organizer_id)
            await self._check_invitees(invitees)
            warning = capacity_warning(room.capacity, len(invitees))

            reservation = Reservation(
                title=data.title,
                description=data.description,
                start_time=start,
                end_time=end,
                room_id=room_id,
                organizer_id=organizer_id,
            )
            self.session.add(reservation)
            await self.session.flush()
            self._add_invitees(reservation.id, invitees)
            await self.session.commit()

        logger.info(
            "Reservation %s created: room %s, user %s, %d participants, warning=%s",
            reservation.id,
            room_id,
            organizer_id,
            1 + len(invitees),
            warning is not None,
        )
        return ReservationResult(
            reservation=ReservationRead.build(reservation, invitees), warning=warning
        )

    async def update(
        self, reservation_id: int, data: ReservationUpdate, user_id: int
    ) -> ReservationResult:
        reservation, room = await self._load(reservation_id, user_id)
        self._require_organizer(reservation, user_id, "update")

        start, end = reservation.start_time, reservation.end_time
        window_changed = data.supplied("start_time") or data.supplied("end_time")
        if window_changed:
            start, end = validate_window(
                data.start_time if data.supplied("start_time") else start,
                data.end_time if data.supplied("end_time") else end,
                self.clock(),
                self.settings,
                check_past=data.supplied("start_time"),
            )

        async with self._serialized(reservation.room_id):
            if window_changed and await self.has_conflict(
                reservation.room_id, start, end, exclude_id=reservation.id
            ):
                logger.warning(
                    "Reservation conflict detected: reservation %s, user %s, %s - %s",
                    reservation.id,
                    user_id,
                    start.isoformat(),
                    end.isoformat(),
                )
                raise Conflict("The room is already booked for this time slot")

            if data.supplied("invitees"):
                invitees = normalize_invitees(data.invitees, reservation.organizer_id)
                await self._check_invitees(invitees)
            else:
                invitees = (await self._invitees_of([reservation.id]))[reservation.id]
            warning = capacity_warning(room.capacity, len(invitees))

            if data.supplied("title"):
                reservation.title = data.title
            if data.supplied("description"):
                reservation.description = data.description
            reservation.start_time = start
            reservation.end_time = end
            reservation.updated_at = self.clock()
            self.session.add(reservation)

            if data.supplied("invitees"):
                await self.session.execute(
                    delete_rows(ReservationInvitee).where(
                        col(ReservationInvitee.reservation_id) == reservation.id
                    )
                )
                self._add_invitees(reservation.id, invitees)
            await self.session.commit()

        logger.info(
            "Reservation %s updated by user %s, fields=%s, warning=%s",
            reservation.id,
            user_id,
            sorted(data.model_fields_set),
            warning is not None,
        )
        return ReservationResult(
            reservation=ReservationRead.build(reservation, invitees), warning=warning
        )

    async def delete(self, reservation_id: int, user_id: int) -> None:
        reservation, _ = await self._load(reservation_id, user_id)
        self._require_organizer(reservation, user_id, "delete")

        await self.session.execute(
            delete_rows(ReservationInvitee).where(
                col(ReservationInvitee.reservation_id) == reservation.id
            )
        )
        await self.session.delete(reservation)
        await self.session.commit()
        logger.info(
            "Reservation %s deleted by user %s (room %s)",
            reservation_id,
            user_id,
            reservation.room_id,
        )

    # --- Helpers ---

    @asynccontextmanager
    async def _serialized(self, room_id: int):
        async with self.locks.for_room(room_id):
            try:
                # Row lock on PostgreSQL; SQLite ignores FOR UPDATE
                await self.session.execute(
                    select(Room.id).where(Room.id == room_id).with_for_update()
                )
                yield
            except BaseException:
                await self.session.rollback()
                raise

    async def _load(self, reservation_id: int, user_id: int) -> tuple[Reservation, Room]:
        reservation = await self.session.get(Reservation, reservation_id)
        if reservation is None:
            raise NotFound(f"Reservation with ID {reservation_id} not found")
        room = await self.access_gate.authorize(reservation.room_id, user_id)
        return reservation, room

    @staticmethod
    def _require_organizer(reservation: Reservation, user_id: int, action: str) -> None:
        if reservation.organizer_id != user_id:
            logger.warning(
                "User %s tried to %s reservation %s organized by %s",
                user_id,
                action,
                reservation.id,
                reservation.organizer_id,
            )
            raise Forbidden(f"Only the organizer can {action} this reservation")

    async def _check_invitees(self, invitees: list[int]) -> None:
        missing = await self.directory.missing(invitees)
        if missing:
            logger.warning("Invalid invitee user IDs provided: %s", missing)
            raise NotFound(
                "Invalid invitee user IDs: " + ", ".join(str(i) for i in missing)
            )

    def _add_invitees(self, reservation_id: int, invitees: Iterable[int]) -> None:
        self.session.add_all(
            ReservationInvitee(reservation_id=reservation_id, user_id=user_id)
            for user_id in invitees
        )

    async def _invitees_of(self, reservation_ids: list[int]) -> dict[int, list[int]]:
        invitees: dict[int, list[int]] = {rid: [] for rid in reservation_ids}
        if not reservation_ids:
            return invitees
        statement = (
            select(ReservationInvitee)
            .where(col(ReservationInvitee.reservation_id).in_(reservation_ids))
            .order_by(ReservationInvitee.user_id)
        )
        result = await self.session.execute(statement)
        for link in result.scalars().all():
            invitees[link.reservation_id].append(link.user_id)
        return invitees

    async def _read_all(self, reservations: Iterable[Reservation]) -> list[ReservationRead]:
        reservations = list(reservations)
        invitees = await self._invitees_of([r.id for r in reservations])
        return [ReservationRead.build(r, invitees[r.id]) for r in reservations]
