"""Collaborators the reservation service depends on.

The service only needs two answers from the organization side: which room a
user may book (``AccessGate``) and which user ids exist (``Directory``). The
SQL implementations below answer them from the shared tables.
"""
import logging
from typing import Iterable, Protocol

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from errors import Forbidden, NotFound
from models import BuildingMember, Room, Story, User

logger = logging.getLogger(__name__)


class AccessGate(Protocol):
    async def authorize(self, room_id: int, user_id: int) -> Room:
        """Return the room if ``user_id`` may act on it, raise otherwise."""
        ...


class Directory(Protocol):
    async def missing(self, user_ids: Iterable[int]) -> list[int]:
        """Return the ids from ``user_ids`` that do not belong to any user."""
        ...


class BuildingAccessGate:
    """Room access follows building membership (room -> story -> building)."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def authorize(self, room_id: int, user_id: int) -> Room:
        room = await self.session.get(Room, room_id)
        if room is None:
            logger.warning("Room %s not found (user %s)", room_id, user_id)
            raise NotFound(f"Room with ID {room_id} not found")

        statement = (
            select(BuildingMember.building_id)
            .join(Story, Story.building_id == BuildingMember.building_id)
            .where(Story.id == room.story_id, BuildingMember.user_id == user_id)
        )
        result = await self.session.execute(statement)
        if result.first() is None:
            logger.warning("Access denied to room %s for user %s", room_id, user_id)
            raise Forbidden(f"You do not have access to room {room_id}")
        return room


class UserDirectory:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def missing(self, user_ids: Iterable[int]) -> list[int]:
        wanted = list(user_ids)
        if not wanted:
            return []
        result = await self.session.execute(select(User.id).where(col(User.id).in_(wanted)))
        found = set(result.scalars().all())
        return [user_id for user_id in wanted if user_id not in found]
