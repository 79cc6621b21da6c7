"""
Room directory service.
- create_room(owner_id, name)        insert room and add it to ownedRooms
- delete_room(room_id)                remove room and drop it from ownedRooms

RoomDirectory wraps these for the async engine and implements the
RoomDeleter contract used by the grace-period purge.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional, Tuple
from uuid import uuid4
from sqlalchemy import select, insert, delete

from roomkeeper.core.database import get_db_session, rooms
from roomkeeper.features.users import service as user_service


logger = logging.getLogger(__name__)


def create_room(owner_id: str, name: Optional[str] = None) -> str:
    room_id = uuid4().hex
    user_service.get_or_create_user(owner_id)
    with get_db_session() as session:
        session.execute(
            insert(rooms).values(
                room_id=room_id,
                owner_id=owner_id,
                name=name,
                created_at=datetime.now(timezone.utc),
            )
        )
    user_service.add_owned_room(owner_id, room_id)
    return room_id


def delete_room(room_id: str) -> Tuple[bool, Optional[str]]:
    with get_db_session() as session:
        row = session.execute(select(rooms.c.owner_id).where(rooms.c.room_id == room_id)).first()
        if not row:
            return False, f"Room {room_id} not found"
        session.execute(delete(rooms).where(rooms.c.room_id == room_id))
        owner_id = row.owner_id
    user_service.remove_owned_room(owner_id, room_id)
    return True, None


class RoomDirectory:
    """Async room collaborator backed by the ``rooms`` table."""

    async def create_room(self, owner_id: str, name: Optional[str] = None) -> str:
        return await asyncio.to_thread(create_room, owner_id, name)

    async def delete_room(self, room_id: str) -> Tuple[bool, Optional[str]]:
        try:
            success, error = await asyncio.to_thread(delete_room, room_id)
        except Exception as e:
            logger.error("[rooms] delete failed", extra={"room_id": room_id, "error": str(e)})
            return False, str(e)
        if success:
            logger.info("[rooms] room deleted", extra={"room_id": room_id})
        return success, error
