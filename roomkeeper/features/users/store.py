"""
Async durable user store.

The engine never blocks the event loop on the database: the SQL-backed store
runs the synchronous service functions in a worker thread.
"""
import asyncio
from typing import Any, Dict, Optional, Protocol

from roomkeeper.features.users import service as user_service
from roomkeeper.models.user import UserRecord


class UserStore(Protocol):
    """Key-value user record store consumed by store sync and the room service."""

    async def get(self, user_id: str) -> Optional[UserRecord]:
        ...

    async def update(self, user_id: str, updates: Dict[str, Any]) -> None:
        """Partial update keyed by wire field names (``roomLimit`` etc.)."""
        ...

    async def add_owned_room(self, user_id: str, room_id: str) -> None:
        ...

    async def remove_owned_room(self, user_id: str, room_id: str) -> None:
        ...

    async def delete(self, user_id: str) -> bool:
        ...


class SqlUserStore:
    """UserStore backed by the ``app_users`` table."""

    async def get(self, user_id: str) -> Optional[UserRecord]:
        return await asyncio.to_thread(user_service.get_user_record, user_id)

    async def update(self, user_id: str, updates: Dict[str, Any]) -> None:
        await asyncio.to_thread(user_service.update_user_fields, user_id, updates)

    async def add_owned_room(self, user_id: str, room_id: str) -> None:
        await asyncio.to_thread(user_service.add_owned_room, user_id, room_id)

    async def remove_owned_room(self, user_id: str, room_id: str) -> None:
        await asyncio.to_thread(user_service.remove_owned_room, user_id, room_id)

    async def delete(self, user_id: str) -> bool:
        return await asyncio.to_thread(user_service.delete_user, user_id)
