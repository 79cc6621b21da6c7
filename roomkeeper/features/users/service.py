"""
Durable user record service.
- get_user_record(user_id)
- get_or_create_user(user_id)
- update_user_fields(user_id, updates)   (wire keys, partial update)
- add_owned_room / remove_owned_room
- delete_user(user_id)
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional
from sqlalchemy import select, insert, update, delete

from roomkeeper.core.database import get_db_session, users as app_users, rooms
from roomkeeper.core.errors import ValidationError
from roomkeeper.models.user import UserRecord


# Wire key -> column name
WIRE_FIELDS = {
    "subscriptionPlan": "subscription_plan",
    "roomLimit": "room_limit",
    "ownedRooms": "owned_rooms",
    "subscriptionGracePeriodEnd": "subscription_grace_period_end",
    "isInGracePeriod": "is_in_grace_period",
}


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _row_to_record(row) -> UserRecord:
    return UserRecord(
        id=row.user_id,
        display_name=row.display_name,
        owned_rooms=list(row.owned_rooms or []),
        subscription_plan=row.subscription_plan,
        room_limit=row.room_limit or 0,
        grace_period_end=parse_timestamp(row.subscription_grace_period_end),
        is_in_grace_period=bool(row.is_in_grace_period),
    )


def _to_columns(updates: Dict[str, Any]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for key, value in updates.items():
        column = WIRE_FIELDS.get(key)
        if column is None:
            raise ValidationError(f"Unknown user record field: {key}")
        if column == "subscription_grace_period_end" and isinstance(value, datetime):
            value = format_timestamp(value)
        if column == "owned_rooms" and value is not None:
            value = sorted(set(value))
        values[column] = value
    return values


def get_user_record(user_id: str) -> Optional[UserRecord]:
    with get_db_session() as session:
        row = session.execute(select(app_users).where(app_users.c.user_id == user_id)).first()
        if not row:
            return None
        return _row_to_record(row)


def get_or_create_user(user_id: str, display_name: Optional[str] = None) -> UserRecord:
    existing = get_user_record(user_id)
    if existing:
        return existing

    with get_db_session() as session:
        session.execute(
            insert(app_users).values(
                user_id=user_id,
                display_name=display_name,
                room_limit=0,
                is_in_grace_period=False,
                created_at=datetime.now(timezone.utc),
            )
        )
    return UserRecord(id=user_id, display_name=display_name)


def update_user_fields(user_id: str, updates: Dict[str, Any]) -> None:
    """Partial update keyed by wire field names; creates the record if missing."""
    values = _to_columns(updates)
    if not values:
        return
    with get_db_session() as session:
        result = session.execute(
            update(app_users).where(app_users.c.user_id == user_id).values(**values)
        )
        if result.rowcount == 0:
            session.execute(
                insert(app_users).values(
                    user_id=user_id,
                    created_at=datetime.now(timezone.utc),
                    **{"room_limit": 0, "is_in_grace_period": False, **values},
                )
            )


def add_owned_room(user_id: str, room_id: str) -> None:
    with get_db_session() as session:
        row = session.execute(
            select(app_users.c.owned_rooms).where(app_users.c.user_id == user_id)
        ).first()
        owned = set(row.owned_rooms or []) if row else set()
        owned.add(room_id)
        session.execute(
            update(app_users).where(app_users.c.user_id == user_id).values(owned_rooms=sorted(owned))
        )


def remove_owned_room(user_id: str, room_id: str) -> None:
    with get_db_session() as session:
        row = session.execute(
            select(app_users.c.owned_rooms).where(app_users.c.user_id == user_id)
        ).first()
        if not row:
            return
        owned = set(row.owned_rooms or [])
        owned.discard(room_id)
        session.execute(
            update(app_users)
            .where(app_users.c.user_id == user_id)
            .values(owned_rooms=sorted(owned) or None)
        )


def delete_user(user_id: str) -> bool:
    with get_db_session() as session:
        session.execute(delete(rooms).where(rooms.c.owner_id == user_id))
        result = session.execute(delete(app_users).where(app_users.c.user_id == user_id))
        return result.rowcount > 0
