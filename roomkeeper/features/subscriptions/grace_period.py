"""
Grace-period scheduler.

Holds at most one pending expiry timer per user. Scheduling replaces the
previous timer, so a user can never receive duplicate deletions. The fire
path rechecks the live subscription state before deleting anything: a
reactivation that raced the timer turns the expiry into a no-op even if the
timer was not cancelled.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Protocol, Tuple

from roomkeeper.core.errors import RoomDeletionFailure
from roomkeeper.core.metrics import (
    grace_timers_live,
    room_deletion_failures_total,
    rooms_force_deleted_total,
)

logger = logging.getLogger(__name__)


class RoomDeleter(Protocol):
    async def delete_room(self, room_id: str) -> Tuple[bool, Optional[str]]:
        """Delete a room; returns (success, error_message)."""
        ...


class GracePeriodScheduler:
    """Single-slot asyncio timer for one user's grace-period deadline."""

    def __init__(
        self,
        user_id: str,
        on_fire: Callable[[], Awaitable[None]],
        clock: Callable[[], datetime],
    ):
        self.user_id = user_id
        self._on_fire = on_fire
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self._deadline: Optional[datetime] = None

    @property
    def deadline(self) -> Optional[datetime]:
        return self._deadline if self.is_scheduled else None

    @property
    def is_scheduled(self) -> bool:
        return self._task is not None and not self._task.done()

    def schedule_check(self, deadline: datetime) -> None:
        """Arm the timer for ``deadline``, replacing any pending one. Past deadlines fire immediately."""
        self.cancel()
        self._deadline = deadline
        self._task = asyncio.create_task(self._run(deadline), name=f"grace-period:{self.user_id}")
        grace_timers_live.inc()
        self._task.add_done_callback(lambda _: grace_timers_live.dec())
        logger.info(
            "[grace] check scheduled",
            extra={"user_id": self.user_id, "deadline": deadline.isoformat()},
        )

    def cancel(self) -> None:
        task = self._task
        self._task = None
        self._deadline = None
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            # Called from inside the fire path; the run is finishing anyway
            return
        task.cancel()
        logger.info("[grace] check cancelled", extra={"user_id": self.user_id})

    async def join(self) -> None:
        """Wait for the pending check (if any) to finish or be cancelled."""
        task = self._task
        if task is not None and task is not asyncio.current_task():
            await asyncio.wait([task])

    async def _run(self, deadline: datetime) -> None:
        try:
            delay = (deadline - self._clock()).total_seconds()
            if delay > 0:
                await asyncio.sleep(delay)
            logger.info("[grace] deadline reached", extra={"user_id": self.user_id})
            await self._on_fire()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.error("[grace] expiry check failed", exc_info=True, extra={"user_id": self.user_id})
        finally:
            if self._task is asyncio.current_task():
                self._task = None
                self._deadline = None


@dataclass
class GraceExpiryReport:
    deleted: List[str] = field(default_factory=list)
    failed: List[Tuple[str, str]] = field(default_factory=list)

    def to_payload(self) -> dict:
        return {
            "deleted_rooms": list(self.deleted),
            "failed_rooms": [{"room_id": room_id, "error": error} for room_id, error in self.failed],
        }


async def delete_rooms_best_effort(user_id: str, room_ids: List[str], deleter: RoomDeleter) -> GraceExpiryReport:
    """
    Delete every room, continuing past failures.

    A failed room is logged and recorded; it never stops the remaining
    deletions.
    """
    report = GraceExpiryReport()
    logger.warning(
        "[grace] grace period expired, deleting rooms",
        extra={"user_id": user_id, "room_count": len(room_ids)},
    )
    for room_id in room_ids:
        try:
            success, error = await deleter.delete_room(room_id)
        except Exception as e:
            success, error = False, str(e)
        if success:
            rooms_force_deleted_total.inc()
            report.deleted.append(room_id)
            continue
        failure = RoomDeletionFailure(error or "unknown error", room_id=room_id)
        room_deletion_failures_total.inc()
        logger.error(
            "[grace] room deletion failed",
            extra={"user_id": user_id, "room_id": room_id, "error": failure.message, "error_code": failure.code},
        )
        report.failed.append((room_id, failure.message))
    return report
