import asyncio
import traceback
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from ..adapters.base import BookingSource, CommandChannel
from ..core.room_registry import Room, RoomRegistry
from ..core.state_tracker import DesiredStateTracker
from ..models.booking import Booking, seconds_of_day
from ..utils.exceptions import StoreQueryError
from ..utils.logging import get_logger

logger = get_logger(__name__)


def find_active_booking(room_id: str, bookings: Sequence[Booking], now_seconds: int,
                        early_allowance_seconds: int = 0) -> Optional[Booking]:
    """
    Pick the booking that is active for ``room_id`` at ``now_seconds``.

    A booking is active when now falls between its start (moved earlier by the
    early allowance) and its end. When several overlap, the earliest start
    wins, then the latest end, then query order.
    """
    candidates = [
        (index, booking) for index, booking in enumerate(bookings)
        if booking.room == room_id and booking.is_active_at(now_seconds, early_allowance_seconds)
    ]
    if not candidates:
        return None
    _, booking = min(candidates, key=lambda item: (item[1].start_seconds, -item[1].end_seconds, item[0]))
    return booking


class ReconciliationLoop:
    """Periodically drives every room towards the state its bookings call for

    Per room and tick:
      no active booking          -> OFF, cancel auto-off
      active, not checked in     -> leave the room alone
      active and checked in      -> ON, auto-off re-armed for the booking end
    """

    def __init__(self, registry: RoomRegistry, tracker: DesiredStateTracker,
                 bookings: BookingSource, channel: CommandChannel,
                 interval: float = 10.0, early_allowance_min: int = 15,
                 now_fn: Callable[[], datetime] = datetime.now):
        self.registry = registry
        self.tracker = tracker
        self.bookings = bookings
        self.channel = channel
        self.interval = interval
        self.early_allowance_seconds = early_allowance_min * 60
        self.now_fn = now_fn
        self.is_running = False
        self.last_tick_at: Optional[datetime] = None
        self.tick_count = 0
        self._tick_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None

    async def tick(self, now: Optional[datetime] = None) -> bool:
        """Run one reconciliation pass. Returns False when the pass was skipped."""
        if self._tick_lock.locked():
            logger.warning("Previous reconciliation still running, skipping tick")
            return False

        async with self._tick_lock:
            if not self.channel.is_connected() or not self.bookings.is_available():
                logger.debug("Command channel or booking store unavailable, skipping tick")
                return False

            now = now or self.now_fn()
            try:
                bookings = await self.bookings.query_today(now.date())
            except StoreQueryError as e:
                logger.error(f"Error checking bookings: {str(e)}")
                return False

            now_seconds = seconds_of_day(now.time())
            rooms: List[Room] = list(self.registry)
            results = await asyncio.gather(
                *(self._reconcile_room(room, bookings, now_seconds) for room in rooms),
                return_exceptions=True
            )
            for room, result in zip(rooms, results):
                if isinstance(result, Exception):
                    logger.error(f"Failed to reconcile {room.room_id} ({room.device_id})",
                                 exc_info=result)

            self.last_tick_at = now
            self.tick_count += 1
            return True

    async def _reconcile_room(self, room: Room, bookings: Sequence[Booking], now_seconds: int) -> None:
        active = find_active_booking(room.room_id, bookings, now_seconds, self.early_allowance_seconds)

        if active is None:
            self.tracker.cancel_auto_off(room.room_id)
            await self.tracker.request_off(room.room_id)
            return

        if not active.checked_in:
            # booked but nobody has checked in yet
            return

        # always re-arm, the end time may have moved or a new booking taken over
        self.tracker.replace_auto_off(room.room_id, active.remaining_seconds(now_seconds))
        await self.tracker.request_on(room.room_id)

    async def run(self) -> None:
        """Tick immediately once the channel is ready, then every ``interval`` seconds"""
        logger.info("Waiting for command channel before first reconciliation")
        await self.channel.wait_ready()

        self.is_running = True
        loop = asyncio.get_running_loop()
        logger.info(f"Reconciling bookings every {self.interval:g} seconds")
        while self.is_running:
            started = loop.time()
            try:
                await self.tick()
            except Exception:
                logger.error(f"Error in reconciliation loop: {traceback.format_exc()}")
            await asyncio.sleep(max(0.0, self.interval - (loop.time() - started)))

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        self.is_running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self.tracker.cancel_all()
        logger.info("Reconciliation loop stopped")
