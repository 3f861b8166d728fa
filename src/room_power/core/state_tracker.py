# Desired-state bookkeeping and command dispatch per room
import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Set

from ..adapters.base import CommandChannel
from ..core.room_registry import RoomRegistry
from ..models.power import PowerState
from ..utils.exceptions import TransportError
from ..utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_COOLDOWN_SECONDS = 5.0


class AutoOffTimer:
    """One-shot timer that turns a room off when its booking ends

    Once ``cancel()`` returns the callback will not be started, and a callback
    that already started is cancelled at its next await.
    """

    def __init__(self, room_id: str, delay: float, callback: Callable[["AutoOffTimer"], Awaitable[None]]):
        loop = asyncio.get_running_loop()
        self.room_id = room_id
        self.delay = delay
        self.fires_at = loop.time() + delay
        self.cancelled = False
        self.fired = False
        self._callback = callback
        self._task: Optional[asyncio.Task] = None
        self._handle = loop.call_later(delay, self._fire)

    def _fire(self) -> None:
        if self.cancelled:
            return
        self.fired = True
        self._task = asyncio.get_running_loop().create_task(self._callback(self))

    def cancel(self) -> None:
        self.cancelled = True
        self._handle.cancel()
        if self._task is not None and not self._task.done() and self._task is not asyncio.current_task():
            self._task.cancel()

    @property
    def pending(self) -> bool:
        return not self.cancelled and not self.fired

    def remaining(self) -> float:
        return max(0.0, self.fires_at - asyncio.get_running_loop().time())


@dataclass
class RoomPowerRecord:
    room_id: str
    device_id: str
    desired: PowerState = PowerState.UNKNOWN
    last_command_at: Optional[float] = None
    last_command_time: Optional[datetime] = None
    auto_off: Optional[AutoOffTimer] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)


class DesiredStateTracker:
    """Remembers what each room was last told to do and rate-limits commands

    A command is published only when the requested state differs from the
    desired state and the room's cooldown has elapsed. The desired state is
    updated before the publish completes so concurrent requests do not send
    duplicates; a failed publish resets it to UNKNOWN so the next tick retries.
    """

    def __init__(self, registry: RoomRegistry, channel: CommandChannel,
                 cooldown: float = DEFAULT_COOLDOWN_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.registry = registry
        self.channel = channel
        self.cooldown = cooldown
        self.clock = clock
        self._records: Dict[str, RoomPowerRecord] = {
            room.room_id: RoomPowerRecord(room.room_id, room.device_id) for room in registry
        }
        # timers whose callback is already running
        self._firing: Set[AutoOffTimer] = set()

    def record(self, room_id: str) -> Optional[RoomPowerRecord]:
        return self._records.get(room_id)

    def desired_state(self, room_id: str) -> PowerState:
        record = self._records.get(room_id)
        return record.desired if record else PowerState.UNKNOWN

    async def request_on(self, room_id: str) -> bool:
        return await self.request(room_id, PowerState.ON)

    async def request_off(self, room_id: str) -> bool:
        return await self.request(room_id, PowerState.OFF)

    async def request(self, room_id: str, state: PowerState) -> bool:
        """Drive a room towards ``state``. Returns True if a command was published."""
        record = self._records.get(room_id)
        if record is None:
            logger.warning(f"No device configured for room: {room_id}")
            return False

        async with record.lock:
            if record.desired is state:
                return False

            now = self.clock()
            if record.last_command_at is not None and now - record.last_command_at < self.cooldown:
                logger.debug(f"Cooldown active for {room_id}, deferring {state.value}")
                return False

            record.last_command_at = now
            record.last_command_time = datetime.now()
            record.desired = state
            attempt = now

        try:
            await self.channel.publish(record.device_id, state)
        except asyncio.CancelledError:
            # outcome unknown, let the next tick resend
            if record.desired is state and record.last_command_at == attempt:
                record.desired = PowerState.UNKNOWN
            raise
        except Exception as e:
            if isinstance(e, TransportError):
                logger.error(f"Failed to send {state.value} to {room_id} ({record.device_id}): {str(e)}")
            else:
                logger.exception(f"Unexpected error sending {state.value} to {room_id} ({record.device_id})")
            async with record.lock:
                # a newer attempt owns the state now
                if record.desired is state and record.last_command_at == attempt:
                    record.desired = PowerState.UNKNOWN
            return False

        logger.info(f"Turned {state.value} {room_id} ({record.device_id})")
        return True

    def replace_auto_off(self, room_id: str, delay: float) -> Optional[AutoOffTimer]:
        """Cancel the room's timer and, if ``delay`` is positive, start a new one"""
        record = self._records.get(room_id)
        if record is None:
            logger.warning(f"No device configured for room: {room_id}")
            return None

        self._cancel(record)
        if delay <= 0:
            return None

        minutes, seconds = divmod(int(delay), 60)
        logger.info(f"Auto-off for {room_id} in {minutes} min {seconds} s")
        record.auto_off = AutoOffTimer(room_id, delay, self._on_auto_off)
        return record.auto_off

    def cancel_auto_off(self, room_id: str) -> None:
        record = self._records.get(room_id)
        if record is not None:
            self._cancel(record)

    def cancel_all(self) -> None:
        for record in self._records.values():
            self._cancel(record)
        for timer in list(self._firing):
            timer.cancel()

    @staticmethod
    def _cancel(record: RoomPowerRecord) -> None:
        if record.auto_off is not None:
            record.auto_off.cancel()
            record.auto_off = None

    async def _on_auto_off(self, timer: AutoOffTimer) -> None:
        record = self._records.get(timer.room_id)
        if record is None or record.auto_off is not timer or timer.cancelled:
            return
        record.auto_off = None
        logger.info(f"Booking ended, turning off {timer.room_id}")
        self._firing.add(timer)
        try:
            await self.request_off(timer.room_id)
        finally:
            self._firing.discard(timer)

    def pending_timers(self) -> List[AutoOffTimer]:
        return [record.auto_off for record in self._records.values()
                if record.auto_off is not None and record.auto_off.pending]

    def snapshot(self) -> List[Dict]:
        rooms = []
        for record in self._records.values():
            timer = record.auto_off
            rooms.append({
                "room": record.room_id,
                "device": record.device_id,
                "desired": record.desired,
                "last_command_at": record.last_command_time,
                "auto_off_in": round(timer.remaining(), 1) if timer is not None and timer.pending else None,
            })
        return rooms
