import time
from datetime import datetime
from typing import Callable, Dict, List

from ..adapters.base import CommandChannel
from ..core.room_registry import RoomRegistry
from ..core.state_tracker import DesiredStateTracker
from ..models.power import PowerState
from ..models.status import HealthStatus, RoomStateResponse, RoomStatus
from ..utils.logging import get_logger

logger = get_logger(__name__)


class StatusReporter:
    """Read-only view of desired vs. device-reported state and connectivity"""

    def __init__(self, registry: RoomRegistry, tracker: DesiredStateTracker,
                 channel_state: Callable[[], str], store_state: Callable[[], str]):
        self.registry = registry
        self.tracker = tracker
        self.channel_state = channel_state
        self.store_state = store_state
        self.observed: Dict[str, PowerState] = {}
        self._started = time.monotonic()

    async def attach(self, channel: CommandChannel) -> None:
        """Listen to feedback from every mapped device"""
        for device_id in set(self.registry.device_ids()):
            await channel.subscribe_feedback(device_id, self.handle_feedback)

    async def handle_feedback(self, device_id: str, state: PowerState) -> None:
        for room_id in self.registry.rooms_for_device(device_id):
            self.observed[room_id] = state
            logger.info(f"{room_id} reported {state.value} ({device_id})")

    def rooms(self) -> List[RoomStatus]:
        return [
            RoomStatus(observed=self.observed.get(entry["room"]), **entry)
            for entry in self.tracker.snapshot()
        ]

    def room_state(self) -> RoomStateResponse:
        return RoomStateResponse(roomState=dict(self.observed))

    def health(self) -> HealthStatus:
        rooms = [
            f"{room.room}: {room.desired.value} "
            f"(actual: {room.observed.value if room.observed else '?'})"
            for room in self.rooms()
        ]
        return HealthStatus(
            status="running",
            mqtt=self.channel_state(),
            db=self.store_state(),
            rooms=rooms,
            uptime=round(time.monotonic() - self._started, 3),
            timestamp=datetime.now().astimezone(),
        )
