from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional

from ..utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Room:
    room_id: str
    device_id: str


class RoomRegistry:
    """Static room -> device mapping, built once at startup"""

    def __init__(self, mapping: Dict[str, str]):
        self._rooms: Dict[str, Room] = {}
        for room_id, device_id in mapping.items():
            if not room_id or not device_id:
                logger.warning(f"Ignoring room mapping with empty side: {room_id!r}={device_id!r}")
                continue
            self._rooms[room_id] = Room(room_id, device_id)

    def get(self, room_id: str) -> Optional[Room]:
        return self._rooms.get(room_id)

    def device_for(self, room_id: str) -> Optional[str]:
        room = self._rooms.get(room_id)
        return room.device_id if room else None

    def room_ids(self) -> List[str]:
        return list(self._rooms)

    def device_ids(self) -> List[str]:
        return [room.device_id for room in self._rooms.values()]

    def rooms_for_device(self, device_id: str) -> List[str]:
        return [room.room_id for room in self._rooms.values() if room.device_id == device_id]

    def __contains__(self, room_id: str) -> bool:
        return room_id in self._rooms

    def __iter__(self) -> Iterator[Room]:
        return iter(list(self._rooms.values()))

    def __len__(self) -> int:
        return len(self._rooms)
