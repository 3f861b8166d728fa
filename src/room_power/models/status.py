from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel

from .power import PowerState


class RoomStatus(BaseModel):
    room: str
    device: str
    desired: PowerState
    observed: Optional[PowerState] = None
    last_command_at: Optional[datetime] = None
    auto_off_in: Optional[float] = None


class HealthStatus(BaseModel):
    status: str
    mqtt: str
    db: str
    rooms: List[str]
    uptime: float
    timestamp: datetime


class RoomStateResponse(BaseModel):
    success: bool = True
    roomState: Dict[str, PowerState]
