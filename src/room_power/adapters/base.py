# Abstract collaborators of the reconciliation core.
# The MQTT and MongoDB implementations live in devices/ and storage/.

import asyncio
from abc import ABC, abstractmethod
from datetime import date
from typing import Awaitable, Callable, List

from ..models.booking import Booking
from ..models.power import PowerState

FeedbackHandler = Callable[[str, PowerState], Awaitable[None]]


class CommunicationAdapter(ABC):
    @abstractmethod
    async def connect(self) -> None:
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        pass


class CommandChannel(ABC):
    """Publish/subscribe channel to room power devices"""

    @abstractmethod
    async def publish(self, device_id: str, state: PowerState) -> None:
        """Send a power command. Raises TransportError when it cannot be delivered."""
        pass

    @abstractmethod
    async def subscribe_feedback(self, device_id: str, handler: FeedbackHandler) -> None:
        """Register a handler called with (device_id, observed state) on device feedback"""
        pass

    @abstractmethod
    def is_connected(self) -> bool:
        pass

    async def wait_ready(self) -> None:
        while not self.is_connected():
            await asyncio.sleep(0.5)


class BookingSource(ABC):
    """Read-only view of the booking store"""

    @abstractmethod
    async def query_today(self, day: date) -> List[Booking]:
        """Return every booking for ``day``. Raises StoreQueryError on failure."""
        pass

    @abstractmethod
    def is_available(self) -> bool:
        pass
