import asyncio
from datetime import date
from typing import List, Optional

import pytest

from room_power.adapters.base import BookingSource, CommandChannel
from room_power.core.room_registry import RoomRegistry
from room_power.models.booking import Booking
from room_power.utils.exceptions import TransportError


class FakeChannel(CommandChannel):
    def __init__(self):
        self.published = []
        self.fail = False
        self.delay = 0.0
        self.handlers = {}
        self._connected = asyncio.Event()
        self._connected.set()

    async def publish(self, device_id, state):
        self.published.append((device_id, state))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise TransportError("broker unavailable")

    async def subscribe_feedback(self, device_id, handler):
        self.handlers.setdefault(device_id, []).append(handler)

    def is_connected(self):
        return self._connected.is_set()

    def set_connected(self, connected: bool):
        if connected:
            self._connected.set()
        else:
            self._connected.clear()

    async def wait_ready(self):
        await self._connected.wait()


class FakeBookingSource(BookingSource):
    def __init__(self, bookings: Optional[List[Booking]] = None):
        self.bookings = bookings or []
        self.available = True
        self.error: Optional[Exception] = None
        self.queried: List[date] = []
        self.gate: Optional[asyncio.Event] = None

    async def query_today(self, day):
        self.queried.append(day)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return list(self.bookings)

    def is_available(self):
        return self.available


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def advance(self, seconds: float):
        self.now += seconds

    def __call__(self):
        return self.now


def make_booking(room="R1", start="09:00", end="10:00", checked_in=True, day="2026-10-19"):
    record = {"room": room, "date": day, "startTime": start, "endTime": end}
    if checked_in:
        record["firstCheckIn"] = f"{day}T08:50:00"
    return Booking.model_validate(record)


@pytest.fixture
def registry():
    return RoomRegistry({"R1": "D1", "R2": "D2"})


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def source():
    return FakeBookingSource()


@pytest.fixture
def booking_factory():
    return make_booking

