import asyncio
from datetime import datetime

import pytest
import pytest_asyncio

from room_power.core.reconciler import ReconciliationLoop, find_active_booking
from room_power.core.state_tracker import DesiredStateTracker
from room_power.models.power import PowerState
from room_power.utils.exceptions import StoreQueryError

TODAY = "2026-10-19"


def at(hh, mm, ss=0):
    return datetime(2026, 10, 19, hh, mm, ss)


@pytest.fixture
def tracker(registry, channel, clock):
    return DesiredStateTracker(registry, channel, cooldown=0, clock=clock)


@pytest_asyncio.fixture
async def reconciler(registry, tracker, source, channel):
    reconciler = ReconciliationLoop(registry, tracker, source, channel,
                                    interval=0.05, early_allowance_min=15)
    yield reconciler
    await reconciler.stop()


def published_for(channel, device_id):
    return [state for device, state in channel.published if device == device_id]


@pytest.mark.asyncio
async def test_checked_in_booking_turns_room_on_and_arms_auto_off(reconciler, source, channel, tracker, booking_factory):
    source.bookings = [booking_factory("R1", "09:00", "10:00", checked_in=True)]

    assert await reconciler.tick(at(8, 50)) is True

    assert published_for(channel, "D1") == [PowerState.ON]
    timer = tracker.record("R1").auto_off
    assert timer is not None and timer.pending
    assert timer.delay == 70 * 60


@pytest.mark.asyncio
async def test_booking_without_check_in_is_left_alone(reconciler, source, channel, tracker, booking_factory):
    source.bookings = [booking_factory("R1", "09:00", "10:00", checked_in=False)]

    await reconciler.tick(at(9, 5))

    assert published_for(channel, "D1") == []
    assert tracker.record("R1").auto_off is None
    assert tracker.desired_state("R1") is PowerState.UNKNOWN


@pytest.mark.asyncio
async def test_room_without_booking_is_turned_off(reconciler, channel, tracker):
    await reconciler.tick(at(13, 0))

    assert published_for(channel, "D1") == [PowerState.OFF]
    assert published_for(channel, "D2") == [PowerState.OFF]

    await reconciler.tick(at(13, 0, 10))
    assert published_for(channel, "D1") == [PowerState.OFF]


@pytest.mark.asyncio
async def test_booking_ending_turns_room_off_and_cancels_timer(reconciler, source, channel, tracker, clock, booking_factory):
    source.bookings = [booking_factory("R1", "09:00", "10:00")]
    await reconciler.tick(at(9, 30))
    assert tracker.record("R1").auto_off is not None

    source.bookings = []
    await reconciler.tick(at(9, 30, 10))

    assert published_for(channel, "D1") == [PowerState.ON, PowerState.OFF]
    assert tracker.pending_timers() == []


@pytest.mark.asyncio
async def test_missing_check_in_keeps_existing_timer(reconciler, source, tracker, booking_factory):
    source.bookings = [booking_factory("R1", "09:00", "10:00", checked_in=True)]
    await reconciler.tick(at(9, 30))
    timer = tracker.record("R1").auto_off

    source.bookings = [booking_factory("R1", "09:00", "10:00", checked_in=False)]
    await reconciler.tick(at(9, 31))

    assert tracker.record("R1").auto_off is timer
    assert timer.pending


@pytest.mark.asyncio
async def test_next_booking_replaces_auto_off_timer(reconciler, source, tracker, booking_factory):
    first = booking_factory("R1", "09:00", "10:00")
    second = booking_factory("R1", "10:00", "11:00")
    source.bookings = [first]
    await reconciler.tick(at(9, 30))
    old_timer = tracker.record("R1").auto_off

    source.bookings = [first, second]
    await reconciler.tick(at(10, 0, 30))

    pending = [timer for timer in tracker.pending_timers() if timer.room_id == "R1"]
    assert len(pending) == 1
    assert pending[0].delay == 59 * 60 + 30
    assert old_timer.cancelled


@pytest.mark.asyncio
async def test_extended_end_time_rearms_timer(reconciler, source, tracker, booking_factory):
    source.bookings = [booking_factory("R1", "09:00", "10:00")]
    await reconciler.tick(at(9, 30))

    source.bookings = [booking_factory("R1", "09:00", "10:30")]
    await reconciler.tick(at(9, 30, 10))

    assert tracker.record("R1").auto_off.delay == 60 * 60 - 10


@pytest.mark.asyncio
async def test_auto_off_fires_at_booking_end(reconciler, source, channel, booking_factory):
    source.bookings = [booking_factory("R1", "09:00", "10:00")]
    await reconciler.tick(at(9, 59, 59))
    assert published_for(channel, "D1") == [PowerState.ON]

    await asyncio.sleep(0.7)
    assert published_for(channel, "D1") == [PowerState.ON]

    await asyncio.sleep(0.5)
    assert published_for(channel, "D1") == [PowerState.ON, PowerState.OFF]


@pytest.mark.asyncio
async def test_booking_at_its_end_time_arms_no_timer(reconciler, source, channel, tracker, booking_factory):
    source.bookings = [booking_factory("R1", "09:00", "10:00")]
    await reconciler.tick(at(10, 0))

    assert published_for(channel, "D1") == [PowerState.ON]
    assert tracker.record("R1").auto_off is None


@pytest.mark.asyncio
async def test_early_allowance_window(reconciler, source, channel, booking_factory):
    source.bookings = [booking_factory("R1", "09:00", "10:00")]

    await reconciler.tick(at(8, 44, 59))
    assert published_for(channel, "D1") == [PowerState.OFF]

    await reconciler.tick(at(8, 45))
    assert published_for(channel, "D1") == [PowerState.OFF, PowerState.ON]


@pytest.mark.asyncio
async def test_decorated_room_label_matches(reconciler, source, channel, booking_factory):
    source.bookings = [booking_factory("R1 ▼", "09:00", "10:00")]

    await reconciler.tick(at(9, 15))

    assert published_for(channel, "D1") == [PowerState.ON]


@pytest.mark.asyncio
async def test_store_error_aborts_whole_tick(reconciler, source, channel, tracker):
    source.error = StoreQueryError("connection reset")

    assert await reconciler.tick(at(9, 0)) is False

    assert channel.published == []
    assert tracker.desired_state("R1") is PowerState.UNKNOWN
    assert reconciler.tick_count == 0


@pytest.mark.asyncio
async def test_tick_is_noop_while_disconnected(reconciler, source, channel):
    channel.set_connected(False)
    assert await reconciler.tick(at(9, 0)) is False

    channel.set_connected(True)
    source.available = False
    assert await reconciler.tick(at(9, 0)) is False

    assert source.queried == []
    assert channel.published == []


@pytest.mark.asyncio
async def test_failed_publish_is_retried_next_tick(reconciler, channel, tracker):
    channel.fail = True
    await reconciler.tick(at(13, 0))
    assert tracker.desired_state("R1") is PowerState.UNKNOWN

    channel.fail = False
    await reconciler.tick(at(13, 0, 10))

    assert published_for(channel, "D1") == [PowerState.OFF, PowerState.OFF]
    assert tracker.desired_state("R1") is PowerState.OFF


@pytest.mark.asyncio
async def test_room_failure_does_not_abort_other_rooms(reconciler, channel, tracker):
    request_off = tracker.request_off

    async def flaky_request_off(room_id):
        if room_id == "R1":
            raise RuntimeError("boom")
        return await request_off(room_id)

    tracker.request_off = flaky_request_off

    assert await reconciler.tick(at(13, 0)) is True
    assert published_for(channel, "D2") == [PowerState.OFF]


@pytest.mark.asyncio
async def test_overlapping_tick_is_skipped(reconciler, source):
    source.gate = asyncio.Event()
    first = asyncio.create_task(reconciler.tick(at(9, 0)))
    await asyncio.sleep(0.01)

    assert await reconciler.tick(at(9, 0, 5)) is False

    source.gate.set()
    assert await first is True
    assert len(source.queried) == 1


@pytest.mark.asyncio
async def test_query_uses_local_calendar_date(reconciler, source):
    await reconciler.tick(datetime(2026, 10, 19, 0, 30))

    assert [day.isoformat() for day in source.queried] == [TODAY]


@pytest.mark.asyncio
async def test_run_starts_once_channel_is_ready(reconciler, channel, source):
    channel.set_connected(False)
    reconciler.start()
    await asyncio.sleep(0.1)
    assert reconciler.tick_count == 0

    channel.set_connected(True)
    await asyncio.sleep(0.12)
    assert reconciler.tick_count >= 2

    await reconciler.stop()
    assert not reconciler.is_running


def test_earliest_start_wins_among_overlapping_bookings(booking_factory):
    late = booking_factory("R1", "09:30", "11:00")
    early = booking_factory("R1", "09:00", "10:00")
    other_room = booking_factory("R2", "08:00", "12:00")

    now = 9 * 3600 + 45 * 60
    assert find_active_booking("R1", [late, other_room, early], now, 15 * 60) is early


def test_latest_end_breaks_start_ties(booking_factory):
    short = booking_factory("R1", "09:00", "09:30")
    long = booking_factory("R1", "09:00", "10:00")

    assert find_active_booking("R1", [short, long], 9 * 3600 + 60, 0) is long


def test_no_active_booking_outside_window(booking_factory):
    booking = booking_factory("R1", "09:00", "10:00")

    assert find_active_booking("R1", [booking], 10 * 3600 + 1, 15 * 60) is None
    assert find_active_booking("R1", [booking], 8 * 3600 + 44 * 60 + 59, 15 * 60) is None
