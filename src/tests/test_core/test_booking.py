from datetime import date, time

import pytest
from pydantic import ValidationError

from room_power.models.booking import Booking, clean_room_label


def test_booking_record_shape_is_parsed():
    booking = Booking.model_validate({
        "_id": "abc",
        "room": "room101",
        "date": "2026-10-19",
        "startTime": "09:00",
        "endTime": "10:30",
        "firstCheckIn": "2026-10-19T08:55:00",
        "bookedBy": "someone",
    })

    assert booking.room == "room101"
    assert booking.day == date(2026, 10, 19)
    assert booking.start_time == time(9, 0)
    assert booking.end_time == time(10, 30)
    assert booking.checked_in
    assert booking.start_seconds == 9 * 3600
    assert booking.end_seconds == 10 * 3600 + 30 * 60


def test_times_with_seconds_are_accepted():
    booking = Booking(room="R1", date="2026-10-19", startTime="09:00:15", endTime="09:45:30")

    assert booking.start_seconds == 9 * 3600 + 15
    assert booking.end_seconds == 9 * 3600 + 45 * 60 + 30


@pytest.mark.parametrize("marker", [None, "", False])
def test_missing_check_in_marker(marker):
    booking = Booking(room="R1", date="2026-10-19", startTime="09:00", endTime="10:00",
                      firstCheckIn=marker)
    assert not booking.checked_in


def test_invalid_time_is_rejected():
    with pytest.raises(ValidationError):
        Booking(room="R1", date="2026-10-19", startTime="9am", endTime="10:00")


@pytest.mark.parametrize("label, expected", [
    ("room101 ▼", "room101"),
    ("  room101▼  ", "room101"),
    ("room101", "room101"),
    (None, ""),
])
def test_room_label_is_cleaned(label, expected):
    assert clean_room_label(label) == expected


def test_active_window_bounds_are_inclusive():
    booking = Booking(room="R1", date="2026-10-19", startTime="09:00", endTime="10:00")
    early = 15 * 60

    assert booking.is_active_at(9 * 3600 - early, early)
    assert not booking.is_active_at(9 * 3600 - early - 1, early)
    assert booking.is_active_at(10 * 3600, early)
    assert not booking.is_active_at(10 * 3600 + 1, early)
    assert booking.remaining_seconds(9 * 3600 + 30 * 60) == 30 * 60
