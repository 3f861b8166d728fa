import re
from datetime import date, datetime, time
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Dropdown marker the booking UI sometimes leaves in the stored room label
_DROPDOWN_ARTIFACT = re.compile(r"\s*▼\s*")


def clean_room_label(label: Optional[str]) -> str:
    return _DROPDOWN_ARTIFACT.sub("", label or "").strip()


def seconds_of_day(value: time) -> int:
    return value.hour * 3600 + value.minute * 60 + value.second


class Booking(BaseModel):
    """A reservation snapshot as read from the booking store"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    room: str
    day: date = Field(alias="date")
    start_time: time = Field(alias="startTime")
    end_time: time = Field(alias="endTime")
    first_check_in: Optional[Any] = Field(default=None, alias="firstCheckIn")

    @field_validator("room", mode="before")
    def validate_room(cls, v):
        return clean_room_label(v)

    @field_validator("start_time", "end_time", mode="before")
    def validate_time(cls, v):
        if isinstance(v, str):
            for fmt in ("%H:%M", "%H:%M:%S"):
                try:
                    return datetime.strptime(v.strip(), fmt).time()
                except ValueError:
                    continue
            raise ValueError(f"Invalid time of day: {v!r}")
        return v

    @property
    def checked_in(self) -> bool:
        return bool(self.first_check_in)

    @property
    def start_seconds(self) -> int:
        return seconds_of_day(self.start_time)

    @property
    def end_seconds(self) -> int:
        return seconds_of_day(self.end_time)

    def is_active_at(self, now_seconds: int, early_allowance_seconds: int = 0) -> bool:
        """True when now falls in [start - early allowance, end], both bounds inclusive."""
        return self.start_seconds - early_allowance_seconds <= now_seconds <= self.end_seconds

    def remaining_seconds(self, now_seconds: int) -> int:
        return self.end_seconds - now_seconds
