from enum import Enum


class PowerState(str, Enum):
    ON = "ON"
    OFF = "OFF"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_feedback(cls, payload) -> "PowerState":
        """Map a device feedback payload to ON/OFF. Anything but ON reads as OFF."""
        if isinstance(payload, bytes):
            payload = payload.decode(errors="replace")
        return cls.ON if str(payload).strip().upper() == "ON" else cls.OFF
