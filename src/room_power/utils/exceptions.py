# src/room_power/utils/exceptions.py

class RoomPowerError(Exception):
    """Base exception class for the room power controller"""
    pass

class ConfigurationError(RoomPowerError):
    """Raised when configuration is missing or malformed"""
    pass

class StartupError(RoomPowerError):
    """Raised when a component required at startup cannot be brought up"""
    pass

class TransportError(RoomPowerError):
    """Raised when a device command cannot be delivered to the broker"""
    pass

class StoreQueryError(RoomPowerError):
    """Raised when the booking store cannot be queried"""
    pass
