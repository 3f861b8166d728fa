# Configuration management
import os
import traceback
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlparse

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from ..utils.exceptions import ConfigurationError
from ..utils.logging import get_logger

logger = get_logger(__name__)

CONFIG_PATH_ENV = "ROOM_POWER_CONFIG"

# Environment variable -> (section, key)
ENV_KEYS = {
    "MQTT_BROKER": ("mqtt", "broker"),
    "MQTT_PORT": ("mqtt", "port"),
    "MQTT_USERNAME": ("mqtt", "username"),
    "MQTT_PASSWORD": ("mqtt", "password"),
    "MQTT_CLIENT_ID": ("mqtt", "client_id"),
    "MONGODB_URI": ("store", "uri"),
    "DB_NAME": ("store", "db_name"),
    "BOOKINGS_COLLECTION": ("store", "bookings_collection"),
    "CHECK_INTERVAL": ("reconciler", "check_interval_ms"),
    "EARLY_ALLOWANCE_MIN": ("reconciler", "early_allowance_min"),
    "COMMAND_COOLDOWN": ("reconciler", "command_cooldown_ms"),
    "PORT": ("api", "port"),
    "LOG_LEVEL": ("logging", "level"),
    "LOG_FILE": ("logging", "file"),
}


class APISettings(BaseModel):
    host: str = Field("0.0.0.0", description="Status API bind address")
    port: int = Field(3000, gt=0, lt=65536, description="Status API port")


class MQTTSettings(BaseModel):
    broker: str = Field("mqtt://localhost", description="Broker URL, mqtts:// enables TLS")
    port: Optional[int] = Field(None, gt=0, lt=65536, description="Overrides the port in the broker URL")
    username: Optional[str] = None
    password: Optional[str] = None
    client_id: str = Field("room-power-controller", description="MQTT client ID prefix")
    keepalive: int = Field(60, ge=30, description="Connection keepalive in seconds")
    reconnect_interval: float = Field(5.0, gt=0, description="Base reconnection interval in seconds")
    max_reconnect_interval: float = Field(60.0, gt=0, description="Upper bound for reconnect backoff")
    connect_timeout: float = Field(30.0, gt=0, description="Broker connect timeout in seconds")
    publish_qos: int = Field(1, ge=0, le=2)
    subscribe_qos: int = Field(0, ge=0, le=2)
    publish_timeout: float = Field(10.0, gt=0, description="Seconds to wait for a publish to complete")
    ca_cert: Optional[str] = Field(None, description="Custom CA certificate")

    @property
    def host(self) -> str:
        return urlparse(self.broker).hostname or "localhost"

    @property
    def use_tls(self) -> bool:
        return urlparse(self.broker).scheme in ("mqtts", "ssl", "tls")

    @property
    def resolved_port(self) -> int:
        if self.port:
            return self.port
        return urlparse(self.broker).port or 8883


class StoreSettings(BaseModel):
    uri: str = Field("mongodb://localhost:27017", description="MongoDB connection string")
    db_name: str = "momay_buu"
    bookings_collection: str = "bookings"
    server_selection_timeout_ms: int = Field(10000, gt=0)
    connect_retries: int = Field(3, ge=0, description="Retries for the initial connection")
    connect_retry_delay: float = Field(1.0, ge=0, description="First retry delay, doubled per attempt")
    max_connect_retry_delay: float = Field(30.0, ge=0)


class ReconcilerSettings(BaseModel):
    check_interval_ms: int = Field(10000, gt=0)
    early_allowance_min: int = Field(15, ge=0)
    command_cooldown_ms: int = Field(5000, ge=0)


class LoggingSettings(BaseModel):
    level: str = "INFO"
    file: Optional[str] = None
    max_size: int = 10
    backup_count: int = 5
    format: str = "%(asctime)s - %(name)s - [%(levelname)s] - %(message)s"


class Settings(BaseModel):
    api: APISettings = APISettings()
    mqtt: MQTTSettings = MQTTSettings()
    store: StoreSettings = StoreSettings()
    reconciler: ReconcilerSettings = ReconcilerSettings()
    logging: LoggingSettings = LoggingSettings()
    rooms: Dict[str, str] = Field(default_factory=dict, description="room -> device")


def parse_room_device_map(raw: Optional[str]) -> Dict[str, str]:
    """
    Parse ``room=device`` pairs separated by commas.

    Malformed entries are logged and skipped, the rest of the map is kept.
    """
    mapping: Dict[str, str] = {}
    if not raw:
        return mapping

    for pair in raw.split(","):
        pair = pair.strip()
        if not pair:
            continue
        parts = [part.strip() for part in pair.split("=")]
        if len(parts) != 2 or not parts[0] or not parts[1]:
            logger.warning(f"Skipping malformed room-device entry: {pair!r}")
            continue
        room, device = parts
        if room in mapping:
            logger.warning(f"Room {room} mapped twice, using device {device}")
        mapping[room] = device
    return mapping


def normalize_room_mapping(rooms: Mapping[Any, Any]) -> Dict[str, str]:
    """Coerce a YAML ``rooms`` mapping to strings, skipping entries with an empty side"""
    mapping: Dict[str, str] = {}
    for room, device in rooms.items():
        room = "" if room is None else str(room).strip()
        device = "" if device is None else str(device).strip()
        if not room or not device:
            logger.warning(f"Skipping malformed room-device entry: {room or '?'} -> {device or '?'}")
            continue
        mapping[room] = device
    return mapping


class ConfigManager:
    """Manages configuration loading and validation"""

    @staticmethod
    def load_yaml(config_path: str) -> Dict[str, Any]:
        """Load optional defaults from a YAML file"""
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError:
            raise ConfigurationError(f"Error parsing configuration file: {traceback.format_exc()}")
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        if config is None:
            return {}
        if not isinstance(config, dict):
            raise ConfigurationError("Configuration file must contain a mapping at the top level")
        return config

    @staticmethod
    def apply_env(config: Dict[str, Any], env: Mapping[str, str]) -> Dict[str, Any]:
        """Overlay environment variables on top of file values"""
        merged = {section: dict(values or {}) for section, values in config.items()
                  if isinstance(values, dict)}
        if "rooms" in config:
            merged["rooms"] = config["rooms"]

        for env_key, (section, key) in ENV_KEYS.items():
            value = env.get(env_key)
            if value is None or value == "":
                continue
            merged.setdefault(section, {})[key] = value

        raw_map = env.get("ROOM_DEVICE_MAP")
        if raw_map:
            merged["rooms"] = parse_room_device_map(raw_map)
        elif isinstance(merged.get("rooms"), str):
            merged["rooms"] = parse_room_device_map(merged["rooms"])
        elif isinstance(merged.get("rooms"), dict):
            merged["rooms"] = normalize_room_mapping(merged["rooms"])
        return merged

    @classmethod
    def load(cls, env: Optional[Mapping[str, str]] = None,
             config_path: Optional[str] = None) -> Settings:
        if env is None:
            load_dotenv(override=False)
            env = os.environ

        config_path = config_path or env.get(CONFIG_PATH_ENV)
        file_config = cls.load_yaml(config_path) if config_path else {}
        merged = cls.apply_env(file_config, env)

        try:
            settings = Settings(**merged)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}")

        if not settings.rooms:
            logger.warning("ROOM_DEVICE_MAP is empty, no rooms will be controlled")
        return settings


def load_settings(env: Optional[Mapping[str, str]] = None,
                  config_path: Optional[str] = None) -> Settings:
    return ConfigManager.load(env=env, config_path=config_path)
