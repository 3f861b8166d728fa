from typing import Any, Dict, List

from ..adapters.base import CommandChannel, FeedbackHandler
from ..adapters.mqtt import MQTTAdapter
from ..models.power import PowerState
from ..utils.logging import get_logger

logger = get_logger(__name__)


def command_topic(device_id: str) -> str:
    return f"cmnd/{device_id}/Power"


def status_topic(device_id: str) -> str:
    return f"stat/{device_id}/POWER"


class TasmotaPowerChannel(CommandChannel):
    """Drives Sonoff/Tasmota relays over MQTT

    Commands go to ``cmnd/<device>/Power`` as ``ON``/``OFF`` and the relay
    reports back on ``stat/<device>/POWER``.
    """

    def __init__(self, mqtt: MQTTAdapter):
        self.mqtt = mqtt
        self._feedback_handlers: Dict[str, List[FeedbackHandler]] = {}

    async def publish(self, device_id: str, state: PowerState) -> None:
        if state not in (PowerState.ON, PowerState.OFF):
            raise ValueError(f"Cannot command device {device_id} to {state}")
        await self.mqtt.publish(command_topic(device_id), state.value,
                                qos=self.mqtt.config.publish_qos)

    async def subscribe_feedback(self, device_id: str, handler: FeedbackHandler) -> None:
        topic = status_topic(device_id)
        if topic not in self._feedback_handlers:
            self._feedback_handlers[topic] = []
            await self.mqtt.subscribe(topic, self._handle_status)
        self._feedback_handlers[topic].append(handler)

    async def _handle_status(self, topic: str, payload: Any) -> None:
        parts = topic.split('/')
        if len(parts) != 3:
            logger.error(f"Invalid status topic format: {topic}")
            return
        device_id = parts[1]
        state = PowerState.from_feedback(payload)
        for handler in self._feedback_handlers.get(topic, []):
            await handler(device_id, state)

    def is_connected(self) -> bool:
        return self.mqtt.connected.is_set()

    async def wait_ready(self) -> None:
        await self.mqtt.connected.wait()

    @property
    def state(self) -> str:
        return self.mqtt.state
