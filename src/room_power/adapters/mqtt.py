import asyncio
import random
import ssl
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import aiomqtt as mqtt
from aiomqtt import Will

from ..adapters.base import CommunicationAdapter
from ..core.config_manager import MQTTSettings
from ..utils.exceptions import TransportError
from ..utils.logging import get_logger

logger = get_logger(__name__)

'''
usage Examples

adapter = MQTTAdapter(settings.mqtt)
await adapter.connect()
await adapter.subscribe("stat/tasmota_room101/POWER", message_handler)
await adapter.publish("cmnd/tasmota_room101/Power", "ON", qos=1)
await adapter.disconnect()

'''

MessageHandler = Callable[[str, Any], Awaitable[None]]


class MQTTAdapter(CommunicationAdapter):
    def __init__(self, config: MQTTSettings, message_queue_size: int = 1000):
        """Initialize MQTT adapter with configuration"""
        self.config = config
        self.client: Optional[mqtt.Client] = None
        self.message_handlers: Dict[str, List[MessageHandler]] = {}
        self.connected = asyncio.Event()
        self._stop_flag = asyncio.Event()
        self._connection_task: Optional[asyncio.Task] = None
        self._message_processor_task: Optional[asyncio.Task] = None
        self._message_queue: asyncio.Queue = asyncio.Queue(maxsize=message_queue_size)
        self._subscription_lock = asyncio.Lock()
        self._status_topic = f"{self.config.client_id}/status"

    @property
    def state(self) -> str:
        if self._connection_task is None:
            return "not initialized"
        return "connected" if self.connected.is_set() else "disconnected"

    def _create_tls_context(self) -> Optional[ssl.SSLContext]:
        """Create SSL context for MQTT connection based on config"""
        if not self.config.use_tls:
            return None

        context = ssl.create_default_context()
        if self.config.ca_cert:
            context.load_verify_locations(cafile=self.config.ca_cert)
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        return context

    def _build_client(self) -> mqtt.Client:
        # Last Will so dashboards see the controller going away
        will = Will(topic=self._status_topic, payload="Offline", qos=1, retain=True)
        return mqtt.Client(
            hostname=self.config.host,
            port=self.config.resolved_port,
            username=self.config.username,
            password=self.config.password,
            keepalive=self.config.keepalive,
            identifier=f"{self.config.client_id}_{random.randint(1000, 9999)}",
            will=will,
            timeout=self.config.connect_timeout,
            tls_context=self._create_tls_context(),
        )

    async def _subscribe_topics(self) -> None:
        """Subscribe to all stored topics"""
        async with self._subscription_lock:
            for topic in self.message_handlers:
                if not self.client:
                    return
                try:
                    await self.client.subscribe(topic, qos=self.config.subscribe_qos)
                    logger.info(f"Subscribed to topic: {topic}")
                except mqtt.MqttError as e:
                    logger.error(f"Failed to subscribe to topic {topic}: {str(e)}")

    async def _run(self) -> None:
        """Keep a broker connection alive, reconnecting with exponential backoff"""
        attempt = 0
        while not self._stop_flag.is_set():
            try:
                logger.info(f"Connecting to MQTT broker {self.config.host}:{self.config.resolved_port}")
                async with self._build_client() as client:
                    self.client = client
                    self.connected.set()
                    attempt = 0
                    logger.info("Connected to MQTT broker")

                    await client.publish(self._status_topic, payload="Online", qos=1, retain=True)
                    await self._subscribe_topics()

                    async for message in client.messages:
                        await self._enqueue(str(message.topic), message.payload)
            except asyncio.CancelledError:
                raise
            except mqtt.MqttError as e:
                logger.error(f"MQTT connection error: {str(e)}")
            except Exception:
                logger.exception("Unexpected error in MQTT connection loop")
            finally:
                if self.connected.is_set():
                    logger.info("Disconnected from MQTT broker")
                self.connected.clear()
                self.client = None

            if self._stop_flag.is_set():
                break

            attempt += 1
            wait_time = min(self.config.reconnect_interval * (2 ** (attempt - 1)),
                            self.config.max_reconnect_interval)
            logger.info(f"MQTT reconnect attempt {attempt} in {wait_time:.0f} seconds")
            await asyncio.sleep(wait_time)

    async def _enqueue(self, topic: str, payload: Union[bytes, bytearray, str, Any]) -> None:
        if isinstance(payload, (bytes, bytearray)):
            payload = payload.decode(errors="replace")
        logger.debug(f"MQTT: {topic} -> {payload}")
        try:
            self._message_queue.put_nowait((topic, payload))
        except asyncio.QueueFull:
            logger.warning(f"Message queue full, dropping message on {topic}")

    async def _process_message_queue(self) -> None:
        """Dispatch queued messages to topic handlers"""
        while not self._stop_flag.is_set():
            topic, payload = await self._message_queue.get()
            try:
                for handler in list(self.message_handlers.get(topic, [])):
                    try:
                        await handler(topic, payload)
                    except Exception:
                        logger.exception(f"Error in message handler for topic {topic}")
            finally:
                self._message_queue.task_done()

    async def connect(self) -> None:
        """Start the connection loop and message processing"""
        if self._connection_task and not self._connection_task.done():
            return
        self._stop_flag.clear()
        self._connection_task = asyncio.create_task(self._run())
        self._message_processor_task = asyncio.create_task(self._process_message_queue())

    async def disconnect(self) -> None:
        """Disconnect from MQTT broker and cleanup"""
        self._stop_flag.set()

        if self.client and self.connected.is_set():
            try:
                await self.client.publish(self._status_topic, payload="Offline", qos=1, retain=True)
            except mqtt.MqttError as e:
                logger.warning(f"Could not publish offline status: {str(e)}")

        for task in (self._connection_task, self._message_processor_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        self.connected.clear()
        self.client = None
        logger.info("MQTT adapter stopped")

    async def subscribe(self, topic: str, handler: MessageHandler) -> None:
        """Subscribe to MQTT topic with handler"""
        async with self._subscription_lock:
            if topic not in self.message_handlers:
                self.message_handlers[topic] = []
                if self.client and self.connected.is_set():
                    try:
                        await self.client.subscribe(topic, qos=self.config.subscribe_qos)
                    except mqtt.MqttError as e:
                        # resubscribed on the next reconnect
                        logger.error(f"Failed to subscribe to topic {topic}: {str(e)}")
            self.message_handlers[topic].append(handler)
            logger.info(f"Registered handler for topic: {topic}")

    async def publish(self, topic: str, payload: Union[str, bytes], qos: Optional[int] = None,
                      retain: bool = False) -> None:
        """Publish a message, raising TransportError if the broker does not take it"""
        client = self.client
        if client is None or not self.connected.is_set():
            raise TransportError("Not connected to MQTT broker")

        qos = self.config.publish_qos if qos is None else qos
        try:
            await asyncio.wait_for(
                client.publish(topic, payload=payload, qos=qos, retain=retain),
                timeout=self.config.publish_timeout
            )
        except asyncio.TimeoutError:
            raise TransportError(f"Publish to {topic} timed out after {self.config.publish_timeout}s")
        except mqtt.MqttError as e:
            raise TransportError(f"Publish to {topic} failed: {str(e)}")
        logger.debug(f"Published {payload!r} to {topic}")
