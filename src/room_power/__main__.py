# src/room_power/__main__.py
import asyncio
import signal
import sys
import traceback
from typing import Optional

from fastapi import FastAPI
from hypercorn.asyncio import serve
from hypercorn.config import Config as HyperConfig

from room_power.adapters.mqtt import MQTTAdapter
from room_power.api.routes import create_app
from room_power.core.config_manager import APISettings, Settings, load_settings
from room_power.core.reconciler import ReconciliationLoop
from room_power.core.room_registry import RoomRegistry
from room_power.core.state_tracker import DesiredStateTracker
from room_power.core.status import StatusReporter
from room_power.devices.tasmota import TasmotaPowerChannel
from room_power.storage.booking_store import MongoBookingSource
from room_power.utils.exceptions import ConfigurationError, StartupError
from room_power.utils.logging import get_logger, setup_logging


class APIServer:
    """Serves the status API until shutdown"""

    def __init__(self, config: APISettings, shutdown_event: asyncio.Event):
        self.config = config
        self.shutdown_event = shutdown_event
        self.logger = get_logger("API Server")
        self.app: Optional[FastAPI] = None

    async def start(self, app: FastAPI):
        self.app = app
        hypercorn_config = HyperConfig()
        hypercorn_config.bind = [f"{self.config.host}:{self.config.port}"]

        async def shutdown_trigger():
            await self.shutdown_event.wait()

        self.logger.info(f"Health check server listening on port {self.config.port}")
        try:
            await serve(self.app, hypercorn_config, shutdown_trigger=shutdown_trigger)
        except Exception:
            self.logger.error(f"Failed to start API server: {traceback.format_exc()}")
            raise


class RoomPowerApp:
    """Main application: wires the booking store, MQTT and the reconciliation loop"""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.logger = get_logger("Main App")
        self.shutdown_event = asyncio.Event()
        self.api_server = APIServer(settings.api, self.shutdown_event)
        self.registry = RoomRegistry(settings.rooms)

        # Components to be initialized later
        self.store: Optional[MongoBookingSource] = None
        self.mqtt: Optional[MQTTAdapter] = None
        self.channel: Optional[TasmotaPowerChannel] = None
        self.tracker: Optional[DesiredStateTracker] = None
        self.reconciler: Optional[ReconciliationLoop] = None
        self.status: Optional[StatusReporter] = None

    def _channel_state(self) -> str:
        return self.channel.state if self.channel else "not initialized"

    def _store_state(self) -> str:
        return self.store.state if self.store else "not connected"

    def log_banner(self):
        reconciler = self.settings.reconciler
        self.logger.info("Room power controller (MQTT + MongoDB bookings)")
        self.logger.info("Room-Device Map:")
        for room in self.registry:
            self.logger.info(f"  {room.room_id} -> {room.device_id}")
        self.logger.info(f"Checking every {reconciler.check_interval_ms / 1000:g} seconds, "
                         f"early allowance {reconciler.early_allowance_min} min, "
                         f"command cooldown {reconciler.command_cooldown_ms / 1000:g} s")
        self.logger.info("Logic: checked in -> ON, booking end -> OFF, no booking -> OFF")

    async def initialize_components(self):
        """Initialize all application components"""
        self.store = MongoBookingSource(self.settings.store)
        await self.store.connect()

        self.mqtt = MQTTAdapter(self.settings.mqtt)
        self.channel = TasmotaPowerChannel(self.mqtt)

        reconciler_config = self.settings.reconciler
        self.tracker = DesiredStateTracker(
            self.registry,
            self.channel,
            cooldown=reconciler_config.command_cooldown_ms / 1000
        )
        self.status = StatusReporter(self.registry, self.tracker,
                                     self._channel_state, self._store_state)
        await self.status.attach(self.channel)

        self.reconciler = ReconciliationLoop(
            self.registry,
            self.tracker,
            self.store,
            self.channel,
            interval=reconciler_config.check_interval_ms / 1000,
            early_allowance_min=reconciler_config.early_allowance_min
        )

        await self.mqtt.connect()
        self.reconciler.start()
        self.logger.info("All components initialized successfully")

    async def shutdown(self):
        """Gracefully shutdown all components"""
        if self.shutdown_event.is_set():
            return
        self.logger.info("Initiating shutdown sequence")
        try:
            if self.reconciler:
                await self.reconciler.stop()
            if self.mqtt:
                await self.mqtt.disconnect()
            if self.store:
                await self.store.close()
            self.logger.info("Shutdown completed successfully")
        except Exception:
            self.logger.error(f"Error during shutdown: {traceback.format_exc()}")
        finally:
            self.shutdown_event.set()

    def handle_signals(self):
        """Set up signal handlers for graceful shutdown"""
        loop = asyncio.get_running_loop()

        def signal_handler(signum):
            self.logger.info(f"Received signal {signum}")
            asyncio.create_task(self.shutdown())

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, signal_handler, sig)
            except NotImplementedError:
                # add_signal_handler is unavailable on Windows event loops
                signal.signal(sig, lambda signum, frame: loop.call_soon_threadsafe(signal_handler, signum))

    async def run(self):
        """Main application entry point"""
        self.handle_signals()
        self.log_banner()
        try:
            await self.initialize_components()
        except StartupError as e:
            self.logger.error(f"Startup error: {str(e)}")
            await self.shutdown()
            sys.exit(1)

        try:
            await self.api_server.start(create_app(self.status))
        except Exception:
            self.logger.error(f"Unexpected error: {traceback.format_exc()}")
            await self.shutdown()
            sys.exit(1)
        await self.shutdown()


def main():
    """Application entry point"""
    try:
        settings = load_settings()
    except ConfigurationError as e:
        setup_logging({})
        get_logger("Main App").error(f"Configuration error: {str(e)}")
        sys.exit(1)

    setup_logging(settings.logging.model_dump())
    app = RoomPowerApp(settings)
    asyncio.run(app.run())

if __name__ == "__main__":
    main()
