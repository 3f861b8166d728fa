import asyncio
from datetime import date
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from pymongo import AsyncMongoClient
from pymongo.errors import PyMongoError

from ..adapters.base import BookingSource
from ..core.config_manager import StoreSettings
from ..models.booking import Booking
from ..utils.exceptions import StartupError, StoreQueryError
from ..utils.logging import get_logger

logger = get_logger(__name__)


class MongoBookingSource(BookingSource):
    """Reads today's bookings from the MongoDB bookings collection"""

    def __init__(self, config: StoreSettings, client: Optional[AsyncMongoClient] = None):
        self.config = config
        self.client = client
        self._connected = False

    @property
    def collection(self):
        return self.client[self.config.db_name][self.config.bookings_collection]

    async def _ping(self) -> None:
        await self.client.admin.command("ping")

    async def connect(self) -> None:
        """Connect and ping the server, retrying before giving up"""
        if self.client is None:
            self.client = AsyncMongoClient(
                self.config.uri,
                serverSelectionTimeoutMS=self.config.server_selection_timeout_ms,
            )

        attempts = self.config.connect_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                await self._ping()
                break
            except PyMongoError as e:
                if attempt == attempts:
                    logger.error(f"Giving up on MongoDB {self.config.db_name} after {attempts} attempts")
                    raise StartupError(f"MongoDB connection error: {str(e)}")
                delay = min(self.config.connect_retry_delay * (2 ** (attempt - 1)),
                            self.config.max_connect_retry_delay)
                logger.warning(f"MongoDB {self.config.db_name} not reachable (attempt {attempt}/{attempts}): "
                               f"{str(e)}. Retrying in {delay:.1f}s")
                await asyncio.sleep(delay)

        self._connected = True
        logger.info(f"Connected to MongoDB database {self.config.db_name}")

    async def query_today(self, day: date) -> List[Booking]:
        if self.client is None:
            raise StoreQueryError("Booking store is not connected")

        try:
            cursor = self.collection.find({"date": day.isoformat()})
            documents: List[Dict[str, Any]] = await cursor.to_list(length=None)
        except PyMongoError as e:
            raise StoreQueryError(f"Failed to query bookings for {day.isoformat()}: {str(e)}")

        bookings = []
        for document in documents:
            try:
                bookings.append(Booking.model_validate(document))
            except ValidationError as e:
                logger.warning(f"Skipping malformed booking {document.get('_id')}: {e.error_count()} errors")
        return bookings

    def is_available(self) -> bool:
        return self._connected

    @property
    def state(self) -> str:
        return "connected" if self._connected else "not connected"

    async def close(self) -> None:
        if self.client is not None:
            await self.client.close()
        self._connected = False
        logger.info("MongoDB connection closed")
