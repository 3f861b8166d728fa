# src/room_power/api/routes.py
from typing import List

from fastapi import APIRouter, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ..core.status import StatusReporter
from ..models.status import HealthStatus, RoomStateResponse, RoomStatus
from .dependencies import StatusDependency

status_router = APIRouter()


@status_router.get("/", response_model=HealthStatus)
@status_router.get("/health", response_model=HealthStatus)
async def get_health(reporter: StatusDependency) -> HealthStatus:
    return reporter.health()


@status_router.get("/room-state", response_model=RoomStateResponse)
async def get_room_state(reporter: StatusDependency) -> RoomStateResponse:
    return reporter.room_state()


@status_router.get("/rooms", response_model=List[RoomStatus])
async def get_rooms(reporter: StatusDependency) -> List[RoomStatus]:
    return reporter.rooms()


def create_app(reporter: StatusReporter) -> FastAPI:
    """Build the read-only status API"""
    app = FastAPI(
        title="Room Power Controller",
        description="Booking-driven room power status",
        version="1.0.0"
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["Content-Type"],
    )
    app.state.status_reporter = reporter
    app.include_router(status_router)
    return app
