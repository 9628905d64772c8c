import logging
import os
import time

from fastapi import FastAPI, Depends, Header, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional

from access import BuildingAccessGate, UserDirectory
from config import ReservationSettings, load_settings
from database import init_db, get_session
from errors import ReservationError
from models import (
    ReservationCreate,
    ReservationRead,
    ReservationResult,
    ReservationUpdate,
    RoomAvailability,
)
from reservations import ReservationService
from fastapi.middleware.cors import CORSMiddleware

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Meeting Room Reservation Service")

# 1. Configuration (booking rules)
SETTINGS = load_settings()


def get_settings() -> ReservationSettings:
    return SETTINGS


def get_current_user(x_user_id: int = Header(...)) -> int:
    # Authentication happens upstream; we only receive the caller's id
    return x_user_id


def get_service(
    session: AsyncSession = Depends(get_session),
    settings: ReservationSettings = Depends(get_settings),
) -> ReservationService:
    return ReservationService(
        session=session,
        access_gate=BuildingAccessGate(session),
        directory=UserDirectory(session),
        settings=settings,
    )


@app.on_event("startup")
async def on_startup():
    await init_db()
    logger.info("Reservation rules: %s", SETTINGS.model_dump())


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.time()
    response = await call_next(request)
    duration_ms = (time.time() - started) * 1000
    level = logging.ERROR if response.status_code >= 400 else logging.INFO
    logger.log(
        level,
        "%s %s %d %.1fms",
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
    )
    return response


@app.exception_handler(ReservationError)
async def reservation_error_handler(request: Request, exc: ReservationError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


# --- Room reservations ---
@app.get("/rooms/{room_id}/reservations", response_model=List[ReservationRead])
async def list_reservations(
    room_id: int,
    user_id: int = Depends(get_current_user),
    service: ReservationService = Depends(get_service),
):
    return await service.list_for_room(room_id, user_id)


@app.post(
    "/rooms/{room_id}/reservations",
    response_model=ReservationResult,
    status_code=status.HTTP_201_CREATED,
)
async def create_reservation(
    room_id: int,
    data: ReservationCreate,
    user_id: int = Depends(get_current_user),
    service: ReservationService = Depends(get_service),
):
    return await service.create(room_id, data, user_id)


@app.get("/rooms/{room_id}/reservations/availability", response_model=RoomAvailability)
async def get_availability(
    room_id: int,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    user_id: int = Depends(get_current_user),
    service: ReservationService = Depends(get_service),
):
    return await service.get_availability(room_id, user_id, start_date, end_date)


# --- Single reservation ---
@app.get("/reservations/{reservation_id}", response_model=ReservationRead)
async def get_reservation(
    reservation_id: int,
    user_id: int = Depends(get_current_user),
    service: ReservationService = Depends(get_service),
):
    return await service.get(reservation_id, user_id)


@app.patch("/reservations/{reservation_id}", response_model=ReservationResult)
async def update_reservation(
    reservation_id: int,
    data: ReservationUpdate,
    user_id: int = Depends(get_current_user),
    service: ReservationService = Depends(get_service),
):
    return await service.update(reservation_id, data, user_id)


@app.delete("/reservations/{reservation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_reservation(
    reservation_id: int,
    user_id: int = Depends(get_current_user),
    service: ReservationService = Depends(get_service),
):
    await service.delete(reservation_id, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
