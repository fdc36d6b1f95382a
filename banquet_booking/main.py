import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from . import payments, services
from .config import Settings, configure_logging
from .database import Database, get_session
from .errors import BookingError
from .payments import YooKassaGateway
from .schemas import BookingCreate, PaymentCreate

logger = logging.getLogger(__name__)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_gateway(request: Request) -> YooKassaGateway:
    return request.app.state.gateway


async def booking_error_handler(request: Request, exc: BookingError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.message},
    )


async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ())[1:]) or "request"
        message = f"invalid {field}: {first.get('msg')}"
    else:
        message = "invalid request"
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "error": message},
    )


def create_app(
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
    gateway: Optional[YooKassaGateway] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    app = FastAPI(title="Banquet Hall Booking API")
    app.state.settings = settings
    app.state.database = database or Database(settings.database_url)
    app.state.gateway = gateway or YooKassaGateway.from_settings(settings)

    app.add_exception_handler(BookingError, booking_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    @app.on_event("startup")
    async def on_startup():
        await app.state.database.init_db()

    @app.on_event("shutdown")
    async def on_shutdown():
        await app.state.database.dispose()

    @app.get("/api/health")
    async def health():
        return {
            "success": True,
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": "Banquet Booking API",
        }

    # --- GET /api/booking/availability ---
    @app.get("/api/booking/availability")
    async def availability(
        date: Optional[str] = None,
        hall: Optional[str] = None,
        session: AsyncSession = Depends(get_session),
        settings: Settings = Depends(get_settings),
    ):
        result = await services.get_availability(session, settings, hall, date)
        return {"success": True, **result.model_dump()}

    # --- GET /api/booking/check-slot ---
    @app.get("/api/booking/check-slot")
    async def check_slot(
        date: Optional[str] = None,
        hall: Optional[str] = None,
        time: Optional[str] = None,
        duration: Optional[str] = None,
        session: AsyncSession = Depends(get_session),
        settings: Settings = Depends(get_settings),
    ):
        result = await services.check_slot(session, settings, hall, date, time, duration)
        return {"success": True, **result.model_dump()}

    # --- POST /api/booking/create ---
    @app.post("/api/booking/create", status_code=status.HTTP_201_CREATED)
    async def create_booking(
        booking_data: BookingCreate,
        session: AsyncSession = Depends(get_session),
        settings: Settings = Depends(get_settings),
    ):
        booking_id = await services.create_booking(session, settings, booking_data)
        return {
            "success": True,
            "booking_id": booking_id,
            "message": "Booking created",
        }

    @app.get("/api/booking/{booking_id}")
    async def get_booking(booking_id: str, session: AsyncSession = Depends(get_session)):
        booking = await services.get_booking(session, booking_id)
        return {"success": True, "booking": booking.model_dump(mode="json")}

    @app.post("/api/booking/{booking_id}/cancel")
    async def cancel_booking(
        booking_id: str,
        session: AsyncSession = Depends(get_session),
        settings: Settings = Depends(get_settings),
    ):
        booking = await services.cancel_booking(
            session, booking_id, release_slots=settings.release_slots_on_cancel
        )
        return {
            "success": True,
            "booking_id": booking.booking_id,
            "payment_status": booking.payment_status.value,
            "slots_released": settings.release_slots_on_cancel,
        }

    # --- POST /api/yookassa/create-payment ---
    @app.post("/api/yookassa/create-payment")
    async def create_payment(
        payment_data: PaymentCreate,
        session: AsyncSession = Depends(get_session),
        gateway: YooKassaGateway = Depends(get_gateway),
    ):
        payment = await payments.start_payment(
            session,
            gateway,
            payment_data.booking_id,
            payment_data.return_url,
            payment_data.description,
        )
        return {"success": True, **payment}

    # --- POST /api/yookassa/webhook ---
    @app.post("/api/yookassa/webhook")
    async def yookassa_webhook(
        request: Request,
        session: AsyncSession = Depends(get_session),
        gateway: YooKassaGateway = Depends(get_gateway),
    ):
        # Always 200; processing failures are only logged
        try:
            body = await request.json()
        except ValueError:
            logger.error("YooKassa webhook with a non-JSON body")
            body = None
        await payments.handle_notification(session, gateway, body)
        return {"success": True}

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    return app
