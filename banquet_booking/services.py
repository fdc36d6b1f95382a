"""Slot-reservation engine.

Availability and slot checks are advisory reads. ``create_booking`` is the
only path that claims slots, and the ``uq_busy_slot`` unique constraint on
``busy_slots`` is what actually keeps two bookings off the same hour.
"""
import datetime as dt
import json
import logging
import secrets
import string
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from .config import Settings
from .errors import Conflict, InvalidRequest, NotFound, StorageError
from .models import Booking, PaymentStatus, SlotClaim, utcnow
from .schemas import Availability, BookingCreate, BookingOut, MenuItem, SlotCheck
from .slots import OperatingHours, parse_duration

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.digits + string.ascii_uppercase


def operating_hours(settings: Settings) -> OperatingHours:
    return OperatingHours(settings.open_hour, settings.close_hour)


def generate_booking_id() -> str:
    """``BK`` + epoch milliseconds + 6 random base36 characters."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(6))
    millis = int(dt.datetime.now(dt.timezone.utc).timestamp() * 1000)
    return f"BK{millis}{suffix}"


def parse_hall(value, hall_count: int) -> int:
    if value is None or value == "":
        raise InvalidRequest("hall is required")
    try:
        hall = int(value)
    except (TypeError, ValueError):
        raise InvalidRequest("invalid hall")
    if hall < 1 or hall > hall_count:
        raise InvalidRequest(f"invalid hall, expected 1..{hall_count}")
    return hall


def parse_date(value) -> dt.date:
    if value is None or value == "":
        raise InvalidRequest("date is required")
    if isinstance(value, dt.date):
        return value
    try:
        return dt.datetime.strptime(str(value), "%Y-%m-%d").date()
    except ValueError:
        raise InvalidRequest("invalid date, expected YYYY-MM-DD")


async def _busy_hours(session: AsyncSession, hall: int, day: dt.date, hours: Optional[List[int]] = None) -> List[int]:
    statement = select(SlotClaim.hour).where(
        SlotClaim.hall_number == hall, SlotClaim.date == day
    )
    if hours is not None:
        statement = statement.where(SlotClaim.hour.in_(hours))
    try:
        result = await session.execute(statement)
    except SQLAlchemyError:
        logger.exception("Failed to read busy slots for hall %s on %s", hall, day)
        raise StorageError()
    return sorted(set(result.scalars().all()))


async def get_availability(session: AsyncSession, settings: Settings, hall, date) -> Availability:
    grid = operating_hours(settings)
    hall = parse_hall(hall, settings.hall_count)
    day = parse_date(date)

    busy = set(await _busy_hours(session, hall, day))
    available = [hour for hour in grid.hours() if hour not in busy]

    logger.debug("Availability for hall %s on %s: %d busy", hall, day, len(busy))

    return Availability(
        date=day.isoformat(),
        hall=hall,
        available_slots=[grid.label(hour) for hour in available],
        busy_slots=[grid.label(hour) for hour in sorted(busy)],
        total_slots=len(grid.hours()),
    )


async def check_slot(session: AsyncSession, settings: Settings, hall, date, time, duration=None) -> SlotCheck:
    grid = operating_hours(settings)
    hall = parse_hall(hall, settings.hall_count)
    day = parse_date(date)
    if time is None or time == "":
        raise InvalidRequest("time is required")
    start_hour = grid.parse_hour(time)
    duration = parse_duration(duration, settings.default_duration)

    result = SlotCheck(
        available=False,
        date=day.isoformat(),
        hall=hall,
        time=grid.label(start_hour),
        duration=duration,
    )

    # Before span(): duration has no upper bound
    if not grid.fits(start_hour, duration):
        result.reason = "exceeds operating hours"
        return result

    requested = grid.span(start_hour, duration)
    conflicting = await _busy_hours(session, hall, day, requested)
    result.available = not conflicting
    result.requested_slots = [grid.label(hour) for hour in requested]
    result.conflicting_slots = [grid.label(hour) for hour in conflicting]

    logger.debug(
        "Slot check hall %s %s %s for %dh: available=%s",
        hall, day, result.time, duration, result.available,
    )
    return result


def _require_text(value: Optional[str], field: str, max_length: int) -> str:
    if value is None or not str(value).strip():
        raise InvalidRequest(f"{field} is required")
    return _limit(str(value).strip(), field, max_length)


def _limit(value: str, field: str, max_length: int) -> str:
    if len(value) > max_length:
        raise InvalidRequest(f"{field} is too long (max {max_length})")
    return value


def _parse_total(value) -> Decimal:
    if value is None or value == "":
        raise InvalidRequest("total is required")
    try:
        total = Decimal(str(value))
    except InvalidOperation:
        raise InvalidRequest("invalid total")
    if not total.is_finite() or total <= 0:
        raise InvalidRequest("total must be a positive amount")
    if total >= Decimal("100000000"):
        raise InvalidRequest("total is too large")
    return total.quantize(Decimal("0.01"))


def serialize_menu(items: List[MenuItem]) -> str:
    return json.dumps(
        [
            {"name": item.name, "quantity": item.quantity, "price": str(item.price)}
            for item in items
        ],
        ensure_ascii=False,
    )


def decode_menu(raw: Optional[str]) -> List[MenuItem]:
    return [MenuItem(**item) for item in json.loads(raw or "[]")]


async def create_booking(session: AsyncSession, settings: Settings, payload: BookingCreate) -> str:
    """Insert the booking and claim every hour it spans, all or nothing.

    Raises ``Conflict`` when any of the hours was claimed first by someone
    else, ``StorageError`` on any other database failure.
    """
    grid = operating_hours(settings)
    hall = parse_hall(payload.hall, settings.hall_count)
    day = parse_date(payload.date)
    if payload.time is None or payload.time == "":
        raise InvalidRequest("time is required")
    start_hour = grid.parse_hour(payload.time)
    duration = parse_duration(payload.duration, settings.default_duration)
    name = _require_text(payload.name, "name", 100)
    phone = _require_text(payload.phone, "phone", 20)
    total = _parse_total(payload.total)

    if not grid.fits(start_hour, duration):
        raise InvalidRequest(
            f"booking exceeds operating hours (after {grid.label(grid.close_hour)})"
        )

    booking_id = generate_booking_id()
    booking = Booking(
        booking_id=booking_id,
        hall_number=hall,
        date=day,
        time=grid.label(start_hour),
        start_hour=start_hour,
        duration=duration,
        guests=_limit((payload.guests or "1-10").strip(), "guests", 50),
        name=name,
        phone=phone,
        email=_limit((payload.email or "").strip(), "email", 100),
        comments=(payload.comments or "").strip(),
        menu_items=serialize_menu(payload.menu_items),
        total_amount=total,
        payment_status=PaymentStatus.PENDING,
    )

    try:
        session.add(booking)
        try:
            await session.flush()
        except IntegrityError:
            # booking_id is unique: never overwrite an existing record
            await session.rollback()
            logger.error("Generated booking id %s already exists", booking_id)
            raise StorageError()

        for hour in grid.span(start_hour, duration):
            session.add(SlotClaim(hall_number=hall, date=day, hour=hour, booking_id=booking_id))

        try:
            await session.flush()
        except IntegrityError:
            # This catches the uq_busy_slot violation from a concurrent booking
            await session.rollback()
            logger.warning(
                "Slot conflict for hall %s on %s at %s (%dh)",
                hall, day, grid.label(start_hour), duration,
            )
            raise Conflict()

        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.exception("Failed to save booking %s", booking_id)
        raise StorageError()

    logger.info(
        "Booking created: %s, hall %s, %s %s for %dh, client %s",
        booking_id, hall, day, grid.label(start_hour), duration, name,
    )
    return booking_id


async def load_booking(session: AsyncSession, booking_id: str) -> Booking:
    if not booking_id:
        raise InvalidRequest("booking_id is required")
    try:
        result = await session.execute(select(Booking).where(Booking.booking_id == booking_id))
    except SQLAlchemyError:
        logger.exception("Failed to load booking %s", booking_id)
        raise StorageError()
    booking = result.scalars().first()
    if booking is None:
        raise NotFound()
    return booking


async def find_by_payment_id(session: AsyncSession, payment_id: str) -> Optional[Booking]:
    result = await session.execute(select(Booking).where(Booking.payment_id == payment_id))
    return result.scalars().first()


def to_booking_out(booking: Booking) -> BookingOut:
    data = booking.model_dump()
    data["menu_items"] = decode_menu(booking.menu_items)
    data["payment_status"] = PaymentStatus(booking.payment_status).value
    return BookingOut(**data)


async def get_booking(session: AsyncSession, booking_id: str) -> BookingOut:
    return to_booking_out(await load_booking(session, booking_id))


async def _save(session: AsyncSession, booking: Booking):
    booking.updated_at = utcnow()
    session.add(booking)
    try:
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.exception("Failed to update booking %s", booking.booking_id)
        raise StorageError()


async def attach_payment(session: AsyncSession, booking_id: str, payment_id: str) -> Booking:
    booking = await load_booking(session, booking_id)
    booking.payment_id = payment_id
    await _save(session, booking)
    return booking


# Paid and canceled are final; repeating the current status is a no-op
_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.AWAITING_CAPTURE, PaymentStatus.PAID, PaymentStatus.CANCELED},
    PaymentStatus.AWAITING_CAPTURE: {PaymentStatus.PAID, PaymentStatus.CANCELED},
    PaymentStatus.PAID: set(),
    PaymentStatus.CANCELED: set(),
}


def check_transition(booking: Booking, status: PaymentStatus):
    current = PaymentStatus(booking.payment_status)
    if status != current and status not in _TRANSITIONS[current]:
        raise InvalidRequest(f"booking is {current.value} and cannot become {status.value}")


async def set_payment_status(
    session: AsyncSession,
    booking_id: str,
    status: PaymentStatus,
    payment_id: Optional[str] = None,
) -> Booking:
    booking = await load_booking(session, booking_id)
    check_transition(booking, status)
    booking.payment_status = status
    if payment_id:
        booking.payment_id = payment_id
    await _save(session, booking)
    logger.info("Booking %s payment status -> %s", booking_id, status.value)
    return booking


async def cancel_booking(session: AsyncSession, booking_id: str, release_slots: bool) -> Booking:
    """Mark the booking canceled; optionally free the hours it claimed.

    A paid booking cannot be canceled here. The booking row itself is never
    removed.
    """
    booking = await load_booking(session, booking_id)
    if PaymentStatus(booking.payment_status) == PaymentStatus.PAID:
        raise InvalidRequest("booking is already paid and cannot be canceled")
    booking.payment_status = PaymentStatus.CANCELED
    booking.updated_at = utcnow()
    session.add(booking)
    try:
        if release_slots:
            await session.execute(delete(SlotClaim).where(SlotClaim.booking_id == booking_id))
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.exception("Failed to cancel booking %s", booking_id)
        raise StorageError()

    logger.info("Booking %s canceled (slots released: %s)", booking_id, release_slots)
    return booking
