import datetime as dt
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import Column, DateTime, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class PaymentStatus(str, Enum):
    PENDING = "pending"
    AWAITING_CAPTURE = "awaiting_capture"
    PAID = "paid"
    CANCELED = "canceled"


class Booking(SQLModel, table=True):
    __tablename__ = "bookings"

    id: Optional[int] = Field(default=None, primary_key=True)
    booking_id: str = Field(max_length=50, unique=True, index=True)
    hall_number: int = Field(index=True)
    date: dt.date = Field(index=True)
    time: str = Field(max_length=5)  # "HH:00"
    start_hour: int
    duration: int = 2
    guests: str = Field(default="1-10", max_length=50)
    name: str = Field(max_length=100)
    phone: str = Field(max_length=20, index=True)
    email: str = Field(default="", max_length=100)
    comments: str = Field(default="", sa_column=Column(Text, nullable=False, default=""))
    # Ordered list of {"name", "quantity", "price"} serialized as JSON
    menu_items: str = Field(default="[]", sa_column=Column(Text, nullable=False, default="[]"))
    total_amount: Decimal = Field(max_digits=10, decimal_places=2)
    payment_status: PaymentStatus = Field(default=PaymentStatus.PENDING)
    payment_id: Optional[str] = Field(default=None, max_length=100, index=True)
    created_at: dt.datetime = Field(
        default_factory=utcnow, sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    updated_at: dt.datetime = Field(
        default_factory=utcnow, sa_column=Column(DateTime(timezone=True), nullable=False)
    )


class SlotClaim(SQLModel, table=True):
    __tablename__ = "busy_slots"
    __table_args__ = (
        # Database-level protection against double booking
        UniqueConstraint("hall_number", "date", "hour", name="uq_busy_slot"),
        Index("idx_busy_slots_date_hall", "date", "hall_number"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    hall_number: int
    date: dt.date
    hour: int  # 10, 11, ... 22
    booking_id: str = Field(foreign_key="bookings.booking_id", max_length=50, index=True)
