import datetime as dt
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class MenuItem(BaseModel):
    name: str
    quantity: int = Field(default=1, ge=1)
    price: Decimal = Field(default=Decimal("0"), ge=0)


class BookingCreate(BaseModel):
    """Booking payload as posted by the site form.

    Required fields are Optional here; the reservation service reports each
    missing one by name.
    """

    model_config = ConfigDict(populate_by_name=True)

    hall: Optional[int] = None
    date: Optional[str] = None
    time: Optional[str] = None
    duration: Optional[int] = None
    guests: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    comments: Optional[str] = None
    menu_items: List[MenuItem] = Field(default_factory=list, alias="menuItems")
    total: Optional[Decimal] = None


class Availability(BaseModel):
    date: str
    hall: int
    available_slots: List[str]
    busy_slots: List[str]
    total_slots: int


class SlotCheck(BaseModel):
    available: bool
    reason: Optional[str] = None
    conflicting_slots: List[str] = []
    requested_slots: List[str] = []
    date: str
    hall: int
    time: str
    duration: int


class BookingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    booking_id: str
    hall_number: int
    date: dt.date
    time: str
    duration: int
    guests: str
    name: str
    phone: str
    email: str
    comments: str
    menu_items: List[MenuItem]
    total_amount: Decimal
    payment_status: str
    payment_id: Optional[str] = None
    created_at: dt.datetime
    updated_at: dt.datetime


class PaymentCreate(BaseModel):
    booking_id: str
    return_url: str
    description: Optional[str] = None


class PaymentNotification(BaseModel):
    event: str
    object: Dict[str, Any] = {}
