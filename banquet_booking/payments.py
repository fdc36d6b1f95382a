"""YooKassa integration.

Payments are created for an existing booking; the booking id travels to
YooKassa as ``metadata.booking_id`` and comes back in webhook notifications.
"""
import logging
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional
from urllib.parse import quote

import requests
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from . import services
from .config import Settings
from .errors import InvalidRequest, NotFound, UpstreamError
from .models import Booking, PaymentStatus
from .schemas import PaymentNotification

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal("0.01")

# Only "succeeded" changes the booking status; the other events are
# logged until the product owner settles their mapping.
STATUS_BY_EVENT = {
    "payment.succeeded": PaymentStatus.PAID,
}

# Payment status YooKassa must report before a booking status is applied
PROVIDER_STATUS = {
    PaymentStatus.PAID: "succeeded",
}


def _money(value: Decimal, currency: str) -> Dict[str, str]:
    return {"value": str(Decimal(value).quantize(TWO_PLACES)), "currency": currency}


def build_receipt(booking: Booking, currency: str) -> Dict[str, Any]:
    """Receipt for a booking: one line per dish plus the hall rental.

    Line amounts are unit prices; the lines always add up to the booking total.
    """
    email = (booking.email or "").strip()
    if not email:
        raise InvalidRequest("email is required to issue a payment receipt")

    customer = {"email": email, "full_name": booking.name or "Client"}
    if booking.phone:
        customer["phone"] = booking.phone

    items = []
    menu_total = Decimal("0")
    for position, item in enumerate(services.decode_menu(booking.menu_items), start=1):
        price = Decimal(item.price).quantize(TWO_PLACES)
        menu_total += price * item.quantity
        items.append({
            "description": (item.name or f"Item {position}")[:128],
            "quantity": str(item.quantity),
            "amount": _money(price, currency),
            "vat_code": 1,
            "payment_subject": "commodity",
            "payment_mode": "full_payment",
        })

    total = Decimal(booking.total_amount).quantize(TWO_PLACES)
    rental = total - menu_total
    if rental < 0:
        raise InvalidRequest("menu items exceed the booking total")
    if rental > 0:
        items.insert(0, {
            "description": f"Banquet hall #{booking.hall_number} rental"[:128],
            "quantity": "1",
            "amount": _money(rental, currency),
            "vat_code": 1,
            "payment_subject": "service",
            "payment_mode": "full_payment",
        })

    return {"customer": customer, "items": items}


class YooKassaGateway:
    def __init__(self, shop_id: str, secret_key: str, api_url: str, currency: str = "RUB", timeout: int = 30):
        self.shop_id = shop_id
        self.secret_key = secret_key
        self.api_url = api_url.rstrip("/")
        self.currency = currency
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "YooKassaGateway":
        return cls(
            settings.yookassa_shop_id,
            settings.yookassa_secret_key,
            settings.yookassa_api_url,
            settings.payment_currency,
        )

    @property
    def configured(self) -> bool:
        return bool(self.shop_id and self.secret_key)

    def _check_response(self, response: requests.Response) -> Dict[str, Any]:
        if not response.ok:
            try:
                description = response.json().get("description")
            except ValueError:
                description = None
            logger.error("YooKassa returned %s: %s", response.status_code, response.text)
            raise UpstreamError(description or f"Payment provider error ({response.status_code})")
        return response.json()

    def _post_payment(self, payload: Dict[str, Any], idempotence_key: str) -> Dict[str, Any]:
        try:
            response = requests.post(
                f"{self.api_url}/payments",
                json=payload,
                auth=(self.shop_id, self.secret_key),
                headers={"Idempotence-Key": idempotence_key},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error("YooKassa request failed: %s", e)
            raise UpstreamError("Payment provider is unavailable")
        return self._check_response(response)

    def _get_payment(self, payment_id: str) -> Dict[str, Any]:
        try:
            response = requests.get(
                f"{self.api_url}/payments/{quote(payment_id, safe='')}",
                auth=(self.shop_id, self.secret_key),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error("YooKassa request failed: %s", e)
            raise UpstreamError("Payment provider is unavailable")
        return self._check_response(response)

    async def create_payment(
        self,
        amount: Decimal,
        description: str,
        return_url: str,
        metadata: Dict[str, Any],
        receipt: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, str]:
        if not self.configured:
            raise UpstreamError("Payment provider is not configured")

        payload = {
            "amount": _money(amount, self.currency),
            "payment_method_data": {"type": "bank_card"},
            "confirmation": {"type": "redirect", "return_url": return_url},
            "capture": True,
            "description": description[:128],
            "metadata": metadata,
        }
        if receipt:
            payload["receipt"] = receipt

        idempotence_key = str(uuid.uuid4())
        data = await run_in_threadpool(self._post_payment, payload, idempotence_key)

        try:
            return {
                "payment_id": data["id"],
                "confirmation_url": data["confirmation"]["confirmation_url"],
            }
        except (KeyError, TypeError):
            logger.error("Unexpected YooKassa response: %s", data)
            raise UpstreamError("Unexpected response from payment provider")

    async def get_payment(self, payment_id: str) -> Dict[str, Any]:
        """The payment object as YooKassa currently reports it."""
        if not self.configured:
            raise UpstreamError("Payment provider is not configured")
        return await run_in_threadpool(self._get_payment, payment_id)


async def start_payment(
    session: AsyncSession,
    gateway: YooKassaGateway,
    booking_id: str,
    return_url: str,
    description: Optional[str] = None,
) -> Dict[str, str]:
    booking = await services.load_booking(session, booking_id)
    if booking.payment_status == PaymentStatus.PAID:
        raise InvalidRequest("booking is already paid")
    if booking.payment_status == PaymentStatus.CANCELED:
        raise InvalidRequest("booking is canceled")

    receipt = build_receipt(booking, gateway.currency)
    payment = await gateway.create_payment(
        amount=booking.total_amount,
        description=description or f"Banquet hall #{booking.hall_number} booking {booking.booking_id}",
        return_url=return_url,
        metadata={"booking_id": booking.booking_id},
        receipt=receipt,
    )
    await services.attach_payment(session, booking.booking_id, payment["payment_id"])

    logger.info("Payment %s created for booking %s", payment["payment_id"], booking.booking_id)
    return payment


async def handle_notification(session: AsyncSession, gateway: YooKassaGateway, body: Any) -> Optional[Booking]:
    """Apply a YooKassa notification. Never raises: the webhook must always ack.

    The notification body is unauthenticated and only names a payment. The
    booking changes status only when that payment is the one stored on the
    booking and YooKassa itself reports it with a mapped status and the same
    ``metadata.booking_id``.
    """
    try:
        notification = PaymentNotification.model_validate(body)
    except ValidationError as e:
        logger.error("Malformed YooKassa notification: %s", e)
        return None

    payment = notification.object
    payment_id = payment.get("id")
    booking_id = None

    try:
        metadata = payment.get("metadata") or {}
        booking_id = metadata.get("booking_id")
        logger.info(
            "YooKassa webhook %s: payment=%s status=%s booking=%s",
            notification.event, payment_id, payment.get("status"), booking_id,
        )

        if not payment_id:
            logger.warning("YooKassa notification %s without a payment id", notification.event)
            return None

        if booking_id:
            booking = await services.load_booking(session, booking_id)
        else:
            booking = await services.find_by_payment_id(session, payment_id)
            if booking is None:
                logger.warning("No booking linked to payment %s", payment_id)
                return None
            booking_id = booking.booking_id

        if booking.payment_id != payment_id:
            logger.warning(
                "Payment %s is not the payment issued for booking %s (%s)",
                payment_id, booking_id, booking.payment_id,
            )
            return None

        if notification.event not in STATUS_BY_EVENT:
            return booking

        confirmed = await gateway.get_payment(payment_id)
        confirmed_booking = (confirmed.get("metadata") or {}).get("booking_id")
        if confirmed.get("id") != payment_id or confirmed_booking != booking_id:
            logger.warning(
                "YooKassa payment %s belongs to booking %s, not %s",
                payment_id, confirmed_booking, booking_id,
            )
            return None

        status = STATUS_BY_EVENT[notification.event]
        if confirmed.get("status") != PROVIDER_STATUS[status]:
            logger.warning(
                "Notification %s for payment %s, but YooKassa reports it %s",
                notification.event, payment_id, confirmed.get("status"),
            )
            return None

        return await services.set_payment_status(session, booking_id, status)
    except NotFound:
        logger.warning("Webhook for unknown booking %s (payment %s)", booking_id, payment_id)
    except InvalidRequest as e:
        # e.g. a payment succeeding for a booking that was canceled meanwhile
        logger.error(
            "Payment %s not applied to booking %s: %s", payment_id, booking_id, e.message
        )
    except Exception:
        logger.exception("Failed to process YooKassa webhook for payment %s", payment_id)
    return None
