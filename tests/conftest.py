import pytest
from httpx import ASGITransport, AsyncClient

from banquet_booking.config import Settings
from banquet_booking.database import Database
from banquet_booking.errors import UpstreamError
from banquet_booking.main import create_app
from banquet_booking.payments import YooKassaGateway


class FakeGateway(YooKassaGateway):
    """Records payment requests instead of calling YooKassa.

    ``payments`` is what ``get_payment`` reports back; tests flip a payment's
    ``status`` to ``"succeeded"`` to simulate the customer paying.
    """

    def __init__(self):
        super().__init__("test-shop", "test-secret", "https://yookassa.invalid/v3")
        self.calls = []
        self.payments = {}

    async def create_payment(self, amount, description, return_url, metadata, receipt=None):
        self.calls.append({
            "amount": amount,
            "description": description,
            "return_url": return_url,
            "metadata": metadata,
            "receipt": receipt,
        })
        payment_id = f"pay-{len(self.calls)}"
        self.payments[payment_id] = {"id": payment_id, "status": "pending", "metadata": dict(metadata)}
        return {
            "payment_id": payment_id,
            "confirmation_url": f"https://yookassa.invalid/checkout/{payment_id}",
        }

    def add_payment(self, payment_id, booking_id, status="succeeded"):
        self.payments[payment_id] = {"id": payment_id, "status": status, "metadata": {"booking_id": booking_id}}

    def pay(self, payment_id):
        self.payments[payment_id]["status"] = "succeeded"

    async def get_payment(self, payment_id):
        if payment_id not in self.payments:
            raise UpstreamError(f"Payment {payment_id} not found")
        return dict(self.payments[payment_id])


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'bookings.db'}",
        open_hour=10,
        close_hour=22,
        hall_count=3,
        default_duration=2,
        log_level="DEBUG",
    )


@pytest.fixture
async def database(settings):
    db = Database(settings.database_url)
    await db.init_db()
    yield db
    await db.dispose()


@pytest.fixture
async def session(database):
    async with database.session_factory() as session:
        yield session


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
async def client(settings, database, gateway):
    app = create_app(settings, database=database, gateway=gateway)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
