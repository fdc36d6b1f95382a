import logging
import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    database_url: str = "sqlite+aiosqlite:///./bookings.db"

    # Operating hours, both inclusive: 10..22 gives 13 one-hour slots
    open_hour: int = 10
    close_hour: int = 22
    hall_count: int = 3
    default_duration: int = 2

    release_slots_on_cancel: bool = False

    yookassa_shop_id: str = ""
    yookassa_secret_key: str = ""
    yookassa_api_url: str = "https://api.yookassa.ru/v3"
    payment_currency: str = "RUB"

    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:3000"])
    log_level: str = "INFO"

    def __post_init__(self):
        if not 0 <= self.open_hour <= self.close_hour <= 23:
            raise ValueError(
                f"Invalid operating hours {self.open_hour}..{self.close_hour}"
            )
        if self.hall_count < 1:
            raise ValueError("HALL_COUNT must be at least 1")
        if self.default_duration < 1:
            raise ValueError("DEFAULT_DURATION must be at least 1")

    @classmethod
    def from_env(cls) -> "Settings":
        # Load variables from .env, real environment wins
        load_dotenv()

        origins = [
            origin.strip()
            for origin in os.environ.get("CORS_ORIGINS", "http://localhost:3000").split(",")
            if origin.strip()
        ]

        return cls(
            database_url=os.environ.get("DATABASE_URL") or cls.database_url,
            open_hour=_env_int("BOOKING_OPEN_HOUR", cls.open_hour),
            close_hour=_env_int("BOOKING_CLOSE_HOUR", cls.close_hour),
            hall_count=_env_int("HALL_COUNT", cls.hall_count),
            default_duration=_env_int("DEFAULT_DURATION", cls.default_duration),
            release_slots_on_cancel=_env_bool("RELEASE_SLOTS_ON_CANCEL", False),
            yookassa_shop_id=os.environ.get("YOOKASSA_SHOP_ID", ""),
            yookassa_secret_key=os.environ.get("YOOKASSA_SECRET_KEY", ""),
            yookassa_api_url=os.environ.get("YOOKASSA_API_URL") or cls.yookassa_api_url,
            payment_currency=os.environ.get("PAYMENT_CURRENCY") or cls.payment_currency,
            cors_origins=origins,
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
