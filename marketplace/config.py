import os
from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


@dataclass(frozen=True)
class Settings:
    """Everything the engine needs from its environment."""

    database_url: str = "sqlite:///./marketplace.db"
    environment: str = "development"

    # Payment gateway: "paystack" or "stripe"
    payment_provider: str = "paystack"
    webhook_secret: str = ""
    paystack_secret_key: str = ""
    paystack_base_url: str = "https://api.paystack.co"
    stripe_secret_key: str = ""
    gateway_timeout: float = 10.0
    currency: str = "zar"

    jwt_secret: str = ""

    # Couriers, in priority order
    courier_priority: tuple = ("courier-guy", "fastway")
    courier_guy_api_key: str = ""
    courier_guy_base_url: str = "https://api.courierguy.co.za/v2"
    fastway_api_key: str = ""
    fastway_base_url: str = "https://api.fastway.co.za/v4"
    courier_timeout: float = 10.0

    # Parcel defaults (kg / cm)
    default_parcel_weight: float = 0.5
    parcel_dimensions: tuple = (25, 20, 5)

    # Shipping labels
    label_download_timeout: float = 10.0
    label_storage_dir: str = "var/order-documents"
    label_public_base_url: str = "http://localhost:8000/order-documents"

    notification_url: str = ""
    notification_timeout: float = 5.0

    # Commission structure
    book_commission_rate: Decimal = Decimal("0.10")
    delivery_fee_retention_rate: Decimal = Decimal("1.00")
    minimum_payout: int = 1000

    commit_window_hours: int = 48
    commit_reminder_hours: int = 24
    refund_expected_days: int = 5


def _env_tuple(name: str, default: tuple, cast=str) -> tuple:
    raw = os.getenv(name)
    if not raw:
        return default
    return tuple(cast(part.strip()) for part in raw.split(",") if part.strip())


def load_settings() -> Settings:
    defaults = Settings()
    paystack_secret_key = os.getenv("PAYSTACK_SECRET_KEY", "")
    return Settings(
        database_url=os.getenv("DATABASE_URL", defaults.database_url),
        environment=os.getenv("ENVIRONMENT", defaults.environment).lower(),
        payment_provider=os.getenv("PAYMENT_PROVIDER", defaults.payment_provider).lower(),
        # Paystack signs webhooks with the account's secret key
        webhook_secret=os.getenv("PAYMENT_WEBHOOK_SECRET") or paystack_secret_key,
        paystack_secret_key=paystack_secret_key,
        paystack_base_url=os.getenv("PAYSTACK_BASE_URL", defaults.paystack_base_url),
        stripe_secret_key=os.getenv("STRIPE_SECRET_KEY", ""),
        gateway_timeout=float(os.getenv("GATEWAY_TIMEOUT", defaults.gateway_timeout)),
        currency=os.getenv("CURRENCY", defaults.currency),
        jwt_secret=os.getenv("JWT_SECRET", ""),
        courier_priority=_env_tuple("COURIER_PRIORITY", defaults.courier_priority),
        courier_guy_api_key=os.getenv("COURIER_GUY_API_KEY", ""),
        courier_guy_base_url=os.getenv("COURIER_GUY_BASE_URL", defaults.courier_guy_base_url),
        fastway_api_key=os.getenv("FASTWAY_API_KEY", ""),
        fastway_base_url=os.getenv("FASTWAY_BASE_URL", defaults.fastway_base_url),
        courier_timeout=float(os.getenv("COURIER_TIMEOUT", defaults.courier_timeout)),
        default_parcel_weight=float(
            os.getenv("DEFAULT_PARCEL_WEIGHT", defaults.default_parcel_weight)
        ),
        parcel_dimensions=_env_tuple("PARCEL_DIMENSIONS", defaults.parcel_dimensions, int),
        label_download_timeout=float(
            os.getenv("LABEL_DOWNLOAD_TIMEOUT", defaults.label_download_timeout)
        ),
        label_storage_dir=os.getenv("LABEL_STORAGE_DIR", defaults.label_storage_dir),
        label_public_base_url=os.getenv("LABEL_PUBLIC_BASE_URL", defaults.label_public_base_url),
        notification_url=os.getenv("NOTIFICATION_URL", ""),
        notification_timeout=float(
            os.getenv("NOTIFICATION_TIMEOUT", defaults.notification_timeout)
        ),
        book_commission_rate=Decimal(
            os.getenv("BOOK_COMMISSION_RATE", str(defaults.book_commission_rate))
        ),
        delivery_fee_retention_rate=Decimal(
            os.getenv("DELIVERY_FEE_RETENTION_RATE", str(defaults.delivery_fee_retention_rate))
        ),
        minimum_payout=int(os.getenv("MINIMUM_PAYOUT", defaults.minimum_payout)),
        commit_window_hours=int(os.getenv("COMMIT_WINDOW_HOURS", defaults.commit_window_hours)),
        commit_reminder_hours=int(
            os.getenv("COMMIT_REMINDER_HOURS", defaults.commit_reminder_hours)
        ),
        refund_expected_days=int(
            os.getenv("REFUND_EXPECTED_DAYS", defaults.refund_expected_days)
        ),
    )


@lru_cache
def get_settings() -> Settings:
    return load_settings()
