"""Configuration management for the DeliveryBay delivery backend"""

import os
import logging
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _decimal_env(name: str, default: str) -> Decimal:
    """Read a money/rate setting as Decimal so settlement math never touches floats"""
    raw = os.getenv(name, default)
    try:
        return Decimal(str(raw).strip())
    except Exception:
        logger.warning(f"⚠️ CONFIG: Invalid decimal for {name}={raw!r}, using default {default}")
        return Decimal(default)


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"⚠️ CONFIG: Invalid integer for {name}={raw!r}, using default {default}")
        return default


def _positive_float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"⚠️ CONFIG: Invalid number for {name}={raw!r}, using default {default}")
        return default
    if not value > 0 or value == float("inf"):
        logger.warning(f"⚠️ CONFIG: {name} must be a positive number, got {raw!r}, using default {default}")
        return default
    return value


class Config:
    """Application configuration"""

    # Environment detection: ENVIRONMENT takes absolute priority
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./deliverybay.db")
    DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"
    if DATABASE_URL.startswith("postgresql"):
        DATABASE_SOURCE = "PostgreSQL"
    elif DATABASE_URL.startswith("sqlite"):
        DATABASE_SOURCE = "SQLite"
    else:
        DATABASE_SOURCE = "Other"

    # Routing provider (Google Directions compatible endpoint)
    ROUTING_PROVIDER_URL = os.getenv(
        "ROUTING_PROVIDER_URL", "https://maps.googleapis.com/maps/api/directions/json"
    )
    ROUTING_API_KEY = os.getenv("ROUTING_API_KEY", "")
    ROUTING_TIMEOUT_SECONDS = _int_env("ROUTING_TIMEOUT_SECONDS", 10)

    # Route fallback assumptions
    EARTH_RADIUS_KM = 6371.0
    AVERAGE_SPEED_KMH = _positive_float_env("AVERAGE_SPEED_KMH", 30.0)

    # Delivery lifecycle
    ORDER_ID_CONFIRMATION_DELAY_SECONDS = _int_env("ORDER_ID_CONFIRMATION_DELAY_SECONDS", 10)
    MAX_REVIEW_LENGTH = _int_env("MAX_REVIEW_LENGTH", 1000)

    # Wallet
    MIN_WITHDRAWAL_AMOUNT = _decimal_env("MIN_WITHDRAWAL_AMOUNT", "100")
    DEFAULT_PAGE_SIZE = _int_env("DEFAULT_PAGE_SIZE", 20)
    MAX_PAGE_SIZE = _int_env("MAX_PAGE_SIZE", 100)

    # Seller commission default (used when a seller has no explicit default)
    DEFAULT_SELLER_COMMISSION_TYPE = os.getenv("DEFAULT_SELLER_COMMISSION_TYPE", "percentage")
    DEFAULT_SELLER_COMMISSION_VALUE = _decimal_env("DEFAULT_SELLER_COMMISSION_VALUE", "10")

    # Courier payout default rule: base payout plus per-km above a minimum distance
    COURIER_BASE_PAYOUT = _decimal_env("COURIER_BASE_PAYOUT", "10")
    COURIER_PER_KM_RATE = _decimal_env("COURIER_PER_KM_RATE", "5")
    COURIER_MIN_DISTANCE_KM = _decimal_env("COURIER_MIN_DISTANCE_KM", "4")

    # Notifications
    NOTIFICATION_WORKERS = _int_env("NOTIFICATION_WORKERS", 4)

    # Logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 DeliveryBay Environment Configuration:")
        logger.info(f"   Environment: {Config.ENVIRONMENT.upper()}")
        logger.info(f"   Is Production: {Config.IS_PRODUCTION}")
        logger.info(f"   Database: {Config.DATABASE_SOURCE}")
        if Config.ROUTING_API_KEY:
            logger.info(f"   Routing: external provider (timeout={Config.ROUTING_TIMEOUT_SECONDS}s)")
        else:
            logger.warning("   ⚠️ Routing: no ROUTING_API_KEY, great-circle fallback only")
        logger.info(
            f"   Courier payout: base={Config.COURIER_BASE_PAYOUT} "
            f"per_km={Config.COURIER_PER_KM_RATE} above {Config.COURIER_MIN_DISTANCE_KM}km"
        )
        logger.info(f"   Min withdrawal: {Config.MIN_WITHDRAWAL_AMOUNT}")
