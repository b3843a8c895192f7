import os
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()


def _get_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_set(value: str | None, default: str) -> frozenset[str]:
    raw = default if value is None else value
    return frozenset(item.strip().upper() for item in raw.split(",") if item.strip())

APP_ENV = os.getenv("APP_ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:4200").split(",")
    if origin.strip()
]

SLOT_GRANULARITY_MINUTES = int(os.getenv("SLOT_GRANULARITY_MINUTES", "30"))
DEFAULT_APPOINTMENT_DURATION_MINUTES = int(os.getenv("DEFAULT_APPOINTMENT_DURATION_MINUTES", "30"))
MAX_APPOINTMENT_DURATION_MINUTES = int(os.getenv("MAX_APPOINTMENT_DURATION_MINUTES", "120"))

CONSULTATION_CHARGE = Decimal(os.getenv("CONSULTATION_CHARGE", "500.00"))
SESSION_UNIT_CHARGE = Decimal(os.getenv("SESSION_UNIT_CHARGE", "0"))
FREE_SESSION_ALLOWANCE = int(os.getenv("FREE_SESSION_ALLOWANCE", "500"))
CYCLE_WAITING_PERIOD_MONTHS = int(os.getenv("CYCLE_WAITING_PERIOD_MONTHS", "6"))

# Plan types that are never gated on payment, and plan types that carry a free-session allowance.
EXEMPT_PATIENT_TYPES = _get_set(os.getenv("EXEMPT_PATIENT_TYPES"), "VIP,GETHHMA")
ALLOWANCE_PATIENT_TYPES = _get_set(os.getenv("ALLOWANCE_PATIENT_TYPES"), "DYES")

WRITE_BATCH_LIMIT = int(os.getenv("WRITE_BATCH_LIMIT", "500"))

NOTIFICATIONS_ENABLED = _get_bool(os.getenv("NOTIFICATIONS_ENABLED"), default=True)
NOTIFICATION_TIMEOUT_SECONDS = float(os.getenv("NOTIFICATION_TIMEOUT_SECONDS", "10"))
EMAIL_API_URL = os.getenv("EMAIL_API_URL", "https://api.resend.com/emails")
EMAIL_API_KEY = os.getenv("EMAIL_API_KEY", "")
EMAIL_FROM_ADDRESS = os.getenv("EMAIL_FROM_ADDRESS", "frontdesk@localhost")
TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID", "")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN", "")
TWILIO_FROM_NUMBER = os.getenv("TWILIO_FROM_NUMBER", "")


def validate_runtime_config() -> None:
    if SLOT_GRANULARITY_MINUTES <= 0:
        raise RuntimeError("SLOT_GRANULARITY_MINUTES must be positive.")
    if MAX_APPOINTMENT_DURATION_MINUTES % SLOT_GRANULARITY_MINUTES != 0:
        raise RuntimeError("MAX_APPOINTMENT_DURATION_MINUTES must be a multiple of SLOT_GRANULARITY_MINUTES.")
    if DEFAULT_APPOINTMENT_DURATION_MINUTES % SLOT_GRANULARITY_MINUTES != 0:
        raise RuntimeError("DEFAULT_APPOINTMENT_DURATION_MINUTES must be a multiple of SLOT_GRANULARITY_MINUTES.")
    if DEFAULT_APPOINTMENT_DURATION_MINUTES > MAX_APPOINTMENT_DURATION_MINUTES:
        raise RuntimeError("DEFAULT_APPOINTMENT_DURATION_MINUTES cannot exceed MAX_APPOINTMENT_DURATION_MINUTES.")
    if WRITE_BATCH_LIMIT <= 0:
        raise RuntimeError("WRITE_BATCH_LIMIT must be positive.")
    if CONSULTATION_CHARGE < 0 or SESSION_UNIT_CHARGE < 0:
        raise RuntimeError("Charges cannot be negative.")
    if APP_ENV.lower() == "production" and NOTIFICATIONS_ENABLED and not EMAIL_API_KEY:
        raise RuntimeError("EMAIL_API_KEY must be set in production when notifications are enabled.")
