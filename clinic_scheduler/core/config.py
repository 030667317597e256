import os
from datetime import time

from dotenv import load_dotenv

load_dotenv()


def _get_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    return int(value)


def _get_time(value: str) -> time:
    hour, minute = value.strip().split(":")
    return time(int(hour), int(minute))


def _get_window(value: str) -> tuple[time, time]:
    start, end = value.split("-")
    return _get_time(start), _get_time(end)


APP_ENV = os.getenv("APP_ENV", "development")

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./clinic_scheduler.db")
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:4200").split(",")
    if origin.strip()
]

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MINUTES = _get_int(os.getenv("JWT_EXPIRES_MINUTES"), 60)

# Working calendar, expressed in clinic-local time.
CLINIC_TIMEZONE = os.getenv("CLINIC_TIMEZONE", "Asia/Ho_Chi_Minh")
MORNING_SHIFT = _get_window(os.getenv("MORNING_SHIFT", "08:00-12:00"))
AFTERNOON_SHIFT = _get_window(os.getenv("AFTERNOON_SHIFT", "14:00-18:00"))
SHIFT_END_FALLBACK = _get_time(os.getenv("SHIFT_END_FALLBACK", "18:00"))
REFERENCE_SLOT_MINUTES = _get_int(os.getenv("REFERENCE_SLOT_MINUTES"), 30)

SLOT_BUFFER_MINUTES = _get_int(os.getenv("SLOT_BUFFER_MINUTES"), 10)
PAYMENT_HOLD_MINUTES = _get_int(os.getenv("PAYMENT_HOLD_MINUTES"), 15)
MAX_NOTES_LENGTH = _get_int(os.getenv("MAX_NOTES_LENGTH"), 600)

RECLAIMERS_ENABLED = _get_bool(os.getenv("RECLAIMERS_ENABLED"), default=True)
PAYMENT_RECLAIM_INTERVAL_MINUTES = _get_int(os.getenv("PAYMENT_RECLAIM_INTERVAL_MINUTES"), 1)
APPOINTMENT_RECLAIM_INTERVAL_MINUTES = _get_int(os.getenv("APPOINTMENT_RECLAIM_INTERVAL_MINUTES"), 60)

# Bank transfer / QR issuer.
PAYMENT_ACCOUNT_NUMBER = os.getenv("PAYMENT_ACCOUNT_NUMBER", "")
PAYMENT_ACCOUNT_NAME = os.getenv("PAYMENT_ACCOUNT_NAME", "")
PAYMENT_BANK_CODE = os.getenv("PAYMENT_BANK_CODE", "BIDV")
PAYMENT_QR_TEMPLATE = os.getenv("PAYMENT_QR_TEMPLATE", "compact2")
PAYMENT_QR_BASE_URL = os.getenv("PAYMENT_QR_BASE_URL", "https://img.vietqr.io/image")
PAYMENT_API_BASE_URL = os.getenv("PAYMENT_API_BASE_URL", "https://my.sepay.vn/userapi")
PAYMENT_API_TOKEN = os.getenv("PAYMENT_API_TOKEN", "")
PAYMENT_WEBHOOK_URL = os.getenv("PAYMENT_WEBHOOK_URL", "")

MEETING_API_URL = os.getenv("MEETING_API_URL", "")
MEETING_API_TOKEN = os.getenv("MEETING_API_TOKEN", "")

NOTIFICATION_WEBHOOK_URL = os.getenv("NOTIFICATION_WEBHOOK_URL", "")

HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "10"))


def validate_runtime_config() -> None:
    if APP_ENV.lower() == "production" and JWT_SECRET_KEY == "change-me":
        raise RuntimeError("JWT_SECRET_KEY must be set in production.")
    if APP_ENV.lower() == "production" and not PAYMENT_ACCOUNT_NUMBER:
        raise RuntimeError("PAYMENT_ACCOUNT_NUMBER must be set in production.")
    if MORNING_SHIFT[0] >= MORNING_SHIFT[1] or AFTERNOON_SHIFT[0] >= AFTERNOON_SHIFT[1]:
        raise RuntimeError("Shift windows must start before they end.")
