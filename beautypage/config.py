import os

from dotenv import load_dotenv

load_dotenv()


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        return int(raw)
    except Exception:
        return int(default)


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name, str(default)).strip()
    try:
        return float(raw)
    except Exception:
        return float(default)


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "1" if default else "0").strip().lower()
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    return bool(default)


class Settings:
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./beautypage.db")
    DB_AUTO_CREATE_ALL = _get_bool("DB_AUTO_CREATE_ALL", True)
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper()

    DEFAULT_TIMEZONE = os.getenv("DEFAULT_TIMEZONE", "Europe/Kyiv").strip()
    DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "UAH").strip().upper()
    DEFAULT_SLOT_INTERVAL_MINUTES = _get_int("DEFAULT_SLOT_INTERVAL_MINUTES", 15)
    DEFAULT_MIN_DURATION_MINUTES = _get_int("DEFAULT_MIN_DURATION_MINUTES", 15)
    DEFAULT_MIN_BOOKING_NOTICE_HOURS = _get_int("DEFAULT_MIN_BOOKING_NOTICE_HOURS", 0)
    DEFAULT_MAX_BOOKING_DAYS_AHEAD = _get_int("DEFAULT_MAX_BOOKING_DAYS_AHEAD", 90)

    DEFAULT_CANCELLATION_NOTICE_HOURS = _get_int("DEFAULT_CANCELLATION_NOTICE_HOURS", 24)
    DEFAULT_MAX_CANCELLATIONS = _get_int("DEFAULT_MAX_CANCELLATIONS", 3)
    DEFAULT_PERIOD_DAYS = _get_int("DEFAULT_PERIOD_DAYS", 30)
    DEFAULT_BLOCK_DURATION_DAYS = _get_int("DEFAULT_BLOCK_DURATION_DAYS", 30)
    DEFAULT_NO_SHOW_MULTIPLIER = _get_float("DEFAULT_NO_SHOW_MULTIPLIER", 2.0)

    HOLIDAYS_COUNTRY = os.getenv("HOLIDAYS_COUNTRY", "").strip().upper()
    SECURITY_HEADERS_ENABLED = _get_bool("SECURITY_HEADERS_ENABLED", True)


settings = Settings()
