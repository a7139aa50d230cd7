import os

from dotenv import load_dotenv


load_dotenv()


def _get_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_list(value: str | None, default: list[str]) -> list[str]:
    if not value:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]

APP_ENV = os.getenv("APP_ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./booking.db")
DATABASE_ECHO = _get_bool(os.getenv("DATABASE_ECHO"), default=False)

CORS_ALLOWED_ORIGINS = _get_list(os.getenv("CORS_ALLOWED_ORIGINS"), ["http://localhost:4200"])

# Every bookable slot has this size unless the listing overrides it.
SLOT_SIZE_MINUTES = int(os.getenv("SLOT_SIZE_MINUTES", "60"))
DEFAULT_MIN_NOTICE_HOURS = int(os.getenv("DEFAULT_MIN_NOTICE_HOURS", "0"))
DEFAULT_SERVICE_DURATION_MINUTES = int(os.getenv("DEFAULT_SERVICE_DURATION_MINUTES", "60"))
DEFAULT_SERVICE_TITLE = os.getenv("DEFAULT_SERVICE_TITLE", "Service")
DEFAULT_CLIENT_NAME = os.getenv("DEFAULT_CLIENT_NAME", "Client")

RECURRENCE_MAX_ITERATIONS = int(os.getenv("RECURRENCE_MAX_ITERATIONS", "100"))
MONTHLY_SEARCH_MONTHS = int(os.getenv("MONTHLY_SEARCH_MONTHS", "12"))
CONFLICT_LOOKAHEAD_OCCURRENCES = int(os.getenv("CONFLICT_LOOKAHEAD_OCCURRENCES", "8"))
LEGACY_MONTHLY_MODE = os.getenv("LEGACY_MONTHLY_MODE", "ordinal").strip().lower()

RECOMMENDATION_HISTORY_WEEKS = int(os.getenv("RECOMMENDATION_HISTORY_WEEKS", "4"))
RECOMMENDED_DISCOUNT_PERCENT = int(os.getenv("RECOMMENDED_DISCOUNT_PERCENT", "10"))

REQUEST_DEDUP_WINDOW_MS = int(os.getenv("REQUEST_DEDUP_WINDOW_MS", "200"))
FETCH_MAX_WORKERS = int(os.getenv("FETCH_MAX_WORKERS", "6"))

LEGACY_MONTHLY_MODES = {"ordinal", "four_week"}


def validate_runtime_config() -> None:
    if SLOT_SIZE_MINUTES <= 0:
        raise RuntimeError("SLOT_SIZE_MINUTES must be a positive number of minutes.")
    if RECURRENCE_MAX_ITERATIONS <= 0:
        raise RuntimeError("RECURRENCE_MAX_ITERATIONS must be positive.")
    if LEGACY_MONTHLY_MODE not in LEGACY_MONTHLY_MODES:
        raise RuntimeError(
            f"LEGACY_MONTHLY_MODE must be one of {sorted(LEGACY_MONTHLY_MODES)}, got {LEGACY_MONTHLY_MODE!r}."
        )
    if FETCH_MAX_WORKERS <= 0:
        raise RuntimeError("FETCH_MAX_WORKERS must be positive.")
