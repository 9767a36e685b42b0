import logging
import os

import structlog
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings:
    APP_NAME = "RentBase API"
    APP_VERSION = "2.0.0"
    DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
    DATABASE_NAME = os.getenv("DATABASE_NAME", "rentbase")
    JWT_SECRET = os.getenv("JWT_SECRET", "change-me-in-production")
    JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
    JWT_EXPIRE_DAYS = int(os.getenv("JWT_EXPIRE_DAYS", "7"))
    ADMIN_EMAIL_DOMAIN = os.getenv("ADMIN_EMAIL_DOMAIN", "@admin.com")
    BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "10"))
    BOOKING_REFERENCE_ATTEMPTS = int(os.getenv("BOOKING_REFERENCE_ATTEMPTS", "5"))
    REQUIRE_VERIFICATION = _env_bool("REQUIRE_VERIFICATION", True)
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_JSON = _env_bool("LOG_JSON", False)
    PORT = int(os.getenv("PORT", "8000"))


settings = Settings()


def configure_logging(level: str = None, json_logs: bool = None) -> None:
    """Configure structlog once for the whole process."""
    level = (level or settings.LOG_LEVEL).upper()
    json_logs = settings.LOG_JSON if json_logs is None else json_logs

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level, logging.INFO)
        ),
        cache_logger_on_first_use=True,
    )
