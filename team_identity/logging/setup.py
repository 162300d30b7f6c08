import sys
import logging
from typing import Any, Optional

from loguru import logger

from team_identity.config.settings import AppSettings, settings as app_settings

SENSITIVE_KEYS = ["key", "token", "password", "secret", "cookie"]

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)


def _mask(value: str) -> str:
    if len(value) > 8:
        return value[:4] + "****" + value[-4:]
    return "********"


def _secrets(config: AppSettings) -> list[str]:
    candidates = [config.supabase_key, config.source_a.api_key, config.source_b.api_key]
    return [secret for secret in candidates if secret]


def make_sensitive_data_filter(config: AppSettings):
    """Builds a loguru filter masking configured secrets and sensitive extras."""
    secrets = _secrets(config)

    def sensitive_data_filter(record: dict[str, Any]) -> bool:
        extra = record.get("extra")
        if isinstance(extra, dict):
            for extra_key, value in extra.items():
                if isinstance(value, str) and any(
                    sk in extra_key.lower() for sk in SENSITIVE_KEYS
                ):
                    extra[extra_key] = _mask(value)

        for secret in secrets:
            if secret in record["message"]:
                record["message"] = record["message"].replace(secret, "********")

        return True  # Keep the record after masking

    return sensitive_data_filter


class InterceptHandler(logging.Handler):
    """Routes standard logging records (httpx, supabase) into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        # Get corresponding Loguru level if it exists
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find caller from where originated the logged message
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )


def setup_logging(config: Optional[AppSettings] = None) -> None:
    """Configures Loguru logger based on application settings."""
    config = config or app_settings
    mask = make_sensitive_data_filter(config)
    logger.remove()  # Remove default handler

    logger.add(
        sys.stderr,
        level=config.log_level.upper(),
        format=CONSOLE_FORMAT,
        colorize=True,
        backtrace=True,
        diagnose=True,
        filter=mask,
    )

    if config.log_file:
        # Sync runs are long; keep a structured trail for later review
        logger.add(
            str(config.log_file),
            level="DEBUG",
            rotation="10 MB",
            retention="7 days",
            compression="zip",
            serialize=True,
            enqueue=True,
            filter=mask,
        )

    logger.info(
        f"Logging initialized with level: {config.log_level}"
        + (f", file sink {config.log_file}" if config.log_file else "")
    )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    logger.debug("Standard logging intercepted.")
