from __future__ import annotations

import logging
import os

import structlog
import uvicorn

from notify_guard.app import create_app
from notify_guard.settings import NotifyGuardSettings


_LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


def configure_logging(level: str = "INFO") -> None:
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(_LOG_LEVELS.get(str(level).upper(), logging.INFO)),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def main() -> None:
    host = os.getenv("NOTIFY_GUARD_HOST", "0.0.0.0").strip() or "0.0.0.0"
    port = int(os.getenv("NOTIFY_GUARD_PORT", "8080"))
    settings = NotifyGuardSettings()
    configure_logging(settings.log_level)
    app = create_app(settings)
    uvicorn.run(app, host=host, port=port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
