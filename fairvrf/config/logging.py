import logging.config
from typing import Any, Dict, Optional

import structlog

# Third-party loggers that are chatty at INFO
NOISY_LOGGERS = ("web3", "urllib3", "aiohttp", "asyncio")


def configure_logging(log_level: str = "INFO", json_logs: bool = True) -> None:
    """Route structlog and stdlib logging through one renderer.

    JSON lines for production, colored console output for development.
    Records from libraries that log through stdlib (web3, aiohttp) get the
    same timestamp and level fields as the oracle's own events.
    """
    level = log_level.upper()
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_logs:
        shared_processors.append(structlog.processors.format_exc_info)
    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer()
    )

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {
                "()": structlog.stdlib.ProcessorFormatter,
                "foreign_pre_chain": shared_processors,
                "processors": [
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    renderer,
                ],
            },
        },
        "handlers": {
            "default": {
                "level": level,
                "class": "logging.StreamHandler",
                "formatter": "structured",
            },
        },
        "loggers": {
            "": {"handlers": ["default"], "level": level, "propagate": True},
            **{name: {"level": "WARNING"} for name in NOISY_LOGGERS},
        },
    })

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def log_error(logger: Any, error: Exception, context: Optional[Dict[str, Any]] = None) -> None:
    """Log an exception with its type and message under one event name."""
    logger.error(
        "error_occurred",
        error_type=type(error).__name__,
        error_message=str(error),
        **(context or {})
    )
