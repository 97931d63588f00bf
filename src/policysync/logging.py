import logging
from typing import Any

import structlog


def configure_logging(level: int | str = logging.INFO) -> None:
    """Configure structlog/standard logging bridge."""

    timestamper = structlog.processors.TimeStamper(fmt="iso", utc=True)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            timestamper,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(level=level, format="%(message)s")


def bind_context(**kwargs: Any) -> structlog.stdlib.BoundLogger:
    """Bind contextual fields for downstream logs."""

    logger = structlog.get_logger()
    return logger.bind(**kwargs)


def bind_request(controller: str, namespace: str, name: str) -> structlog.stdlib.BoundLogger:
    """Bind the fields every reconcile log line carries."""

    return bind_context(controller=controller, namespace=namespace, policy=name)


def log_template_failure(
    log: Any,
    event: str,
    *,
    category: str,
    error_type: str,
    error: BaseException | str,
    **kwargs: Any,
) -> None:
    """Log a per-template failure tagged as a user or system error."""

    log.error(
        event,
        error_category=category,
        error_type=error_type,
        error=str(error),
        **kwargs,
    )
