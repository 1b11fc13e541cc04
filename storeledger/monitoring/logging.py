"""
Structured logging for the ledger and order fulfillment core.

Services, stores and sagas log through structlog. setup_logging() routes
those events through the standard library as JSON lines, and
operation_context() ties every event emitted while serving one transfer or
one order to the same operation id.
"""
import logging
import sys
import uuid
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import structlog
from pythonjsonlogger import jsonlogger

from storeledger.config import Settings, get_settings


def add_app_context(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Stamp every event with the application name and environment."""
    settings = get_settings()
    event_dict.setdefault("app_name", settings.app_name)
    event_dict.setdefault("app_env", settings.app_env)
    return event_dict


@contextmanager
def operation_context(operation: str, **ids: Any) -> Iterator[str]:
    """
    Bind an operation id and the ids it acts on for the duration of the block.

    The binding lives in contextvars, so saga steps and store calls awaited
    inside the block (including shielded tasks started from it) log with it.

    Args:
        operation: Operation name, e.g. "transfer" or "create_order"
        **ids: Account, store or order ids the operation acts on

    Yields:
        str: The generated operation id
    """
    operation_id = str(uuid.uuid4())
    bound = {key: str(value) for key, value in ids.items()}
    with structlog.contextvars.bound_contextvars(
        operation=operation, operation_id=operation_id, **bound
    ):
        yield operation_id


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structlog and the root logger for JSON output on stdout.

    SQLAlchemy engine logging follows settings.database_echo instead of the
    root level.
    """
    settings = settings or get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            add_app_context,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "@timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root_logger.addHandler(handler)

    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
        database_echo=settings.database_echo,
    )
