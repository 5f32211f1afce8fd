"""
Structured Logging Configuration
Version: 1.0.0

structlog on top of stdlib logging, shared by the API and the worker.
Request trace ids and background job names travel in structlog's
contextvars, so every line logged inside a request or a sync/assign run
carries them without passing loggers around.
"""
import logging
import os
import sys
import time
import uuid
from contextlib import contextmanager
from typing import Optional

import structlog


NOISY_LOGGERS = ("sqlalchemy.engine", "httpx", "httpcore", "asyncio", "uvicorn.access")


def get_trace_id() -> Optional[str]:
    """Trace id bound for the current request, if any."""
    return structlog.contextvars.get_contextvars().get("trace_id")


def set_trace_id(trace_id: str) -> None:
    structlog.contextvars.bind_contextvars(trace_id=trace_id)


@contextmanager
def job_context(job: str, **fields):
    """
    Tag every log line inside the block with the job name and a short run id.

        with job_context("cache_sync"):
            await orchestrator.sync_all()
    """
    run_id = uuid.uuid4().hex[:8]
    with structlog.contextvars.bound_contextvars(job=job, run_id=run_id, **fields):
        yield run_id


def _service_fields() -> dict:
    return {
        "service": os.getenv("APP_NAME", "guide-scheduler"),
        "version": os.getenv("APP_VERSION", "unknown"),
        "environment": os.getenv("APP_ENV", "development"),
    }


def _processors(json_format: bool) -> list:
    chain = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if not json_format:
        return chain + [structlog.dev.ConsoleRenderer(colors=True)]

    service = _service_fields()

    def add_service_info(logger, method_name, event_dict):
        for key, value in service.items():
            event_dict.setdefault(key, value)
        return event_dict

    return chain + [
        add_service_info,
        structlog.processors.EventRenamer("message"),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ]


def configure_logging(json_format: Optional[bool] = None, log_level: str = "INFO") -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        json_format: JSON lines if True, coloured console if False,
                     production-only JSON if None.
        log_level: Minimum level name for the root logger.
    """
    if json_format is None:
        json_format = os.getenv("APP_ENV", "development") == "production"

    structlog.configure(
        processors=_processors(json_format),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

    # The API logs its own request line
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    """
    Usage:
        logger = get_logger(__name__)
        logger.info("Cache sync finished", products=4, cached=318)
    """
    return structlog.get_logger(name)


class LogTimer:
    """
    Logs one line when the block exits, with the elapsed time and an outcome.

    Counters known only at the end of the block are attached with annotate():

        with LogTimer(logger, "Auto-assign", trigger="schedule") as timer:
            report = await engine.auto_assign()
            timer.annotate(assigned=report.assigned)
    """

    def __init__(self, logger, operation: str, **extra):
        self.logger = logger
        self.operation = operation
        self.extra = extra
        self._started = 0.0

    def annotate(self, **fields) -> None:
        self.extra.update(fields)

    def __enter__(self):
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration_ms = round((time.perf_counter() - self._started) * 1000, 2)

        if exc_type is None:
            self.logger.info(f"{self.operation} finished", outcome="ok", duration_ms=duration_ms, **self.extra)
        elif issubclass(exc_type, Exception):
            self.logger.warning(
                f"{self.operation} finished",
                outcome="error",
                error_type=exc_type.__name__,
                error=str(exc_val),
                duration_ms=duration_ms,
                **self.extra
            )
        return False
