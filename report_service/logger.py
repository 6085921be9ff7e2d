"""
Logging setup for the report service.

Records emitted on behalf of a render job carry ``job_id``, ``record_id``,
``job_state`` and ``elapsed`` as record attributes. The simple formatter
turns the ids into a ``[job:xxxxxxxx] [recXXX]`` prefix; the JSON formatter
emits every job attribute as its own field.
"""

import json
import logging
import sys
import time
from typing import Any, Callable, MutableMapping, Optional, Tuple

JOB_FIELDS = ("job_id", "record_id", "job_state", "elapsed")


class JobLogger(logging.LoggerAdapter):
    """
    Logger bound to one render job.

    Args:
        logger: Module logger to emit through
        job_id: Job identifier (hex uuid)
        record_id: Airtable record the job reports for
        state: Callable returning the job's current state name
    """

    def __init__(
        self,
        logger: logging.Logger,
        job_id: str,
        record_id: Optional[str] = None,
        state: Optional[Callable[[], str]] = None,
    ):
        super().__init__(logger, {"job_id": job_id, "record_id": record_id})
        self._state = state
        self._started = time.monotonic()

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        extra = dict(self.extra)
        extra["elapsed"] = round(time.monotonic() - self._started, 3)
        if self._state is not None:
            extra["job_state"] = self._state()
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs


class JobContextFilter(logging.Filter):
    """Adds ``job_prefix`` so plain-text formats can show job ids."""

    def filter(self, record: logging.LogRecord) -> bool:
        parts = []
        job_id = getattr(record, "job_id", None)
        if job_id:
            parts.append(f"[job:{job_id[:8]}]")
        record_id = getattr(record, "record_id", None)
        if record_id:
            parts.append(f"[{record_id}]")
        record.job_prefix = " ".join(parts) + " " if parts else ""
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line, with job attributes as top-level fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "time": self.formatTime(record),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        for key in JOB_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


SIMPLE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(job_prefix)s%(message)s"


def build_handler(level: int = logging.INFO, format: str = "simple", stream=None) -> logging.Handler:
    """Stream handler with the job filter and the requested formatter attached."""
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setLevel(level)
    handler.addFilter(JobContextFilter())
    if format == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(SIMPLE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    return handler


def setup_logging(level: str = "INFO", format: str = "simple") -> None:
    """
    Replace the root handlers with a single stdout handler.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR)
        format: "simple" for humans, "json" for log aggregators
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    root_logger.addHandler(build_handler(log_level, format))
    root_logger.setLevel(log_level)


def get_logger(
    name: str,
    job_id: str,
    record_id: Optional[str] = None,
    state: Optional[Callable[[], str]] = None,
) -> JobLogger:
    return JobLogger(logging.getLogger(name), job_id, record_id, state)
