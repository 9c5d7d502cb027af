from __future__ import annotations

import json
import logging
import sys
from logging import LogRecord
from typing import Any, Dict, Mapping

from loguru import logger
from opentelemetry import trace


# Keys bound on ledger, enrollment, and audit log calls; rendered under "loyalty".
LOYALTY_CONTEXT_KEYS = (
    "card_id",
    "card_number",
    "customer_id",
    "business_id",
    "program_id",
    "request_id",
    "enrollment_id",
    "transaction_ref",
    "strategy",
)

# Chatty third-party loggers routed through loguru at a raised threshold.
_QUIET_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "aiosqlite": logging.WARNING,
}

_STDLIB_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class InterceptHandler(logging.Handler):
    """Forward stdlib logging records (uvicorn, SQLAlchemy) into loguru."""

    def emit(self, record: LogRecord) -> None:  # pragma: no cover - bridging glue
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        extra = {key: value for key, value in vars(record).items() if key not in _STDLIB_RECORD_ATTRS}
        try:
            message = record.getMessage()
        except (TypeError, ValueError):  # pragma: no cover - malformed format strings
            message = str(record.msg)
        message = message.replace("{", "{{").replace("}", "}}")
        logger.bind(**extra).opt(depth=6, exception=record.exc_info).log(level, message)


def build_log_payload(record: Mapping[str, Any], metadata: Mapping[str, Any]) -> Dict[str, Any]:
    """Flatten a loguru record into the JSON line shipped to the log pipeline."""

    extra = dict(record["extra"])
    payload: Dict[str, Any] = {
        "timestamp": record["time"].isoformat(),
        "level": record["level"].name.lower(),
        "message": record["message"],
        "logger": record["name"],
        "service": metadata.get("service_name", "unknown"),
        "environment": metadata.get("environment", "unknown"),
        "version": metadata.get("version", "unknown"),
    }

    loyalty = {key: extra.pop(key) for key in LOYALTY_CONTEXT_KEYS if extra.get(key) is not None}
    if loyalty:
        payload["loyalty"] = loyalty
    error_code = extra.pop("error_code", None)
    if error_code is not None:
        payload["error_code"] = getattr(error_code, "value", error_code)
    if extra:
        payload["context"] = extra

    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        payload["trace_id"] = f"{span_context.trace_id:032x}"
        payload["span_id"] = f"{span_context.span_id:016x}"

    if record["exception"] is not None and record["exception"].type is not None:
        payload["exception"] = record["exception"].type.__name__
    return payload


def configure_logging(
    *,
    service_name: str,
    environment: str,
    version: str,
    level: str | int = "INFO",
) -> None:
    """Install the structured JSON sink and route stdlib logging through loguru."""

    metadata = {"service_name": service_name, "environment": environment, "version": version}

    def _sink(message: "logger.Message") -> None:
        sys.stdout.write(json.dumps(build_log_payload(message.record, metadata), default=str) + "\n")

    logger.remove()
    logger.add(_sink, level=level, backtrace=False, diagnose=False)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name, threshold in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(threshold)
