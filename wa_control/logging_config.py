"""Structured logging for the control plane.

Services attach their fields through ``extra={"context": {...}}`` or a
``ContextLogger``. The correlation fields a conversation is traced by (phone,
operator, ledger and provider message ids, delivery channel) are lifted out of
the context onto the record itself, so webhook, router and reconciler lines for
one conversation share the same top-level keys. Phone numbers are masked down
to their last four digits when ``LOG_MASK_PHONES`` is set.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional

LOGGER_PREFIX = "wa_control"

CORRELATION_FIELDS = ("phone", "operator_id", "message_id", "wa_message_id", "channel")
PHONE_FIELDS = ("phone", "wa_from", "wa_to")
NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def mask_phone(value: Any) -> Any:
    if not isinstance(value, str) or len(value) <= 4:
        return value
    return "*" * (len(value) - 4) + value[-4:]


def split_context(context: Optional[dict[str, Any]], mask_phones: bool = False) -> tuple[dict, dict]:
    """Separate correlation fields from the rest of a record's context."""
    correlation: dict[str, Any] = {}
    rest: dict[str, Any] = {}
    for key, value in (context or {}).items():
        if mask_phones and key in PHONE_FIELDS:
            value = mask_phone(value)
        if key in CORRELATION_FIELDS and value is not None:
            correlation[key] = value
        else:
            rest[key] = value
    return correlation, rest


class JSONFormatter(logging.Formatter):
    def __init__(self, mask_phones: bool = False):
        super().__init__()
        self.mask_phones = mask_phones

    def format(self, record: logging.LogRecord) -> str:
        correlation, context = split_context(getattr(record, "context", None), self.mask_phones)
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **correlation,
        }
        if context:
            log_data["context"] = context
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    """Single-line console output for local runs: ``LEVEL logger message key=value ...``."""

    def __init__(self, mask_phones: bool = False):
        super().__init__()
        self.mask_phones = mask_phones

    def format(self, record: logging.LogRecord) -> str:
        correlation, context = split_context(getattr(record, "context", None), self.mask_phones)
        fields = " ".join(f"{k}={v}" for k, v in {**correlation, **context}.items())
        line = f"{record.levelname} {record.name} {record.getMessage()}"
        if fields:
            line = f"{line} {fields}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(level: str = "INFO", log_format: str = "json", mask_phones: bool = False) -> None:
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    formatter_class = TextFormatter if log_format == "text" else JSONFormatter
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter_class(mask_phones=mask_phones))
    root_logger.addHandler(handler)

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{LOGGER_PREFIX}.{name}")


class ContextLogger(logging.LoggerAdapter):
    """Carries a fixed context (one phone and operator during a sweep) into every record."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        context = kwargs.pop("context", None)
        if context or self.extra:
            kwargs["extra"] = {"context": {**self.extra, **(context or {})}}
        return msg, kwargs
