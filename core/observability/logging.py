"""
Structured Logging with Correlation IDs

Every record emitted while a reconciliation is running carries:
- merchant_id: The tenant being reconciled
- invoice_id: The remote invoice being applied (single-invoice changes)
- workflow_id / workflow_run_id: The Temporal execution that asked for the work
- activity_id / activity_name: The Temporal activity attempt
- stage: Pass step (snapshot, locations, fetch, lines, write, invoice_change)

Usage:
    from core.observability.logging import get_logger, with_correlation

    logger = get_logger(__name__)

    with with_correlation(merchant_id="M-001", stage="fetch"):
        logger.info("Paging invoices", extra_fields={"location_id": "L1"})
"""

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import asdict, dataclass, fields
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Union


# =============================================================================
# Correlation Context
# =============================================================================

@dataclass(frozen=True)
class CorrelationContext:
    """Identifiers tying a log line to a merchant, invoice and Temporal run."""
    merchant_id: Optional[str] = None
    invoice_id: Optional[str] = None
    workflow_id: Optional[str] = None
    workflow_run_id: Optional[str] = None
    activity_id: Optional[str] = None
    activity_name: Optional[str] = None
    task_queue: Optional[str] = None
    stage: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Set fields only."""
        return {k: v for k, v in asdict(self).items() if v is not None}

    def merge(self, **kwargs) -> "CorrelationContext":
        """Copy with the given non-None fields replaced."""
        known = {f.name for f in fields(self)}
        unknown = set(kwargs) - known
        if unknown:
            raise TypeError(f"Unknown correlation fields: {sorted(unknown)}")
        data = self.to_dict()
        data.update({k: v for k, v in kwargs.items() if v is not None})
        return CorrelationContext(**data)

    def label(self) -> str:
        """Short 'M-001/committed-inventory-M-0/inv:123/fetch' tag for text logs."""
        parts = []
        if self.merchant_id:
            parts.append(self.merchant_id)
        if self.workflow_id:
            parts.append(self.workflow_id[:24])
        if self.invoice_id:
            parts.append(f"inv:{self.invoice_id}")
        if self.stage:
            parts.append(self.stage)
        return "/".join(parts) if parts else "-"


_EMPTY_CONTEXT = CorrelationContext()

_correlation_context: ContextVar[CorrelationContext] = ContextVar(
    "correlation_context",
    default=_EMPTY_CONTEXT,
)


def get_correlation_context() -> CorrelationContext:
    """Get the current correlation context."""
    return _correlation_context.get()


@contextmanager
def with_correlation(**kwargs) -> Iterator[CorrelationContext]:
    """
    Add correlation IDs for the duration of the block.

    Nested blocks merge with the enclosing context; the previous context is
    restored on exit. Safe across asyncio tasks (ContextVar).
    """
    token = _correlation_context.set(get_correlation_context().merge(**kwargs))
    try:
        yield _correlation_context.get()
    finally:
        _correlation_context.reset(token)


@contextmanager
def activity_correlation(info, **kwargs) -> Iterator[CorrelationContext]:
    """with_correlation() seeded from a temporalio activity.Info."""
    with with_correlation(
        workflow_id=info.workflow_id,
        workflow_run_id=info.workflow_run_id,
        activity_id=info.activity_id,
        activity_name=info.activity_type,
        task_queue=info.task_queue,
        **kwargs,
    ) as ctx:
        yield ctx


# =============================================================================
# Filter and Formatters
# =============================================================================

class CorrelationFilter(logging.Filter):
    """Stamp the current correlation context onto each record.

    Captured when the record is created, so handlers that format later (or on
    another thread) still see the IDs of the code that logged.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "correlation"):
            record.correlation = get_correlation_context()
        return True


def _record_context(record: logging.LogRecord) -> CorrelationContext:
    return getattr(record, "correlation", None) or get_correlation_context()


def _record_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return getattr(record, "extra_fields", None) or {}


class StructuredFormatter(logging.Formatter):
    """
    One JSON object per line.

    {"timestamp": "2026-01-09T12:00:00.000Z", "level": "WARNING",
     "logger": "reconciliation.engine",
     "message": "No changes despite existing committed records",
     "merchant_id": "M-001", "stage": "write", "rows_before": 4}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.utcfromtimestamp(record.created).isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_data.update(_record_context(record).to_dict())
        log_data.update(_record_fields(record))
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    2026-01-09 12:00:00 [INFO ] reconciliation.engine [M-001/fetch]: Fetched 12 invoices {"open": 3}
    """

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S")
        msg = (
            f"{timestamp} [{record.levelname:5}] {record.name} "
            f"[{_record_context(record).label()}]: {record.getMessage()}"
        )

        extra_fields = _record_fields(record)
        if extra_fields:
            msg += " " + json.dumps(extra_fields, default=str, sort_keys=True)
        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)
        return msg


# =============================================================================
# Logger with Structured Fields
# =============================================================================

class CorrelatedLogger:
    """
    Thin wrapper over a stdlib logger accepting `extra_fields={...}`.

    The fields travel on the record as `record.extra_fields` and are rendered
    by both formatters; caplog sees them too.
    """

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    @property
    def name(self) -> str:
        return self._logger.name

    def log(self, level: int, msg: str, *args, extra_fields: Optional[Dict[str, Any]] = None, **kwargs):
        if not self._logger.isEnabledFor(level):
            return
        extra = dict(kwargs.pop("extra", None) or {})
        extra["extra_fields"] = dict(extra_fields or {})
        extra.setdefault("correlation", get_correlation_context())
        # stacklevel 3 points at the caller of debug()/info()/...
        kwargs.setdefault("stacklevel", 3)
        self._logger.log(level, msg, *args, extra=extra, **kwargs)

    def debug(self, msg: str, *args, **kwargs):
        self.log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs):
        self.log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        self.log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        self.log(logging.ERROR, msg, *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs):
        kwargs.setdefault("exc_info", True)
        kwargs.setdefault("stacklevel", 4)
        self.error(msg, *args, **kwargs)

    def setLevel(self, level):
        self._logger.setLevel(level)

    def isEnabledFor(self, level) -> bool:
        return self._logger.isEnabledFor(level)


# =============================================================================
# Setup
# =============================================================================

PACKAGE_LOGGERS = ("activities", "workflows", "reconciliation", "ledger", "connectors", "core")

_loggers: Dict[str, CorrelatedLogger] = {}
_handlers: list = []


def configure_logging(
    level: Union[int, str] = logging.INFO,
    json_format: bool = False,
    log_file: Optional[Path] = None,
    include_temporal: bool = True,
    force: bool = False,
):
    """
    Install root handlers for an entry point (worker, CLI).

    Args:
        level: Logging level (int or name)
        json_format: JSON lines instead of human-readable text
        log_file: Also append to this file
        include_temporal: Keep temporalio SDK logs at INFO
        force: Replace handlers from an earlier call instead of returning
    """
    root = logging.getLogger()
    if _handlers:
        if not force:
            return
        for handler in _handlers:
            root.removeHandler(handler)
            handler.close()
        _handlers.clear()

    formatter = StructuredFormatter() if json_format else HumanReadableFormatter()
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file is not None:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(CorrelationFilter())
        root.addHandler(handler)
        _handlers.append(handler)

    root.setLevel(level)
    for logger_name in PACKAGE_LOGGERS:
        logging.getLogger(logger_name).setLevel(level)

    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    if include_temporal:
        logging.getLogger("temporalio").setLevel(logging.INFO)


def get_logger(name: str) -> CorrelatedLogger:
    """
    Get a correlated logger for the given name.

    Never installs handlers: library code stays quiet until the entry point
    calls configure_logging().
    """
    if name not in _loggers:
        _loggers[name] = CorrelatedLogger(logging.getLogger(name))
    return _loggers[name]
