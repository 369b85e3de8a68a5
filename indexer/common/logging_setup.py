import json
import logging
import os
import hashlib
from datetime import datetime, timezone
from logging.handlers import TimedRotatingFileHandler
from typing import Dict, Any, Optional

import structlog

from .config import settings


class StructuredJsonFormatter(logging.Formatter):
    """JSON formatter with required fields for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        # Extract custom fields from record if they exist
        component = getattr(record, 'component', record.name)
        operation = getattr(record, 'operation', record.funcName or 'unknown')
        params_hash = getattr(record, 'params_hash', '')
        status = getattr(record, 'status', 'info')
        duration_ms = getattr(record, 'duration_ms', 0)
        error = getattr(record, 'error', '')

        data = {
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "component": component,
            "operation": operation,
            "params_hash": params_hash,
            "adapter_id": getattr(record, 'adapter_id', ''),
            "chain": getattr(record, 'chain', ''),
            "status": status,
            "duration_ms": duration_ms,
            "error": error,
            "level": record.levelname,
            "message": record.getMessage(),
        }

        if record.exc_info:
            data["error"] = self.formatException(record.exc_info)
            data["status"] = "error"

        # Remove empty fields for cleaner logs
        data = {k: v for k, v in data.items() if v != '' and v is not None}

        return json.dumps(data, default=str)


def get_logger(name: str) -> "StructuredLogger":
    """Get a logger instance with structured logging support"""
    logger = logging.getLogger(name)
    return StructuredLogger(logger)


class StructuredLogger:
    """Wrapper around logger that adds structured logging methods"""

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    def log_operation(self,
                      operation: str,
                      params: Optional[Dict[str, Any]] = None,
                      status: str = "started",
                      duration_ms: int = 0,
                      error: str = "",
                      message: str = "",
                      adapter_id: str = "",
                      chain: str = "") -> None:
        """Log an operation with structured fields"""
        params_hash = ""
        if params:
            # Hash params so request payloads (addresses, props) stay out of the logs
            params_str = json.dumps(params, sort_keys=True, default=str)
            params_hash = hashlib.md5(params_str.encode()).hexdigest()[:8]

        extra = {
            'component': self._logger.name,
            'operation': operation,
            'params_hash': params_hash,
            'adapter_id': adapter_id,
            'chain': chain,
            'status': status,
            'duration_ms': duration_ms,
            'error': error
        }

        if error:
            self._logger.error(message or f"Operation {operation} failed", extra=extra)
        elif status == "completed":
            self._logger.info(message or f"Operation {operation} completed", extra=extra)
        elif status == "skipped":
            self._logger.debug(message or f"Operation {operation} skipped", extra=extra)
        else:
            self._logger.info(message or f"Operation {operation} {status}", extra=extra)

    def __getattr__(self, name):
        """Delegate all other methods to the underlying logger"""
        return getattr(self._logger, name)


def setup_logging() -> None:
    """Configure logging with JSON format and daily rotation"""
    os.makedirs(settings.log_dir, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    # Remove any existing handlers
    root.handlers = []

    console_handler = logging.StreamHandler()
    console_handler.setLevel(root.level)
    console_handler.setFormatter(StructuredJsonFormatter())
    root.addHandler(console_handler)

    log_filename = os.path.join(
        settings.log_dir,
        f"indexer_{datetime.now().strftime('%Y%m%d')}.log"
    )
    file_handler = TimedRotatingFileHandler(
        filename=log_filename,
        when='midnight',
        interval=1,
        backupCount=30,
        encoding='utf-8'
    )
    file_handler.suffix = "%Y%m%d.log"
    file_handler.setLevel(root.level)
    file_handler.setFormatter(StructuredJsonFormatter())
    root.addHandler(file_handler)

    # structlog loggers (network clients) render through the stdlib handlers above
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(root.level),
        cache_logger_on_first_use=True,
    )

    # Per-adapter revalidation outcomes, kept apart from the main log
    revalidation_logger = logging.getLogger('revalidation')
    revalidation_logger.handlers = []
    revalidation_file = os.path.join(settings.log_dir, 'revalidation.log')
    revalidation_handler = logging.FileHandler(revalidation_file, encoding='utf-8')
    revalidation_handler.setFormatter(StructuredJsonFormatter())
    revalidation_logger.addHandler(revalidation_handler)
    revalidation_logger.setLevel(logging.INFO)
    revalidation_logger.propagate = False


def log_summary(component: str, cycle: str, adapters_processed: int, duration_seconds: float) -> None:
    """Log a summary for one revalidation or balances cycle"""
    logger = get_logger(component)
    logger.log_operation(
        operation="cycle_summary",
        params={"cycle": cycle},
        status="completed",
        duration_ms=int(duration_seconds * 1000),
        message=f"Processed {adapters_processed} adapters in cycle {cycle}"
    )
