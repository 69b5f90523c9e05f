import json
import logging
import os
import hashlib
from datetime import datetime
from logging.handlers import TimedRotatingFileHandler
from typing import Dict, Any, Optional

import structlog

from .config import settings


class StructuredJsonFormatter(logging.Formatter):
    """JSON formatter with required fields for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        component = getattr(record, 'component', record.name)
        operation = getattr(record, 'operation', record.funcName or 'unknown')
        params_hash = getattr(record, 'params_hash', '')
        status = getattr(record, 'status', 'info')
        duration_ms = getattr(record, 'duration_ms', 0)
        error = getattr(record, 'error', '')

        data = {
            "ts": datetime.utcnow().isoformat() + "Z",
            "component": component,
            "operation": operation,
            "params_hash": params_hash,
            "status": status,
            "duration_ms": duration_ms,
            "error": error,
            "level": record.levelname,
            "message": record.getMessage(),
        }

        audit_fields = getattr(record, 'audit', None)
        if audit_fields:
            data["audit"] = audit_fields

        if record.exc_info:
            data["error"] = self.formatException(record.exc_info)
            data["status"] = "error"

        # Remove empty fields for cleaner logs
        data = {k: v for k, v in data.items() if v != '' and v is not None}

        return json.dumps(data, default=str)


def hash_params(params: Optional[Dict[str, Any]]) -> str:
    """Short stable hash of operation parameters; identifiers never reach the log raw"""
    if not params:
        return ""
    params_str = json.dumps(params, sort_keys=True, default=str)
    return hashlib.md5(params_str.encode()).hexdigest()[:8]


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
                      message: str = "") -> None:
        """Log an operation with structured fields"""
        extra = {
            'component': self._logger.name,
            'operation': operation,
            'params_hash': hash_params(params),
            'status': status,
            'duration_ms': duration_ms,
            'error': error
        }

        if error:
            self._logger.error(message or f"Operation {operation} failed", extra=extra)
        elif status == "completed":
            self._logger.info(message or f"Operation {operation} completed", extra=extra)
        else:
            self._logger.info(message or f"Operation {operation} {status}", extra=extra)

    def __getattr__(self, name):
        """Delegate all other methods to the underlying logger"""
        return getattr(self._logger, name)


def audit_event(action: str, **fields: Any) -> None:
    """Record a privacy-relevant decision on the audit logger"""
    audit_logger = logging.getLogger('audit')
    audit_logger.info(
        action,
        extra={'component': 'audit', 'operation': action, 'status': 'recorded', 'audit': fields}
    )


def configure_structlog() -> None:
    """Route structlog events from service classes through stdlib handlers"""
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.KeyValueRenderer(key_order=["event"], sort_keys=True),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


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
        f"analytics_{datetime.now().strftime('%Y%m%d')}.log"
    )
    file_handler = TimedRotatingFileHandler(
        filename=log_filename,
        when='midnight',
        interval=1,
        backupCount=30,  # Keep 30 days of logs
        encoding='utf-8'
    )
    file_handler.suffix = "%Y%m%d.log"
    file_handler.setLevel(root.level)
    file_handler.setFormatter(StructuredJsonFormatter())
    root.addHandler(file_handler)

    # Privacy mode changes and grant decisions
    audit_logger = logging.getLogger('audit')
    audit_logger.handlers = []
    audit_file = os.path.join(settings.log_dir, 'audit.log')
    audit_handler = logging.FileHandler(audit_file, encoding='utf-8')
    audit_handler.setFormatter(StructuredJsonFormatter())
    audit_logger.addHandler(audit_handler)
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False

    configure_structlog()


def log_batch_summary(component: str, batch: str, succeeded: int, skipped: int,
                      failed: int, duration_seconds: float) -> None:
    """Log the outcome counters of a batch operation"""
    logger = get_logger(component)
    logger.log_operation(
        operation="batch_summary",
        params={"batch": batch},
        status="completed" if failed == 0 else "partial",
        duration_ms=int(duration_seconds * 1000),
        message=f"Batch {batch}: {succeeded} succeeded, {skipped} skipped, {failed} failed"
    )
