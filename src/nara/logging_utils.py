#!/usr/bin/env python3
"""
Unified logging utility for Nara components.

Provides setup_logger(name, logfile) to configure a rotating file handler and
console handler with consistent formatting. Idempotent: reuses existing handlers
if already configured for the logger.

Set NARA_LOG_DIR to relocate log files and NARA_LOG_JSON=1 to force structured
JSON output for every logger.
"""
from __future__ import annotations

import logging
import os
import json
import uuid
from logging.handlers import RotatingFileHandler
from typing import Optional
from datetime import datetime

_RESERVED_ATTRS = frozenset({
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
    'module', 'exc_info', 'exc_text', 'stack_info', 'lineno', 'funcName',
    'created', 'msecs', 'relativeCreated', 'thread', 'threadName',
    'processName', 'process', 'message', 'request_id', 'error_details',
    'taskName',
})


def _resolve_logfile(logfile: str) -> str:
    log_dir = os.environ.get("NARA_LOG_DIR")
    if log_dir and not os.path.isabs(logfile):
        return os.path.join(log_dir, os.path.basename(logfile))
    return logfile


def setup_logger(name: str, logfile: str, level: int = logging.INFO, structured: bool = False) -> logging.Logger:
    """Create or return a configured logger with rotating file + console handlers.

    Args:
        name: Logger name
        logfile: Log file path
        level: Log level
        structured: Whether to use structured JSON logging
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(level)
    logfile = _resolve_logfile(logfile)

    try:
        logdir = os.path.dirname(logfile)
        if logdir and not os.path.exists(logdir):
            os.makedirs(logdir, exist_ok=True)
    except OSError:
        pass

    if structured or os.environ.get("NARA_LOG_JSON") == "1":
        fmt: logging.Formatter = JSONFormatter()
    else:
        fmt = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    try:
        fh = RotatingFileHandler(logfile, maxBytes=2_000_000, backupCount=3)
        fh.setFormatter(fmt)
        logger.addHandler(fh)
    except OSError:
        # Read-only checkout or missing permissions: console only
        pass

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    return logger


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def __init__(self, include_request_id: bool = True):
        super().__init__()
        self.include_request_id = include_request_id

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }

        if self.include_request_id and hasattr(record, 'request_id'):
            log_entry['request_id'] = record.request_id

        if getattr(record, 'error_details', None):
            log_entry['error_details'] = record.error_details

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


def log_with_context(logger: logging.Logger, level: int, message: str, **context) -> None:
    """Log message with additional context fields (interaction id, stage, ...)"""
    request_id = context.pop('request_id', None) or str(uuid.uuid4())[:8]

    record = logging.LogRecord(
        name=logger.name,
        level=level,
        pathname="",
        lineno=0,
        msg=message,
        args=(),
        exc_info=None
    )

    record.request_id = request_id
    for key, value in context.items():
        setattr(record, key, value)

    logger.handle(record)


__all__ = ["setup_logger", "JSONFormatter", "log_with_context"]
