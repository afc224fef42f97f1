"""
Nara Centralized Error Handling and Exception Management
"""
import time
import traceback
from typing import Dict, Any, Optional, Callable, Type, List
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from .logging_utils import setup_logger

logger = setup_logger("nara.error_handler", "logs/nara.log")


class ErrorSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class ErrorContext:
    """Context information for error tracking"""
    component: str
    operation: str
    interaction_id: Optional[str] = None
    audiobook_id: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)
    metadata: Dict[str, Any] = field(default_factory=dict)


class ErrorHandler:
    """Error reporting with bounded history and per-component failure tracking"""

    def __init__(self, max_history_size: int = 1000, breaker_threshold: int = 5,
                 breaker_reset_sec: float = 300.0):
        self.error_count = 0
        self.error_history: List[Dict[str, Any]] = []
        self.max_history_size = max_history_size
        self.breaker_threshold = breaker_threshold
        self.breaker_reset_sec = breaker_reset_sec
        self.error_handlers: Dict[Type[Exception], Callable] = {}
        self.circuit_breakers: Dict[str, Dict] = {}

    def register_error_handler(self, exception_type: Type[Exception], handler: Callable) -> None:
        """Register a custom error handler for a specific exception type"""
        self.error_handlers[exception_type] = handler

    def handle_error(self, error: Exception, context: ErrorContext, severity: ErrorSeverity = ErrorSeverity.MEDIUM) -> Dict[str, Any]:
        """Record an error with context and severity; returns the error details"""
        error_id = f"ERR_{int(time.time() * 1000000)}"
        self.error_count += 1

        error_details = {
            'error_id': error_id,
            'type': error.__class__.__name__,
            'message': str(error),
            'traceback': ''.join(traceback.format_exception(type(error), error, error.__traceback__)),
            'context': {
                'component': context.component,
                'operation': context.operation,
                'interaction_id': context.interaction_id,
                'audiobook_id': context.audiobook_id,
                'metadata': context.metadata
            },
            'severity': severity.value,
            'timestamp': context.timestamp.isoformat(),
            'count': self.error_count
        }

        custom = self.error_handlers.get(error.__class__)
        if custom is not None:
            try:
                return custom(error, context, severity)
            except Exception as handler_error:
                logger.error(f"Error in custom handler for {error.__class__.__name__}: {handler_error}")

        self._log_error(error_details, severity)
        self._add_to_history(error_details)
        self._check_circuit_breaker(context.component, severity)

        return error_details

    def _log_error(self, error_details: Dict[str, Any], severity: ErrorSeverity) -> None:
        log_message = f"[{error_details['error_id']}] {error_details['type']}: {error_details['message']}"

        if severity == ErrorSeverity.CRITICAL:
            logger.critical(log_message, extra={'error_details': error_details})
        elif severity == ErrorSeverity.HIGH:
            logger.error(log_message, extra={'error_details': error_details})
        elif severity == ErrorSeverity.MEDIUM:
            logger.warning(log_message, extra={'error_details': error_details})
        else:
            logger.info(log_message, extra={'error_details': error_details})

    def _add_to_history(self, error_details: Dict[str, Any]) -> None:
        self.error_history.append(error_details)
        if len(self.error_history) > self.max_history_size:
            self.error_history = self.error_history[-self.max_history_size:]

    def _check_circuit_breaker(self, component: str, severity: ErrorSeverity) -> None:
        cb = self.circuit_breakers.setdefault(component, {
            'failure_count': 0,
            'last_failure_time': None,
            'state': 'closed'
        })
        now = datetime.now()

        if cb['last_failure_time'] and (now - cb['last_failure_time']).total_seconds() > self.breaker_reset_sec:
            cb['failure_count'] = 0
            cb['state'] = 'closed'

        if severity in (ErrorSeverity.HIGH, ErrorSeverity.CRITICAL):
            cb['failure_count'] += 1
            cb['last_failure_time'] = now

            if cb['failure_count'] >= self.breaker_threshold and cb['state'] == 'closed':
                cb['state'] = 'open'
                logger.critical(f"Circuit breaker OPEN for component {component} after {cb['failure_count']} failures")

    def is_open(self, component: str) -> bool:
        cb = self.circuit_breakers.get(component)
        return bool(cb and cb['state'] == 'open')

    def get_error_stats(self) -> Dict[str, Any]:
        return {
            'total_errors': self.error_count,
            'recent_errors': len(self.error_history),
            'circuit_breaker_states': {k: dict(v) for k, v in self.circuit_breakers.items()},
            'error_types': self._get_error_type_counts()
        }

    def _get_error_type_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for error in self.error_history[-100:]:
            counts[error['type']] = counts.get(error['type'], 0) + 1
        return counts

    def clear_error_history(self) -> None:
        self.error_history.clear()
        self.error_count = 0
        self.circuit_breakers.clear()


def get_error_handler() -> ErrorHandler:
    """Get or create the process-wide error handler instance"""
    if not hasattr(get_error_handler, '_instance'):
        get_error_handler._instance = ErrorHandler()
    return get_error_handler._instance


def handle_error(error: Exception, component: str, operation: str, severity: ErrorSeverity = ErrorSeverity.MEDIUM,
                 handler: Optional[ErrorHandler] = None, **context_kwargs) -> Dict[str, Any]:
    """Convenience function to handle errors"""
    context = ErrorContext(component=component, operation=operation, **context_kwargs)
    return (handler or get_error_handler()).handle_error(error, context, severity)


@contextmanager
def error_context(component: str, operation: str, severity: ErrorSeverity = ErrorSeverity.MEDIUM,
                  handler: Optional[ErrorHandler] = None, **context_kwargs):
    """Context manager that records and re-raises errors"""
    try:
        yield
    except Exception as e:
        handle_error(e, component, operation, severity, handler=handler, **context_kwargs)
        raise


class NaraException(Exception):
    """Base exception for Nara-specific errors"""

    def __init__(self, message: str, component: str = "unknown", operation: str = "unknown", **kwargs):
        super().__init__(message)
        self.component = component
        self.operation = operation
        self.context = kwargs


class ContentUnavailable(NaraException):
    """No transcript content exists for the allowed chapter"""
    pass


class InteractionAborted(NaraException):
    """An in-flight interaction was cancelled by barge-in or an explicit stop"""
    pass


class ServiceError(NaraException):
    """An STT/TTS/model/playback call failed outright"""
    pass


class ServiceTimeout(ServiceError):
    """A service call exceeded its bounded wait"""
    pass


class ConfigurationError(NaraException):
    """Configuration-related errors"""
    pass


class ValidationError(NaraException):
    """Input validation errors"""
    pass
