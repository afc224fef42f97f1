import os
import sys

import pytest

sys.path.append(os.path.join(os.path.dirname(__file__), '..', 'src'))

from nara.error_handler import (
    ContentUnavailable, ErrorHandler, ErrorSeverity, NaraException, ServiceError, ServiceTimeout,
    error_context, handle_error,
)


def test_exception_hierarchy_carries_context():
    error = ServiceTimeout("slow", component="llm", operation="complete", status=504)
    assert isinstance(error, ServiceError)
    assert isinstance(error, NaraException)
    assert error.component == "llm"
    assert error.context == {"status": 504}


def test_handle_error_records_context():
    handler = ErrorHandler()
    details = handle_error(ContentUnavailable("no transcript"), "chapter_loader", "load",
                           handler=handler, audiobook_id="zero_to_one")

    assert details["type"] == "ContentUnavailable"
    assert details["context"]["audiobook_id"] == "zero_to_one"
    assert handler.get_error_stats()["error_types"] == {"ContentUnavailable": 1}


def test_error_context_records_and_reraises():
    handler = ErrorHandler()
    with pytest.raises(ServiceError):
        with error_context("playback", "resume", ErrorSeverity.HIGH, handler=handler, interaction_id="int_1"):
            raise ServiceError("offline")
    assert handler.error_history[0]["context"]["interaction_id"] == "int_1"


def test_circuit_breaker_opens_on_repeated_high_severity():
    handler = ErrorHandler(breaker_threshold=2)
    handle_error(ServiceError("a"), "orchestrator", "resume", ErrorSeverity.LOW, handler=handler)
    assert not handler.is_open("orchestrator")
    for _ in range(2):
        handle_error(ServiceError("b"), "orchestrator", "resume", ErrorSeverity.HIGH, handler=handler)
    assert handler.is_open("orchestrator")

    handler.clear_error_history()
    assert not handler.is_open("orchestrator")
