"""
Nara input validation for control-server requests
"""
import re
from typing import Any, Dict, List, Optional

from .error_handler import ValidationError
from .logging_utils import setup_logger

logger = setup_logger("nara.validation", "logs/nara.log")

_CONTROL_CHARS = re.compile(r'[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]')
_AUDIOBOOK_ID = re.compile(r'^[A-Za-z0-9_.-]+$')


class InputValidator:
    """Centralized input validation and sanitization"""

    def __init__(self, max_question_length: int = 2000):
        self.MAX_QUESTION_LENGTH = max_question_length
        self.MAX_ID_LENGTH = 128

    def validate_question(self, text: Any, max_length: Optional[int] = None) -> str:
        if not isinstance(text, str):
            raise ValidationError("Question must be a string", component="validation", operation="question")
        sanitized = _CONTROL_CHARS.sub('', text).strip()
        if not sanitized:
            raise ValidationError("Question cannot be empty", component="validation", operation="question")
        limit = max_length or self.MAX_QUESTION_LENGTH
        if len(sanitized) > limit:
            raise ValidationError(f"Question exceeds maximum length of {limit} characters",
                                  component="validation", operation="question")
        return sanitized

    def validate_audiobook_id(self, audiobook_id: Any) -> str:
        """Dataset ids double as file names, so only a safe character set is allowed"""
        if not isinstance(audiobook_id, str) or not audiobook_id.strip():
            raise ValidationError("audiobook_id is required", component="validation", operation="audiobook_id")
        audiobook_id = audiobook_id.strip()
        if len(audiobook_id) > self.MAX_ID_LENGTH or not _AUDIOBOOK_ID.match(audiobook_id) \
                or audiobook_id.startswith('.'):
            raise ValidationError("audiobook_id contains invalid characters",
                                  component="validation", operation="audiobook_id")
        return audiobook_id

    def validate_chapter_index(self, value: Any, field: str = "chapter_index") -> int:
        if isinstance(value, bool):
            raise ValidationError(f"{field} must be an integer", component="validation", operation=field)
        try:
            index = int(value)
        except (TypeError, ValueError):
            raise ValidationError(f"{field} must be an integer", component="validation", operation=field)
        if index < 0:
            raise ValidationError(f"{field} must be non-negative", component="validation", operation=field)
        return index

    def validate_position(self, value: Any) -> float:
        try:
            position = float(value)
        except (TypeError, ValueError):
            raise ValidationError("position must be a number", component="validation", operation="position")
        if position < 0:
            raise ValidationError("position must be non-negative", component="validation", operation="position")
        return position

    def validate_request_data(self, data: Any, required_fields: Optional[List[str]] = None) -> Dict[str, Any]:
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object", component="validation", operation="request")
        if required_fields:
            missing = [f for f in required_fields if f not in data]
            if missing:
                raise ValidationError(f"Missing required fields: {missing}", component="validation",
                                      operation="request")
        return data


_validator_instance: Optional[InputValidator] = None


def get_validator() -> InputValidator:
    """Get or create input validator instance"""
    global _validator_instance
    if _validator_instance is None:
        _validator_instance = InputValidator()
    return _validator_instance


__all__ = ["InputValidator", "get_validator", "ValidationError"]
