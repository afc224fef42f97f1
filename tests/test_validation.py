import os
import sys

import pytest

sys.path.append(os.path.join(os.path.dirname(__file__), '..', 'src'))

from nara.error_handler import ValidationError
from nara.validation import InputValidator, get_validator


def test_question_is_sanitized():
    validator = InputValidator(max_question_length=20)
    assert validator.validate_question("  what\x00 is it?\x07 ") == "what is it?"
    with pytest.raises(ValidationError):
        validator.validate_question("x" * 21)
    with pytest.raises(ValidationError):
        validator.validate_question(None)


@pytest.mark.parametrize("value", ["zero_to_one", "book-2", "v1.0"])
def test_valid_audiobook_ids(value):
    assert get_validator().validate_audiobook_id(value) == value


@pytest.mark.parametrize("value", ["", "../secrets", ".hidden", "a/b", 7])
def test_invalid_audiobook_ids(value):
    with pytest.raises(ValidationError):
        get_validator().validate_audiobook_id(value)


def test_chapter_index_and_position():
    validator = get_validator()
    assert validator.validate_chapter_index("3") == 3
    for bad in (True, -1, "one", None):
        with pytest.raises(ValidationError):
            validator.validate_chapter_index(bad)
    assert validator.validate_position(12) == 12.0
    with pytest.raises(ValidationError):
        validator.validate_position(-0.5)


def test_request_data_requires_fields():
    validator = get_validator()
    assert validator.validate_request_data({"question": "q"}, ["question"]) == {"question": "q"}
    with pytest.raises(ValidationError):
        validator.validate_request_data({}, ["question"])
    with pytest.raises(ValidationError):
        validator.validate_request_data(["question"])
