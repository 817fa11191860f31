"""Tests for nas.utils.validator: validate_concept, validate_answers."""

import pytest

from nas.utils.validator import validate_answers, validate_concept


class TestValidateConcept:
    def test_valid_string_returns_stripped(self):
        assert validate_concept("red razor bumps") == "red razor bumps"

    def test_leading_trailing_whitespace_stripped(self):
        assert validate_concept("  dust  ") == "dust"

    def test_empty_string_raises(self):
        with pytest.raises(ValueError):
            validate_concept("")

    def test_whitespace_only_raises(self):
        with pytest.raises(ValueError):
            validate_concept("   ")

    def test_none_raises(self):
        with pytest.raises(ValueError):
            validate_concept(None)

    def test_non_string_raises(self):
        with pytest.raises(ValueError):
            validate_concept(["dust"])


class TestValidateAnswers:
    def test_none_is_empty(self):
        assert validate_answers(None) == {}

    def test_blank_values_dropped(self):
        assert validate_answers({"product": " air purifier ", "persona": "  "}) == {"product": "air purifier"}

    def test_non_mapping_raises(self):
        with pytest.raises(ValueError, match="mapping"):
            validate_answers(["air purifier"])

    def test_non_string_value_raises(self):
        with pytest.raises(ValueError, match="strings"):
            validate_answers({"product": 3})
