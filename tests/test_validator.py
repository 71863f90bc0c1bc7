"""Tests for specforge.utils.validator."""

import pytest

from specforge.utils.validator import validate_answer, validate_input


class TestValidateInput:
    def test_valid_string_returns_stripped(self):
        assert validate_input("Build a todo app") == "Build a todo app"

    def test_leading_trailing_whitespace_stripped(self):
        assert validate_input("  some idea  ") == "some idea"

    def test_empty_string_raises(self):
        with pytest.raises(ValueError):
            validate_input("")

    def test_whitespace_only_raises(self):
        with pytest.raises(ValueError):
            validate_input("   ")

    def test_none_raises(self):
        with pytest.raises(ValueError):
            validate_input(None)

    def test_non_string_int_raises(self):
        with pytest.raises(ValueError):
            validate_input(42)


class TestValidateAnswer:
    def test_none_means_proceed(self):
        assert validate_answer(None) is None

    def test_blank_means_proceed(self):
        assert validate_answer("   ") is None

    def test_stripped(self):
        assert validate_answer("  small teams \n") == "small teams"

    def test_non_string_raises(self):
        with pytest.raises(ValueError):
            validate_answer(3)
