"""Tests for name and exclusion pattern validators."""
import pytest

from tabshelf.schemas.validators import (
    MAX_PATTERN_LENGTH,
    is_glob_pattern,
    validate_exclude_pattern,
    validate_exclude_patterns,
    validate_name,
    validate_parent_category_name,
)
from tabshelf.services.exceptions import NameValidationError, PatternValidationError


class TestValidateName:

    def test__trims_whitespace(self) -> None:
        assert validate_name("  Work  ", "Project") == "Work"

    @pytest.mark.parametrize("name", ["", "   ", "\t\n"])
    def test__empty_raises(self, name: str) -> None:
        with pytest.raises(NameValidationError, match="Project name cannot be empty"):
            validate_name(name, "Project")

    def test__parent_category_limit(self) -> None:
        assert validate_parent_category_name("x" * 25) == "x" * 25
        with pytest.raises(NameValidationError, match="at most 25"):
            validate_parent_category_name("x" * 26)


class TestExcludePatterns:

    @pytest.mark.parametrize(
        ("pattern", "expected"),
        [("chrome://", False), ("*.internal", True), ("page?", False), ("[ab]", False)],
    )
    def test__is_glob_pattern(self, pattern: str, expected: bool) -> None:
        assert is_glob_pattern(pattern) is expected

    @pytest.mark.parametrize("pattern", ["", "   ", "x" * (MAX_PATTERN_LENGTH + 1)])
    def test__invalid_pattern_raises(self, pattern: str) -> None:
        with pytest.raises(PatternValidationError) as exc_info:
            validate_exclude_pattern(pattern)
        assert exc_info.value.pattern == pattern

    def test__brackets_and_question_marks_are_accepted(self) -> None:
        assert validate_exclude_pattern(" google.com/search?q=[x ") == "google.com/search?q=[x"

    def test__dedupes_preserving_order(self) -> None:
        assert validate_exclude_patterns(["b", " a", "b ", "a"]) == ["b", "a"]
