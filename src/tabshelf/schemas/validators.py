"""
Shared validation functions for names and patterns.

Every validator raises before anything is written, so a rejected value never
leaves partial state behind.
"""
from tabshelf.services.exceptions import NameValidationError, PatternValidationError

MAX_PARENT_CATEGORY_NAME_LENGTH = 25
MAX_PATTERN_LENGTH = 500

WILDCARD = "*"


def validate_name(name: str, kind: str, max_length: int | None = None) -> str:
    """
    Trim and validate a user-supplied name.

    Args:
        name: The raw name.
        kind: What is being named (used in error messages).
        max_length: Optional maximum length after trimming.

    Returns:
        The trimmed name.

    Raises:
        NameValidationError: If the name is empty or longer than max_length.
    """
    trimmed = name.strip()
    if not trimmed:
        raise NameValidationError(f"{kind} name cannot be empty")
    if max_length is not None and len(trimmed) > max_length:
        raise NameValidationError(
            f"{kind} name must be at most {max_length} characters: '{trimmed}'",
        )
    return trimmed


def validate_parent_category_name(name: str) -> str:
    """Parent category names are limited to 25 characters."""
    return validate_name(name, "Category", MAX_PARENT_CATEGORY_NAME_LENGTH)


def is_glob_pattern(pattern: str) -> bool:
    return WILDCARD in pattern


def validate_exclude_pattern(pattern: str) -> str:
    """
    Validate one exclusion pattern.

    Patterns containing ``*`` are wildcard patterns matched against the whole
    URL; anything else is matched as a substring. ``?`` and ``[`` are always
    literal, so any non-empty pattern within the length limit is valid.

    Raises:
        PatternValidationError: If the pattern is empty or too long.
    """
    trimmed = pattern.strip()
    if not trimmed:
        raise PatternValidationError(pattern, "pattern cannot be empty")
    if len(trimmed) > MAX_PATTERN_LENGTH:
        raise PatternValidationError(pattern, f"longer than {MAX_PATTERN_LENGTH} characters")
    return trimmed


def validate_exclude_patterns(patterns: list[str]) -> list[str]:
    """
    Validate a list of exclusion patterns.

    Returns:
        Trimmed patterns with duplicates removed (preserving first occurrence order).
    """
    normalized: list[str] = []
    seen: set[str] = set()
    for pattern in patterns:
        validated = validate_exclude_pattern(pattern)
        if validated not in seen:
            seen.add(validated)
            normalized.append(validated)
    return normalized
