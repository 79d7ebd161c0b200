"""Shared exceptions for service layer operations."""


class DuplicateNameError(Exception):
    """
    Raised when a category, sub-category or project name collides with an existing one.

    The offending name is embedded so callers can surface it directly. Never
    retried automatically.
    """

    def __init__(self, kind: str, name: str) -> None:
        self.kind = kind
        self.name = name
        super().__init__(f"{kind} '{name}' already exists")


class NotFoundError(Exception):
    """Raised when an id does not match any stored record (stale id held by the caller)."""

    def __init__(self, kind: str, item_id: str) -> None:
        self.kind = kind
        self.item_id = item_id
        super().__init__(f"{kind} with ID {item_id} not found")


class ValidationError(ValueError):
    """
    Base exception for input validation failures.

    Always raised before any write, so a failed validation has no side effects.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)


class InvalidUrlError(ValidationError):
    """Raised when a URL has no scheme or hostname and so no domain can be derived."""

    def __init__(self, url: str) -> None:
        self.url = url
        super().__init__(f"Invalid URL: {url!r}")


class NameValidationError(ValidationError):
    """Raised when a category or project name is empty or too long."""


class PatternValidationError(ValidationError):
    """Raised when an exclusion pattern is empty or malformed."""

    def __init__(self, pattern: str, reason: str) -> None:
        self.pattern = pattern
        super().__init__(f"Invalid exclusion pattern {pattern!r}: {reason}")


class BackupValidationError(ValidationError):
    """Raised when imported backup data does not match the expected shape."""
