"""Storage, cross-view synchronization and expiry engine for saved browser tabs."""

__version__ = "0.1.0"
