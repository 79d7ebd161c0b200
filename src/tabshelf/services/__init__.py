"""Service layer: stores, synchronization and settings."""
