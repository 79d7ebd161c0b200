"""Pydantic models for persisted records."""
