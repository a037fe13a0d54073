"""Shared infrastructure for the query telemetry engine."""

from .core.settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
