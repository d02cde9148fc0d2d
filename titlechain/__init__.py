"""Titlechain: land title registry with a saga-driven transfer core."""

__version__ = "0.3.0"
