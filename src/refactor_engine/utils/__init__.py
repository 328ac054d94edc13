"""Utilities for the refactor engine."""

from refactor_engine.utils.api_surface import (
    extract_api_surface,
    extract_declarations,
    is_supported,
)

__all__ = [
    "extract_api_surface",
    "extract_declarations",
    "is_supported",
]
