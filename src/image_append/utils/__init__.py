"""Utility functions for image-append."""

from .digest import calculate_digest, validate_digest, verify_digest

__all__ = ["calculate_digest", "validate_digest", "verify_digest"]
