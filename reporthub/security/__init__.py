"""Security utilities for Report Hub."""

from .path_validator import PathValidationError, SecurePathValidator

__all__ = ["SecurePathValidator", "PathValidationError"]
