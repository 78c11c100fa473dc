"""
Core Module Package.

This package contains the core infrastructure components
that all other modules depend on.

Components:
- exceptions: Custom exception hierarchy
"""

from .exceptions import (
    Severity,
    AsoBibleError,
    NotFoundError,
    ValidationError,
    InvalidScopeError,
    AmbiguousOverrideError,
    ConflictError,
    PersistenceError,
)

__all__ = [
    "Severity",
    "AsoBibleError",
    "NotFoundError",
    "ValidationError",
    "InvalidScopeError",
    "AmbiguousOverrideError",
    "ConflictError",
    "PersistenceError",
]
