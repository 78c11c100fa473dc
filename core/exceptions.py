"""
Core Module - Exceptions.

============================================================
RESPONSIBILITY
============================================================
Defines all custom exceptions for the ASO Bible override engine.

- Provides clear exception hierarchy
- Enables specific error handling at the HTTP boundary
- Includes context for debugging and operator toasts

============================================================
EXCEPTION HIERARCHY
============================================================
AsoBibleError (base)
├── NotFoundError
├── ValidationError
│   └── InvalidScopeError
├── AmbiguousOverrideError
├── ConflictError
└── PersistenceError

============================================================
RETRY POLICY
============================================================
Every error except PersistenceError is a deterministic
validation failure. Callers must not retry them.

============================================================
"""

from enum import Enum
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional


# ============================================================
# SEVERITY LEVELS
# ============================================================

class Severity(Enum):
    """Exception severity levels for alerting."""

    LOW = "low"
    """Operator input problem, shown as a toast."""

    MEDIUM = "medium"
    """Concurrent edit or missing entity, requires attention."""

    HIGH = "high"
    """Data-integrity problem in stored overrides."""

    CRITICAL = "critical"
    """Backing store unavailable."""


# ============================================================
# BASE EXCEPTION
# ============================================================

class AsoBibleError(Exception):
    """
    Base exception for all override engine errors.

    All exceptions carry:
    - severity: for alerting
    - context: for debugging
    - timestamp: when the error occurred
    """

    default_severity: Severity = Severity.LOW
    retryable: bool = False

    def __init__(
        self,
        message: str,
        severity: Optional[Severity] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)

        self.message = message
        self.severity = severity or self.default_severity
        self.context = context or {}
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

        if cause:
            self.context["cause_type"] = type(cause).__name__
            self.context["cause_message"] = str(cause)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging/HTTP responses."""
        return {
            "type": type(self).__name__,
            "message": self.message,
            "severity": self.severity.value,
            "retryable": self.retryable,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }

    def to_log_format(self) -> str:
        """Format exception for structured logging."""
        ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
        line = f"[{self.severity.value.upper()}] {type(self).__name__}: {self.message}"
        if ctx_str:
            line += f" | {ctx_str}"
        return line


# ============================================================
# LOOKUP ERRORS
# ============================================================

class NotFoundError(AsoBibleError):
    """Unknown registry entity or override id."""

    default_severity = Severity.MEDIUM

    def __init__(self, kind: str, identifier: str, **kwargs):
        context = kwargs.pop("context", {})
        context.update({"kind": kind, "identifier": identifier})
        super().__init__(
            message=f"{kind} not found: {identifier}",
            context=context,
            **kwargs,
        )
        self.kind = kind
        self.identifier = identifier


# ============================================================
# VALIDATION ERRORS
# ============================================================

class ValidationError(AsoBibleError):
    """A value is outside its allowed bounds or malformed."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        bounds: Optional[Iterable[float]] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if field:
            context["field"] = field
        if value is not None:
            context["value"] = value
        if bounds is not None:
            context["bounds"] = list(bounds)

        super().__init__(message, context=context, **kwargs)
        self.field = field
        self.value = value


class InvalidScopeError(ValidationError):
    """Qualifier set does not match the claimed scope tier."""

    def __init__(
        self,
        tier: str,
        missing: Iterable[str] = (),
        unexpected: Iterable[str] = (),
        reason: Optional[str] = None,
        **kwargs,
    ):
        missing = sorted(missing)
        unexpected = sorted(unexpected)

        parts = []
        if missing:
            parts.append(f"missing {', '.join(missing)}")
        if unexpected:
            parts.append(f"unexpected {', '.join(unexpected)}")
        detail = reason or "; ".join(parts) or "invalid qualifiers"

        super().__init__(
            message=f"Invalid qualifiers for scope tier '{tier}': {detail}",
            field="qualifiers",
            context={"tier": tier, "missing": missing, "unexpected": unexpected},
            **kwargs,
        )
        self.tier = tier
        self.missing = missing
        self.unexpected = unexpected


# ============================================================
# DATA INTEGRITY ERRORS
# ============================================================

class AmbiguousOverrideError(AsoBibleError):
    """More than one active override matches within a single tier."""

    default_severity = Severity.HIGH

    def __init__(self, entity_id: str, tier: str, override_ids: Iterable[str]):
        override_ids = list(override_ids)
        super().__init__(
            message=(
                f"{len(override_ids)} active overrides match entity '{entity_id}' "
                f"at tier '{tier}'"
            ),
            context={
                "entity_id": entity_id,
                "tier": tier,
                "override_ids": override_ids,
            },
        )
        self.entity_id = entity_id
        self.tier = tier
        self.override_ids = override_ids


class ConflictError(AsoBibleError):
    """Optimistic-concurrency check failed (version mismatch or concurrent create)."""

    default_severity = Severity.MEDIUM

    def __init__(
        self,
        key: str,
        expected_version: Optional[int],
        actual_version: Optional[int],
        message: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(
            message=message or (
                f"Version conflict on {key}: expected {expected_version}, "
                f"found {actual_version}"
            ),
            context={
                "key": key,
                "expected_version": expected_version,
                "actual_version": actual_version,
            },
            **kwargs,
        )
        self.expected_version = expected_version
        self.actual_version = actual_version


# ============================================================
# PERSISTENCE ERRORS
# ============================================================

class PersistenceError(AsoBibleError):
    """Backing store failed; prior state is left untouched."""

    default_severity = Severity.CRITICAL
    retryable = True
