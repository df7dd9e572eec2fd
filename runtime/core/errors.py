"""Core runtime error types.

Gate failures are not errors: a gamma below threshold is a first-class Defer
outcome. These exception types cover everything else and are mapped to HTTP
responses in the API layer.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable


class NstarRuntimeError(Exception):
    """Base class for runtime errors."""


@dataclass(frozen=True)
class SchemaViolation:
    path: str
    message: str


class SchemaValidationError(NstarRuntimeError):
    def __init__(self, kind: str, violations: Iterable[SchemaViolation]):
        self.kind = kind
        self.violations = list(violations)
        super().__init__(f"{kind} failed schema validation ({len(self.violations)} violation(s))")


class ConfigurationError(NstarRuntimeError):
    def __init__(self, message: str, details: Any | None = None):
        self.details = details
        super().__init__(message)


class NotFoundError(NstarRuntimeError):
    def __init__(self, resource_type: str, resource_id: str):
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type} not found: {resource_id}")


class ConflictError(NstarRuntimeError):
    def __init__(self, message: str, details: Any | None = None):
        self.details = details
        super().__init__(message)


class ContractViolationError(NstarRuntimeError):
    def __init__(self, message: str, code: str = "CONTRACT_VIOLATION", details: Any | None = None):
        self.code = code
        self.details = details
        super().__init__(message)


class ServiceUnavailableError(NstarRuntimeError):
    """Raised for commands that arrive while the server is shutting down."""
