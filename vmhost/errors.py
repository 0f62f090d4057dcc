"""Error types raised by the host agent core.

Every public operation either returns its result or raises one of these.
Validation and precondition failures are raised before any mutating call
reaches the hypervisor or the host, so they never leave partial state.
"""
from __future__ import annotations

from typing import Iterable


class VMHostError(Exception):
    """Base class for all agent errors."""


class ValidationError(VMHostError):
    """Malformed or out-of-range request."""


class PreconditionError(VMHostError):
    """Workload is in the wrong state for the requested operation."""

    def __init__(self, operation: str, workload: str, required: Iterable[str], actual: str):
        self.operation = operation
        self.workload = workload
        self.required = tuple(required)
        self.actual = actual
        super().__init__(
            f"{operation}: workload {workload} must be {' or '.join(self.required)} "
            f"(current state: {actual})"
        )


class NotFoundError(VMHostError):
    """Unknown workload, socket, device or file."""


class ToolMissing(VMHostError):
    """A required external tool is not installed."""


class PrivilegeError(VMHostError, PermissionError):
    """Neither root nor password-less sudo is available."""


class StructureError(VMHostError):
    """Hardware description does not have the expected structure."""


class DescriptionParseError(VMHostError):
    """Hardware description could not be parsed."""


class ShutdownTimeout(VMHostError, TimeoutError):
    """Graceful shutdown did not complete before its deadline."""


class ExternalError(VMHostError):
    """Failure reported by the hypervisor or an external command."""

    def __init__(self, operation: str, cause: object):
        self.operation = operation
        self.cause = str(cause)
        super().__init__(f"{operation}: {self.cause}")


class ConflictError(VMHostError):
    """Another operation on the same workload is already in progress."""


class MigrationCancelled(VMHostError):
    """Migration was aborted at the caller's request."""
