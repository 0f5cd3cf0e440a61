"""Project-specific exception types."""

from __future__ import annotations


class HatchError(RuntimeError):
    """Base error for domain-level hatchvm failures."""


class PreconditionError(HatchError):
    """Raised when a required project, VM, or config is missing."""


class ConnectivityError(HatchError):
    """Raised when the VM platform or a VM cannot be reached."""


class ReadinessTimeout(HatchError, TimeoutError):
    """Raised when a bounded wait elapses before the resource is ready."""


class ConfirmationError(HatchError):
    """Raised when a destructive operation lacks a satisfied confirmation gate."""


class CredentialsError(HatchError):
    """Raised when the credentials document is missing or cannot be refreshed."""


class SpikeStateError(HatchError):
    """Raised on an illegal spike status transition."""


class OperationCancelled(HatchError):
    """Raised when the user declines to continue. Not a failure."""
