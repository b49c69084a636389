"""Exception hierarchy shared by the catalog, orchestrator and directory clients."""
from __future__ import annotations

from typing import Iterable, Optional, Tuple


class ProvisioningError(Exception):
    """Base exception for all onboarding/provisioning errors."""


class ConfigurationError(ProvisioningError):
    """Raised when a settings file or onboarding catalog is missing or invalid."""


class ValidationError(ProvisioningError):
    """Raised when required form fields are blank or unselected."""

    def __init__(self, missing_fields: Iterable[str]) -> None:
        self.missing_fields: Tuple[str, ...] = tuple(missing_fields)
        super().__init__(
            "The following fields are required: " + ", ".join(self.missing_fields) + "."
        )


class PreconditionError(ProvisioningError):
    """Raised when execution cannot start (not signed in, busy, no directory)."""


class ConflictError(ProvisioningError):
    """Raised when the target account already exists in the directory."""

    def __init__(self, handle: str, message: Optional[str] = None) -> None:
        self.handle = handle
        super().__init__(message or f"An account named '{handle}' already exists.")


class ExternalServiceError(ProvisioningError):
    """Raised when a directory or mailbox call fails."""


__all__ = [
    "ConfigurationError",
    "ConflictError",
    "ExternalServiceError",
    "PreconditionError",
    "ProvisioningError",
    "ValidationError",
]
