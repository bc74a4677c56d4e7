"""Custom exceptions for FocusGate."""


class FocusGateError(Exception):
    """Base exception for FocusGate."""

    pass


class ConfigurationError(FocusGateError):
    """Raised when configuration is invalid or missing."""

    pass


class DomainValidationError(FocusGateError):
    """Raised when domain validation fails."""

    pass


class CommandValidationError(FocusGateError):
    """Raised when a command is missing fields or carries invalid values."""

    pass


class StorageError(FocusGateError):
    """Raised when the state store cannot read or persist a namespace."""

    pass


class PermissionQueryError(FocusGateError):
    """Raised by a capability backend when a single grant lookup fails."""

    pass


class EnforcementError(FocusGateError):
    """Raised when the enforcement layer rejects a rule update."""

    pass
