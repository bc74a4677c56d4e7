"""FocusGate - Permission-aware domain blocking with snooze timers."""

__version__ = "1.0.0"

from .exceptions import (
    CommandValidationError,
    ConfigurationError,
    DomainValidationError,
    EnforcementError,
    FocusGateError,
    PermissionQueryError,
    StorageError,
)
from .permissions import GrantRegistry, PermissionOracle, RetryPolicy
from .reconciler import PendingGrantLedger, PermissionReconciler
from .router import CommandRouter
from .rules import CompiledRule, RuleTable, compile_rules
from .scheduler import SnoozeScheduler, TimerRegistry
from .service import FocusGate
from .storage import StateStore
from .sync import SyncCoordinator, SyncState

__all__ = [
    "__version__",
    "FocusGate",
    "StateStore",
    "GrantRegistry",
    "PermissionOracle",
    "RetryPolicy",
    "PendingGrantLedger",
    "PermissionReconciler",
    "CompiledRule",
    "RuleTable",
    "compile_rules",
    "SnoozeScheduler",
    "TimerRegistry",
    "SyncCoordinator",
    "SyncState",
    "CommandRouter",
    "FocusGateError",
    "ConfigurationError",
    "DomainValidationError",
    "CommandValidationError",
    "StorageError",
    "PermissionQueryError",
    "EnforcementError",
]
