"""Wiring of the core components and their lifecycle events."""

import logging
from pathlib import Path
from typing import Any, Callable, Optional

from .common import now_ms
from .config import (
    DEFAULT_DEBOUNCE_MS,
    DEFAULT_ORACLE_RETRIES,
    DEFAULT_PENDING_GRANT_SECONDS,
    GRANTS_FILE,
    RULES_FILE,
)
from .permissions import GrantRegistry, PermissionOracle, RetryPolicy
from .reconciler import PendingGrantLedger, PermissionReconciler
from .router import CommandRouter
from .rules import RuleTable
from .scheduler import SnoozeScheduler, TimerRegistry
from .storage import StateStore
from .sync import SyncCoordinator

logger = logging.getLogger(__name__)


class FocusGate:
    """The reconciliation engine with its collaborators wired together."""

    def __init__(
        self,
        store: StateStore,
        grants: GrantRegistry,
        rule_table: RuleTable,
        clock: Callable[[], int] = now_ms,
        pending_grant_ms: int = DEFAULT_PENDING_GRANT_SECONDS * 1000,
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
        oracle_retries: int = DEFAULT_ORACLE_RETRIES,
        data_dir: Optional[Path] = None,
    ) -> None:
        self.store = store
        self.grants = grants
        self.rule_table = rule_table
        self.clock = clock
        self.data_dir = data_dir

        self.oracle = PermissionOracle(grants, RetryPolicy(retries=oracle_retries))
        self.ledger = PendingGrantLedger(store, ttl_ms=pending_grant_ms, clock=clock)
        self.reconciler = PermissionReconciler(
            store, self.oracle, self.ledger, clock=clock, data_dir=data_dir
        )
        self.coordinator = SyncCoordinator(
            store,
            self.reconciler,
            self.ledger,
            rule_table,
            clock=clock,
            debounce_ms=debounce_ms,
            data_dir=data_dir,
        )
        self.timers = TimerRegistry(clock)
        self.scheduler = SnoozeScheduler(
            store, self.coordinator.request_sync, self.timers, clock=clock, data_dir=data_dir
        )
        self.router = CommandRouter(self.coordinator, self.scheduler, self.ledger)
        self._attached = False

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "FocusGate":
        """Build an engine persisting its state in the configured data directory."""
        data_dir = Path(config["data_dir"])
        return cls(
            StateStore.in_directory(data_dir),
            GrantRegistry(data_dir / GRANTS_FILE),
            RuleTable(data_dir / RULES_FILE),
            pending_grant_ms=config["pending_grant_ms"],
            debounce_ms=config["debounce_ms"],
            oracle_retries=config["oracle_retries"],
            data_dir=data_dir,
        )

    def attach(self) -> None:
        """Subscribe the coordinator to storage and permission change events."""
        if self._attached:
            return
        self.coordinator.attach()
        self.grants.subscribe(self.coordinator.on_permissions_changed)
        self._attached = True

    async def dispatch(self, msg: dict[str, Any]) -> dict[str, Any]:
        return await self.router.dispatch(msg)

    # -------------------------------------------------------------------------
    # LIFECYCLE EVENTS
    # -------------------------------------------------------------------------

    async def on_installed(self) -> None:
        """First run: install rules for whatever state already exists."""
        self.attach()
        await self.coordinator.request_sync()

    async def on_startup(self) -> dict[str, list[str]]:
        """
        Process start: re-arm snooze timers from persisted state, then reconcile.

        Returns:
            The timer diff reported by ``SnoozeScheduler.restore``
        """
        self.attach()
        restored = await self.scheduler.restore()
        await self.coordinator.request_sync()
        return restored

    async def refresh(self) -> dict[str, list[str]]:
        """Pick up state written by another process and reconcile."""
        self.store.reload()
        self.grants.reload()
        self.rule_table.reload()
        logger.info("Reloading state from disk")
        return await self.on_startup()

    def tick(self) -> list[str]:
        """Fire snooze timers whose wall-clock expiry passed, e.g. across a host suspend."""
        return self.timers.fire_overdue()

    async def shutdown(self) -> None:
        """Cancel timers and debounces, then let in-flight work finish."""
        self.timers.cancel_all()
        await self.coordinator.flush()
        self.coordinator.close()
        await self.timers.drain()
