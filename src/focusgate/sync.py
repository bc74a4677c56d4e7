"""Reconciliation loop: declared state in, enforcement rules out."""

import asyncio
import logging
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from .common import normalize_domain, now_ms
from .exceptions import StorageError
from .reconciler import PendingGrantLedger, PermissionReconciler
from .rules import CompiledRule, RuleTable, compile_rules, owned_rule_ids
from .storage import (
    BLOCKED_DOMAINS,
    LOCAL,
    PAUSED_DOMAINS,
    PAUSED_UNTIL,
    PENDING_GRANTS,
    SYNC,
    StateStore,
    StorageChange,
)

# =============================================================================
# CONSTANTS
# =============================================================================

DEBOUNCE_MS = 120

LOCAL_TRIGGER_KEYS = frozenset({PAUSED_UNTIL, PAUSED_DOMAINS, PENDING_GRANTS})

logger = logging.getLogger(__name__)


class SyncState(Enum):
    """Reconciliation state machine."""

    IDLE = "idle"
    SYNCING = "syncing"
    RESYNC_PENDING = "syncing+resync_pending"


# =============================================================================
# PURE HELPERS
# =============================================================================


def canonical_blocklist(domains: Any) -> list[str]:
    """
    Normalize a stored blocklist: lowercase, deduplicated, sorted.

    Entries that do not normalize to a valid domain are dropped.
    """
    if not isinstance(domains, list):
        return []
    normalized = {normalize_domain(d) for d in domains if isinstance(d, str)}
    normalized.discard("")
    return sorted(normalized)


def active_domains(
    permitted: list[str], paused_until: int, paused_domains: dict[str, int], now: int
) -> list[str]:
    """
    Domains to enforce right now.

    An unexpired global pause empties the set regardless of per-domain
    pauses; otherwise domains with an unexpired pause of their own are left out.
    """
    if paused_until and now < paused_until:
        return []
    return [d for d in permitted if not (paused_domains.get(d) and now < paused_domains[d])]


# =============================================================================
# SYNC COORDINATOR
# =============================================================================


class SyncCoordinator:
    """
    Runs reconciliation passes one at a time.

    A request made while a pass is running does not start a second pass.
    It moves the coordinator to RESYNC_PENDING, and every request collected
    that way is satisfied by a single trailing pass once the current one ends.
    """

    def __init__(
        self,
        store: StateStore,
        reconciler: PermissionReconciler,
        ledger: PendingGrantLedger,
        rule_table: RuleTable,
        clock: Callable[[], int] = now_ms,
        debounce_ms: int = DEBOUNCE_MS,
        data_dir: Optional[Path] = None,
    ) -> None:
        self.store = store
        self.reconciler = reconciler
        self.ledger = ledger
        self.rule_table = rule_table
        self.clock = clock
        self.debounce_ms = debounce_ms
        self.data_dir = data_dir

        self._state = SyncState.IDLE
        self._inflight: Optional[asyncio.Future] = None
        self._trailing: Optional[asyncio.Future] = None
        self._debounce_handle: Optional[asyncio.TimerHandle] = None
        self._tasks: set[asyncio.Task] = set()
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._closed = False

        self.passes_completed = 0
        self.last_rules: list[CompiledRule] = []

    @property
    def state(self) -> SyncState:
        return self._state

    # -------------------------------------------------------------------------
    # REQUESTS
    # -------------------------------------------------------------------------

    async def request_sync(self) -> list[CompiledRule]:
        """
        Ask for a reconciliation pass and wait until one covering this request ends.

        Returns:
            Rules installed by the pass that satisfied the request

        Raises:
            FocusGateError: If that pass failed
        """
        loop = asyncio.get_running_loop()

        if self._state is SyncState.IDLE:
            self._state = SyncState.SYNCING
            self._inflight = self._new_future(loop)
            waiter = self._inflight
            self._spawn(self._drive())
        else:
            self._state = SyncState.RESYNC_PENDING
            if self._trailing is None:
                self._trailing = self._new_future(loop)
            waiter = self._trailing

        return await asyncio.shield(waiter)

    @staticmethod
    def _new_future(loop: asyncio.AbstractEventLoop) -> asyncio.Future:
        future = loop.create_future()
        # Mark failures as retrieved when every requester went away
        future.add_done_callback(lambda f: f.cancelled() or f.exception())
        return future

    async def _drive(self) -> None:
        while True:
            future = self._inflight
            try:
                rules = await self.reconcile_and_apply()
            except Exception as e:
                logger.error(f"Reconciliation pass failed: {e}")
                future.set_exception(e)
            else:
                future.set_result(rules)

            if self._state is SyncState.RESYNC_PENDING:
                self._state = SyncState.SYNCING
                self._inflight = self._trailing
                self._trailing = None
                logger.debug("Running trailing reconciliation pass")
                continue

            self._state = SyncState.IDLE
            self._inflight = None
            return

    # -------------------------------------------------------------------------
    # RECONCILIATION PASS
    # -------------------------------------------------------------------------

    async def read_state(self) -> dict[str, Any]:
        """Read the blocklist and runtime state from both namespaces."""
        synced, local = await asyncio.gather(
            self.store.get(SYNC, BLOCKED_DOMAINS),
            self.store.get(LOCAL, [PAUSED_UNTIL, PAUSED_DOMAINS, PENDING_GRANTS]),
        )
        paused_domains = local.get(PAUSED_DOMAINS) or {}
        pending_grants = local.get(PENDING_GRANTS) or {}
        return {
            BLOCKED_DOMAINS: synced.get(BLOCKED_DOMAINS) or [],
            PAUSED_UNTIL: local.get(PAUSED_UNTIL) or 0,
            PAUSED_DOMAINS: paused_domains if isinstance(paused_domains, dict) else {},
            PENDING_GRANTS: pending_grants if isinstance(pending_grants, dict) else {},
        }

    async def reconcile_and_apply(self) -> list[CompiledRule]:
        """
        Run one reconciliation pass.

        Reads state, filters the blocklist by permission and pause status,
        compiles rules and swaps them for every installed rule in the reserved
        range in a single update. Callers should go through ``request_sync``.
        """
        state = await self.read_state()

        declared = canonical_blocklist(state[BLOCKED_DOMAINS])
        if declared != state[BLOCKED_DOMAINS]:
            declared = await self.store.update(SYNC, BLOCKED_DOMAINS, canonical_blocklist)
            logger.debug("Normalized stored blocklist")

        permitted = await self.reconciler.reconcile(declared)
        active = active_domains(
            permitted, state[PAUSED_UNTIL], state[PAUSED_DOMAINS], self.clock()
        )
        rules = compile_rules(active)

        existing = await owned_rule_ids(self.rule_table)
        await self.rule_table.update(existing, [rule.to_dict() for rule in rules])

        self.last_rules = rules
        self.passes_completed += 1
        logger.info(
            f"Rules synced: {len(rules)} active of {len(declared)} declared "
            f"({len(declared) - len(permitted)} without permission)"
        )
        return rules

    # -------------------------------------------------------------------------
    # EVENT SUBSCRIPTIONS
    # -------------------------------------------------------------------------

    def attach(self) -> None:
        """Subscribe to storage changes so external writes trigger reconciliation."""
        if self._unsubscribe is None:
            self._unsubscribe = self.store.subscribe(self._on_storage_changed)

    def on_permissions_changed(self, event: str, origins: list[str]) -> None:
        """Permission added/removed: reconcile right away."""
        logger.debug(f"Permissions {event}: {', '.join(origins)}")
        if not self._closed:
            self._spawn(self._sync_quietly())

    def _on_storage_changed(self, changes: dict[str, StorageChange], namespace: str) -> None:
        if self._closed:
            return
        if namespace == SYNC and BLOCKED_DOMAINS in changes:
            self._spawn(self._handle_blocklist_change(changes[BLOCKED_DOMAINS]))
        elif namespace == LOCAL and LOCAL_TRIGGER_KEYS & changes.keys():
            self.schedule_sync()

    async def _handle_blocklist_change(self, change: StorageChange) -> None:
        old = set(canonical_blocklist(change.old_value))
        added = [d for d in canonical_blocklist(change.new_value) if d not in old]

        # Newly added domains get a grace window while permission is confirmed
        for domain in added:
            try:
                await self.ledger.mark(domain)
            except StorageError as e:
                logger.warning(f"Failed to mark {domain} as pending: {e}")

        self.schedule_sync()

    def schedule_sync(self, delay_ms: Optional[int] = None) -> None:
        """Request a pass after a quiet period, collapsing bursts into one."""
        if self._closed:
            return
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
        delay = (self.debounce_ms if delay_ms is None else delay_ms) / 1000
        loop = asyncio.get_running_loop()
        self._debounce_handle = loop.call_later(delay, self._debounce_fired)

    def _debounce_fired(self) -> None:
        self._debounce_handle = None
        self._spawn(self._sync_quietly())

    async def _sync_quietly(self) -> None:
        try:
            await self.request_sync()
        except Exception as e:
            logger.error(f"Background reconciliation failed: {e}")

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # -------------------------------------------------------------------------
    # LIFECYCLE
    # -------------------------------------------------------------------------

    async def flush(self) -> None:
        """Run any debounced request now and wait for background work to finish."""
        while True:
            if self._debounce_handle is not None:
                self._debounce_handle.cancel()
                self._debounce_handle = None
                self._spawn(self._sync_quietly())
            if not self._tasks:
                return
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def close(self) -> None:
        """Stop reacting to events. An in-flight pass still runs to completion."""
        self._closed = True
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
