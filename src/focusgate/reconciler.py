"""Pending-grant ledger and permission-gated filtering of the blocklist."""

import logging
from pathlib import Path
from typing import Any, Callable, Optional

from .common import audit_log, normalize_domain, now_ms
from .permissions import PermissionOracle
from .storage import BLOCKED_DOMAINS, LOCAL, PENDING_GRANTS, SYNC, StateStore

# =============================================================================
# CONSTANTS
# =============================================================================

PENDING_GRANT_MS = 15_000

logger = logging.getLogger(__name__)


def _as_map(value: Any) -> dict[str, Any]:
    return dict(value) if isinstance(value, dict) else {}


# =============================================================================
# PENDING GRANTS
# =============================================================================


class PendingGrantLedger:
    """
    Short-lived provisional "allowed" overrides.

    An entry covers the window between a user adding a domain and the
    capability system confirming the grant. Entries expire on their own and
    are swept when the reconciler next reads them.
    """

    def __init__(
        self,
        store: StateStore,
        ttl_ms: int = PENDING_GRANT_MS,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.ttl_ms = ttl_ms
        self.clock = clock

    async def entries(self) -> dict[str, int]:
        """Raw pending map, including entries that may already be expired."""
        result = await self.store.get(LOCAL, PENDING_GRANTS)
        pending = result.get(PENDING_GRANTS) or {}
        return _as_map(pending)

    async def mark(self, domain: str, until_ts: Optional[int] = None) -> int:
        """
        Start (or extend) a provisional-allow window for ``domain``.

        Returns:
            Expiry timestamp in epoch milliseconds
        """
        until_ts = until_ts if until_ts is not None else self.clock() + self.ttl_ms
        now = self.clock()

        def apply(pending: Any) -> dict[str, int]:
            pending = _as_map(pending)
            if until_ts > now:
                pending[domain] = until_ts
            else:
                pending.pop(domain, None)
            return pending

        await self.store.update(LOCAL, PENDING_GRANTS, apply)
        logger.debug(f"Pending grant for {domain} until {until_ts}")
        return until_ts

    async def clear(self, domain: str) -> None:
        """End the provisional window for ``domain``."""

        def apply(pending: Any) -> Any:
            if isinstance(pending, dict):
                pending.pop(domain, None)
            return pending

        await self.store.update(LOCAL, PENDING_GRANTS, apply)
        logger.debug(f"Pending grant cleared for {domain}")

    async def sweep(self, domains: list[str]) -> None:
        """Drop the entries of ``domains`` that are expired at the time of the write."""
        now = self.clock()

        def apply(pending: Any) -> Any:
            if not isinstance(pending, dict):
                return pending
            for domain in domains:
                expiry = pending.get(domain)
                if domain in pending and not (isinstance(expiry, (int, float)) and expiry > now):
                    del pending[domain]
            return pending

        await self.store.update(LOCAL, PENDING_GRANTS, apply)

    async def is_pending(self, domain: str) -> bool:
        """True while ``domain`` has an unexpired provisional window."""
        pending = await self.entries()
        return pending.get(domain, 0) > self.clock()


# =============================================================================
# PERMISSION RECONCILER
# =============================================================================


class PermissionReconciler:
    """Filters the declared blocklist down to domains we may act on."""

    def __init__(
        self,
        store: StateStore,
        oracle: PermissionOracle,
        ledger: PendingGrantLedger,
        clock: Callable[[], int] = now_ms,
        data_dir: Optional[Path] = None,
    ) -> None:
        self.store = store
        self.oracle = oracle
        self.ledger = ledger
        self.clock = clock
        self.data_dir = data_dir

    async def reconcile(self, declared: list[str]) -> list[str]:
        """
        Return the authorized subset of ``declared``.

        A domain is allowed while it holds an unexpired pending grant or the
        oracle reports access. Denied domains are removed from the persisted
        blocklist, which is left normalized, sorted and deduplicated, so the
        denial is permanent. Expired pending grants seen during the scan are swept.

        Pending grants and blocklist entries written while the oracle is
        being queried are kept: the sweep and the blocklist rewrite only
        touch the keys and domains this pass decided on.

        Args:
            declared: Domains from the blocklist, in stored order

        Returns:
            Allowed domains, in declared order
        """
        now = self.clock()
        pending = await self.ledger.entries()

        allowed: list[str] = []
        denied: list[str] = []
        expired: list[str] = []

        for domain in declared:
            if self._in_window(pending, domain, now):
                allowed.append(domain)
                continue
            if domain in pending:
                expired.append(domain)
            if await self.oracle.has_access(domain):
                allowed.append(domain)
            else:
                denied.append(domain)

        if denied:
            # A grant marked pending while the oracle was queried still counts
            latest = await self.ledger.entries()
            now = self.clock()
            late = {d for d in denied if self._in_window(latest, d, now)}
            if late:
                allowed = [d for d in declared if d in late or d in allowed]
                denied = [d for d in denied if d not in late]
                expired = [d for d in expired if d not in late]

        if expired:
            await self.ledger.sweep(expired)
            logger.debug(f"Swept {len(expired)} expired pending grant(s)")

        if denied:
            removed = set(denied)

            def drop_denied(current: Any) -> list[str]:
                domains = current if isinstance(current, list) else []
                kept = {normalize_domain(d) for d in domains if isinstance(d, str)}
                kept.discard("")
                return sorted(kept - removed)

            await self.store.update(SYNC, BLOCKED_DOMAINS, drop_denied)
            for domain in denied:
                logger.info(f"Permission missing, removed from blocklist: {domain}")
                audit_log(self.data_dir, "REVOKE", domain)

        return allowed

    @staticmethod
    def _in_window(pending: dict[str, Any], domain: str, now: int) -> bool:
        expiry = pending.get(domain)
        return isinstance(expiry, (int, float)) and expiry > now
