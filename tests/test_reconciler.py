"""Tests for reconciler.py - PendingGrantLedger and PermissionReconciler."""

import asyncio

import pytest

from focusgate.common import get_audit_log_file
from focusgate.permissions import ALL_HOSTS, GrantRegistry, PermissionOracle, domain_origins
from focusgate.reconciler import PendingGrantLedger, PermissionReconciler
from focusgate.storage import BLOCKED_DOMAINS, LOCAL, PENDING_GRANTS, SYNC


class GatedRegistry(GrantRegistry):
    """Grant registry whose lookups wait until released."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def contains(self, origin):
        self.entered.set()
        await self.release.wait()
        return await super().contains(origin)


@pytest.fixture
def ledger(store, clock):
    return PendingGrantLedger(store, ttl_ms=15_000, clock=clock)


@pytest.fixture
def reconciler(store, grants, ledger, clock):
    return PermissionReconciler(store, PermissionOracle(grants), ledger, clock=clock)


class TestPendingGrantLedger:
    """Tests for PendingGrantLedger."""

    @pytest.mark.asyncio
    async def test_mark_uses_ttl(self, ledger, clock):
        until = await ledger.mark("a.com")
        assert until == clock() + 15_000
        assert await ledger.entries() == {"a.com": until}

    @pytest.mark.asyncio
    async def test_mark_explicit_expiry(self, ledger, clock):
        await ledger.mark("a.com", clock() + 5)
        assert await ledger.is_pending("a.com") is True

    @pytest.mark.asyncio
    async def test_mark_in_the_past_removes_entry(self, ledger, clock):
        await ledger.mark("a.com")
        await ledger.mark("a.com", clock() - 1)
        assert await ledger.entries() == {}

    @pytest.mark.asyncio
    async def test_expires(self, ledger, clock):
        await ledger.mark("a.com")
        clock.advance(15_000)
        assert await ledger.is_pending("a.com") is False

    @pytest.mark.asyncio
    async def test_clear(self, ledger):
        await ledger.mark("a.com")
        await ledger.clear("a.com")
        assert await ledger.is_pending("a.com") is False

    @pytest.mark.asyncio
    async def test_clear_unknown_domain_writes_nothing(self, ledger, store):
        writes = []
        store.subscribe(lambda changes, ns: writes.append(changes))
        await ledger.clear("never.com")
        assert writes == []


class TestReconcile:
    """Tests for PermissionReconciler.reconcile."""

    @pytest.mark.asyncio
    async def test_all_allowed(self, reconciler, grants, store):
        await grants.grant([ALL_HOSTS])
        await store.set(SYNC, {BLOCKED_DOMAINS: ["b.com", "a.com"]})

        assert await reconciler.reconcile(["b.com", "a.com"]) == ["b.com", "a.com"]
        assert (await store.get(SYNC, BLOCKED_DOMAINS))[BLOCKED_DOMAINS] == ["b.com", "a.com"]

    @pytest.mark.asyncio
    async def test_denied_domain_removed_from_blocklist(self, reconciler, grants, store):
        await grants.grant(domain_origins("a.com"))
        await store.set(SYNC, {BLOCKED_DOMAINS: ["a.com", "b.com"]})

        assert await reconciler.reconcile(["a.com", "b.com"]) == ["a.com"]
        assert (await store.get(SYNC, BLOCKED_DOMAINS))[BLOCKED_DOMAINS] == ["a.com"]

    @pytest.mark.asyncio
    async def test_rewrite_is_sorted_and_deduplicated(self, reconciler, grants, store):
        await grants.grant(domain_origins("z.com") + domain_origins("a.com"))
        await store.set(SYNC, {BLOCKED_DOMAINS: ["z.com", "A.com", "z.com", "denied.com"]})

        await reconciler.reconcile(["z.com", "a.com", "z.com", "denied.com"])
        assert (await store.get(SYNC, BLOCKED_DOMAINS))[BLOCKED_DOMAINS] == ["a.com", "z.com"]

    @pytest.mark.asyncio
    async def test_pending_domain_allowed_without_permission(self, reconciler, ledger):
        await ledger.mark("a.com")
        assert await reconciler.reconcile(["a.com"]) == ["a.com"]

    @pytest.mark.asyncio
    async def test_expired_pending_is_swept_and_denied(self, reconciler, ledger, store, clock):
        await store.set(SYNC, {BLOCKED_DOMAINS: ["a.com"]})
        await ledger.mark("a.com")
        clock.advance(15_001)

        assert await reconciler.reconcile(["a.com"]) == []
        assert (await store.get(LOCAL, PENDING_GRANTS))[PENDING_GRANTS] == {}
        assert (await store.get(SYNC, BLOCKED_DOMAINS))[BLOCKED_DOMAINS] == []

    @pytest.mark.asyncio
    async def test_expired_pending_with_permission_stays(self, reconciler, ledger, grants, clock):
        await grants.grant(domain_origins("a.com"))
        await ledger.mark("a.com")
        clock.advance(20_000)

        assert await reconciler.reconcile(["a.com"]) == ["a.com"]
        assert await ledger.entries() == {}

    @pytest.mark.asyncio
    async def test_no_write_when_nothing_denied(self, reconciler, grants, store):
        await grants.grant([ALL_HOSTS])
        writes = []
        store.subscribe(lambda changes, ns: writes.append(ns))

        await reconciler.reconcile(["a.com"])
        assert writes == []

    @pytest.mark.asyncio
    async def test_denial_is_audited(self, store, grants, ledger, clock, tmp_path):
        reconciler = PermissionReconciler(
            store, PermissionOracle(grants), ledger, clock=clock, data_dir=tmp_path
        )
        await reconciler.reconcile(["gone.com"])

        lines = get_audit_log_file(tmp_path).read_text().splitlines()
        assert lines[-1].endswith("REVOKE | gone.com")


class TestConcurrentWrites:
    """Writes made while a reconcile is waiting on the oracle survive it."""

    @pytest.fixture
    def gated(self):
        return GatedRegistry()

    @pytest.fixture
    def gated_reconciler(self, store, gated, ledger, clock):
        return PermissionReconciler(store, PermissionOracle(gated), ledger, clock=clock)

    @pytest.mark.asyncio
    async def test_pending_mark_during_pass_is_kept(
        self, gated_reconciler, gated, ledger, store, clock
    ):
        await store.set(SYNC, {BLOCKED_DOMAINS: ["x.com"]})
        await store.set(LOCAL, {PENDING_GRANTS: {"x.com": clock() - 1}})

        task = asyncio.create_task(gated_reconciler.reconcile(["x.com"]))
        await gated.entered.wait()
        until = await ledger.mark("d.com")
        await store.set(SYNC, {BLOCKED_DOMAINS: ["d.com", "x.com"]})
        gated.release.set()

        assert await task == []
        assert await ledger.entries() == {"d.com": until}
        assert (await store.get(SYNC, BLOCKED_DOMAINS))[BLOCKED_DOMAINS] == ["d.com"]

    @pytest.mark.asyncio
    async def test_domain_marked_pending_during_pass_not_denied(
        self, gated_reconciler, gated, ledger, store, clock
    ):
        await store.set(SYNC, {BLOCKED_DOMAINS: ["d.com"]})
        await store.set(LOCAL, {PENDING_GRANTS: {"d.com": clock() - 1}})

        task = asyncio.create_task(gated_reconciler.reconcile(["d.com"]))
        await gated.entered.wait()
        until = await ledger.mark("d.com")
        gated.release.set()

        assert await task == ["d.com"]
        assert await ledger.entries() == {"d.com": until}
        assert (await store.get(SYNC, BLOCKED_DOMAINS))[BLOCKED_DOMAINS] == ["d.com"]
