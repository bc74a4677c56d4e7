"""Tests for sync.py - the reconciliation pass and the SyncCoordinator."""

import asyncio

import pytest

from focusgate.exceptions import EnforcementError
from focusgate.permissions import ALL_HOSTS, GrantRegistry, domain_origins
from focusgate.rules import RULE_BASE, RuleTable, active_domains_from_rules
from focusgate.service import FocusGate
from focusgate.storage import (
    BLOCKED_DOMAINS,
    LOCAL,
    PAUSED_DOMAINS,
    PAUSED_UNTIL,
    PENDING_GRANTS,
    SYNC,
)
from focusgate.sync import SyncState, active_domains, canonical_blocklist


class BlockingRuleTable(RuleTable):
    """Rule table whose updates wait until released."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def update(self, remove_ids, add_rules):
        self.entered.set()
        await self.release.wait()
        await super().update(remove_ids, add_rules)


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


class FailingRuleTable(RuleTable):
    async def update(self, remove_ids, add_rules):
        raise EnforcementError("rule update rejected")


async def enforced(engine):
    return await active_domains_from_rules(engine.rule_table)


async def blocklist(engine):
    return (await engine.store.get(SYNC, BLOCKED_DOMAINS)).get(BLOCKED_DOMAINS)


class TestCanonicalBlocklist:
    """Tests for canonical_blocklist function."""

    def test_lowercases_dedupes_and_sorts(self):
        assert canonical_blocklist(["B.com", "a.com", "a.com"]) == ["a.com", "b.com"]

    def test_drops_invalid_entries(self):
        assert canonical_blocklist(["ok.com", "", "bad domain", 42, None]) == ["ok.com"]

    def test_non_list(self):
        assert canonical_blocklist(None) == []
        assert canonical_blocklist("a.com") == []


class TestActiveDomains:
    """Tests for active_domains function."""

    def test_no_pauses(self):
        assert active_domains(["a.com", "b.com"], 0, {}, 1000) == ["a.com", "b.com"]

    def test_global_pause_dominates(self):
        assert active_domains(["a.com", "b.com"], 2000, {"a.com": 500}, 1000) == []

    def test_domain_pause(self):
        assert active_domains(["a.com", "b.com"], 0, {"a.com": 2000}, 1000) == ["b.com"]

    def test_expired_pauses_ignored(self):
        assert active_domains(["a.com"], 999, {"a.com": 1000}, 1000) == ["a.com"]


class TestReconcileAndApply:
    """Tests for a single reconciliation pass."""

    @pytest.mark.asyncio
    async def test_normalizes_stored_blocklist(self, engine, grants, store):
        await grants.grant([ALL_HOSTS])
        await store.set(SYNC, {BLOCKED_DOMAINS: ["B.com", "a.com", "a.com"]})

        rules = await engine.coordinator.request_sync()

        assert [(r.id, r.domain) for r in rules] == [(RULE_BASE, "a.com"), (RULE_BASE + 1, "b.com")]
        assert await blocklist(engine) == ["a.com", "b.com"]
        assert await enforced(engine) == ["a.com", "b.com"]

    @pytest.mark.asyncio
    async def test_no_rule_without_permission(self, engine, store):
        await store.set(SYNC, {BLOCKED_DOMAINS: ["x.com"]})

        assert await engine.coordinator.request_sync() == []
        assert await enforced(engine) == []
        assert await blocklist(engine) == []

    @pytest.mark.asyncio
    async def test_idempotent(self, engine, grants, store, rule_table):
        await grants.grant([ALL_HOSTS])
        await store.set(SYNC, {BLOCKED_DOMAINS: ["a.com", "b.com"]})

        await engine.coordinator.request_sync()
        first = await rule_table.get_rules()
        await engine.coordinator.request_sync()

        assert await rule_table.get_rules() == first

    @pytest.mark.asyncio
    async def test_foreign_rules_untouched(self, engine, grants, store, rule_table):
        foreign = {"id": 42, "priority": 2, "action": {"type": "block"}, "condition": {}}
        await rule_table.update([], [foreign])
        await grants.grant([ALL_HOSTS])
        await store.set(SYNC, {BLOCKED_DOMAINS: ["a.com"]})

        await engine.coordinator.request_sync()
        await store.set(SYNC, {BLOCKED_DOMAINS: []})
        await engine.coordinator.request_sync()

        assert await rule_table.get_rules() == [foreign]

    @pytest.mark.asyncio
    async def test_global_pause_removes_all_rules(self, engine, grants, store, clock):
        await grants.grant([ALL_HOSTS])
        await store.set(SYNC, {BLOCKED_DOMAINS: ["a.com", "b.com"]})
        await store.set(
            LOCAL, {PAUSED_UNTIL: clock() + 60_000, PAUSED_DOMAINS: {"a.com": clock() + 1_000}}
        )

        assert await engine.coordinator.request_sync() == []

        clock.advance(60_000)
        assert [r.domain for r in await engine.coordinator.request_sync()] == ["a.com", "b.com"]

    @pytest.mark.asyncio
    async def test_revocation_persists(self, engine, grants, store):
        await grants.grant(domain_origins("a.com") + domain_origins("b.com"))
        await store.set(SYNC, {BLOCKED_DOMAINS: ["a.com", "b.com"]})
        await engine.coordinator.request_sync()

        await grants.revoke(domain_origins("a.com"))
        await engine.coordinator.request_sync()
        await grants.grant(domain_origins("a.com"))
        await engine.coordinator.request_sync()

        assert await blocklist(engine) == ["b.com"]
        assert await enforced(engine) == ["b.com"]


class TestRequestSync:
    """Tests for the coordinator state machine."""

    @pytest.mark.asyncio
    async def test_requests_during_pass_coalesce(self, store, grants, clock):
        table = BlockingRuleTable()
        engine = FocusGate(store, grants, table, clock=clock)
        await grants.grant([ALL_HOSTS])
        await store.set(SYNC, {BLOCKED_DOMAINS: ["a.com"]})
        coordinator = engine.coordinator

        first = asyncio.create_task(coordinator.request_sync())
        await table.entered.wait()
        assert coordinator.state is SyncState.SYNCING

        others = [asyncio.create_task(coordinator.request_sync()) for _ in range(5)]
        await asyncio.sleep(0)
        assert coordinator.state is SyncState.RESYNC_PENDING

        table.release.set()
        results = await asyncio.gather(first, *others)

        assert table.update_count == 2
        assert coordinator.passes_completed == 2
        assert coordinator.state is SyncState.IDLE
        assert all([r.domain for r in rules] == ["a.com"] for rules in results)

    @pytest.mark.asyncio
    async def test_failed_pass_reaches_requester(self, store, grants, clock):
        engine = FocusGate(store, grants, FailingRuleTable(), clock=clock)

        with pytest.raises(EnforcementError, match="rejected"):
            await engine.coordinator.request_sync()

        assert engine.coordinator.state is SyncState.IDLE
        assert engine.coordinator.passes_completed == 0

    @pytest.mark.asyncio
    async def test_mark_pending_during_pass(self, store, rule_table, clock):
        """Test a domain marked pending while a pass is in flight is not dropped by it."""
        gated = GatedRegistry()
        engine = FocusGate(store, gated, rule_table, clock=clock)
        await store.set(SYNC, {BLOCKED_DOMAINS: ["x.com"]})
        await store.set(LOCAL, {PENDING_GRANTS: {"x.com": clock() - 1}})

        task = asyncio.create_task(engine.coordinator.request_sync())
        await gated.entered.wait()
        assert await engine.dispatch({"cmd": "markPending", "domain": "d.com"}) == {"ok": True}
        await store.set(SYNC, {BLOCKED_DOMAINS: ["d.com", "x.com"]})
        gated.release.set()
        await task

        assert list(await engine.ledger.entries()) == ["d.com"]
        assert await blocklist(engine) == ["d.com"]

        await engine.coordinator.request_sync()
        assert await enforced(engine) == ["d.com"]


class TestEventTriggers:
    """Tests for storage and permission change reactions."""

    @pytest.mark.asyncio
    async def test_new_domain_gets_pending_window(self, engine, store, clock):
        engine.attach()
        await store.set(SYNC, {BLOCKED_DOMAINS: ["new.com"]})
        await engine.coordinator.flush()

        assert await engine.ledger.is_pending("new.com")
        assert await enforced(engine) == ["new.com"]

        clock.advance(15_001)
        await engine.coordinator.request_sync()

        assert await enforced(engine) == []
        assert await blocklist(engine) == []
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_case_change_does_not_grant_window(self, engine, store, grants):
        await grants.grant([ALL_HOSTS])
        await store.set(SYNC, {BLOCKED_DOMAINS: ["a.com"]})
        engine.attach()

        await store.set(SYNC, {BLOCKED_DOMAINS: ["A.com"]})
        await engine.coordinator.flush()

        assert await engine.ledger.entries() == {}
        assert await blocklist(engine) == ["a.com"]
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_local_change_triggers_pass(self, engine, store, grants, clock):
        await grants.grant([ALL_HOSTS])
        await store.set(SYNC, {BLOCKED_DOMAINS: ["a.com"]})
        await engine.coordinator.request_sync()
        engine.attach()

        await store.set(LOCAL, {PAUSED_UNTIL: clock() + 60_000})
        await engine.coordinator.flush()

        assert await enforced(engine) == []
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_burst_of_changes_is_debounced(self, engine, store, grants, clock):
        await grants.grant([ALL_HOSTS])
        engine.coordinator.debounce_ms = 1_000
        engine.attach()

        for minutes in range(1, 6):
            await store.set(LOCAL, {PAUSED_DOMAINS: {"a.com": clock() + minutes}})
        await engine.coordinator.flush()

        assert engine.coordinator.passes_completed == 1
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_permission_events_trigger_pass(self, engine, store, grants):
        await store.set(SYNC, {BLOCKED_DOMAINS: ["a.com"]})
        engine.attach()

        await grants.grant(domain_origins("a.com"))
        await engine.coordinator.flush()
        assert await enforced(engine) == ["a.com"]

        await grants.revoke(domain_origins("a.com"))
        await engine.coordinator.flush()
        assert await enforced(engine) == []
        assert await blocklist(engine) == []
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_closed_coordinator_ignores_events(self, engine, store):
        engine.attach()
        engine.coordinator.close()

        await store.set(LOCAL, {PAUSED_UNTIL: 1})
        await engine.coordinator.flush()

        assert engine.coordinator.passes_completed == 0
