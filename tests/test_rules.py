"""Tests for rules.py - rule compilation and the rule table."""

import json
from unittest.mock import patch

import pytest

from focusgate.exceptions import EnforcementError
from focusgate.rules import (
    RULE_BASE,
    RULE_RANGE_SIZE,
    CompiledRule,
    RuleTable,
    active_domains_from_rules,
    blocked_target,
    compile_rules,
    is_owned_rule_id,
    owned_rule_ids,
    parse_blocked_target,
)


def foreign_rule(rule_id):
    return {
        "id": rule_id,
        "priority": 1,
        "action": {"type": "block"},
        "condition": {"urlFilter": "||ads.example^"},
    }


class TestRuleIds:
    """Tests for the reserved identifier range."""

    def test_range_bounds(self):
        assert is_owned_rule_id(RULE_BASE) is True
        assert is_owned_rule_id(RULE_BASE + RULE_RANGE_SIZE - 1) is True
        assert is_owned_rule_id(RULE_BASE - 1) is False
        assert is_owned_rule_id(RULE_BASE + RULE_RANGE_SIZE) is False


class TestBlockedTarget:
    """Tests for redirect targets."""

    def test_encodes_domain(self):
        assert blocked_target("example.com") == "/blocked.html#d=example.com"
        assert blocked_target("xn--bcher-kva.de") == "/blocked.html#d=xn--bcher-kva.de"

    def test_parse_round_trip(self):
        assert parse_blocked_target(blocked_target("sub.example.com")) == "sub.example.com"

    def test_parse_full_url(self):
        url = "chrome-extension://abc/blocked.html#d=example.com"
        assert parse_blocked_target(url) == "example.com"

    def test_parse_without_domain(self):
        assert parse_blocked_target("/blocked.html") is None
        assert parse_blocked_target("/blocked.html#d=") is None


class TestCompileRules:
    """Tests for compile_rules function."""

    def test_sequential_ids(self):
        rules = compile_rules(["a.com", "b.com"])
        assert [r.id for r in rules] == [RULE_BASE, RULE_BASE + 1]
        assert [r.domain for r in rules] == ["a.com", "b.com"]

    def test_rule_shape(self):
        rule = compile_rules(["example.com"])[0]
        assert rule.to_dict() == {
            "id": RULE_BASE,
            "priority": 1,
            "action": {
                "type": "redirect",
                "redirect": {"extensionPath": "/blocked.html#d=example.com"},
            },
            "condition": {
                "urlFilter": "||example.com^",
                "resourceTypes": ["main_frame"],
            },
        }

    def test_empty(self):
        assert compile_rules([]) == []

    def test_deterministic(self):
        assert compile_rules(["a.com", "b.com"]) == compile_rules(["a.com", "b.com"])

    def test_truncates_beyond_range(self):
        domains = [f"d{i}.com" for i in range(RULE_RANGE_SIZE + 3)]
        rules = compile_rules(domains)
        assert len(rules) == RULE_RANGE_SIZE
        assert all(is_owned_rule_id(r.id) for r in rules)


class TestRuleTable:
    """Tests for RuleTable."""

    @pytest.mark.asyncio
    async def test_update_replaces_owned_rules(self, rule_table):
        await rule_table.update([], [foreign_rule(5)] + [r.to_dict() for r in compile_rules(["a.com"])])

        existing = await owned_rule_ids(rule_table)
        new_rules = [r.to_dict() for r in compile_rules(["b.com", "c.com"])]
        await rule_table.update(existing, new_rules)

        ids = [r["id"] for r in await rule_table.get_rules()]
        assert ids == [5, RULE_BASE, RULE_BASE + 1]
        assert await active_domains_from_rules(rule_table) == ["b.com", "c.com"]

    @pytest.mark.asyncio
    async def test_collision_applies_nothing(self, rule_table):
        await rule_table.update([], [foreign_rule(7)])

        with pytest.raises(EnforcementError, match="already in use"):
            await rule_table.update([], [foreign_rule(8), foreign_rule(7)])

        assert [r["id"] for r in await rule_table.get_rules()] == [7]
        assert rule_table.update_count == 1

    @pytest.mark.asyncio
    async def test_rejects_rule_without_id(self, rule_table):
        with pytest.raises(EnforcementError):
            await rule_table.update([], [{"priority": 1}])

    @pytest.mark.asyncio
    async def test_persists_to_disk(self, tmp_path):
        path = tmp_path / "rules.json"
        table = RuleTable(path)
        await table.update([], [CompiledRule(RULE_BASE, "a.com").to_dict(), foreign_rule(3)])

        stored = json.loads(path.read_text())
        assert [r["id"] for r in stored] == [3, RULE_BASE]

        reopened = RuleTable(path)
        assert await active_domains_from_rules(reopened) == ["a.com"]

    @pytest.mark.asyncio
    async def test_failed_write_keeps_previous_rules(self, tmp_path):
        table = RuleTable(tmp_path / "rules.json")
        await table.update([], [foreign_rule(3)])

        with patch("focusgate.rules.write_secure_file", side_effect=OSError("read-only")):
            with pytest.raises(EnforcementError, match="read-only"):
                await table.update([3], [foreign_rule(4)])

        assert [r["id"] for r in await table.get_rules()] == [3]

    @pytest.mark.asyncio
    async def test_corrupted_file(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text("not json")
        with pytest.raises(EnforcementError, match="Corrupted"):
            await RuleTable(path).get_rules()
