"""Shared fixtures for FocusGate tests."""

import pytest

from focusgate.permissions import GrantRegistry
from focusgate.rules import RuleTable
from focusgate.service import FocusGate
from focusgate.storage import StateStore

START_TS = 1_700_000_000_000


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, now: int = START_TS) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    """In-memory state store."""
    return StateStore()


@pytest.fixture
def grants():
    """In-memory grant registry."""
    return GrantRegistry()


@pytest.fixture
def rule_table():
    """In-memory rule table."""
    return RuleTable()


@pytest.fixture
def engine(store, grants, rule_table, clock):
    """Engine wired with in-memory collaborators and a fake clock."""
    return FocusGate(store, grants, rule_table, clock=clock, debounce_ms=10)
