"""Compilation of active domains into redirect rules, and the rule table."""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional
from urllib.parse import parse_qs, quote, urlsplit

from .common import read_secure_file, write_secure_file
from .exceptions import EnforcementError

# =============================================================================
# CONSTANTS
# =============================================================================

# Identifiers [RULE_BASE, RULE_BASE + RULE_RANGE_SIZE) belong to this subsystem
RULE_BASE = 100_000
RULE_RANGE_SIZE = 90_000

BLOCKED_PAGE = "/blocked.html"
RULE_PRIORITY = 1
MAIN_FRAME = "main_frame"

logger = logging.getLogger(__name__)


def is_owned_rule_id(rule_id: int) -> bool:
    """True if ``rule_id`` falls inside the reserved identifier range."""
    return RULE_BASE <= rule_id < RULE_BASE + RULE_RANGE_SIZE


def blocked_target(domain: str) -> str:
    """Redirect path for ``domain``, with the domain percent-encoded."""
    return f"{BLOCKED_PAGE}#d={quote(domain, safe='')}"


def parse_blocked_target(url: str) -> Optional[str]:
    """
    Recover the blocked domain from a redirect target.

    Args:
        url: Redirect path or full URL of the blocked page

    Returns:
        The decoded domain, or None if the target carries none
    """
    fragment = urlsplit(url).fragment
    values = parse_qs(fragment).get("d")
    if not values or not values[0]:
        return None
    return values[0]


# =============================================================================
# COMPILED RULES
# =============================================================================


@dataclass(frozen=True)
class CompiledRule:
    """A redirect directive for top-level navigation to one domain."""

    id: int
    domain: str
    priority: int = RULE_PRIORITY
    resource_types: tuple[str, ...] = field(default=(MAIN_FRAME,))

    @property
    def url_filter(self) -> str:
        """Match pattern covering the domain and all of its subdomains."""
        return f"||{self.domain}^"

    @property
    def redirect_path(self) -> str:
        return blocked_target(self.domain)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the enforcement host's rule format."""
        return {
            "id": self.id,
            "priority": self.priority,
            "action": {
                "type": "redirect",
                "redirect": {"extensionPath": self.redirect_path},
            },
            "condition": {
                "urlFilter": self.url_filter,
                "resourceTypes": list(self.resource_types),
            },
        }


def compile_rules(domains: list[str], base: int = RULE_BASE) -> list[CompiledRule]:
    """
    Compile one rule per active domain with sequential identifiers.

    Identifiers start at ``base`` and are assigned fresh on every call.
    Domains beyond the reserved range are not compiled.

    Args:
        domains: Active domains, in the order identifiers should be assigned
        base: First identifier of the reserved range

    Returns:
        List of compiled rules
    """
    if len(domains) > RULE_RANGE_SIZE:
        logger.error(
            f"{len(domains)} active domains exceed the {RULE_RANGE_SIZE} rule "
            f"identifiers available, ignoring {len(domains) - RULE_RANGE_SIZE}"
        )
        domains = domains[:RULE_RANGE_SIZE]

    return [CompiledRule(id=base + i, domain=domain) for i, domain in enumerate(domains)]


# =============================================================================
# RULE TABLE (ENFORCEMENT LAYER)
# =============================================================================


class RuleTable:
    """
    Installed dynamic rules, shared with other subsystems.

    Rules are kept as plain dicts so rules owned by other subsystems pass
    through untouched. When a path is given the table is persisted as JSON
    for the enforcement host to pick up.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = Path(path) if path else None
        self._rules: Optional[dict[int, dict[str, Any]]] = None
        self._lock = asyncio.Lock()
        self.update_count = 0

    def _load(self) -> dict[int, dict[str, Any]]:
        if self._rules is not None:
            return self._rules

        rules: dict[int, dict[str, Any]] = {}
        if self.path is not None:
            try:
                content = read_secure_file(self.path)
            except OSError as e:
                raise EnforcementError(f"Failed to read rules: {e}")
            if content:
                try:
                    data = json.loads(content)
                except json.JSONDecodeError as e:
                    raise EnforcementError(f"Corrupted rules file {self.path}: {e}")
                for rule in data if isinstance(data, list) else []:
                    if isinstance(rule, dict) and isinstance(rule.get("id"), int):
                        rules[rule["id"]] = rule

        self._rules = rules
        return self._rules

    def _commit(self, rules: dict[int, dict[str, Any]]) -> None:
        if self.path is not None:
            ordered = [rules[rule_id] for rule_id in sorted(rules)]
            try:
                write_secure_file(self.path, json.dumps(ordered, indent=2))
            except OSError as e:
                raise EnforcementError(f"Failed to write rules: {e}")
        self._rules = rules

    async def get_rules(self) -> list[dict[str, Any]]:
        """All installed rules, ordered by identifier."""
        async with self._lock:
            rules = await asyncio.to_thread(self._load)
            return [dict(rules[rule_id]) for rule_id in sorted(rules)]

    async def update(self, remove_ids: list[int], add_rules: list[dict[str, Any]]) -> None:
        """
        Remove and add rules in one step.

        Raises:
            EnforcementError: If an added identifier collides with a rule that
                stays installed or with another added rule. Nothing is applied.
        """
        async with self._lock:
            current = await asyncio.to_thread(self._load)
            removed = set(remove_ids)
            updated = {k: v for k, v in current.items() if k not in removed}

            for rule in add_rules:
                rule_id = rule.get("id")
                if not isinstance(rule_id, int):
                    raise EnforcementError(f"Rule without integer id: {rule!r}")
                if rule_id in updated:
                    raise EnforcementError(f"Rule id {rule_id} is already in use")
                updated[rule_id] = dict(rule)

            await asyncio.to_thread(self._commit, updated)
            self.update_count += 1

    def reload(self) -> None:
        """Re-read the rules file on next access."""
        if self.path is not None:
            self._rules = None


async def owned_rule_ids(table: RuleTable) -> list[int]:
    """Identifiers of installed rules inside the reserved range."""
    return [rule["id"] for rule in await table.get_rules() if is_owned_rule_id(rule["id"])]


async def active_domains_from_rules(table: RuleTable) -> list[str]:
    """Domains currently enforced by rules in the reserved range."""
    domains = []
    for rule in await table.get_rules():
        if not is_owned_rule_id(rule["id"]):
            continue
        redirect = rule.get("action", {}).get("redirect", {}).get("extensionPath", "")
        domain = parse_blocked_target(redirect)
        if domain:
            domains.append(domain)
    return domains
