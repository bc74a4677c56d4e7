"""Host permission lookups against the capability system."""

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from .common import read_secure_file, validate_domain, write_secure_file
from .exceptions import PermissionQueryError, StorageError

# =============================================================================
# CONSTANTS
# =============================================================================

# Grant covering every host ("on all sites")
ALL_HOSTS = "*://*/*"

logger = logging.getLogger(__name__)


def origin_patterns(domain: str) -> list[str]:
    """
    Origin patterns that would authorize blocking ``domain``.

    Ordered broadest first so lookups can stop at the first match.
    """
    return [
        ALL_HOSTS,
        f"https://*.{domain}/*",
        f"http://*.{domain}/*",
        f"https://{domain}/*",
        f"http://{domain}/*",
    ]


def domain_origins(domain: str) -> list[str]:
    """Origin patterns requested when the user grants access to one domain."""
    return [
        f"https://{domain}/*",
        f"http://{domain}/*",
        f"https://*.{domain}/*",
        f"http://*.{domain}/*",
    ]


# =============================================================================
# CAPABILITY BACKEND
# =============================================================================


class GrantRegistry:
    """
    Set of origin patterns the process has been granted.

    Stands in for the host's permission system: the CLI grants and revokes
    patterns, the oracle only calls ``contains``. Optionally persisted to a
    JSON file so separate processes agree on what is granted.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = Path(path) if path else None
        self._origins: set[str] = set()
        self._loaded = self.path is None
        self._listeners: list[Callable[[str, list[str]], None]] = []

    def _load(self) -> set[str]:
        if self._loaded:
            return self._origins

        try:
            content = read_secure_file(self.path)
        except OSError as e:
            raise PermissionQueryError(f"Failed to read grants: {e}")

        origins: set[str] = set()
        if content:
            try:
                data = json.loads(content)
            except json.JSONDecodeError as e:
                raise PermissionQueryError(f"Corrupted grants file {self.path}: {e}")
            if isinstance(data, list):
                origins = {o for o in data if isinstance(o, str)}

        self._origins = origins
        self._loaded = True
        return self._origins

    def _save(self, origins: set[str]) -> None:
        if self.path is not None:
            try:
                write_secure_file(self.path, json.dumps(sorted(origins), indent=2))
            except OSError as e:
                raise StorageError(f"Failed to write grants: {e}")
        self._origins = origins

    def subscribe(self, listener: Callable[[str, list[str]], None]) -> None:
        """Register ``listener(event, origins)`` for 'added'/'removed' events."""
        self._listeners.append(listener)

    def _notify(self, event: str, origins: list[str]) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, origins)
            except Exception:
                logger.exception(f"Permission listener failed for {event} event")

    async def contains(self, origin: str) -> bool:
        """
        Check whether an origin pattern is granted.

        Raises:
            PermissionQueryError: If the registry cannot be read
        """
        origins = await asyncio.to_thread(self._load)
        return origin in origins

    async def grant(self, origins: list[str]) -> None:
        """Add origin patterns to the granted set."""
        current = await asyncio.to_thread(self._load)
        added = [o for o in origins if o not in current]
        if not added:
            return
        await asyncio.to_thread(self._save, current | set(added))
        self._notify("added", added)

    async def revoke(self, origins: list[str]) -> None:
        """Remove origin patterns from the granted set."""
        current = await asyncio.to_thread(self._load)
        removed = [o for o in origins if o in current]
        if not removed:
            return
        await asyncio.to_thread(self._save, current - set(removed))
        self._notify("removed", removed)

    async def origins(self) -> list[str]:
        """All granted origin patterns, sorted."""
        return sorted(await asyncio.to_thread(self._load))

    def reload(self) -> None:
        """Re-read the grants file on next access."""
        if self.path is not None:
            self._loaded = False


# =============================================================================
# PERMISSION ORACLE
# =============================================================================


@dataclass(frozen=True)
class RetryPolicy:
    """How often a failing pattern lookup is retried before moving on."""

    retries: int = 0
    delay: float = 0.05

    def attempts(self) -> int:
        return self.retries + 1


class PermissionOracle:
    """Read-only view of whether the process may act on a domain."""

    def __init__(self, backend: GrantRegistry, retry_policy: Optional[RetryPolicy] = None) -> None:
        """
        Initialize the oracle.

        Args:
            backend: Capability backend exposing ``async contains(origin)``
            retry_policy: Retry behaviour for transient lookup failures.
                         Defaults to no retries (a failure counts as no match).
        """
        self.backend = backend
        self.retry_policy = retry_policy or RetryPolicy()

    async def _query(self, origin: str) -> bool:
        attempts = self.retry_policy.attempts()
        for attempt in range(attempts):
            try:
                return await self.backend.contains(origin)
            except (PermissionQueryError, OSError) as e:
                if attempt + 1 < attempts:
                    logger.debug(
                        f"Permission lookup failed for {origin}, "
                        f"retry {attempt + 1}/{self.retry_policy.retries}: {e}"
                    )
                    await asyncio.sleep(self.retry_policy.delay)
                    continue
                logger.warning(f"Permission lookup failed for {origin}: {e}")
            except Exception as e:
                logger.warning(f"Unexpected permission lookup error for {origin}: {e}")
                return False
        return False

    async def has_access(self, domain: str) -> bool:
        """
        Check whether access to ``domain`` is currently granted.

        Malformed or over-long domains are denied without querying the
        backend. Patterns are checked broadest first and the first match wins.

        Args:
            domain: Domain to check

        Returns:
            True if some matching origin pattern is granted
        """
        if not validate_domain(domain):
            logger.debug(f"Denying malformed domain: {domain!r}")
            return False

        for origin in origin_patterns(domain):
            if await self._query(origin):
                return True
        return False
