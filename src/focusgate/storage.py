"""Durable key/value state split into a synced and a local namespace."""

import asyncio
import copy
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Union

from .common import read_secure_file, write_secure_file
from .exceptions import StorageError

# =============================================================================
# CONSTANTS
# =============================================================================

SYNC = "sync"
LOCAL = "local"
NAMESPACES = (SYNC, LOCAL)

# Persisted keys
BLOCKED_DOMAINS = "blockedDomains"
PAUSED_UNTIL = "pausedUntilTs"
PAUSED_DOMAINS = "pausedDomains"
PENDING_GRANTS = "pendingGrants"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StorageChange:
    """Old and new value of a single key after a write."""

    old_value: Any
    new_value: Any


ChangeListener = Callable[[dict[str, StorageChange], str], None]


class _Namespace:
    """One JSON document, optionally backed by a file."""

    def __init__(self, name: str, path: Optional[Path]) -> None:
        self.name = name
        self.path = Path(path) if path else None
        self.lock = asyncio.Lock()
        self._data: Optional[dict[str, Any]] = None

    def load(self) -> dict[str, Any]:
        if self._data is not None:
            return self._data

        if self.path is None:
            self._data = {}
            return self._data

        try:
            content = read_secure_file(self.path)
        except OSError as e:
            raise StorageError(f"Failed to read {self.name} state: {e}")

        if not content:
            self._data = {}
            return self._data

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise StorageError(f"Corrupted {self.name} state in {self.path}: {e}")

        if not isinstance(data, dict):
            raise StorageError(f"Corrupted {self.name} state in {self.path}: not an object")

        self._data = data
        return self._data

    def commit(self, data: dict[str, Any]) -> None:
        if self.path is not None:
            try:
                write_secure_file(self.path, json.dumps(data, indent=2, sort_keys=True))
            except (OSError, TypeError, ValueError) as e:
                raise StorageError(f"Failed to write {self.name} state: {e}")
        self._data = data

    def invalidate(self) -> None:
        self._data = None


class StateStore:
    """
    Key/value repository with a synced and a local namespace.

    Both namespaces share the same API. Every successful ``set`` notifies
    subscribers with the keys whose values actually changed. A write either
    applies every requested key or none of them.
    """

    def __init__(
        self, sync_path: Optional[Path] = None, local_path: Optional[Path] = None
    ) -> None:
        """
        Initialize the store.

        Args:
            sync_path: JSON file for the synced namespace (None keeps it in memory)
            local_path: JSON file for the local namespace (None keeps it in memory)
        """
        self._namespaces = {
            SYNC: _Namespace(SYNC, sync_path),
            LOCAL: _Namespace(LOCAL, local_path),
        }
        self._listeners: list[ChangeListener] = []

    @classmethod
    def in_directory(cls, data_dir: Path) -> "StateStore":
        """Create a store persisting both namespaces under ``data_dir``."""
        from .config import LOCAL_STATE_FILE, SYNC_STATE_FILE

        data_dir = Path(data_dir)
        return cls(data_dir / SYNC_STATE_FILE, data_dir / LOCAL_STATE_FILE)

    def _namespace(self, namespace: str) -> _Namespace:
        try:
            return self._namespaces[namespace]
        except KeyError:
            raise StorageError(f"Unknown namespace: {namespace}")

    # -------------------------------------------------------------------------
    # SUBSCRIPTIONS
    # -------------------------------------------------------------------------

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """
        Register a change listener.

        Args:
            listener: Called as ``listener(changes, namespace)`` after each write

        Returns:
            Callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, changes: dict[str, StorageChange], namespace: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(changes, namespace)
            except Exception:
                logger.exception(f"Storage listener failed for {namespace} change")

    # -------------------------------------------------------------------------
    # READ / WRITE
    # -------------------------------------------------------------------------

    async def get(
        self, namespace: str, keys: Union[str, Iterable[str], None] = None
    ) -> dict[str, Any]:
        """
        Read keys from a namespace.

        Args:
            namespace: 'sync' or 'local'
            keys: A key, an iterable of keys, or None for every key

        Returns:
            Dict holding the present keys (absent keys are omitted)

        Raises:
            StorageError: If the namespace cannot be read
        """
        ns = self._namespace(namespace)
        async with ns.lock:
            data = await asyncio.to_thread(ns.load)

        if keys is None:
            return copy.deepcopy(data)
        if isinstance(keys, str):
            keys = [keys]
        return {key: copy.deepcopy(data[key]) for key in keys if key in data}

    async def set(self, namespace: str, partial: dict[str, Any]) -> None:
        """
        Merge ``partial`` into a namespace and persist it.

        Args:
            namespace: 'sync' or 'local'
            partial: Keys to write

        Raises:
            StorageError: If the write fails (nothing is applied)
        """
        ns = self._namespace(namespace)
        async with ns.lock:
            current = await asyncio.to_thread(ns.load)
            updated = dict(current)
            changes: dict[str, StorageChange] = {}

            for key, value in partial.items():
                old_value = current.get(key)
                new_value = copy.deepcopy(value)
                if old_value != new_value:
                    changes[key] = StorageChange(copy.deepcopy(old_value), new_value)
                updated[key] = new_value

            if not changes:
                return

            await asyncio.to_thread(ns.commit, updated)

        logger.debug(f"Stored {namespace} keys: {', '.join(sorted(changes))}")
        self._notify(changes, namespace)

    async def update(self, namespace: str, key: str, fn: Callable[[Any], Any]) -> Any:
        """
        Atomically replace one key with ``fn(current_value)``.

        ``fn`` runs while the namespace is locked, so concurrent updates of
        the same key never overwrite each other. It receives a copy of the
        current value (None if absent) and must not await.

        Returns:
            The value now stored

        Raises:
            StorageError: If the write fails (nothing is applied)
        """
        ns = self._namespace(namespace)
        async with ns.lock:
            current = await asyncio.to_thread(ns.load)
            old_value = current.get(key)
            new_value = copy.deepcopy(fn(copy.deepcopy(old_value)))
            if old_value == new_value and (key in current or new_value is None):
                return copy.deepcopy(new_value)

            updated = dict(current)
            updated[key] = new_value
            await asyncio.to_thread(ns.commit, updated)

        logger.debug(f"Updated {namespace} key: {key}")
        self._notify({key: StorageChange(copy.deepcopy(old_value), new_value)}, namespace)
        return copy.deepcopy(new_value)

    async def remove(self, namespace: str, keys: Union[str, Iterable[str]]) -> None:
        """
        Delete keys from a namespace.

        Raises:
            StorageError: If the write fails (nothing is applied)
        """
        if isinstance(keys, str):
            keys = [keys]

        ns = self._namespace(namespace)
        async with ns.lock:
            current = await asyncio.to_thread(ns.load)
            updated = dict(current)
            changes: dict[str, StorageChange] = {}
            for key in keys:
                if key in updated:
                    changes[key] = StorageChange(copy.deepcopy(updated.pop(key)), None)

            if not changes:
                return

            await asyncio.to_thread(ns.commit, updated)

        self._notify(changes, namespace)

    def reload(self) -> None:
        """Drop cached documents so the next read goes back to disk."""
        for ns in self._namespaces.values():
            ns.invalidate()
