"""Snooze windows and the wake timers that end them."""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from .common import audit_log, now_ms, validate_domain
from .exceptions import CommandValidationError, DomainValidationError
from .storage import LOCAL, PAUSED_DOMAINS, PAUSED_UNTIL, StateStore

# =============================================================================
# CONSTANTS
# =============================================================================

GLOBAL_TIMER = "fg:resumeAll"
DOMAIN_TIMER_PREFIX = "fg:resume:"

MS_PER_MINUTE = 60_000
MAX_PAUSE_MINUTES = 525_600  # one year

logger = logging.getLogger(__name__)


def domain_timer_name(domain: str) -> str:
    """Timer name for a per-domain pause."""
    return f"{DOMAIN_TIMER_PREFIX}{domain}"


def validate_minutes(minutes: Any) -> float:
    """
    Validate a pause duration.

    Raises:
        CommandValidationError: If ``minutes`` is not a positive number of at
            most MAX_PAUSE_MINUTES
    """
    if isinstance(minutes, bool) or not isinstance(minutes, (int, float)):
        raise CommandValidationError("Invalid minutes: must be a positive number")
    if not minutes > 0 or minutes == float("inf"):
        raise CommandValidationError("Invalid minutes: must be a positive number")
    if minutes > MAX_PAUSE_MINUTES:
        raise CommandValidationError(f"Invalid minutes: at most {MAX_PAUSE_MINUTES}")
    return minutes


# =============================================================================
# TIMER REGISTRY
# =============================================================================


@dataclass
class _Timer:
    deadline: int
    handle: asyncio.TimerHandle
    callback: Callable[[], Awaitable[Any]]


class TimerRegistry:
    """
    Named one-shot wake timers on the running event loop.

    Deadlines are wall-clock epoch milliseconds. Arming a name that is
    already armed replaces the earlier timer.
    """

    def __init__(self, clock: Callable[[], int] = now_ms) -> None:
        self.clock = clock
        self._timers: dict[str, _Timer] = {}
        self._tasks: set[asyncio.Task] = set()

    def arm(self, name: str, deadline: int, callback: Callable[[], Awaitable[Any]]) -> None:
        """Arm (or re-arm) the timer called ``name`` to run ``callback`` at ``deadline``."""
        self.cancel(name)
        loop = asyncio.get_running_loop()
        delay = max(0.0, (deadline - self.clock()) / 1000)
        handle = loop.call_later(delay, self._fire, name)
        self._timers[name] = _Timer(deadline, handle, callback)
        logger.debug(f"Armed timer {name} in {delay:.1f}s")

    def cancel(self, name: str) -> bool:
        """Disarm a timer. Returns True if it was armed."""
        timer = self._timers.pop(name, None)
        if timer is None:
            return False
        timer.handle.cancel()
        logger.debug(f"Cancelled timer {name}")
        return True

    def cancel_matching(self, prefix: str) -> list[str]:
        """Disarm every timer whose name starts with ``prefix``."""
        names = [name for name in self._timers if name.startswith(prefix)]
        for name in names:
            self.cancel(name)
        return names

    def cancel_all(self) -> None:
        for name in list(self._timers):
            self.cancel(name)

    def names(self) -> list[str]:
        return sorted(self._timers)

    def is_armed(self, name: str) -> bool:
        return name in self._timers

    def deadline(self, name: str) -> Optional[int]:
        timer = self._timers.get(name)
        return timer.deadline if timer else None

    def fire_overdue(self) -> list[str]:
        """
        Fire every timer whose wall-clock deadline has passed.

        Loop timers run on a monotonic clock that stops while the host is
        suspended, so a deadline can pass without its handle firing.

        Returns:
            Names of the timers fired
        """
        now = self.clock()
        overdue = sorted(name for name, timer in self._timers.items() if timer.deadline <= now)
        for name in overdue:
            self._timers[name].handle.cancel()
            self._fire(name)
        if overdue:
            logger.info(f"Fired {len(overdue)} overdue timer(s)")
        return overdue

    def _fire(self, name: str) -> None:
        timer = self._timers.pop(name, None)
        if timer is None:
            return
        logger.debug(f"Timer fired: {name}")
        task = asyncio.get_running_loop().create_task(timer.callback())
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Timer callback failed: {exc}")

    async def drain(self) -> None:
        """Wait for callbacks of already-fired timers to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


# =============================================================================
# SNOOZE SCHEDULER
# =============================================================================


class SnoozeScheduler:
    """Owns global and per-domain pause windows."""

    def __init__(
        self,
        store: StateStore,
        request_sync: Callable[[], Awaitable[Any]],
        timers: Optional[TimerRegistry] = None,
        clock: Callable[[], int] = now_ms,
        data_dir: Optional[Path] = None,
    ) -> None:
        """
        Initialize the scheduler.

        Args:
            store: State store holding the pause maps
            request_sync: Coroutine function that runs a reconciliation pass
            timers: Timer registry (created on demand if omitted)
            clock: Epoch-millisecond clock
            data_dir: Data directory for the audit log (None disables auditing)
        """
        self.store = store
        self.request_sync = request_sync
        self.timers = timers or TimerRegistry(clock)
        self.clock = clock
        self.data_dir = data_dir

    # -------------------------------------------------------------------------
    # GLOBAL PAUSE
    # -------------------------------------------------------------------------

    async def pause_all(self, minutes: float) -> int:
        """
        Suspend all enforcement for ``minutes``.

        Returns:
            Pause expiry in epoch milliseconds
        """
        validate_minutes(minutes)
        until = self.clock() + int(minutes * MS_PER_MINUTE)

        await self.store.set(LOCAL, {PAUSED_UNTIL: until})
        self.timers.arm(GLOBAL_TIMER, until, self.resume_all)
        logger.info(f"Blocking paused for {minutes} minutes")
        audit_log(self.data_dir, "PAUSE", f"{minutes} minutes until {until}")

        await self.request_sync()
        return until

    async def resume_all(self) -> None:
        """Clear the global pause and every per-domain pause."""
        await self.store.set(LOCAL, {PAUSED_UNTIL: 0, PAUSED_DOMAINS: {}})
        self.timers.cancel(GLOBAL_TIMER)
        self.timers.cancel_matching(DOMAIN_TIMER_PREFIX)
        logger.info("Blocking resumed")
        audit_log(self.data_dir, "RESUME", "all")

        await self.request_sync()

    # -------------------------------------------------------------------------
    # PER-DOMAIN PAUSE
    # -------------------------------------------------------------------------

    async def pause_domain(self, domain: str, minutes: float) -> int:
        """
        Suspend enforcement of one domain for ``minutes``.

        Returns:
            Pause expiry in epoch milliseconds
        """
        if not validate_domain(domain):
            raise DomainValidationError(f"Invalid domain: {domain!r}")
        validate_minutes(minutes)
        until = self.clock() + int(minutes * MS_PER_MINUTE)

        def add(paused: Any) -> dict[str, int]:
            paused = dict(paused) if isinstance(paused, dict) else {}
            paused[domain] = until
            return paused

        await self.store.update(LOCAL, PAUSED_DOMAINS, add)
        self.timers.arm(domain_timer_name(domain), until, self._resume_callback(domain))
        logger.info(f"Paused {domain} for {minutes} minutes")
        audit_log(self.data_dir, "PAUSE_DOMAIN", f"{domain} {minutes} minutes until {until}")

        await self.request_sync()
        return until

    async def resume_domain(self, domain: str) -> None:
        """Clear the pause of one domain."""
        if not validate_domain(domain):
            raise DomainValidationError(f"Invalid domain: {domain!r}")

        removed = []

        def drop(paused: Any) -> Any:
            if isinstance(paused, dict) and domain in paused:
                removed.append(paused.pop(domain))
            return paused

        await self.store.update(LOCAL, PAUSED_DOMAINS, drop)
        if removed:
            audit_log(self.data_dir, "RESUME_DOMAIN", domain)
        self.timers.cancel(domain_timer_name(domain))
        logger.info(f"Resumed {domain}")

        await self.request_sync()

    # -------------------------------------------------------------------------
    # RESTART RECOVERY
    # -------------------------------------------------------------------------

    async def restore(self) -> dict[str, list[str]]:
        """
        Bring armed timers in line with the persisted pause windows.

        Future expiries get a timer, timers with no persisted window are
        cancelled, and windows that expired while nothing was running are
        removed. Failing to arm one timer does not stop the others.

        Returns:
            Dict with 'armed', 'cancelled' and 'expired' timer names
        """
        state = await self.store.get(LOCAL, [PAUSED_UNTIL, PAUSED_DOMAINS])
        paused_until = state.get(PAUSED_UNTIL) or 0
        paused_domains = state.get(PAUSED_DOMAINS) or {}
        if not isinstance(paused_domains, dict):
            paused_domains = {}
        now = self.clock()

        wanted: dict[str, tuple[int, Callable[[], Awaitable[Any]]]] = {}
        expired: list[str] = []

        if paused_until:
            if paused_until > now:
                wanted[GLOBAL_TIMER] = (paused_until, self.resume_all)
            else:
                expired.append(GLOBAL_TIMER)

        for domain, until in paused_domains.items():
            name = domain_timer_name(domain)
            if isinstance(until, (int, float)) and until > now:
                wanted[name] = (int(until), self._resume_callback(domain))
            else:
                expired.append(name)

        cancelled = [name for name in self.timers.names() if name not in wanted]
        for name in cancelled:
            self.timers.cancel(name)

        armed: list[str] = []
        for name, (deadline, callback) in wanted.items():
            if self.timers.deadline(name) == deadline:
                continue
            try:
                self.timers.arm(name, deadline, callback)
                armed.append(name)
            except RuntimeError as e:
                logger.warning(f"Failed to re-arm timer {name}: {e}")

        if expired:
            # Windows written since the read above are kept
            def drop_expired(paused: Any) -> Any:
                if not isinstance(paused, dict):
                    return paused
                return {
                    domain: until
                    for domain, until in paused.items()
                    if isinstance(until, (int, float)) and until > now
                }

            await self.store.update(LOCAL, PAUSED_DOMAINS, drop_expired)
            if GLOBAL_TIMER in expired:
                await self.store.update(
                    LOCAL,
                    PAUSED_UNTIL,
                    lambda until: 0 if isinstance(until, (int, float)) and until <= now else until,
                )
            logger.info(f"Cleared {len(expired)} expired pause(s)")

        if armed:
            logger.info(f"Re-armed {len(armed)} snooze timer(s)")
        return {"armed": armed, "cancelled": cancelled, "expired": expired}

    def _resume_callback(self, domain: str) -> Callable[[], Awaitable[None]]:
        return lambda: self.resume_domain(domain)
