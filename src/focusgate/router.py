"""Named-command dispatch for UI surfaces."""

import logging
from typing import Any, Awaitable, Callable

from .common import normalize_domain
from .exceptions import CommandValidationError, DomainValidationError, FocusGateError
from .reconciler import PendingGrantLedger
from .scheduler import SnoozeScheduler, validate_minutes
from .sync import SyncCoordinator

logger = logging.getLogger(__name__)

Result = dict[str, Any]


def ok() -> Result:
    return {"ok": True}


def fail(error: str) -> Result:
    return {"ok": False, "error": error}


def _require_domain(msg: dict[str, Any]) -> str:
    raw = msg.get("domain")
    if not raw or not isinstance(raw, str):
        raise DomainValidationError("Invalid domain")
    domain = normalize_domain(raw)
    if not domain:
        raise DomainValidationError(f"Invalid domain: {raw!r}")
    return domain


def _require_minutes(msg: dict[str, Any]) -> float:
    if "minutes" not in msg:
        raise CommandValidationError("Invalid minutes: missing")
    return validate_minutes(msg["minutes"])


class CommandRouter:
    """
    Validates commands and dispatches them to the core.

    Every command resolves to ``{"ok": True}`` or ``{"ok": False, "error": ...}``.
    Validation happens before anything is touched, so a rejected command
    leaves no side effects.
    """

    def __init__(
        self,
        coordinator: SyncCoordinator,
        scheduler: SnoozeScheduler,
        ledger: PendingGrantLedger,
    ) -> None:
        self.coordinator = coordinator
        self.scheduler = scheduler
        self.ledger = ledger
        self._handlers: dict[str, Callable[[dict[str, Any]], Awaitable[None]]] = {
            "syncRules": self._sync_rules,
            "pauseForMinutes": self._pause_for_minutes,
            "resumeNow": self._resume_now,
            "pauseDomain": self._pause_domain,
            "resumeDomain": self._resume_domain,
            "markPending": self._mark_pending,
            "markGranted": self._mark_granted,
        }

    @property
    def commands(self) -> list[str]:
        return sorted(self._handlers)

    async def dispatch(self, msg: Any) -> Result:
        """
        Handle one command message.

        Args:
            msg: Mapping with a ``cmd`` key and the command's fields

        Returns:
            Result dict
        """
        cmd = msg.get("cmd") if isinstance(msg, dict) else None
        handler = self._handlers.get(cmd) if isinstance(cmd, str) else None
        if handler is None:
            return fail("Unknown command")

        try:
            await handler(msg)
        except FocusGateError as e:
            logger.warning(f"Command {cmd} failed: {e}")
            return fail(str(e))
        except OSError as e:
            logger.error(f"Command {cmd} failed: {e}")
            return fail(str(e))
        except Exception as e:
            logger.exception(f"Command {cmd} failed unexpectedly: {e}")
            return fail(str(e) or type(e).__name__)
        return ok()

    # -------------------------------------------------------------------------
    # HANDLERS
    # -------------------------------------------------------------------------

    async def _sync_rules(self, msg: dict[str, Any]) -> None:
        await self.coordinator.request_sync()

    async def _pause_for_minutes(self, msg: dict[str, Any]) -> None:
        await self.scheduler.pause_all(_require_minutes(msg))

    async def _resume_now(self, msg: dict[str, Any]) -> None:
        await self.scheduler.resume_all()

    async def _pause_domain(self, msg: dict[str, Any]) -> None:
        domain = _require_domain(msg)
        await self.scheduler.pause_domain(domain, _require_minutes(msg))

    async def _resume_domain(self, msg: dict[str, Any]) -> None:
        await self.scheduler.resume_domain(_require_domain(msg))

    async def _mark_pending(self, msg: dict[str, Any]) -> None:
        await self.ledger.mark(_require_domain(msg))

    async def _mark_granted(self, msg: dict[str, Any]) -> None:
        await self.ledger.clear(_require_domain(msg))
        await self.coordinator.request_sync()
