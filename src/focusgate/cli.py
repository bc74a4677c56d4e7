"""Command-line interface for FocusGate using Click."""

import asyncio
import logging
import os
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import click
from rich.console import Console

from . import __version__
from .common import (
    audit_log,
    get_log_dir,
    normalize_domain,
    now_ms,
    read_secure_file,
    write_secure_file,
)
from .config import PID_FILE, load_config
from .exceptions import ConfigurationError, FocusGateError
from .permissions import ALL_HOSTS, domain_origins
from .rules import active_domains_from_rules, is_owned_rule_id
from .service import FocusGate
from .storage import BLOCKED_DOMAINS, PAUSED_DOMAINS, PAUSED_UNTIL, PENDING_GRANTS, SYNC
from .sync import canonical_blocklist

T = TypeVar("T")

# Wall-clock check for timers that slept through a host suspend
WALL_CLOCK_TICK_SECONDS = 30

# =============================================================================
# LOGGING SETUP
# =============================================================================


def setup_logging(data_dir: Path, verbose: bool = False) -> None:
    """Setup logging configuration.

    This function configures logging with both file and console handlers.
    It avoids adding duplicate handlers if called multiple times.

    Args:
        data_dir: Data directory holding the logs folder
        verbose: If True, sets log level to DEBUG; otherwise INFO.
    """
    log_dir = get_log_dir(data_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    level = logging.DEBUG if verbose else logging.INFO
    root_logger = logging.getLogger()

    # Avoid adding duplicate handlers
    if root_logger.handlers:
        root_logger.setLevel(level)
        return

    root_logger.setLevel(level)
    formatter = logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")

    file_handler = logging.FileHandler(log_dir / "app.log")
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(level if verbose else logging.WARNING)
    root_logger.addHandler(console_handler)


logger = logging.getLogger(__name__)
console = Console(highlight=False)


# =============================================================================
# HELPERS
# =============================================================================


def _load(config_dir: Optional[Path], verbose: bool = False) -> dict[str, Any]:
    try:
        config = load_config(config_dir)
    except ConfigurationError as e:
        console.print(f"\n  [red]Config error: {e}[/red]\n", highlight=False)
        sys.exit(1)
    setup_logging(config["data_dir"], verbose)
    return config


def run_engine(config: dict[str, Any], action: Callable[[FocusGate], Awaitable[T]]) -> T:
    """Run ``action`` against a freshly wired engine, then shut it down."""

    async def runner() -> T:
        engine = FocusGate.from_config(config)
        engine.attach()
        try:
            return await action(engine)
        finally:
            await engine.shutdown()

    return asyncio.run(runner())


def get_pid_file(data_dir: Path) -> Path:
    """Get the daemon pid file path."""
    return Path(data_dir) / PID_FILE


def notify_daemon(data_dir: Path) -> bool:
    """
    Ask a running daemon to reload state and re-arm its timers.

    Returns:
        True if a daemon was signalled
    """
    pid_file = get_pid_file(data_dir)
    try:
        content = read_secure_file(pid_file)
    except OSError:
        return False
    if not content:
        return False

    try:
        pid = int(content)
        os.kill(pid, signal.SIGHUP)
        logger.debug(f"Signalled daemon {pid}")
        return True
    except ValueError:
        logger.warning(f"Invalid pid file content, removing: {content[:50]}")
    except ProcessLookupError:
        logger.debug("Removing stale pid file")
    except PermissionError as e:
        logger.warning(f"Cannot signal daemon: {e}")
        return False
    pid_file.unlink(missing_ok=True)
    return False


def _finish(config: dict[str, Any], result: dict[str, Any], message: str) -> None:
    if not result.get("ok"):
        console.print(f"\n  [red]Error: {result.get('error')}[/red]\n", highlight=False)
        sys.exit(1)
    notify_daemon(config["data_dir"])
    console.print(f"\n  {message}\n")


def _format_ts(ts: int) -> str:
    try:
        return datetime.fromtimestamp(ts / 1000).strftime("%H:%M")
    except (OverflowError, ValueError, OSError):
        return "unknown"


def _require_domain(raw: str) -> str:
    domain = normalize_domain(raw)
    if not domain:
        console.print(f"\n  [red]Error: Invalid domain format '{raw}'[/red]\n", highlight=False)
        sys.exit(1)
    return domain


config_dir_option = click.option(
    "--config-dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Config directory (default: auto-detect)",
)


# =============================================================================
# CLICK CLI
# =============================================================================


@click.group(invoke_without_command=True)
@click.version_option(version=__version__, prog_name="focusgate")
@click.option("--no-color", is_flag=True, help="Disable colored output")
@click.pass_context
def main(ctx: click.Context, no_color: bool) -> None:
    """FocusGate - Permission-aware domain blocking with snooze timers."""
    if no_color:
        console.no_color = True

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


# -----------------------------------------------------------------------------
# BLOCKLIST
# -----------------------------------------------------------------------------


@main.command()
@click.argument("domain")
@click.option(
    "--grant/--no-grant",
    default=True,
    help="Grant host access for DOMAIN (without it the domain is dropped once its "
    "pending window ends)",
)
@config_dir_option
def add(domain: str, grant: bool, config_dir: Optional[Path]) -> None:
    """Add DOMAIN to the blocklist."""
    domain = _require_domain(domain)
    config = _load(config_dir)

    async def action(engine: FocusGate) -> dict[str, Any]:
        result = await engine.dispatch({"cmd": "markPending", "domain": domain})
        if not result["ok"]:
            return result
        current = await engine.store.get(SYNC, BLOCKED_DOMAINS)
        domains = canonical_blocklist(current.get(BLOCKED_DOMAINS, []) + [domain])
        await engine.store.set(SYNC, {BLOCKED_DOMAINS: domains})
        if not grant:
            return await engine.dispatch({"cmd": "syncRules"})
        await engine.grants.grant(domain_origins(domain))
        audit_log(engine.data_dir, "GRANT", domain)
        return await engine.dispatch({"cmd": "markGranted", "domain": domain})

    try:
        result = run_engine(config, action)
    except FocusGateError as e:
        result = {"ok": False, "error": str(e)}

    if result.get("ok"):
        audit_log(config["data_dir"], "ADD", domain)
    _finish(config, result, f"[green]Added: {domain}[/green]")
    if not grant:
        seconds = config["pending_grant_ms"] // 1000
        console.print(
            f"  [yellow]No access granted: run 'focusgate grant {domain}' within "
            f"{seconds}s to keep it[/yellow]\n"
        )


@main.command()
@click.argument("domain")
@config_dir_option
def remove(domain: str, config_dir: Optional[Path]) -> None:
    """Remove DOMAIN from the blocklist."""
    domain = _require_domain(domain)
    config = _load(config_dir)

    async def action(engine: FocusGate) -> dict[str, Any]:
        current = await engine.store.get(SYNC, BLOCKED_DOMAINS)
        domains = canonical_blocklist(current.get(BLOCKED_DOMAINS, []))
        if domain not in domains:
            return {"ok": False, "error": f"'{domain}' is not in the blocklist"}
        domains.remove(domain)
        await engine.store.set(SYNC, {BLOCKED_DOMAINS: domains})
        return await engine.dispatch({"cmd": "syncRules"})

    try:
        result = run_engine(config, action)
    except FocusGateError as e:
        result = {"ok": False, "error": str(e)}

    if result.get("ok"):
        audit_log(config["data_dir"], "REMOVE", domain)
    _finish(config, result, f"[green]Removed: {domain}[/green]")


@main.command("list")
@config_dir_option
def list_domains(config_dir: Optional[Path]) -> None:
    """List blocked domains."""
    config = _load(config_dir)

    async def action(engine: FocusGate) -> list[str]:
        current = await engine.store.get(SYNC, BLOCKED_DOMAINS)
        return canonical_blocklist(current.get(BLOCKED_DOMAINS, []))

    domains = run_engine(config, action)
    if not domains:
        console.print("\n  No domains blocked\n")
        return
    console.print()
    for domain in domains:
        console.print(f"  {domain}")
    console.print()


# -----------------------------------------------------------------------------
# PERMISSIONS
# -----------------------------------------------------------------------------


@main.command()
@click.argument("domain", required=False)
@click.option("--all", "all_hosts", is_flag=True, help="Grant access to every host")
@config_dir_option
def grant(domain: Optional[str], all_hosts: bool, config_dir: Optional[Path]) -> None:
    """Grant host access for DOMAIN (or --all)."""
    if not domain and not all_hosts:
        raise click.UsageError("Provide a DOMAIN or --all")
    origins = [ALL_HOSTS] if all_hosts else domain_origins(_require_domain(domain))
    config = _load(config_dir)

    async def action(engine: FocusGate) -> dict[str, Any]:
        await engine.grants.grant(origins)
        return await engine.dispatch({"cmd": "syncRules"})

    try:
        result = run_engine(config, action)
    except FocusGateError as e:
        result = {"ok": False, "error": str(e)}

    if result.get("ok"):
        audit_log(config["data_dir"], "GRANT", "all hosts" if all_hosts else domain)
    _finish(config, result, "[green]Access granted[/green]")


@main.command()
@click.argument("domain", required=False)
@click.option("--all", "all_hosts", is_flag=True, help="Revoke access to every host")
@config_dir_option
def revoke(domain: Optional[str], all_hosts: bool, config_dir: Optional[Path]) -> None:
    """Revoke host access for DOMAIN (or --all)."""
    if not domain and not all_hosts:
        raise click.UsageError("Provide a DOMAIN or --all")
    origins = [ALL_HOSTS] if all_hosts else domain_origins(_require_domain(domain))
    config = _load(config_dir)

    async def action(engine: FocusGate) -> dict[str, Any]:
        await engine.grants.revoke(origins)
        return await engine.dispatch({"cmd": "syncRules"})

    try:
        result = run_engine(config, action)
    except FocusGateError as e:
        result = {"ok": False, "error": str(e)}

    _finish(config, result, "[yellow]Access revoked[/yellow]")


# -----------------------------------------------------------------------------
# SYNC AND SNOOZE
# -----------------------------------------------------------------------------


@main.command()
@click.option("-v", "--verbose", is_flag=True, help="Verbose output")
@config_dir_option
def sync(verbose: bool, config_dir: Optional[Path]) -> None:
    """Reconcile the blocklist into enforcement rules."""
    config = _load(config_dir, verbose)
    result = run_engine(config, lambda engine: engine.dispatch({"cmd": "syncRules"}))
    _finish(config, result, "[green]Rules synced[/green]")


@main.command()
@click.argument("minutes", required=False, type=click.IntRange(min=1))
@config_dir_option
def pause(minutes: Optional[int], config_dir: Optional[Path]) -> None:
    """Pause all blocking for MINUTES (default: 30)."""
    config = _load(config_dir)
    minutes = minutes or config["default_pause_minutes"]
    result = run_engine(
        config, lambda engine: engine.dispatch({"cmd": "pauseForMinutes", "minutes": minutes})
    )
    _finish(config, result, f"[yellow]Blocking paused for {minutes} minutes[/yellow]")


@main.command()
@config_dir_option
def resume(config_dir: Optional[Path]) -> None:
    """Resume all blocking immediately."""
    config = _load(config_dir)
    result = run_engine(config, lambda engine: engine.dispatch({"cmd": "resumeNow"}))
    _finish(config, result, "[green]Blocking resumed[/green]")


@main.command("pause-domain")
@click.argument("domain")
@click.argument("minutes", type=click.IntRange(min=1))
@config_dir_option
def pause_domain(domain: str, minutes: int, config_dir: Optional[Path]) -> None:
    """Pause blocking of DOMAIN for MINUTES."""
    config = _load(config_dir)
    result = run_engine(
        config,
        lambda engine: engine.dispatch(
            {"cmd": "pauseDomain", "domain": domain, "minutes": minutes}
        ),
    )
    _finish(config, result, f"[yellow]{domain} paused for {minutes} minutes[/yellow]")


@main.command("resume-domain")
@click.argument("domain")
@config_dir_option
def resume_domain(domain: str, config_dir: Optional[Path]) -> None:
    """Resume blocking of DOMAIN immediately."""
    config = _load(config_dir)
    result = run_engine(
        config, lambda engine: engine.dispatch({"cmd": "resumeDomain", "domain": domain})
    )
    _finish(config, result, f"[green]{domain} resumed[/green]")


# -----------------------------------------------------------------------------
# INSPECTION
# -----------------------------------------------------------------------------


@main.command()
@config_dir_option
def status(config_dir: Optional[Path]) -> None:
    """Show current blocking status."""
    config = _load(config_dir)

    async def action(engine: FocusGate) -> dict[str, Any]:
        state = await engine.coordinator.read_state()
        domains = canonical_blocklist(state[BLOCKED_DOMAINS])
        access = {d: await engine.oracle.has_access(d) for d in domains}
        enforced = set(await active_domains_from_rules(engine.rule_table))
        return {"state": state, "domains": domains, "access": access, "enforced": enforced}

    info = run_engine(config, action)
    state = info["state"]
    now = now_ms()

    console.print("\n  [bold]FocusGate Status[/bold]")
    console.print("  [bold]----------------[/bold]")
    console.print(f"  Data dir: {config['data_dir']}")

    paused_until = state[PAUSED_UNTIL]
    if paused_until and paused_until > now:
        console.print(f"  Pause: [yellow]ACTIVE until {_format_ts(paused_until)}[/yellow]")
    else:
        console.print("  Pause: [green]inactive[/green]")

    daemon = read_secure_file(get_pid_file(config["data_dir"]))
    console.print(f"  Daemon: {'pid ' + daemon if daemon else '[yellow]not running[/yellow]'}")

    enforced = info["enforced"]

    console.print(f"\n  [bold]Domains ({len(info['domains'])}):[/bold]")
    for domain in info["domains"]:
        pending_until = state[PENDING_GRANTS].get(domain, 0)
        domain_paused = state[PAUSED_DOMAINS].get(domain, 0)
        if domain in enforced:
            status_text = "[red]blocked[/red]"
        elif domain_paused and domain_paused > now:
            status_text = f"[yellow]paused until {_format_ts(domain_paused)}[/yellow]"
        else:
            status_text = "[green]not enforced[/green]"
        if not info["access"][domain]:
            status_text += " [blue]\\[pending][/blue]" if pending_until > now else " [red]\\[no access][/red]"
        console.print(f"    {domain:<30} {status_text}")
    console.print()


@main.command()
@click.option("--all", "show_all", is_flag=True, help="Include rules owned by other subsystems")
@config_dir_option
def rules(show_all: bool, config_dir: Optional[Path]) -> None:
    """Show installed enforcement rules."""
    config = _load(config_dir)
    installed = run_engine(config, lambda engine: engine.rule_table.get_rules())

    console.print()
    for rule in installed:
        if not is_owned_rule_id(rule["id"]) and not show_all:
            continue
        condition = rule.get("condition", {})
        redirect = rule.get("action", {}).get("redirect", {}).get("extensionPath", "")
        console.print(f"  {rule['id']:>7}  {condition.get('urlFilter', ''):<32} -> {redirect}")
    console.print()


# -----------------------------------------------------------------------------
# DAEMON
# -----------------------------------------------------------------------------


@main.command()
@click.option("-v", "--verbose", is_flag=True, help="Verbose output")
@config_dir_option
def run(verbose: bool, config_dir: Optional[Path]) -> None:
    """Run the enforcement daemon (keeps snooze timers armed)."""
    config = _load(config_dir, verbose)
    data_dir = Path(config["data_dir"])
    pid_file = get_pid_file(data_dir)

    async def daemon() -> None:
        loop = asyncio.get_running_loop()
        stop = asyncio.Event()
        engine = FocusGate.from_config(config)

        def on_hangup() -> None:
            task = loop.create_task(engine.refresh())
            task.add_done_callback(
                lambda t: t.cancelled()
                or t.exception() is None
                or logger.error(f"Refresh failed: {t.exception()}")
            )

        loop.add_signal_handler(signal.SIGHUP, on_hangup)
        loop.add_signal_handler(signal.SIGINT, stop.set)
        loop.add_signal_handler(signal.SIGTERM, stop.set)

        write_secure_file(pid_file, str(os.getpid()))
        try:
            restored = await engine.on_startup()
            logger.info(f"Daemon started, {len(restored['armed'])} snooze timer(s) armed")
            while not stop.is_set():
                try:
                    await asyncio.wait_for(stop.wait(), timeout=WALL_CLOCK_TICK_SECONDS)
                except asyncio.TimeoutError:
                    engine.tick()
        finally:
            await engine.shutdown()
            pid_file.unlink(missing_ok=True)
            logger.info("Daemon stopped")

    console.print(f"\n  FocusGate daemon running (pid {os.getpid()}), Ctrl+C to stop\n")
    try:
        asyncio.run(daemon())
    except FocusGateError as e:
        console.print(f"  [red]Error: {e}[/red]", highlight=False)
        sys.exit(1)


if __name__ == "__main__":
    main()
