"""Common utilities shared between FocusGate modules."""

import fcntl
import os
import re
import stat
import time
from datetime import datetime
from pathlib import Path
from typing import Optional
from urllib.parse import urlsplit

# =============================================================================
# SHARED CONSTANTS
# =============================================================================

APP_NAME = "focusgate"

# Secure file permissions (owner read/write only)
SECURE_FILE_MODE = stat.S_IRUSR | stat.S_IWUSR  # 0o600

# Domain validation constants (RFC 1035)
MAX_DOMAIN_LENGTH = 253
MAX_LABEL_LENGTH = 63

# Domain validation pattern (RFC 1035 compliant, no trailing dot)
DOMAIN_PATTERN = re.compile(
    r"^(?:[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)*"
    r"[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$"
)

# Scheme prefix such as "https://" or "ftp://"
SCHEME_PATTERN = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


# =============================================================================
# DIRECTORY MANAGEMENT
# =============================================================================


def get_log_dir(data_dir: Path) -> Path:
    """Get the log directory below a data directory."""
    return Path(data_dir) / "logs"


def get_audit_log_file(data_dir: Path) -> Path:
    """Get the audit log file path below a data directory."""
    return get_log_dir(data_dir) / "audit.log"


# =============================================================================
# VALIDATION FUNCTIONS
# =============================================================================


def validate_domain(domain: str) -> bool:
    """
    Validate a domain name according to RFC 1035.

    Args:
        domain: Domain name to validate

    Returns:
        True if valid, False otherwise
    """
    if not domain or not isinstance(domain, str) or len(domain) > MAX_DOMAIN_LENGTH:
        return False
    # Reject trailing dots (FQDN notation not supported)
    if domain.endswith("."):
        return False
    return DOMAIN_PATTERN.match(domain) is not None


def normalize_domain(text: str) -> str:
    """
    Normalize user input (domain or URL) to a bare lowercase domain.

    Strips the scheme, credentials, port, path, query and a leading
    ``www.`` label.

    Args:
        text: Raw user input

    Returns:
        Normalized domain, or an empty string if the input is not a valid domain
    """
    if not text or not isinstance(text, str):
        return ""

    value = text.strip()
    if not value:
        return ""

    if not SCHEME_PATTERN.match(value):
        value = "https://" + value

    try:
        host = urlsplit(value).hostname or ""
    except ValueError:
        return ""

    host = host.lower()
    if host.startswith("www."):
        host = host[4:]

    return host if validate_domain(host) else ""


# =============================================================================
# FILE I/O FUNCTIONS
# =============================================================================


def audit_log(data_dir: Optional[Path], action: str, detail: str = "") -> None:
    """
    Log an action to the audit log file with secure permissions and file locking.

    Args:
        data_dir: Data directory holding the logs folder; None disables auditing
        action: The action being logged (e.g., 'PAUSE', 'RESUME', 'REVOKE')
        detail: Additional details about the action
    """
    if data_dir is None:
        return

    try:
        audit_file = get_audit_log_file(data_dir)
        audit_file.parent.mkdir(parents=True, exist_ok=True)

        # Create file with secure permissions if it doesn't exist
        if not audit_file.exists():
            audit_file.touch(mode=SECURE_FILE_MODE)

        log_entry = " | ".join([datetime.now().isoformat(), action, detail]) + "\n"

        # Write with exclusive lock to prevent corruption from concurrent writes
        with open(audit_file, "a") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            try:
                f.write(log_entry)
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)

    except OSError:
        pass  # Fail silently for audit logging


def write_secure_file(path: Path, content: str) -> None:
    """
    Atomically replace a file with secure permissions (0o600).

    The content is written to a sibling temporary file which is then
    renamed over the target, so readers never observe a partial write.

    Args:
        path: Path to the file
        content: Content to write

    Raises:
        OSError: If the file cannot be written
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")

    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, SECURE_FILE_MODE)
    fd_owned = False
    try:
        f = os.fdopen(fd, "w", encoding="utf-8")
        fd_owned = True  # os.fdopen now owns the fd, don't close manually
        with f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            try:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        os.replace(tmp_path, path)
    except Exception:
        if not fd_owned:
            os.close(fd)
        tmp_path.unlink(missing_ok=True)
        raise


def read_secure_file(path: Path) -> Optional[str]:
    """
    Read content from a file with shared lock.

    Args:
        path: Path to the file

    Returns:
        File content or None if file doesn't exist

    Raises:
        OSError: If the file exists but cannot be read
    """
    path = Path(path)
    if not path.exists():
        return None

    with open(path, encoding="utf-8") as f:
        fcntl.flock(f.fileno(), fcntl.LOCK_SH)
        try:
            return f.read().strip()
        finally:
            fcntl.flock(f.fileno(), fcntl.LOCK_UN)
