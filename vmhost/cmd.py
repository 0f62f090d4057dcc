"""Shared command utilities for host tooling (grubby, qemu-img, systemctl)."""
from __future__ import annotations

import logging
import os
import shutil
import subprocess

from vmhost.config import settings
from vmhost.errors import ExternalError, PrivilegeError, ToolMissing

logger = logging.getLogger(__name__)


def run_cmd(cmd: list[str], timeout: float | None = None) -> tuple[int, str, str]:
    """Run a command and capture its output.

    Args:
        cmd: Command and arguments as list
        timeout: Seconds before the command is killed

    Returns:
        Tuple of (return_code, stdout, stderr)

    Raises:
        ToolMissing: if the executable does not exist
        ExternalError: if the command times out
    """
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout or settings.command_timeout,
        )
    except FileNotFoundError as e:
        raise ToolMissing(f"{cmd[0]} is not installed") from e
    except subprocess.TimeoutExpired as e:
        raise ExternalError(" ".join(cmd), f"timed out after {e.timeout}s") from e
    return result.returncode, result.stdout, result.stderr


def has_binary(name: str) -> bool:
    return shutil.which(name) is not None


def is_root() -> bool:
    return os.geteuid() == 0


def passwordless_sudo() -> bool:
    """True if ``sudo -n`` can run commands without prompting."""
    if not has_binary("sudo"):
        return False
    code, _, stderr = run_cmd(["sudo", "-n", "true"])
    if code != 0:
        logger.debug("sudo -n unavailable: %s", stderr.strip())
    return code == 0


def require_privileges(what: str = "this operation") -> None:
    """Raise PrivilegeError unless running as root or with password-less sudo."""
    if is_root():
        return
    if not passwordless_sudo():
        raise PrivilegeError(f"root or password-less sudo is required to run {what}")


def privileged(cmd: list[str]) -> list[str]:
    """Prefix ``cmd`` with ``sudo -n`` unless running as root."""
    if is_root():
        return cmd
    require_privileges(cmd[0])
    return ["sudo", "-n", *cmd]


def check_output(cmd: list[str], sudo: bool = False, timeout: float | None = None) -> str:
    """Run a command and return stdout, raising ExternalError on failure."""
    full = privileged(cmd) if sudo else cmd
    logger.debug("Executing: %s", " ".join(full))
    code, stdout, stderr = run_cmd(full, timeout=timeout)
    if code != 0:
        message = stderr.strip() or stdout.strip() or f"exit status {code}"
        raise ExternalError(" ".join(cmd), message)
    return stdout
