"""Agent version lookup: the packaged VERSION file first, then git."""

import os
import subprocess
from pathlib import Path

_HERE = Path(__file__).parent


def _git(*args: str) -> str:
    try:
        result = subprocess.run(
            ["git", *args],
            capture_output=True,
            text=True,
            timeout=5,
            cwd=_HERE,
        )
    except (OSError, subprocess.SubprocessError):
        return ""
    return result.stdout.strip() if result.returncode == 0 else ""


def _read(name: str) -> str:
    path = _HERE / name
    try:
        return path.read_text().strip()
    except OSError:
        return ""


def get_version() -> str:
    """Return the agent version, e.g. ``"0.1.0"``."""
    version = _read("VERSION")
    if version:
        return version
    tag = _git("describe", "--tags", "--abbrev=0")
    if tag:
        return tag[1:] if tag.startswith("v") else tag
    return "0.0.0"


__version__ = get_version()


def get_commit() -> str:
    """Commit SHA from ``VMHOST_GIT_SHA``, a GIT_SHA file or ``git rev-parse``."""
    return (
        os.getenv("VMHOST_GIT_SHA", "").strip()
        or _read("GIT_SHA")
        or _git("rev-parse", "HEAD")
        or "unknown"
    )
