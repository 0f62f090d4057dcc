"""irqbalance and tuned profile management."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from vmhost import cmd
from vmhost.errors import ExternalError, NotFoundError, ToolMissing, ValidationError
from vmhost.metrics import track_operation

logger = logging.getLogger(__name__)

IRQBALANCE_UNIT = "irqbalance.service"
TUNED_ADM = "tuned-adm"

_ENABLED_UNIT_STATES = {"enabled", "enabled-runtime", "linked", "linked-runtime", "alias"}


def _maybe_sudo() -> bool:
    return not cmd.is_root() and cmd.passwordless_sudo()


def _require(binary: str) -> None:
    if not cmd.has_binary(binary):
        raise ToolMissing(f"{binary} is required")


# ---------------------------------------------------------------------------
# irqbalance
# ---------------------------------------------------------------------------


@dataclass
class IrqBalanceState:
    enabled: bool
    active: bool
    unit: str = IRQBALANCE_UNIT


def parse_systemctl_properties(output: str) -> dict[str, str]:
    props = {}
    for line in output.splitlines():
        key, sep, value = line.strip().partition("=")
        if sep:
            props[key.strip()] = value.strip()
    return props


class IrqBalance:
    def __init__(self, run: Callable[..., str] = cmd.check_output):
        self._run = run

    def get_state(self) -> IrqBalanceState:
        _require("systemctl")
        output = self._run(
            [
                "systemctl", "show", IRQBALANCE_UNIT,
                "--property=LoadState",
                "--property=UnitFileState",
                "--property=ActiveState",
            ],
            sudo=_maybe_sudo(),
        )
        props = parse_systemctl_properties(output)
        if props.get("LoadState", "").lower() == "not-found":
            raise NotFoundError(f"{IRQBALANCE_UNIT} not found")
        return IrqBalanceState(
            enabled=props.get("UnitFileState", "").lower() in _ENABLED_UNIT_STATES,
            active=props.get("ActiveState", "").lower() == "active",
        )

    def set_enabled(self, enabled: bool) -> IrqBalanceState:
        _require("systemctl")
        action = "enable" if enabled else "disable"
        cmd.require_privileges("systemctl")
        with track_operation("set_irqbalance"):
            self._run(["systemctl", action, "--now", IRQBALANCE_UNIT], sudo=_maybe_sudo())
        logger.info(f"irqbalance {action}d")
        return self.get_state()


# ---------------------------------------------------------------------------
# tuned
# ---------------------------------------------------------------------------


@dataclass
class TunedProfile:
    name: str
    description: str = ""
    active: bool = False


@dataclass
class TunedProfiles:
    profiles: list[TunedProfile] = field(default_factory=list)
    current: str = ""


def parse_tuned_list(output: str) -> TunedProfiles:
    """Parse ``tuned-adm list`` output.

    Profiles appear as ``- name - description`` lines; the active one is
    named on a ``Current active profile:`` line.
    """
    result = TunedProfiles()
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        if line.startswith("Current active profile:"):
            result.current = line[len("Current active profile:"):].strip()
            continue
        if line.lower() == "no current active profile.":
            result.current = ""
            continue
        if not line.startswith("- "):
            continue
        rest = line[2:].strip()
        name, sep, description = rest.partition(" - ")
        name = name.strip()
        if name:
            result.profiles.append(TunedProfile(name, description.strip() if sep else ""))

    if not result.profiles and not output.strip():
        raise ExternalError("tuned-adm list", "empty output")
    for profile in result.profiles:
        profile.active = profile.name == result.current
    return result


class Tuned:
    def __init__(self, run: Callable[..., str] = cmd.check_output):
        self._run = run

    def list_profiles(self) -> TunedProfiles:
        _require(TUNED_ADM)
        return parse_tuned_list(self._run([TUNED_ADM, "list"]))

    def set_profile(self, profile: str) -> TunedProfiles:
        profile = profile.strip()
        if not profile:
            raise ValidationError("tuned profile is required")
        _require(TUNED_ADM)
        cmd.require_privileges(TUNED_ADM)
        with track_operation("set_tuned_profile"):
            self._run([TUNED_ADM, "profile", profile], sudo=_maybe_sudo())
        logger.info(f"tuned profile set to {profile}")
        return self.list_profiles()
