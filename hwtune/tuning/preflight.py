"""
Preflight checks run between derivation and apply.

Order:
1. Input validation (flags, --restore-from)
2. Dangerous-flag confirmation (apply mode only)
3. Privilege, architecture, distribution and environment checks
4. Congestion control availability (network tool)

Fatal problems raise; soft ones come back as warning strings so the caller
decides how to show them.
"""

import logging
import os
import platform
from dataclasses import dataclass, replace
from typing import Callable, List, Optional

from ..discovery.host import HostFS
from ..protocol.errors import CongestionUnavailable, PlatformUnsupported, ValidationError
from ..protocol.facts import HardwareFacts
from .profiles import TuningFlags

logger = logging.getLogger(__name__)

SUPPORTED_DISTROS = (
    "ubuntu", "debian", "amzn", "fedora", "arch", "rhel", "centos", "rocky", "almalinux",
)

REQUIRED_DIRS = ("/etc/sysctl.d", "/etc/security/limits.d", "/etc/modprobe.d")


@dataclass(frozen=True)
class DangerousFlag:
    """A flag that needs explicit confirmation before it is applied."""
    attr: str
    option: str
    impact: str
    description: str


DANGEROUS_FLAGS = (
    DangerousFlag("disable_mitigations", "disable-mitigations", "HIGH",
                  "Disables CPU security mitigations (Spectre/Meltdown protection)"),
    DangerousFlag("relax_security", "relax-security", "MEDIUM",
                  "Disables audit daemon and reduces security monitoring"),
    DangerousFlag("disable_services", "disable-services", "MEDIUM",
                  "Disables system services (may affect logging, monitoring, updates)"),
    DangerousFlag("apply_fs_tuning", "apply-fs-tuning", "MEDIUM",
                  "Changes filesystem settings (tune2fs reserved blocks, xfs extent hints, fstrim)"),
)

ConfirmFn = Callable[[DangerousFlag], bool]


class PreflightError(ValidationError):
    """Environment validation failed."""

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__(f"Environment validation failed with {len(errors)} error(s): "
                         + "; ".join(errors))


def validate_inputs(flags: TuningFlags):
    """
    Validate user input before anything is probed.

    Raises:
        ValidationError: on the first bad value
    """
    errors = flags.validate()
    if errors:
        raise ValidationError(errors[0])


def confirm_dangerous_flags(flags: TuningFlags, confirm: ConfirmFn,
                            assume_yes: bool = False) -> TuningFlags:
    """
    Ask for confirmation of every dangerous flag that is set.

    Returns:
        Flags with every declined option turned off
    """
    for danger in DANGEROUS_FLAGS:
        if not getattr(flags, danger.attr):
            continue
        if assume_yes:
            logger.info("--%s confirmed by --yes", danger.option)
            continue
        if not confirm(danger):
            logger.warning("--%s declined; continuing without it", danger.option)
            flags = replace(flags, **{danger.attr: False})
    return flags


def check_distro(facts: HardwareFacts, apply_mode: bool) -> List[str]:
    """
    Raises:
        PlatformUnsupported: unsupported distro in apply mode
    """
    if facts.distro_id in SUPPORTED_DISTROS:
        return []
    if apply_mode:
        raise PlatformUnsupported(
            f"Unsupported distro ID='{facts.distro_id}' "
            f"(supported: {', '.join(SUPPORTED_DISTROS)})"
        )
    return [f"Unsupported distro ID='{facts.distro_id}'; proceeding in read-only mode"]


def check_congestion(facts: HardwareFacts, congestion: str, apply_mode: bool) -> List[str]:
    """
    The selected algorithm must be in the kernel's available list.

    Only enforced when the kernel reports that list at all; the plan itself
    runs `modprobe tcp_<alg>` before setting it.

    Raises:
        CongestionUnavailable: in apply mode
    """
    available = facts.available_congestion
    if not available or congestion in available:
        return []
    message = (f"TCP congestion control '{congestion}' is not available "
               f"(available: {' '.join(available)})")
    if apply_mode:
        raise CongestionUnavailable(message)
    return [message]


def check_privileges(tool: str, machine: Optional[str] = None,
                     euid: Optional[int] = None):
    """
    Raises:
        ValidationError: not root, or (system tool) not x86_64
    """
    euid = os.geteuid() if euid is None else euid
    if euid != 0:
        raise ValidationError(
            "Run as root (sudo) to apply changes (or use --dry-run/--report without sudo)"
        )
    machine = machine or platform.machine()
    if tool == "system" and machine != "x86_64":
        raise ValidationError("x86_64 architecture only")


def check_environment(fs: HostFS, which: Callable[[str], Optional[str]]) -> List[str]:
    """
    Verify the directories and interfaces apply mode writes to.

    Returns:
        Warnings (missing systemctl)

    Raises:
        PreflightError: required directories or /proc/sys missing
    """
    errors = [f"Required directory missing: {d}" for d in REQUIRED_DIRS if not fs.is_dir(d)]
    if not fs.is_dir("/proc/sys"):
        errors.append("/proc/sys not mounted - sysctl settings cannot be applied")
    if errors:
        raise PreflightError(errors)

    warnings = []
    if which("systemctl") is None:
        warnings.append("systemctl not found - service management unavailable")
    return warnings
