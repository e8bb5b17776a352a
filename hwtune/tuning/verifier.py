"""
DriftVerifier - compares a saved plan against the live system.

Checks:
- every sysctl key of the plan against its /proc/sys node
- every verifiable scalar write (sysfs, procfs) against its node
- every generated file against the content the plan would write

Read-only; the CLI exits 2 when anything drifted or went missing.
"""

import logging
import re
from typing import Dict, Optional

from ..discovery.host import HostFS
from ..protocol.plan import TuningPlan
from ..protocol.result import DriftEntry, DriftReport, DriftState
from .artifacts import sysctl_path

logger = logging.getLogger(__name__)

HEX_MASK = re.compile(r'^[0-9a-f,]+$')
SELECTED = re.compile(r'\[([^\]]+)\]')
BOOL_TRUE = ("y", "1")
BOOL_FALSE = ("n", "0")


def matches(actual: str, expected: str) -> bool:
    """
    Check whether a live value satisfies an expected one.

    Kernel nodes report values in several shapes: tab separated triples,
    bracketed selections ("[none] mq-deadline") and comma grouped hex
    masks ("00000000,0000000f"). Boolean module parameters read back as Y/N.
    """
    actual = actual.strip()
    expected = expected.strip()

    # Exact match
    if actual == expected:
        return True

    # Numeric comparison
    try:
        if int(actual) == int(expected):
            return True
    except ValueError:
        pass

    # Boolean module parameters read back as Y/N
    if actual.lower() in BOOL_TRUE and expected.lower() in BOOL_TRUE:
        return True
    if actual.lower() in BOOL_FALSE and expected.lower() in BOOL_FALSE:
        return True

    # Whitespace normalized (tcp_rmem and friends)
    if actual.split() == expected.split():
        return True

    # Bracketed selection
    selected = SELECTED.search(actual)
    if selected and selected.group(1) == expected:
        return True

    # CPU mask
    if HEX_MASK.match(actual.lower()) and HEX_MASK.match(expected.lower()):
        try:
            return int(actual.replace(",", ""), 16) == int(expected.replace(",", ""), 16)
        except ValueError:
            return False

    return False


class DriftVerifier:
    """Reads the live state of every value a plan sets."""

    def __init__(self, fs: HostFS):
        self.fs = fs

    def verify(self, plan: TuningPlan) -> DriftReport:
        report = DriftReport(tool=plan.tool)

        sysctl_nodes = set()
        for key, value in plan.sysctl.items():
            node = sysctl_path(key)
            sysctl_nodes.add(node)
            report.entries.append(self._check_node("sysctl", key, node, value))

        for node, value in self._scalar_targets(plan).items():
            if node in sysctl_nodes:
                continue
            report.entries.append(self._check_node("sysfs", node, node, value))

        for path, content in plan.expected_files().items():
            report.entries.append(self._check_file(path, content))

        logger.info("%s verify: %d checked, %d drifted",
                    plan.tool, len(report.entries), len(report.drifted))
        return report

    @staticmethod
    def _scalar_targets(plan: TuningPlan) -> Dict[str, str]:
        """Final value per node; later writes win."""
        targets: Dict[str, str] = {}
        for effect in plan.scalars():
            if effect.verify:
                targets[effect.target] = effect.value
        return targets

    def _check_node(self, kind: str, name: str, node: str, expected: str) -> DriftEntry:
        actual = self._read(node)
        if actual is None:
            return DriftEntry(kind, name, expected, None, DriftState.UNAVAILABLE)
        state = DriftState.MATCH if matches(actual, expected) else DriftState.DRIFT
        return DriftEntry(kind, name, expected, actual, state)

    def _check_file(self, path: str, content: str) -> DriftEntry:
        target = self.fs.path(path)
        if not target.is_file():
            return DriftEntry("file", path, "present", None, DriftState.MISSING)
        actual = target.read_text(errors="replace")
        if actual.rstrip("\n") == content.rstrip("\n"):
            return DriftEntry("file", path, "present", "present", DriftState.MATCH)
        return DriftEntry("file", path, "generated content", "modified", DriftState.DRIFT)

    def _read(self, node: str) -> Optional[str]:
        if not self.fs.exists(node):
            return None
        value = self.fs.read(node, default=None)
        return value
