"""
NicScanner - network interface discovery.

Reads sysfs for driver/speed/MTU/queues and parses ethtool output for
ring, channel, feature, coalescing, private-flag and EEE capabilities.
A paravirtual NIC with an SR-IOV virtual function underneath exposes a
`lower_<iface>` link; that edge is recorded as NicFacts.backed_by.
"""

import logging
import re
from typing import Dict, List, Optional, Tuple

from ..protocol.facts import NicFacts
from .host import CommandRunner, HostFS

logger = logging.getLogger(__name__)

SKIP_IFACE = re.compile(r"^(lo|docker.*|br-.*|veth.*|virbr.*)$")
MTU_FALLBACK = 1500


def _preset_section(text: str) -> List[str]:
    """Lines between 'Pre-set maximums' and 'Current hardware settings'."""
    lines: List[str] = []
    inside = False
    for line in text.splitlines():
        if line.startswith("Pre-set"):
            inside = True
            continue
        if line.startswith("Current"):
            break
        if inside:
            lines.append(line.strip())
    return lines


def _preset_value(text: str, label: str) -> int:
    for line in _preset_section(text):
        match = re.match(rf"^{label}:\s+(\d+)", line)
        if match:
            return int(match.group(1))
    return 0


def parse_ring_max(text: str) -> Tuple[int, int]:
    """ethtool -g -> (rx_max, tx_max)"""
    return _preset_value(text, "RX"), _preset_value(text, "TX")


def parse_combined_max(text: str) -> int:
    """ethtool -l -> max combined channels"""
    return _preset_value(text, "Combined")


def parse_features(text: str) -> Dict[str, str]:
    """ethtool -k -> {feature: 'on'|'off'}"""
    features: Dict[str, str] = {}
    for line in text.splitlines():
        match = re.match(r"^([\w-]+):\s+(on|off)\b", line.strip())
        if match:
            features[match.group(1)] = match.group(2)
    return features


def parse_priv_flags(text: str) -> Tuple[str, ...]:
    """ethtool --show-priv-flags -> flag names"""
    flags = []
    for line in text.splitlines():
        if line.startswith("Private flags"):
            continue
        match = re.match(r"^([\w-]+)\s*:\s*(on|off)", line.strip())
        if match:
            flags.append(match.group(1))
    return tuple(flags)


def parse_maxmtu(text: str) -> int:
    """ip -d link show -> maxmtu value"""
    match = re.search(r"\bmaxmtu\s+(\d+)", text)
    return int(match.group(1)) if match else MTU_FALLBACK


class NicScanner:
    """Collects NicFacts for every physical/paravirtual interface."""

    def __init__(self, fs: HostFS, runner: CommandRunner):
        self.fs = fs
        self.runner = runner

    def interfaces(self) -> List[str]:
        names = []
        for iface in self.fs.listdir("/sys/class/net"):
            if SKIP_IFACE.match(iface):
                continue
            if not self.fs.exists(f"/sys/class/net/{iface}/device"):
                continue
            names.append(iface)
        return names

    def scan(self) -> Tuple[NicFacts, ...]:
        nics = []
        for iface in self.interfaces():
            nic = self.scan_interface(iface)
            if nic is not None:
                nics.append(nic)
        logger.debug("interfaces: %s", [(n.iface, n.driver) for n in nics])
        return tuple(nics)

    def _ethtool(self, *args: str) -> str:
        result = self.runner.run(["ethtool", *args])
        return result.stdout if result.ok else ""

    def scan_interface(self, iface: str) -> Optional[NicFacts]:
        base = f"/sys/class/net/{iface}"
        driver = self.fs.readlink_name(f"{base}/device/driver")
        if not driver:
            logger.debug("%s: no driver link, skipping", iface)
            return None

        speed = self.fs.read_int(f"{base}/speed", 1000)
        if speed <= 0:
            speed = 1000

        rx_max, tx_max = parse_ring_max(self._ethtool("-g", iface))
        coalesce = self._ethtool("-c", iface)
        eee = self._ethtool("--show-eee", iface)

        queues = self.fs.listdir(f"{base}/queues")
        lower = [e[len("lower_"):] for e in self.fs.listdir(base) if e.startswith("lower_")]

        return NicFacts(
            iface=iface,
            driver=driver,
            speed_mbps=speed,
            mtu=self.fs.read_int(f"{base}/mtu", 1500),
            mtu_max=parse_maxmtu(self.runner.output(["ip", "-d", "link", "show", iface])),
            ring_max_rx=rx_max,
            ring_max_tx=tx_max,
            queue_max=parse_combined_max(self._ethtool("-l", iface)),
            features=parse_features(self._ethtool("-k", iface)),
            adaptive_coalesce="Adaptive RX" in coalesce,
            priv_flags=parse_priv_flags(self._ethtool("--show-priv-flags", iface)),
            eee_supported=bool(eee.strip()),
            backed_by=lower[0] if lower else None,
            rx_queues=tuple(q for q in queues if q.startswith("rx-")),
            tx_queues=tuple(q for q in queues if q.startswith("tx-")),
        )
