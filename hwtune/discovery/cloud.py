"""
Cloud provider and instance type detection.

Priority chain, first match wins:
1. DMI/SMBIOS identity strings (no network)
2. Instance metadata service (only when DMI could not be read)
3. Provider agent services / marker directories

Every metadata request has a hard 1s timeout and the whole chain issues at
most five requests (four identity probes, one instance-type fetch).
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import requests

from ..protocol.facts import CloudProvider, NetTier
from .host import CommandRunner, HostFS

logger = logging.getLogger(__name__)

DMI_ROOT = "/sys/devices/virtual/dmi/id"

AWS_IMDS = "http://169.254.169.254/latest/meta-data/"
GCP_IMDS = "http://169.254.169.254/computeMetadata/v1/"
AZURE_IMDS = "http://169.254.169.254/metadata/instance?api-version=2021-02-01"
ALIBABA_IMDS = "http://100.100.100.200/latest/meta-data/"

GCP_HEADERS = {"Metadata-Flavor": "Google"}
AZURE_HEADERS = {"Metadata": "true"}

# provider -> (url, headers)
INSTANCE_TYPE_URLS: Dict[CloudProvider, Tuple[str, Dict[str, str]]] = {
    CloudProvider.AWS: (AWS_IMDS + "instance-type", {}),
    CloudProvider.AZURE: (
        "http://169.254.169.254/metadata/instance/compute/vmSize"
        "?api-version=2021-02-01&format=text",
        AZURE_HEADERS,
    ),
    CloudProvider.GCP: (GCP_IMDS + "instance/machine-type", GCP_HEADERS),
    CloudProvider.ALIBABA: (ALIBABA_IMDS + "instance/instance-type", {}),
}

# Identity probes in the order they are tried: (provider, url, headers, marker)
IMDS_PROBES = [
    (CloudProvider.AWS, AWS_IMDS, {}, "ami-id"),
    (CloudProvider.GCP, GCP_IMDS, GCP_HEADERS, "instance"),
    (CloudProvider.AZURE, AZURE_IMDS, AZURE_HEADERS, "vmId"),
    (CloudProvider.ALIBABA, ALIBABA_IMDS, {}, "instance-id"),
]

SERVICE_MARKERS = [
    (CloudProvider.AWS, "amazon-ssm-agent"),
    (CloudProvider.AZURE, "waagent"),
    (CloudProvider.GCP, "google-guest-agent"),
]


@dataclass(frozen=True)
class CloudIdentity:
    provider: CloudProvider = CloudProvider.NONE
    instance_type: str = ""
    net_tier: NetTier = NetTier.NONE
    method: str = ""
    confidence: str = ""


class MetadataClient:
    """Thin requests wrapper that never raises."""

    def __init__(self, timeout: float = 1.0, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.session = session or requests.Session()
        self.requests_made = 0

    def fetch(self, url: str, headers: Optional[Dict[str, str]] = None) -> str:
        self.requests_made += 1
        try:
            resp = self.session.get(url, headers=headers or {}, timeout=self.timeout)
        except requests.RequestException as e:
            logger.debug("metadata fetch failed: %s (%s)", url, e)
            return ""
        if resp.status_code != 200:
            logger.debug("metadata fetch %s returned %s", url, resp.status_code)
            return ""
        return resp.text.strip()


def classify_net_tier(provider: CloudProvider, instance_type: str) -> NetTier:
    """Map a provider instance type string to a network tier."""
    t = instance_type
    if not t:
        return NetTier.NONE

    if provider == CloudProvider.AWS:
        if "n." in t:
            return NetTier.HIGH
        if any(s in t for s in ("metal", ".24xl", ".48xl")):
            return NetTier.ULTRA
        if any(s in t for s in (".16xl", ".12xl", ".8xl")):
            return NetTier.HIGH
        if any(s in t for s in (".4xl", ".2xl")):
            return NetTier.MEDIUM
        return NetTier.LOW

    if provider == CloudProvider.AZURE:
        if any(s in t for s in ("_v5", "96", "64")):
            return NetTier.ULTRA
        if any(s in t for s in ("32", "16")):
            return NetTier.HIGH
        if any(s in t for s in ("8", "4")):
            return NetTier.MEDIUM
        return NetTier.LOW

    if provider == CloudProvider.GCP:
        if "-96" in t or "-64" in t or t.startswith("c3-"):
            return NetTier.ULTRA
        if "-32" in t or "-16" in t:
            return NetTier.HIGH
        return NetTier.MEDIUM

    if provider == CloudProvider.ALIBABA:
        if "8xlarge" in t or "16xlarge" in t:
            return NetTier.HIGH
        if "4xlarge" in t or "2xlarge" in t:
            return NetTier.MEDIUM
        return NetTier.LOW

    return NetTier.NONE


class CloudDetector:
    """Runs the provider detection chain for a virtualized host."""

    def __init__(
        self,
        fs: HostFS,
        runner: CommandRunner,
        metadata: Optional[MetadataClient] = None,
        use_metadata: bool = True,
    ):
        self.fs = fs
        self.runner = runner
        self.metadata = metadata or MetadataClient()
        self.use_metadata = use_metadata

    def detect(self) -> CloudIdentity:
        provider, method = self._from_dmi()

        if provider == CloudProvider.NONE and method == "unreadable" and self.use_metadata:
            provider = self._from_imds()
            method = "imds" if provider != CloudProvider.NONE else ""

        if provider == CloudProvider.NONE:
            provider = self._from_services()
            method = "service" if provider != CloudProvider.NONE else ""

        if provider == CloudProvider.NONE:
            logger.debug("no cloud provider identified")
            return CloudIdentity()

        instance_type = self._instance_type(provider)
        if instance_type:
            confidence = "high" if method == "dmi" else "medium"
        else:
            confidence = "low"

        identity = CloudIdentity(
            provider=provider,
            instance_type=instance_type,
            net_tier=classify_net_tier(provider, instance_type),
            method=method,
            confidence=confidence,
        )
        logger.debug("cloud: %s", identity)
        return identity

    def _from_dmi(self) -> Tuple[CloudProvider, str]:
        """Returns (provider, method); method is 'unreadable' when DMI is absent."""
        if not self.fs.exists(f"{DMI_ROOT}/board_vendor"):
            return CloudProvider.NONE, "unreadable"

        vendor = self.fs.read(f"{DMI_ROOT}/board_vendor").lower()
        bios = self.fs.read(f"{DMI_ROOT}/bios_vendor").lower()
        product = self.fs.read(f"{DMI_ROOT}/product_name").lower()
        asset = self.fs.read(f"{DMI_ROOT}/chassis_asset_tag").lower()

        if "amazon" in vendor or "amazon" in bios or "ec2" in product:
            return CloudProvider.AWS, "dmi"
        if "microsoft" in vendor or "azure" in asset:
            return CloudProvider.AZURE, "dmi"
        if "google" in vendor or "google" in product:
            return CloudProvider.GCP, "dmi"
        if "alibaba" in vendor or "alibaba" in product or "ecs" in product:
            return CloudProvider.ALIBABA, "dmi"
        return CloudProvider.NONE, ""

    def _from_imds(self) -> CloudProvider:
        for provider, url, headers, marker in IMDS_PROBES:
            if marker in self.metadata.fetch(url, headers):
                return provider
        return CloudProvider.NONE

    def _service_active(self, name: str) -> bool:
        return self.runner.run(["systemctl", "is-active", "--quiet", name]).ok

    def _from_services(self) -> CloudProvider:
        if self.fs.is_dir("/etc/amazon"):
            return CloudProvider.AWS
        for provider, service in SERVICE_MARKERS:
            if self._service_active(service):
                return provider
        return CloudProvider.NONE

    def _instance_type(self, provider: CloudProvider) -> str:
        if not self.use_metadata:
            return ""
        url, headers = INSTANCE_TYPE_URLS[provider]
        value = self.metadata.fetch(url, headers)
        if provider == CloudProvider.GCP:
            value = value.rsplit("/", 1)[-1]
        return value
