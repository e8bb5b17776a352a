"""
StorageScanner - block device discovery and cloud storage classification.
"""

import logging
import re
from typing import List, Tuple

from ..protocol.facts import CloudClass, CloudProvider, StorageDevice
from .host import HostFS

logger = logging.getLogger(__name__)

SKIP_DEVICE = re.compile(r"^(loop|ram|dm-)")


def parse_schedulers(text: str) -> Tuple[str, ...]:
    """'[none] mq-deadline kyber' -> ('none', 'mq-deadline', 'kyber')"""
    return tuple(s.strip("[]") for s in text.split())


def classify_cloud_storage(provider: CloudProvider, dev: str, model: str, vendor: str) -> CloudClass:
    """
    Classify a block device on a cloud instance.

    model/vendor are compared with whitespace removed, as sysfs pads them.
    """
    model = model.replace(" ", "")
    vendor = vendor.replace(" ", "")

    if provider == CloudProvider.AWS:
        if dev.startswith("nvme"):
            if "AmazonElasticBlockStore" in model:
                return CloudClass.EBS
            if "AmazonEC2NVMeInstanceStorage" in model:
                return CloudClass.INSTANCE_STORE
        if dev.startswith("xvd"):
            return CloudClass.EBS

    elif provider == CloudProvider.AZURE:
        if dev.startswith("nvme") and "NVMe" in model:
            return CloudClass.AZURE_LOCAL
        if "Msft" in vendor:
            return CloudClass.AZURE_TEMP if dev == "sdb" else CloudClass.AZURE_DISK

    elif provider == CloudProvider.GCP:
        if "nvme_card" in model or "LocalSSD" in model:
            return CloudClass.GCP_LOCAL_SSD
        if "PersistentDisk" in model:
            return CloudClass.GCP_PD

    elif provider == CloudProvider.ALIBABA:
        if dev.startswith("vd"):
            return CloudClass.CLOUD_DISK
        if dev.startswith("nvme"):
            return CloudClass.ALIBABA_LOCAL

    return CloudClass.LOCAL


class StorageScanner:
    """Enumerates schedulable block devices under /sys/block."""

    def __init__(self, fs: HostFS):
        self.fs = fs

    def scan(self, provider: CloudProvider = CloudProvider.NONE) -> Tuple[StorageDevice, ...]:
        devices: List[StorageDevice] = []
        for dev in self.fs.listdir("/sys/block"):
            if SKIP_DEVICE.match(dev):
                continue
            queue = f"/sys/block/{dev}/queue"
            if not self.fs.exists(f"{queue}/scheduler"):
                continue

            model = self.fs.read(f"/sys/block/{dev}/device/model")
            vendor = self.fs.read(f"/sys/block/{dev}/device/vendor")
            devices.append(StorageDevice(
                name=dev,
                is_ssd=self.fs.read(f"{queue}/rotational", "1") == "0",
                cloud_class=classify_cloud_storage(provider, dev, model, vendor),
                schedulers=parse_schedulers(self.fs.read(f"{queue}/scheduler")),
                nr_requests=self.fs.read_int(f"{queue}/nr_requests", 128),
                model=model,
                vendor=vendor,
            ))

        logger.debug("storage devices: %s", [d.name for d in devices])
        return tuple(devices)
