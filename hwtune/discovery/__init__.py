"""
Discovery module - read-only probing of the host.

Components:
- FactCollector: builds HardwareFacts (CPU, memory, OS, capabilities)
- CloudDetector: cloud provider / instance type / network tier
- StorageScanner: block devices and cloud storage classes
- NicScanner: interfaces, ethtool capabilities, lower-device edges
"""

from .host import CommandRunner, CommandResult, HostFS
from .cloud import CloudDetector, CloudIdentity, MetadataClient, classify_net_tier
from .storage import StorageScanner, classify_cloud_storage
from .network import NicScanner
from .system import FactCollector, CollectorConfig

__all__ = [
    "CommandRunner", "CommandResult", "HostFS",
    "CloudDetector", "CloudIdentity", "MetadataClient", "classify_net_tier",
    "StorageScanner", "classify_cloud_storage",
    "NicScanner",
    "FactCollector", "CollectorConfig",
]
