"""
Mock components for testing hwtune.

These mocks use realistic probe output (golden_data.py) and fake host
trees so the collector, executor, backup manager and engine run end to
end without root, real devices or network access.
"""

from .golden_data import (
    GB_KB,
    bare_metal_server,
    small_laptop,
    cloud_vm,
    azure_accelerated,
    with_nic,
    param_values,
)
from .host_tree import FakeHostTree
from .mock_runner import MockCommandRunner, MockMetadataClient

__all__ = [
    # Facts
    'GB_KB',
    'bare_metal_server',
    'small_laptop',
    'cloud_vm',
    'azure_accelerated',
    'with_nic',
    'param_values',
    # Host
    'FakeHostTree',
    'MockCommandRunner',
    'MockMetadataClient',
]
