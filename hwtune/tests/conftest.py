"""
Shared fixtures for hwtune tests.
"""

from datetime import datetime, timedelta

import pytest

from hwtune.discovery.host import HostFS
from hwtune.tests.mocks import FakeHostTree, MockCommandRunner, MockMetadataClient


@pytest.fixture
def host(tmp_path):
    """Bare-metal server tree under tmp_path/root."""
    return FakeHostTree.server(tmp_path / "root")


@pytest.fixture
def empty_host(tmp_path):
    tree = FakeHostTree(tmp_path / "root")
    tree.root.mkdir()
    return tree


@pytest.fixture
def fs(host):
    return HostFS(host.root)


@pytest.fixture
def probe_runner():
    """Detection runner: every unknown command fails (inactive, not found)."""
    return MockCommandRunner(default_returncode=1)


@pytest.fixture
def apply_runner():
    """Apply runner: every command succeeds."""
    return MockCommandRunner(default_returncode=0)


@pytest.fixture
def metadata():
    return MockMetadataClient()


@pytest.fixture
def clock():
    """Deterministic clock that advances one second per call."""
    state = {"now": datetime(2025, 1, 1, 12, 0, 0)}

    def tick():
        state["now"] += timedelta(seconds=1)
        return state["now"]

    return tick
