"""
Pytest configuration and fixtures for the novadbplus harness tests.

This module provides:
- Custom markers (slow, integration)
- An in-memory cluster of fake nodes and handles bound to it
- A harness configuration tuned for fast polling
"""

import os
import shutil

import pytest

from novadb_harness.config import BarrierConfig, HarnessConfig, LimitConfig
from novadb_harness.node import NodeHandle, NodeSpec

from .fakes import TEST_HOST, TEST_PASSWORD, FakeClock, FakeCluster


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests that launch a real novadbplus binary"
    )

def pytest_collection_modifyitems(config, items):
    """Add markers to test items based on their location."""
    for item in items:
        if "integration" in item.nodeid:
            item.add_marker(pytest.mark.integration)

@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def cluster(clock):
    return FakeCluster(clock)

@pytest.fixture
def harness_config(tmp_path):
    """Attach-mode config with short barrier deadlines."""
    return HarnessConfig(
        host=TEST_HOST,
        work_dir=tmp_path / "nodes",
        password=TEST_PASSWORD,
        kvstore_count=2,
        ready_timeout=1.0,
        startup=False,
        backup_dir=tmp_path / "backup",
        barrier=BarrierConfig(
            poll_interval=0.01,
            resync_timeout=1.0,
            catchup_timeout=1.0,
            drain_timeout=1.0,
            expiry_timeout=1.0,
        ),
        limits=LimitConfig(soft_wait=0.0),
    )

@pytest.fixture
def make_node(cluster, tmp_path):
    """Build a fake server and a NodeHandle connected to it."""

    def make(port, store_count=1, password=None, role="m_", **server_kwargs):
        server = cluster.add(port, store_count=store_count, password=password, **server_kwargs)
        config = {"requirepass": password} if password else {}
        spec = NodeSpec(TEST_HOST, port, role, tmp_path / "nodes", config)
        return server, NodeHandle(spec, client_factory=cluster.factory)

    return make

@pytest.fixture
def novadb_binary():
    """Path of a real novadbplus binary, or skip."""
    binary = os.environ.get("NOVADB_HARNESS_BINARY") or shutil.which("novadbplus")
    if not binary:
        pytest.skip("novadbplus binary not available (set NOVADB_HARNESS_BINARY)")
    return binary
