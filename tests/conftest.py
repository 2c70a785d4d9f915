"""Test configuration and fixtures."""

import os
import socket

import pytest

from tests.helpers import FakeRegistry, StubKeychain


def is_port_open(host, port):
    """Check if a port is open."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.settimeout(1)
            result = sock.connect_ex((host, port))
            return result == 0
    except OSError:
        return False


@pytest.fixture(scope="session")
def registry_port():
    """Get registry port for testing."""
    return int(os.getenv("REGISTRY_PORT", "15000"))


@pytest.fixture(scope="session")
def registry_host(registry_port):
    """Host of a real registry:2 container, skipping if none is listening."""
    if not is_port_open("localhost", registry_port):
        pytest.skip(f"Registry not available at localhost:{registry_port}")
    return f"localhost:{registry_port}"


@pytest.fixture
def registry():
    """In-memory registry with a one-layer base image at library/base:latest."""
    fake = FakeRegistry()
    fake.seed_image("library/base", "latest")
    return fake


@pytest.fixture
def keychain():
    return StubKeychain()


# Pytest configuration
def pytest_configure(config):
    """Configure pytest markers and settings."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test requiring registry"
    )
    config.addinivalue_line("markers", "unit: mark test as unit test (default)")


def pytest_collection_modifyitems(config, items):
    """Modify test collection."""
    # Skip integration tests if no registry
    skip_integration = pytest.mark.skip(reason="Registry not available")

    for item in items:
        if (
            "integration" in item.keywords
            and os.getenv("REGISTRY_AVAILABLE", "false").lower() != "true"
        ):
            item.add_marker(skip_integration)
