"""
Pytest configuration and fixtures.

Shared fixtures build a fresh registry, an in-process transport and a host
for every test, so no session state leaks between tests.
"""

import logging
import sys

import pytest

from tandem import ClientRuntime, ComponentHost, LoopbackTransport, SerializerRegistry

from .fixtures.sample_components import build_registry


def pytest_configure(config):
    """Configure pytest with custom settings."""
    log_level = logging.DEBUG if config.getoption("--debug-tandem") else logging.INFO

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    logging.getLogger("tandem").setLevel(log_level)
    logging.getLogger("asyncio").setLevel(log_level)

    custom_log_file = config.getoption("--tandem-log-file")
    if custom_log_file:
        file_handler = logging.FileHandler(custom_log_file)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
            )
        )
        logging.getLogger().addHandler(file_handler)


def pytest_addoption(parser):
    """Add custom command line options."""
    parser.addoption(
        "--debug-tandem",
        action="store_true",
        default=False,
        help="Enable debug logging for tandem (shows every packet and hook)",
    )
    parser.addoption(
        "--tandem-log-file",
        action="store",
        default=None,
        help="Log tandem debug output to specified file",
    )


@pytest.fixture
def registry():
    return build_registry()


@pytest.fixture
def transport():
    return LoopbackTransport()


@pytest.fixture
def host_factory(registry, transport):
    """Build a host attached to the shared loopback transport."""

    def make(config=None):
        host = ComponentHost(registry, config, push_channel=transport)
        transport.attach(host)
        return host

    return make


@pytest.fixture
def host(host_factory):
    return host_factory()


@pytest.fixture
def client_factory(registry, transport, host):
    def make(session_id="session-1", **kwargs):
        return ClientRuntime(registry, transport, session_id, **kwargs)

    return make


@pytest.fixture
def client(client_factory):
    return client_factory()


@pytest.fixture(autouse=True)
def clean_serializers():
    SerializerRegistry.get_instance().clear()
    yield
    SerializerRegistry.get_instance().clear()
