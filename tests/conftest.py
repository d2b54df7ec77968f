"""Shared pytest fixtures for vbox-control tests."""

import logging
from collections.abc import AsyncGenerator

import pytest

from vbox_control.config import HostConfig, LifecycleConfig
from vbox_control.control import ControlAdapter, adapter_for_version
from vbox_control.models import MachineState
from vbox_control.service import ControlService
from tests.fakes import FakeMachine, FakeVirtualBox

logger = logging.getLogger(__name__)

LAB_URL = "http://vbox-lab:18083"

# ============================================================================
# API revisions under test
# ============================================================================
# One reported version per adapter class. Lifecycle tests run against each,
# since the revisions differ in which interface owns saveState /
# restoreSnapshot and in the launchVMProcess parameter names.

API_VERSIONS = ("4.2.38r122592", "4.3.40r117012", "6.1.38r153438")


def make_host(url: str = LAB_URL, host_id: str = "lab") -> HostConfig:
    return HostConfig(host_id=host_id, url=url, username="builder", password="secret")


def fast_config(**overrides: float) -> LifecycleConfig:
    """LifecycleConfig with polling and retry delays shrunk for tests."""
    values: dict[str, float] = {
        "state_poll_interval": 0.0,
        "progress_poll_interval": 0.001,
        "completion_timeout": 2.0,
        "operation_timeout": 10.0,
        "lock_retry_delay": 0.0,
        "session_poll_interval": 0.0,
        "session_settle_timeout": 2.0,
    }
    values.update(overrides)
    return LifecycleConfig(**values)


@pytest.fixture
def host() -> HostConfig:
    return make_host()


@pytest.fixture
def config() -> LifecycleConfig:
    return fast_config()


@pytest.fixture
def vbox() -> FakeVirtualBox:
    """Fake 6.1 web service."""
    return FakeVirtualBox()


@pytest.fixture(params=API_VERSIONS)
def any_vbox(request: pytest.FixtureRequest) -> FakeVirtualBox:
    """Fake web service, once per supported API revision."""
    return FakeVirtualBox(request.param)


@pytest.fixture
def win10(vbox: FakeVirtualBox) -> FakeMachine:
    """Powered-off machine with a two-snapshot chain (current: "updated")."""
    machine = vbox.add_machine("win10", MachineState.POWERED_OFF)
    vbox.add_snapshot(machine, "clean")
    vbox.add_snapshot(machine, "updated", parent="clean")
    return machine


async def connect_adapter(vbox: FakeVirtualBox, host: HostConfig) -> ControlAdapter:
    adapter_cls = adapter_for_version(vbox.version)
    return await adapter_cls(host, vbox.factory(host.url), progress_poll_interval=0.001).connect()


@pytest.fixture
async def adapter(vbox: FakeVirtualBox, host: HostConfig) -> AsyncGenerator[ControlAdapter, None]:
    """Adapter logged on to the fake 6.1 service."""
    adapter = await connect_adapter(vbox, host)
    yield adapter
    await adapter.disconnect()


@pytest.fixture
async def service(vbox: FakeVirtualBox, host: HostConfig, config: LifecycleConfig) -> AsyncGenerator[ControlService, None]:
    """ControlService with the fake 6.1 service registered as host "lab"."""
    async with ControlService([host], vbox.factory, config) as service:
        yield service
