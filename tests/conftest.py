"""
Shared fixtures for the atomizer link tests.
"""

import pytest

from PyQt6.QtCore import QCoreApplication

from atomizer.controllers.connection_manager import ConnectionManager
from atomizer.controllers.device_controller import DeviceController
from atomizer.controllers.telemetry_manager import TelemetryBuffer
from atomizer.models.config_manager import ConfigManager
from atomizer.models.settings_store import MemorySettingsStore
from atomizer.utils.error_handler import ErrorHandler

from link_helpers import FakeClock, FakeScheduler, FakeTransport, bring_up


@pytest.fixture(scope="session", autouse=True)
def qt_app():
    """QCoreApplication instance for QObject/QSettings based code."""
    app = QCoreApplication.instance() or QCoreApplication([])
    yield app


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler(clock):
    return FakeScheduler(clock)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def store():
    return MemorySettingsStore()


@pytest.fixture
def config_manager(store):
    return ConfigManager(store)


@pytest.fixture
def error_handler():
    return ErrorHandler()


@pytest.fixture
def manager(transport, config_manager, error_handler, scheduler, clock):
    """Started connection manager (adapter still powered off)."""
    mgr = ConnectionManager(transport, config_manager, error_handler=error_handler,
                            scheduler=scheduler, clock=clock)
    mgr.start()
    return mgr


@pytest.fixture
def controller(manager, config_manager, error_handler, scheduler, clock):
    """Device controller over the (not yet connected) manager."""
    return DeviceController(manager, config_manager,
                            telemetry=TelemetryBuffer(clock=clock),
                            error_handler=error_handler,
                            scheduler=scheduler)


@pytest.fixture
def connected(transport, manager):
    """Manager with a fully resolved connection to PERIPHERAL_ID."""
    bring_up(transport, manager)
    return manager
