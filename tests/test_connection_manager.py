"""
Unit tests for the connection state machine.
"""

import pytest

from atomizer.communication.channels import Channel, ChannelCapability, all_channel_uuids
from atomizer.communication.transport_base import (
    AdapterState,
    AdapterStateChanged,
    ChannelsDiscovered,
    DiscoveredChannel,
    NotifyStateChanged,
    PeripheralConnectFailed,
    PeripheralConnected,
    PeripheralDiscovered,
    PeripheralDisconnected,
    PeripheralRetrieved,
    ServicesDiscovered,
    ValueUpdated,
    WriteCompleted,
    WriteError,
)
from atomizer.constants import SERVICE_UUID
from atomizer.controllers.connection_manager import ConnectionState
from atomizer.utils.error_handler import ErrorCategory

from link_helpers import PERIPHERAL_ID, bring_up, discovered_channels, handle_for

OTHER_ID = "C4:DE:E2:19:7A:02"


def warnings_in(error_handler, category):
    return [e.message for e in error_handler.get_history(category=category)]


class TestAdapterState:
    """Test reactions to adapter availability."""

    def test_initially_powered_off(self, manager, transport):
        assert manager.state == ConnectionState.POWERED_OFF
        assert transport.calls_named("start") == [("start",)]
        assert transport.calls_named("scan") == []

    def test_power_on_starts_scan(self, manager, transport):
        transport.power_on()

        assert manager.state == ConnectionState.SCANNING
        assert transport.calls_named("scan") == [("scan", None, 10.0)]

    def test_power_on_without_auto_reconnect_stays_idle(self, manager, transport):
        manager.set_auto_reconnect(False)
        transport.power_on()

        assert manager.state == ConnectionState.IDLE
        assert transport.calls_named("scan") == []

    def test_power_off_while_connected(self, connected, transport):
        dropped = []
        connected.disconnected.connect(lambda: dropped.append(True))

        transport.emit(AdapterStateChanged(AdapterState.POWERED_OFF))

        assert connected.state == ConnectionState.POWERED_OFF
        assert connected.peripheral_id is None
        assert len(connected.registry) == 0
        assert dropped == [True]

    def test_unauthorized(self, manager, transport, error_handler):
        transport.emit(AdapterStateChanged(AdapterState.UNAUTHORIZED))

        assert manager.state == ConnectionState.UNAUTHORIZED
        assert warnings_in(error_handler, ErrorCategory.TRANSPORT_UNAVAILABLE)

    def test_resetting_is_unavailable(self, manager, transport):
        transport.power_on()
        transport.emit(AdapterStateChanged(AdapterState.RESETTING))
        assert manager.state == ConnectionState.POWERED_OFF

    def test_scan_refused_while_off(self, manager, transport, error_handler):
        assert manager.start_scan() is False
        assert transport.calls_named("scan") == []
        assert warnings_in(error_handler, ErrorCategory.TRANSPORT_UNAVAILABLE)

    def test_connect_refused_while_off(self, manager, transport):
        assert manager.connect_peripheral(PERIPHERAL_ID) is False
        assert transport.calls_named("connect") == []


class TestScanning:
    """Test scan debounce and the scan window."""

    def test_debounce(self, manager, transport, scheduler):
        manager.set_auto_reconnect(False)
        transport.power_on()

        assert manager.start_scan() is True
        manager.stop_scan()
        assert manager.start_scan() is False
        assert len(transport.calls_named("scan")) == 1

        scheduler.advance(2.0)
        assert manager.start_scan() is True
        assert len(transport.calls_named("scan")) == 2

    def test_scan_stops_after_window(self, manager, transport, scheduler):
        transport.power_on()

        scheduler.advance(9.9)
        assert manager.state == ConnectionState.SCANNING

        scheduler.advance(0.1)
        assert manager.state == ConnectionState.IDLE
        assert transport.calls_named("stop_scan") == [("stop_scan",)]

    def test_stale_scan_window_ignored(self, manager, transport, scheduler):
        transport.power_on()              # scan #1, window ends at +10s
        scheduler.advance(3.0)
        manager.stop_scan()
        assert manager.start_scan()       # scan #2, window ends at +13s

        scheduler.advance(7.0)            # scan #1 window fires
        assert manager.state == ConnectionState.SCANNING

        scheduler.advance(3.0)
        assert manager.state == ConnectionState.IDLE

    def test_discovered_list_deduplicated(self, manager, transport):
        lists = []
        manager.peripherals_changed.connect(lists.append)
        transport.power_on()

        transport.emit(PeripheralDiscovered(PERIPHERAL_ID, "Atomizer", -60))
        transport.emit(PeripheralDiscovered(PERIPHERAL_ID, "Atomizer", -55))
        transport.emit(PeripheralDiscovered(OTHER_ID, None, -80))

        assert [p.identifier for p in manager.discovered_peripherals] == [PERIPHERAL_ID, OTHER_ID]
        assert len(lists) == 2

    def test_discovery_ignored_when_not_scanning(self, manager, transport):
        manager.set_auto_reconnect(False)
        transport.power_on()
        transport.emit(PeripheralDiscovered(PERIPHERAL_ID))
        assert manager.discovered_peripherals == []

    def test_cancel_scan_clears_list(self, manager, transport):
        transport.power_on()
        transport.emit(PeripheralDiscovered(PERIPHERAL_ID))

        manager.cancel_scan()

        assert manager.state == ConnectionState.IDLE
        assert manager.discovered_peripherals == []

    def test_saved_peripheral_auto_connects_from_scan(self, manager, transport, config_manager):
        config_manager.save_peripheral(PERIPHERAL_ID)
        transport.power_on()
        transport.emit(PeripheralRetrieved(PERIPHERAL_ID, found=False))
        assert manager.state == ConnectionState.SCANNING

        transport.emit(PeripheralDiscovered(PERIPHERAL_ID))

        assert manager.state == ConnectionState.CONNECTING
        assert transport.calls_named("connect") == [("connect", PERIPHERAL_ID)]


class TestRestore:
    """Test restore of the remembered peripheral at adapter power-on."""

    def test_restore_found(self, manager, transport, config_manager):
        config_manager.save_peripheral(PERIPHERAL_ID)
        transport.power_on()

        assert manager.state == ConnectionState.RESTORING
        assert transport.calls_named("retrieve") == [("retrieve", PERIPHERAL_ID)]
        assert transport.calls_named("scan") == []

        transport.emit(PeripheralRetrieved(PERIPHERAL_ID, found=True))

        assert manager.state == ConnectionState.CONNECTING
        assert transport.calls_named("connect") == [("connect", PERIPHERAL_ID)]

    def test_restore_not_found_scans(self, manager, transport, config_manager):
        config_manager.save_peripheral(PERIPHERAL_ID)
        transport.power_on()

        transport.emit(PeripheralRetrieved(PERIPHERAL_ID, found=False))

        assert manager.state == ConnectionState.SCANNING
        assert len(transport.calls_named("scan")) == 1


class TestConnect:
    """Test the connect and discovery sequence."""

    def test_full_sequence(self, manager, transport, config_manager):
        events = []
        manager.connected.connect(lambda ident: events.append(("connected", ident)))
        manager.channels_ready.connect(lambda: events.append(("ready",)))
        transport.power_on()

        assert manager.connect_peripheral(PERIPHERAL_ID)
        assert manager.state == ConnectionState.CONNECTING
        assert transport.calls_named("stop_scan") == [("stop_scan",)]

        transport.emit(PeripheralConnected(PERIPHERAL_ID))
        assert manager.is_connected
        assert config_manager.saved_peripheral() == PERIPHERAL_ID
        assert transport.calls_named("discover_services") == [
            ("discover_services", PERIPHERAL_ID, [SERVICE_UUID]),
        ]

        transport.emit(ServicesDiscovered(PERIPHERAL_ID, (SERVICE_UUID.upper(),)))
        assert transport.calls_named("discover_channels") == [
            ("discover_channels", PERIPHERAL_ID, SERVICE_UUID, all_channel_uuids()),
        ]

        transport.emit(ChannelsDiscovered(PERIPHERAL_ID, SERVICE_UUID, discovered_channels()))

        notified = {c[2] for c in transport.calls_named("set_notify")}
        assert notified == {handle_for(ch) for ch in (
            Channel.ENABLE, Channel.TEMPERATURE, Channel.OUTPUT, Channel.BATTERY, Channel.MODE_READ)}
        assert len(transport.calls_named("read")) == 11
        assert len(manager.registry) == 11
        assert events == [("connected", PERIPHERAL_ID), ("ready",)]

    def test_connect_same_peripheral_twice(self, manager, transport):
        transport.power_on()
        manager.connect_peripheral(PERIPHERAL_ID)
        assert manager.connect_peripheral(PERIPHERAL_ID) is True
        assert len(transport.calls_named("connect")) == 1

    def test_switching_peripheral_disconnects_first(self, connected, transport):
        connected.connect_peripheral(OTHER_ID)

        assert transport.calls_named("disconnect") == [("disconnect", PERIPHERAL_ID)]
        assert transport.calls_named("connect") == [("connect", OTHER_ID)]
        assert connected.peripheral_id == OTHER_ID

    def test_connect_failure_returns_idle(self, manager, transport, error_handler, scheduler):
        transport.power_on()
        manager.connect_peripheral(PERIPHERAL_ID)

        transport.emit(PeripheralConnectFailed(PERIPHERAL_ID, "timeout"))

        assert manager.state == ConnectionState.IDLE
        assert manager.peripheral_id is None
        assert warnings_in(error_handler, ErrorCategory.DISCOVERY)
        scheduler.advance(5.0)
        assert len(transport.calls_named("scan")) == 1

    def test_missing_service_disconnects(self, manager, transport, error_handler):
        transport.power_on()
        manager.connect_peripheral(PERIPHERAL_ID)
        transport.emit(PeripheralConnected(PERIPHERAL_ID))

        transport.emit(ServicesDiscovered(PERIPHERAL_ID, ("0000180f-0000-1000-8000-00805f9b34fb",)))

        assert transport.calls_named("discover_channels") == []
        assert transport.calls_named("disconnect") == [("disconnect", PERIPHERAL_ID)]
        assert "Atomizer service not found on peripheral" in warnings_in(
            error_handler, ErrorCategory.DISCOVERY)

    def test_partial_channel_set(self, manager, transport):
        bring_up(transport, manager, channels=discovered_channels([Channel.TEMPERATURE, Channel.SETPOINT]))

        assert Channel.TEMPERATURE in manager.registry
        assert Channel.KP not in manager.registry
        assert manager.request_all_reads() == 2

    def test_notify_subscription_failure(self, connected, transport, error_handler):
        transport.emit(NotifyStateChanged(PERIPHERAL_ID, handle_for(Channel.BATTERY), True, "not permitted"))

        messages = warnings_in(error_handler, ErrorCategory.DISCOVERY)
        assert messages == [f"Could not subscribe to {Channel.BATTERY.value}: not permitted"]

    def test_late_connect_after_user_disconnect(self, manager, transport):
        transport.power_on()
        manager.connect_peripheral(PERIPHERAL_ID)
        manager.disconnect()

        transport.emit(PeripheralConnected(PERIPHERAL_ID))

        assert manager.state == ConnectionState.IDLE
        assert transport.calls_named("discover_services") == []


class TestReconnect:
    """Test the reconnect policy after a drop."""

    def test_reconnect_scan_after_delay(self, connected, transport, scheduler):
        transport.emit(PeripheralDisconnected(PERIPHERAL_ID, "link lost"))

        assert connected.state == ConnectionState.IDLE
        assert connected.peripheral_id is None

        scheduler.advance(1.9)
        assert transport.calls_named("scan") == []

        scheduler.advance(0.1)
        assert connected.state == ConnectionState.SCANNING
        assert len(transport.calls_named("scan")) == 1

    def test_stale_disconnect_ignored(self, connected, transport, scheduler):
        transport.emit(PeripheralDisconnected(OTHER_ID))

        assert connected.is_connected
        scheduler.advance(3.0)
        assert transport.calls_named("scan") == []

    def test_reconnect_skipped_after_manual_connect(self, connected, transport, scheduler):
        transport.emit(PeripheralDisconnected(PERIPHERAL_ID))
        connected.connect_peripheral(PERIPHERAL_ID)

        scheduler.advance(2.0)

        assert connected.state == ConnectionState.CONNECTING
        assert transport.calls_named("scan") == []

    def test_user_disconnect_does_not_reconnect(self, connected, transport, scheduler):
        connected.disconnect()
        transport.emit(PeripheralDisconnected(PERIPHERAL_ID))

        scheduler.advance(5.0)

        assert connected.state == ConnectionState.IDLE
        assert transport.calls_named("scan") == []

    def test_forget(self, connected, transport, config_manager, scheduler):
        connected.forget()

        assert config_manager.saved_peripheral() is None
        assert connected.auto_reconnect is False
        assert transport.calls_named("disconnect") == [("disconnect", PERIPHERAL_ID)]

        transport.emit(AdapterStateChanged(AdapterState.POWERED_OFF))
        transport.power_on()
        scheduler.advance(5.0)

        assert connected.state == ConnectionState.IDLE
        assert transport.calls_named("retrieve") == []
        assert transport.calls_named("scan") == []

    def test_discovery_failure_then_reconnect(self, manager, transport, scheduler):
        transport.power_on()
        manager.connect_peripheral(PERIPHERAL_ID)
        transport.emit(PeripheralConnected(PERIPHERAL_ID))
        transport.emit(ServicesDiscovered(PERIPHERAL_ID, error="GATT error"))
        transport.clear_calls()

        transport.emit(PeripheralDisconnected(PERIPHERAL_ID))
        scheduler.advance(2.0)

        assert len(transport.calls_named("scan")) == 1


class TestChannelIO:
    """Test reads, writes and value routing."""

    def test_write_uses_response_when_supported(self, connected, transport):
        connected.write_channel(Channel.SETPOINT, "210.0")
        assert transport.calls_named("write") == [
            ("write", PERIPHERAL_ID, handle_for(Channel.SETPOINT), b"210.0", True),
        ]

    def test_write_without_response(self, manager, transport):
        channels = (DiscoveredChannel(handle_for(Channel.OUTPUT),
                                      frozenset({ChannelCapability.WRITE_WITHOUT_RESPONSE})),)
        bring_up(transport, manager, channels=channels)

        manager.write_channel(Channel.OUTPUT, "500")

        assert transport.calls_named("write")[0][4] is False

    def test_write_without_peripheral(self, manager):
        with pytest.raises(WriteError, match="Cannot write: no peripheral"):
            manager.write_channel(Channel.SETPOINT, "200.0")

    def test_write_undiscovered_channel(self, manager, transport):
        bring_up(transport, manager, channels=discovered_channels([Channel.TEMPERATURE]))
        with pytest.raises(WriteError, match="Characteristic not discovered"):
            manager.write_channel(Channel.KP, "1.000")

    def test_write_unencodable_text(self, connected):
        with pytest.raises(WriteError, match="Cannot encode value to UTF8"):
            connected.write_channel(Channel.SETPOINT, "\ud800")

    def test_write_read_only_channel(self, connected):
        with pytest.raises(WriteError, match="Characteristic does not support write"):
            connected.write_channel(Channel.TEMPERATURE, "1")

    def test_request_all_reads(self, connected, transport):
        assert connected.request_all_reads() == 9
        handles = {c[2] for c in transport.calls_named("read")}
        assert handle_for(Channel.MODE_WRITE) not in handles
        assert handle_for(Channel.ENABLE) not in handles

    def test_value_routed_by_channel(self, connected, transport):
        received = []
        connected.value_received.connect(lambda ch, data: received.append((ch, data)))

        transport.emit(ValueUpdated(PERIPHERAL_ID, handle_for(Channel.TEMPERATURE).upper(), b"180.5"))
        transport.emit(ValueUpdated(PERIPHERAL_ID, "00002a19-0000-1000-8000-00805f9b34fb", b"99"))
        transport.emit(ValueUpdated(OTHER_ID, handle_for(Channel.TEMPERATURE), b"1.0"))
        transport.emit(ValueUpdated(PERIPHERAL_ID, handle_for(Channel.OUTPUT), b"", error="read failed"))

        assert received == [(Channel.TEMPERATURE, b"180.5")]

    def test_write_completion_routed(self, connected, transport):
        results = []
        connected.write_completed.connect(lambda ch, err: results.append((ch, err)))

        transport.emit(WriteCompleted(PERIPHERAL_ID, handle_for(Channel.KP)))
        transport.emit(WriteCompleted(PERIPHERAL_ID, handle_for(Channel.KI), "rejected"))

        assert results == [(Channel.KP, ""), (Channel.KI, "rejected")]

    def test_handler_exception_recorded(self, manager, transport, error_handler, monkeypatch):
        def broken(*args):
            raise RuntimeError("adapter exploded")

        transport.power_on()
        manager.connect_peripheral(PERIPHERAL_ID)
        monkeypatch.setattr(transport, "discover_services", broken)

        transport.emit(PeripheralConnected(PERIPHERAL_ID))

        errors = error_handler.get_history(category=ErrorCategory.INTERNAL)
        assert len(errors) == 1
        assert "adapter exploded" in errors[0].message
