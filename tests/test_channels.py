"""
Atomizer channel table and registry tests
"""

from atomizer.communication.channels import (
    CHANNEL_UUIDS,
    Channel,
    ChannelCapability,
    ChannelHandle,
    ChannelRegistry,
    NOTIFY_CHANNELS,
    POLLED_CHANNELS,
    all_channel_uuids,
    channel_for_uuid,
)
from atomizer.communication.transport_base import DiscoveredChannel


class TestChannelTable:
    """Test the static channel table."""

    def test_eleven_distinct_channels(self):
        uuids = all_channel_uuids()
        assert len(uuids) == 11
        assert len(set(uuids)) == 11

    def test_lookup_is_case_insensitive(self):
        uuid = CHANNEL_UUIDS[Channel.MODE_READ]
        assert channel_for_uuid(uuid.upper()) == Channel.MODE_READ
        assert channel_for_uuid(f"  {uuid}  ") == Channel.MODE_READ

    def test_mode_read_and_write_are_distinct(self):
        assert CHANNEL_UUIDS[Channel.MODE_READ] != CHANNEL_UUIDS[Channel.MODE_WRITE]

    def test_unknown_uuid(self):
        assert channel_for_uuid("0000180f-0000-1000-8000-00805f9b34fb") is None

    def test_notify_set(self):
        assert NOTIFY_CHANNELS == {
            Channel.ENABLE, Channel.TEMPERATURE, Channel.OUTPUT,
            Channel.BATTERY, Channel.MODE_READ,
        }

    def test_polled_channels_skip_write_only(self):
        assert Channel.MODE_WRITE not in POLLED_CHANNELS
        assert Channel.ENABLE not in POLLED_CHANNELS
        assert len(POLLED_CHANNELS) == 9


class TestChannelHandle:
    """Test capability helpers."""

    def test_write_with_response_preferred(self):
        handle = ChannelHandle(Channel.SETPOINT, "h", frozenset({
            ChannelCapability.WRITE, ChannelCapability.WRITE_WITHOUT_RESPONSE,
        }))
        assert handle.writable
        assert handle.write_with_response

    def test_write_without_response_only(self):
        handle = ChannelHandle(Channel.SETPOINT, "h",
                               frozenset({ChannelCapability.WRITE_WITHOUT_RESPONSE}))
        assert handle.writable
        assert not handle.write_with_response

    def test_read_notify_only(self):
        handle = ChannelHandle(Channel.TEMPERATURE, "h", frozenset({
            ChannelCapability.READ, ChannelCapability.NOTIFY,
        }))
        assert handle.readable
        assert handle.notifiable
        assert not handle.writable

    def test_indicate_counts_as_notifiable(self):
        handle = ChannelHandle(Channel.BATTERY, "h", frozenset({ChannelCapability.INDICATE}))
        assert handle.notifiable


class TestChannelRegistry:
    """Test the per-connection registry."""

    def test_populate_ignores_unknown(self):
        registry = ChannelRegistry()
        resolved = registry.populate([
            DiscoveredChannel(CHANNEL_UUIDS[Channel.KP].upper(), frozenset({ChannelCapability.WRITE})),
            DiscoveredChannel("00002a19-0000-1000-8000-00805f9b34fb", frozenset({ChannelCapability.READ})),
        ])

        assert [h.channel for h in resolved] == [Channel.KP]
        assert len(registry) == 1
        assert Channel.KP in registry
        assert registry.get(Channel.KP).handle == CHANNEL_UUIDS[Channel.KP]

    def test_populate_replaces_wholesale(self):
        registry = ChannelRegistry()
        registry.populate([DiscoveredChannel(CHANNEL_UUIDS[Channel.KP])])
        registry.populate([DiscoveredChannel(CHANNEL_UUIDS[Channel.KI])])

        assert Channel.KP not in registry
        assert Channel.KI in registry
        assert registry.channel_for_handle(CHANNEL_UUIDS[Channel.KP]) is None

    def test_channel_for_handle(self):
        registry = ChannelRegistry()
        registry.populate([DiscoveredChannel(CHANNEL_UUIDS[Channel.TEMPERATURE])])
        assert registry.channel_for_handle(CHANNEL_UUIDS[Channel.TEMPERATURE].upper()) == Channel.TEMPERATURE

    def test_reset(self):
        registry = ChannelRegistry()
        registry.populate([DiscoveredChannel(uuid) for uuid in all_channel_uuids()])
        assert len(registry) == 11

        registry.reset()
        assert len(registry) == 0
        assert registry.handles() == []
