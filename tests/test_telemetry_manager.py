"""
Unit tests for the telemetry history buffer.
"""

import pytest

from atomizer.controllers.telemetry_manager import TelemetryBuffer, clamp_history_limit
from atomizer.models.device_status import DeviceStatus


@pytest.fixture
def buffer(clock):
    return TelemetryBuffer(history_limit=120, clock=clock)


def status_with(setpoint: float, temperature=None, output: float = 0.0) -> DeviceStatus:
    return DeviceStatus(temperature=temperature, setpoint=setpoint, output=output)


class TestRecording:
    """Test sample capture and throttling."""

    def test_keeps_most_recent_in_order(self, buffer, clock):
        for i in range(150):
            clock.now += 0.3
            assert buffer.record(status_with(setpoint=float(i)))

        history = buffer.history
        assert len(history) == 120
        assert [p.setpoint for p in history] == [float(i) for i in range(30, 150)]
        assert all(a.timestamp <= b.timestamp for a, b in zip(history, history[1:]))
        assert buffer.stats.samples_evicted == 30

    def test_throttles_bursts(self, buffer, clock):
        assert buffer.record(status_with(200.0))
        clock.now += 0.1
        assert not buffer.record(status_with(201.0))
        clock.now += 0.2
        assert buffer.record(status_with(202.0))

        assert [p.setpoint for p in buffer.history] == [200.0, 202.0]
        assert buffer.stats.samples_throttled == 1

    def test_sample_fields(self, buffer):
        status = DeviceStatus(temperature=180.5, setpoint=200.0, output=511.5, pwm_max=1023)
        buffer.record(status)

        point = buffer.latest
        assert point.temperature == 180.5
        assert point.setpoint == 200.0
        assert point.output_percent == pytest.approx(50.0)

    def test_missing_temperature_kept_as_none(self, buffer):
        buffer.record(status_with(200.0, temperature=None))
        assert buffer.latest.temperature is None

    def test_zero_pwm_max(self, buffer):
        buffer.record(DeviceStatus(output=100.0, pwm_max=0))
        assert buffer.latest.output_percent == 0.0

    def test_samples_are_snapshots(self, buffer):
        status = status_with(200.0)
        buffer.record(status)
        status.setpoint = 250.0
        assert buffer.latest.setpoint == 200.0


class TestHistoryLimit:
    """Test limit clamping and trimming."""

    @pytest.mark.parametrize("requested,expected", [
        (5, 10),
        (10, 10),
        (300, 300),
        (1000, 1000),
        (5000, 1000),
    ])
    def test_clamp(self, requested, expected):
        assert clamp_history_limit(requested) == expected

    @pytest.mark.parametrize("requested", [float("nan"), float("inf"), "200", None, True])
    def test_clamp_rejects_non_numbers(self, requested):
        with pytest.raises(ValueError):
            clamp_history_limit(requested)

    def test_constructor_clamps(self, clock):
        assert TelemetryBuffer(history_limit=1, clock=clock).history_limit == 10

    def test_lowering_limit_trims_immediately(self, buffer, clock):
        for i in range(50):
            clock.now += 1.0
            buffer.record(status_with(float(i)))

        applied = buffer.set_history_limit(20)

        assert applied == 20
        assert len(buffer) == 20
        assert buffer.history[0].setpoint == 30.0
        assert buffer.history[-1].setpoint == 49.0

    def test_clear_resets_throttle(self, buffer):
        buffer.record(status_with(200.0))
        buffer.clear()
        assert len(buffer) == 0
        assert buffer.record(status_with(200.0))
