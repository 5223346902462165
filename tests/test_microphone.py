"""Tests for voice_input.stt.microphone — device capture and metering."""

import asyncio
import threading

import numpy as np
import pytest

from voice_input.stt.errors import DeviceError
from voice_input.stt.microphone import CaptureStream, MicrophoneManager, condition_block
from voice_input.stt.types import CaptureConstraints, PermissionState


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class MockInputStream:
    """Mock sounddevice.InputStream in callback mode.

    Every instance is recorded on the class so tests can count how many
    device streams were opened.
    """

    instances: list["MockInputStream"] = []

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.callback = kwargs.get("callback")
        self.active = False
        self.closed = False
        MockInputStream.instances.append(self)

    def start(self):
        self.active = True

    def stop(self):
        self.active = False

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


def _mock_query_devices_success(*args, **kwargs):
    return {"name": "test-mic", "max_input_channels": 1}


def _mock_query_devices_fail(*args, **kwargs):
    raise OSError("No input device")


def _raise_portaudio_error(**kwargs):
    raise OSError("Error opening InputStream: Device unavailable")


@pytest.fixture(autouse=True)
def mock_sounddevice(monkeypatch):
    MockInputStream.instances = []
    monkeypatch.setattr("voice_input.stt.microphone.sd.InputStream", MockInputStream)
    monkeypatch.setattr(
        "voice_input.stt.microphone.sd.query_devices", _mock_query_devices_success
    )


# ---------------------------------------------------------------------------
# Availability and permission
# ---------------------------------------------------------------------------


class TestAvailability:

    def test_available_when_input_device_present(self):
        assert MicrophoneManager().is_available() is True

    def test_unavailable_when_query_fails(self, monkeypatch):
        monkeypatch.setattr(
            "voice_input.stt.microphone.sd.query_devices", _mock_query_devices_fail
        )
        assert MicrophoneManager().is_available() is False


class TestRequestPermission:

    async def test_granted_when_probe_stream_opens(self):
        mic = MicrophoneManager()
        result = await mic.request_permission()
        assert result.granted is True
        assert result.error is None
        assert MockInputStream.instances[0].closed is True

    async def test_denied_when_probe_stream_fails(self, monkeypatch):
        monkeypatch.setattr(
            "voice_input.stt.microphone.sd.InputStream", _raise_portaudio_error
        )
        mic = MicrophoneManager()
        result = await mic.request_permission()
        assert result.granted is False
        assert "Microphone access denied" in result.error
        assert "Device unavailable" in result.error

    async def test_request_refreshes_cached_state(self, monkeypatch):
        monkeypatch.setattr(
            "voice_input.stt.microphone.sd.InputStream", _raise_portaudio_error
        )
        mic = MicrophoneManager()
        await mic.request_permission()
        assert mic.check_permission() == PermissionState.DENIED


class TestCheckPermission:

    def _counting_query(self, mic, monkeypatch, state):
        calls = []

        def query():
            calls.append(1)
            return state

        monkeypatch.setattr(mic, "_query_platform_permission", query)
        return calls

    def test_result_is_cached_within_ttl(self, monkeypatch):
        clock = [100.0]
        monkeypatch.setattr("voice_input.stt.microphone.time.monotonic", lambda: clock[0])
        mic = MicrophoneManager()
        calls = self._counting_query(mic, monkeypatch, PermissionState.GRANTED)

        assert mic.check_permission() == PermissionState.GRANTED
        clock[0] += 4.9
        assert mic.check_permission() == PermissionState.GRANTED
        assert len(calls) == 1

    def test_cache_expires_after_ttl(self, monkeypatch):
        clock = [100.0]
        monkeypatch.setattr("voice_input.stt.microphone.time.monotonic", lambda: clock[0])
        mic = MicrophoneManager()
        calls = self._counting_query(mic, monkeypatch, PermissionState.GRANTED)

        mic.check_permission()
        clock[0] += 5.1
        mic.check_permission()
        assert len(calls) == 2

    def test_unknowable_platform_reports_prompt(self, monkeypatch, caplog):
        mic = MicrophoneManager()
        self._counting_query(mic, monkeypatch, None)
        with caplog.at_level("WARNING"):
            assert mic.check_permission() == PermissionState.PROMPT
        assert "cannot be queried" in caplog.text

    def test_query_failure_reports_prompt(self, monkeypatch):
        mic = MicrophoneManager()

        def broken():
            raise RuntimeError("permissions api missing")

        monkeypatch.setattr(mic, "_query_platform_permission", broken)
        assert mic.check_permission() == PermissionState.PROMPT

    def test_linux_reports_denied_without_device(self, monkeypatch):
        monkeypatch.setattr("voice_input.stt.microphone.sys.platform", "linux")
        monkeypatch.setattr(
            "voice_input.stt.microphone.sd.query_devices", _mock_query_devices_fail
        )
        assert MicrophoneManager().check_permission() == PermissionState.DENIED


# ---------------------------------------------------------------------------
# Capture lifecycle
# ---------------------------------------------------------------------------


class TestCapture:

    async def test_start_capture_opens_one_stream(self):
        mic = MicrophoneManager()
        stream = await mic.start_capture()
        try:
            assert isinstance(stream, CaptureStream)
            assert mic.is_capturing is True
            assert len(MockInputStream.instances) == 1
            kwargs = MockInputStream.instances[0].kwargs
            assert kwargs["channels"] == 1
            assert kwargs["dtype"] == "int16"
            assert kwargs["samplerate"] == mic.constraints.sample_rate
        finally:
            mic.stop_capture()

    async def test_second_start_returns_existing_stream(self):
        mic = MicrophoneManager()
        first = await mic.start_capture()
        second = await mic.start_capture()
        try:
            assert first is second
            assert len(MockInputStream.instances) == 1
        finally:
            mic.stop_capture()

    async def test_concurrent_starts_open_one_stream(self):
        mic = MicrophoneManager()
        first, second = await asyncio.gather(mic.start_capture(), mic.start_capture())
        try:
            assert first is second
            assert len(MockInputStream.instances) == 1
        finally:
            mic.stop_capture()

    async def test_stop_capture_releases_device(self):
        mic = MicrophoneManager()
        await mic.start_capture()
        mic.stop_capture()

        device_stream = MockInputStream.instances[0]
        assert device_stream.active is False
        assert device_stream.closed is True
        assert mic.is_capturing is False
        assert mic.get_audio_level() == 0

    async def test_stop_capture_is_idempotent(self):
        mic = MicrophoneManager()
        mic.stop_capture()
        await mic.start_capture()
        mic.stop_capture()
        mic.stop_capture()
        assert mic.is_capturing is False

    async def test_start_after_stop_opens_new_stream(self):
        mic = MicrophoneManager()
        await mic.start_capture()
        mic.stop_capture()
        await mic.start_capture()
        try:
            assert len(MockInputStream.instances) == 2
        finally:
            mic.stop_capture()

    async def test_start_failure_raises_device_error(self, monkeypatch):
        monkeypatch.setattr(
            "voice_input.stt.microphone.sd.InputStream", _raise_portaudio_error
        )
        mic = MicrophoneManager()
        with pytest.raises(DeviceError, match="Failed to start audio capture"):
            await mic.start_capture()
        assert mic.is_capturing is False

    async def test_cancelled_start_closes_late_stream(self, monkeypatch):
        release = threading.Event()

        class SlowInputStream(MockInputStream):
            def start(self):
                release.wait(timeout=2.0)
                super().start()

        monkeypatch.setattr("voice_input.stt.microphone.sd.InputStream", SlowInputStream)
        mic = MicrophoneManager()
        task = asyncio.create_task(mic.start_capture())
        while not MockInputStream.instances:
            await asyncio.sleep(0.01)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        release.set()

        device_stream = MockInputStream.instances[0]
        for _ in range(100):
            if device_stream.closed:
                break
            await asyncio.sleep(0.01)
        assert device_stream.closed is True
        assert device_stream.active is False
        assert mic.is_capturing is False


class TestCaptureStream:

    async def test_blocks_reach_reader_in_order(self):
        mic = MicrophoneManager(CaptureConstraints(auto_gain_control=False))
        stream = await mic.start_capture()
        callback = MockInputStream.instances[0].callback

        loud = np.full((1600, 1), 8000, dtype=np.int16)
        callback(loud, 1600, None, None)
        callback(loud * 2, 1600, None, None)

        first = await stream.read_chunk()
        second = await stream.read_chunk()
        mic.stop_capture()

        assert len(first) == 1600 * 2
        assert np.frombuffer(first, dtype=np.int16)[0] < np.frombuffer(second, dtype=np.int16)[0]

    async def test_read_returns_none_after_stop(self):
        mic = MicrophoneManager()
        stream = await mic.start_capture()
        mic.stop_capture()
        assert await stream.read_chunk() is None

    async def test_status_flags_are_counted(self):
        mic = MicrophoneManager()
        stream = await mic.start_capture()
        callback = MockInputStream.instances[0].callback
        callback(np.zeros((160, 1), dtype=np.int16), 160, None, "input overflow")
        mic.stop_capture()
        assert stream.status_count == 1


class TestConditionBlock:

    def test_noise_gate_silences_quiet_block(self):
        quiet = np.full(1600, 50, dtype=np.int16)
        out = condition_block(quiet, CaptureConstraints())
        assert not out.any()

    def test_gain_control_raises_quiet_speech(self):
        speech = np.full(1600, 4000, dtype=np.int16)
        out = condition_block(speech, CaptureConstraints(noise_suppression=False))
        assert out.max() > 4000
        assert out.dtype == np.int16

    def test_gain_is_bounded(self):
        faint = np.full(1600, 400, dtype=np.int16)
        out = condition_block(faint, CaptureConstraints(noise_suppression=False))
        assert out.max() <= 400 * 8 + 1

    def test_processing_disabled_passes_through(self):
        block = np.arange(-800, 800, dtype=np.int16)
        constraints = CaptureConstraints(noise_suppression=False, auto_gain_control=False)
        out = condition_block(block, constraints)
        assert np.abs(out.astype(np.int32) - block.astype(np.int32)).max() <= 1


# ---------------------------------------------------------------------------
# Level metering
# ---------------------------------------------------------------------------


class TestLevelMetering:

    def test_dispatch_rate_is_throttled(self):
        mic = MicrophoneManager()
        received = []
        mic.subscribe_to_audio_levels(received.append)

        # One simulated second of display-refresh ticks.
        for i in range(60):
            mic._meter_tick(i / 60)

        assert 15 <= len(received) <= 31

    def test_first_tick_dispatches(self):
        mic = MicrophoneManager()
        assert mic._meter_tick(0.0) is True
        assert mic._meter_tick(0.01) is False
        assert mic._meter_tick(0.04) is True

    def test_level_is_zero_when_not_capturing(self):
        mic = MicrophoneManager()
        received = []
        mic.subscribe_to_audio_levels(received.append)
        mic._meter_tick(0.0)
        assert received == [0]

    def test_every_subscriber_receives_levels(self):
        mic = MicrophoneManager()
        first, second = [], []
        mic.subscribe_to_audio_levels(first.append)
        unsubscribe = mic.subscribe_to_audio_levels(second.append)
        mic._meter_tick(0.0)
        unsubscribe()
        mic._meter_tick(1.0)
        assert first == [0, 0]
        assert second == [0]
        assert mic.level_subscriber_count == 1

    async def test_metering_loop_dispatches_while_capturing(self):
        mic = MicrophoneManager()
        received = []
        mic.subscribe_to_audio_levels(received.append)
        await mic.start_capture()
        await asyncio.sleep(0.1)
        mic.stop_capture()
        count = len(received)
        await asyncio.sleep(0.05)

        assert count >= 1
        assert all(0 <= level <= 100 for level in received)
        assert len(received) == count
