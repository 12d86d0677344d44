"""Tests for DeviceSession: lifecycle, commands, failures and live view.

Scripted MockUsbHandle instances cover exact wire behaviour; digital
twins cover the live-view loop, which needs a real frame stream.
"""

import threading
import time

import pytest

from multicam_mcp.devices import (
    CommandTimeoutError,
    ConnectionState,
    DeviceDisconnectedError,
    DeviceRpcError,
    DeviceSession,
    NotConnectedError,
    SessionError,
    SessionHooks,
    SessionOpenError,
)
from multicam_mcp.drivers.protocol import (
    METADATA_INIT_SIGNATURE,
    FramingError,
    InvalidCommandError,
    InvalidParamsError,
    Method,
)
from multicam_mcp.drivers.twin import DigitalTwinHandle, TwinDeviceConfig
from multicam_mcp.drivers.usb import TransportDisconnectedError


@pytest.fixture
def transitions():
    """Hooks recording every state change as ``(old, new)``."""
    seen: list[tuple[ConnectionState, ConnectionState]] = []
    hooks = SessionHooks(on_state_change=lambda _id, old, new: seen.append((old, new)))
    return hooks, seen


@pytest.fixture
def session(mock_handle, fake_clock):
    """CONNECTED session over an auto-replying scripted handle.

    Yields:
        DeviceSession with 50 ms command timeout and fake clock.
    """
    mock_handle.auto_reply = True
    s = DeviceSession(
        mock_handle,
        "SN0001",
        clock=fake_clock,
        command_timeout_ms=50,
        capture_timeout_ms=75,
        drain_timeout_ms=5,
    )
    s.open()
    yield s
    s.close()


@pytest.fixture
def twin_session():
    """CONNECTED session over a digital twin (for live view)."""
    handle = DigitalTwinHandle(TwinDeviceConfig(serial_number="DXO1LIVE0001"))
    s = DeviceSession(handle, "DXO1LIVE0001", drain_timeout_ms=20)
    s.open()
    yield s
    s.close()


def _wait_until(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestOpen:
    """Claim, handshake and drain during open()."""

    def test_open_reaches_connected(self, mock_handle, transitions):
        """A healthy open passes through INITIALIZING to CONNECTED.

        Arrangement:
        1. Scripted handle that claims both interfaces.
        2. Hooks recording state transitions.

        Action:
        session.open().

        Assertion Strategy:
        - Transitions are DISCONNECTED->INITIALIZING->CONNECTED.
        - Control and data interfaces are claimed.
        - Exactly one handshake acknowledgement was written.
        """
        hooks, seen = transitions
        s = DeviceSession(mock_handle, "SN0001", hooks=hooks, drain_timeout_ms=5)

        s.open()

        assert s.state is ConnectionState.CONNECTED
        assert s.is_connected
        assert seen == [
            (ConnectionState.DISCONNECTED, ConnectionState.INITIALIZING),
            (ConnectionState.INITIALIZING, ConnectionState.CONNECTED),
        ]
        assert mock_handle.claimed == {0, 1}
        assert mock_handle.ack_count == 1

    def test_drain_discards_stale_chunks(self, mock_handle):
        mock_handle.queue_chunk(b"stale-1", b"stale-2")

        DeviceSession(mock_handle, "SN0001", drain_timeout_ms=5).open()

        assert not mock_handle.reads
        assert mock_handle.read_timeouts == [5, 5, 5]

    def test_drain_stops_at_handshake(self, mock_handle):
        mock_handle.queue_chunk(b"stale", METADATA_INIT_SIGNATURE, b"keep")

        DeviceSession(mock_handle, "SN0001", drain_timeout_ms=5).open()

        assert list(mock_handle.reads) == [b"keep"]
        assert mock_handle.ack_count == 2

    def test_open_only_once(self, session):
        with pytest.raises(SessionError, match="already called"):
            session.open()

    def test_device_open_failure(self, mock_handle):
        mock_handle.open_error = TransportDisconnectedError("gone")
        s = DeviceSession(mock_handle, "SN0001")

        with pytest.raises(SessionOpenError, match="Cannot open"):
            s.open()
        assert s.state is ConnectionState.DISCONNECTED

    def test_control_claim_failure(self, mock_handle):
        mock_handle.claim_results[0] = False
        s = DeviceSession(mock_handle, "SN0001")

        with pytest.raises(SessionOpenError, match="control interface"):
            s.open()
        assert s.state is ConnectionState.DISCONNECTED
        assert mock_handle.writes == []

    def test_data_claim_failure_releases_control(self, mock_handle):
        mock_handle.claim_results[1] = False
        s = DeviceSession(mock_handle, "SN0001")

        with pytest.raises(SessionOpenError, match="data interface"):
            s.open()
        assert mock_handle.released == [0]
        assert s.state is ConnectionState.DISCONNECTED

    def test_handshake_failure_enters_error(self, mock_handle):
        """A failure after the claim leaves the session in ERROR.

        Arrangement:
        1. Interfaces claim fine but every write fails.

        Action:
        open(), then close().

        Assertion Strategy:
        - open() raises SessionOpenError and the state is ERROR.
        - close() recovers to DISCONNECTED.
        """
        mock_handle.write_error = TransportDisconnectedError("pipe broken")
        s = DeviceSession(mock_handle, "SN0001")

        with pytest.raises(SessionOpenError, match="Handshake"):
            s.open()
        assert s.state is ConnectionState.ERROR
        assert "pipe broken" in s.last_error

        s.close()
        assert s.state is ConnectionState.DISCONNECTED


class TestCommands:
    """Request/response behaviour and failure semantics."""

    def test_send_command_assigns_sequence(self, session, mock_handle):
        assert session.send_command(Method.IDLE).ok
        assert session.send_command(Method.DIGITAL_ZOOM_GET).ok

        assert [r["id"] for r in mock_handle.requests] == [0, 1]
        assert session.next_sequence == 2

    def test_invalid_method_writes_nothing(self, session, mock_handle):
        """Rejected commands never touch the wire.

        Arrangement:
        1. Connected session; writes recorded so far.

        Action:
        send_command() with an unknown method and with bad parameters.

        Assertion Strategy:
        - InvalidCommandError / InvalidParamsError raised.
        - No bytes written, sequence number unchanged.
        """
        writes_before = list(mock_handle.writes)

        with pytest.raises(InvalidCommandError):
            session.send_command("dxo_self_destruct")
        with pytest.raises(InvalidParamsError):
            session.send_command(Method.SETTING_SET, {"type": "iso"})

        assert mock_handle.writes == writes_before
        assert session.next_sequence == 0

    def test_not_connected_before_open(self, mock_handle):
        s = DeviceSession(mock_handle, "SN0001")

        with pytest.raises(NotConnectedError, match="not connected"):
            s.send_command(Method.IDLE)
        assert mock_handle.writes == []

    def test_timeout_leaves_state(self, session, mock_handle):
        errors = []
        session._hooks.on_error = lambda _id, e: errors.append(e)
        mock_handle.auto_reply = False

        with pytest.raises(CommandTimeoutError):
            session.send_command(Method.CAMERA_STATUS_GET)

        assert session.state is ConnectionState.CONNECTED
        assert isinstance(errors[0], CommandTimeoutError)

    def test_timeout_override_restored(self, session, mock_handle):
        session.send_command(Method.IDLE, timeout_ms=7)
        assert mock_handle.read_timeouts[-1] == 7

        session.send_command(Method.IDLE)
        assert mock_handle.read_timeouts[-1] == 50

    def test_transport_failure_disconnects(self, session, mock_handle):
        """A hard read failure drops the session to DISCONNECTED.

        Arrangement:
        1. Next read raises TransportDisconnectedError.

        Action:
        send_command(), then another send_command().

        Assertion Strategy:
        - First call raises DeviceDisconnectedError, state DISCONNECTED.
        - Second call raises NotConnectedError without writing.
        """
        mock_handle.auto_reply = False
        mock_handle.queue_chunk(TransportDisconnectedError("No such device"))

        with pytest.raises(DeviceDisconnectedError):
            session.send_command(Method.CAMERA_STATUS_GET)
        assert session.state is ConnectionState.DISCONNECTED

        writes = len(mock_handle.writes)
        with pytest.raises(NotConnectedError):
            session.send_command(Method.CAMERA_STATUS_GET)
        assert len(mock_handle.writes) == writes

    def test_handshake_during_reply_absorbed(self, session, mock_handle):
        mock_handle.auto_reply = False
        mock_handle.queue_chunk(METADATA_INIT_SIGNATURE)
        mock_handle.queue_result({"zoom": 2.0})

        response = session.send_command(Method.DIGITAL_ZOOM_GET)

        assert response.result == {"zoom": 2.0}
        assert mock_handle.ack_count == 2

    def test_notification_skipped(self, session, mock_handle):
        mock_handle.auto_reply = False
        mock_handle.queue_response({"jsonrpc": "2.0", "method": "dxo_usb_flush_forced"})
        mock_handle.queue_result({"path": "/DCIM/1.JPG"})

        assert session.last_file_path() == "/DCIM/1.JPG"

    def test_malformed_reply_keeps_connection(self, session, mock_handle):
        mock_handle.auto_reply = False
        mock_handle.queue_chunk(b"short")

        with pytest.raises(FramingError):
            session.send_command(Method.IDLE)
        assert session.is_connected

    def test_device_error(self, session, mock_handle):
        mock_handle.errors[Method.CAMERA_STATUS_GET] = (-32000, "busy")

        response = session.send_command(Method.CAMERA_STATUS_GET)
        assert not response.ok

        with pytest.raises(DeviceRpcError) as exc_info:
            session.get_status()
        assert exc_info.value.code == -32000
        assert exc_info.value.identity == "SN0001"
        assert session.is_connected

    def test_get_status_parses_and_caches(self, session, mock_handle):
        mock_handle.results[Method.CAMERA_STATUS_GET] = {
            "battery_level": 64.0,
            "sd_card_present": True,
            "sd_card_free_space": 1.5e9,
            "is_recording": False,
            "current_mode": "photo",
        }

        status = session.get_status()

        assert status.battery_level == 64
        assert status.sd_card_free_space == 1_500_000_000
        assert status.current_mode == "photo"
        assert session.last_status is status
        assert session.snapshot().status is status

    def test_status_missing_fields_default(self, session, mock_handle):
        mock_handle.results[Method.CAMERA_STATUS_GET] = {"battery_level": "full"}

        status = session.get_status()

        assert status.battery_level is None
        assert status.sd_card_present is False
        assert status.current_mode is None

    def test_focus_clamped(self, session, mock_handle):
        session.focus(300, -5)

        assert mock_handle.requests[-1]["params"] == {"param": "[255,0,256,256]"}

    def test_setting_and_mode_params(self, session, mock_handle):
        session.set_setting("iso", "400")
        session.switch_mode("view")
        session.sleep()

        sent = mock_handle.requests
        assert sent[0]["params"] == {"type": "iso", "param": "400"}
        assert sent[1]["params"] == {"param": "view"}
        assert sent[2]["method"] == "dxo_idle"

    def test_last_file_non_string(self, session, mock_handle):
        mock_handle.results[Method.FS_LAST_FILE_GET] = {"path": None}

        assert session.last_file_path() is None

    def test_capture_once_receipt(self, session, mock_handle, fake_clock):
        receipt = session.capture_once()

        assert receipt.identity == "SN0001"
        assert receipt.dispatched_at == fake_clock.now
        assert receipt.elapsed_ms == 0.0
        assert mock_handle.requests[-1]["method"] == "dxo_photo_take"
        assert mock_handle.read_timeouts[-1] == 75

    def test_capture_device_error(self, session, mock_handle):
        mock_handle.errors[Method.PHOTO_TAKE] = (-1, "card full")

        with pytest.raises(DeviceRpcError, match="card full"):
            session.capture_once()

    def test_power_off(self, session, mock_handle):
        assert session.power_off() is True

        assert session.state is ConnectionState.DISCONNECTED
        assert mock_handle.closed

    def test_power_off_unacknowledged(self, session, mock_handle):
        mock_handle.auto_reply = False

        assert session.power_off() is False
        assert session.state is ConnectionState.DISCONNECTED


class TestDetachAndClose:
    def test_detach_blocks_further_commands(self, session, mock_handle):
        session.handle_detach()

        assert session.state is ConnectionState.DISCONNECTED
        assert session.last_error == "device detached"
        with pytest.raises(NotConnectedError):
            session.get_status()
        assert set(mock_handle.released) == {0, 1}

    def test_close_is_idempotent(self, session):
        session.close()
        session.close()

        assert session.state is ConnectionState.DISCONNECTED

    def test_display_name_and_snapshot(self, session):
        assert session.display_name == "Camera 0001"
        session.nickname = "Left"

        snap = session.snapshot().to_dict()
        assert snap["display_name"] == "Left"
        assert snap["state"] == "connected"
        assert snap["location"] == "1-1"
        assert snap["is_streaming"] is False


class TestLiveView:
    """Live-view loop lifecycle on a digital twin."""

    def test_frames_delivered(self, twin_session):
        """Frames flow to the sink until stop_live_view() returns.

        Arrangement:
        1. Twin session, sink collecting frames.

        Action:
        start_live_view(), wait for three frames, stop_live_view().

        Assertion Strategy:
        - Every frame is a complete JPEG with increasing sequence.
        - The loop is gone after stop returns.
        """
        frames = []
        got_three = threading.Event()

        def sink(frame):
            frames.append(frame)
            if len(frames) >= 3:
                got_three.set()

        live = twin_session.start_live_view(sink)
        assert got_three.wait(5.0)
        assert twin_session.stop_live_view() is True

        assert not live.is_active
        assert not twin_session.is_streaming
        for i, frame in enumerate(frames[:3], start=1):
            assert frame.sequence == i
            assert frame.data.startswith(b"\xff\xd8\xff")
            assert frame.data.endswith(b"\xff\xd9")
        assert twin_session.frames_streamed >= 3

    def test_start_twice_returns_running_handle(self, twin_session):
        first = twin_session.start_live_view(lambda f: None)
        second = twin_session.start_live_view(lambda f: None)

        assert first is second
        twin_session.stop_live_view()

    def test_restart_runs_single_loop(self, twin_session):
        twin_session.start_live_view(lambda f: None)
        twin_session.stop_live_view()
        twin_session.start_live_view(lambda f: None)

        loops = [
            t
            for t in threading.enumerate()
            if t.name == "liveview-DXO1LIVE0001" and t.is_alive()
        ]
        assert len(loops) == 1
        twin_session.stop_live_view()

    def test_command_during_live_view(self, twin_session):
        twin_session.start_live_view(lambda f: None)

        status = twin_session.get_status()

        assert status.current_mode == "view"
        assert twin_session.is_streaming
        twin_session.stop_live_view()

    def test_sink_errors_contained(self, twin_session):
        def bad_sink(frame):
            raise RuntimeError("client went away")

        live = twin_session.start_live_view(bad_sink)

        assert _wait_until(lambda: live.frames >= 2)
        assert twin_session.is_streaming
        twin_session.stop_live_view()

    def test_stop_when_idle(self, twin_session):
        assert twin_session.stop_live_view() is False

    def test_start_requires_connection(self):
        s = DeviceSession(DigitalTwinHandle(), "DXO1IDLE0001")

        with pytest.raises(NotConnectedError):
            s.start_live_view(lambda f: None)

    def test_detach_during_live_view(self, twin_session):
        twin_session.start_live_view(lambda f: None)

        twin_session.handle.detach()

        assert _wait_until(lambda: not twin_session.is_connected)
        with pytest.raises(NotConnectedError):
            twin_session.get_status()

    def test_stop_with_zero_length_stream(self, session, mock_handle, monkeypatch):
        """Stopping returns even when the device only sends empty packets.

        Arrangement:
        1. Scripted session whose handle answers every live read with a
           zero-length packet once the mode switch reply is consumed.

        Action:
        start_live_view(), then stop_live_view() on another thread.

        Assertion Strategy:
        - The stopping thread finishes and the loop is gone.
        - No frame was delivered and the session stays CONNECTED.
        """
        scripted = mock_handle.bulk_read

        def bulk_read(endpoint, size, timeout_ms):
            if mock_handle.reads:
                return scripted(endpoint, size, timeout_ms)
            return b""

        monkeypatch.setattr(mock_handle, "bulk_read", bulk_read)
        live = session.start_live_view(lambda f: None)

        stopper = threading.Thread(target=session.stop_live_view)
        stopper.start()
        stopper.join(5.0)

        assert not stopper.is_alive()
        assert not live.is_active
        assert session.frames_streamed == 0
        assert session.is_connected
