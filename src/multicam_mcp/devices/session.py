"""Device session - one open camera and its connection state machine.

A ``DeviceSession`` owns exactly one ``UsbHandle``. All bytes go
through the framing layer in ``multicam_mcp.drivers.protocol``; this
module adds the lifecycle, the command API and the live-view loop.

State machine::

    DISCONNECTED --open+claim--> INITIALIZING --handshake+drain--> CONNECTED
                                      |                               |
                                      +--setup fails--> ERROR         |
                                                          |           |
    DISCONNECTED <--close()-----------+-------------------+           |
    DISCONNECTED <--transport failure / detach / close() / power off--+

Failure semantics:
    - A command timeout raises ``CommandTimeoutError`` and leaves the
      state alone; the caller may retry.
    - A hard transport failure raises ``DeviceDisconnectedError`` and
      the session is already DISCONNECTED when the exception surfaces.
    - A device error reply is returned as a failed ``ControlResponse``
      from ``send_command``; the convenience methods raise
      ``DeviceRpcError`` for it. State is unaffected.

Example:
    session = DeviceSession(handle, identity="SN1234")
    session.open()
    status = session.get_status()
    receipt = session.capture_once()
    session.close()
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

from multicam_mcp.drivers.protocol import (
    CONTROL_INTERFACE,
    DATA_ALT_SETTING,
    DATA_INTERFACE,
    DEFAULT_MAX_HANDSHAKES,
    DEFAULT_MAX_NOTIFICATIONS,
    ENDPOINT_IN,
    ENDPOINT_OUT,
    MAX_PACKET_SIZE,
    METADATA_INIT_RESPONSE,
    ControlMessage,
    ControlResponse,
    FramingError,
    LiveFrameReader,
    Method,
    ResponseReader,
    encode_message,
    is_handshake,
)
from multicam_mcp.drivers.usb import (
    TransportError,
    TransportTimeoutError,
    UsbHandle,
)
from multicam_mcp.observability import LogContext, get_logger

logger = get_logger(__name__)

# =============================================================================
# Constants
# =============================================================================

DEFAULT_COMMAND_TIMEOUT_MS = 10_000
DEFAULT_USB_TIMEOUT_MS = 5_000
DEFAULT_CAPTURE_TIMEOUT_MS = 30_000
#: Read timeout while draining stale bytes during open().
DEFAULT_DRAIN_TIMEOUT_MS = 100
#: Read timeout per live-view chunk; bounds how long stop_live_view() waits.
DEFAULT_LIVE_READ_TIMEOUT_MS = 500
#: Chunks discarded at most while draining.
MAX_DRAIN_CHUNKS = 64

#: Side length of the tap-to-focus coordinate space.
FOCUS_GRID = 256


class ConnectionState(StrEnum):
    """Connection state of one device session."""

    DISCONNECTED = "disconnected"
    INITIALIZING = "initializing"
    CONNECTED = "connected"
    ERROR = "error"


# =============================================================================
# Protocols (Injectable Dependencies)
# =============================================================================


@runtime_checkable
class Clock(Protocol):  # pragma: no cover
    """Protocol for time functions (injectable for testing).

    Example:
        class FakeClock:
            def __init__(self):
                self.now = 0.0

            def monotonic(self) -> float:
                return self.now

            def sleep(self, seconds: float) -> None:
                self.now += seconds

        session = DeviceSession(handle, "SN1", clock=FakeClock())
    """

    def monotonic(self) -> float:
        """Return monotonic time in seconds."""
        ...

    def sleep(self, seconds: float) -> None:
        """Suspend for ``seconds``."""
        ...


class SystemClock:
    """Default clock using the time module."""

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)


# =============================================================================
# Data Classes
# =============================================================================


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return int(value)


@dataclass(frozen=True, slots=True)
class DeviceStatus:
    """Camera status as reported by ``dxo_camera_status_get``.

    Attributes:
        battery_level: Battery percentage, None if not reported.
        sd_card_present: Whether a card is inserted.
        sd_card_free_space: Free bytes on the card, None if not reported.
        is_recording: Whether video recording is in progress.
        current_mode: ``photo``, ``view``, ``video`` or None.
    """

    battery_level: int | None = None
    sd_card_present: bool = False
    sd_card_free_space: int | None = None
    is_recording: bool = False
    current_mode: str | None = None

    @classmethod
    def from_result(cls, result: Mapping[str, Any]) -> DeviceStatus:
        """Build from a status reply, defaulting missing or mistyped fields."""
        mode = result.get("current_mode")
        return cls(
            battery_level=_as_int(result.get("battery_level")),
            sd_card_present=result.get("sd_card_present") is True,
            sd_card_free_space=_as_int(result.get("sd_card_free_space")),
            is_recording=result.get("is_recording") is True,
            current_mode=mode if isinstance(mode, str) else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "battery_level": self.battery_level,
            "sd_card_present": self.sd_card_present,
            "sd_card_free_space": self.sd_card_free_space,
            "is_recording": self.is_recording,
            "current_mode": self.current_mode,
        }


@dataclass(frozen=True, slots=True)
class LiveFrame:
    """One complete JPEG from the live-preview stream.

    Attributes:
        data: JPEG bytes, start marker through end marker inclusive.
        sequence: 1-based frame number within this live-view run.
        timestamp: Monotonic time the frame finished decoding.
    """

    data: bytes
    sequence: int
    timestamp: float


@dataclass(frozen=True, slots=True)
class CaptureReceipt:
    """Successful capture acknowledgement.

    Attributes:
        identity: Device identity.
        dispatched_at: Monotonic timestamp taken immediately before the
            capture command was written.
        elapsed_ms: Time from dispatch until the reply was decoded.
    """

    identity: str
    dispatched_at: float
    elapsed_ms: float


@dataclass(frozen=True, slots=True)
class SessionSnapshot:
    """Point-in-time view of a session for display and JSON output."""

    identity: str
    state: ConnectionState
    display_name: str
    nickname: str | None
    location: str
    status: DeviceStatus | None
    is_streaming: bool
    frames_streamed: int
    last_error: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity": self.identity,
            "state": self.state.value,
            "display_name": self.display_name,
            "nickname": self.nickname,
            "location": self.location,
            "status": self.status.to_dict() if self.status else None,
            "is_streaming": self.is_streaming,
            "frames_streamed": self.frames_streamed,
            "last_error": self.last_error,
        }


FrameSink = Callable[[LiveFrame], None]


# =============================================================================
# Event Hooks
# =============================================================================


@dataclass(slots=True)
class SessionHooks:
    """Optional callbacks for session events.

    Hook exceptions are logged and never interrupt device I/O.

    Attributes:
        on_state_change: ``(identity, old_state, new_state)``
        on_frame: ``(identity, frame)`` for every live frame
        on_error: ``(identity, error)`` for command failures
    """

    on_state_change: Callable[[str, ConnectionState, ConnectionState], None] | None = None
    on_frame: Callable[[str, LiveFrame], None] | None = None
    on_error: Callable[[str, Exception], None] | None = None


# =============================================================================
# Exceptions
# =============================================================================


class SessionError(Exception):
    """Base exception for device session operations."""

    def __init__(self, message: str, identity: str | None = None) -> None:
        super().__init__(message)
        self.identity = identity


class NotConnectedError(SessionError):
    """Raised when an operation requires a CONNECTED session."""


class SessionOpenError(SessionError):
    """Raised when claiming, handshaking or draining fails during open()."""


class CommandTimeoutError(SessionError):
    """Raised when the device does not answer in time (recoverable)."""


class DeviceDisconnectedError(SessionError):
    """Raised when the transport failed hard; the session is now DISCONNECTED."""


class DeviceRpcError(SessionError):
    """Raised when the device answers a command with an error object."""

    def __init__(self, message: str, code: int, identity: str | None = None) -> None:
        super().__init__(message, identity)
        self.code = code


# =============================================================================
# Channel Adapter
# =============================================================================


class _UsbChannel:
    """Binds a handle, endpoints and timeouts into a framing ``Channel``."""

    def __init__(self, handle: UsbHandle, write_timeout_ms: int, read_timeout_ms: int):
        self._handle = handle
        self.write_timeout_ms = write_timeout_ms
        self.read_timeout_ms = read_timeout_ms

    def send(self, data: bytes) -> int:
        return self._handle.bulk_write(ENDPOINT_OUT, data, self.write_timeout_ms)

    def receive(self, size: int) -> bytes:
        return self._handle.bulk_read(ENDPOINT_IN, size, self.read_timeout_ms)


# =============================================================================
# Live View
# =============================================================================


class LiveViewHandle:
    """Handle on one running live-view loop.

    Returned by ``DeviceSession.start_live_view``. Stopping is
    synchronous: ``stop()`` returns only after the loop thread exited.
    """

    def __init__(self, identity: str) -> None:
        self.identity = identity
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.frames = 0

    @property
    def is_active(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def _start(self, target: Callable[[LiveViewHandle], None]) -> None:
        self._thread = threading.Thread(
            target=target,
            args=(self,),
            daemon=True,
            name=f"liveview-{self.identity}",
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        """Signal the loop and wait for it to exit."""
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)


# =============================================================================
# Device Session
# =============================================================================


class DeviceSession:
    """One camera connection: lifecycle, commands and live view.

    Injectable Dependencies:
        - handle: USB handle (real, twin or mock)
        - clock: Time functions (default: SystemClock)
        - hooks: Event callbacks (optional)

    Thread Safety:
        One request is in flight at a time. Commands and live-view reads
        share an I/O lock, so a command issued during live view waits
        for the current frame to finish. Responses are not correlated
        with request ids; ordering on the pipe is the only guarantee.
    """

    def __init__(
        self,
        handle: UsbHandle,
        identity: str,
        clock: Clock | None = None,
        hooks: SessionHooks | None = None,
        command_timeout_ms: int = DEFAULT_COMMAND_TIMEOUT_MS,
        usb_timeout_ms: int = DEFAULT_USB_TIMEOUT_MS,
        capture_timeout_ms: int = DEFAULT_CAPTURE_TIMEOUT_MS,
        drain_timeout_ms: int = DEFAULT_DRAIN_TIMEOUT_MS,
        live_read_timeout_ms: int = DEFAULT_LIVE_READ_TIMEOUT_MS,
        max_handshakes: int = DEFAULT_MAX_HANDSHAKES,
        max_notifications: int = DEFAULT_MAX_NOTIFICATIONS,
        nickname: str | None = None,
    ) -> None:
        self._handle = handle
        self._identity = identity
        self._clock: Clock = clock or SystemClock()
        self._hooks = hooks or SessionHooks()
        self._command_timeout_ms = command_timeout_ms
        self._capture_timeout_ms = capture_timeout_ms
        self._drain_timeout_ms = drain_timeout_ms
        self._max_handshakes = max_handshakes
        self._max_notifications = max_notifications
        self.nickname = nickname

        self._channel = _UsbChannel(handle, usb_timeout_ms, command_timeout_ms)
        self._live_channel = _UsbChannel(handle, usb_timeout_ms, live_read_timeout_ms)

        self._state = ConnectionState.DISCONNECTED
        self._state_lock = threading.RLock()
        self._io_lock = threading.Lock()
        self._live_lock = threading.Lock()
        self._live: LiveViewHandle | None = None
        self._open_attempted = False
        self._next_seq = 0
        self._frames_streamed = 0
        self._last_status: DeviceStatus | None = None
        self._last_error: str | None = None

    def __repr__(self) -> str:
        return f"<DeviceSession {self._identity} {self._state.value}>"

    # -- Properties ----------------------------------------------------------

    @property
    def identity(self) -> str:
        return self._identity

    @property
    def handle(self) -> UsbHandle:
        return self._handle

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def display_name(self) -> str:
        """Nickname, or ``"Camera <last 4 of identity>"``."""
        return self.nickname or f"Camera {self._identity[-4:]}"

    @property
    def is_streaming(self) -> bool:
        live = self._live
        return live is not None and live.is_active

    @property
    def frames_streamed(self) -> int:
        return self._frames_streamed

    @property
    def last_status(self) -> DeviceStatus | None:
        return self._last_status

    @property
    def last_error(self) -> str | None:
        return self._last_error

    @property
    def next_sequence(self) -> int:
        """Sequence number the next command will carry."""
        return self._next_seq

    def snapshot(self) -> SessionSnapshot:
        """Immutable view of the current session state."""
        return SessionSnapshot(
            identity=self._identity,
            state=self._state,
            display_name=self.display_name,
            nickname=self.nickname,
            location=self._handle.location,
            status=self._last_status,
            is_streaming=self.is_streaming,
            frames_streamed=self._frames_streamed,
            last_error=self._last_error,
        )

    # -- State management ----------------------------------------------------

    def _set_state(self, new: ConnectionState) -> None:
        with self._state_lock:
            old = self._state
            if old is new:
                return
            self._state = new
        logger.info(
            "Session state changed",
            identity=self._identity,
            old=old.value,
            new=new.value,
        )
        if self._hooks.on_state_change is not None:
            try:
                self._hooks.on_state_change(self._identity, old, new)
            except Exception:
                logger.exception("on_state_change hook failed", identity=self._identity)

    def _notify_error(self, error: Exception) -> None:
        self._last_error = str(error)
        if self._hooks.on_error is not None:
            try:
                self._hooks.on_error(self._identity, error)
            except Exception:
                logger.exception("on_error hook failed", identity=self._identity)

    def _mark_disconnected(self, error: Exception) -> DeviceDisconnectedError:
        """Force DISCONNECTED after a hard transport failure."""
        logger.error("Device disconnected", identity=self._identity, error=str(error))
        self._set_state(ConnectionState.DISCONNECTED)
        failure = DeviceDisconnectedError(
            f"Device {self._identity} disconnected: {error}", self._identity
        )
        self._notify_error(failure)
        return failure

    def _require_connected(self) -> None:
        if self._state is not ConnectionState.CONNECTED:
            raise NotConnectedError(
                f"Device {self._identity} not connected (state: {self._state.value})",
                self._identity,
            )

    # -- Lifecycle -----------------------------------------------------------

    def open(self) -> None:
        """Claim interfaces, handshake, drain stale bytes, go CONNECTED.

        May be called once per session.

        Raises:
            SessionError: If open() was already called.
            SessionOpenError: If any step fails. The state is ERROR when
                the failure happened after the claim, DISCONNECTED when
                the claim itself failed.
        """
        if self._open_attempted:
            raise SessionError(
                f"open() already called for {self._identity}", self._identity
            )
        self._open_attempted = True

        with LogContext(identity=self._identity):
            try:
                self._handle.open()
            except TransportError as e:
                self._last_error = str(e)
                raise SessionOpenError(
                    f"Cannot open device {self._identity}: {e}", self._identity
                ) from e
            if not self._handle.claim(CONTROL_INTERFACE):
                self._last_error = "control interface claim failed"
                raise SessionOpenError(
                    f"Cannot claim control interface on {self._identity}",
                    self._identity,
                )
            if not self._handle.claim(DATA_INTERFACE, DATA_ALT_SETTING):
                self._handle.release(CONTROL_INTERFACE)
                self._last_error = "data interface claim failed"
                raise SessionOpenError(
                    f"Cannot claim data interface on {self._identity}",
                    self._identity,
                )

            self._set_state(ConnectionState.INITIALIZING)
            try:
                with self._io_lock:
                    self._channel.send(METADATA_INIT_RESPONSE)
                    drained = self._drain()
            except TransportError as e:
                self._set_state(ConnectionState.ERROR)
                self._last_error = str(e)
                raise SessionOpenError(
                    f"Handshake with {self._identity} failed: {e}", self._identity
                ) from e

            logger.debug("Drained stale chunks", count=drained)
            self._set_state(ConnectionState.CONNECTED)

    def _drain(self) -> int:
        """Discard stale bytes until a handshake, an empty read or a timeout.

        Returns:
            Number of non-handshake chunks discarded.
        """
        saved = self._channel.read_timeout_ms
        self._channel.read_timeout_ms = self._drain_timeout_ms
        discarded = 0
        try:
            for _ in range(MAX_DRAIN_CHUNKS):
                try:
                    chunk = self._channel.receive(MAX_PACKET_SIZE)
                except TransportTimeoutError:
                    break
                if not chunk:
                    break
                if is_handshake(chunk):
                    self._channel.send(METADATA_INIT_RESPONSE)
                    break
                discarded += 1
        finally:
            self._channel.read_timeout_ms = saved
        return discarded

    def close(self) -> None:
        """Stop live view, release interfaces and go DISCONNECTED.

        Safe to call any number of times, in any state.
        """
        self.stop_live_view()
        for interface in (DATA_INTERFACE, CONTROL_INTERFACE):
            try:
                self._handle.release(interface)
            except TransportError as e:
                logger.warning(
                    "Interface release failed",
                    identity=self._identity,
                    interface=interface,
                    error=str(e),
                )
        try:
            self._handle.close()
        except TransportError as e:
            logger.warning("Handle close failed", identity=self._identity, error=str(e))
        self._set_state(ConnectionState.DISCONNECTED)

    def handle_detach(self) -> None:
        """React to the device leaving the bus: DISCONNECTED immediately."""
        self._last_error = "device detached"
        self._set_state(ConnectionState.DISCONNECTED)
        self.close()

    # -- Commands ------------------------------------------------------------

    def send_command(
        self,
        method: str,
        params: Mapping[str, Any] | None = None,
        timeout_ms: int | None = None,
    ) -> ControlResponse:
        """Send one command and wait for its reply.

        Args:
            method: Allow-listed method name.
            params: Optional parameters.
            timeout_ms: Reply timeout override.

        Returns:
            The decoded reply; check ``ok`` for device-side errors.

        Raises:
            NotConnectedError: Session is not CONNECTED.
            InvalidCommandError: Unknown method (nothing written).
            InvalidParamsError: Bad parameter shape (nothing written).
            CommandTimeoutError: No reply in time (state unchanged).
            DeviceDisconnectedError: Hard transport failure.
            FramingError: Reply could not be decoded (state unchanged).
        """
        response, _ = self._exchange(method, params, timeout_ms)
        return response

    def _exchange(
        self,
        method: str,
        params: Mapping[str, Any] | None,
        timeout_ms: int | None,
    ) -> tuple[ControlResponse, float]:
        """Write one request and read its reply.

        Returns:
            Tuple of (reply, monotonic timestamp taken just before the write).
        """
        self._require_connected()
        with self._io_lock:
            # Re-check under the lock: a detach may have landed meanwhile
            self._require_connected()
            message = ControlMessage.create(method, params, self._next_seq)
            frame = encode_message(message)
            self._next_seq += 1

            saved = self._channel.read_timeout_ms
            if timeout_ms is not None:
                self._channel.read_timeout_ms = timeout_ms
            reader = ResponseReader(
                self._channel, self._max_handshakes, self._max_notifications
            )
            try:
                dispatched_at = self._clock.monotonic()
                self._channel.send(frame)
                logger.debug(
                    "Command sent",
                    identity=self._identity,
                    method=message.method,
                    seq=message.seq,
                    bytes=len(frame),
                )
                response = reader.read_response()
            except TransportTimeoutError as e:
                failure = CommandTimeoutError(
                    f"{message.method} on {self._identity} timed out: {e}",
                    self._identity,
                )
                logger.warning(
                    "Command timed out", identity=self._identity, method=message.method
                )
                self._notify_error(failure)
                raise failure from e
            except TransportError as e:
                raise self._mark_disconnected(e) from e
            except FramingError as e:
                logger.warning(
                    "Reply decode failed",
                    identity=self._identity,
                    method=message.method,
                    error=str(e),
                )
                self._notify_error(e)
                raise
            finally:
                self._channel.read_timeout_ms = saved

        if not response.ok:
            logger.warning(
                "Device returned error",
                identity=self._identity,
                method=message.method,
                code=response.error_code,
                message=response.error_message,
            )
        return response, dispatched_at

    def _call(
        self,
        method: str,
        params: Mapping[str, Any] | None = None,
        timeout_ms: int | None = None,
    ) -> dict[str, Any]:
        response = self.send_command(method, params, timeout_ms)
        return self._result_or_raise(method, response)

    def _result_or_raise(self, method: str, response: ControlResponse) -> dict[str, Any]:
        if not response.ok:
            code = response.error_code if response.error_code is not None else -1
            raise DeviceRpcError(
                f"{method} failed on {self._identity}: {response.error_message}",
                code,
                self._identity,
            )
        return response.result or {}

    def capture_once(self) -> CaptureReceipt:
        """Take one photo.

        The timestamp is taken immediately before the command is written,
        so receipts from several devices are comparable.

        Raises:
            NotConnectedError, CommandTimeoutError, DeviceDisconnectedError,
            DeviceRpcError, FramingError.
        """
        response, dispatched_at = self._exchange(
            Method.PHOTO_TAKE, None, self._capture_timeout_ms
        )
        elapsed_ms = (self._clock.monotonic() - dispatched_at) * 1000.0
        self._result_or_raise(Method.PHOTO_TAKE, response)
        logger.info(
            "Capture acknowledged", identity=self._identity, elapsed_ms=elapsed_ms
        )
        return CaptureReceipt(self._identity, dispatched_at, elapsed_ms)

    def get_status(self) -> DeviceStatus:
        """Query and cache battery, card and mode status."""
        status = DeviceStatus.from_result(self._call(Method.CAMERA_STATUS_GET))
        self._last_status = status
        return status

    def get_all_settings(self) -> dict[str, Any]:
        return self._call(Method.ALL_SETTINGS_GET)

    def set_setting(self, setting_type: str, value: Any) -> None:
        """Set one camera setting, e.g. ``("iso", "400")``."""
        self._call(Method.SETTING_SET, {"type": setting_type, "param": value})

    def focus(self, x: int, y: int) -> dict[str, Any]:
        """Tap-to-focus at ``(x, y)`` in a 256x256 grid, origin bottom-left.

        Coordinates outside the grid are clamped.
        """
        cx = min(max(int(x), 0), FOCUS_GRID - 1)
        cy = min(max(int(y), 0), FOCUS_GRID - 1)
        return self._call(
            Method.TAP_TO_FOCUS, {"param": f"[{cx},{cy},{FOCUS_GRID},{FOCUS_GRID}]"}
        )

    def switch_mode(self, mode: str) -> None:
        """Switch camera mode (``photo``, ``view`` or ``video``)."""
        self._call(Method.CAMERA_MODE_SWITCH, {"param": mode})

    def sleep(self) -> None:
        """Put the camera into its idle state."""
        self._call(Method.IDLE)

    def last_file_path(self) -> str | None:
        """Path of the most recent file on the card, if any."""
        path = self._call(Method.FS_LAST_FILE_GET).get("path")
        return path if isinstance(path, str) else None

    def power_off(self) -> bool:
        """Power the camera off. The session is DISCONNECTED afterwards.

        Returns:
            True if the device acknowledged the command.
        """
        self.stop_live_view()
        try:
            response = self.send_command(Method.CAMERA_POWEROFF)
            acknowledged = response.ok
        except (CommandTimeoutError, DeviceDisconnectedError, FramingError) as e:
            logger.warning(
                "Power off not acknowledged", identity=self._identity, error=str(e)
            )
            acknowledged = False
        self.close()
        return acknowledged

    # -- Live view -----------------------------------------------------------

    def start_live_view(self, sink: FrameSink) -> LiveViewHandle:
        """Switch to ``view`` mode and stream frames to ``sink``.

        Starting while already streaming returns the running handle
        instead of starting a second loop.

        Raises:
            NotConnectedError: Session is not CONNECTED.
            DeviceRpcError / CommandTimeoutError: Mode switch failed.
        """
        self._require_connected()
        with self._live_lock:
            if self._live is not None and self._live.is_active:
                return self._live
            self.switch_mode("view")
            live = LiveViewHandle(self._identity)
            self._live = live
            live._start(lambda h: self._live_loop(h, sink))
        logger.info("Live view started", identity=self._identity)
        return live

    def stop_live_view(self) -> bool:
        """Stop streaming and wait for the loop to exit.

        Returns:
            True if a loop was running.
        """
        with self._live_lock:
            live = self._live
            self._live = None
        if live is None:
            return False
        live.stop()
        logger.info("Live view stopped", identity=self._identity, frames=live.frames)
        return True

    def _live_loop(self, live: LiveViewHandle, sink: FrameSink) -> None:
        reader = LiveFrameReader(self._live_channel, self._max_handshakes)
        while not live.stop_requested and self.is_connected:
            with self._io_lock:
                if live.stop_requested:
                    break
                try:
                    data = reader.read_frame()
                except TransportTimeoutError:
                    continue
                except TransportError as e:
                    self._mark_disconnected(e)
                    break
                except FramingError as e:
                    logger.warning(
                        "Live frame dropped", identity=self._identity, error=str(e)
                    )
                    continue
            if live.stop_requested:
                break
            live.frames += 1
            self._frames_streamed += 1
            frame = LiveFrame(data, live.frames, self._clock.monotonic())
            try:
                sink(frame)
            except Exception:
                logger.exception("Frame sink failed", identity=self._identity)
            if self._hooks.on_frame is not None:
                try:
                    self._hooks.on_frame(self._identity, frame)
                except Exception:
                    logger.exception("on_frame hook failed", identity=self._identity)
