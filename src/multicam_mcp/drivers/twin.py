"""Digital Twin Camera - Simulated Device Speaking the Wire Protocol.

Provides simulated cameras for development and testing without physical
hardware. Unlike a mock, a twin implements ``UsbHandle`` at the byte
level: it emits the metadata-init handshake, parses framed JSON-RPC
requests, answers with framed replies split into bulk-sized chunks and,
in ``view`` mode, streams JPEG preview frames behind the live-frame
marker. Sessions cannot tell a twin from a real device.

Behaviour Knobs (TwinDeviceConfig):
    capture_latency_s: Delay before ``dxo_photo_take`` is answered
    notify_every: Push ``dxo_usb_flush_forced`` before every Nth reply
    handshake_every: Interleave a handshake before every Nth reply
    fail_on_command / failure / fail_method: Inject a timeout,
        disconnect, or device error on the Nth matching command

Classes:
    TwinFailure: Injected failure kinds
    TwinDeviceConfig: Per-device simulation settings
    DigitalTwinHandle: One simulated device (implements UsbHandle)
    DigitalTwinBackend: Enumerates simulated devices (implements UsbBackend)

Example:
    from multicam_mcp.drivers.twin import DigitalTwinBackend

    backend = DigitalTwinBackend(count=3)
    registry = DeviceRegistry(backend=backend)
    registry.connect_all()

    # Pull one device off the bus
    event = backend.detach(backend.handles[0].serial_number)
    registry.handle_detach(event)
"""

from __future__ import annotations

import itertools
import json
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import cv2
import numpy as np

from multicam_mcp.drivers.protocol import (
    LIVE_FRAME_HEADER_SIZE,
    LIVE_FRAME_MARKER,
    MAX_PACKET_SIZE,
    METADATA_INIT_RESPONSE,
    METADATA_INIT_SIGNATURE,
    RPC_HEADER,
    RPC_TRAILER,
    VENDOR_ID,
    FramingError,
    Method,
    decode_payload,
    split_frame,
)
from multicam_mcp.drivers.usb import (
    DetachEvent,
    TransportDisconnectedError,
    TransportTimeoutError,
    UsbHandle,
)
from multicam_mcp.observability import get_logger

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = get_logger(__name__)

__all__ = [
    "DEFAULT_TWIN_COUNT",
    "MAX_TWIN_COUNT",
    "TWIN_PRODUCT_ID",
    "DigitalTwinBackend",
    "DigitalTwinHandle",
    "TwinDeviceConfig",
    "TwinFailure",
]

# =============================================================================
# Constants
# =============================================================================

TWIN_PRODUCT_ID = 0x0001
DEFAULT_TWIN_COUNT = 2
MAX_TWIN_COUNT = 4

CAMERA_MODES = frozenset({"photo", "view", "video"})

# JSON-RPC error codes used by the simulated firmware
_ERR_PARSE = -32700
_ERR_INVALID_PARAMS = -32602
_ERR_INTERNAL = -32000

# Preview rendering
_PREVIEW_WIDTH = 320
_PREVIEW_HEIGHT = 240
_JPEG_QUALITY = 80
_GRID_SPACING = 40

# Simulated SD card
_CARD_CAPACITY = 32_000_000_000
_PHOTO_BYTES = 8_000_000

_DEFAULT_SETTINGS: dict[str, Any] = {
    "iso": "auto",
    "shutter_speed": "auto",
    "aperture": "f/1.8",
    "exposure_compensation": "0",
    "white_balance": "auto",
    "image_format": "jpg",
}


class TwinFailure(StrEnum):
    """Failure injected by a twin on a chosen command."""

    TIMEOUT = "timeout"  # Swallow the request; the read times out
    DISCONNECT = "disconnect"  # Drop off the bus mid-command
    RPC_ERROR = "rpc_error"  # Answer with a JSON-RPC error object


@dataclass
class TwinDeviceConfig:
    """Simulation settings for one twin device.

    Attributes:
        serial_number: Reported serial. None simulates a device without
            a readable serial descriptor.
        product_id: Reported USB product id.
        vendor_id: Reported USB vendor id. Change it to test vendor
            filtering.
        capture_latency_s: Seconds before a capture is acknowledged.
        notify_every: Push a flush notification before every Nth reply
            (0 disables).
        handshake_every: Push a handshake before every Nth reply
            (0 disables).
        fail_on_command: 1-based index of the matching command to fail.
        fail_method: Only count commands with this method (None = any).
        failure: What kind of failure to inject.
        fail_repeat: Keep failing every matching command from the Nth on.
        claim_fails: ``claim()`` returns False.
        frame_interval_s: Pause before each rendered preview frame.
        battery_level: Reported battery percentage.
    """

    serial_number: str | None = None
    product_id: int = TWIN_PRODUCT_ID
    vendor_id: int = VENDOR_ID
    capture_latency_s: float = 0.0
    notify_every: int = 0
    handshake_every: int = 0
    fail_on_command: int | None = None
    fail_method: str | None = None
    failure: TwinFailure = TwinFailure.TIMEOUT
    fail_repeat: bool = False
    claim_fails: bool = False
    frame_interval_s: float = 0.0
    battery_level: int = 87
    settings: dict[str, Any] = field(default_factory=lambda: dict(_DEFAULT_SETTINGS))


def _frame_reply(obj: dict[str, Any]) -> bytes:
    """Wrap a reply object in the RPC envelope."""
    payload = (json.dumps(obj, separators=(",", ":")) + "\x00").encode("utf-8")
    return RPC_HEADER + len(payload).to_bytes(2, "little") + RPC_TRAILER + payload


def _error_reply(request_id: Any, code: int, message: str) -> dict[str, Any]:
    error = {"code": code, "message": message}
    return {"jsonrpc": "2.0", "id": request_id, "error": error}


def _chunks(data: bytes, size: int = MAX_PACKET_SIZE) -> list[bytes]:
    return [data[i : i + size] for i in range(0, len(data), size)]


# =============================================================================
# Twin Device
# =============================================================================


class DigitalTwinHandle:
    """Simulated camera implementing the ``UsbHandle`` protocol.

    Outgoing device bytes sit in a chunk queue. ``bulk_read`` pops one
    chunk, or renders a preview frame when the queue is empty and the
    device is in ``view`` mode, or waits for the timeout. ``detach()``
    wakes any blocked reader with ``TransportDisconnectedError``.

    Thread Safety:
        All state is guarded by one condition variable, so a live-view
        reader thread and a ``detach()`` from a test thread can overlap.
    """

    def __init__(
        self,
        config: TwinDeviceConfig | None = None,
        location: str = "twin-0",
    ) -> None:
        self.config = config or TwinDeviceConfig()
        self._location = location
        self._cond = threading.Condition()
        self._outbox: deque[bytes] = deque()
        self._opened = False
        self._detached = False
        self._claimed: set[int] = set()
        self._mode = "photo"
        self._settings = dict(self.config.settings)
        self._photo_count = 0
        self._last_file: str | None = None
        self._frame_count = 0
        self._reply_count = 0
        self._matching_commands = 0
        self.acks_received = 0
        self.requests: list[dict[str, Any]] = []

    # -- UsbHandle properties ------------------------------------------------

    @property
    def vendor_id(self) -> int:
        return self.config.vendor_id

    @property
    def product_id(self) -> int:
        return self.config.product_id

    @property
    def serial_number(self) -> str | None:
        return self.config.serial_number

    @property
    def location(self) -> str:
        return self._location

    # -- Introspection for tests and the dashboard ---------------------------

    @property
    def mode(self) -> str:
        """Current camera mode (``photo``, ``view`` or ``video``)."""
        return self._mode

    @property
    def photo_count(self) -> int:
        """Number of captures acknowledged."""
        return self._photo_count

    @property
    def is_detached(self) -> bool:
        return self._detached

    @property
    def methods_received(self) -> list[str]:
        """Method names of every request parsed so far, in order."""
        return [str(r.get("method")) for r in self.requests]

    # -- UsbHandle operations ------------------------------------------------

    def open(self) -> None:
        """Power up the simulated device and queue the initial handshake."""
        with self._cond:
            self._check_attached("open")
            self._opened = True
            self._outbox.append(METADATA_INIT_SIGNATURE)
            self._cond.notify_all()
        logger.debug("Twin opened", location=self._location)

    def claim(self, interface: int, alt_setting: int = 0) -> bool:
        with self._cond:
            if self._detached or self.config.claim_fails:
                return False
            self._claimed.add(interface)
            return True

    def bulk_write(self, endpoint: int, data: bytes, timeout_ms: int) -> int:
        """Accept a handshake ack or a framed request.

        Raises:
            TransportDisconnectedError: Device detached, or a disconnect
                was injected for this command.
        """
        with self._cond:
            self._check_attached("bulk write")
            data = bytes(data)
            if data == METADATA_INIT_RESPONSE:
                self.acks_received += 1
                return len(data)
            request = self._parse_request(data)
            if request is None:
                self._queue_reply(_error_reply(None, _ERR_PARSE, "Parse error"))
                return len(data)
            self.requests.append(request)

            failure = self._injected_failure(str(request.get("method", "")))
            if failure is TwinFailure.DISCONNECT:
                self._detach_locked()
                raise TransportDisconnectedError("bulk write failed: device detached")
            if failure is TwinFailure.TIMEOUT:
                logger.debug("Twin swallowing request", method=request.get("method"))
                return len(data)
            if failure is TwinFailure.RPC_ERROR:
                self._queue_reply(
                    _error_reply(request.get("id"), _ERR_INTERNAL, "Injected failure")
                )
                return len(data)

        # Handle outside the lock so capture latency does not block detach()
        reply = self._dispatch(request)
        with self._cond:
            if not self._detached:
                self._queue_reply(reply)
        return len(data)

    def bulk_read(self, endpoint: int, size: int, timeout_ms: int) -> bytes:
        """Return the next queued chunk, a preview chunk, or time out.

        Raises:
            TransportTimeoutError: Nothing to send within ``timeout_ms``.
            TransportDisconnectedError: Device detached (also while waiting).
        """
        timeout_s = max(timeout_ms, 0) / 1000.0
        with self._cond:
            self._check_attached("bulk read")
            if not self._outbox and self._mode == "view" and self._opened:
                if self.config.frame_interval_s > 0:
                    self._cond.wait(self.config.frame_interval_s)
                    self._check_attached("bulk read")
                if not self._outbox:
                    self._outbox.extend(_chunks(self._render_live_frame()))
            if not self._outbox:
                self._cond.wait_for(lambda: self._outbox or self._detached, timeout_s)
                self._check_attached("bulk read")
                if not self._outbox:
                    raise TransportTimeoutError(
                        f"bulk read timed out after {timeout_ms} ms"
                    )
            chunk = self._outbox.popleft()
            if len(chunk) > size:
                self._outbox.appendleft(chunk[size:])
                chunk = chunk[:size]
            return chunk

    def release(self, interface: int) -> None:
        with self._cond:
            self._claimed.discard(interface)

    def close(self) -> None:
        with self._cond:
            self._claimed.clear()
            self._opened = False
            self._outbox.clear()

    # -- Test controls -------------------------------------------------------

    def detach(self) -> None:
        """Simulate unplugging: every pending and future transfer fails."""
        with self._cond:
            self._detach_locked()
        logger.info("Twin detached", location=self._location)

    def push_handshake(self) -> None:
        """Queue an unsolicited handshake, as the firmware does at random."""
        with self._cond:
            self._outbox.append(METADATA_INIT_SIGNATURE)
            self._cond.notify_all()

    def push_raw(self, data: bytes) -> None:
        """Queue raw bytes (split into bulk-sized chunks)."""
        with self._cond:
            self._outbox.extend(_chunks(bytes(data)))
            self._cond.notify_all()

    # -- Internals -----------------------------------------------------------

    def _check_attached(self, action: str) -> None:
        if self._detached:
            raise TransportDisconnectedError(f"{action} failed: device detached")

    def _detach_locked(self) -> None:
        self._detached = True
        self._opened = False
        self._outbox.clear()
        self._cond.notify_all()

    def _parse_request(self, data: bytes) -> dict[str, Any] | None:
        try:
            _, payload = split_frame(data)
            return decode_payload(payload)
        except FramingError as e:
            logger.warning("Twin received malformed request", error=str(e))
            return None

    def _injected_failure(self, method: str) -> TwinFailure | None:
        cfg = self.config
        if cfg.fail_on_command is None:
            return None
        if cfg.fail_method is not None and method != cfg.fail_method:
            return None
        self._matching_commands += 1
        n = self._matching_commands
        if n == cfg.fail_on_command or (cfg.fail_repeat and n > cfg.fail_on_command):
            logger.debug("Twin injecting failure", method=method, failure=cfg.failure)
            return cfg.failure
        return None

    def _queue_reply(self, reply: dict[str, Any]) -> None:
        self._reply_count += 1
        n = self._reply_count
        if self.config.handshake_every and n % self.config.handshake_every == 0:
            self._outbox.append(METADATA_INIT_SIGNATURE)
        if self.config.notify_every and n % self.config.notify_every == 0:
            flush = {"jsonrpc": "2.0", "method": Method.USB_FLUSH_FORCED.value}
            self._outbox.extend(_chunks(_frame_reply(flush)))
        self._outbox.extend(_chunks(_frame_reply(reply)))
        self._cond.notify_all()

    def _dispatch(self, request: dict[str, Any]) -> dict[str, Any]:
        """Run one request against the simulated firmware."""
        method = request.get("method")
        params = request.get("params") or {}
        reply: dict[str, Any] = {"jsonrpc": "2.0", "id": request.get("id")}

        def error(code: int, message: str) -> dict[str, Any]:
            reply["error"] = {"code": code, "message": message}
            return reply

        if method == Method.PHOTO_TAKE:
            if self.config.capture_latency_s > 0:
                with self._cond:
                    self._cond.wait_for(
                        lambda: self._detached, self.config.capture_latency_s
                    )
            self._photo_count += 1
            self._last_file = f"/DCIM/100DXO/DXO_{self._photo_count:04d}.JPG"
            reply["result"] = {}
        elif method == Method.CAMERA_STATUS_GET:
            reply["result"] = {
                "battery_level": float(self.config.battery_level),
                "sd_card_present": True,
                "sd_card_free_space": float(
                    _CARD_CAPACITY - self._photo_count * _PHOTO_BYTES
                ),
                "is_recording": self._mode == "video",
                "current_mode": self._mode,
            }
        elif method == Method.ALL_SETTINGS_GET:
            reply["result"] = dict(self._settings)
        elif method == Method.SETTING_SET:
            self._settings[str(params["type"])] = params["param"]
            applied = {
                "jsonrpc": "2.0",
                "method": Method.SETTING_APPLIED.value,
                "params": {"type": params["type"]},
            }
            with self._cond:
                self._outbox.extend(_chunks(_frame_reply(applied)))
            reply["result"] = {}
        elif method == Method.CAMERA_MODE_SWITCH:
            mode = params.get("param")
            if mode not in CAMERA_MODES:
                return error(_ERR_INVALID_PARAMS, f"Unknown mode: {mode}")
            self._mode = str(mode)
            reply["result"] = {}
        elif method == Method.TAP_TO_FOCUS:
            try:
                x, y, w, h = json.loads(str(params.get("param")))
            except (ValueError, TypeError):
                return error(_ERR_INVALID_PARAMS, "Focus area must be [x,y,w,h]")
            reply["result"] = {"focused": True, "x": x, "y": y, "width": w, "height": h}
        elif method == Method.FS_LAST_FILE_GET:
            reply["result"] = {"path": self._last_file}
        elif method == Method.DIGITAL_ZOOM_GET:
            reply["result"] = {"zoom": 1.0}
        elif method == Method.CAMERA_POWEROFF:
            reply["result"] = {}
        elif method in (Method.IDLE, Method.FS_CANCEL_GET, Method.GPS_DATA_SET):
            reply["result"] = {}
        else:
            return error(-32601, f"Method not found: {method}")
        return reply

    def _render_live_frame(self) -> bytes:
        """Render one preview frame wrapped in the live-frame header.

        Produces a grid, crosshair and overlay text with a little noise,
        encoded as JPEG. A few noise bytes precede the JPEG start marker,
        as on the real stream.
        """
        self._frame_count += 1
        width, height = _PREVIEW_WIDTH, _PREVIEW_HEIGHT

        img: NDArray[Any] = np.zeros((height, width, 3), dtype=np.uint8)
        img[::_GRID_SPACING, :] = [50, 50, 50]
        img[:, ::_GRID_SPACING] = [50, 50, 50]
        cv2.line(img, (width // 2, 0), (width // 2, height), (0, 255, 0), 1)
        cv2.line(img, (0, height // 2), (width, height // 2), (0, 255, 0), 1)
        cv2.circle(img, (width // 2, height // 2), 40, (0, 100, 0), 1)
        cv2.putText(
            img,
            f"TWIN {self.serial_number or self._location}",
            (10, 25),
            cv2.FONT_HERSHEY_SIMPLEX,
            0.6,
            (255, 255, 255),
            1,
        )
        cv2.putText(
            img,
            f"frame {self._frame_count}",
            (10, 50),
            cv2.FONT_HERSHEY_SIMPLEX,
            0.5,
            (200, 200, 200),
            1,
        )
        noise = np.random.randint(0, 9, img.shape, dtype=np.uint8)
        img = cv2.add(img, noise)

        ok, jpeg = cv2.imencode(".jpg", img, [cv2.IMWRITE_JPEG_QUALITY, _JPEG_QUALITY])
        if not ok:  # pragma: no cover
            raise RuntimeError("JPEG encoding failed")

        padding = bytes(LIVE_FRAME_HEADER_SIZE - len(LIVE_FRAME_MARKER))
        header = LIVE_FRAME_MARKER + padding
        return header + b"\x00\x01\x02" + jpeg.tobytes()

    def __repr__(self) -> str:
        return (
            f"<DigitalTwinHandle serial={self.serial_number!r} "
            f"location={self._location} mode={self._mode}>"
        )


# =============================================================================
# Backend
# =============================================================================


class DigitalTwinBackend:
    """Enumerates simulated cameras.

    Handles are created once and returned on every enumeration until
    they are detached, so a registry sees stable identities.

    Example:
        backend = DigitalTwinBackend(count=4, capture_latency_s=0.02)
        handles = backend.enumerate(vendor_id=VENDOR_ID)
    """

    def __init__(
        self,
        count: int = DEFAULT_TWIN_COUNT,
        configs: list[TwinDeviceConfig] | None = None,
        capture_latency_s: float = 0.0,
    ) -> None:
        """Create the simulated bus.

        Args:
            count: Number of devices when ``configs`` is not given.
            configs: Explicit per-device settings (overrides ``count``).
            capture_latency_s: Capture latency applied to generated configs.

        Raises:
            ValueError: If the device count is outside 0..MAX_TWIN_COUNT.
        """
        if configs is None:
            if not 0 <= count <= MAX_TWIN_COUNT:
                raise ValueError(
                    f"Twin count must be between 0 and {MAX_TWIN_COUNT}, got {count}"
                )
            configs = [
                TwinDeviceConfig(
                    serial_number=f"DXO1TWIN{i + 1:04d}",
                    capture_latency_s=capture_latency_s,
                )
                for i in range(count)
            ]
        self._lock = threading.Lock()
        self._locations = itertools.count()
        self._handles: list[DigitalTwinHandle] = [
            DigitalTwinHandle(cfg, location=self._next_location()) for cfg in configs
        ]

    @property
    def handles(self) -> list[DigitalTwinHandle]:
        """Currently attached twins."""
        with self._lock:
            return list(self._handles)

    def enumerate(self, vendor_id: int | None = None) -> list[UsbHandle]:
        with self._lock:
            return [
                h for h in self._handles if vendor_id is None or h.vendor_id == vendor_id
            ]

    def attach(self, config: TwinDeviceConfig | None = None) -> DigitalTwinHandle:
        """Plug a new twin into the simulated bus.

        Bus locations are never reused, even after a detach.
        """
        with self._lock:
            handle = DigitalTwinHandle(config, location=self._next_location())
            self._handles.append(handle)
        return handle

    def detach(self, serial_number: str | None) -> DetachEvent:
        """Unplug the twin with ``serial_number``.

        Returns:
            The detach event to hand to ``DeviceRegistry.handle_detach``.

        Raises:
            KeyError: If no attached twin has that serial.
        """
        with self._lock:
            for handle in self._handles:
                if handle.serial_number == serial_number:
                    self._handles.remove(handle)
                    break
            else:
                raise KeyError(serial_number)
        handle.detach()
        return DetachEvent(handle.vendor_id, handle.product_id, handle)

    def _next_location(self) -> str:
        return f"twin-{next(self._locations)}"
