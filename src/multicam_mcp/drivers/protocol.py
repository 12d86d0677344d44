"""Wire framing for the camera control channel and live-preview stream.

The cameras speak a JSON-RPC dialect wrapped in a fixed binary envelope
over raw USB bulk transfers. This module converts between that envelope
and Python values. It knows nothing about device management: callers
hand it a ``Channel`` (anything that can send and receive bulk chunks)
and get back parsed responses or complete JPEG frames.

Frame layout (outgoing and incoming)::

    +--------------+------------+-----------------+----------------------+
    | RPC header   | size (LE)  | trailer/padding | payload              |
    | 8 bytes      | 2 bytes    | 22 bytes        | UTF-8 JSON + NUL     |
    +--------------+------------+-----------------+----------------------+

Handshake:
    The device may push ``METADATA_INIT_SIGNATURE`` at any point. It must
    be acknowledged with ``METADATA_INIT_RESPONSE`` before anything else
    happens on the channel, otherwise the device stalls.

Example:
    message = ControlMessage.create(Method.CAMERA_STATUS_GET, None, seq=0)
    channel.send(encode_message(message))
    response = ResponseReader(channel).read_response()
    if response.ok:
        print(response.result)
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

from multicam_mcp.observability import get_logger

logger = get_logger(__name__)

# =============================================================================
# Wire Constants
# =============================================================================

VENDOR_ID = 0x2B8F
CONFIGURATION = 1
CONTROL_INTERFACE = 0
DATA_INTERFACE = 1
DATA_ALT_SETTING = 1
ENDPOINT_IN = 0x81
ENDPOINT_OUT = 0x02

MAX_PACKET_SIZE = 512

METADATA_INIT_SIGNATURE = (
    bytes([0xA3, 0xBA, 0xD1, 0x10, 0xAB, 0xCD, 0xAB, 0xCD])
    + bytes([0x00, 0x00, 0x00, 0x00, 0x02, 0x00, 0x00, 0x00])
    + bytes(16)
)
METADATA_INIT_RESPONSE = bytes([0xA3, 0xBA, 0xD1, 0x10, 0xDC, 0xBA, 0xDC, 0xBA]) + bytes(
    24
)

RPC_HEADER = bytes([0xA3, 0xBA, 0xD1, 0x10, 0x17, 0x08, 0x00, 0x0C])
RPC_TRAILER = bytes([0x00, 0x00, 0x03, 0x00]) + bytes(18)

#: Offset of the little-endian payload size inside a frame header.
SIZE_OFFSET = len(RPC_HEADER)
#: Total envelope size preceding the payload (8 + 2 + 22).
HEADER_SIZE = len(RPC_HEADER) + 2 + len(RPC_TRAILER)
MAX_PAYLOAD_SIZE = 0xFFFF

LIVE_FRAME_MARKER = bytes([0xA3, 0xBA, 0xD1, 0x10])
LIVE_FRAME_HEADER_SIZE = 32
JPEG_START = b"\xff\xd8\xff"
JPEG_END = b"\xff\xd9"

#: Consecutive handshake chunks tolerated while waiting for real data.
DEFAULT_MAX_HANDSHAKES = 8
#: Out-of-band notifications skipped before a response read gives up.
DEFAULT_MAX_NOTIFICATIONS = 8
#: Upper bound on a buffered live frame before the reader resynchronises.
DEFAULT_MAX_FRAME_BYTES = 8 * 1024 * 1024
#: Consecutive zero-length live reads before the frame is abandoned.
DEFAULT_MAX_EMPTY_READS = 4


# =============================================================================
# Command Vocabulary
# =============================================================================


class Method(StrEnum):
    """JSON-RPC method names understood by the camera."""

    PHOTO_TAKE = "dxo_photo_take"
    CAMERA_STATUS_GET = "dxo_camera_status_get"
    ALL_SETTINGS_GET = "dxo_all_settings_get"
    SETTING_SET = "dxo_setting_set"
    CAMERA_MODE_SWITCH = "dxo_camera_mode_switch"
    CAMERA_POWEROFF = "dxo_camera_poweroff"
    IDLE = "dxo_idle"
    TAP_TO_FOCUS = "dxo_tap_to_focus"
    DIGITAL_ZOOM_GET = "dxo_digital_zoom_get"
    FS_LAST_FILE_GET = "dxo_fs_last_file_get"
    FS_CANCEL_GET = "dxo_fs_cancel_get"
    GPS_DATA_SET = "dxo_gps_data_set"
    # Pushed by the device, never answers to a request
    USB_FLUSH_FORCED = "dxo_usb_flush_forced"
    SETTING_APPLIED = "dxo_setting_applied"


COMMANDS: frozenset[str] = frozenset(
    {
        Method.PHOTO_TAKE,
        Method.CAMERA_STATUS_GET,
        Method.ALL_SETTINGS_GET,
        Method.SETTING_SET,
        Method.CAMERA_MODE_SWITCH,
        Method.CAMERA_POWEROFF,
        Method.IDLE,
        Method.TAP_TO_FOCUS,
        Method.DIGITAL_ZOOM_GET,
        Method.FS_LAST_FILE_GET,
        Method.FS_CANCEL_GET,
        Method.GPS_DATA_SET,
    }
)
NOTIFICATIONS: frozenset[str] = frozenset(
    {Method.USB_FLUSH_FORCED, Method.SETTING_APPLIED}
)
ALLOWED_METHODS: frozenset[str] = COMMANDS | NOTIFICATIONS

#: Parameter keys that must be present for commands that take parameters.
REQUIRED_PARAMS: dict[str, frozenset[str]] = {
    Method.SETTING_SET: frozenset({"type", "param"}),
    Method.CAMERA_MODE_SWITCH: frozenset({"param"}),
    Method.TAP_TO_FOCUS: frozenset({"param"}),
}


# =============================================================================
# Exceptions
# =============================================================================


class FramingError(Exception):
    """Base class for recoverable framing and decode failures."""


class MalformedFrameError(FramingError):
    """Raised when a chunk or buffer does not have the expected envelope."""


class ResponseDecodeError(FramingError):
    """Raised when a response payload is not valid UTF-8 JSON."""


class NotificationFloodError(FramingError):
    """Raised when the device keeps pushing notifications instead of answering."""


class InvalidCommandError(ValueError):
    """Raised when a method name is not on the allow-list."""


class InvalidParamsError(ValueError):
    """Raised when command parameters have an unsupported shape."""


# =============================================================================
# Channel Protocol
# =============================================================================


@runtime_checkable
class Channel(Protocol):  # pragma: no cover
    """Bidirectional bulk pipe used by the readers in this module.

    Implementations bind a USB handle, endpoints and timeout together.
    ``receive`` returns whatever one bulk read produced (possibly fewer
    than ``size`` bytes) and raises on transport failure.
    """

    def send(self, data: bytes) -> int:
        """Write one bulk transfer and return the number of bytes written."""
        ...

    def receive(self, size: int) -> bytes:
        """Read up to ``size`` bytes from one bulk transfer."""
        ...


# =============================================================================
# Messages
# =============================================================================

_SCALARS = (str, int, float, bool, type(None))


def validate_method(method: str) -> None:
    """Reject a method name that is not on the allow-list.

    Args:
        method: JSON-RPC method name.

    Raises:
        InvalidCommandError: If the name is unknown.
    """
    if method not in ALLOWED_METHODS:
        raise InvalidCommandError(f"Unknown command: {method}")


def _check_value(value: Any, path: str) -> None:
    if isinstance(value, _SCALARS):
        return
    if isinstance(value, list | tuple):
        for index, item in enumerate(value):
            _check_value(item, f"{path}[{index}]")
        return
    if isinstance(value, Mapping):
        for key, item in value.items():
            if not isinstance(key, str):
                raise InvalidParamsError(f"Non-string key at {path}: {key!r}")
            _check_value(item, f"{path}.{key}")
        return
    raise InvalidParamsError(
        f"Unsupported parameter type at {path}: {type(value).__name__}"
    )


def validate_params(method: str, params: Mapping[str, Any] | None) -> None:
    """Check parameter shape for a command before it is encoded.

    Parameters must be a string-keyed mapping whose values are JSON
    scalars, lists, or nested mappings of the same. Commands listed in
    ``REQUIRED_PARAMS`` must carry their required keys.

    Args:
        method: Allow-listed method name.
        params: Parameters or None.

    Raises:
        InvalidParamsError: On unsupported shapes or missing keys.
    """
    required = REQUIRED_PARAMS.get(method, frozenset())
    if params is None:
        if required:
            raise InvalidParamsError(
                f"{method} requires parameters: {sorted(required)}"
            )
        return
    if not isinstance(params, Mapping):
        raise InvalidParamsError(
            f"Parameters must be a mapping, got {type(params).__name__}"
        )
    _check_value(params, "params")
    missing = required - params.keys()
    if missing:
        raise InvalidParamsError(f"{method} missing parameters: {sorted(missing)}")


@dataclass(frozen=True, slots=True)
class ControlMessage:
    """Outgoing control request.

    Attributes:
        method: Allow-listed method name.
        params: Optional parameter mapping.
        seq: Per-session sequence number assigned at send time.
    """

    method: str
    params: Mapping[str, Any] | None
    seq: int

    @classmethod
    def create(
        cls, method: str, params: Mapping[str, Any] | None, seq: int
    ) -> ControlMessage:
        """Validate and build a message.

        Raises:
            InvalidCommandError: If ``method`` is not allow-listed.
            InvalidParamsError: If ``params`` has an unsupported shape.
        """
        validate_method(method)
        validate_params(method, params)
        return cls(method=str(method), params=params, seq=seq)

    def to_json(self) -> dict[str, Any]:
        """Return the JSON-RPC request object."""
        body: dict[str, Any] = {"jsonrpc": "2.0", "id": self.seq, "method": self.method}
        if self.params is not None:
            body["params"] = dict(self.params)
        return body


@dataclass(frozen=True, slots=True)
class ControlResponse:
    """Decoded device reply.

    Exactly one of ``result`` or ``error_code`` is meaningful for a
    regular reply; ``is_notification`` marks an out-of-band push.

    Attributes:
        result: Result mapping on success.
        error_code: Numeric error code when the device reports failure.
        error_message: Error text when the device reports failure.
        is_notification: True for pushes such as ``dxo_usb_flush_forced``.
        method: Method name carried by notifications.
        response_id: The ``id`` field, if present.
        raw: The full decoded JSON object.
    """

    result: dict[str, Any] | None = None
    error_code: int | None = None
    error_message: str | None = None
    is_notification: bool = False
    method: str | None = None
    response_id: int | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        """True when the reply is a non-notification without an error."""
        return not self.is_notification and self.error_code is None

    @classmethod
    def from_json(cls, obj: dict[str, Any]) -> ControlResponse:
        """Classify a decoded JSON-RPC object.

        Args:
            obj: Parsed JSON object from the device.

        Returns:
            ControlResponse. A ``method`` from ``NOTIFICATIONS``, or any
            ``method`` without an ``id``, marks a notification. An
            ``error`` member becomes ``error_code``/``error_message``.
            A non-mapping ``result`` is wrapped as ``{"value": result}``.
        """
        method = obj.get("method")
        response_id = obj.get("id")
        if method is not None and (method in NOTIFICATIONS or response_id is None):
            params = obj.get("params")
            return cls(
                result=params if isinstance(params, dict) else None,
                is_notification=True,
                method=method,
                response_id=response_id,
                raw=obj,
            )

        error = obj.get("error")
        if error is not None:
            if isinstance(error, dict):
                code = error.get("code", -1)
                message = str(error.get("message", ""))
            else:
                code, message = -1, str(error)
            return cls(
                error_code=int(code) if isinstance(code, int | float) else -1,
                error_message=message,
                method=method,
                response_id=response_id,
                raw=obj,
            )

        result = obj.get("result", {})
        if not isinstance(result, dict):
            result = {"value": result}
        return cls(result=result, method=method, response_id=response_id, raw=obj)


# =============================================================================
# Encoding / Decoding
# =============================================================================


def encode_payload(message: ControlMessage) -> bytes:
    """Serialise a message body to null-terminated UTF-8 JSON."""
    text = json.dumps(message.to_json(), separators=(",", ":"), ensure_ascii=False)
    return (text + "\x00").encode("utf-8")


def encode_message(message: ControlMessage) -> bytes:
    """Build the complete wire frame for a control message.

    The size field is always computed from the serialised payload
    itself; nothing else feeds into it.

    Args:
        message: Validated message.

    Returns:
        Header, little-endian size, trailer and payload concatenated.

    Raises:
        InvalidParamsError: If the payload does not fit the 16-bit size field.

    Example:
        >>> frame = encode_message(ControlMessage.create("dxo_idle", None, 3))
        >>> frame[:8] == RPC_HEADER
        True
    """
    payload = encode_payload(message)
    if len(payload) > MAX_PAYLOAD_SIZE:
        raise InvalidParamsError(
            f"Encoded payload of {len(payload)} bytes exceeds {MAX_PAYLOAD_SIZE}"
        )
    return RPC_HEADER + len(payload).to_bytes(2, "little") + RPC_TRAILER + payload


def parse_header(chunk: bytes) -> int:
    """Return the declared payload size from the first chunk of a reply.

    Raises:
        MalformedFrameError: If the chunk is shorter than the envelope or
            declares an empty payload.
    """
    if len(chunk) < HEADER_SIZE:
        raise MalformedFrameError(
            f"Response header too short: {len(chunk)} < {HEADER_SIZE} bytes"
        )
    size = chunk[SIZE_OFFSET] | (chunk[SIZE_OFFSET + 1] << 8)
    if size == 0:
        raise MalformedFrameError("Response declares an empty payload")
    return size


def split_frame(frame: bytes) -> tuple[int, bytes]:
    """Split a complete frame into its declared size and payload bytes.

    Used by the simulated device to read requests, and handy when
    inspecting captured traffic.
    """
    size = parse_header(frame)
    payload = frame[HEADER_SIZE : HEADER_SIZE + size]
    if len(payload) < size:
        raise MalformedFrameError(
            f"Frame truncated: declared {size} bytes, got {len(payload)}"
        )
    return size, payload


def decode_payload(payload: bytes) -> dict[str, Any]:
    """Decode a reply payload into a JSON object.

    Trailing NULs and surrounding whitespace are stripped first.

    Raises:
        ResponseDecodeError: If the bytes are not UTF-8 JSON describing
            an object.
    """
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ResponseDecodeError(f"Response is not valid UTF-8: {e}") from e
    text = text.replace("\x00", "").strip()
    try:
        obj = json.loads(text)
    except json.JSONDecodeError as e:
        raise ResponseDecodeError(f"Response is not valid JSON: {e}") from e
    if not isinstance(obj, dict):
        raise ResponseDecodeError(
            f"Response must be a JSON object, got {type(obj).__name__}"
        )
    return obj


def is_handshake(chunk: bytes) -> bool:
    """True if ``chunk`` is exactly the device's metadata-init signature."""
    return chunk == METADATA_INIT_SIGNATURE


def extract_jpeg(buffer: bytes) -> bytes | None:
    """Return the first complete JPEG in ``buffer``, or None.

    A frame is valid only when a start marker precedes an end marker.
    Bytes before the start marker are discarded.
    """
    start = buffer.find(JPEG_START)
    if start < 0:
        return None
    end = buffer.find(JPEG_END, start + len(JPEG_START))
    if end < 0:
        return None
    return bytes(buffer[start : end + len(JPEG_END)])


# =============================================================================
# Readers
# =============================================================================


class _HandshakeAwareReader:
    """Shared chunk reader that acknowledges handshake signatures."""

    def __init__(
        self,
        channel: Channel,
        max_handshakes: int = DEFAULT_MAX_HANDSHAKES,
    ) -> None:
        self._channel = channel
        self._max_handshakes = max_handshakes

    def acknowledge(self) -> None:
        """Send the handshake response."""
        self._channel.send(METADATA_INIT_RESPONSE)

    def next_chunk(self) -> bytes:
        """Read the next non-handshake chunk.

        Raises:
            MalformedFrameError: If only handshakes arrive.
        """
        for _ in range(self._max_handshakes + 1):
            chunk = bytes(self._channel.receive(MAX_PACKET_SIZE))
            if not is_handshake(chunk):
                return chunk
            logger.debug("Handshake received, acknowledging")
            self.acknowledge()
        raise MalformedFrameError(
            f"Device sent more than {self._max_handshakes} consecutive handshakes"
        )


class ResponseReader(_HandshakeAwareReader):
    """Reads one control response from a channel.

    Handshakes are acknowledged transparently wherever they appear.
    Notifications are skipped and the read repeats, up to
    ``max_notifications`` times.

    Example:
        reader = ResponseReader(channel)
        response = reader.read_response()
    """

    def __init__(
        self,
        channel: Channel,
        max_handshakes: int = DEFAULT_MAX_HANDSHAKES,
        max_notifications: int = DEFAULT_MAX_NOTIFICATIONS,
    ) -> None:
        super().__init__(channel, max_handshakes)
        self._max_notifications = max_notifications

    def read_payload(self) -> bytes:
        """Read exactly one declared payload from the channel."""
        first = self.next_chunk()
        size = parse_header(first)
        buffer = bytearray(first[HEADER_SIZE:])
        while len(buffer) < size:
            chunk = self.next_chunk()
            if not chunk:
                raise MalformedFrameError(
                    f"Empty read with {size - len(buffer)} payload bytes outstanding"
                )
            buffer += chunk
        return bytes(buffer[:size])

    def read_response(self) -> ControlResponse:
        """Read until a reply that is not a notification arrives.

        Returns:
            The decoded reply (success or device error).

        Raises:
            MalformedFrameError: Bad envelope.
            ResponseDecodeError: Bad payload.
            NotificationFloodError: Too many notifications in a row.
        """
        for _ in range(self._max_notifications + 1):
            response = ControlResponse.from_json(decode_payload(self.read_payload()))
            if not response.is_notification:
                return response
            logger.debug("Skipping device notification", method=response.method)
        raise NotificationFloodError(
            f"Device sent more than {self._max_notifications} notifications "
            "without answering"
        )


class LiveFrameReader(_HandshakeAwareReader):
    """Assembles JPEG frames from the live-preview byte stream.

    Chunks that begin with the live-frame marker have their fixed
    header skipped; other chunks are buffered whole. Reading continues
    until an end-of-image pair is in the buffer, then the first complete
    JPEG is sliced out.
    """

    def __init__(
        self,
        channel: Channel,
        max_handshakes: int = DEFAULT_MAX_HANDSHAKES,
        max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES,
        max_empty_reads: int = DEFAULT_MAX_EMPTY_READS,
    ) -> None:
        super().__init__(channel, max_handshakes)
        self._max_frame_bytes = max_frame_bytes
        self._max_empty_reads = max_empty_reads

    def read_frame(self) -> bytes:
        """Read one complete JPEG frame.

        Raises:
            MalformedFrameError: If the end marker arrives without a
                preceding start marker, the buffer limit is reached or
                the device keeps returning zero-length reads.
        """
        buffer = bytearray()
        empty_reads = 0
        while True:
            chunk = self.next_chunk()
            if not chunk:
                empty_reads += 1
                if empty_reads > self._max_empty_reads:
                    raise MalformedFrameError(
                        f"{empty_reads} consecutive empty reads with "
                        f"{len(buffer)} frame bytes buffered"
                    )
                continue
            empty_reads = 0
            if chunk.startswith(LIVE_FRAME_MARKER):
                chunk = chunk[LIVE_FRAME_HEADER_SIZE:]
            buffer += chunk
            if JPEG_END in buffer:
                frame = extract_jpeg(buffer)
                if frame is not None:
                    return frame
                if JPEG_START not in buffer:
                    raise MalformedFrameError(
                        "End-of-image marker without a start marker"
                    )
                # Stray end marker ahead of the start; keep reading
            if len(buffer) > self._max_frame_bytes:
                raise MalformedFrameError(
                    f"No end-of-image marker within {self._max_frame_bytes} bytes"
                )
