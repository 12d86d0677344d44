"""Tests for the control-channel framing and live-frame extraction."""

import json
from collections import deque

import pytest

from multicam_mcp.drivers.protocol import (
    HEADER_SIZE,
    JPEG_END,
    JPEG_START,
    LIVE_FRAME_HEADER_SIZE,
    LIVE_FRAME_MARKER,
    MAX_PACKET_SIZE,
    MAX_PAYLOAD_SIZE,
    METADATA_INIT_RESPONSE,
    METADATA_INIT_SIGNATURE,
    RPC_HEADER,
    RPC_TRAILER,
    COMMANDS,
    REQUIRED_PARAMS,
    ControlMessage,
    ControlResponse,
    InvalidCommandError,
    InvalidParamsError,
    LiveFrameReader,
    MalformedFrameError,
    Method,
    NotificationFloodError,
    ResponseDecodeError,
    ResponseReader,
    decode_payload,
    encode_message,
    extract_jpeg,
    is_handshake,
    parse_header,
    split_frame,
)
from multicam_mcp.drivers.usb import TransportTimeoutError

JPEG = JPEG_START + b"\xe0fake-image-body" + JPEG_END


class FakeChannel:
    """Channel that replays scripted chunks and records what was sent."""

    def __init__(self, chunks=()):
        self.chunks = deque(chunks)
        self.sent: list[bytes] = []

    def send(self, data: bytes) -> int:
        self.sent.append(bytes(data))
        return len(data)

    def receive(self, size: int) -> bytes:
        if not self.chunks:
            raise TransportTimeoutError("no data")
        return self.chunks.popleft()


def _frame(obj) -> bytes:
    payload = (json.dumps(obj) + "\x00").encode()
    return RPC_HEADER + len(payload).to_bytes(2, "little") + RPC_TRAILER + payload


def _chunked(data: bytes, size: int = MAX_PACKET_SIZE) -> list[bytes]:
    return [data[i : i + size] for i in range(0, len(data), size)]


class TestControlMessage:
    """Validation performed before anything is encoded."""

    def test_create_accepts_allowed_method(self):
        message = ControlMessage.create(Method.CAMERA_STATUS_GET, None, seq=7)

        assert message.method == "dxo_camera_status_get"
        assert message.to_json() == {
            "jsonrpc": "2.0",
            "id": 7,
            "method": "dxo_camera_status_get",
        }

    def test_unknown_method_rejected(self):
        """Names outside the allow-list never reach the encoder.

        Arrangement:
        1. A method name that looks plausible but is not allow-listed.

        Action:
        ControlMessage.create() with that name.

        Assertion Strategy:
        InvalidCommandError is raised and is a ValueError, so callers
        that only know about ValueError still catch it.
        """
        with pytest.raises(InvalidCommandError, match="Unknown command"):
            ControlMessage.create("dxo_format_sd_card", None, seq=0)
        assert issubclass(InvalidCommandError, ValueError)

    def test_required_params_enforced(self):
        with pytest.raises(InvalidParamsError, match="requires parameters"):
            ControlMessage.create(Method.SETTING_SET, None, seq=0)
        with pytest.raises(InvalidParamsError, match="missing parameters"):
            ControlMessage.create(Method.SETTING_SET, {"type": "iso"}, seq=0)

    def test_params_must_be_mapping(self):
        with pytest.raises(InvalidParamsError, match="must be a mapping"):
            ControlMessage.create(Method.IDLE, ["not", "a", "dict"], seq=0)  # type: ignore[arg-type]

    def test_unsupported_value_type_rejected(self):
        with pytest.raises(InvalidParamsError, match="params.param"):
            ControlMessage.create(Method.CAMERA_MODE_SWITCH, {"param": object()}, 0)

    def test_non_string_key_rejected(self):
        with pytest.raises(InvalidParamsError, match="Non-string key"):
            ControlMessage.create(
                Method.GPS_DATA_SET, {"nested": {1: "x"}}, seq=0  # type: ignore[dict-item]
            )

    def test_nested_scalars_allowed(self):
        params = {"param": "view", "extra": [1, 2.5, None, {"flag": True}]}
        message = ControlMessage.create(Method.CAMERA_MODE_SWITCH, params, seq=3)

        assert message.to_json()["params"] == params


class TestEncoding:
    """Envelope layout and header parsing."""

    def test_encode_message_layout(self):
        """Size field is derived from the serialised payload.

        Arrangement:
        1. A setting_set message with two parameters.

        Action:
        encode_message().

        Assertion Strategy:
        - Frame starts with the RPC header and carries the trailer.
        - Little-endian size equals the payload length exactly.
        - Payload is null-terminated JSON matching to_json().
        """
        message = ControlMessage.create(
            Method.SETTING_SET, {"type": "iso", "param": "400"}, seq=12
        )
        frame = encode_message(message)

        assert frame[:8] == RPC_HEADER
        size = int.from_bytes(frame[8:10], "little")
        assert frame[10:HEADER_SIZE] == RPC_TRAILER
        payload = frame[HEADER_SIZE:]
        assert len(payload) == size
        assert payload.endswith(b"\x00")
        assert json.loads(payload[:-1]) == message.to_json()

    def test_oversized_payload_rejected(self):
        message = ControlMessage.create(Method.GPS_DATA_SET, {"blob": "x" * 70_000}, 0)

        with pytest.raises(InvalidParamsError, match="exceeds"):
            encode_message(message)

    def test_parse_header_short_chunk(self):
        with pytest.raises(MalformedFrameError, match="too short"):
            parse_header(RPC_HEADER + b"\x05\x00")

    def test_parse_header_zero_size(self):
        with pytest.raises(MalformedFrameError, match="empty payload"):
            parse_header(RPC_HEADER + b"\x00\x00" + RPC_TRAILER)

    def test_split_frame_round_trip(self):
        frame = encode_message(ControlMessage.create(Method.IDLE, None, 1))
        size, payload = split_frame(frame)

        assert size == len(payload)
        assert decode_payload(payload)["method"] == "dxo_idle"

    def test_split_frame_truncated(self):
        frame = encode_message(ControlMessage.create(Method.IDLE, None, 1))

        with pytest.raises(MalformedFrameError, match="truncated"):
            split_frame(frame[:-3])


PARAM_SHAPES = {
    "none": {},
    "nested": {
        "grid": {"rows": [1, 2, 3], "meta": {"on": True, "gain": -0.5, "x": None}}
    },
    "unicode": {"label": "café ✓ 東京 \U0001f4f7", "notes": ["naïve", "Ω"]},
}


def _params_for(method, shape):
    params = {key: f"{key}-value" for key in sorted(REQUIRED_PARAMS.get(method, ()))}
    params.update(PARAM_SHAPES[shape])
    return params or None


def _near_max_params(method):
    """Parameters whose encoded payload lands a few bytes under the limit."""
    params = _params_for(method, "none") or {}
    params["blob"] = ""
    base = len(encode_message(ControlMessage.create(method, params, seq=65_000)))
    params["blob"] = "x" * (MAX_PAYLOAD_SIZE - (base - HEADER_SIZE) - 3)
    return params


class TestRoundTrip:
    """Encode then split then decode returns the original request."""

    @pytest.mark.parametrize("shape", sorted(PARAM_SHAPES))
    @pytest.mark.parametrize("method", sorted(COMMANDS))
    def test_every_command(self, method, shape):
        message = ControlMessage.create(method, _params_for(method, shape), seq=41)

        frame = encode_message(message)
        size, payload = split_frame(frame)
        reassembled = ResponseReader(FakeChannel(_chunked(frame))).read_payload()

        assert size == len(payload) == int.from_bytes(frame[8:10], "little")
        assert reassembled == payload
        assert decode_payload(payload) == message.to_json()

    @pytest.mark.parametrize("method", sorted(COMMANDS))
    def test_near_payload_limit(self, method):
        message = ControlMessage.create(method, _near_max_params(method), seq=65_000)

        frame = encode_message(message)
        size, payload = split_frame(frame)

        assert MAX_PAYLOAD_SIZE - 3 <= size <= MAX_PAYLOAD_SIZE
        assert decode_payload(payload) == message.to_json()


class TestDecodePayload:
    def test_strips_nul_and_whitespace(self):
        assert decode_payload(b' {"result": {}} \x00\x00') == {"result": {}}

    def test_invalid_utf8(self):
        with pytest.raises(ResponseDecodeError, match="UTF-8"):
            decode_payload(b"\xff\xfe{}")

    def test_invalid_json(self):
        with pytest.raises(ResponseDecodeError, match="not valid JSON"):
            decode_payload(b'{"result": \x00')

    def test_non_object(self):
        with pytest.raises(ResponseDecodeError, match="JSON object"):
            decode_payload(b"[1, 2]\x00")


class TestControlResponse:
    """Classification of decoded device replies."""

    def test_success(self):
        response = ControlResponse.from_json({"id": 1, "result": {"ok": 1}})

        assert response.ok
        assert response.result == {"ok": 1}
        assert response.response_id == 1

    def test_error_object(self):
        response = ControlResponse.from_json(
            {"id": 2, "error": {"code": -32000, "message": "busy"}}
        )

        assert not response.ok
        assert response.error_code == -32000
        assert response.error_message == "busy"

    def test_error_string(self):
        response = ControlResponse.from_json({"id": 2, "error": "card full"})

        assert response.error_code == -1
        assert response.error_message == "card full"

    def test_known_notification_with_id(self):
        response = ControlResponse.from_json(
            {"id": 9, "method": "dxo_usb_flush_forced", "params": {"reason": "x"}}
        )

        assert response.is_notification
        assert not response.ok
        assert response.result == {"reason": "x"}

    def test_method_without_id_is_notification(self):
        response = ControlResponse.from_json({"method": "dxo_something_new"})

        assert response.is_notification
        assert response.method == "dxo_something_new"

    def test_scalar_result_wrapped(self):
        assert ControlResponse.from_json({"id": 1, "result": 42}).result == {
            "value": 42
        }


class TestHandshakeAndJpeg:
    def test_is_handshake_exact_match_only(self):
        assert is_handshake(METADATA_INIT_SIGNATURE)
        assert not is_handshake(METADATA_INIT_SIGNATURE + b"\x00")
        assert not is_handshake(METADATA_INIT_RESPONSE)

    def test_extract_jpeg_discards_leading_noise(self):
        assert extract_jpeg(b"\x00\x01noise" + JPEG + b"tail") == JPEG

    def test_extract_jpeg_incomplete(self):
        assert extract_jpeg(b"noise") is None
        assert extract_jpeg(JPEG_START + b"partial") is None

    def test_extract_jpeg_skips_stray_end_marker(self):
        assert extract_jpeg(JPEG_END + b"junk" + JPEG) == JPEG


class TestResponseReader:
    """Reading one reply from a chunked, handshake-interrupted stream."""

    def test_single_chunk_reply(self):
        channel = FakeChannel([_frame({"id": 0, "result": {"battery": 90}})])

        response = ResponseReader(channel).read_response()

        assert response.result == {"battery": 90}
        assert channel.sent == []

    def test_multi_chunk_reply(self):
        """A payload larger than one packet is reassembled.

        Arrangement:
        1. Reply with a 2 KB string field, split at the packet size.

        Action:
        read_response().

        Assertion Strategy:
        The decoded result contains the full string.
        """
        body = "z" * 2048
        channel = FakeChannel(_chunked(_frame({"id": 3, "result": {"body": body}})))

        response = ResponseReader(channel).read_response()

        assert response.result == {"body": body}
        assert not channel.chunks

    def test_handshake_acknowledged_anywhere(self):
        chunks = _chunked(_frame({"id": 1, "result": {"body": "y" * 1000}}))
        scripted = [METADATA_INIT_SIGNATURE, chunks[0], METADATA_INIT_SIGNATURE]
        channel = FakeChannel(scripted + chunks[1:])

        response = ResponseReader(channel).read_response()

        assert response.ok
        assert channel.sent == [METADATA_INIT_RESPONSE, METADATA_INIT_RESPONSE]

    def test_handshake_storm_bounded(self):
        channel = FakeChannel([METADATA_INIT_SIGNATURE] * 4)

        with pytest.raises(MalformedFrameError, match="consecutive handshakes"):
            ResponseReader(channel, max_handshakes=3).read_response()
        assert len(channel.sent) == 4

    def test_notifications_skipped(self):
        channel = FakeChannel(
            [
                _frame({"jsonrpc": "2.0", "method": "dxo_usb_flush_forced"}),
                _frame({"jsonrpc": "2.0", "method": "dxo_setting_applied"}),
                _frame({"jsonrpc": "2.0", "id": 5, "result": {}}),
            ]
        )

        response = ResponseReader(channel).read_response()

        assert response.ok
        assert response.response_id == 5

    def test_notification_flood(self):
        flush = _frame({"jsonrpc": "2.0", "method": "dxo_usb_flush_forced"})
        channel = FakeChannel([flush] * 3)

        with pytest.raises(NotificationFloodError):
            ResponseReader(channel, max_notifications=2).read_response()

    def test_empty_continuation_read(self):
        first = _frame({"id": 1, "result": {"body": "q" * 900}})[:MAX_PACKET_SIZE]
        channel = FakeChannel([first, b""])

        with pytest.raises(MalformedFrameError, match="outstanding"):
            ResponseReader(channel).read_response()

    def test_timeout_propagates(self):
        with pytest.raises(TransportTimeoutError):
            ResponseReader(FakeChannel()).read_response()


class TestLiveFrameReader:
    """JPEG assembly from the preview stream."""

    def test_marker_header_and_noise_discarded(self):
        """Only the bytes from start marker to end marker are returned.

        Arrangement:
        1. A chunk with the live-frame marker, its fixed header, some
           noise bytes, then a JPEG split over two chunks.

        Action:
        read_frame().

        Assertion Strategy:
        The returned frame equals the JPEG exactly: no header bytes,
        no noise, nothing after the end marker.

        Testing Principle:
        Validates the stream contract relied on by the MJPEG endpoint.
        """
        header = LIVE_FRAME_MARKER + bytes(LIVE_FRAME_HEADER_SIZE - len(LIVE_FRAME_MARKER))
        data = header + b"\x00\x01\x02" + JPEG
        channel = FakeChannel([data[:40], data[40:]])

        frame = LiveFrameReader(channel).read_frame()

        assert frame == JPEG
        assert frame.startswith(b"\xff\xd8\xff")
        assert frame.endswith(b"\xff\xd9")

    def test_handshake_in_stream_acknowledged(self):
        channel = FakeChannel([METADATA_INIT_SIGNATURE, JPEG])

        assert LiveFrameReader(channel).read_frame() == JPEG
        assert channel.sent == [METADATA_INIT_RESPONSE]

    def test_end_without_start(self):
        channel = FakeChannel([b"\x00\x11" + JPEG_END])

        with pytest.raises(MalformedFrameError, match="without a start"):
            LiveFrameReader(channel).read_frame()

    def test_stray_end_before_start_keeps_reading(self):
        channel = FakeChannel([JPEG_END + b"junk" + JPEG_START + b"abc", b"def" + JPEG_END])

        assert LiveFrameReader(channel).read_frame() == JPEG_START + b"abcdef" + JPEG_END

    def test_buffer_limit(self):
        channel = FakeChannel([JPEG_START + bytes(50), bytes(50)])

        with pytest.raises(MalformedFrameError, match="No end-of-image"):
            LiveFrameReader(channel, max_frame_bytes=64).read_frame()

    def test_endless_empty_reads_abandon_frame(self):
        class _EmptyChannel(FakeChannel):
            reads = 0

            def receive(self, size: int) -> bytes:
                self.reads += 1
                return b""

        channel = _EmptyChannel()

        with pytest.raises(MalformedFrameError, match="5 consecutive empty reads"):
            LiveFrameReader(channel, max_empty_reads=4).read_frame()
        assert channel.reads == 5

    def test_isolated_empty_read_tolerated(self):
        channel = FakeChannel([JPEG[:6], b"", JPEG[6:]])

        assert LiveFrameReader(channel).read_frame() == JPEG
