"""Pytest configuration and fixtures for multicam-mcp tests.

Provides scripted USB handles, a controllable clock, and cleanup of the
process-wide singletons (driver factory, registry, coordinator) so each
test starts from a clean slate without physical cameras.
"""

import json
from collections import deque
from collections.abc import Callable
from typing import Any

import pytest

from multicam_mcp.devices import (
    DeviceRegistry,
    reset_coordinator,
    shutdown_registry,
)
from multicam_mcp.drivers.config import reset_factory
from multicam_mcp.drivers.protocol import (
    MAX_PACKET_SIZE,
    METADATA_INIT_RESPONSE,
    RPC_HEADER,
    RPC_TRAILER,
    VENDOR_ID,
    decode_payload,
    split_frame,
)
from multicam_mcp.drivers.twin import DigitalTwinBackend
from multicam_mcp.drivers.usb import TransportTimeoutError


def frame_json(obj: dict[str, Any]) -> bytes:
    """Wrap a JSON object in the RPC envelope the way a camera does."""
    payload = (json.dumps(obj) + "\x00").encode("utf-8")
    return RPC_HEADER + len(payload).to_bytes(2, "little") + RPC_TRAILER + payload


class MockUsbHandle:
    """Scripted ``UsbHandle`` for session and registry tests.

    Reads pop from ``reads`` (bytes are returned, exceptions raised);
    an empty queue behaves like a bulk-read timeout. Every write is
    recorded in ``writes``. With ``auto_reply`` set, each request is
    answered with ``results[method]`` (default ``{}``) or with
    ``errors[method]`` as a JSON-RPC error.

    Note:
        ``DeviceSession.open()`` drains the read queue, so script
        replies after opening (or use ``auto_reply``).
    """

    def __init__(
        self,
        serial_number: str | None = "SN0001",
        location: str = "1-1",
        vendor_id: int = VENDOR_ID,
        product_id: int = 0x0001,
    ) -> None:
        self.vendor_id = vendor_id
        self.product_id = product_id
        self.serial_number = serial_number
        self.location = location
        self.reads: deque[bytes | Exception] = deque()
        self.writes: list[bytes] = []
        self.read_timeouts: list[int] = []
        self.claim_results: dict[int, bool] = {}
        self.claimed: set[int] = set()
        self.released: list[int] = []
        self.open_error: Exception | None = None
        self.write_error: Exception | None = None
        self.auto_reply = False
        self.results: dict[str, dict[str, Any]] = {}
        self.errors: dict[str, tuple[int, str]] = {}
        self.opened = False
        self.closed = False

    # -- UsbHandle -------------------------------------------------------

    def open(self) -> None:
        if self.open_error is not None:
            raise self.open_error
        self.opened = True

    def claim(self, interface: int, alt_setting: int = 0) -> bool:
        ok = self.claim_results.get(interface, True)
        if ok:
            self.claimed.add(interface)
        return ok

    def bulk_write(self, endpoint: int, data: bytes, timeout_ms: int) -> int:
        if self.write_error is not None:
            raise self.write_error
        data = bytes(data)
        self.writes.append(data)
        if self.auto_reply and data != METADATA_INIT_RESPONSE:
            request = decode_payload(split_frame(data)[1])
            method = request["method"]
            if method in self.errors:
                code, message = self.errors[method]
                reply = {"id": request["id"], "error": {"code": code, "message": message}}
            else:
                reply = {"id": request["id"], "result": self.results.get(method, {})}
            self.queue_response({"jsonrpc": "2.0", **reply})
        return len(data)

    def bulk_read(self, endpoint: int, size: int, timeout_ms: int) -> bytes:
        self.read_timeouts.append(timeout_ms)
        if not self.reads:
            raise TransportTimeoutError(f"bulk read timed out after {timeout_ms} ms")
        item = self.reads.popleft()
        if isinstance(item, Exception):
            raise item
        if len(item) > size:
            self.reads.appendleft(item[size:])
            item = item[:size]
        return item

    def release(self, interface: int) -> None:
        self.claimed.discard(interface)
        self.released.append(interface)

    def close(self) -> None:
        self.closed = True

    # -- Scripting -------------------------------------------------------

    def queue_chunk(self, *chunks: bytes | Exception) -> None:
        self.reads.extend(chunks)

    def queue_response(self, obj: dict[str, Any]) -> None:
        data = frame_json(obj)
        self.reads.extend(
            data[i : i + MAX_PACKET_SIZE] for i in range(0, len(data), MAX_PACKET_SIZE)
        )

    def queue_result(self, result: Any = None, request_id: int = 0) -> None:
        self.queue_response(
            {"jsonrpc": "2.0", "id": request_id, "result": result or {}}
        )

    @property
    def requests(self) -> list[dict[str, Any]]:
        """Decoded JSON-RPC requests written so far (acks excluded)."""
        return [
            decode_payload(split_frame(w)[1])
            for w in self.writes
            if w != METADATA_INIT_RESPONSE
        ]

    @property
    def ack_count(self) -> int:
        return sum(1 for w in self.writes if w == METADATA_INIT_RESPONSE)


class MockUsbBackend:
    """``UsbBackend`` over a mutable list of handles."""

    def __init__(self, handles: list[Any] | None = None) -> None:
        self.handles = list(handles or [])
        self.enumerations = 0

    def enumerate(self, vendor_id: int | None = None) -> list[Any]:
        self.enumerations += 1
        return [h for h in self.handles if vendor_id is None or h.vendor_id == vendor_id]


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_singletons():
    """Drop the global factory, registry and coordinator after each test.

    Business context:
        The MCP tools and dashboard resolve shared singletons lazily.
        A registry left behind by one test would keep twin sessions
        open and leak devices into the next.
    """
    yield
    shutdown_registry()
    reset_coordinator()
    reset_factory()


@pytest.fixture
def mock_handle() -> MockUsbHandle:
    """Fresh scripted handle with serial ``SN0001`` at ``1-1``."""
    return MockUsbHandle()


@pytest.fixture
def make_handle() -> Callable[..., MockUsbHandle]:
    """Factory for additional scripted handles."""
    return MockUsbHandle


@pytest.fixture
def mock_backend_cls() -> type[MockUsbBackend]:
    return MockUsbBackend


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def frame_reply() -> Callable[[dict[str, Any]], bytes]:
    """The envelope helper, for tests that build raw reply bytes."""
    return frame_json


@pytest.fixture
def twin_backend() -> DigitalTwinBackend:
    """Two simulated cameras: DXO1TWIN0001 and DXO1TWIN0002."""
    return DigitalTwinBackend(count=2)


@pytest.fixture
def twin_registry(twin_backend):
    """Registry with both twins connected; every session closed afterwards.

    Yields:
        DeviceRegistry holding two CONNECTED sessions.
    """
    registry = DeviceRegistry(backend=twin_backend)
    report = registry.connect_all()
    assert report.connected == ["DXO1TWIN0001", "DXO1TWIN0002"]
    yield registry
    registry.disconnect_all()
