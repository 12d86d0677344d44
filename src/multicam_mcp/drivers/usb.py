"""USB transport protocols and the pyusb-backed implementation.

Provides the boundary between device sessions and the operating
system's USB stack. Sessions only ever talk to the ``UsbHandle``
protocol, so tests and the digital twin can stand in for real hardware.

Protocols:
    UsbHandle: One opened USB device (claim, bulk read/write, release)
    UsbBackend: Enumeration of attached devices

Implementations:
    PyUsbHandle / PyUsbBackend: libusb access through pyusb
    HotplugMonitor: Polling attach/detach watcher over any backend

Error mapping:
    pyusb timeouts become ``TransportTimeoutError`` (the caller may
    retry). Every other pyusb failure becomes
    ``TransportDisconnectedError``, which sessions treat as the device
    being gone.

Example:
    backend = PyUsbBackend()
    for handle in backend.enumerate(vendor_id=VENDOR_ID):
        handle.open()
        handle.claim(CONTROL_INTERFACE)
"""

from __future__ import annotations

import contextlib
import errno
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import usb.core
import usb.util

from multicam_mcp.observability import get_logger

logger = get_logger(__name__)

# =============================================================================
# Exceptions
# =============================================================================


class TransportError(Exception):
    """Base exception for USB transport failures."""


class TransportTimeoutError(TransportError):
    """Raised when a bulk transfer does not complete in time (recoverable)."""


class TransportDisconnectedError(TransportError):
    """Raised when the device or interface is gone (hard failure)."""


_TIMEOUT_ERRNOS = frozenset({errno.ETIMEDOUT})


def _translate(error: usb.core.USBError, action: str) -> TransportError:
    """Map a pyusb error onto the transport hierarchy."""
    if isinstance(error, usb.core.USBTimeoutError) or error.errno in _TIMEOUT_ERRNOS:
        return TransportTimeoutError(f"{action} timed out: {error}")
    return TransportDisconnectedError(f"{action} failed: {error}")


# =============================================================================
# Protocols
# =============================================================================


@runtime_checkable
class UsbHandle(Protocol):  # pragma: no cover
    """Protocol for one USB device handle.

    Matches the subset of libusb operations the camera sessions need.
    Implement this to script device behaviour in tests.

    Example:
        class ScriptedHandle:
            vendor_id = 0x2B8F
            product_id = 0x0001
            serial_number = "SN1"
            location = "1-4"

            def open(self): ...
            def claim(self, interface, alt_setting=0): return True
            def bulk_write(self, endpoint, data, timeout_ms): return len(data)
            def bulk_read(self, endpoint, size, timeout_ms): return b""
            def release(self, interface): ...
            def close(self): ...
    """

    @property
    def vendor_id(self) -> int:
        """USB vendor identifier."""
        ...

    @property
    def product_id(self) -> int:
        """USB product identifier."""
        ...

    @property
    def serial_number(self) -> str | None:
        """Hardware serial number, or None when the device reports none."""
        ...

    @property
    def location(self) -> str:
        """Stable bus location used to match detach events to handles."""
        ...

    def open(self) -> None:
        """Select the device configuration so interfaces can be claimed.

        Raises:
            TransportError: If the device cannot be configured.
        """
        ...

    def claim(self, interface: int, alt_setting: int = 0) -> bool:
        """Claim an interface and select its alternate setting.

        Returns:
            True when the interface is now owned by this process.
        """
        ...

    def bulk_write(self, endpoint: int, data: bytes, timeout_ms: int) -> int:
        """Write one bulk transfer.

        Returns:
            Number of bytes written.

        Raises:
            TransportTimeoutError: Transfer timed out.
            TransportDisconnectedError: Device gone or pipe broken.
        """
        ...

    def bulk_read(self, endpoint: int, size: int, timeout_ms: int) -> bytes:
        """Read up to ``size`` bytes from one bulk transfer.

        Raises:
            TransportTimeoutError: Transfer timed out.
            TransportDisconnectedError: Device gone or pipe broken.
        """
        ...

    def release(self, interface: int) -> None:
        """Release a claimed interface. Never raises."""
        ...

    def close(self) -> None:
        """Free OS resources held for this device. Never raises."""
        ...


@runtime_checkable
class UsbBackend(Protocol):  # pragma: no cover
    """Protocol for discovering attached USB devices."""

    def enumerate(self, vendor_id: int | None = None) -> list[UsbHandle]:
        """Return handles for attached devices, optionally filtered by vendor."""
        ...


@dataclass(frozen=True, slots=True)
class DetachEvent:
    """Notification that a device disappeared from the bus.

    Attributes:
        vendor_id: Vendor identifier of the departed device.
        product_id: Product identifier of the departed device.
        handle: The handle that was last seen at that location.
    """

    vendor_id: int
    product_id: int
    handle: UsbHandle


# =============================================================================
# pyusb Implementation
# =============================================================================


class PyUsbHandle:
    """UsbHandle backed by a ``usb.core.Device``.

    Thread Safety:
        A handle belongs to exactly one session; the session serialises
        access. libusb itself tolerates concurrent transfers on
        different handles, which is what parallel capture relies on.
    """

    def __init__(self, device: Any, configuration: int = 1) -> None:
        self._device = device
        self._configuration = configuration
        self._claimed: set[int] = set()
        self._serial: str | None = None
        self._serial_read = False

    @property
    def vendor_id(self) -> int:
        return int(self._device.idVendor)

    @property
    def product_id(self) -> int:
        return int(self._device.idProduct)

    @property
    def serial_number(self) -> str | None:
        """Serial number string descriptor, read once and cached.

        Returns:
            The serial, or None if the descriptor is missing or the
            read fails (common when permissions are insufficient).
        """
        if not self._serial_read:
            self._serial_read = True
            index = getattr(self._device, "iSerialNumber", 0)
            if index:
                try:
                    self._serial = usb.util.get_string(self._device, index) or None
                except (ValueError, usb.core.USBError):
                    self._serial = None
        return self._serial

    @property
    def location(self) -> str:
        return f"{self._device.bus}-{self._device.address}"

    def open(self) -> None:
        try:
            self._device.set_configuration(self._configuration)
        except usb.core.USBError as e:
            raise _translate(e, "set_configuration") from e

    def _detach_kernel_driver(self, interface: int) -> None:
        with contextlib.suppress(usb.core.USBError, NotImplementedError, AttributeError):
            if self._device.is_kernel_driver_active(interface):
                self._device.detach_kernel_driver(interface)

    def claim(self, interface: int, alt_setting: int = 0) -> bool:
        self._detach_kernel_driver(interface)
        try:
            usb.util.claim_interface(self._device, interface)
            if alt_setting:
                self._device.set_interface_altsetting(
                    interface=interface, alternate_setting=alt_setting
                )
        except usb.core.USBError as e:
            logger.warning(
                "Failed to claim interface",
                location=self.location,
                interface=interface,
                error=str(e),
            )
            return False
        self._claimed.add(interface)
        return True

    def bulk_write(self, endpoint: int, data: bytes, timeout_ms: int) -> int:
        try:
            return int(self._device.write(endpoint, data, timeout=timeout_ms))
        except usb.core.USBError as e:
            raise _translate(e, "bulk write") from e

    def bulk_read(self, endpoint: int, size: int, timeout_ms: int) -> bytes:
        try:
            return bytes(self._device.read(endpoint, size, timeout=timeout_ms))
        except usb.core.USBError as e:
            raise _translate(e, "bulk read") from e

    def release(self, interface: int) -> None:
        with contextlib.suppress(usb.core.USBError):
            usb.util.release_interface(self._device, interface)
        self._claimed.discard(interface)

    def close(self) -> None:
        for interface in list(self._claimed):
            self.release(interface)
        with contextlib.suppress(usb.core.USBError):
            usb.util.dispose_resources(self._device)

    def __repr__(self) -> str:
        return (
            f"<PyUsbHandle {self.vendor_id:04x}:{self.product_id:04x} "
            f"at {self.location}>"
        )


class PyUsbBackend:
    """UsbBackend enumerating devices through ``usb.core.find``."""

    def __init__(self, configuration: int = 1) -> None:
        self._configuration = configuration

    def enumerate(self, vendor_id: int | None = None) -> list[UsbHandle]:
        """Enumerate attached devices.

        Args:
            vendor_id: Only return devices with this vendor id.

        Returns:
            One ``PyUsbHandle`` per device. Empty if none, or if no
            libusb backend is available on this system.
        """
        kwargs: dict[str, Any] = {"find_all": True}
        if vendor_id is not None:
            kwargs["idVendor"] = vendor_id
        try:
            devices = list(usb.core.find(**kwargs) or [])
        except usb.core.NoBackendError:
            logger.error("No libusb backend available; cannot enumerate devices")
            return []
        return [PyUsbHandle(device, self._configuration) for device in devices]


# =============================================================================
# Hotplug Monitoring
# =============================================================================


class HotplugMonitor:
    """Polls a backend and reports attach/detach changes.

    pyusb has no portable hotplug callback, so changes are detected by
    comparing successive enumerations by bus location.

    Example:
        monitor = HotplugMonitor(
            backend,
            vendor_id=VENDOR_ID,
            on_attach=registry.connect,
            on_detach=registry.handle_detach,
        )
        monitor.start()
    """

    def __init__(
        self,
        backend: UsbBackend,
        vendor_id: int | None = None,
        on_attach: Callable[[UsbHandle], Any] | None = None,
        on_detach: Callable[[DetachEvent], Any] | None = None,
        interval_s: float = 1.0,
    ) -> None:
        self._backend = backend
        self._vendor_id = vendor_id
        self._on_attach = on_attach
        self._on_detach = on_detach
        self._interval_s = interval_s
        self._known: dict[str, UsbHandle] = {}
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def poll_once(self) -> tuple[list[UsbHandle], list[DetachEvent]]:
        """Enumerate once and dispatch callbacks for any changes.

        The first call treats every present device as attached.

        Returns:
            Tuple of (attached handles, detach events).
        """
        current = {h.location: h for h in self._backend.enumerate(self._vendor_id)}
        attached = [h for loc, h in current.items() if loc not in self._known]
        detached = [
            DetachEvent(h.vendor_id, h.product_id, h)
            for loc, h in self._known.items()
            if loc not in current
        ]
        for loc in current.keys() - self._known.keys():
            self._known[loc] = current[loc]
        for event in detached:
            self._known.pop(event.handle.location, None)

        for handle in attached:
            self._dispatch(self._on_attach, handle)
        for event in detached:
            self._dispatch(self._on_detach, event)
        return attached, detached

    def _dispatch(self, callback: Callable[[Any], Any] | None, arg: Any) -> None:
        if callback is None:
            return
        try:
            callback(arg)
        except Exception:
            logger.exception("Hotplug callback failed", argument=repr(arg))

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.poll_once()
            except TransportError as e:
                logger.warning("Hotplug poll failed", error=str(e))
            except Exception:
                logger.exception("Unexpected hotplug poll failure")
            self._stop.wait(self._interval_s)

    def start(self) -> None:
        """Start polling in a daemon thread. No-op if already running."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, daemon=True, name="multicam-hotplug"
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop polling and wait for the thread to exit."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self._interval_s + 1.0)
            self._thread = None


__all__ = [
    "DetachEvent",
    "HotplugMonitor",
    "PyUsbBackend",
    "PyUsbHandle",
    "TransportDisconnectedError",
    "TransportError",
    "TransportTimeoutError",
    "UsbBackend",
    "UsbHandle",
]
