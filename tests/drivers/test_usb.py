"""Tests for the pyusb transport and hotplug monitor.

pyusb devices are replaced with MagicMock objects so no libusb backend
or hardware is needed.
"""

import errno
import threading
from unittest.mock import MagicMock, patch

import pytest
import usb.core
import usb.util

from multicam_mcp.drivers.protocol import VENDOR_ID
from multicam_mcp.drivers.usb import (
    DetachEvent,
    HotplugMonitor,
    PyUsbBackend,
    PyUsbHandle,
    TransportDisconnectedError,
    TransportTimeoutError,
)


@pytest.fixture
def usb_device():
    """MagicMock standing in for ``usb.core.Device``.

    Yields:
        Mock with vendor/product ids, bus 1 address 7, serial index 3.
    """
    device = MagicMock()
    device.idVendor = VENDOR_ID
    device.idProduct = 0x0001
    device.bus = 1
    device.address = 7
    device.iSerialNumber = 3
    device.is_kernel_driver_active.return_value = False
    return device


class TestPyUsbHandle:
    """Error mapping and interface handling on a pyusb device."""

    def test_identity_properties(self, usb_device):
        handle = PyUsbHandle(usb_device)

        assert handle.vendor_id == VENDOR_ID
        assert handle.product_id == 0x0001
        assert handle.location == "1-7"
        assert "1-7" in repr(handle)

    def test_serial_number_read_once(self, usb_device):
        with patch.object(usb.util, "get_string", return_value="DXO1A2B3") as get:
            handle = PyUsbHandle(usb_device)
            assert handle.serial_number == "DXO1A2B3"
            assert handle.serial_number == "DXO1A2B3"

        get.assert_called_once_with(usb_device, 3)

    def test_serial_number_unreadable(self, usb_device):
        error = usb.core.USBError("Access denied", errno=errno.EACCES)
        with patch.object(usb.util, "get_string", side_effect=error):
            assert PyUsbHandle(usb_device).serial_number is None

    def test_serial_number_absent(self, usb_device):
        usb_device.iSerialNumber = 0

        assert PyUsbHandle(usb_device).serial_number is None

    def test_open_sets_configuration(self, usb_device):
        PyUsbHandle(usb_device, configuration=1).open()

        usb_device.set_configuration.assert_called_once_with(1)

    def test_open_failure_is_disconnect(self, usb_device):
        usb_device.set_configuration.side_effect = usb.core.USBError(
            "No such device", errno=errno.ENODEV
        )

        with pytest.raises(TransportDisconnectedError, match="set_configuration"):
            PyUsbHandle(usb_device).open()

    def test_timeout_mapped(self, usb_device):
        """A pyusb timeout is recoverable, everything else is a disconnect.

        Arrangement:
        1. read() raises a timeout errno, write() raises a pipe error.

        Action:
        bulk_read() and bulk_write().

        Assertion Strategy:
        - ETIMEDOUT becomes TransportTimeoutError.
        - EPIPE becomes TransportDisconnectedError.
        """
        usb_device.read.side_effect = usb.core.USBError(
            "Operation timed out", errno=errno.ETIMEDOUT
        )
        usb_device.write.side_effect = usb.core.USBError("Pipe error", errno=errno.EPIPE)
        handle = PyUsbHandle(usb_device)

        with pytest.raises(TransportTimeoutError):
            handle.bulk_read(0x81, 512, 100)
        with pytest.raises(TransportDisconnectedError):
            handle.bulk_write(0x02, b"abc", 100)

    def test_bulk_transfers(self, usb_device):
        usb_device.read.return_value = bytearray(b"\x01\x02")
        usb_device.write.return_value = 3
        handle = PyUsbHandle(usb_device)

        assert handle.bulk_read(0x81, 512, 250) == b"\x01\x02"
        assert handle.bulk_write(0x02, b"abc", 250) == 3
        usb_device.read.assert_called_once_with(0x81, 512, timeout=250)

    def test_claim_with_alt_setting(self, usb_device):
        usb_device.is_kernel_driver_active.return_value = True
        with patch.object(usb.util, "claim_interface") as claim:
            assert PyUsbHandle(usb_device).claim(1, alt_setting=1)

        usb_device.detach_kernel_driver.assert_called_once_with(1)
        claim.assert_called_once_with(usb_device, 1)
        usb_device.set_interface_altsetting.assert_called_once_with(
            interface=1, alternate_setting=1
        )

    def test_claim_failure_returns_false(self, usb_device):
        error = usb.core.USBError("Resource busy", errno=errno.EBUSY)
        with patch.object(usb.util, "claim_interface", side_effect=error):
            assert PyUsbHandle(usb_device).claim(0) is False

    def test_close_releases_claimed(self, usb_device):
        with (
            patch.object(usb.util, "claim_interface"),
            patch.object(usb.util, "release_interface") as release,
            patch.object(usb.util, "dispose_resources") as dispose,
        ):
            handle = PyUsbHandle(usb_device)
            handle.claim(0)
            handle.claim(1)
            handle.close()

        assert sorted(c.args[1] for c in release.call_args_list) == [0, 1]
        dispose.assert_called_once_with(usb_device)


class TestPyUsbBackend:
    def test_enumerate_filters_vendor(self, usb_device):
        with patch.object(usb.core, "find", return_value=iter([usb_device])) as find:
            handles = PyUsbBackend().enumerate(vendor_id=VENDOR_ID)

        find.assert_called_once_with(find_all=True, idVendor=VENDOR_ID)
        assert len(handles) == 1
        assert handles[0].location == "1-7"

    def test_enumerate_without_backend(self):
        with patch.object(usb.core, "find", side_effect=usb.core.NoBackendError("none")):
            assert PyUsbBackend().enumerate() == []


class _Backend:
    def __init__(self, handles):
        self.handles = list(handles)

    def enumerate(self, vendor_id=None):
        return list(self.handles)


def _handle(location: str) -> MagicMock:
    handle = MagicMock()
    handle.location = location
    handle.vendor_id = VENDOR_ID
    handle.product_id = 0x0001
    return handle


class TestHotplugMonitor:
    """Attach/detach detection by comparing enumerations."""

    def test_first_poll_reports_everything_attached(self):
        a, b = _handle("1-1"), _handle("1-2")
        attached_seen = []
        monitor = HotplugMonitor(_Backend([a, b]), on_attach=attached_seen.append)

        attached, detached = monitor.poll_once()

        assert attached == [a, b]
        assert detached == []
        assert attached_seen == [a, b]

    def test_detach_event(self):
        """A location missing from the next enumeration is a detach.

        Arrangement:
        1. Two devices seen on the first poll.
        2. One removed from the backend.

        Action:
        poll_once() twice.

        Assertion Strategy:
        The second poll yields one DetachEvent carrying the original
        handle, and the callback receives the same event.
        """
        a, b = _handle("1-1"), _handle("1-2")
        backend = _Backend([a, b])
        events: list[DetachEvent] = []
        monitor = HotplugMonitor(backend, on_detach=events.append)
        monitor.poll_once()

        backend.handles.remove(b)
        attached, detached = monitor.poll_once()

        assert attached == []
        assert [e.handle for e in detached] == [b]
        assert events == detached
        assert events[0].vendor_id == VENDOR_ID

    def test_callback_errors_contained(self):
        def boom(_):
            raise RuntimeError("callback bug")

        monitor = HotplugMonitor(_Backend([_handle("1-1")]), on_attach=boom)

        attached, _ = monitor.poll_once()
        assert len(attached) == 1

    def test_start_and_stop(self):
        polled = threading.Event()
        backend = MagicMock()
        backend.enumerate.side_effect = lambda vendor_id=None: polled.set() or []
        monitor = HotplugMonitor(backend, vendor_id=VENDOR_ID, interval_s=0.01)

        monitor.start()
        monitor.start()  # no second thread
        assert polled.wait(2.0)
        monitor.stop()

        backend.enumerate.assert_called_with(VENDOR_ID)
        assert not any(t.name == "multicam-hotplug" for t in threading.enumerate())

    def test_poll_thread_survives_enumeration_errors(self):
        """An unexpected enumeration error does not end the poll thread.

        Arrangement:
        1. Backend whose first enumeration raises RuntimeError; later
           calls see one device, then none.

        Action:
        start() the monitor and wait for the detach callback.

        Assertion Strategy:
        The detach for the vanished device still arrives.
        """
        a = _handle("1-1")
        detached = threading.Event()
        calls = []

        def enumerate_devices(vendor_id=None):
            calls.append(vendor_id)
            if len(calls) == 1:
                raise RuntimeError("libusb hiccup")
            return [a] if len(calls) == 2 else []

        backend = MagicMock()
        backend.enumerate.side_effect = enumerate_devices
        monitor = HotplugMonitor(
            backend, on_detach=lambda event: detached.set(), interval_s=0.01
        )

        monitor.start()
        try:
            assert detached.wait(2.0)
        finally:
            monitor.stop()
