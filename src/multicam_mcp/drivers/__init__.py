"""Hardware drivers - wire protocol, USB transport and digital twins."""

from multicam_mcp.drivers.config import (
    DriverConfig,
    DriverFactory,
    DriverMode,
    configure,
    get_factory,
    use_digital_twin,
    use_hardware,
)
from multicam_mcp.drivers.protocol import (
    VENDOR_ID,
    ControlMessage,
    ControlResponse,
    FramingError,
    InvalidCommandError,
    InvalidParamsError,
    LiveFrameReader,
    Method,
    ResponseReader,
    encode_message,
)
from multicam_mcp.drivers.twin import (
    DigitalTwinBackend,
    DigitalTwinHandle,
    TwinDeviceConfig,
    TwinFailure,
)
from multicam_mcp.drivers.usb import (
    DetachEvent,
    HotplugMonitor,
    PyUsbBackend,
    TransportDisconnectedError,
    TransportError,
    TransportTimeoutError,
    UsbBackend,
    UsbHandle,
)

__all__ = [
    # Config
    "DriverConfig",
    "DriverFactory",
    "DriverMode",
    "configure",
    "get_factory",
    "use_digital_twin",
    "use_hardware",
    # Protocol
    "VENDOR_ID",
    "ControlMessage",
    "ControlResponse",
    "FramingError",
    "InvalidCommandError",
    "InvalidParamsError",
    "LiveFrameReader",
    "Method",
    "ResponseReader",
    "encode_message",
    # USB
    "DetachEvent",
    "HotplugMonitor",
    "PyUsbBackend",
    "TransportDisconnectedError",
    "TransportError",
    "TransportTimeoutError",
    "UsbBackend",
    "UsbHandle",
    # Twin
    "DigitalTwinBackend",
    "DigitalTwinHandle",
    "TwinDeviceConfig",
    "TwinFailure",
]
