"""Logical device layer - sessions, the registry and the capture coordinator."""

from multicam_mcp.devices.coordinator import (
    BatchOutcome,
    CaptureCoordinator,
    CaptureMode,
    CaptureOutcome,
    CaptureSessionResult,
    get_coordinator,
    init_coordinator,
    reset_coordinator,
    sync_variance_ms,
)
from multicam_mcp.devices.registry import (
    ConnectReport,
    DeviceCapExceededError,
    DeviceNotFoundError,
    DeviceRegistry,
    DuplicateDeviceError,
    RegistryError,
    WrongVendorError,
    get_registry,
    init_registry,
    shutdown_registry,
)
from multicam_mcp.devices.session import (
    CaptureReceipt,
    Clock,
    CommandTimeoutError,
    ConnectionState,
    DeviceDisconnectedError,
    DeviceRpcError,
    DeviceSession,
    DeviceStatus,
    LiveFrame,
    LiveViewHandle,
    NotConnectedError,
    SessionError,
    SessionHooks,
    SessionOpenError,
    SessionSnapshot,
    SystemClock,
)

__all__ = [
    # Session
    "CaptureReceipt",
    "ConnectionState",
    "DeviceSession",
    "DeviceStatus",
    "LiveFrame",
    "LiveViewHandle",
    "SessionHooks",
    "SessionSnapshot",
    "SessionError",
    "NotConnectedError",
    "SessionOpenError",
    "CommandTimeoutError",
    "DeviceDisconnectedError",
    "DeviceRpcError",
    # Clock (shared)
    "Clock",
    "SystemClock",
    # Registry
    "ConnectReport",
    "DeviceRegistry",
    "RegistryError",
    "DeviceCapExceededError",
    "DeviceNotFoundError",
    "DuplicateDeviceError",
    "WrongVendorError",
    "init_registry",
    "get_registry",
    "shutdown_registry",
    # Coordinator
    "BatchOutcome",
    "CaptureCoordinator",
    "CaptureMode",
    "CaptureOutcome",
    "CaptureSessionResult",
    "sync_variance_ms",
    "init_coordinator",
    "get_coordinator",
    "reset_coordinator",
]
