"""Driver configuration and factory.

Supports switching between real USB hardware and digital twin devices
for testing and development without physical cameras.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum

from multicam_mcp.drivers.twin import DEFAULT_TWIN_COUNT, DigitalTwinBackend
from multicam_mcp.drivers.usb import PyUsbBackend, UsbBackend

# =============================================================================
# Constants
# =============================================================================

DEFAULT_COMMAND_TIMEOUT_MS = 10_000
DEFAULT_USB_TIMEOUT_MS = 5_000
DEFAULT_CAPTURE_TIMEOUT_MS = 30_000
DEFAULT_MAX_DEVICES = 4


class DriverMode(Enum):
    """Driver mode selection."""

    HARDWARE = "hardware"  # Real cameras through pyusb/libusb
    DIGITAL_TWIN = "digital_twin"  # Simulated cameras for testing


@dataclass
class DriverConfig:
    """Configuration for backend selection and device timing.

    Attributes:
        mode: HARDWARE for real devices, DIGITAL_TWIN for simulation.
        command_timeout_ms: Bound on waiting for a command reply.
        usb_timeout_ms: Timeout for individual bulk writes.
        capture_timeout_ms: Bound on waiting for a capture reply (the
            device may be writing to its SD card).
        max_devices: Concurrent session cap (never above 4).
        twin_device_count: Simulated devices in DIGITAL_TWIN mode.
        twin_capture_latency_s: Simulated capture latency.
        default_capture_mode: ``"parallel"`` or ``"sequential"``.
    """

    mode: DriverMode = DriverMode.DIGITAL_TWIN

    # Timing
    command_timeout_ms: int = DEFAULT_COMMAND_TIMEOUT_MS
    usb_timeout_ms: int = DEFAULT_USB_TIMEOUT_MS
    capture_timeout_ms: int = DEFAULT_CAPTURE_TIMEOUT_MS

    # Registry
    max_devices: int = DEFAULT_MAX_DEVICES

    # Digital twin settings
    twin_device_count: int = DEFAULT_TWIN_COUNT
    twin_capture_latency_s: float = 0.0

    # Coordinator
    default_capture_mode: str = "parallel"

    def __post_init__(self) -> None:
        if not 1 <= self.max_devices <= DEFAULT_MAX_DEVICES:
            raise ValueError(
                f"max_devices must be between 1 and {DEFAULT_MAX_DEVICES}, "
                f"got {self.max_devices}"
            )
        for name in ("command_timeout_ms", "usb_timeout_ms", "capture_timeout_ms"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")


class DriverFactory:
    """Factory for creating USB backends based on configuration.

    Thread Safety:
        Not thread-safe. The global factory singleton should be
        configured once at startup before concurrent access.
    """

    def __init__(self, config: DriverConfig | None = None):
        """Initialize the factory.

        Args:
            config: DriverConfig; None uses defaults (digital twin mode).

        Example:
            >>> factory = DriverFactory()  # Digital twin mode
            >>> backend = factory.create_backend()
        """
        self.config = config or DriverConfig()

    def create_backend(self) -> UsbBackend:
        """Create the USB backend for the configured mode.

        Returns:
            PyUsbBackend in HARDWARE mode, DigitalTwinBackend with
            ``twin_device_count`` devices in DIGITAL_TWIN mode.

        Raises:
            ValueError: If the twin count is out of range.

        Example:
            >>> factory = DriverFactory(DriverConfig(twin_device_count=4))
            >>> len(factory.create_backend().enumerate())
            4
        """
        if self.config.mode == DriverMode.HARDWARE:
            return PyUsbBackend()
        return DigitalTwinBackend(
            count=self.config.twin_device_count,
            capture_latency_s=self.config.twin_capture_latency_s,
        )


# =============================================================================
# Global Singletons
# =============================================================================
# Thread Safety: Not thread-safe. Configure once at startup before
# spawning threads.

_factory: DriverFactory | None = None


def get_factory() -> DriverFactory:
    """Get the global driver factory, creating a default one on first use.

    Example:
        >>> factory = get_factory()  # Default digital twin
        >>> use_hardware()
        >>> get_factory().config.mode
        <DriverMode.HARDWARE: 'hardware'>
    """
    global _factory
    if _factory is None:
        _factory = DriverFactory()
    return _factory


def configure(config: DriverConfig) -> None:
    """Replace the global factory with one using ``config``.

    Example:
        >>> configure(DriverConfig(mode=DriverMode.HARDWARE, max_devices=2))
    """
    global _factory
    _factory = DriverFactory(config)


def _copy_config_with_mode(mode: DriverMode) -> DriverConfig:
    return replace(get_factory().config, mode=mode)


def use_digital_twin(preserve_config: bool = False) -> None:
    """Switch to simulated devices.

    Args:
        preserve_config: Keep timing and count settings, change only the mode.
    """
    if preserve_config:
        configure(_copy_config_with_mode(DriverMode.DIGITAL_TWIN))
    else:
        configure(DriverConfig(mode=DriverMode.DIGITAL_TWIN))


def use_hardware(preserve_config: bool = False) -> None:
    """Switch to real USB cameras.

    Args:
        preserve_config: Keep timing and count settings, change only the mode.
    """
    if preserve_config:
        configure(_copy_config_with_mode(DriverMode.HARDWARE))
    else:
        configure(DriverConfig(mode=DriverMode.HARDWARE))


def reset_factory() -> None:
    """Drop the global factory (tests)."""
    global _factory
    _factory = None
