"""Device registry - the set of open camera sessions.

Owns every ``DeviceSession``, enforces the concurrent-session cap,
assigns identities and reacts to hardware detach events.

Locking:
    Mutations (connect, disconnect, detach) are serialised by one lock
    that is held across the session's open(). Reads (``snapshot``,
    ``get``, ``len``) use a second, short-lived lock so they never wait
    on device I/O.

    A session that drops to DISCONNECTED on its own (hard transport
    failure) is evicted from the map at once, from whichever thread saw
    the failure. Its interfaces are released by the next mutation, which
    runs outside the session I/O lock.

Example:
    registry = DeviceRegistry(backend=PyUsbBackend())
    report = registry.connect_all()
    for identity, session in registry.snapshot().items():
        print(identity, session.state)
    registry.disconnect_all()
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from types import TracebackType
from typing import Any

from multicam_mcp.devices.session import (
    Clock,
    ConnectionState,
    DeviceSession,
    SessionError,
    SessionHooks,
)
from multicam_mcp.drivers.protocol import VENDOR_ID
from multicam_mcp.drivers.usb import DetachEvent, TransportError, UsbBackend, UsbHandle
from multicam_mcp.observability import get_logger

logger = get_logger(__name__)

#: Hard limit on simultaneously open sessions.
MAX_DEVICES = 4


# =============================================================================
# Exceptions
# =============================================================================


class RegistryError(Exception):
    """Base exception for registry operations."""


class DeviceCapExceededError(RegistryError):
    """Raised when connecting would exceed the session cap."""


class WrongVendorError(RegistryError):
    """Raised when a handle does not belong to the supported vendor."""


class DuplicateDeviceError(RegistryError):
    """Raised when a device with the same identity or handle is already open."""


class DeviceNotFoundError(RegistryError):
    """Raised when no open session has the requested identity."""


@dataclass
class ConnectReport:
    """Outcome of ``connect_all``.

    Attributes:
        connected: Identities opened by this call, in enumeration order.
        errors: Error text keyed by handle location for handles that
            could not be connected.
    """

    connected: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"connected": list(self.connected), "errors": dict(self.errors)}


def generate_identity() -> str:
    """Identity for a device that reports no serial number."""
    return f"dxo-{uuid.uuid4().hex[:12]}"


# =============================================================================
# Registry
# =============================================================================


class DeviceRegistry:
    """Tracks open device sessions keyed by identity.

    Invariants:
        - ``len(registry) <= max_devices`` at all times.
        - Every registered session completed ``open()`` successfully.

    Injectable Dependencies:
        - backend: Device enumeration for ``discover``/``connect_all``
        - clock: Passed to every session
        - hooks: Passed to every session
        - session_options: Extra ``DeviceSession`` keyword arguments
          (timeouts)
    """

    def __init__(
        self,
        backend: UsbBackend | None = None,
        clock: Clock | None = None,
        hooks: SessionHooks | None = None,
        max_devices: int = MAX_DEVICES,
        session_options: Mapping[str, Any] | None = None,
    ) -> None:
        """Create an empty registry.

        Raises:
            ValueError: If ``max_devices`` is outside 1..4.
        """
        if not 1 <= max_devices <= MAX_DEVICES:
            raise ValueError(
                f"max_devices must be between 1 and {MAX_DEVICES}, got {max_devices}"
            )
        self._backend = backend
        self._clock = clock
        self._hooks = hooks
        self._max_devices = max_devices
        self._session_options = dict(session_options or {})
        self._sessions: dict[str, DeviceSession] = {}
        self._evicted: list[DeviceSession] = []
        self._mutation_lock = threading.RLock()
        self._map_lock = threading.Lock()

    def __repr__(self) -> str:
        return f"<DeviceRegistry {len(self)}/{self._max_devices} devices>"

    # -- Read access ---------------------------------------------------------

    @property
    def backend(self) -> UsbBackend | None:
        return self._backend

    @property
    def max_devices(self) -> int:
        return self._max_devices

    @property
    def identities(self) -> list[str]:
        """Registered identities in connection order."""
        with self._map_lock:
            return list(self._sessions)

    def __len__(self) -> int:
        with self._map_lock:
            return len(self._sessions)

    def __contains__(self, identity: object) -> bool:
        with self._map_lock:
            return identity in self._sessions

    def __iter__(self) -> Iterator[str]:
        return iter(self.identities)

    def snapshot(self) -> dict[str, DeviceSession]:
        """Point-in-time copy of the identity to session mapping.

        Never blocks on device I/O; safe to call during a capture or a
        connect.
        """
        with self._map_lock:
            return dict(self._sessions)

    def get(self, identity: str) -> DeviceSession:
        """Return the session for ``identity``.

        Raises:
            DeviceNotFoundError: If the identity is not registered.
        """
        with self._map_lock:
            session = self._sessions.get(identity)
        if session is None:
            raise DeviceNotFoundError(f"Device {identity} not connected")
        return session

    # -- Discovery -----------------------------------------------------------

    def discover(self) -> list[UsbHandle]:
        """Enumerate attached devices of the supported vendor.

        Raises:
            RegistryError: If the registry was created without a backend.
        """
        if self._backend is None:
            raise RegistryError("No USB backend configured for discovery")
        handles = [
            h for h in self._backend.enumerate(VENDOR_ID) if h.vendor_id == VENDOR_ID
        ]
        logger.info("Discovered devices", count=len(handles))
        return handles

    def connect_all(self) -> ConnectReport:
        """Connect every discovered device that is not already open.

        Stops opening new sessions once the cap is reached; the remaining
        handles are reported as errors without any I/O.
        """
        report = ConnectReport()
        for handle in self.discover():
            if self._find_by_handle(handle) is not None:
                continue
            try:
                session = self.connect(handle)
            except (RegistryError, SessionError) as e:
                report.errors[handle.location] = str(e)
                logger.warning(
                    "Device not connected", location=handle.location, error=str(e)
                )
                continue
            report.connected.append(session.identity)
        return report

    # -- Mutations -----------------------------------------------------------

    def connect(self, handle: UsbHandle) -> DeviceSession:
        """Open a session on ``handle`` and register it.

        Checks run in order and before any device I/O: cap, vendor,
        duplicate. The session is inserted only after ``open()``
        succeeded; a failed session is closed and discarded.

        Returns:
            The CONNECTED session.

        Raises:
            DeviceCapExceededError: Registry already holds ``max_devices``.
            WrongVendorError: Handle vendor id is not the camera vendor.
            DuplicateDeviceError: Identity or handle already registered.
            SessionOpenError: Claim, handshake or drain failed.
        """
        with self._mutation_lock:
            self._release_evicted()
            if len(self) >= self._max_devices:
                raise DeviceCapExceededError(
                    f"Device cap reached ({self._max_devices} devices connected)"
                )
            if handle.vendor_id != VENDOR_ID:
                raise WrongVendorError(
                    f"Vendor id 0x{handle.vendor_id:04X} is not 0x{VENDOR_ID:04X}"
                )
            if self._find_by_handle(handle) is not None:
                raise DuplicateDeviceError(f"Handle at {handle.location} already open")

            identity = handle.serial_number or generate_identity()
            if identity in self:
                raise DuplicateDeviceError(f"Device {identity} already connected")

            session = DeviceSession(
                handle,
                identity,
                clock=self._clock,
                hooks=self._session_hooks(),
                **self._session_options,
            )
            try:
                session.open()
            except SessionError:
                session.close()
                raise

            with self._map_lock:
                self._sessions[identity] = session
            logger.info(
                "Device connected",
                identity=identity,
                location=handle.location,
                total=len(self),
            )
            return session

    def disconnect(self, identity: str) -> bool:
        """Close and remove one session.

        Returns:
            False if the identity was not registered.
        """
        with self._mutation_lock:
            with self._map_lock:
                session = self._sessions.pop(identity, None)
            if session is None:
                return False
            session.close()
            logger.info("Device disconnected", identity=identity)
            return True

    def disconnect_all(self) -> list[str]:
        """Close and remove every session, continuing past close failures.

        Returns:
            Identities that were removed.
        """
        with self._mutation_lock:
            self._release_evicted()
            with self._map_lock:
                sessions = list(self._sessions.items())
                self._sessions.clear()
            for identity, session in sessions:
                try:
                    session.close()
                except (SessionError, TransportError, OSError):
                    logger.exception(
                        "Close failed during disconnect_all", identity=identity
                    )
            if sessions:
                logger.info("All devices disconnected", count=len(sessions))
            return [identity for identity, _ in sessions]

    def handle_detach(self, target: UsbHandle | DetachEvent) -> str | None:
        """Remove the session whose handle left the bus.

        Matches by handle object first, then by bus location. The
        session is removed regardless of its last known state.

        Returns:
            Identity of the removed session, or None if none matched.
        """
        handle = target.handle if isinstance(target, DetachEvent) else target
        with self._mutation_lock:
            self._release_evicted()
            identity = self._find_by_handle(handle)
            if identity is None:
                logger.debug("Detach for unknown handle", location=handle.location)
                return None
            with self._map_lock:
                session = self._sessions.pop(identity)
            session.handle_detach()
            logger.warning("Device detached", identity=identity, location=handle.location)
            return identity

    def _session_hooks(self) -> SessionHooks:
        """Caller hooks chained behind the registry's own eviction hook."""
        user = self._hooks or SessionHooks()

        def on_state_change(
            identity: str, old: ConnectionState, new: ConnectionState
        ) -> None:
            if new is ConnectionState.DISCONNECTED:
                self._evict(identity)
            if user.on_state_change is not None:
                user.on_state_change(identity, old, new)

        return SessionHooks(on_state_change, user.on_frame, user.on_error)

    def _evict(self, identity: str) -> None:
        # Runs on the failing thread, possibly under the session I/O lock:
        # only the map lock may be taken here.
        with self._map_lock:
            session = self._sessions.get(identity)
            if session is None or session.state is not ConnectionState.DISCONNECTED:
                return
            del self._sessions[identity]
            self._evicted.append(session)
        logger.warning("Device evicted after disconnect", identity=identity)

    def _release_evicted(self) -> None:
        with self._map_lock:
            evicted, self._evicted = self._evicted, []
        for session in evicted:
            try:
                session.close()
            except (SessionError, TransportError, OSError):
                logger.exception(
                    "Close failed for evicted session", identity=session.identity
                )

    def _find_by_handle(self, handle: UsbHandle) -> str | None:
        with self._map_lock:
            items = list(self._sessions.items())
        for identity, session in items:
            if session.handle is handle:
                return identity
        for identity, session in items:
            if session.handle.location == handle.location:
                return identity
        return None

    # -- Context manager -----------------------------------------------------

    def __enter__(self) -> DeviceRegistry:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.disconnect_all()


# =============================================================================
# Module Singleton
# =============================================================================

_default_registry: DeviceRegistry | None = None


def init_registry(
    backend: UsbBackend | None = None,
    clock: Clock | None = None,
    hooks: SessionHooks | None = None,
    max_devices: int = MAX_DEVICES,
    session_options: Mapping[str, Any] | None = None,
) -> DeviceRegistry:
    """Create the process-wide registry used by the MCP tools and dashboard.

    Replaces any existing registry without closing it; call
    ``shutdown_registry()`` first when re-initialising.

    Example:
        >>> registry = init_registry(get_factory().create_backend())
        >>> get_registry() is registry
        True
    """
    global _default_registry
    _default_registry = DeviceRegistry(
        backend, clock, hooks, max_devices, session_options
    )
    return _default_registry


def get_registry() -> DeviceRegistry:
    """Return the registry created by ``init_registry()``.

    Raises:
        RuntimeError: If ``init_registry()`` has not been called.
    """
    if _default_registry is None:
        raise RuntimeError("Registry not initialized. Call init_registry() first.")
    return _default_registry


def shutdown_registry() -> None:
    """Disconnect every device and drop the registry. No-op if uninitialised."""
    global _default_registry
    if _default_registry is not None:
        _default_registry.disconnect_all()
        _default_registry = None
