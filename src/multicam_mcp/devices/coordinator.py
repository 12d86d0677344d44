"""Capture coordinator - synchronised capture across device sessions.

Runs one capture over a set of sessions, in parallel (one worker
thread per device, all joined before aggregation) or sequentially (in
the given order), and returns a ``CaptureSessionResult``. A failing
device never aborts the batch; it shows up as a failed outcome.

Synchronisation variance is the spread between the earliest and
latest pre-dispatch timestamps of the devices that succeeded; it is 0
when fewer than two succeeded. Parallel dispatch over USB typically
lands within a few tens of milliseconds.

Example:
    coordinator = CaptureCoordinator(stats=DeviceStats())
    result = coordinator.capture_all(registry.snapshot(), mode="parallel")
    print(result.succeeded_count, result.sync_variance_ms)
    for outcome in result.failed:
        print(outcome.identity, outcome.error)
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol, TypeVar, runtime_checkable

from multicam_mcp.devices.session import (
    CaptureReceipt,
    Clock,
    CommandTimeoutError,
    DeviceDisconnectedError,
    DeviceRpcError,
    NotConnectedError,
    SystemClock,
)
from multicam_mcp.drivers.protocol import FramingError
from multicam_mcp.observability import DeviceStats, LogContext, get_logger

logger = get_logger(__name__)

T = TypeVar("T")

NO_DEVICES_READY = "No devices ready for capture"

#: Centre of the 256x256 tap-to-focus grid.
FOCUS_CENTER = (128, 128)


class CaptureMode(StrEnum):
    """How a batch capture dispatches to devices."""

    PARALLEL = "parallel"  # One worker per device, best synchronisation
    SEQUENTIAL = "sequential"  # One at a time in the given order

    @classmethod
    def parse(cls, value: str | CaptureMode) -> CaptureMode:
        """Accept an enum member or its string value.

        Raises:
            ValueError: For unknown modes.
        """
        try:
            return cls(str(value).lower())
        except ValueError:
            valid = ", ".join(m.value for m in cls)
            raise ValueError(
                f"Unknown capture mode {value!r} (expected {valid})"
            ) from None


# =============================================================================
# Session Protocol
# =============================================================================


@runtime_checkable
class CaptureTarget(Protocol):  # pragma: no cover
    """What the coordinator needs from a session.

    ``DeviceSession`` satisfies this; tests may pass lightweight fakes.
    """

    @property
    def identity(self) -> str: ...

    @property
    def is_connected(self) -> bool: ...

    def capture_once(self) -> CaptureReceipt: ...

    def focus(self, x: int, y: int) -> Any: ...

    def get_status(self) -> Any: ...

    def set_setting(self, setting_type: str, value: Any) -> None: ...


# =============================================================================
# Results
# =============================================================================


def error_kind(error: BaseException) -> str:
    """Short category for an error, used in outcomes and statistics."""
    if isinstance(error, CommandTimeoutError):
        return "timeout"
    if isinstance(error, DeviceDisconnectedError):
        return "disconnected"
    if isinstance(error, NotConnectedError):
        return "not_connected"
    if isinstance(error, DeviceRpcError):
        return "device_error"
    if isinstance(error, FramingError):
        return "protocol"
    return "internal"


@dataclass(frozen=True, slots=True)
class CaptureOutcome:
    """Result of one device's capture.

    Attributes:
        identity: Device identity.
        success: Whether the device acknowledged the capture.
        timestamp: Pre-dispatch monotonic timestamp (success only).
        elapsed_ms: Dispatch-to-reply time, or time until failure.
        error: Error text on failure.
        error_kind: ``timeout``, ``disconnected``, ``device_error``, ...
    """

    identity: str
    success: bool
    timestamp: float | None
    elapsed_ms: float
    error: str | None = None
    error_kind: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity": self.identity,
            "success": self.success,
            "timestamp": self.timestamp,
            "elapsed_ms": round(self.elapsed_ms, 3),
            "error": self.error,
            "error_kind": self.error_kind,
        }


@dataclass(frozen=True)
class CaptureSessionResult:
    """Aggregated result of one batch capture. Never mutated.

    Attributes:
        session_id: Random id for correlating logs.
        total_devices: Number of sessions handed to the coordinator.
        outcomes: Per-device outcomes, in dispatch order.
        mode: Capture mode used.
        sync_variance_ms: Spread of successful timestamps (0 if < 2).
        total_time_ms: Wall-clock duration of the batch.
        all_succeeded: True only if there were outcomes and all succeeded.
        error: Batch-level condition, e.g. no ready devices.
    """

    session_id: str
    total_devices: int
    outcomes: tuple[CaptureOutcome, ...]
    mode: CaptureMode
    sync_variance_ms: float
    total_time_ms: float
    all_succeeded: bool
    error: str | None = None

    @property
    def succeeded(self) -> list[CaptureOutcome]:
        return [o for o in self.outcomes if o.success]

    @property
    def failed(self) -> list[CaptureOutcome]:
        return [o for o in self.outcomes if not o.success]

    @property
    def succeeded_count(self) -> int:
        return len(self.succeeded)

    @property
    def failed_count(self) -> int:
        return len(self.failed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "mode": self.mode.value,
            "total_devices": self.total_devices,
            "succeeded_count": self.succeeded_count,
            "failed_count": self.failed_count,
            "all_succeeded": self.all_succeeded,
            "sync_variance_ms": self.sync_variance_ms,
            "total_time_ms": self.total_time_ms,
            "error": self.error,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


@dataclass
class BatchOutcome:
    """Result of a non-capture batch operation.

    Attributes:
        operation: Operation name, e.g. ``"pre_focus"``.
        results: Success flag per identity.
        values: Returned value per successful identity (JSON-ready).
        errors: Error text per failed identity.
    """

    operation: str
    results: dict[str, bool] = field(default_factory=dict)
    values: dict[str, Any] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def all_succeeded(self) -> bool:
        return bool(self.results) and all(self.results.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "all_succeeded": self.all_succeeded,
            "results": dict(self.results),
            "values": dict(self.values),
            "errors": dict(self.errors),
        }


def sync_variance_ms(timestamps: Iterable[float]) -> float:
    """Spread of monotonic timestamps in milliseconds (0 for fewer than 2)."""
    values = list(timestamps)
    if len(values) < 2:
        return 0.0
    return round((max(values) - min(values)) * 1000.0, 3)


# =============================================================================
# Coordinator
# =============================================================================


class CaptureCoordinator:
    """Runs batch operations over a set of sessions.

    Only sessions that are CONNECTED when the call starts take part;
    others are left out of the outcome list entirely.

    Injectable Dependencies:
        - clock: Time source for outcome timing (default: SystemClock)
        - stats: Per-device and per-batch statistics (optional)
        - on_capture_complete: Called with every capture result
    """

    def __init__(
        self,
        clock: Clock | None = None,
        stats: DeviceStats | None = None,
        default_mode: str | CaptureMode = CaptureMode.PARALLEL,
        on_capture_complete: Callable[[CaptureSessionResult], None] | None = None,
    ) -> None:
        self._clock: Clock = clock or SystemClock()
        self._stats = stats
        self._default_mode = CaptureMode.parse(default_mode)
        self._on_capture_complete = on_capture_complete
        self._last_result: CaptureSessionResult | None = None

    @property
    def default_mode(self) -> CaptureMode:
        return self._default_mode

    @default_mode.setter
    def default_mode(self, value: str | CaptureMode) -> None:
        self._default_mode = CaptureMode.parse(value)

    @property
    def stats(self) -> DeviceStats | None:
        return self._stats

    @property
    def last_result(self) -> CaptureSessionResult | None:
        """Most recent capture result, if any."""
        return self._last_result

    # -- Capture -------------------------------------------------------------

    def capture_all(
        self,
        sessions: Iterable[CaptureTarget] | Mapping[str, CaptureTarget],
        mode: str | CaptureMode | None = None,
    ) -> CaptureSessionResult:
        """Capture on every ready session.

        Args:
            sessions: Sessions, or an identity to session mapping such as
                ``registry.snapshot()``.
            mode: ``parallel`` or ``sequential``; None uses the default.

        Returns:
            The aggregated result. With no ready sessions the result has
            no outcomes, ``all_succeeded`` False and ``error`` set.

        Raises:
            ValueError: Unknown mode.
        """
        capture_mode = self._default_mode if mode is None else CaptureMode.parse(mode)
        targets = _as_list(sessions)
        ready = [s for s in targets if s.is_connected]
        session_id = uuid.uuid4().hex

        with LogContext(session_id=session_id):
            if not ready:
                logger.warning(NO_DEVICES_READY, total=len(targets), mode=capture_mode)
                result = CaptureSessionResult(
                    session_id=session_id,
                    total_devices=len(targets),
                    outcomes=(),
                    mode=capture_mode,
                    sync_variance_ms=0.0,
                    total_time_ms=0.0,
                    all_succeeded=False,
                    error=NO_DEVICES_READY,
                )
                return self._finish(result)

            logger.info("Capture started", devices=len(ready), mode=capture_mode)
            start = self._clock.monotonic()
            if capture_mode is CaptureMode.PARALLEL:
                outcomes = self._map_parallel(ready, self._capture_one, session_id)
            else:
                outcomes = [self._capture_one(s) for s in ready]
            total_ms = round((self._clock.monotonic() - start) * 1000.0, 3)

            variance = sync_variance_ms(
                o.timestamp for o in outcomes if o.success and o.timestamp is not None
            )
            result = CaptureSessionResult(
                session_id=session_id,
                total_devices=len(targets),
                outcomes=tuple(outcomes),
                mode=capture_mode,
                sync_variance_ms=variance,
                total_time_ms=total_ms,
                all_succeeded=all(o.success for o in outcomes),
            )
            logger.info(
                "Capture complete",
                succeeded=result.succeeded_count,
                failed=result.failed_count,
                sync_variance_ms=variance,
                total_time_ms=total_ms,
            )
            return self._finish(result)

    def _capture_one(self, session: CaptureTarget) -> CaptureOutcome:
        start = self._clock.monotonic()
        try:
            receipt = session.capture_once()
        except Exception as e:
            elapsed_ms = (self._clock.monotonic() - start) * 1000.0
            kind = error_kind(e)
            if kind == "internal":
                logger.exception("Unexpected capture failure", identity=session.identity)
            else:
                logger.warning(
                    "Capture failed", identity=session.identity, kind=kind, error=str(e)
                )
            outcome = CaptureOutcome(
                identity=session.identity,
                success=False,
                timestamp=None,
                elapsed_ms=elapsed_ms,
                error=str(e),
                error_kind=kind,
            )
        else:
            outcome = CaptureOutcome(
                identity=session.identity,
                success=True,
                timestamp=receipt.dispatched_at,
                elapsed_ms=receipt.elapsed_ms,
            )
        if self._stats is not None:
            self._stats.record_capture(
                outcome.identity, outcome.elapsed_ms, outcome.success, outcome.error_kind
            )
        return outcome

    def _finish(self, result: CaptureSessionResult) -> CaptureSessionResult:
        self._last_result = result
        if self._stats is not None and result.outcomes:
            self._stats.record_batch(
                result.sync_variance_ms, result.succeeded_count, result.failed_count
            )
        if self._on_capture_complete is not None:
            try:
                self._on_capture_complete(result)
            except Exception:
                logger.exception("on_capture_complete callback failed")
        return result

    # -- Other batch operations ----------------------------------------------

    def pre_focus_all(
        self, sessions: Iterable[CaptureTarget] | Mapping[str, CaptureTarget]
    ) -> BatchOutcome:
        """Focus every ready device at the centre of the frame, in parallel."""
        x, y = FOCUS_CENTER
        return self._run_batch("pre_focus", sessions, lambda s: s.focus(x, y))

    def refresh_all_status(
        self, sessions: Iterable[CaptureTarget] | Mapping[str, CaptureTarget]
    ) -> BatchOutcome:
        """Query status on every ready device, in parallel."""
        return self._run_batch("refresh_status", sessions, lambda s: s.get_status())

    def apply_setting_to_all(
        self,
        sessions: Iterable[CaptureTarget] | Mapping[str, CaptureTarget],
        setting_type: str,
        value: Any,
    ) -> BatchOutcome:
        """Apply one setting to every ready device, in parallel."""
        return self._run_batch(
            "apply_setting", sessions, lambda s: s.set_setting(setting_type, value)
        )

    def _run_batch(
        self,
        operation: str,
        sessions: Iterable[CaptureTarget] | Mapping[str, CaptureTarget],
        action: Callable[[CaptureTarget], Any],
    ) -> BatchOutcome:
        ready = [s for s in _as_list(sessions) if s.is_connected]
        outcome = BatchOutcome(operation)
        session_id = uuid.uuid4().hex

        def run(session: CaptureTarget) -> tuple[str, Any, Exception | None]:
            try:
                return session.identity, action(session), None
            except Exception as e:
                if error_kind(e) == "internal":
                    logger.exception(
                        "Unexpected batch failure",
                        operation=operation,
                        identity=session.identity,
                    )
                return session.identity, None, e

        for identity, value, error in self._map_parallel(ready, run, session_id):
            outcome.results[identity] = error is None
            if error is None:
                outcome.values[identity] = _jsonable(value)
            else:
                outcome.errors[identity] = str(error)
        logger.info(
            "Batch operation complete",
            operation=operation,
            devices=len(ready),
            failed=len(outcome.errors),
        )
        return outcome

    def _map_parallel(
        self,
        sessions: list[CaptureTarget],
        fn: Callable[[CaptureTarget], T],
        session_id: str,
    ) -> list[T]:
        """Run ``fn`` on every session with one worker each; keep input order."""
        if not sessions:
            return []

        def task(session: CaptureTarget) -> T:
            # Pool threads do not inherit the caller's LogContext
            with LogContext(session_id=session_id, identity=session.identity):
                return fn(session)

        with ThreadPoolExecutor(
            max_workers=len(sessions), thread_name_prefix="multicam-batch"
        ) as pool:
            futures = [pool.submit(task, s) for s in sessions]
            return [f.result() for f in futures]


def _as_list(
    sessions: Iterable[CaptureTarget] | Mapping[str, CaptureTarget],
) -> list[CaptureTarget]:
    if isinstance(sessions, Mapping):
        return list(sessions.values())
    return list(sessions)


def _jsonable(value: Any) -> Any:
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return value


# =============================================================================
# Module Singleton
# =============================================================================

_default_coordinator: CaptureCoordinator | None = None


def init_coordinator(
    clock: Clock | None = None,
    stats: DeviceStats | None = None,
    default_mode: str | CaptureMode = CaptureMode.PARALLEL,
) -> CaptureCoordinator:
    """Create the process-wide coordinator shared by the tools and dashboard.

    A fresh ``DeviceStats`` is created when none is given.
    """
    global _default_coordinator
    _default_coordinator = CaptureCoordinator(
        clock=clock, stats=stats or DeviceStats(), default_mode=default_mode
    )
    return _default_coordinator


def get_coordinator() -> CaptureCoordinator:
    """Return the shared coordinator, creating a default one on first use."""
    if _default_coordinator is None:
        return init_coordinator()
    return _default_coordinator


def reset_coordinator() -> None:
    """Drop the shared coordinator (tests and server shutdown)."""
    global _default_coordinator
    _default_coordinator = None
