"""MCP Tools for camera array control.

Uses the device layer (DeviceRegistry + CaptureCoordinator) so the same
tools drive real USB cameras and digital twins. Every tool returns a
single JSON ``TextContent``; failures come back as
``{"error": <message>, "kind": <category>}`` instead of raising.
"""

import asyncio
import json
from collections.abc import Callable
from typing import Any, TypeVar

from mcp.server import Server
from mcp.types import TextContent, Tool

from multicam_mcp.devices import (
    CaptureCoordinator,
    CaptureMode,
    DeviceCapExceededError,
    DeviceNotFoundError,
    DeviceRegistry,
    RegistryError,
    get_coordinator,
    get_registry,
)
from multicam_mcp.devices.coordinator import error_kind
from multicam_mcp.observability import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

_IDENTITY = {
    "type": "string",
    "description": "Device identity (serial number) from list_devices",
}
_SETTING_TYPE = {
    "type": "string",
    "description": "Setting name, e.g. iso, shutter_speed, aperture, image_format",
}
_SETTING_VALUE = {
    "type": ["string", "number", "boolean"],
    "description": "Setting value as the camera expects it, e.g. \"400\"",
}


def _schema(properties: dict[str, Any] | None = None, *required: str) -> dict:
    return {
        "type": "object",
        "properties": properties or {},
        "required": list(required),
    }


# Tool definitions
TOOLS = [
    Tool(
        name="list_devices",
        description="List connected cameras with state, status and nickname",
        inputSchema=_schema(
            {
                "include_attached": {
                    "type": "boolean",
                    "description": "Also enumerate attached but unconnected devices",
                    "default": False,
                },
            }
        ),
    ),
    Tool(
        name="connect_devices",
        description="Connect every attached camera (at most 4 sessions)",
        inputSchema=_schema(),
    ),
    Tool(
        name="disconnect_device",
        description="Close one camera session",
        inputSchema=_schema({"identity": _IDENTITY}, "identity"),
    ),
    Tool(
        name="disconnect_all",
        description="Close every camera session",
        inputSchema=_schema(),
    ),
    Tool(
        name="get_device_status",
        description="Query battery, SD card and mode of one camera",
        inputSchema=_schema({"identity": _IDENTITY}, "identity"),
    ),
    Tool(
        name="capture_all",
        description=(
            "Take one photo on every connected camera and report per-device "
            "outcomes and the synchronisation variance"
        ),
        inputSchema=_schema(
            {
                "mode": {
                    "type": "string",
                    "enum": [m.value for m in CaptureMode],
                    "description": "parallel (default) or sequential",
                },
            }
        ),
    ),
    Tool(
        name="capture_one",
        description="Take one photo on a single camera",
        inputSchema=_schema({"identity": _IDENTITY}, "identity"),
    ),
    Tool(
        name="set_setting",
        description="Set a camera setting on one camera",
        inputSchema=_schema(
            {
                "identity": _IDENTITY,
                "setting_type": _SETTING_TYPE,
                "value": _SETTING_VALUE,
            },
            "identity",
            "setting_type",
            "value",
        ),
    ),
    Tool(
        name="focus",
        description="Tap-to-focus at (x, y) on a 256x256 grid, origin bottom-left",
        inputSchema=_schema(
            {
                "identity": _IDENTITY,
                "x": {"type": "integer", "minimum": 0, "maximum": 255},
                "y": {"type": "integer", "minimum": 0, "maximum": 255},
            },
            "identity",
            "x",
            "y",
        ),
    ),
    Tool(
        name="pre_focus_all",
        description="Focus every connected camera at the frame centre",
        inputSchema=_schema(),
    ),
    Tool(
        name="apply_setting_to_all",
        description="Apply one setting to every connected camera",
        inputSchema=_schema(
            {"setting_type": _SETTING_TYPE, "value": _SETTING_VALUE},
            "setting_type",
            "value",
        ),
    ),
    Tool(
        name="switch_mode",
        description="Switch one camera between photo, view and video mode",
        inputSchema=_schema(
            {
                "identity": _IDENTITY,
                "mode": {"type": "string", "enum": ["photo", "view", "video"]},
            },
            "identity",
            "mode",
        ),
    ),
    Tool(
        name="get_last_file",
        description="Path of the most recent file on a camera's SD card",
        inputSchema=_schema({"identity": _IDENTITY}, "identity"),
    ),
    Tool(
        name="set_nickname",
        description="Give a camera a display name (empty clears it)",
        inputSchema=_schema(
            {"identity": _IDENTITY, "nickname": {"type": "string"}},
            "identity",
            "nickname",
        ),
    ),
    Tool(
        name="get_capture_stats",
        description="Capture timing, success rates and sync variance history",
        inputSchema=_schema(
            {
                "identity": {
                    "type": "string",
                    "description": "Limit to one device (default: all)",
                },
            }
        ),
    ),
]


def register(server: Server) -> None:
    """Register camera array tools with the MCP server.

    Args:
        server: MCP Server instance, not yet running.

    Example:
        >>> server = Server("multicam-mcp")
        >>> register(server)
    """

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        """Return available camera array tools (MCP tool discovery)."""
        return TOOLS

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
        """Route tool calls to the matching ``_*`` implementation.

        Unknown tool names and missing required arguments are reported
        as error content rather than raised.
        """
        return await dispatch(name, arguments or {})


async def dispatch(name: str, arguments: dict[str, Any]) -> list[TextContent]:
    """Invoke tool ``name`` with ``arguments``."""
    try:
        if name == "list_devices":
            return await _list_devices(bool(arguments.get("include_attached", False)))
        elif name == "connect_devices":
            return await _connect_devices()
        elif name == "disconnect_device":
            return await _disconnect_device(arguments["identity"])
        elif name == "disconnect_all":
            return await _disconnect_all()
        elif name == "get_device_status":
            return await _get_device_status(arguments["identity"])
        elif name == "capture_all":
            return await _capture_all(arguments.get("mode"))
        elif name == "capture_one":
            return await _capture_one(arguments["identity"])
        elif name == "set_setting":
            return await _set_setting(
                arguments["identity"], arguments["setting_type"], arguments["value"]
            )
        elif name == "focus":
            return await _focus(arguments["identity"], arguments["x"], arguments["y"])
        elif name == "pre_focus_all":
            return await _pre_focus_all()
        elif name == "apply_setting_to_all":
            return await _apply_setting_to_all(
                arguments["setting_type"], arguments["value"]
            )
        elif name == "switch_mode":
            return await _switch_mode(arguments["identity"], arguments["mode"])
        elif name == "get_last_file":
            return await _get_last_file(arguments["identity"])
        elif name == "set_nickname":
            return await _set_nickname(arguments["identity"], arguments["nickname"])
        elif name == "get_capture_stats":
            return await _get_capture_stats(arguments.get("identity"))
        else:
            return _error(f"Unknown tool: {name}", "unknown_tool")
    except KeyError as e:
        return _error(f"Missing argument {e} for {name}", "invalid_argument")


# =============================================================================
# Helpers
# =============================================================================


def _text(payload: Any) -> list[TextContent]:
    return [TextContent(type="text", text=json.dumps(payload, indent=2))]


def _error(message: str, kind: str) -> list[TextContent]:
    return _text({"error": message, "kind": kind})


def tool_error_kind(error: BaseException) -> str:
    """Category reported in the ``kind`` field of a tool error."""
    if isinstance(error, DeviceNotFoundError):
        return "not_found"
    if isinstance(error, DeviceCapExceededError):
        return "cap_exceeded"
    if isinstance(error, RegistryError):
        return "registry"
    if isinstance(error, ValueError):
        return "invalid_argument"
    return error_kind(error)


def _from_exception(action: str, error: Exception) -> list[TextContent]:
    kind = tool_error_kind(error)
    if kind == "internal":
        logger.exception("Tool failed", action=action)
    else:
        logger.warning("Tool failed", action=action, kind=kind, error=str(error))
    return _error(str(error), kind)


def _resolve_registry(registry: DeviceRegistry | None) -> DeviceRegistry:
    # An empty registry is falsy, so test against None
    return get_registry() if registry is None else registry


def _resolve_coordinator(coordinator: CaptureCoordinator | None) -> CaptureCoordinator:
    return get_coordinator() if coordinator is None else coordinator


async def _blocking(fn: Callable[..., T], *args: Any) -> T:
    """Run device I/O off the event loop."""
    return await asyncio.to_thread(fn, *args)


# =============================================================================
# Tool implementations using device layer
# =============================================================================


async def _list_devices(
    include_attached: bool = False, registry: DeviceRegistry | None = None
) -> list[TextContent]:
    """List registered sessions, optionally with unconnected attached devices.

    Returns:
        JSON ``{"count", "max_devices", "devices": [snapshot...]}`` plus
        ``"attached": [{"location", "serial_number", "connected"}]`` when
        ``include_attached`` is set.
    """
    try:
        registry = _resolve_registry(registry)
        snapshot = registry.snapshot()
        result: dict[str, Any] = {
            "count": len(snapshot),
            "max_devices": registry.max_devices,
            "devices": [s.snapshot().to_dict() for s in snapshot.values()],
        }
        if include_attached:
            handles = await _blocking(registry.discover)
            connected = {s.handle.location for s in snapshot.values()}
            result["attached"] = [
                {
                    "location": h.location,
                    "serial_number": h.serial_number,
                    "connected": h.location in connected,
                }
                for h in handles
            ]
        return _text(result)
    except Exception as e:
        return _from_exception("list_devices", e)


async def _connect_devices(registry: DeviceRegistry | None = None) -> list[TextContent]:
    """Connect every attached device up to the cap.

    Returns:
        JSON ``{"connected": [...], "errors": {location: message}, "count"}``.
    """
    try:
        registry = _resolve_registry(registry)
        report = await _blocking(registry.connect_all)
        result = report.to_dict()
        result["count"] = len(registry)
        return _text(result)
    except Exception as e:
        return _from_exception("connect_devices", e)


async def _disconnect_device(
    identity: str, registry: DeviceRegistry | None = None
) -> list[TextContent]:
    try:
        registry = _resolve_registry(registry)
        removed = await _blocking(registry.disconnect, identity)
        if not removed:
            return _error(f"Device {identity} not connected", "not_found")
        return _text({"identity": identity, "disconnected": True})
    except Exception as e:
        return _from_exception("disconnect_device", e)


async def _disconnect_all(registry: DeviceRegistry | None = None) -> list[TextContent]:
    try:
        registry = _resolve_registry(registry)
        removed = await _blocking(registry.disconnect_all)
        return _text({"disconnected": removed, "count": len(removed)})
    except Exception as e:
        return _from_exception("disconnect_all", e)


async def _get_device_status(
    identity: str, registry: DeviceRegistry | None = None
) -> list[TextContent]:
    """Query live status from one device.

    Returns:
        JSON with ``identity``, ``display_name``, ``state`` and ``status``
        (battery_level, sd_card_present, sd_card_free_space, is_recording,
        current_mode).
    """
    try:
        session = _resolve_registry(registry).get(identity)
        status = await _blocking(session.get_status)
        return _text(
            {
                "identity": identity,
                "display_name": session.display_name,
                "state": session.state.value,
                "status": status.to_dict(),
            }
        )
    except Exception as e:
        return _from_exception("get_device_status", e)


async def _capture_all(
    mode: str | None = None,
    registry: DeviceRegistry | None = None,
    coordinator: CaptureCoordinator | None = None,
) -> list[TextContent]:
    """Capture on every connected device.

    Per-device failures are part of the result (``outcomes`` with
    ``success: false``); only invalid input is reported as a tool error.
    """
    try:
        registry = _resolve_registry(registry)
        coordinator = _resolve_coordinator(coordinator)
        result = await _blocking(coordinator.capture_all, registry.snapshot(), mode)
        return _text(result.to_dict())
    except Exception as e:
        return _from_exception("capture_all", e)


async def _capture_one(
    identity: str,
    registry: DeviceRegistry | None = None,
    coordinator: CaptureCoordinator | None = None,
) -> list[TextContent]:
    """Capture on a single device through the coordinator (stats included)."""
    try:
        session = _resolve_registry(registry).get(identity)
        coordinator = _resolve_coordinator(coordinator)
        result = await _blocking(
            coordinator.capture_all, [session], CaptureMode.SEQUENTIAL
        )
        return _text(result.to_dict())
    except Exception as e:
        return _from_exception("capture_one", e)


async def _set_setting(
    identity: str,
    setting_type: str,
    value: Any,
    registry: DeviceRegistry | None = None,
) -> list[TextContent]:
    try:
        session = _resolve_registry(registry).get(identity)
        await _blocking(session.set_setting, setting_type, value)
        return _text(
            {"identity": identity, "setting_type": setting_type, "value": value}
        )
    except Exception as e:
        return _from_exception("set_setting", e)


async def _focus(
    identity: str, x: int, y: int, registry: DeviceRegistry | None = None
) -> list[TextContent]:
    try:
        session = _resolve_registry(registry).get(identity)
        result = await _blocking(session.focus, x, y)
        return _text({"identity": identity, "x": x, "y": y, "result": result})
    except Exception as e:
        return _from_exception("focus", e)


async def _pre_focus_all(
    registry: DeviceRegistry | None = None,
    coordinator: CaptureCoordinator | None = None,
) -> list[TextContent]:
    try:
        registry = _resolve_registry(registry)
        coordinator = _resolve_coordinator(coordinator)
        outcome = await _blocking(coordinator.pre_focus_all, registry.snapshot())
        return _text(outcome.to_dict())
    except Exception as e:
        return _from_exception("pre_focus_all", e)


async def _apply_setting_to_all(
    setting_type: str,
    value: Any,
    registry: DeviceRegistry | None = None,
    coordinator: CaptureCoordinator | None = None,
) -> list[TextContent]:
    try:
        registry = _resolve_registry(registry)
        coordinator = _resolve_coordinator(coordinator)
        outcome = await _blocking(
            coordinator.apply_setting_to_all, registry.snapshot(), setting_type, value
        )
        return _text(outcome.to_dict())
    except Exception as e:
        return _from_exception("apply_setting_to_all", e)


async def _switch_mode(
    identity: str, mode: str, registry: DeviceRegistry | None = None
) -> list[TextContent]:
    try:
        session = _resolve_registry(registry).get(identity)
        await _blocking(session.switch_mode, mode)
        return _text({"identity": identity, "mode": mode})
    except Exception as e:
        return _from_exception("switch_mode", e)


async def _get_last_file(
    identity: str, registry: DeviceRegistry | None = None
) -> list[TextContent]:
    try:
        session = _resolve_registry(registry).get(identity)
        path = await _blocking(session.last_file_path)
        return _text({"identity": identity, "path": path})
    except Exception as e:
        return _from_exception("get_last_file", e)


async def _set_nickname(
    identity: str, nickname: str, registry: DeviceRegistry | None = None
) -> list[TextContent]:
    """Set or clear (empty string) a device's display name. No device I/O."""
    try:
        session = _resolve_registry(registry).get(identity)
        session.nickname = nickname.strip() or None
        return _text(
            {
                "identity": identity,
                "nickname": session.nickname,
                "display_name": session.display_name,
            }
        )
    except Exception as e:
        return _from_exception("set_nickname", e)


async def _get_capture_stats(
    identity: str | None = None, coordinator: CaptureCoordinator | None = None
) -> list[TextContent]:
    """Capture statistics for one device or all devices plus batch history."""
    try:
        stats = _resolve_coordinator(coordinator).stats
        if stats is None:
            return _error("Statistics are not enabled", "unavailable")
        if identity is None:
            return _text(stats.to_dict())
        return _text(stats.get_summary(identity).to_dict())
    except Exception as e:
        return _from_exception("get_capture_stats", e)
