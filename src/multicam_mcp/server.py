"""MCP Server entry point for camera array control."""

import argparse
import asyncio
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Literal

import uvicorn
from mcp.server import Server
from mcp.server.stdio import stdio_server

from multicam_mcp.devices import (
    init_coordinator,
    init_registry,
    reset_coordinator,
    shutdown_registry,
)
from multicam_mcp.drivers.config import (
    DEFAULT_COMMAND_TIMEOUT_MS,
    DriverConfig,
    DriverMode,
    configure,
    get_factory,
)
from multicam_mcp.drivers.protocol import VENDOR_ID
from multicam_mcp.drivers.twin import DEFAULT_TWIN_COUNT, MAX_TWIN_COUNT
from multicam_mcp.drivers.usb import DetachEvent, HotplugMonitor, UsbBackend
from multicam_mcp.observability import DeviceStats, configure_logging, get_logger
from multicam_mcp.tools import devices
from multicam_mcp.web.app import create_app

logger = get_logger(__name__)

SERVER_NAME = "multicam-mcp"


@dataclass
class DashboardState:
    """Container for dashboard server state.

    Encapsulates the background thread and uvicorn server instance
    for the web dashboard, avoiding scattered global variables.
    """

    thread: threading.Thread | None = field(default=None)
    server: uvicorn.Server | None = field(default=None)


_dashboard = DashboardState()
_hotplug: HotplugMonitor | None = None


def create_server(
    mode: Literal["hardware", "digital_twin"] | None = None,
) -> Server:
    """Create and configure the MCP server for camera array control.

    Initializes the device registry from the global driver factory, the
    shared capture coordinator, and registers the device tools.

    Args:
        mode: Overrides the factory's driver mode; None keeps the
            current configuration (digital twin unless configured).

    Returns:
        Configured MCP Server instance with all tools registered.

    Example:
        >>> server = create_server(mode="digital_twin")
        >>> # Tools: list_devices, connect_devices, capture_all, ...
    """
    server = Server(SERVER_NAME)

    if mode is not None:
        configure(replace(get_factory().config, mode=DriverMode(mode.lower())))
    config = get_factory().config
    if config.mode == DriverMode.HARDWARE:
        logger.info("Using HARDWARE mode (real cameras)")
    else:
        logger.info(
            "Using DIGITAL_TWIN mode (simulated cameras)",
            twin_count=config.twin_device_count,
        )

    backend = get_factory().create_backend()
    registry = init_registry(
        backend,
        max_devices=config.max_devices,
        session_options={
            "command_timeout_ms": config.command_timeout_ms,
            "usb_timeout_ms": config.usb_timeout_ms,
            "capture_timeout_ms": config.capture_timeout_ms,
        },
    )
    init_coordinator(stats=DeviceStats(), default_mode=config.default_capture_mode)
    logger.info(
        "Initialized device registry",
        backend=type(backend).__name__,
        max_devices=config.max_devices,
    )

    if config.mode == DriverMode.HARDWARE:
        start_hotplug(backend, registry.handle_detach)

    devices.register(server)
    return server


def start_hotplug(
    backend: UsbBackend, on_detach: Callable[[DetachEvent], object]
) -> None:
    """Watch the bus so unplugged cameras leave the registry."""
    global _hotplug
    stop_hotplug()
    _hotplug = HotplugMonitor(backend, vendor_id=VENDOR_ID, on_detach=on_detach)
    _hotplug.start()


def stop_hotplug() -> None:
    global _hotplug
    if _hotplug is not None:
        _hotplug.stop()
        _hotplug = None


def _run_dashboard(host: str, port: int, log_level: str = "warning") -> None:
    """Run the dashboard server; blocks until shutdown.

    Errors are logged, never raised, so a busy port does not take the
    MCP server down with it.
    """
    try:
        app = create_app()
        config = uvicorn.Config(app, host=host, port=port, log_level=log_level)
        _dashboard.server = uvicorn.Server(config)
        _dashboard.server.run()
    except OSError as e:
        logger.error("Dashboard failed to start", error=str(e), host=host, port=port)
    except Exception:
        logger.exception("Unexpected error in dashboard server")


def start_dashboard(
    host: str = "127.0.0.1", port: int = 8080, log_level: str = "warning"
) -> None:
    """Start the web dashboard in a daemon thread.

    Safe to call multiple times (no-op if already running).

    Example:
        >>> start_dashboard("127.0.0.1", 8080)
        >>> # Dashboard available at http://127.0.0.1:8080
    """
    if _dashboard.thread is not None and _dashboard.thread.is_alive():
        logger.warning("Dashboard already running")
        return

    _dashboard.thread = threading.Thread(
        target=_run_dashboard,
        args=(host, port, log_level),
        daemon=True,
        name=f"multicam-dashboard-{host}:{port}",
    )
    _dashboard.thread.start()
    logger.info("Dashboard started", url=f"http://{host}:{port}")


def stop_dashboard() -> None:
    """Ask the dashboard server to exit. No-op if not running."""
    if _dashboard.server is not None:
        logger.info("Stopping dashboard server")
        _dashboard.server.should_exit = True
        _dashboard.server = None


async def run_server(
    dashboard_host: str | None,
    dashboard_port: int | None,
    mode: Literal["hardware", "digital_twin"] | None = None,
    dashboard_log_level: str = "warning",
) -> None:
    """Run the MCP server over stdio.

    Creates the server, optionally starts the dashboard, then serves the
    MCP protocol on stdin/stdout. Every session is closed on exit.

    Args:
        dashboard_host: Host for the dashboard, or None to disable it.
        dashboard_port: Port for the dashboard, or None to disable it.
        mode: Driver mode override, see ``create_server``.
        dashboard_log_level: Uvicorn log level for the dashboard.

    Example:
        >>> asyncio.run(run_server("127.0.0.1", 8080, "digital_twin"))
    """
    server = create_server(mode=mode)

    if dashboard_host and dashboard_port:
        start_dashboard(dashboard_host, dashboard_port, dashboard_log_level)

    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options(),
            )
    finally:
        stop_dashboard()
        stop_hotplug()
        shutdown_registry()
        reset_coordinator()
        logger.info("Device registry shut down")


def build_parser() -> argparse.ArgumentParser:
    """Argument parser for the server (shared with the CLI subcommands)."""
    parser = argparse.ArgumentParser(
        prog=SERVER_NAME,
        description="Multicam MCP Server - synchronized capture across USB cameras",
    )
    add_driver_arguments(parser)
    parser.add_argument(
        "--dashboard-host",
        type=str,
        default=None,
        help="Host to run the web dashboard on (e.g., 127.0.0.1)",
    )
    parser.add_argument(
        "--dashboard-port",
        type=int,
        default=None,
        help="Port to run the web dashboard on (e.g., 8080)",
    )
    parser.add_argument(
        "--dashboard-log-level",
        type=str,
        choices=["critical", "error", "warning", "info", "debug"],
        default="warning",
        help="Log level for dashboard server (default: warning)",
    )
    return parser


def add_driver_arguments(parser: argparse.ArgumentParser) -> None:
    """Add the driver, timing and logging options to ``parser``."""
    parser.add_argument(
        "--mode",
        type=str,
        choices=[m.value for m in DriverMode],
        default=DriverMode.DIGITAL_TWIN.value,
        help=(
            "Driver mode: 'hardware' for real cameras, "
            "'digital_twin' for simulation (default)"
        ),
    )
    parser.add_argument(
        "--twin-count",
        type=int,
        default=DEFAULT_TWIN_COUNT,
        help=f"Simulated cameras in digital_twin mode (0-{MAX_TWIN_COUNT})",
    )
    parser.add_argument(
        "--capture-mode",
        type=str,
        choices=["parallel", "sequential"],
        default="parallel",
        help="Default capture_all strategy (default: parallel)",
    )
    parser.add_argument(
        "--command-timeout-ms",
        type=int,
        default=DEFAULT_COMMAND_TIMEOUT_MS,
        help=f"Command reply timeout in ms (default: {DEFAULT_COMMAND_TIMEOUT_MS})",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Log level (default: INFO)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit logs as JSON lines",
    )


def apply_arguments(args: argparse.Namespace) -> DriverConfig:
    """Configure logging and the global driver factory from parsed args.

    Logs go to stderr; stdout carries the MCP protocol.

    Raises:
        ValueError: If the twin count or timeouts are out of range.
    """
    configure_logging(
        level=getattr(logging, args.log_level), json_format=args.json_logs
    )
    if not 0 <= args.twin_count <= MAX_TWIN_COUNT:
        raise ValueError(
            f"--twin-count must be between 0 and {MAX_TWIN_COUNT}, "
            f"got {args.twin_count}"
        )
    config = DriverConfig(
        mode=DriverMode(args.mode),
        command_timeout_ms=args.command_timeout_ms,
        twin_device_count=args.twin_count,
        default_capture_mode=args.capture_mode,
    )
    configure(config)
    return config


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments for the MCP server."""
    return build_parser().parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the multicam-mcp server.

    Parses arguments, configures logging and the driver factory, and
    serves MCP over stdio until stdin closes.

    Example:
        >>> # MCP client config:
        >>> # "command": "python", "args": ["-m", "multicam_mcp.server"]
    """
    args = parse_args(argv)
    apply_arguments(args)

    logger.info("Starting MCP server", mode=args.mode)
    asyncio.run(
        run_server(
            args.dashboard_host,
            args.dashboard_port,
            dashboard_log_level=args.dashboard_log_level,
        )
    )


if __name__ == "__main__":  # pragma: no cover
    main()
