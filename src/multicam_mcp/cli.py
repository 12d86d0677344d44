"""CLI entry point for multicam-mcp.

Provides the ``multicam-mcp`` console script with subcommands:

- ``server``: Run the MCP server (default if no subcommand)
- ``list``: Enumerate attached cameras and print JSON
- ``capture``: Connect every camera, capture once, print the result

Usage::

    # Run MCP server (default, same as python -m multicam_mcp.server)
    multicam-mcp

    # Run MCP server with explicit subcommand
    multicam-mcp server --dashboard-host 127.0.0.1 --dashboard-port 8080

    # One-shot capture on four simulated cameras
    multicam-mcp capture --twin-count 4 --capture-mode sequential
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import Any

# Constants
SERVER_NAME = "multicam-mcp"
SUBCOMMANDS = ("list", "capture", "server", "-h", "--help")


def _emit(payload: Any) -> None:
    """Write a JSON result to stdout."""
    sys.stdout.write(json.dumps(payload, indent=2) + "\n")
    sys.stdout.flush()


def run_list(args: argparse.Namespace) -> int:
    """Print attached devices of the camera vendor as JSON."""
    from multicam_mcp.drivers.config import get_factory
    from multicam_mcp.drivers.protocol import VENDOR_ID
    from multicam_mcp.server import apply_arguments

    apply_arguments(args)
    backend = get_factory().create_backend()
    handles = backend.enumerate(VENDOR_ID)
    _emit(
        {
            "count": len(handles),
            "devices": [
                {
                    "location": h.location,
                    "serial_number": h.serial_number,
                    "vendor_id": f"0x{h.vendor_id:04X}",
                    "product_id": f"0x{h.product_id:04X}",
                }
                for h in handles
            ],
        }
    )
    return 0


def run_capture(args: argparse.Namespace) -> int:
    """Connect every device, capture once, print the result.

    Returns:
        0 if every device captured, 1 otherwise.
    """
    from multicam_mcp.devices import CaptureCoordinator, DeviceRegistry
    from multicam_mcp.drivers.config import get_factory
    from multicam_mcp.observability import DeviceStats
    from multicam_mcp.server import apply_arguments

    config = apply_arguments(args)
    registry = DeviceRegistry(
        get_factory().create_backend(),
        max_devices=config.max_devices,
        session_options={
            "command_timeout_ms": config.command_timeout_ms,
            "usb_timeout_ms": config.usb_timeout_ms,
            "capture_timeout_ms": config.capture_timeout_ms,
        },
    )
    coordinator = CaptureCoordinator(
        stats=DeviceStats(), default_mode=config.default_capture_mode
    )
    with registry:
        report = registry.connect_all()
        result = coordinator.capture_all(registry.snapshot())
    _emit({"connect": report.to_dict(), "capture": result.to_dict()})
    return 0 if result.all_succeeded else 1


def build_parser() -> argparse.ArgumentParser:
    """Top-level parser with the subcommands."""
    from multicam_mcp.server import add_driver_arguments

    parser = argparse.ArgumentParser(
        prog=SERVER_NAME,
        description="Multicam MCP: synchronized capture across USB cameras",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    list_parser = subparsers.add_parser("list", help="List attached cameras")
    add_driver_arguments(list_parser)

    capture_parser = subparsers.add_parser(
        "capture", help="Connect every camera and capture once"
    )
    add_driver_arguments(capture_parser)

    # Server flags pass through to server.main()
    subparsers.add_parser(
        "server",
        help="Run MCP server (default if no subcommand)",
        add_help=False,
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point for multicam-mcp.

    Returns:
        Exit code 0 for success, non-zero for errors.

    Example:
        >>> # multicam-mcp list --twin-count 4
        >>> # multicam-mcp capture --mode hardware
        >>> # multicam-mcp  (no args = run server)
    """
    argv = list(sys.argv[1:] if argv is None else argv)

    if not argv or argv[0] not in SUBCOMMANDS:
        # No subcommand: every argument belongs to the server
        server_argv = argv
    elif argv[0] == "server":
        server_argv = argv[1:]
    else:
        args = build_parser().parse_args(argv)
        try:
            if args.command == "list":
                return run_list(args)
            return run_capture(args)
        except ValueError as e:
            sys.stderr.write(f"{SERVER_NAME}: error: {e}\n")
            return 2

    from multicam_mcp.server import main as server_main

    server_main(server_argv)
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
