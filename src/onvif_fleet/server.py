"""MCP Server entry point for ONVIF fleet management."""

import argparse
import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Literal

import uvicorn
from mcp.server import Server
from mcp.server.stdio import stdio_server

from onvif_fleet.devices import Credentials, Device, DeviceManager, ManagerHooks
from onvif_fleet.drivers.config import (
    DEFAULT_PROBE_TIMEOUT_S,
    DriverConfig,
    DriverMode,
    configure,
    get_factory,
)
from onvif_fleet.observability import DispatchStats, configure_logging, get_logger
from onvif_fleet.tools import devices
from onvif_fleet.web.app import create_app

logger = get_logger(__name__)


@dataclass
class DashboardState:
    """Container for dashboard server state.

    Holds the background thread and uvicorn server instance for the web
    dashboard, avoiding scattered global variables.
    """

    thread: threading.Thread | None = field(default=None)
    server: uvicorn.Server | None = field(default=None)


_dashboard = DashboardState()


def _log_device_found(device: Device) -> None:
    logger.info(
        "New device found",
        endpoint=device.endpoint_address,
        service=device.service_address,
    )


def _log_discovery_ended(generation: int) -> None:
    logger.info("Discovery cycle complete", generation=generation)


def create_server(
    mode: Literal["hardware", "digital_twin"] = "digital_twin",
    username: str | None = None,
    password: str | None = None,
    probe_timeout_s: float = DEFAULT_PROBE_TIMEOUT_S,
) -> Server:
    """Create and configure the MCP server.

    Configures the driver factory, initializes the module-level device
    manager with dispatch statistics, starts the first discovery cycle and
    registers the device tools.

    Args:
        mode: "hardware" for the network drivers, "digital_twin" for the
            simulated fleet. Defaults to "digital_twin".
        username: Initial device user name (default from DriverConfig).
        password: Initial device password (default from DriverConfig).
        probe_timeout_s: WS-Discovery listening time per cycle.

    Returns:
        Configured MCP Server instance with tools registered.

    Example:
        >>> server = create_server(mode="hardware", username="admin", password="pw")
    """
    server = Server("onvif-fleet")

    from onvif_fleet.devices import init_manager

    config = DriverConfig(
        mode=DriverMode(mode.lower()),
        probe_timeout_s=probe_timeout_s,
    )
    if username is not None:
        config.username = username
    if password is not None:
        config.password = password
    configure(config)

    if config.mode == DriverMode.HARDWARE:
        logger.info("Using HARDWARE mode (WS-Discovery + ONVIF)")
    else:
        logger.info("Using DIGITAL_TWIN mode (simulated fleet)")

    factory = get_factory()
    manager: DeviceManager = init_manager(
        factory.create_discovery_driver(),
        factory.create_device_driver(),
        credentials=Credentials(config.username, config.password),
        hooks=ManagerHooks(
            on_device_found=_log_device_found,
            on_discovery_ended=_log_discovery_ended,
        ),
        stats=DispatchStats(),
    )
    manager.start_discovery()

    devices.register(server)
    return server


def _run_dashboard(host: str, port: int, log_level: str = "warning") -> None:
    """Run the dashboard server; blocks until it shuts down.

    Errors are logged, not raised, so a busy port does not take the MCP
    server down.
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
    """Start the web dashboard in a daemon thread. No-op if already running.

    Args:
        host: Bind address (127.0.0.1 local only, 0.0.0.0 for remote access).
        port: Port to listen on.
        log_level: Uvicorn log level.
    """
    if _dashboard.thread is not None and _dashboard.thread.is_alive():
        logger.warning("Dashboard already running")
        return

    _dashboard.thread = threading.Thread(
        target=_run_dashboard,
        args=(host, port, log_level),
        daemon=True,
        name=f"onvif-dashboard-{host}:{port}",
    )
    _dashboard.thread.start()
    logger.info(f"Dashboard started at http://{host}:{port}")


def stop_dashboard() -> None:
    """Ask the dashboard server to exit. No-op if it is not running."""
    if _dashboard.server is not None:
        logger.info("Stopping dashboard server")
        _dashboard.server.should_exit = True
        _dashboard.server = None


async def run_server(
    dashboard_host: str | None,
    dashboard_port: int | None,
    mode: Literal["hardware", "digital_twin"] = "digital_twin",
    dashboard_log_level: str = "warning",
    username: str | None = None,
    password: str | None = None,
    probe_timeout_s: float = DEFAULT_PROBE_TIMEOUT_S,
) -> None:
    """Run the MCP server over stdio.

    Creates the server, optionally starts the dashboard, then serves MCP
    until stdin closes. The manager is always shut down on exit.

    Example:
        >>> asyncio.run(run_server("127.0.0.1", 8080, "hardware"))
        >>> asyncio.run(run_server(None, None))
    """
    server = create_server(
        mode=mode,
        username=username,
        password=password,
        probe_timeout_s=probe_timeout_s,
    )

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

        from onvif_fleet.devices import shutdown_manager

        shutdown_manager()
        logger.info("Device manager shut down")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments.

    Args:
        argv: Arguments to parse (default sys.argv[1:]).

    Returns:
        Namespace with mode, username, password, probe_timeout,
        dashboard_host, dashboard_port, dashboard_log_level, json_logs and
        log_level.

    Raises:
        SystemExit: On invalid arguments or --help.
    """
    parser = argparse.ArgumentParser(
        description="ONVIF Fleet MCP Server - discover cameras and dispatch commands"
    )
    parser.add_argument(
        "--mode",
        type=str,
        choices=["hardware", "digital_twin"],
        default="digital_twin",
        help=(
            "Driver mode: 'hardware' for WS-Discovery and ONVIF over the "
            "network, 'digital_twin' for a simulated fleet (default)"
        ),
    )
    parser.add_argument(
        "--username",
        type=str,
        default=None,
        help="Device user name (default: admin)",
    )
    parser.add_argument(
        "--password",
        type=str,
        default=None,
        help="Device password (default: empty)",
    )
    parser.add_argument(
        "--probe-timeout",
        type=float,
        default=DEFAULT_PROBE_TIMEOUT_S,
        help=f"Seconds each discovery cycle listens (default: {DEFAULT_PROBE_TIMEOUT_S})",
    )
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
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"],
        default="INFO",
        help="Log level for onvif-fleet loggers (default: INFO)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit logs as JSON lines on stderr",
    )
    args = parser.parse_args(argv)
    if args.probe_timeout <= 0:
        parser.error(f"--probe-timeout must be positive, got {args.probe_timeout}")
    return args


def main() -> None:
    """Entry point of the onvif-fleet console script.

    Parses arguments, configures structured logging on stderr and serves
    MCP over stdio until the client disconnects.
    """
    args = parse_args()

    # Module loggers already installed the defaults at import time.
    configure_logging(
        level=getattr(logging, args.log_level), json_format=args.json_logs, force=True
    )

    logger.info("Starting MCP server", mode=args.mode)
    asyncio.run(
        run_server(
            args.dashboard_host,
            args.dashboard_port,
            args.mode,
            args.dashboard_log_level,
            username=args.username,
            password=args.password,
            probe_timeout_s=args.probe_timeout,
        )
    )


if __name__ == "__main__":  # pragma: no cover
    main()
