"""MCP Tools for ONVIF device management.

Uses the module-level DeviceManager for discovery and command dispatch.
Works the same with the real network drivers and the digital twin.
"""

import asyncio
import json
from typing import Any

from mcp.server import Server
from mcp.types import TextContent, Tool

from onvif_fleet.devices import Operation, UnknownOperationError, get_manager
from onvif_fleet.observability import get_logger

logger = get_logger(__name__)


def _text(payload: Any) -> list[TextContent]:
    return [TextContent(type="text", text=json.dumps(payload, indent=2, default=str))]


# Tool definitions
TOOLS = [
    Tool(
        name="list_devices",
        description="List every ONVIF device admitted by the current discovery cycle",
        inputSchema={
            "type": "object",
            "properties": {},
            "required": [],
        },
    ),
    Tool(
        name="get_device",
        description="Get discovery data and cached capability state of one device",
        inputSchema={
            "type": "object",
            "properties": {
                "address": {
                    "type": "string",
                    "description": "Endpoint address (e.g. urn:uuid:...)",
                },
            },
            "required": ["address"],
        },
    ),
    Tool(
        name="start_discovery",
        description=(
            "Start a new discovery cycle. Forgets every known device and "
            "probes the network again"
        ),
        inputSchema={
            "type": "object",
            "properties": {},
            "required": [],
        },
    ),
    Tool(
        name="set_credentials",
        description=(
            "Set the username/password used for devices. Restarts discovery; "
            "devices found before are dropped"
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "username": {"type": "string", "description": "Device user name"},
                "password": {"type": "string", "description": "Device password"},
            },
            "required": ["username", "password"],
        },
    ),
    Tool(
        name="dispatch_command",
        description="Run a command on one device, addressed by endpoint address",
        inputSchema={
            "type": "object",
            "properties": {
                "address": {
                    "type": "string",
                    "description": "Endpoint address of the target device",
                },
                "operation": {
                    "type": "string",
                    "enum": [op.value for op in Operation],
                    "description": "Command to run",
                },
                "arguments": {
                    "type": "object",
                    "description": (
                        "Command arguments: set_scopes {name, location}; "
                        "set_video_config {config}; set_interfaces {interfaces}; "
                        "set_protocols {protocols}; set_date_and_time {when: ISO 8601}; "
                        "continuous_move {x, y, z} in [-1, 1]"
                    ),
                    "default": {},
                },
            },
            "required": ["address", "operation"],
        },
    ),
]


def register(server: Server) -> None:
    """Register device management tools with the MCP server.

    Tools registered:
    - list_devices: Enumerate known devices
    - get_device: Inspect one device
    - start_discovery: Run a fresh discovery cycle
    - set_credentials: Change credentials and rediscover
    - dispatch_command: Route a command to a device

    Args:
        server: MCP Server instance, not yet running.

    Example:
        >>> server = Server("onvif-fleet")
        >>> register(server)
    """

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        """Return available device tools."""
        return TOOLS

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
        """Route tool calls to their implementations.

        Args:
            name: Tool name from TOOLS.
            arguments: Arguments matching the tool's inputSchema.

        Returns:
            Single TextContent with a JSON result or an error message.
        """
        if name == "list_devices":
            return await _list_devices()
        elif name == "get_device":
            return await _get_device(arguments["address"])
        elif name == "start_discovery":
            return await _start_discovery()
        elif name == "set_credentials":
            return await _set_credentials(arguments["username"], arguments["password"])
        elif name == "dispatch_command":
            return await _dispatch_command(
                arguments["address"],
                arguments["operation"],
                arguments.get("arguments") or {},
            )
        else:
            return [TextContent(type="text", text=f"Unknown tool: {name}")]


# Tool implementations using the manager


async def _list_devices() -> list[TextContent]:
    """List known devices with their discovery data.

    Returns:
        JSON {"generation", "discovering", "count", "devices": [...]}, or
        "No devices discovered" when the registry is empty.
    """
    try:
        manager = get_manager()
        devices = manager.devices()

        if not devices:
            return [TextContent(type="text", text="No devices discovered")]

        result = {
            "generation": manager.generation,
            "discovering": manager.is_discovering,
            "count": len(devices),
            "devices": [
                {
                    **device.probe.to_dict(),
                    "connected": device.is_connected,
                }
                for device in devices.values()
            ],
        }
        return _text(result)
    except Exception as e:
        logger.error(f"Error listing devices: {e}")
        return [TextContent(type="text", text=f"Error listing devices: {e}")]


async def _get_device(address: str) -> list[TextContent]:
    """Get the snapshot of one device, or an unknown-device message."""
    try:
        device = get_manager().lookup(address)
        if device is None:
            return [TextContent(type="text", text=f"Device unknown: {address}")]
        return _text(device.snapshot())
    except Exception as e:
        logger.error(f"Error getting device {address}: {e}")
        return [TextContent(type="text", text=f"Error getting device: {e}")]


async def _start_discovery() -> list[TextContent]:
    """Start a discovery cycle and report its generation."""
    try:
        generation = get_manager().start_discovery()
        return _text({"generation": generation, "status": "started"})
    except Exception as e:
        logger.error(f"Error starting discovery: {e}")
        return [TextContent(type="text", text=f"Error starting discovery: {e}")]


async def _set_credentials(username: str, password: str) -> list[TextContent]:
    """Replace credentials; the manager restarts discovery."""
    try:
        generation = get_manager().set_credentials(username, password)
        return _text({"username": username, "generation": generation, "status": "started"})
    except Exception as e:
        logger.error(f"Error setting credentials: {e}")
        return [TextContent(type="text", text=f"Error setting credentials: {e}")]


async def _dispatch_command(
    address: str, operation: str, arguments: dict[str, Any]
) -> list[TextContent]:
    """Dispatch a command on a worker thread and report the result.

    Returns:
        JSON DispatchResult.to_dict(), or an error message for an unknown
        operation or invalid arguments.
    """
    try:
        op = Operation.parse(operation)
        kwargs = op.bind(arguments)
    except (UnknownOperationError, ValueError) as e:
        return [TextContent(type="text", text=f"Invalid command: {e}")]

    try:
        manager = get_manager()
        result = await asyncio.to_thread(manager.dispatch, address, op, **kwargs)
        return _text(result.to_dict())
    except Exception as e:
        logger.error(f"Error dispatching {operation} to {address}: {e}")
        return [TextContent(type="text", text=f"Error dispatching command: {e}")]
