"""FastAPI web application for the device dashboard and REST API."""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from onvif_fleet.devices import (
    DeviceManager,
    DispatchStatus,
    Operation,
    UnknownOperationError,
    get_manager,
)
from onvif_fleet.observability import get_logger

logger = get_logger(__name__)

# HTTP status per dispatch outcome
_DISPATCH_HTTP_STATUS = {
    DispatchStatus.OK: 200,
    DispatchStatus.FAILED: 502,
    DispatchStatus.UNKNOWN_DEVICE: 404,
}


class CredentialsRequest(BaseModel):
    """Body of POST /api/credentials."""

    username: str
    password: str = ""


class DispatchRequest(BaseModel):
    """Body of POST /api/dispatch."""

    address: str
    operation: str
    arguments: dict[str, Any] = Field(default_factory=dict)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Log service startup and shutdown.

    The manager is owned by the server process (init_manager/
    shutdown_manager), not by the web app.
    """
    logger.info("Starting device dashboard...")
    yield
    logger.info("Shutting down device dashboard...")


def create_app(manager: DeviceManager | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    The application provides a REST API at /api/* over the device manager:
    listing and inspecting devices, starting discovery, changing
    credentials, dispatching commands and reading dispatch statistics.

    Args:
        manager: Manager to serve. None resolves the module-level manager
            (get_manager()) on every request.

    Returns:
        Configured FastAPI application ready for uvicorn.run().

    Example:
        >>> app = create_app()
        >>> uvicorn.run(app, host="127.0.0.1", port=8080)
    """
    app = FastAPI(
        title="ONVIF Fleet",
        description="Device registry dashboard and command API",
        version="0.1.0",
        lifespan=lifespan,
    )

    def _manager() -> DeviceManager:
        return manager if manager is not None else get_manager()

    def _unavailable(e: RuntimeError) -> JSONResponse:
        return JSONResponse({"error": str(e)}, status_code=503)

    @app.get("/api/health")
    async def api_health() -> JSONResponse:
        """Report whether a manager is running and the current cycle state."""
        try:
            mgr = _manager()
        except RuntimeError as e:
            return _unavailable(e)
        return JSONResponse(
            {
                "status": "ok",
                "generation": mgr.generation,
                "discovering": mgr.is_discovering,
                "devices": len(mgr.registry),
            }
        )

    @app.get("/api/devices")
    async def api_list_devices() -> JSONResponse:
        """List known devices with their discovery data.

        Response: {"generation": int, "discovering": bool, "count": int,
        "devices": [{endpoint_address, device_service_address, ...}]}
        """
        try:
            mgr = _manager()
        except RuntimeError as e:
            return _unavailable(e)
        devices = mgr.devices()
        return JSONResponse(
            {
                "generation": mgr.generation,
                "discovering": mgr.is_discovering,
                "count": len(devices),
                "devices": [
                    {**device.probe.to_dict(), "connected": device.is_connected}
                    for device in devices.values()
                ],
            }
        )

    @app.get("/api/device")
    async def api_get_device(
        address: str = Query(..., description="Endpoint address"),
    ) -> JSONResponse:
        """Get one device's snapshot. 404 if the address is unknown."""
        try:
            mgr = _manager()
        except RuntimeError as e:
            return _unavailable(e)
        device = mgr.lookup(address)
        if device is None:
            return JSONResponse({"error": f"Device unknown: {address}"}, status_code=404)
        return JSONResponse(device.snapshot())

    @app.post("/api/discovery")
    async def api_start_discovery() -> JSONResponse:
        """Start a fresh discovery cycle."""
        try:
            generation = _manager().start_discovery()
        except RuntimeError as e:
            return _unavailable(e)
        return JSONResponse({"generation": generation, "status": "started"})

    @app.post("/api/credentials")
    async def api_set_credentials(body: CredentialsRequest) -> JSONResponse:
        """Replace credentials and restart discovery."""
        try:
            generation = _manager().set_credentials(body.username, body.password)
        except RuntimeError as e:
            return _unavailable(e)
        return JSONResponse(
            {"username": body.username, "generation": generation, "status": "started"}
        )

    @app.post("/api/dispatch")
    async def api_dispatch(body: DispatchRequest) -> JSONResponse:
        """Route a command to a device.

        Status codes: 200 when the device reports success, 502 when it
        reports failure, 404 for an unknown address, 400 for an invalid
        operation or arguments. The body is always the dispatch result
        (or an error message for 400/503).
        """
        try:
            op = Operation.parse(body.operation)
            kwargs = op.bind(body.arguments)
        except (UnknownOperationError, ValueError) as e:
            return JSONResponse(
                {"error": str(e), "valid": [o.value for o in Operation]},
                status_code=400,
            )

        try:
            mgr = _manager()
        except RuntimeError as e:
            return _unavailable(e)

        result = await asyncio.to_thread(mgr.dispatch, body.address, op, **kwargs)
        return JSONResponse(
            result.to_dict(), status_code=_DISPATCH_HTTP_STATUS[result.status]
        )

    @app.get("/api/stats")
    async def api_stats() -> JSONResponse:
        """Dispatch statistics per endpoint address (empty without stats)."""
        try:
            mgr = _manager()
        except RuntimeError as e:
            return _unavailable(e)
        if mgr.stats is None:
            return JSONResponse({"endpoints": {}, "timestamp": None})
        return JSONResponse(mgr.stats.to_dict())

    return app


def main() -> None:
    """Run the dashboard standalone on a twin fleet.

    Example:
        >>> # python -m onvif_fleet.web.app
        >>> main()
    """
    from onvif_fleet.devices import init_manager
    from onvif_fleet.drivers import get_factory
    from onvif_fleet.observability import DispatchStats

    factory = get_factory()
    init_manager(
        factory.create_discovery_driver(),
        factory.create_device_driver(),
        stats=DispatchStats(),
    ).start_discovery()
    uvicorn.run(create_app(), host="127.0.0.1", port=8080)


if __name__ == "__main__":
    main()
