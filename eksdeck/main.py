#!/usr/bin/env python3
"""
eksdeck - Main Entry Point

This is the thin orchestration layer that:
1. Loads configuration
2. Builds the application context
3. Serves the HTTP API and the /ws streaming endpoint

All business logic is in the modules, following black box principles.
"""

import asyncio
import logging
import logging.config as log_config
import os
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from eksdeck.config.provider import ConfigProvider, EnvConfigProvider
from eksdeck.context import AppContext, build_context
from eksdeck.logging_config import get_logging_config
from eksdeck.modules.api import (
    CreateClusterCommand,
    ErrorFrame,
    HealthResponse,
    MalformedCommand,
    StreamType,
    parse_cluster_command,
)
from eksdeck.modules.api.routes import create_api_router
from eksdeck.modules.config import get_config
from eksdeck.modules.executor import CLIOutputError
from eksdeck.modules.session import PodLogStream, ProvisioningSession, WebSocketChannel

# Get configuration
config = get_config()

# Configure logging with health check suppression
log_config.dictConfig(get_logging_config(config.get("log_level")))
logger = logging.getLogger(__name__)

# Configuration provider (centralized config access)
config_provider: ConfigProvider = EnvConfigProvider()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifecycle - build the context and clean up children.
    """
    logger.info("Starting eksdeck API...")
    if getattr(app.state, "context", None) is None:
        app.state.context = build_context(config_provider)
    logger.info("eksdeck API started successfully")

    yield

    logger.info("Shutting down eksdeck API...")
    await app.state.context.shutdown()
    logger.info("eksdeck API shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="eksdeck API",
    description="eksdeck - EKS cluster lifecycle and Kubernetes resource management",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(create_api_router())


@app.get("/healthz", response_model=HealthResponse)
async def healthz():
    """
    Minimal health check endpoint for readiness/liveness probes.
    """
    return HealthResponse()


async def _handle_cluster_stream(ctx: AppContext, websocket: WebSocket, channel: WebSocketChannel):
    """
    Serve one eks-cli-stream connection.

    The first create/delete message starts an orchestration task tracked by
    the context; later valid commands are ignored with a warning frame. A
    malformed message at any point ends the session with an error frame.
    """
    session = ProvisioningSession(channel, close_grace=ctx.provisioning_settings.close_grace)
    logger.info(f"WebSocket: client connected for EKS CLI stream (session {session.session_id})")
    try:
        while True:
            raw = await websocket.receive_text()
            if session.terminated:
                continue

            try:
                command = parse_cluster_command(raw)
            except MalformedCommand as e:
                # Applies the current stage's disconnect policy to a running task
                await session.reject(str(e))
                break

            if session.busy:
                logger.warning(
                    f"Session {session.session_id}: ignoring command while "
                    f"{session.state.value} is in progress"
                )
                await session.log(
                    "\x1b[33mA cluster operation is already running on this connection; "
                    "ignoring the new request.\x1b[0m\n"
                )
                continue

            if isinstance(command, CreateClusterCommand):
                work = ctx.provisioner.create_cluster(session, command.payload)
            else:
                work = ctx.teardown.delete_cluster(session, command.payload)
            ctx.track_task(session.start(command, work))
    except WebSocketDisconnect:
        logger.info(f"WebSocket: client disconnected from EKS CLI stream (session {session.session_id})")
    finally:
        session.disconnect()


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass


async def _handle_log_stream(
    ctx: AppContext,
    websocket: WebSocket,
    channel: WebSocketChannel,
    pod_name: Optional[str],
    namespace: Optional[str],
):
    stream = PodLogStream(ctx.executor, channel)
    streamer = asyncio.create_task(stream.run(pod_name, namespace))
    watcher = asyncio.create_task(_wait_for_disconnect(websocket))
    try:
        await asyncio.wait({streamer, watcher}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stream.disconnect()
        for task in (streamer, watcher):
            task.cancel()
        await asyncio.gather(streamer, watcher, return_exceptions=True)
    logger.info(f"WebSocket: kube logs stream for {pod_name} closed")


@app.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    stream_type: Optional[str] = Query(None, alias="type"),
    pname: Optional[str] = Query(None),
    namespace: Optional[str] = Query(None),
):
    """
    Streaming endpoint.

    ?type=eks-cli-stream   cluster create/delete frames
    ?type=kube-logs        raw `kubectl logs -f` text for pname/namespace
    """
    await websocket.accept()
    ctx: AppContext = websocket.app.state.context
    channel = WebSocketChannel(websocket)

    if stream_type == StreamType.EKS_CLI_STREAM.value:
        await _handle_cluster_stream(ctx, websocket, channel)
    elif stream_type == StreamType.KUBE_LOGS.value:
        await _handle_log_stream(ctx, websocket, channel, pname, namespace)
    else:
        logger.warning(f"WebSocket: invalid connection type {stream_type!r}")
        await channel.send_frame(ErrorFrame(message="Invalid WebSocket connection type."))
        await channel.close()


# Serve the browser UI when one is provided
_static_dir = config.get("static_dir")
if _static_dir and os.path.isdir(_static_dir):
    app.mount("/", StaticFiles(directory=_static_dir, html=True), name="static")


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Handle malformed request bodies and query parameters."""
    details = "; ".join(
        f"{'.'.join(str(p) for p in error.get('loc', ()))}: {error.get('msg')}"
        for error in exc.errors()
    )
    logger.error(f"Request validation error on {request.url.path}: {details}")
    return JSONResponse(status_code=400, content={"error": "Invalid request.", "details": details})


@app.exception_handler(CLIOutputError)
async def cli_output_error_handler(request: Request, exc: CLIOutputError):
    """Handle CLI output that could not be parsed."""
    logger.error(f"Unparseable CLI output on {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"error": str(exc), "details": exc.raw})


@app.exception_handler(ValueError)
async def validation_error_handler(request: Request, exc: ValueError):
    """Handle validation errors."""
    logger.error(f"Validation error: {exc}")
    return JSONResponse(status_code=400, content={"error": str(exc)})


def run() -> None:
    # Use dict config for logging, not file path
    uvicorn.run(
        "eksdeck.main:app",
        host=config.get("host"),
        port=config.get("port"),
        log_level=config.get("log_level").lower(),
        reload=config.get("debug"),
        log_config=get_logging_config(config.get("log_level")),
    )


if __name__ == "__main__":
    run()
