#!/usr/bin/env python3
"""
ClickTrail REST API Controller

A FastAPI app that starts and stops click monitoring, browses recorded
sessions, and streams a session's app-usage analysis as Server-Sent Events.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from clicktrail.annotator import ClickMarkerAnnotator
from clicktrail.config_manager import AVAILABLE_MODELS, ConfigManager, get_config_manager
from clicktrail.errors import (
    ClickTrailError,
    DataIntegrityError,
    InvalidTransition,
    SessionNotFound,
    StorageFailure,
)
from clicktrail.monitor import (
    ListenerFactory,
    MonitoringController,
    MonitoringState,
    MonitoringStatus,
    default_listener_factory,
)
from clicktrail.observers.context import ContextProvider, get_context_provider
from clicktrail.observers.screen import ScreenCapture, ScreenshotSource
from clicktrail.recorder import EventRecorder
from clicktrail.services.analyzer import AnalysisOptions, BatchAnalysisOrchestrator
from clicktrail.services.llm_client import LLMClient, create_llm_client
from clicktrail.storage import SessionStore

# Configure logging with user-friendly format
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s | %(message)s',
    datefmt='%H:%M:%S',
    handlers=[
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    logger.info("Starting ClickTrail API Controller...")
    yield
    # Seal the open session so no click is written after shutdown
    if runtime is not None and runtime.monitor.state == MonitoringState.RUNNING:
        logger.info("Stopping monitoring on shutdown")
        await runtime.monitor.stop()


# Initialize FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="ClickTrail API",
    description="REST API for click capture sessions and LLM app-usage analysis",
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# === Runtime wiring ===

class Runtime:
    """Everything the endpoints share: config, store, monitor, LLM client factory."""

    def __init__(
        self,
        config: ConfigManager,
        screen: Optional[ScreenshotSource] = None,
        context: Optional[ContextProvider] = None,
        listener_factory: ListenerFactory = default_listener_factory,
        client_factory: Optional[Callable[[], LLMClient]] = None,
    ):
        self.config = config
        self.store = SessionStore(config.get_data_dir(), config.get_machine_id())

        capture = config.get_section("capture")
        self.annotator = ClickMarkerAnnotator(enabled=config.get_add_click_marker())
        self.recorder = EventRecorder(
            self.store,
            screen or ScreenCapture(),
            context or get_context_provider(),
            self.annotator,
            interval=capture["stability_interval_ms"] / 1000.0,
            timeout=capture["stability_timeout_ms"] / 1000.0,
            window=int(capture["stability_window"]),
        )
        self.monitor = MonitoringController(self.store, self.recorder, listener_factory)
        self.client_factory = client_factory or (lambda: create_llm_client(self.config))

    def orchestrator(self) -> BatchAnalysisOrchestrator:
        return BatchAnalysisOrchestrator(
            self.store,
            self.client_factory,
            AnalysisOptions.from_config(self.config),
        )


runtime: Optional[Runtime] = None


def get_runtime() -> Runtime:
    """Get the global runtime, building it from the user config on first use."""
    global runtime
    if runtime is None:
        logger.info("Initializing ClickTrail runtime")
        runtime = Runtime(get_config_manager())
    return runtime


# === Pydantic Models ===

class HealthResponse(BaseModel):
    """Response model for health check."""
    status: str = Field(..., description="Service status")
    timestamp: datetime = Field(..., description="Current timestamp")
    monitoring: str = Field(..., description="Monitoring state")
    version: str = Field(..., description="API version")


class SessionResponse(BaseModel):
    """Response model for one recorded session."""
    id: str = Field(..., description="Session folder name")
    start_time: datetime = Field(..., description="When monitoring started")
    event_count: int = Field(..., description="Number of stored click events")
    display_name: str = Field(..., description="Human-readable label")
    active: bool = Field(False, description="Whether the session is still recording")


class EventResponse(BaseModel):
    """Response model for one stored click event."""
    key: str = Field(..., description="Shared filename prefix of the event's files")
    event: Dict[str, Any] = Field(..., description="Click event metadata")
    before_path: Optional[str] = Field(None, description="Before-click screenshot")
    after_path: Optional[str] = Field(None, description="After-click screenshot")


class VerifyResponse(BaseModel):
    session_id: str
    event_count: int
    valid: bool = True


class SettingsUpdate(BaseModel):
    """Request model for settings changes; omitted fields stay unchanged."""
    provider: Optional[str] = Field(None, description="LLM provider (openai, huggingface)")
    model: Optional[str] = Field(None, description="Model id for the selected provider")
    api_key: Optional[str] = Field(None, description="API key for the selected provider")
    add_click_marker: Optional[bool] = Field(None, description="Draw a marker on before screenshots")
    send_all_screenshots: Optional[bool] = Field(None, description="Also send after screenshots to the LLM")


class ErrorResponse(BaseModel):
    """Response model for errors."""
    error: str = Field(..., description="Error message")
    detail: Optional[str] = Field(None, description="Additional error details")
    timestamp: datetime = Field(..., description="Error timestamp")


# === API Endpoints ===

@app.get("/health", response_model=HealthResponse)
async def health_check(rt: Runtime = Depends(get_runtime)):
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(),
        monitoring=rt.monitor.state.value,
        version=VERSION,
    )


@app.get("/monitoring/status", response_model=MonitoringStatus)
async def monitoring_status(rt: Runtime = Depends(get_runtime)):
    return rt.monitor.status()


@app.post("/monitoring/start", response_model=MonitoringStatus)
async def start_monitoring(rt: Runtime = Depends(get_runtime)):
    """Open a new session and start recording clicks."""
    try:
        return await rt.monitor.start()
    except InvalidTransition as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except StorageFailure as e:
        logger.error(f"Could not start monitoring: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


@app.post("/monitoring/stop", response_model=MonitoringStatus)
async def stop_monitoring(rt: Runtime = Depends(get_runtime)):
    """Stop recording and seal the current session."""
    try:
        return await rt.monitor.stop()
    except InvalidTransition as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@app.get("/sessions", response_model=List[SessionResponse])
async def list_sessions(rt: Runtime = Depends(get_runtime)):
    """All recorded sessions, newest first."""
    active = rt.store.active_session_id
    return [
        SessionResponse(
            id=info.id,
            start_time=info.start_time,
            event_count=info.event_count,
            display_name=info.display_name,
            active=info.id == active,
        )
        for info in rt.store.enumerate_sessions()
    ]


@app.get("/sessions/{session_id}/events", response_model=List[EventResponse])
async def list_session_events(session_id: str, rt: Runtime = Depends(get_runtime)):
    """Events of one session in click order."""
    try:
        records = rt.store.list_events(session_id)
    except SessionNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except DataIntegrityError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    return [
        EventResponse(
            key=record.key,
            event=record.event.model_dump(mode="json", by_alias=True),
            before_path=str(record.before_path) if record.before_path else None,
            after_path=str(record.after_path) if record.after_path else None,
        )
        for record in records
    ]


@app.get("/sessions/{session_id}/verify", response_model=VerifyResponse)
async def verify_session(session_id: str, rt: Runtime = Depends(get_runtime)):
    """Check that every stored event has both of its screenshots."""
    try:
        count = rt.store.verify_session(session_id)
    except SessionNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except DataIntegrityError as e:
        logger.warning(f"Integrity check failed for {session_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": str(e), "missing": e.missing},
        )
    return VerifyResponse(session_id=session_id, event_count=count)


@app.post("/sessions/{session_id}/analyze")
async def analyze_session(session_id: str, request: Request, rt: Runtime = Depends(get_runtime)):
    """Stream the analysis of a session via Server-Sent Events.

    Events are ``progress``, ``log`` and one terminal ``done``, ``failed``
    or ``cancelled``. Disconnecting cancels the analysis.
    """
    try:
        rt.store.session_path(session_id)
    except SessionNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if rt.store.is_open(session_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Session is still recording; stop monitoring before analyzing it",
        )

    orchestrator = rt.orchestrator()
    logger.info(f"Starting analysis of {session_id}")

    async def event_generator():
        events = orchestrator.stream(session_id)
        try:
            async for event in events:
                if await request.is_disconnected():
                    logger.info(f"Client disconnected, cancelling analysis of {session_id}")
                    break
                yield event.to_sse_format()
        finally:
            await events.aclose()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@app.get("/settings", response_model=dict)
async def get_settings(rt: Runtime = Depends(get_runtime)):
    settings = rt.config.get_settings()
    settings["providers"] = {name: models for name, models in AVAILABLE_MODELS.items()}
    return settings


@app.put("/settings", response_model=dict)
async def update_settings(update: SettingsUpdate, rt: Runtime = Depends(get_runtime)):
    """Update provider, model, API key and capture toggles."""
    config = rt.config
    try:
        if update.provider is not None:
            config.set_provider(update.provider)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    provider = config.get_provider()
    if update.model is not None:
        config.set_model(update.model, provider)
    if update.api_key is not None:
        config.set_api_key(provider, update.api_key)
    if update.add_click_marker is not None:
        config.set_add_click_marker(update.add_click_marker)
        rt.annotator.enabled = update.add_click_marker
    if update.send_all_screenshots is not None:
        config.update_section("analysis", {"send_all_screenshots": update.send_all_screenshots})

    logger.info(f"Settings updated: {update.model_dump(exclude_none=True, exclude={'api_key'})}")
    return config.get_settings()


@app.exception_handler(ClickTrailError)
async def clicktrail_exception_handler(request, exc):
    """Errors not mapped by an endpoint."""
    logger.error(f"Unhandled {type(exc).__name__}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(
            error=type(exc).__name__,
            detail=str(exc),
            timestamp=datetime.now()
        ).model_dump(mode="json")
    )


# === Main Entry Point ===

def run_server(host: str = "127.0.0.1", port: int = 8000, reload: bool = False):
    """Run the FastAPI server."""
    logger.info("=" * 60)
    logger.info(" ClickTrail Server Starting Up")
    logger.info("=" * 60)
    logger.info(f" Server: {host}:{port}")
    logger.info(f" Reload mode: {'Enabled' if reload else 'Disabled'}")
    logger.info("=" * 60)

    uvicorn.run(
        "controller:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info"
    )


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="ClickTrail REST API Controller")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")

    args = parser.parse_args()
    run_server(host=args.host, port=args.port, reload=args.reload)
