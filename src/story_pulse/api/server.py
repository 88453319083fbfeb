"""FastAPI application — local bridge between the biofeedback core and the UI.

The game shell talks to this process instead of owning the device:

- REST endpoints for status, settings and the current emotion snapshot
- ``/ws`` pushes every coordinator event (``heartrate``, ``gesture``,
  ``emotion``, ``shift``, ``connect``, ``disconnect``, ``error``)
- ``/ingest`` injects raw device frames (simulators, recorded sessions)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import Body, FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect

from story_pulse import __version__
from story_pulse.api.schemas import ConnectRequest, EmotionResponse, IngestResponse, SettingsUpdate
from story_pulse.api.websocket import ConnectionManager
from story_pulse.device.coordinator import DeviceConnectionCoordinator
from story_pulse.models import DeviceSettings, DeviceStatus, HeartRateSample
from story_pulse.storage.database import dispose_engine, init_db
from story_pulse.storage.settings_store import SqlSettingsStore

logger = structlog.get_logger(__name__)

# ── Shared state (initialised in lifespan) ────────────────────

_coordinator: DeviceConnectionCoordinator | None = None
ws_manager = ConnectionManager()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle hooks."""
    global _coordinator

    await init_db()
    logger.info("server.db_ready")

    _coordinator = DeviceConnectionCoordinator(SqlSettingsStore())
    ws_manager.attach(_coordinator.bus)
    await _coordinator.start()
    logger.info("server.started", enabled=_coordinator.enabled)

    yield  # ← application runs

    await _coordinator.close()
    _coordinator = None
    await dispose_engine()
    logger.info("server.stopped")


app = FastAPI(
    title="Story Pulse",
    description="Heart-rate and gesture feedback bridge for interactive fiction.",
    version=__version__,
    lifespan=lifespan,
)


def _require() -> DeviceConnectionCoordinator:
    if _coordinator is None:
        raise HTTPException(503, "Coordinator not ready.")
    return _coordinator


# ── Health ────────────────────────────────────────────────────

@app.get("/health", tags=["system"])
async def health():
    return {
        "status": "ok",
        "device": _coordinator.state.value if _coordinator else None,
        "ws_clients": ws_manager.active_count,
    }


@app.get("/status", response_model=DeviceStatus, tags=["device"])
async def status():
    return _require().status()


# ── Device control ────────────────────────────────────────────

@app.put("/settings", response_model=DeviceSettings, tags=["device"])
async def update_settings(req: SettingsUpdate):
    coordinator = _require()
    changes = req.model_dump(exclude_unset=True)
    try:
        return await coordinator.update_settings(**changes)
    except ValueError as exc:
        raise HTTPException(422, str(exc)) from exc


@app.post("/connect", response_model=DeviceStatus, tags=["device"])
async def connect(req: ConnectRequest):
    coordinator = _require()
    try:
        await coordinator.connect(req.connection_type, req.address, baud_rate=req.baud_rate)
    except ValueError as exc:
        raise HTTPException(422, str(exc)) from exc
    return coordinator.status()


@app.post("/disconnect", response_model=DeviceStatus, tags=["device"])
async def disconnect():
    coordinator = _require()
    await coordinator.disconnect()
    return coordinator.status()


@app.post("/ingest", status_code=202, response_model=IngestResponse, tags=["device"])
async def ingest(frame: dict[str, Any] = Body(...)):
    """Route one raw device frame exactly as if it came from the transport."""
    accepted = _require().dispatch(frame)
    if not accepted:
        raise HTTPException(422, "Frame could not be decoded.")
    return IngestResponse(accepted=True, detail={"type": frame.get("type")})


@app.post("/session/reset", tags=["device"])
async def reset_session():
    _require().reset_session()
    return {"reset": True}


# ── Analysis ──────────────────────────────────────────────────

@app.get("/emotion", response_model=EmotionResponse, tags=["analysis"])
async def emotion():
    coordinator = _require()
    analyzer = coordinator.analyzer
    return EmotionResponse(
        state=analyzer.current_emotion,
        summary=analyzer.emotion_summary(),
        suggestion=analyzer.content_suggestion(),
        shift=analyzer.detect_emotion_shift(),
        trend=coordinator.heart_rate_trend(),
        engagement=coordinator.engagement_snapshot(),
    )


@app.get("/emotion/history", response_model=list[HeartRateSample], tags=["analysis"])
async def heart_rate_history():
    return _require().analyzer.history


@app.get("/events/recent", tags=["system"])
async def recent_events(limit: int = Query(50, ge=1, le=200)):
    return {
        "stats": ws_manager.stats.snapshot(),
        "events": ws_manager.get_recent_messages(limit),
    }


# ── WebSocket (real-time event feed) ─────────────────────────

@app.websocket("/ws")
async def ws_events(ws: WebSocket, channel: str = Query("all")):
    """Real-time event feed.

    ``/ws?channel=gesture`` receives only gesture events; the default
    ``all`` receives everything.
    """
    await ws_manager.connect(ws, channel)
    try:
        while True:
            # Clients are read-only consumers; inbound text keeps the socket alive.
            await ws.receive_text()
    except WebSocketDisconnect:
        await ws_manager.disconnect(ws)
