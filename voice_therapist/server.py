"""
server.py — Voice Therapist · FastAPI Control Plane
===================================================
HTTP/WebSocket front for a single TurnController running on this machine's
microphone and speakers.  A browser or kiosk UI drives the session here and
renders the live event stream.

Endpoints
---------
  GET  /health                  Service liveness
  GET  /session                 State, status text, remaining time, history
  POST /session/start           Start a session (403 limit reached, 409 active)
  POST /session/end             End the session and flush it
  POST /session/stop-listening  Finish the current utterance now
  PUT  /session/volume          Set output volume (0 mutes)
  GET  /config                  Current TherapistConfig
  PUT  /config                  Merge-patch + persist config (409 while active)
  WS   /ws/events               Controller events and server log records

Run with:
    uvicorn voice_therapist.server:app
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Callable, Optional, Set

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from voice_therapist.config import TherapistConfig
from voice_therapist.controller import TurnController
from voice_therapist.errors import SessionAlreadyActive, SessionLimitReached

load_dotenv()

# ---------------------------------------------------------------------------
# Event broadcaster, needed by the logging handler below
# ---------------------------------------------------------------------------

class EventBroadcaster:
    """Fan-out hub for controller events and log records to WebSocket clients."""

    HISTORY = 500

    def __init__(self) -> None:
        self._clients: Set[WebSocket] = set()
        self._history: list[dict] = []  # replayed to late-joiners

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        self._clients.add(ws)
        for event in self._history[-self.HISTORY:]:
            try:
                await ws.send_text(json.dumps(event))
            except (WebSocketDisconnect, RuntimeError):
                break

    def disconnect(self, ws: WebSocket) -> None:
        self._clients.discard(ws)

    @property
    def history(self) -> list[dict]:
        return list(self._history)

    async def broadcast(self, event: dict) -> None:
        self._history.append(event)
        if len(self._history) > self.HISTORY:
            self._history = self._history[-self.HISTORY:]
        dead: Set[WebSocket] = set()
        for ws in list(self._clients):
            try:
                await ws.send_text(json.dumps(event))
            except (WebSocketDisconnect, RuntimeError):
                dead.add(ws)
        self._clients -= dead

    def publish(self, event: dict) -> None:
        """Schedule a broadcast from sync code running on the event loop."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # no event loop yet during startup
        loop.create_task(self.broadcast(event))


class _WsBroadcastHandler(logging.Handler):
    """Logging handler that forwards every log record to all WS clients."""

    def __init__(self, broadcaster: EventBroadcaster) -> None:
        super().__init__()
        self._broadcaster = broadcaster

    def emit(self, record: logging.LogRecord) -> None:
        self._broadcaster.publish({
            "source": "log",
            "level":  record.levelname,
            "logger": record.name,
            "msg":    self.format(record),
            "ts":     record.created,
        })


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
LOG_FORMAT = "%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s"

logging.basicConfig(
    level=logging.DEBUG if os.getenv("VOICE_DEBUG") else logging.INFO,
    format=LOG_FORMAT,
    datefmt="%H:%M:%S",
)
log = logging.getLogger("voice_therapist.server")

CONFIG_PATH = os.getenv("THERAPIST_CONFIG", "therapist_config.json")

ControllerFactory = Callable[[TherapistConfig], TurnController]


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class StartSessionRequest(BaseModel):
    user_id: str = Field(default="local", min_length=1, max_length=128)


class VolumeRequest(BaseModel):
    volume: float = Field(ge=0.0, le=1.0)


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def _default_factory(config: TherapistConfig) -> TurnController:
    from voice_therapist.bot import build_controller
    return build_controller(config)


def create_app(
    controller_factory: Optional[ControllerFactory] = None,
    config_path: str = CONFIG_PATH,
) -> FastAPI:
    factory = controller_factory or _default_factory
    broadcaster = EventBroadcaster()

    def _forward(event: dict) -> None:
        broadcaster.publish({"source": "controller", "ts": time.time(), **event})

    def _install(config: TherapistConfig) -> TurnController:
        controller = factory(config)
        controller.add_listener(_forward)
        app.state.config = config
        app.state.controller = controller
        return controller

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        ws_handler = _WsBroadcastHandler(broadcaster)
        ws_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S"))
        logging.root.addHandler(ws_handler)
        _install(TherapistConfig.load(config_path))
        log.info("event=server_start config=%s", config_path)
        try:
            yield
        finally:
            log.info("event=server_shutdown")
            await app.state.controller.aclose()
            logging.root.removeHandler(ws_handler)
            log.info("event=server_stopped")

    app = FastAPI(
        title="Voice Therapist",
        version="1.0.0",
        description="Turn-taking voice therapy session control plane",
        lifespan=_lifespan,
    )
    app.state.broadcaster = broadcaster

    # Allow file:// and any local origin to reach the API (dev only)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _controller() -> TurnController:
        return app.state.controller

    # -----------------------------------------------------------------------
    # Endpoints
    # -----------------------------------------------------------------------

    @app.get("/health")
    async def health() -> JSONResponse:
        """Liveness probe."""
        controller = _controller()
        return JSONResponse({
            "status":         "ok",
            "session_active": controller.is_active,
            "state":          controller.state.value,
        })

    @app.get("/session")
    async def get_session() -> JSONResponse:
        return JSONResponse(_controller().snapshot())

    @app.post("/session/start", status_code=status.HTTP_202_ACCEPTED)
    async def start_session(body: Optional[StartSessionRequest] = None) -> JSONResponse:
        body = body or StartSessionRequest()
        controller = _controller()
        try:
            await controller.start_session(body.user_id)
        except SessionLimitReached as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
        except SessionAlreadyActive as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
        log.info("event=session_started user_id=%s", body.user_id)
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content={"status": "started", **controller.snapshot()},
        )

    @app.post("/session/end")
    async def end_session() -> JSONResponse:
        controller = _controller()
        if not controller.is_active:
            return JSONResponse({"status": "idle", "record_id": None})
        record_id = await controller.end_session(reason="user")
        return JSONResponse({"status": "ended", "record_id": record_id})

    @app.post("/session/stop-listening", status_code=status.HTTP_202_ACCEPTED)
    async def stop_listening() -> JSONResponse:
        controller = _controller()
        controller.stop_listening()
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content={"status": "ok", "state": controller.state.value},
        )

    @app.put("/session/volume")
    async def set_volume(body: VolumeRequest) -> JSONResponse:
        _controller().set_volume(body.volume)
        return JSONResponse({"volume": body.volume})

    @app.get("/config")
    async def get_config() -> JSONResponse:
        return JSONResponse(app.state.config.model_dump(mode="json"))

    @app.put("/config")
    async def update_config(patch: dict) -> JSONResponse:
        """Merge `patch` over the current config, persist it, rebuild the controller."""
        old = _controller()
        if old.is_active:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Config cannot change while a session is running.",
            )
        try:
            new_config = app.state.config.merge_patch(patch)
        except ValidationError as exc:
            raise HTTPException(
                status_code=422,
                detail=json.loads(exc.json()),
            ) from exc

        new_config.save(config_path)
        await old.aclose()
        _install(new_config)
        log.info("event=config_updated keys=%s", ",".join(sorted(patch)))
        return JSONResponse(new_config.model_dump(mode="json"))

    @app.websocket("/ws/events")
    async def ws_events(ws: WebSocket) -> None:
        """
        Real-time event stream for the UI.  Every message is a JSON object:
        {
          "source": "controller" | "log",
          "event":  "state" | "turn" | "speech" | "time_warning" | "error"
                    | "volume" | "session_started" | "session_ended",  # controller only
          "state":  "IDLE" | "LISTENING" | "PROCESSING" | "SPEAKING",  # controller only
          "level":  "INFO" | "WARNING" | ...,                           # log only
          "msg":    "<formatted line>",                                 # log only
          "ts":     <unix float>
        }
        """
        await broadcaster.connect(ws)
        log.info("event=ws_client_connected remote=%s", ws.client)
        try:
            while True:
                # Keep the connection alive; we only send, never receive
                await ws.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            broadcaster.disconnect(ws)
            log.info("event=ws_client_disconnected remote=%s", ws.client)

    return app


app = create_app()


def run() -> None:
    uvicorn.run(
        "voice_therapist.server:app",
        host=os.getenv("THERAPIST_HOST", "127.0.0.1"),
        port=int(os.getenv("THERAPIST_PORT", "8000")),
    )
