"""
FastAPI server for Remote Bridge.

Provides:
- WebSocket endpoint for PTY terminal sessions (/ws/terminal)
- Session admin routes (list, inspect, kill)
- Mode state routes (read, toggle, reset)
- Status broadcast to attached clients
- Token-based authentication (optional)
"""

import logging
import os
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from fastapi import Body, FastAPI, Header, Query, Request, WebSocket
from fastapi.responses import JSONResponse

from . import __version__
from .config import Config
from .drivers import get_driver
from .state import MODE_FLAGS, NORMAL_MODE, JsonStateStore, StateStore, current_mode, modes_for
from .terminal.broadcast import Broadcaster
from .terminal.buffer import OutputRingBuffer, now_ms
from .terminal.gateway import TerminalGateway, int_param
from .terminal.modes import ModeDetector
from .terminal.pty import spawn
from .terminal.sessions import DEFAULT_SESSION_ID, SessionStore

logger = logging.getLogger(__name__)


def create_app(
    config: Config,
    state_store: Optional[StateStore] = None,
    spawner: Callable[..., Any] = spawn,
    clock: Callable[[], int] = now_ms,
) -> FastAPI:
    """
    Create FastAPI application with configured routes.

    Args:
        config: Configuration instance.
        state_store: Persisted mode/connection state; a JSON file store at
            ``config.state_file`` if omitted.
        spawner: PTY spawn function, replaced by a fake in tests.
        clock: Millisecond clock for output timestamps.

    Returns:
        Configured FastAPI app.
    """
    app = FastAPI(
        title="Remote Bridge",
        description="Relay between a mobile companion app and terminal AI assistant sessions",
        version=__version__,
    )

    driver = get_driver(config.agent_type)
    markers = driver.mode_markers()
    markers.update(config.mode_markers)

    state = state_store if state_store is not None else JsonStateStore(config.state_file)
    broadcaster = Broadcaster()
    detector = ModeDetector(state, markers)
    store = SessionStore(
        config,
        broadcaster,
        detector,
        driver,
        buffer=OutputRingBuffer(max_bytes=config.buffer_max_bytes),
        spawner=spawner,
        clock=clock,
    )

    # Store config and components on app
    app.state.config = config
    app.state.no_auth = config.no_auth
    app.state.token = None if config.no_auth else (config.token or secrets.token_urlsafe(16))
    app.state.started_at = time.time()
    app.state.state_store = state
    app.state.broadcaster = broadcaster
    app.state.sessions = store
    app.state.gateway = TerminalGateway(store, broadcaster, state)

    def unauthorized(token: Optional[str], api_key: Optional[str] = None) -> Optional[JSONResponse]:
        if app.state.no_auth or app.state.token in (token, api_key):
            return None
        return JSONResponse(
            {"error": "Unauthorized", "message": "Invalid API key"},
            status_code=401,
        )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log method, path, status and duration of every HTTP request."""
        start = time.time()
        response = await call_next(request)
        duration_ms = (time.time() - start) * 1000
        line = f"{request.method} {request.url.path} {response.status_code} {duration_ms:.0f}ms"
        if response.status_code >= 400:
            logger.warning(line)
        else:
            logger.info(line)
        return response

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.url.path}: {exc}", exc_info=exc)
        return JSONResponse(
            {"error": type(exc).__name__, "message": str(exc) or "An unexpected error occurred"},
            status_code=500,
        )

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {
            "status": "ok",
            "version": __version__,
            "uptime": time.time() - app.state.started_at,
            "agent": driver.id(),
            "capabilities": driver.capabilities(),
            "sessions": len(store),
            "clients": broadcaster.total(),
        }

    @app.get("/sessions")
    async def list_sessions(
        token: Optional[str] = Query(None),
        x_api_key: Optional[str] = Header(None),
    ):
        """List all live PTY sessions."""
        denied = unauthorized(token, x_api_key)
        if denied:
            return denied
        sessions = store.list()
        return {"success": True, "sessions": sessions, "count": len(sessions)}

    @app.get("/sessions/{session_id}")
    async def get_session(
        session_id: str,
        token: Optional[str] = Query(None),
        x_api_key: Optional[str] = Header(None),
    ):
        """Get one session's summary."""
        denied = unauthorized(token, x_api_key)
        if denied:
            return denied
        info = store.info(session_id)
        if info is None:
            return JSONResponse({"success": False, "error": "Session not found"}, status_code=404)
        return {"success": True, "session": info}

    @app.delete("/sessions/{session_id}")
    async def kill_session(
        session_id: str,
        token: Optional[str] = Query(None),
        x_api_key: Optional[str] = Header(None),
    ):
        """Kill a session. Its connections receive an exit message."""
        denied = unauthorized(token, x_api_key)
        if denied:
            return denied
        if not store.kill(session_id):
            return JSONResponse({"success": False, "error": "Session not found"}, status_code=404)
        return {"success": True, "message": "Session killed"}

    @app.get("/mode")
    async def get_mode(
        token: Optional[str] = Query(None),
        x_api_key: Optional[str] = Header(None),
    ):
        """Current assistant mode flags."""
        denied = unauthorized(token, x_api_key)
        if denied:
            return denied
        current = state.read()
        return {"success": True, "mode": current_mode(current), "modes": current["modes"]}

    @app.post("/mode/toggle")
    async def toggle_mode(
        payload: Optional[Dict[str, Any]] = Body(None),
        token: Optional[str] = Query(None),
        x_api_key: Optional[str] = Header(None),
    ):
        """
        Send the mode toggle key (Shift+Tab) to a session.

        Body: {"sessionId"?: str, "mode"?: "plan" | "autoAccept"}. When a mode
        is named, the recorded state flips between that mode and normal,
        keeping the flags mutually exclusive.
        """
        denied = unauthorized(token, x_api_key)
        if denied:
            return denied
        payload = payload or {}
        session_id = payload.get("sessionId") or DEFAULT_SESSION_ID
        mode = payload.get("mode")

        if mode is not None and mode not in MODE_FLAGS:
            return JSONResponse(
                {"success": False, "error": f"Invalid mode. Must be one of: {', '.join(MODE_FLAGS)}"},
                status_code=400,
            )
        if session_id not in store:
            return JSONResponse({"success": False, "error": "Session not found"}, status_code=404)

        success = store.toggle_mode(session_id)
        current = state.read()
        if mode is not None:
            label = NORMAL_MODE if current_mode(current) == mode else mode
            current = state.update({"modes": modes_for(label)})
            broadcaster.publish(session_id, {"type": "modeChange", "sessionId": session_id, "mode": label})
            logger.info(f"Mode toggled to {label} via HTTP (session {session_id})")

        return {
            "success": success,
            "message": "Mode toggle sent" if success else "Mode toggle failed",
            "mode": current_mode(current),
            "modes": current["modes"],
        }

    @app.delete("/mode")
    async def reset_mode(
        token: Optional[str] = Query(None),
        x_api_key: Optional[str] = Header(None),
    ):
        """Reset mode flags to defaults (all off)."""
        denied = unauthorized(token, x_api_key)
        if denied:
            return denied
        current = state.update({"modes": modes_for(NORMAL_MODE)})
        return {"success": True, "mode": NORMAL_MODE, "modes": current["modes"]}

    @app.post("/status")
    async def post_status(
        payload: Optional[Dict[str, Any]] = Body(None),
        token: Optional[str] = Query(None),
        x_api_key: Optional[str] = Header(None),
    ):
        """Broadcast an assistant status line to every attached client."""
        denied = unauthorized(token, x_api_key)
        if denied:
            return denied
        payload = payload or {}
        message = payload.get("message")
        if not message:
            return JSONResponse({"success": False, "error": "message is required"}, status_code=400)
        sent = broadcaster.publish_all({
            "type": "status",
            "message": message,
            "statusType": payload.get("type", "thinking"),
        })
        logger.info(f"Status broadcast to {sent} client(s): {message}")
        return {"success": True, "sent": sent}

    @app.delete("/status")
    async def clear_status(
        token: Optional[str] = Query(None),
        x_api_key: Optional[str] = Header(None),
    ):
        """Clear the status line on every attached client."""
        denied = unauthorized(token, x_api_key)
        if denied:
            return denied
        sent = broadcaster.publish_all({"type": "status.clear"})
        return {"success": True, "sent": sent}

    @app.websocket("/ws/terminal")
    async def terminal_websocket(
        websocket: WebSocket,
        sessionId: Optional[str] = Query(None),
        cols: Optional[str] = Query(None),
        rows: Optional[str] = Query(None),
        resumeFrom: Optional[str] = Query(None),
        clientId: Optional[str] = Query(None),
        token: Optional[str] = Query(None),
        key: Optional[str] = Query(None),
    ):
        """WebSocket endpoint for terminal I/O."""
        if not app.state.no_auth and app.state.token not in (token, key):
            logger.warning("WebSocket connection rejected: invalid token")
            await websocket.close(code=4001)
            return

        await websocket.accept()
        await app.state.gateway.serve(
            websocket,
            session_id=sessionId or DEFAULT_SESSION_ID,
            cols=int_param(cols, config.default_cols),
            rows=int_param(rows, config.default_rows),
            resume_from=int_param(resumeFrom, 0),
            client_id=clientId,
        )

    @app.on_event("startup")
    async def startup():
        """Record the running relay and print connection info."""
        url = f"http://localhost:{config.port}/"
        state.update({
            "enabled": True,
            "pid": os.getpid(),
            "url": url,
            "startedAt": datetime.now(timezone.utc).isoformat(),
        })

        print(f"\n{'=' * 60}")
        print(f"Remote Bridge v{__version__}")
        print(f"{'=' * 60}")
        print(f"Agent:     {driver.display_name()}")
        if app.state.no_auth:
            print("Auth:      DISABLED")
        else:
            print(f"Token:     {app.state.token}")
        print(f"HTTP:      {url}")
        print(f"WebSocket: ws://localhost:{config.port}/ws/terminal")
        print(f"{'=' * 60}\n")

    @app.on_event("shutdown")
    async def shutdown():
        """Kill all sessions and mark the relay stopped."""
        await store.shutdown()
        state.update({"enabled": False, "pid": None, "url": None, "connected": False, "connectedDevice": None})

    return app
