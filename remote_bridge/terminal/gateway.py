"""
Terminal gateway: the WebSocket protocol in front of the session store.

A connection attaches to exactly one session for its whole lifetime. All
outbound traffic for a connection, replies and broadcast events alike, goes
through that connection's Subscriber queue and is written by a single sender
task, so the order seen by the client is the order of delivery.
"""

import asyncio
import json
import logging
import math
import secrets
from typing import Any, Callable, Dict, Optional

from fastapi import WebSocket, WebSocketDisconnect

from ..errors import MalformedMessage, SpawnError
from ..state import StateStore
from .broadcast import Broadcaster, Subscriber
from .buffer import now_ms
from .sessions import DEFAULT_SESSION_ID, Session, SessionStore

logger = logging.getLogger(__name__)

# Older clients namespace every message type, e.g. "terminal.input".
LEGACY_PREFIX = "terminal."

# Terminal dimensions are unsigned shorts in the kernel winsize struct.
MAX_DIMENSION = 65535


def make_message(msg_type: str, **fields: Any) -> Dict[str, Any]:
    message = {"type": msg_type}
    message.update(fields)
    message["timestamp"] = now_ms()
    return message


def parse_message(raw: str) -> Dict[str, Any]:
    """Decode a text frame into a message dict with a string ``type``."""
    try:
        msg = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        raise MalformedMessage("Invalid message format. Expected JSON.") from e
    if not isinstance(msg, dict):
        raise MalformedMessage("Invalid message format. Expected a JSON object.")
    msg_type = msg.get("type")
    if not isinstance(msg_type, str) or not msg_type:
        raise MalformedMessage("Message is missing required field 'type'")
    return msg


def _positive_int(msg: Dict[str, Any], name: str) -> int:
    value = msg.get(name)
    if (
        isinstance(value, bool)
        or not isinstance(value, (int, float))
        or not 1 <= value <= MAX_DIMENSION
    ):
        raise MalformedMessage(
            f"'{msg['type']}' requires an integer '{name}' between 1 and {MAX_DIMENSION}"
        )
    return int(value)


def _ended_error(session: Session) -> Dict[str, Any]:
    return make_message(
        "error",
        sessionId=session.id,
        message=f"Session {session.id} has ended. Reconnect to attach to a new session.",
    )


def int_param(value: Optional[str], default: int) -> int:
    """Lenient query-parameter integer: anything unparsable means default."""
    try:
        parsed = int(value) if value is not None else default
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


class TerminalGateway:
    """
    Maps WebSocket connections onto sessions and dispatches their messages.

    A connection stays bound to the Session object it attached to. Once that
    session has exited, the connection gets ``error`` replies, even if a new
    session has since been created under the same id.
    """

    def __init__(self, store: SessionStore, broadcaster: Broadcaster, state: Optional[StateStore] = None):
        self.store = store
        self.broadcaster = broadcaster
        self.state = state
        self._handlers: Dict[str, Callable[[str, Dict[str, Any]], Optional[Dict[str, Any]]]] = {
            "input": self._handle_input,
            "resize": self._handle_resize,
            "key": self._handle_key,
            "toggleMode": self._handle_toggle_mode,
            "ping": self._handle_ping,
            "getSession": self._handle_get_session,
            "getBuffer": self._handle_get_buffer,
        }

    # -- Connection lifecycle ----------------------------------------------

    def attach(
        self,
        subscriber: Subscriber,
        session_id: str = DEFAULT_SESSION_ID,
        cols: Optional[int] = None,
        rows: Optional[int] = None,
        resume_from: int = 0,
    ) -> Session:
        """
        Attach a subscriber to a session, creating the session if needed.

        Runs without yielding to the event loop: the ``connected`` message and
        the optional backlog are queued before any live output can be.

        Raises:
            SpawnError: a new session could not be started.
        """
        session = self.store.get_or_create(session_id, cols, rows)
        self.broadcaster.subscribe(session_id, subscriber)

        subscriber.deliver(make_message(
            "connected",
            sessionId=session_id,
            clientId=subscriber.client_id,
            session=self.store.info(session_id),
        ))

        if resume_from > 0:
            subscriber.deliver(make_message(
                "buffer",
                sessionId=session_id,
                data=self.store.buffer.since(session_id, resume_from),
                since=resume_from,
            ))
        return session

    async def serve(
        self,
        websocket: WebSocket,
        session_id: str = DEFAULT_SESSION_ID,
        cols: Optional[int] = None,
        rows: Optional[int] = None,
        resume_from: int = 0,
        client_id: Optional[str] = None,
    ) -> None:
        """Run one accepted connection until the client goes away."""
        subscriber = Subscriber(client_id or secrets.token_hex(8))
        logger.info(f"Terminal WebSocket connected: client={subscriber.client_id}, session={session_id}")

        try:
            session = self.attach(subscriber, session_id, cols, rows, resume_from)
        except SpawnError as e:
            logger.error(f"Failed to create session {session_id}: {e}")
            await websocket.send_json(make_message("error", message=str(e)))
            await websocket.close(code=1011)
            return

        self._record_connection(subscriber.client_id)
        sender = asyncio.create_task(self._send_loop(websocket, subscriber))
        try:
            await self._receive_loop(websocket, session, subscriber)
        except WebSocketDisconnect:
            pass
        finally:
            self.broadcaster.unsubscribe(session_id, subscriber)
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass
            self._record_disconnect()
            logger.info(f"Terminal WebSocket disconnected: client={subscriber.client_id}")

    def _record_connection(self, client_id: str) -> None:
        if self.state is not None:
            self.state.update({"connected": True, "connectedDevice": client_id})

    def _record_disconnect(self) -> None:
        if self.state is not None and self.broadcaster.total() == 0:
            self.state.update({"connected": False, "connectedDevice": None})

    async def _send_loop(self, websocket: WebSocket, subscriber: Subscriber) -> None:
        while True:
            message = await subscriber.queue.get()
            try:
                await websocket.send_json(message)
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.debug(f"Stopped sending to client {subscriber.client_id}: {e}")
                return

    async def _receive_loop(self, websocket: WebSocket, session: Session, subscriber: Subscriber) -> None:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return

            if message.get("bytes") is not None:
                if self.is_current(session):
                    self.store.write(session.id, message["bytes"])
                else:
                    subscriber.deliver(_ended_error(session))
                continue

            text = message.get("text")
            if text is None:
                continue

            try:
                reply = self.dispatch(session, text)
            except MalformedMessage as e:
                logger.warning(f"Malformed message from client {subscriber.client_id}: {e}")
                reply = make_message("error", message=str(e))

            if reply is not None:
                subscriber.deliver(reply)

    # -- Dispatch ----------------------------------------------------------

    def is_current(self, session: Session) -> bool:
        """True while ``session`` is still the live session for its id."""
        return self.store.get(session.id) is session

    def dispatch(self, session: Session, raw: str) -> Optional[Dict[str, Any]]:
        """
        Handle one inbound text frame and return the reply, if any.

        Raises:
            MalformedMessage: the frame is not a valid message.
        """
        msg = parse_message(raw)
        msg_type = msg["type"]
        name = msg_type[len(LEGACY_PREFIX):] if msg_type.startswith(LEGACY_PREFIX) else msg_type

        handler = self._handlers.get(name)
        if handler is None:
            logger.warning(f"Unknown terminal message type: {msg_type}")
            return make_message("error", message=f"Unknown message type: {msg_type}")
        if name != "ping" and not self.is_current(session):
            return _ended_error(session)
        return handler(session.id, msg)

    def _handle_input(self, session_id: str, msg: Dict[str, Any]) -> None:
        data = msg.get("data")
        if not isinstance(data, str):
            raise MalformedMessage("'input' requires a string 'data'")
        if data:
            self.store.write(session_id, data)
        return None

    def _handle_resize(self, session_id: str, msg: Dict[str, Any]) -> Dict[str, Any]:
        cols = _positive_int(msg, "cols")
        rows = _positive_int(msg, "rows")
        self.store.resize(session_id, cols, rows)
        return make_message("resized", sessionId=session_id, cols=cols, rows=rows)

    def _handle_key(self, session_id: str, msg: Dict[str, Any]) -> Dict[str, Any]:
        key = msg.get("key")
        if not isinstance(key, str) or not key:
            raise MalformedMessage("'key' requires a string 'key'")
        success = self.store.send_key(session_id, key)
        return make_message("keyAck", key=key, success=success)

    def _handle_toggle_mode(self, session_id: str, msg: Dict[str, Any]) -> Dict[str, Any]:
        return make_message("modeToggled", success=self.store.toggle_mode(session_id))

    def _handle_ping(self, session_id: str, msg: Dict[str, Any]) -> Dict[str, Any]:
        return make_message("pong")

    def _handle_get_session(self, session_id: str, msg: Dict[str, Any]) -> Dict[str, Any]:
        return make_message("sessionInfo", session=self.store.info(session_id))

    def _handle_get_buffer(self, session_id: str, msg: Dict[str, Any]) -> Dict[str, Any]:
        since = msg.get("since", 0)
        if since is None:
            since = 0
        if isinstance(since, bool) or not isinstance(since, (int, float)):
            raise MalformedMessage("'getBuffer' requires a numeric 'since'")
        if isinstance(since, float) and not math.isfinite(since):
            raise MalformedMessage("'getBuffer' requires a numeric 'since'")
        return make_message(
            "buffer",
            sessionId=session_id,
            data=self.store.buffer.since(session_id, since),
            since=since,
        )
