"""PTY sessions, replay buffers, mode detection and the WebSocket gateway."""

from .broadcast import Broadcaster, Subscriber
from .buffer import OutputRingBuffer
from .gateway import TerminalGateway
from .modes import ModeDetector
from .sessions import DEFAULT_SESSION_ID, Session, SessionStore

__all__ = [
    "Broadcaster",
    "Subscriber",
    "OutputRingBuffer",
    "TerminalGateway",
    "ModeDetector",
    "DEFAULT_SESSION_ID",
    "Session",
    "SessionStore",
]
