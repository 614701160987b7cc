"""Per-session ring buffer of PTY output used for reconnect replay."""

import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, Optional


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class OutputChunk:
    data: str
    timestamp: int  # epoch milliseconds
    size: int  # UTF-8 byte length of data


class _SessionBuffer:
    __slots__ = ("chunks", "total")

    def __init__(self):
        self.chunks: Deque[OutputChunk] = deque()
        self.total = 0


class OutputRingBuffer:
    """
    Bounded, time-ordered store of output chunks, keyed by session id.

    Each session keeps at most ``max_bytes`` of UTF-8 encoded output. When an
    append pushes the total over the cap, the oldest chunks are evicted first,
    including the new chunk itself if it alone is larger than the cap.
    """

    def __init__(self, max_bytes: int = 100_000):
        self.max_bytes = max_bytes
        self._buffers: Dict[str, _SessionBuffer] = {}

    def append(self, session_id: str, data: str, timestamp: Optional[int] = None) -> OutputChunk:
        """Append a chunk in arrival order and evict down to the byte cap."""
        chunk = OutputChunk(
            data=data,
            timestamp=now_ms() if timestamp is None else timestamp,
            size=len(data.encode("utf-8", errors="replace")),
        )
        buf = self._buffers.get(session_id)
        if buf is None:
            buf = self._buffers[session_id] = _SessionBuffer()

        buf.chunks.append(chunk)
        buf.total += chunk.size

        while buf.total > self.max_bytes and buf.chunks:
            removed = buf.chunks.popleft()
            buf.total -= removed.size

        return chunk

    def since(self, session_id: str, timestamp: int = 0) -> str:
        """Concatenate retained chunks strictly newer than ``timestamp``."""
        buf = self._buffers.get(session_id)
        if buf is None:
            return ""
        return "".join(c.data for c in buf.chunks if c.timestamp > timestamp)

    def size_of(self, session_id: str) -> int:
        """Number of retained chunks."""
        buf = self._buffers.get(session_id)
        return len(buf.chunks) if buf else 0

    def byte_size(self, session_id: str) -> int:
        buf = self._buffers.get(session_id)
        return buf.total if buf else 0

    def discard(self, session_id: str) -> None:
        self._buffers.pop(session_id, None)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._buffers
