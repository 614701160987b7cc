"""
Assistant mode detection from raw terminal output.

Detection is best effort. A marker split across two reads is caught through a
short per-session lookback, but nothing is buffered beyond that and no earlier
decision is ever revised.
"""

import logging
import re
from typing import Dict, List, Optional, Pattern, Tuple

from ..drivers import MODE_PRIORITY
from ..state import StateStore, current_mode, modes_for

logger = logging.getLogger(__name__)

LOOKBACK_CHARS = 32

ANSI_RE = re.compile(
    r'\x1b'
    r'(?:'
    r'\[[0-9;?]*[ -/]*[@-~]'  # CSI sequences
    r'|\][^\x07\x1b]*(?:\x07|\x1b\\)'  # OSC sequences
    r'|[()][AB012]'  # charset select
    r'|.'  # two-char sequences
    r')'
)


def strip_ansi(text: str) -> str:
    return ANSI_RE.sub("", text)


def compile_markers(table: Dict[str, List[str]]) -> List[Tuple[str, Pattern]]:
    """Compile a marker table into (label, regex) pairs in priority order."""
    compiled = []
    for label in MODE_PRIORITY:
        patterns = table.get(label) or []
        if patterns:
            compiled.append((label, re.compile("|".join(f"(?:{p})" for p in patterns), re.IGNORECASE)))
    return compiled


class ModeDetector:
    """
    Scans output chunks for mode markers and records transitions.

    Args:
        state: Shared state store holding the process-wide mode flags.
        markers: Marker table, label -> list of regex patterns.
    """

    def __init__(self, state: StateStore, markers: Dict[str, List[str]]):
        self.state = state
        self._markers = compile_markers(markers)
        self._tails: Dict[str, str] = {}

    def scan(self, text: str, min_end: int = 0) -> Optional[str]:
        """
        Label of the highest-priority marker found in ``text``, or None.

        Only matches ending after ``min_end`` count, so a lookback prefix
        cannot fire on its own.
        """
        for label, pattern in self._markers:
            for match in pattern.finditer(text):
                if match.end() > min_end:
                    return label
        return None

    def observe(self, session_id: str, chunk: str) -> Optional[str]:
        """
        Scan one output chunk of a session.

        Returns the new mode label when it differs from the recorded mode
        (after writing the mutually exclusive flags), otherwise None.
        """
        clean = strip_ansi(chunk)
        tail = self._tails.get(session_id, "")
        text = tail + clean
        self._tails[session_id] = text[-LOOKBACK_CHARS:]

        label = self.scan(text, min_end=len(tail))
        if label is None:
            return None

        if current_mode(self.state.read()) == label:
            return None

        self.state.update({"modes": modes_for(label)})
        logger.info(f"Mode changed to {label} (session {session_id})")
        return label

    def forget(self, session_id: str) -> None:
        self._tails.pop(session_id, None)
