"""
Base agent driver protocol.

AgentDriver separates terminal/session orchestration (PTY, websocket, replay)
from assistant semantics: how the assistant CLI is launched, how its presence
is recognised in output, and which phrases mark its interaction modes.
"""

from typing import Dict, List, Optional, Protocol, runtime_checkable

# Evaluation order for mode markers. First label with a match wins.
MODE_PRIORITY = ("plan", "autoAccept", "normal")


@runtime_checkable
class AgentDriver(Protocol):
    def id(self) -> str: ...
    def display_name(self) -> str: ...
    def start_command(self, startup_command: Optional[str] = None) -> Optional[str]: ...
    def detects(self, output: str) -> bool: ...
    def mode_markers(self) -> Dict[str, List[str]]: ...


class BaseAgentDriver:
    """Defaults shared by all drivers. Subclasses override class attributes."""

    _display_name: str = "Agent"
    _agent_id: str = "generic"
    _process_name: str = ""  # e.g. "claude"
    _detect_marker: str = ""  # substring announcing the assistant in output
    _mode_markers: Dict[str, List[str]] = {}

    def id(self) -> str:
        return self._agent_id

    def display_name(self) -> str:
        return self._display_name

    def start_command(self, startup_command: Optional[str] = None) -> Optional[str]:
        """Command line typed into a fresh session, or None to launch nothing."""
        if startup_command:
            return startup_command
        return self._process_name or None

    def detects(self, output: str) -> bool:
        if not self._detect_marker:
            return False
        return self._detect_marker in output.lower()

    def mode_markers(self) -> Dict[str, List[str]]:
        """Regex marker table, label -> patterns (matched case-insensitively)."""
        return {label: list(patterns) for label, patterns in self._mode_markers.items()}

    def capabilities(self) -> dict:
        """Stable JSON for UI to decide what to render."""
        return {
            "auto_launch": self.start_command() is not None,
            "mode_detection": bool(self._mode_markers),
        }
