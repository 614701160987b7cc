"""
Persisted process-wide state (mode flags, connection info).

The record is read and replaced as a whole; there is no transactional
guarantee beyond the atomic replace of the state file.
"""

import copy
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

logger = logging.getLogger(__name__)

MODE_FLAGS = ("plan", "autoAccept")
NORMAL_MODE = "normal"
MODE_LABELS = MODE_FLAGS + (NORMAL_MODE,)


def default_state() -> Dict[str, Any]:
    return {
        "enabled": False,
        "pid": None,
        "url": None,
        "connected": False,
        "connectedDevice": None,
        "startedAt": None,
        "modes": {flag: False for flag in MODE_FLAGS},
    }


def modes_for(label: str) -> Dict[str, bool]:
    """Mutually exclusive flag set for a mode label ("normal" clears all)."""
    if label not in MODE_LABELS:
        raise ValueError(f"Unknown mode: {label}")
    return {flag: flag == label for flag in MODE_FLAGS}


def current_mode(state: Dict[str, Any]) -> str:
    """Label of the recorded mode, "normal" when no flag is set."""
    modes = state.get("modes") or {}
    for flag in MODE_FLAGS:
        if modes.get(flag):
            return flag
    return NORMAL_MODE


class StateStore(Protocol):
    def read(self) -> Dict[str, Any]: ...
    def update(self, partial: Dict[str, Any]) -> Dict[str, Any]: ...
    def clear(self) -> Dict[str, Any]: ...


class MemoryStateStore:
    """In-process state store. Used by tests and when persistence is off."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._state = default_state()
        if initial:
            self._state.update(copy.deepcopy(initial))

    def read(self) -> Dict[str, Any]:
        return copy.deepcopy(self._state)

    def update(self, partial: Dict[str, Any]) -> Dict[str, Any]:
        new_state = self.read()
        new_state.update(copy.deepcopy(partial))
        self._state = new_state
        return self.read()

    def clear(self) -> Dict[str, Any]:
        self._state = default_state()
        return self.read()


class JsonStateStore:
    """
    State persisted as a JSON file.

    Unreadable or corrupt files fall back to defaults. Writes go through a
    temporary file and os.replace so readers never see a partial record.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def _ensure_dir(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def read(self) -> Dict[str, Any]:
        state = default_state()
        if not self.path.exists():
            return state
        try:
            data = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Error reading state from {self.path}: {e}")
            return state
        if isinstance(data, dict):
            state.update(data)
        return state

    def write(self, state: Dict[str, Any]) -> None:
        self._ensure_dir()
        fd, tmp_path = tempfile.mkstemp(
            prefix=".state-", suffix=".json", dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(state, f, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error(f"Error writing state to {self.path}: {e}")
            try:
                os.unlink(tmp_path)
            except OSError:
                pass

    def update(self, partial: Dict[str, Any]) -> Dict[str, Any]:
        state = self.read()
        state.update(partial)
        self.write(state)
        return state

    def clear(self) -> Dict[str, Any]:
        state = default_state()
        self.write(state)
        return state
