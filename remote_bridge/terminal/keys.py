"""
Named key vocabulary understood by the terminal protocol.

The set of names is a stable contract with clients: keys may be added,
never renamed or removed.
"""

from typing import Optional

KEY_SEQUENCES = {
    "enter": "\r",
    "tab": "\t",
    "escape": "\x1b",
    "backspace": "\x7f",
    "delete": "\x1b[3~",
    "up": "\x1b[A",
    "down": "\x1b[B",
    "right": "\x1b[C",
    "left": "\x1b[D",
    "home": "\x1b[H",
    "end": "\x1b[F",
    "pageup": "\x1b[5~",
    "pagedown": "\x1b[6~",
    "ctrl+c": "\x03",
    "ctrl+d": "\x04",
    "ctrl+z": "\x1a",
    "ctrl+l": "\x0c",
    "shift+tab": "\x1b[Z",  # cycles the assistant's mode
}

MODE_TOGGLE_KEY = "shift+tab"


def key_sequence(name: str) -> Optional[str]:
    """Raw control sequence for a key name, or None if unknown."""
    if not isinstance(name, str):
        return None
    return KEY_SEQUENCES.get(name.strip().lower())
