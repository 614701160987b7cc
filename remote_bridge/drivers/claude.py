"""
Claude Code agent driver.

The mode markers are phrases printed by the Claude CLI itself. They are an
external contract with that program's unstructured output: keep them here,
in one table, and adjust them when the CLI's wording changes.
"""

from .base import BaseAgentDriver

MODE_MARKERS = {
    "plan": [
        r"plan mode",
        r"planning mode",
        r"\[plan\]",
    ],
    "autoAccept": [
        r"auto.?accept",
        r"auto mode",
        r"\[auto\]",
    ],
    "normal": [
        r"normal mode",
        r"execution mode",
        r"\[normal\]",
    ],
}


class ClaudeDriver(BaseAgentDriver):
    """Driver for Claude Code CLI agent."""

    _agent_id = "claude"
    _display_name = "Claude"
    _process_name = "claude"
    _detect_marker = "claude"
    _mode_markers = MODE_MARKERS
