"""
Generic agent driver: fallback for unknown agent types.

Launches nothing on cold start and detects no modes; the session is a
plain login shell.
"""

from .base import BaseAgentDriver


class GenericDriver(BaseAgentDriver):
    """Fallback driver for unknown agents."""

    _agent_id = "generic"
    _display_name = "Agent"
    _process_name = ""
