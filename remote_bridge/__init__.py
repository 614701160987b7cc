"""
Remote Bridge - drive a terminal AI coding assistant from a mobile app.

Features:
- Named PTY sessions running a login shell plus the assistant CLI
- Terminal-over-WebSocket protocol with multiple viewers per session
- Reconnect with replay of missed output
- Assistant mode detection (plan / auto-accept) from terminal output
- Session admin and mode HTTP routes

Usage:
    # Run in any project directory
    remote-bridge

    # With explicit options
    remote-bridge --port 9000 --require-token

    # Print resolved config
    remote-bridge --print-config > .remote-bridge.yaml
"""

__version__ = "0.1.0"

from .config import Config, load_config
from .discovery import discover_project_config

__all__ = ["Config", "load_config", "discover_project_config", "__version__"]
