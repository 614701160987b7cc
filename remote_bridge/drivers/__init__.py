"""
Agent driver registry.

Usage:
    from remote_bridge.drivers import get_driver
    driver = get_driver("claude")
    command = driver.start_command()
"""

from .base import MODE_PRIORITY, AgentDriver, BaseAgentDriver
from .claude import ClaudeDriver
from .generic import GenericDriver

__all__ = [
    "MODE_PRIORITY",
    "AgentDriver",
    "BaseAgentDriver",
    "ClaudeDriver",
    "GenericDriver",
    "get_driver",
    "register_driver",
]

# Built-in driver registry
_REGISTRY: dict[str, type[BaseAgentDriver]] = {
    "claude": ClaudeDriver,
    "generic": GenericDriver,
}


def register_driver(agent_type: str, driver_class: type[BaseAgentDriver]) -> None:
    """Register a custom driver class."""
    _REGISTRY[agent_type] = driver_class


def get_driver(agent_type: str) -> BaseAgentDriver:
    """Get a driver instance by agent_type. Falls back to GenericDriver."""
    cls = _REGISTRY.get(agent_type, GenericDriver)
    return cls()
