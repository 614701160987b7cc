"""Exception types shared across Remote Bridge."""


class RemoteBridgeError(Exception):
    """Base class for Remote Bridge errors."""


class ConfigError(RemoteBridgeError):
    """Invalid configuration. Fatal at startup."""


class SpawnError(RemoteBridgeError):
    """The shell or assistant binary could not be started."""


class MalformedMessage(RemoteBridgeError):
    """An inbound WebSocket frame could not be understood."""
