"""
Configuration system for Remote Bridge.

Supports:
- YAML config files (.remote-bridge.yaml)
- Environment overrides (REMOTE_BRIDGE_*, .env aware)
- CLI argument overrides
- Sensible defaults
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .errors import ConfigError

LOG_LEVELS = ("debug", "info", "warn", "warning", "error")

DEFAULT_STATE_FILE = Path.home() / ".claude" / "remote-bridge" / "state.json"


@dataclass
class Config:
    """Configuration for Remote Bridge."""

    # Server settings
    port: int = 3000
    host: str = "0.0.0.0"
    log_level: str = "info"

    # Authentication (disabled by default, use --require-token to enable)
    token: Optional[str] = None  # Auto-generated if not set
    no_auth: bool = True

    # Shell spawned inside every PTY session
    shell: str = "/bin/bash"
    shell_args: List[str] = field(default_factory=lambda: ["-l"])
    cwd: Optional[Path] = None  # Defaults to project_root, then $HOME

    # Assistant CLI
    agent_type: str = "claude"
    launch_command: Optional[str] = None  # Overrides the driver's start command
    launch_delay_ms: int = 500  # Delay before typing the launch command (0..5000)
    auto_launch: bool = True

    # Terminal defaults
    buffer_max_bytes: int = 100_000
    default_cols: int = 120
    default_rows: int = 30

    # Persisted mode/connection state
    state_file: Path = DEFAULT_STATE_FILE

    # Optional override of the driver's mode marker table: label -> [regex, ...]
    mode_markers: Dict[str, List[str]] = field(default_factory=dict)

    # Project context (set by discovery)
    project_root: Optional[Path] = None

    def session_cwd(self) -> Path:
        """Working directory for newly spawned sessions."""
        if self.cwd:
            return Path(self.cwd)
        if self.project_root:
            return self.project_root
        return Path.home()

    def logging_level(self) -> str:
        """Log level name as understood by logging and uvicorn."""
        level = self.log_level.lower()
        return "WARNING" if level == "warn" else level.upper()

    def validate(self) -> None:
        """Raise ConfigError if any value is unusable."""
        if not 1 <= self.port <= 65535:
            raise ConfigError(f"Invalid port: {self.port}")
        if self.log_level.lower() not in LOG_LEVELS:
            raise ConfigError(
                f"Invalid log level: {self.log_level}. "
                f"Must be one of: {', '.join(LOG_LEVELS)}"
            )
        if self.buffer_max_bytes <= 0:
            raise ConfigError(f"Invalid buffer size: {self.buffer_max_bytes}")
        if self.default_cols <= 0 or self.default_rows <= 0:
            raise ConfigError(
                f"Invalid default dimensions: {self.default_cols}x{self.default_rows}"
            )
        for label, patterns in self.mode_markers.items():
            if label not in ("plan", "autoAccept", "normal"):
                raise ConfigError(f"Unknown mode in mode_markers: {label}")
            if not isinstance(patterns, list):
                raise ConfigError(f"mode_markers.{label} must be a list")
            for pattern in patterns:
                try:
                    re.compile(str(pattern))
                except re.error as e:
                    raise ConfigError(f"Invalid pattern in mode_markers.{label}: {pattern!r} ({e})") from e

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary for JSON serialization."""
        return {
            "port": self.port,
            "host": self.host,
            "log_level": self.log_level,
            "no_auth": self.no_auth,
            "shell": self.shell,
            "shell_args": list(self.shell_args),
            "cwd": str(self.cwd) if self.cwd else None,
            "agent_type": self.agent_type,
            "launch_command": self.launch_command,
            "launch_delay_ms": self.launch_delay_ms,
            "auto_launch": self.auto_launch,
            "buffer_max_bytes": self.buffer_max_bytes,
            "default_cols": self.default_cols,
            "default_rows": self.default_rows,
            "state_file": str(self.state_file),
            "mode_markers": self.mode_markers,
        }

    def to_yaml(self) -> str:
        """Convert config to YAML string."""
        data = self.to_dict()
        data.pop("no_auth")
        return yaml.dump(data, default_flow_style=False, sort_keys=False)


def _clamp_delay(value: Any) -> int:
    return max(0, min(5000, int(value)))


def load_config(path: Optional[Path] = None) -> Config:
    """
    Load configuration from YAML file.

    Args:
        path: Path to config file. If None, returns defaults.

    Returns:
        Config instance with loaded values merged over defaults.

    Raises:
        ConfigError: if the file exists but cannot be parsed.
    """
    config = Config()

    if path is None or not path.exists():
        return config

    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")

    try:
        if "port" in data:
            config.port = int(data["port"])
        if "host" in data:
            config.host = data["host"]
        if "log_level" in data:
            config.log_level = str(data["log_level"])
        if "token" in data:
            config.token = data["token"]
            config.no_auth = False
        if "shell" in data:
            config.shell = data["shell"]
        if "shell_args" in data:
            config.shell_args = [str(a) for a in data["shell_args"] or []]
        if "cwd" in data and data["cwd"]:
            config.cwd = Path(data["cwd"]).expanduser()
        if "agent_type" in data:
            config.agent_type = data["agent_type"]
        if "launch_command" in data:
            config.launch_command = data["launch_command"]
        if "launch_delay_ms" in data:
            config.launch_delay_ms = _clamp_delay(data["launch_delay_ms"])
        if "auto_launch" in data:
            config.auto_launch = bool(data["auto_launch"])
        if "buffer_max_bytes" in data:
            config.buffer_max_bytes = int(data["buffer_max_bytes"])
        if "default_cols" in data:
            config.default_cols = int(data["default_cols"])
        if "default_rows" in data:
            config.default_rows = int(data["default_rows"])
        if "state_file" in data:
            config.state_file = Path(data["state_file"]).expanduser()
        if "mode_markers" in data:
            config.mode_markers = dict(data["mode_markers"] or {})
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value in {path}: {e}") from e

    return config


def apply_env_overrides(config: Config, environ: Optional[Dict[str, str]] = None) -> Config:
    """Apply REMOTE_BRIDGE_* environment variables on top of a config."""
    env = os.environ if environ is None else environ

    try:
        if env.get("REMOTE_BRIDGE_PORT"):
            config.port = int(env["REMOTE_BRIDGE_PORT"])
    except ValueError as e:
        raise ConfigError(f"Invalid REMOTE_BRIDGE_PORT: {env['REMOTE_BRIDGE_PORT']}") from e
    if env.get("REMOTE_BRIDGE_HOST"):
        config.host = env["REMOTE_BRIDGE_HOST"]
    if env.get("REMOTE_BRIDGE_LOG_LEVEL"):
        config.log_level = env["REMOTE_BRIDGE_LOG_LEVEL"]
    if env.get("REMOTE_BRIDGE_TOKEN"):
        config.token = env["REMOTE_BRIDGE_TOKEN"]
        config.no_auth = False

    return config
