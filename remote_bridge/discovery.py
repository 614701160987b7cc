"""
Project context auto-discovery for Remote Bridge.

Walks up the directory tree to find:
1. .remote-bridge.yaml (explicit config)
2. .git/ (project root marker, default working directory for sessions)
"""

import logging
from pathlib import Path
from typing import Optional

from .config import Config, load_config

logger = logging.getLogger(__name__)

CONFIG_FILENAME = ".remote-bridge.yaml"


def discover_project_config(start_dir: Optional[Path] = None) -> Config:
    """
    Auto-discover project context by walking up from start_dir.

    Args:
        start_dir: Directory to start from. Defaults to cwd.

    Returns:
        Config with discovered values merged over defaults.
    """
    start = start_dir or Path.cwd()
    config = Config()

    for parent in [start] + list(start.parents):
        config_file = parent / CONFIG_FILENAME
        if config_file.exists():
            logger.info(f"Using config file {config_file}")
            config = load_config(config_file)
            config.project_root = parent
            return config

        # Stop at git root
        if (parent / ".git").exists():
            config.project_root = parent
            break

    return config
